"""
API Routes for the Escrow Reconciliation Core

Query endpoints:
- GET /escrows/{id}                         - Escrow state
- GET /escrows?status=deposited             - Escrows in one status
- GET /accounts/{account_id}/escrows        - Escrows where the account is buyer or seller

Inventory endpoints (always live, never cached):
- POST /escrows/{id}/verify                 - Verify the item transfer for a deposited escrow
- GET /inventory/{account}/{collection}/items/{item_instance_id}
- GET /inventory/{account}/{collection}/count?class_id=...&instance_id=...

Error mapping:
- RecordNotFound                       -> 404
- InvalidState / InvalidTransition     -> 409
- OracleUnavailable / store busy       -> 503 (retry later)
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ..core import (
    EscrowService,
    InvalidState,
    InvalidTransition,
    OracleUnavailable,
    RecordNotFound,
)
from ..observability import get_logger
from ..schemas import EscrowRecord, EscrowStatus, ItemTypeKey, VerificationResult

logger = get_logger(__name__)

router = APIRouter(tags=["Escrows"])


# ============================================================
# Response Models
# ============================================================

class EscrowView(BaseModel):
    """Escrow state as exposed to clients. Prices in MIST and in SUI."""
    escrow_id: str
    status: EscrowStatus
    buyer_address: str
    seller_address: str
    buyer_inventory_id: Optional[str] = None
    seller_inventory_id: Optional[str] = None
    asset_id: str
    asset_name: str
    asset_amount: int
    collection_id: str
    icon_ref: str
    trade_reference: str
    item_type_key: Optional[str] = None
    price_in_base_unit: int
    price: Decimal
    baseline_missing: bool
    chain_tx_digest: Optional[str] = None
    blob_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: EscrowRecord) -> "EscrowView":
        return cls(
            escrow_id=record.escrow_id,
            status=record.status,
            buyer_address=record.buyer_address,
            seller_address=record.seller_address,
            buyer_inventory_id=record.buyer_inventory_id,
            seller_inventory_id=record.seller_inventory_id,
            asset_id=record.asset_id,
            asset_name=record.asset_name,
            asset_amount=record.asset_amount,
            collection_id=record.collection_id,
            icon_ref=record.icon_ref,
            trade_reference=record.trade_reference,
            item_type_key=record.item_type_key.to_string() if record.item_type_key else None,
            price_in_base_unit=record.price_in_base_unit,
            price=record.price_display,
            baseline_missing=record.baseline_missing,
            chain_tx_digest=record.chain_tx_digest,
            blob_reference=record.blob_reference,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class ItemCheck(BaseModel):
    account_id: str
    collection_id: str
    item_instance_id: str
    held: bool


class ItemCount(BaseModel):
    account_id: str
    type_key: str
    count: int


# ============================================================
# Helper Functions
# ============================================================

def get_service(request: Request) -> EscrowService:
    """Get escrow service from app state."""
    return request.app.state.service


def _to_http(e: Exception) -> HTTPException:
    """Map a core error to its HTTP status. Store errors are handled app-wide."""
    if isinstance(e, RecordNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidState, InvalidTransition)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, OracleUnavailable):
        logger.warning("Inventory service unavailable", error=str(e))
        return HTTPException(
            status_code=503,
            detail=f"Inventory service unavailable: {e}",
            headers={"Retry-After": "30"},
        )
    return HTTPException(status_code=500, detail="Internal error")


# ============================================================
# Endpoints
# ============================================================

@router.get("/escrows", response_model=list[EscrowView])
def list_escrows(request: Request, status: EscrowStatus = Query(...)):
    """List escrows currently in the given status."""
    records = get_service(request).list_escrows_by_status(status)
    return [EscrowView.from_record(r) for r in records]


@router.get("/escrows/{escrow_id}", response_model=EscrowView)
def get_escrow(escrow_id: str, request: Request):
    try:
        return EscrowView.from_record(get_service(request).get_escrow(escrow_id))
    except RecordNotFound as e:
        raise _to_http(e)


@router.get("/accounts/{account_id}/escrows", response_model=list[EscrowView])
def list_account_escrows(account_id: str, request: Request):
    """Escrows where the account (chain address or inventory id) is buyer or seller."""
    records = get_service(request).list_escrows_for_account(account_id)
    return [EscrowView.from_record(r) for r in records]


@router.post("/escrows/{escrow_id}/verify", response_model=VerificationResult)
def verify_transfer(escrow_id: str, request: Request):
    """
    Check the inventories of both parties against the baseline.

    503 means "could not find out" and is safe to retry; it never means
    the item was not transferred.
    """
    try:
        return get_service(request).verify_transfer(escrow_id)
    except (RecordNotFound, InvalidState, OracleUnavailable) as e:
        raise _to_http(e)


@router.get(
    "/inventory/{account_id}/{collection_id}/items/{item_instance_id}",
    response_model=ItemCheck,
)
def check_inventory(account_id: str, collection_id: str, item_instance_id: str, request: Request):
    try:
        held = get_service(request).check_inventory(account_id, collection_id, item_instance_id)
    except OracleUnavailable as e:
        raise _to_http(e)
    return ItemCheck(
        account_id=account_id,
        collection_id=collection_id,
        item_instance_id=item_instance_id,
        held=held,
    )


@router.get("/inventory/{account_id}/{collection_id}/count", response_model=ItemCount)
def get_item_count(
    account_id: str,
    collection_id: str,
    request: Request,
    class_id: str = Query(..., min_length=1),
    instance_id: str = Query("0"),
):
    type_key = ItemTypeKey(collection_id=collection_id, class_id=class_id, instance_id=instance_id)
    try:
        count = get_service(request).get_item_count(account_id, collection_id, type_key)
    except OracleUnavailable as e:
        raise _to_http(e)
    return ItemCount(account_id=account_id, type_key=type_key.to_string(), count=count)
