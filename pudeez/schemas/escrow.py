"""
Canonical Escrow Schema

One EscrowRecord per trade attempt.
The record is keyed by the chain-assigned escrow id and is never deleted:
completion and cancellation are terminal statuses, not removals.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# 1 SUI = 10^9 MIST
BASE_UNITS_PER_COIN = 10 ** 9

DEFAULT_ASSET_NAME = "Steam Asset"
DEFAULT_COLLECTION_ID = "730"


class EscrowStatus(str, Enum):
    """
    Escrows move forward only.

    initialized -> deposited -> completed
    initialized | deposited -> cancelled
    """
    INITIALIZED = "initialized"
    DEPOSITED = "deposited"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.CANCELLED})

# The only legal status moves. Nothing leaves a terminal status.
ALLOWED_TRANSITIONS: dict[EscrowStatus, frozenset[EscrowStatus]] = {
    EscrowStatus.INITIALIZED: frozenset({EscrowStatus.DEPOSITED, EscrowStatus.CANCELLED}),
    EscrowStatus.DEPOSITED: frozenset({EscrowStatus.COMPLETED, EscrowStatus.CANCELLED}),
    EscrowStatus.COMPLETED: frozenset(),
    EscrowStatus.CANCELLED: frozenset(),
}

# Position along the happy path, used to tell "already passed" from "not yet reached"
LIFECYCLE_RANK: dict[EscrowStatus, int] = {
    EscrowStatus.INITIALIZED: 0,
    EscrowStatus.DEPOSITED: 1,
    EscrowStatus.COMPLETED: 2,
    EscrowStatus.CANCELLED: 2,
}


def is_transition_allowed(current: EscrowStatus, new: EscrowStatus) -> bool:
    """Check a single status move against the state machine."""
    return new in ALLOWED_TRANSITIONS[current]


def to_display_amount(base_units: int) -> Decimal:
    """Convert MIST to SUI for outward-facing reads. Storage stays integer."""
    return Decimal(base_units) / Decimal(BASE_UNITS_PER_COIN)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ItemTypeKey(BaseModel):
    """
    Grouping key for fungible-equivalent items.

    Instance ids are reassigned by the inventory system on transfer,
    so transfers are tracked by counting items of the same type.
    """
    model_config = ConfigDict(frozen=True)

    collection_id: str = Field(..., min_length=1, description="App id (e.g. 730)")
    class_id: str = Field(..., min_length=1)
    instance_id: str = Field(default="0")

    def to_string(self) -> str:
        return f"{self.collection_id}/{self.class_id}/{self.instance_id}"

    @classmethod
    def from_string(cls, value: str) -> "ItemTypeKey":
        parts = value.split("/")
        if len(parts) != 3:
            raise ValueError(f"Invalid item type key: {value!r}")
        return cls(collection_id=parts[0], class_id=parts[1], instance_id=parts[2])

    def __str__(self) -> str:
        return self.to_string()


class EscrowRecord(BaseModel):
    """
    Durable record of one escrow.

    Rules:
    - escrow_id is immutable
    - baseline counts are captured once, at initialization
    - updated_at moves on status transitions only
    """
    escrow_id: str = Field(..., min_length=1, description="Chain-assigned escrow object id")

    buyer_address: str
    seller_address: str

    # Identifiers in the inventory oracle's namespace (Steam IDs).
    # May be absent until the chain address is linked.
    buyer_inventory_id: Optional[str] = None
    seller_inventory_id: Optional[str] = None

    asset_id: str
    asset_name: str = DEFAULT_ASSET_NAME
    asset_amount: int = Field(default=1, ge=1)
    collection_id: str = DEFAULT_COLLECTION_ID
    icon_ref: str = ""
    item_type_key: Optional[ItemTypeKey] = None
    trade_reference: str = ""

    price_in_base_unit: int = Field(..., ge=0, description="Price in MIST, never a float")

    initial_seller_item_count: int = Field(default=0, ge=0)
    initial_buyer_item_count: int = Field(default=0, ge=0)
    baseline_missing: bool = False

    status: EscrowStatus = EscrowStatus.INITIALIZED
    chain_tx_digest: Optional[str] = None
    blob_reference: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("price_in_base_unit", mode="before")
    @classmethod
    def reject_float_price(cls, v):
        if isinstance(v, float):
            raise ValueError("Floats are banned for prices - use integer base units")
        return v

    @field_validator("created_at", "updated_at")
    @classmethod
    def require_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("Timestamps must be timezone-aware")
        return v.astimezone(timezone.utc)

    @property
    def price_display(self) -> Decimal:
        """Price in SUI."""
        return to_display_amount(self.price_in_base_unit)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def involves(self, account_id: str) -> bool:
        """True if account_id is either party (chain address or inventory id)."""
        return account_id in (
            self.buyer_address,
            self.seller_address,
            self.buyer_inventory_id,
            self.seller_inventory_id,
        )


class InventorySnapshot(BaseModel):
    """
    Point-in-time view of one account's holdings of one item type.

    Ephemeral: produced for a single verification and never cached,
    because inventory state changes outside this system at any time.
    """
    held_count: int = Field(..., ge=0)
    holds_specific_item: bool
    observed_at: datetime = Field(default_factory=utc_now)


class VerificationResult(BaseModel):
    """Outcome of a transfer verification, with the counts kept for audit."""
    escrow_id: str
    transferred: bool

    initial_seller_item_count: int
    initial_buyer_item_count: int
    seller_current_count: int
    buyer_current_count: int
    seller_decrease: int
    buyer_increase: int

    checked_at: datetime = Field(default_factory=utc_now)


class EscrowStatusUpdate(BaseModel):
    """
    Notification delivered to subscribers after a committed status transition.

    Fields the chain event did not carry are filled in from the stored record.
    """
    escrow_id: str
    status: EscrowStatus
    previous_status: Optional[EscrowStatus] = None
    buyer: str
    seller: str
    asset_id: str
    price_in_base_unit: int
    transaction_digest: Optional[str] = None
    updated_at: datetime
