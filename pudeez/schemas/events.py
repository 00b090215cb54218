"""
Chain Event Schema

Events emitted by the escrow Move module. The chain is the source of truth;
these payloads are parsed once, at ingestion, and never edited.

String fields may arrive as vector<u8> (a list of byte values) and are
decoded to text. Amounts arrive as integer strings in MIST and are
converted to int here, once.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .escrow import DEFAULT_ASSET_NAME, DEFAULT_COLLECTION_ID, EscrowStatus


class ChainEventKind(str, Enum):
    """The four escrow lifecycle events, named as in the Move module."""
    ESCROW_INITIALIZED = "EscrowInitialized"
    PAYMENT_DEPOSITED = "PaymentDeposited"
    PAYMENT_CLAIMED = "PaymentClaimed"
    ESCROW_CANCELLED = "EscrowCancelled"

    @property
    def target_status(self) -> EscrowStatus:
        return KIND_TARGET_STATUS[self]

    @property
    def lifecycle_rank(self) -> int:
        return KIND_RANK[self]


KIND_TARGET_STATUS = {
    ChainEventKind.ESCROW_INITIALIZED: EscrowStatus.INITIALIZED,
    ChainEventKind.PAYMENT_DEPOSITED: EscrowStatus.DEPOSITED,
    ChainEventKind.PAYMENT_CLAIMED: EscrowStatus.COMPLETED,
    ChainEventKind.ESCROW_CANCELLED: EscrowStatus.CANCELLED,
}

# Tie-break for events sharing a checkpoint timestamp
KIND_RANK = {
    ChainEventKind.ESCROW_INITIALIZED: 0,
    ChainEventKind.PAYMENT_DEPOSITED: 1,
    ChainEventKind.PAYMENT_CLAIMED: 2,
    ChainEventKind.ESCROW_CANCELLED: 2,
}


def decode_move_string(value: Any) -> Any:
    """Decode a Move vector<u8> into text; pass plain strings through."""
    if isinstance(value, list):
        try:
            return bytes(value).decode("utf-8")
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid vector<u8> string: {e}") from e
    return value


def parse_base_units(value: Any) -> int:
    """Parse an integer-string amount. Floats and fractional strings are rejected."""
    if isinstance(value, bool):
        raise ValueError("Amount must be an integer string")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"Amount must be an integer string in base units, got {value!r}")


class _ChainPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    escrow_id: str = Field(..., min_length=1)


class EscrowInitializedPayload(_ChainPayload):
    """EscrowInitialized{escrow_id, buyer, seller, asset_id, asset_name, app_id, icon_url, trade_url, price}"""
    buyer: str
    seller: str
    asset_id: str
    asset_name: str = ""
    collection_id: str = Field(default="", alias="app_id")
    icon_ref: str = Field(default="", alias="icon_url")
    trade_reference: str = Field(default="", alias="trade_url")
    price: int

    @field_validator(
        "asset_id", "asset_name", "collection_id", "icon_ref", "trade_reference",
        mode="before",
    )
    @classmethod
    def decode_strings(cls, v):
        return decode_move_string(v)

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v):
        return parse_base_units(v)

    @property
    def asset_name_or_default(self) -> str:
        return self.asset_name or DEFAULT_ASSET_NAME

    @property
    def collection_id_or_default(self) -> str:
        return self.collection_id or DEFAULT_COLLECTION_ID


class PaymentDepositedPayload(_ChainPayload):
    """PaymentDeposited{escrow_id, buyer, amount}"""
    buyer: str
    amount: int

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, v):
        return parse_base_units(v)


class PaymentClaimedPayload(_ChainPayload):
    """PaymentClaimed{escrow_id, seller, amount}"""
    seller: str
    amount: int

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, v):
        return parse_base_units(v)


class EscrowCancelledPayload(_ChainPayload):
    """EscrowCancelled{escrow_id, buyer, refund_amount}"""
    buyer: str
    refund_amount: int

    @field_validator("refund_amount", mode="before")
    @classmethod
    def parse_amount(cls, v):
        return parse_base_units(v)


PAYLOAD_TYPES: dict[ChainEventKind, type[_ChainPayload]] = {
    ChainEventKind.ESCROW_INITIALIZED: EscrowInitializedPayload,
    ChainEventKind.PAYMENT_DEPOSITED: PaymentDepositedPayload,
    ChainEventKind.PAYMENT_CLAIMED: PaymentClaimedPayload,
    ChainEventKind.ESCROW_CANCELLED: EscrowCancelledPayload,
}


class RawEvent(BaseModel):
    """
    One event as delivered by the chain event source.

    (tx_digest, event_seq) identifies the event on chain and is the
    dedup key. chain_order sorts events into the order they happened.
    """
    model_config = ConfigDict(frozen=True)

    kind: ChainEventKind
    tx_digest: str
    event_seq: int = Field(default=0, ge=0)
    timestamp_ms: int = Field(default=0, ge=0)
    parsed_json: dict[str, Any]

    @property
    def event_key(self) -> tuple[str, int]:
        return (self.tx_digest, self.event_seq)

    @property
    def chain_order(self) -> tuple[int, int, int]:
        return (self.timestamp_ms, self.kind.lifecycle_rank, self.event_seq)

    @property
    def escrow_id(self) -> Optional[str]:
        value = self.parsed_json.get("escrow_id")
        return str(value) if value is not None else None

    def payload(self) -> _ChainPayload:
        """Parse parsed_json into the typed payload for this kind (raises ValidationError)."""
        return PAYLOAD_TYPES[self.kind].model_validate(self.parsed_json)
