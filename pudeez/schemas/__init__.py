# Canonical Schemas for the Escrow Reconciliation Core
# Escrow records live in the store; chain events are parsed once, at ingestion.

from .escrow import (
    ALLOWED_TRANSITIONS,
    BASE_UNITS_PER_COIN,
    EscrowRecord,
    EscrowStatus,
    EscrowStatusUpdate,
    InventorySnapshot,
    ItemTypeKey,
    TERMINAL_STATUSES,
    VerificationResult,
    is_transition_allowed,
    to_display_amount,
)
from .events import (
    ChainEventKind,
    EscrowCancelledPayload,
    EscrowInitializedPayload,
    PaymentClaimedPayload,
    PaymentDepositedPayload,
    RawEvent,
)

__all__ = [
    # Escrow
    "ALLOWED_TRANSITIONS",
    "BASE_UNITS_PER_COIN",
    "EscrowRecord",
    "EscrowStatus",
    "EscrowStatusUpdate",
    "InventorySnapshot",
    "ItemTypeKey",
    "TERMINAL_STATUSES",
    "VerificationResult",
    "is_transition_allowed",
    "to_display_amount",
    # Chain events
    "ChainEventKind",
    "EscrowCancelledPayload",
    "EscrowInitializedPayload",
    "PaymentClaimedPayload",
    "PaymentDepositedPayload",
    "RawEvent",
]
