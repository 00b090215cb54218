# Escrow reconciliation core: chain events in, escrow state and notifications out.

from .chain import (
    ChainConfig,
    ChainEventSource,
    ChainQueryFailure,
    ContractMisconfigured,
    InMemoryChainEventSource,
    PollResult,
    SuiChainEventSource,
)
from .oracle import (
    InMemoryInventoryOracle,
    InventoryOracle,
    OracleConfig,
    OracleUnavailable,
    SteamInventoryOracle,
    TransientOracleFailure,
)
from .verifier import (
    InvalidState,
    MissingBaseline,
    RecordNotFound,
    TransferVerifier,
    decide_transfer,
)
from .reconciler import (
    BatchResult,
    EscrowReconciler,
    EventOutcome,
    InvalidTransition,
    SubscriptionHandle,
)
from .poller import EscrowEventPoller, PollerConfig
from .service import EscrowService

__all__ = [
    # Chain
    "ChainConfig",
    "ChainEventSource",
    "ChainQueryFailure",
    "ContractMisconfigured",
    "InMemoryChainEventSource",
    "PollResult",
    "SuiChainEventSource",
    # Oracle
    "InMemoryInventoryOracle",
    "InventoryOracle",
    "OracleConfig",
    "OracleUnavailable",
    "SteamInventoryOracle",
    "TransientOracleFailure",
    # Verification
    "InvalidState",
    "MissingBaseline",
    "RecordNotFound",
    "TransferVerifier",
    "decide_transfer",
    # Reconciliation
    "BatchResult",
    "EscrowReconciler",
    "EventOutcome",
    "InvalidTransition",
    "SubscriptionHandle",
    "EscrowEventPoller",
    "PollerConfig",
    "EscrowService",
]
