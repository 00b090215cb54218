"""
Runtime Wiring

Builds the store, oracle, chain source, service and poller from the
environment. Shared by the HTTP app and the management CLI.

Store selection:
- ESCROWSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: In-memory (default for development)

Oracle selection:
- PUDEEZ_ORACLE_DRIVER: steam (default) or memory (development only)
- STEAM_API_KEY missing: every inventory query raises OracleUnavailable

Chain source selection:
- PUDEEZ_CHAIN_DRIVER: sui (default) or memory (development only)
- ESCROW_PACKAGE_ID missing: every poll raises ContractMisconfigured
"""

import os
from dataclasses import dataclass
from typing import Optional

import psycopg2

from .core import (
    ChainConfig,
    ChainEventSource,
    EscrowEventPoller,
    EscrowService,
    InMemoryChainEventSource,
    InMemoryInventoryOracle,
    InventoryOracle,
    OracleConfig,
    PollerConfig,
    SteamInventoryOracle,
    SuiChainEventSource,
)
from .db.config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver
from .db.store import EscrowStore, InMemoryEscrowStore, PostgresEscrowStore
from .observability import get_logger

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Everything a process needs to serve escrows."""
    store: EscrowStore
    oracle: InventoryOracle
    source: ChainEventSource
    service: EscrowService
    poller: EscrowEventPoller

    def close(self) -> None:
        self.poller.stop()
        self.source.close()
        self.oracle.close()


def create_store() -> EscrowStore:
    """
    Create the EscrowStore selected by the environment.

    Raises if PostgreSQL is selected but unreachable; there is no silent
    fallback to memory.
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.warning("Using in-memory escrow store (no persistence)")
        return InMemoryEscrowStore()

    db_url = get_database_url()
    config = DatabaseConfig.from_url(db_url) if db_url else DatabaseConfig.from_env()

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    # Fail fast on bad credentials
    connection_factory().close()

    store = PostgresEscrowStore(connection_factory)
    store.ensure_schema()
    logger.info(
        "PostgreSQL escrow store ready",
        db_host=config.host,
        db_port=config.port,
        db_name=config.database,
    )
    return store


def _explicit_driver(var: str, valid: tuple, default: str) -> str:
    explicit = os.getenv(var, "").lower()
    if not explicit:
        return default
    if explicit not in valid:
        raise ValueError(f"Unknown {var}: {explicit}. Valid values: {', '.join(valid)}")
    return explicit


def create_oracle(config: Optional[OracleConfig] = None) -> InventoryOracle:
    """
    Create the inventory oracle.

    Steam unless PUDEEZ_ORACLE_DRIVER=memory. Without STEAM_API_KEY the Steam
    oracle raises OracleUnavailable on every query; an empty in-memory
    inventory would answer "not held" instead.
    """
    if _explicit_driver("PUDEEZ_ORACLE_DRIVER", ("steam", "memory"), "steam") == "memory":
        logger.warning("Using in-memory inventory oracle (development only)")
        return InMemoryInventoryOracle()

    config = config or OracleConfig.from_env()
    if not config.api_key:
        logger.error("STEAM_API_KEY not set - inventory queries will fail as unavailable")
    return SteamInventoryOracle(config)


def create_chain_source(config: Optional[ChainConfig] = None) -> ChainEventSource:
    """
    Create the chain event source.

    Sui unless PUDEEZ_CHAIN_DRIVER=memory. Without ESCROW_PACKAGE_ID every
    poll raises ContractMisconfigured, which the poller reports as unhealthy.
    """
    config = config or ChainConfig.from_env()
    if _explicit_driver("PUDEEZ_CHAIN_DRIVER", ("sui", "memory"), "sui") == "memory":
        logger.warning("Using in-memory chain event source (development only)")
        return InMemoryChainEventSource(page_limit=config.page_limit)

    if not config.package_id:
        logger.error("ESCROW_PACKAGE_ID not set - event polling is misconfigured")
    return SuiChainEventSource(config)


def build_runtime(
    store: Optional[EscrowStore] = None,
    oracle: Optional[InventoryOracle] = None,
    source: Optional[ChainEventSource] = None,
    poller_config: Optional[PollerConfig] = None,
) -> Runtime:
    """Assemble a Runtime, creating from the environment whatever was not passed in."""
    store = store if store is not None else create_store()
    oracle = oracle if oracle is not None else create_oracle()
    source = source if source is not None else create_chain_source()

    service = EscrowService(store, oracle)
    poller = EscrowEventPoller(source, service.reconciler, store, config=poller_config)

    return Runtime(store=store, oracle=oracle, source=source, service=service, poller=poller)
