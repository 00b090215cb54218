"""
Escrow Store Abstraction

This module defines the EscrowStore interface and provides two implementations:
- InMemoryEscrowStore: For development and testing
- PostgresEscrowStore: For production with full durability and concurrency safety

The EscrowStore is the single source of truth for escrow state and the only
component permitted to mutate an EscrowRecord. It is responsible for:
- Idempotent insert keyed by escrow_id
- Atomic read-modify-write of status (no lost updates for one id)
- Point lookup by id, filter by participant, filter by status
- Poll cursors per chain event kind
- Chain address -> inventory account links
- Parked (deferred) chain events

The EscrowReconciler retains responsibility for:
- Deciding which transition a chain event asks for
- Deferring out-of-order events
- Notifying subscribers

TRANSITION CONTRACT:
update_status() validates the move against the state machine INSIDE the
atomic section. A caller's earlier read may be stale; the store's check is
the one that counts.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Optional

import psycopg2

from ..schemas import (
    ChainEventKind,
    EscrowRecord,
    EscrowStatus,
    ItemTypeKey,
    RawEvent,
    is_transition_allowed,
)
from ..schemas.escrow import utc_now


# ============================================================
# EXCEPTIONS
# ============================================================

class EscrowStoreError(Exception):
    """Base exception for escrow store errors."""
    pass


class LockTimeoutError(EscrowStoreError):
    """Raised when a row lock cannot be acquired in time (store busy)."""
    pass


class BaselineAlreadyCapturedError(EscrowStoreError):
    """Raised when a baseline correction targets a record whose baseline is already trusted."""
    pass


def check_baseline_counts(initial_seller_item_count: int, initial_buyer_item_count: int) -> None:
    """Raise ValueError unless both baseline counts are non-negative integers."""
    for name, value in (
        ("initial_seller_item_count", initial_seller_item_count),
        ("initial_buyer_item_count", initial_buyer_item_count),
    ):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"{name} must be a non-negative integer, got {value!r}")


def next_updated_at(previous: datetime) -> datetime:
    """
    Timestamp for a status transition.

    Strictly greater than the previous value even if the wall clock
    stepped backwards.
    """
    now = utc_now()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EscrowStore(ABC):
    """
    Abstract base class for escrow storage.

    Implementations must ensure:
    1. insert_if_absent never overwrites an existing record
    2. update_status is one atomic read-modify-write per escrow_id
    3. update_status rejects moves the state machine does not allow
    4. Records are never physically deleted
    """

    @abstractmethod
    def insert_if_absent(self, record: EscrowRecord) -> bool:
        """
        Insert a new record unless one already exists for its escrow_id.

        Returns:
            True if the record was created, False if it already existed
        """
        pass

    @abstractmethod
    def update_status(
        self,
        escrow_id: str,
        new_status: EscrowStatus,
        tx_digest: Optional[str] = None,
    ) -> bool:
        """
        Atomically move a record to new_status.

        Returns:
            True if the status changed. False if the record does not exist
            or the move is not allowed from the stored status.
        """
        pass

    @abstractmethod
    def get(self, escrow_id: str) -> Optional[EscrowRecord]:
        """Get a record by id."""
        pass

    @abstractmethod
    def list_by_participant(self, account_id: str) -> list[EscrowRecord]:
        """
        List records where account_id is buyer or seller.

        Matches chain addresses and linked inventory ids.
        Ordered by created_at ascending.
        """
        pass

    @abstractmethod
    def list_by_status(self, status: EscrowStatus) -> list[EscrowRecord]:
        """List records currently in the given status, ordered by created_at."""
        pass

    @abstractmethod
    def list_all(self) -> list[EscrowRecord]:
        """List every record, ordered by created_at."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Total number of records."""
        pass

    @abstractmethod
    def correct_baseline(
        self,
        escrow_id: str,
        initial_seller_item_count: int,
        initial_buyer_item_count: int,
        item_type_key: Optional[ItemTypeKey] = None,
        seller_inventory_id: Optional[str] = None,
        buyer_inventory_id: Optional[str] = None,
    ) -> bool:
        """
        Administrative baseline correction.

        Only allowed while baseline_missing is set; clears the flag.
        Does not touch status or updated_at.

        Returns:
            True if corrected, False if the record does not exist

        Raises:
            BaselineAlreadyCapturedError: if the baseline is already trusted
            ValueError: if either count is negative
        """
        pass

    @abstractmethod
    def set_blob_reference(self, escrow_id: str, blob_reference: str) -> bool:
        """Attach an off-chain metadata pointer. Returns False if the record is unknown."""
        pass

    # ----------------------------------------------------------------
    # Account links
    # ----------------------------------------------------------------

    @abstractmethod
    def link_account(self, address: str, inventory_id: str) -> None:
        """Map a chain address to an inventory account id (upsert)."""
        pass

    @abstractmethod
    def get_linked_account(self, address: str) -> Optional[str]:
        """Inventory account id for a chain address, if linked."""
        pass

    # ----------------------------------------------------------------
    # Poll cursors
    # ----------------------------------------------------------------

    @abstractmethod
    def get_cursor(self, kind: ChainEventKind) -> Optional[dict]:
        """Last committed poll cursor for an event kind."""
        pass

    @abstractmethod
    def save_cursor(self, kind: ChainEventKind, cursor: Optional[dict]) -> None:
        """Persist the poll cursor for an event kind."""
        pass

    # ----------------------------------------------------------------
    # Deferred events
    # ----------------------------------------------------------------
    # Events that arrived before the record could accept them. They are
    # kept here, not in memory, because the poll cursor for their kind
    # has already moved past them.

    @abstractmethod
    def defer_event(self, event: RawEvent) -> bool:
        """Park an event. Returns False if it was already parked."""
        pass

    @abstractmethod
    def list_deferred(self, escrow_id: Optional[str] = None) -> list[RawEvent]:
        """Parked events (optionally for one escrow), in chain order."""
        pass

    @abstractmethod
    def discard_deferred(self, event: RawEvent) -> None:
        """Remove a parked event once it has been applied or ignored."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEscrowStore(EscrowStore):
    """
    In-memory implementation of EscrowStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._records: dict[str, EscrowRecord] = {}
        self._links: dict[str, str] = {}
        self._cursors: dict[ChainEventKind, Optional[dict]] = {}
        self._deferred: dict[tuple[str, int], RawEvent] = {}
        self._lock = Lock()

    def insert_if_absent(self, record: EscrowRecord) -> bool:
        with self._lock:
            if record.escrow_id in self._records:
                return False
            self._records[record.escrow_id] = record.model_copy(deep=True)
            return True

    def update_status(
        self,
        escrow_id: str,
        new_status: EscrowStatus,
        tx_digest: Optional[str] = None,
    ) -> bool:
        with self._lock:
            current = self._records.get(escrow_id)
            if current is None:
                return False
            if not is_transition_allowed(current.status, new_status):
                return False

            # Replace, never mutate: readers may hold the old copy
            self._records[escrow_id] = current.model_copy(update={
                "status": new_status,
                "chain_tx_digest": tx_digest if tx_digest is not None else current.chain_tx_digest,
                "updated_at": next_updated_at(current.updated_at),
            })
            return True

    def get(self, escrow_id: str) -> Optional[EscrowRecord]:
        with self._lock:
            record = self._records.get(escrow_id)
            return record.model_copy(deep=True) if record else None

    def list_by_participant(self, account_id: str) -> list[EscrowRecord]:
        with self._lock:
            matches = [r for r in self._records.values() if r.involves(account_id)]
            return [r.model_copy(deep=True) for r in sorted(matches, key=lambda r: r.created_at)]

    def list_by_status(self, status: EscrowStatus) -> list[EscrowRecord]:
        with self._lock:
            matches = [r for r in self._records.values() if r.status == status]
            return [r.model_copy(deep=True) for r in sorted(matches, key=lambda r: r.created_at)]

    def list_all(self) -> list[EscrowRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in sorted(self._records.values(), key=lambda r: r.created_at)
            ]

    def count(self) -> int:
        return len(self._records)

    def correct_baseline(
        self,
        escrow_id: str,
        initial_seller_item_count: int,
        initial_buyer_item_count: int,
        item_type_key: Optional[ItemTypeKey] = None,
        seller_inventory_id: Optional[str] = None,
        buyer_inventory_id: Optional[str] = None,
    ) -> bool:
        check_baseline_counts(initial_seller_item_count, initial_buyer_item_count)
        with self._lock:
            current = self._records.get(escrow_id)
            if current is None:
                return False
            if not current.baseline_missing:
                raise BaselineAlreadyCapturedError(
                    f"Escrow {escrow_id} already has a captured baseline"
                )

            self._records[escrow_id] = current.model_copy(update={
                "initial_seller_item_count": initial_seller_item_count,
                "initial_buyer_item_count": initial_buyer_item_count,
                "item_type_key": item_type_key or current.item_type_key,
                "seller_inventory_id": seller_inventory_id or current.seller_inventory_id,
                "buyer_inventory_id": buyer_inventory_id or current.buyer_inventory_id,
                "baseline_missing": False,
            })
            return True

    def set_blob_reference(self, escrow_id: str, blob_reference: str) -> bool:
        with self._lock:
            current = self._records.get(escrow_id)
            if current is None:
                return False
            self._records[escrow_id] = current.model_copy(update={"blob_reference": blob_reference})
            return True

    def link_account(self, address: str, inventory_id: str) -> None:
        with self._lock:
            self._links[address] = inventory_id

    def get_linked_account(self, address: str) -> Optional[str]:
        return self._links.get(address)

    def get_cursor(self, kind: ChainEventKind) -> Optional[dict]:
        cursor = self._cursors.get(kind)
        return dict(cursor) if cursor else None

    def save_cursor(self, kind: ChainEventKind, cursor: Optional[dict]) -> None:
        with self._lock:
            self._cursors[kind] = dict(cursor) if cursor else None

    def defer_event(self, event: RawEvent) -> bool:
        with self._lock:
            if event.event_key in self._deferred:
                return False
            self._deferred[event.event_key] = event
            return True

    def list_deferred(self, escrow_id: Optional[str] = None) -> list[RawEvent]:
        with self._lock:
            events = [
                e for e in self._deferred.values()
                if escrow_id is None or e.escrow_id == escrow_id
            ]
        return sorted(events, key=lambda e: e.chain_order)

    def discard_deferred(self, event: RawEvent) -> None:
        with self._lock:
            self._deferred.pop(event.event_key, None)

    def clear(self) -> None:
        """Clear all state (for testing only)."""
        with self._lock:
            self._records.clear()
            self._links.clear()
            self._cursors.clear()
            self._deferred.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION (SYNC)
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS escrows (
    escrow_id TEXT PRIMARY KEY,
    buyer_address TEXT NOT NULL,
    seller_address TEXT NOT NULL,
    buyer_inventory_id TEXT,
    seller_inventory_id TEXT,
    asset_id TEXT NOT NULL,
    asset_name TEXT NOT NULL,
    asset_amount INTEGER NOT NULL DEFAULT 1,
    collection_id TEXT NOT NULL,
    icon_ref TEXT NOT NULL DEFAULT '',
    item_type_key TEXT,
    trade_reference TEXT NOT NULL DEFAULT '',
    price_in_base_unit NUMERIC(39, 0) NOT NULL,
    initial_seller_item_count INTEGER NOT NULL DEFAULT 0,
    initial_buyer_item_count INTEGER NOT NULL DEFAULT 0,
    baseline_missing BOOLEAN NOT NULL DEFAULT FALSE,
    status TEXT NOT NULL,
    chain_tx_digest TEXT,
    blob_reference TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_escrows_status ON escrows (status);
CREATE INDEX IF NOT EXISTS idx_escrows_buyer ON escrows (buyer_address);
CREATE INDEX IF NOT EXISTS idx_escrows_seller ON escrows (seller_address);

CREATE TABLE IF NOT EXISTS account_links (
    address TEXT PRIMARY KEY,
    inventory_id TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS poll_cursors (
    event_kind TEXT PRIMARY KEY,
    cursor_json TEXT
);

CREATE TABLE IF NOT EXISTS deferred_events (
    tx_digest TEXT NOT NULL,
    event_seq INTEGER NOT NULL,
    escrow_id TEXT,
    event_kind TEXT NOT NULL,
    timestamp_ms BIGINT NOT NULL,
    parsed_json TEXT NOT NULL,
    PRIMARY KEY (tx_digest, event_seq)
);

CREATE INDEX IF NOT EXISTS idx_deferred_escrow ON deferred_events (escrow_id);
"""

_RECORD_COLUMNS = (
    "escrow_id",
    "buyer_address",
    "seller_address",
    "buyer_inventory_id",
    "seller_inventory_id",
    "asset_id",
    "asset_name",
    "asset_amount",
    "collection_id",
    "icon_ref",
    "item_type_key",
    "trade_reference",
    "price_in_base_unit",
    "initial_seller_item_count",
    "initial_buyer_item_count",
    "baseline_missing",
    "status",
    "chain_tx_digest",
    "blob_reference",
    "created_at",
    "updated_at",
)

_SELECT_RECORD = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM escrows"


class PostgresEscrowStore(EscrowStore):
    """
    PostgreSQL implementation of EscrowStore.

    Provides:
    - Full ACID guarantees
    - Idempotent insert via ON CONFLICT DO NOTHING
    - Atomic status update via SELECT ... FOR UPDATE row locking
    - Multi-instance support (shared database)
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Every operation opens its own connection from connection_factory, so the
    same store instance can be shared across polling threads.

    Usage:
        store = PostgresEscrowStore(connection_factory)
        store.ensure_schema()
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000  # 2 seconds
    STATEMENT_TIMEOUT_MS = 10000  # 10 seconds

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL escrow store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for row lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            cursor.close()
            conn.close()

    def _connect(self):
        try:
            return self._connection_factory()
        except psycopg2.OperationalError as e:
            raise EscrowStoreError(f"Escrow store unreachable: {e}") from e

    def _begin(self, conn, cursor) -> None:
        conn.autocommit = False
        # SET LOCAL keeps timeouts transaction-scoped
        cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
        cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Determine the type of timeout from a PostgreSQL exception.

        Returns "lock", "statement", "timeout" or None.

        NOTE: PostgreSQL uses 57014 (query_canceled) for BOTH lock_timeout and
        statement_timeout. We distinguish by checking the error message.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        return None

    def _translate(self, e: Exception) -> Exception:
        kind = self._timeout_kind(e)
        if kind == "lock":
            return LockTimeoutError("Escrow row busy - could not acquire lock. Try again.")
        if kind is not None:
            return EscrowStoreError("Query timed out - statement took too long.")
        return e

    def insert_if_absent(self, record: EscrowRecord) -> bool:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            self._begin(conn, cursor)
            placeholders = ", ".join(["%s"] * len(_RECORD_COLUMNS))
            cursor.execute(
                f"INSERT INTO escrows ({', '.join(_RECORD_COLUMNS)}) "
                f"VALUES ({placeholders}) ON CONFLICT (escrow_id) DO NOTHING",
                self._record_to_row(record),
            )
            created = cursor.rowcount == 1
            conn.commit()
            return created
        except Exception as e:
            conn.rollback()
            translated = self._translate(e)
            if translated is e:
                raise
            raise translated from e
        finally:
            cursor.close()
            conn.close()

    def update_status(
        self,
        escrow_id: str,
        new_status: EscrowStatus,
        tx_digest: Optional[str] = None,
    ) -> bool:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            self._begin(conn, cursor)
            cursor.execute(
                "SELECT status, updated_at FROM escrows WHERE escrow_id = %s FOR UPDATE",
                (escrow_id,),
            )
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                return False

            current_status = EscrowStatus(row[0])
            if not is_transition_allowed(current_status, new_status):
                conn.rollback()
                return False

            cursor.execute(
                """
                UPDATE escrows
                SET status = %s,
                    chain_tx_digest = COALESCE(%s, chain_tx_digest),
                    updated_at = %s
                WHERE escrow_id = %s
                """,
                (new_status.value, tx_digest, next_updated_at(row[1]), escrow_id),
            )
            conn.commit()
            return True
        except Exception as e:
            conn.rollback()
            translated = self._translate(e)
            if translated is e:
                raise
            raise translated from e
        finally:
            cursor.close()
            conn.close()

    def _fetch_records(self, where: str = "", params: tuple = ()) -> list[EscrowRecord]:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute(f"{_SELECT_RECORD} {where} ORDER BY created_at", params)
            return [self._row_to_record(row) for row in cursor.fetchall()]
        finally:
            cursor.close()
            conn.close()

    def get(self, escrow_id: str) -> Optional[EscrowRecord]:
        records = self._fetch_records("WHERE escrow_id = %s", (escrow_id,))
        return records[0] if records else None

    def list_by_participant(self, account_id: str) -> list[EscrowRecord]:
        return self._fetch_records(
            """
            WHERE buyer_address = %s OR seller_address = %s
               OR buyer_inventory_id = %s OR seller_inventory_id = %s
            """,
            (account_id, account_id, account_id, account_id),
        )

    def list_by_status(self, status: EscrowStatus) -> list[EscrowRecord]:
        return self._fetch_records("WHERE status = %s", (status.value,))

    def list_all(self) -> list[EscrowRecord]:
        return self._fetch_records()

    def count(self) -> int:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM escrows")
            return cursor.fetchone()[0]
        finally:
            cursor.close()
            conn.close()

    def correct_baseline(
        self,
        escrow_id: str,
        initial_seller_item_count: int,
        initial_buyer_item_count: int,
        item_type_key: Optional[ItemTypeKey] = None,
        seller_inventory_id: Optional[str] = None,
        buyer_inventory_id: Optional[str] = None,
    ) -> bool:
        check_baseline_counts(initial_seller_item_count, initial_buyer_item_count)
        conn = self._connect()
        cursor = conn.cursor()
        try:
            self._begin(conn, cursor)
            cursor.execute(
                "SELECT baseline_missing FROM escrows WHERE escrow_id = %s FOR UPDATE",
                (escrow_id,),
            )
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                return False
            if not row[0]:
                conn.rollback()
                raise BaselineAlreadyCapturedError(
                    f"Escrow {escrow_id} already has a captured baseline"
                )

            cursor.execute(
                """
                UPDATE escrows
                SET initial_seller_item_count = %s,
                    initial_buyer_item_count = %s,
                    item_type_key = COALESCE(%s, item_type_key),
                    seller_inventory_id = COALESCE(%s, seller_inventory_id),
                    buyer_inventory_id = COALESCE(%s, buyer_inventory_id),
                    baseline_missing = FALSE
                WHERE escrow_id = %s
                """,
                (
                    initial_seller_item_count,
                    initial_buyer_item_count,
                    item_type_key.to_string() if item_type_key else None,
                    seller_inventory_id,
                    buyer_inventory_id,
                    escrow_id,
                ),
            )
            conn.commit()
            return True
        except BaselineAlreadyCapturedError:
            raise
        except Exception as e:
            conn.rollback()
            translated = self._translate(e)
            if translated is e:
                raise
            raise translated from e
        finally:
            cursor.close()
            conn.close()

    def _execute_write(self, sql: str, params: tuple) -> int:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute(sql, params)
            rowcount = cursor.rowcount
            conn.commit()
            return rowcount
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()

    def set_blob_reference(self, escrow_id: str, blob_reference: str) -> bool:
        return self._execute_write(
            "UPDATE escrows SET blob_reference = %s WHERE escrow_id = %s",
            (blob_reference, escrow_id),
        ) == 1

    def link_account(self, address: str, inventory_id: str) -> None:
        self._execute_write(
            """
            INSERT INTO account_links (address, inventory_id) VALUES (%s, %s)
            ON CONFLICT (address) DO UPDATE SET inventory_id = EXCLUDED.inventory_id
            """,
            (address, inventory_id),
        )

    def get_linked_account(self, address: str) -> Optional[str]:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute(
                "SELECT inventory_id FROM account_links WHERE address = %s",
                (address,),
            )
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            cursor.close()
            conn.close()

    def get_cursor(self, kind: ChainEventKind) -> Optional[dict]:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute(
                "SELECT cursor_json FROM poll_cursors WHERE event_kind = %s",
                (kind.value,),
            )
            row = cursor.fetchone()
            if row is None or row[0] is None:
                return None
            return json.loads(row[0])
        finally:
            cursor.close()
            conn.close()

    def save_cursor(self, kind: ChainEventKind, cursor: Optional[dict]) -> None:
        self._execute_write(
            """
            INSERT INTO poll_cursors (event_kind, cursor_json) VALUES (%s, %s)
            ON CONFLICT (event_kind) DO UPDATE SET cursor_json = EXCLUDED.cursor_json
            """,
            (kind.value, json.dumps(cursor) if cursor else None),
        )

    def defer_event(self, event: RawEvent) -> bool:
        return self._execute_write(
            """
            INSERT INTO deferred_events
                (tx_digest, event_seq, escrow_id, event_kind, timestamp_ms, parsed_json)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (tx_digest, event_seq) DO NOTHING
            """,
            (
                event.tx_digest,
                event.event_seq,
                event.escrow_id,
                event.kind.value,
                event.timestamp_ms,
                json.dumps(event.parsed_json),
            ),
        ) == 1

    def list_deferred(self, escrow_id: Optional[str] = None) -> list[RawEvent]:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            sql = (
                "SELECT event_kind, tx_digest, event_seq, timestamp_ms, parsed_json "
                "FROM deferred_events"
            )
            if escrow_id is None:
                cursor.execute(sql)
            else:
                cursor.execute(f"{sql} WHERE escrow_id = %s", (escrow_id,))
            events = [
                RawEvent(
                    kind=ChainEventKind(row[0]),
                    tx_digest=row[1],
                    event_seq=row[2],
                    timestamp_ms=row[3],
                    parsed_json=json.loads(row[4]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            cursor.close()
            conn.close()
        return sorted(events, key=lambda e: e.chain_order)

    def discard_deferred(self, event: RawEvent) -> None:
        self._execute_write(
            "DELETE FROM deferred_events WHERE tx_digest = %s AND event_seq = %s",
            (event.tx_digest, event.event_seq),
        )

    def _record_to_row(self, record: EscrowRecord) -> tuple:
        return (
            record.escrow_id,
            record.buyer_address,
            record.seller_address,
            record.buyer_inventory_id,
            record.seller_inventory_id,
            record.asset_id,
            record.asset_name,
            record.asset_amount,
            record.collection_id,
            record.icon_ref,
            record.item_type_key.to_string() if record.item_type_key else None,
            record.trade_reference,
            record.price_in_base_unit,
            record.initial_seller_item_count,
            record.initial_buyer_item_count,
            record.baseline_missing,
            record.status.value,
            record.chain_tx_digest,
            record.blob_reference,
            record.created_at,
            record.updated_at,
        )

    def _row_to_record(self, row: tuple) -> EscrowRecord:
        """Convert a database row to an EscrowRecord."""
        data = dict(zip(_RECORD_COLUMNS, row))
        if data["item_type_key"]:
            data["item_type_key"] = ItemTypeKey.from_string(data["item_type_key"])
        # NUMERIC comes back as Decimal
        data["price_in_base_unit"] = int(data["price_in_base_unit"])
        return EscrowRecord.model_validate(data)
