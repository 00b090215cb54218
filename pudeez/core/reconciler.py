"""
Escrow Reconciler

The state machine that turns chain events into escrow record transitions.

    initialized -> deposited -> completed
    initialized | deposited -> cancelled

RULES:
1. Chain events are delivered at least once and possibly out of order.
   Applying the same event twice has the same effect as applying it once.
2. An event that cannot apply YET (record missing, or record behind the
   event) is parked in the store and retried after the record moves.
   A cancellation with a non-zero refund is behind an initialized record:
   the refunded deposit has not been applied yet.
3. An event for a status the record has already passed, or for a terminal
   record, is a no-op. It is logged, never raised.
4. All work for one escrow id is serialized by a per-id lock.
   Subscribers are notified under that lock, after the store write, so
   they observe transitions of one escrow in commit order.
5. A failing subscriber is logged and never rolls back the write.

The explicit transition() command applies the same guards but raises
InvalidTransition / RecordNotFound to the caller.
"""

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from ..db.store import EscrowStore
from ..observability import get_logger, get_metrics
from ..schemas import (
    ChainEventKind,
    EscrowInitializedPayload,
    EscrowRecord,
    EscrowStatus,
    EscrowStatusUpdate,
    RawEvent,
    is_transition_allowed,
)
from ..schemas.escrow import LIFECYCLE_RANK
from .oracle import InventoryOracle, OracleUnavailable
from .verifier import RecordNotFound

logger = get_logger(__name__)


class InvalidTransition(Exception):
    """The requested status move is not allowed from the record's current status."""
    pass


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    IGNORED = "ignored"
    REJECTED = "rejected"  # payload failed validation


@dataclass
class BatchResult:
    """Tally of one apply_batch() call."""
    applied: int = 0
    duplicate: int = 0
    deferred: int = 0
    ignored: int = 0
    rejected: int = 0

    def add(self, outcome: EventOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)


Subscriber = Callable[[EscrowStatusUpdate], None]


@dataclass(frozen=True)
class SubscriptionHandle:
    """Revocable registration of a status-change callback."""
    subscription_id: str
    callback: Subscriber


class _KeyedLocks:
    """One lock per key, created on demand and dropped when unused."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str):
        with self._mutex:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._mutex:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class EscrowReconciler:
    """
    Applies chain events to the escrow store.

    Usage:
        reconciler = EscrowReconciler(store, oracle)
        handle = reconciler.subscribe(lambda update: print(update.status))
        reconciler.apply_batch(events)
    """

    def __init__(self, store: EscrowStore, oracle: InventoryOracle):
        self._store = store
        self._oracle = oracle
        self._locks = _KeyedLocks()
        self._subscribers: dict[str, SubscriptionHandle] = {}
        self._subscribers_lock = threading.Lock()

    # ----------------------------------------------------------------
    # Subscriptions
    # ----------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> SubscriptionHandle:
        handle = SubscriptionHandle(subscription_id=str(uuid.uuid4()), callback=callback)
        with self._subscribers_lock:
            self._subscribers[handle.subscription_id] = handle
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Returns False if the handle was not (or no longer) registered."""
        with self._subscribers_lock:
            return self._subscribers.pop(handle.subscription_id, None) is not None

    def _notify(self, update: EscrowStatusUpdate) -> None:
        with self._subscribers_lock:
            handles = list(self._subscribers.values())

        for handle in handles:
            try:
                handle.callback(update)
            except Exception:
                get_metrics().increment("notifications_failed")
                logger.exception(
                    "Subscriber failed; transition stays committed",
                    escrow_id=update.escrow_id,
                    status=update.status.value,
                    subscription_id=handle.subscription_id,
                )

    # ----------------------------------------------------------------
    # Chain events
    # ----------------------------------------------------------------

    def apply_batch(self, events: Iterable[RawEvent]) -> BatchResult:
        """Apply a batch in chain order (oldest first), whatever order it arrived in."""
        result = BatchResult()
        for event in sorted(events, key=lambda e: e.chain_order):
            result.add(self.apply_event(event))
        return result

    def apply_event(self, event: RawEvent) -> EventOutcome:
        escrow_id = event.escrow_id
        try:
            payload = event.payload()
        except ValidationError as e:
            get_metrics().increment("events_ignored")
            logger.error(
                f"Rejected malformed {event.kind.value} event",
                tx_digest=event.tx_digest,
                event_seq=event.event_seq,
                error=str(e),
            )
            return EventOutcome.REJECTED

        with self._locks.hold(escrow_id):
            outcome = self._apply_locked(event, payload)
            if outcome == EventOutcome.APPLIED:
                self._drain_deferred_locked(escrow_id)

        self._count(outcome)
        return outcome

    def retry_deferred(self) -> int:
        """
        Retry every parked event. Returns how many were applied.

        The poller calls this once per pass so parked events do not wait
        for another event on the same escrow.
        """
        applied = 0
        escrow_ids = {e.escrow_id for e in self._store.list_deferred()}
        for escrow_id in escrow_ids:
            with self._locks.hold(escrow_id):
                applied += self._drain_deferred_locked(escrow_id)
        return applied

    def deferred_count(self) -> int:
        return len(self._store.list_deferred())

    def _drain_deferred_locked(self, escrow_id: str) -> int:
        """Apply parked events for one escrow until nothing more moves. Caller holds the lock."""
        applied = 0
        progressed = True
        while progressed:
            progressed = False
            for parked in self._store.list_deferred(escrow_id):
                outcome = self._apply_locked(parked, parked.payload(), parking=False)
                if outcome == EventOutcome.DEFERRED:
                    continue
                self._store.discard_deferred(parked)
                if outcome == EventOutcome.APPLIED:
                    applied += 1
                    progressed = True
                    logger.info(
                        f"Applied parked {parked.kind.value}",
                        escrow_id=escrow_id,
                        tx_digest=parked.tx_digest,
                    )
        return applied

    def _apply_locked(self, event: RawEvent, payload, parking: bool = True) -> EventOutcome:
        if event.kind == ChainEventKind.ESCROW_INITIALIZED:
            return self._apply_initialized(event, payload)

        escrow_id = event.escrow_id
        target = event.kind.target_status
        record = self._store.get(escrow_id)

        if record is None:
            return self._park(event, "record not yet known", parking)

        if record.status == target:
            return EventOutcome.DUPLICATE

        if self._refund_precedes_deposit(event, payload, record):
            return self._park(event, "refund implies a deposit not yet applied", parking)

        if is_transition_allowed(record.status, target):
            if not self._store.update_status(escrow_id, target, event.tx_digest):
                # Lost a race with another writer; the stored status already moved
                logger.info(
                    f"{event.kind.value} no longer applies",
                    escrow_id=escrow_id,
                    tx_digest=event.tx_digest,
                )
                return EventOutcome.IGNORED
            self._notify_transition(escrow_id, record.status, event.tx_digest)
            logger.info(
                f"Escrow {target.value}",
                escrow_id=escrow_id,
                status=target.value,
                previous_status=record.status.value,
                tx_digest=event.tx_digest,
            )
            return EventOutcome.APPLIED

        if not record.is_terminal and LIFECYCLE_RANK[target] > LIFECYCLE_RANK[record.status]:
            return self._park(event, f"record is still {record.status.value}", parking)

        logger.warning(
            f"Ignoring {event.kind.value}: invalid transition {record.status.value} -> {target.value}",
            escrow_id=escrow_id,
            tx_digest=event.tx_digest,
        )
        return EventOutcome.IGNORED

    @staticmethod
    def _refund_precedes_deposit(event: RawEvent, payload, record: EscrowRecord) -> bool:
        """
        A cancellation that refunds money cannot come before the deposit of
        that money. Kinds are polled independently, so the deposit may simply
        not have been read yet; applying the cancel now would skip deposited.
        """
        return (
            event.kind == ChainEventKind.ESCROW_CANCELLED
            and record.status == EscrowStatus.INITIALIZED
            and payload.refund_amount > 0
        )

    def _park(self, event: RawEvent, reason: str, parking: bool) -> EventOutcome:
        if parking and self._store.defer_event(event):
            logger.info(
                f"Deferred {event.kind.value}: {reason}",
                escrow_id=event.escrow_id,
                tx_digest=event.tx_digest,
            )
        return EventOutcome.DEFERRED

    def _apply_initialized(self, event: RawEvent, payload: EscrowInitializedPayload) -> EventOutcome:
        if self._store.get(payload.escrow_id) is not None:
            return EventOutcome.DUPLICATE

        record = EscrowRecord(
            escrow_id=payload.escrow_id,
            buyer_address=payload.buyer,
            seller_address=payload.seller,
            asset_id=payload.asset_id,
            asset_name=payload.asset_name_or_default,
            collection_id=payload.collection_id_or_default,
            icon_ref=payload.icon_ref,
            trade_reference=payload.trade_reference,
            price_in_base_unit=payload.price,
            status=EscrowStatus.INITIALIZED,
            chain_tx_digest=event.tx_digest,
            **self._capture_baseline(payload),
        )

        if not self._store.insert_if_absent(record):
            return EventOutcome.DUPLICATE

        stored = self._store.get(record.escrow_id)
        self._notify(self._status_update(stored, previous_status=None, tx_digest=event.tx_digest))
        logger.info(
            "Escrow initialized",
            escrow_id=record.escrow_id,
            price_in_base_unit=record.price_in_base_unit,
            baseline_missing=record.baseline_missing,
        )
        return EventOutcome.APPLIED

    def _capture_baseline(self, payload: EscrowInitializedPayload) -> dict:
        """
        Baseline inventory counts for a new escrow.

        Never raises: when the counts cannot be taken the record is created
        anyway, flagged baseline_missing, with zero counts.
        """
        collection_id = payload.collection_id_or_default
        seller_inventory_id = self._store.get_linked_account(payload.seller)
        buyer_inventory_id = self._store.get_linked_account(payload.buyer)

        fields = {
            "seller_inventory_id": seller_inventory_id,
            "buyer_inventory_id": buyer_inventory_id,
            "item_type_key": None,
            "initial_seller_item_count": 0,
            "initial_buyer_item_count": 0,
            "baseline_missing": True,
        }

        if not seller_inventory_id or not buyer_inventory_id:
            logger.warning(
                "Missing baseline: inventory account not linked",
                escrow_id=payload.escrow_id,
                seller_linked=bool(seller_inventory_id),
                buyer_linked=bool(buyer_inventory_id),
            )
            return fields

        try:
            type_key = self._oracle.resolve_item_type(seller_inventory_id, collection_id, payload.asset_id)
            if type_key is None:
                logger.warning(
                    "Missing baseline: asset not found in seller inventory",
                    escrow_id=payload.escrow_id,
                    asset_id=payload.asset_id,
                )
                return fields
            fields["item_type_key"] = type_key
            seller_count = self._oracle.count_by_type(seller_inventory_id, collection_id, type_key)
            buyer_count = self._oracle.count_by_type(buyer_inventory_id, collection_id, type_key)
        except OracleUnavailable as e:
            get_metrics().increment("oracle_failures")
            logger.warning(
                "Missing baseline: inventory unavailable",
                escrow_id=payload.escrow_id,
                error=str(e),
            )
            return fields

        fields.update(
            initial_seller_item_count=seller_count,
            initial_buyer_item_count=buyer_count,
            baseline_missing=False,
        )
        return fields

    # ----------------------------------------------------------------
    # Commands
    # ----------------------------------------------------------------

    def transition(
        self,
        escrow_id: str,
        new_status: EscrowStatus,
        tx_digest: Optional[str] = None,
    ) -> EscrowRecord:
        """
        Explicitly move an escrow to new_status.

        Raises:
            RecordNotFound: unknown escrow id
            InvalidTransition: move not allowed from the current status
        """
        with self._locks.hold(escrow_id):
            record = self._store.get(escrow_id)
            if record is None:
                raise RecordNotFound(f"Escrow not found: {escrow_id}")

            if not is_transition_allowed(record.status, new_status):
                raise InvalidTransition(
                    f"Cannot move escrow {escrow_id} from {record.status.value} to {new_status.value}"
                )

            if not self._store.update_status(escrow_id, new_status, tx_digest):
                current = self._store.get(escrow_id)
                raise InvalidTransition(
                    f"Escrow {escrow_id} moved to {current.status.value} concurrently"
                )

            self._notify_transition(escrow_id, record.status, tx_digest)
            logger.info(
                f"Escrow {new_status.value} by command",
                escrow_id=escrow_id,
                previous_status=record.status.value,
            )
            self._drain_deferred_locked(escrow_id)
            return self._store.get(escrow_id)

    # ----------------------------------------------------------------
    # Helpers
    # ----------------------------------------------------------------

    def _notify_transition(
        self,
        escrow_id: str,
        previous_status: EscrowStatus,
        tx_digest: Optional[str],
    ) -> None:
        # Enrich from the committed record; later chain events carry only part of it
        stored = self._store.get(escrow_id)
        self._notify(self._status_update(stored, previous_status, tx_digest))

    @staticmethod
    def _status_update(
        record: EscrowRecord,
        previous_status: Optional[EscrowStatus],
        tx_digest: Optional[str],
    ) -> EscrowStatusUpdate:
        return EscrowStatusUpdate(
            escrow_id=record.escrow_id,
            status=record.status,
            previous_status=previous_status,
            buyer=record.buyer_address,
            seller=record.seller_address,
            asset_id=record.asset_id,
            price_in_base_unit=record.price_in_base_unit,
            transaction_digest=tx_digest or record.chain_tx_digest,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _count(outcome: EventOutcome) -> None:
        counter = {
            EventOutcome.APPLIED: "events_applied",
            EventOutcome.DEFERRED: "events_deferred",
            EventOutcome.IGNORED: "events_ignored",
        }.get(outcome)
        if counter:
            get_metrics().increment(counter)
