"""
Escrow Event Poller

Background threads that pull escrow events from the chain and hand them
to the reconciler. One thread per event kind, so a failing kind never
holds up the others.

CONFIGURATION:
- PUDEEZ_POLL_ENABLED: Enable background polling (default: false)
- PUDEEZ_POLL_INTERVAL_SECONDS: Seconds between polls when idle (default: 10)
- PUDEEZ_POLL_DEDUP_WINDOW: Recently seen event ids to remember (default: 5000)

USAGE:
    poller = EscrowEventPoller(source, reconciler, store)
    poller.start()

    # Or one synchronous pass over every kind (CLI, tests)
    results = poller.poll_all_once()

    poller.stop()

DELIVERY:
The cursor for a kind is saved only after its batch was handed to the
reconciler without error. Anything that fails is re-read next tick; the
dedup window and the reconciler's idempotence absorb the repeats.
"""

import logging
import os
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..db.store import EscrowStore
from ..observability import get_metrics
from ..schemas import ChainEventKind
from ..schemas.escrow import utc_now
from .chain import ChainEventSource, ChainQueryFailure, ContractMisconfigured
from .reconciler import BatchResult, EscrowReconciler

logger = logging.getLogger(__name__)


@dataclass
class PollerConfig:
    """Configuration for the event poller."""
    enabled: bool = False
    interval_seconds: float = 10.0
    dedup_window: int = 5000

    @classmethod
    def from_env(cls) -> "PollerConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=os.environ.get("PUDEEZ_POLL_ENABLED", "").lower() in ("1", "true", "yes"),
            interval_seconds=float(os.environ.get("PUDEEZ_POLL_INTERVAL_SECONDS", "10")),
            dedup_window=int(os.environ.get("PUDEEZ_POLL_DEDUP_WINDOW", "5000")),
        )


@dataclass
class KindState:
    """Last known polling state of one event kind."""
    misconfigured: bool = False
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    consecutive_failures: int = 0
    events_seen: int = 0


class EscrowEventPoller:
    """
    Polls the chain for every escrow event kind.

    Safe to run alongside other pollers on the same store: the store's
    idempotent insert and guarded update make overlapping deliveries harmless.
    """

    def __init__(
        self,
        source: ChainEventSource,
        reconciler: EscrowReconciler,
        store: EscrowStore,
        config: Optional[PollerConfig] = None,
    ):
        self._source = source
        self._reconciler = reconciler
        self._store = store
        self._config = config or PollerConfig.from_env()

        self._running = False
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

        self._seen: OrderedDict[tuple[str, int], None] = OrderedDict()
        self._seen_lock = threading.Lock()

        self._states = {kind: KindState() for kind in ChainEventKind}
        self._states_lock = threading.Lock()

    @property
    def config(self) -> PollerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start one background thread per event kind."""
        if not self._config.enabled:
            logger.info("Event poller disabled (set PUDEEZ_POLL_ENABLED=1 to enable)")
            return

        if self._running:
            logger.warning("Event poller already running")
            return

        self._running = True
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run_loop,
                args=(kind,),
                name=f"poll-{kind.value}",
                daemon=True,
            )
            for kind in ChainEventKind
        ]
        for thread in self._threads:
            thread.start()

        logger.info(f"Event poller started (interval={self._config.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop all polling threads."""
        if not self._running:
            return

        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)

        self._threads = []
        self._running = False
        logger.info("Event poller stopped")

    def _run_loop(self, kind: ChainEventKind) -> None:
        while not self._stop_event.is_set():
            got_events = False
            try:
                result = self.poll_once(kind)
                got_events = result is not None and self._total(result) > 0
                if kind == ChainEventKind.ESCROW_INITIALIZED:
                    self._reconciler.retry_deferred()
            except Exception as e:
                logger.exception(f"Error polling {kind.value}: {e}")
                self._record_failure(kind, str(e))

            # Catch up without waiting while pages keep coming
            if not got_events:
                self._stop_event.wait(timeout=self._config.interval_seconds)

    def poll_once(self, kind: ChainEventKind) -> Optional[BatchResult]:
        """
        Fetch and apply one page of events for a kind.

        Returns the batch tally, or None if the query failed.
        Store errors while applying propagate; the cursor is left where it was.
        """
        cursor = self._store.get_cursor(kind)

        try:
            page = self._source.poll(kind, cursor)
        except ContractMisconfigured as e:
            get_metrics().increment("chain_query_failures")
            logger.error(f"Escrow contract misconfigured for {kind.value}: {e}")
            self._record_failure(kind, str(e), misconfigured=True)
            return None
        except ChainQueryFailure as e:
            get_metrics().increment("chain_query_failures")
            logger.warning(f"Chain query for {kind.value} failed, will retry: {e}")
            self._record_failure(kind, str(e))
            return None

        fresh = [e for e in page.events if not self._was_seen(e.event_key)]
        result = self._reconciler.apply_batch(fresh)

        self._remember(e.event_key for e in fresh)
        if page.next_cursor != cursor:
            self._store.save_cursor(kind, page.next_cursor)

        with self._states_lock:
            state = self._states[kind]
            state.misconfigured = False
            state.last_error = None
            state.last_success_at = utc_now()
            state.consecutive_failures = 0
            state.events_seen += len(fresh)

        if fresh:
            logger.info(
                f"Polled {len(fresh)} {kind.value} event(s): "
                f"applied={result.applied} deferred={result.deferred} "
                f"duplicate={result.duplicate} ignored={result.ignored}"
            )
        return result

    def poll_all_once(self) -> dict[ChainEventKind, Optional[BatchResult]]:
        """One synchronous pass over every kind, then retry parked events."""
        results = {kind: self.poll_once(kind) for kind in ChainEventKind}
        self._reconciler.retry_deferred()
        return results

    def get_status(self) -> dict:
        """Current polling status, per kind."""
        with self._states_lock:
            kinds = {
                kind.value: {
                    "misconfigured": state.misconfigured,
                    "last_error": state.last_error,
                    "last_success_at": state.last_success_at.isoformat() if state.last_success_at else None,
                    "consecutive_failures": state.consecutive_failures,
                    "events_seen": state.events_seen,
                }
                for kind, state in self._states.items()
            }
        return {
            "enabled": self._config.enabled,
            "running": self._running,
            "interval_seconds": self._config.interval_seconds,
            "deferred_events": self._reconciler.deferred_count(),
            "kinds": kinds,
        }

    def _record_failure(self, kind: ChainEventKind, error: str, misconfigured: bool = False) -> None:
        with self._states_lock:
            state = self._states[kind]
            state.misconfigured = misconfigured
            state.last_error = error
            state.consecutive_failures += 1

    def _was_seen(self, key: tuple[str, int]) -> bool:
        with self._seen_lock:
            return key in self._seen

    def _remember(self, keys) -> None:
        with self._seen_lock:
            for key in keys:
                self._seen[key] = None
                self._seen.move_to_end(key)
            while len(self._seen) > self._config.dedup_window:
                self._seen.popitem(last=False)

    @staticmethod
    def _total(result: BatchResult) -> int:
        return result.applied + result.duplicate + result.deferred + result.ignored + result.rejected
