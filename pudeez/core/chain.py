"""
Chain Event Source

Reads escrow lifecycle events emitted by the escrow Move module.

The chain is the source of truth for payment state. This module only
reads: it never submits transactions.

Two implementations:
- SuiChainEventSource: JSON-RPC client for a Sui fullnode (suix_queryEvents)
- InMemoryChainEventSource: For development and testing

CONFIGURATION:
- PUDEEZ_SUI_RPC_URL: Fullnode URL (default: Sui testnet)
- ESCROW_PACKAGE_ID: Published package id of the escrow contract
- PUDEEZ_ESCROW_MODULE: Move module name (default: steam_escrow)
- PUDEEZ_CHAIN_PAGE_LIMIT: Events per query (default: 50)
- PUDEEZ_CHAIN_TIMEOUT_SECONDS: Request timeout (default: 15)

CURSOR CONTRACT:
poll() returns the cursor to use next time. The caller commits it only
after the batch has been handled, so a failed poll or a failed batch is
simply re-read on the next tick.
"""

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx

from ..observability import get_logger
from ..schemas import ChainEventKind, RawEvent

logger = get_logger(__name__)

DEFAULT_SUI_RPC_URL = "https://fullnode.testnet.sui.io"

# JSON-RPC "Invalid params": the node does not know the event type,
# which means the package id or module name is wrong.
JSONRPC_INVALID_PARAMS = -32602


class ChainQueryFailure(Exception):
    """Transport failure, RPC error or malformed response. Retry the poll."""
    pass


class ContractMisconfigured(ChainQueryFailure):
    """The configured package/module does not exist on this network."""
    pass


@dataclass
class ChainConfig:
    """Configuration for the chain event source."""
    rpc_url: str = DEFAULT_SUI_RPC_URL
    package_id: str = ""
    module: str = "steam_escrow"
    page_limit: int = 50
    timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "ChainConfig":
        """Load configuration from environment variables."""
        return cls(
            rpc_url=os.environ.get("PUDEEZ_SUI_RPC_URL", DEFAULT_SUI_RPC_URL),
            package_id=os.environ.get("ESCROW_PACKAGE_ID", ""),
            module=os.environ.get("PUDEEZ_ESCROW_MODULE", "steam_escrow"),
            page_limit=int(os.environ.get("PUDEEZ_CHAIN_PAGE_LIMIT", "50")),
            timeout_seconds=float(os.environ.get("PUDEEZ_CHAIN_TIMEOUT_SECONDS", "15")),
        )

    def event_type(self, kind: ChainEventKind) -> str:
        """Fully qualified Move event type, e.g. 0xabc::steam_escrow::PaymentDeposited."""
        return f"{self.package_id}::{self.module}::{kind.value}"


@dataclass
class PollResult:
    """One page of events for a single kind, newest first."""
    events: list[RawEvent] = field(default_factory=list)
    next_cursor: Optional[dict] = None


class ChainEventSource(ABC):
    """
    Abstract source of escrow events.

    Implementations must:
    1. Return events of one kind in descending chain order
    2. Return an empty result (not an error) when nothing is new
    3. Raise ChainQueryFailure instead of returning partial data
    """

    @abstractmethod
    def poll(self, kind: ChainEventKind, cursor: Optional[dict] = None) -> PollResult:
        pass

    def close(self) -> None:
        """Release transport resources."""
        pass


# ============================================================
# SUI JSON-RPC IMPLEMENTATION
# ============================================================

class SuiChainEventSource(ChainEventSource):
    """
    Event source backed by a Sui fullnode.

    Pages are read in ascending order starting after the cursor, then
    reversed so callers always see newest first. Reading ascending keeps
    the cursor meaningful: nextCursor always points at the newest event
    already returned.
    """

    def __init__(self, config: Optional[ChainConfig] = None, client: Optional[httpx.Client] = None):
        self._config = config or ChainConfig.from_env()
        self._client = client or httpx.Client(timeout=self._config.timeout_seconds)
        self._request_id = 0
        self._id_lock = threading.Lock()

    @property
    def config(self) -> ChainConfig:
        return self._config

    def _next_request_id(self) -> int:
        with self._id_lock:
            self._request_id += 1
            return self._request_id

    def _rpc_call(self, method: str, params: list) -> dict:
        """Make a JSON-RPC call to the fullnode."""
        try:
            response = self._client.post(
                self._config.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "id": self._next_request_id(),
                    "method": method,
                    "params": params,
                },
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise ChainQueryFailure(f"{method} failed: {e}") from e
        except ValueError as e:
            raise ChainQueryFailure(f"{method} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise ChainQueryFailure(f"{method} returned a non-object response")

        error = body.get("error")
        if error:
            message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            if code == JSONRPC_INVALID_PARAMS or "Invalid params" in message:
                raise ContractMisconfigured(
                    f"Event query rejected ({message}). "
                    f"Check ESCROW_PACKAGE_ID={self._config.package_id!r} "
                    f"and module {self._config.module!r}"
                )
            raise ChainQueryFailure(f"RPC error: {error}")

        result = body.get("result")
        if not isinstance(result, dict):
            raise ChainQueryFailure(f"{method} returned no result")
        return result

    def poll(self, kind: ChainEventKind, cursor: Optional[dict] = None) -> PollResult:
        if not self._config.package_id:
            raise ContractMisconfigured("ESCROW_PACKAGE_ID is not set")

        result = self._rpc_call(
            "suix_queryEvents",
            [
                {"MoveEventType": self._config.event_type(kind)},
                cursor,
                self._config.page_limit,
                False,  # ascending
            ],
        )

        data = result.get("data")
        if not isinstance(data, list):
            raise ChainQueryFailure("suix_queryEvents result has no data list")

        events = [self._parse_event(kind, item) for item in data]
        events.reverse()

        next_cursor = result.get("nextCursor") if events else cursor
        if events and next_cursor is None:
            # Some nodes omit nextCursor on the last page; the newest id works
            next_cursor = {"txDigest": events[0].tx_digest, "eventSeq": str(events[0].event_seq)}

        return PollResult(events=events, next_cursor=next_cursor)

    def _parse_event(self, kind: ChainEventKind, item: dict) -> RawEvent:
        try:
            event_id = item["id"]
            return RawEvent(
                kind=kind,
                tx_digest=event_id["txDigest"],
                event_seq=int(event_id["eventSeq"]),
                timestamp_ms=int(item.get("timestampMs") or 0),
                parsed_json=item["parsedJson"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainQueryFailure(f"Malformed {kind.value} event: {e}") from e

    def close(self) -> None:
        self._client.close()


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryChainEventSource(ChainEventSource):
    """
    In-memory event source.

    Events are appended with publish(); the cursor is {"position": n},
    the number of events of that kind already delivered.
    """

    def __init__(self, page_limit: int = 50):
        self._page_limit = page_limit
        self._events: dict[ChainEventKind, list[RawEvent]] = {kind: [] for kind in ChainEventKind}
        self._failures: dict[ChainEventKind, list[Exception]] = {kind: [] for kind in ChainEventKind}
        self._lock = threading.Lock()

    def publish(self, event: RawEvent) -> None:
        with self._lock:
            self._events[event.kind].append(event)

    def fail_next(self, kind: ChainEventKind, error: Optional[Exception] = None) -> None:
        """Make the next poll of this kind raise (for testing)."""
        with self._lock:
            self._failures[kind].append(error or ChainQueryFailure("simulated failure"))

    def poll(self, kind: ChainEventKind, cursor: Optional[dict] = None) -> PollResult:
        with self._lock:
            if self._failures[kind]:
                raise self._failures[kind].pop(0)

            start = int((cursor or {}).get("position", 0))
            page = self._events[kind][start:start + self._page_limit]

        if not page:
            return PollResult(events=[], next_cursor=cursor)

        return PollResult(
            events=list(reversed(page)),
            next_cursor={"position": start + len(page)},
        )
