"""
Inventory Oracle

Read-only view of item ownership in the third-party inventory service.
The inventory service is the source of truth for who holds what; this
module never caches its answers.

FAILURE CONTRACT:
Every operation either returns a real observation or raises
OracleUnavailable. "Could not find out" is never reported as zero or False.

CONFIGURATION:
- STEAM_API_KEY: Steam Web API key
- PUDEEZ_STEAM_API_URL: API base (default: https://api.steampowered.com)
- PUDEEZ_STEAM_CONTEXT_ID: Inventory context (default: 2)
- PUDEEZ_STEAM_INVENTORY_COUNT: Max assets per request (default: 5000)
- PUDEEZ_ORACLE_TIMEOUT_SECONDS: Request timeout (default: 10)
"""

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from ..observability import get_logger
from ..schemas import InventorySnapshot, ItemTypeKey

logger = get_logger(__name__)


class OracleUnavailable(Exception):
    """The inventory service could not be reached or gave no usable answer. Retry later."""
    pass


TransientOracleFailure = OracleUnavailable


@dataclass
class OracleConfig:
    """Configuration for the Steam inventory oracle."""
    api_key: str = ""
    api_url: str = "https://api.steampowered.com"
    context_id: str = "2"
    inventory_count: int = 5000
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "OracleConfig":
        return cls(
            api_key=os.environ.get("STEAM_API_KEY", ""),
            api_url=os.environ.get("PUDEEZ_STEAM_API_URL", "https://api.steampowered.com"),
            context_id=os.environ.get("PUDEEZ_STEAM_CONTEXT_ID", "2"),
            inventory_count=int(os.environ.get("PUDEEZ_STEAM_INVENTORY_COUNT", "5000")),
            timeout_seconds=float(os.environ.get("PUDEEZ_ORACLE_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class InventoryAsset:
    """One item instance as listed in an inventory."""
    asset_id: str
    class_id: str
    instance_id: str = "0"
    amount: int = 1

    def matches(self, type_key: ItemTypeKey) -> bool:
        return self.class_id == type_key.class_id and self.instance_id == type_key.instance_id


class InventoryOracle(ABC):
    """
    Abstract inventory oracle.

    Subclasses implement list_assets(); the query operations are derived
    from it so every call observes a single consistent listing.
    """

    @abstractmethod
    def list_assets(self, account_id: str, collection_id: str) -> list[InventoryAsset]:
        """
        Current holdings of one account in one collection.

        Raises:
            OracleUnavailable: on transport, auth, timeout or malformed responses
        """
        pass

    def has_item(self, account_id: str, collection_id: str, item_instance_id: str) -> bool:
        """True if the account currently holds this exact item instance."""
        return any(
            a.asset_id == item_instance_id
            for a in self.list_assets(account_id, collection_id)
        )

    def count_by_type(self, account_id: str, collection_id: str, type_key: ItemTypeKey) -> int:
        """Number of items of this type the account currently holds."""
        return sum(
            a.amount
            for a in self.list_assets(account_id, collection_id)
            if a.matches(type_key)
        )

    def resolve_item_type(
        self,
        account_id: str,
        collection_id: str,
        item_instance_id: str,
    ) -> Optional[ItemTypeKey]:
        """Type key of an item instance held by the account, or None if not held."""
        for asset in self.list_assets(account_id, collection_id):
            if asset.asset_id == item_instance_id:
                return ItemTypeKey(
                    collection_id=collection_id,
                    class_id=asset.class_id,
                    instance_id=asset.instance_id,
                )
        return None

    def snapshot(
        self,
        account_id: str,
        collection_id: str,
        type_key: ItemTypeKey,
        item_instance_id: Optional[str] = None,
    ) -> InventorySnapshot:
        """Held count and specific-item presence from one listing."""
        assets = self.list_assets(account_id, collection_id)
        return InventorySnapshot(
            held_count=sum(a.amount for a in assets if a.matches(type_key)),
            holds_specific_item=item_instance_id is not None and any(
                a.asset_id == item_instance_id for a in assets
            ),
        )

    def close(self) -> None:
        pass


# ============================================================
# STEAM WEB API IMPLEMENTATION
# ============================================================

class SteamInventoryOracle(InventoryOracle):
    """
    Inventory oracle backed by IEconService/GetInventory.

    A response with no "assets" key is an empty inventory. A response with
    no "response" object at all is malformed.
    """

    def __init__(self, config: Optional[OracleConfig] = None, client: Optional[httpx.Client] = None):
        self._config = config or OracleConfig.from_env()
        self._client = client or httpx.Client(timeout=self._config.timeout_seconds)

    def list_assets(self, account_id: str, collection_id: str) -> list[InventoryAsset]:
        if not self._config.api_key:
            raise OracleUnavailable("STEAM_API_KEY is not set")

        url = f"{self._config.api_url.rstrip('/')}/IEconService/GetInventory/v1/"
        params = {
            "key": self._config.api_key,
            "steamid": account_id,
            "appid": collection_id,
            "contextid": self._config.context_id,
            "count": self._config.inventory_count,
        }

        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise OracleUnavailable(f"Inventory request timed out for {account_id}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise OracleUnavailable(f"Inventory service rejected credentials ({status})") from e
            raise OracleUnavailable(f"Inventory service returned {status}") from e
        except httpx.HTTPError as e:
            raise OracleUnavailable(f"Inventory request failed: {e}") from e
        except ValueError as e:
            raise OracleUnavailable("Inventory service returned invalid JSON") from e

        inner = body.get("response") if isinstance(body, dict) else None
        if not isinstance(inner, dict):
            raise OracleUnavailable("Inventory response missing 'response' object")

        raw_assets = inner.get("assets", [])
        if not isinstance(raw_assets, list):
            raise OracleUnavailable("Inventory 'assets' is not a list")

        try:
            return [
                InventoryAsset(
                    asset_id=str(a["assetid"]),
                    class_id=str(a["classid"]),
                    instance_id=str(a.get("instanceid", "0")),
                    amount=int(a.get("amount", 1)),
                )
                for a in raw_assets
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise OracleUnavailable(f"Malformed inventory asset: {e}") from e

    def close(self) -> None:
        self._client.close()


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryInventoryOracle(InventoryOracle):
    """
    In-memory inventory for development and tests.

    transfer_item() assigns a fresh asset id on the receiving side, the
    way the real inventory service does.
    """

    def __init__(self):
        self._inventories: dict[tuple[str, str], dict[str, InventoryAsset]] = {}
        self._unavailable: set[str] = set()
        self._all_unavailable = False
        self._next_asset_id = 1_000_000
        self._lock = threading.Lock()

    def add_item(
        self,
        account_id: str,
        collection_id: str,
        class_id: str,
        instance_id: str = "0",
        asset_id: Optional[str] = None,
    ) -> str:
        """Put an item into an inventory. Returns its asset id."""
        with self._lock:
            if asset_id is None:
                asset_id = self._allocate_asset_id()
            inventory = self._inventories.setdefault((account_id, collection_id), {})
            inventory[asset_id] = InventoryAsset(asset_id, class_id, instance_id)
            return asset_id

    def transfer_item(self, from_account: str, to_account: str, collection_id: str, asset_id: str) -> str:
        """Move an item between accounts. Returns the new asset id."""
        with self._lock:
            asset = self._inventories[(from_account, collection_id)].pop(asset_id)
            new_id = self._allocate_asset_id()
            inventory = self._inventories.setdefault((to_account, collection_id), {})
            inventory[new_id] = InventoryAsset(new_id, asset.class_id, asset.instance_id, asset.amount)
            return new_id

    def set_unavailable(self, unavailable: bool = True, account_id: Optional[str] = None) -> None:
        """Simulate an outage, for every account or just one."""
        with self._lock:
            if account_id is None:
                self._all_unavailable = unavailable
            elif unavailable:
                self._unavailable.add(account_id)
            else:
                self._unavailable.discard(account_id)

    def _allocate_asset_id(self) -> str:
        self._next_asset_id += 1
        return str(self._next_asset_id)

    def list_assets(self, account_id: str, collection_id: str) -> list[InventoryAsset]:
        with self._lock:
            if self._all_unavailable or account_id in self._unavailable:
                raise OracleUnavailable(f"Inventory service unavailable for {account_id}")
            return list(self._inventories.get((account_id, collection_id), {}).values())
