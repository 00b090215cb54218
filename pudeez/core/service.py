"""
Escrow Service

The outward surface of the reconciliation core. HTTP routes and the
management CLI talk to this class only.

Reads come from the store. Inventory questions go to the oracle live,
every time. Status changes go through the reconciler so they share its
per-escrow lock and notify subscribers.
"""

from typing import Optional

from ..db.store import EscrowStore
from ..observability import get_logger
from ..schemas import (
    EscrowRecord,
    EscrowStatus,
    ItemTypeKey,
    VerificationResult,
)
from .oracle import InventoryOracle
from .reconciler import EscrowReconciler, SubscriptionHandle, Subscriber
from .verifier import RecordNotFound, TransferVerifier

logger = get_logger(__name__)


class EscrowService:
    """
    Facade over store, oracle, reconciler and verifier.

    Usage:
        service = EscrowService(store, oracle)
        record = service.get_escrow("0x5e1f...")
        result = service.verify_transfer("0x5e1f...")
    """

    def __init__(
        self,
        store: EscrowStore,
        oracle: InventoryOracle,
        reconciler: Optional[EscrowReconciler] = None,
    ):
        self._store = store
        self._oracle = oracle
        self._reconciler = reconciler or EscrowReconciler(store, oracle)
        self._verifier = TransferVerifier(store, oracle)

    @property
    def store(self) -> EscrowStore:
        return self._store

    @property
    def reconciler(self) -> EscrowReconciler:
        return self._reconciler

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    def get_escrow(self, escrow_id: str) -> EscrowRecord:
        record = self._store.get(escrow_id)
        if record is None:
            raise RecordNotFound(f"Escrow not found: {escrow_id}")
        return record

    def list_escrows_for_account(self, account_id: str) -> list[EscrowRecord]:
        return self._store.list_by_participant(account_id)

    def list_escrows_by_status(self, status: EscrowStatus) -> list[EscrowRecord]:
        return self._store.list_by_status(status)

    # ----------------------------------------------------------------
    # Inventory
    # ----------------------------------------------------------------

    def verify_transfer(self, escrow_id: str) -> VerificationResult:
        return self._verifier.verify(escrow_id)

    def check_inventory(self, account_id: str, collection_id: str, item_instance_id: str) -> bool:
        return self._oracle.has_item(account_id, collection_id, item_instance_id)

    def get_item_count(self, account_id: str, collection_id: str, type_key: ItemTypeKey) -> int:
        return self._oracle.count_by_type(account_id, collection_id, type_key)

    # ----------------------------------------------------------------
    # Subscriptions
    # ----------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> SubscriptionHandle:
        return self._reconciler.subscribe(callback)

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        return self._reconciler.unsubscribe(handle)

    # ----------------------------------------------------------------
    # Commands
    # ----------------------------------------------------------------

    def transition(
        self,
        escrow_id: str,
        new_status: EscrowStatus,
        tx_digest: Optional[str] = None,
    ) -> EscrowRecord:
        return self._reconciler.transition(escrow_id, new_status, tx_digest)

    def correct_baseline(
        self,
        escrow_id: str,
        initial_seller_item_count: int,
        initial_buyer_item_count: int,
        item_type_key: Optional[ItemTypeKey] = None,
        seller_inventory_id: Optional[str] = None,
        buyer_inventory_id: Optional[str] = None,
    ) -> EscrowRecord:
        """
        Set the baseline of a record whose capture failed at initialization.

        Raises:
            RecordNotFound: unknown escrow id
            BaselineAlreadyCapturedError: the record already has a trusted baseline
            ValueError: a negative count
        """
        if not self._store.correct_baseline(
            escrow_id,
            initial_seller_item_count,
            initial_buyer_item_count,
            item_type_key=item_type_key,
            seller_inventory_id=seller_inventory_id,
            buyer_inventory_id=buyer_inventory_id,
        ):
            raise RecordNotFound(f"Escrow not found: {escrow_id}")

        logger.warning(
            "Baseline corrected by operator",
            escrow_id=escrow_id,
            initial_seller_item_count=initial_seller_item_count,
            initial_buyer_item_count=initial_buyer_item_count,
        )
        return self._store.get(escrow_id)

    def link_account(self, address: str, inventory_id: str) -> None:
        """Link a chain address to its inventory account (used for future escrows)."""
        self._store.link_account(address, inventory_id)
        logger.info("Account linked", address=address, inventory_id=inventory_id)

    def attach_blob_reference(self, escrow_id: str, blob_reference: str) -> EscrowRecord:
        if not self._store.set_blob_reference(escrow_id, blob_reference):
            raise RecordNotFound(f"Escrow not found: {escrow_id}")
        return self._store.get(escrow_id)
