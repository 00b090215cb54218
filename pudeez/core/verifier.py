"""
Transfer Verifier

Decides whether the escrowed item has moved from seller to buyer by
comparing current inventory counts against the baseline captured when the
escrow was initialized.

Counting by item type (not by asset id) is required: the inventory service
reassigns asset ids on every transfer, so the buyer never holds the
seller's original asset id.

DECISION RULE:
    seller_decrease = initial_seller - seller_current
    buyer_increase  = buyer_current - initial_buyer

    transferred iff seller_decrease >= 1
                and buyer_increase >= 1
                and buyer_increase >= seller_decrease
"""

import time
from typing import Optional

from ..db.store import EscrowStore
from ..observability import get_logger, get_metrics
from ..schemas import EscrowStatus, VerificationResult
from .oracle import InventoryOracle, OracleUnavailable

logger = get_logger(__name__)


class InvalidState(Exception):
    """The escrow is not in a state where this operation makes sense."""
    pass


class MissingBaseline(InvalidState):
    """The baseline counts were never captured; verification is meaningless until corrected."""
    pass


class RecordNotFound(Exception):
    """No escrow with this id is known."""
    pass


def decide_transfer(
    initial_seller: int,
    initial_buyer: int,
    current_seller: int,
    current_buyer: int,
) -> tuple[bool, int, int]:
    """
    Pure decision rule.

    Returns:
        (transferred, seller_decrease, buyer_increase)
    """
    seller_decrease = initial_seller - current_seller
    buyer_increase = current_buyer - initial_buyer
    transferred = (
        seller_decrease >= 1
        and buyer_increase >= 1
        and buyer_increase >= seller_decrease
    )
    return transferred, seller_decrease, buyer_increase


class TransferVerifier:
    """On-demand transfer verification against the live inventory."""

    def __init__(self, store: EscrowStore, oracle: InventoryOracle):
        self._store = store
        self._oracle = oracle

    def verify(self, escrow_id: str) -> VerificationResult:
        """
        Verify the item transfer for a deposited escrow.

        Raises:
            RecordNotFound: unknown escrow id
            InvalidState: status is not deposited
            MissingBaseline: baseline was never captured
            OracleUnavailable: either inventory lookup failed (retry later)
        """
        record = self._store.get(escrow_id)
        if record is None:
            raise RecordNotFound(f"Escrow not found: {escrow_id}")

        if record.status != EscrowStatus.DEPOSITED:
            raise InvalidState(
                f"Escrow {escrow_id} is {record.status.value}; "
                f"transfer can only be verified while deposited"
            )

        missing = self._missing_baseline_reason(record)
        if missing:
            raise MissingBaseline(f"Escrow {escrow_id} has no usable baseline: {missing}")

        started = time.perf_counter()
        try:
            seller_current = self._oracle.count_by_type(
                record.seller_inventory_id, record.collection_id, record.item_type_key,
            )
            buyer_current = self._oracle.count_by_type(
                record.buyer_inventory_id, record.collection_id, record.item_type_key,
            )
        except OracleUnavailable:
            get_metrics().increment("oracle_failures")
            logger.warning("Transfer verification deferred: inventory unavailable", escrow_id=escrow_id)
            raise
        finally:
            get_metrics().record_verification((time.perf_counter() - started) * 1000)

        transferred, seller_decrease, buyer_increase = decide_transfer(
            record.initial_seller_item_count,
            record.initial_buyer_item_count,
            seller_current,
            buyer_current,
        )

        logger.info(
            f"Transfer {'confirmed' if transferred else 'not observed'} for {escrow_id}",
            escrow_id=escrow_id,
            transferred=transferred,
            seller_decrease=seller_decrease,
            buyer_increase=buyer_increase,
        )

        return VerificationResult(
            escrow_id=escrow_id,
            transferred=transferred,
            initial_seller_item_count=record.initial_seller_item_count,
            initial_buyer_item_count=record.initial_buyer_item_count,
            seller_current_count=seller_current,
            buyer_current_count=buyer_current,
            seller_decrease=seller_decrease,
            buyer_increase=buyer_increase,
        )

    @staticmethod
    def _missing_baseline_reason(record) -> Optional[str]:
        if record.baseline_missing:
            return "baseline capture failed at initialization"
        if not record.seller_inventory_id or not record.buyer_inventory_id:
            return "inventory account not linked"
        if record.item_type_key is None:
            return "item type unknown"
        return None
