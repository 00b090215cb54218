"""
Tests for the EscrowStore contract (in-memory implementation) and the
PostgreSQL store's timeout classification.
"""

import threading
from datetime import timedelta

import pytest

from pudeez.db.store import (
    BaselineAlreadyCapturedError,
    InMemoryEscrowStore,
    LockTimeoutError,
    PostgresEscrowStore,
    next_updated_at,
)
from pudeez.schemas import ChainEventKind, EscrowRecord, EscrowStatus, ItemTypeKey, RawEvent
from pudeez.schemas.escrow import utc_now


def make_record(escrow_id="E1", **overrides) -> EscrowRecord:
    data = dict(
        escrow_id=escrow_id,
        buyer_address="0xb0b",
        seller_address="0x5e11",
        asset_id="asset-1",
        price_in_base_unit=1_000_000_000,
    )
    data.update(overrides)
    return EscrowRecord(**data)


class TestInsert:

    def test_insert_if_absent_is_idempotent(self):
        """A second insert for the same id neither fails nor overwrites."""
        store = InMemoryEscrowStore()
        assert store.insert_if_absent(make_record(price_in_base_unit=1))
        assert not store.insert_if_absent(make_record(price_in_base_unit=999))
        assert store.get("E1").price_in_base_unit == 1
        assert store.count() == 1

    def test_get_returns_copy(self):
        """Callers cannot mutate stored state through a read."""
        store = InMemoryEscrowStore()
        store.insert_if_absent(make_record())
        copy = store.get("E1")
        copy.status = EscrowStatus.CANCELLED
        assert store.get("E1").status == EscrowStatus.INITIALIZED

    def test_get_unknown(self):
        assert InMemoryEscrowStore().get("nope") is None


class TestUpdateStatus:

    @pytest.fixture
    def store(self):
        store = InMemoryEscrowStore()
        store.insert_if_absent(make_record())
        return store

    def test_forward_transition(self, store):
        before = store.get("E1").updated_at
        assert store.update_status("E1", EscrowStatus.DEPOSITED, "txd")
        record = store.get("E1")
        assert record.status == EscrowStatus.DEPOSITED
        assert record.chain_tx_digest == "txd"
        assert record.updated_at > before

    def test_invalid_transition_refused(self, store):
        assert not store.update_status("E1", EscrowStatus.COMPLETED)
        assert store.get("E1").status == EscrowStatus.INITIALIZED

    def test_terminal_is_final(self, store):
        assert store.update_status("E1", EscrowStatus.CANCELLED)
        for status in EscrowStatus:
            assert not store.update_status("E1", status)
        assert store.get("E1").status == EscrowStatus.CANCELLED

    def test_unknown_id(self, store):
        assert not store.update_status("missing", EscrowStatus.DEPOSITED)

    def test_concurrent_updates_apply_once(self, store):
        """Many threads racing the same move: exactly one wins."""
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.update_status("E1", EscrowStatus.DEPOSITED))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_updated_at_strictly_monotonic(self):
        """Even if the clock steps backwards."""
        future = utc_now() + timedelta(hours=1)
        assert next_updated_at(future) > future


class TestQueries:

    @pytest.fixture
    def store(self):
        store = InMemoryEscrowStore()
        store.insert_if_absent(make_record("E1"))
        store.insert_if_absent(make_record("E2", buyer_address="0xcarol"))
        store.insert_if_absent(make_record("E3", seller_inventory_id="7656"))
        store.insert_if_absent(make_record("E4", buyer_address="0xdave", seller_address="0xerin"))
        store.update_status("E2", EscrowStatus.DEPOSITED)
        store.update_status("E3", EscrowStatus.DEPOSITED)
        store.update_status("E3", EscrowStatus.COMPLETED)
        store.update_status("E4", EscrowStatus.CANCELLED)
        return store

    def test_list_by_status_partitions_records(self, store):
        """Every record appears under exactly one status."""
        seen = []
        for status in EscrowStatus:
            seen.extend(r.escrow_id for r in store.list_by_status(status))
        assert sorted(seen) == ["E1", "E2", "E3", "E4"]
        assert len(seen) == len(set(seen)) == store.count()

    def test_list_by_participant(self, store):
        assert [r.escrow_id for r in store.list_by_participant("0xb0b")] == ["E1", "E3"]
        assert [r.escrow_id for r in store.list_by_participant("0x5e11")] == ["E1", "E2", "E3"]
        assert [r.escrow_id for r in store.list_by_participant("7656")] == ["E3"]
        assert store.list_by_participant("0xnobody") == []


class TestBaselineCorrection:

    def test_correct_missing_baseline(self):
        store = InMemoryEscrowStore()
        store.insert_if_absent(make_record(baseline_missing=True))
        updated_at = store.get("E1").updated_at
        key = ItemTypeKey(collection_id="730", class_id="1")

        assert store.correct_baseline("E1", 5, 0, item_type_key=key, seller_inventory_id="s", buyer_inventory_id="b")

        record = store.get("E1")
        assert not record.baseline_missing
        assert record.initial_seller_item_count == 5
        assert record.item_type_key == key
        assert record.seller_inventory_id == "s"
        assert record.updated_at == updated_at

    def test_trusted_baseline_cannot_be_overwritten(self):
        store = InMemoryEscrowStore()
        store.insert_if_absent(make_record(initial_seller_item_count=5))
        with pytest.raises(BaselineAlreadyCapturedError):
            store.correct_baseline("E1", 9, 9)
        assert store.get("E1").initial_seller_item_count == 5

    def test_unknown_id(self):
        assert not InMemoryEscrowStore().correct_baseline("nope", 1, 0)

    def test_negative_counts_rejected(self):
        store = InMemoryEscrowStore()
        store.insert_if_absent(make_record(baseline_missing=True))

        with pytest.raises(ValueError):
            store.correct_baseline("E1", -1, 0)
        with pytest.raises(ValueError):
            store.correct_baseline("E1", 1, -3)

        record = store.get("E1")
        assert record.baseline_missing
        assert record.initial_seller_item_count == 0

    def test_negative_counts_rejected_before_postgres_is_touched(self):
        def no_database():
            raise AssertionError("must not connect")

        store = PostgresEscrowStore(connection_factory=no_database)
        with pytest.raises(ValueError):
            store.correct_baseline("E1", -1, 0)


class TestLinksCursorsAndDeferred:

    def test_account_links_upsert(self):
        store = InMemoryEscrowStore()
        assert store.get_linked_account("0xb0b") is None
        store.link_account("0xb0b", "1")
        store.link_account("0xb0b", "2")
        assert store.get_linked_account("0xb0b") == "2"

    def test_cursors_per_kind(self):
        store = InMemoryEscrowStore()
        store.save_cursor(ChainEventKind.PAYMENT_DEPOSITED, {"txDigest": "a", "eventSeq": "0"})
        assert store.get_cursor(ChainEventKind.PAYMENT_DEPOSITED) == {"txDigest": "a", "eventSeq": "0"}
        assert store.get_cursor(ChainEventKind.PAYMENT_CLAIMED) is None

    def test_deferred_events_deduplicated_and_ordered(self):
        store = InMemoryEscrowStore()
        late = RawEvent(kind=ChainEventKind.PAYMENT_CLAIMED, tx_digest="t2", timestamp_ms=20,
                        parsed_json={"escrow_id": "E1"})
        early = RawEvent(kind=ChainEventKind.PAYMENT_DEPOSITED, tx_digest="t1", timestamp_ms=10,
                         parsed_json={"escrow_id": "E1"})
        other = RawEvent(kind=ChainEventKind.PAYMENT_DEPOSITED, tx_digest="t3", timestamp_ms=5,
                         parsed_json={"escrow_id": "E2"})

        assert store.defer_event(late)
        assert store.defer_event(early)
        assert store.defer_event(other)
        assert not store.defer_event(early)

        assert [e.tx_digest for e in store.list_deferred("E1")] == ["t1", "t2"]
        store.discard_deferred(early)
        assert [e.tx_digest for e in store.list_deferred()] == ["t3", "t2"]

    def test_blob_reference(self):
        store = InMemoryEscrowStore()
        store.insert_if_absent(make_record())
        assert store.set_blob_reference("E1", "walrus:abc")
        assert store.get("E1").blob_reference == "walrus:abc"
        assert not store.set_blob_reference("nope", "x")


class FakePgError(Exception):
    def __init__(self, pgcode, pgerror):
        super().__init__(pgerror)
        self.pgcode = pgcode
        self.pgerror = pgerror


class TestPostgresTimeouts:
    """Classification of PostgreSQL timeout errors (no database needed)."""

    @pytest.fixture
    def store(self):
        return PostgresEscrowStore(connection_factory=lambda: None)

    def test_lock_not_available(self, store):
        assert store._timeout_kind(FakePgError("55P03", "could not obtain lock")) == "lock"

    def test_lock_timeout_via_query_canceled(self, store):
        err = FakePgError("57014", "canceling statement due to lock timeout")
        assert store._timeout_kind(err) == "lock"
        assert isinstance(store._translate(err), LockTimeoutError)

    def test_statement_timeout(self, store):
        err = FakePgError("57014", "canceling statement due to statement timeout")
        assert store._timeout_kind(err) == "statement"

    def test_other_errors_pass_through(self, store):
        err = FakePgError("23505", "duplicate key")
        assert store._timeout_kind(err) is None
        assert store._translate(err) is err
