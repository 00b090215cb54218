"""
Tests for the management CLI, run against an in-memory runtime.
"""

import json

import pytest

from pudeez.core import PollerConfig
from pudeez.runtime import build_runtime
from pudeez.schemas import ChainEventKind, EscrowStatus

from conftest import APP_ID, BUYER, BUYER_STEAM, CLASS_ID, SELLER, SELLER_STEAM
from tools.manage import main


@pytest.fixture
def runtime(store, oracle, source):
    return build_runtime(
        store=store, oracle=oracle, source=source,
        poller_config=PollerConfig(enabled=False),
    )


def run(runtime, *argv):
    return main(list(argv), runtime=runtime)


class TestPollAndShow:

    def test_poll_once_then_show(self, runtime, source, make_event, capsys):
        source.publish(make_event(ChainEventKind.ESCROW_INITIALIZED, "E1"))
        source.publish(make_event(ChainEventKind.PAYMENT_DEPOSITED, "E1"))

        assert run(runtime, "poll-once") == 0
        assert runtime.store.get("E1").status == EscrowStatus.DEPOSITED

        assert run(runtime, "show-escrow", "E1") == 0
        out = capsys.readouterr().out
        assert "deposited" in out
        assert "MISSING" in out  # accounts were never linked

    def test_poll_once_reports_failure(self, runtime, source, capsys):
        source.fail_next(ChainEventKind.PAYMENT_CLAIMED)
        assert run(runtime, "poll-once") == 1
        assert "[FAIL]" in capsys.readouterr().out

    def test_show_unknown(self, runtime):
        assert run(runtime, "show-escrow", "nope") == 1


class TestBaselineAndVerify:

    @pytest.fixture
    def unbaselined(self, runtime, make_event):
        """Deposited escrow created before either party linked an account."""
        reconciler = runtime.service.reconciler
        reconciler.apply_event(make_event(ChainEventKind.ESCROW_INITIALIZED, "E1"))
        reconciler.apply_event(make_event(ChainEventKind.PAYMENT_DEPOSITED, "E1"))
        return "E1"

    def test_verify_refused_until_baseline_corrected(self, runtime, oracle, unbaselined, capsys):
        assert run(runtime, "verify-transfer", "E1") == 1

        assert run(
            runtime, "correct-baseline", "E1",
            "--seller-count", "1", "--buyer-count", "0",
            "--type-key", f"{APP_ID}/{CLASS_ID}/0",
            "--seller-inventory-id", SELLER_STEAM,
            "--buyer-inventory-id", BUYER_STEAM,
        ) == 0

        # Not transferred yet
        oracle.add_item(SELLER_STEAM, APP_ID, CLASS_ID, asset_id="asset-1")
        assert run(runtime, "verify-transfer", "E1") == 3

        oracle.transfer_item(SELLER_STEAM, BUYER_STEAM, APP_ID, "asset-1")
        assert run(runtime, "verify-transfer", "E1") == 0
        assert "[OK] Transferred" in capsys.readouterr().out

    def test_correct_baseline_twice_is_refused(self, runtime, unbaselined):
        args = ("correct-baseline", "E1", "--seller-count", "1", "--buyer-count", "0")
        assert run(runtime, *args) == 0
        assert run(runtime, *args) == 1

    def test_malformed_type_key_reported(self, runtime, unbaselined, capsys):
        assert run(
            runtime, "correct-baseline", "E1",
            "--seller-count", "1", "--buyer-count", "0",
            "--type-key", "730-310776",
        ) == 1
        assert "Error:" in capsys.readouterr().out
        assert runtime.store.get("E1").baseline_missing

    def test_negative_count_reported(self, runtime, unbaselined, capsys):
        assert run(
            runtime, "correct-baseline", "E1",
            "--seller-count", "-1", "--buyer-count", "0",
        ) == 1
        assert "Error:" in capsys.readouterr().out
        assert runtime.store.get("E1").baseline_missing

    def test_verify_oracle_down(self, runtime, oracle, unbaselined):
        run(
            runtime, "correct-baseline", "E1",
            "--seller-count", "1", "--buyer-count", "0",
            "--type-key", f"{APP_ID}/{CLASS_ID}/0",
            "--seller-inventory-id", SELLER_STEAM,
            "--buyer-inventory-id", BUYER_STEAM,
        )
        oracle.set_unavailable()
        assert run(runtime, "verify-transfer", "E1") == 2


class TestAccountsAndExport:

    def test_link_account(self, runtime):
        assert run(runtime, "link-account", BUYER, BUYER_STEAM) == 0
        assert runtime.store.get_linked_account(BUYER) == BUYER_STEAM

    def test_list_and_export(self, runtime, make_event, tmp_path, capsys):
        runtime.service.reconciler.apply_event(make_event(ChainEventKind.ESCROW_INITIALIZED, "E1"))

        assert run(runtime, "list-escrows", "--account", SELLER) == 0
        assert "1 escrow(s)" in capsys.readouterr().out

        output = tmp_path / "escrows.json"
        assert run(runtime, "export-escrows", "--output", str(output)) == 0
        exported = json.loads(output.read_text())
        assert [e["escrow_id"] for e in exported] == ["E1"]
        assert exported[0]["price_in_base_unit"] == 2_500_000_000

    def test_no_command_prints_help(self, runtime):
        assert run(runtime) == 1


class TestHealthCheck:

    @pytest.fixture
    def env(self, monkeypatch):
        for var in (
            "DATABASE_URL", "DATABASE_HOST", "ESCROWSTORE_DRIVER",
            "ESCROW_PACKAGE_ID", "STEAM_API_KEY",
            "PUDEEZ_ORACLE_DRIVER", "PUDEEZ_CHAIN_DRIVER",
        ):
            monkeypatch.delenv(var, raising=False)
        return monkeypatch

    def test_in_memory_components_warn(self, env, runtime, capsys):
        assert run(runtime, "health-check") == 0
        assert "[WARN] in-memory source" in capsys.readouterr().out

    def test_unconfigured_chain_and_inventory_fail(self, env, store, capsys):
        bare = build_runtime(store=store, poller_config=PollerConfig(enabled=False))

        assert run(bare, "health-check") == 1

        out = capsys.readouterr().out
        assert "[FAIL] ESCROW_PACKAGE_ID not set" in out
        assert "Steam API key: [FAIL]" in out
