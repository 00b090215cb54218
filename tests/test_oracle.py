"""
Tests for the inventory oracles.

Unavailable always raises; it is never reported as "not held" or zero.
"""

import httpx
import pytest

from pudeez.core import (
    InMemoryInventoryOracle,
    OracleConfig,
    OracleUnavailable,
    SteamInventoryOracle,
    TransientOracleFailure,
)
from pudeez.schemas import ItemTypeKey

STEAM_ID = "76561198000000002"
AK_REDLINE = ItemTypeKey(collection_id="730", class_id="310776", instance_id="0")


def steam_inventory(*assets):
    return {"response": {"assets": list(assets), "total_inventory_count": len(assets)}}


def asset(asset_id, class_id="310776", instance_id="0", amount="1"):
    return {"appid": 730, "contextid": "2", "assetid": asset_id,
            "classid": class_id, "instanceid": instance_id, "amount": amount}


def make_oracle(handler, **config) -> SteamInventoryOracle:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SteamInventoryOracle(OracleConfig(api_key="k3y", **config), client=client)


class TestSteamInventoryOracle:

    def test_request_parameters(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=steam_inventory())

        make_oracle(handler).count_by_type(STEAM_ID, "730", AK_REDLINE)

        request = seen[0]
        assert request.url.path == "/IEconService/GetInventory/v1/"
        assert request.url.params["key"] == "k3y"
        assert request.url.params["steamid"] == STEAM_ID
        assert request.url.params["appid"] == "730"
        assert request.url.params["contextid"] == "2"
        assert request.url.params["count"] == "5000"

    def test_count_by_type_groups_by_class_and_instance(self):
        oracle = make_oracle(lambda r: httpx.Response(200, json=steam_inventory(
            asset("1"), asset("2"), asset("3", class_id="999"), asset("4", instance_id="7"),
        )))
        assert oracle.count_by_type(STEAM_ID, "730", AK_REDLINE) == 2

    def test_has_item_and_resolve(self):
        oracle = make_oracle(lambda r: httpx.Response(200, json=steam_inventory(
            asset("111", class_id="55", instance_id="66"),
        )))
        assert oracle.has_item(STEAM_ID, "730", "111")
        assert not oracle.has_item(STEAM_ID, "730", "222")
        assert oracle.resolve_item_type(STEAM_ID, "730", "111") == ItemTypeKey(
            collection_id="730", class_id="55", instance_id="66",
        )
        assert oracle.resolve_item_type(STEAM_ID, "730", "222") is None

    def test_no_assets_key_is_empty_inventory(self):
        oracle = make_oracle(lambda r: httpx.Response(200, json={"response": {}}))
        assert oracle.count_by_type(STEAM_ID, "730", AK_REDLINE) == 0

    def test_snapshot(self):
        oracle = make_oracle(lambda r: httpx.Response(200, json=steam_inventory(asset("1"), asset("2"))))
        snap = oracle.snapshot(STEAM_ID, "730", AK_REDLINE, item_instance_id="2")
        assert snap.held_count == 2
        assert snap.holds_specific_item

    @pytest.mark.parametrize("status_code,kwargs", [
        (401, {}),
        (403, {}),
        (500, {}),
        (200, {"json": {"unexpected": True}}),
        (200, {"text": "<html>rate limited</html>"}),
        (200, {"json": {"response": {"assets": [{"assetid": "1"}]}}}),
    ])
    def test_bad_responses_are_unavailable(self, status_code, kwargs):
        oracle = make_oracle(lambda r: httpx.Response(status_code, **kwargs))
        with pytest.raises(OracleUnavailable):
            oracle.count_by_type(STEAM_ID, "730", AK_REDLINE)
        with pytest.raises(OracleUnavailable):
            oracle.has_item(STEAM_ID, "730", "1")

    def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(OracleUnavailable):
            make_oracle(handler).has_item(STEAM_ID, "730", "1")

    def test_missing_api_key(self):
        oracle = SteamInventoryOracle(OracleConfig(api_key=""), client=httpx.Client())
        with pytest.raises(OracleUnavailable):
            oracle.has_item(STEAM_ID, "730", "1")

    def test_alias(self):
        assert TransientOracleFailure is OracleUnavailable


class TestInMemoryInventoryOracle:

    def test_transfer_reassigns_asset_id(self):
        """The buyer never holds the seller's original asset id."""
        oracle = InMemoryInventoryOracle()
        oracle.add_item("seller", "730", "310776", asset_id="a1")

        new_id = oracle.transfer_item("seller", "buyer", "730", "a1")

        assert new_id != "a1"
        assert not oracle.has_item("seller", "730", "a1")
        assert not oracle.has_item("buyer", "730", "a1")
        assert oracle.has_item("buyer", "730", new_id)
        assert oracle.count_by_type("buyer", "730", AK_REDLINE) == 1

    def test_unavailable_switch(self):
        oracle = InMemoryInventoryOracle()
        oracle.set_unavailable(account_id="seller")
        with pytest.raises(OracleUnavailable):
            oracle.count_by_type("seller", "730", AK_REDLINE)
        assert oracle.count_by_type("buyer", "730", AK_REDLINE) == 0
