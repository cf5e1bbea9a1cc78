"""Tests for the JSON-printing CLI skills that only touch local storage."""

from __future__ import annotations

import pytest

from vibeguard.schema import TxHistoryItem, TxSource
from vibeguard.skills.subscribe import list_subscriptions, subscribe
from vibeguard.skills.tx_history import tx_history
from vibeguard.store import SubscriptionStore, TxHistoryStore

USER = "0x" + "aa" * 20
OTHER_USER = "0x" + "ab" * 20
TOKEN = "0x" + "bb" * 20
T0 = 1_700_000_000_000


@pytest.fixture
def store(tmp_path):
    return SubscriptionStore(tmp_path / "subscriptions.json")


class TestSubscribe:
    def test_creates_normalized_record(self, store):
        result = subscribe(USER, " bnb ", "BinanceCoin", TOKEN, "0.5", risk_threshold=75, store=store)
        assert result["status"] == "OK"
        record = result["subscription"]
        assert record["tokenSymbol"] == "BNB"
        assert record["tokenId"] == "binancecoin"
        assert record["riskThreshold"] == 75
        assert record["enabled"] is True
        assert len(store.load()) == 1

    def test_resubscribe_replaces(self, store):
        subscribe(USER, "BNB", "binancecoin", TOKEN, "0.5", store=store)
        subscribe(USER.upper().replace("0X", "0x"), "BNB", "binancecoin", TOKEN, "2", enabled=False, store=store)
        subs = store.load()
        assert len(subs) == 1
        assert subs[0].amount == "2"
        assert subs[0].enabled is False

    @pytest.mark.parametrize("user,token,amount,threshold", [
        ("not-an-address", TOKEN, "1", 80),
        (USER, "WBNB", "1", 80),
        (USER, TOKEN, "0", 80),
        (USER, TOKEN, "abc", 80),
        (USER, TOKEN, "1", 150),
    ])
    def test_invalid_input(self, store, user, token, amount, threshold):
        result = subscribe(user, "BNB", "binancecoin", token, amount, risk_threshold=threshold, store=store)
        assert result["status"] == "ERROR"
        assert result["error_kind"] == "InvalidInput"
        assert store.load() == []

    def test_invalid_symbol(self, store):
        result = subscribe(USER, "B N B", "binancecoin", TOKEN, "1", store=store)
        assert result["error_kind"] == "InvalidInput"

    def test_list_filters_by_user(self, store):
        subscribe(USER, "BNB", "binancecoin", TOKEN, "1", store=store)
        subscribe(OTHER_USER, "BNB", "binancecoin", TOKEN, "1", store=store)
        assert list_subscriptions(store=store)["count"] == 2
        mine = list_subscriptions(USER.upper().replace("0X", "0x"), store=store)
        assert mine["count"] == 1
        assert mine["subscriptions"][0]["userAddress"] == USER


class TestTxHistory:
    def test_newest_first_with_filter_and_limit(self, tmp_path):
        history = TxHistoryStore(tmp_path / "tx_history.json")
        for i, user in enumerate([USER, OTHER_USER, USER, USER]):
            history.append(
                TxHistoryItem(
                    user_address=user,
                    token_address=TOKEN,
                    tx_hash=f"0x{i:064x}",
                    timestamp=T0 + i,
                    source=TxSource.MONITOR,
                )
            )

        result = tx_history(USER, limit=2, store=history)

        assert result["status"] == "OK"
        assert result["count"] == 2
        assert [item["timestamp"] for item in result["items"]] == [T0 + 3, T0 + 2]

    def test_empty_history(self, tmp_path):
        result = tx_history(store=TxHistoryStore(tmp_path / "tx_history.json"))
        assert result == {"status": "OK", "count": 0, "items": []}
