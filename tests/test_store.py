"""Tests for the JSON subscription and tx history stores."""

from __future__ import annotations

import json

import pytest

from vibeguard.errors import ConfigurationError
from vibeguard.schema import Subscription, TxHistoryItem, TxSource
from vibeguard.store import SubscriptionStore, TxHistoryStore

USER = "0xAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAa"
TOKEN = "0xBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBb"


def _sub(**overrides) -> Subscription:
    fields = {
        "userAddress": USER,
        "tokenSymbol": "BNB",
        "tokenId": "binancecoin",
        "tokenAddress": TOKEN,
        "amount": "0.5",
        "riskThreshold": 80,
    }
    fields.update(overrides)
    return Subscription.model_validate(fields)


class TestSubscriptionStore:
    """Upsert identity rules and tolerant loading."""

    def test_missing_file_loads_empty(self, tmp_path):
        store = SubscriptionStore(tmp_path / "subscriptions.json")
        assert store.load() == []

    def test_upsert_appends_new_record(self, tmp_path):
        store = SubscriptionStore(tmp_path / "subscriptions.json")
        store.upsert(_sub())
        raw = json.loads((tmp_path / "subscriptions.json").read_text())
        assert len(raw) == 1
        assert raw[0]["userAddress"] == USER
        assert raw[0]["riskThreshold"] == 80

    def test_upsert_replaces_case_insensitively(self, tmp_path):
        store = SubscriptionStore(tmp_path / "subscriptions.json")
        store.upsert(_sub())
        store.upsert(_sub(userAddress=USER.lower(), tokenAddress=TOKEN.upper().replace("0X", "0x"), amount="2"))
        subs = store.load()
        assert len(subs) == 1
        assert subs[0].amount == "2"

    def test_upsert_keeps_existing_last_executed_at(self, tmp_path):
        store = SubscriptionStore(tmp_path / "subscriptions.json")
        store.upsert(_sub(lastExecutedAt=1_700_000_000_000))
        store.upsert(_sub(riskThreshold=70))
        sub = store.load()[0]
        assert sub.risk_threshold == 70
        assert sub.last_executed_at == 1_700_000_000_000

    def test_malformed_records_are_skipped(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        path.write_text(json.dumps([
            _sub().to_record(),
            {"userAddress": USER, "tokenSymbol": "ETH"},
            {**_sub(tokenAddress="0x" + "c" * 40).to_record(), "riskThreshold": 250},
        ]))
        subs = SubscriptionStore(path).load()
        assert len(subs) == 1
        assert subs[0].token_symbol == "BNB"

    def test_load_enabled_filters(self, tmp_path):
        store = SubscriptionStore(tmp_path / "subscriptions.json")
        store.upsert(_sub())
        store.upsert(_sub(tokenAddress="0x" + "c" * 40, enabled=False))
        assert [s.token_address for s in store.load_enabled()] == [TOKEN]

    def test_apply_updates_touches_only_matching_records(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        other = {**_sub(tokenAddress="0x" + "c" * 40).to_record(), "note": "kept as-is"}
        path.write_text(json.dumps([_sub().to_record(), other]))

        SubscriptionStore(path).apply_updates({
            (USER.lower(), TOKEN.lower()): {"lastExecutedAt": 123, "enabled": False},
        })

        raw = json.loads(path.read_text())
        assert raw[0]["lastExecutedAt"] == 123
        assert raw[0]["enabled"] is False
        assert raw[1] == other

    def test_corrupt_file_restores_from_backup(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        store = SubscriptionStore(path)
        store.upsert(_sub())
        store.upsert(_sub(amount="3"))  # second write leaves a .bak of the first
        path.write_text("{not json")
        subs = store.load()
        assert len(subs) == 1
        assert subs[0].amount == "0.5"

    def test_corrupt_file_without_backup_is_configuration_error(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            SubscriptionStore(path).load()

    @pytest.mark.parametrize("operation", [
        lambda store: store.load_raw(),
        lambda store: store.upsert(_sub(amount="9")),
        lambda store: store.apply_updates({(USER.lower(), TOKEN.lower()): {"enabled": False}}),
    ])
    def test_non_list_file_is_rejected_and_left_untouched(self, tmp_path, operation):
        path = tmp_path / "subscriptions.json"
        content = json.dumps({"subscriptions": [_sub().to_record()]})
        path.write_text(content)

        with pytest.raises(ConfigurationError):
            operation(SubscriptionStore(path))

        assert path.read_text() == content

    def test_non_object_entries_survive_updates(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        path.write_text(json.dumps(["legacy-entry", _sub().to_record(), 42]))
        store = SubscriptionStore(path)

        store.apply_updates({(USER.lower(), TOKEN.lower()): {"lastExecutedAt": 123}})
        store.upsert(_sub(tokenAddress="0x" + "c" * 40))

        raw = json.loads(path.read_text())
        assert raw[0] == "legacy-entry"
        assert raw[1]["lastExecutedAt"] == 123
        assert raw[2] == 42
        assert len(raw) == 4
        assert len(store.load()) == 2


class TestTxHistoryStore:
    """Newest-first ordering, cap, user filter and limit clamping."""

    def _item(self, ts: int, user: str = USER, tx: str = "") -> TxHistoryItem:
        return TxHistoryItem(
            user_address=user,
            token_address=TOKEN,
            tx_hash=tx or f"0x{ts:064x}",
            timestamp=ts,
            source=TxSource.MONITOR,
        )

    def test_append_keeps_newest_first(self, tmp_path):
        store = TxHistoryStore(tmp_path / "tx_history.json")
        for ts in (2, 5, 1):
            store.append(self._item(ts))
        assert [i.timestamp for i in store.load()] == [5, 2, 1]

    def test_append_caps_to_max_items(self, tmp_path):
        store = TxHistoryStore(tmp_path / "tx_history.json", max_items=3)
        for ts in range(1, 6):
            store.append(self._item(ts))
        raw = json.loads((tmp_path / "tx_history.json").read_text())
        assert [r["timestamp"] for r in raw] == [5, 4, 3]

    def test_filter_by_user_is_case_insensitive(self, tmp_path):
        store = TxHistoryStore(tmp_path / "tx_history.json")
        store.append(self._item(1))
        store.append(self._item(2, user="0x" + "d" * 40))
        items = store.load(user_address=USER.upper().replace("0X", "0x"))
        assert [i.timestamp for i in items] == [1]

    def test_limit_is_clamped(self, tmp_path):
        store = TxHistoryStore(tmp_path / "tx_history.json", max_items=500)
        for ts in range(1, 4):
            store.append(self._item(ts))
        assert len(store.load(limit=0)) == 1
        assert len(store.load(limit=10_000)) == 3

    def test_optional_metadata_omitted_when_absent(self, tmp_path):
        store = TxHistoryStore(tmp_path / "tx_history.json")
        store.append(self._item(1))
        raw = json.loads((tmp_path / "tx_history.json").read_text())
        assert "routerAddress" not in raw[0]
        assert raw[0]["source"] == "monitor"

    def test_append_to_non_list_file_is_rejected(self, tmp_path):
        path = tmp_path / "tx_history.json"
        path.write_text('{"items": []}')
        with pytest.raises(ConfigurationError):
            TxHistoryStore(path).append(self._item(1))
        assert path.read_text() == '{"items": []}'
