"""Persistent store for VibeGuard.

Reads and writes data/subscriptions.json and data/tx_history.json. Both
files are plain JSON lists rewritten in full on every change (load, modify,
write), so writers must be serialized. The monitor's single-flight guard does
that within one process; nothing protects against another process writing
the same files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from vibeguard.errors import ConfigurationError
from vibeguard.schema import Subscription, TxHistoryItem, subscription_identity
from vibeguard.utils.file_lock import safe_read_json, safe_update_json, safe_write_json

WORKSPACE = Path(__file__).resolve().parent.parent
DATA_DIR = WORKSPACE / "data"
DEFAULT_MAX_HISTORY_ITEMS = 500

log = logging.getLogger("vibeguard.store")


def _as_list(data: Any, path: Path) -> list[Any]:
    """Top-level record list. Anything else is a file this store must not overwrite."""
    if not isinstance(data, list):
        raise ConfigurationError(f"{path} does not contain a JSON list (found {type(data).__name__})")
    return data


def _record_identity(record: dict[str, Any]) -> tuple[str, str]:
    return subscription_identity(record.get("userAddress", ""), record.get("tokenAddress", ""))


class SubscriptionStore:
    """Subscriptions keyed by (userAddress, tokenAddress), case-insensitive."""

    def __init__(self, path: Path | None = None):
        self.path = path or DATA_DIR / "subscriptions.json"

    def load_raw(self) -> list[Any]:
        """Load records exactly as stored. Raises ConfigurationError if unreadable."""
        try:
            data = safe_read_json(self.path, default=[])
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot load subscriptions from {self.path}: {e}") from e
        return _as_list(data, self.path)

    def _update(self, update_fn: Callable[[list[Any]], list[Any]]) -> list[Any]:
        try:
            return safe_update_json(self.path, lambda current: update_fn(_as_list(current, self.path)), default=[])
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot update subscriptions in {self.path}: {e}") from e

    def load(self) -> list[Subscription]:
        subs: list[Subscription] = []
        for record in self.load_raw():
            if not isinstance(record, dict):
                log.warning("Skipping non-object subscription entry: %r", record)
                continue
            try:
                subs.append(Subscription.model_validate(record))
            except ValidationError as e:
                log.warning(
                    "Skipping malformed subscription user=%s token=%s: %s",
                    record.get("userAddress"),
                    record.get("tokenAddress"),
                    e.errors()[0].get("msg", "invalid") if e.errors() else "invalid",
                )
        return subs

    def load_enabled(self) -> list[Subscription]:
        return [s for s in self.load() if s.enabled]

    def save(self, subs: list[Subscription]) -> None:
        safe_write_json(self.path, [s.to_record() for s in subs])

    def upsert(self, sub: Subscription) -> Subscription:
        """Insert or replace the record with the same identity.

        An existing lastExecutedAt survives a replace that does not set one,
        so re-subscribing does not reset the cooldown.
        """
        key = sub.identity

        def _apply(records: list[Any]) -> list[Any]:
            for i, record in enumerate(records):
                if isinstance(record, dict) and _record_identity(record) == key:
                    if sub.last_executed_at is None and record.get("lastExecutedAt") is not None:
                        sub.last_executed_at = int(record["lastExecutedAt"])
                    records[i] = sub.to_record()
                    return records
            records.append(sub.to_record())
            return records

        self._update(_apply)
        return sub

    def apply_updates(self, updates: dict[tuple[str, str], dict[str, Any]]) -> list[Any]:
        """Merge field updates into the stored set, matching by identity.

        ``updates`` maps identity -> {camelCase field: value}. Records without
        an entry, and entries that are not objects, are written back exactly as
        loaded. A file that is not a JSON list raises ConfigurationError and is
        left untouched.
        """

        def _apply(records: list[Any]) -> list[Any]:
            for record in records:
                if not isinstance(record, dict):
                    continue
                fields = updates.get(_record_identity(record))
                if fields:
                    record.update(fields)
            return records

        return self._update(_apply)


class TxHistoryStore:
    """Append-only transaction history, capped at the newest ``max_items``."""

    def __init__(self, path: Path | None = None, max_items: int = DEFAULT_MAX_HISTORY_ITEMS):
        self.path = path or DATA_DIR / "tx_history.json"
        self.max_items = max_items

    def _sorted(self, records: list[Any]) -> list[Any]:
        return sorted(records, key=lambda r: r.get("timestamp", 0) if isinstance(r, dict) else 0, reverse=True)

    def load(self, user_address: str | None = None, limit: int = 100) -> list[TxHistoryItem]:
        """Newest-first history, optionally filtered by user (case-insensitive)."""
        records = [r for r in _as_list(safe_read_json(self.path, default=[]), self.path) if isinstance(r, dict)]
        if user_address:
            target = user_address.strip().lower()
            records = [r for r in records if str(r.get("userAddress", "")).lower() == target]

        limit = max(1, min(int(limit), self.max_items))
        items: list[TxHistoryItem] = []
        for record in self._sorted(records)[:limit]:
            try:
                items.append(TxHistoryItem.model_validate(record))
            except ValidationError:
                log.warning("Skipping malformed tx history record txHash=%s", record.get("txHash"))
        return items

    def append(self, item: TxHistoryItem) -> None:
        def _apply(current: Any) -> list[Any]:
            records = _as_list(current, self.path)
            records.append(item.to_record())
            return self._sorted(records)[: self.max_items]

        safe_update_json(self.path, _apply, default=[])
