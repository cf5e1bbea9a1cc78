"""Tx History — recorded protective transactions, newest first.

Usage:
    python3 -m vibeguard.skills.tx_history
    python3 -m vibeguard.skills.tx_history --user 0x... --limit 20
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from vibeguard.config import configure_logging, load_settings
from vibeguard.errors import VibeGuardError
from vibeguard.store import TxHistoryStore

load_dotenv(override=True)


def tx_history(user_address: str = "", limit: int = 100, store: TxHistoryStore | None = None) -> dict[str, Any]:
    if store is None:
        storage = load_settings().storage
        store = TxHistoryStore(
            Path(storage.data_dir) / "tx_history.json" if storage.data_dir else None,
            max_items=storage.max_history_items,
        )
    try:
        items = store.load(user_address or None, limit)
    except (VibeGuardError, OSError, ValueError) as e:
        return {"status": "ERROR", "error": str(e)}
    return {"status": "OK", "count": len(items), "items": [i.to_record() for i in items]}


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard tx history")
    parser.add_argument("--user", default="", help="Filter by user wallet address")
    parser.add_argument("--limit", type=int, default=100, help="Max items (1-500)")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    result = tx_history(args.user, args.limit)
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
