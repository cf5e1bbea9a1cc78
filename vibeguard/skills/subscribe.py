"""Subscriptions — CLI skill to add, update or list watched positions.

Usage:
    python3 -m vibeguard.skills.subscribe --user 0x... --symbol BNB --token-id binancecoin \
        --token-address 0x... --amount 0.5 --threshold 80
    python3 -m vibeguard.skills.subscribe --list
    python3 -m vibeguard.skills.subscribe --list --user 0x...
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError
from web3 import Web3

from vibeguard.config import configure_logging, load_settings
from vibeguard.data_gateway import normalize_symbol
from vibeguard.errors import ErrorKind, VibeGuardError
from vibeguard.execution import to_base_units
from vibeguard.schema import Subscription
from vibeguard.store import SubscriptionStore

load_dotenv(override=True)


def _store() -> SubscriptionStore:
    data_dir = load_settings().storage.data_dir
    return SubscriptionStore(Path(data_dir) / "subscriptions.json" if data_dir else None)


def subscribe(
    user_address: str,
    token_symbol: str,
    token_id: str,
    token_address: str,
    amount: str,
    risk_threshold: float = 80,
    enabled: bool = True,
    store: SubscriptionStore | None = None,
) -> dict[str, Any]:
    """Validate and upsert one subscription."""
    try:
        if not Web3.is_address(user_address):
            return {"status": "ERROR", "error_kind": ErrorKind.INVALID_INPUT.value, "error": "Invalid userAddress"}
        if not Web3.is_address(token_address):
            return {"status": "ERROR", "error_kind": ErrorKind.INVALID_INPUT.value, "error": "Invalid tokenAddress"}
        to_base_units(amount)
        sub = Subscription(
            user_address=user_address.strip(),
            token_symbol=normalize_symbol(token_symbol),
            token_id=token_id.strip().lower(),
            token_address=token_address.strip(),
            amount=str(amount).strip(),
            risk_threshold=risk_threshold,
            enabled=enabled,
        )
        saved = (store or _store()).upsert(sub)
        return {"status": "OK", "subscription": saved.to_record()}
    except ValidationError as e:
        return {"status": "ERROR", "error_kind": ErrorKind.INVALID_INPUT.value, "error": str(e)}
    except VibeGuardError as e:
        return {"status": "ERROR", "error_kind": e.kind.value, "error": str(e)}


def list_subscriptions(user_address: str = "", store: SubscriptionStore | None = None) -> dict[str, Any]:
    try:
        subs = (store or _store()).load()
    except VibeGuardError as e:
        return {"status": "ERROR", "error_kind": e.kind.value, "error": str(e)}
    if user_address:
        target = user_address.strip().lower()
        subs = [s for s in subs if s.user_address.lower() == target]
    return {"status": "OK", "count": len(subs), "subscriptions": [s.to_record() for s in subs]}


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard subscriptions")
    parser.add_argument("--list", action="store_true", help="List subscriptions")
    parser.add_argument("--user", default="", help="User wallet address")
    parser.add_argument("--symbol", help="Token symbol, e.g. BNB")
    parser.add_argument("--token-id", help="Price feed id, e.g. binancecoin")
    parser.add_argument("--token-address", help="Token contract address")
    parser.add_argument("--amount", help="Amount to protect (decimal string)")
    parser.add_argument("--threshold", type=float, default=80, help="Risk score that triggers an exit (0-100)")
    parser.add_argument("--disabled", action="store_true", help="Store the subscription disabled")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    if args.list:
        result = list_subscriptions(args.user)
    else:
        missing = [f for f in ("symbol", "token_id", "token_address", "amount") if not getattr(args, f)]
        if missing or not args.user:
            parser.error("--user, --symbol, --token-id, --token-address and --amount are required")
        result = subscribe(
            args.user, args.symbol, args.token_id, args.token_address, args.amount,
            risk_threshold=args.threshold, enabled=not args.disabled,
        )
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
