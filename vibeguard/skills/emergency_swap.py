"""Emergency Swap — guardian-initiated swap through the VibeGuard vault.

The acting wallet must be a vault guardian. Successful transactions are
recorded in tx history with source "manual".

Usage:
    python3 -m vibeguard.skills.emergency_swap --user 0x... --token 0x... --amount 100
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any

from dotenv import load_dotenv

from vibeguard.config import configure_logging, load_settings
from vibeguard.monitor import build_monitor
from vibeguard.schema import TxHistoryItem, TxSource

load_dotenv(override=True)

log = logging.getLogger("vibeguard.skills.emergency_swap")


async def emergency_swap(user_address: str, token_address: str, amount: str) -> dict[str, Any]:
    monitor = build_monitor(load_settings())
    try:
        result = await monitor.executor.execute_emergency_swap(user_address, token_address, amount)
    finally:
        await monitor.close()
    if not result.success:
        return {"status": "ERROR", **result.model_dump(mode="json", exclude_none=True)}

    try:
        monitor.history.append(
            TxHistoryItem(
                user_address=user_address.strip(),
                token_address=token_address.strip(),
                tx_hash=result.tx_hash or "",
                timestamp=int(time.time() * 1000),
                source=TxSource.MANUAL,
            )
        )
    except Exception as e:
        log.error("Failed to record tx history for %s: %s", result.tx_hash, e)
    return {"status": "OK", **result.model_dump(mode="json", exclude_none=True)}


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard vault emergency swap")
    parser.add_argument("--user", required=True, help="User wallet address")
    parser.add_argument("--token", required=True, help="Token contract address to swap out of")
    parser.add_argument("--amount", required=True, help="Amount in token units")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    result = asyncio.run(emergency_swap(args.user, args.token, args.amount))
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
