"""Execute Protection — manual protective exit through the VibeShield router.

Same path the monitor uses, triggered by an operator. Successful
transactions are recorded in tx history with source "agent".

Usage:
    python3 -m vibeguard.skills.execute_protection --user 0x... --amount 0.5
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

log = logging.getLogger("vibeguard.skills.execute_protection")


async def execute_protection(user_address: str, amount: str) -> dict[str, Any]:
    monitor = build_monitor(load_settings())
    try:
        result = await monitor.executor.execute_protection(user_address, amount)
        if not result.success:
            return {"status": "ERROR", **result.model_dump(mode="json", exclude_none=True)}

        config = await monitor.executor.get_public_config()
        try:
            monitor.history.append(
                TxHistoryItem(
                    user_address=user_address.strip(),
                    token_address=config.get("wbnb") or "WBNB",
                    tx_hash=result.tx_hash or "",
                    timestamp=int(time.time() * 1000),
                    source=TxSource.AGENT,
                    router_address=result.router_address or config.get("router"),
                    executor_address=result.executor_address or config.get("router_executor"),
                )
            )
        except Exception as e:
            log.error("Failed to record tx history for %s: %s", result.tx_hash, e)
        return {"status": "OK", **result.model_dump(mode="json", exclude_none=True)}
    finally:
        await monitor.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard manual protective execution")
    parser.add_argument("--user", required=True, help="User wallet address")
    parser.add_argument("--amount", required=True, help="Amount in token units (18 decimals)")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    result = asyncio.run(execute_protection(args.user, args.amount))
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
