"""Prices — CLI skill for batch spot prices.

Usage:
    python3 -m vibeguard.skills.prices --ids binancecoin,ethereum
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from dotenv import load_dotenv

from vibeguard.config import configure_logging, load_settings
from vibeguard.errors import VibeGuardError
from vibeguard.monitor import build_monitor

load_dotenv(override=True)


async def get_prices(token_ids: list[str]) -> dict[str, Any]:
    monitor = build_monitor(load_settings())
    try:
        prices = await monitor.gateway.get_prices(token_ids)
    except VibeGuardError as e:
        return {"status": "ERROR", "error_kind": e.kind.value, "error": str(e)}
    finally:
        await monitor.close()
    return {
        "status": "OK",
        "prices": {tid: snap.model_dump(mode="json") for tid, snap in prices.items()},
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard spot prices")
    parser.add_argument("--ids", required=True, help="Comma-separated price feed ids")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    result = asyncio.run(get_prices([i for i in args.ids.split(",") if i.strip()]))
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
