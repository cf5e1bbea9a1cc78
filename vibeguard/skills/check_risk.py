"""Risk Check — one-off sentiment + price + risk verdict for a token.

Nothing is executed; this is the monitor's analysis step on demand.

Usage:
    python3 -m vibeguard.skills.check_risk --symbol BNB --token-id binancecoin
    python3 -m vibeguard.skills.check_risk --symbol BNB --token-id binancecoin --window 4H --fallback
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


async def check_risk(symbol: str, token_id: str, window: str = "Daily", allow_fallback: bool = False) -> dict[str, Any]:
    monitor = build_monitor(load_settings())
    try:
        sentiment, price = await asyncio.gather(
            monitor.gateway.get_sentiment(symbol, window, allow_fallback=allow_fallback),
            monitor.gateway.get_price(token_id),
        )
        analysis = await monitor.arbiter.analyze_risk(sentiment, price)
        return {
            "status": "OK",
            "sentiment": sentiment.model_dump(mode="json"),
            "price": price.model_dump(mode="json"),
            "analysis": analysis.model_dump(mode="json"),
        }
    except VibeGuardError as e:
        return {"status": "ERROR", "error_kind": e.kind.value, "error": str(e)}
    finally:
        await monitor.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard one-off risk check")
    parser.add_argument("--symbol", required=True, help="Token symbol, e.g. BNB")
    parser.add_argument("--token-id", required=True, help="Price feed id, e.g. binancecoin")
    parser.add_argument("--window", default="Daily", choices=["Daily", "4H", "1H", "15M"])
    parser.add_argument("--fallback", action="store_true", help="Use synthetic sentiment if the feed is down")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    result = asyncio.run(check_risk(args.symbol, args.token_id, args.window, args.fallback))
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
