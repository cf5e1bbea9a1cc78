"""Agent Status — public contract config and a user's agent state.

Usage:
    python3 -m vibeguard.skills.agent_status
    python3 -m vibeguard.skills.agent_status --user 0x...
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from dotenv import load_dotenv

from vibeguard.config import configure_logging, load_settings
from vibeguard.execution import decode_revert
from vibeguard.monitor import build_monitor

load_dotenv(override=True)


async def agent_status(user_address: str = "") -> dict[str, Any]:
    monitor = build_monitor(load_settings())
    try:
        result: dict[str, Any] = {"status": "OK", "config": await monitor.executor.get_public_config()}
        if user_address:
            try:
                result["agent"] = await monitor.executor.get_user_status(user_address)
            except Exception as e:
                message, kind = decode_revert(e)
                result.update(status="ERROR", error_kind=kind.value, error=message)
        return result
    finally:
        await monitor.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard agent/contract status")
    parser.add_argument("--user", default="", help="User wallet address")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    result = asyncio.run(agent_status(args.user))
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
