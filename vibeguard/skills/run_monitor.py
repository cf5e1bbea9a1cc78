"""Run Monitor — one cycle or the periodic loop.

A demo headline can be injected into the process before running, so the
cycle sees it as active context (requires ENABLE_DEMO_INJECTION=true).

Usage:
    python3 -m vibeguard.skills.run_monitor                 # one cycle
    python3 -m vibeguard.skills.run_monitor --loop          # until Ctrl-C (needs ENABLE_MONITOR=true)
    python3 -m vibeguard.skills.run_monitor --inject BNB --preset BRIDGE_HACK
    python3 -m vibeguard.skills.run_monitor --inject BNB --headline "Bridge drained" --ttl-ms 60000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from dotenv import load_dotenv

from vibeguard.config import Settings, configure_logging, load_settings
from vibeguard.errors import ConfigurationError, VibeGuardError
from vibeguard.monitor import MonitorCycle, build_monitor
from vibeguard.schema import CycleOutcome

load_dotenv(override=True)


def _inject(monitor: MonitorCycle, settings: Settings, args: argparse.Namespace) -> dict[str, Any] | None:
    if not settings.demo.enabled:
        raise ConfigurationError("Demo injection disabled (set ENABLE_DEMO_INJECTION=true)")
    if args.preset:
        context = monitor.demo.inject_preset(args.inject, args.preset, args.severity, args.ttl_ms)
    else:
        context = monitor.demo.inject(args.inject, args.headline or "", args.severity, args.ttl_ms)
    return context.model_dump(mode="json")


async def run(args: argparse.Namespace) -> dict[str, Any]:
    settings = load_settings()
    monitor = build_monitor(settings)
    try:
        injected = _inject(monitor, settings, args) if args.inject else None
        if args.loop:
            await monitor.run_forever()
            return {"status": "OK", "mode": "loop"}

        results = await monitor.run_once()
        return {
            "status": "OK",
            "injected_context": injected,
            "results": [r.model_dump(mode="json", exclude_none=True) for r in results],
            "errors": sum(1 for r in results if r.outcome == CycleOutcome.ERROR),
        }
    except VibeGuardError as e:
        return {"status": "ERROR", "error_kind": e.kind.value, "error": str(e)}
    finally:
        await monitor.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="VibeGuard monitor")
    parser.add_argument("--loop", action="store_true", help="Run periodically instead of once")
    parser.add_argument("--inject", metavar="TOKEN", help="Inject demo context for this token first")
    parser.add_argument("--headline", help="Demo headline text")
    parser.add_argument("--preset", choices=["BRIDGE_HACK", "ORACLE_FAILURE", "LIQUIDITY_CRUNCH"])
    parser.add_argument("--severity", default="CRITICAL", choices=["HIGH", "CRITICAL"])
    parser.add_argument("--ttl-ms", type=int, default=None, help="Demo context lifetime")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)

    try:
        result = asyncio.run(run(args))
    except KeyboardInterrupt:
        result = {"status": "OK", "mode": "loop", "stopped": "interrupted"}
    print(json.dumps(result, indent=2))
    sys.exit(0 if result["status"] == "OK" else 1)


if __name__ == "__main__":
    main()
