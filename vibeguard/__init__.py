"""VibeGuard — sentiment-driven position monitor with on-chain protective exits.

Data:      vibeguard/data_gateway.py (sentiment + price, TTL/stale cache)
Risk:      vibeguard/risk.py (model arbitration, verdict parsing)
Execution: vibeguard/execution.py (VibeShield router, VibeGuard vault)
Loop:      vibeguard/monitor.py (single-flight cycle, cooldowns)
"""
