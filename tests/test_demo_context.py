"""Tests for the single-slot demo context."""

from __future__ import annotations

import pytest

from vibeguard.demo_context import HEADLINE_PRESETS, DemoContextManager, tokens_match
from vibeguard.errors import InvalidInput
from vibeguard.schema import Severity

T0 = 1_700_000_000_000


class MsClock:
    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return MsClock()


@pytest.fixture
def demo(clock):
    return DemoContextManager(clock=clock)


class TestInject:
    def test_defaults(self, demo):
        ctx = demo.inject(" bnb ", "  Bridge hack  ")
        assert ctx.token == "BNB"
        assert ctx.headline == "Bridge hack"
        assert ctx.severity == Severity.CRITICAL
        assert ctx.expires_at - ctx.timestamp == 180_000
        assert ctx.consumed is False

    def test_ttl_clamped_to_floor_and_ceiling(self, demo):
        assert demo.inject("BNB", "x", ttl_ms=1000).expires_at == T0 + 15_000
        assert demo.inject("BNB", "x", ttl_ms=10**9).expires_at == T0 + 600_000
        assert demo.inject("BNB", "x", ttl_ms=float("nan")).expires_at == T0 + 180_000

    def test_overwrites_single_slot(self, demo):
        demo.inject("BNB", "first")
        demo.inject("ETH", "second")
        assert demo.get_active_context("BNB") is None
        assert demo.get_active_context("ETH").headline == "second"

    @pytest.mark.parametrize("token,headline", [("", "x"), ("BNB", ""), ("  ", "  ")])
    def test_token_and_headline_required(self, demo, token, headline):
        with pytest.raises(InvalidInput):
            demo.inject(token, headline)

    def test_severity_parsing(self, demo):
        assert demo.inject("BNB", "x", severity="high").severity == Severity.HIGH
        with pytest.raises(InvalidInput):
            demo.inject("BNB", "x", severity="LOW")

    def test_presets(self, demo):
        ctx = demo.inject_preset("BNB", "bridge_hack")
        assert ctx.headline == HEADLINE_PRESETS["BRIDGE_HACK"]
        with pytest.raises(InvalidInput):
            demo.inject_preset("BNB", "ALIENS")


class TestActiveContext:
    """Alias matching, one-shot consumption and lazy expiry."""

    def test_alias_both_directions(self, demo):
        demo.inject("BNB", "x")
        assert demo.get_active_context("WBNB") is not None
        demo.inject("WBNB", "x")
        assert demo.get_active_context("bnb") is not None

    def test_unrelated_token_misses(self, demo):
        demo.inject("BNB", "x")
        assert demo.get_active_context("ETH") is None

    def test_consumed_is_inert_before_expiry(self, demo):
        demo.inject("BNB", "x")
        demo.mark_consumed()
        assert demo.get_active_context("BNB") is None
        assert demo.get_active_context("WBNB") is None
        assert demo.snapshot().consumed is True

    def test_mark_consumed_is_idempotent(self, demo):
        demo.mark_consumed()
        demo.inject("BNB", "x")
        demo.mark_consumed()
        demo.mark_consumed()
        assert demo.snapshot().consumed is True

    def test_expiry_clears_slot(self, demo, clock):
        demo.inject("BNB", "x", ttl_ms=15_000)
        clock.now += 15_000
        assert demo.get_active_context("BNB") is not None
        clock.now += 1
        assert demo.get_active_context("BNB") is None
        assert demo.snapshot() is None

    def test_clear(self, demo):
        demo.inject("BNB", "x")
        demo.clear()
        assert demo.snapshot() is None


class TestTokensMatch:
    @pytest.mark.parametrize("a,b,expected", [
        ("BNB", "WBNB", True),
        ("weth", "ETH", True),
        ("W", "W", True),
        ("W", "", False),
        ("BTC", "ETH", False),
    ])
    def test_cases(self, a, b, expected):
        assert tokens_match(a, b) is expected
