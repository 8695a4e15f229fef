from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

from chainmind.domain.errors import DataApiError, DataApiErrorKind
from chainmind.domain.models import (
    LendingMetrics,
    MarketSnapshot,
    PairFailure,
    PairSnapshot,
    TokenMetrics,
)
from chainmind.services.risk_gate import RiskGate, RiskGatePolicy

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FakeGas:
    def __init__(self, prices: dict[str, float], failing: set[str] | None = None) -> None:
        self.prices = prices
        self.failing = failing or set()
        self.calls: list[str] = []

    async def get_gas_price(self, chain: str) -> float:
        self.calls.append(chain)
        if chain in self.failing:
            raise DataApiError(kind=DataApiErrorKind.SERVER, message="gas oracle down")
        return self.prices[chain]


def _snapshot(*changes: tuple[str, str, float | None]) -> MarketSnapshot:
    return MarketSnapshot(
        pairs=tuple(
            PairSnapshot(
                chain=chain,
                token=token,
                token_metrics=TokenMetrics(
                    price=1.0, liquidity=1.0, volume_24h=1.0, price_change_24h=change
                ),
                lending_metrics=LendingMetrics(supply_apy=1.0, borrow_apy=2.0),
                observed_at=NOW,
            )
            for chain, token, change in changes
        ),
        collected_at=NOW,
    )


def _gate(gas: FakeGas, **policy) -> RiskGate:
    return RiskGate(gas_source=gas, policy=RiskGatePolicy(**policy), now_provider=lambda: NOW)


def test_calm_conditions_admit() -> None:
    gate = _gate(FakeGas({"ethereum": 20, "polygon": 80}))
    gate.update_market_cache(_snapshot(("ethereum", "USDC", 0.001), ("polygon", "WETH", -0.05)))

    verdict = asyncio.run(gate.should_run())

    assert verdict.admit is True
    assert verdict.reasons == []


def test_high_gas_is_the_only_reason() -> None:
    gate = _gate(FakeGas({"ethereum": 150}), monitored_networks=("ethereum",))

    verdict = asyncio.run(gate.should_run())

    assert verdict.admit is False
    assert verdict.reasons == ["Gas price too high: 150 gwei"]


def test_gas_is_checked_on_every_monitored_network() -> None:
    gas = FakeGas({"ethereum": 30, "polygon": 250.5})
    gate = _gate(gas)

    verdict = asyncio.run(gate.should_run())

    assert gas.calls == ["ethereum", "polygon"]
    assert verdict.reasons == ["Gas price too high: 250.5 gwei"]


def test_gas_at_threshold_is_allowed() -> None:
    verdict = asyncio.run(_gate(FakeGas({"ethereum": 100, "polygon": 100})).should_run())
    assert verdict.admit is True


def test_gas_fetch_failure_fails_closed() -> None:
    gate = _gate(FakeGas({"ethereum": 10}, failing={"polygon"}))

    verdict = asyncio.run(gate.should_run())

    assert verdict.admit is False
    assert verdict.reasons == ["Risk check system error: gas price unavailable for polygon"]


def test_volatility_reason_reports_signed_percentage() -> None:
    gate = _gate(FakeGas({"ethereum": 10, "polygon": 10}))
    gate.update_market_cache(_snapshot(("arbitrum", "WETH", -0.153), ("ethereum", "USDC", 0.02)))

    verdict = asyncio.run(gate.should_run())

    assert verdict.reasons == [
        "High market volatility detected: WETH on arbitrum has high volatility: -15.30%"
    ]


def test_failed_pairs_and_missing_change_are_ignored() -> None:
    gate = _gate(FakeGas({"ethereum": 10, "polygon": 10}))
    snapshot = _snapshot(("ethereum", "USDC", None))
    gate.update_market_cache(
        MarketSnapshot(
            pairs=snapshot.pairs
            + (PairFailure(chain="polygon", token="WETH", error_type="X", error="y"),),
            collected_at=NOW,
        )
    )

    assert asyncio.run(gate.should_run()).admit is True


def test_throttle_applies_within_min_interval() -> None:
    gate = _gate(FakeGas({"ethereum": 10, "polygon": 10}))
    gate.record_evaluation(NOW - timedelta(seconds=120))

    verdict = asyncio.run(gate.should_run(NOW))

    assert verdict.reasons == [
        "Evaluation throttled: 120s since last evaluation (minimum 300s)"
    ]

    later = asyncio.run(gate.should_run(NOW + timedelta(seconds=180)))
    assert later.admit is True


def test_emergency_stop_with_other_failures_collects_all_reasons() -> None:
    gate = _gate(FakeGas({"ethereum": 500, "polygon": 10}))
    gate.set_emergency_stop(True)
    gate.record_evaluation(NOW - timedelta(seconds=10))
    gate.update_market_cache(_snapshot(("ethereum", "WETH", 0.5)))

    verdict = asyncio.run(gate.should_run(NOW))

    assert verdict.reasons == [
        "Emergency stop activated",
        "Evaluation throttled: 10s since last evaluation (minimum 300s)",
        "Gas price too high: 500 gwei",
        "High market volatility detected: WETH on ethereum has high volatility: 50.00%",
    ]


def test_emergency_stop_alone_blocks_and_clears() -> None:
    gate = _gate(FakeGas({"ethereum": 10, "polygon": 10}))
    gate.set_emergency_stop(True)

    assert asyncio.run(gate.should_run()).reasons == ["Emergency stop activated"]

    gate.set_emergency_stop(False)
    assert asyncio.run(gate.should_run()).admit is True


def test_state_reports_policy_and_cache_age() -> None:
    gate = _gate(FakeGas({}), monitored_networks=())
    gate.update_market_cache(_snapshot())
    gate.record_evaluation(NOW)

    state = gate.state(NOW + timedelta(seconds=30))

    assert state["emergency_stop"] is False
    assert state["last_evaluation"] == NOW.isoformat()
    assert state["market_cache_age_seconds"] == 30.0
    assert state["monitored_networks"] == []
