from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from chainmind.domain.models import GateVerdict, MarketSnapshot, PortfolioSnapshot

logger = logging.getLogger(__name__)


class GasPriceSource(Protocol):
    async def get_gas_price(self, chain: str) -> float:
        ...


@dataclass(frozen=True)
class RiskGatePolicy:
    max_gas_price_gwei: float = 100.0
    monitored_networks: tuple[str, ...] = ("ethereum", "polygon")
    max_price_change_24h: float = 0.10
    min_interval_seconds: int = 300


class RiskGate:
    """Pre-cycle admission control.

    Every check runs on each call and all failing reasons are returned
    together; the cycle is admitted only when the list is empty.
    """

    def __init__(
        self,
        *,
        gas_source: GasPriceSource,
        policy: RiskGatePolicy | None = None,
        emergency_stop: bool = False,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.gas_source = gas_source
        self.policy = policy or RiskGatePolicy()
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._emergency_stop = emergency_stop
        self._last_evaluation: datetime | None = None
        self._market_cache: MarketSnapshot | None = None

    @property
    def emergency_stop(self) -> bool:
        return self._emergency_stop

    @property
    def last_evaluation(self) -> datetime | None:
        return self._last_evaluation

    def set_emergency_stop(self, enabled: bool) -> None:
        if enabled != self._emergency_stop:
            logger.warning(
                "emergency_stop_activated" if enabled else "emergency_stop_cleared"
            )
        self._emergency_stop = enabled

    def record_evaluation(self, now: datetime) -> None:
        self._last_evaluation = now

    def update_market_cache(self, snapshot: MarketSnapshot) -> None:
        self._market_cache = snapshot

    async def should_run(self, now: datetime | None = None) -> GateVerdict:
        moment = now or self.now_provider()
        reasons: list[str] = []
        if self._emergency_stop:
            reasons.append("Emergency stop activated")
        reasons.extend(self._check_throttle(moment))
        reasons.extend(await self._check_gas(self.policy.monitored_networks))
        reasons.extend(self._check_volatility())
        reasons.extend(self.check_portfolio_concentration(None))

        verdict = GateVerdict(admit=not reasons, reasons=reasons)
        if not verdict.admit:
            logger.warning("risk_gate_rejected", extra={"extra": {"reasons": reasons}})
        return verdict

    def _check_throttle(self, now: datetime) -> list[str]:
        if self._last_evaluation is None:
            return []
        elapsed = (now - self._last_evaluation).total_seconds()
        if elapsed < self.policy.min_interval_seconds:
            return [
                f"Evaluation throttled: {int(elapsed)}s since last evaluation "
                f"(minimum {self.policy.min_interval_seconds}s)"
            ]
        return []

    async def _check_gas(self, networks: Sequence[str]) -> list[str]:
        reasons: list[str] = []
        for network in networks:
            try:
                gas_price = await self.gas_source.get_gas_price(network)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "risk_gate_gas_price_unavailable",
                    extra={"extra": {"network": network, "error_type": type(exc).__name__}},
                )
                reasons.append(f"Risk check system error: gas price unavailable for {network}")
                continue
            if gas_price > self.policy.max_gas_price_gwei:
                reasons.append(f"Gas price too high: {gas_price:g} gwei")
        return reasons

    def _check_volatility(self) -> list[str]:
        if self._market_cache is None:
            return []
        reasons: list[str] = []
        for pair in self._market_cache.successful():
            change = pair.token_metrics.price_change_24h
            if change is not None and abs(change) > self.policy.max_price_change_24h:
                reasons.append(
                    "High market volatility detected: "
                    f"{pair.token} on {pair.chain} has high volatility: {change * 100:.2f}%"
                )
        return reasons

    def check_portfolio_concentration(self, portfolio: PortfolioSnapshot | None) -> list[str]:
        # extension point, no concentration limits are enforced yet
        del portfolio
        return []

    def state(self, now: datetime | None = None) -> dict[str, Any]:
        moment = now or self.now_provider()
        cache_age = None
        if self._market_cache is not None:
            cache_age = round((moment - self._market_cache.collected_at).total_seconds(), 3)
        return {
            "emergency_stop": self._emergency_stop,
            "last_evaluation": self._last_evaluation.isoformat() if self._last_evaluation else None,
            "min_interval_seconds": self.policy.min_interval_seconds,
            "max_gas_price_gwei": self.policy.max_gas_price_gwei,
            "monitored_networks": list(self.policy.monitored_networks),
            "market_cache_age_seconds": cache_age,
        }
