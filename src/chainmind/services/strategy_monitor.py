from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chainmind.agent.oracle import DecisionOracle
from chainmind.domain.errors import DecisionNotFoundError
from chainmind.domain.models import ExecutionResult, LedgerStats, MarketSnapshot
from chainmind.services.cycle_orchestrator import CycleOrchestrator, MarketSource
from chainmind.services.decision_ledger import DecisionLedger
from chainmind.services.risk_gate import RiskGate

logger = logging.getLogger(__name__)

REPORT_RECENT_DECISIONS = 10
LOW_SUCCESS_RATE_PERCENT = 70.0
LOW_ACTIVITY_DECISIONS = 5


class StrategyStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    active: bool
    emergency_stop: bool
    in_flight: bool
    last_evaluation: datetime | None
    ledger: LedgerStats
    gate: dict[str, Any] = Field(default_factory=dict)


class DailyReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: str
    summary: LedgerStats
    recent_decisions: list[dict[str, Any]]
    market_conditions: dict[str, Any]
    recommendations: list[str]
    generated_at: datetime


class StrategyMonitor:
    def __init__(
        self,
        *,
        gate: RiskGate,
        orchestrator: CycleOrchestrator,
        market: MarketSource,
        ledger: DecisionLedger,
        oracle: DecisionOracle,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.gate = gate
        self.orchestrator = orchestrator
        self.market = market
        self.ledger = ledger
        self.oracle = oracle
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._active = False
        self._market_cache: MarketSnapshot | None = None

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> None:
        logger.info("strategy_monitor_started")
        self._active = True
        await self.refresh_market_data()

    async def stop(self) -> None:
        logger.info("strategy_monitor_stopped")
        self._active = False

    def set_emergency_stop(self, enabled: bool) -> None:
        self.gate.set_emergency_stop(enabled)

    def emergency_stop(self) -> None:
        self.set_emergency_stop(True)

    async def refresh_market_data(self) -> MarketSnapshot | None:
        try:
            snapshot = await self.market.collect()
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "market_refresh_failed",
                extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
            )
            return None
        self._market_cache = snapshot
        self.gate.update_market_cache(snapshot)
        return snapshot

    async def evaluate_and_execute(self) -> ExecutionResult | None:
        if not self._active:
            logger.warning("strategy_monitor_inactive")
            return None

        now = self.now_provider()
        verdict = await self.gate.should_run(now)
        if not verdict.admit:
            logger.warning(
                "evaluation_skipped_by_risk_gate", extra={"extra": {"reasons": verdict.reasons}}
            )
            return None

        self.gate.record_evaluation(now)
        return await self.orchestrator.run_cycle()

    def status(self) -> StrategyStatus:
        return StrategyStatus(
            active=self._active,
            emergency_stop=self.gate.emergency_stop,
            in_flight=self.orchestrator.in_flight,
            last_evaluation=self.gate.last_evaluation,
            ledger=self.ledger.stats(),
            gate=self.gate.state(self.now_provider()),
        )

    def daily_report(self, now: datetime | None = None) -> DailyReport:
        report = build_daily_report(self.ledger, self._market_cache, now or self.now_provider())
        logger.info("daily_report_generated", extra={"extra": {"decisions": report.summary.total}})
        return report

    async def explain_decision(self, decision_id: str) -> str:
        record = self.ledger.by_id(decision_id)
        if record is None:
            raise DecisionNotFoundError(decision_id)
        return await self.oracle.explain_decision(record)


def build_daily_report(
    ledger: DecisionLedger, market: MarketSnapshot | None, now: datetime
) -> DailyReport:
    stats = ledger.stats()
    recent = [
        {
            "id": record.id,
            "action": record.decision.action,
            "success": record.execution_result.success,
            "timestamp": record.timestamp.isoformat(),
        }
        for record in ledger.recent(REPORT_RECENT_DECISIONS)
    ]
    conditions: dict[str, Any] = {}
    if market is not None:
        conditions = {
            "collected_at": market.collected_at.isoformat(),
            "pairs": len(market.successful()),
            "failed_pairs": len(market.failures()),
            "market": market.as_prompt_payload(),
        }
    return DailyReport(
        date=now.date().isoformat(),
        summary=stats,
        recent_decisions=recent,
        market_conditions=conditions,
        recommendations=recommendations_for(stats),
        generated_at=now,
    )


def recommendations_for(stats: LedgerStats) -> list[str]:
    recommendations: list[str] = []
    if stats.success_rate_percent < LOW_SUCCESS_RATE_PERCENT:
        recommendations.append("Consider reviewing decision parameters - success rate below 70%")
    if stats.total < LOW_ACTIVITY_DECISIONS:
        recommendations.append(
            "Low activity detected - market conditions may not be favorable for rebalancing"
        )
    return recommendations
