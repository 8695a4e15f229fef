from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Protocol
from uuid import uuid4

from chainmind.agent.oracle import DecisionOracle
from chainmind.domain.models import (
    Decision,
    DecisionRecord,
    ExecutionResult,
    MarketSnapshot,
    OracleConstraints,
    PortfolioSnapshot,
)
from chainmind.logging_context import with_cycle_context, with_logging_context
from chainmind.observability import CorrelationContext, Instrumentation, get_instrumentation
from chainmind.services.decision_ledger import DecisionLedger
from chainmind.services.decision_validator import DecisionValidator

logger = logging.getLogger(__name__)


class MarketSource(Protocol):
    async def collect(self) -> MarketSnapshot:
        ...


class PortfolioSource(Protocol):
    async def snapshot(self) -> PortfolioSnapshot:
        ...


class DecisionExecutor(Protocol):
    async def execute(self, decision: Decision, decision_id: str) -> ExecutionResult:
        ...


def new_decision_id(now: datetime | None = None) -> str:
    moment = now or datetime.now(UTC)
    return f"decision_{int(moment.timestamp() * 1000)}_{secrets.token_hex(5)[:9]}"


class CycleOrchestrator:
    """Runs one decision cycle at a time: collect, decide, validate, execute, record."""

    def __init__(
        self,
        *,
        market: MarketSource,
        portfolio: PortfolioSource,
        oracle: DecisionOracle,
        validator: DecisionValidator,
        executor: DecisionExecutor,
        ledger: DecisionLedger,
        constraints: OracleConstraints | None = None,
        run_id: str | None = None,
        now_provider: Callable[[], datetime] | None = None,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.market = market
        self.portfolio = portfolio
        self.oracle = oracle
        self.validator = validator
        self.executor = executor
        self.ledger = ledger
        self.constraints = constraints or OracleConstraints()
        self.run_id = run_id
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._instrumentation = instrumentation
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def instrumentation(self) -> Instrumentation:
        return self._instrumentation or get_instrumentation()

    @contextmanager
    def _cycle_slot(self) -> Iterator[None]:
        self._in_flight = True
        try:
            yield
        finally:
            self._in_flight = False

    def _allocate_decision_id(self) -> str:
        while True:
            decision_id = new_decision_id(self.now_provider())
            if self.ledger.by_id(decision_id) is None:
                return decision_id

    async def run_cycle(self) -> ExecutionResult | None:
        # check-and-set happens before the first await
        if self._in_flight:
            self.instrumentation.counter("cycle_skipped_total")
            logger.info("cycle_skipped_in_flight")
            return None

        with self._cycle_slot():
            cycle_id = uuid4().hex
            with with_cycle_context(cycle_id=cycle_id, run_id=self.run_id):
                attrs = CorrelationContext(run_id=self.run_id, cycle_id=cycle_id).as_attributes()
                started = time.monotonic()
                self.instrumentation.counter("cycle_started_total")
                logger.info("cycle_started")
                try:
                    with self.instrumentation.trace("decision_cycle", attrs=attrs):
                        return await self._run()
                except Exception:
                    self.instrumentation.counter("cycle_failed_total")
                    logger.exception("cycle_failed")
                    raise
                finally:
                    self.instrumentation.histogram(
                        "cycle_duration_ms", (time.monotonic() - started) * 1000
                    )

    async def _run(self) -> ExecutionResult | None:
        market = await self.market.collect()
        portfolio = await self.portfolio.snapshot()
        decision = await self.oracle.generate_decision(portfolio, market, self.constraints)

        if decision is None:
            self.instrumentation.counter("cycle_no_decision_total")
            logger.info("cycle_no_decision")
            return None

        rejection_reasons = self.validator.explain(decision)
        if rejection_reasons:
            self.instrumentation.counter("cycle_rejected_total")
            logger.warning(
                "decision_rejected",
                extra={"extra": {"action": decision.action, "reasons": rejection_reasons}},
            )
            return None

        decision_id = self._allocate_decision_id()
        with with_logging_context(decision_id=decision_id):
            try:
                result = await self.executor.execute(decision, decision_id)
            except Exception as exc:
                failed = ExecutionResult.failed(
                    decision_id,
                    f"{type(exc).__name__}: {exc}",
                    timestamp=self.now_provider(),
                )
                self._record(decision, market, failed)
                raise

            self._record(decision, market, result)
            self.instrumentation.counter(
                "cycle_executed_total", attrs={"success": str(result.success).lower()}
            )
            logger.info(
                "cycle_completed",
                extra={
                    "extra": {
                        "action": decision.action,
                        "success": result.success,
                        "tx_hash": result.transaction_hash,
                    }
                },
            )
            return result

    def _record(self, decision: Decision, market: MarketSnapshot, result: ExecutionResult) -> None:
        self.ledger.append(
            DecisionRecord(
                id=result.decision_id,
                decision=decision,
                market_context=market,
                execution_result=result,
                timestamp=result.timestamp,
            )
        )
