from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from chainmind.domain.models import (
    LendingMetrics,
    MarketSnapshot,
    PairFailure,
    PairResult,
    PairSnapshot,
    TokenMetrics,
)
from chainmind.logging_context import with_logging_context
from chainmind.observability import get_instrumentation

logger = logging.getLogger(__name__)


class MarketDataApi(Protocol):
    async def get_token_data(self, token: str, chain: str) -> TokenMetrics:
        ...

    async def get_lending_rates(self, protocol: str, asset: str, chain: str) -> LendingMetrics:
        ...

    async def get_gas_price(self, chain: str) -> float:
        ...


class MarketSnapshotService:
    """Collects token and lending metrics for a fixed set of (chain, token) pairs.

    A failing pair never aborts the snapshot; it is kept as a ``PairFailure``.
    """

    def __init__(
        self,
        *,
        data_api: MarketDataApi,
        pairs: Sequence[tuple[str, str]],
        lending_protocol: str = "aave",
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.data_api = data_api
        self.pairs = tuple(pairs)
        self.lending_protocol = lending_protocol
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    async def collect(self) -> MarketSnapshot:
        results: list[PairResult] = []
        for chain, token in self.pairs:
            results.append(await self._collect_pair(chain, token))

        snapshot = MarketSnapshot(pairs=tuple(results), collected_at=self.now_provider())
        failed = len(snapshot.failures())
        get_instrumentation().counter("market_pair_failures_total", failed)
        logger.info(
            "market_snapshot_collected",
            extra={"extra": {"pairs": len(results), "failed_pairs": failed}},
        )
        return snapshot

    async def _collect_pair(self, chain: str, token: str) -> PairResult:
        with with_logging_context(chain=chain, token=token):
            try:
                token_metrics = await self.data_api.get_token_data(token, chain)
                lending_metrics = await self.data_api.get_lending_rates(
                    self.lending_protocol, token, chain
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "market_pair_collection_failed",
                    extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
                )
                return PairFailure(
                    chain=chain,
                    token=token,
                    error_type=type(exc).__name__,
                    error=str(exc) or type(exc).__name__,
                )
        return PairSnapshot(
            chain=chain,
            token=token,
            token_metrics=token_metrics,
            lending_metrics=lending_metrics,
            observed_at=self.now_provider(),
        )
