from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime

from chainmind.domain.errors import DataApiError, DataApiErrorKind
from chainmind.domain.models import LendingMetrics, PairFailure, PairSnapshot, TokenMetrics
from chainmind.logging_utils import JsonFormatter
from chainmind.observability import InMemoryInstrumentation, reset_instrumentation_for_tests
from chainmind.services.market_snapshot_service import MarketSnapshotService

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FakeDataApi:
    def __init__(self, failing: set[tuple[str, str]] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, ...]] = []

    async def get_token_data(self, token: str, chain: str) -> TokenMetrics:
        self.calls.append(("token", chain, token))
        if (chain, token) in self.failing:
            raise DataApiError(kind=DataApiErrorKind.SERVER, message="HTTP 503")
        return TokenMetrics(price=2.0, liquidity=10.0, volume_24h=5.0, price_change_24h=0.01)

    async def get_lending_rates(self, protocol: str, asset: str, chain: str) -> LendingMetrics:
        self.calls.append(("lending", protocol, chain, asset))
        return LendingMetrics(supply_apy=3.0, borrow_apy=4.0)

    async def get_gas_price(self, chain: str) -> float:
        return 10.0


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.formatter = JsonFormatter()
        self.lines: list[dict] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(json.loads(self.format(record)))


def test_collects_every_configured_pair_in_order() -> None:
    api = FakeDataApi()
    service = MarketSnapshotService(
        data_api=api,
        pairs=[("ethereum", "USDC"), ("polygon", "WETH")],
        lending_protocol="compound",
        now_provider=lambda: NOW,
    )

    snapshot = asyncio.run(service.collect())

    assert [(p.chain, p.token) for p in snapshot.pairs] == [("ethereum", "USDC"), ("polygon", "WETH")]
    assert all(isinstance(p, PairSnapshot) for p in snapshot.pairs)
    assert snapshot.collected_at == NOW
    assert ("lending", "compound", "polygon", "WETH") in api.calls


def test_failing_pair_is_kept_as_failure_and_others_survive() -> None:
    instrumentation = InMemoryInstrumentation()
    reset_instrumentation_for_tests(instrumentation)
    service = MarketSnapshotService(
        data_api=FakeDataApi(failing={("polygon", "USDC")}),
        pairs=[("ethereum", "USDC"), ("polygon", "USDC"), ("arbitrum", "USDC")],
        now_provider=lambda: NOW,
    )

    snapshot = asyncio.run(service.collect())

    assert len(snapshot.successful()) == 2
    failure = snapshot.failures()[0]
    assert isinstance(failure, PairFailure)
    assert (failure.chain, failure.token) == ("polygon", "USDC")
    assert failure.error_type == "DataApiError"
    assert failure.error == "HTTP 503"
    assert set(snapshot.as_prompt_payload()) == {"ethereum", "arbitrum"}
    assert instrumentation.counters["market_pair_failures_total"] == 1


def test_pair_failure_log_carries_chain_and_token() -> None:
    handler = _Capture()
    target = logging.getLogger("chainmind.services.market_snapshot_service")
    target.addHandler(handler)
    target.setLevel(logging.INFO)
    try:
        service = MarketSnapshotService(
            data_api=FakeDataApi(failing={("ethereum", "WETH")}),
            pairs=[("ethereum", "WETH")],
        )
        asyncio.run(service.collect())
    finally:
        target.removeHandler(handler)

    failed = [line for line in handler.lines if line["message"] == "market_pair_collection_failed"]
    assert failed[0]["chain"] == "ethereum"
    assert failed[0]["token"] == "WETH"
    assert failed[0]["error_type"] == "DataApiError"
