from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from chainmind.config import Settings
from chainmind.domain.models import (
    Decision,
    DecisionRecord,
    ExecutionResult,
    LendingMetrics,
    MarketSnapshot,
    PairSnapshot,
    TokenMetrics,
)
from chainmind.observability import reset_instrumentation_for_tests

FROZEN_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    explicit = {"PYTEST_CURRENT_TEST"}
    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys and key not in explicit:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_runtime_files_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("LEDGER_JOURNAL_PATH", str(tmp_path / "decisions.jsonl"))
    monkeypatch.setenv("EMERGENCY_STOP_FILE", str(tmp_path / "chainmind.stop"))
    reset_instrumentation_for_tests()


@pytest.fixture
def make_decision() -> Callable[..., Decision]:
    def _make(**overrides) -> Decision:
        base = {
            "action": "rebalance",
            "from_chain": "ethereum",
            "to_chain": "polygon",
            "token": "0x" + "11" * 20,
            "amount": "500",
            "reason": "higher supply APY on polygon",
            "confidence": 0.9,
        }
        base.update(overrides)
        return Decision(**base)

    return _make


@pytest.fixture
def make_snapshot() -> Callable[..., MarketSnapshot]:
    def _make(*changes: tuple[str, str, float | None]) -> MarketSnapshot:
        pairs = tuple(
            PairSnapshot(
                chain=chain,
                token=token,
                token_metrics=TokenMetrics(
                    price=1.0,
                    liquidity=1_000_000.0,
                    volume_24h=50_000.0,
                    price_change_24h=change,
                ),
                lending_metrics=LendingMetrics(supply_apy=3.1, borrow_apy=4.2),
                observed_at=FROZEN_NOW,
            )
            for chain, token, change in changes
        )
        return MarketSnapshot(pairs=pairs, collected_at=FROZEN_NOW)

    return _make


@pytest.fixture
def make_record(make_decision, make_snapshot) -> Callable[..., DecisionRecord]:
    def _make(index: int, *, success: bool = True, action: str = "hold") -> DecisionRecord:
        decision_id = f"decision_{1_700_000_000_000 + index}_{index:09x}"
        timestamp = FROZEN_NOW + timedelta(seconds=index)
        if success:
            result = ExecutionResult(decision_id=decision_id, success=True, timestamp=timestamp)
        else:
            result = ExecutionResult.failed(decision_id, "boom", timestamp=timestamp)
        return DecisionRecord(
            id=decision_id,
            decision=make_decision(action=action),
            market_context=make_snapshot(("ethereum", "USDC", 0.01)),
            execution_result=result,
            timestamp=timestamp,
        )

    return _make


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
