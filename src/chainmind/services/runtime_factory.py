from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from chainmind.adapters.chain import Web3ChainClient
from chainmind.adapters.data_api import DataApiClient, DataApiReliabilityConfig
from chainmind.adapters.llm_client import OpenAiCompatibleClient
from chainmind.adapters.retry import BackoffPolicy
from chainmind.agent.oracle import LlmDecisionOracle
from chainmind.config import Settings
from chainmind.domain.errors import ConfigurationError
from chainmind.services.cycle_orchestrator import CycleOrchestrator
from chainmind.services.decision_ledger import DecisionLedger
from chainmind.services.decision_validator import DecisionValidator, ValidationPolicy
from chainmind.services.execution_service import ExecutionService
from chainmind.services.market_snapshot_service import MarketSnapshotService
from chainmind.services.portfolio_service import PortfolioService
from chainmind.services.risk_gate import RiskGate, RiskGatePolicy
from chainmind.services.strategy_monitor import StrategyMonitor

logger = logging.getLogger(__name__)


def emergency_stop_requested(settings: Settings) -> bool:
    return settings.emergency_stop or Path(settings.emergency_stop_file).exists()


def build_data_api(settings: Settings) -> DataApiClient:
    if settings.data_api_key is None:
        raise ConfigurationError("DATA_API_KEY is required")
    return DataApiClient(
        api_key=settings.data_api_key.get_secret_value(),
        base_url=settings.data_api_base_url,
        reliability=DataApiReliabilityConfig(
            timeout_seconds=settings.data_api_timeout_seconds,
            backoff=BackoffPolicy(max_attempts=settings.data_api_max_attempts),
        ),
    )


def build_llm_client(settings: Settings) -> OpenAiCompatibleClient:
    if settings.llm_api_key is None:
        raise ConfigurationError("LLM_API_KEY is required")
    return OpenAiCompatibleClient(
        api_key=settings.llm_api_key.get_secret_value(),
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_seconds=settings.llm_timeout_seconds,
    )


def build_oracle(settings: Settings, client: OpenAiCompatibleClient) -> LlmDecisionOracle:
    return LlmDecisionOracle(client=client, temperature=settings.llm_temperature)


def build_chain_client(settings: Settings) -> Web3ChainClient:
    rpc_urls = settings.rpc_urls()
    if settings.default_network not in rpc_urls:
        raise ConfigurationError(
            f"RPC URL for DEFAULT_NETWORK={settings.default_network} is not configured"
        )
    private_key = settings.executor_private_key
    return Web3ChainClient(
        rpc_urls=rpc_urls,
        private_key=private_key.get_secret_value() if private_key else None,
        token_decimals=settings.token_decimals,
        receipt_timeout_seconds=settings.tx_receipt_timeout_seconds,
    )


def build_ledger(settings: Settings) -> DecisionLedger:
    journal = settings.ledger_journal_path or None
    if journal is None:
        return DecisionLedger(settings.ledger_max_records)
    return DecisionLedger.from_journal(journal, settings.ledger_max_records, keep_journal=True)


@dataclass
class Runtime:
    settings: Settings
    data_api: DataApiClient
    llm_client: OpenAiCompatibleClient
    chain: Web3ChainClient
    ledger: DecisionLedger
    market: MarketSnapshotService
    gate: RiskGate
    orchestrator: CycleOrchestrator
    monitor: StrategyMonitor
    run_id: str = field(default_factory=lambda: uuid4().hex)

    async def aclose(self) -> None:
        await self.data_api.close()
        await self.llm_client.close()
        await self.chain.aclose()


def build_runtime(settings: Settings) -> Runtime:
    run_id = uuid4().hex
    data_api = build_data_api(settings)
    llm_client = build_llm_client(settings)
    chain = build_chain_client(settings)
    oracle = build_oracle(settings, llm_client)
    ledger = build_ledger(settings)

    market = MarketSnapshotService(
        data_api=data_api,
        pairs=settings.market_pairs(),
        lending_protocol=settings.lending_protocol,
    )
    portfolio = PortfolioService(
        chain=chain,
        vault_address=settings.vault_address,
        network=settings.default_network,
    )
    validator = DecisionValidator(
        ValidationPolicy(
            min_confidence=settings.min_confidence,
            min_amount=settings.min_transaction_amount,
        )
    )
    executor = ExecutionService(chain=chain, executor_address=settings.executor_address)
    orchestrator = CycleOrchestrator(
        market=market,
        portfolio=portfolio,
        oracle=oracle,
        validator=validator,
        executor=executor,
        ledger=ledger,
        constraints=settings.oracle_constraints(),
        run_id=run_id,
    )
    gate = RiskGate(
        gas_source=data_api,
        policy=RiskGatePolicy(
            max_gas_price_gwei=settings.max_gas_price_gwei,
            monitored_networks=tuple(settings.gas_monitored_networks),
            max_price_change_24h=settings.max_price_change_24h,
            min_interval_seconds=settings.min_evaluation_interval_seconds,
        ),
        emergency_stop=emergency_stop_requested(settings),
    )
    monitor = StrategyMonitor(
        gate=gate,
        orchestrator=orchestrator,
        market=market,
        ledger=ledger,
        oracle=oracle,
    )
    logger.info(
        "runtime_built",
        extra={
            "extra": {
                "run_id": run_id,
                "pairs": len(settings.market_pairs()),
                "networks": chain.networks(),
                "ledger_records": len(ledger),
            }
        },
    )
    return Runtime(
        settings=settings,
        data_api=data_api,
        llm_client=llm_client,
        chain=chain,
        ledger=ledger,
        market=market,
        gate=gate,
        orchestrator=orchestrator,
        monitor=monitor,
        run_id=run_id,
    )
