from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DecisionAction(StrEnum):
    REBALANCE = "rebalance"
    HOLD = "hold"
    BRIDGE = "bridge"
    LEND = "lend"
    SWAP = "swap"


ROUTED_ACTIONS = frozenset({DecisionAction.REBALANCE, DecisionAction.BRIDGE})


class RiskTier(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def utc_now() -> datetime:
    return datetime.now(UTC)


class Decision(BaseModel):
    """Structured recommendation produced by the decision oracle.

    ``action`` keeps the raw string reported by the oracle so that unknown
    actions stay representable; ``kind`` matches it exactly against
    ``DecisionAction``, so case or whitespace variants resolve to ``None``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    action: str
    from_chain: str | None = Field(default=None, alias="fromChain")
    to_chain: str | None = Field(default=None, alias="toChain")
    token: str | None = None
    amount: str | None = None
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)
    target_protocol: str | None = Field(default=None, alias="targetProtocol")
    expected_apy: float | None = Field(default=None, alias="expectedAPY")
    risk_level: RiskTier | None = Field(default=None, alias="riskLevel")

    @property
    def kind(self) -> DecisionAction | None:
        try:
            return DecisionAction(self.action)
        except ValueError:
            return None


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision_id: str
    success: bool
    transaction_hash: str | None = None
    gas_used: int | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_outcome_fields(self) -> ExecutionResult:
        if self.success and self.error is not None:
            raise ValueError("successful execution cannot carry an error")
        if not self.success:
            if not self.error:
                raise ValueError("failed execution requires an error message")
            if self.transaction_hash is not None:
                raise ValueError("failed execution cannot carry a transaction hash")
        return self

    @classmethod
    def failed(cls, decision_id: str, error: str, *, timestamp: datetime | None = None) -> ExecutionResult:
        return cls(
            decision_id=decision_id,
            success=False,
            error=error or "Unknown error",
            timestamp=timestamp or utc_now(),
        )


class ExecutionPayload(BaseModel):
    """Arguments forwarded to the executor contract for one decision."""

    model_config = ConfigDict(frozen=True)

    action: str
    from_chain: str
    to_chain: str
    token: str
    amount: str
    reason: str
    target_protocol: str | None = None
    execution_data: bytes = b""


class TransactionReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_hash: str
    gas_used: int
    success: bool
    block_number: int | None = None


class TokenMetrics(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    price: float
    liquidity: float
    volume_24h: float = Field(alias="volume24h")
    market_cap: float | None = Field(default=None, alias="marketCap")
    price_change_24h: float | None = Field(default=None, alias="priceChange24h")


class LendingMetrics(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    supply_apy: float = Field(alias="supplyAPY")
    borrow_apy: float = Field(alias="borrowAPY")
    utilization: float | None = None
    total_supply: float | None = Field(default=None, alias="totalSupply")
    total_borrow: float | None = Field(default=None, alias="totalBorrow")


class GasMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    chain: str
    gas_price_gwei: float


class PairSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["ok"] = "ok"
    chain: str
    token: str
    token_metrics: TokenMetrics
    lending_metrics: LendingMetrics
    observed_at: datetime = Field(default_factory=utc_now)

    def as_prompt_payload(self) -> dict[str, Any]:
        return {
            "price": self.token_metrics.price,
            "liquidity": self.token_metrics.liquidity,
            "volume24h": self.token_metrics.volume_24h,
            "priceChange24h": self.token_metrics.price_change_24h,
            "supplyAPY": self.lending_metrics.supply_apy,
            "borrowAPY": self.lending_metrics.borrow_apy,
        }


class PairFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failed"] = "failed"
    chain: str
    token: str
    error_type: str
    error: str


PairResult = Annotated[PairSnapshot | PairFailure, Field(discriminator="status")]


class MarketSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    pairs: tuple[PairResult, ...] = ()
    collected_at: datetime = Field(default_factory=utc_now)

    def successful(self) -> list[PairSnapshot]:
        return [pair for pair in self.pairs if isinstance(pair, PairSnapshot)]

    def failures(self) -> list[PairFailure]:
        return [pair for pair in self.pairs if isinstance(pair, PairFailure)]

    def as_prompt_payload(self) -> dict[str, dict[str, dict[str, Any]]]:
        payload: dict[str, dict[str, dict[str, Any]]] = {}
        for pair in self.successful():
            payload.setdefault(pair.chain, {})[pair.token] = pair.as_prompt_payload()
        return payload


class VaultInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_strategies: tuple[str, ...] = ()
    supported_tokens: tuple[str, ...] = ()


class PortfolioSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    vault: str
    network: str
    strategies: tuple[str, ...] = ()
    token_balances: dict[str, str] = Field(default_factory=dict)
    supported_tokens: tuple[str, ...] = ()
    unavailable_tokens: tuple[str, ...] = ()


class OracleConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_gas_price: str = "50"
    min_transaction_value: str = "1000"
    max_slippage: str = "1"
    allowed_networks: tuple[str, ...] = ("ethereum", "polygon", "arbitrum", "optimism")
    allowed_protocols: tuple[str, ...] = ("aave", "compound", "uniswap", "curve")

    def as_prompt_payload(self) -> dict[str, Any]:
        return {
            "maxGasPrice": self.max_gas_price,
            "minTransactionValue": self.min_transaction_value,
            "maxSlippage": self.max_slippage,
            "allowedNetworks": list(self.allowed_networks),
            "allowedProtocols": list(self.allowed_protocols),
        }


class DecisionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    decision: Decision
    market_context: MarketSnapshot
    execution_result: ExecutionResult
    timestamp: datetime

    @model_validator(mode="after")
    def check_ids_match(self) -> DecisionRecord:
        if self.execution_result.decision_id != self.id:
            raise ValueError("record id must match execution_result.decision_id")
        return self


class GateVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    admit: bool
    reasons: list[str] = Field(default_factory=list)


class LedgerStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    successes: int
    success_rate_percent: float
    counts_by_action: dict[str, int] = Field(default_factory=dict)
