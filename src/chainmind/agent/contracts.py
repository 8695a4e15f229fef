from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chainmind.domain.models import (
    DecisionAction,
    MarketSnapshot,
    OracleConstraints,
    PortfolioSnapshot,
    RiskTier,
)

DECISION_FUNCTION_NAME = "generate_rebalance_decision"

DECISION_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": DECISION_FUNCTION_NAME,
        "description": "Generate a rebalancing decision based on market analysis",
        "parameters": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": [a.value for a in DecisionAction]},
                "fromChain": {"type": "string"},
                "toChain": {"type": "string"},
                "token": {"type": "string"},
                "amount": {"type": "string"},
                "reason": {"type": "string"},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "targetProtocol": {"type": "string"},
                "expectedAPY": {"type": "number"},
                "riskLevel": {"type": "string", "enum": [r.value for r in RiskTier]},
            },
            "required": ["action", "reason", "confidence"],
        },
    },
}


class DecisionContext(BaseModel):
    """Everything the oracle sees for one cycle."""

    model_config = ConfigDict(frozen=True)

    portfolio: PortfolioSnapshot
    market: MarketSnapshot
    constraints: OracleConstraints = Field(default_factory=OracleConstraints)

    def as_prompt_sections(self) -> dict[str, Any]:
        portfolio = self.portfolio
        return {
            "portfolio": {
                "vault": portfolio.vault,
                "network": portfolio.network,
                "strategies": list(portfolio.strategies),
                "tokenBalances": dict(portfolio.token_balances),
                "supportedTokens": list(portfolio.supported_tokens),
            },
            "market": self.market.as_prompt_payload(),
            "constraints": self.constraints.as_prompt_payload(),
        }
