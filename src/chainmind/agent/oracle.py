from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError

from chainmind.agent.contracts import DECISION_TOOL, DecisionContext
from chainmind.domain.errors import LlmRequestError, OracleError
from chainmind.domain.models import (
    Decision,
    DecisionRecord,
    MarketSnapshot,
    OracleConstraints,
    PortfolioSnapshot,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are ChainMind, an autonomous DeFi strategist. Your role is to:
1. Analyze multi-chain DeFi market conditions using real-time data
2. Identify optimal yield opportunities across protocols and chains
3. Generate rebalancing decisions that maximize returns while managing risk
4. Explain your reasoning in clear, natural language

Key principles:
- Prioritize capital preservation over aggressive yield hunting
- Consider gas costs and slippage in every decision
- Diversify across chains and protocols to reduce risk
- Adapt strategies to market volatility and trends

When making decisions, provide clear reasoning and quantify expected outcomes."""

CHAT_FALLBACK = "I apologize, but I could not generate a response."

_DECISION_QUESTIONS = """Based on this data, should I:
1. Rebalance assets between strategies or chains?
2. Bridge tokens to a different chain for better yields?
3. Enter or exit lending positions based on rate changes?
4. Swap tokens to take advantage of arbitrage opportunities?
5. Hold current positions?

Consider APY differences across chains and protocols, gas costs and fees,
market volatility, risk/reward ratios and diversification.
Provide a specific recommendation with reasoning."""


class LlmClient(Protocol):
    async def complete_tool_call(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        tool: Mapping[str, Any],
        temperature: float,
        max_tokens: int | None = None,
    ) -> str | None:
        ...

    async def complete_text(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        temperature: float,
        max_tokens: int | None = None,
    ) -> str:
        ...


class DecisionOracle(Protocol):
    async def generate_decision(
        self,
        portfolio: PortfolioSnapshot,
        market: MarketSnapshot,
        constraints: OracleConstraints,
    ) -> Decision | None:
        ...

    async def explain_decision(self, record: DecisionRecord) -> str:
        ...


@dataclass(frozen=True)
class PromptBuildResult:
    prompt: str
    trimmed: bool


@dataclass(frozen=True)
class PromptBuilder:
    max_chars: int = 12000

    def build(self, context: DecisionContext) -> PromptBuildResult:
        sections = context.as_prompt_sections()
        rendered = {
            name: json.dumps(value, indent=2, sort_keys=True, default=str)
            for name, value in sections.items()
        }
        trimmed = False
        # market data is the only section that grows with configuration
        budget = self.max_chars - len(rendered["portfolio"]) - len(rendered["constraints"])
        if len(rendered["market"]) > max(0, budget):
            trimmed = True
            compact = json.dumps(sections["market"], separators=(",", ":"), sort_keys=True)
            rendered["market"] = compact[: max(0, budget)]
        prompt = (
            "Analyze the current portfolio and market conditions to determine if any "
            "rebalancing action should be taken.\n\n"
            f"Current Portfolio:\n{rendered['portfolio']}\n\n"
            f"Market Data:\n{rendered['market']}\n\n"
            f"Constraints:\n{rendered['constraints']}\n\n"
            f"{_DECISION_QUESTIONS}"
        )
        return PromptBuildResult(prompt=prompt, trimmed=trimmed)

    def build_explanation(self, record: DecisionRecord) -> str:
        context = {
            "decision": record.decision.model_dump(mode="json", by_alias=True, exclude_none=True),
            "marketContext": record.market_context.as_prompt_payload(),
            "executionResult": record.execution_result.model_dump(mode="json", exclude_none=True),
        }
        return (
            f"Explain the reasoning behind rebalancing decision {record.id} in natural language.\n\n"
            f"Additional context: {json.dumps(context, indent=2, sort_keys=True)}\n\n"
            "Provide a clear, concise explanation that a non-technical user could understand, "
            "including the action taken and why, expected benefits, risk considerations and "
            "the market conditions that influenced the decision."
        )


@dataclass(frozen=True)
class LlmDecisionOracle:
    client: LlmClient
    prompt_builder: PromptBuilder = PromptBuilder()
    temperature: float = 0.3
    max_tokens: int = 1500
    explain_temperature: float = 0.5
    explain_max_tokens: int = 1000
    chat_max_tokens: int = 2000

    async def generate_decision(
        self,
        portfolio: PortfolioSnapshot,
        market: MarketSnapshot,
        constraints: OracleConstraints,
    ) -> Decision | None:
        prompt_result = self.prompt_builder.build(
            DecisionContext(portfolio=portfolio, market=market, constraints=constraints)
        )
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt_result.prompt},
        ]
        try:
            arguments = await self.client.complete_tool_call(
                messages,
                tool=DECISION_TOOL,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except LlmRequestError as exc:
            raise OracleError(f"oracle request failed: {exc}") from exc

        if arguments is None:
            logger.info("oracle_returned_no_tool_call")
            return None

        try:
            raw = json.loads(arguments)
        except json.JSONDecodeError as exc:
            raise OracleError("oracle returned unparsable tool arguments") from exc
        if not isinstance(raw, dict):
            raise OracleError("oracle tool arguments must be a JSON object")

        try:
            decision = Decision.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "oracle_decision_schema_invalid",
                extra={"extra": {"errors": exc.error_count(), "action": raw.get("action")}},
            )
            return None

        logger.info(
            "oracle_decision_generated",
            extra={
                "extra": {
                    "action": decision.action,
                    "confidence": decision.confidence,
                    "prompt_trimmed": prompt_result.trimmed,
                }
            },
        )
        return decision

    async def explain_decision(self, record: DecisionRecord) -> str:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self.prompt_builder.build_explanation(record)},
        ]
        try:
            text = await self.client.complete_text(
                messages,
                temperature=self.explain_temperature,
                max_tokens=self.explain_max_tokens,
            )
        except LlmRequestError as exc:
            raise OracleError(f"explanation request failed: {exc}") from exc
        return text or "Unable to explain decision"

    async def chat(
        self,
        message: str,
        previous_messages: Sequence[Mapping[str, str]] = (),
    ) -> str:
        """Free-form question answering on top of the strategist prompt."""
        messages: list[Mapping[str, str]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        for previous in previous_messages:
            if previous.get("role") not in ("user", "assistant"):
                raise OracleError(f"unsupported chat role: {previous.get('role')!r}")
            messages.append({"role": previous["role"], "content": str(previous.get("content", ""))})
        messages.append({"role": "user", "content": message})
        try:
            text = await self.client.complete_text(
                messages,
                temperature=self.temperature,
                max_tokens=self.chat_max_tokens,
            )
        except LlmRequestError as exc:
            raise OracleError(f"chat request failed: {exc}") from exc
        return text or CHAT_FALLBACK
