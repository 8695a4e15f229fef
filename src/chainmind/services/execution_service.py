from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

from chainmind.domain.errors import (
    ChainError,
    ConfigurationError,
    ExecutionError,
    UnsupportedActionError,
)
from chainmind.domain.models import (
    Decision,
    DecisionAction,
    ExecutionPayload,
    ExecutionResult,
    TransactionReceipt,
)

logger = logging.getLogger(__name__)

CHAIN_TO_NETWORK = {
    "ethereum": "ethereum",
    "polygon": "polygon",
    "arbitrum": "arbitrum",
    "optimism": "optimism",
    "bsc": "bsc",
}
DEFAULT_NETWORK = "ethereum"


def network_for_chain(chain: str | None) -> str:
    if not chain:
        return DEFAULT_NETWORK
    return CHAIN_TO_NETWORK.get(chain.strip().lower(), DEFAULT_NETWORK)


class ChainWriter(Protocol):
    async def submit_decision(
        self, executor: str, network: str, payload: ExecutionPayload
    ) -> TransactionReceipt:
        ...


class ExecutionService:
    """Maps validated decisions onto executor contract calls.

    Chain, configuration and routing failures come back as failed
    ``ExecutionResult``s; anything else propagates to the caller.
    """

    def __init__(
        self,
        *,
        chain: ChainWriter,
        executor_address: str | None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.chain = chain
        self.executor_address = executor_address
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._handlers: dict[
            DecisionAction, Callable[[Decision, str], Awaitable[ExecutionResult]]
        ] = {
            DecisionAction.HOLD: self._hold,
            DecisionAction.REBALANCE: self._submit,
            DecisionAction.BRIDGE: self._submit,
            DecisionAction.LEND: self._submit,
            DecisionAction.SWAP: self._submit,
        }

    async def execute(self, decision: Decision, decision_id: str) -> ExecutionResult:
        logger.info(
            "decision_execution_started",
            extra={"extra": {"action": decision.action, "decision_id": decision_id}},
        )
        try:
            kind = decision.kind
            handler = self._handlers.get(kind) if kind is not None else None
            if handler is None:
                raise UnsupportedActionError(decision.action)
            return await handler(decision, decision_id)
        except (ExecutionError, ChainError, ConfigurationError) as exc:
            logger.error(
                "decision_execution_failed",
                extra={
                    "extra": {
                        "decision_id": decision_id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    }
                },
            )
            return ExecutionResult.failed(decision_id, str(exc), timestamp=self.now_provider())

    async def _hold(self, decision: Decision, decision_id: str) -> ExecutionResult:
        del decision
        return ExecutionResult(decision_id=decision_id, success=True, timestamp=self.now_provider())

    async def _submit(self, decision: Decision, decision_id: str) -> ExecutionResult:
        if not self.executor_address:
            raise ConfigurationError("Executor address not configured")
        if not decision.token:
            raise ExecutionError(f"{decision.action} decision has no token to execute")

        network = network_for_chain(decision.from_chain)
        payload = ExecutionPayload(
            action=decision.action,
            from_chain=decision.from_chain or DEFAULT_NETWORK,
            to_chain=decision.to_chain or DEFAULT_NETWORK,
            token=decision.token,
            amount=decision.amount or "0",
            reason=decision.reason,
            target_protocol=decision.target_protocol,
        )
        receipt = await self.chain.submit_decision(self.executor_address, network, payload)
        if not receipt.success:
            logger.error(
                "decision_transaction_reverted",
                extra={"extra": {"tx_hash": receipt.transaction_hash, "network": network}},
            )
            return ExecutionResult(
                decision_id=decision_id,
                success=False,
                gas_used=receipt.gas_used,
                error=f"transaction {receipt.transaction_hash} reverted",
                timestamp=self.now_provider(),
            )
        return ExecutionResult(
            decision_id=decision_id,
            success=True,
            transaction_hash=receipt.transaction_hash,
            gas_used=receipt.gas_used,
            timestamp=self.now_provider(),
        )
