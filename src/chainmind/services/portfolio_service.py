from __future__ import annotations

import logging
from typing import Protocol

from chainmind.domain.errors import ConfigurationError
from chainmind.domain.models import PortfolioSnapshot, VaultInfo
from chainmind.logging_context import with_logging_context

logger = logging.getLogger(__name__)


class ChainReader(Protocol):
    async def get_vault_info(self, vault: str, network: str) -> VaultInfo:
        ...

    async def get_token_balance(self, token: str, holder: str, network: str) -> str:
        ...


class PortfolioService:
    def __init__(self, *, chain: ChainReader, vault_address: str | None, network: str) -> None:
        self.chain = chain
        self.vault_address = vault_address
        self.network = network

    async def snapshot(self) -> PortfolioSnapshot:
        """Read strategies and per-token balances held by the vault.

        Vault read failures propagate. A failing balance read only drops that
        token into ``unavailable_tokens``.
        """
        if not self.vault_address:
            raise ConfigurationError("VAULT_ADDRESS is not configured")

        info = await self.chain.get_vault_info(self.vault_address, self.network)
        balances: dict[str, str] = {}
        unavailable: list[str] = []
        for token in info.supported_tokens:
            try:
                balances[token] = await self.chain.get_token_balance(
                    token, self.vault_address, self.network
                )
            except Exception as exc:  # noqa: BLE001
                unavailable.append(token)
                with with_logging_context(chain=self.network, token=token):
                    logger.warning(
                        "portfolio_balance_unavailable",
                        extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
                    )

        return PortfolioSnapshot(
            vault=self.vault_address,
            network=self.network,
            strategies=info.active_strategies,
            token_balances=balances,
            supported_tokens=info.supported_tokens,
            unavailable_tokens=tuple(unavailable),
        )
