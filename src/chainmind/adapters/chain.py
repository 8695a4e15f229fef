from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from chainmind.domain.errors import ChainError, ConfigurationError
from chainmind.domain.models import ExecutionPayload, TransactionReceipt, VaultInfo
from chainmind.observability import get_instrumentation

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

VAULT_ABI: list[dict[str, Any]] = [
    {
        "name": "getActiveStrategies",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address[]"}],
    },
    {
        "name": "getSupportedTokens",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address[]"}],
    },
]

EXECUTOR_ABI: list[dict[str, Any]] = [
    {
        "name": "executeAIDecision",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "action", "type": "string"},
            {"name": "fromChain", "type": "string"},
            {"name": "toChain", "type": "string"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "reason", "type": "string"},
            {"name": "targetProtocol", "type": "address"},
            {"name": "executionData", "type": "bytes"},
        ],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]

# aiohttp connection failures subclass OSError
_RPC_ERRORS = (Web3Exception, ValueError, OSError, asyncio.TimeoutError)


def to_base_units(amount: str, decimals: int) -> int:
    try:
        value = Decimal(amount)
    except InvalidOperation as exc:
        raise ChainError(f"amount is not a decimal number: {amount!r}") from exc
    if not value.is_finite() or value < 0:
        raise ChainError(f"amount must be a finite non-negative number: {amount!r}")
    return int(value.scaleb(decimals))


def format_units(raw: int, decimals: int) -> str:
    return format(Decimal(raw).scaleb(-decimals).normalize(), "f")


def _checksum(value: str, *, field: str) -> str:
    if not AsyncWeb3.is_address(value):
        raise ChainError(f"{field} is not a valid address: {value!r}")
    return AsyncWeb3.to_checksum_address(value)


class Web3ChainClient:
    """Chain reads and executor submissions over one ``AsyncWeb3`` per network."""

    def __init__(
        self,
        *,
        rpc_urls: dict[str, str],
        private_key: str | None = None,
        token_decimals: int = 18,
        receipt_timeout_seconds: float = 120.0,
        web3_by_network: dict[str, AsyncWeb3] | None = None,
    ) -> None:
        self.token_decimals = token_decimals
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self._account = Account.from_key(private_key) if private_key else None
        if web3_by_network is not None:
            self._web3 = dict(web3_by_network)
        else:
            self._web3 = {
                network: AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url))
                for network, url in rpc_urls.items()
            }
        logger.info(
            "chain_client_initialized",
            extra={"extra": {"networks": sorted(self._web3), "signer": self.signer_address}},
        )

    @property
    def signer_address(self) -> str | None:
        return self._account.address if self._account is not None else None

    def networks(self) -> list[str]:
        return sorted(self._web3)

    async def aclose(self) -> None:
        for w3 in self._web3.values():
            await w3.provider.disconnect()

    def _w3(self, network: str) -> AsyncWeb3:
        w3 = self._web3.get(network)
        if w3 is None:
            raise ConfigurationError(f"RPC URL not configured for network: {network}")
        return w3

    async def get_vault_info(self, vault: str, network: str) -> VaultInfo:
        w3 = self._w3(network)
        contract = w3.eth.contract(address=_checksum(vault, field="vault"), abi=VAULT_ABI)
        try:
            with get_instrumentation().trace("chain_read", attrs={"call": "vault_info", "network": network}):
                strategies, tokens = await asyncio.gather(
                    contract.functions.getActiveStrategies().call(),
                    contract.functions.getSupportedTokens().call(),
                )
        except _RPC_ERRORS as exc:
            raise ChainError(f"vault read failed on {network}: {exc}") from exc
        return VaultInfo(active_strategies=tuple(strategies), supported_tokens=tuple(tokens))

    async def get_token_balance(self, token: str, holder: str, network: str) -> str:
        w3 = self._w3(network)
        holder_address = _checksum(holder, field="holder")
        try:
            if token.lower() == ZERO_ADDRESS:
                raw = await w3.eth.get_balance(holder_address)
                return format_units(raw, 18)
            contract = w3.eth.contract(address=_checksum(token, field="token"), abi=ERC20_ABI)
            raw, decimals = await asyncio.gather(
                contract.functions.balanceOf(holder_address).call(),
                contract.functions.decimals().call(),
            )
        except _RPC_ERRORS as exc:
            raise ChainError(f"balance read failed for {token} on {network}: {exc}") from exc
        return format_units(raw, decimals)

    async def get_gas_price_gwei(self, network: str) -> float:
        w3 = self._w3(network)
        try:
            wei = await w3.eth.gas_price
        except _RPC_ERRORS as exc:
            raise ChainError(f"gas price read failed on {network}: {exc}") from exc
        return float(Decimal(wei).scaleb(-9))

    async def submit_decision(
        self, executor: str, network: str, payload: ExecutionPayload
    ) -> TransactionReceipt:
        if self._account is None:
            raise ConfigurationError("EXECUTOR_PRIVATE_KEY is required to submit decisions")
        w3 = self._w3(network)
        contract = w3.eth.contract(address=_checksum(executor, field="executor"), abi=EXECUTOR_ABI)
        target = payload.target_protocol or ZERO_ADDRESS
        call = contract.functions.executeAIDecision(
            payload.action,
            payload.from_chain,
            payload.to_chain,
            _checksum(payload.token, field="token"),
            to_base_units(payload.amount, self.token_decimals),
            payload.reason,
            _checksum(target, field="target_protocol"),
            payload.execution_data,
        )
        sender = self._account.address
        try:
            with get_instrumentation().trace("chain_submit", attrs={"network": network, "action": payload.action}):
                nonce = await w3.eth.get_transaction_count(sender)
                chain_id = await w3.eth.chain_id
                tx = await call.build_transaction(
                    {"from": sender, "nonce": nonce, "chainId": chain_id}
                )
                signed = self._account.sign_transaction(tx)
                raw_tx = getattr(signed, "raw_transaction", None) or signed.rawTransaction
                tx_hash = await w3.eth.send_raw_transaction(raw_tx)
                logger.info(
                    "decision_transaction_sent",
                    extra={"extra": {"network": network, "tx_hash": tx_hash.hex()}},
                )
                receipt = await w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.receipt_timeout_seconds
                )
        except _RPC_ERRORS as exc:
            raise ChainError(f"decision submission failed on {network}: {exc}") from exc

        tx_hash_hex = receipt["transactionHash"].hex()
        if not tx_hash_hex.startswith("0x"):
            tx_hash_hex = f"0x{tx_hash_hex}"
        return TransactionReceipt(
            transaction_hash=tx_hash_hex,
            gas_used=int(receipt["gasUsed"]),
            success=receipt["status"] == 1,
            block_number=receipt.get("blockNumber"),
        )
