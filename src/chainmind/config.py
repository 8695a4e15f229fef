from __future__ import annotations

import json
from collections.abc import Callable
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from chainmind.domain.models import OracleConstraints


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    data_api_key: SecretStr | None = Field(default=None, alias="DATA_API_KEY")
    data_api_base_url: str = Field(default="https://api.nodit.io", alias="DATA_API_BASE_URL")
    data_api_timeout_seconds: float = Field(default=30.0, alias="DATA_API_TIMEOUT_SECONDS")
    data_api_max_attempts: int = Field(default=3, alias="DATA_API_MAX_ATTEMPTS")

    llm_api_key: SecretStr | None = Field(default=None, alias="LLM_API_KEY")
    llm_base_url: str = Field(default="https://api.openai.com/v1", alias="LLM_BASE_URL")
    llm_model: str = Field(default="gpt-4", alias="LLM_MODEL")
    llm_temperature: float = Field(default=0.3, alias="LLM_TEMPERATURE")
    llm_timeout_seconds: float = Field(default=60.0, alias="LLM_TIMEOUT_SECONDS")

    ethereum_rpc_url: str | None = Field(default=None, alias="ETHEREUM_RPC_URL")
    polygon_rpc_url: str | None = Field(default=None, alias="POLYGON_RPC_URL")
    arbitrum_rpc_url: str | None = Field(default=None, alias="ARBITRUM_RPC_URL")
    optimism_rpc_url: str | None = Field(default=None, alias="OPTIMISM_RPC_URL")
    executor_private_key: SecretStr | None = Field(default=None, alias="EXECUTOR_PRIVATE_KEY")
    vault_address: str | None = Field(default=None, alias="VAULT_ADDRESS")
    executor_address: str | None = Field(default=None, alias="EXECUTOR_ADDRESS")
    default_network: str = Field(default="ethereum", alias="DEFAULT_NETWORK")
    token_decimals: int = Field(default=18, alias="TOKEN_DECIMALS")
    tx_receipt_timeout_seconds: float = Field(default=120.0, alias="TX_RECEIPT_TIMEOUT_SECONDS")

    market_chains: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["ethereum", "polygon", "arbitrum"],
        alias="MARKET_CHAINS",
    )
    market_tokens: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["USDC", "WETH", "WMATIC", "USDT"],
        alias="MARKET_TOKENS",
    )
    lending_protocol: str = Field(default="aave", alias="LENDING_PROTOCOL")

    min_confidence: float = Field(default=0.7, alias="MIN_CONFIDENCE")
    min_transaction_amount: float = Field(default=100.0, alias="MIN_TRANSACTION_AMOUNT")

    max_gas_price_gwei: float = Field(default=100.0, alias="MAX_GAS_PRICE_GWEI")
    gas_monitored_networks: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["ethereum", "polygon"],
        alias="GAS_MONITORED_NETWORKS",
    )
    max_price_change_24h: float = Field(default=0.10, alias="MAX_PRICE_CHANGE_24H")
    min_evaluation_interval_seconds: int = Field(
        default=300, alias="MIN_EVALUATION_INTERVAL_SECONDS"
    )
    emergency_stop: bool = Field(default=False, alias="EMERGENCY_STOP")
    emergency_stop_file: str = Field(default="chainmind.stop", alias="EMERGENCY_STOP_FILE")

    oracle_max_gas_price: str = Field(default="50", alias="ORACLE_MAX_GAS_PRICE")
    oracle_min_transaction_value: str = Field(default="1000", alias="ORACLE_MIN_TRANSACTION_VALUE")
    oracle_max_slippage: str = Field(default="1", alias="ORACLE_MAX_SLIPPAGE")
    oracle_allowed_networks: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["ethereum", "polygon", "arbitrum", "optimism"],
        alias="ORACLE_ALLOWED_NETWORKS",
    )
    oracle_allowed_protocols: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["aave", "compound", "uniswap", "curve"],
        alias="ORACLE_ALLOWED_PROTOCOLS",
    )

    ledger_max_records: int = Field(default=1000, alias="LEDGER_MAX_RECORDS")
    ledger_journal_path: str = Field(
        default="chainmind_decisions.jsonl", alias="LEDGER_JOURNAL_PATH"
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT")

    @field_validator("market_chains", "gas_monitored_networks", "oracle_allowed_networks", mode="before")
    def parse_networks(cls, value: str | list[str]) -> list[str]:
        return cls._parse_name_list(
            value,
            normalize=str.lower,
            invalid_json_message="network list JSON value must be a list",
        )

    @field_validator("oracle_allowed_protocols", mode="before")
    def parse_protocols(cls, value: str | list[str]) -> list[str]:
        return cls._parse_name_list(
            value,
            normalize=str.lower,
            invalid_json_message="ORACLE_ALLOWED_PROTOCOLS JSON value must be a list",
        )

    @field_validator("market_tokens", mode="before")
    def parse_tokens(cls, value: str | list[str]) -> list[str]:
        return cls._parse_name_list(
            value,
            normalize=str.upper,
            invalid_json_message="MARKET_TOKENS JSON value must be a list",
        )

    @classmethod
    def _parse_name_list(
        cls,
        value: str | list[str],
        *,
        normalize: Callable[[str], str],
        invalid_json_message: str,
    ) -> list[str]:
        items: list[object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("[") or raw.startswith("{"):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError(invalid_json_message)
                items = parsed
            else:
                items = raw.split(",")
        else:
            items = value

        normalized: list[str] = []
        seen: set[str] = set()
        for item in items:
            if item is None:
                continue
            candidate = normalize(str(item).strip().strip('"').strip("'").strip())
            if not candidate or candidate in seen:
                continue
            seen.add(candidate)
            normalized.append(candidate)
        return normalized

    @field_validator("min_confidence")
    def validate_min_confidence(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("MIN_CONFIDENCE must be within [0, 1]")
        return value

    @field_validator("min_transaction_amount", "max_gas_price_gwei")
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("thresholds must be >= 0")
        return value

    @field_validator("max_price_change_24h")
    def validate_max_price_change(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("MAX_PRICE_CHANGE_24H must be > 0")
        return value

    @field_validator("min_evaluation_interval_seconds")
    def validate_min_interval(cls, value: int) -> int:
        if value < 0:
            raise ValueError("MIN_EVALUATION_INTERVAL_SECONDS must be >= 0")
        return value

    @field_validator("ledger_max_records", "data_api_max_attempts")
    def validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("token_decimals")
    def validate_token_decimals(cls, value: int) -> int:
        if not 0 <= value <= 36:
            raise ValueError("TOKEN_DECIMALS must be within [0, 36]")
        return value

    def rpc_urls(self) -> dict[str, str]:
        configured = {
            "ethereum": self.ethereum_rpc_url,
            "polygon": self.polygon_rpc_url,
            "arbitrum": self.arbitrum_rpc_url,
            "optimism": self.optimism_rpc_url,
        }
        return {network: url for network, url in configured.items() if url}

    def oracle_constraints(self) -> OracleConstraints:
        return OracleConstraints(
            max_gas_price=self.oracle_max_gas_price,
            min_transaction_value=self.oracle_min_transaction_value,
            max_slippage=self.oracle_max_slippage,
            allowed_networks=tuple(self.oracle_allowed_networks),
            allowed_protocols=tuple(self.oracle_allowed_protocols),
        )

    def market_pairs(self) -> list[tuple[str, str]]:
        return [(chain, token) for chain in self.market_chains for token in self.market_tokens]
