from __future__ import annotations

import logging
from dataclasses import dataclass
from time import monotonic
from typing import Any

import httpx
from pydantic import ValidationError

from chainmind.adapters.retry import BackoffPolicy, async_retry, transient_classifier
from chainmind.domain.errors import DataApiError, DataApiErrorKind
from chainmind.domain.models import LendingMetrics, TokenMetrics
from chainmind.observability import get_instrumentation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataApiReliabilityConfig:
    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 5.0
    backoff: BackoffPolicy = BackoffPolicy()


class DataApiClient:
    """Async client for the market/chain data API (token data, lending rates, gas)."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        reliability: DataApiReliabilityConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.reliability = reliability or DataApiReliabilityConfig()
        timeout = httpx.Timeout(
            self.reliability.timeout_seconds,
            connect=self.reliability.connect_timeout_seconds,
        )
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if client is None:
            client = httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)
        else:
            client.headers.update(headers)
        self._client = client

    async def close(self) -> None:
        await self._client.aclose()

    async def get_token_data(self, token: str, chain: str) -> TokenMetrics:
        payload = await self._get("/v1/tokens/data", params={"token": token, "chain": chain})
        return self._parse(TokenMetrics, payload, path="/v1/tokens/data")

    async def get_lending_rates(self, protocol: str, asset: str, chain: str) -> LendingMetrics:
        payload = await self._get(
            "/v1/defi/lending/rates",
            params={"protocol": protocol, "asset": asset, "chain": chain},
        )
        return self._parse(LendingMetrics, payload, path="/v1/defi/lending/rates")

    async def get_gas_price(self, chain: str) -> float:
        payload = await self._get("/v1/gas/price", params={"chain": chain})
        raw = payload.get("gasPrice")
        try:
            return float(raw)
        except (TypeError, ValueError) as exc:
            raise DataApiError(
                kind=DataApiErrorKind.PAYLOAD,
                message=f"gasPrice missing or not numeric for chain={chain}",
            ) from exc

    @staticmethod
    def _parse(model: type[Any], payload: dict[str, Any], *, path: str) -> Any:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise DataApiError(
                kind=DataApiErrorKind.PAYLOAD,
                message=f"unexpected payload from {path}: {exc.error_count()} validation errors",
            ) from exc

    async def _get(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        async def _call() -> dict[str, Any]:
            started = monotonic()
            try:
                with get_instrumentation().trace("data_api_call", attrs={"path": path}):
                    response = await self._client.get(path, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                raise DataApiError(kind=DataApiErrorKind.NETWORK, message=str(exc)) from exc

            get_instrumentation().histogram(
                "data_api_latency_ms", (monotonic() - started) * 1000, attrs={"path": path}
            )
            if response.status_code >= 400:
                self._raise_http_error(response, path=path)

            try:
                payload = response.json()
            except ValueError as exc:
                raise DataApiError(
                    kind=DataApiErrorKind.PAYLOAD,
                    message=f"non-JSON response from {path}",
                    status_code=response.status_code,
                ) from exc
            if not isinstance(payload, dict):
                raise DataApiError(
                    kind=DataApiErrorKind.PAYLOAD,
                    message=f"payload from {path} must be an object",
                    status_code=response.status_code,
                )
            return payload

        def _on_retry(exc: Exception, attempt: int) -> None:
            get_instrumentation().counter("data_api_retries_total", attrs={"path": path})
            logger.warning(
                "data_api_retry",
                extra={"extra": {"path": path, "attempt": attempt, "error": str(exc)}},
            )

        classify = transient_classifier(
            self.reliability.backoff,
            is_retryable=lambda exc: isinstance(exc, DataApiError) and exc.retryable,
            retry_after=lambda exc: getattr(exc, "headers", {}).get("retry-after"),
            on_retry=_on_retry,
        )
        return await async_retry(
            _call,
            max_attempts=self.reliability.backoff.max_attempts,
            classify=classify,
        )

    @staticmethod
    def _raise_http_error(response: httpx.Response, *, path: str) -> None:
        status = response.status_code
        if status == 429:
            kind = DataApiErrorKind.RATE_LIMIT
        elif status >= 500:
            kind = DataApiErrorKind.SERVER
        else:
            kind = DataApiErrorKind.CLIENT
        raise DataApiError(
            kind=kind,
            message=f"data API {path} returned HTTP {status}",
            status_code=status,
            headers=dict(response.headers),
        )
