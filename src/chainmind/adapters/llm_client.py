from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from time import monotonic
from typing import Any

import httpx

from chainmind.domain.errors import LlmRequestError
from chainmind.observability import get_instrumentation

logger = logging.getLogger(__name__)


def _first_message(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, Mapping):
            message = first.get("message")
            if isinstance(message, Mapping):
                return message
    raise LlmRequestError("completion response has no choices[0].message")


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
    return str(payload)[:200]


class OpenAiCompatibleClient:
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if client is None:
            client = httpx.AsyncClient(
                base_url=base_url.rstrip("/"),
                timeout=httpx.Timeout(timeout_seconds),
                headers=headers,
            )
        else:
            client.headers.update(headers)
        self._client = client

    async def close(self) -> None:
        await self._client.aclose()

    async def complete_tool_call(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        tool: Mapping[str, Any],
        temperature: float,
        max_tokens: int | None = None,
    ) -> str | None:
        """Force a call to ``tool`` and return its raw JSON arguments, if any."""
        function_name = tool["function"]["name"]
        body: dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": temperature,
            "tools": [tool],
            "tool_choice": {"type": "function", "function": {"name": function_name}},
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        message = _first_message(await self._post(body))
        tool_calls = message.get("tool_calls")
        if not isinstance(tool_calls, list):
            return None
        for call in tool_calls:
            function = call.get("function") if isinstance(call, Mapping) else None
            if isinstance(function, Mapping) and function.get("name") == function_name:
                arguments = function.get("arguments")
                if isinstance(arguments, str):
                    return arguments
                if isinstance(arguments, Mapping):
                    return json.dumps(arguments)
        return None

    async def complete_text(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        temperature: float,
        max_tokens: int | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": temperature,
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        content = _first_message(await self._post(body)).get("content")
        return content if isinstance(content, str) else ""

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        started = monotonic()
        try:
            with get_instrumentation().trace("llm_call", attrs={"model": self.model}):
                response = await self._client.post("/chat/completions", json=body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise LlmRequestError(f"LLM transport error: {exc}") from exc
        finally:
            get_instrumentation().histogram("llm_latency_ms", (monotonic() - started) * 1000)

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error(
                "llm_request_failed",
                extra={"extra": {"status_code": response.status_code, "detail": detail}},
            )
            raise LlmRequestError(
                f"LLM request failed with HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise LlmRequestError("LLM response is not JSON") from exc
        if not isinstance(payload, dict):
            raise LlmRequestError("LLM response must be a JSON object")
        return payload
