from __future__ import annotations

from enum import StrEnum


class ConfigurationError(ValueError):
    """Raised when a required address, endpoint or credential is not configured."""


class DataApiErrorKind(StrEnum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    CLIENT = "client"
    PAYLOAD = "payload"


class DataApiError(RuntimeError):
    def __init__(
        self,
        *,
        kind: DataApiErrorKind,
        message: str,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}

    @property
    def retryable(self) -> bool:
        return self.kind in {
            DataApiErrorKind.NETWORK,
            DataApiErrorKind.RATE_LIMIT,
            DataApiErrorKind.SERVER,
        }


class OracleError(RuntimeError):
    pass


class LlmRequestError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChainError(RuntimeError):
    pass


class ExecutionError(RuntimeError):
    pass


class UnsupportedActionError(ExecutionError):
    def __init__(self, action: str) -> None:
        super().__init__(f"Unsupported action: {action}")
        self.action = action


class DecisionNotFoundError(KeyError):
    def __init__(self, decision_id: str) -> None:
        super().__init__(decision_id)
        self.decision_id = decision_id

    def __str__(self) -> str:
        return f"Decision {self.decision_id} not found"
