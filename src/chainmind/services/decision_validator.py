from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from chainmind.domain.models import ROUTED_ACTIONS, Decision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationPolicy:
    min_confidence: float = 0.7
    min_amount: float = 100.0


class DecisionValidator:
    """Pure predicate over oracle decisions.

    Amounts are compared as plain floats in the token's declared unit; no
    decimals or currency normalisation happens here.
    """

    def __init__(self, policy: ValidationPolicy | None = None) -> None:
        self.policy = policy or ValidationPolicy()

    def validate(self, decision: Decision) -> bool:
        return not self.explain(decision)

    def explain(self, decision: Decision) -> list[str]:
        reasons: list[str] = []
        if decision.confidence < self.policy.min_confidence:
            reasons.append(
                f"Decision confidence too low: {decision.confidence} "
                f"(minimum {self.policy.min_confidence})"
            )

        kind = decision.kind
        if kind is None:
            reasons.append(f"Invalid action type: {decision.action}")
        elif kind in ROUTED_ACTIONS:
            missing = [
                name
                for name, value in (
                    ("from_chain", decision.from_chain),
                    ("to_chain", decision.to_chain),
                    ("token", decision.token),
                    ("amount", decision.amount),
                )
                if not value
            ]
            if missing:
                reasons.append(f"{kind.value} decision missing fields: {', '.join(missing)}")

        if decision.amount:
            amount = _parse_amount(decision.amount)
            if amount is None:
                reasons.append(f"Transaction amount is not a number: {decision.amount}")
            elif amount < self.policy.min_amount:
                reasons.append(
                    f"Transaction amount too small: {decision.amount} "
                    f"(minimum {self.policy.min_amount:g})"
                )
        return reasons


def _parse_amount(raw: str) -> float | None:
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    return value if math.isfinite(value) else None
