from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from chainmind.domain.models import Decision
from chainmind.services.decision_validator import DecisionValidator, ValidationPolicy


def _decision(**overrides) -> Decision:
    base = {
        "action": "rebalance",
        "from_chain": "ethereum",
        "to_chain": "polygon",
        "token": "0x" + "11" * 20,
        "amount": "500",
        "reason": "yield",
        "confidence": 0.9,
    }
    base.update(overrides)
    return Decision(**base)


def test_well_formed_rebalance_is_accepted() -> None:
    validator = DecisionValidator()
    decision = _decision()

    assert validator.validate(decision) is True
    assert validator.explain(decision) == []


def test_hold_without_amount_is_accepted() -> None:
    decision = Decision(action="hold", reason="markets calm", confidence=0.75)
    assert DecisionValidator().validate(decision) is True


@given(st.floats(min_value=0.0, max_value=0.7, exclude_max=True))
def test_confidence_below_floor_is_rejected(confidence: float) -> None:
    validator = DecisionValidator(ValidationPolicy(min_confidence=0.7))
    decision = _decision(confidence=confidence)

    assert validator.validate(decision) is False
    assert validator.explain(decision)[0].startswith("Decision confidence too low")


@given(st.floats(min_value=0.7, max_value=1.0))
def test_confidence_at_or_above_floor_passes_confidence_check(confidence: float) -> None:
    reasons = DecisionValidator().explain(_decision(confidence=confidence))
    assert not any(reason.startswith("Decision confidence") for reason in reasons)


def test_unknown_action_is_rejected() -> None:
    reasons = DecisionValidator().explain(_decision(action="teleport"))
    assert reasons == ["Invalid action type: teleport"]


@pytest.mark.parametrize("action", ["HOLD", " hold", "Rebalance", "rebalance "])
def test_action_match_is_exact(action: str) -> None:
    decision = _decision(action=action)

    assert DecisionValidator().validate(decision) is False
    assert DecisionValidator().explain(decision) == [f"Invalid action type: {action}"]


def test_routed_action_missing_fields_are_listed() -> None:
    decision = _decision(action="bridge", to_chain=None, token="")
    reasons = DecisionValidator().explain(decision)
    assert reasons == ["bridge decision missing fields: to_chain, token"]


def test_lend_and_swap_do_not_require_route_fields() -> None:
    validator = DecisionValidator()
    assert validator.validate(_decision(action="lend", from_chain=None, to_chain=None))
    assert validator.validate(_decision(action="swap", to_chain=None))


def test_amount_below_minimum_is_rejected() -> None:
    reasons = DecisionValidator().explain(_decision(amount="99.99"))
    assert reasons == ["Transaction amount too small: 99.99 (minimum 100)"]


def test_amount_at_minimum_is_accepted() -> None:
    assert DecisionValidator().validate(_decision(amount="100"))


def test_unparsable_or_non_finite_amount_is_rejected() -> None:
    validator = DecisionValidator()
    for raw in ("lots", "inf", "nan", "1e400"):
        reasons = validator.explain(_decision(amount=raw))
        assert reasons == [f"Transaction amount is not a number: {raw}"], raw


def test_all_reasons_are_collected() -> None:
    decision = _decision(action="rebalance", confidence=0.2, amount="5", to_chain=None)
    reasons = DecisionValidator().explain(decision)

    assert len(reasons) == 3
    assert reasons[0].startswith("Decision confidence too low")
    assert reasons[1] == "rebalance decision missing fields: to_chain"
    assert reasons[2].startswith("Transaction amount too small")


def test_thresholds_follow_policy() -> None:
    validator = DecisionValidator(ValidationPolicy(min_confidence=0.5, min_amount=10))
    assert validator.validate(_decision(confidence=0.55, amount="12"))
