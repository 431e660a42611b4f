from __future__ import annotations

import math

import pytest

from anemia_screen.errors import AppError, ErrorCode
from anemia_screen.scoring import (
    AT_RISK_BOUNDARY,
    HEALTHY_BOUND,
    LOW_RISK_BOUNDARY,
    SEVERE_BOUND,
    argmax,
    interpret,
    message_for,
    round_half_up,
)
from anemia_screen.types import RiskClass


def test_at_risk_maps_into_severe_band() -> None:
    r = interpret((0.9, 0.1))
    assert r.risk_class is RiskClass.at_risk
    assert r.confidence == pytest.approx(0.9)
    assert r.estimated_value == 9.3
    assert r.message == "คุณมีความเสี่ยงต่อการเป็นภาวะโลหิตจาง"


def test_low_risk_maps_into_healthy_band() -> None:
    r = interpret((0.1, 0.9))
    assert r.risk_class is RiskClass.low_risk
    assert r.confidence == pytest.approx(0.9)
    assert r.estimated_value == 15.7
    assert r.message == "คุณไม่มีความเสี่ยงต่อการเป็นภาวะโลหิตจาง"


def test_tie_goes_to_first_class() -> None:
    r = interpret((0.5, 0.5))
    assert r.risk_class is RiskClass.at_risk
    assert r.confidence == 0.5
    assert r.estimated_value == 10.7


def test_estimates_stay_inside_physiological_bands() -> None:
    for i in range(0, 101):
        p = i / 100.0
        r = interpret((p, 1.0 - p))
        if r.risk_class is RiskClass.at_risk:
            assert SEVERE_BOUND <= r.estimated_value <= AT_RISK_BOUNDARY
        else:
            assert LOW_RISK_BOUNDARY <= r.estimated_value <= HEALTHY_BOUND


def test_interpret_is_deterministic() -> None:
    vec = (0.3172, 0.6828)
    first = interpret(vec)
    for _ in range(20):
        assert interpret(vec) == first


def test_english_messages_and_unknown_locale_fallback() -> None:
    assert interpret((0.8, 0.2), "en").message == "You are at risk of anemia."
    assert interpret((0.2, 0.8), "en").message == "You are not at risk of anemia."
    assert message_for(RiskClass.at_risk, "fr") == message_for(RiskClass.at_risk, "th")


@pytest.mark.parametrize("vec", [(), (1.0,), (0.2, 0.3, 0.5)])
def test_wrong_length_is_inference_error(vec: tuple[float, ...]) -> None:
    with pytest.raises(AppError) as ei:
        interpret(vec)
    assert ei.value.code is ErrorCode.inference_error


@pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
def test_non_finite_is_inference_error(bad: float) -> None:
    with pytest.raises(AppError) as ei:
        interpret((bad, 0.5))
    assert ei.value.code is ErrorCode.inference_error


def test_argmax_prefers_lowest_index_on_ties() -> None:
    assert argmax((0.2, 0.8)) == 1
    assert argmax((0.4, 0.4, 0.2)) == 0
    assert argmax((0.1, 0.45, 0.45)) == 1


def test_round_half_up_uses_exact_binary_value() -> None:
    assert round_half_up(10.75, 1) == 10.8
    assert round_half_up(10.25, 1) == 10.3
    # 1.15 is stored as 1.149999... and rounds down
    assert round_half_up(1.15, 1) == 1.1
    assert round_half_up(9.0, 1) == 9.0
