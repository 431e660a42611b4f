"""Mapping from classifier output to a risk label and estimated hemoglobin.

The boundaries and physiological bounds below are calibration constants that
came with the trained model; they are not derived from anything else here.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Final

from .errors import ErrorCode, app_error
from .types import PredictionResult, PredictionVector, RiskClass

AT_RISK_INDEX: Final[int] = 0
LOW_RISK_INDEX: Final[int] = 1

# g/dL
AT_RISK_BOUNDARY: Final[float] = 12.4
SEVERE_BOUND: Final[float] = 9.0
LOW_RISK_BOUNDARY: Final[float] = 12.5
HEALTHY_BOUND: Final[float] = 16.0

_MESSAGES: Final[dict[str, dict[RiskClass, str]]] = {
    "th": {
        RiskClass.at_risk: "คุณมีความเสี่ยงต่อการเป็นภาวะโลหิตจาง",
        RiskClass.low_risk: "คุณไม่มีความเสี่ยงต่อการเป็นภาวะโลหิตจาง",
    },
    "en": {
        RiskClass.at_risk: "You are at risk of anemia.",
        RiskClass.low_risk: "You are not at risk of anemia.",
    },
}


def interpret(vector: PredictionVector, locale: str = "th") -> PredictionResult:
    if len(vector) != 2:
        raise app_error(
            ErrorCode.inference_error,
            f"Expected 2 class probabilities, got {len(vector)}",
        )
    if not all(math.isfinite(v) for v in vector):
        raise app_error(ErrorCode.inference_error, "Model produced non-finite probabilities")
    predicted = argmax(vector)
    confidence = float(vector[predicted])
    if predicted == AT_RISK_INDEX:
        risk = RiskClass.at_risk
        raw = AT_RISK_BOUNDARY - confidence * (AT_RISK_BOUNDARY - SEVERE_BOUND)
    else:
        risk = RiskClass.low_risk
        raw = LOW_RISK_BOUNDARY + confidence * (HEALTHY_BOUND - LOW_RISK_BOUNDARY)
    return PredictionResult(
        risk_class=risk,
        confidence=confidence,
        estimated_value=round_half_up(raw, 1),
        message=message_for(risk, locale),
    )


def argmax(vector: PredictionVector) -> int:
    # Strict comparison keeps the lowest index on ties
    best_idx = 0
    best = vector[0]
    for i in range(1, len(vector)):
        if vector[i] > best:
            best = vector[i]
            best_idx = i
    return best_idx


def round_half_up(value: float, digits: int) -> float:
    """Round the exact binary value of `value`, ties away from zero."""
    q = Decimal(1).scaleb(-digits)
    return float(Decimal(value).quantize(q, rounding=ROUND_HALF_UP))


def message_for(risk: RiskClass, locale: str) -> str:
    table = _MESSAGES.get(locale, _MESSAGES["th"])
    return table[risk]
