from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ScreeningResponse:
    submission_id: str
    risk_class: str
    confidence: float
    estimated_value: float
    unit: str
    message: str
    model_id: str | None
    preview_data_url: str | None
    record_id: str | None
    store_error: str | None
    latency_ms: int


@pydantic_dataclass(frozen=True)
class RegistrationBody:
    name: str
    surname: str
    nationality: str
    phone: str
    dob: str


@pydantic_dataclass(frozen=True)
class RegistrationResponse:
    message: str
    user_id: str


@pydantic_dataclass(frozen=True)
class SubmissionItem:
    record_id: str
    image_ref: str
    image_url: str | None
    risk_class: str
    confidence: float
    estimated_value: float
    message: str
    created_at: str
