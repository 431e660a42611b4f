from __future__ import annotations

import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.params import Depends as DependsParamType
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, app_error, new_error
from ..inference.engine import InferenceEngine
from ..inference.lifecycle import ModelLifecycle
from ..inference.source import TorchModelSource
from ..logging import get_logger, init_logging, request_id_var
from ..middleware import BodySizeLimitMiddleware, RequestIdMiddleware, api_key_dependency
from ..pipeline import PipelineOrchestrator
from ..ports import UserDirectory
from ..registration import Registration
from ..store import FileRegistrationStore, image_media_type, image_ref_name
from ..types import ImageSubmission, PredictionResult
from ..version import get_version
from .schemas import (
    RegistrationBody,
    RegistrationResponse,
    ScreeningResponse,
    SubmissionItem,
)

_FORM_FIELDS: frozenset[str] = frozenset({"file", "user_id"})
_UPLOAD_PATHS: frozenset[str] = frozenset({"/v1/screen"})
_REGISTERED_MESSAGE: str = "ข้อมูลถูกบันทึกแล้ว"


class _ResponsePresentation:
    """Collects what the pipeline shows so a route can turn it into a response."""

    def __init__(self) -> None:
        self.preview_data_url: str | None = None
        self.result: PredictionResult | None = None
        self.errors: list[tuple[ErrorCode, str]] = []
        self.model_ready = False

    def show_preview(self, data_url: str) -> None:
        self.preview_data_url = data_url

    def show_result(self, result: PredictionResult) -> None:
        self.result = result

    def show_error(self, code: ErrorCode, message: str) -> None:
        self.errors.append((code, message))

    def set_model_ready(self, ready: bool) -> None:
        self.model_ready = ready


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_validation(request: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    code = (
        ErrorCode.invalid_registration
        if request.url.path.endswith("/register")
        else ErrorCode.malformed_multipart
    )
    detail = exc.errors() if isinstance(exc, RequestValidationError) else []
    first = detail[0] if detail else {}
    loc = first.get("loc", ()) if isinstance(first, dict) else ()
    field = str(loc[-1]) if loc else "body"
    body = new_error(code, rid, message=f"Invalid or missing field: {field}")
    return JSONResponse(status_code=app_error(code).http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__)
    rid = request_id_var.get()
    body = new_error(ErrorCode.internal_error, rid)
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_lifecycle(settings: Settings) -> ModelLifecycle:
    return ModelLifecycle(TorchModelSource(), settings.screening.model_uri)


def _create_store(settings: Settings) -> UserDirectory:
    return FileRegistrationStore(settings.app.data_root, settings.app.uploads_root)


def _model_lifespan(
    lifecycle: ModelLifecycle, engine: InferenceEngine, load_on_startup: bool
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        if load_on_startup:
            lifecycle.start()
        try:
            yield
        finally:
            engine.shutdown()
            lifecycle.shutdown()

    return _lifespan


def _register_basic(app: FastAPI, lifecycle: ModelLifecycle) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if lifecycle.is_ready():
            return {"status": "ready"}
        err = lifecycle.error
        return {
            "status": "not_ready",
            "model_state": lifecycle.state.value,
            "error": err.message if err is not None else None,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(
    app: FastAPI, lifecycle: ModelLifecycle, admin_dep: DependsParamType
) -> None:
    async def _model_active() -> dict[str, object]:
        handle = lifecycle.handle
        if handle is None:
            return {"model_loaded": False, "model_state": lifecycle.state.value}
        out: dict[str, object] = {"model_loaded": True, "model_state": lifecycle.state.value}
        out.update(handle.manifest.to_dict())
        return out

    async def _model_reload() -> dict[str, object]:
        handle = await lifecycle.reload()
        return {"ok": True, "model_id": handle.model_id}

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])
    app.add_api_route(
        "/v1/models/reload", _model_reload, methods=["POST"], dependencies=[admin_dep]
    )


def _register_users(app: FastAPI, provide_store: Callable[[], UserDirectory]) -> None:
    async def _register(body: RegistrationBody) -> RegistrationResponse:
        reg = Registration.from_fields(
            name=body.name,
            surname=body.surname,
            nationality=body.nationality,
            phone=body.phone,
            dob=body.dob,
        )
        user_id = provide_store().register_user(reg)
        get_logger().info("user_registered user_id=%s", user_id)
        return RegistrationResponse(message=_REGISTERED_MESSAGE, user_id=user_id)

    async def _submissions(user_id: str) -> list[SubmissionItem]:
        records = provide_store().list_submissions(user_id)
        return [
            SubmissionItem(
                record_id=r.record_id,
                image_ref=r.image_ref,
                image_url=_image_url(r.image_ref),
                risk_class=r.risk_class.value,
                confidence=r.confidence,
                estimated_value=r.estimated_value,
                message=r.message,
                created_at=r.created_at.isoformat(),
            )
            for r in records
        ]

    app.add_api_route(
        "/v1/register",
        _register,
        methods=["POST"],
        status_code=201,
        response_model=RegistrationResponse,
    )
    app.add_api_route(
        "/v1/users/{user_id}/submissions",
        _submissions,
        methods=["GET"],
        response_model=list[SubmissionItem],
    )


def _image_url(image_ref: str) -> str | None:
    name = image_ref_name(image_ref)
    return f"/uploads/{name}" if name is not None else None


def _register_uploads(app: FastAPI, provide_store: Callable[[], UserDirectory]) -> None:
    async def _upload(name: str) -> Response:
        raw = provide_store().load_image(name) if image_ref_name(name) == name else None
        if raw is None:
            raise app_error(ErrorCode.not_found, "Image not found")
        return Response(content=raw, media_type=image_media_type(name))

    app.add_api_route("/uploads/{name}", _upload, methods=["GET"])


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key not in _FORM_FIELDS:
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise app_error(
            ErrorCode.malformed_multipart,
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _register_screen(
    app: FastAPI,
    orchestrator: PipelineOrchestrator,
    lifecycle: ModelLifecycle,
    provide_store: Callable[[], UserDirectory],
) -> None:
    async def _screen(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        user_id: Annotated[str | None, Form()] = None,
        x_session_id: Annotated[str | None, Header()] = None,
    ) -> ScreeningResponse:
        form = await request.form()
        _strict_validate_multipart(form)
        uid = user_id.strip() if user_id else None
        if uid and provide_store().get_user(uid) is None:
            raise app_error(ErrorCode.not_found, f"Unknown user: {uid}")

        raw = await file.read()
        submission = ImageSubmission.from_bytes(raw, file.content_type or "", file.filename)
        session_id = x_session_id or uuid.uuid4().hex
        presentation = _ResponsePresentation()

        t0 = time.perf_counter()
        outcome = await orchestrator.submit(session_id, submission, presentation, uid or None)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)

        if outcome.superseded:
            raise app_error(ErrorCode.superseded)
        if outcome.error is not None:
            raise outcome.error
        result = outcome.result
        if result is None:
            raise app_error(ErrorCode.internal_error)
        handle = lifecycle.handle
        return ScreeningResponse(
            submission_id=outcome.submission_id,
            risk_class=result.risk_class.value,
            confidence=result.confidence,
            estimated_value=result.estimated_value,
            unit="g/dL",
            message=result.message,
            model_id=handle.model_id if handle is not None else None,
            preview_data_url=presentation.preview_data_url,
            record_id=outcome.record_id,
            store_error=outcome.store_error.message if outcome.store_error else None,
            latency_ms=dt_ms,
        )

    app.add_api_route(
        "/v1/screen", _screen, methods=["POST"], response_model=ScreeningResponse
    )


def create_app(
    settings: Settings | None = None,
    lifecycle_provider: Callable[[], ModelLifecycle] | None = None,
    store_provider: Callable[[], UserDirectory] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `lifecycle_provider`: Optional provider for the model lifecycle (tests inject fakes).
    - `store_provider`: Optional provider for the registration store.
    """
    s = settings or Settings.load()
    init_logging()
    lifecycle = lifecycle_provider() if lifecycle_provider is not None else _create_lifecycle(s)
    store = store_provider() if store_provider is not None else _create_store(s)
    engine = InferenceEngine(lifecycle, s)
    app = FastAPI(
        title="anemia-screen",
        version=get_version().version,
        lifespan=_model_lifespan(lifecycle, engine, s.screening.load_on_startup),
    )
    limits = Limits.from_settings(s)
    app.add_middleware(
        BodySizeLimitMiddleware, max_bytes=2 * limits.max_bytes, paths=_UPLOAD_PATHS
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    orchestrator = PipelineOrchestrator(lifecycle, engine, s, store)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_validation)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_store() -> UserDirectory:
        return store

    app.state.lifecycle = lifecycle
    app.state.orchestrator = orchestrator
    app.state.provide_store = _provide_store

    admin_dep: DependsParamType = Depends(api_key_dependency(s))
    _register_basic(app, lifecycle)
    _register_models(app, lifecycle, admin_dep)
    _register_users(app, _provide_store)
    _register_uploads(app, _provide_store)
    _register_screen(app, orchestrator, lifecycle, _provide_store)
    return app


# Default ASGI app for uvicorn
app = create_app()
