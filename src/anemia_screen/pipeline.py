from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Final

from .config import Limits, Settings
from .decode import decode_submission
from .errors import AppError, ErrorCode, app_error
from .inference.engine import InferenceEngine
from .inference.lifecycle import ModelLifecycle
from .logging import get_logger, log_event
from .ports import Presentation, RegistrationStore
from .scoring import interpret
from .types import DecodeOutput, ImageSubmission, PredictionResult
from .validate import validate_submission

_MAX_SESSIONS: Final[int] = 10_000


class PipelineState(str, Enum):
    idle = "idle"
    validating = "validating"
    decoding = "decoding"
    awaiting_model = "awaiting_model"
    inferring = "inferring"
    interpreting = "interpreting"
    done = "done"
    failed = "failed"
    superseded = "superseded"


@dataclass(frozen=True)
class PipelineOutcome:
    submission_id: str
    state: PipelineState
    result: PredictionResult | None = None
    error: AppError | None = None
    record_id: str | None = None
    store_error: AppError | None = None

    @property
    def superseded(self) -> bool:
        return self.state is PipelineState.superseded


class _SessionTokens:
    """Latest submission id per session, bounded LRU."""

    def __init__(self, max_sessions: int = _MAX_SESSIONS) -> None:
        self._lock = threading.Lock()
        self._latest: OrderedDict[str, str] = OrderedDict()
        self._max = max_sessions

    def issue(self, session_id: str) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._latest[session_id] = token
            self._latest.move_to_end(session_id)
            while len(self._latest) > self._max:
                self._latest.popitem(last=False)
        return token

    def is_current(self, session_id: str, token: str) -> bool:
        with self._lock:
            return self._latest.get(session_id) == token


class PipelineOrchestrator:
    """Runs one submission through validate, decode, model gate, infer, interpret.

    Each call to :meth:`submit` ends in exactly one ``show_result`` or one
    ``show_error`` on its presentation, unless a newer submission for the same
    session arrived first; then the older run applies nothing and reports
    ``superseded``. Failures never change the model lifecycle.
    """

    def __init__(
        self,
        lifecycle: ModelLifecycle,
        engine: InferenceEngine,
        settings: Settings,
        store: RegistrationStore | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._engine = engine
        self._store = store
        self._limits = Limits.from_settings(settings)
        self._locale = settings.screening.locale
        self._tokens = _SessionTokens()
        self._logger = get_logger()

    def watch_model(self, presentation: Presentation) -> None:
        """Keep a long-lived presentation's readiness flag in sync with the model."""
        presentation.set_model_ready(self._lifecycle.is_ready())
        self._lifecycle.add_listener(presentation.set_model_ready)

    def supersede(self, session_id: str) -> None:
        """Invalidate any in-flight submission for `session_id` (e.g. a new image was chosen)."""
        self._tokens.issue(session_id)

    async def submit(
        self,
        session_id: str,
        submission: ImageSubmission,
        presentation: Presentation,
        user_id: str | None = None,
    ) -> PipelineOutcome:
        token = self._tokens.issue(session_id)
        run = _Run(session_id=session_id, submission_id=token)
        presentation.set_model_ready(self._lifecycle.is_ready())
        decoded: DecodeOutput | None = None
        t0 = time.perf_counter()
        try:
            run.enter(PipelineState.validating)
            validate_submission(submission, self._limits)

            run.enter(PipelineState.decoding)
            decoded = await decode_submission(submission, self._limits)
            if not self._tokens.is_current(session_id, token):
                return run.superseded()
            presentation.show_preview(decoded.preview_data_url)

            run.enter(PipelineState.awaiting_model)
            await self._lifecycle.ensure_loaded()
            presentation.set_model_ready(True)

            run.enter(PipelineState.inferring)
            vector = await self._engine.predict(decoded.image)

            run.enter(PipelineState.interpreting)
            result = interpret(vector, self._locale)
        except AppError as err:
            return self._fail(run, presentation, err)
        except Exception as exc:
            # Unexpected failures still end the run with one typed error
            code = (
                ErrorCode.inference_error
                if run.state is PipelineState.inferring
                else ErrorCode.internal_error
            )
            self._logger.exception(
                "screening_unexpected submission_id=%s state=%s", token, run.state.value
            )
            err = app_error(code)
            err.__cause__ = exc
            return self._fail(run, presentation, err)
        finally:
            if decoded is not None:
                decoded.image.release()

        if not self._tokens.is_current(session_id, token):
            return run.superseded()
        presentation.show_result(result)
        record_id, store_err = await self._persist(submission, result, user_id)
        if store_err is not None:
            presentation.show_error(store_err.code, store_err.message)
        log_event(
            "screening_finished",
            {
                "submission_id": token,
                "session_id": session_id,
                "risk_class": result.risk_class.value,
                "confidence": result.confidence,
                "estimated_value": result.estimated_value,
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
            },
        )
        return run.done(result, record_id, store_err)

    def _fail(self, run: _Run, presentation: Presentation, err: AppError) -> PipelineOutcome:
        if not self._tokens.is_current(run.session_id, run.submission_id):
            return run.superseded()
        if err.code is ErrorCode.load_error:
            presentation.set_model_ready(False)
        presentation.show_error(err.code, err.message)
        return run.failed(err)

    async def _persist(
        self, submission: ImageSubmission, result: PredictionResult, user_id: str | None
    ) -> tuple[str | None, AppError | None]:
        store = self._store
        if store is None or user_id is None:
            return None, None
        try:
            image_ref = await asyncio.to_thread(
                store.save_image, submission.raw_bytes, submission.declared_mime_type
            )
            record_id = await asyncio.to_thread(store.save_submission, user_id, image_ref, result)
        except AppError as err:
            self._logger.warning(
                "submission_store_failed user_id=%s error=%s", user_id, err.message
            )
            return None, err
        return record_id, None


class _Run:
    def __init__(self, *, session_id: str, submission_id: str) -> None:
        self.session_id = session_id
        self.submission_id = submission_id
        self.state = PipelineState.idle

    def enter(self, state: PipelineState) -> None:
        get_logger().debug(
            "pipeline_state submission_id=%s from=%s to=%s",
            self.submission_id,
            self.state.value,
            state.value,
        )
        self.state = state

    def superseded(self) -> PipelineOutcome:
        log_event(
            "screening_superseded",
            {"submission_id": self.submission_id, "state": self.state.value},
        )
        self.state = PipelineState.superseded
        return PipelineOutcome(submission_id=self.submission_id, state=self.state)

    def failed(self, err: AppError) -> PipelineOutcome:
        log_event(
            "screening_failed",
            {
                "submission_id": self.submission_id,
                "state": self.state.value,
                "code": err.code.value,
            },
        )
        self.state = PipelineState.failed
        return PipelineOutcome(submission_id=self.submission_id, state=self.state, error=err)

    def done(
        self, result: PredictionResult, record_id: str | None, store_err: AppError | None
    ) -> PipelineOutcome:
        self.state = PipelineState.done
        return PipelineOutcome(
            submission_id=self.submission_id,
            state=self.state,
            result=result,
            record_id=record_id,
            store_error=store_err,
        )
