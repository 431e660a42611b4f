from __future__ import annotations

import asyncio
import pickle
import threading
import time
import zipfile
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Final

from ..errors import AppError, ErrorCode, app_error
from ..logging import get_logger, log_event
from ..ports import ModelSource
from .handle import ModelHandle

_SOURCE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)

ReadyListener = Callable[[bool], None]


class ModelState(str, Enum):
    unloaded = "unloaded"
    loading = "loading"
    ready = "ready"
    failed = "failed"


class ModelLifecycle:
    """One-time, single-flight loading of the process-wide classifier.

    The load runs on a dedicated worker thread and is exposed to callers as a
    shared ``concurrent.futures.Future``, so any number of coroutines (on any
    event loop) can await the same in-flight load. Once READY the handle never
    changes. A FAILED load keeps its error and only :meth:`reload` retries it.

    Listeners receive ``True`` on READY and ``False`` on FAILED; they are called
    from the loader thread.
    """

    def __init__(self, source: ModelSource, uri: str) -> None:
        self._source = source
        self._uri = uri
        self._lock = threading.Lock()
        self._state = ModelState.unloaded
        self._handle: ModelHandle | None = None
        self._error: AppError | None = None
        self._inflight: Future[ModelHandle] | None = None
        self._fetch_count = 0
        self._listeners: list[ReadyListener] = []
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-load")
        self._logger = get_logger()

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def error(self) -> AppError | None:
        return self._error

    @property
    def handle(self) -> ModelHandle | None:
        return self._handle

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def fetch_count(self) -> int:
        return self._fetch_count

    def is_ready(self) -> bool:
        return self._state is ModelState.ready and self._handle is not None

    def add_listener(self, listener: ReadyListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ReadyListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def start(self) -> None:
        """Begin loading in the background if nothing has been attempted yet."""
        with self._lock:
            if self._state is ModelState.unloaded and self._inflight is None:
                self._start_locked()

    async def ensure_loaded(self) -> ModelHandle:
        with self._lock:
            handle = self._handle
            if self._state is ModelState.ready and handle is not None:
                return handle
            if self._state is ModelState.failed:
                raise self._failure()
            fut = self._inflight if self._inflight is not None else self._start_locked()
        return await asyncio.wrap_future(fut)

    async def reload(self) -> ModelHandle:
        """Retry a failed (or never started) load; a READY model is returned as is."""
        with self._lock:
            handle = self._handle
            if self._state is ModelState.ready and handle is not None:
                return handle
            fut = self._inflight if self._inflight is not None else self._start_locked()
        return await asyncio.wrap_future(fut)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _failure(self) -> AppError:
        err = self._error
        msg = err.message if err is not None else None
        out = app_error(ErrorCode.load_error, msg)
        out.__cause__ = err
        return out

    def _start_locked(self) -> Future[ModelHandle]:
        self._state = ModelState.loading
        self._error = None
        self._fetch_count += 1
        fut = self._pool.submit(self._load)
        self._inflight = fut
        return fut

    def _load(self) -> ModelHandle:
        t0 = time.perf_counter()
        try:
            handle = self._source.fetch_model(self._uri)
        except AppError as exc:
            self._fail(_as_load_error(exc))
            raise self._failure() from exc
        except _SOURCE_ERRORS as exc:
            self._fail(app_error(ErrorCode.load_error, f"Model load failed: {exc}"))
            raise self._failure() from exc
        except Exception as exc:
            # Loader thread boundary: anything else must still settle the state
            self._logger.exception("model_load_unexpected uri=%s", self._uri)
            self._fail(
                app_error(ErrorCode.load_error, f"Model load failed: {type(exc).__name__}: {exc}")
            )
            raise self._failure() from exc
        with self._lock:
            self._handle = handle
            self._state = ModelState.ready
            self._inflight = None
            listeners = list(self._listeners)
        log_event(
            "model_ready",
            {"model_id": handle.model_id, "latency_ms": int((time.perf_counter() - t0) * 1000.0)},
        )
        self._notify(listeners, True)
        return handle

    def _fail(self, err: AppError) -> None:
        with self._lock:
            self._error = err
            self._state = ModelState.failed
            self._inflight = None
            listeners = list(self._listeners)
        self._logger.error("model_load_failed uri=%s error=%s", self._uri, err.message)
        self._notify(listeners, False)

    def _notify(self, listeners: list[ReadyListener], ready: bool) -> None:
        for cb in listeners:
            try:
                cb(ready)
            except Exception as exc:
                self._logger.warning("model_listener_failed error=%s", exc)


def _as_load_error(exc: AppError) -> AppError:
    if exc.code is ErrorCode.load_error:
        return exc
    return app_error(ErrorCode.load_error, exc.message)
