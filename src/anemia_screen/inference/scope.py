from __future__ import annotations

import threading
from types import TracebackType

from torch import Tensor

_live_lock = threading.Lock()
_live_count = 0


def live_tensors() -> int:
    """Number of tensors held by scopes that have not exited yet."""
    with _live_lock:
        return _live_count


def _adjust_live(delta: int) -> None:
    global _live_count
    with _live_lock:
        _live_count += delta


class TensorScope:
    """Owns every tensor created for one unit of work.

    Tensors registered with :meth:`track` are dropped when the scope exits,
    on success and on error alike. Anything the caller wants to keep must be
    copied out (e.g. converted to Python floats) before the ``with`` block ends.
    """

    def __init__(self) -> None:
        self._tensors: list[Tensor] = []
        self._closed = False

    def __enter__(self) -> TensorScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def track(self, t: Tensor) -> Tensor:
        if self._closed:
            raise RuntimeError("tensor scope already released")
        self._tensors.append(t)
        _adjust_live(1)
        return t

    @property
    def size(self) -> int:
        return len(self._tensors)

    def release(self) -> None:
        if self._closed:
            return
        n = len(self._tensors)
        self._tensors.clear()
        self._closed = True
        _adjust_live(-n)
