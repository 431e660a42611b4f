from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import psutil

from .logging import get_logger


@dataclass(frozen=True)
class ProcessMemory:
    """Resident memory of one process."""

    pid: int
    rss_bytes: int


def process_memory(pid: int | None = None) -> ProcessMemory:
    """Return RSS for `pid` (default: the current process)."""
    target = os.getpid() if pid is None else pid
    proc = psutil.Process(target)
    return ProcessMemory(pid=target, rss_bytes=int(proc.memory_info().rss))


def log_memory(context: str) -> ProcessMemory | None:
    """Log current process RSS at debug level; skipped when debug is off.

    Memory readings are best-effort: a process that cannot be inspected logs the
    failure and returns None instead of failing the caller.
    """
    logger = get_logger()
    if not logger.isEnabledFor(logging.DEBUG):
        return None
    try:
        mem = process_memory()
    except (psutil.Error, OSError) as exc:
        logger.debug("memory_read_failed context=%s error=%s", context, exc)
        return None
    logger.debug("memory context=%s rss_bytes=%d", context, mem.rss_bytes)
    return mem
