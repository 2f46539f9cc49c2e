from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from typing import Iterator

from services.ledger_errors import Busy


LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS") or "5")
LOCK_LOGGER = logging.getLogger("tool_ledger.locks")

_REGISTRY_LOCK = threading.Lock()
_TOOL_LOCKS: dict[int, threading.Lock] = {}


def _lock_for(tool_id: int) -> threading.Lock:
    with _REGISTRY_LOCK:
        lock = _TOOL_LOCKS.get(tool_id)
        if lock is None:
            lock = threading.Lock()
            _TOOL_LOCKS[tool_id] = lock
        return lock


def forget_tool_lock(tool_id: int) -> None:
    with _REGISTRY_LOCK:
        _TOOL_LOCKS.pop(int(tool_id), None)


@contextmanager
def tool_lock(tool_id: int, timeout: float | None = None) -> Iterator[None]:
    wait = LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    lock = _lock_for(int(tool_id))
    if not lock.acquire(timeout=max(wait, 0)):
        LOCK_LOGGER.warning("Tool lock wait timed out tool_id=%s timeout=%s", tool_id, wait)
        raise Busy(f"Tool {tool_id} is busy. Please retry.", toolID=int(tool_id))
    try:
        yield
    finally:
        lock.release()
