"""Operation locks: at most one mutating operation in flight per target.

Acquisition never blocks: a caller that loses the race is told so
immediately, together with who holds the target and since when.  Any two
operations on the same target conflict, whatever their kinds.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from ..models import AcquireResult, OperationLock

log = logging.getLogger(__name__)

# Kinds touching machine-wide state rather than a single project.
DEFAULT_GLOBAL_OPERATIONS = frozenset({
    "template_clear_cache",
    "certificate_trust",
    "certificate_clean",
    "tool_install_global",
    "tool_uninstall_global",
})


def normalize_target(target: str | None) -> str:
    """Canonical lock key for a target path.

    Absolute, normalized, case-folded where the OS is case-insensitive, with
    forward slashes.  An empty target stays empty.
    """
    if not target:
        return ""
    try:
        canonical = os.path.normcase(os.path.abspath(target))
    except (OSError, ValueError):
        canonical = target
    return canonical.replace("\\", "/")


class LockRegistry:
    """In-memory map of canonical target -> :class:`OperationLock`."""

    def __init__(self, global_operations: Iterable[str] = DEFAULT_GLOBAL_OPERATIONS) -> None:
        self._held: dict[str, OperationLock] = {}
        self._lock = threading.Lock()
        self._global_operations = frozenset(global_operations)

    def _key(self, operation_kind: str, target: str | None) -> str:
        if operation_kind in self._global_operations:
            return f"global:{operation_kind}"
        return normalize_target(target)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def try_acquire(self, operation_kind: str, target: str | None) -> AcquireResult:
        key = self._key(operation_kind, target)
        with self._lock:
            holder = self._held.get(key)
            if holder is not None:
                log.info(
                    "Denied %s on %s: held by %s", operation_kind, key, holder.describe(),
                )
                return AcquireResult(granted=False, holder=holder)
            self._held[key] = OperationLock(
                operation_kind=operation_kind,
                target=key,
                acquired_at=time.time(),
            )
        log.debug("Acquired %s on %s", operation_kind, key)
        return AcquireResult(granted=True)

    def release(self, operation_kind: str, target: str | None) -> None:
        """Drop the lock on ``target``.  Releasing a free target is a no-op."""
        key = self._key(operation_kind, target)
        with self._lock:
            removed = self._held.pop(key, None)
        if removed is not None:
            log.debug("Released %s on %s", operation_kind, key)

    def clear(self) -> None:
        with self._lock:
            self._held.clear()

    @contextmanager
    def guard(self, operation_kind: str, target: str | None) -> Iterator[AcquireResult]:
        """Try to acquire; release on exit only if the lock was granted."""
        result = self.try_acquire(operation_kind, target)
        try:
            yield result
        finally:
            if result.granted:
                self.release(operation_kind, target)

    def get_holder(self, operation_kind: str, target: str | None) -> OperationLock | None:
        """Current holder of the key ``operation_kind`` would contend for."""
        key = self._key(operation_kind, target)
        with self._lock:
            return self._held.get(key)

    def holders(self) -> list[OperationLock]:
        with self._lock:
            return sorted(self._held.values(), key=lambda h: h.acquired_at)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._held)
