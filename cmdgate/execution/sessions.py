"""Session registry: tracks long-running processes and their captured output."""

from __future__ import annotations

import heapq
import logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import psutil

from ..models import LogLine, SessionInfo, SessionLogs, StreamName
from .capture import DEFAULT_MAX_LINES, LogBuffer, join_readers, start_capture
from .process_tree import kill_process_tree, process_group

log = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT = 5.0  # seconds
READER_DRAIN_TIMEOUT = 1.0  # seconds to let readers flush after a kill


class InvalidSessionError(ValueError):
    """A session was registered with a missing id or process."""


@dataclass
class ProcessSession:
    """State for a single registered process.

    The registry owns ``process``: nothing else may signal it.
    """

    session_id: str
    operation_kind: str
    target: str
    process: subprocess.Popen
    buffer: LogBuffer
    pgid: int | None = None
    started_at: float = field(default_factory=time.time)
    _readers: list[threading.Thread] = field(default_factory=list, repr=False)
    _stop_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_running(self) -> bool:
        return self.process.poll() is None

    @property
    def output_open(self) -> bool:
        """True while something in the tree still holds stdout/stderr open.

        Outlives :attr:`is_running` when the root exits and leaves children
        behind.
        """
        return any(reader.is_alive() for reader in self._readers)

    @property
    def needs_kill(self) -> bool:
        return self.is_running or self.output_open

    def info(self) -> SessionInfo:
        running = self.is_running
        return SessionInfo(
            session_id=self.session_id,
            operation_kind=self.operation_kind,
            target=self.target,
            pid=self.process.pid,
            started_at=self.started_at,
            is_running=running,
            exit_code=None if running else self.process.returncode,
        )


def _tail(
    output: tuple[LogLine, ...],
    errors: tuple[LogLine, ...],
    count: int,
) -> tuple[tuple[LogLine, ...], tuple[LogLine, ...]]:
    """Keep the newest ``count`` lines across both streams."""
    if len(output) + len(errors) <= count:
        return output, errors
    if count == 0:
        return (), ()
    # Each stream is already ordered, so a merge is enough.
    merged = list(heapq.merge(output, errors, key=lambda ln: (ln.timestamp, ln.seq)))
    kept = merged[-count:]
    return (
        tuple(ln for ln in kept if ln.stream is StreamName.STDOUT),
        tuple(ln for ln in kept if ln.stream is StreamName.STDERR),
    )


class SessionRegistry:
    """Registry of long-running processes, keyed by caller-supplied id.

    Sessions move Running -> Exited -> Removed.  Stopping a session kills it
    but keeps it registered so its output stays readable; exited sessions go
    away through :meth:`cleanup_completed_sessions`, :meth:`remove_session`
    or :meth:`clear`.

    Thread-safe: the id map is guarded by one lock held only for dict
    operations and non-blocking exit probes.  Kills, waits and log reads
    happen outside it.
    """

    def __init__(
        self,
        max_log_lines: int | None = DEFAULT_MAX_LINES,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ) -> None:
        self._sessions: dict[str, ProcessSession] = {}
        self._lock = threading.Lock()
        self._max_log_lines = max_log_lines
        self._stop_timeout = stop_timeout

    def _get(self, session_id: str) -> ProcessSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_session(
        self,
        session_id: str,
        process: subprocess.Popen,
        operation_kind: str,
        target: str,
        on_exit: Callable[[], None] | None = None,
    ) -> bool:
        """Track ``process`` under ``session_id`` and start capturing output.

        Returns False without touching the existing entry when the id is
        already registered.

        ``on_exit`` runs on a watcher thread once the process has exited and
        every holder of its output pipes (children included) is gone.

        Raises:
            InvalidSessionError: empty id or missing process.
        """
        if not session_id or not session_id.strip():
            raise InvalidSessionError("Session ID cannot be empty")
        if process is None:
            raise InvalidSessionError("Session process cannot be None")

        session = ProcessSession(
            session_id=session_id,
            operation_kind=operation_kind,
            target=target,
            process=process,
            buffer=LogBuffer(self._max_log_lines),
            pgid=process_group(process),
        )
        with self._lock:
            if session_id in self._sessions:
                log.warning("Session ID %s already exists", session_id)
                return False
            # Readers exist before the session is visible to stop/clear.
            session._readers = start_capture(process, session.buffer, f"session-{session_id}")
            self._sessions[session_id] = session

        if on_exit is not None:
            threading.Thread(
                target=self._watch,
                args=(session, on_exit),
                daemon=True,
                name=f"session-{session_id}-waiter",
            ).start()
        log.info(
            "Registered session %s for %s on %s (pid=%s)",
            session_id, operation_kind, target, process.pid,
        )
        return True

    @staticmethod
    def _watch(session: ProcessSession, on_exit: Callable[[], None]) -> None:
        try:
            session.process.wait()
            for reader in session._readers:
                reader.join()
        finally:
            on_exit()

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def try_stop_session(self, session_id: str) -> tuple[bool, str | None]:
        """Kill the session's whole process tree.

        Returns ``(True, None)`` once the tree is gone, including when it had
        already exited.  Unknown ids give ``(False, "... not found ...")``.
        If the OS refuses the kill the session is dropped from the registry
        and ``(False, reason)`` is returned.
        """
        session = self._get(session_id)
        if session is None:
            log.warning("Attempted to stop non-existent session %s", session_id)
            return False, (
                f"Session '{session_id}' not found. "
                "It may have already completed and been cleaned up."
            )

        with session._stop_lock:
            if not session.needs_kill:
                log.info(
                    "Session %s already exited (exit code %s)",
                    session_id, session.process.returncode,
                )
                return True, None

            if session.is_running:
                log.info("Stopping session %s (pid=%d)", session_id, session.process.pid)
            else:
                log.info("Session %s exited, killing leftover descendants", session_id)
            try:
                kill_process_tree(session.process, self._stop_timeout, session.pgid)
            except (psutil.Error, OSError) as exc:
                log.error("Error stopping session %s: %s", session_id, exc)
                with self._lock:
                    if self._sessions.get(session_id) is session:
                        del self._sessions[session_id]
                return False, f"Failed to stop session '{session_id}': {exc}"

        join_readers(session._readers, READER_DRAIN_TIMEOUT)
        log.info("Stopped session %s", session_id)
        return True, None

    def stop_all(self) -> int:
        """Stop every running session.  Returns how many were stopped."""
        with self._lock:
            targets = [s.session_id for s in self._sessions.values()]
        stopped = 0
        for session_id in targets:
            session = self._get(session_id)
            if session is None or not session.needs_kill:
                continue
            ok, _ = self.try_stop_session(session_id)
            if ok:
                stopped += 1
        return stopped

    def wait_for_exit(self, session_id: str, timeout: float | None = None) -> int | None:
        """Block until the session's process exits; returns its exit code.

        Returns None for unknown ids or when ``timeout`` elapses first.
        """
        session = self._get(session_id)
        if session is None:
            return None
        try:
            code = session.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        join_readers(session._readers, READER_DRAIN_TIMEOUT)
        return code

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def try_get_session(self, session_id: str) -> SessionInfo | None:
        session = self._get(session_id)
        return session.info() if session is not None else None

    def get_active_sessions(self) -> list[SessionInfo]:
        """Every registered session, running or exited, oldest first."""
        with self._lock:
            sessions = list(self._sessions.values())
        sessions.sort(key=lambda s: s.started_at)
        return [s.info() for s in sessions]

    @property
    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_session_logs(
        self,
        session_id: str,
        tail_lines: int | None = None,
        since: float | None = None,
    ) -> SessionLogs | None:
        """Captured output for a session, or None for unknown ids.

        ``since`` keeps lines captured at or after that ``time.time()``
        value.  ``tail_lines`` then keeps the newest N lines across both
        streams combined.
        """
        if tail_lines is not None and tail_lines < 0:
            raise ValueError("tail_lines must be >= 0")

        session = self._get(session_id)
        if session is None:
            return None

        output, errors = session.buffer.snapshot()
        total_output, total_errors = len(output), len(errors)

        if since is not None:
            output = tuple(ln for ln in output if ln.timestamp >= since)
            errors = tuple(ln for ln in errors if ln.timestamp >= since)
        if tail_lines is not None:
            output, errors = _tail(output, errors, tail_lines)

        info = session.info()
        return SessionLogs(
            session_id=session.session_id,
            operation_kind=session.operation_kind,
            target=session.target,
            started_at=session.started_at,
            is_running=info.is_running,
            exit_code=info.exit_code,
            output_lines=output,
            error_lines=errors,
            total_output_lines=total_output,
            total_error_lines=total_errors,
            dropped_lines=session.buffer.dropped,
        )

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def cleanup_completed_sessions(self) -> int:
        """Remove every session whose process has exited."""
        with self._lock:
            completed = [
                sid for sid, s in self._sessions.items() if not s.is_running
            ]
            for sid in completed:
                del self._sessions[sid]
        for sid in completed:
            log.debug("Cleaned up completed session %s", sid)
        return len(completed)

    def remove_session(self, session_id: str) -> bool:
        """Remove one exited session.  Running sessions must be stopped first."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_running:
                return False
            del self._sessions[session_id]
        return True

    def clear(self) -> None:
        """Forget every session, killing the process trees still running.

        Kills are best effort: a tree the OS refuses to kill is logged and
        forgotten anyway.
        """
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            if not session.needs_kill:
                continue
            try:
                kill_process_tree(session.process, self._stop_timeout, session.pgid)
            except (psutil.Error, OSError) as exc:
                log.warning("Could not kill session %s while clearing: %s", session.session_id, exc)
        log.debug("Cleared %d session(s)", len(sessions))
