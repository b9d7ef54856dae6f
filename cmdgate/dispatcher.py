"""Command dispatcher: runs toolchain operations under target locks.

One-shot operations hold their target lock until the command finishes, fails,
times out or is cancelled.  Long-running operations are registered as
sessions and hold the lock until their whole process tree exits.
"""

from __future__ import annotations

import functools
import logging
import subprocess
import threading
import time
import uuid
from collections.abc import Sequence

from .config import Config
from .execution.capture import LogBuffer, join_readers, start_capture
from .execution.locks import LockRegistry
from .execution.process_tree import kill_process_tree, spawn
from .execution.sessions import SessionRegistry
from .models import CommandResult, SessionInfo, StreamName

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1  # seconds between cancellation checks
READER_DRAIN_TIMEOUT = 2.0


class CommandDispatcher:
    """Entry point for every operation the gateway exposes."""

    def __init__(
        self,
        config: Config | None = None,
        locks: LockRegistry | None = None,
        sessions: SessionRegistry | None = None,
    ) -> None:
        self.config = config or Config()
        self.locks = locks or LockRegistry(self.config.global_operations)
        self.sessions = sessions or SessionRegistry(
            max_log_lines=self.config.max_log_lines,
            stop_timeout=self.config.stop_timeout,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def requires_lock(self, operation_kind: str) -> bool:
        return (
            operation_kind in self.config.mutating_operations
            or operation_kind in self.config.global_operations
        )

    def resolve_target(self, target: str | None, cwd: str | None = None) -> str:
        return self.config.resolve_target(target, cwd)

    def build_command(self, args: Sequence[str]) -> list[str]:
        if self.config.executable:
            return [self.config.executable, *args]
        if not args:
            raise ValueError("No command given and no executable configured")
        return list(args)

    # ------------------------------------------------------------------
    # One-shot commands
    # ------------------------------------------------------------------

    def execute(
        self,
        operation_kind: str,
        args: Sequence[str],
        target: str | None = None,
        cwd: str | None = None,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        """Run a command to completion and return its captured output.

        Setting ``cancel`` (or exceeding ``timeout``) kills the process
        tree; output captured up to that point is kept in the result.
        """
        workdir = self.config.resolve_workdir(cwd)
        resolved = self.resolve_target(target, workdir)
        command = self.build_command(args)
        timeout = timeout if timeout is not None else self.config.command_timeout

        if not self.requires_lock(operation_kind):
            return self._run(operation_kind, resolved, command, workdir, timeout, cancel)

        with self.locks.guard(operation_kind, resolved) as acquired:
            if acquired.holder is not None:
                return CommandResult.for_conflict(operation_kind, resolved, acquired.holder)
            return self._run(operation_kind, resolved, command, workdir, timeout, cancel)

    def _run(
        self,
        operation_kind: str,
        target: str,
        command: list[str],
        workdir: str,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> CommandResult:
        result = CommandResult(operation_kind=operation_kind, target=target, command=command)
        log.debug("Executing: %s (cwd=%s)", " ".join(command), workdir)

        try:
            process = spawn(command, cwd=workdir)
        except OSError as exc:
            log.error("Failed to start %s: %s", command[0], exc)
            result.error = f"Command could not be started: {exc}"
            return result

        buffer = LogBuffer(self.config.max_log_lines)
        readers = start_capture(process, buffer, f"{operation_kind}-{process.pid}")
        deadline = time.monotonic() + timeout if timeout is not None else None

        try:
            while True:
                try:
                    result.exit_code = process.wait(timeout=POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel is not None and cancel.is_set():
                    log.warning("Cancellation requested, terminating %s", operation_kind)
                    result.cancelled = True
                    result.exit_code = kill_process_tree(process, self.config.stop_timeout)
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    log.warning("%s timed out after %.1fs", operation_kind, timeout)
                    result.timed_out = True
                    result.exit_code = kill_process_tree(process, self.config.stop_timeout)
                    break
        except BaseException:
            kill_process_tree(process, self.config.stop_timeout)
            raise
        finally:
            join_readers(readers, READER_DRAIN_TIMEOUT)

        result.stdout = buffer.text(StreamName.STDOUT)
        result.stderr = buffer.text(StreamName.STDERR)
        if buffer.dropped:
            log.warning("Output of %s truncated (%d lines dropped)", operation_kind, buffer.dropped)
        log.debug("%s completed with exit code %s", operation_kind, result.exit_code)
        return result

    # ------------------------------------------------------------------
    # Long-running sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        operation_kind: str,
        args: Sequence[str],
        target: str | None = None,
        cwd: str | None = None,
        session_id: str | None = None,
    ) -> tuple[SessionInfo | None, CommandResult | None]:
        """Spawn a background process and register it as a session.

        Returns ``(info, None)`` on success or ``(None, failure)`` where the
        failure result explains a lock conflict, spawn error or duplicate id.
        ``info`` is None only if the session was removed before it could be
        read back.
        """
        workdir = self.config.resolve_workdir(cwd)
        resolved = self.resolve_target(target, workdir)
        command = self.build_command(args)
        session_id = session_id or uuid.uuid4().hex
        locked = self.requires_lock(operation_kind)

        # Checked again atomically by register_session.
        if self.sessions.try_get_session(session_id) is not None:
            return None, self._duplicate(operation_kind, resolved, command, session_id)

        if locked:
            acquired = self.locks.try_acquire(operation_kind, resolved)
            if acquired.holder is not None:
                return None, CommandResult.for_conflict(operation_kind, resolved, acquired.holder)

        try:
            process = spawn(command, cwd=workdir)
        except OSError as exc:
            if locked:
                self.locks.release(operation_kind, resolved)
            log.error("Failed to start %s: %s", command[0], exc)
            return None, CommandResult(
                operation_kind=operation_kind,
                target=resolved,
                command=command,
                error=f"Command could not be started: {exc}",
            )

        on_exit = None
        if locked:
            on_exit = functools.partial(self._release_lock, operation_kind, resolved)
        try:
            registered = self.sessions.register_session(
                session_id, process, operation_kind, resolved, on_exit=on_exit,
            )
        except BaseException:
            kill_process_tree(process, self.config.stop_timeout)
            if locked:
                self.locks.release(operation_kind, resolved)
            raise

        if not registered:
            kill_process_tree(process, self.config.stop_timeout)
            if locked:
                self.locks.release(operation_kind, resolved)
            return None, self._duplicate(operation_kind, resolved, command, session_id)

        return self.sessions.try_get_session(session_id), None

    def _release_lock(self, operation_kind: str, target: str) -> None:
        """Session watcher callback: the whole tree is gone."""
        self.locks.release(operation_kind, target)
        log.debug("Session for %s on %s finished, lock released", operation_kind, target)

    @staticmethod
    def _duplicate(
        operation_kind: str, target: str, command: list[str], session_id: str,
    ) -> CommandResult:
        return CommandResult(
            operation_kind=operation_kind,
            target=target,
            command=command,
            error=f"Session '{session_id}' already exists",
        )
