"""MCP server exposing gateway operations over stdio or HTTP."""

from __future__ import annotations

import asyncio
import threading
from typing import Any

from mcp.server.fastmcp import FastMCP

from cmdgate.config import Config
from cmdgate.dispatcher import CommandDispatcher


def _not_found(session_id: str) -> dict[str, Any]:
    return {
        "session_id": session_id,
        "status": "not_found",
        "error": f"Session '{session_id}' not found",
    }


def create_server(dispatcher: CommandDispatcher | None = None) -> FastMCP:
    """Create and configure the MCP gateway server."""

    dp = dispatcher or CommandDispatcher(Config.from_env())
    config = dp.config

    mcp = FastMCP(
        name="cmdgate",
        instructions=(
            "Runs toolchain commands on behalf of the caller. Use execute_command "
            "for commands that finish on their own and start_session for servers "
            "and watchers. Poll get_session_logs for output and stop_session to "
            "terminate. A 'conflict' status means another operation is already "
            "working on the same target: wait and retry."
        ),
        host=config.host,
        port=config.port,
        stateless_http=True,
    )

    # ------------------------------------------------------------------
    # Tool: execute_command
    # ------------------------------------------------------------------
    @mcp.tool()
    async def execute_command(
        operation: str,
        args: list[str],
        target: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> dict:
        """Run a command to completion and return its output.

        Mutating operations (build, test, package_add, ...) take an exclusive
        lock on their target; a second operation on the same target is
        rejected with status "conflict" instead of waiting.

        Args:
            operation: Operation kind, e.g. "build", "test", "restore".
            args: Command-line arguments (after the configured executable).
            target: Project or directory operated on. Defaults to cwd.
            cwd: Working directory, relative to the gateway's base directory.
            timeout: Seconds before the command is killed.
        """
        cancel = threading.Event()
        try:
            result = await asyncio.to_thread(
                dp.execute, operation, args, target, cwd,
                timeout=timeout, cancel=cancel,
            )
        except asyncio.CancelledError:
            # The worker thread kills the process tree and releases the lock.
            cancel.set()
            raise
        except ValueError as exc:
            return {"operation": operation, "status": "error", "error": str(exc)}
        return result.to_dict()

    # ------------------------------------------------------------------
    # Tool: start_session
    # ------------------------------------------------------------------
    @mcp.tool()
    async def start_session(
        operation: str,
        args: list[str],
        target: str | None = None,
        cwd: str | None = None,
        session_id: str | None = None,
    ) -> dict:
        """Start a long-running command (dev server, watcher) in the background.

        Returns immediately with a session_id. The target stays locked until
        the process exits or is stopped.

        Args:
            operation: Operation kind, e.g. "run", "watch_run".
            args: Command-line arguments (after the configured executable).
            target: Project or directory operated on. Defaults to cwd.
            cwd: Working directory, relative to the gateway's base directory.
            session_id: Optional id to use instead of a generated one.
        """
        try:
            info, failure = await asyncio.to_thread(
                dp.start_session, operation, args, target, cwd, session_id,
            )
        except ValueError as exc:
            return {"operation": operation, "status": "error", "error": str(exc)}
        if failure is not None:
            return failure.to_dict()
        if info is None:
            # removed by a concurrent cleanup before it could be read back
            return _not_found(session_id or "")
        return info.to_dict()

    # ------------------------------------------------------------------
    # Tool: stop_session
    # ------------------------------------------------------------------
    @mcp.tool()
    async def stop_session(session_id: str) -> dict:
        """Kill a session's process and all of its children.

        Captured output stays available through get_session_logs until the
        session is cleaned up.

        Args:
            session_id: Id returned by start_session.
        """
        stopped, error = await asyncio.to_thread(dp.sessions.try_stop_session, session_id)
        if not stopped:
            status = "not_found" if error and "not found" in error else "error"
            return {"session_id": session_id, "status": status, "error": error}
        return {"session_id": session_id, "status": "stopped"}

    # ------------------------------------------------------------------
    # Tool: list_sessions
    # ------------------------------------------------------------------
    @mcp.tool()
    async def list_sessions(running_only: bool = False) -> dict:
        """List tracked sessions, including ones whose process has exited.

        Args:
            running_only: Only include sessions whose process is still alive.
        """
        sessions = dp.sessions.get_active_sessions()
        if running_only:
            sessions = [s for s in sessions if s.is_running]
        return {
            "count": len(sessions),
            "sessions": [s.to_dict() for s in sessions],
        }

    # ------------------------------------------------------------------
    # Tool: get_session
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_session(session_id: str) -> dict:
        """Get status, pid and exit code of a session.

        Args:
            session_id: Id returned by start_session.
        """
        info = dp.sessions.try_get_session(session_id)
        if info is None:
            return _not_found(session_id)
        return info.to_dict()

    # ------------------------------------------------------------------
    # Tool: get_session_logs
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_session_logs(
        session_id: str,
        tail: int | None = None,
        since: float | None = None,
    ) -> dict:
        """Get captured stdout/stderr lines of a session.

        Every line carries its capture timestamp; pass the last one seen as
        ``since`` to poll for new output only.

        Args:
            session_id: Id returned by start_session.
            tail: Maximum number of lines to return, stdout and stderr combined.
            since: Only lines captured at or after this Unix timestamp.
        """
        try:
            logs = dp.sessions.get_session_logs(session_id, tail_lines=tail, since=since)
        except ValueError as exc:
            return {"session_id": session_id, "status": "error", "error": str(exc)}
        if logs is None:
            return _not_found(session_id)
        return logs.to_dict()

    # ------------------------------------------------------------------
    # Tool: cleanup_sessions
    # ------------------------------------------------------------------
    @mcp.tool()
    async def cleanup_sessions() -> dict:
        """Forget every session whose process has exited."""
        removed = dp.sessions.cleanup_completed_sessions()
        return {"removed": removed, "remaining": dp.sessions.active_session_count}

    # ------------------------------------------------------------------
    # Tool: list_locks
    # ------------------------------------------------------------------
    @mcp.tool()
    async def list_locks() -> dict:
        """List operations currently holding a target lock."""
        holders = dp.locks.holders()
        return {
            "count": len(holders),
            "locks": [h.to_dict() | {"description": h.describe()} for h in holders],
        }

    return mcp
