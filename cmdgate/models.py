from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


def _format_ts(ts: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


# ---------------------------------------------------------------------------
# Operation locks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OperationLock:
    """Holder of exclusive access to a target."""

    operation_kind: str
    target: str
    acquired_at: float

    def describe(self) -> str:
        return (
            f"{self.operation_kind} on {self.target or '<global>'} "
            f"(started at {_format_ts(self.acquired_at)})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation_kind,
            "target": self.target,
            "acquired_at": self.acquired_at,
        }


@dataclass(frozen=True)
class AcquireResult:
    """Outcome of a lock attempt.  ``holder`` is set exactly when denied."""

    granted: bool
    holder: OperationLock | None = None

    def __bool__(self) -> bool:
        return self.granted


# ---------------------------------------------------------------------------
# Captured output
# ---------------------------------------------------------------------------

class StreamName(str, enum.Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class LogLine:
    stream: StreamName
    text: str
    timestamp: float   # time.time() at capture, non-decreasing per stream
    seq: int           # capture order within the owning buffer

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "text": self.text}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    operation_kind: str
    target: str
    pid: int | None
    started_at: float
    is_running: bool
    exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "operation": self.operation_kind,
            "target": self.target,
            "pid": self.pid,
            "started_at": self.started_at,
            "status": "running" if self.is_running else "exited",
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class SessionLogs:
    session_id: str
    operation_kind: str
    target: str
    started_at: float
    is_running: bool
    exit_code: int | None
    output_lines: tuple[LogLine, ...]
    error_lines: tuple[LogLine, ...]
    total_output_lines: int
    total_error_lines: int
    dropped_lines: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "operation": self.operation_kind,
            "target": self.target,
            "started_at": self.started_at,
            "status": "running" if self.is_running else "exited",
            "exit_code": self.exit_code,
            "stdout": [line.to_dict() for line in self.output_lines],
            "stderr": [line.to_dict() for line in self.error_lines],
            "total_stdout_lines": self.total_output_lines,
            "total_stderr_lines": self.total_error_lines,
            "dropped_lines": self.dropped_lines,
        }


# ---------------------------------------------------------------------------
# One-shot command results
# ---------------------------------------------------------------------------

CONFLICT_HINT = (
    "Wait for the conflicting operation to complete, or stop it before "
    "retrying this operation."
)


@dataclass
class CommandResult:
    operation_kind: str
    target: str
    command: list[str] = field(default_factory=list)
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False
    timed_out: bool = False
    conflict: OperationLock | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return (
            self.exit_code == 0
            and self.error is None
            and self.conflict is None
            and not (self.cancelled or self.timed_out)
        )

    @classmethod
    def for_conflict(
        cls, operation_kind: str, target: str, holder: OperationLock,
    ) -> CommandResult:
        return cls(
            operation_kind=operation_kind,
            target=target,
            conflict=holder,
            error=(
                f"Cannot execute '{operation_kind}' on '{target}' because a "
                f"conflicting operation is already in progress: "
                f"{holder.describe()}"
            ),
        )

    @property
    def status(self) -> str:
        if self.conflict is not None:
            return "conflict"
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return "timeout"
        if self.error is not None:
            return "error"
        return "ok" if self.exit_code == 0 else "failed"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status,
            "operation": self.operation_kind,
            "target": self.target,
            "command": " ".join(self.command),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }
        if self.error:
            result["error"] = self.error
        if self.conflict is not None:
            result["conflicting_operation"] = self.conflict.to_dict()
            result["hint"] = CONFLICT_HINT
        return result
