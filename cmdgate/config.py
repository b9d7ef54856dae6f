from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .execution.capture import DEFAULT_MAX_LINES
from .execution.locks import DEFAULT_GLOBAL_OPERATIONS
from .execution.sessions import DEFAULT_STOP_TIMEOUT

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8902

# Operations that modify files or state and therefore take a target lock.
DEFAULT_MUTATING_OPERATIONS = frozenset({
    "build",
    "restore",
    "publish",
    "test",
    "run",
    "watch_run",
    "watch_test",
    "watch_build",
    "package_add",
    "package_remove",
    "package_update",
    "reference_add",
    "reference_remove",
    "solution_add",
    "solution_remove",
    "project_new",
    "solution_create",
    "format",
})


def _split_set(raw: str) -> frozenset[str]:
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


def _optional_float(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass(frozen=True)
class Config:
    executable: str | None = None
    base_workdir: str = field(default_factory=os.getcwd)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_log_lines: int = DEFAULT_MAX_LINES
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    command_timeout: float | None = None
    mutating_operations: frozenset[str] = DEFAULT_MUTATING_OPERATIONS
    global_operations: frozenset[str] = DEFAULT_GLOBAL_OPERATIONS

    def _resolve(self, relative: str | None) -> Path:
        base = Path(self.base_workdir)
        if not relative:
            return base.resolve()
        rel = Path(relative).expanduser()
        return rel.resolve() if rel.is_absolute() else (base / rel).resolve()

    def resolve_workdir(self, relative: str | None = None) -> str:
        """Resolve a caller-provided directory relative to base_workdir.

        build  ->  <base>/build
        None   ->  <base>
        /tmp   ->  /tmp          (absolute paths used as-is)

        Raises ValueError if the resolved directory does not exist.
        """
        resolved = self._resolve(relative)
        if not resolved.is_dir():
            raise ValueError(f"Working directory does not exist: {resolved}")
        return str(resolved)

    def resolve_target(self, target: str | None, cwd: str | None = None) -> str:
        """Absolute form of a target path; defaults to the working directory.

        Unlike :meth:`resolve_workdir` the path need not exist yet (e.g. a
        project about to be created).
        """
        if target:
            rel = Path(target).expanduser()
            if not rel.is_absolute():
                rel = Path(cwd or self.base_workdir) / rel
            return str(rel.resolve())
        return str(self._resolve(cwd))

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        load_dotenv(env_path)

        mutating = os.getenv("CMDGATE_MUTATING_OPERATIONS")
        global_ops = os.getenv("CMDGATE_GLOBAL_OPERATIONS")

        return cls(
            executable=os.getenv("CMDGATE_EXECUTABLE") or None,
            base_workdir=os.getenv("CMDGATE_BASE_WORKDIR", os.getcwd()),
            host=os.getenv("CMDGATE_HOST", DEFAULT_HOST),
            port=int(os.getenv("CMDGATE_PORT", str(DEFAULT_PORT))),
            max_log_lines=int(os.getenv("CMDGATE_MAX_LOG_LINES", str(DEFAULT_MAX_LINES))),
            stop_timeout=float(os.getenv("CMDGATE_STOP_TIMEOUT", str(DEFAULT_STOP_TIMEOUT))),
            command_timeout=_optional_float(os.getenv("CMDGATE_COMMAND_TIMEOUT")),
            mutating_operations=(
                _split_set(mutating) if mutating else DEFAULT_MUTATING_OPERATIONS
            ),
            global_operations=(
                _split_set(global_ops) if global_ops else DEFAULT_GLOBAL_OPERATIONS
            ),
        )
