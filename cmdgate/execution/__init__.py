"""Process orchestration: operation locks, process sessions, log capture.

  - LockRegistry:    non-blocking exclusive access per target
  - SessionRegistry: long-running processes, stop/cleanup, log queries
  - LogBuffer:       timestamped stdout/stderr lines for one process
"""

from cmdgate.execution.capture import LogBuffer
from cmdgate.execution.locks import LockRegistry, normalize_target
from cmdgate.execution.sessions import InvalidSessionError, SessionRegistry

__all__ = [
    "InvalidSessionError",
    "LockRegistry",
    "LogBuffer",
    "SessionRegistry",
    "normalize_target",
]
