"""Log capture: drains a child's stdout/stderr into a timestamped buffer.

One daemon thread per stream reads lines until EOF and appends them to the
session's :class:`LogBuffer`.  Readers never raise on ordinary stream closure;
anything else ends the reader with a debug log.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import IO

from ..models import LogLine, StreamName

log = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 10_000  # per stream


class LogBuffer:
    """Per-session store of captured lines, one deque per stream.

    ``max_lines`` bounds retention per stream (``None`` or ``0`` keeps
    everything).  All access goes through one lock, so snapshots are
    consistent and a line is never observed half-written.
    """

    def __init__(
        self,
        max_lines: int | None = DEFAULT_MAX_LINES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        maxlen = max_lines or None
        self._lines: dict[StreamName, deque[LogLine]] = {
            StreamName.STDOUT: deque(maxlen=maxlen),
            StreamName.STDERR: deque(maxlen=maxlen),
        }
        self._last_ts: dict[StreamName, float] = {
            StreamName.STDOUT: 0.0,
            StreamName.STDERR: 0.0,
        }
        self._totals: dict[StreamName, int] = {
            StreamName.STDOUT: 0,
            StreamName.STDERR: 0,
        }
        self._seq = 0
        self._lock = threading.Lock()

    def append(self, stream: StreamName, text: str) -> LogLine:
        with self._lock:
            # Wall clock may step backwards; keep each stream non-decreasing.
            ts = max(self._clock(), self._last_ts[stream])
            self._last_ts[stream] = ts
            self._seq += 1
            line = LogLine(stream=stream, text=text, timestamp=ts, seq=self._seq)
            self._lines[stream].append(line)
            self._totals[stream] += 1
            return line

    def snapshot(self) -> tuple[tuple[LogLine, ...], tuple[LogLine, ...]]:
        """Return (stdout, stderr) lines as immutable copies."""
        with self._lock:
            return (
                tuple(self._lines[StreamName.STDOUT]),
                tuple(self._lines[StreamName.STDERR]),
            )

    @property
    def dropped(self) -> int:
        """Lines evicted by the retention bound, both streams."""
        with self._lock:
            return sum(
                self._totals[s] - len(self._lines[s]) for s in self._lines
            )

    def text(self, stream: StreamName) -> str:
        with self._lock:
            return "\n".join(line.text for line in self._lines[stream])

    def __len__(self) -> int:
        with self._lock:
            return sum(len(lines) for lines in self._lines.values())


def _decode(raw: bytes | str) -> str:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return raw.rstrip("\r\n")


def _drain(stream: IO, buffer: LogBuffer, name: StreamName) -> None:
    """Reader thread body: append every line until EOF."""
    try:
        while True:
            raw = stream.readline()
            if not raw:  # b"" or "" at EOF
                break
            buffer.append(name, _decode(raw))
    except (OSError, ValueError) as exc:
        # ValueError: the pipe was closed underneath us
        log.debug("%s reader ended: %s", name.value, exc)
    finally:
        try:
            stream.close()
        except OSError:
            pass


def start_capture(
    process: subprocess.Popen,
    buffer: LogBuffer,
    label: str,
) -> list[threading.Thread]:
    """Start one reader thread per piped stream of ``process``.

    Streams that were not redirected to a pipe are skipped.
    """
    readers: list[threading.Thread] = []
    for name, stream in (
        (StreamName.STDOUT, process.stdout),
        (StreamName.STDERR, process.stderr),
    ):
        if stream is None:
            continue
        reader = threading.Thread(
            target=_drain,
            args=(stream, buffer, name),
            daemon=True,
            name=f"{label}-{name.value}",
        )
        reader.start()
        readers.append(reader)
    return readers


def join_readers(readers: list[threading.Thread], timeout: float) -> None:
    """Wait up to ``timeout`` seconds in total for readers to hit EOF."""
    deadline = time.monotonic() + timeout
    for reader in readers:
        reader.join(max(0.0, deadline - time.monotonic()))
