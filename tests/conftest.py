"""Shared test fixtures for cmdgate tests."""

import subprocess
import sys
import time
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from cmdgate.config import Config
from cmdgate.dispatcher import CommandDispatcher
from cmdgate.execution import LockRegistry, SessionRegistry
from cmdgate.execution.process_tree import spawn

PYTHON = sys.executable

# Prints 5 stdout and 5 stderr lines ~0.1s apart, then idles.
INTERLEAVED_SCRIPT = """
import sys, time
for i in range(5):
    print(f"out {i}", flush=True)
    print(f"err {i}", file=sys.stderr, flush=True)
    time.sleep(0.1)
time.sleep(60)
"""


def python_argv(code: str) -> list[str]:
    return [PYTHON, "-c", code]


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def locks() -> LockRegistry:
    """Fresh lock registry per test."""
    return LockRegistry()


@pytest.fixture
def sessions() -> Generator[SessionRegistry, None, None]:
    """Fresh session registry; every session is killed on teardown."""
    registry = SessionRegistry(stop_timeout=5.0)
    yield registry
    registry.stop_all()
    registry.clear()


@pytest.fixture
def spawned() -> Generator[Callable[[str], subprocess.Popen], None, None]:
    """Spawn ``python -c <code>`` children, killed on teardown if still alive."""
    procs: list[subprocess.Popen] = []

    def _spawn(code: str) -> subprocess.Popen:
        proc = spawn(python_argv(code))
        procs.append(proc)
        return proc

    yield _spawn
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
            proc.wait(timeout=5)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config rooted at a temporary directory."""
    return Config(base_workdir=str(tmp_path), stop_timeout=5.0)


@pytest.fixture
def dispatcher(config: Config) -> Generator[CommandDispatcher, None, None]:
    """Dispatcher with isolated registries."""
    dp = CommandDispatcher(config)
    yield dp
    dp.sessions.stop_all()
    dp.sessions.clear()
    dp.locks.clear()
