"""Spawning children in their own process group and killing whole trees."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from collections.abc import Mapping, Sequence
from typing import Any

import psutil

log = logging.getLogger(__name__)


def popen_group_kwargs() -> dict[str, Any]:
    """Popen kwargs that put the child at the root of a new process group."""
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def spawn(
    argv: Sequence[str],
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.Popen:
    """Start ``argv`` with piped stdout/stderr and no stdin."""
    spawn_env = os.environ.copy()
    if env:
        spawn_env.update(env)
    return subprocess.Popen(
        list(argv),
        cwd=cwd,
        env=spawn_env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        **popen_group_kwargs(),
    )


def process_group(process: subprocess.Popen) -> int | None:
    """The process group ``process`` leads, or None.

    Children started by :func:`spawn` lead their own group on POSIX.  A
    process that shares its parent's group (ours) gets None, so the gateway
    never signals itself.
    """
    if not hasattr(os, "killpg"):
        return None
    try:
        pgid = os.getpgid(process.pid)
    except OSError:
        return None
    return pgid if pgid == process.pid else None


def _kill_group(pgid: int) -> None:
    if pgid == os.getpgrp():
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        # every member already gone
        pass
    except PermissionError:
        log.warning("Permission denied killing process group %d", pgid)


def kill_process_tree(
    process: subprocess.Popen,
    timeout: float = 5.0,
    pgid: int | None = None,
) -> int | None:
    """Forcefully kill ``process`` and every descendant.

    Descendants are collected before anything is signalled, then the process
    group is killed, then stragglers that left the group one by one.  Waits up
    to ``timeout`` seconds and returns the root's exit code (``None`` if it is
    somehow still alive).

    ``pgid`` is the group recorded while the root was still running.  With
    it, descendants left behind by a root that already exited (a launcher
    that forked a watcher) are killed too.

    Raises ``psutil.AccessDenied`` / ``PermissionError`` when the OS refuses
    to kill the root process.
    """
    if process.poll() is not None:
        if pgid is not None:
            _kill_group(pgid)
        return process.returncode

    if pgid is None:
        pgid = process_group(process)

    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    if pgid is not None:
        _kill_group(pgid)

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            log.warning("Access denied killing descendant pid=%d", child.pid)

    try:
        process.kill()
    except ProcessLookupError:
        pass

    try:
        code = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        log.warning("Process pid=%d did not exit within %.1fs", process.pid, timeout)
        code = None

    if children:
        _, alive = psutil.wait_procs(children, timeout=timeout)
        for straggler in alive:
            log.warning("Descendant pid=%d still alive after kill", straggler.pid)
    return code
