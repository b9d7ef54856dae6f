"""Tests for the process session registry."""

import os
import subprocess
import threading
import time
from collections.abc import Callable
from unittest import mock

import psutil
import pytest

from cmdgate.execution import InvalidSessionError, SessionRegistry
from cmdgate.execution import sessions as sessions_module
from cmdgate.execution.sessions import _tail
from cmdgate.models import LogLine, StreamName

from .conftest import INTERLEAVED_SCRIPT, wait_until

SLEEPER = "import time; time.sleep(60)"
QUICK = "print('done')"
# Starts a sleeping child that inherits stdout and prints its pid.
LAUNCHER = (
    "import subprocess, sys, time\n"
    "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
    "print(child.pid, flush=True)\n"
)

Spawn = Callable[[str], subprocess.Popen]


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class TestRegisterSession:
    """Tests for register_session."""

    def test_register_returns_true(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        assert sessions.register_session("s1", spawned(SLEEPER), "run", "/test/project.csproj")
        assert sessions.active_session_count == 1

    def test_duplicate_id_keeps_first(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        first = spawned(SLEEPER)
        second = spawned(SLEEPER)
        assert sessions.register_session("dup", first, "run", "/first")
        assert not sessions.register_session("dup", second, "watch_run", "/second")

        info = sessions.try_get_session("dup")
        assert info is not None
        assert info.pid == first.pid
        assert info.operation_kind == "run"
        assert info.target == "/first"

    @pytest.mark.parametrize("bad_id", [None, "", "   "])
    def test_empty_id_raises(self, sessions: SessionRegistry, spawned: Spawn, bad_id) -> None:
        with pytest.raises(InvalidSessionError, match="Session ID"):
            sessions.register_session(bad_id, spawned(SLEEPER), "run", "/t")

    def test_none_process_raises(self, sessions: SessionRegistry) -> None:
        with pytest.raises(ValueError, match="process"):
            sessions.register_session("s1", None, "run", "/t")  # type: ignore[arg-type]

    def test_capture_starts_before_session_is_visible(
        self, sessions: SessionRegistry, spawned: Spawn,
    ) -> None:
        """A concurrent stop must never see a session without its readers."""
        visible_at_capture = []
        real_start = sessions_module.start_capture

        def recording_start(process, buffer, label):
            visible_at_capture.append("s1" in sessions._sessions)
            return real_start(process, buffer, label)

        with mock.patch.object(sessions_module, "start_capture", side_effect=recording_start):
            assert sessions.register_session("s1", spawned(SLEEPER), "run", "/t")
        assert visible_at_capture == [False]

    def test_duplicate_id_starts_no_capture(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("dup", spawned(SLEEPER), "run", "/t")
        with mock.patch.object(sessions_module, "start_capture") as start:
            assert not sessions.register_session("dup", spawned(SLEEPER), "run", "/t")
        start.assert_not_called()

    def test_id_reusable_after_removal(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        proc = spawned(QUICK)
        assert sessions.register_session("again", proc, "run", "/t")
        proc.wait(timeout=10)
        assert sessions.cleanup_completed_sessions() == 1
        assert sessions.register_session("again", spawned(SLEEPER), "run", "/t")


class TestTryStopSession:
    """Tests for try_stop_session."""

    def test_stop_running_session(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        proc = spawned(SLEEPER)
        sessions.register_session("s1", proc, "run", "/t")
        stopped, error = sessions.try_stop_session("s1")
        assert stopped
        assert error is None
        assert proc.poll() is not None

        info = sessions.try_get_session("s1")
        assert info is not None
        assert not info.is_running

    def test_stop_unknown_session(self, sessions: SessionRegistry) -> None:
        stopped, error = sessions.try_stop_session("never-registered")
        assert not stopped
        assert error is not None
        assert "not found" in error

    def test_stop_exited_session_is_success(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        proc = spawned(QUICK)
        sessions.register_session("s1", proc, "run", "/t")
        proc.wait(timeout=10)
        assert sessions.try_stop_session("s1") == (True, None)
        assert sessions.try_stop_session("s1") == (True, None)

    def test_stop_kills_children(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        """Grandchildren such as file watchers die with the session."""
        parent = spawned(LAUNCHER + "time.sleep(60)\n")
        sessions.register_session("tree", parent, "watch_run", "/t")
        assert wait_until(lambda: sessions.get_session_logs("tree").output_lines != ())
        child_pid = int(sessions.get_session_logs("tree").output_lines[0].text)

        stopped, _ = sessions.try_stop_session("tree")
        assert stopped
        assert wait_until(lambda: _gone(child_pid))

    @pytest.mark.skipif(os.name == "nt", reason="POSIX process groups")
    def test_stop_kills_children_of_exited_parent(
        self, sessions: SessionRegistry, spawned: Spawn,
    ) -> None:
        """A launcher that exits leaves its watcher behind; stop still kills it."""
        finished = threading.Event()
        parent = spawned(LAUNCHER)
        sessions.register_session("orphan", parent, "watch_run", "/t", on_exit=finished.set)
        assert wait_until(lambda: sessions.get_session_logs("orphan").output_lines != ())
        child_pid = int(sessions.get_session_logs("orphan").output_lines[0].text)
        parent.wait(timeout=10)
        assert not _gone(child_pid)
        # the child still holds the output pipes
        assert not finished.wait(0.3)

        assert sessions.try_stop_session("orphan") == (True, None)
        assert wait_until(lambda: _gone(child_pid))
        assert finished.wait(5)

    def test_on_exit_runs_after_natural_exit(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        finished = threading.Event()
        sessions.register_session("quick", spawned(QUICK), "run", "/t", on_exit=finished.set)
        assert finished.wait(10)
        logs = sessions.get_session_logs("quick")
        assert logs is not None
        assert [ln.text for ln in logs.output_lines] == ["done"]

    def test_output_kept_after_stop(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        proc = spawned("print('before', flush=True)\nimport time\ntime.sleep(60)")
        sessions.register_session("s1", proc, "run", "/t")
        assert wait_until(lambda: len(sessions.get_session_logs("s1").output_lines) == 1)
        sessions.try_stop_session("s1")

        logs = sessions.get_session_logs("s1")
        assert logs is not None
        assert not logs.is_running
        assert [ln.text for ln in logs.output_lines] == ["before"]

    def test_kill_failure_drops_session(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("s1", spawned(SLEEPER), "run", "/t")
        with mock.patch(
            "cmdgate.execution.sessions.kill_process_tree",
            side_effect=psutil.AccessDenied(pid=1),
        ):
            stopped, error = sessions.try_stop_session("s1")
        assert not stopped
        assert error is not None
        assert "Failed to stop session 's1'" in error
        assert sessions.try_get_session("s1") is None

    def test_stop_all(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        procs = [spawned(SLEEPER) for _ in range(3)]
        for i, proc in enumerate(procs):
            sessions.register_session(f"s{i}", proc, "run", f"/t{i}")
        assert sessions.stop_all() == 3
        assert all(p.poll() is not None for p in procs)


class TestQueries:
    """Tests for try_get_session, get_active_sessions, active_session_count."""

    def test_get_session_metadata(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        proc = spawned(SLEEPER)
        sessions.register_session("s1", proc, "run", "/test/project.csproj")
        info = sessions.try_get_session("s1")
        assert info is not None
        assert info.session_id == "s1"
        assert info.operation_kind == "run"
        assert info.target == "/test/project.csproj"
        assert info.pid == proc.pid
        assert info.is_running
        assert info.exit_code is None

    def test_get_unknown_session(self, sessions: SessionRegistry) -> None:
        assert sessions.try_get_session("missing") is None

    def test_active_sessions_include_exited(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        quick = spawned(QUICK)
        sessions.register_session("quick", quick, "run", "/a")
        sessions.register_session("slow", spawned(SLEEPER), "run", "/b")
        quick.wait(timeout=10)

        listed = {s.session_id: s for s in sessions.get_active_sessions()}
        assert set(listed) == {"quick", "slow"}
        assert not listed["quick"].is_running
        assert listed["quick"].exit_code == 0
        assert listed["slow"].is_running
        assert sessions.active_session_count == 2

    def test_wait_for_exit(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("s1", spawned("import sys; sys.exit(3)"), "test", "/t")
        assert sessions.wait_for_exit("s1", timeout=10) == 3
        assert sessions.wait_for_exit("missing") is None

    def test_wait_for_exit_timeout(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("s1", spawned(SLEEPER), "run", "/t")
        assert sessions.wait_for_exit("s1", timeout=0.1) is None


class TestRemoval:
    """Tests for cleanup_completed_sessions, remove_session and clear."""

    def test_cleanup_removes_exited(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("s1", spawned(SLEEPER), "run", "/t")
        sessions.try_stop_session("s1")
        assert sessions.cleanup_completed_sessions() >= 1
        assert sessions.try_get_session("s1") is None
        assert sessions.get_session_logs("s1") is None

    def test_cleanup_keeps_running(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("alive", spawned(SLEEPER), "run", "/t")
        assert sessions.cleanup_completed_sessions() == 0
        assert sessions.try_get_session("alive") is not None

    def test_remove_session_refuses_running(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("s1", spawned(SLEEPER), "run", "/t")
        assert not sessions.remove_session("s1")
        sessions.try_stop_session("s1")
        assert sessions.remove_session("s1")
        assert not sessions.remove_session("s1")

    def test_clear_removes_everything(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        proc = spawned(SLEEPER)
        sessions.register_session("s1", proc, "run", "/t")
        sessions.clear()
        assert sessions.active_session_count == 0
        stopped, error = sessions.try_stop_session("s1")
        assert not stopped and "not found" in (error or "")
        # nothing can reach a forgotten process, so clear() kills it
        assert proc.poll() is not None

    def test_clear_kills_children(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        finished = threading.Event()
        parent = spawned(LAUNCHER + "time.sleep(60)\n")
        sessions.register_session("tree", parent, "watch_run", "/t", on_exit=finished.set)
        assert wait_until(lambda: sessions.get_session_logs("tree").output_lines != ())
        child_pid = int(sessions.get_session_logs("tree").output_lines[0].text)

        sessions.clear()
        assert parent.poll() is not None
        assert wait_until(lambda: _gone(child_pid))
        assert finished.wait(5)

    def test_clear_survives_kill_failure(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        sessions.register_session("s1", spawned(SLEEPER), "run", "/t")
        sessions.register_session("s2", spawned(SLEEPER), "run", "/t2")
        with mock.patch(
            "cmdgate.execution.sessions.kill_process_tree",
            side_effect=psutil.AccessDenied(pid=1),
        ) as kill:
            sessions.clear()
        assert kill.call_count == 2
        assert sessions.active_session_count == 0


class TestGetSessionLogs:
    """Tests for get_session_logs filtering."""

    def _fill(self, sessions: SessionRegistry, spawned: Spawn, session_id: str = "logs") -> None:
        sessions.register_session(session_id, spawned(INTERLEAVED_SCRIPT), "run", "/t")
        assert wait_until(
            lambda: len(sessions.get_session_logs(session_id).output_lines) == 5
            and len(sessions.get_session_logs(session_id).error_lines) == 5,
        )

    def test_unknown_session(self, sessions: SessionRegistry) -> None:
        assert sessions.get_session_logs("missing") is None

    def test_unfiltered_while_running(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        """5 stdout + 5 stderr lines, process still sleeping afterwards."""
        sessions.register_session("e2e", spawned(INTERLEAVED_SCRIPT), "run", "/t")
        time.sleep(1.0)
        logs = sessions.get_session_logs("e2e")
        assert logs is not None
        assert logs.output_lines
        assert logs.error_lines
        assert logs.is_running
        assert logs.operation_kind == "run"
        assert logs.output_lines[0].text == "out 0"
        assert logs.error_lines[0].stream is StreamName.STDERR

    def test_tail_caps_combined_count(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        self._fill(sessions, spawned)
        logs = sessions.get_session_logs("logs", tail_lines=2)
        assert logs is not None
        assert len(logs.output_lines) + len(logs.error_lines) <= 2
        assert logs.total_output_lines == 5
        assert logs.total_error_lines == 5

    def test_tail_keeps_newest(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        self._fill(sessions, spawned)
        full = sessions.get_session_logs("logs")
        tailed = sessions.get_session_logs("logs", tail_lines=3)
        assert full is not None and tailed is not None

        merged = sorted(full.output_lines + full.error_lines, key=lambda ln: (ln.timestamp, ln.seq))
        newest = {ln.seq for ln in merged[-3:]}
        assert {ln.seq for ln in tailed.output_lines + tailed.error_lines} == newest

    def test_tail_zero_returns_nothing(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        self._fill(sessions, spawned)
        logs = sessions.get_session_logs("logs", tail_lines=0)
        assert logs is not None
        assert logs.output_lines == () and logs.error_lines == ()

    def test_negative_tail_rejected(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        self._fill(sessions, spawned)
        with pytest.raises(ValueError):
            sessions.get_session_logs("logs", tail_lines=-1)

    def test_since_filters_both_streams(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        self._fill(sessions, spawned)
        full = sessions.get_session_logs("logs")
        assert full is not None
        stamps = sorted({ln.timestamp for ln in full.output_lines + full.error_lines})
        # strictly between two captured timestamps
        cutoff = (stamps[3] + stamps[4]) / 2

        logs = sessions.get_session_logs("logs", since=cutoff)
        assert logs is not None
        returned = logs.output_lines + logs.error_lines
        assert returned
        assert all(ln.timestamp >= cutoff for ln in returned)
        assert len(returned) < len(full.output_lines + full.error_lines)

    def test_since_then_tail(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        self._fill(sessions, spawned)
        full = sessions.get_session_logs("logs")
        assert full is not None
        cutoff = full.output_lines[1].timestamp

        logs = sessions.get_session_logs("logs", tail_lines=2, since=cutoff)
        assert logs is not None
        returned = logs.output_lines + logs.error_lines
        assert len(returned) <= 2
        assert all(ln.timestamp >= cutoff for ln in returned)

    def test_since_in_future_returns_nothing(self, sessions: SessionRegistry, spawned: Spawn) -> None:
        self._fill(sessions, spawned)
        logs = sessions.get_session_logs("logs", since=time.time() + 3600)
        assert logs is not None
        assert logs.output_lines == () and logs.error_lines == ()

    def test_bounded_registry_reports_drops(self, spawned: Spawn) -> None:
        registry = SessionRegistry(max_log_lines=3)
        try:
            proc = spawned("for i in range(10): print(i)")
            registry.register_session("small", proc, "run", "/t")
            assert registry.wait_for_exit("small", timeout=10) == 0
            logs = registry.get_session_logs("small")
            assert logs is not None
            assert [ln.text for ln in logs.output_lines] == ["7", "8", "9"]
            assert logs.dropped_lines == 7
        finally:
            registry.clear()


class TestTailMerge:
    """Tail selection across streams uses timestamps, not stream order."""

    def test_interleaved_by_timestamp(self) -> None:
        out = (
            LogLine(StreamName.STDOUT, "o1", 1.0, 1),
            LogLine(StreamName.STDOUT, "o2", 4.0, 4),
        )
        err = (
            LogLine(StreamName.STDERR, "e1", 2.0, 2),
            LogLine(StreamName.STDERR, "e2", 3.0, 3),
        )
        kept_out, kept_err = _tail(out, err, 3)
        assert [ln.text for ln in kept_out] == ["o2"]
        assert [ln.text for ln in kept_err] == ["e1", "e2"]

    def test_ties_broken_by_capture_order(self) -> None:
        out = (LogLine(StreamName.STDOUT, "o", 5.0, 2),)
        err = (LogLine(StreamName.STDERR, "e", 5.0, 1),)
        kept_out, kept_err = _tail(out, err, 1)
        assert [ln.text for ln in kept_out] == ["o"]
        assert kept_err == ()
