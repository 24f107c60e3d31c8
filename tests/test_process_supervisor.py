"""Tests for process launching and discovery"""

import sys
from unittest.mock import MagicMock, patch

import psutil
import pytest

from process_supervisor import (
    WaitResult, _name_matches, find_running, kill, kill_processes, run_and_capture, spawn,
    wait_with_timeout,
)
from recording_errors import LaunchFailure


def _close(handle):
    for stream in (handle.stdin, handle.stdout, handle.stderr):
        if stream:
            stream.close()


class TestSpawn:
    """Test spawning and waiting on real child processes."""

    def test_quick_process_exits(self):
        """A process that finishes is reported as exited with its code"""
        handle = spawn(sys.executable, ['-c', 'import sys; sys.exit(3)'])
        try:
            assert wait_with_timeout(handle, 10) is WaitResult.EXITED
            assert handle.has_exited()
            assert handle.exit_code == 3
        finally:
            _close(handle)

    def test_wait_times_out_then_kill(self):
        """A long-running process times out and can be killed"""
        handle = spawn(sys.executable, ['-c', 'import time; time.sleep(30)'])
        try:
            assert wait_with_timeout(handle, 0.2) is WaitResult.TIMED_OUT
            assert not handle.has_exited()
            kill(handle)
            assert wait_with_timeout(handle, 10) is WaitResult.EXITED
        finally:
            _close(handle)

    def test_kill_after_exit_is_harmless(self):
        handle = spawn(sys.executable, ['-c', 'pass'])
        try:
            wait_with_timeout(handle, 10)
            kill(handle)
        finally:
            _close(handle)

    def test_missing_executable_raises_launch_failure(self, tmp_path):
        with pytest.raises(LaunchFailure):
            spawn(tmp_path / "no-such-encoder.exe", ['-version'])


class TestRunAndCapture:
    """Test run-to-completion helper."""

    def test_captures_exit_code_and_streams(self):
        code, out, err = run_and_capture(
            sys.executable, ['-c', 'import sys; print("out"); sys.stderr.write("err"); sys.exit(1)']
        )
        assert code == 1
        assert out.strip() == "out"
        assert err == "err"

    def test_timeout_raises_launch_failure(self):
        with pytest.raises(LaunchFailure, match="did not finish"):
            run_and_capture(sys.executable, ['-c', 'import time; time.sleep(30)'], timeout=0.5)

    def test_missing_executable(self, tmp_path):
        with pytest.raises(LaunchFailure):
            run_and_capture(tmp_path / "missing", [])


class TestProcessDiscovery:
    """Test psutil-based lookups."""

    def test_name_matching_ignores_case_and_exe_suffix(self):
        assert _name_matches("OBS64.EXE", ("obs64",))
        assert _name_matches("obs", ("obs64", "obs"))
        assert not _name_matches("obs-browser-page.exe", ("obs64", "obs"))
        assert not _name_matches(None, ("obs",))

    def test_find_running_filters_by_name(self):
        procs = []
        for name in ("explorer.exe", "obs64.exe", "python"):
            proc = MagicMock()
            proc.info = {'name': name, 'pid': len(procs) + 1}
            procs.append(proc)
        with patch('process_supervisor.psutil.process_iter', return_value=procs):
            found = find_running(('obs64', 'obs'))
        assert found == [procs[1]]

    def test_kill_processes_reports_survivors(self):
        gone = MagicMock(pid=10)
        stuck = MagicMock(pid=11)
        stuck.kill.side_effect = psutil.AccessDenied(11)
        with patch('process_supervisor.psutil.wait_procs', return_value=([gone], [stuck])) as wait:
            remaining = kill_processes([gone, stuck], timeout=1.0)
        assert remaining == 1
        gone.kill.assert_called_once()
        wait.assert_called_once_with([gone, stuck], timeout=1.0)
