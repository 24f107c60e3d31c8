# process_supervisor.py
# Launch, wait on and terminate the external processes used for recording
# Dependencies: psutil

import enum
import logging
import os
import subprocess
import sys

import psutil

from recording_errors import LaunchFailure

logger = logging.getLogger(__name__)

# keep console windows from flashing up on Windows
CREATE_NO_WINDOW = getattr(subprocess, 'CREATE_NO_WINDOW', 0)


class WaitResult(enum.Enum):
    EXITED = "exited"
    TIMED_OUT = "timed_out"


class ProcessHandle:
    """A spawned process plus its standard streams; owned by one backend"""

    def __init__(self, popen, path, args):
        self.popen = popen
        self.path = str(path)
        self.args = list(args)

    @property
    def pid(self):
        return self.popen.pid

    @property
    def stdin(self):
        return self.popen.stdin

    @property
    def stdout(self):
        return self.popen.stdout

    @property
    def stderr(self):
        return self.popen.stderr

    @property
    def exit_code(self):
        return self.popen.returncode

    def has_exited(self):
        return self.popen.poll() is not None

    def __repr__(self):
        return f"<ProcessHandle pid={self.pid} path={self.path!r}>"


def spawn(path, args=(), redirect=True, cwd=None, hide_window=True):
    """Start ``path`` with ``args``; raise LaunchFailure if it cannot run"""
    cmd = [str(path)] + [str(a) for a in args]
    kwargs = {}
    if redirect:
        kwargs.update(stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    else:
        kwargs.update(stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    if sys.platform == 'win32' and hide_window:
        kwargs['creationflags'] = CREATE_NO_WINDOW
    try:
        popen = subprocess.Popen(cmd, cwd=cwd, **kwargs)
    except (OSError, ValueError) as e:
        raise LaunchFailure(f"Could not start {path}: {e}", detail=str(e)) from e
    logger.debug("Spawned pid %s: %s", popen.pid, subprocess.list2cmdline(cmd))
    return ProcessHandle(popen, path, args)


def wait_with_timeout(handle, timeout):
    """Wait up to ``timeout`` seconds for the process to exit"""
    try:
        handle.popen.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        return WaitResult.TIMED_OUT
    return WaitResult.EXITED


def kill(handle):
    """Forcibly terminate the process; an already-exited process is fine"""
    try:
        handle.popen.kill()
    except ProcessLookupError:
        pass
    except OSError as e:
        # on Windows a finished process reports access denied
        if handle.popen.poll() is None:
            logger.warning("Could not kill pid %s: %s", handle.pid, e)


def run_and_capture(path, args, timeout=15):
    """Run to completion and return (exit_code, stdout, stderr) as text"""
    cmd = [str(path)] + [str(a) for a in args]
    kwargs = {}
    if sys.platform == 'win32':
        kwargs['creationflags'] = CREATE_NO_WINDOW
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, errors='replace',
            timeout=timeout, stdin=subprocess.DEVNULL, **kwargs
        )
    except subprocess.TimeoutExpired as e:
        raise LaunchFailure(f"{os.path.basename(str(path))} did not finish within {timeout}s") from e
    except OSError as e:
        raise LaunchFailure(f"Could not start {path}: {e}", detail=str(e)) from e
    return result.returncode, result.stdout or "", result.stderr or ""


def _name_matches(proc_name, names):
    proc_name = (proc_name or "").lower()
    for name in names:
        name = name.lower()
        if proc_name == name or proc_name == name + ".exe":
            return True
    return False


def find_running(names):
    """Return psutil processes whose name matches one of ``names``"""
    found = []
    for proc in psutil.process_iter(['name', 'pid']):
        try:
            if _name_matches(proc.info.get('name'), names):
                found.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return found


def running_executable(names):
    """Executable path of the first running process named in ``names``"""
    for proc in find_running(names):
        try:
            exe = proc.exe()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
            logger.debug("Could not read executable of pid %s: %s", proc.pid, e)
            continue
        if exe and os.path.isfile(exe):
            return exe
    return None


def kill_processes(procs, timeout=5.0):
    """Kill psutil processes and wait for them; return how many remain"""
    for proc in procs:
        try:
            logger.info("Force terminating %s (pid %s)", proc.name(), proc.pid)
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Kill of pid %s skipped: %s", proc.pid, e)
    gone, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        logger.warning("Process %s still running after kill", proc.pid)
    return len(alive)
