# obs_engine.py
# Remote backend: records through a separately installed OBS Studio instance
# Dependencies: psutil (via process_supervisor), websockets (via obs_control)

import configparser
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from obs_control import ObsControlClient
from process_supervisor import find_running, kill_processes, running_executable, spawn
from recording_errors import (
    BackendNotFound, ConfigWriteFailure, LaunchFailure, ProtocolError, ProtocolTimeout,
    RecordingError,
)
from recording_types import BackendKind, ControlOutcome, RecordingBackend

logger = logging.getLogger(__name__)

APP_DIR = os.path.dirname(os.path.abspath(__file__))
BUNDLE_DIR_NAME = "SnapRecorder"
OBS_PROCESS_NAMES = ('obs64', 'obs32', 'obs')
LAUNCH_ARGS = ['--minimize-to-tray', '--disable-updater', '--disable-shutdown-check']

WEBSOCKET_SECTION = 'OBSWebSocket'
QUIT_GRACE = 3.0
COMMAND_LINE_SETTLE = 2.0


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------
def _bundled_exe(base):
    return Path(base) / 'OBS-Studio' / 'bin' / '64bit' / 'obs64.exe'


def candidate_paths(cwd=None, app_dir=APP_DIR, env=None):
    """Ordered places an OBS executable may live"""
    env = os.environ if env is None else env
    cwd = Path(cwd or os.getcwd())
    app_dir = Path(app_dir)

    paths = [_bundled_exe(cwd), _bundled_exe(app_dir)]
    paths += [_bundled_exe(parent) for parent in list(app_dir.parents)[:2]]
    if env.get('LOCALAPPDATA'):
        paths.append(_bundled_exe(Path(env['LOCALAPPDATA']) / BUNDLE_DIR_NAME))
    for var in ('ProgramFiles', 'ProgramFiles(x86)'):
        if env.get(var):
            paths.append(Path(env[var]) / 'obs-studio' / 'bin' / '64bit' / 'obs64.exe')
    if sys.platform == 'darwin':
        paths.append(Path('/Applications/OBS.app/Contents/MacOS/OBS'))
    elif sys.platform != 'win32':
        paths += [Path('/usr/bin/obs'), Path('/usr/local/bin/obs')]
    return paths


def bundle_install_dir(env=None):
    """Per-user folder a bundled OBS is extracted to"""
    env = os.environ if env is None else env
    base = env.get('LOCALAPPDATA') or Path.home() / 'AppData' / 'Local'
    return Path(base) / BUNDLE_DIR_NAME


def extract_bundled_obs(source=None, install_dir=None):
    """Copy the OBS-Studio folder shipped with the application to ``install_dir``.

    Returns the extracted executable, or None when nothing is bundled.
    """
    source = Path(source) if source else Path(APP_DIR) / 'OBS-Studio'
    install_dir = Path(install_dir) if install_dir else bundle_install_dir()
    exe = _bundled_exe(install_dir)
    if exe.is_file():
        return str(exe)
    if not source.is_dir():
        logger.debug("No bundled OBS at %s", source)
        return None

    logger.info("Extracting bundled OBS from %s to %s", source, install_dir)
    try:
        shutil.copytree(source, install_dir / 'OBS-Studio', dirs_exist_ok=True)
    except OSError as e:
        raise LaunchFailure(f"Could not extract bundled OBS to {install_dir}: {e}", detail=str(e)) from e
    if not exe.is_file():
        logger.warning("Bundled OBS at %s has no %s", source, exe.name)
        return None
    return str(exe)


def find_obs_executable(candidates=None):
    """Path to OBS, falling back to the executable of a running instance"""
    candidates = candidate_paths() if candidates is None else candidates
    for path in candidates:
        logger.debug("Checking OBS path: %s", path)
        if os.path.isfile(path):
            logger.info("Found OBS at: %s", path)
            return str(path)
    for name in ('obs64', 'obs'):
        found = shutil.which(name)
        if found:
            logger.info("Found OBS on PATH: %s", found)
            return found
    exe = running_executable(OBS_PROCESS_NAMES)
    if exe:
        logger.info("Found OBS running at: %s", exe)
    return exe


def is_obs_running():
    return bool(find_running(OBS_PROCESS_NAMES))


# ----------------------------------------------------------------------
# Configuration file
# ----------------------------------------------------------------------
def obs_config_path(env=None):
    """Location of OBS's global.ini for the current user"""
    env = os.environ if env is None else env
    if sys.platform == 'win32':
        base = Path(env.get('APPDATA') or Path.home() / 'AppData' / 'Roaming')
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    else:
        base = Path(env.get('XDG_CONFIG_HOME') or Path.home() / '.config')
    return base / 'obs-studio' / 'global.ini'


@dataclass
class ControlServerSettings:
    port: int
    password: str
    changed: bool = False


def _new_parser():
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    # OBS keys are case-sensitive
    parser.optionxform = str
    return parser


def ensure_websocket_enabled(ini_path, port, password):
    """Make sure OBS's control server is switched on in ``ini_path``.

    Only the control-server section is touched; every other section and key
    is written back unchanged. When the section or its enabled flag is
    missing (or the flag is off) we insert enablement, ``port`` and
    ``password``. Otherwise the port and password already in the file are
    returned so the client connects with them.
    """
    ini_path = Path(ini_path)
    parser = _new_parser()
    try:
        if ini_path.exists():
            parser.read(ini_path, encoding='utf-8-sig')
    except (OSError, configparser.Error) as e:
        raise ConfigWriteFailure(f"Could not read {ini_path}: {e}") from e

    section = parser[WEBSOCKET_SECTION] if parser.has_section(WEBSOCKET_SECTION) else None
    enabled = section is not None and section.get('ServerEnabled', '').strip().lower() == 'true'
    if enabled:
        existing_port = section.get('ServerPort', str(port))
        try:
            existing_port = int(existing_port)
        except ValueError:
            existing_port = port
        return ControlServerSettings(existing_port, section.get('ServerPassword', password), changed=False)

    if section is None:
        parser.add_section(WEBSOCKET_SECTION)
        section = parser[WEBSOCKET_SECTION]
    section['FirstLoad'] = 'false'
    section['ServerEnabled'] = 'true'
    section['ServerPort'] = str(port)
    section['AuthRequired'] = 'true'
    section['ServerPassword'] = password

    try:
        ini_path.parent.mkdir(parents=True, exist_ok=True)
        with open(ini_path, 'w', encoding='utf-8') as f:
            parser.write(f, space_around_delimiters=False)
    except OSError as e:
        raise ConfigWriteFailure(f"Could not write {ini_path}: {e}") from e
    logger.info("Enabled OBS control server on port %s in %s", port, ini_path)
    return ControlServerSettings(port, password, changed=True)


# ----------------------------------------------------------------------
# Results and retries
# ----------------------------------------------------------------------
@dataclass
class ExchangeResult:
    """Outcome of one attempt to make OBS start or stop"""
    outcome: ControlOutcome
    detail: str = ""
    data: dict = field(default_factory=dict)
    error: Optional[RecordingError] = None
    retryable: bool = False

    @property
    def ok(self):
        return self.outcome is not ControlOutcome.FAILED


@dataclass
class RetryPolicy:
    """Bounded polling: ``attempts`` tries, ``interval`` seconds apart"""
    attempts: int = 30
    interval: float = 1.0
    sleep: object = time.sleep

    def run(self, attempt_fn):
        result = None
        for attempt in range(1, self.attempts + 1):
            result = attempt_fn(attempt)
            if result.ok or not result.retryable:
                return result
            if attempt < self.attempts:
                self.sleep(self.interval)
        return result


# ----------------------------------------------------------------------
# Backend
# ----------------------------------------------------------------------
class ObsBackend(RecordingBackend):
    """Starts and stops recording in OBS for one session.

    Start runs an explicit ordered list of strategies: the WebSocket control
    protocol (polled under ``startup_retry``) and, if allowed, the
    ``--startrecording`` command-line flag. The flag gives no confirmation,
    so it yields ``ControlOutcome.UNCONFIRMED`` rather than ``CONFIRMED``.
    It is only tried when OBS could not be reached; a request OBS answered
    and refused is raised as is.
    """

    kind = BackendKind.OBS

    def __init__(self, config, executable=None, ini_path=None, client_factory=ObsControlClient,
                 startup_retry=None, verify_correlation=True, sleep=time.sleep, candidates=None,
                 bundle_source=None, install_dir=None):
        self.config = config
        self.executable = executable
        self.ini_path = ini_path
        self.client_factory = client_factory
        self.startup_retry = startup_retry or RetryPolicy(sleep=sleep)
        self.verify_correlation = verify_correlation
        self.sleep = sleep
        self.candidates = candidates
        self.bundle_source = bundle_source
        self.install_dir = install_dir

        self.control = None
        self.obs_process = None
        self.session = None
        self.last_outcome = None

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------
    def locate(self):
        if self.executable and os.path.isfile(self.executable):
            return self.executable
        exe = find_obs_executable(self.candidates)
        if not exe:
            exe = extract_bundled_obs(self.bundle_source, self.install_dir)
        if not exe:
            raise BackendNotFound("OBS Studio not found; install it or place it next to the application")
        self.executable = exe
        return exe

    def configure(self):
        path = self.ini_path or obs_config_path()
        self.control = ensure_websocket_enabled(path, self.config.obs_port, self.config.obs_password)
        return self.control

    def launch(self, exe):
        logger.info("Launching OBS: %s", exe)
        self.obs_process = spawn(exe, LAUNCH_ARGS, redirect=False, cwd=os.path.dirname(exe), hide_window=False)
        return self.obs_process

    def restart(self, exe):
        """Quit the running OBS and launch it again to load new settings"""
        logger.warning("Restarting running OBS so its control server settings take effect")
        try:
            spawn(exe, ['--quit'], redirect=False, cwd=os.path.dirname(exe), hide_window=False)
        except LaunchFailure as e:
            logger.warning("Graceful OBS quit failed: %s", e)
        self.sleep(QUIT_GRACE)
        remaining = find_running(OBS_PROCESS_NAMES)
        if remaining:
            kill_processes(remaining)
        return self.launch(exe)

    # ------------------------------------------------------------------
    # Control exchanges
    # ------------------------------------------------------------------
    def _client(self):
        return self.client_factory(
            port=self.control.port,
            password=self.control.password,
            verify_correlation=self.verify_correlation,
        )

    def _exchange(self, request_type, steer_directory=False):
        """Open a connection, send the request(s), close"""
        client = self._client()
        try:
            client.open()
        except ProtocolError as e:
            return ExchangeResult(ControlOutcome.FAILED, str(e), error=e, retryable=True)
        try:
            if steer_directory:
                self._steer_output_directory(client)
            response = client.request(request_type)
        except ProtocolError as e:
            return ExchangeResult(ControlOutcome.FAILED, str(e), error=e,
                                  retryable=isinstance(e, ProtocolTimeout))
        finally:
            client.close()

        if not response.ok:
            detail = f"{request_type} rejected (code {response.code}): {response.comment}"
            return ExchangeResult(ControlOutcome.FAILED, detail, error=ProtocolError(detail))
        return ExchangeResult(ControlOutcome.CONFIRMED, f"{request_type} confirmed", data=response.data)

    def _steer_output_directory(self, client):
        # a refusal is tolerated, OBS then keeps its own folder
        folder = os.path.abspath(self.config.folder_path)
        response = client.request('SetRecordDirectory', {'recordDirectory': folder})
        if not response.ok:
            logger.warning("OBS refused record directory %s: %s", folder, response.comment)

    def _via_protocol(self, request_type, retry, steer_directory=False):
        def attempt(n):
            result = self._exchange(request_type, steer_directory)
            if not result.ok:
                logger.debug("%s attempt %d failed: %s", request_type, n, result.detail)
            return result
        return retry.run(attempt)

    def _via_command_line(self, flag):
        exe = self.executable
        try:
            spawn(exe, [flag] + LAUNCH_ARGS, redirect=False, cwd=os.path.dirname(exe), hide_window=False)
        except LaunchFailure as e:
            return ExchangeResult(ControlOutcome.FAILED, str(e), error=e)
        self.sleep(COMMAND_LINE_SETTLE)
        logger.warning("Sent %s to OBS on the command line; success is not confirmed", flag)
        return ExchangeResult(ControlOutcome.UNCONFIRMED, f"{flag} sent without confirmation")

    @staticmethod
    def _first_success(strategies):
        failures = []
        for name, strategy in strategies:
            result = strategy()
            if result.ok:
                return result, failures
            logger.warning("OBS %s failed: %s", name, result.detail)
            failures.append(result)
            # OBS answered and refused: the next strategy would only mask that
            if not result.retryable:
                break
        return None, failures

    # ------------------------------------------------------------------
    # RecordingBackend
    # ------------------------------------------------------------------
    def start(self, session):
        self.session = session
        exe = self.locate()
        settings = self.configure()

        if is_obs_running():
            if settings.changed:
                self.restart(exe)
        else:
            self.launch(exe)

        strategies = [('control protocol',
                       lambda: self._via_protocol('StartRecord', self.startup_retry, steer_directory=True))]
        if self.config.command_line_fallback:
            strategies.append(('command line', lambda: self._via_command_line('--startrecording')))

        result, failures = self._first_success(strategies)
        if result is None:
            raise failures[-1].error or ProtocolTimeout("OBS did not start recording")
        self.last_outcome = result.outcome
        logger.info("OBS recording started (%s)", result.outcome.value)

    def stop(self):
        single = RetryPolicy(attempts=1, sleep=self.sleep)

        def protocol_with_reconnect():
            result = self._via_protocol('StopRecord', single)
            if not result.ok and result.retryable:
                # one bounded recovery: reload the control settings and reconnect
                logger.info("Retrying StopRecord after re-reading OBS settings")
                try:
                    self.configure()
                except ConfigWriteFailure as e:
                    logger.warning("Could not re-check OBS settings: %s", e)
                result = self._via_protocol('StopRecord', single)
            return result

        strategies = [('control protocol', protocol_with_reconnect)]
        if self.config.command_line_fallback and self.executable:
            strategies.append(('command line', lambda: self._via_command_line('--stoprecording')))

        result, failures = self._first_success(strategies)
        if result is None:
            raise failures[-1].error or ProtocolTimeout("OBS did not stop recording")
        self.last_outcome = result.outcome

        written = result.data.get('outputPath')
        if written:
            logger.info("OBS wrote recording to %s", written)
            return Path(written)
        return self.session.output_path if self.session else None
