# recording_controller.py
# Controller that owns the single recording session and dispatches to a backend
# This bridges the collaborator (UI, hotkeys, command line) and the recording engines

import logging
import threading
import time
from datetime import timedelta
from pathlib import Path

from obs_engine import ObsBackend
from output_validation import check_output
from recording_engine import EncoderBackend, find_ffmpeg
from recording_errors import AlreadyRecording, BackendNotFound, LaunchFailure, RecordingError
from recording_types import (
    AUTO_DEVICE, DEFAULT_FILE_PREFIX, DEFAULT_OBS_PASSWORD, DEFAULT_OBS_PORT, BackendKind,
    RecordingConfig, RecordingSession, RecordingState, Rect, StopResult, build_output_path,
    default_save_folder,
)
from screen_bounds import bounds_for_selection, get_monitors, virtual_desktop_bounds

logger = logging.getLogger(__name__)

ELAPSED_INTERVAL = 2.0

DEFAULT_SETTINGS = {
    'folder_path': default_save_folder(),
    'video_quality': 'medium',
    'audio_mode': 'none',
    'output_device': AUTO_DEVICE,
    'input_device': AUTO_DEVICE,
    'backend': 'ffmpeg',
    'selected_screen': 'Primary Monitor',
    'file_prefix': DEFAULT_FILE_PREFIX,
    'ffmpeg_path': None,
    'obs_port': DEFAULT_OBS_PORT,
    'obs_password': DEFAULT_OBS_PASSWORD,
    'verify_output': False,
    'command_line_fallback': True,
}


def _default_backends():
    return {
        BackendKind.FFMPEG: lambda config, desktop: EncoderBackend(config, desktop_bounds=desktop),
        BackendKind.OBS: lambda config, desktop: ObsBackend(config),
    }


class ElapsedTicker(threading.Thread):
    """Reports elapsed time every ``interval`` seconds for one session"""

    def __init__(self, controller, session, interval):
        super().__init__(daemon=True, name="elapsed-ticker")
        self.controller = controller
        self.session = session
        self.interval = interval
        self._stop_event = threading.Event()

    def stop(self):
        self._stop_event.set()

    def run(self):
        while not self._stop_event.wait(self.interval):
            if not self.controller.is_current(self.session):
                break
            if self.controller.is_paused:
                continue
            self.controller.emit_elapsed(self.session)


class RecordingController:
    """Owns at most one RecordingSession and serializes start/stop.

    State moves Idle -> Starting -> Recording -> Stopping -> Idle. Pausing
    only flips a display flag: the capture keeps running, elapsed-time
    notifications are just held back until resumed.
    """

    def __init__(self, backend_factories=None, monitors_provider=get_monitors,
                 elapsed_interval=ELAPSED_INTERVAL, clock=time.monotonic):
        self.settings = dict(DEFAULT_SETTINGS)
        self.backend_factories = backend_factories or _default_backends()
        self.monitors_provider = monitors_provider
        self.elapsed_interval = elapsed_interval
        self.clock = clock

        self._lock = threading.Lock()
        self._session = None
        self._backend = None
        self._state = RecordingState.IDLE
        self._paused = False
        self._ticker = None

        # Callbacks for UI updates
        self.status_callback = None
        self.state_callback = None
        self.elapsed_callback = None

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def set_status_callback(self, callback):
        """Set callback for status text updates"""
        self.status_callback = callback

    def set_state_callback(self, callback):
        """Set callback receiving True/False when recording starts/stops"""
        self.state_callback = callback

    def set_elapsed_callback(self, callback):
        """Set callback receiving a timedelta while recording"""
        self.elapsed_callback = callback

    def _notify(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Recording callback failed")

    def update_status(self, message):
        self._notify(self.status_callback, message)

    def emit_elapsed(self, session):
        elapsed = timedelta(seconds=max(0.0, self.clock() - session.started_monotonic))
        self._notify(self.elapsed_callback, elapsed)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def update_setting(self, key, value):
        """Update a single setting"""
        self.settings[key] = value

    def get_setting(self, key):
        """Get a setting value"""
        return self.settings.get(key)

    def update_settings(self, new_settings):
        """Update multiple settings at once"""
        self.settings.update(new_settings)

    def build_config(self):
        """Freeze the current settings into a validated RecordingConfig"""
        return RecordingConfig.from_settings(self.settings)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self):
        return self._state

    @property
    def is_recording(self):
        """Check if recording"""
        return self._state is RecordingState.RECORDING

    @property
    def is_paused(self):
        return self._paused

    @property
    def current_session(self):
        return self._session

    @property
    def current_output_path(self):
        session = self._session
        return str(session.output_path) if session else None

    def is_current(self, session):
        return self._session is session and session.state is RecordingState.RECORDING

    def _set_state(self, state):
        self._state = state
        if self._session is not None:
            self._session.state = state

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    def _resolve_bounds(self, region, config, monitors):
        if region is not None:
            bounds = region if isinstance(region, Rect) else Rect(*region)
            if bounds.is_valid():
                return bounds
            logger.warning("Invalid region %s, falling back to %s", bounds, config.selected_screen)
        return bounds_for_selection(config.selected_screen, monitors)

    def start_recording(self, region=None, config=None):
        """Start a session; raise AlreadyRecording or the backend's error"""
        config = config or self.build_config()
        with self._lock:
            if self._session is not None:
                raise AlreadyRecording(f"Already recording to {self._session.output_path}")

            self._state = RecordingState.STARTING
            self.update_status("Starting...")
            try:
                monitors = self.monitors_provider()
                desktop = virtual_desktop_bounds(monitors)
                bounds = self._resolve_bounds(region, config, monitors)
                output_path = build_output_path(config.folder_path, config.file_prefix)
                session = RecordingSession(config.backend, bounds, output_path, config)
                self._session = session
                backend = self.backend_factories[config.backend](config, desktop)
                backend.start(session)
            except Exception as e:
                self._session = None
                self._state = RecordingState.IDLE
                self.update_status("Idle")
                if isinstance(e, RecordingError):
                    logger.error("Recording failed to start: %s", e)
                    raise
                if isinstance(e, OSError):
                    raise LaunchFailure(f"Could not prepare recording: {e}", detail=str(e)) from e
                raise

            session.started_monotonic = self.clock()
            session.outcome = backend.last_outcome
            self._backend = backend
            self._paused = False
            self._set_state(RecordingState.RECORDING)
            self._ticker = ElapsedTicker(self, session, self.elapsed_interval)
            self._ticker.start()

        logger.info("Recording %s with %s to %s", session.bounds, config.backend.value, session.output_path)
        self.update_status("Recording")
        self._notify(self.state_callback, True)
        return session

    def stop_recording(self):
        """Stop the active session; returns None when nothing is recording"""
        with self._lock:
            session, backend = self._session, self._backend
            if session is None:
                logger.info("No recording in progress")
                return None

            self._set_state(RecordingState.STOPPING)
            self.update_status("Stopping...")
            try:
                written = backend.stop()
            except RecordingError as e:
                # keep the session so the caller can try again
                logger.error("Stopping recording failed: %s", e)
                self._set_state(RecordingState.RECORDING)
                self.update_status("Recording")
                raise
            session.outcome = backend.last_outcome or session.outcome
            output_path = Path(written) if written else session.output_path

            ffmpeg_path = None
            if session.config.verify_output:
                try:
                    ffmpeg_path = find_ffmpeg(session.config.ffmpeg_path)
                except BackendNotFound as e:
                    logger.warning("Decode check unavailable: %s", e)
            report, error = check_output(output_path, ffmpeg_path, decode=session.config.verify_output)

            if self._ticker is not None:
                self._ticker.stop()
                self._ticker = None
            self._set_state(RecordingState.IDLE)
            self._session = None
            self._backend = None
            self._paused = False

        result = StopResult(session, output_path, report, error)
        self.update_status(f"Saved: {output_path.name}")
        self._notify(self.state_callback, False)
        return result

    def toggle_recording(self):
        """Start or stop on a background thread, as a hotkey handler would"""
        target = self._stop_in_background if self._session is not None else self._start_in_background
        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        return thread

    def _start_in_background(self):
        try:
            self.start_recording()
        except RecordingError as e:
            self.update_status(f"Error: {e}")

    def _stop_in_background(self):
        try:
            self.stop_recording()
        except RecordingError as e:
            self.update_status(f"Error: {e}")

    # ------------------------------------------------------------------
    # Display-only pause
    # ------------------------------------------------------------------
    def pause_recording(self):
        """Pause recording (display only, the capture keeps running)"""
        if not self.is_recording or self._paused:
            return False
        self._paused = True
        self.update_status("Paused")
        return True

    def resume_recording(self):
        """Resume recording display"""
        if not self.is_recording or not self._paused:
            return False
        self._paused = False
        self.update_status("Recording")
        return True

    def toggle_pause(self):
        """Toggle pause/resume"""
        if self._paused:
            return self.resume_recording()
        return self.pause_recording()

    def cleanup(self):
        """Cleanup resources"""
        try:
            self.stop_recording()
        except RecordingError as e:
            logger.warning("Recording could not be stopped during cleanup: %s", e)
