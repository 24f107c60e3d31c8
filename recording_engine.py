# recording_engine.py
# Local encoder backend: records a screen region with an ffmpeg child process
# Dependencies: ffmpeg binary (gdigrab / dshow), psutil via process_supervisor

import collections
import logging
import os
import shutil
import sys
import threading
import time

from audio_devices import AudioDeviceResolver
from process_supervisor import WaitResult, kill, spawn, wait_with_timeout
from recording_errors import BackendNotFound, LaunchFailure
from recording_types import AudioMode, BackendKind, ControlOutcome, RecordingBackend, VideoQuality
from screen_bounds import virtual_desktop_bounds

logger = logging.getLogger(__name__)

APP_DIR = os.path.dirname(os.path.abspath(__file__))
FRAME_RATE = 30
VIDEO_PRESET = 'ultrafast'
AUDIO_CODEC = 'aac'
AUDIO_BITRATE = '128k'
SETTLE_DELAY = 0.5
STOP_TIMEOUT = 3.0
KILL_WAIT = 5.0
STDERR_TAIL_LINES = 50


def find_ffmpeg(explicit=None):
    """Locate the encoder binary; raise BackendNotFound if there is none"""
    if explicit:
        if os.path.isfile(explicit):
            return explicit
        found = shutil.which(explicit)
        if found:
            return found
        raise BackendNotFound(f"ffmpeg not found at {explicit}")

    exe = 'ffmpeg.exe' if sys.platform == 'win32' else 'ffmpeg'
    candidates = [
        os.path.join(APP_DIR, 'ffmpeg', 'bin', exe),
        os.path.join(APP_DIR, exe),
    ]
    for path in candidates:
        if os.path.isfile(path):
            return path
    found = shutil.which('ffmpeg')
    if found:
        return found
    raise BackendNotFound("ffmpeg not found next to the application or on PATH")


def even_size(width, height):
    """yuv420p needs even dimensions; trim one pixel where odd, never below 2"""
    even_w = max(2, width - width % 2)
    even_h = max(2, height - height % 2)
    if (even_w, even_h) != (width, height):
        logger.info("Capture size adjusted to even %dx%d (requested %dx%d)", even_w, even_h, width, height)
    return even_w, even_h


def select_audio_inputs(mode, resolver, output_device, input_device):
    """Return the dshow audio device names to capture, at most two"""
    if mode is AudioMode.NONE:
        return []
    if mode is AudioMode.SYSTEM_ONLY:
        name = resolver.resolve_output(output_device)
        if not name:
            logger.warning("No system audio device available, recording without audio")
        return [name] if name else []
    if mode is AudioMode.MIC_ONLY:
        name = resolver.resolve_input(input_device)
        if not name:
            logger.warning("No microphone available, recording without audio")
        return [name] if name else []

    # system + mic: enumerate once for both lookups
    devices = None
    if output_device.lower() == 'auto' or input_device.lower() == 'auto':
        devices = resolver.list_devices()
    system = resolver.resolve_output(output_device, devices)
    mic = resolver.resolve_input(input_device, devices)
    if system and mic:
        if system.casefold() == mic.casefold():
            logger.info("System and microphone resolve to the same device '%s', adding it once", system)
            return [system]
        return [system, mic]
    if system or mic:
        logger.warning("Only one audio device resolved (%s), recording it alone", system or mic)
        return [system or mic]
    logger.warning("No audio devices resolved, recording without audio")
    return []


def build_ffmpeg_args(bounds, desktop_bounds, output_path, audio_inputs=(),
                      quality=VideoQuality.MEDIUM, fps=FRAME_RATE):
    """Build the encoder argument list (without the executable itself)"""
    width, height = even_size(bounds.width, bounds.height)

    args = ['-f', 'gdigrab', '-framerate', str(fps)]
    if bounds != desktop_bounds:
        args += ['-offset_x', str(bounds.x), '-offset_y', str(bounds.y)]
    args += ['-video_size', f'{width}x{height}',
             '-probesize', '10M', '-thread_queue_size', '512',
             '-i', 'desktop']

    for name in audio_inputs:
        args += ['-f', 'dshow', '-thread_queue_size', '512', '-i', f'audio={name}']

    if len(audio_inputs) == 2:
        args += ['-filter_complex', '[1:a][2:a]amix=inputs=2:duration=longest[aout]',
                 '-map', '0:v', '-map', '[aout]']
    elif len(audio_inputs) == 1:
        args += ['-map', '0:v', '-map', '1:a']

    args += ['-c:v', 'libx264', '-preset', VIDEO_PRESET, '-crf', str(quality.crf),
             '-pix_fmt', 'yuv420p']
    if audio_inputs:
        args += ['-c:a', AUDIO_CODEC, '-b:a', AUDIO_BITRATE]
    args += ['-movflags', '+faststart', '-y', str(output_path)]
    return args


class EncoderBackend(RecordingBackend):
    """Runs one ffmpeg process for one session"""

    kind = BackendKind.FFMPEG

    def __init__(self, config, desktop_bounds=None, resolver=None,
                 settle_delay=SETTLE_DELAY, stop_timeout=STOP_TIMEOUT, sleep=time.sleep):
        self.config = config
        self.desktop_bounds = desktop_bounds
        self.resolver = resolver
        self.settle_delay = settle_delay
        self.stop_timeout = stop_timeout
        self.sleep = sleep

        self.ffmpeg_path = None
        self.process = None
        self.output_path = None
        self.args = []
        self._stderr_tail = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread = None

    @property
    def stderr_text(self):
        return "\n".join(self._stderr_tail)

    def _drain_stderr(self, stream):
        """Forward encoder diagnostics to the log until the pipe closes"""
        try:
            for raw in iter(stream.readline, b''):
                line = raw.decode('utf-8', errors='replace').rstrip()
                if line:
                    self._stderr_tail.append(line)
                    logger.debug("ffmpeg: %s", line)
        except (OSError, ValueError) as e:
            logger.debug("Stopped reading ffmpeg stderr: %s", e)

    def start(self, session):
        self.ffmpeg_path = find_ffmpeg(self.config.ffmpeg_path)
        resolver = self.resolver or AudioDeviceResolver(self.ffmpeg_path)
        audio_inputs = select_audio_inputs(
            self.config.audio_mode, resolver,
            self.config.output_device, self.config.input_device,
        )
        desktop = self.desktop_bounds or virtual_desktop_bounds()

        self.output_path = session.output_path
        self.args = build_ffmpeg_args(
            session.bounds, desktop, self.output_path, audio_inputs, self.config.video_quality,
        )
        logger.info("Starting ffmpeg recording %s -> %s", session.bounds, self.output_path)
        self.process = spawn(self.ffmpeg_path, self.args)

        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, args=(self.process.stderr,), daemon=True
        )
        self._stderr_thread.start()

        # give ffmpeg a moment to reject bad devices or sizes
        self.sleep(self.settle_delay)
        if self.process.has_exited():
            self._stderr_thread.join(timeout=1.0)
            code = self.process.exit_code
            detail = self.stderr_text
            self.process = None
            raise LaunchFailure(f"ffmpeg exited right after starting (code {code})", detail=detail)
        self.last_outcome = ControlOutcome.CONFIRMED

    def stop(self):
        if self.process is None:
            return self.output_path
        process = self.process
        try:
            process.stdin.write(b'q')
            process.stdin.flush()
        except (OSError, ValueError) as e:
            logger.warning("Could not send quit to ffmpeg: %s", e)

        if wait_with_timeout(process, self.stop_timeout) is WaitResult.TIMED_OUT:
            logger.warning("ffmpeg did not exit within %.0fs, killing it", self.stop_timeout)
            kill(process)
            wait_with_timeout(process, KILL_WAIT)

        code = process.exit_code
        if code is None:
            logger.warning("ffmpeg (pid %s) did not exit after being killed", process.pid)
        elif code:
            logger.warning("ffmpeg exited with code %s", code)
        else:
            logger.info("ffmpeg exited cleanly")

        try:
            process.stdin.close()
        except (OSError, ValueError):
            pass
        if self._stderr_thread:
            self._stderr_thread.join(timeout=1.0)
        self.process = None
        return self.output_path
