# recording_types.py
# Shared data model for the recording subsystem: configuration, sessions, results

import abc
import enum
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

AUTO_DEVICE = "auto"
DEFAULT_FILE_PREFIX = "Recording"
DEFAULT_OBS_PORT = 4455
DEFAULT_OBS_PASSWORD = "snaprecorder-control"
FILENAME_TIME_FORMAT = "%Y%m%d_%H%M%S"


def default_save_folder():
    return str(Path.home() / "Videos" / "SnapRecorder")


@dataclass(frozen=True)
class Rect:
    """Rectangle in virtual-desktop coordinates"""
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self):
        return self.x + self.width

    @property
    def bottom(self):
        return self.y + self.height

    def is_valid(self):
        return self.width > 0 and self.height > 0

    @classmethod
    def from_monitor(cls, monitor):
        """Build from an mss monitor dict"""
        return cls(monitor['left'], monitor['top'], monitor['width'], monitor['height'])

    def __str__(self):
        return f"{self.x},{self.y} {self.width}x{self.height}"


class BackendKind(enum.Enum):
    FFMPEG = "ffmpeg"
    OBS = "obs"


class AudioMode(enum.Enum):
    NONE = "none"
    SYSTEM_ONLY = "system"
    MIC_ONLY = "mic"
    SYSTEM_AND_MIC = "system_and_mic"


class VideoQuality(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def crf(self):
        return {VideoQuality.LOW: 28, VideoQuality.MEDIUM: 23, VideoQuality.HIGH: 18}[self]


class RecordingState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"


class ControlOutcome(enum.Enum):
    """How sure we are that the capture engine obeyed a start/stop"""
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"


def _parse_enum(enum_cls, value, key):
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    for member in enum_cls:
        if member.value == text or member.name.lower() == text:
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValueError(f"Invalid {key} '{value}' (expected one of: {allowed})")


def _parse_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class RecordingConfig:
    """Immutable settings for one recording session.

    Built from the collaborator's settings dictionary through
    :meth:`from_settings`; selectors are validated into enums there so a
    bad value fails before any process is spawned.
    """
    folder_path: str = field(default_factory=default_save_folder)
    video_quality: VideoQuality = VideoQuality.MEDIUM
    audio_mode: AudioMode = AudioMode.NONE
    output_device: str = AUTO_DEVICE
    input_device: str = AUTO_DEVICE
    backend: BackendKind = BackendKind.FFMPEG
    selected_screen: str = "Primary Monitor"
    file_prefix: str = DEFAULT_FILE_PREFIX
    ffmpeg_path: Optional[str] = None
    obs_port: int = DEFAULT_OBS_PORT
    obs_password: str = DEFAULT_OBS_PASSWORD
    verify_output: bool = False
    command_line_fallback: bool = True

    def __post_init__(self):
        # accept raw strings from direct construction too
        object.__setattr__(self, 'video_quality', _parse_enum(VideoQuality, self.video_quality, 'video_quality'))
        object.__setattr__(self, 'audio_mode', _parse_enum(AudioMode, self.audio_mode, 'audio_mode'))
        object.__setattr__(self, 'backend', _parse_enum(BackendKind, self.backend, 'backend'))
        if not self.folder_path:
            raise ValueError("folder_path must not be empty")
        port = int(self.obs_port)
        if not 0 < port < 65536:
            raise ValueError(f"Invalid obs_port {self.obs_port}")
        object.__setattr__(self, 'obs_port', port)
        object.__setattr__(self, 'output_device', (self.output_device or AUTO_DEVICE).strip())
        object.__setattr__(self, 'input_device', (self.input_device or AUTO_DEVICE).strip())

    @classmethod
    def from_settings(cls, settings):
        """Create a config from a flat settings dict, ignoring unknown keys"""
        kwargs = {}
        for name in cls.__dataclass_fields__:
            if name in settings and settings[name] is not None:
                kwargs[name] = settings[name]
        for name in ('verify_output', 'command_line_fallback'):
            if name in kwargs:
                kwargs[name] = _parse_bool(kwargs[name])
        if not kwargs.get('folder_path'):
            kwargs.pop('folder_path', None)
        return cls(**kwargs)


def build_output_path(folder, prefix=DEFAULT_FILE_PREFIX, now=None):
    """Return <folder>/<prefix>_<yyyyMMdd_HHmmss>.mp4, creating the folder"""
    now = now or datetime.now()
    os.makedirs(folder, exist_ok=True)
    return Path(folder) / f"{prefix}_{now.strftime(FILENAME_TIME_FORMAT)}.mp4"


@dataclass
class RecordingSession:
    """The single in-flight recording, owned by the controller"""
    backend: BackendKind
    bounds: Rect
    output_path: Path
    config: RecordingConfig
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=datetime.now)
    started_monotonic: float = 0.0
    state: RecordingState = RecordingState.STARTING
    outcome: Optional[ControlOutcome] = None


@dataclass
class StopResult:
    """What the controller hands back after a successful stop"""
    session: RecordingSession
    output_path: Path
    validation: Optional[object] = None
    validation_error: Optional[Exception] = None

    @property
    def warnings(self):
        if self.validation_error is not None:
            return [str(self.validation_error)]
        if self.validation is not None and self.validation.warning:
            return [self.validation.warning]
        return []


class RecordingBackend(abc.ABC):
    """One recording engine; each instance serves exactly one session"""

    kind = None
    last_outcome = None

    @abc.abstractmethod
    def start(self, session):
        """Begin capturing for ``session``; raise RecordingError on failure"""

    @abc.abstractmethod
    def stop(self):
        """Stop capturing and return the path actually written, if known"""
