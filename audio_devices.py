# audio_devices.py
# Find and classify audio capture devices through the encoder's device listing

import enum
import logging
import re
from dataclasses import dataclass

from process_supervisor import run_and_capture
from recording_errors import LaunchFailure
from recording_types import AUTO_DEVICE

logger = logging.getLogger(__name__)

LIST_DEVICES_ARGS = ['-hide_banner', '-list_devices', 'true', '-f', 'dshow', '-i', 'dummy']

SYSTEM_KEYWORDS = (
    'stereo mix', 'what u hear', 'loopback', 'wave out', 'system audio',
    'virtual-audio-capturer', 'cable output', 'voicemeeter out', 'speakers',
)
MIC_KEYWORDS = (
    'microphone', 'mikrofon', 'headset', 'webcam', 'line in', 'array',
)

_QUOTED = re.compile(r'"([^"]+)"')
# bare "mic" as a word, so "Microsoft ..." does not count
_MIC_WORD = re.compile(r'\bmic\b')


class AudioRole(enum.Enum):
    SYSTEM = "system"
    MICROPHONE = "microphone"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AudioDevice:
    name: str
    role: AudioRole


def classify_device(name):
    """Guess a device's role from keywords in its name"""
    lower = name.lower()
    if any(k in lower for k in SYSTEM_KEYWORDS):
        return AudioRole.SYSTEM
    if any(k in lower for k in MIC_KEYWORDS) or _MIC_WORD.search(lower):
        return AudioRole.MICROPHONE
    return AudioRole.UNKNOWN


def parse_dshow_devices(text):
    """Extract audio device names from ``-list_devices`` diagnostic output.

    Handles the sectioned layout (``DirectShow audio devices`` header, ended
    by the video header or end of input) as well as the newer one where each
    device line carries an ``(audio)`` suffix. Alternative-name lines are
    dropped.
    """
    names = []
    in_audio = False
    for raw in text.splitlines():
        line = raw.strip()
        lower = line.lower()
        if 'directshow audio devices' in lower:
            in_audio = True
            continue
        if 'directshow video devices' in lower:
            in_audio = False
            continue
        if 'alternative name' in lower:
            continue
        match = _QUOTED.search(line)
        if not match:
            continue
        name = match.group(1).strip()
        if not name or name.startswith('@'):
            continue
        if in_audio or lower.endswith('(audio)'):
            if name not in names:
                names.append(name)
    return names


class AudioDeviceResolver:
    """Pick the system-audio and microphone devices for a recording"""

    def __init__(self, ffmpeg_path, runner=run_and_capture):
        self.ffmpeg_path = ffmpeg_path
        self.runner = runner

    def list_devices(self):
        """Enumerate devices; an enumeration failure yields an empty list"""
        try:
            _, _, stderr = self.runner(self.ffmpeg_path, LIST_DEVICES_ARGS)
        except LaunchFailure as e:
            logger.warning("Audio device listing failed: %s", e)
            return []
        devices = [AudioDevice(name, classify_device(name)) for name in parse_dshow_devices(stderr)]
        logger.debug("Audio devices: %s", ", ".join(f"{d.name} [{d.role.value}]" for d in devices) or "none")
        return devices

    def _resolve(self, selected, role, devices):
        if selected and selected.lower() != AUTO_DEVICE:
            # explicit choice is passed through as-is
            return selected
        if devices is None:
            devices = self.list_devices()
        for device in devices:
            if device.role is role:
                logger.info("Auto-selected %s device: %s", role.value, device.name)
                return device.name
        logger.info("No %s device found", role.value)
        return ""

    def resolve_output(self, selected=AUTO_DEVICE, devices=None):
        """System-audio (loopback) device name, or "" if none"""
        return self._resolve(selected, AudioRole.SYSTEM, devices)

    def resolve_input(self, selected=AUTO_DEVICE, devices=None):
        """Microphone device name, or "" if none"""
        return self._resolve(selected, AudioRole.MICROPHONE, devices)
