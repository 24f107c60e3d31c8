# recording_errors.py
# Error kinds raised by the recording backends and the controller


class RecordingError(Exception):
    """Base class for every recording failure surfaced to callers"""


class AlreadyRecording(RecordingError):
    """Start was requested while a session is active"""


class BackendNotFound(RecordingError):
    """The encoder or capture application executable could not be located"""


class LaunchFailure(RecordingError):
    """An external process could not be started or died right after starting"""

    def __init__(self, message, detail=""):
        super().__init__(message)
        self.detail = detail


class ProtocolError(RecordingError):
    """Control protocol exchange failed"""


class ProtocolTimeout(ProtocolError):
    """The control server did not answer in time or was unreachable"""


class ProtocolUnexpectedMessage(ProtocolError):
    """The control server sent a frame that does not fit the exchange"""


class ConfigWriteFailure(RecordingError):
    """The capture application's configuration file could not be updated"""


class ValidationFailure(RecordingError):
    """The recorded file is missing, undersized or undecodable"""

    def __init__(self, message, report=None):
        super().__init__(message)
        self.report = report
