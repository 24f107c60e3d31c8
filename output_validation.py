# output_validation.py
# Post-stop checks on the recorded file

import enum
import logging
import os
from dataclasses import dataclass
from typing import Optional

from process_supervisor import run_and_capture
from recording_errors import LaunchFailure, ValidationFailure

logger = logging.getLogger(__name__)

CORRUPT_BELOW = 1024
INCOMPLETE_BELOW = 1024 * 1024
DECODE_CHECK_TIMEOUT = 120


class ValidationStatus(enum.Enum):
    OK = "ok"
    INCOMPLETE = "incomplete"
    CORRUPTED = "corrupted"
    MISSING = "missing"


@dataclass
class ValidationReport:
    path: str
    status: ValidationStatus
    size: int = 0
    detail: str = ""

    @property
    def failed(self):
        return self.status in (ValidationStatus.CORRUPTED, ValidationStatus.MISSING)

    @property
    def warning(self):
        if self.status is ValidationStatus.INCOMPLETE:
            return f"Recording may be incomplete ({self.size} bytes): {self.path}"
        return None


def classify_size(size):
    if size < CORRUPT_BELOW:
        return ValidationStatus.CORRUPTED
    if size < INCOMPLETE_BELOW:
        return ValidationStatus.INCOMPLETE
    return ValidationStatus.OK


def decode_check(path, ffmpeg_path, runner=run_and_capture):
    """Decode the whole file into a null sink; return (ok, error text)"""
    try:
        code, _, stderr = runner(
            ffmpeg_path, ['-v', 'error', '-i', str(path), '-f', 'null', '-'],
            timeout=DECODE_CHECK_TIMEOUT,
        )
    except LaunchFailure as e:
        # no verdict if the checker itself cannot run
        logger.warning("Decode check skipped: %s", e)
        return True, ""
    return code == 0, stderr.strip()


def validate_output(path, ffmpeg_path=None, decode=False, runner=run_and_capture):
    """Inspect the recorded file and report what state it is in"""
    path = str(path)
    if not os.path.isfile(path):
        logger.warning("Recording file not found: %s", path)
        return ValidationReport(path, ValidationStatus.MISSING, detail="file does not exist")

    size = os.path.getsize(path)
    status = classify_size(size)
    report = ValidationReport(path, status, size)
    if status is ValidationStatus.CORRUPTED:
        report.detail = f"only {size} bytes written"
    elif decode and ffmpeg_path:
        ok, errors = decode_check(path, ffmpeg_path, runner)
        if not ok:
            report.status = ValidationStatus.CORRUPTED
            report.detail = errors or "decoder reported errors"

    level = logging.WARNING if report.status is not ValidationStatus.OK else logging.INFO
    logger.log(level, "Recording %s: %s (%d bytes) %s", report.status.value, path, size, report.detail)
    return report


def check_output(path, ffmpeg_path=None, decode=False, runner=run_and_capture):
    """Validate and return (report, ValidationFailure or None); never raises"""
    report = validate_output(path, ffmpeg_path, decode, runner)
    error: Optional[ValidationFailure] = None
    if report.failed:
        error = ValidationFailure(f"Recording {report.status.value}: {report.path} ({report.detail})", report)
    return report, error
