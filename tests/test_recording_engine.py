"""Tests for the local encoder backend"""

import io
import logging
from unittest.mock import patch

import pytest

import recording_engine
from process_supervisor import WaitResult
from recording_engine import EncoderBackend, build_ffmpeg_args, even_size, find_ffmpeg, select_audio_inputs
from recording_errors import BackendNotFound, LaunchFailure
from recording_types import (
    AudioMode, BackendKind, ControlOutcome, RecordingSession, Rect, VideoQuality,
)

DESKTOP = Rect(0, 0, 1920, 1080)


class FakeStdin:
    def __init__(self):
        self.written = b''
        self.closed = False

    def write(self, data):
        self.written += data

    def flush(self):
        pass

    def close(self):
        self.closed = True


class FakeHandle:
    """Process handle whose lifecycle the test controls"""

    def __init__(self, exited=False, exit_code=None, stderr=b''):
        self.stdin = FakeStdin()
        self.stderr = io.BytesIO(stderr)
        self.exited = exited
        self.exit_code = exit_code
        self.pid = 4242

    def has_exited(self):
        return self.exited


class TestCommandBuilding:
    """Test the encoder argument list."""

    def test_full_desktop_without_audio(self, tmp_path):
        """Full desktop capture has no offsets and no audio inputs"""
        output = tmp_path / "Recording_20240101_120000.mp4"
        args = build_ffmpeg_args(DESKTOP, DESKTOP, output)
        assert args == [
            '-f', 'gdigrab', '-framerate', '30',
            '-video_size', '1920x1080', '-probesize', '10M', '-thread_queue_size', '512',
            '-i', 'desktop',
            '-c:v', 'libx264', '-preset', 'ultrafast', '-crf', '23', '-pix_fmt', 'yuv420p',
            '-movflags', '+faststart', '-y', str(output),
        ]

    def test_region_gets_offsets_and_even_size(self, tmp_path):
        args = build_ffmpeg_args(Rect(100, 50, 1079, 700), DESKTOP, tmp_path / "a.mp4")
        assert args[args.index('-offset_x') + 1] == '100'
        assert args[args.index('-offset_y') + 1] == '50'
        assert args[args.index('-video_size') + 1] == '1078x700'

    def test_one_audio_input_is_mapped_directly(self, tmp_path):
        args = build_ffmpeg_args(DESKTOP, DESKTOP, tmp_path / "a.mp4", ["Stereo Mix"])
        assert 'audio=Stereo Mix' in args
        assert '-filter_complex' not in args
        assert args[args.index('-map', args.index('-map') + 1) + 1] == '1:a'
        assert args[args.index('-c:a') + 1] == 'aac'
        assert args[args.index('-b:a') + 1] == '128k'

    def test_two_audio_inputs_are_mixed(self, tmp_path):
        args = build_ffmpeg_args(DESKTOP, DESKTOP, tmp_path / "a.mp4", ["Stereo Mix", "Microphone"])
        assert args.count('dshow') == 2
        assert args[args.index('-filter_complex') + 1] == '[1:a][2:a]amix=inputs=2:duration=longest[aout]'
        assert '[aout]' in args

    def test_quality_sets_crf(self, tmp_path):
        args = build_ffmpeg_args(DESKTOP, DESKTOP, tmp_path / "a.mp4", quality=VideoQuality.HIGH)
        assert args[args.index('-crf') + 1] == '18'

    def test_even_size(self):
        assert even_size(1079, 700) == (1078, 700)
        assert even_size(1921, 1081) == (1920, 1080)
        assert even_size(1280, 720) == (1280, 720)

    def test_tiny_region_never_collapses_to_zero(self):
        """One-pixel sides grow to the smallest even size instead of 0"""
        assert even_size(1, 1) == (2, 2)
        assert even_size(1, 721) == (2, 720)


class TestAudioSelection:
    """Test which devices end up in the capture."""

    def test_no_audio(self, fake_resolver):
        assert select_audio_inputs(AudioMode.NONE, fake_resolver("Mix", "Mic"), 'auto', 'auto') == []

    def test_system_only(self, fake_resolver):
        assert select_audio_inputs(AudioMode.SYSTEM_ONLY, fake_resolver("Mix", "Mic"), 'auto', 'auto') == ["Mix"]

    def test_mic_only_without_device_records_silently(self, fake_resolver):
        assert select_audio_inputs(AudioMode.MIC_ONLY, fake_resolver("Mix", ""), 'auto', 'auto') == []

    def test_both_different(self, fake_resolver):
        resolver = fake_resolver("Stereo Mix", "Microphone")
        assert select_audio_inputs(AudioMode.SYSTEM_AND_MIC, resolver, 'auto', 'auto') == ["Stereo Mix", "Microphone"]
        assert resolver.list_calls == 1

    def test_both_same_device_added_once(self, fake_resolver):
        resolver = fake_resolver()
        inputs = select_audio_inputs(AudioMode.SYSTEM_AND_MIC, resolver, 'Headset', 'headset')
        assert inputs == ["Headset"]
        assert resolver.list_calls == 0

    def test_only_one_resolves(self, fake_resolver):
        assert select_audio_inputs(AudioMode.SYSTEM_AND_MIC, fake_resolver("", "Mic"), 'auto', 'auto') == ["Mic"]

    def test_neither_resolves(self, fake_resolver):
        assert select_audio_inputs(AudioMode.SYSTEM_AND_MIC, fake_resolver(), 'auto', 'auto') == []


class TestFindFfmpeg:
    """Test locating the encoder binary."""

    def test_explicit_file(self, tmp_path):
        exe = tmp_path / "ffmpeg.exe"
        exe.write_bytes(b'')
        assert find_ffmpeg(str(exe)) == str(exe)

    def test_explicit_missing(self, tmp_path):
        with pytest.raises(BackendNotFound):
            find_ffmpeg(str(tmp_path / "nope" / "ffmpeg.exe"))

    def test_bundled_copy_preferred(self, tmp_path, monkeypatch):
        monkeypatch.setattr(recording_engine, 'APP_DIR', str(tmp_path))
        bundled = tmp_path / 'ffmpeg' / 'bin'
        bundled.mkdir(parents=True)
        exe = bundled / ('ffmpeg.exe' if recording_engine.sys.platform == 'win32' else 'ffmpeg')
        exe.write_bytes(b'')
        assert find_ffmpeg() == str(exe)

    def test_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.setattr(recording_engine, 'APP_DIR', str(tmp_path))
        with patch('recording_engine.shutil.which', return_value=None):
            with pytest.raises(BackendNotFound):
                find_ffmpeg()


class TestEncoderBackend:
    """Test start/stop of the encoder process."""

    @pytest.fixture
    def session(self, make_config, tmp_path):
        config = make_config(audio_mode='system')
        return RecordingSession(BackendKind.FFMPEG, Rect(0, 0, 1280, 720), tmp_path / "out.mp4", config)

    def _backend(self, session, fake_resolver):
        return EncoderBackend(session.config, desktop_bounds=DESKTOP, resolver=fake_resolver("Stereo Mix"),
                              settle_delay=0, sleep=lambda s: None)

    def test_start_and_graceful_stop(self, session, fake_resolver):
        handle = FakeHandle(stderr=b"frame=  10 fps=30\n")
        backend = self._backend(session, fake_resolver)
        with patch('recording_engine.find_ffmpeg', return_value='ffmpeg'), \
                patch('recording_engine.spawn', return_value=handle) as spawn, \
                patch('recording_engine.wait_with_timeout', return_value=WaitResult.EXITED), \
                patch('recording_engine.kill') as kill:
            backend.start(session)
            assert backend.last_outcome is ControlOutcome.CONFIRMED
            path, args = spawn.call_args[0]
            assert path == 'ffmpeg'
            assert 'audio=Stereo Mix' in args
            handle.exit_code = 0
            assert backend.stop() == session.output_path
        assert handle.stdin.written == b'q'
        assert handle.stdin.closed
        kill.assert_not_called()

    def test_stop_kills_after_timeout(self, session, fake_resolver):
        handle = FakeHandle()
        backend = self._backend(session, fake_resolver)
        with patch('recording_engine.find_ffmpeg', return_value='ffmpeg'), \
                patch('recording_engine.spawn', return_value=handle), \
                patch('recording_engine.wait_with_timeout',
                      side_effect=[WaitResult.TIMED_OUT, WaitResult.EXITED]), \
                patch('recording_engine.kill') as kill:
            backend.start(session)
            backend.stop()
        kill.assert_called_once_with(handle)

    def test_process_surviving_kill_is_not_reported_clean(self, session, fake_resolver, caplog):
        """No exit code after kill means the process is still there"""
        handle = FakeHandle()
        backend = self._backend(session, fake_resolver)
        with patch('recording_engine.find_ffmpeg', return_value='ffmpeg'), \
                patch('recording_engine.spawn', return_value=handle), \
                patch('recording_engine.wait_with_timeout', return_value=WaitResult.TIMED_OUT), \
                patch('recording_engine.kill'):
            backend.start(session)
            with caplog.at_level(logging.INFO, logger='recording_engine'):
                backend.stop()
        assert "did not exit after being killed" in caplog.text
        assert "exited cleanly" not in caplog.text

    def test_early_exit_is_launch_failure_with_stderr(self, session, fake_resolver):
        handle = FakeHandle(exited=True, exit_code=1,
                            stderr=b"Could not find audio only device with name [Stereo Mix]\n")
        backend = self._backend(session, fake_resolver)
        with patch('recording_engine.find_ffmpeg', return_value='ffmpeg'), \
                patch('recording_engine.spawn', return_value=handle):
            with pytest.raises(LaunchFailure) as info:
                backend.start(session)
        assert "Could not find audio only device" in info.value.detail
        assert backend.process is None

    def test_missing_encoder(self, session, fake_resolver):
        backend = self._backend(session, fake_resolver)
        with patch('recording_engine.find_ffmpeg', side_effect=BackendNotFound("ffmpeg not found")):
            with pytest.raises(BackendNotFound):
                backend.start(session)
