# run_app.py
# Command-line entry point for the SnapRecorder recording core

"""
SnapRecorder
============

Records the screen (or a region of it) to an MP4 file with one of two
backends:

1. ffmpeg      - a local encoder process captures the desktop directly
2. obs         - a running OBS Studio is driven over its WebSocket control
                 server (launched and configured automatically)

Usage:
    python run_app.py --backend ffmpeg --audio system_and_mic
    python run_app.py --region 100 100 1280 720 --duration 30
    python run_app.py --list-devices

Recording runs until Enter is pressed or --duration elapses.
"""

import argparse
import logging
import sys
import threading

from audio_devices import AudioDeviceResolver
from recording_controller import RecordingController
from recording_engine import find_ffmpeg
from recording_errors import RecordingError
from recording_types import AudioMode, BackendKind, VideoQuality


def setup_logging(verbose=False, log_file=None):
    """Console logging, plus a log file when asked for"""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
        handlers=handlers,
        force=True,
    )
    return logging.getLogger('snaprecorder')


def build_parser():
    parser = argparse.ArgumentParser(
        description="Record the screen with ffmpeg or OBS Studio",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--backend', choices=[b.value for b in BackendKind], default='ffmpeg')
    parser.add_argument('--audio', choices=[m.value for m in AudioMode], default='none')
    parser.add_argument('--quality', choices=[q.value for q in VideoQuality], default='medium')
    parser.add_argument('--output-device', default='auto', help="System audio device name or 'auto'")
    parser.add_argument('--input-device', default='auto', help="Microphone device name or 'auto'")
    parser.add_argument('--folder', help="Save folder (created if missing)")
    parser.add_argument('--screen', default='Primary Monitor',
                        help="'Primary Monitor', 'All Screens' or 'Monitor N'")
    parser.add_argument('--region', nargs=4, type=int, metavar=('X', 'Y', 'W', 'H'))
    parser.add_argument('--duration', type=float, help="Stop after this many seconds")
    parser.add_argument('--ffmpeg', help="Path to the ffmpeg executable")
    parser.add_argument('--verify', action='store_true', help="Decode the file after stopping")
    parser.add_argument('--list-devices', action='store_true', help="List audio devices and exit")
    parser.add_argument('--verbose', '-v', action='store_true')
    parser.add_argument('--log-file')
    return parser


def list_devices(ffmpeg_path):
    resolver = AudioDeviceResolver(find_ffmpeg(ffmpeg_path))
    devices = resolver.list_devices()
    if not devices:
        print("No audio devices found")
    for device in devices:
        print(f"{device.role.value:<11} {device.name}")


def main(argv=None):
    """Main entry point"""
    args = build_parser().parse_args(argv)
    logger = setup_logging(args.verbose, args.log_file)
    controller = None

    try:
        if args.list_devices:
            list_devices(args.ffmpeg)
            return 0

        controller = RecordingController()
        controller.update_settings({
            'backend': args.backend,
            'audio_mode': args.audio,
            'video_quality': args.quality,
            'output_device': args.output_device,
            'input_device': args.input_device,
            'selected_screen': args.screen,
            'ffmpeg_path': args.ffmpeg,
            'verify_output': args.verify,
        })
        if args.folder:
            controller.update_setting('folder_path', args.folder)
        controller.set_status_callback(lambda message: logger.info("Status: %s", message))
        controller.set_elapsed_callback(lambda elapsed: print(f"\rRecording {str(elapsed).split('.')[0]}", end='', flush=True))

        session = controller.start_recording(region=args.region)
        print(f"Recording to {session.output_path}")
        if args.duration:
            threading.Event().wait(args.duration)
        else:
            input("Press Enter to stop...\n")

        result = controller.stop_recording()
        print()
        if result is not None:
            print(f"Saved: {result.output_path}")
            for warning in result.warnings:
                print(f"Warning: {warning}")
        return 0
    except RecordingError as e:
        logger.error("%s", e)
        detail = getattr(e, 'detail', '')
        if detail:
            logger.error("Details:\n%s", detail)
        return 1
    except KeyboardInterrupt:
        print("\nApplication terminated by user")
        if controller is not None:
            controller.cleanup()
        return 130
    except ValueError as e:
        logger.error("Invalid settings: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
