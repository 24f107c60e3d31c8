# screen_bounds.py
# Monitor geometry for choosing what to record
# Dependencies: mss

import logging

import mss
from mss.exception import ScreenShotError

from recording_types import Rect

logger = logging.getLogger(__name__)

FALLBACK_BOUNDS = Rect(0, 0, 1920, 1080)
ALL_SCREENS = ("all screens", "all monitors")


def get_monitors():
    """Return mss monitor dicts; index 0 is the whole virtual desktop"""
    # a fresh instance per call keeps this usable from any thread
    try:
        with mss.mss() as sct:
            return [dict(m) for m in sct.monitors]
    except ScreenShotError as e:
        logger.warning("Could not query monitors: %s", e)
        return []


def get_monitor_info(monitors=None):
    """Information about the physical monitors (virtual desktop skipped)"""
    monitors = get_monitors() if monitors is None else monitors
    info = []
    for i, monitor in enumerate(monitors):
        if i == 0:
            continue
        info.append({
            'index': i,
            'width': monitor['width'],
            'height': monitor['height'],
            'left': monitor['left'],
            'top': monitor['top']
        })
    return info


def virtual_desktop_bounds(monitors=None):
    """Bounding rectangle around every attached monitor"""
    monitors = get_monitors() if monitors is None else monitors
    if not monitors:
        return FALLBACK_BOUNDS
    if len(monitors) == 1:
        return Rect.from_monitor(monitors[0])
    physical = monitors[1:]
    left = min(m['left'] for m in physical)
    top = min(m['top'] for m in physical)
    right = max(m['left'] + m['width'] for m in physical)
    bottom = max(m['top'] + m['height'] for m in physical)
    return Rect(left, top, right - left, bottom - top)


def monitor_bounds(index, monitors=None):
    """Bounds of monitor ``index`` (1-based), or None if it does not exist"""
    monitors = get_monitors() if monitors is None else monitors
    if 0 < index < len(monitors):
        return Rect.from_monitor(monitors[index])
    return None


def bounds_for_selection(selected_screen, monitors=None):
    """Translate a screen selection label into capture bounds.

    ``All Screens`` gives the virtual desktop, ``Primary Monitor`` the
    primary monitor (mss lists it first) and ``Monitor N`` the N-th
    monitor. Anything unknown or out of range falls back to the virtual
    desktop.
    """
    monitors = get_monitors() if monitors is None else monitors
    if not monitors:
        logger.warning("No monitors detected, using %s", FALLBACK_BOUNDS)
        return FALLBACK_BOUNDS
    if len(monitors) == 1:
        return Rect.from_monitor(monitors[0])

    selection = (selected_screen or "").strip()
    if selection.lower() in ALL_SCREENS:
        return virtual_desktop_bounds(monitors)
    if selection.lower() == "primary monitor":
        return Rect.from_monitor(monitors[1])
    if selection.lower().startswith("monitor "):
        number = selection[len("monitor "):].replace("(Primary)", "").strip()
        try:
            bounds = monitor_bounds(int(number), monitors)
        except ValueError:
            bounds = None
        if bounds is not None:
            return bounds
        logger.warning("Invalid monitor selection '%s', using virtual desktop", selection)
        return virtual_desktop_bounds(monitors)
    logger.warning("Unknown screen selection '%s', using virtual desktop", selection)
    return virtual_desktop_bounds(monitors)
