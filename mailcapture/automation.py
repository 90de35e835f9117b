"""Scripting bridge to the desktop mail client.

Every command is a single blocking round trip through ``osascript``. Read
commands (``is_app_running``, ``is_app_in_front``, ``window_title`` and the
geometry queries) only report state; every other command changes what is on
screen. Screen regions are grabbed with ``mss``.
"""
from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Protocol

import mss
from mss import tools as mss_tools
from mss.exception import ScreenShotError

from mailcapture.geometry import TOP_SCROLL_POSITION, Frame, Tile

LOGGER = logging.getLogger(__name__)
OSASCRIPT = "osascript"
DEFAULT_SCRIPT_TIMEOUT_SECONDS = 30
_LINE_BREAKS = re.compile(r"\r?\n|\r")


class AutomationError(RuntimeError):
    """Raised when a scripting command exits non-zero or returns garbage."""


class AutomationDriver(Protocol):
    def is_app_running(self) -> bool: ...

    def start_app(self) -> None: ...

    def is_app_in_front(self) -> bool: ...

    def bring_app_to_front(self) -> None: ...

    def open_source(self, path: Path) -> None: ...

    def prepare_window(self) -> None: ...

    def scroll_to(self, position: float) -> None: ...

    def scroll_to_top(self) -> None: ...

    def window_title(self) -> str: ...

    def window_frame(self) -> Frame: ...

    def scroll_frame(self) -> Frame: ...

    def header_height(self) -> int: ...

    def capture_region(self, tile: Tile, directory: Path) -> Path: ...

    def close_window(self) -> None: ...


def remove_line_breaks(text: str) -> str:
    return _LINE_BREAKS.sub("", text)


def run_applescript(script: str, *, timeout: float = DEFAULT_SCRIPT_TIMEOUT_SECONDS) -> str:
    """Run ``script`` with osascript and return its stdout on one line."""
    try:
        completed = subprocess.run(
            [OSASCRIPT, "-e", script],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise AutomationError(f"osascript failed to run: {exc}") from exc
    if completed.returncode != 0:
        message = remove_line_breaks(completed.stderr or "").strip()
        raise AutomationError(message or f"osascript exited with {completed.returncode}")
    return remove_line_breaks(completed.stdout or "").strip()


def parse_frame(raw: str) -> Frame:
    """Parse an AppleScript ``{x, y} & {w, h}`` list such as ``"0, 25, 1048, 743"``."""
    parts = [item.strip() for item in raw.split(",") if item.strip()]
    if len(parts) != 4:
        raise AutomationError(f"expected four numbers for a frame, got {raw!r}")
    try:
        x, y, width, height = (int(float(item)) for item in parts)
    except ValueError as exc:
        raise AutomationError(f"frame is not numeric: {raw!r}") from exc
    return Frame(offset_x=x, offset_y=y, width=width, height=height)


def _parse_int(raw: str, label: str) -> int:
    try:
        return int(float(raw))
    except ValueError as exc:
        raise AutomationError(f"{label} is not numeric: {raw!r}") from exc


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class AppleScriptDriver:
    """Drive the mail client through System Events scripting."""

    def __init__(
        self,
        app_name: str = "Mail",
        *,
        window_width: int = 1048,
        top_scroll_position: float = TOP_SCROLL_POSITION,
        runner=run_applescript,
    ) -> None:
        self.app_name = app_name
        self.window_width = window_width
        self.top_scroll_position = top_scroll_position
        self._run = runner

    def is_app_running(self) -> bool:
        return self._run(f'return application "{self.app_name}" is running') == "true"

    def start_app(self) -> None:
        LOGGER.debug("Starting %s", self.app_name)
        self._run(
            f"""
            tell application "{self.app_name}"
                if not running then
                    run
                    delay 0.25
                end if
                activate
            end tell
            tell application "System Events"
                tell application process "{self.app_name}"
                    set frontmost to true
                end tell
            end tell
            """
        )

    def is_app_in_front(self) -> bool:
        front = self._run(
            """
            tell application "System Events"
                return name of first application process whose frontmost is true
            end tell
            """
        )
        return front == self.app_name

    def bring_app_to_front(self) -> None:
        self._run(
            f"""
            tell application "System Events"
                tell application process "{self.app_name}"
                    set frontmost to true
                end tell
            end tell
            """
        )

    def open_source(self, path: Path) -> None:
        LOGGER.debug("Opening %s in %s", path, self.app_name)
        self._run(
            f"""
            tell application "{self.app_name}"
                set download html attachments to true
                open ("{_quote(str(path))}" as POSIX file)
            end tell
            """
        )

    def prepare_window(self) -> None:
        """Stretch the front window to full screen height and center it."""
        self._run(
            f"""
            tell application "Finder"
                set screenSize to bounds of window of desktop
                set screenWidth to item 3 of screenSize
                set screenHeight to item 4 of screenSize
            end tell
            tell application "{self.app_name}"
                set theBounds to bounds of front window
                set leftEdge to (screenWidth - {self.window_width}) / 2.0
                set bounds of front window to {{leftEdge, 0, leftEdge + {self.window_width}, screenHeight}}
            end tell
            delay 0.25
            """
        )

    def scroll_to(self, position: float) -> None:
        LOGGER.debug("Scrolling to %.4f", position)
        self._run(
            f"""
            tell application "System Events"
                tell process "{self.app_name}"
                    set value of scroll bar 1 of scroll area 1 of front window to {position}
                end tell
            end tell
            delay 0.5
            """
        )

    def scroll_to_top(self) -> None:
        self.scroll_to(self.top_scroll_position)

    def window_title(self) -> str:
        return self._run(
            f"""
            tell application "System Events"
                tell process "{self.app_name}"
                    return value of attribute "AXTitle" of front window
                end tell
            end tell
            """
        )

    def window_frame(self) -> Frame:
        return parse_frame(
            self._run(
                f"""
                tell application "System Events"
                    tell process "{self.app_name}"
                        set thePosition to position of scroll area 1 of front window
                        set theSize to size of scroll area 1 of front window
                        return thePosition & theSize
                    end tell
                end tell
                """
            )
        )

    def scroll_frame(self) -> Frame:
        return parse_frame(
            self._run(
                f"""
                tell application "System Events"
                    tell process "{self.app_name}"
                        set thePosition to position of scroll area 1 of front window
                        set theSize to size of group 1 of scroll area 1 of front window
                        return thePosition & theSize
                    end tell
                end tell
                """
            )
        )

    def header_height(self) -> int:
        raw = self._run(
            f"""
            tell application "System Events"
                tell process "{self.app_name}"
                    set theSize to size of group 1 of group 1 of scroll area 1 of front window
                    return item 2 of theSize
                end tell
            end tell
            """
        )
        return _parse_int(raw, "header height")

    def capture_region(self, tile: Tile, directory: Path) -> Path:
        """Grab ``tile`` from the screen into ``directory/frame-<portion>.png``."""
        self._move_cursor_out_of_view()
        directory.mkdir(parents=True, exist_ok=True)
        output_path = directory / f"frame-{tile.portion_id}.png"
        region = {"left": tile.x, "top": tile.y, "width": tile.width, "height": tile.height}
        LOGGER.debug("Capturing portion %s: %s", tile.portion_id, region)
        try:
            with mss.mss() as screen:
                shot = screen.grab(region)
                mss_tools.to_png(shot.rgb, shot.size, output=str(output_path))
        except (ScreenShotError, OSError) as exc:
            raise AutomationError(f"unable to capture portion {tile.portion_id}: {exc}") from exc
        return output_path

    def close_window(self) -> None:
        LOGGER.debug("Closing front window of %s", self.app_name)
        self._run(
            f"""
            tell application "System Events"
                tell process "{self.app_name}"
                    click button 1 of window 1
                end tell
            end tell
            """
        )

    def _move_cursor_out_of_view(self) -> None:
        self._run('do shell script "cliclick m:0,9999"')
