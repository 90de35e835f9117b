"""Scroll and tile planning for chunked window captures."""
from __future__ import annotations

from dataclasses import dataclass

TOP_SCROLL_POSITION = 0.0
BOTTOM_SCROLL_POSITION = 1.0


@dataclass(frozen=True)
class Frame:
    """Screen rectangle reported by the automation target."""

    offset_x: int
    offset_y: int
    width: int
    height: int

    @property
    def bottom(self) -> int:
        return self.offset_y + self.height


@dataclass(frozen=True)
class Tile:
    """One screen region to capture, numbered from 1 in capture order."""

    x: int
    y: int
    width: int
    height: int
    portion_id: int

    @property
    def bottom(self) -> int:
        return self.y + self.height


def pixels_to_scroll_position(pixels: int, total_height: int, page_height: int) -> float:
    """Map a content offset onto the 0.0 (top) to 1.0 (bottom) scroll bar range."""
    scrollable = total_height - page_height
    if scrollable <= 0:
        raise ValueError(
            f"content height {total_height} does not exceed page height {page_height}"
        )
    position = pixels / scrollable
    return min(BOTTOM_SCROLL_POSITION, max(TOP_SCROLL_POSITION, position))


def compensation_offset(tile_height: int, chunk_to_scroll: int) -> int:
    return tile_height - chunk_to_scroll


def total_capturable_height(scroll: Frame, header_height: int) -> int:
    return max(0, scroll.height - header_height)


def needs_scrolling(window: Frame, scroll: Frame) -> bool:
    return scroll.height > window.height


def plan_single_tile(window: Frame, header_height: int) -> Tile:
    """Tile for content that fits the window: everything below the header."""
    return Tile(
        x=window.offset_x,
        y=window.offset_y + header_height,
        width=window.width,
        height=max(0, window.height - header_height),
        portion_id=1,
    )


def plan_next_tile(
    window: Frame,
    scroll: Frame,
    *,
    iteration: int,
    captured_pixels: int,
    scroll_position: float,
    tile_height: int,
    chunk_to_scroll: int,
    header_height: int,
) -> Tile:
    """Compute the next tile of a scrolled capture.

    The first tile starts right below the header chrome. Middle tiles start
    ``tile_height - chunk_to_scroll`` pixels below the top of the scroll area,
    which lines them up with the bottom edge of the previous tile after the
    scroll, and are cut short where the window ends. Once the scroll bar
    reaches the bottom, the last tile covers only the rows not yet captured
    and sits flush with the bottom of the window.
    """
    if iteration < 1:
        raise ValueError("iteration starts at 1")
    if iteration == 1:
        room = window.bottom - (scroll.offset_y + header_height)
        return Tile(
            x=window.offset_x,
            y=scroll.offset_y + header_height,
            width=window.width,
            height=max(0, min(tile_height, room)),
            portion_id=iteration,
        )
    if scroll_position >= BOTTOM_SCROLL_POSITION:
        total = total_capturable_height(scroll, header_height)
        remaining = max(0, min(window.height, total - captured_pixels))
        return Tile(
            x=window.offset_x,
            y=window.offset_y + (window.height - remaining),
            width=window.width,
            height=remaining,
            portion_id=iteration,
        )
    y = scroll.offset_y + compensation_offset(tile_height, chunk_to_scroll)
    room = window.bottom - y
    if room <= 0:
        raise ValueError(f"window of height {window.height} has no room for tile {iteration}")
    return Tile(
        x=window.offset_x,
        y=y,
        width=window.width,
        height=min(tile_height, room),
        portion_id=iteration,
    )


def next_scroll_pixels(
    header_height: int, captured_pixels: int, tile_height: int, chunk_to_scroll: int
) -> int:
    """Content offset to scroll to so the next middle tile continues the last one."""
    return header_height + captured_pixels - compensation_offset(
        tile_height, chunk_to_scroll
    )
