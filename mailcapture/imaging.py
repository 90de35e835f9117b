"""Stitch captured tiles and derive thumbnails with Pillow."""
from __future__ import annotations

import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from PIL import Image

TILE_PATTERN = re.compile(r"(\d+)")
TILE_SUFFIX = ".png"


@dataclass
class Thumbnails:
    large: Image.Image
    small: Image.Image
    full: Image.Image


def _portion_number(path: Path) -> int:
    match = TILE_PATTERN.search(path.name)
    return int(match.group(1)) if match else 0


def tile_paths(directory: Path) -> List[Path]:
    """PNG tiles in ``directory`` ordered by portion number, not by name."""
    tiles = [path for path in directory.iterdir() if path.suffix.lower() == TILE_SUFFIX]
    return sorted(tiles, key=lambda path: (_portion_number(path), path.name))


def compose_tiles(paths: Sequence[Path]) -> Image.Image:
    """Stack tiles top to bottom in the given order."""
    if not paths:
        raise ValueError("no tiles to compose")
    images = []
    for path in paths:
        with Image.open(path) as image:
            images.append(image.convert("RGBA"))
    width = max(image.width for image in images)
    height = sum(image.height for image in images)
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    top = 0
    for image in images:
        canvas.paste(image, (0, top))
        top += image.height
    return canvas


def resize_to_width(image: Image.Image, width: int) -> Image.Image:
    if width <= 0 or image.width == 0:
        return image.copy()
    height = max(1, round(image.height * width / image.width))
    return image.resize((width, height), Image.Resampling.LANCZOS)


def make_thumbnails(image: Image.Image, thumb_width: int, thumb_height: int) -> Thumbnails:
    """Build the large and small thumbnails published next to the full image.

    The large thumbnail is scaled to a width of ``thumb_height`` pixels. The
    small one is scaled to ``thumb_width`` and then cropped from the top left
    to at most ``thumb_width`` by ``thumb_height``.
    """
    large = resize_to_width(image, thumb_height)
    scaled = resize_to_width(image, thumb_width)
    crop_width = min(scaled.width, thumb_width) if thumb_width > 0 else scaled.width
    crop_height = min(scaled.height, thumb_height) if thumb_height > 0 else scaled.height
    small = scaled.crop((0, 0, crop_width, crop_height))
    return Thumbnails(large=large, small=small, full=image)


def pillow_format(image_format: str) -> str:
    """Pillow encoder name for a file extension such as ``png`` or ``jpg``."""
    pil_format = Image.registered_extensions().get("." + image_format.lower().lstrip("."))
    if pil_format is None or pil_format not in Image.SAVE:
        raise ValueError(f"unsupported image format {image_format!r}")
    return pil_format


def encode_image(image: Image.Image, image_format: str = "png") -> bytes:
    pil_format = pillow_format(image_format)
    if pil_format == "JPEG" and image.mode != "RGB":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format=pil_format)
    return buffer.getvalue()
