"""
Captured pages: the raw image buffers a capture session hands to the
import pipeline.  Pages are read-only from the moment they are built.
"""
import io
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image, ImageOps

from services.errors import OCRFailure

logger = logging.getLogger("basketscan.capture")

# Register HEIC/HEIF support via pillow-heif if available
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False
    logger.info("pillow-heif not installed, HEIC files will not be supported")

_MODES = {1: "L", 3: "RGB", 4: "RGBA"}


@dataclass(frozen=True)
class CapturedPage:
    """One candidate page image: raw pixel rows plus their geometry."""

    pixels: Optional[bytes]
    width: int
    height: int
    bytes_per_row: int
    bytes_per_pixel: int = 1

    @property
    def has_pixels(self) -> bool:
        if not self.pixels or self.width <= 0 or self.height <= 0:
            return False
        if self.bytes_per_pixel not in _MODES:
            return False
        if self.bytes_per_row < self.width * self.bytes_per_pixel:
            return False
        return len(self.pixels) >= self.bytes_per_row * self.height

    def intensity_plane(self) -> Optional[np.ndarray]:
        """Channel 0 of every pixel as a (height, width) uint8 view, or None."""
        if not self.has_pixels:
            return None
        buf = np.frombuffer(self.pixels, dtype=np.uint8, count=self.bytes_per_row * self.height)
        rows = buf.reshape(self.height, self.bytes_per_row)
        return rows[:, 0:self.width * self.bytes_per_pixel:self.bytes_per_pixel]

    def to_image(self) -> "Image.Image":
        if not self.has_pixels:
            raise OCRFailure("Page has no accessible pixel buffer")
        mode = _MODES[self.bytes_per_pixel]
        return Image.frombuffer(
            mode, (self.width, self.height), self.pixels, "raw", mode, self.bytes_per_row, 1
        )

    @classmethod
    def from_image(cls, image: "Image.Image") -> "CapturedPage":
        if image.mode not in ("L", "RGB", "RGBA"):
            image = image.convert("RGB")
        bpp = len(image.getbands())
        return cls(
            pixels=image.tobytes(),
            width=image.width,
            height=image.height,
            bytes_per_row=image.width * bpp,
            bytes_per_pixel=bpp,
        )

    @classmethod
    def unreadable(cls) -> "CapturedPage":
        return cls(pixels=None, width=0, height=0, bytes_per_row=0)

    def __repr__(self) -> str:
        state = "pixels" if self.has_pixels else "no pixels"
        return f"CapturedPage({self.width}x{self.height}, {state})"


def load_page(image_bytes: bytes) -> CapturedPage:
    """
    Decode an uploaded image into a CapturedPage.

    EXIF orientation is normalised (phone photos are often rotated in
    metadata).  An upload Pillow cannot decode becomes a page without a
    pixel buffer rather than an error: it simply loses page selection.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.load()
    except Exception as e:
        logger.warning("Cannot decode captured page (%d bytes): %s", len(image_bytes), e)
        return CapturedPage.unreadable()
    return CapturedPage.from_image(img)
