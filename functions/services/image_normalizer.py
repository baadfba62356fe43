"""Image normalization for Domux.

Downscales site photos to a bounded size and re-encodes them as JPEG before
they are uploaded or sent to the AI backend. Pillow stands in for the
browser canvas used by the web client.

Failure modes are reported as distinct ImageNormalizationError codes:
- IMAGE_TOO_LARGE: input over the byte limit, rejected before decoding
- IMAGE_UNREADABLE: the source could not be read
- IMAGE_DECODE_FAILED: the bytes are not a decodable image
- IMAGE_CONTEXT_UNAVAILABLE: the drawing surface could not be allocated
- IMAGE_ENCODE_FAILED: JPEG re-encoding failed
"""

import asyncio
import base64
import io
import math
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Tuple, Union

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from config.settings import settings
from config.errors import ErrorCode, ImageNormalizationError

logger = structlog.get_logger(__name__)

OUTPUT_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class ImageFile:
    """An in-memory file handle: name, encoded bytes and modification time."""

    name: str
    content: bytes
    mime_type: str
    last_modified: int  # epoch milliseconds

    @property
    def size(self) -> int:
        return len(self.content)

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class NormalizedImage:
    file: ImageFile
    base64: str
    mime_type: str
    width: int
    height: int
    original_size: int


ImageSource = Union[bytes, str, Path, BinaryIO, ImageFile]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_target_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Scale (width, height) so the longer side is at most max_dimension.

    The longer side is clamped to max_dimension and the shorter side is
    scaled proportionally, rounded to the nearest pixel. Images already
    within bounds keep their size.
    """
    if width > height:
        if width > max_dimension:
            return max_dimension, max(1, _round_half_up(height * max_dimension / width))
    elif height > max_dimension:
        return max(1, _round_half_up(width * max_dimension / height)), max_dimension
    return width, height


def _source_size(source: ImageSource) -> int:
    if isinstance(source, ImageFile):
        return source.size
    if isinstance(source, (bytes, bytearray)):
        return len(source)
    if isinstance(source, (str, Path)):
        try:
            return os.stat(source).st_size
        except OSError as e:
            raise ImageNormalizationError(
                ErrorCode.IMAGE_UNREADABLE,
                f"Could not read the image file: {e}",
                {"path": str(source)}
            )
    try:
        position = source.tell()
        source.seek(0, io.SEEK_END)
        size = source.tell() - position
        source.seek(position)
        return size
    except (OSError, ValueError, AttributeError) as e:
        raise ImageNormalizationError(
            ErrorCode.IMAGE_UNREADABLE,
            f"Could not read the image file: {e}"
        )


def _read_source(source: ImageSource) -> bytes:
    try:
        if isinstance(source, ImageFile):
            return source.content
        if isinstance(source, (bytes, bytearray)):
            return bytes(source)
        if isinstance(source, (str, Path)):
            return Path(source).read_bytes()
        return source.read()
    except (OSError, ValueError, AttributeError) as e:
        raise ImageNormalizationError(
            ErrorCode.IMAGE_UNREADABLE,
            f"Could not read the image file: {e}"
        )


def _source_name(source: ImageSource, filename: Optional[str]) -> str:
    if filename:
        return filename
    if isinstance(source, ImageFile):
        return source.name
    if isinstance(source, (str, Path)):
        return Path(source).name
    return getattr(source, "name", None) or "image.jpg"


def normalize_image(
    source: ImageSource,
    filename: Optional[str] = None,
    max_bytes: Optional[int] = None,
    max_dimension: Optional[int] = None,
    quality: Optional[int] = None,
) -> NormalizedImage:
    """Downscale and re-encode an image as JPEG.

    Args:
        source: Raw bytes, a path, a binary file object or an ImageFile.
        filename: Name for the resulting file handle (defaults to the source name).
        max_bytes: Size limit checked before decoding (default from settings).
        max_dimension: Longest side bound in pixels (default from settings).
        quality: JPEG quality 1-95 (default from settings).

    Returns:
        NormalizedImage with the new file handle and its base64 payload.

    Raises:
        ImageNormalizationError: One code per failure mode, see module docstring.
    """
    max_bytes = max_bytes or settings.max_image_bytes
    max_dimension = max_dimension or settings.max_image_dimension
    quality = quality or settings.image_jpeg_quality
    name = _source_name(source, filename)

    original_size = _source_size(source)
    if original_size >= max_bytes:
        size_mb = original_size / 1024 / 1024
        limit_mb = max_bytes / 1024 / 1024
        logger.warning("image_rejected_too_large", name=name, size=original_size, limit=max_bytes)
        raise ImageNormalizationError(
            ErrorCode.IMAGE_TOO_LARGE,
            f"The image is too large ({size_mb:.1f}MB). Maximum {limit_mb:.0f}MB.",
            {"size": original_size, "limit": max_bytes}
        )

    raw = _read_source(source)
    logger.info("image_normalization_started", name=name, size=len(raw))

    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
        image = ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        logger.error("image_decode_failed", name=name, error=str(e))
        raise ImageNormalizationError(
            ErrorCode.IMAGE_DECODE_FAILED,
            f"Could not load the image: {e}"
        )

    width, height = compute_target_size(image.width, image.height, max_dimension)

    try:
        canvas = Image.new("RGB", (width, height), "white")
    except (MemoryError, ValueError) as e:
        logger.error("image_canvas_unavailable", name=name, width=width, height=height, error=str(e))
        raise ImageNormalizationError(
            ErrorCode.IMAGE_CONTEXT_UNAVAILABLE,
            f"Could not create the drawing surface: {e}",
            {"width": width, "height": height}
        )

    try:
        resized = image.convert("RGBA").resize((width, height), Image.LANCZOS)
        canvas.paste(resized, (0, 0), resized)
        buffer = io.BytesIO()
        canvas.save(buffer, format="JPEG", quality=quality)
        encoded = buffer.getvalue()
    except (OSError, ValueError) as e:
        logger.error("image_encode_failed", name=name, error=str(e))
        raise ImageNormalizationError(
            ErrorCode.IMAGE_ENCODE_FAILED,
            f"Could not compress the image: {e}"
        )

    if not encoded:
        raise ImageNormalizationError(
            ErrorCode.IMAGE_ENCODE_FAILED,
            "Could not compress the image: encoder produced no data"
        )

    normalized_file = ImageFile(
        name=name,
        content=encoded,
        mime_type=OUTPUT_MIME_TYPE,
        last_modified=int(time.time() * 1000),
    )

    logger.info(
        "image_normalized",
        name=name,
        source_width=image.width,
        source_height=image.height,
        width=width,
        height=height,
        original_size=original_size,
        size=len(encoded),
    )

    return NormalizedImage(
        file=normalized_file,
        base64=base64.b64encode(encoded).decode("ascii"),
        mime_type=OUTPUT_MIME_TYPE,
        width=width,
        height=height,
        original_size=original_size,
    )


async def normalize_image_async(source: ImageSource, filename: Optional[str] = None) -> NormalizedImage:
    """Run normalize_image off the event loop."""
    return await asyncio.to_thread(normalize_image, source, filename)
