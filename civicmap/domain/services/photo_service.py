"""
Photo normalisation for report submissions.

Camera photos arrive as data URLs. They are decoded with Pillow, rotated
according to EXIF, scaled to fit the configured box and re-encoded as a
compressed JPEG data URL so the report list stays light enough to push
to every subscriber.
"""
from typing import Optional
from urllib.parse import quote
import base64
import binascii
import io
import logging

from PIL import Image, ImageOps, UnidentifiedImageError

from .. import errors
from ...core.config import settings

logger = logging.getLogger(__name__)

_PLACEHOLDER_SVG = """<svg xmlns="http://www.w3.org/2000/svg" width="1200" height="700" viewBox="0 0 1200 700">
  <rect width="1200" height="700" fill="#E0E7FF"/>
  <g font-family="Poppins, Arial, sans-serif" text-anchor="middle">
    <text x="600" y="330" font-size="44" fill="#111827" font-weight="700">Suggestion</text>
    <text x="600" y="390" font-size="22" fill="#374151">No photo attached</text>
  </g>
</svg>"""

SUGGESTION_PLACEHOLDER_PHOTO = "data:image/svg+xml;charset=utf-8," + quote(_PLACEHOLDER_SVG)


def is_remote_uri(photo: str) -> bool:
    return photo.startswith("http://") or photo.startswith("https://")


def decode_data_url(photo: str) -> bytes:
    """Return the raw bytes of a base64 data URL."""
    header, _, payload = photo.partition(",")
    if not header.startswith("data:image/") or ";base64" not in header:
        raise errors.ValidationError("Photo must be a base64 image data URL or an http(s) URI", field="photo")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise errors.ValidationError(f"Photo payload is not valid base64: {e}", field="photo")


def compress_image(
    content: bytes,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
    quality: Optional[int] = None,
) -> bytes:
    """Downscale (never upscale) to fit max_width x max_height and encode as JPEG."""
    max_width = max_width or settings.PHOTO_MAX_WIDTH
    max_height = max_height or settings.PHOTO_MAX_HEIGHT
    quality = quality or settings.PHOTO_JPEG_QUALITY

    if len(content) > settings.PHOTO_MAX_BYTES:
        raise errors.ValidationError(
            f"Photo is too large ({len(content)} bytes, max {settings.PHOTO_MAX_BYTES})", field="photo"
        )

    try:
        img = Image.open(io.BytesIO(content))
    except Image.DecompressionBombError as e:
        logger.warning(f"Rejected oversized photo: {e}")
        raise errors.ValidationError("Photo dimensions are too large", field="photo")
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Rejected undecodable photo: {e}")
        raise errors.ValidationError("Photo could not be decoded as an image", field="photo")

    # Pixel data is decoded lazily from here on
    try:
        img = ImageOps.exif_transpose(img)
        scale = min(max_width / img.width, max_height / img.height, 1)
        if scale < 1:
            img = img.resize((round(img.width * scale), round(img.height * scale)), Image.Resampling.LANCZOS)

        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")

        out = io.BytesIO()
        img.save(out, format="JPEG", quality=quality, optimize=True)
    except (Image.DecompressionBombError, OSError, ValueError) as e:
        logger.warning(f"Rejected photo that failed to re-encode: {e}")
        raise errors.ValidationError("Photo could not be decoded as an image", field="photo")
    return out.getvalue()


def to_data_url(jpeg_bytes: bytes) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(jpeg_bytes).decode("ascii")


def normalize_photo(photo: Optional[str]) -> Optional[str]:
    """
    Normalise a submitted photo.

    - None / empty -> None
    - http(s) URI -> unchanged
    - SVG data URL -> unchanged (vector placeholder)
    - raster data URL -> compressed JPEG data URL
    """
    if not photo:
        return None
    if is_remote_uri(photo) or photo.startswith("data:image/svg+xml"):
        return photo
    content = decode_data_url(photo)
    return to_data_url(compress_image(content))
