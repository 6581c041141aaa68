"""
Image format handling with Pillow.

Stage outputs are normalized to PNG when stored; downloads are re-encoded
into the requested format on the fly.
"""

import io
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from design_pipeline.core.exceptions import ImageConversionError

JPEG_QUALITY = 92
PNG_COMPRESS_LEVEL = 9
JPEG_BACKGROUND = (255, 255, 255)

# requested format -> (Pillow format, media type, file extension)
SUPPORTED_FORMATS = {
    "png": ("PNG", "image/png", "png"),
    "jpg": ("JPEG", "image/jpeg", "jpg"),
    "jpeg": ("JPEG", "image/jpeg", "jpg"),
}


@dataclass(frozen=True)
class ConvertedImage:
    content: bytes
    media_type: str
    extension: str


def normalize_format(requested: Optional[str]) -> Optional[str]:
    """Return the lower-cased format if it is supported, otherwise None."""
    if not requested:
        return None
    fmt = requested.strip().lower()
    return fmt if fmt in SUPPORTED_FORMATS else None


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
        return image
    except (UnidentifiedImageError, OSError) as e:
        raise ImageConversionError(f"Could not decode image: {e}")


def _flatten(image: Image.Image) -> Image.Image:
    """Composite any transparency onto white so JPEG output has no black fill."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, JPEG_BACKGROUND)
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


def to_png(data: bytes) -> bytes:
    """Re-encode arbitrary image bytes as PNG."""
    image = _open(data)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
    return buffer.getvalue()


def convert_image(data: bytes, requested_format: str) -> ConvertedImage:
    """
    Re-encode image bytes into one of SUPPORTED_FORMATS.

    Raises:
        ImageConversionError: unsupported format or undecodable input
    """
    fmt = normalize_format(requested_format)
    if fmt is None:
        raise ImageConversionError(f"Unsupported output format: {requested_format}")

    pil_format, media_type, extension = SUPPORTED_FORMATS[fmt]
    image = _open(data)
    buffer = io.BytesIO()

    if pil_format == "JPEG":
        _flatten(image).save(buffer, format="JPEG", quality=JPEG_QUALITY, optimize=True)
    else:
        image.save(buffer, format="PNG", compress_level=PNG_COMPRESS_LEVEL)

    return ConvertedImage(content=buffer.getvalue(), media_type=media_type, extension=extension)
