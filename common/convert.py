"""
Image transcoding with Pillow.

Both the API (/api/convert, /api/process-large) and the worker's local mode go
through convert_image(), so a given input converts the same way everywhere.
"""
from dataclasses import dataclass
from io import BytesIO
from typing import Union

from PIL import Image, ImageOps

from common.config import DEFAULT_QUALITY
from common.job_schema import TargetFormat, validate_quality


class UnsupportedFormat(ValueError):
    pass


@dataclass
class Converted:
    data: bytes
    format: TargetFormat
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


def parse_format(value: Union[str, TargetFormat]) -> TargetFormat:
    try:
        return TargetFormat.parse(value)
    except ValueError:
        raise UnsupportedFormat(f"Unsupported format: {value}") from None


def _has_alpha(img: Image.Image) -> bool:
    return "A" in img.getbands() or "transparency" in img.info


def _prepare(img: Image.Image, fmt: TargetFormat) -> Image.Image:
    # Each encoder accepts a different set of modes
    if fmt is TargetFormat.JPEG:
        if img.mode not in ("RGB", "L", "CMYK"):
            return img.convert("RGB")
    elif fmt is TargetFormat.WEBP:
        if img.mode not in ("RGB", "RGBA"):
            return img.convert("RGBA" if _has_alpha(img) else "RGB")
    elif img.mode == "CMYK":
        return img.convert("RGB")
    return img


def convert_image(data: bytes, target_format: Union[str, TargetFormat],
                  quality: int = DEFAULT_QUALITY) -> Converted:
    """
    Decodes `data` and re-encodes it as `target_format`.

    quality applies to webp and jpeg. PNG is lossless, so it is saved with
    optimize=True and the quality value is ignored.
    Raises UnsupportedFormat, ValueError (bad quality) or
    PIL.UnidentifiedImageError (input is not an image).
    """
    fmt = parse_format(target_format)
    validate_quality(quality)

    with Image.open(BytesIO(data)) as src:
        img = ImageOps.exif_transpose(src)
        img = _prepare(img, fmt)

        out = BytesIO()
        if fmt is TargetFormat.WEBP:
            img.save(out, format="WEBP", quality=quality, method=4)
        elif fmt is TargetFormat.JPEG:
            img.save(out, format="JPEG", quality=quality, optimize=True)
        else:
            img.save(out, format="PNG", optimize=True)

        return Converted(data=out.getvalue(), format=fmt, width=img.width, height=img.height)


def make_thumbnail(data: bytes, size: int) -> bytes:
    """Returns a PNG no larger than size x size, keeping the aspect ratio."""
    with Image.open(BytesIO(data)) as src:
        img = ImageOps.exif_transpose(src)
        img.thumbnail((size, size))
        if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            img = img.convert("RGBA" if _has_alpha(img) else "RGB")
        out = BytesIO()
        img.save(out, format="PNG")
        return out.getvalue()
