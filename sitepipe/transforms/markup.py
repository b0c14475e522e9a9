"""HTML and binary asset transforms."""

from __future__ import annotations

import re
from io import BytesIO
from typing import Optional, Sequence

from PIL import Image, UnidentifiedImageError

from ..models import Asset
from .base import StageOptions, Transform, TransformError, decode
from .external import CommandTransform

_RAW_BLOCK = re.compile(r"<(pre|textarea|script|style)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_HTML_COMMENT = re.compile(r"<!--(?!\[if).*?-->", re.DOTALL)
_WHITESPACE = re.compile(r"\s+")

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")
RASTER_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp")
_SAVE_OPTIONS = {
    "PNG": {"optimize": True},
    "JPEG": {"optimize": True, "quality": "keep"},
    "GIF": {"optimize": True},
    "WEBP": {"lossless": True, "method": 6},
}


def collapse_html(text: str) -> str:
    """Collapse whitespace outside raw-text elements and drop plain comments."""
    parts = []
    last = 0
    for match in _RAW_BLOCK.finditer(text):
        parts.append(_collapse(text[last : match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(_collapse(text[last:]))
    return "".join(parts).strip() + "\n"


def _collapse(chunk: str) -> str:
    chunk = _HTML_COMMENT.sub("", chunk)
    return _WHITESPACE.sub(" ", chunk)


class HtmlMinifier(Transform):
    """Whitespace collapse for pages; disabled when beautify is on."""

    name = "minify-html"

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        return asset.suffix in {".html", ".htm"} and not options.beautify

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        return asset.with_content(collapse_html(decode(asset)).encode("utf-8"))


class ImageOptimizer(Transform):
    """Lossless re-encoding of raster images with Pillow.

    A configured ``optimize-images`` command replaces the built-in encoder and
    also receives SVG files.
    """

    name = "optimize-images"

    def __init__(self, command: Optional[Sequence[str]] = None) -> None:
        self._command = CommandTransform(self.name, command, suffixes=IMAGE_SUFFIXES) if command else None

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        if self._command is not None:
            return asset.suffix in IMAGE_SUFFIXES
        return asset.suffix in RASTER_SUFFIXES

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        if self._command is not None:
            return self._command.apply(asset, options)
        optimized = optimize_image(asset.content)
        if len(optimized) >= len(asset.content):
            return asset
        return asset.with_content(optimized)


def optimize_image(data: bytes) -> bytes:
    """Re-encode ``data`` in its own format; animated images are left alone."""
    try:
        with Image.open(BytesIO(data)) as img:
            img_format = img.format
            if img_format not in _SAVE_OPTIONS or getattr(img, "n_frames", 1) > 1:
                return data
            output = BytesIO()
            img.save(output, format=img_format, **_SAVE_OPTIONS[img_format])
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise TransformError(f"cannot optimise image: {exc}") from exc
    return output.getvalue()


__all__ = [
    "HtmlMinifier",
    "IMAGE_SUFFIXES",
    "ImageOptimizer",
    "RASTER_SUFFIXES",
    "collapse_html",
    "optimize_image",
]
