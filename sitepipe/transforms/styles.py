"""Stylesheet transforms: compilation, minification and prefixing."""

from __future__ import annotations

import re
from typing import Optional, Sequence

from ..models import Asset
from .base import StageOptions, Transform, TransformError, decode
from .external import CommandTransform

DEFAULT_SASS_COMMAND = ("sass", "--stdin", "--no-source-map", "--load-path={dir}")
SASS_SUFFIXES = (".scss", ".sass")

_TOKEN = re.compile(r"\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*'|/\*.*?\*/", re.DOTALL)
_SPACE = re.compile(r"\s+")
_PUNCT_SPACE = re.compile(r"\s*([{};,>])\s*")
_COLON_SPACE = re.compile(r":\s+")


class StyleCompiler(Transform):
    """Compile Sass sources to CSS; plain CSS passes through untouched."""

    name = "compile-styles"

    def __init__(self, command: Optional[Sequence[str]] = None) -> None:
        self._command = CommandTransform(
            self.name,
            command or DEFAULT_SASS_COMMAND,
            suffixes=SASS_SUFFIXES,
            rename_to=".css",
        )

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        return asset.suffix in SASS_SUFFIXES

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        return self._command.apply(asset, options)


class CssMinifier(Transform):
    """Strip comments and collapse whitespace, or lay out one declaration per line."""

    name = "minify-styles"

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        return asset.suffix == ".css"

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        text = decode(asset)
        stripped = _TOKEN.sub("", text)
        if stripped.count("{") != stripped.count("}"):
            raise TransformError("unbalanced braces in stylesheet")
        if options.beautify_output:
            return asset.with_content(beautify_css(text).encode("utf-8"))
        return asset.with_content(minify_css(text).encode("utf-8"))


class StylePrefixer(Transform):
    """Vendor-prefix pass; delegates to a configured tool such as postcss."""

    name = "prefix-styles"

    def __init__(self, command: Optional[Sequence[str]] = None) -> None:
        self._command = CommandTransform(self.name, command) if command else None

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        return self._command is not None and asset.suffix == ".css"

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        if self._command is None:
            return asset
        return self._command.apply(asset, options)


def minify_css(text: str) -> str:
    def _collapse(chunk: str) -> str:
        chunk = _SPACE.sub(" ", chunk)
        chunk = _PUNCT_SPACE.sub(r"\1", chunk)
        chunk = _COLON_SPACE.sub(":", chunk)
        return chunk.replace(";}", "}")

    parts = []
    last = 0
    for match in _TOKEN.finditer(text):
        parts.append(_collapse(text[last:match.start()]))
        token = match.group(0)
        if not token.startswith("/*"):
            parts.append(token)
        last = match.end()
    parts.append(_collapse(text[last:]))
    return "".join(parts).strip()


def beautify_css(text: str) -> str:
    compact = minify_css(text)
    lines = []
    depth = 0
    parens = 0
    quote = ""
    current = ""
    for char in compact:
        if quote:
            current += char
            if char == quote and not current.endswith("\\" + quote):
                quote = ""
            continue
        if char in "\"'":
            quote = char
        elif char == "(":
            parens += 1
        elif char == ")":
            parens = max(parens - 1, 0)
        elif parens == 0 and char == "{":
            lines.append("  " * depth + current.strip() + " {")
            depth += 1
            current = ""
            continue
        elif parens == 0 and char == "}":
            if current.strip():
                lines.append("  " * depth + current.strip() + ";")
            depth = max(depth - 1, 0)
            lines.append("  " * depth + "}")
            current = ""
            continue
        elif parens == 0 and char == ";":
            lines.append("  " * depth + current.strip() + ";")
            current = ""
            continue
        current += char
    if current.strip():
        lines.append(current.strip())
    return "\n".join(lines) + "\n"


__all__ = [
    "CssMinifier",
    "DEFAULT_SASS_COMMAND",
    "StyleCompiler",
    "StylePrefixer",
    "beautify_css",
    "minify_css",
]
