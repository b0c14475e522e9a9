"""Core data models shared across sitepipe components."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple


class AssetClass(str, Enum):
    """Kinds of site assets, each built by its own pipeline."""

    FONTS = "fonts"
    IMAGES = "images"
    HTML = "html"
    FAVICON = "favicon"
    STYLES = "styles"
    SCRIPTS = "scripts"


class BundleKind(str, Enum):
    """Whether an output unit is built from site sources or vendor libraries."""

    PRIMARY = "primary"
    VENDOR = "vendor"


class OutputMode(str, Enum):
    PASS_THROUGH = "pass-through"
    BUNDLE = "bundle"


@dataclass(frozen=True)
class OutputUnit:
    """Describes where and how one pipeline emits its output."""

    asset_class: AssetClass
    kind: BundleKind
    mode: OutputMode
    directory: str = ""
    bundle_name: Optional[str] = None

    @property
    def key(self) -> str:
        """Cache key: the bundle file name, or ``<kind>:<class>`` for pass-through units."""
        if self.bundle_name:
            return self.bundle_name
        return f"{self.kind.value}:{self.asset_class.value}"

    @property
    def is_bundle(self) -> bool:
        return self.mode is OutputMode.BUNDLE

    def output_dir(self, root: Path) -> Path:
        return root / self.directory if self.directory else root

    def bundle_path(self, root: Path) -> Path:
        if not self.bundle_name:
            raise ValueError(f"{self.key} is not a bundle")
        return self.output_dir(root) / self.bundle_name


@dataclass(frozen=True)
class AssetGlobs:
    """Ordered path patterns feeding one output unit."""

    unit: OutputUnit
    patterns: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.patterns


@dataclass(frozen=True)
class SourceFile:
    """A concrete input file matched by a glob, with its declaration order."""

    path: Path
    input_id: str
    order: Tuple[int, int]


@dataclass(frozen=True)
class Fingerprint:
    """Comparable source version; cache hits require exact equality."""

    mtime_ns: int
    size: int

    @classmethod
    def of(cls, path: Path) -> "Fingerprint":
        stat = path.stat()
        return cls(mtime_ns=stat.st_mtime_ns, size=stat.st_size)


@dataclass(frozen=True)
class Asset:
    """A file's bytes flowing through transform stages."""

    source: Path
    name: str
    content: bytes = field(repr=False)
    source_name: str = ""

    def with_content(self, content: bytes, *, name: Optional[str] = None) -> "Asset":
        return replace(self, content=content, name=name or self.name)

    @property
    def suffix(self) -> str:
        return Path(self.name).suffix.lower()


__all__ = [
    "Asset",
    "AssetClass",
    "AssetGlobs",
    "BundleKind",
    "Fingerprint",
    "OutputMode",
    "OutputUnit",
    "SourceFile",
]
