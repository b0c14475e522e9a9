"""Glob set construction and deferred expansion into concrete source files."""

from __future__ import annotations

import glob as _glob
import os
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import BuildConfig, SiteDescriptor
from .models import AssetClass, AssetGlobs, BundleKind, OutputMode, OutputUnit, SourceFile

PRIMARY_UNITS: Dict[AssetClass, OutputUnit] = {
    AssetClass.FONTS: OutputUnit(AssetClass.FONTS, BundleKind.PRIMARY, OutputMode.PASS_THROUGH, "fonts"),
    AssetClass.IMAGES: OutputUnit(AssetClass.IMAGES, BundleKind.PRIMARY, OutputMode.PASS_THROUGH, "images"),
    AssetClass.HTML: OutputUnit(AssetClass.HTML, BundleKind.PRIMARY, OutputMode.PASS_THROUGH),
    AssetClass.FAVICON: OutputUnit(AssetClass.FAVICON, BundleKind.PRIMARY, OutputMode.PASS_THROUGH),
    AssetClass.STYLES: OutputUnit(AssetClass.STYLES, BundleKind.PRIMARY, OutputMode.BUNDLE, "css", "main.css"),
    AssetClass.SCRIPTS: OutputUnit(AssetClass.SCRIPTS, BundleKind.PRIMARY, OutputMode.BUNDLE, "js", "main.js"),
}

VENDOR_UNITS: Dict[AssetClass, OutputUnit] = {
    AssetClass.FONTS: OutputUnit(AssetClass.FONTS, BundleKind.VENDOR, OutputMode.PASS_THROUGH, "fonts"),
    AssetClass.STYLES: OutputUnit(AssetClass.STYLES, BundleKind.VENDOR, OutputMode.BUNDLE, "css", "vendor.css"),
    AssetClass.SCRIPTS: OutputUnit(AssetClass.SCRIPTS, BundleKind.VENDOR, OutputMode.BUNDLE, "js", "vendor.js"),
}

_GLOB_CHARS = set("*?[")


@dataclass(frozen=True)
class GlobSet:
    """Ordered input patterns per asset class, split by bundle kind."""

    project_root: Path
    primary: Dict[AssetClass, AssetGlobs] = field(default_factory=dict)
    vendor: Dict[AssetClass, AssetGlobs] = field(default_factory=dict)

    def patterns_for(self, asset_class: AssetClass) -> Tuple[str, ...]:
        """Vendor patterns first, then site entries, then the catch-all."""
        patterns: List[str] = []
        vendor = self.vendor.get(asset_class)
        if vendor is not None:
            patterns.extend(vendor.patterns)
        primary = self.primary.get(asset_class)
        if primary is not None:
            patterns.extend(primary.patterns)
        return tuple(patterns)

    def globs_for(self, asset_class: AssetClass, kind: BundleKind) -> Optional[AssetGlobs]:
        table = self.primary if kind is BundleKind.PRIMARY else self.vendor
        return table.get(asset_class)


def build_globs(config: BuildConfig, site: Optional[SiteDescriptor] = None) -> GlobSet:
    """Turn the resolved configuration into per-class pattern lists."""
    site = site or config.site
    root = config.project_root
    site_dir = _relative(site.root, root)

    primary: Dict[AssetClass, AssetGlobs] = {
        AssetClass.FONTS: AssetGlobs(PRIMARY_UNITS[AssetClass.FONTS], (f"{site_dir}/fonts/*",)),
        AssetClass.IMAGES: AssetGlobs(PRIMARY_UNITS[AssetClass.IMAGES], (f"{site_dir}/images/*",)),
        AssetClass.HTML: AssetGlobs(PRIMARY_UNITS[AssetClass.HTML], (f"{site_dir}/*.html",)),
        AssetClass.FAVICON: AssetGlobs(PRIMARY_UNITS[AssetClass.FAVICON], (f"{site_dir}/favicon.ico",)),
        AssetClass.STYLES: AssetGlobs(
            PRIMARY_UNITS[AssetClass.STYLES],
            _site_entries("styles", site.styles, site_dir),
            dependencies=(f"{site_dir}/styles/includes/*.scss",),
        ),
        AssetClass.SCRIPTS: AssetGlobs(
            PRIMARY_UNITS[AssetClass.SCRIPTS],
            _site_entries("scripts", site.scripts, site_dir),
        ),
    }

    vendor: Dict[AssetClass, AssetGlobs] = {}
    vendor_dir = _relative(config.vendor_root, root)
    for asset_class, unit in VENDOR_UNITS.items():
        patterns: List[str] = []
        for name in site.vendors:
            spec = config.vendor(name)
            if spec is None:
                continue
            for item in spec.paths_for(asset_class.value):
                patterns.append(f"{vendor_dir}/{item.lstrip('/')}")
        vendor[asset_class] = AssetGlobs(unit, tuple(patterns))

    return GlobSet(project_root=root, primary=primary, vendor=vendor)


def _site_entries(directory: str, names: Sequence[str], site_dir: str) -> Tuple[str, ...]:
    patterns = [f"{directory}/{name}" for name in names]
    patterns.append(f"{site_dir}/{directory}/*.*")
    return tuple(patterns)


def expand(patterns: Sequence[str], root: Path) -> List[SourceFile]:
    """Resolve patterns into files in declaration order, first match wins."""
    results: List[SourceFile] = []
    seen: Set[Path] = set()
    for pattern_index, pattern in enumerate(patterns):
        for match_index, path in enumerate(_matches(pattern, root)):
            resolved = path.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            results.append(
                SourceFile(
                    path=resolved,
                    input_id=input_id_for(resolved, root),
                    order=(pattern_index, match_index),
                )
            )
    return results


def matches_any(path: Path, patterns: Iterable[str], root: Path) -> bool:
    """Return True when ``path`` would be selected by one of ``patterns``."""
    candidate = input_id_for(path, root)
    for pattern in patterns:
        normalised = pattern if os.path.isabs(pattern) else pattern.removeprefix("./")
        if fnmatchcase(candidate, normalised):
            return True
    return False


def input_id_for(path: Path, root: Path) -> str:
    """Stable identity for a source: project-relative POSIX path when possible."""
    resolved = path.resolve()
    try:
        return resolved.relative_to(root.resolve()).as_posix()
    except ValueError:
        return resolved.as_posix()


def has_glob_chars(pattern: str) -> bool:
    return any(char in _GLOB_CHARS for char in pattern)


def _matches(pattern: str, root: Path) -> List[Path]:
    full = pattern if os.path.isabs(pattern) else str(root / pattern)
    if not has_glob_chars(pattern):
        candidate = Path(full)
        return [candidate] if candidate.is_file() else []
    found = sorted(_glob.glob(full, recursive=True))
    return [Path(item) for item in found if os.path.isfile(item)]


def _relative(path: Path, root: Path) -> str:
    try:
        return path.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return path.resolve().as_posix()


__all__ = [
    "GlobSet",
    "PRIMARY_UNITS",
    "VENDOR_UNITS",
    "build_globs",
    "expand",
    "has_glob_chars",
    "input_id_for",
    "matches_any",
]
