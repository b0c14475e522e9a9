"""Transform plugin implementations and per-unit stage assembly."""

from __future__ import annotations

from importlib import metadata
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from ..config import BuildConfig
from ..logging import get_logger
from ..models import AssetClass, BundleKind, OutputUnit
from .base import (
    LintError,
    LintIssue,
    StageOptions,
    StageOutcome,
    Transform,
    TransformError,
    TransformStage,
)
from .external import CommandTransform
from .markup import HtmlMinifier, ImageOptimizer
from .scripts import JsMinifier, ScriptLinter
from .styles import CssMinifier, StyleCompiler, StylePrefixer

_ENTRY_POINT_GROUP = "sitepipe.transforms"

COMPILE_STYLES = "compile-styles"
MINIFY_STYLES = "minify-styles"
PREFIX_STYLES = "prefix-styles"
MINIFY_SCRIPTS = "minify-scripts"
MINIFY_HTML = "minify-html"
OPTIMIZE_IMAGES = "optimize-images"

STAGE_NAMES = (
    COMPILE_STYLES,
    MINIFY_STYLES,
    PREFIX_STYLES,
    MINIFY_SCRIPTS,
    MINIFY_HTML,
    OPTIMIZE_IMAGES,
)

_VENDOR_ONLY_SKIP = frozenset({BundleKind.VENDOR})


class StageFactory:
    """Builds the fixed transform stage list for each output unit.

    Overrides are looked up by stage name: entry points first, then
    ``transforms:`` commands from configuration, then explicit overrides.
    """

    def __init__(
        self,
        config: BuildConfig,
        overrides: Optional[Mapping[str, Transform]] = None,
        *,
        discover: bool = True,
    ) -> None:
        self.config = config
        self.logger = get_logger("transforms")
        self._transforms: Dict[str, Transform] = {
            COMPILE_STYLES: StyleCompiler(config.command(COMPILE_STYLES)),
            MINIFY_STYLES: CssMinifier(),
            PREFIX_STYLES: StylePrefixer(config.command(PREFIX_STYLES)),
            MINIFY_SCRIPTS: JsMinifier(),
            MINIFY_HTML: HtmlMinifier(),
            OPTIMIZE_IMAGES: ImageOptimizer(config.command(OPTIMIZE_IMAGES)),
        }
        if discover:
            for name, transform in discover_transforms().items():
                self.logger.debug("Using plugin transform for stage %s", name)
                self._transforms[name] = transform
        for name in (MINIFY_STYLES, MINIFY_SCRIPTS, MINIFY_HTML):
            argv = config.command(name)
            if argv:
                self._transforms[name] = CommandTransform(name, argv)
        for name, transform in (overrides or {}).items():
            if name not in STAGE_NAMES:
                raise ValueError(f"Unknown transform stage: {name}")
            self._transforms[name] = transform
        self._linter = ScriptLinter()

    def transform(self, name: str) -> Transform:
        return self._transforms[name]

    @property
    def linter(self) -> ScriptLinter:
        return self._linter

    def stages_for(self, unit: OutputUnit) -> List[TransformStage]:
        asset_class = unit.asset_class
        if asset_class is AssetClass.STYLES:
            return [
                TransformStage(COMPILE_STYLES, self._transforms[COMPILE_STYLES], _VENDOR_ONLY_SKIP),
                TransformStage(MINIFY_STYLES, self._transforms[MINIFY_STYLES]),
                TransformStage(PREFIX_STYLES, self._transforms[PREFIX_STYLES]),
            ]
        if asset_class is AssetClass.SCRIPTS:
            return [TransformStage(MINIFY_SCRIPTS, self._transforms[MINIFY_SCRIPTS])]
        if asset_class is AssetClass.HTML:
            return [TransformStage(MINIFY_HTML, self._transforms[MINIFY_HTML])]
        if asset_class is AssetClass.IMAGES:
            return [TransformStage(OPTIMIZE_IMAGES, self._transforms[OPTIMIZE_IMAGES])]
        return []

    def options_for(self, unit: OutputUnit) -> StageOptions:
        return StageOptions(
            asset_class=unit.asset_class,
            kind=unit.kind,
            production=self.config.production,
            beautify=self.config.beautify,
            strict=self.config.is_strict(unit.key),
        )


def discover_transforms() -> Dict[str, Transform]:
    """Return transforms registered under the ``sitepipe.transforms`` entry-point group."""
    found: Dict[str, Transform] = {}
    for entry in _iter_entry_points():
        name = entry.name
        if name not in STAGE_NAMES:
            raise ValueError(f"Transform entry point '{name}' does not name a known stage")
        try:
            loaded = entry.load()
        except Exception as exc:  # pragma: no cover - plugin import failures vary
            raise RuntimeError(f"Failed to load transform entry point '{name}': {exc}") from exc
        found[name] = _coerce_transform(loaded)
    return found


def _coerce_transform(obj: object) -> Transform:
    if isinstance(obj, Transform):
        return obj
    if isinstance(obj, type) and issubclass(obj, Transform):
        return obj()
    if callable(obj):
        factory: Callable[[], object] = obj  # type: ignore[assignment]
        instance = factory()
        if isinstance(instance, Transform):
            return instance
    raise TypeError("Transform entry point must be a Transform subclass or factory")


def _iter_entry_points() -> Iterable[metadata.EntryPoint]:
    return metadata.entry_points().select(group=_ENTRY_POINT_GROUP)


__all__ = [
    "COMPILE_STYLES",
    "CommandTransform",
    "LintError",
    "LintIssue",
    "MINIFY_HTML",
    "MINIFY_SCRIPTS",
    "MINIFY_STYLES",
    "OPTIMIZE_IMAGES",
    "PREFIX_STYLES",
    "STAGE_NAMES",
    "ScriptLinter",
    "StageFactory",
    "StageOptions",
    "StageOutcome",
    "Transform",
    "TransformError",
    "TransformStage",
    "discover_transforms",
]
