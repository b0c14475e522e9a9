"""Base classes for transform plugins and the stage wrapper that applies them."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import FrozenSet, List, Sequence

from ..models import Asset, AssetClass, BundleKind


class TransformError(RuntimeError):
    """Raised when a single input cannot be transformed."""

    def __init__(self, message: str, *, source: str | None = None, stage: str | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        prefix = ": ".join(part for part in (self.stage, self.source) if part)
        return f"{prefix}: {message}" if prefix else message


@dataclass(frozen=True)
class LintIssue:
    """A single static-analysis finding."""

    source: str
    line: int
    message: str

    def format(self) -> str:
        return f"{self.source}:{self.line}: {self.message}"


class LintError(RuntimeError):
    """Raised when script static analysis reports problems."""

    def __init__(self, issues: Sequence[LintIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(issue.format() for issue in self.issues[:5])
        more = len(self.issues) - 5
        if more > 0:
            summary += f" (+{more} more)"
        super().__init__(f"{len(self.issues)} lint issue(s): {summary}")


@dataclass(frozen=True)
class StageOptions:
    """Per-run options handed to every transform."""

    asset_class: AssetClass
    kind: BundleKind
    production: bool = False
    beautify: bool = False
    strict: bool = False

    @property
    def beautify_output(self) -> bool:
        """Vendor bundles are never beautified."""
        return self.beautify and self.kind is BundleKind.PRIMARY


class Transform(ABC):
    """Contract for byte-level transforms applied to one asset at a time."""

    name: str = "transform"

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        """Return False to pass the asset through unchanged."""
        return True

    @abstractmethod
    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        """Return the transformed asset or raise TransformError."""


@dataclass
class StageOutcome:
    outputs: List[Asset] = field(default_factory=list)
    errors: List[TransformError] = field(default_factory=list)


@dataclass(frozen=True)
class TransformStage:
    """A named transform plus the bundle kinds for which it is a no-op."""

    name: str
    transform: Transform
    skip_kinds: FrozenSet[BundleKind] = frozenset()

    def enabled_for(self, kind: BundleKind) -> bool:
        return kind not in self.skip_kinds

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        if not self.enabled_for(options.kind) or not self.transform.supports(asset, options):
            return asset
        try:
            return self.transform.apply(asset, options)
        except TransformError as exc:
            if exc.stage is None:
                exc.stage = self.name
            if exc.source is None:
                exc.source = asset.source_name or str(asset.source)
            raise

    def run(self, assets: Sequence[Asset], options: StageOptions) -> StageOutcome:
        """Apply to each asset; failures drop that asset and keep its siblings."""
        outcome = StageOutcome()
        for asset in assets:
            try:
                outcome.outputs.append(self.apply(asset, options))
            except TransformError as exc:
                outcome.errors.append(exc)
        return outcome


def decode(asset: Asset) -> str:
    try:
        return asset.content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise TransformError(f"not valid UTF-8 text ({exc.reason})") from exc


__all__ = [
    "LintError",
    "LintIssue",
    "StageOptions",
    "StageOutcome",
    "Transform",
    "TransformError",
    "TransformStage",
    "decode",
]
