"""Recording transform doubles."""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from sitepipe.models import Asset
from sitepipe.transforms import StageOptions, Transform, TransformError


class RecordingTransform(Transform):
    """Applies ``rewrite`` and remembers which inputs it saw."""

    def __init__(
        self,
        name: str = "recording",
        *,
        suffixes: Optional[Sequence[str]] = None,
        rename_to: Optional[str] = None,
        rewrite: Optional[Callable[[bytes], bytes]] = None,
        fail_marker: Optional[bytes] = None,
    ) -> None:
        self.name = name
        self.suffixes = tuple(suffixes) if suffixes else None
        self.rename_to = rename_to
        self.rewrite = rewrite
        self.fail_marker = fail_marker
        self.calls: List[str] = []

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        return self.suffixes is None or asset.suffix in self.suffixes

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        self.calls.append(asset.source_name)
        if self.fail_marker is not None and self.fail_marker in asset.content:
            raise TransformError("refused input")
        content = self.rewrite(asset.content) if self.rewrite else asset.content
        name = None
        if self.rename_to:
            name = asset.name.rsplit(".", 1)[0] + self.rename_to
        return asset.with_content(content, name=name)


def fake_sass() -> RecordingTransform:
    """Stand-in for the sass compiler: renames to .css and keeps the text."""
    return RecordingTransform("compile-styles", suffixes=(".scss", ".sass"), rename_to=".css")


__all__ = ["RecordingTransform", "fake_sass"]
