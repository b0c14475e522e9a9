"""Transforms backed by external command-line tools."""

from __future__ import annotations

import re
import subprocess
from typing import Callable, Optional, Sequence

from ..models import Asset
from .base import StageOptions, Transform, TransformError

Runner = Callable[..., subprocess.CompletedProcess]

_PLACEHOLDER = re.compile(r"\{(path|dir|name)\}")


class CommandTransform(Transform):
    """Pipe an asset through a tool via stdin/stdout.

    Arguments may use ``{path}`` (source file), ``{dir}`` (its directory) and
    ``{name}`` (current output name) placeholders; any other braces are passed
    through literally.
    """

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        *,
        suffixes: Sequence[str] | None = None,
        rename_to: Optional[str] = None,
        timeout: float = 120.0,
        runner: Runner | None = None,
    ) -> None:
        if not argv:
            raise ValueError("CommandTransform requires a command")
        self.name = name
        self.argv = list(argv)
        self.suffixes = {suffix.lower() for suffix in suffixes} if suffixes else None
        self.rename_to = rename_to
        self.timeout = timeout
        self._runner = runner or subprocess.run

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        return self.suffixes is None or asset.suffix in self.suffixes

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        values = {"path": str(asset.source), "dir": str(asset.source.parent), "name": asset.name}
        argv = [_PLACEHOLDER.sub(lambda match: values[match.group(1)], part) for part in self.argv]
        try:
            completed = self._runner(
                argv,
                input=asset.content,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise TransformError(f"command not found: {argv[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransformError(f"{argv[0]} timed out after {self.timeout:.0f}s") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or b"").decode("utf-8", errors="replace").strip()
            detail = stderr.splitlines()[0] if stderr else f"exit status {completed.returncode}"
            raise TransformError(f"{argv[0]} failed: {detail}")

        name = asset.name
        if self.rename_to:
            stem = name.rsplit(".", 1)[0] if "." in name else name
            name = f"{stem}{self.rename_to}"
        return asset.with_content(completed.stdout or b"", name=name)


__all__ = ["CommandTransform"]
