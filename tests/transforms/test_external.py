"""Tests for command-backed transforms."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Dict, List

import pytest

from sitepipe.models import Asset, AssetClass, BundleKind
from sitepipe.transforms import CommandTransform, StageOptions, TransformError

OPTIONS = StageOptions(asset_class=AssetClass.STYLES, kind=BundleKind.PRIMARY)


class _Runner:
    def __init__(self, *, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"", raises: Exception | None = None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, argv: List[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append({"argv": argv, **kwargs})
        if self.raises is not None:
            raise self.raises
        return subprocess.CompletedProcess(argv, self.returncode, stdout=self.stdout, stderr=self.stderr)


def _asset() -> Asset:
    return Asset(
        source=Path("/site/styles/main.scss"),
        name="main.scss",
        content=b"$c: red; a { color: $c; }",
        source_name="works/blog/styles/main.scss",
    )


def test_command_transform_pipes_content_and_renames() -> None:
    runner = _Runner(stdout=b"a{color:red}")
    transform = CommandTransform(
        "compile-styles",
        ["sass", "--stdin", "--load-path={dir}", "--name={name}"],
        suffixes=[".scss"],
        rename_to=".css",
        runner=runner,
    )

    result = transform.apply(_asset(), OPTIONS)

    assert result.name == "main.css"
    assert result.content == b"a{color:red}"
    call = runner.calls[0]
    assert call["argv"] == ["sass", "--stdin", "--load-path=/site/styles", "--name=main.scss"]
    assert call["input"] == b"$c: red; a { color: $c; }"


def test_command_transform_reports_first_stderr_line() -> None:
    runner = _Runner(returncode=65, stderr=b"Error: Undefined variable.\n  line 1\n")
    transform = CommandTransform("compile-styles", ["sass"], runner=runner)

    with pytest.raises(TransformError, match="sass failed: Error: Undefined variable."):
        transform.apply(_asset(), OPTIONS)


def test_command_transform_reports_missing_tool() -> None:
    transform = CommandTransform("compile-styles", ["sass"], runner=_Runner(raises=FileNotFoundError("sass")))

    with pytest.raises(TransformError, match="command not found: sass"):
        transform.apply(_asset(), OPTIONS)


def test_command_transform_reports_timeouts() -> None:
    runner = _Runner(raises=subprocess.TimeoutExpired(["sass"], 5))
    transform = CommandTransform("compile-styles", ["sass"], timeout=5, runner=runner)

    with pytest.raises(TransformError, match="timed out after 5s"):
        transform.apply(_asset(), OPTIONS)


def test_command_transform_requires_a_command() -> None:
    with pytest.raises(ValueError):
        CommandTransform("empty", [])


def test_command_transform_keeps_literal_braces() -> None:
    runner = _Runner(stdout=b"ok")
    transform = CommandTransform(
        "minify-scripts",
        ["terser", "--define={DEBUG:false}", "{}", "--source={path}"],
        runner=runner,
    )

    transform.apply(_asset(), OPTIONS)

    assert runner.calls[0]["argv"] == [
        "terser",
        "--define={DEBUG:false}",
        "{}",
        "--source=/site/styles/main.scss",
    ]
