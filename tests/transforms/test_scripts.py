"""Tests for the script minifier and linter."""

from __future__ import annotations

from pathlib import Path

import pytest

from sitepipe.models import Asset, AssetClass, BundleKind
from sitepipe.transforms import LintError, ScriptLinter, StageOptions
from sitepipe.transforms.scripts import JsMinifier, lint_js, minify_js, tokenize


def _asset(text: str, name: str = "app.js") -> Asset:
    return Asset(source=Path("/site/scripts") / name, name=name, content=text.encode("utf-8"), source_name=name)


def test_minify_js_strips_comments_and_keeps_literals() -> None:
    text = (
        "var a = 1;  // note\n"
        "var s = 'http://x';\n"
        "/* block */\n"
        "var r = /ab+c/g;\n"
    )

    assert minify_js(text) == "var a = 1;\nvar s = 'http://x';\nvar r = /ab+c/g;\n"


def test_minify_js_preserves_license_comments() -> None:
    assert minify_js("/*! keep */\nvar a;\n") == "/*! keep */\nvar a;\n"


def test_division_is_not_mistaken_for_a_regex() -> None:
    kinds = [token.kind for token in tokenize("var x = a / b / c;")]

    assert kinds == ["code"]


def test_lint_reports_mismatched_and_unclosed_brackets() -> None:
    issues = lint_js("function f() {\n  return [1, 2;\n}\n", "app.js")

    messages = [(issue.line, issue.message) for issue in issues]
    assert (3, "expected ']' to close '[' from line 2, found '}'") in messages
    assert (1, "unclosed '{'") in messages


def test_lint_reports_unterminated_strings() -> None:
    issues = lint_js("var s = 'oops;\n", "app.js")

    assert [issue.format() for issue in issues] == ["app.js:1: unterminated string"]


def test_script_linter_raises_with_every_issue() -> None:
    linter = ScriptLinter()
    good = _asset("function ok() { return 1; }\n", "ok.js")
    bad = _asset("if (x {\n", "bad.js")

    with pytest.raises(LintError) as excinfo:
        linter.run([good, bad])

    assert {issue.source for issue in excinfo.value.issues} == {"bad.js"}


def test_js_minifier_beautifies_primary_bundles_only() -> None:
    text = "var a = 1;\n\n\n\nvar b   = 2;\n"
    minifier = JsMinifier()

    primary = minifier.apply(
        _asset(text), StageOptions(asset_class=AssetClass.SCRIPTS, kind=BundleKind.PRIMARY, beautify=True)
    )
    vendor = minifier.apply(
        _asset(text), StageOptions(asset_class=AssetClass.SCRIPTS, kind=BundleKind.VENDOR, beautify=True)
    )

    assert primary.content == b"var a = 1;\n\nvar b   = 2;\n"
    assert vendor.content == b"var a = 1;\nvar b = 2;\n"
