"""Script transforms: a comment-aware minifier and a structural linter."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from ..models import Asset
from .base import LintError, LintIssue, StageOptions, Transform, decode

_REGEX_KEYWORDS = {
    "await",
    "case",
    "delete",
    "do",
    "else",
    "in",
    "instanceof",
    "new",
    "return",
    "throw",
    "typeof",
    "void",
    "yield",
}
_REGEX_PRECEDERS = set("(,=:[!&|?{};+-*%<>~^")
_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {value: key for key, value in _OPENERS.items()}

_HSPACE = re.compile(r"[ \t\f\v]+")
_EDGE_SPACE = re.compile(r" ?\n ?")
_BLANK_LINES = re.compile(r"\n{2,}")


@dataclass(frozen=True)
class Token:
    kind: str  # code | string | template | regex | comment
    text: str
    line: int
    closed: bool = True


class _Scanner:
    """Splits JavaScript source into code, literal and comment tokens."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0
        self.line = 1
        self.tokens: List[Token] = []
        self._code_start = 0
        self._code_line = 1
        self._prev = ""

    def scan(self) -> List[Token]:
        text = self.text
        length = len(text)
        while self.pos < length:
            char = text[self.pos]
            nxt = text[self.pos + 1 : self.pos + 2]
            if char == "/" and nxt == "/":
                self._literal("comment", self._line_comment_end())
            elif char == "/" and nxt == "*":
                end = text.find("*/", self.pos + 2)
                self._literal("comment", length if end == -1 else end + 2, closed=end != -1)
            elif char in "'\"":
                end, closed = self._string_end(char)
                self._literal("string", end, closed=closed)
            elif char == "`":
                end, closed = self._delimited_end("`", allow_newline=True)
                self._literal("template", end, closed=closed)
            elif char == "/" and self._regex_allowed():
                end, closed = self._regex_end()
                self._literal("regex", end, closed=closed)
            elif char.isalnum() or char in "_$":
                start = self.pos
                while self.pos < length and (text[self.pos].isalnum() or text[self.pos] in "_$"):
                    self.pos += 1
                self._prev = text[start : self.pos]
            else:
                if char == "\n":
                    self.line += 1
                elif not char.isspace():
                    self._prev = char
                self.pos += 1
        self._flush_code(length)
        return self.tokens

    def _regex_allowed(self) -> bool:
        return self._prev == "" or self._prev in _REGEX_PRECEDERS or self._prev in _REGEX_KEYWORDS

    def _line_comment_end(self) -> int:
        end = self.text.find("\n", self.pos)
        return len(self.text) if end == -1 else end

    def _string_end(self, quote: str) -> Tuple[int, bool]:
        return self._delimited_end(quote, allow_newline=False)

    def _delimited_end(self, quote: str, *, allow_newline: bool) -> Tuple[int, bool]:
        index = self.pos + 1
        text = self.text
        while index < len(text):
            char = text[index]
            if char == "\\":
                index += 2
                continue
            if char == quote:
                return index + 1, True
            if char == "\n" and not allow_newline:
                return index, False
            index += 1
        return len(text), False

    def _regex_end(self) -> Tuple[int, bool]:
        index = self.pos + 1
        text = self.text
        in_class = False
        while index < len(text):
            char = text[index]
            if char == "\\":
                index += 2
                continue
            if char == "\n":
                return index, False
            if char == "[":
                in_class = True
            elif char == "]":
                in_class = False
            elif char == "/" and not in_class:
                index += 1
                while index < len(text) and text[index].isalpha():
                    index += 1
                return index, True
            index += 1
        return len(text), False

    def _literal(self, kind: str, end: int, *, closed: bool = True) -> None:
        self._flush_code(self.pos)
        chunk = self.text[self.pos : end]
        self.tokens.append(Token(kind, chunk, self.line, closed))
        self.line += chunk.count("\n")
        self.pos = end
        self._code_start = end
        self._code_line = self.line
        if kind != "comment":
            self._prev = "value"

    def _flush_code(self, end: int) -> None:
        if end > self._code_start:
            self.tokens.append(Token("code", self.text[self._code_start : end], self._code_line))
        self._code_start = end
        self._code_line = self.line


def tokenize(text: str) -> List[Token]:
    return _Scanner(text).scan()


def minify_js(text: str, *, beautify: bool = False) -> str:
    """Drop comments (except ``/*!`` notices) and squeeze whitespace, keeping line breaks."""
    pieces: List[Tuple[bool, str]] = []
    for token in tokenize(text):
        if token.kind == "comment" and not token.text.startswith("/*!"):
            replacement = "\n" if "\n" in token.text else ("" if token.text.startswith("//") else " ")
            _append(pieces, True, replacement)
        else:
            _append(pieces, token.kind == "code", token.text)

    output = []
    for is_code, chunk in pieces:
        if is_code:
            chunk = _BLANK_LINES.sub("\n\n", chunk) if beautify else _squeeze(chunk)
        output.append(chunk)
    result = "".join(output)
    return (result.rstrip() if beautify else result.strip()) + "\n"


def _append(pieces: List[Tuple[bool, str]], is_code: bool, text: str) -> None:
    if pieces and is_code and pieces[-1][0]:
        pieces[-1] = (True, pieces[-1][1] + text)
    else:
        pieces.append((is_code, text))


def _squeeze(code: str) -> str:
    code = _HSPACE.sub(" ", code)
    code = _EDGE_SPACE.sub("\n", code)
    return _BLANK_LINES.sub("\n", code)


def lint_js(text: str, source: str) -> List[LintIssue]:
    """Report unterminated literals and unbalanced brackets."""
    issues: List[LintIssue] = []
    stack: List[Tuple[str, int]] = []
    for token in tokenize(text):
        if not token.closed:
            issues.append(LintIssue(source, token.line, f"unterminated {token.kind}"))
            continue
        if token.kind != "code":
            continue
        line = token.line
        for char in token.text:
            if char == "\n":
                line += 1
            elif char in _OPENERS:
                stack.append((char, line))
            elif char in _CLOSERS:
                if not stack:
                    issues.append(LintIssue(source, line, f"unexpected '{char}'"))
                elif stack[-1][0] != _CLOSERS[char]:
                    opener, opened = stack.pop()
                    issues.append(
                        LintIssue(
                            source,
                            line,
                            f"expected '{_OPENERS[opener]}' to close '{opener}' from line {opened}, found '{char}'",
                        )
                    )
                else:
                    stack.pop()
    for opener, opened in stack:
        issues.append(LintIssue(source, opened, f"unclosed '{opener}'"))
    return issues


class JsMinifier(Transform):
    name = "minify-scripts"

    def supports(self, asset: Asset, options: StageOptions) -> bool:
        return asset.suffix in {".js", ".mjs"}

    def apply(self, asset: Asset, options: StageOptions) -> Asset:
        text = decode(asset)
        return asset.with_content(minify_js(text, beautify=options.beautify_output).encode("utf-8"))


class ScriptLinter:
    """Static analysis pass run before script bundles are emitted."""

    name = "lint-scripts"

    def check(self, assets: Sequence[Asset]) -> List[LintIssue]:
        issues: List[LintIssue] = []
        for asset in assets:
            if asset.suffix not in {".js", ".mjs"}:
                continue
            source = asset.source_name or str(asset.source)
            try:
                text = asset.content.decode("utf-8")
            except UnicodeDecodeError:
                issues.append(LintIssue(source, 1, "not valid UTF-8 text"))
                continue
            issues.extend(lint_js(text, source))
        return issues

    def run(self, assets: Sequence[Asset]) -> None:
        issues = self.check(assets)
        if issues:
            raise LintError(issues)


__all__ = ["JsMinifier", "ScriptLinter", "Token", "lint_js", "minify_js", "tokenize"]
