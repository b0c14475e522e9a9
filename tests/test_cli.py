"""CLI parser and command behaviour tests."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator

import pytest

import sitepipe.cli as cli
from sitepipe.cli import _build_parser, main
from tests._fixtures.site_builder import SiteBuilder


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in ("SITEPIPE_ENV", "NODE_ENV"):
        monkeypatch.delenv(key, raising=False)
    yield
    # main() installs handlers bound to the captured streams.
    logger = logging.getLogger("sitepipe")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def _simple_site(site_builder: SiteBuilder, script: str = "var a = 1;\n") -> None:
    site_builder.project("blog")
    site_builder.write(
        {
            "works/blog/styles/main.css": "body {\n  margin: 0;\n}\n",
            "works/blog/scripts/app.js": script,
            "works/blog/index.html": "<p>hello</p>\n",
        }
    )


def test_cli_accepts_verbose_before_command() -> None:
    args = _build_parser().parse_args(["--verbose", "build"])
    assert args.verbose is True
    assert args.command == "build"


def test_cli_accepts_verbose_after_command() -> None:
    args = _build_parser().parse_args(["start", "--verbose"])
    assert args.verbose is True
    assert args.command == "start"


def test_cli_start_flags() -> None:
    args = _build_parser().parse_args(["start", "--prod", "--port", "8080", "--no-watch"])
    assert args.prod is True
    assert args.port == 8080
    assert args.no_watch is True


def test_cli_prod_defaults_to_unset() -> None:
    args = _build_parser().parse_args(["build"])
    assert args.prod is None


def test_cli_new_takes_optional_name() -> None:
    args = _build_parser().parse_args(["new", "blog"])
    assert args.origin == "blog"
    assert args.name is None


def test_new_without_name_exits_with_error(site_builder: SiteBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    site_builder.project("blog")

    with pytest.raises(SystemExit) as excinfo:
        main(["--root", str(site_builder.root), "new", "blog"])

    assert excinfo.value.code == 1
    assert "name for the new site" in capsys.readouterr().err


def test_new_creates_site(site_builder: SiteBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    site_builder.project("blog")

    main(["--root", str(site_builder.root), "new", "blog", "shop"])

    assert site_builder.path("works/shop/config.yml").is_file()
    assert "Site created at works/shop" in capsys.readouterr().out


def test_new_uses_the_configured_works_dir(site_builder: SiteBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    site_builder.project("blog", config={"worksDir": "sites"})
    site_builder.write({"sites/blog/index.html": "<p>blog</p>\n"})

    main(["--root", str(site_builder.root), "new", "blog", "shop"])

    assert site_builder.path("sites/shop/index.html").read_text(encoding="utf-8") == "<p>blog</p>\n"
    assert not site_builder.path("works/shop").exists()
    assert "Site created at sites/shop" in capsys.readouterr().out


def test_build_writes_outputs(site_builder: SiteBuilder, capsys: pytest.CaptureFixture[str], tmp_path: Path) -> None:
    _simple_site(site_builder)
    log_file = tmp_path / "logs" / "build.log"

    main(["--root", str(site_builder.root), "--log-file", str(log_file), "build", "--prod"])

    out = site_builder.path("dist/blog")
    assert (out / "css" / "main.css").read_text(encoding="utf-8") == "body{margin:0}"
    assert (out / "js" / "main.js").is_file()
    assert not (out / "js" / "main.js.map").exists()
    assert (out / "index.html").is_file()
    assert "Site built at dist/blog" in capsys.readouterr().out
    assert "Building site 'blog'" in log_file.read_text(encoding="utf-8")


def test_build_with_lint_problems_exits_non_zero(site_builder: SiteBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    _simple_site(site_builder, script="function broken( {\n")

    with pytest.raises(SystemExit) as excinfo:
        main(["--root", str(site_builder.root), "build"])

    assert excinfo.value.code == 1
    assert "problem(s)" in capsys.readouterr().err
    assert site_builder.path("dist/blog/css/main.css").is_file()


def test_config_errors_exit_before_building(site_builder: SiteBuilder, capsys: pytest.CaptureFixture[str]) -> None:
    site_builder.project("blog", vendors=["missing"])

    with pytest.raises(SystemExit) as excinfo:
        main(["--root", str(site_builder.root), "build"])

    assert excinfo.value.code == 1
    assert "unknown vendors: missing" in capsys.readouterr().err
    assert not site_builder.path("dist").exists()


def test_start_disables_watch_in_production(site_builder: SiteBuilder, monkeypatch: pytest.MonkeyPatch) -> None:
    _simple_site(site_builder)
    calls: Dict[str, Any] = {}

    def fake_serve(config, *, watch):
        calls["port"] = config.port
        calls["watch"] = watch

    monkeypatch.setattr(cli, "_serve", fake_serve)

    main(["--root", str(site_builder.root), "start", "--prod", "--port", "9100"])

    assert calls == {"port": 9100, "watch": False}


def test_start_failure_is_reported(site_builder: SiteBuilder, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    _simple_site(site_builder)

    def fake_serve(config, *, watch):
        raise RuntimeError("port in use")

    monkeypatch.setattr(cli, "_serve", fake_serve)

    with pytest.raises(SystemExit) as excinfo:
        main(["--root", str(site_builder.root), "start"])

    assert excinfo.value.code == 1
    assert "sitepipe start failed: port in use" in capsys.readouterr().err
