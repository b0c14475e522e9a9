"""Tests for stage assembly and transform discovery."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List

import pytest

import sitepipe.transforms as transforms_module
from sitepipe.globs import PRIMARY_UNITS, VENDOR_UNITS
from sitepipe.models import Asset, AssetClass, BundleKind
from sitepipe.transforms import (
    CommandTransform,
    StageFactory,
    TransformError,
    TransformStage,
    discover_transforms,
)
from tests._fixtures.site_builder import SiteBuilder
from tests._fixtures.transforms import RecordingTransform


class _EntryPoint:
    def __init__(self, name: str, target: Any) -> None:
        self.name = name
        self._target = target

    def load(self) -> Any:
        return self._target


def _factory(site_builder: SiteBuilder, **kwargs: Any) -> StageFactory:
    site_builder.project("blog", config=kwargs.pop("config", None))
    return StageFactory(site_builder.load(), kwargs.pop("overrides", None), discover=False)


def test_style_stages_are_fixed_and_compile_skips_vendor(site_builder: SiteBuilder) -> None:
    factory = _factory(site_builder)

    stages = factory.stages_for(PRIMARY_UNITS[AssetClass.STYLES])

    assert [stage.name for stage in stages] == ["compile-styles", "minify-styles", "prefix-styles"]
    assert stages[0].enabled_for(BundleKind.PRIMARY)
    assert not stages[0].enabled_for(BundleKind.VENDOR)
    assert [stage.name for stage in factory.stages_for(VENDOR_UNITS[AssetClass.SCRIPTS])] == ["minify-scripts"]
    assert factory.stages_for(PRIMARY_UNITS[AssetClass.FONTS]) == []


def test_explicit_overrides_replace_stage_transforms(site_builder: SiteBuilder) -> None:
    recording = RecordingTransform("minify-scripts")
    factory = _factory(site_builder, overrides={"minify-scripts": recording})

    assert factory.transform("minify-scripts") is recording


def test_unknown_override_is_rejected(site_builder: SiteBuilder) -> None:
    with pytest.raises(ValueError, match="Unknown transform stage"):
        _factory(site_builder, overrides={"gzip": RecordingTransform("gzip")})


def test_configured_command_replaces_builtin_minifier(site_builder: SiteBuilder) -> None:
    factory = _factory(site_builder, config={"transforms": {"minify-scripts": ["terser", "--compress"]}})

    transform = factory.transform("minify-scripts")

    assert isinstance(transform, CommandTransform)
    assert transform.argv == ["terser", "--compress"]


def test_options_carry_bundle_kind_and_mode(site_builder: SiteBuilder) -> None:
    site_builder.project("blog", target={"beautify": True})
    factory = StageFactory(site_builder.load(), discover=False)

    options = factory.options_for(VENDOR_UNITS[AssetClass.STYLES])

    assert options.kind is BundleKind.VENDOR
    assert options.beautify is True
    assert options.beautify_output is False


def test_discover_transforms_instantiates_classes(monkeypatch: pytest.MonkeyPatch) -> None:
    class Upper(RecordingTransform):
        def __init__(self) -> None:
            super().__init__("minify-html", rewrite=bytes.upper)

    monkeypatch.setattr(
        transforms_module,
        "_iter_entry_points",
        lambda: [_EntryPoint("minify-html", Upper)],
    )

    found = discover_transforms()

    assert isinstance(found["minify-html"], Upper)


def test_discover_transforms_rejects_unknown_stage(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        transforms_module,
        "_iter_entry_points",
        lambda: [_EntryPoint("brotli", RecordingTransform)],
    )

    with pytest.raises(ValueError, match="brotli"):
        discover_transforms()


def test_stage_annotates_errors_and_isolates_failures() -> None:
    failing = RecordingTransform("minify-styles", fail_marker=b"bad")
    stage = TransformStage("minify-styles", failing)
    options = transforms_module.StageOptions(asset_class=AssetClass.STYLES, kind=BundleKind.PRIMARY)
    assets: List[Asset] = [
        Asset(source=Path("/s/a.css"), name="a.css", content=b"ok", source_name="a.css"),
        Asset(source=Path("/s/b.css"), name="b.css", content=b"bad", source_name="b.css"),
        Asset(source=Path("/s/c.css"), name="c.css", content=b"ok", source_name="c.css"),
    ]

    outcome = stage.run(assets, options)

    assert [asset.name for asset in outcome.outputs] == ["a.css", "c.css"]
    assert len(outcome.errors) == 1
    error = outcome.errors[0]
    assert isinstance(error, TransformError)
    assert (error.stage, error.source) == ("minify-styles", "b.css")
    assert str(error) == "minify-styles: b.css: refused input"
