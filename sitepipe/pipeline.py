"""Incremental build pipelines: change detection, transforms, cache and emit."""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .config import BuildConfig
from .globs import expand, input_id_for
from .logging import get_logger
from .models import Asset, AssetClass, AssetGlobs, Fingerprint, OutputUnit, SourceFile
from .stores import AssetCache, CacheEntry
from .transforms import StageOptions, TransformError, TransformStage

_RETRY_DELAY = 0.1
_SOURCE_ROOTS = {AssetClass.STYLES: "css-source", AssetClass.SCRIPTS: "js-source"}
_MAP_COMMENTS = {
    AssetClass.STYLES: "/*# sourceMappingURL={name} */",
    AssetClass.SCRIPTS: "//# sourceMappingURL={name}",
}


@dataclass
class PipelineResult:
    """Outcome of one pipeline invocation."""

    unit: OutputUnit
    processed: List[str] = field(default_factory=list)
    reused: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    written: List[Path] = field(default_factory=list)
    deleted: List[Path] = field(default_factory=list)
    errors: List[TransformError] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


class AssetPipeline:
    """Builds one output unit incrementally against a shared AssetCache."""

    def __init__(
        self,
        unit: OutputUnit,
        globs: AssetGlobs,
        stages: Sequence[TransformStage],
        cache: AssetCache,
        config: BuildConfig,
        *,
        options: Optional[StageOptions] = None,
    ) -> None:
        self.unit = unit
        self.globs = globs
        self.stages = list(stages)
        self.cache = cache
        self.config = config
        self.options = options or StageOptions(
            asset_class=unit.asset_class,
            kind=unit.kind,
            production=config.production,
            beautify=config.beautify,
            strict=config.is_strict(unit.key),
        )
        self.logger = get_logger("pipeline")
        self._has_run = False
        self._invalidated = False
        self._needs_emit = False

    @property
    def key(self) -> str:
        return self.unit.key

    @property
    def has_run(self) -> bool:
        return self._has_run

    def sources(self) -> List[SourceFile]:
        return expand(self.globs.patterns, self.config.project_root)

    def invalidate(self) -> None:
        """Force every input to be reprocessed on the next run."""
        self._invalidated = True

    def reset(self) -> None:
        self._has_run = False
        self._invalidated = False
        self._needs_emit = False

    def run(self, *, force: bool = False) -> PipelineResult:
        bundle = self.key
        result = PipelineResult(self.unit)
        with self.cache.lock(bundle):
            sources = self.sources()
            current = {source.input_id for source in sources}
            for input_id in self.cache.inputs(bundle):
                if input_id not in current:
                    self._drop(input_id, result)

            force = force or self._invalidated
            changed: List[Tuple[SourceFile, Fingerprint]] = []
            for source in sources:
                try:
                    fingerprint = Fingerprint.of(source.path)
                except FileNotFoundError:
                    self._drop(source.input_id, result)
                    continue
                if not force and self.cache.get(bundle, source.input_id, fingerprint) is not None:
                    self.cache.reorder(bundle, source.input_id, source.order)
                    result.reused.append(source.input_id)
                else:
                    changed.append((source, fingerprint))

            if (
                not changed
                and not result.removed
                and self._has_run
                and not self._needs_emit
                and self._outputs_present()
            ):
                result.skipped = True
                self.logger.debug("%s: no changes", bundle)
                return result

            for source, fingerprint in changed:
                self._process(source, fingerprint, result)

            if result.errors and self.options.strict:
                # Failed inputs stay uncached, so the next run retries them.
                self._needs_emit = True
                for error in result.errors:
                    self.logger.error("%s", error)
                raise result.errors[0]

            if self.unit.is_bundle:
                self._needs_emit = True
                self._emit_bundle(result)
                self._needs_emit = False

            self._has_run = True
            self._invalidated = False

        for error in result.errors:
            self.logger.error("%s", error)
        self.logger.info(
            "%s: %d processed, %d reused, %d removed",
            bundle,
            len(result.processed),
            len(result.reused),
            len(result.removed),
        )
        return result

    def remove(self, path: Path) -> PipelineResult:
        """Handle a deleted source: purge its cache entry and its output slice."""
        bundle = self.key
        result = PipelineResult(self.unit)
        input_id = input_id_for(path, self.config.project_root)
        with self.cache.lock(bundle):
            self._drop(input_id, result)
            if self.unit.is_bundle:
                if result.removed:
                    self._emit_bundle(result)
            elif not result.removed:
                target = self.unit.output_dir(self.config.output_root) / path.name
                if _unlink(target):
                    result.deleted.append(target)
        if result.removed or result.deleted:
            self.logger.info("%s: removed %s", bundle, input_id)
        return result

    # ------------------------------------------------------------------
    # Internal helpers

    def _process(self, source: SourceFile, fingerprint: Fingerprint, result: PipelineResult) -> None:
        bundle = self.key
        content = self._read(source.path)
        if content is None:
            self._drop(source.input_id, result)
            return
        asset = Asset(
            source=source.path,
            name=source.path.name,
            content=content,
            source_name=source.input_id,
        )
        try:
            for stage in self.stages:
                asset = stage.apply(asset, self.options)
        except TransformError as exc:
            result.errors.append(exc)
            self._drop(source.input_id, result)
            return

        if not self.unit.is_bundle:
            target = self.unit.output_dir(self.config.output_root) / asset.name
            _write(target, asset.content, logger=self.logger)
            result.written.append(target)
        self.cache.put(bundle, source.input_id, fingerprint, asset, order=source.order)
        result.processed.append(source.input_id)

    def _drop(self, input_id: str, result: PipelineResult) -> None:
        entry = self.cache.forget(self.key, input_id)
        if entry is None:
            return
        result.removed.append(input_id)
        if not self.unit.is_bundle:
            target = self.unit.output_dir(self.config.output_root) / entry.asset.name
            if _unlink(target):
                result.deleted.append(target)

    def _outputs_present(self) -> bool:
        root = self.config.output_root
        entries = self.cache.assemble(self.key)
        if self.unit.is_bundle:
            return not entries or self.unit.bundle_path(root).exists()
        out_dir = self.unit.output_dir(root)
        return all((out_dir / entry.asset.name).exists() for entry in entries)

    def _emit_bundle(self, result: PipelineResult) -> None:
        root = self.config.output_root
        target = self.unit.bundle_path(root)
        map_path = target.with_name(f"{target.name}.map")
        entries = self.cache.assemble(self.key)
        if not entries:
            for path in (target, map_path):
                if _unlink(path):
                    result.deleted.append(path)
            return

        content = b"\n".join(entry.asset.content for entry in entries)
        if self.config.source_maps:
            comment = _MAP_COMMENTS[self.unit.asset_class].format(name=map_path.name)
            content = content.rstrip(b"\n") + b"\n" + comment.encode("utf-8") + b"\n"
            if _write_if_changed(map_path, self._source_map(target.name, entries), logger=self.logger):
                result.written.append(map_path)
        elif _unlink(map_path):
            result.deleted.append(map_path)

        if _write_if_changed(target, content, logger=self.logger):
            result.written.append(target)

    def _source_map(self, file_name: str, entries: Sequence[CacheEntry]) -> bytes:
        source_root = _SOURCE_ROOTS.get(self.unit.asset_class, "")
        sections: List[Dict[str, object]] = []
        line = 0
        for entry in entries:
            sections.append(
                {
                    "offset": {"line": line, "column": 0},
                    "map": {
                        "version": 3,
                        "sourceRoot": source_root,
                        "sources": [entry.input_id],
                        "names": [],
                        "mappings": "",
                    },
                }
            )
            line += entry.asset.content.count(b"\n") + 1
        payload = {"version": 3, "file": file_name, "sections": sections}
        return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")

    def _read(self, path: Path) -> Optional[bytes]:
        for attempt in (1, 2):
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                if attempt == 2:
                    raise
                self.logger.warning("Retrying read of %s after error: %s", path, exc)
                time.sleep(_RETRY_DELAY)
        return None


def _write(path: Path, data: bytes, *, logger) -> None:
    """Atomically replace ``path``; transient failures are retried once."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_name(f".{path.name}.tmp")
    for attempt in (1, 2):
        try:
            temp.write_bytes(data)
            os.replace(temp, path)
            return
        except OSError as exc:
            if attempt == 2:
                _unlink(temp)
                raise
            logger.warning("Retrying write of %s after error: %s", path, exc)
            time.sleep(_RETRY_DELAY)


def _write_if_changed(path: Path, data: bytes, *, logger) -> bool:
    try:
        if path.read_bytes() == data:
            return False
    except FileNotFoundError:
        pass
    _write(path, data, logger=logger)
    return True


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


__all__ = ["AssetPipeline", "PipelineResult"]
