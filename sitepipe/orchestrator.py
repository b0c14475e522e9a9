"""Build session: wires configuration, pipelines and the task graph together."""

from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from .config import BuildConfig
from .globs import GlobSet, build_globs, matches_any
from .graph import GraphReport, NodeState, TaskGraph
from .logging import get_logger
from .models import Asset, AssetClass, BundleKind
from .pipeline import AssetPipeline, PipelineResult
from .stores import AssetCache
from .transforms import LintError, StageFactory, Transform
from .watch import ChangeKind, WatchBatch

CLEAN = "clean"
LINT = "lint"
SERVE = "serve"
VENDOR_GROUP = "vendors"
ASSET_GROUP = "assets"

VENDOR_NODES: Dict[str, AssetClass] = {
    "vendor-fonts": AssetClass.FONTS,
    "vendor-styles": AssetClass.STYLES,
    "vendor-scripts": AssetClass.SCRIPTS,
}
ASSET_NODES: Dict[str, AssetClass] = {
    "fonts": AssetClass.FONTS,
    "images": AssetClass.IMAGES,
    "styles": AssetClass.STYLES,
    "favicon": AssetClass.FAVICON,
    "html": AssetClass.HTML,
    "scripts": AssetClass.SCRIPTS,
}


class Server(Protocol):
    def start(self) -> None: ...


@dataclass
class BuildReport:
    """Outcome of a full build or a watch-triggered rebuild."""

    graph: GraphReport
    pipelines: Dict[str, PipelineResult] = field(default_factory=dict)
    diagnostics: List[str] = field(default_factory=list)
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def failed(self) -> List[str]:
        return self.graph.failed

    @property
    def ok(self) -> bool:
        return not self.diagnostics


class BuildSession:
    """Owns the cache, pipelines and graph for one build or dev-server session."""

    def __init__(
        self,
        config: BuildConfig,
        *,
        cache: AssetCache | None = None,
        stage_factory: StageFactory | None = None,
        transforms: Optional[Mapping[str, Transform]] = None,
        server: Server | None = None,
        discover: bool = True,
    ) -> None:
        self.config = config
        self.cache = cache or AssetCache()
        self.stage_factory = stage_factory or StageFactory(config, transforms, discover=discover)
        self.server = server
        self.globs: GlobSet = build_globs(config)
        self.logger = get_logger("session")
        self.pipelines: Dict[str, AssetPipeline] = {}
        for name, asset_class, kind in self._units():
            globs = self.globs.globs_for(asset_class, kind)
            if globs is None:
                continue
            self.pipelines[name] = AssetPipeline(
                globs.unit,
                globs,
                self.stage_factory.stages_for(globs.unit),
                self.cache,
                config,
                options=self.stage_factory.options_for(globs.unit),
            )
        self.node_states: Dict[str, NodeState] = {}
        self.last_report: Optional[BuildReport] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Graph actions

    def clean(self) -> Path:
        """Remove the output tree and reset every cache."""
        root = self.config.output_root.resolve()
        project = self.config.project_root.resolve()
        if root == project or project.is_relative_to(root):
            raise RuntimeError(f"Refusing to clean {root}: it contains the project root")
        if root.exists():
            shutil.rmtree(root)
            self.logger.info("Removed %s", root)
        self.cache.clear()
        for pipeline in self.pipelines.values():
            pipeline.reset()
        return root

    def lint(self) -> int:
        """Static checks over the site's own scripts; raises LintError on findings."""
        pipeline = self.pipelines.get("scripts")
        if pipeline is None:
            return 0
        assets: List[Asset] = []
        for source in pipeline.sources():
            try:
                content = source.path.read_bytes()
            except FileNotFoundError:
                continue
            assets.append(
                Asset(source=source.path, name=source.path.name, content=content, source_name=source.input_id)
            )
        self.stage_factory.linter.run(assets)
        self.logger.debug("Linted %d script(s)", len(assets))
        return len(assets)

    def serve(self) -> Optional[str]:
        if self.server is None:
            return None
        self.server.start()
        if self.config.proxy_url:
            self.logger.info("Proxy mode: open %s", self.config.proxy_url)
            return self.config.proxy_url
        url = f"http://localhost:{self.config.port}/"
        self.logger.info("Serving %s at %s", self.config.output_root, url)
        return url

    def build_graph(self, *, serve: bool = True) -> TaskGraph:
        graph = TaskGraph()
        graph.add(CLEAN, self.clean)
        for name in VENDOR_NODES:
            graph.add(name, self._pipeline_action(name), requires=(CLEAN,), group=VENDOR_GROUP)
        for name in ASSET_NODES:
            if name == "scripts":
                continue
            graph.add(
                name,
                self._pipeline_action(name),
                requires=(CLEAN,),
                after=(VENDOR_GROUP,),
                group=ASSET_GROUP,
            )
        graph.add(LINT, self.lint, requires=(CLEAN,), after=(VENDOR_GROUP,), group=ASSET_GROUP)
        graph.add(
            "scripts",
            self._pipeline_action("scripts"),
            requires=(CLEAN, LINT),
            after=(VENDOR_GROUP,),
            group=ASSET_GROUP,
        )
        if serve:
            graph.add(SERVE, self.serve, after=(VENDOR_GROUP, ASSET_GROUP))
        return graph

    # ------------------------------------------------------------------
    # Entry points

    def run_build(self, *, serve: bool = False) -> BuildReport:
        """Run the whole graph; failures are reported, never raised."""
        self.logger.info(
            "Building site '%s' into %s (%s)",
            self.config.target,
            self.config.output_root,
            "production" if self.config.production else "development",
        )
        with self._lock:
            graph = self.build_graph(serve=serve)
            report = self._finish(graph.run(max_workers=self.config.max_workers))
        if report.ok:
            self.logger.info("Build finished")
        else:
            self.logger.warning("Build finished with %d problem(s)", len(report.diagnostics))
        return report

    def rebuild(self, names: Iterable[str]) -> BuildReport:
        """Re-run only ``names``, keeping the edges between them."""
        wanted = list(dict.fromkeys(names))
        with self._lock:
            graph = self.build_graph(serve=False)
            report = self._finish(graph.run(only=wanted, max_workers=self.config.max_workers))
        return report

    def apply_batch(self, batch: WatchBatch) -> Optional[BuildReport]:
        """Turn a debounced batch of source events into pipeline work."""
        nodes = self._nodes_for_class(batch.name)
        if not nodes:
            self.logger.debug("Ignoring batch for unknown watcher %s", batch.name)
            return None

        root = self.config.project_root
        rerun: List[str] = []
        for event in batch.events:
            for name in nodes:
                pipeline = self.pipelines[name]
                if matches_any(event.path, pipeline.globs.dependencies, root):
                    pipeline.invalidate()
                    rerun.append(name)
                    continue
                if not matches_any(event.path, pipeline.globs.patterns, root):
                    continue
                if event.kind is ChangeKind.DELETED:
                    with self._lock:
                        pipeline.remove(event.path)
                else:
                    rerun.append(name)

        if not rerun:
            return None
        if "scripts" in rerun:
            rerun.insert(0, LINT)
        self.logger.info("Rebuilding %s", ", ".join(dict.fromkeys(rerun)))
        return self.rebuild(rerun)

    def status(self) -> Dict[str, object]:
        report = self.last_report
        return {
            "site": self.config.target,
            "output_root": str(self.config.output_root),
            "production": self.config.production,
            "nodes": {name: state.value for name, state in self.node_states.items()},
            "failed": list(report.failed) if report else [],
            "diagnostics": list(report.diagnostics) if report else [],
            "finished_at": report.finished_at.isoformat() if report else None,
        }

    # ------------------------------------------------------------------
    # Internal helpers

    def _units(self) -> List[Tuple[str, AssetClass, BundleKind]]:
        units = [(name, cls, BundleKind.VENDOR) for name, cls in VENDOR_NODES.items()]
        units.extend((name, cls, BundleKind.PRIMARY) for name, cls in ASSET_NODES.items())
        return units

    def _nodes_for_class(self, name: str) -> List[str]:
        try:
            asset_class = AssetClass(name)
        except ValueError:
            return []
        return [
            node
            for node, cls in list(VENDOR_NODES.items()) + list(ASSET_NODES.items())
            if cls is asset_class and node in self.pipelines
        ]

    def _pipeline_action(self, name: str):
        def action() -> Optional[PipelineResult]:
            pipeline = self.pipelines.get(name)
            if pipeline is None or pipeline.globs.empty:
                return None
            return pipeline.run()

        return action

    def _finish(self, graph_report: GraphReport) -> BuildReport:
        report = BuildReport(graph=graph_report)
        for name, result in graph_report.results.items():
            if isinstance(result, PipelineResult):
                report.pipelines[name] = result
                report.diagnostics.extend(str(error) for error in result.errors)
        for name, error in graph_report.errors.items():
            if isinstance(error, LintError):
                report.diagnostics.extend(f"{LINT}: {issue.format()}" for issue in error.issues)
            else:
                report.diagnostics.append(f"{name}: {error}")
        self.node_states.update(graph_report.states)
        self.last_report = report
        return report


__all__ = [
    "ASSET_GROUP",
    "ASSET_NODES",
    "BuildReport",
    "BuildSession",
    "CLEAN",
    "LINT",
    "SERVE",
    "VENDOR_GROUP",
    "VENDOR_NODES",
]
