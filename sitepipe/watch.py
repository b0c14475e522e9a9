"""Polling file watchers, debounced batching and the rebuild worker."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .config import BuildConfig, DEFAULT_WATCH_DELAY, DEFAULT_WATCH_INTERVAL
from .globs import GlobSet, expand
from .logging import get_logger
from .models import AssetClass, BundleKind, Fingerprint

if TYPE_CHECKING:  # pragma: no cover
    from .orchestrator import BuildSession

OUTPUT_WATCHER = "output"
_SLOW_CLASSES = (AssetClass.FONTS, AssetClass.IMAGES)


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class WatchEvent:
    kind: ChangeKind
    path: Path


@dataclass(frozen=True)
class WatchBatch:
    """Debounced events from one watcher."""

    name: str
    events: Tuple[WatchEvent, ...]

    @property
    def paths(self) -> List[Path]:
        return [event.path for event in self.events]


class ReloadTarget(Protocol):
    def notify(self, paths: Sequence[Path]) -> None: ...


class PollingWatcher:
    """Tracks fingerprints of files matched by ``patterns`` under ``root``.

    Patterns are re-expanded on every poll so new files are picked up.
    """

    def __init__(
        self,
        name: str,
        patterns: Sequence[str],
        root: Path,
        *,
        delay: float = DEFAULT_WATCH_DELAY,
    ) -> None:
        self.name = name
        self.patterns = tuple(patterns)
        self.root = root
        self.delay = delay
        self._known: Dict[Path, Fingerprint] = self.snapshot()

    def snapshot(self) -> Dict[Path, Fingerprint]:
        found: Dict[Path, Fingerprint] = {}
        for source in expand(self.patterns, self.root):
            try:
                found[source.path] = Fingerprint.of(source.path)
            except FileNotFoundError:
                continue
        return found

    def poll(self) -> List[WatchEvent]:
        current = self.snapshot()
        events: List[WatchEvent] = []
        for path, fingerprint in current.items():
            previous = self._known.get(path)
            if previous is None:
                events.append(WatchEvent(ChangeKind.ADDED, path))
            elif previous != fingerprint:
                events.append(WatchEvent(ChangeKind.MODIFIED, path))
        for path in self._known:
            if path not in current:
                events.append(WatchEvent(ChangeKind.DELETED, path))
        self._known = current
        return events


def build_watchers(config: BuildConfig, globs: GlobSet) -> List[PollingWatcher]:
    """One watcher per asset class plus one over the output tree."""
    watchers: List[PollingWatcher] = []
    for asset_class in AssetClass:
        patterns = list(globs.patterns_for(asset_class))
        primary = globs.globs_for(asset_class, BundleKind.PRIMARY)
        if primary is not None:
            patterns.extend(primary.dependencies)
        if not patterns:
            continue
        delay = config.watch.asset_delay if asset_class in _SLOW_CLASSES else config.watch.delay
        watchers.append(PollingWatcher(asset_class.value, patterns, config.project_root, delay=delay))
    watchers.append(
        PollingWatcher(OUTPUT_WATCHER, ("**/*",), config.output_root, delay=config.watch.delay)
    )
    return watchers


class WatchLoop:
    """Polls watchers and pushes one batch per watcher once its window is quiet."""

    def __init__(
        self,
        watchers: Sequence[PollingWatcher],
        *,
        interval: float = DEFAULT_WATCH_INTERVAL,
        batches: Optional["queue.Queue[WatchBatch]"] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.watchers = list(watchers)
        self.interval = interval
        self.batches: "queue.Queue[WatchBatch]" = batches if batches is not None else queue.Queue()
        self._clock = clock
        self._pending: Dict[str, Tuple[float, Dict[Path, Optional[WatchEvent]]]] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger("watch")

    def tick(self, now: Optional[float] = None) -> List[WatchBatch]:
        """Poll once and flush every batch whose debounce window has elapsed."""
        now = self._clock() if now is None else now
        for watcher in self.watchers:
            events = watcher.poll()
            if not events:
                continue
            _, merged = self._pending.get(watcher.name, (now, {}))
            for event in events:
                merged[event.path] = _merge(merged.get(event.path), event)
            self._pending[watcher.name] = (now + watcher.delay, merged)

        flushed: List[WatchBatch] = []
        for name, (deadline, merged) in list(self._pending.items()):
            if deadline > now:
                continue
            del self._pending[name]
            events = tuple(event for event in merged.values() if event is not None)
            if not events:
                continue
            batch = WatchBatch(name, events)
            self.logger.debug("%s: %d change(s)", name, len(events))
            self.batches.put(batch)
            flushed.append(batch)
        return flushed

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sitepipe-watch", daemon=True)
        self._thread.start()
        self.logger.info("Watching for changes (interval=%.2fs)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except OSError as exc:
                self.logger.warning("Watch poll failed: %s", exc)


def _merge(previous: Optional[WatchEvent], event: WatchEvent) -> Optional[WatchEvent]:
    if previous is None:
        return event
    if previous.kind is ChangeKind.ADDED and event.kind is ChangeKind.MODIFIED:
        return previous
    if previous.kind is ChangeKind.ADDED and event.kind is ChangeKind.DELETED:
        return None
    if previous.kind is ChangeKind.DELETED and event.kind is ChangeKind.ADDED:
        return WatchEvent(ChangeKind.MODIFIED, event.path)
    return event


class RebuildWorker:
    """Single consumer of watch batches; the only writer during a watch session."""

    def __init__(
        self,
        session: "BuildSession",
        batches: "queue.Queue[WatchBatch]",
        *,
        hub: Optional[ReloadTarget] = None,
    ) -> None:
        self.session = session
        self.batches = batches
        self.hub = hub
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger("watch")

    def handle(self, batch: WatchBatch) -> None:
        if batch.name == OUTPUT_WATCHER:
            if self.hub is not None:
                self.hub.notify(batch.paths)
            return
        self.session.apply_batch(batch)

    def drain(self) -> int:
        """Process every queued batch on the calling thread."""
        handled = 0
        while True:
            try:
                batch = self.batches.get_nowait()
            except queue.Empty:
                return handled
            self._handle_safely(batch)
            handled += 1

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sitepipe-rebuild", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                batch = self.batches.get(timeout=0.2)
            except queue.Empty:
                continue
            self._handle_safely(batch)

    def _handle_safely(self, batch: WatchBatch) -> None:
        try:
            self.handle(batch)
        except Exception:
            self.logger.exception("Rebuild for %s failed", batch.name)
        finally:
            self.batches.task_done()


__all__ = [
    "ChangeKind",
    "OUTPUT_WATCHER",
    "PollingWatcher",
    "RebuildWorker",
    "WatchBatch",
    "WatchEvent",
    "WatchLoop",
    "build_watchers",
]
