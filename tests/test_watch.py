"""Tests for polling watchers, debouncing and the rebuild worker."""

from __future__ import annotations

import queue
from pathlib import Path
from typing import List, Sequence

from sitepipe.globs import build_globs
from sitepipe.watch import (
    OUTPUT_WATCHER,
    ChangeKind,
    PollingWatcher,
    RebuildWorker,
    WatchBatch,
    WatchEvent,
    WatchLoop,
    build_watchers,
)
from tests._fixtures.site_builder import SiteBuilder


class _Session:
    def __init__(self, *, fail: bool = False) -> None:
        self.batches: List[WatchBatch] = []
        self.fail = fail

    def apply_batch(self, batch: WatchBatch) -> None:
        self.batches.append(batch)
        if self.fail:
            raise RuntimeError("rebuild exploded")


class _Hub:
    def __init__(self) -> None:
        self.notified: List[List[Path]] = []

    def notify(self, paths: Sequence[Path]) -> None:
        self.notified.append(list(paths))


def _kinds(events: Sequence[WatchEvent]) -> List[tuple]:
    return sorted((event.kind.value, event.path.name) for event in events)


def test_polling_watcher_reports_added_modified_and_deleted(site_builder: SiteBuilder) -> None:
    site_builder.write({"works/blog/scripts/a.js": "a\n", "works/blog/scripts/b.js": "b\n"})
    watcher = PollingWatcher("scripts", ("works/blog/scripts/*.js",), site_builder.root)

    assert watcher.poll() == []

    site_builder.write({"works/blog/scripts/a.js": "a2\n", "works/blog/scripts/c.js": "c\n"})
    site_builder.remove("works/blog/scripts/b.js")

    assert _kinds(watcher.poll()) == [("added", "c.js"), ("deleted", "b.js"), ("modified", "a.js")]
    assert watcher.poll() == []


def test_tick_waits_for_a_quiet_window(site_builder: SiteBuilder) -> None:
    site_builder.write({"works/blog/styles/main.css": "a{}\n"})
    watcher = PollingWatcher("styles", ("works/blog/styles/*.css",), site_builder.root, delay=0.5)
    loop = WatchLoop([watcher])

    site_builder.write({"works/blog/styles/main.css": "b{}\n"})
    assert loop.tick(now=10.0) == []

    site_builder.write({"works/blog/styles/main.css": "c{}\n"})
    assert loop.tick(now=10.4) == []
    assert loop.tick(now=10.8) == []

    flushed = loop.tick(now=10.9)
    assert len(flushed) == 1
    assert flushed[0].name == "styles"
    assert _kinds(flushed[0].events) == [("modified", "main.css")]
    assert loop.batches.get_nowait() == flushed[0]


def test_tick_merges_events_for_the_same_path(site_builder: SiteBuilder) -> None:
    site_builder.write({"works/blog/scripts/keep.js": "k\n"})
    watcher = PollingWatcher("scripts", ("works/blog/scripts/*.js",), site_builder.root, delay=1.0)
    loop = WatchLoop([watcher])

    site_builder.write({"works/blog/scripts/new.js": "n\n", "works/blog/scripts/temp.js": "t\n"})
    loop.tick(now=0.0)
    site_builder.write({"works/blog/scripts/new.js": "n2\n"})
    site_builder.remove("works/blog/scripts/temp.js")
    site_builder.remove("works/blog/scripts/keep.js")
    loop.tick(now=0.5)
    site_builder.write({"works/blog/scripts/keep.js": "k2\n"})
    loop.tick(now=0.8)

    flushed = loop.tick(now=2.0)

    assert len(flushed) == 1
    assert _kinds(flushed[0].events) == [("added", "new.js"), ("modified", "keep.js")]


def test_add_then_delete_inside_one_window_emits_nothing(site_builder: SiteBuilder) -> None:
    watcher = PollingWatcher("images", ("works/blog/images/*",), site_builder.root, delay=0.1)
    loop = WatchLoop([watcher])

    site_builder.write_bytes("works/blog/images/tmp.png", b"x")
    loop.tick(now=0.0)
    site_builder.remove("works/blog/images/tmp.png")
    loop.tick(now=0.05)

    assert loop.tick(now=1.0) == []
    assert loop.batches.empty()


def test_build_watchers_cover_each_class_and_the_output(site_builder: SiteBuilder) -> None:
    site_builder.project("blog", target={"watch": {"delay": 0.2, "asset_delay": 1.5}})
    config = site_builder.load()

    watchers = {watcher.name: watcher for watcher in build_watchers(config, build_globs(config))}

    assert set(watchers) >= {"styles", "scripts", "images", "fonts", "html", "favicon", OUTPUT_WATCHER}
    assert "works/blog/styles/includes/*.scss" in watchers["styles"].patterns
    assert watchers["images"].delay == 1.5
    assert watchers["styles"].delay == 0.2
    assert watchers[OUTPUT_WATCHER].root == config.output_root


def test_worker_routes_output_batches_to_the_hub() -> None:
    session = _Session()
    hub = _Hub()
    batches: "queue.Queue[WatchBatch]" = queue.Queue()
    worker = RebuildWorker(session, batches, hub=hub)  # type: ignore[arg-type]
    output = WatchBatch(OUTPUT_WATCHER, (WatchEvent(ChangeKind.MODIFIED, Path("/out/css/main.css")),))
    source = WatchBatch("styles", (WatchEvent(ChangeKind.MODIFIED, Path("/src/main.scss")),))
    batches.put(output)
    batches.put(source)

    assert worker.drain() == 2

    assert hub.notified == [[Path("/out/css/main.css")]]
    assert session.batches == [source]


def test_worker_survives_a_failing_rebuild() -> None:
    session = _Session(fail=True)
    batches: "queue.Queue[WatchBatch]" = queue.Queue()
    worker = RebuildWorker(session, batches)  # type: ignore[arg-type]
    batch = WatchBatch("scripts", (WatchEvent(ChangeKind.ADDED, Path("/src/a.js")),))
    batches.put(batch)
    batches.put(batch)

    assert worker.drain() == 2
    assert len(session.batches) == 2
    batches.join()
