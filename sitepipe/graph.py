"""Dependency-aware task graph executed on a thread pool."""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .logging import get_logger


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (NodeState.DONE, NodeState.FAILED)


class DependencyFailed(RuntimeError):
    """A node was not run because a required predecessor did not finish."""

    def __init__(self, node: str, dependency: str) -> None:
        super().__init__(f"{node} skipped: required task '{dependency}' failed")
        self.node = node
        self.dependency = dependency


@dataclass(frozen=True)
class TaskNode:
    name: str
    action: Callable[[], Any] = field(repr=False)
    requires: Tuple[str, ...] = ()
    after: Tuple[str, ...] = ()
    group: Optional[str] = None


@dataclass
class GraphReport:
    """Terminal state of every node that took part in a run."""

    states: Dict[str, NodeState] = field(default_factory=dict)
    errors: Dict[str, BaseException] = field(default_factory=dict)
    results: Dict[str, Any] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)

    @property
    def failed(self) -> List[str]:
        return [name for name, state in self.states.items() if state is NodeState.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed


class TaskGraph:
    """Named actions with hard (``requires``) and ordering-only (``after``) edges.

    A predecessor name may also refer to a group, which stands for every node
    added with that ``group``.
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, TaskNode] = {}
        self.logger = get_logger("graph")

    def add(
        self,
        name: str,
        action: Callable[[], Any],
        *,
        requires: Sequence[str] = (),
        after: Sequence[str] = (),
        group: Optional[str] = None,
    ) -> TaskNode:
        if name in self._nodes:
            raise ValueError(f"Duplicate task name: {name}")
        node = TaskNode(name, action, tuple(requires), tuple(after), group)
        self._nodes[name] = node
        return node

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    @property
    def names(self) -> List[str]:
        return list(self._nodes)

    def node(self, name: str) -> TaskNode:
        return self._nodes[name]

    def members(self, group: str) -> List[str]:
        return [node.name for node in self._nodes.values() if node.group == group]

    def validate(self) -> List[str]:
        """Check every edge and return a deterministic topological order."""
        groups = {node.group for node in self._nodes.values() if node.group}
        clashes = groups & set(self._nodes)
        if clashes:
            raise ValueError(f"Group names collide with task names: {', '.join(sorted(clashes))}")

        for node in self._nodes.values():
            for predecessor in node.requires + node.after:
                if predecessor not in self._nodes and predecessor not in groups:
                    raise ValueError(f"Task '{node.name}' depends on unknown task '{predecessor}'")

        incoming: Dict[str, Set[str]] = {
            name: set(self._predecessors(self._nodes[name])) for name in self._nodes
        }
        order: List[str] = []
        ready = [name for name in self._nodes if not incoming[name]]
        while ready:
            name = ready.pop(0)
            order.append(name)
            for other in self._nodes:
                if name in incoming[other]:
                    incoming[other].discard(name)
                    if not incoming[other] and other not in order and other not in ready:
                        ready.append(other)
        if len(order) != len(self._nodes):
            stuck = sorted(set(self._nodes) - set(order))
            raise ValueError(f"Task graph contains a cycle through: {', '.join(stuck)}")
        return order

    def run(self, only: Optional[Iterable[str]] = None, *, max_workers: int = 4) -> GraphReport:
        """Execute the graph, or just the ``only`` subset with edges between them."""
        order = self.validate()
        if only is not None:
            wanted = set(only)
            unknown = wanted - set(self._nodes)
            if unknown:
                raise ValueError(f"Unknown tasks: {', '.join(sorted(unknown))}")
            order = [name for name in order if name in wanted]
        selected = set(order)

        report = GraphReport(states={name: NodeState.PENDING for name in order})
        pending = list(order)
        running: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="sitepipe") as pool:
            while pending or running:
                for name in list(pending):
                    node = self._nodes[name]
                    predecessors = [p for p in self._predecessors(node) if p in selected]
                    if not all(report.states[p].terminal for p in predecessors):
                        continue
                    pending.remove(name)
                    broken = [
                        p
                        for p in self._expand(node.requires)
                        if p in selected and report.states[p] is not NodeState.DONE
                    ]
                    if broken:
                        error = DependencyFailed(name, broken[0])
                        report.states[name] = NodeState.FAILED
                        report.errors[name] = error
                        self.logger.error("%s", error)
                        continue
                    report.states[name] = NodeState.RUNNING
                    self.logger.debug("Starting %s", name)
                    running[pool.submit(self._execute, node)] = name

                if not running:
                    if pending:
                        raise RuntimeError(f"Task graph stalled with pending tasks: {', '.join(pending)}")
                    continue

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    try:
                        result, elapsed = future.result()
                    except Exception as exc:
                        report.states[name] = NodeState.FAILED
                        report.errors[name] = exc
                        self.logger.error("Task %s failed: %s", name, exc)
                    else:
                        report.states[name] = NodeState.DONE
                        report.results[name] = result
                        report.durations[name] = elapsed
                        self.logger.debug("Finished %s in %.2fs", name, elapsed)
        return report

    def _execute(self, node: TaskNode) -> Tuple[Any, float]:
        started = time.monotonic()
        result = node.action()
        return result, time.monotonic() - started

    def _predecessors(self, node: TaskNode) -> List[str]:
        return self._expand(node.requires + node.after)

    def _expand(self, names: Sequence[str]) -> List[str]:
        expanded: List[str] = []
        for name in names:
            targets = [name] if name in self._nodes else self.members(name)
            for target in targets:
                if target not in expanded:
                    expanded.append(target)
        return expanded


__all__ = ["DependencyFailed", "GraphReport", "NodeState", "TaskGraph", "TaskNode"]
