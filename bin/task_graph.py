"""
A small directed acyclic task graph. Nodes are keyed by (sample, stage), each
wraps a plain function whose positional inputs are the results of its
dependencies, and every node runs on an executor as soon as its inputs exist.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from concurrent.futures import Executor

NodeKey = tuple[str, str]


class GraphError(Exception):
    """The graph is malformed: duplicate node, unknown dependency, or a cycle."""


@dataclass(frozen=True)
class Node:
    key: NodeKey
    func: Callable[..., Any]
    deps: tuple[NodeKey, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)


class TaskGraph:
    """Nodes and dependency edges; run() executes them in dependency order."""

    def __init__(self) -> None:
        self._nodes: dict[NodeKey, Node] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def add(
        self,
        sample: str,
        stage: str,
        func: Callable[..., Any],
        deps: Iterable[NodeKey] = (),
        /,
        **kwargs: Any,
    ) -> NodeKey:
        """Register a node; its function is called as func(*dep_results, **kwargs)."""
        key = (sample, stage)
        if key in self._nodes:
            msg = f"Node {key} is already in the graph"
            raise GraphError(msg)
        self._nodes[key] = Node(key, func, tuple(deps), dict(kwargs))
        return key

    def topological_order(self) -> list[NodeKey]:
        """Kahn's algorithm, ties broken by insertion order."""
        indegree: dict[NodeKey, int] = {}
        dependents: dict[NodeKey, list[NodeKey]] = {key: [] for key in self._nodes}
        for key, node in self._nodes.items():
            for dep in node.deps:
                if dep not in self._nodes:
                    msg = f"Node {key} depends on unknown node {dep}"
                    raise GraphError(msg)
                dependents[dep].append(key)
            indegree[key] = len(node.deps)

        ready = [key for key, degree in indegree.items() if degree == 0]
        order: list[NodeKey] = []
        while ready:
            key = ready.pop(0)
            order.append(key)
            for child in dependents[key]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)

        if len(order) != len(self._nodes):
            stuck = sorted(key for key, degree in indegree.items() if degree > 0)
            msg = f"Cycle detected among nodes: {stuck}"
            raise GraphError(msg)
        return order

    async def run(self, executor: Executor | None = None) -> dict[NodeKey, Any]:
        """
        Run every node, each as soon as its dependencies finished. On the first
        failure the remaining nodes are cancelled and the failure of the
        earliest node in dependency order is raised.
        """
        order = self.topological_order()
        if not order:
            return {}

        loop = asyncio.get_running_loop()
        tasks: dict[NodeKey, asyncio.Task[Any]] = {}

        async def run_node(node: Node) -> Any:
            inputs = [await tasks[dep] for dep in node.deps]
            logger.trace(f"Starting node {node.key}")
            result = await loop.run_in_executor(executor, partial(node.func, *inputs, **node.kwargs))
            logger.trace(f"Finished node {node.key}")
            return result

        for key in order:
            tasks[key] = asyncio.create_task(run_node(self._nodes[key]), name=f"{key[0]}:{key[1]}")

        done, pending = await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        failures = {
            key: task.exception()
            for key, task in tasks.items()
            if task in done and not task.cancelled() and task.exception() is not None
        }
        if failures:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            root = next(key for key in order if key in failures)
            logger.debug(f"Node {root} failed; cancelled {len(pending)} pending node(s)")
            raise failures[root]

        return {key: task.result() for key, task in tasks.items()}
