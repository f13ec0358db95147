"""Service dependency graph and ordered, concurrent traversal."""

from __future__ import annotations

import contextlib
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from composeengine.model import Project, ServiceConfig


class ServiceStatus(Enum):
    STOPPED = 0
    STARTED = 1


@dataclass(eq=False)
class Vertex:
    """A service in the dependency graph; children are its dependencies."""

    key: str
    service: str
    status: ServiceStatus
    children: dict[str, Vertex] = field(default_factory=dict, repr=False)
    parents: dict[str, Vertex] = field(default_factory=dict, repr=False)

    def get_parents(self) -> list[Vertex]:
        return list(self.parents.values())

    def get_children(self) -> list[Vertex]:
        return list(self.children.values())


class Graph:
    """Dependency graph of a project's services."""

    def __init__(self) -> None:
        self.vertices: dict[str, Vertex] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_services(cls, services: list[ServiceConfig], initial_status: ServiceStatus) -> Graph:
        graph = cls()
        for service in services:
            graph.add_vertex(service.name, service.name, initial_status)
        for service in services:
            for name in service.get_dependencies():
                with contextlib.suppress(ValueError):
                    graph.add_edge(service.name, name)
        return graph

    def add_vertex(self, key: str, service: str, initial_status: ServiceStatus) -> None:
        with self._lock:
            self.vertices[key] = Vertex(key, service, initial_status)

    def add_edge(self, source: str, destination: str) -> None:
        """Record that `source` depends on `destination`."""
        with self._lock:
            source_vertex = self.vertices.get(source)
            destination_vertex = self.vertices.get(destination)
            if source_vertex is None:
                raise ValueError(f"could not find {source}")
            if destination_vertex is None:
                raise ValueError(f"could not find {destination}")
            if destination in source_vertex.children:
                return
            source_vertex.children[destination] = destination_vertex
            destination_vertex.parents[source] = source_vertex

    def leaves(self) -> list[Vertex]:
        with self._lock:
            return [v for v in self.vertices.values() if not v.children]

    def roots(self) -> list[Vertex]:
        with self._lock:
            return [v for v in self.vertices.values() if not v.parents]

    def update_status(self, key: str, status: ServiceStatus) -> None:
        with self._lock:
            self.vertices[key].status = status

    def filter_children(self, key: str, status: ServiceStatus) -> list[Vertex]:
        with self._lock:
            return [c for c in self.vertices[key].children.values() if c.status == status]

    def filter_parents(self, key: str, status: ServiceStatus) -> list[Vertex]:
        with self._lock:
            return [p for p in self.vertices[key].parents.values() if p.status == status]

    def _find_cycle(self) -> list[str] | None:
        finished: set[str] = set()

        def visit(key: str, path: list[str], on_stack: set[str]) -> list[str] | None:
            on_stack.add(key)
            for child in self.vertices[key].children.values():
                child_path = [*path, child.key]
                if child.key in on_stack:
                    return child_path
                if child.key not in finished:
                    found = visit(child.key, child_path, on_stack)
                    if found is not None:
                        return found
            on_stack.discard(key)
            finished.add(key)
            return None

        with self._lock:
            for vertex in list(self.vertices.values()):
                if vertex.key not in finished:
                    found = visit(vertex.key, [vertex.key], set())
                    if found is not None:
                        return found
        return None

    def has_cycles(self) -> bool:
        return self._find_cycle() is not None

    def _ensure_acyclic(self) -> None:
        cycle = self._find_cycle()
        if cycle is not None:
            raise ValueError(f"cycle found: {' -> '.join(cycle)}")


@dataclass(frozen=True)
class _Traversal:
    extremity: Callable[[Graph], list[Vertex]]
    adjacent: Callable[[Vertex], list[Vertex]]
    filter_adjacent: Callable[[Graph, str, ServiceStatus], list[Vertex]]
    target_status: ServiceStatus
    skip_status: ServiceStatus


_UP = _Traversal(
    extremity=Graph.leaves,
    adjacent=Vertex.get_parents,
    filter_adjacent=Graph.filter_children,
    target_status=ServiceStatus.STARTED,
    skip_status=ServiceStatus.STOPPED,
)
_DOWN = _Traversal(
    extremity=Graph.roots,
    adjacent=Vertex.get_children,
    filter_adjacent=Graph.filter_parents,
    target_status=ServiceStatus.STOPPED,
    skip_status=ServiceStatus.STARTED,
)


def _visit(
    project: Project,
    traversal: _Traversal,
    fn: Callable[[str], None],
    initial_status: ServiceStatus,
) -> None:
    graph = Graph.from_services(project.services, initial_status)
    graph._ensure_acyclic()

    errors: list[Exception] = []
    scheduled: set[str] = set()
    pending = 0
    cond = threading.Condition()

    with ThreadPoolExecutor() as pool:

        def schedule(nodes: list[Vertex]) -> None:
            nonlocal pending
            for node in nodes:
                if traversal.filter_adjacent(graph, node.key, traversal.skip_status):
                    continue
                with cond:
                    if node.key in scheduled:
                        continue
                    scheduled.add(node.key)
                    pending += 1
                pool.submit(task, node)

        def task(node: Vertex) -> None:
            nonlocal pending
            try:
                fn(node.service)
            except Exception as exc:  # collected and re-raised by the caller
                with cond:
                    errors.append(exc)
            else:
                graph.update_status(node.key, traversal.target_status)
                schedule(traversal.adjacent(node))
            finally:
                with cond:
                    pending -= 1
                    cond.notify_all()

        schedule(traversal.extremity(graph))
        with cond:
            cond.wait_for(lambda: pending == 0)

    if errors:
        raise errors[0]


def in_dependency_order(project: Project, fn: Callable[[str], None]) -> None:
    """Call fn for each service once all of its dependencies were handled."""
    _visit(project, _UP, fn, ServiceStatus.STOPPED)


def in_reverse_dependency_order(project: Project, fn: Callable[[str], None]) -> None:
    """Call fn for each service once all services depending on it were handled."""
    _visit(project, _DOWN, fn, ServiceStatus.STARTED)