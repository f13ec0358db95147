"""Containers of a project and the project model rebuilt from them."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from composeengine.engine import EngineClient
from composeengine.errors import NotFoundError
from composeengine.filters import (
    one_off_filter,
    project_filter,
    service_filter,
)
from composeengine.model import (
    CONTAINER_NUMBER_LABEL,
    DEPENDENCIES_LABEL,
    NETWORK_LABEL,
    ONEOFF_LABEL,
    PROJECT_LABEL,
    SERVICE_CONDITION_RUNNING_OR_HEALTHY,
    SERVICE_LABEL,
    VOLUME_LABEL,
    NetworkConfig,
    Project,
    ServiceConfig,
    ServiceDependency,
    VolumeConfig,
)

_INTEGER = re.compile(r"[+-]?[0-9]+")


def _atoi(value: str) -> int:
    if not _INTEGER.fullmatch(value):
        raise ValueError(f"invalid integer: {value!r}")
    return int(value)


@dataclass
class Container:
    """Summary of a container as listed by the engine."""

    id: str = ""
    names: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    image: str = ""
    image_id: str = ""
    state: str = ""
    status: str = ""
    networks: dict[str, dict[str, Any]] = field(default_factory=dict)
    mounts: list[Any] = field(default_factory=list)


ContainerPredicate = Callable[[Container], bool]


class OneOff(Enum):
    INCLUDE = 0
    EXCLUDE = 1
    ONLY = 2


class Containers(list[Container]):
    """A list of containers with filtering helpers."""

    def filter(self, predicate: ContainerPredicate) -> Containers:
        return Containers(c for c in self if predicate(c))

    def names(self) -> list[str]:
        return [get_canonical_container_name(c) for c in self]

    def sorted(self) -> Containers:
        """A copy ordered by canonical container name."""
        return Containers(sorted(self, key=get_canonical_container_name))


def get_canonical_container_name(container: Container) -> str:
    """The container's own name, without link aliases and leading slash."""
    if not container.names:
        return container.id[:12]
    for name in container.names:
        if name.rfind("/") == 0:
            return name[1:]
    return container.names[0][1:]


def get_container_name_without_project(container: Container) -> str:
    name = get_canonical_container_name(container)
    project = container.labels.get(PROJECT_LABEL, "")
    prefix = f"{project}_{container.labels.get(SERVICE_LABEL, '')}_"
    if name.startswith(prefix):
        return name[len(project) + 1:]
    return name


def is_service(*args: str) -> ContainerPredicate:
    def predicate(container: Container) -> bool:
        return container.labels.get(SERVICE_LABEL, "") in args

    return predicate


def is_not_service(*args: str) -> ContainerPredicate:
    def predicate(container: Container) -> bool:
        return container.labels.get(SERVICE_LABEL, "") not in args

    return predicate


def is_not_one_off(container: Container) -> bool:
    value = container.labels.get(ONEOFF_LABEL)
    return value is None or value == "False"


def indexed(index: int) -> ContainerPredicate:
    def predicate(container: Container) -> bool:
        try:
            return _atoi(container.labels.get(CONTAINER_NUMBER_LABEL, "")) == index
        except ValueError:
            return False

    return predicate


def get_containers(
    client: EngineClient,
    project_name: str,
    one_off: OneOff,
    stopped: bool,
    *args: str,
) -> Containers:
    """Containers of the project, optionally restricted to some services."""
    filters = [project_filter(project_name)]
    if len(args) == 1:
        filters.append(service_filter(args[0]))
    if one_off is OneOff.ONLY:
        filters.append(one_off_filter(True))
    elif one_off is OneOff.EXCLUDE:
        filters.append(one_off_filter(False))
    containers = Containers(client.container_list(filters, all_containers=stopped))
    if len(args) > 1:
        containers = containers.filter(is_service(*args))
    return containers


def _build_project(containers: list[Container], project_name: str) -> Project:
    project = Project(name=project_name)
    by_service: dict[str, ServiceConfig] = {}
    for container in containers:
        label = container.labels.get(SERVICE_LABEL, "")
        service = by_service.get(label)
        if service is None:
            service = ServiceConfig(
                name=label,
                image=container.image,
                labels=dict(container.labels),
                scale=0,
            )
            by_service[label] = service
        service.scale += 1
    for service in by_service.values():
        dependencies = service.labels.get(DEPENDENCIES_LABEL, "")
        if not dependencies:
            continue
        service.depends_on = {}
        for entry in dependencies.split(","):
            parts = entry.split(":")
            condition = parts[1] if len(parts) > 1 else SERVICE_CONDITION_RUNNING_OR_HEALTHY
            service.depends_on[parts[0]] = ServiceDependency(condition=condition)
    project.services = list(by_service.values())
    return project


def _select_services(project: Project, services: tuple[str, ...]) -> None:
    known = set(project.service_names())
    for name in services:
        if name not in known:
            raise NotFoundError(f'no such service: "{name}"')
    project.for_services(list(services))


def project_from_name(
    containers: list[Container], project_name: str, *args: str
) -> Project:
    """Rebuild a project model from containers carrying compose labels."""
    if not containers:
        raise NotFoundError(f'no container found for project "{project_name}"')
    project = _build_project(containers, project_name)
    _select_services(project, args)
    return project


def actual_state(
    client: EngineClient, project_name: str, services: list[str]
) -> tuple[Containers, Project]:
    """All project containers (filtered by services) and the project they describe."""
    containers = get_containers(client, project_name, OneOff.INCLUDE, True)
    project = _build_project(containers, project_name)
    if containers:
        try:
            _select_services(project, tuple(services))
        except NotFoundError:
            pass
    if services:
        containers = containers.filter(is_service(*services))
    return containers, project


def actual_volumes(client: EngineClient, project_name: str) -> dict[str, VolumeConfig]:
    actual: dict[str, VolumeConfig] = {}
    for volume in client.volume_list([project_filter(project_name)]):
        labels = dict(volume.get("Labels") or {})
        actual[labels.get(VOLUME_LABEL, "")] = VolumeConfig(
            name=volume.get("Name", ""),
            driver=volume.get("Driver", ""),
            labels=labels,
        )
    return actual


def actual_networks(client: EngineClient, project_name: str) -> dict[str, NetworkConfig]:
    actual: dict[str, NetworkConfig] = {}
    for network in client.network_list([project_filter(project_name)]):
        labels = dict(network.get("Labels") or {})
        actual[labels.get(NETWORK_LABEL, "")] = NetworkConfig(
            name=network.get("Name", ""),
            driver=network.get("Driver", ""),
            labels=labels,
        )
    return actual