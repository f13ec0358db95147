"""Reconciling the containers of services with their desired state.

Based on the initially observed containers, a convergence re-creates
diverged containers, adds or removes replicas and starts stopped ones.
Services are handled in dependency order; once a service has converged,
`service:` references of other services are replaced by references to
its actual container.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from enum import Enum
from typing import Any

from composeengine.containers import (
    Container,
    Containers,
    get_canonical_container_name,
    get_container_name_without_project,
    is_not_one_off,
)
from composeengine.create import get_create_options, get_dependent_service_from_mode
from composeengine.dependencies import in_dependency_order
from composeengine.engine import EngineClient, Event, EventStatus, EventWriter, ListWriter
from composeengine.model import (
    CONFIG_HASH_LABEL,
    CONTAINER_NUMBER_LABEL,
    SEPARATOR,
    SERVICE_LABEL,
    Project,
    ServiceConfig,
    ServiceNetworkConfig,
    service_hash,
)

IMAGE_DIGEST_LABEL = "com.docker.compose.image"
NETWORK_MODE_CONTAINER_PREFIX = "container:"
EXT_LIFECYCLE = "x-lifecycle"
FORCE_RECREATE = "force_recreate"

CONTAINER_CREATED = "created"
CONTAINER_RESTARTING = "restarting"
CONTAINER_RUNNING = "running"
CONTAINER_EXITED = "exited"

_INTEGER = re.compile(r"[+-]?[0-9]+")
_project_lock = threading.Lock()


class RecreatePolicy(str, Enum):
    DIVERGED = "diverged"
    FORCE = "force"
    NEVER = "never"


def _atoi(value: str) -> int:
    if not _INTEGER.fullmatch(value):
        raise ValueError(f"invalid container number: {value!r}")
    return int(value)


def _writer(writer: EventWriter | None) -> EventWriter:
    return writer if writer is not None else ListWriter()


def get_container_name(project_name: str, service: ServiceConfig, number: int) -> str:
    """Name of container `number` of the service, unless it sets its own name."""
    if service.container_name:
        return service.container_name
    return SEPARATOR.join([project_name, service.name, str(number)])


def get_container_progress_name(container: Container) -> str:
    return "Container " + get_canonical_container_name(container)


def next_container_number(containers: Iterable[Container]) -> int:
    """One more than the highest container number among the containers."""
    highest = 0
    for container in containers:
        highest = max(highest, _atoi(container.labels.get(CONTAINER_NUMBER_LABEL, "")))
    return highest + 1


def get_scale(service: ServiceConfig) -> int:
    """Number of replicas the service asks for."""
    scale = 1
    deploy = service.deploy
    if deploy is not None and deploy.replicas is not None:
        scale = int(deploy.replicas)
    if scale > 1 and service.container_name:
        raise ValueError(
            f'WARNING: The "{service.name}" service is using the custom container name '
            f'"{service.container_name}". Docker requires each container to have a unique '
            "name. Remove the custom name to scale the service.\n"
        )
    return scale


def must_recreate(expected: ServiceConfig, actual: Container, policy: str) -> bool:
    """Whether the container no longer matches the service configuration."""
    if policy == RecreatePolicy.NEVER:
        return False
    extensions = getattr(expected, "extensions", None) or {}
    if policy == RecreatePolicy.FORCE or extensions.get(EXT_LIFECYCLE) == FORCE_RECREATE:
        return True
    config_changed = actual.labels.get(CONFIG_HASH_LABEL, "") != service_hash(expected)
    image_updated = actual.labels.get(IMAGE_DIGEST_LABEL, "") != expected.custom_labels.get(
        IMAGE_DIGEST_LABEL, ""
    )
    return config_changed or image_updated


def update_services(service: ServiceConfig, containers: list[Container]) -> None:
    """Point `service:` modes and links of the service at the converged containers."""
    if not containers:
        return
    first = containers[0]
    converged = first.labels.get(SERVICE_LABEL, "")
    reference = NETWORK_MODE_CONTAINER_PREFIX + first.id
    if get_dependent_service_from_mode(service.network_mode) == converged:
        service.network_mode = reference
    if get_dependent_service_from_mode(service.ipc) == converged:
        service.ipc = reference
    if get_dependent_service_from_mode(service.pid) == converged:
        service.pid = reference
    if not service.links:
        return
    links: list[str] = []
    for service_link in service.links:
        parts = service_link.split(":")
        link_service, alias = service_link, ""
        if len(parts) == 2:
            link_service, alias = parts
        if link_service != service.name:
            links.append(service_link)
            continue
        for container in containers:
            name = get_canonical_container_name(container)
            if alias:
                links.append(f"{name}:{alias}")
            links.append(f"{name}:{name}")
            links.append(f"{name}:{get_container_name_without_project(container)}")
    service.links = links


def set_dependent_lifecycle(project: Project, service_name: str, strategy: str) -> None:
    """Set the lifecycle strategy of every service depending on the named one."""
    for service in project.services:
        if service_name in service.get_dependencies():
            extensions = getattr(service, "extensions", None)
            if extensions is None:
                extensions = {}
                service.extensions = extensions
            extensions[EXT_LIFECYCLE] = strategy


def short_id_alias_exists(container_id: str, *args: str) -> bool:
    return container_id[:12] in args


def connect_container_to_network(
    client: EngineClient,
    container_id: str,
    network: str,
    config: ServiceNetworkConfig | None,
    links: list[str],
    *args: str,
) -> None:
    ipv4_address = ipv6_address = ""
    ipam = None
    if config is not None:
        ipv4_address = config.ipv4_address
        ipv6_address = config.ipv6_address
        ipam = {"IPv4Address": ipv4_address, "IPv6Address": ipv6_address}
    client.network_connect(
        network,
        container_id,
        {
            "Aliases": list(args),
            "IPAddress": ipv4_address,
            "GlobalIPv6Address": ipv6_address,
            "Links": list(links),
            "IPAMConfig": ipam,
        },
    )


def _container_from_inspect(inspected: dict[str, Any], fallback_id: str) -> Container:
    config = inspected.get("Config") or {}
    settings = inspected.get("NetworkSettings") or {}
    return Container(
        id=inspected.get("Id", fallback_id),
        labels=dict(config.get("Labels") or {}),
        names=[inspected.get("Name", "")],
        networks=dict(settings.get("Networks") or {}),
    )


def create_moby_container(
    client: EngineClient,
    project: Project,
    service: ServiceConfig,
    name: str,
    number: int,
    inherit: Container | None = None,
    auto_remove: bool = False,
    use_network_aliases: bool = True,
    attach_stdin: bool = False,
) -> Container:
    """Create the container and attach it to the service networks."""
    from composeengine.startup import get_links

    options = get_create_options(
        client, project, service, number, inherit, auto_remove, attach_stdin
    )
    platform = getattr(service, "platform", "") or None
    container_id = client.container_create(
        options.config, options.host_config, options.networking_config, platform, name
    )
    created = _container_from_inspect(client.container_inspect(container_id), container_id)
    links = get_links(client, project.name, service, number)
    for net_name in service.networks_by_priority():
        network = project.networks[net_name]
        config = service.networks.get(net_name)
        aliases = [get_container_name(project.name, service, number)]
        if use_network_aliases:
            aliases.append(service.name)
            if config is not None:
                aliases.extend(config.aliases)
        attached = created.networks.get(network.name)
        if attached is not None:
            if short_id_alias_exists(created.id, *(attached.get("Aliases") or [])):
                continue
            client.network_disconnect(network.name, created.id, False)
        connect_container_to_network(client, created.id, network.name, config, links, *aliases)
    return created


def create_container(
    client: EngineClient,
    writer: EventWriter | None,
    project: Project,
    service: ServiceConfig,
    name: str,
    number: int,
    auto_remove: bool = False,
    use_network_aliases: bool = True,
    attach_stdin: bool = False,
) -> Container:
    writer = _writer(writer)
    event_name = "Container " + name
    writer.event(Event(event_name, EventStatus.WORKING, "Creating"))
    container = create_moby_container(
        client, project, service, name, number, None, auto_remove, use_network_aliases, attach_stdin
    )
    writer.event(Event(event_name, EventStatus.DONE, "Created"))
    return container


def recreate_container(
    client: EngineClient,
    writer: EventWriter | None,
    project: Project,
    service: ServiceConfig,
    replaced: Container,
    inherit: bool = True,
    timeout: timedelta | None = None,
) -> Container:
    """Replace a container by a new one, optionally reusing its anonymous volumes."""
    writer = _writer(writer)
    progress_name = get_container_progress_name(replaced)
    writer.event(Event(progress_name, EventStatus.WORKING, "Recreate"))
    client.container_stop(replaced.id, timeout)
    name = get_canonical_container_name(replaced)
    client.container_rename(replaced.id, f"{replaced.id[:12]}_{name}")
    number = _atoi(replaced.labels.get(CONTAINER_NUMBER_LABEL, ""))
    name = get_container_name(project.name, service, number)
    created = create_moby_container(
        client, project, service, name, number, replaced if inherit else None, False, True, False
    )
    client.container_remove(replaced.id)
    writer.event(Event(progress_name, EventStatus.DONE, "Recreated"))
    set_dependent_lifecycle(project, service.name, FORCE_RECREATE)
    return created


def start_container(
    client: EngineClient, writer: EventWriter | None, container: Container
) -> None:
    writer = _writer(writer)
    progress_name = get_container_progress_name(container)
    writer.event(Event(progress_name, EventStatus.WORKING, "Restart"))
    client.container_start(container.id)
    writer.event(Event(progress_name, EventStatus.DONE, "Restarted"))


class Convergence:
    """Brings the containers of a project's services to their desired state."""

    def __init__(
        self,
        client: EngineClient,
        services: Iterable[str],
        state: Iterable[Container],
        writer: EventWriter | None = None,
    ) -> None:
        self.client = client
        self.writer = _writer(writer)
        self._lock = threading.Lock()
        self._observed: dict[str, Containers] = {name: Containers() for name in services}
        for container in Containers(state).filter(is_not_one_off):
            service = container.labels.get(SERVICE_LABEL, "")
            self._observed.setdefault(service, Containers()).append(container)

    def _get_observed(self, service_name: str) -> Containers:
        with self._lock:
            return Containers(self._observed.get(service_name, ()))

    def _set_observed(self, service_name: str, containers: Containers) -> None:
        with self._lock:
            self._observed[service_name] = containers

    def apply(
        self,
        project: Project,
        services: Iterable[str],
        recreate: str = RecreatePolicy.DIVERGED,
        recreate_dependencies: str = RecreatePolicy.DIVERGED,
        inherit: bool = True,
        timeout: timedelta | None = None,
    ) -> None:
        """Converge every service, dependencies first."""
        selected = set(services)

        def converge(name: str) -> None:
            service = project.get_service(name)
            strategy = recreate if name in selected else recreate_dependencies
            self.ensure_service(project, service, strategy, inherit, timeout)
            self.update_project(project, name)

        in_dependency_order(project, converge)

    def update_project(self, project: Project, service_name: str) -> None:
        """Let services referring to `service:name` use its actual containers."""
        with _project_lock:
            containers = self._get_observed(service_name)
            for service in project.services:
                update_services(service, containers)

    def ensure_service(
        self,
        project: Project,
        service: ServiceConfig,
        recreate: str = RecreatePolicy.DIVERGED,
        inherit: bool = True,
        timeout: timedelta | None = None,
    ) -> Containers:
        """Converge one service and return its resulting containers."""
        expected = get_scale(service)
        containers = self._get_observed(service.name)
        actual = len(containers)
        updated: list[Container | None] = [None] * expected
        futures: list[Future[None]] = []
        client, writer = self.client, self.writer

        def scale_down(container: Container) -> None:
            client.container_stop(container.id, timeout)
            client.container_remove(container.id)

        def recreate_at(index: int, container: Container) -> None:
            updated[index] = recreate_container(
                client, writer, project, service, container, inherit, timeout
            )

        def create_at(index: int, name: str, number: int) -> None:
            updated[index] = create_container(
                client, writer, project, service, name, number, False, True, False
            )

        try:
            with ThreadPoolExecutor() as pool:
                for index, container in enumerate(containers):
                    if index >= expected:
                        futures.append(pool.submit(scale_down, container))
                        continue
                    if must_recreate(service, container, recreate):
                        futures.append(pool.submit(recreate_at, index, container))
                        continue
                    progress_name = get_container_progress_name(container)
                    if container.state == CONTAINER_RUNNING:
                        writer.event(Event(progress_name, EventStatus.DONE, "Running"))
                    elif container.state in (CONTAINER_CREATED, CONTAINER_RESTARTING):
                        pass
                    elif container.state == CONTAINER_EXITED:
                        writer.event(Event(progress_name, EventStatus.DONE, "Created"))
                    else:
                        futures.append(pool.submit(start_container, client, writer, container))
                    updated[index] = container

                following = next_container_number(containers)
                for offset in range(expected - actual):
                    number = following + offset
                    name = get_container_name(project.name, service, number)
                    futures.append(pool.submit(create_at, actual + offset, name, number))
        finally:
            result = Containers(c for c in updated if c is not None)
            self._set_observed(service.name, result)
        for future in futures:
            future.result()
        return result