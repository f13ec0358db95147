"""Service links, dependency waiting and starting the containers of a service."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor

from composeengine.containers import (
    Container,
    OneOff,
    get_canonical_container_name,
    get_containers,
)
from composeengine.convergence import CONTAINER_RUNNING, get_container_progress_name, get_scale
from composeengine.engine import EngineClient, Event, EventStatus, EventWriter, ListWriter
from composeengine.filters import one_off_filter, project_filter, service_filter
from composeengine.model import (
    ONEOFF_LABEL,
    SEPARATOR,
    SERVICE_CONDITION_STARTED,
    Project,
    ServiceConfig,
    ServiceDependency,
)

log = logging.getLogger(__name__)

SERVICE_CONDITION_RUNNING_OR_HEALTHY = "running_or_healthy"
SERVICE_CONDITION_HEALTHY = "service_healthy"
SERVICE_CONDITION_COMPLETED_SUCCESSFULLY = "service_completed_successfully"

HEALTH_HEALTHY = "healthy"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_STARTING = "starting"


def _writer(writer: EventWriter | None) -> EventWriter:
    return writer if writer is not None else ListWriter()


def _container_events(
    containers: Iterable[Container], status: EventStatus, text: str
) -> list[Event]:
    return [Event(get_container_progress_name(c), status, text) for c in containers]


def get_links(
    client: EngineClient, project_name: str, service: ServiceConfig, number: int
) -> list[str]:
    """Container links of a service: linked services, itself when one-off, external links."""
    links: list[str] = []

    def service_containers(name: str) -> list[Container]:
        return list(get_containers(client, project_name, OneOff.EXCLUDE, True, name))

    for raw_link in service.links:
        parts = raw_link.split(":")
        link_service = parts[0]
        link_name = parts[1] if len(parts) == 2 else link_service
        for container in service_containers(link_service):
            name = get_canonical_container_name(container)
            links.append(f"{name}:{link_name}")
            links.append(f"{name}:{SEPARATOR.join([link_service, str(number)])}")
            links.append(
                f"{name}:{SEPARATOR.join([project_name, link_service, str(number)])}"
            )

    if service.labels.get(ONEOFF_LABEL) == "True":
        prefix = project_name + SEPARATOR
        for container in service_containers(service.name):
            name = get_canonical_container_name(container)
            short = name[len(prefix):] if name.startswith(prefix) else name
            links.append(f"{name}:{service.name}")
            links.append(f"{name}:{short}")
            links.append(f"{name}:{name}")

    for raw_link in service.external_links:
        parts = raw_link.split(":")
        external = parts[0]
        link_name = parts[1] if len(parts) == 2 else external
        links.append(f"{external}:{link_name}")
    return links


def should_wait_for_dependency(
    service_name: str, dependency: ServiceDependency, project: Project
) -> bool:
    """Whether starting must wait on the dependency's condition."""
    if dependency.condition == SERVICE_CONDITION_STARTED:
        # Already guaranteed by starting services in dependency order.
        return False
    service = project.get_service(service_name)
    return service.scale != 0


def is_service_healthy(
    client: EngineClient, project: Project, service_name: str, fallback_running: bool
) -> bool:
    """Whether every running container of the service reports itself healthy."""
    containers = list(get_containers(client, project.name, OneOff.EXCLUDE, False, service_name))
    if not containers:
        return False
    for container in containers:
        inspected = client.container_inspect(container.id)
        config = inspected.get("Config") or {}
        state = inspected.get("State")
        if config.get("Healthcheck") is None and fallback_running:
            return state is not None and state.get("Status") == "running"
        health = None if state is None else state.get("Health")
        if health is None:
            raise RuntimeError(
                f'container for service "{service_name}" has no healthcheck configured'
            )
        status = health.get("Status", "")
        if status == HEALTH_HEALTHY:
            continue
        if status == HEALTH_UNHEALTHY:
            raise RuntimeError(f'container for service "{service_name}" is unhealthy')
        if status == HEALTH_STARTING:
            return False
        raise RuntimeError(
            f'container for service "{service_name}" had unexpected health status "{status}"'
        )
    return True


def is_service_completed(
    client: EngineClient, project: Project, service_name: str
) -> tuple[bool, int]:
    """Whether a container of the service has exited, and its exit code."""
    for container in get_containers(client, project.name, OneOff.EXCLUDE, True, service_name):
        state = client.container_inspect(container.id).get("State")
        if state is not None and state.get("Status") == "exited":
            return True, int(state.get("ExitCode", 0))
    return False, 0


def wait_dependencies(
    client: EngineClient,
    project: Project,
    dependencies: Mapping[str, ServiceDependency],
    writer: EventWriter | None = None,
    interval: float = 0.5,
) -> None:
    """Block until every dependency meets its depends_on condition."""
    writer = _writer(writer)
    waits: list[tuple[str, str, list[Container]]] = []
    for name, dependency in dependencies.items():
        if not should_wait_for_dependency(name, dependency, project):
            continue
        containers = list(get_containers(client, project.name, OneOff.EXCLUDE, False, name))
        writer.events(_container_events(containers, EventStatus.WORKING, "Waiting"))
        waits.append((name, dependency.condition, containers))
    if not waits:
        return

    stop = threading.Event()

    def satisfied(name: str, condition: str, containers: list[Container]) -> bool:
        if condition in (SERVICE_CONDITION_RUNNING_OR_HEALTHY, SERVICE_CONDITION_HEALTHY):
            fallback = condition == SERVICE_CONDITION_RUNNING_OR_HEALTHY
            if is_service_healthy(client, project, name, fallback):
                writer.events(_container_events(containers, EventStatus.DONE, "Healthy"))
                return True
            return False
        if condition == SERVICE_CONDITION_COMPLETED_SUCCESSFULLY:
            exited, code = is_service_completed(client, project, name)
            if not exited:
                return False
            writer.events(_container_events(containers, EventStatus.DONE, "Exited"))
            if code != 0:
                raise RuntimeError(
                    f'service "{name}" didn\'t completed successfully: exit {code}'
                )
            return True
        log.warning("unsupported depends_on condition: %s", condition)
        return True

    def wait(name: str, condition: str, containers: list[Container]) -> None:
        while not stop.wait(interval):
            try:
                if satisfied(name, condition, containers):
                    return
            except Exception:
                stop.set()
                raise

    with ThreadPoolExecutor(max_workers=len(waits)) as pool:
        futures = [pool.submit(wait, *entry) for entry in waits]
    for future in futures:
        future.result()


def start_service(
    client: EngineClient,
    project: Project,
    service: ServiceConfig,
    writer: EventWriter | None = None,
) -> None:
    """Wait for the service's dependencies, then start its stopped containers."""
    writer = _writer(writer)
    if service.deploy is not None and service.deploy.replicas == 0:
        return
    wait_dependencies(client, project, service.depends_on, writer)
    containers = client.container_list(
        [project_filter(project.name), service_filter(service.name), one_off_filter(False)],
        all_containers=True,
    )
    if not containers:
        try:
            get_scale(service)
        except ValueError:
            return
        raise RuntimeError(f'service "{service.name}" has no container to start')

    def start(container: Container) -> None:
        name = get_container_progress_name(container)
        writer.event(Event(name, EventStatus.WORKING, "Starting"))
        client.container_start(container.id)
        writer.event(Event(name, EventStatus.DONE, "Started"))

    stopped = [c for c in containers if c.state != CONTAINER_RUNNING]
    if not stopped:
        return
    with ThreadPoolExecutor(max_workers=len(stopped)) as pool:
        futures = [pool.submit(start, c) for c in stopped]
    for future in futures:
        future.result()