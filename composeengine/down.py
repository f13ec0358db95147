"""Stopping and removing a project's containers, networks, volumes and images."""

from __future__ import annotations

import dataclasses
import functools
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta

from composeengine.containers import (
    Container,
    Containers,
    OneOff,
    actual_networks,
    actual_volumes,
    get_containers,
    is_not_one_off,
    is_not_service,
    is_service,
    project_from_name,
)
from composeengine.convergence import get_container_progress_name
from composeengine.create import get_image_name, remove_network
from composeengine.dependencies import in_reverse_dependency_order
from composeengine.engine import EngineClient, Event, EventStatus, EventWriter, ListWriter
from composeengine.errors import NotFoundError
from composeengine.model import Project

NO_RESOURCE_WARNING = "Warning: No resource found to remove"


@dataclass
class DownOptions:
    """What `down` removes besides the project's service containers."""

    project: Project | None = None
    remove_orphans: bool = False
    timeout: timedelta | None = None
    images: str = ""
    volumes: bool = False


def _writer(writer: EventWriter | None) -> EventWriter:
    return writer if writer is not None else ListWriter()


def _run_concurrently(tasks: Iterable[Callable[[], None]]) -> None:
    """Run the tasks in parallel and raise the first error, in task order."""
    tasks = list(tasks)
    if not tasks:
        return
    with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
        futures = [pool.submit(task) for task in tasks]
    for future in futures:
        future.result()


def stop_containers(
    client: EngineClient,
    writer: EventWriter | None,
    containers: Iterable[Container],
    timeout: timedelta | None = None,
) -> None:
    writer = _writer(writer)

    def stop(container: Container) -> None:
        name = get_container_progress_name(container)
        writer.event(Event(name, EventStatus.WORKING, "Stopping"))
        try:
            client.container_stop(container.id, timeout)
        except Exception:
            writer.event(Event(name, EventStatus.ERROR, "Error while Stopping"))
            raise
        writer.event(Event(name, EventStatus.DONE, "Stopped"))

    _run_concurrently(functools.partial(stop, c) for c in containers)


def remove_containers(
    client: EngineClient,
    writer: EventWriter | None,
    containers: Iterable[Container],
    timeout: timedelta | None = None,
    volumes: bool = False,
) -> None:
    """Stop then force-remove each container, optionally with its anonymous volumes."""
    writer = _writer(writer)

    def remove(container: Container) -> None:
        name = get_container_progress_name(container)
        writer.event(Event(name, EventStatus.WORKING, "Stopping"))
        try:
            stop_containers(client, writer, [container], timeout)
        except Exception:
            writer.event(Event(name, EventStatus.ERROR, "Error while Stopping"))
            raise
        writer.event(Event(name, EventStatus.WORKING, "Removing"))
        try:
            client.container_remove(container.id, force=True, remove_volumes=volumes)
        except Exception:
            writer.event(Event(name, EventStatus.ERROR, "Error while Removing"))
            raise
        writer.event(Event(name, EventStatus.DONE, "Removed"))

    _run_concurrently(functools.partial(remove, c) for c in containers)


def remove_image(client: EngineClient, image: str, writer: EventWriter | None = None) -> None:
    writer = _writer(writer)
    event_id = f"Image {image}"
    writer.event(Event(event_id, EventStatus.WORKING, "Removing"))
    try:
        client.image_remove(image)
    except NotFoundError:
        writer.event(Event(event_id, EventStatus.DONE, NO_RESOURCE_WARNING))
        return
    writer.event(Event(event_id, EventStatus.DONE, "Removed"))


def remove_volume(
    client: EngineClient, volume_name: str, writer: EventWriter | None = None
) -> None:
    writer = _writer(writer)
    resource = f"Volume {volume_name}"
    writer.event(Event(resource, EventStatus.WORKING, "Removing"))
    try:
        client.volume_remove(volume_name, True)
    except NotFoundError:
        writer.event(Event(resource, EventStatus.DONE, NO_RESOURCE_WARNING))
        return
    writer.event(Event(resource, EventStatus.DONE, "Removed"))


def get_service_images(options: DownOptions, project_name: str) -> list[str]:
    """Images to remove: all service images, or only built ones when images is 'local'."""
    images: dict[str, None] = {}
    services = options.project.services if options.project is not None else []
    for service in services:
        if options.images == "local" and service.image:
            continue
        images[service.image or get_image_name(service, project_name)] = None
    return list(images)


def get_project_with_resources(
    client: EngineClient, containers: Iterable[Container], project_name: str
) -> Project:
    """Rebuild a project from its existing containers, volumes and networks."""
    services = Containers(containers).filter(is_not_one_off)
    try:
        project = project_from_name(services, project_name)
    except NotFoundError:
        project = Project(name=project_name)
    project.volumes = actual_volumes(client, project_name)
    project.networks = actual_networks(client, project_name)
    return project


def down(
    client: EngineClient,
    project_name: str,
    options: DownOptions | None = None,
    writer: EventWriter | None = None,
) -> None:
    """Remove the project's containers, networks and, when asked, volumes and images."""
    options = options if options is not None else DownOptions()
    writer = _writer(writer)
    project_name = project_name.lower()

    containers = Containers(get_containers(client, project_name, OneOff.INCLUDE, True))
    project = options.project
    if project is None:
        project = get_project_with_resources(client, containers, project_name)
    resource_to_remove = bool(containers)

    def remove_service(service: str) -> None:
        remove_containers(
            client, writer, containers.filter(is_service(service)), options.timeout, options.volumes
        )

    in_reverse_dependency_order(project, remove_service)

    orphans = containers.filter(is_not_service(*project.service_names()))
    if options.remove_orphans and orphans:
        remove_containers(client, writer, orphans, options.timeout, False)

    ops: list[Callable[[], None]] = [
        functools.partial(remove_network, client, network.name, writer)
        for network in project.networks.values()
        if not network.external
    ]
    if options.images:
        with_project = dataclasses.replace(options, project=project)
        ops.extend(
            functools.partial(remove_image, client, image, writer)
            for image in get_service_images(with_project, project_name)
        )
    if options.volumes:
        ops.extend(
            functools.partial(remove_volume, client, volume.name, writer)
            for volume in project.volumes.values()
            if not volume.external
        )

    if not resource_to_remove and not ops:
        writer.event(Event(project_name, EventStatus.DONE, NO_RESOURCE_WARNING))

    _run_concurrently(ops)