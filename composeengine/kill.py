"""Sending a signal to a project's containers."""

from __future__ import annotations

import sys
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor

from composeengine.containers import Container, OneOff, get_canonical_container_name, get_containers
from composeengine.engine import EngineClient, Event, EventStatus, EventWriter, ListWriter


def kill(
    client: EngineClient,
    project_name: str,
    services: Iterable[str] = (),
    signal: str = "",
    writer: EventWriter | None = None,
) -> None:
    """Send the signal to every running container of the project or of the given services."""
    if writer is None:
        writer = ListWriter()
    containers = get_containers(client, project_name, OneOff.INCLUDE, False, *services)
    if not containers:
        sys.stderr.write("no container to kill")
        return

    def kill_one(container: Container) -> None:
        name = "Container " + get_canonical_container_name(container)
        writer.event(Event(name, EventStatus.WORKING, "Killing"))
        try:
            client.container_kill(container.id, signal)
        except Exception:
            writer.event(Event(name, EventStatus.ERROR, "Error while Killing"))
            raise
        writer.event(Event(name, EventStatus.DONE, "Killed"))

    with ThreadPoolExecutor() as pool:
        futures = [pool.submit(kill_one, c) for c in containers]
    for future in futures:
        future.result()