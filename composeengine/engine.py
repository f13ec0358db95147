"""Container engine client interface and progress events."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from composeengine.containers import Container


class EngineClient(Protocol):
    """Operations of the container engine API the package relies on.

    Filters are lists of (key, value) pairs. Methods that address a named
    object raise NotFoundError when that object does not exist.
    """

    def container_list(
        self, filters: list[tuple[str, str]], all_containers: bool = False
    ) -> list[Container]:
        """Containers matching the filters; stopped ones only when asked for."""

    def container_inspect(self, container_id: str) -> dict[str, Any]:
        """Engine inspection document of a container."""

    def container_create(
        self,
        config: dict[str, Any],
        host_config: dict[str, Any],
        networking_config: dict[str, Any] | None,
        platform: str | None,
        name: str,
    ) -> str:
        """Create a container and return its ID."""

    def container_start(self, container_id: str) -> None:
        """Start a container."""

    def container_stop(self, container_id: str, timeout: timedelta | None) -> None:
        """Stop a container, waiting at most the timeout before killing it."""

    def container_kill(self, container_id: str, signal: str) -> None:
        """Send a signal to a container; an empty signal means the default one."""

    def container_remove(
        self, container_id: str, force: bool = False, remove_volumes: bool = False
    ) -> None:
        """Remove a container."""

    def container_rename(self, container_id: str, name: str) -> None:
        """Rename a container."""

    def image_inspect(self, image: str) -> dict[str, Any]:
        """Engine inspection document of an image."""

    def image_remove(self, image: str) -> None:
        """Remove an image."""

    def volume_list(self, filters: list[tuple[str, str]]) -> list[dict[str, Any]]:
        """Volumes matching the filters."""

    def volume_inspect(self, name: str) -> dict[str, Any]:
        """Engine inspection document of a volume."""

    def volume_create(
        self,
        name: str,
        driver: str,
        driver_opts: dict[str, str],
        labels: dict[str, str],
    ) -> dict[str, Any]:
        """Create a volume."""

    def volume_remove(self, name: str, force: bool) -> None:
        """Remove a volume."""

    def network_list(self, filters: list[tuple[str, str]]) -> list[dict[str, Any]]:
        """Networks matching the filters."""

    def network_inspect(self, name: str) -> dict[str, Any]:
        """Engine inspection document of a network."""

    def network_create(self, name: str, options: dict[str, Any]) -> str:
        """Create a network and return its ID."""

    def network_remove(self, name: str) -> None:
        """Remove a network."""

    def network_connect(
        self, network: str, container_id: str, endpoint: dict[str, Any]
    ) -> None:
        """Attach a container to a network."""

    def network_disconnect(self, network: str, container_id: str, force: bool) -> None:
        """Detach a container from a network."""

    def daemon_host(self) -> str:
        """Address of the engine daemon."""


class EventStatus(Enum):
    WORKING = "Working"
    DONE = "Done"
    WARNING = "Warning"
    ERROR = "Error"


@dataclass(frozen=True)
class Event:
    """Progress of one operation on one resource."""

    id: str
    status: EventStatus
    text: str = ""
    status_text: str = ""


class EventWriter(Protocol):
    """Receives progress events."""

    def event(self, event: Event) -> None:
        """Report one event."""

    def events(self, events: Iterable[Event]) -> None:
        """Report several events."""


@dataclass
class ListWriter:
    """Event writer that keeps every event it receives, in order."""

    received: list[Event] = field(default_factory=list)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def event(self, event: Event) -> None:
        with self._lock:
            self.received.append(event)

    def events(self, events: Iterable[Event]) -> None:
        batch = list(events)
        with self._lock:
            self.received.extend(batch)