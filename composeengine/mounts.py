"""Mounts, bind specifications and volumes_from resolution for service containers."""

from __future__ import annotations

import dataclasses
import logging
import os
import posixpath
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from typing import Any

from composeengine.containers import Container
from composeengine.engine import EngineClient
from composeengine.model import (
    SELINUX_PRIVATE,
    SELINUX_SHARED,
    SEPARATOR,
    VOLUME_TYPE_BIND,
    VOLUME_TYPE_NAMED_PIPE,
    VOLUME_TYPE_TMPFS,
    VOLUME_TYPE_VOLUME,
    FileObjectConfig,
    Project,
    ServiceConfig,
    ServiceSecretConfig,
    ServiceVolumeBind,
    ServiceVolumeConfig,
)

log = logging.getLogger(__name__)

SECRETS_DIR = "/run/secrets/"
CONFIGS_BASE_DIR = "/"


@dataclass
class Mount:
    """A mount as passed to the engine when creating a container."""

    type: str = ""
    source: str = ""
    target: str = ""
    read_only: bool = False
    consistency: str = ""
    bind_options: dict[str, Any] | None = None
    volume_options: dict[str, Any] | None = None
    tmpfs_options: dict[str, Any] | None = None


@dataclass
class MountPoint:
    """A mount of an existing container, as reported by the engine."""

    type: str = ""
    name: str = ""
    source: str = ""
    destination: str = ""
    rw: bool = True


def _as_mount_point(value: MountPoint | Mapping[str, Any]) -> MountPoint:
    if isinstance(value, MountPoint):
        return value
    return MountPoint(
        type=value.get("Type", ""),
        name=value.get("Name", ""),
        source=value.get("Source", ""),
        destination=value.get("Destination", ""),
        rw=bool(value.get("RW", False)),
    )


def _clean_path(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def get_bind_mode(bind: ServiceVolumeBind, read_only: bool) -> str:
    """Mode suffix of a bind specification: rw or ro, plus SELinux relabelling."""
    mode = "ro" if read_only else "rw"
    if bind.selinux == SELINUX_SHARED:
        mode += ",z"
    elif bind.selinux == SELINUX_PRIVATE:
        mode += ",Z"
    return mode


def build_mount_options(
    volume: ServiceVolumeConfig,
) -> tuple[dict[str, Any] | None, dict[str, Any] | None, dict[str, Any] | None]:
    """Bind, volume and tmpfs options of a mount; only the one matching its type is set."""
    if volume.type == VOLUME_TYPE_BIND:
        if volume.volume is not None:
            log.warning("mount of type `bind` should not define `volume` option")
        if volume.tmpfs is not None:
            log.warning("mount of type `tmpfs` should not define `tmpfs` option")
        bind = None if volume.bind is None else {"Propagation": volume.bind.propagation}
        return bind, None, None
    if volume.type == VOLUME_TYPE_VOLUME:
        if volume.bind is not None:
            log.warning("mount of type `volume` should not define `bind` option")
        if volume.tmpfs is not None:
            log.warning("mount of type `volume` should not define `tmpfs` option")
        vol = None if volume.volume is None else {"NoCopy": volume.volume.nocopy}
        return None, vol, None
    if volume.type == VOLUME_TYPE_TMPFS:
        if volume.bind is not None:
            log.warning("mount of type `tmpfs` should not define `bind` option")
        if volume.volume is not None:
            log.warning("mount of type `tmpfs` should not define `volume` option")
        tmpfs = None if volume.tmpfs is None else {"SizeBytes": volume.tmpfs.size}
        return None, None, tmpfs
    return None, None, None


def build_mount(project: Project, volume: ServiceVolumeConfig) -> Mount:
    """The engine mount for a service volume; relative bind sources become absolute."""
    source = volume.source
    if (
        volume.type == VOLUME_TYPE_BIND
        and not os.path.isabs(source)
        and not source.startswith("/")
    ):
        source = os.path.abspath(source)
    if volume.type == VOLUME_TYPE_VOLUME and volume.source:
        defined = project.volumes.get(volume.source)
        if defined is not None:
            source = defined.name
    bind, vol, tmpfs = build_mount_options(volume)
    return Mount(
        type=volume.type,
        source=source,
        target=_clean_path(volume.target),
        read_only=volume.read_only,
        consistency=volume.consistency,
        bind_options=bind,
        volume_options=vol,
        tmpfs_options=tmpfs,
    )


def _file_object_mounts(
    project: Project,
    refs: list[ServiceSecretConfig],
    definitions: dict[str, FileObjectConfig],
    base_dir: str,
    kind: str,
) -> list[Mount]:
    found: dict[str, Mount] = {}
    for ref in refs:
        target = ref.target
        if not target:
            target = base_dir + ref.source
        elif not target.startswith("/"):
            target = base_dir + target
        defined = definitions.get(ref.source, FileObjectConfig())
        if defined.external:
            raise ValueError(f"unsupported external {kind} {defined.name}")
        found[target] = build_mount(
            project,
            ServiceVolumeConfig(
                type=VOLUME_TYPE_BIND, source=defined.file, target=target, read_only=True
            ),
        )
    return list(found.values())


def build_container_config_mounts(project: Project, service: ServiceConfig) -> list[Mount]:
    """Read-only bind mounts for the configs a service uses."""
    return _file_object_mounts(
        project, service.configs, project.configs, CONFIGS_BASE_DIR, "config"
    )


def build_container_secret_mounts(project: Project, service: ServiceConfig) -> list[Mount]:
    """Read-only bind mounts for the secrets a service uses, under /run/secrets."""
    return _file_object_mounts(
        project, service.secrets, project.secrets, SECRETS_DIR, "secret"
    )


def fill_bind_mounts(
    project: Project, service: ServiceConfig, mounts: dict[str, Mount]
) -> dict[str, Mount]:
    """Add the service's volumes, then secrets and configs whose target is still free."""
    for volume in service.volumes:
        mount = build_mount(project, volume)
        mounts[mount.target] = mount
    for mount in build_container_secret_mounts(project, service):
        mounts.setdefault(mount.target, mount)
    for mount in build_container_config_mounts(project, service):
        mounts.setdefault(mount.target, mount)
    return mounts


def build_container_mount_options(
    project: Project,
    service: ServiceConfig,
    image_volumes: Collection[str] | None,
    inherit: Container | None,
) -> list[Mount]:
    """All mounts of a service container, reusing anonymous volumes of a replaced one."""
    mounts: dict[str, Mount] = {}
    if inherit is not None:
        volumes = list(service.volumes)
        for raw in inherit.mounts:
            point = _as_mount_point(raw)
            if point.type == "tmpfs":
                continue
            source = point.name if point.type == "volume" else point.source
            destination = _clean_path(point.destination)
            inherited = Mount(
                type=point.type,
                source=source,
                target=destination,
                read_only=not point.rw,
            )
            if image_volumes is not None and destination in image_volumes:
                mounts[destination] = inherited
            kept = []
            for volume in volumes:
                if volume.target != destination or volume.source:
                    kept.append(volume)
                    continue
                mounts[destination] = inherited
            volumes = kept
        service = dataclasses.replace(service, volumes=volumes)
    return list(fill_bind_mounts(project, service, mounts).values())


def build_container_volumes(
    client: EngineClient,
    project: Project,
    service: ServiceConfig,
    inherit: Container | None,
) -> tuple[dict[str, dict[str, Any]], list[str], list[Mount]]:
    """Volume targets, bind specifications and mounts for a service container.

    Bind mounts whose host path must be created are expressed as bind
    specifications; every other mount is returned as a Mount.
    """
    image = service.image or f"{project.name}_{service.name}"
    inspect = client.image_inspect(image)
    config = inspect.get("Config")
    image_volumes = None if config is None else (config.get("Volumes") or {})
    options = build_container_mount_options(project, service, image_volumes, inherit)

    volume_mounts: dict[str, dict[str, Any]] = {}
    binds: list[str] = []
    mounts: list[Mount] = []
    for mount in options:
        volume_mounts[mount.target] = {}
        if mount.type in (VOLUME_TYPE_BIND, VOLUME_TYPE_NAMED_PIPE):
            declared = next(
                (
                    v
                    for v in service.volumes
                    if v.target == mount.target
                    and v.bind is not None
                    and v.bind.create_host_path
                ),
                None,
            )
            if declared is not None:
                mode = get_bind_mode(declared.bind, mount.read_only)
                binds.append(f"{mount.source}:{mount.target}:{mode}")
                continue
        mounts.append(mount)
    return volume_mounts, binds, mounts


def get_volumes_from(
    project: Project, volumes_from: list[str]
) -> tuple[list[str], list[str]]:
    """Resolve volumes_from entries to containers, and the services they refer to."""
    volumes: list[str] = []
    services: list[str] = []
    for entry in volumes_from:
        spec = entry.split(":")
        if spec[0] == "container":
            volumes.append(":".join(spec[1:]))
            continue
        name = spec[0]
        services.append(name)
        service = project.get_service(name)
        first = service.container_name or SEPARATOR.join([project.name, service.name, "1"])
        value = f"container:{first}"
        if len(spec) > 2:
            value = f"container:{first}:{':'.join(spec[1:])}"
        volumes.append(value)
    return volumes, services