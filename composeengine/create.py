"""Preparing a project for creation and building container create options."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from composeengine.containers import Container
from composeengine.engine import EngineClient, Event, EventStatus, EventWriter, ListWriter
from composeengine.errors import NotFoundError
from composeengine.model import (
    COMPOSE_VERSION,
    CONFIG_HASH_LABEL,
    CONTAINER_NUMBER_LABEL,
    DEPENDENCIES_LABEL,
    NETWORK_LABEL,
    NETWORK_MODE_SERVICE_PREFIX,
    PROJECT_LABEL,
    SERVICE_CONDITION_STARTED,
    VERSION_LABEL,
    VOLUME_LABEL,
    NetworkConfig,
    Project,
    ServiceConfig,
    ServiceDependency,
    ServiceNetworkConfig,
    VolumeConfig,
    service_hash,
    to_moby_env,
    to_moby_health_check,
    to_seconds,
)
from composeengine.mounts import build_container_volumes, get_volumes_from
from composeengine.resources import (
    build_container_port_binding_options,
    build_container_ports,
    get_deploy_resources,
    get_restart_policy,
    parse_security_opts,
    parse_tmpfs,
)

log = logging.getLogger(__name__)


@dataclass
class ContainerCreateOptions:
    """Container, host and networking configuration for creating one container."""

    config: dict[str, Any]
    host_config: dict[str, Any]
    networking_config: dict[str, Any] | None


def _writer(writer: EventWriter | None) -> EventWriter:
    return writer if writer is not None else ListWriter()


def get_image_name(service: ServiceConfig, project_name: str) -> str:
    """The service image, or the name of the image built for it."""
    return service.image or f"{project_name}_{service.name}"


def get_dependent_service_from_mode(mode: str) -> str:
    """The service named by a `service:` mode, or an empty string."""
    if mode.startswith(NETWORK_MODE_SERVICE_PREFIX):
        return mode[len(NETWORK_MODE_SERVICE_PREFIX):]
    return ""


def prepare_volumes(project: Project) -> None:
    """Resolve volumes_from entries and make services depend on the ones they use."""
    for service in project.services:
        volumes_from, depend_services = get_volumes_from(project, service.volumes_from)
        service.volumes_from = volumes_from
        if not depend_services:
            continue
        for other in project.services:
            if other.name in depend_services:
                service.depends_on[other.name] = ServiceDependency(
                    condition=SERVICE_CONDITION_STARTED
                )


def prepare_networks(project: Project) -> None:
    """Label every project network with its key, the project and the version."""
    for key, network in project.networks.items():
        network.labels = {
            **network.labels,
            NETWORK_LABEL: key,
            PROJECT_LABEL: project.name,
            VERSION_LABEL: COMPOSE_VERSION,
        }


def prepare_services_depends_on(project: Project) -> None:
    """Add dependencies implied by service: modes and volumes_from entries."""
    for service in project.services:
        dependencies: list[str] = []
        for mode in (service.network_mode, service.ipc, service.pid):
            dependency = get_dependent_service_from_mode(mode)
            if dependency:
                dependencies.append(dependency)
        for entry in service.volumes_from:
            source = entry.split(":")[0]
            if source == "container":
                continue
            dependencies.append(source)
        if not dependencies:
            continue
        for dependency in project.get_services(*dependencies):
            service.depends_on.setdefault(
                dependency.name, ServiceDependency(condition=SERVICE_CONDITION_STARTED)
            )


def prepare_labels(service: ServiceConfig, number: int) -> dict[str, str]:
    """Container labels: service labels, custom labels, config hash, number, dependencies."""
    labels = {**service.labels, **service.custom_labels}
    labels[CONFIG_HASH_LABEL] = service_hash(service)
    labels[CONTAINER_NUMBER_LABEL] = str(number)
    labels[DEPENDENCIES_LABEL] = ",".join(
        f"{name}:{dependency.condition}" for name, dependency in service.depends_on.items()
    )
    return labels


def get_default_network_mode(project: Project, service: ServiceConfig) -> str:
    """Network mode of a service that does not set one."""
    if not project.networks:
        return "none"
    if service.networks:
        name = service.networks_by_priority()[0]
        return project.networks.get(name, NetworkConfig()).name
    return project.networks.get("default", NetworkConfig()).name


def get_aliases(service: ServiceConfig, config: ServiceNetworkConfig | None) -> list[str]:
    aliases = [service.name]
    if config is not None:
        aliases.extend(config.aliases)
    return aliases


def _networking_config(project: Project, service: ServiceConfig) -> dict[str, Any] | None:
    for network_id in service.networks_by_priority():
        network = project.networks.get(network_id, NetworkConfig())
        config = service.networks.get(network_id)
        ipv4_address = ipv6_address = ""
        ipam = None
        if config is not None:
            ipv4_address = config.ipv4_address
            ipv6_address = config.ipv6_address
            ipam = {"IPv4Address": ipv4_address, "IPv6Address": ipv6_address}
        return {
            "EndpointsConfig": {
                network.name: {
                    "Aliases": get_aliases(service, config),
                    "IPAddress": ipv4_address,
                    "IPv6Gateway": ipv6_address,
                    "IPAMConfig": ipam,
                }
            }
        }
    return None


def get_create_options(
    client: EngineClient,
    project: Project,
    service: ServiceConfig,
    number: int,
    inherit: Container | None = None,
    auto_remove: bool = False,
    attach_stdin: bool = False,
) -> ContainerCreateOptions:
    """Everything needed to create container `number` of the service."""
    labels = prepare_labels(service, number)
    volume_mounts, binds, mounts = build_container_volumes(client, project, service, inherit)

    config: dict[str, Any] = {
        "Hostname": service.hostname,
        "Domainname": service.domainname,
        "User": service.user,
        "ExposedPorts": build_container_ports(service),
        "Tty": service.tty,
        "OpenStdin": service.stdin_open,
        "StdinOnce": attach_stdin and service.stdin_open,
        "AttachStdin": attach_stdin,
        "AttachStderr": True,
        "AttachStdout": True,
        "Cmd": list(service.command) if service.command is not None else None,
        "Image": get_image_name(service, project.name),
        "WorkingDir": service.working_dir,
        "Entrypoint": list(service.entrypoint) if service.entrypoint is not None else None,
        "NetworkDisabled": service.network_mode == "disabled",
        "MacAddress": service.mac_address,
        "Labels": labels,
        "StopSignal": service.stop_signal,
        "Env": to_moby_env(service.environment),
        "Healthcheck": to_moby_health_check(service.healthcheck),
        "Volumes": volume_mounts,
        "StopTimeout": to_seconds(service.stop_grace_period),
    }

    network_mode = service.network_mode or get_default_network_mode(project, service)
    networking_config = _networking_config(project, service)

    log_config: dict[str, Any] = {"Type": "", "Config": {}}
    if service.logging is not None:
        log_config = {
            "Type": service.logging.get("driver", ""),
            "Config": dict(service.logging.get("options") or {}),
        }

    volumes_from = []
    for entry in service.volumes_from:
        if not entry.startswith("container:"):
            raise ValueError(f"invalid volume_from: {entry}")
        volumes_from.append(entry[len("container:"):])

    security_opts = parse_security_opts(project, service.security_opt)
    restart = get_restart_policy(service)

    host_config: dict[str, Any] = {
        "AutoRemove": auto_remove,
        "Binds": binds,
        "Mounts": mounts,
        "CapAdd": list(service.cap_add),
        "CapDrop": list(service.cap_drop),
        "NetworkMode": network_mode,
        "Init": service.init,
        "IpcMode": service.ipc,
        "ReadonlyRootfs": service.read_only,
        "RestartPolicy": {
            "Name": restart.name,
            "MaximumRetryCount": restart.maximum_retry_count,
        },
        "ShmSize": service.shm_size,
        "Sysctls": dict(service.sysctls),
        "PortBindings": build_container_port_binding_options(service),
        "Resources": get_deploy_resources(service),
        "VolumeDriver": service.volume_driver,
        "VolumesFrom": volumes_from,
        "Dns": list(service.dns),
        "DnsSearch": list(service.dns_search),
        "DnsOptions": list(service.dns_opt),
        "ExtraHosts": list(service.extra_hosts),
        "SecurityOpt": security_opts,
        "UsernsMode": service.userns_mode,
        "Privileged": service.privileged,
        "PidMode": service.pid,
        "Tmpfs": parse_tmpfs(service.tmpfs),
        "Isolation": service.isolation,
        "Runtime": service.runtime,
        "LogConfig": log_config,
        "GroupAdd": list(service.group_add),
    }
    return ContainerCreateOptions(config, host_config, networking_config)


def _ipam(network: NetworkConfig) -> dict[str, Any] | None:
    if not network.ipam_driver and not network.ipam_config:
        return None
    return {
        "Driver": network.ipam_driver,
        "Config": [{"Subnet": pool.get("subnet", "")} for pool in network.ipam_config],
    }


def ensure_network(
    client: EngineClient, network: NetworkConfig, writer: EventWriter | None = None
) -> None:
    """Create the network unless it exists; external networks must already exist."""
    writer = _writer(writer)
    try:
        client.network_inspect(network.name)
        return
    except NotFoundError:
        pass
    if network.external:
        if network.driver == "overlay":
            # Overlay networks of other swarm nodes are only visible while in use.
            return
        raise ValueError(
            f"network {network.name} declared as external, but could not be found"
        )
    options = {
        "Labels": dict(network.labels),
        "Driver": network.driver,
        "Options": dict(network.driver_opts),
        "Internal": network.internal,
        "Attachable": network.attachable,
        "IPAM": _ipam(network),
        "EnableIPv6": network.enable_ipv6,
    }
    event_name = f"Network {network.name}"
    writer.event(Event(event_name, EventStatus.WORKING, "Creating"))
    try:
        client.network_create(network.name, options)
    except Exception as err:
        writer.event(Event(event_name, EventStatus.ERROR, "Error"))
        raise RuntimeError(f"failed to create network {network.name}: {err}") from err
    writer.event(Event(event_name, EventStatus.DONE, "Created"))


def ensure_networks(
    client: EngineClient,
    networks: dict[str, NetworkConfig] | Iterable[NetworkConfig],
    writer: EventWriter | None = None,
) -> None:
    values = networks.values() if isinstance(networks, dict) else networks
    for network in values:
        ensure_network(client, network, writer)


def remove_network(client: EngineClient, network: str, writer: EventWriter | None = None) -> None:
    writer = _writer(writer)
    event_name = f"Network {network}"
    writer.event(Event(event_name, EventStatus.WORKING, "Removing"))
    try:
        client.network_remove(network)
    except Exception as err:
        writer.event(Event(event_name, EventStatus.ERROR, "Error"))
        raise RuntimeError(f"failed to remove network {network}: {err}") from err
    writer.event(Event(event_name, EventStatus.DONE, "Removed"))


def create_volume(
    client: EngineClient, volume: VolumeConfig, writer: EventWriter | None = None
) -> None:
    writer = _writer(writer)
    event_name = f'Volume "{volume.name}"'
    writer.event(Event(event_name, EventStatus.WORKING, "Creating"))
    try:
        client.volume_create(
            volume.name, volume.driver, dict(volume.driver_opts), dict(volume.labels)
        )
    except Exception:
        writer.event(Event(event_name, EventStatus.ERROR, "Error"))
        raise
    writer.event(Event(event_name, EventStatus.DONE, "Created"))


def ensure_volume(
    client: EngineClient,
    volume: VolumeConfig,
    project_name: str,
    writer: EventWriter | None = None,
) -> None:
    """Create the volume if missing; warn when an existing one belongs elsewhere."""
    try:
        inspected = client.volume_inspect(volume.name)
    except NotFoundError:
        if volume.external:
            raise ValueError(f'external volume "{volume.name}" not found') from None
        create_volume(client, volume, writer)
        return
    if volume.external:
        return
    labels = inspected.get("Labels") or {}
    owner = labels.get(PROJECT_LABEL)
    if owner is None:
        log.warning(
            'volume "%s" already exists but was not created by Docker Compose. '
            "Use `external: true` to use an existing volume",
            volume.name,
        )
    elif owner != project_name:
        log.warning(
            'volume "%s" already exists but was not created for project "%s". '
            "Use `external: true` to use an existing volume",
            volume.name,
            owner,
        )


def ensure_project_volumes(
    client: EngineClient, project: Project, writer: EventWriter | None = None
) -> None:
    for key, volume in project.volumes.items():
        labelled = dataclasses.replace(
            volume,
            labels={
                **volume.labels,
                VOLUME_LABEL: key,
                PROJECT_LABEL: project.name,
                VERSION_LABEL: COMPOSE_VERSION,
            },
        )
        ensure_volume(client, labelled, project.name, writer)