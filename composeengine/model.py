"""Project and service model, service hashing and project conversion."""

from __future__ import annotations

import dataclasses
import hashlib
import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import yaml

from composeengine.errors import NotFoundError

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
ONEOFF_LABEL = "com.docker.compose.oneoff"
CONTAINER_NUMBER_LABEL = "com.docker.compose.container-number"
CONFIG_HASH_LABEL = "com.docker.compose.config-hash"
IMAGE_DIGEST_LABEL = "com.docker.compose.image"
DEPENDENCIES_LABEL = "com.docker.compose.depends_on"
NETWORK_LABEL = "com.docker.compose.network"
VOLUME_LABEL = "com.docker.compose.volume"
VERSION_LABEL = "com.docker.compose.version"
WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"
COMPOSE_VERSION = "2.3.3"

SEPARATOR = "-"

NETWORK_MODE_SERVICE_PREFIX = "service:"
NETWORK_MODE_CONTAINER_PREFIX = "container:"

SERVICE_CONDITION_STARTED = "service_started"
SERVICE_CONDITION_HEALTHY = "service_healthy"
SERVICE_CONDITION_COMPLETED_SUCCESSFULLY = "service_completed_successfully"
SERVICE_CONDITION_RUNNING_OR_HEALTHY = "running_or_healthy"

PULL_POLICY_BUILD = "build"

VOLUME_TYPE_BIND = "bind"
VOLUME_TYPE_VOLUME = "volume"
VOLUME_TYPE_TMPFS = "tmpfs"
VOLUME_TYPE_NAMED_PIPE = "npipe"

SELINUX_SHARED = "z"
SELINUX_PRIVATE = "Z"

_SKIP = {"skip": True}


@dataclass
class ServiceDependency:
    condition: str = ""


@dataclass
class ServiceNetworkConfig:
    priority: int = 0
    aliases: list[str] = field(default_factory=list)
    ipv4_address: str = ""
    ipv6_address: str = ""


@dataclass
class ServiceVolumeBind:
    propagation: str = ""
    create_host_path: bool = False
    selinux: str = ""


@dataclass
class ServiceVolumeVolume:
    nocopy: bool = False


@dataclass
class ServiceVolumeTmpfs:
    size: int = 0


@dataclass
class ServiceVolumeConfig:
    type: str = ""
    source: str = ""
    target: str = ""
    read_only: bool = False
    consistency: str = ""
    bind: ServiceVolumeBind | None = None
    volume: ServiceVolumeVolume | None = None
    tmpfs: ServiceVolumeTmpfs | None = None


@dataclass
class ServicePortConfig:
    target: int = 0
    published: str = ""
    protocol: str = "tcp"
    host_ip: str = ""
    mode: str = ""


@dataclass
class ServiceSecretConfig:
    """A secret or config reference made by a service."""

    source: str = ""
    target: str = ""
    uid: str = ""
    gid: str = ""
    mode: int | None = None


@dataclass
class HealthCheckConfig:
    test: list[str] = field(default_factory=list)
    timeout: timedelta | None = None
    interval: timedelta | None = None
    retries: int | None = None
    start_period: timedelta | None = None
    disable: bool = False


@dataclass
class RestartPolicyConfig:
    condition: str = ""
    delay: timedelta | None = None
    max_attempts: int | None = None
    window: timedelta | None = None


@dataclass
class DeviceRequest:
    capabilities: list[str] = field(default_factory=list)
    driver: str = ""
    count: int = 0
    ids: list[str] = field(default_factory=list)


@dataclass
class Resource:
    nano_cpus: str = ""
    memory_bytes: int = 0
    devices: list[DeviceRequest] = field(default_factory=list)


@dataclass
class DeployConfig:
    replicas: int | None = None
    limits: Resource | None = None
    reservations: Resource | None = None
    restart_policy: RestartPolicyConfig | None = None


@dataclass
class BlkioConfig:
    """Block IO settings; device entries are (path, value) pairs."""

    weight: int = 0
    weight_device: list[tuple[str, int]] = field(default_factory=list)
    device_read_bps: list[tuple[str, int]] = field(default_factory=list)
    device_read_iops: list[tuple[str, int]] = field(default_factory=list)
    device_write_bps: list[tuple[str, int]] = field(default_factory=list)
    device_write_iops: list[tuple[str, int]] = field(default_factory=list)


@dataclass
class UlimitsConfig:
    single: int = 0
    soft: int = 0
    hard: int = 0


def _format_duration(value: timedelta) -> str:
    return f"{value.total_seconds():g}s"


def _is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        out: dict[str, Any] = {}
        for f in dataclasses.fields(value):
            if f.metadata.get("skip"):
                continue
            encoded = _encode(getattr(value, f.name))
            if not _is_empty(encoded):
                out[f.name] = encoded
        return out
    if isinstance(value, timedelta):
        return _format_duration(value)
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


@dataclass
class ServiceConfig:
    """A service as declared in a compose project."""

    name: str = field(default="", metadata=_SKIP)
    image: str = ""
    build: dict[str, Any] | None = None
    pull_policy: str = ""
    platform: str = ""
    scale: int = 1
    deploy: DeployConfig | None = None
    container_name: str = ""
    hostname: str = ""
    domainname: str = ""
    user: str = ""
    working_dir: str = ""
    mac_address: str = ""
    stop_signal: str = ""
    stop_grace_period: timedelta | None = None
    command: list[str] | None = None
    entrypoint: list[str] | None = None
    environment: dict[str, str | None] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    custom_labels: dict[str, str] = field(default_factory=dict, metadata=_SKIP)
    extensions: dict[str, Any] = field(default_factory=dict, metadata=_SKIP)
    depends_on: dict[str, ServiceDependency] = field(default_factory=dict)
    links: list[str] = field(default_factory=list)
    external_links: list[str] = field(default_factory=list)
    network_mode: str = ""
    ipc: str = ""
    pid: str = ""
    networks: dict[str, ServiceNetworkConfig | None] = field(default_factory=dict)
    volumes: list[ServiceVolumeConfig] = field(default_factory=list)
    volumes_from: list[str] = field(default_factory=list)
    volume_driver: str = ""
    tmpfs: list[str] = field(default_factory=list)
    secrets: list[ServiceSecretConfig] = field(default_factory=list)
    configs: list[ServiceSecretConfig] = field(default_factory=list)
    expose: list[str] = field(default_factory=list)
    ports: list[ServicePortConfig] = field(default_factory=list)
    healthcheck: HealthCheckConfig | None = None
    logging: dict[str, Any] | None = None
    tty: bool = False
    stdin_open: bool = False
    privileged: bool = False
    read_only: bool = False
    init: bool | None = None
    restart: str = ""
    cap_add: list[str] = field(default_factory=list)
    cap_drop: list[str] = field(default_factory=list)
    dns: list[str] = field(default_factory=list)
    dns_search: list[str] = field(default_factory=list)
    dns_opt: list[str] = field(default_factory=list)
    extra_hosts: list[str] = field(default_factory=list)
    security_opt: list[str] = field(default_factory=list)
    group_add: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)
    device_cgroup_rules: list[str] = field(default_factory=list)
    sysctls: dict[str, str] = field(default_factory=dict)
    userns_mode: str = ""
    isolation: str = ""
    runtime: str = ""
    cgroup_parent: str = ""
    cpuset: str = ""
    shm_size: int = 0
    mem_limit: int = 0
    mem_swap_limit: int = 0
    mem_reservation: int = 0
    mem_swappiness: int = 0
    oom_kill_disable: bool = False
    cpu_count: int = 0
    cpu_period: int = 0
    cpu_quota: int = 0
    cpu_rt_period: int = 0
    cpu_rt_runtime: int = 0
    cpu_shares: int = 0
    cpus: float = 0.0
    pids_limit: int = 0
    blkio_config: BlkioConfig | None = None
    ulimits: dict[str, UlimitsConfig] = field(default_factory=dict)

    def get_dependencies(self) -> list[str]:
        """Names of the services this service depends on, without duplicates."""
        deps: dict[str, None] = {}
        for name in self.depends_on:
            deps[name] = None
        for link in self.links:
            deps[link.split(":")[0]] = None
        for mode in (self.network_mode, self.ipc, self.pid):
            if mode.startswith(NETWORK_MODE_SERVICE_PREFIX):
                deps[mode[len(NETWORK_MODE_SERVICE_PREFIX):]] = None
        for entry in self.volumes_from:
            source = entry.split(":")[0]
            if source != "container":
                deps[source] = None
        return list(deps)

    def networks_by_priority(self) -> list[str]:
        """Network names, highest priority first."""

        def priority(name: str) -> int:
            config = self.networks[name]
            return config.priority if config is not None else 0

        return sorted(self.networks, key=lambda n: (-priority(n), n))

    def to_dict(self) -> dict[str, Any]:
        out = _encode(self)
        out.update(_encode(self.extensions))
        return out


@dataclass
class NetworkConfig:
    name: str = ""
    driver: str = ""
    driver_opts: dict[str, str] = field(default_factory=dict)
    ipam_driver: str = ""
    ipam_config: list[dict[str, Any]] = field(default_factory=list)
    external: bool = False
    internal: bool = False
    attachable: bool = False
    enable_ipv6: bool = False
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class VolumeConfig:
    name: str = ""
    driver: str = ""
    driver_opts: dict[str, str] = field(default_factory=dict)
    external: bool = False
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class FileObjectConfig:
    """A project-level secret or config definition."""

    name: str = ""
    file: str = ""
    external: bool = False
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class Project:
    name: str = ""
    working_dir: str = ""
    services: list[ServiceConfig] = field(default_factory=list)
    disabled_services: list[ServiceConfig] = field(default_factory=list)
    networks: dict[str, NetworkConfig] = field(default_factory=dict)
    volumes: dict[str, VolumeConfig] = field(default_factory=dict)
    secrets: dict[str, FileObjectConfig] = field(default_factory=dict)
    configs: dict[str, FileObjectConfig] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)

    def service_names(self) -> list[str]:
        return [s.name for s in self.services]

    def all_services(self) -> list[ServiceConfig]:
        return [*self.services, *self.disabled_services]

    def get_service(self, name: str) -> ServiceConfig:
        for service in self.services:
            if service.name == name:
                return service
        raise NotFoundError(f"no such service: {name}")

    def get_services(self, *args: str) -> list[ServiceConfig]:
        """Services with the given names, or all services when none are given."""
        if not args:
            return list(self.services)
        return [self.get_service(name) for name in args]

    def for_services(self, names: list[str]) -> None:
        """Keep only the named services and their dependencies enabled."""
        if not names:
            return
        enabled: set[str] = set()
        pending = list(names)
        while pending:
            name = pending.pop()
            if name in enabled:
                continue
            service = self.get_service(name)
            enabled.add(name)
            pending.extend(service.get_dependencies())
        kept = [s for s in self.services if s.name in enabled]
        dropped = [s for s in self.services if s.name not in enabled]
        self.services = kept
        self.disabled_services = [*self.disabled_services, *dropped]

    def relative_path(self, path: str) -> str:
        if path.startswith("~"):
            path = os.path.expanduser(path)
        if os.path.isabs(path):
            return path
        return os.path.join(self.working_dir, path)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "services": {s.name: s.to_dict() for s in self.services},
            "networks": _encode(self.networks),
            "volumes": _encode(self.volumes),
            "secrets": _encode(self.secrets),
            "configs": _encode(self.configs),
        }
        return {k: v for k, v in out.items() if not _is_empty(v)}


def service_hash(service: ServiceConfig) -> str:
    """Hex SHA-256 of the service configuration, ignoring build, pull policy and scale."""
    normalised = dataclasses.replace(service, build=None, pull_policy="", scale=1)
    payload = json.dumps(normalised.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def to_moby_env(environment: dict[str, str | None]) -> list[str]:
    return [k if v is None else f"{k}={v}" for k, v in environment.items()]


def _nanoseconds(value: timedelta | None) -> int:
    if value is None:
        return 0
    return value // timedelta(microseconds=1) * 1000


def to_moby_health_check(check: HealthCheckConfig | None) -> dict[str, Any] | None:
    """Engine API health check settings, durations in nanoseconds."""
    if check is None:
        return None
    test = ["NONE"] if check.disable else list(check.test)
    return {
        "Test": test,
        "Interval": _nanoseconds(check.interval),
        "Timeout": _nanoseconds(check.timeout),
        "StartPeriod": _nanoseconds(check.start_period),
        "Retries": check.retries or 0,
    }


def to_seconds(duration: timedelta | None) -> int | None:
    if duration is None:
        return None
    return int(duration.total_seconds())


def escape_dollar_sign(data: bytes | str) -> bytes | str:
    if isinstance(data, bytes):
        return data.replace(b"$", b"$$")
    return data.replace("$", "$$")


def convert_project(project: Project, fmt: str) -> bytes:
    """Render the project as JSON or YAML with dollar signs escaped."""
    if fmt == "json":
        text = json.dumps(project.to_dict(), indent=2)
    elif fmt == "yaml":
        text = yaml.safe_dump(project.to_dict(), sort_keys=False)
    else:
        raise ValueError(f'unsupported format "{fmt}"')
    return escape_dollar_sign(text.encode("utf-8"))