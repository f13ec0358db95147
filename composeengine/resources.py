"""Resource limits, restart policy, ports and security options of a service container."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from composeengine.model import Project, ServiceConfig

_INTEGER = re.compile(r"[+-]?[0-9]+")


def _parse_int(text: str) -> int:
    """Integer value of text, or 0 when it is not one."""
    return int(text) if _INTEGER.fullmatch(text) else 0


@dataclass(frozen=True)
class RestartPolicy:
    name: str = ""
    maximum_retry_count: int = 0


@dataclass(frozen=True)
class DeviceMapping:
    path_on_host: str
    path_in_container: str
    cgroup_permissions: str


@dataclass(frozen=True)
class Ulimit:
    name: str
    hard: int
    soft: int


@dataclass
class Resources:
    """Resource settings of a container's host configuration."""

    cgroup_parent: str = ""
    memory: int = 0
    memory_swap: int = 0
    memory_swappiness: int | None = None
    memory_reservation: int = 0
    oom_kill_disable: bool = False
    cpu_count: int = 0
    cpu_period: int = 0
    cpu_quota: int = 0
    cpu_realtime_period: int = 0
    cpu_realtime_runtime: int = 0
    cpu_shares: int = 0
    cpu_percent: int = 0
    cpuset_cpus: str = ""
    nano_cpus: int = 0
    pids_limit: int | None = None
    device_cgroup_rules: list[str] = field(default_factory=list)
    blkio_weight: int = 0
    blkio_weight_device: list[dict[str, Any]] = field(default_factory=list)
    blkio_device_read_bps: list[dict[str, Any]] = field(default_factory=list)
    blkio_device_read_iops: list[dict[str, Any]] = field(default_factory=list)
    blkio_device_write_bps: list[dict[str, Any]] = field(default_factory=list)
    blkio_device_write_iops: list[dict[str, Any]] = field(default_factory=list)
    device_requests: list[dict[str, Any]] = field(default_factory=list)
    devices: list[DeviceMapping] = field(default_factory=list)
    ulimits: list[Ulimit] = field(default_factory=list)


def get_restart_policy(service: ServiceConfig) -> RestartPolicy:
    """Restart policy from `restart`, overridden by the deploy restart policy."""
    policy = RestartPolicy()
    if service.restart:
        parts = service.restart.split(":")
        attempts = _parse_int(parts[1]) if len(parts) > 1 else 0
        policy = RestartPolicy(parts[0], attempts)
    if service.deploy is not None and service.deploy.restart_policy is not None:
        deploy_policy = service.deploy.restart_policy
        policy = RestartPolicy(deploy_policy.condition, deploy_policy.max_attempts or 0)
    return policy


def _parse_device(device: str) -> DeviceMapping:
    parts = device.split(":")
    source = destination = ""
    permissions = "rwm"
    if len(parts) == 3:
        source, destination, permissions = parts
    elif len(parts) == 2:
        source, destination = parts
    elif len(parts) == 1:
        source = parts[0]
    return DeviceMapping(source, destination or source, permissions)


def get_deploy_resources(service: ServiceConfig) -> Resources:
    """Container resources from the service's limits, blkio, devices and ulimits."""
    resources = Resources(
        cgroup_parent=service.cgroup_parent,
        memory=service.mem_limit,
        memory_swap=service.mem_swap_limit,
        memory_swappiness=service.mem_swappiness or None,
        memory_reservation=service.mem_reservation,
        oom_kill_disable=service.oom_kill_disable,
        cpu_count=service.cpu_count,
        cpu_period=service.cpu_period,
        cpu_quota=service.cpu_quota,
        cpu_realtime_period=service.cpu_rt_period,
        cpu_realtime_runtime=service.cpu_rt_runtime,
        cpu_shares=service.cpu_shares,
        cpu_percent=int(service.cpus * 100),
        cpuset_cpus=service.cpuset,
        device_cgroup_rules=list(service.device_cgroup_rules),
        pids_limit=service.pids_limit or None,
    )

    blkio = service.blkio_config
    if blkio is not None:
        resources.blkio_weight = blkio.weight
        resources.blkio_weight_device = [
            {"Path": path, "Weight": weight} for path, weight in blkio.weight_device
        ]
        resources.blkio_device_read_bps = [
            {"Path": path, "Rate": rate} for path, rate in blkio.device_read_bps
        ]
        resources.blkio_device_read_iops = [
            {"Path": path, "Rate": rate} for path, rate in blkio.device_read_iops
        ]
        resources.blkio_device_write_bps = [
            {"Path": path, "Rate": rate} for path, rate in blkio.device_write_bps
        ]
        resources.blkio_device_write_iops = [
            {"Path": path, "Rate": rate} for path, rate in blkio.device_write_iops
        ]

    if service.deploy is not None:
        limits = service.deploy.limits
        if limits is not None:
            if limits.memory_bytes:
                resources.memory = limits.memory_bytes
            if limits.nano_cpus:
                resources.nano_cpus = _parse_int(limits.nano_cpus)
        reservations = service.deploy.reservations
        if reservations is not None:
            resources.device_requests = [
                {
                    "Capabilities": [list(device.capabilities)],
                    "Count": device.count,
                    "DeviceIDs": list(device.ids),
                    "Driver": device.driver,
                }
                for device in reservations.devices
            ]

    resources.devices = [_parse_device(device) for device in service.devices]
    resources.ulimits = [
        Ulimit(name, hard=limit.hard or limit.single, soft=limit.soft or limit.single)
        for name, limit in service.ulimits.items()
    ]
    return resources


def build_container_ports(service: ServiceConfig) -> dict[str, dict[str, Any]]:
    """Exposed ports of a container, keyed as port/protocol."""
    ports: dict[str, dict[str, Any]] = {port: {} for port in service.expose}
    for port in service.ports:
        ports[f"{port.target}/{port.protocol}"] = {}
    return ports


def build_container_port_binding_options(
    service: ServiceConfig,
) -> dict[str, list[dict[str, str]]]:
    """Host bindings of each published container port."""
    bindings: dict[str, list[dict[str, str]]] = {}
    for port in service.ports:
        key = f"{port.target}/{port.protocol}"
        bindings.setdefault(key, []).append(
            {"HostIp": port.host_ip, "HostPort": port.published}
        )
    return bindings


def _compact_json(text: str) -> str:
    """The JSON text with insignificant whitespace removed."""
    json.loads(text)
    out: list[str] = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch not in " \t\r\n":
            out.append(ch)
            if ch == '"':
                in_string = True
    return "".join(out)


def parse_security_opts(project: Project, security_opts: list[str]) -> list[str]:
    """Validate security options, inlining seccomp profiles read from files."""
    result = list(security_opts)
    for index, opt in enumerate(security_opts):
        parts = opt.split("=", 1)
        if len(parts) == 1 and parts[0] != "no-new-privileges":
            if ":" not in opt:
                raise ValueError(f'Invalid security-opt: "{opt}"')
            parts = opt.split(":", 1)
        if parts[0] == "seccomp" and parts[1] != "unconfined":
            try:
                with open(project.relative_path(parts[1]), encoding="utf-8") as profile:
                    content = profile.read()
            except OSError as err:
                raise ValueError(
                    f"opening seccomp profile ({parts[1]}) failed: {err}"
                ) from err
            try:
                compact = _compact_json(content)
            except ValueError as err:
                raise ValueError(
                    f"compacting json for seccomp profile ({parts[1]}) failed: {err}"
                ) from err
            result[index] = f"seccomp={compact}"
    return result


def parse_tmpfs(tmpfs: list[str]) -> dict[str, str]:
    """Tmpfs mounts keyed by path, with their options."""
    mounts: dict[str, str] = {}
    for entry in tmpfs:
        path, _, options = entry.partition(":")
        mounts[path] = options
    return mounts