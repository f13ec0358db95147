import json
from datetime import timedelta

import pytest
import yaml

from composeengine.errors import NotFoundError
from composeengine.model import (
    HealthCheckConfig,
    Project,
    ServiceConfig,
    ServiceDependency,
    ServiceNetworkConfig,
    convert_project,
    escape_dollar_sign,
    service_hash,
    to_moby_env,
    to_moby_health_check,
    to_seconds,
)


def _project():
    return Project(
        name="myProject",
        working_dir="/work",
        services=[
            ServiceConfig(name="web", image="nginx", depends_on={"db": ServiceDependency()}),
            ServiceConfig(name="db", image="postgres", environment={"GREETING": "a$b"}),
            ServiceConfig(name="other", image="busybox"),
        ],
    )


def test_get_dependencies_collects_all_sources():
    service = ServiceConfig(
        name="web",
        depends_on={"db": ServiceDependency()},
        links=["cache:alias", "db"],
        network_mode="service:net",
        volumes_from=["data:ro", "container:abc"],
    )
    assert service.get_dependencies() == ["db", "cache", "net", "data"]


def test_networks_by_priority():
    service = ServiceConfig(
        networks={
            "myNetwork1": ServiceNetworkConfig(priority=10),
            "myNetwork2": ServiceNetworkConfig(priority=1000),
            "other": None,
        }
    )
    assert service.networks_by_priority() == ["myNetwork2", "myNetwork1", "other"]


def test_service_hash_ignores_build_pull_policy_and_scale():
    base = ServiceConfig(name="web", image="nginx")
    variant = ServiceConfig(name="web", image="nginx", build={"context": "."}, pull_policy="build", scale=3)
    assert service_hash(base) == service_hash(variant)
    assert len(service_hash(base)) == 64


def test_service_hash_changes_with_config():
    assert service_hash(ServiceConfig(image="nginx")) != service_hash(ServiceConfig(image="httpd"))


def test_to_moby_env():
    assert to_moby_env({"A": "1", "B": None}) == ["A=1", "B"]


def test_health_check_disable():
    result = to_moby_health_check(HealthCheckConfig(test=["CMD", "true"], disable=True))
    assert result["Test"] == ["NONE"]
    assert result["Retries"] == 0


def test_health_check_durations():
    result = to_moby_health_check(HealthCheckConfig(test=["CMD", "true"], interval=timedelta(seconds=30), retries=3))
    assert result["Interval"] == 30_000_000_000
    assert result["Timeout"] == 0
    assert result["Retries"] == 3
    assert to_moby_health_check(None) is None


def test_to_seconds_truncates():
    assert to_seconds(timedelta(seconds=90, milliseconds=700)) == 90
    assert to_seconds(None) is None


def test_escape_dollar_sign():
    assert escape_dollar_sign(b"a$b") == b"a$$b"
    assert escape_dollar_sign("$") == "$$"


def test_convert_json_roundtrip():
    data = json.loads(convert_project(_project(), "json"))
    assert list(data["services"]) == ["web", "db", "other"]
    assert data["services"]["db"]["environment"]["GREETING"] == "a$$b"


def test_convert_yaml_roundtrip():
    data = yaml.safe_load(convert_project(_project(), "yaml"))
    assert data["services"]["web"]["image"] == "nginx"


def test_convert_unsupported_format():
    with pytest.raises(ValueError, match="unsupported format"):
        convert_project(_project(), "toml")


def test_get_service_missing():
    with pytest.raises(NotFoundError):
        _project().get_service("nope")


def test_get_services_order_and_all():
    project = _project()
    assert [s.name for s in project.get_services("db", "web")] == ["db", "web"]
    assert [s.name for s in project.get_services()] == project.service_names()


def test_for_services_keeps_dependencies():
    project = _project()
    project.for_services(["web"])
    assert project.service_names() == ["web", "db"]
    assert [s.name for s in project.all_services()] == ["web", "db", "other"]


def test_relative_path():
    project = _project()
    assert project.relative_path("/abs/file") == "/abs/file"
    assert project.relative_path("rel/file").endswith("rel/file")
    assert project.relative_path("rel/file").startswith("/work")