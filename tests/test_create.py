from typing import Any

import pytest

from composeengine.create import (
    ensure_network,
    ensure_networks,
    ensure_project_volumes,
    ensure_volume,
    get_aliases,
    get_create_options,
    get_default_network_mode,
    get_dependent_service_from_mode,
    get_image_name,
    prepare_labels,
    prepare_networks,
    prepare_services_depends_on,
    prepare_volumes,
    remove_network,
)
from composeengine.engine import EventStatus, ListWriter
from composeengine.errors import NotFoundError
from composeengine.model import (
    COMPOSE_VERSION,
    CONFIG_HASH_LABEL,
    CONTAINER_NUMBER_LABEL,
    DEPENDENCIES_LABEL,
    PROJECT_LABEL,
    VOLUME_LABEL,
    NetworkConfig,
    Project,
    ServiceConfig,
    ServiceDependency,
    ServiceNetworkConfig,
    ServicePortConfig,
    VolumeConfig,
    service_hash,
)


class FakeClient:
    def __init__(self, networks=(), volumes=None, fail_create=False):
        self.networks = set(networks)
        self.volumes = volumes or {}
        self.fail_create = fail_create
        self.created_networks: list[tuple[str, dict[str, Any]]] = []
        self.created_volumes: list[tuple[str, dict[str, str]]] = []
        self.removed_networks: list[str] = []

    def network_inspect(self, name):
        if name not in self.networks:
            raise NotFoundError(name)
        return {"Name": name}

    def network_create(self, name, options):
        if self.fail_create:
            raise RuntimeError("boom")
        self.created_networks.append((name, options))
        return "id"

    def network_remove(self, name):
        if name not in self.networks:
            raise NotFoundError(name)
        self.removed_networks.append(name)

    def volume_inspect(self, name):
        if name not in self.volumes:
            raise NotFoundError(name)
        return self.volumes[name]

    def volume_create(self, name, driver, driver_opts, labels):
        self.created_volumes.append((name, labels))
        return {"Name": name}

    def image_inspect(self, image):
        return {"Config": {"Volumes": {}}}


def test_service_image_name():
    assert get_image_name(ServiceConfig(image="myImage"), "myProject") == "myImage"
    assert get_image_name(ServiceConfig(name="aService"), "myProject") == "myProject_aService"


def test_prepare_network_labels():
    project = Project(name="myProject", networks={"skynet": NetworkConfig()})
    prepare_networks(project)
    assert project.networks["skynet"].labels == {
        "com.docker.compose.network": "skynet",
        "com.docker.compose.project": "myProject",
        "com.docker.compose.version": COMPOSE_VERSION,
    }


def test_default_network_mode_highest_priority():
    service = ServiceConfig(
        name="myService",
        networks={
            "myNetwork1": ServiceNetworkConfig(priority=10),
            "myNetwork2": ServiceNetworkConfig(priority=1000),
        },
    )
    project = Project(
        name="myProject",
        services=[service],
        networks={
            "myNetwork1": NetworkConfig(name="myProject_myNetwork1"),
            "myNetwork2": NetworkConfig(name="myProject_myNetwork2"),
        },
    )
    assert get_default_network_mode(project, service) == "myProject_myNetwork2"


def test_default_network_mode_default_network():
    service = ServiceConfig(name="myService")
    project = Project(
        name="myProject",
        services=[service],
        networks={
            "myNetwork1": NetworkConfig(name="myProject_myNetwork1"),
            "myNetwork2": NetworkConfig(name="myProject_myNetwork2"),
            "default": NetworkConfig(name="myProject_default"),
        },
    )
    assert get_default_network_mode(project, service) == "myProject_default"


def test_default_network_mode_none_without_networks():
    service = ServiceConfig(name="myService")
    project = Project(name="myProject", services=[service])
    assert get_default_network_mode(project, service) == "none"


def test_dependent_service_from_mode():
    assert get_dependent_service_from_mode("service:db") == "db"
    assert get_dependent_service_from_mode("container:abc") == ""
    assert get_dependent_service_from_mode("host") == ""


def test_get_aliases():
    service = ServiceConfig(name="web")
    assert get_aliases(service, None) == ["web"]
    assert get_aliases(service, ServiceNetworkConfig(aliases=["a", "b"])) == ["web", "a", "b"]


def test_prepare_volumes_resolves_services():
    db = ServiceConfig(name="db")
    web = ServiceConfig(name="web", volumes_from=["db", "container:foo"])
    project = Project(name="myProject", services=[db, web])
    prepare_volumes(project)
    assert web.volumes_from == ["container:myProject-db-1", "foo"]
    assert web.depends_on == {"db": ServiceDependency(condition="service_started")}
    assert db.depends_on == {}


def test_prepare_services_depends_on_from_modes():
    db = ServiceConfig(name="db")
    web = ServiceConfig(
        name="web",
        network_mode="service:db",
        depends_on={"db": ServiceDependency(condition="service_healthy")},
    )
    worker = ServiceConfig(name="worker", ipc="service:db")
    project = Project(name="p", services=[db, web, worker])
    prepare_services_depends_on(project)
    assert web.depends_on["db"].condition == "service_healthy"
    assert worker.depends_on["db"].condition == "service_started"


def test_prepare_services_depends_on_unknown_service():
    web = ServiceConfig(name="web", pid="service:missing")
    project = Project(name="p", services=[web])
    with pytest.raises(NotFoundError):
        prepare_services_depends_on(project)


def test_prepare_labels():
    service = ServiceConfig(
        name="web",
        labels={"a": "1"},
        custom_labels={"b": "2"},
        depends_on={"db": ServiceDependency(condition="service_started")},
    )
    labels = prepare_labels(service, 3)
    assert labels["a"] == "1"
    assert labels["b"] == "2"
    assert labels[CONFIG_HASH_LABEL] == service_hash(service)
    assert labels[CONTAINER_NUMBER_LABEL] == "3"
    assert labels[DEPENDENCIES_LABEL] == "db:service_started"


def test_get_create_options():
    service = ServiceConfig(
        name="web",
        image="nginx",
        command=["run"],
        environment={"A": "1", "B": None},
        tmpfs=["/tmp:size=1m", "/run"],
        restart="on-failure:3",
        ports=[ServicePortConfig(target=80, published="8080")],
        networks={"front": ServiceNetworkConfig(aliases=["w"], ipv4_address="10.0.0.2")},
    )
    project = Project(
        name="myProject",
        services=[service],
        networks={"front": NetworkConfig(name="myProject_front")},
    )
    options = get_create_options(FakeClient(), project, service, 1, None, False, False)
    assert options.config["Image"] == "nginx"
    assert options.config["Cmd"] == ["run"]
    assert options.config["Env"] == ["A=1", "B"]
    assert options.config["ExposedPorts"] == {"80/tcp": {}}
    assert options.host_config["NetworkMode"] == "myProject_front"
    assert options.host_config["Tmpfs"] == {"/tmp": "size=1m", "/run": ""}
    assert options.host_config["RestartPolicy"] == {"Name": "on-failure", "MaximumRetryCount": 3}
    assert options.host_config["PortBindings"] == {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]}
    endpoint = options.networking_config["EndpointsConfig"]["myProject_front"]
    assert endpoint["Aliases"] == ["web", "w"]
    assert endpoint["IPAddress"] == "10.0.0.2"
    assert service.network_mode == ""


def test_get_create_options_invalid_volumes_from():
    service = ServiceConfig(name="web", image="nginx", volumes_from=["db"])
    project = Project(name="p", services=[service])
    with pytest.raises(ValueError, match="invalid volume_from: db"):
        get_create_options(FakeClient(), project, service, 1, None, False, False)


def test_ensure_network_creates_missing():
    client = FakeClient()
    writer = ListWriter()
    network = NetworkConfig(
        name="p_default", driver="bridge", ipam_config=[{"subnet": "10.1.0.0/16"}]
    )
    ensure_network(client, network, writer)
    name, options = client.created_networks[0]
    assert name == "p_default"
    assert options["Driver"] == "bridge"
    assert options["IPAM"] == {"Driver": "", "Config": [{"Subnet": "10.1.0.0/16"}]}
    assert [(e.status, e.text) for e in writer.received] == [
        (EventStatus.WORKING, "Creating"),
        (EventStatus.DONE, "Created"),
    ]


def test_ensure_network_existing_is_left_alone():
    client = FakeClient(networks={"p_default"})
    ensure_networks(client, {"default": NetworkConfig(name="p_default")}, ListWriter())
    assert client.created_networks == []


def test_ensure_network_external_missing():
    client = FakeClient()
    with pytest.raises(ValueError, match="declared as external"):
        ensure_network(client, NetworkConfig(name="ext", external=True), ListWriter())
    ensure_network(client, NetworkConfig(name="ov", external=True, driver="overlay"))
    assert client.created_networks == []


def test_ensure_network_create_failure():
    writer = ListWriter()
    with pytest.raises(RuntimeError, match="failed to create network n"):
        ensure_network(FakeClient(fail_create=True), NetworkConfig(name="n"), writer)
    assert writer.received[-1].status == EventStatus.ERROR


def test_remove_network():
    client = FakeClient(networks={"n"})
    writer = ListWriter()
    remove_network(client, "n", writer)
    assert client.removed_networks == ["n"]
    assert writer.received[-1].text == "Removed"
    with pytest.raises(RuntimeError, match="failed to remove network x"):
        remove_network(client, "x", writer)


def test_ensure_volume_creates_missing():
    client = FakeClient()
    writer = ListWriter()
    ensure_volume(client, VolumeConfig(name="v"), "p", writer)
    assert client.created_volumes == [("v", {})]
    assert writer.received[0].id == 'Volume "v"'


def test_ensure_volume_external_missing():
    with pytest.raises(ValueError, match='external volume "v" not found'):
        ensure_volume(FakeClient(), VolumeConfig(name="v", external=True), "p")


def test_ensure_volume_existing_not_recreated():
    client = FakeClient(volumes={"v": {"Labels": {PROJECT_LABEL: "other"}}})
    ensure_volume(client, VolumeConfig(name="v"), "p")
    assert client.created_volumes == []


def test_ensure_project_volumes_labels():
    client = FakeClient()
    project = Project(name="p", volumes={"data": VolumeConfig(name="p_data")})
    ensure_project_volumes(client, project, ListWriter())
    name, labels = client.created_volumes[0]
    assert name == "p_data"
    assert labels[VOLUME_LABEL] == "data"
    assert labels[PROJECT_LABEL] == "p"
    assert project.volumes["data"].labels == {}