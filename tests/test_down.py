import threading

import pytest

from composeengine.containers import Container
from composeengine.down import (
    DownOptions,
    down,
    get_project_with_resources,
    get_service_images,
    remove_containers,
    remove_image,
    remove_volume,
    stop_containers,
)
from composeengine.engine import EventStatus, ListWriter
from composeengine.errors import NotFoundError
from composeengine.filters import project_filter
from composeengine.model import (
    ONEOFF_LABEL,
    PROJECT_LABEL,
    SERVICE_LABEL,
    VOLUME_LABEL,
    Project,
    ServiceConfig,
)

TEST_PROJECT = "testProject"


def make_container(service, cid, one_off=False):
    labels = {SERVICE_LABEL: service, PROJECT_LABEL: TEST_PROJECT.lower()}
    if one_off:
        labels[ONEOFF_LABEL] = "True"
    return Container(id=cid, names=[cid], labels=labels)


class FakeEngine:
    def __init__(self, containers=(), volumes=(), networks=(), missing=(), failing_stop=()):
        self.containers = list(containers)
        self.volumes = list(volumes)
        self.networks = list(networks)
        self.missing = set(missing)
        self.failing_stop = set(failing_stop)
        self.list_calls = []
        self.stopped = []
        self.removed = []
        self.networks_removed = []
        self.volumes_removed = []
        self.images_removed = []
        self._lock = threading.Lock()

    def container_list(self, filters, all_containers=False):
        self.list_calls.append((list(filters), all_containers))
        return list(self.containers)

    def volume_list(self, filters):
        return [dict(v) for v in self.volumes]

    def network_list(self, filters):
        return [dict(n) for n in self.networks]

    def container_stop(self, container_id, timeout):
        if container_id in self.failing_stop:
            raise RuntimeError("cannot stop")
        with self._lock:
            self.stopped.append((container_id, timeout))

    def container_remove(self, container_id, force=False, remove_volumes=False):
        with self._lock:
            self.removed.append((container_id, force, remove_volumes))

    def network_remove(self, name):
        with self._lock:
            self.networks_removed.append(name)

    def volume_remove(self, name, force):
        if name in self.missing:
            raise NotFoundError(name)
        with self._lock:
            self.volumes_removed.append((name, force))

    def image_remove(self, image):
        if image in self.missing:
            raise NotFoundError(image)
        with self._lock:
            self.images_removed.append(image)


DEFAULT_NETWORK = {"Id": "n1", "Name": "myProject_default", "Driver": "bridge", "Labels": {}}


def test_down():
    engine = FakeEngine(
        containers=[
            make_container("service1", "123"),
            make_container("service2", "456"),
            make_container("service2", "789"),
            make_container("service_orphan", "321", one_off=True),
        ],
        networks=[DEFAULT_NETWORK],
    )
    down(engine, TEST_PROJECT.lower(), DownOptions(), ListWriter())
    assert engine.list_calls[0] == ([project_filter("testproject")], True)
    assert sorted(engine.stopped) == [("123", None), ("456", None), ("789", None)]
    assert sorted(engine.removed) == [
        ("123", True, False),
        ("456", True, False),
        ("789", True, False),
    ]
    assert engine.networks_removed == ["myProject_default"]


def test_down_remove_orphans():
    engine = FakeEngine(
        containers=[
            make_container("service1", "123"),
            make_container("service2", "789"),
            make_container("service_orphan", "321", one_off=True),
        ],
        networks=[DEFAULT_NETWORK],
    )
    down(engine, TEST_PROJECT.lower(), DownOptions(remove_orphans=True), ListWriter())
    assert sorted(cid for cid, _ in engine.stopped) == ["123", "321", "789"]
    assert sorted(engine.removed) == [
        ("123", True, False),
        ("321", True, False),
        ("789", True, False),
    ]
    assert engine.networks_removed == ["myProject_default"]


def test_down_remove_volumes():
    engine = FakeEngine(
        containers=[make_container("service1", "123")],
        volumes=[{"Name": "myProject_volume", "Driver": "local", "Labels": {}}],
    )
    down(engine, TEST_PROJECT.lower(), DownOptions(volumes=True), ListWriter())
    assert engine.stopped == [("123", None)]
    assert engine.removed == [("123", True, True)]
    assert engine.volumes_removed == [("myProject_volume", True)]
    assert engine.networks_removed == []


def test_down_lowercases_project_name():
    engine = FakeEngine()
    down(engine, TEST_PROJECT, DownOptions(), ListWriter())
    assert engine.list_calls[0][0] == [project_filter("testproject")]


def test_down_nothing_to_remove_warns():
    engine = FakeEngine()
    writer = ListWriter()
    down(engine, "empty", DownOptions(project=Project(name="empty")), writer)
    assert [(e.id, e.status, e.text) for e in writer.received] == [
        ("empty", EventStatus.DONE, "Warning: No resource found to remove")
    ]


def test_down_removes_images():
    project = Project(
        name="p", services=[ServiceConfig(name="web"), ServiceConfig(name="db", image="postgres")]
    )
    engine = FakeEngine()
    down(engine, "p", DownOptions(project=project, images="all"), ListWriter())
    assert sorted(engine.images_removed) == ["p_web", "postgres"]


def test_get_service_images():
    project = Project(
        name="p", services=[ServiceConfig(name="web"), ServiceConfig(name="db", image="postgres")]
    )
    assert get_service_images(DownOptions(project=project, images="local"), "p") == ["p_web"]
    assert get_service_images(DownOptions(project=project, images="all"), "p") == [
        "p_web",
        "postgres",
    ]


def test_remove_image_not_found_warns():
    engine = FakeEngine(missing={"gone"})
    writer = ListWriter()
    remove_image(engine, "gone", writer)
    assert [e.text for e in writer.received] == [
        "Removing",
        "Warning: No resource found to remove",
    ]
    assert engine.images_removed == []


def test_remove_volume_reports_removed():
    engine = FakeEngine()
    writer = ListWriter()
    remove_volume(engine, "data", writer)
    assert engine.volumes_removed == [("data", True)]
    assert [(e.id, e.text) for e in writer.received] == [
        ("Volume data", "Removing"),
        ("Volume data", "Removed"),
    ]


def test_stop_containers_failure_raises_and_reports():
    engine = FakeEngine(failing_stop={"/p-web-1"})
    writer = ListWriter()
    with pytest.raises(RuntimeError, match="cannot stop"):
        stop_containers(engine, writer, [make_container("web", "/p-web-1")], None)
    assert writer.received[-1].status == EventStatus.ERROR
    assert writer.received[-1].text == "Error while Stopping"


def test_remove_containers_events():
    engine = FakeEngine()
    writer = ListWriter()
    remove_containers(engine, writer, [make_container("web", "/p-web-1")], None, False)
    assert engine.removed == [("/p-web-1", True, False)]
    assert writer.received[-1].text == "Removed"
    assert writer.received[-1].id == "Container p-web-1"


def test_get_project_with_resources():
    engine = FakeEngine(
        volumes=[{"Name": "myProject_data", "Driver": "local", "Labels": {VOLUME_LABEL: "data"}}],
        networks=[DEFAULT_NETWORK],
    )
    containers = [
        make_container("service1", "123"),
        make_container("service2", "456"),
        make_container("runner", "999", one_off=True),
    ]
    project = get_project_with_resources(engine, containers, "testproject")
    assert sorted(project.service_names()) == ["service1", "service2"]
    assert project.volumes["data"].name == "myProject_data"
    assert [n.name for n in project.networks.values()] == ["myProject_default"]