import threading

import pytest

from composeengine.containers import Container
from composeengine.errors import NotFoundError
from composeengine.filters import project_filter
from composeengine.images import ImageSummary, get_images, list_images
from composeengine.model import PROJECT_LABEL, SERVICE_LABEL


class FakeClient:
    def __init__(self, images, containers=(), failing=()):
        self.images = images
        self.containers = list(containers)
        self.failing = set(failing)
        self.inspected = []
        self.list_calls = []
        self._lock = threading.Lock()

    def image_inspect(self, image):
        with self._lock:
            self.inspected.append(image)
        if image in self.failing:
            raise RuntimeError("engine unavailable")
        try:
            return self.images[image]
        except KeyError:
            raise NotFoundError(image) from None

    def container_list(self, filters, all_containers=False):
        self.list_calls.append((list(filters), all_containers))
        return list(self.containers)


IMAGES = {
    "sha256:1": {"Id": "sha256:1", "RepoTags": ["nginx:latest"], "Size": 42},
    "sha256:2": {"Id": "sha256:2", "RepoTags": [], "Size": 7},
}


def container(cid, service, image_id):
    return Container(
        id=cid,
        names=[f"/p-{service}-{cid}"],
        labels={SERVICE_LABEL: service, PROJECT_LABEL: "p"},
        image_id=image_id,
    )


def test_get_images_splits_repository_and_tag():
    result = get_images(FakeClient(IMAGES), ["sha256:1"])
    assert result == {"sha256:1": ImageSummary(id="sha256:1", repository="nginx", tag="latest", size=42)}


def test_get_images_without_tags_and_missing():
    result = get_images(FakeClient(IMAGES), ["sha256:2", "missing"])
    assert list(result) == ["sha256:2"]
    assert result["sha256:2"].repository == ""
    assert result["sha256:2"].tag == ""
    assert result["sha256:2"].size == 7


def test_get_images_propagates_other_errors():
    with pytest.raises(RuntimeError):
        get_images(FakeClient(IMAGES, failing={"sha256:1"}), ["sha256:1", "sha256:2"])


def test_list_images_one_summary_per_container():
    client = FakeClient(
        IMAGES,
        [container("a", "web", "sha256:1"), container("b", "web", "sha256:1"), container("c", "db", "sha256:2")],
    )
    summary = list_images(client, "p")
    assert [s.container_name for s in summary] == ["p-web-a", "p-web-b", "p-db-c"]
    assert [s.id for s in summary] == ["sha256:1", "sha256:1", "sha256:2"]
    assert sorted(client.inspected) == ["sha256:1", "sha256:2"]
    assert client.list_calls == [([project_filter("p")], True)]


def test_list_images_for_selected_services():
    client = FakeClient(IMAGES, [container("a", "web", "sha256:1"), container("c", "db", "sha256:2")])
    summary = list_images(client, "p", ["db"])
    assert [s.container_name for s in summary] == ["p-db-c"]
    assert client.inspected == ["sha256:2"]


def test_list_images_missing_image():
    client = FakeClient(IMAGES, [container("a", "web", "sha256:404")])
    with pytest.raises(LookupError):
        list_images(client, "p")