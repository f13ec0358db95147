"""Summaries of the images used by a project's containers."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from composeengine.containers import get_canonical_container_name
from composeengine.engine import EngineClient
from composeengine.errors import NotFoundError
from composeengine.filters import project_filter
from composeengine.model import SERVICE_LABEL


@dataclass(frozen=True)
class ImageSummary:
    id: str = ""
    repository: str = ""
    tag: str = ""
    size: int = 0
    container_name: str = ""


def _summarise(client: EngineClient, image: str) -> ImageSummary | None:
    try:
        inspect = client.image_inspect(image)
    except NotFoundError:
        return None
    repository = ""
    tag = ""
    repo_tags = inspect.get("RepoTags") or []
    if repo_tags:
        parts = repo_tags[0].split(":")
        repository = parts[0]
        if len(parts) > 1:
            tag = parts[1]
    return ImageSummary(
        id=inspect.get("Id", ""),
        repository=repository,
        tag=tag,
        size=inspect.get("Size", 0),
    )


def get_images(client: EngineClient, images: Iterable[str]) -> dict[str, ImageSummary]:
    """Inspect images concurrently; images that do not exist are left out."""
    names = list(images)
    with ThreadPoolExecutor() as pool:
        results = list(pool.map(lambda image: _summarise(client, image), names))
    return {name: summary for name, summary in zip(names, results) if summary is not None}


def list_images(
    client: EngineClient, project_name: str, services: Iterable[str] = ()
) -> list[ImageSummary]:
    """One image summary per project container, optionally for some services."""
    wanted = list(services)
    containers = client.container_list([project_filter(project_name)], all_containers=True)
    if wanted:
        containers = [c for c in containers if c.labels.get(SERVICE_LABEL, "") in wanted]
    image_ids = list(dict.fromkeys(c.image_id for c in containers))
    images = get_images(client, image_ids)
    summary = []
    for container in containers:
        name = get_canonical_container_name(container)
        image = images.get(container.image_id)
        if image is None:
            raise LookupError(f"failed to retrieve image for container {name}")
        summary.append(dataclasses.replace(image, container_name=name))
    return summary