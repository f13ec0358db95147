"""Label filters for engine list queries, as (key, value) pairs."""

from __future__ import annotations

from composeengine.model import (
    CONTAINER_NUMBER_LABEL,
    ONEOFF_LABEL,
    PROJECT_LABEL,
    SERVICE_LABEL,
)


def project_filter(project_name: str) -> tuple[str, str]:
    return ("label", f"{PROJECT_LABEL}={project_name}")


def service_filter(service_name: str) -> tuple[str, str]:
    return ("label", f"{SERVICE_LABEL}={service_name}")


def one_off_filter(one_off: bool) -> tuple[str, str]:
    return ("label", f"{ONEOFF_LABEL}={'True' if one_off else 'False'}")


def container_number_filter(index: int) -> tuple[str, str]:
    return ("label", f"{CONTAINER_NUMBER_LABEL}={index}")


def has_project_label_filter() -> tuple[str, str]:
    return ("label", PROJECT_LABEL)