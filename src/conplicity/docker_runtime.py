from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from .models import Volume

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DockerRuntimeError(RuntimeError):
    """Raised when the container runtime cannot list volumes or provide an image."""


def load_docker_client(docker_host: str) -> docker.DockerClient:
    try:
        client = docker.DockerClient(base_url=docker_host)
        client.ping()
    except (DockerException, RequestException) as error:
        raise DockerRuntimeError(
            f"Unable to connect to the Docker daemon at '{docker_host}': {_error_message(error)}. "
            "Verify DOCKER_HOST and that the socket is mounted and readable."
        ) from error
    return client


def list_volumes(client: docker.DockerClient) -> list[Volume]:
    """Return every volume known to the runtime, inspected, in listing order."""
    listed = _safe_docker_call(
        operation="list volumes",
        hint="Confirm the daemon is reachable and the socket permissions allow volume listing.",
        func=lambda: client.volumes.list(),
    )

    volumes: list[Volume] = []
    for item in listed:
        name = getattr(item, "name", None) or getattr(item, "id", "")
        volumes.append(inspect_volume(client, name))
    return volumes


def inspect_volume(client: docker.DockerClient, name: str) -> Volume:
    item = _safe_docker_call(
        operation=f"inspect volume '{name}'",
        hint="The volume may have been removed while discovery was running.",
        func=lambda: client.volumes.get(name),
    )
    attrs: dict[str, Any] = getattr(item, "attrs", None) or {}
    return Volume(
        name=attrs.get("Name") or name,
        mountpoint=attrs.get("Mountpoint") or "",
        driver=attrs.get("Driver") or "",
        labels=dict(attrs.get("Labels") or {}),
    )


def ensure_image(client: docker.DockerClient, image: str) -> None:
    try:
        client.images.get(image)
        return
    except ImageNotFound:
        logger.info("Pulling image %s", image)
    except (DockerException, RequestException) as error:
        logger.info("Inspecting image %s failed (%s), pulling it", image, _error_message(error))

    _safe_docker_call(
        operation=f"pull image '{image}'",
        hint="Check the image reference and registry reachability.",
        func=lambda: client.images.pull(image),
    )


def _safe_docker_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except NotFound as error:
        raise DockerRuntimeError(
            f"Docker runtime call failed while trying to {operation}: not found ({_error_message(error)}). {hint}"
        ) from error
    except Exception as error:
        raise DockerRuntimeError(
            f"Docker runtime call failed while trying to {operation}: {_error_message(error)}. {hint}"
        ) from error


def _error_message(error: Exception) -> str:
    explanation = getattr(error, "explanation", None)
    message = str(explanation or error).strip()
    return message or error.__class__.__name__
