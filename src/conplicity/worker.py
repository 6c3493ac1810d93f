from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from typing import Any, Callable, Sequence

import docker
from docker.errors import DockerException, NotFound
from requests.exceptions import RequestException

from .docker_runtime import DockerRuntimeError, ensure_image
from .models import WorkerRequest, WorkerResult

logger = logging.getLogger(__name__)

EXITED_STATES = frozenset({"exited", "dead"})
_SECRET_ENV_HINTS = ("PASSWORD", "SECRET", "KEY", "TOKEN")
_RUNTIME_ERRORS = (DockerException, RequestException)


class WorkerError(RuntimeError):
    """Base class for failures while supervising a worker container."""


class LaunchError(WorkerError):
    def __init__(self, *, stage: str, reason: str, started: bool = False) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage
        self.started = started


class WorkerTimeoutError(WorkerError):
    def __init__(self, *, worker_name: str, timeout_seconds: float) -> None:
        super().__init__(f"worker {worker_name} did not exit within {timeout_seconds:g}s and was removed")
        self.worker_name = worker_name
        self.timeout_seconds = timeout_seconds


class WorkerCancelledError(WorkerError):
    def __init__(self, *, worker_name: str | None = None) -> None:
        target = f"worker {worker_name}" if worker_name else "worker launch"
        super().__init__(f"{target} cancelled")
        self.worker_name = worker_name


class WorkerLauncher:
    """Run one command in a short-lived container and capture its output.

    The container is created with stdin kept open and a pseudo-terminal so
    that tools behave as in an interactive invocation. It is force-removed on
    every exit path once created, including timeout and cancellation.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        *,
        poll_interval_seconds: float = 1.0,
        timeout_seconds: float | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds or None
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self._available_images: set[str] = set()
        self._image_lock = threading.Lock()

    def launch(
        self,
        command: Sequence[str],
        env: Sequence[str],
        binds: Sequence[str],
        image: str,
        *,
        label: str = "worker",
    ) -> WorkerResult:
        return self.run(
            WorkerRequest(command=tuple(command), environment=tuple(env), binds=tuple(binds), image=image),
            label=label,
        )

    def run(self, request: WorkerRequest, *, label: str = "worker") -> WorkerResult:
        if self.cancel_event.is_set():
            raise WorkerCancelledError()

        self._ensure_image(request.image)

        worker_name = _worker_name(label)
        logger.debug(
            "Creating worker %s image=%s command=%s environment=%s binds=%s",
            worker_name,
            request.image,
            " ".join(request.command),
            ", ".join(_redact(entry) for entry in request.environment),
            ", ".join(request.binds),
        )
        try:
            container = self.client.containers.create(
                request.image,
                command=list(request.command),
                environment=list(request.environment),
                volumes=list(request.binds),
                name=worker_name,
                stdin_open=True,
                tty=True,
            )
        except _RUNTIME_ERRORS as error:
            raise LaunchError(stage="create", reason=_error_message(error)) from error

        try:
            return self._run_created(container, worker_name)
        finally:
            self._remove(container, worker_name)

    def _run_created(self, container: Any, worker_name: str) -> WorkerResult:
        try:
            container.start()
        except _RUNTIME_ERRORS as error:
            raise LaunchError(stage="start", reason=_error_message(error)) from error

        exit_code = self._wait_for_exit(container, worker_name)

        try:
            raw_output = container.logs(stdout=True, stderr=True)
        except _RUNTIME_ERRORS as error:
            raise LaunchError(stage="logs", reason=_error_message(error), started=True) from error

        output = raw_output.decode("utf-8", errors="replace") if isinstance(raw_output, bytes) else str(raw_output)
        logger.debug("Worker %s exited with %d:\n%s", worker_name, exit_code, output)
        return WorkerResult(exit_code=exit_code, output=output)

    def _wait_for_exit(self, container: Any, worker_name: str) -> int:
        deadline = self.clock() + self.timeout_seconds if self.timeout_seconds else None
        while True:
            try:
                container.reload()
            except NotFound as error:
                raise LaunchError(
                    stage="inspect",
                    reason=f"worker {worker_name} disappeared while running",
                    started=True,
                ) from error
            except _RUNTIME_ERRORS as error:
                raise LaunchError(stage="inspect", reason=_error_message(error), started=True) from error

            state = (getattr(container, "attrs", None) or {}).get("State") or {}
            status = state.get("Status") or getattr(container, "status", None)
            if status in EXITED_STATES:
                exit_code = state.get("ExitCode")
                if exit_code is None:
                    raise LaunchError(
                        stage="inspect",
                        reason=f"worker {worker_name} exited without reporting an exit code",
                        started=True,
                    )
                return int(exit_code)

            if deadline is not None and self.clock() >= deadline:
                raise WorkerTimeoutError(worker_name=worker_name, timeout_seconds=self.timeout_seconds)
            if self.cancel_event.wait(self.poll_interval_seconds):
                raise WorkerCancelledError(worker_name=worker_name)

    def _ensure_image(self, image: str) -> None:
        with self._image_lock:
            if image in self._available_images:
                return
            try:
                ensure_image(self.client, image)
            except DockerRuntimeError as error:
                raise LaunchError(stage="image", reason=str(error)) from error
            self._available_images.add(image)

    def _remove(self, container: Any, worker_name: str) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            logger.debug("Worker %s was already removed", worker_name)
        except _RUNTIME_ERRORS as error:
            logger.error("Failed to remove worker %s: %s", worker_name, _error_message(error))


def _worker_name(label: str) -> str:
    base = f"conplicity-{label}-{uuid.uuid4().hex[:12]}"
    return _sanitize_container_name(base, max_length=128)


def _sanitize_container_name(value: str, max_length: int) -> str:
    normalized = re.sub(r"[^a-zA-Z0-9_.-]", "-", value).strip("-._")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[-max_length:].lstrip("-._")
    return normalized or "conplicity-worker"


def _redact(entry: str) -> str:
    key, separator, value = entry.partition("=")
    if separator and value and any(hint in key.upper() for hint in _SECRET_ENV_HINTS):
        return f"{key}=***"
    return entry


def _error_message(error: Exception) -> str:
    explanation = getattr(error, "explanation", None)
    message = str(explanation or error).strip()
    return message or error.__class__.__name__
