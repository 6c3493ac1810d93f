from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Callable, Protocol, Sequence

from ..config import AppConfig
from ..models import (
    STATUS_FAILED,
    STATUS_PARSE_ERROR,
    STATUS_SUCCESS,
    BackupTarget,
    Metric,
    OperationResult,
    WorkerResult,
)
from ..patterns import ParseError, is_transient_failure
from ..retry import retry
from ..worker import LaunchError, WorkerCancelledError

logger = logging.getLogger(__name__)


class Launcher(Protocol):
    def launch(
        self,
        command: Sequence[str],
        env: Sequence[str],
        binds: Sequence[str],
        image: str,
        *,
        label: str = "worker",
    ) -> WorkerResult: ...


class BackupEngine(Protocol):
    """Operations every backup tool integration provides for one volume."""

    name: str
    target: BackupTarget

    def backup(self) -> OperationResult: ...

    def verify(self) -> OperationResult: ...

    def remove_old(self) -> OperationResult: ...

    def cleanup(self) -> OperationResult: ...

    def status(self) -> OperationResult: ...


class ToolFailureError(RuntimeError):
    def __init__(self, *, tool: str, step: str, exit_code: int, output: str = "") -> None:
        super().__init__(f"{tool} exited with state {exit_code} while running {step}")
        self.tool = tool
        self.step = step
        self.exit_code = exit_code
        self.output = output


def is_retryable(error: Exception) -> bool:
    return isinstance(error, (LaunchError, ToolFailureError))


def is_transient(error: Exception) -> bool:
    """Retry predicate for steps that delete backup data.

    A failed launch is retried only if the worker never started; a tool
    failure only if its output reports a transient backend condition.
    """
    if isinstance(error, LaunchError):
        return not error.started
    if isinstance(error, ToolFailureError):
        return is_transient_failure(error.output)
    return False


def run_tool(
    launcher: Launcher,
    config: AppConfig,
    target: BackupTarget,
    *,
    tool: str,
    step: str,
    command: Sequence[str],
    env: Sequence[str],
    binds: Sequence[str],
    should_retry: Callable[[Exception], bool] = is_retryable,
    accept: Callable[[WorkerResult], bool] | None = None,
) -> WorkerResult:
    def attempt() -> WorkerResult:
        result = launcher.launch(command, env, binds, target.image, label=f"{target.volume_name}-{step}")
        if result.exit_code != 0 and not (accept is not None and accept(result)):
            raise ToolFailureError(tool=tool, step=step, exit_code=result.exit_code, output=result.output)
        return result

    return retry(
        config.retry_attempts,
        attempt,
        delay_seconds=config.retry_delay_seconds,
        backoff=config.retry_backoff,
        should_retry=should_retry,
        description=f"{tool} {step} for volume {target.volume_name}",
    )


def run_operation(
    volume_name: str,
    operation: str,
    func: Callable[[], list[Metric]],
    *,
    exit_metric: str | None = None,
) -> OperationResult:
    """Run one engine operation and fold its outcome into an ``OperationResult``.

    Volume-level failures are captured in the result; cancellation propagates.
    """
    started_at = utc_now_iso()
    metrics: list[Metric] = []
    error: Exception | None = None
    status = STATUS_SUCCESS
    try:
        extra = func()
        if exit_metric is not None:
            metrics.append(exit_code_metric(volume_name, exit_metric, 0))
        metrics.extend(extra)
    except WorkerCancelledError:
        raise
    except ParseError as parse_error:
        status = STATUS_PARSE_ERROR
        error = parse_error
    except ToolFailureError as tool_error:
        status = STATUS_FAILED
        error = tool_error
        if exit_metric is not None:
            metrics.append(exit_code_metric(volume_name, exit_metric, tool_error.exit_code))
    except Exception as unexpected:  # pylint: disable=broad-except
        status = STATUS_FAILED
        error = unexpected

    if error is not None:
        logger.error("%s failed for volume %s: %s", operation, volume_name, error)
    else:
        logger.info("%s succeeded for volume %s", operation, volume_name)

    return OperationResult(
        volume_name=volume_name,
        operation=operation,
        status=status,
        metrics=tuple(metrics),
        error=error,
        started_at=started_at,
        finished_at=utc_now_iso(),
    )


def unsupported(volume_name: str, operation: str, tool: str) -> OperationResult:
    logger.debug("%s does not support %s, skipping for volume %s", tool, operation, volume_name)
    now = utc_now_iso()
    return OperationResult(
        volume_name=volume_name,
        operation=operation,
        status=STATUS_SUCCESS,
        started_at=now,
        finished_at=now,
    )


def exit_code_metric(volume_name: str, name: str, exit_code: int) -> Metric:
    return Metric(name=name, value=exit_code, labels={"volume": volume_name})


def storage_environment(config: AppConfig) -> list[str]:
    return [
        f"AWS_ACCESS_KEY_ID={config.aws_access_key_id}",
        f"AWS_SECRET_ACCESS_KEY={config.aws_secret_access_key}",
        f"OS_USERNAME={config.swift_username}",
        f"OS_PASSWORD={config.swift_password}",
        f"OS_AUTH_URL={config.swift_auth_url}",
        f"OS_TENANT_NAME={config.swift_tenant_name}",
        f"OS_REGION_NAME={config.swift_region_name}",
    ]


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
