from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

METRIC_NAMESPACE = "conplicity"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_PARSE_ERROR = "parse_error"


@dataclass(frozen=True)
class Volume:
    name: str
    mountpoint: str
    driver: str
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BackupTarget:
    """Per-volume parameters resolved from global configuration and labels."""

    volume_name: str
    engine: str
    target_url: str
    full_if_older_than: str
    remove_older_than: str
    backup_dir: str
    mount: str
    image: str


@dataclass(frozen=True)
class WorkerRequest:
    command: tuple[str, ...]
    environment: tuple[str, ...]
    binds: tuple[str, ...]
    image: str


@dataclass(frozen=True)
class WorkerResult:
    exit_code: int
    output: str


@dataclass(frozen=True)
class Metric:
    name: str
    value: float
    labels: Mapping[str, str] = field(default_factory=dict)

    def render(self) -> str:
        rendered_labels = ",".join(f'{key}="{value}"' for key, value in self.labels.items())
        if rendered_labels:
            rendered_labels = f"{rendered_labels},"
        return f'{METRIC_NAMESPACE}{{{rendered_labels}what="{self.name}"}} {_format_value(self.value)}'


@dataclass(frozen=True)
class OperationResult:
    volume_name: str
    operation: str
    status: str
    metrics: tuple[Metric, ...] = ()
    error: Exception | None = None
    started_at: str = ""
    finished_at: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def message(self) -> str:
        if self.error is None:
            return ""
        return str(self.error).strip() or self.error.__class__.__name__


@dataclass(frozen=True)
class VolumeOutcome:
    volume_name: str
    engine: str | None
    skipped_reason: str | None = None
    operations: tuple[OperationResult, ...] = ()

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def failed(self) -> bool:
        return any(not operation.succeeded for operation in self.operations)


@dataclass(frozen=True)
class RunReport:
    outcomes: tuple[VolumeOutcome, ...]
    cancelled: bool = False

    @property
    def metrics(self) -> list[Metric]:
        return [metric for outcome in self.outcomes for operation in outcome.operations for metric in operation.metrics]

    @property
    def errors(self) -> list[tuple[str, str, Exception]]:
        return [
            (outcome.volume_name, operation.operation, operation.error)
            for outcome in self.outcomes
            for operation in outcome.operations
            if operation.error is not None
        ]

    @property
    def failed_volumes(self) -> list[str]:
        return [outcome.volume_name for outcome in self.outcomes if outcome.failed]


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))
