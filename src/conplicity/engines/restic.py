from __future__ import annotations

import re
from typing import Callable

from ..config import AppConfig
from ..models import BackupTarget, Metric, OperationResult, WorkerResult
from .common import (
    Launcher,
    is_retryable,
    is_transient,
    run_operation,
    run_tool,
    storage_environment,
    unsupported,
)

_THRESHOLD_PART = re.compile(r"(\d+)([hDWMY])")


class ResticEngine:
    name = "restic"

    def __init__(self, *, target: BackupTarget, config: AppConfig, launcher: Launcher) -> None:
        self.target = target
        self.config = config
        self.launcher = launcher

    def backup(self) -> OperationResult:
        return run_operation(self.target.volume_name, "backup", self._backup, exit_metric="backupExitCode")

    def verify(self) -> OperationResult:
        return run_operation(self.target.volume_name, "verify", self._verify, exit_metric="verifyExitCode")

    def remove_old(self) -> OperationResult:
        return run_operation(self.target.volume_name, "remove_old", self._remove_old, exit_metric="removeOldExitCode")

    def cleanup(self) -> OperationResult:
        return run_operation(self.target.volume_name, "cleanup", self._cleanup, exit_metric="cleanupExitCode")

    def status(self) -> OperationResult:
        return unsupported(self.target.volume_name, "status", self.name)

    def _backup(self) -> list[Metric]:
        self._run(
            "init",
            ["-r", self.target.target_url, "init"],
            accept=_already_initialized,
        )
        self._run(
            "backup",
            ["-r", self.target.target_url, "backup", self.target.backup_dir, "--host", self.config.hostname],
        )
        return []

    def _verify(self) -> list[Metric]:
        self._run("check", ["-r", self.target.target_url, "check"])
        return []

    def _remove_old(self) -> list[Metric]:
        keep_within = restic_duration(self.target.remove_older_than)
        self._run(
            "forget",
            ["-r", self.target.target_url, "forget", "--prune", "--keep-within", keep_within],
            guarded=True,
        )
        return []

    def _cleanup(self) -> list[Metric]:
        self._run("unlock", ["-r", self.target.target_url, "unlock"])
        return []

    def _environment(self) -> list[str]:
        return [*storage_environment(self.config), f"RESTIC_PASSWORD={self.config.restic_password}"]

    def _run(
        self,
        step: str,
        command: list[str],
        *,
        guarded: bool = False,
        accept: Callable[[WorkerResult], bool] | None = None,
    ) -> WorkerResult:
        return run_tool(
            self.launcher,
            self.config,
            self.target,
            tool="restic",
            step=step,
            command=command,
            env=self._environment(),
            binds=[self.target.mount],
            should_retry=is_transient if guarded else is_retryable,
            accept=accept,
        )


def restic_duration(threshold: str) -> str:
    """Convert a ``remove-older-than`` threshold such as ``2W`` into restic's ``14d``."""
    value = threshold.strip()
    if not value:
        raise ValueError("retention threshold must not be empty")

    totals = {"y": 0, "m": 0, "d": 0, "h": 0}
    position = 0
    for match in _THRESHOLD_PART.finditer(value):
        if match.start() != position:
            break
        amount = int(match.group(1))
        unit = match.group(2)
        if unit == "W":
            totals["d"] += amount * 7
        elif unit == "Y":
            totals["y"] += amount
        elif unit == "M":
            totals["m"] += amount
        elif unit == "D":
            totals["d"] += amount
        else:
            totals["h"] += amount
        position = match.end()

    if position != len(value):
        raise ValueError(f"retention threshold '{threshold}' cannot be expressed for restic (use Y, M, W, D or h units)")
    return "".join(f"{amount}{unit}" for unit, amount in totals.items() if amount) or "0d"


def _already_initialized(result: WorkerResult) -> bool:
    return "already initialized" in result.output or "config file already exists" in result.output
