from __future__ import annotations

from urllib.parse import urlparse

from ..config import AppConfig
from ..models import BackupTarget, Metric, OperationResult, WorkerResult
from .common import Launcher, run_operation, run_tool, storage_environment, unsupported

# Remotes are defined through the environment so no rclone.conf has to be mounted.
_REMOTE_ENVIRONMENT = (
    "RCLONE_CONFIG_S3_TYPE=s3",
    "RCLONE_CONFIG_S3_ENV_AUTH=true",
    "RCLONE_CONFIG_SWIFT_TYPE=swift",
    "RCLONE_CONFIG_SWIFT_ENV_AUTH=true",
)


class RCloneEngine:
    name = "rclone"

    def __init__(self, *, target: BackupTarget, config: AppConfig, launcher: Launcher) -> None:
        self.target = target
        self.config = config
        self.launcher = launcher
        self.remote = rclone_remote(target.target_url)

    def backup(self) -> OperationResult:
        return run_operation(self.target.volume_name, "backup", self._backup, exit_metric="backupExitCode")

    def verify(self) -> OperationResult:
        return run_operation(self.target.volume_name, "verify", self._verify, exit_metric="verifyExitCode")

    def remove_old(self) -> OperationResult:
        return unsupported(self.target.volume_name, "remove_old", self.name)

    def cleanup(self) -> OperationResult:
        return run_operation(self.target.volume_name, "cleanup", self._cleanup, exit_metric="cleanupExitCode")

    def status(self) -> OperationResult:
        return unsupported(self.target.volume_name, "status", self.name)

    def _backup(self) -> list[Metric]:
        self._run("sync", ["sync", self.target.backup_dir, self.remote])
        return []

    def _verify(self) -> list[Metric]:
        self._run("check", ["check", self.target.backup_dir, self.remote, "--one-way"])
        return []

    def _cleanup(self) -> list[Metric]:
        self._run("cleanup", ["cleanup", self.remote])
        return []

    def _run(self, step: str, command: list[str]) -> WorkerResult:
        return run_tool(
            self.launcher,
            self.config,
            self.target,
            tool="rclone",
            step=step,
            command=command,
            env=[*storage_environment(self.config), *_REMOTE_ENVIRONMENT],
            binds=[self.target.mount],
        )


def rclone_remote(target_url: str) -> str:
    """Translate ``s3://bucket/path`` into rclone's ``s3:bucket/path`` form."""
    parsed = urlparse(target_url)
    if parsed.scheme in {"", "file"}:
        return parsed.path or target_url
    return f"{parsed.scheme}:{parsed.netloc}{parsed.path}"
