from __future__ import annotations

from ..config import AppConfig
from ..models import BackupTarget, Metric, OperationResult, WorkerResult
from ..patterns import parse_collection_status
from .common import Launcher, is_retryable, is_transient, run_operation, run_tool

CACHE_MOUNT = "duplicity_cache:/root/.cache/duplicity"


class DuplicityEngine:
    name = "duplicity"

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
        return run_operation(self.target.volume_name, "status", self._status)

    def _backup(self) -> list[Metric]:
        self._run(
            "backup",
            [
                "--full-if-older-than",
                self.target.full_if_older_than,
                *self._common_flags(),
                "--allow-source-mismatch",
                self.target.backup_dir,
                self.target.target_url,
            ],
            binds=[self.target.mount, CACHE_MOUNT],
        )
        return []

    def _verify(self) -> list[Metric]:
        self._run(
            "verify",
            [
                "verify",
                *self._common_flags(),
                "--allow-source-mismatch",
                self.target.target_url,
                self.target.backup_dir,
            ],
            binds=[self.target.mount, CACHE_MOUNT],
        )
        return []

    def _remove_old(self) -> list[Metric]:
        self._run(
            "remove-older-than",
            [
                "remove-older-than",
                self.target.remove_older_than,
                *self._common_flags(),
                "--force",
                self.target.target_url,
            ],
            binds=[CACHE_MOUNT],
            guarded=True,
        )
        return []

    def _cleanup(self) -> list[Metric]:
        self._run(
            "cleanup",
            [
                "cleanup",
                *self._common_flags(),
                "--force",
                "--extra-clean",
                self.target.target_url,
            ],
            binds=[CACHE_MOUNT],
        )
        return []

    def _status(self) -> list[Metric]:
        result = self._run(
            "collection-status",
            ["collection-status", *self._common_flags(), self.target.target_url],
            binds=[self.target.mount, CACHE_MOUNT],
        )
        collection = parse_collection_status(result.output, self.target.volume_name)
        labels = {"volume": self.target.volume_name}
        return [
            Metric(name="lastBackup", value=collection.chain_end_time_epoch, labels=labels),
            Metric(name="lastFullBackup", value=collection.last_full_backup_epoch, labels=labels),
        ]

    def _common_flags(self) -> list[str]:
        return [
            "--s3-use-new-style",
            "--ssh-options",
            "-oStrictHostKeyChecking=no",
            "--no-encryption",
            "--name",
            self.target.volume_name,
        ]

    def _environment(self) -> list[str]:
        return [
            f"AWS_ACCESS_KEY_ID={self.config.aws_access_key_id}",
            f"AWS_SECRET_ACCESS_KEY={self.config.aws_secret_access_key}",
            f"SWIFT_USERNAME={self.config.swift_username}",
            f"SWIFT_PASSWORD={self.config.swift_password}",
            f"SWIFT_AUTHURL={self.config.swift_auth_url}",
            f"SWIFT_TENANTNAME={self.config.swift_tenant_name}",
            f"SWIFT_REGIONNAME={self.config.swift_region_name}",
            "SWIFT_AUTHVERSION=2",
        ]

    def _run(self, step: str, command: list[str], *, binds: list[str], guarded: bool = False) -> WorkerResult:
        return run_tool(
            self.launcher,
            self.config,
            self.target,
            tool="duplicity",
            step=step,
            command=command,
            env=self._environment(),
            binds=binds,
            should_retry=is_transient if guarded else is_retryable,
        )
