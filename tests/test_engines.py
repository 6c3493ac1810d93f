from __future__ import annotations

from types import SimpleNamespace

import pytest

from conplicity.config import AppConfig, ConfigurationError
from conplicity.engines import DuplicityEngine, RCloneEngine, ResticEngine, ToolFailureError, build_engine
from conplicity.engines.common import is_transient
from conplicity.engines.duplicity import CACHE_MOUNT
from conplicity.engines.rclone import rclone_remote
from conplicity.engines.restic import restic_duration
from conplicity.models import BackupTarget, Metric, WorkerResult
from conplicity.patterns import ParseError
from conplicity.worker import LaunchError, WorkerCancelledError, WorkerTimeoutError

_STATUS_OUTPUT = (
    "Last full backup date: Mon Jan 2 15:04:05 2006\n"
    "Chain start time: Mon Jan 2 15:04:05 2006\n"
    "Chain end time: Tue Jan 3 10:00:00 2006\n"
)


class FakeLauncher:
    """Replays scripted outcomes; the last one repeats once the script is exhausted."""

    def __init__(self, *outcomes: WorkerResult | Exception) -> None:
        self.outcomes = list(outcomes) or [WorkerResult(exit_code=0, output="")]
        self.calls: list[SimpleNamespace] = []

    def launch(self, command, env, binds, image, *, label="worker") -> WorkerResult:
        self.calls.append(
            SimpleNamespace(command=list(command), env=list(env), binds=list(binds), image=image, label=label)
        )
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _config(**overrides) -> AppConfig:
    values = {
        "target_url": "s3://bucket",
        "hostname": "host-1",
        "restic_password": "secret",
        "retry_attempts": 3,
        "retry_delay_seconds": 0.0,
    }
    values.update(overrides)
    return AppConfig(**values)


def _target(engine: str = "duplicity", **overrides) -> BackupTarget:
    values = {
        "volume_name": "db-data",
        "engine": engine,
        "target_url": "s3://bucket/host-1/db-data",
        "full_if_older_than": "15D",
        "remove_older_than": "30D",
        "backup_dir": "/var/backups",
        "mount": "db-data:/var/backups:ro",
        "image": f"{engine}:test",
    }
    values.update(overrides)
    return BackupTarget(**values)


def _ok(output: str = "") -> WorkerResult:
    return WorkerResult(exit_code=0, output=output)


def _duplicity(launcher: FakeLauncher, **config_overrides) -> DuplicityEngine:
    return DuplicityEngine(target=_target(), config=_config(**config_overrides), launcher=launcher)


def test_duplicity_backup_success_reports_zero_exit_metric_and_no_error() -> None:
    launcher = FakeLauncher(_ok("Backup complete"))

    result = _duplicity(launcher).backup()

    assert result.succeeded
    assert result.error is None
    assert result.metrics == (Metric(name="backupExitCode", value=0, labels={"volume": "db-data"}),)
    assert len(launcher.calls) == 1
    call = launcher.calls[0]
    assert call.image == "duplicity:test"
    assert call.command == [
        "--full-if-older-than",
        "15D",
        "--s3-use-new-style",
        "--ssh-options",
        "-oStrictHostKeyChecking=no",
        "--no-encryption",
        "--name",
        "db-data",
        "--allow-source-mismatch",
        "/var/backups",
        "s3://bucket/host-1/db-data",
    ]
    assert call.binds == ["db-data:/var/backups:ro", CACHE_MOUNT]


def test_duplicity_backup_non_zero_exit_reports_exit_metric_and_error_after_retries() -> None:
    launcher = FakeLauncher(WorkerResult(exit_code=2, output="Fatal"))

    result = _duplicity(launcher).backup()

    assert result.status == "failed"
    assert isinstance(result.error, ToolFailureError)
    assert result.error.exit_code == 2
    assert result.metrics == (Metric(name="backupExitCode", value=2, labels={"volume": "db-data"}),)
    assert len(launcher.calls) == 3


def test_duplicity_backup_recovers_after_failed_launch() -> None:
    launcher = FakeLauncher(LaunchError(stage="start", reason="daemon busy"), _ok())

    result = _duplicity(launcher).backup()

    assert result.succeeded
    assert len(launcher.calls) == 2


def test_duplicity_environment_passes_empty_credentials_and_swift_auth_version() -> None:
    launcher = FakeLauncher(_ok())

    _duplicity(launcher, aws_access_key_id="AKIA").backup()

    env = launcher.calls[0].env
    assert "AWS_ACCESS_KEY_ID=AKIA" in env
    assert "AWS_SECRET_ACCESS_KEY=" in env
    assert "SWIFT_USERNAME=" in env
    assert "SWIFT_AUTHVERSION=2" in env


def test_duplicity_verify_compares_target_with_mounted_volume() -> None:
    launcher = FakeLauncher(_ok())

    result = _duplicity(launcher).verify()

    assert result.metrics[0].name == "verifyExitCode"
    command = launcher.calls[0].command
    assert command[0] == "verify"
    assert command[-2:] == ["s3://bucket/host-1/db-data", "/var/backups"]
    assert "db-data:/var/backups:ro" in launcher.calls[0].binds


def test_duplicity_remove_old_uses_retention_and_cache_mount_only() -> None:
    launcher = FakeLauncher(_ok())

    result = _duplicity(launcher).remove_old()

    assert result.metrics[0].name == "removeOldExitCode"
    call = launcher.calls[0]
    assert call.command[:2] == ["remove-older-than", "30D"]
    assert "--force" in call.command
    assert call.binds == [CACHE_MOUNT]


def test_duplicity_remove_old_permanent_failure_is_not_retried() -> None:
    launcher = FakeLauncher(WorkerResult(exit_code=23, output="Fatal: wrong credentials"))

    result = _duplicity(launcher).remove_old()

    assert result.status == "failed"
    assert result.metrics[0].value == 23
    assert len(launcher.calls) == 1


def test_duplicity_remove_old_transient_failure_is_retried() -> None:
    launcher = FakeLauncher(
        WorkerResult(exit_code=50, output="BackendException: Connection reset by peer"),
        _ok(),
    )

    result = _duplicity(launcher).remove_old()

    assert result.succeeded
    assert len(launcher.calls) == 2


def test_duplicity_remove_old_is_not_retried_once_worker_started() -> None:
    launcher = FakeLauncher(LaunchError(stage="inspect", reason="gone", started=True))

    result = _duplicity(launcher).remove_old()

    assert result.status == "failed"
    assert result.metrics == ()
    assert len(launcher.calls) == 1


def test_duplicity_cleanup_reports_cleanup_exit_metric() -> None:
    launcher = FakeLauncher(_ok())

    result = _duplicity(launcher).cleanup()

    assert result.metrics[0].name == "cleanupExitCode"
    assert launcher.calls[0].command[0] == "cleanup"
    assert "--extra-clean" in launcher.calls[0].command


def test_duplicity_status_reports_backup_timestamps() -> None:
    launcher = FakeLauncher(_ok(_STATUS_OUTPUT))

    result = _duplicity(launcher).status()

    assert result.succeeded
    assert result.metrics == (
        Metric(name="lastBackup", value=1136282400, labels={"volume": "db-data"}),
        Metric(name="lastFullBackup", value=1136214245, labels={"volume": "db-data"}),
    )
    assert launcher.calls[0].command[0] == "collection-status"


def test_duplicity_status_with_identical_timestamps_reports_same_epoch_for_both_metrics() -> None:
    launcher = FakeLauncher(
        _ok("Last full backup date: Mon Jan 2 15:04:05 2006\nChain end time: Mon Jan 2 15:04:05 2006\n")
    )

    result = _duplicity(launcher).status()

    assert {metric.name: metric.value for metric in result.metrics} == {
        "lastBackup": 1136214245,
        "lastFullBackup": 1136214245,
    }
    assert result.error is None


def test_duplicity_status_missing_marker_reports_parse_error_without_metrics() -> None:
    launcher = FakeLauncher(_ok("Last full backup date: Mon Jan 2 15:04:05 2006\n"))

    result = _duplicity(launcher).status()

    assert result.status == "parse_error"
    assert isinstance(result.error, ParseError)
    assert result.metrics == ()
    assert len(launcher.calls) == 1


def test_engine_timeout_is_failure_without_retry() -> None:
    launcher = FakeLauncher(WorkerTimeoutError(worker_name="conplicity-db-data-backup", timeout_seconds=5))

    result = _duplicity(launcher).backup()

    assert result.status == "failed"
    assert "did not exit within" in result.message
    assert len(launcher.calls) == 1


def test_engine_cancellation_propagates() -> None:
    launcher = FakeLauncher(WorkerCancelledError(worker_name="conplicity-db-data-backup"))

    with pytest.raises(WorkerCancelledError):
        _duplicity(launcher).backup()


def _restic(launcher: FakeLauncher, **config_overrides) -> ResticEngine:
    return ResticEngine(target=_target("restic"), config=_config(**config_overrides), launcher=launcher)


def test_restic_backup_initializes_repository_then_backs_up() -> None:
    launcher = FakeLauncher(_ok("created restic repository"), _ok("snapshot saved"))

    result = _restic(launcher).backup()

    assert result.succeeded
    assert [call.command for call in launcher.calls] == [
        ["-r", "s3://bucket/host-1/db-data", "init"],
        ["-r", "s3://bucket/host-1/db-data", "backup", "/var/backups", "--host", "host-1"],
    ]
    assert "RESTIC_PASSWORD=secret" in launcher.calls[0].env
    assert launcher.calls[0].binds == ["db-data:/var/backups:ro"]


def test_restic_backup_accepts_already_initialized_repository() -> None:
    launcher = FakeLauncher(
        WorkerResult(exit_code=1, output="Fatal: create key in repository failed: repository master key and config already initialized"),
        _ok("snapshot saved"),
    )

    result = _restic(launcher).backup()

    assert result.succeeded
    assert result.metrics[0].value == 0
    assert len(launcher.calls) == 2


def test_restic_backup_init_failure_skips_backup() -> None:
    launcher = FakeLauncher(WorkerResult(exit_code=1, output="Fatal: wrong password"))

    result = _restic(launcher, retry_attempts=1).backup()

    assert result.status == "failed"
    assert result.metrics[0].value == 1
    assert len(launcher.calls) == 1


def test_restic_remove_old_translates_retention_to_keep_within() -> None:
    launcher = FakeLauncher(_ok())

    result = _restic(launcher).remove_old()

    assert result.succeeded
    assert launcher.calls[0].command == [
        "-r",
        "s3://bucket/host-1/db-data",
        "forget",
        "--prune",
        "--keep-within",
        "30d",
    ]


def test_restic_remove_old_retries_when_repository_locked() -> None:
    launcher = FakeLauncher(
        WorkerResult(exit_code=1, output="Fatal: unable to create lock in backend"),
        _ok(),
    )

    result = _restic(launcher).remove_old()

    assert result.succeeded
    assert len(launcher.calls) == 2


def test_restic_verify_and_cleanup_commands() -> None:
    launcher = FakeLauncher(_ok())
    engine = _restic(launcher)

    assert engine.verify().metrics[0].name == "verifyExitCode"
    assert engine.cleanup().metrics[0].name == "cleanupExitCode"
    assert [call.command[2] for call in launcher.calls] == ["check", "unlock"]


def test_restic_status_is_unsupported_and_launches_nothing() -> None:
    launcher = FakeLauncher()

    result = _restic(launcher).status()

    assert result.succeeded
    assert result.metrics == ()
    assert launcher.calls == []


@pytest.mark.parametrize(
    ("threshold", "expected"),
    [
        ("30D", "30d"),
        ("2W", "14d"),
        ("1Y6M", "1y6m"),
        ("12h", "12h"),
        ("1W2D", "9d"),
        ("0D", "0d"),
    ],
)
def test_restic_duration_converts_retention_thresholds(threshold: str, expected: str) -> None:
    assert restic_duration(threshold) == expected


@pytest.mark.parametrize("threshold", ["", "15x", "D30", "2006-01-02"])
def test_restic_duration_rejects_unsupported_thresholds(threshold: str) -> None:
    with pytest.raises(ValueError):
        restic_duration(threshold)


def test_restic_remove_old_with_invalid_retention_fails_without_launch() -> None:
    launcher = FakeLauncher()
    engine = ResticEngine(target=_target("restic", remove_older_than="1s"), config=_config(), launcher=launcher)

    result = engine.remove_old()

    assert result.status == "failed"
    assert launcher.calls == []


def _rclone(launcher: FakeLauncher) -> RCloneEngine:
    return RCloneEngine(target=_target("rclone"), config=_config(), launcher=launcher)


def test_rclone_backup_syncs_volume_to_remote() -> None:
    launcher = FakeLauncher(_ok())

    result = _rclone(launcher).backup()

    assert result.succeeded
    assert launcher.calls[0].command == ["sync", "/var/backups", "s3:bucket/host-1/db-data"]
    assert "RCLONE_CONFIG_S3_TYPE=s3" in launcher.calls[0].env
    assert "AWS_SECRET_ACCESS_KEY=" in launcher.calls[0].env


def test_rclone_verify_checks_one_way() -> None:
    launcher = FakeLauncher(_ok())

    _rclone(launcher).verify()

    assert launcher.calls[0].command == ["check", "/var/backups", "s3:bucket/host-1/db-data", "--one-way"]


def test_rclone_remove_old_and_status_are_unsupported() -> None:
    launcher = FakeLauncher()
    engine = _rclone(launcher)

    assert engine.remove_old().succeeded
    assert engine.status().succeeded
    assert launcher.calls == []


@pytest.mark.parametrize(
    ("target_url", "expected"),
    [
        ("s3://bucket/host/vol", "s3:bucket/host/vol"),
        ("swift://container/host/vol", "swift:container/host/vol"),
        ("file:///srv/backups/host/vol", "/srv/backups/host/vol"),
        ("/srv/backups/host/vol", "/srv/backups/host/vol"),
    ],
)
def test_rclone_remote_translates_target_urls(target_url: str, expected: str) -> None:
    assert rclone_remote(target_url) == expected


def test_is_transient_only_accepts_unstarted_launch_failures() -> None:
    assert is_transient(LaunchError(stage="create", reason="conflict")) is True
    assert is_transient(LaunchError(stage="logs", reason="gone", started=True)) is False
    assert is_transient(ValueError("bad")) is False


def test_build_engine_selects_engine_by_target() -> None:
    engine = build_engine(target=_target("restic"), config=_config(), launcher=FakeLauncher())

    assert isinstance(engine, ResticEngine)


def test_build_engine_rejects_unknown_engine() -> None:
    with pytest.raises(ConfigurationError, match="unknown backup engine 'borg'"):
        build_engine(target=_target("borg"), config=_config(), launcher=FakeLauncher())
