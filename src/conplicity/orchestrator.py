from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
import logging
import sqlite3
import threading
from typing import Callable, Sequence

from .config import AppConfig, ConfigurationError, KNOWN_ENGINES, parse_duration
from .engines import BackupEngine, Launcher, build_engine
from .engines.common import utc_now_iso
from .metadata import OperationHistoryStore
from .models import STATUS_FAILED, BackupTarget, OperationResult, RunReport, Volume, VolumeOutcome
from .worker import WorkerCancelledError

logger = logging.getLogger(__name__)

LABEL_PREFIX = "io.conplicity"
ANONYMOUS_VOLUME_NAME_LENGTH = 64
BACKUP_DIR = "/var/backups"

EngineFactory = Callable[..., BackupEngine]


def get_volume_label(volume: Volume, key: str) -> str:
    return (volume.labels or {}).get(f"{LABEL_PREFIX}.{key}", "")


def skip_reason(volume: Volume) -> str | None:
    if len(volume.name) == ANONYMOUS_VOLUME_NAME_LENGTH:
        return "anonymous volume"
    if get_volume_label(volume, "ignore").strip().lower() == "true":
        return "ignored by label"
    return None


def resolve_target(volume: Volume, config: AppConfig) -> BackupTarget:
    engine = get_volume_label(volume, "engine").strip().lower() or config.engine
    if engine not in KNOWN_ENGINES:
        raise ConfigurationError(f"label {LABEL_PREFIX}.engine on volume {volume.name} names unknown engine '{engine}'")

    base_url = config.target_url.rstrip("/")
    return BackupTarget(
        volume_name=volume.name,
        engine=engine,
        target_url=f"{base_url}/{config.hostname}/{volume.name}",
        full_if_older_than=get_volume_label(volume, "full_if_older_than") or config.full_if_older_than,
        remove_older_than=get_volume_label(volume, "remove_older_than") or config.remove_older_than,
        backup_dir=BACKUP_DIR,
        mount=f"{volume.name}:{BACKUP_DIR}:ro",
        image=config.image_for(engine),
    )


class VolumeBackupOrchestrator:
    def __init__(
        self,
        *,
        config: AppConfig,
        launcher: Launcher,
        history: OperationHistoryStore | None = None,
        engine_factory: EngineFactory = build_engine,
        cancel_event: threading.Event | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self.config = config
        self.launcher = launcher
        self.history = history
        self.engine_factory = engine_factory
        self.cancel_event = cancel_event or threading.Event()
        self.now = now
        self._check_interval = timedelta(seconds=parse_duration(config.check_every))
        self._volume_locks: dict[str, threading.Lock] = {}
        self._volume_locks_guard = threading.Lock()

    def run(self, volumes: Sequence[Volume]) -> RunReport:
        outcomes: list[VolumeOutcome | None] = [None] * len(volumes)
        cancelled = False

        if self.config.max_workers <= 1 or len(volumes) <= 1:
            for index, volume in enumerate(volumes):
                try:
                    outcomes[index] = self.process_volume(volume)
                except WorkerCancelledError:
                    cancelled = True
                    break
        else:
            with ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="conplicity-volume",
            ) as executor:
                futures = [executor.submit(self.process_volume, volume) for volume in volumes]
                for index, future in enumerate(futures):
                    try:
                        outcomes[index] = future.result()
                    except WorkerCancelledError:
                        cancelled = True
                        self.cancel_event.set()

        if cancelled:
            logger.warning("Backup pass cancelled; remaining volumes were not processed")

        return RunReport(
            outcomes=tuple(outcome for outcome in outcomes if outcome is not None),
            cancelled=cancelled,
        )

    def process_volume(self, volume: Volume) -> VolumeOutcome:
        if self.cancel_event.is_set():
            raise WorkerCancelledError()

        reason = skip_reason(volume)
        if reason is not None:
            logger.info("Ignoring volume %s (%s)", volume.name, reason)
            return VolumeOutcome(volume_name=volume.name, engine=None, skipped_reason=reason)

        with self._volume_lock(volume.name):
            return self._process_eligible(volume)

    def is_check_due(self, volume_name: str) -> bool:
        if self.history is None:
            return True
        try:
            last_check = self.history.get_last_success(volume_name, "verify")
        except sqlite3.Error as error:
            logger.error("Failed to read check history for volume %s: %s", volume_name, error)
            return True
        if last_check is None:
            return True
        return self.now() - datetime.fromisoformat(last_check) >= self._check_interval

    def _process_eligible(self, volume: Volume) -> VolumeOutcome:
        logger.info("Processing volume %s (driver=%s, mountpoint=%s)", volume.name, volume.driver, volume.mountpoint)
        try:
            target = resolve_target(volume, self.config)
        except ConfigurationError as error:
            logger.error("Cannot back up volume %s: %s", volume.name, error)
            now = utc_now_iso()
            failure = OperationResult(
                volume_name=volume.name,
                operation="configure",
                status=STATUS_FAILED,
                error=error,
                started_at=now,
                finished_at=now,
            )
            return VolumeOutcome(volume_name=volume.name, engine=None, operations=(failure,))

        engine = self.engine_factory(target=target, config=self.config, launcher=self.launcher)
        operations: list[OperationResult] = []

        backup = self._record(engine, engine.backup())
        operations.append(backup)
        if backup.succeeded:
            if self.is_check_due(volume.name):
                operations.append(self._record(engine, engine.verify()))
            operations.append(self._record(engine, engine.remove_old()))
            operations.append(self._record(engine, engine.cleanup()))
            operations.append(self._record(engine, engine.status()))

        return VolumeOutcome(volume_name=volume.name, engine=engine.name, operations=tuple(operations))

    def _record(self, engine: BackupEngine, result: OperationResult) -> OperationResult:
        if self.history is not None:
            try:
                self.history.record_result(result, engine=engine.name)
            except sqlite3.Error as error:
                logger.error("Failed to record %s result for volume %s: %s", result.operation, result.volume_name, error)
        return result

    def _volume_lock(self, volume_name: str) -> threading.Lock:
        with self._volume_locks_guard:
            if volume_name not in self._volume_locks:
                self._volume_locks[volume_name] = threading.Lock()
            return self._volume_locks[volume_name]
