from __future__ import annotations

from ..config import AppConfig, ConfigurationError
from ..models import BackupTarget
from .common import BackupEngine, Launcher, ToolFailureError
from .duplicity import DuplicityEngine
from .rclone import RCloneEngine
from .restic import ResticEngine

ENGINES: dict[str, type] = {
    DuplicityEngine.name: DuplicityEngine,
    ResticEngine.name: ResticEngine,
    RCloneEngine.name: RCloneEngine,
}


def build_engine(*, target: BackupTarget, config: AppConfig, launcher: Launcher) -> BackupEngine:
    try:
        engine_class = ENGINES[target.engine]
    except KeyError as error:
        raise ConfigurationError(
            f"unknown backup engine '{target.engine}' for volume {target.volume_name}"
        ) from error
    return engine_class(target=target, config=config, launcher=launcher)


__all__ = [
    "ENGINES",
    "BackupEngine",
    "DuplicityEngine",
    "RCloneEngine",
    "ResticEngine",
    "ToolFailureError",
    "build_engine",
]
