from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import re

TIME_FORMAT = "%a %b %d %H:%M:%S %Y"

LAST_FULL_BACKUP_MARKER = "last full backup date"
CHAIN_END_TIME_MARKER = "chain end time"

_LAST_FULL_BACKUP_RX = re.compile(r"Last full backup date: (.+)")
_CHAIN_END_TIME_RX = re.compile(r"Chain end time: (.+)")

_TRANSIENT_FAILURE_RX = re.compile(
    r"connection (?:reset|refused|aborted)"
    r"|timed? ?out"
    r"|temporar(?:y|ily) (?:failure|unavailable)"
    r"|unable to create lock"
    r"|repository is already locked"
    r"|\b50[23] (?:Bad Gateway|Service Unavailable)"
    r"|BackendException",
    re.IGNORECASE,
)


class ParseError(RuntimeError):
    def __init__(self, *, marker: str, volume_name: str, reason: str = "marker not found") -> None:
        super().__init__(f"failed to parse {marker} for volume {volume_name}: {reason}")
        self.marker = marker
        self.volume_name = volume_name


@dataclass(frozen=True)
class CollectionStatus:
    last_full_backup: datetime
    chain_end_time: datetime

    @property
    def last_full_backup_epoch(self) -> int:
        return int(self.last_full_backup.timestamp())

    @property
    def chain_end_time_epoch(self) -> int:
        return int(self.chain_end_time.timestamp())


def parse_collection_status(output: str, volume_name: str) -> CollectionStatus:
    return CollectionStatus(
        last_full_backup=_find_timestamp(_LAST_FULL_BACKUP_RX, output, LAST_FULL_BACKUP_MARKER, volume_name),
        chain_end_time=_find_timestamp(_CHAIN_END_TIME_RX, output, CHAIN_END_TIME_MARKER, volume_name),
    )


def parse_tool_timestamp(value: str) -> datetime:
    """Parse a tool timestamp such as ``Mon Jan 2 15:04:05 2006`` as UTC."""
    return datetime.strptime(value.strip(), TIME_FORMAT).replace(tzinfo=UTC)


def is_transient_failure(output: str) -> bool:
    return bool(_TRANSIENT_FAILURE_RX.search(output))


def _find_timestamp(pattern: re.Pattern[str], output: str, marker: str, volume_name: str) -> datetime:
    match = pattern.search(output)
    if match is None:
        raise ParseError(marker=marker, volume_name=volume_name)
    try:
        return parse_tool_timestamp(match.group(1))
    except ValueError as error:
        raise ParseError(marker=marker, volume_name=volume_name, reason=str(error)) from error
