"""Bound execution-trace and insight logs with a per-owner retention policy.

For each owner the newest ``max_per_owner`` records are always kept. Older
records survive only while younger than ``max_age_days``. Everything else is
appended verbatim to an archive log; the primary log is rewritten in
ascending timestamp order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from acekb.config.schema import Config, RetentionConfig
from acekb.logging import get_logger
from acekb.utils.helpers import atomic_append_text, atomic_write_text

logger = get_logger(__name__)

UNKNOWN_OWNER = "unknown"


@dataclass
class LogRetentionResult:
    path: Path
    archive_path: Path
    exists: bool
    kept: int = 0
    archived: int = 0
    malformed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "archivePath": str(self.archive_path),
            "exists": self.exists,
            "kept": self.kept,
            "archived": self.archived,
            "malformed": self.malformed,
        }


@dataclass
class CleanupResult:
    traces: LogRetentionResult
    insights: LogRetentionResult

    def to_dict(self) -> dict[str, Any]:
        return {"traces": self.traces.to_dict(), "insights": self.insights.to_dict()}


@dataclass
class _Record:
    position: int
    raw: str
    owner: str
    timestamp: datetime


@dataclass
class _ParsedLog:
    records: list[_Record] = field(default_factory=list)
    malformed: list[str] = field(default_factory=list)


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are treated as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_log(path: Path, text: str, *, owner_key: str, timestamp_key: str) -> _ParsedLog:
    parsed = _ParsedLog()
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        if not raw_line.strip():
            continue
        try:
            row = json.loads(raw_line)
        except json.JSONDecodeError:
            row = None
        timestamp = parse_timestamp(row.get(timestamp_key)) if isinstance(row, dict) else None
        if timestamp is None:
            logger.warning("Skipping malformed log record", path=str(path), line=line_no)
            parsed.malformed.append(raw_line)
            continue
        owner = row.get(owner_key)
        parsed.records.append(
            _Record(
                position=len(parsed.records),
                raw=raw_line,
                owner=str(owner) if owner not in (None, "") else UNKNOWN_OWNER,
                timestamp=timestamp,
            )
        )
    return parsed


def _archive_header(path: Path, now: datetime) -> str:
    kind = "Insights" if "insight" in path.name.lower() else "Execution Traces"
    return f"# Archived {kind}\n# Archived at: {now.isoformat()}\n\n"


def select_retained(
    records: list[_Record],
    *,
    max_per_owner: int,
    max_age_days: int,
    now: datetime,
) -> tuple[list[_Record], list[_Record]]:
    """Split records into (kept, archived) by the per-owner retention rule."""
    cutoff = now - timedelta(days=max_age_days)
    by_owner: dict[str, list[_Record]] = {}
    for record in records:
        by_owner.setdefault(record.owner, []).append(record)

    kept: list[_Record] = []
    archived: list[_Record] = []
    for owner_records in by_owner.values():
        newest_first = sorted(owner_records, key=lambda r: r.timestamp, reverse=True)
        for rank, record in enumerate(newest_first):
            if rank < max_per_owner or record.timestamp >= cutoff:
                kept.append(record)
            else:
                archived.append(record)
    return kept, archived


def cleanup_file(
    path: Path,
    archive_path: Path,
    *,
    max_per_owner: int = 10,
    max_age_days: int = 30,
    owner_key: str = "ownerId",
    timestamp_key: str = "timestamp",
    now: datetime | None = None,
) -> LogRetentionResult:
    """Apply retention to one JSONL log."""
    result = LogRetentionResult(path=path, archive_path=archive_path, exists=path.exists())
    if not result.exists:
        logger.debug("Log file absent, nothing to clean", path=str(path))
        return result

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    parsed = _parse_log(path, path.read_text(encoding="utf-8"), owner_key=owner_key, timestamp_key=timestamp_key)
    kept, archived = select_retained(
        parsed.records,
        max_per_owner=max_per_owner,
        max_age_days=max_age_days,
        now=now,
    )

    archived_lines = [r.raw for r in sorted(archived, key=lambda r: (r.timestamp, r.position))]
    archived_lines.extend(parsed.malformed)
    if archived_lines:
        header = "" if archive_path.exists() else _archive_header(archive_path, now)
        atomic_append_text(archive_path, header + "".join(f"{line}\n" for line in archived_lines))

    ordered = sorted(kept, key=lambda r: (r.timestamp, r.position))
    atomic_write_text(path, "".join(f"{r.raw}\n" for r in ordered))

    result.kept = len(ordered)
    result.archived = len(archived)
    result.malformed = len(parsed.malformed)
    logger.info(
        "Applied log retention",
        path=str(path),
        kept=result.kept,
        archived=result.archived,
        malformed=result.malformed,
    )
    return result


class TraceRetentionCleaner:
    """Runs retention over the configured traces and insights logs."""

    def __init__(self, config: Config) -> None:
        self.config = config

    @property
    def retention(self) -> RetentionConfig:
        return self.config.retention

    def _cleanup(self, path: Path, archive_path: Path, now: datetime | None) -> LogRetentionResult:
        return cleanup_file(
            path,
            archive_path,
            max_per_owner=self.retention.max_per_owner,
            max_age_days=self.retention.max_age_days,
            owner_key=self.retention.owner_key,
            timestamp_key=self.retention.timestamp_key,
            now=now,
        )

    def cleanup(self, now: datetime | None = None) -> CleanupResult:
        now = now or datetime.now(timezone.utc)
        return CleanupResult(
            traces=self._cleanup(self.config.traces_file, self.config.traces_archive_file, now),
            insights=self._cleanup(self.config.insights_file, self.config.insights_archive_file, now),
        )
