"""Delta stream loading and the on-disk delta queue."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from acekb.errors import DeltaQueueError
from acekb.knowledge.types import Delta, Rejection, RejectionReason
from acekb.logging import get_logger
from acekb.utils.helpers import atomic_write_text

logger = get_logger(__name__)


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else str(err.get("msg", "invalid")))
    return "; ".join(parts)


def record_key(record: object, index: int) -> str:
    """Queue key of a raw record: its ``id`` when it has one, else ``#<position>``."""
    if isinstance(record, dict) and record.get("id"):
        return str(record["id"])
    return f"#{index}"


def parse_entries(entries: Iterable[tuple[str, object]]) -> tuple[list[Delta], list[Rejection]]:
    """Validate ``(key, record)`` pairs.

    Records failing the schema become ``invalid`` rejections, keyed by their
    queue key, instead of aborting the batch.
    """
    deltas: list[Delta] = []
    rejected: list[Rejection] = []
    for key, record in entries:
        try:
            deltas.append(Delta.model_validate(record))
        except ValidationError as exc:
            logger.warning("Rejected delta failing schema validation", delta_id=key)
            rejected.append(Rejection(id=key, reason=RejectionReason.INVALID, details=f"schema: {_validation_summary(exc)}"))
    return deltas, rejected


def parse_deltas(records: Iterable[object]) -> tuple[list[Delta], list[Rejection]]:
    return parse_entries((record_key(record, index), record) for index, record in enumerate(records))


def load_delta_records(path: Path) -> list[Any]:
    """Read a delta stream: either a JSON array or one JSON object per line.

    Unparseable JSONL lines are skipped with a warning.
    """
    text = path.read_text(encoding="utf-8")
    stripped = text.strip()
    if not stripped:
        return []
    if stripped.startswith("["):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise DeltaQueueError(f"Delta file {path} is not valid JSON: {exc}") from exc
        return list(data)

    records: list[Any] = []
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable delta line", path=str(path), line=line_no)
    return records


def _queue_order(record: object) -> tuple[str, str]:
    if not isinstance(record, dict):
        return ("", "")
    metadata = record.get("metadata")
    created_at = metadata.get("createdAt", "") if isinstance(metadata, dict) else ""
    return (str(record.get("section", "")), str(created_at))


class DeltaQueue:
    """Pending deltas persisted as a JSON array, sorted by section then createdAt.

    Records are kept as read. One that fails validation stays queued until it is
    dequeued by its key (see :func:`record_key`).
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def records(self) -> list[Any]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except json.JSONDecodeError as exc:
            raise DeltaQueueError(f"Delta queue {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, list):
            raise DeltaQueueError(f"Delta queue {self.path} must hold a JSON array")
        return data

    def entries(self) -> list[tuple[str, Any]]:
        return [(record_key(record, index), record) for index, record in enumerate(self.records())]

    def read_detailed(self) -> tuple[list[Delta], list[Rejection]]:
        return parse_entries(self.entries())

    def read(self) -> list[Delta]:
        deltas, _ = self.read_detailed()
        return deltas

    def _write_records(self, records: Sequence[Any]) -> None:
        ordered = sorted(records, key=_queue_order)
        atomic_write_text(self.path, json.dumps(ordered, indent=2, ensure_ascii=False) + "\n")

    def write(self, deltas: Sequence[Delta]) -> None:
        """Replace the whole queue with *deltas*."""
        self._write_records([d.to_record() for d in deltas])

    def enqueue(self, deltas: Sequence[Delta]) -> None:
        self._write_records([*self.records(), *(d.to_record() for d in deltas)])

    def dequeue(self, keys: Iterable[str]) -> int:
        """Remove records by key, valid or not; returns how many were removed."""
        drop = set(keys)
        existing = self.entries()
        kept = [record for key, record in existing if key not in drop]
        if len(kept) != len(existing):
            self._write_records(kept)
        return len(existing) - len(kept)

    def clear(self) -> None:
        self.write([])
