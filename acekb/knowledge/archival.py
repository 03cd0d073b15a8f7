"""Keep the knowledge document under a line budget by archiving low-value bullets.

Archived bullets are appended to an archive document and never deleted, so
archival is recoverable. The archive is a superset of the knowledge document
format: each entry is the canonical bullet line plus its provenance sidecar
extended with ``section`` and ``archivedReason``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

from acekb.knowledge.analyzer import SignalAnalyzer
from acekb.knowledge.codec import (
    count_lines,
    group_by_section,
    parse_bullet_lines,
    parse_document,
    render_bullet_line,
    render_document,
    render_sidecar,
    section_title,
    with_section,
)
from acekb.knowledge.io import KnowledgeIO
from acekb.knowledge.types import (
    ArchivalCandidate,
    ArchivalReason,
    KnowledgeBullet,
    KnowledgeDocument,
)
from acekb.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_LINES = 500

CandidateSource = Callable[[Sequence[KnowledgeBullet]], list[ArchivalCandidate]]


@dataclass
class ArchivalResult:
    bullets_moved: int
    lines_reduced: int
    archive_path: Path
    partial: bool = False
    lines_before: int = 0
    lines_after: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "bulletsMoved": self.bullets_moved,
            "linesReduced": self.lines_reduced,
            "archivePath": str(self.archive_path),
            "partial": self.partial,
            "linesBefore": self.lines_before,
            "linesAfter": self.lines_after,
        }


@dataclass(frozen=True)
class ArchivedBullet:
    bullet: KnowledgeBullet
    reason: ArchivalReason | None
    archived_at: str


def prioritize(candidates: Sequence[ArchivalCandidate]) -> list[ArchivalCandidate]:
    """Order candidates high-harmful, low-signal, zero-helpful; ties keep input order."""
    return sorted(candidates, key=lambda c: c.reason.rank)


class ArchivalMaintainer:
    def __init__(
        self,
        agents_path: Path,
        archive_path: Path | None = None,
        *,
        max_lines: int = DEFAULT_MAX_LINES,
        candidate_source: CandidateSource | None = None,
        io: KnowledgeIO | None = None,
    ) -> None:
        self.agents_path = agents_path
        self.archive_path = archive_path or agents_path.with_name(f"{agents_path.stem}.archive.md")
        self.max_lines = max_lines
        self.candidate_source = candidate_source or SignalAnalyzer()
        self._io = io or KnowledgeIO()

    def _result(self, lines: int, *, partial: bool) -> ArchivalResult:
        return ArchivalResult(
            bullets_moved=0,
            lines_reduced=0,
            archive_path=self.archive_path,
            partial=partial,
            lines_before=lines,
            lines_after=lines,
        )

    def plan(self, doc: KnowledgeDocument) -> list[ArchivalCandidate]:
        """Pick candidates, one at a time, until the rendered document fits the budget.

        Line counts are taken from the canonical rendering, which is what gets
        written back, not from the file as read.
        """
        remaining = list(doc.bullets)
        rendered_lines = count_lines(render_document(doc))
        chosen: list[ArchivalCandidate] = []
        chosen_ids: set[str] = set()
        for candidate in prioritize(self.candidate_source(doc.bullets)):
            if rendered_lines <= self.max_lines:
                break
            bullet_id = candidate.bullet.id
            if bullet_id in chosen_ids or not any(b.id == bullet_id for b in remaining):
                continue
            remaining = [b for b in remaining if b.id != bullet_id]
            rendered_lines = count_lines(render_document(doc.with_bullets(remaining)))
            chosen.append(candidate)
            chosen_ids.add(bullet_id)
        return chosen

    def trim_to_limit(self, *, now: datetime | None = None) -> ArchivalResult:
        """Archive bullets until the knowledge document is within ``max_lines``.

        Raises:
            KnowledgeFileNotFoundError: if the knowledge document does not exist.
        """
        text = self._io.read_text(self.agents_path, required=True)
        lines_before = count_lines(text)
        if lines_before <= self.max_lines:
            return self._result(lines_before, partial=False)

        logger.info(
            "Knowledge document exceeds line limit",
            path=str(self.agents_path),
            lines=lines_before,
            max_lines=self.max_lines,
        )
        doc = parse_document(text)
        chosen = self.plan(doc)
        by_id = {c.bullet.id: c.reason for c in chosen}
        kept = doc.with_bullets([b for b in doc.bullets if b.id not in by_id])
        if not chosen and count_lines(render_document(kept)) > self.max_lines:
            logger.warning("No archival candidates available, document stays over budget", lines=lines_before)
            return self._result(lines_before, partial=True)

        if chosen:
            self._append_archive([(b, by_id[b.id]) for b in doc.bullets if b.id in by_id], now=now)
        new_text = self._io.write_document(self.agents_path, kept)
        lines_after = count_lines(new_text)
        partial = lines_after > self.max_lines
        if partial:
            logger.warning(
                "Archival candidates exhausted before reaching line limit",
                lines=lines_after,
                max_lines=self.max_lines,
            )
        logger.info(
            "Archived knowledge bullets",
            moved=len(chosen),
            lines_before=lines_before,
            lines_after=lines_after,
            archive=str(self.archive_path),
        )
        return ArchivalResult(
            bullets_moved=len(chosen),
            lines_reduced=lines_before - lines_after,
            archive_path=self.archive_path,
            partial=partial,
            lines_before=lines_before,
            lines_after=lines_after,
        )

    def _append_archive(
        self,
        archived: Sequence[tuple[KnowledgeBullet, ArchivalReason]],
        *,
        now: datetime | None = None,
    ) -> None:
        timestamp = (now or datetime.now(timezone.utc)).isoformat()
        doc_name = self.agents_path.name
        parts: list[str] = []
        if not self.archive_path.exists():
            parts.append(
                "# Knowledge Archive\n\n"
                f"This file contains bullets archived from {doc_name} to keep it under {self.max_lines} lines.\n"
            )
        parts.append(f"\n## Archived {timestamp}\n\nReason: Archived to keep {doc_name} under {self.max_lines} lines\n\n")

        reasons = {b.id: reason for b, reason in archived}
        grouped = group_by_section(b for b, _ in archived)
        for section in sorted(grouped):
            bullets = grouped[section]
            parts.append(f"### {section_title(section)} ({len(bullets)} bullets)\n\n")
            for bullet in bullets:
                sidecar = render_sidecar(bullet, section=bullet.section, archivedReason=reasons[bullet.id].label)
                parts.append(f"{render_bullet_line(bullet)}\n{sidecar}\n")
            parts.append("\n")
        self._io.append_text(self.archive_path, "".join(parts))


def parse_archive(text: str) -> list[ArchivedBullet]:
    """Read archived bullets (with reason and archive timestamp) back from archive text."""
    entries, _, _ = parse_bullet_lines(text.splitlines())
    out: list[ArchivedBullet] = []
    for header, bullet, fields in entries:
        archived_at = header[len("Archived "):].strip() if header.startswith("Archived ") else ""
        reason_label = fields.get("archivedReason")
        try:
            reason = ArchivalReason.from_label(reason_label) if reason_label else None
        except ValueError:
            logger.warning("Unknown archival reason in archive", bullet_id=bullet.id, reason=reason_label)
            reason = None
        section = fields.get("section")
        if section:
            bullet = with_section(bullet, section)
        out.append(ArchivedBullet(bullet=bullet, reason=reason, archived_at=archived_at))
    return out
