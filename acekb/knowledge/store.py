"""Knowledge document orchestration: merge, consolidate, archive, feedback."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Sequence

from acekb.config.schema import Config
from acekb.knowledge.analyzer import ReviewReport, SignalAnalyzer
from acekb.knowledge.archival import ArchivalMaintainer, ArchivalResult
from acekb.knowledge.codec import count_lines, render_document
from acekb.knowledge.consolidation import ConsolidationPass, ConsolidationResult
from acekb.knowledge.io import KnowledgeIO
from acekb.knowledge.merger import DeltaMerger, MergeResult, sort_bullets
from acekb.knowledge.queue import DeltaQueue, parse_entries
from acekb.knowledge.types import Delta, KnowledgeDocument, Rejection
from acekb.logging import get_logger, operation_context

logger = get_logger(__name__)

DEFAULT_PREAMBLE = ["# Knowledge Base"]


@dataclass
class ApplyResult:
    merge: MergeResult
    consolidation: ConsolidationResult | None = None
    archival: ArchivalResult | None = None
    dry_run: bool = False
    preview: str = ""
    line_count: int = 0
    bullet_count: int = 0
    invalid: list[Rejection] = field(default_factory=list)

    @property
    def accepted(self) -> list[str]:
        return self.merge.accepted

    @property
    def rejected(self) -> list[Rejection]:
        return [*self.invalid, *self.merge.rejected]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "dryRun": self.dry_run,
            "accepted": list(self.accepted),
            "rejected": [r.to_dict() for r in self.rejected],
            "evicted": list(self.merge.evicted),
            "bulletCount": self.bullet_count,
            "lineCount": self.line_count,
        }
        if self.consolidation is not None:
            out["consolidation"] = self.consolidation.to_dict()
        if self.archival is not None:
            out["archival"] = self.archival.to_dict()
        return out


class KnowledgeStore:
    """Owns the knowledge document on disk and every pipeline that rewrites it."""

    def __init__(self, config: Config, *, io: KnowledgeIO | None = None) -> None:
        self.config = config
        self.io = io or KnowledgeIO()
        self.merger = DeltaMerger(
            confidence_threshold=config.merge.confidence_threshold,
            min_evidence_chars=config.merge.min_evidence_chars,
        )
        self.consolidation = ConsolidationPass(
            similarity_threshold=config.consolidation.similarity_threshold,
            min_token_chars=config.consolidation.min_token_chars,
        )
        self.analyzer = SignalAnalyzer(self.consolidation)
        self.queue = DeltaQueue(config.delta_queue_file)

    @property
    def maintainer(self) -> ArchivalMaintainer:
        return ArchivalMaintainer(
            self.config.agents_file,
            self.config.archive_file,
            max_lines=self.config.archival.max_lines,
            candidate_source=self.analyzer,
            io=self.io,
        )

    def load(self, *, required: bool = False) -> KnowledgeDocument:
        doc = self.io.read_document(self.config.agents_file, required=required)
        if not doc.preamble and not doc.bullets and not doc.notes:
            doc.preamble = list(DEFAULT_PREAMBLE)
        return doc

    def save(self, doc: KnowledgeDocument) -> str:
        return self.io.write_document(self.config.agents_file, doc)

    def apply_deltas(self, deltas: Sequence[Delta], *, dry_run: bool = False) -> ApplyResult:
        with operation_context("apply_deltas", dry_run=dry_run):
            doc = self.load()
            merged = self.merger.merge(doc.bullets, deltas)
            bullets = merged.bullets

            consolidation: ConsolidationResult | None = None
            if self.config.consolidation.enabled:
                consolidation = self.consolidation.run(bullets)
                bullets = consolidation.bullets

            updated = doc.with_bullets(bullets)
            text = render_document(updated)
            result = ApplyResult(
                merge=merged,
                consolidation=consolidation,
                dry_run=dry_run,
                preview=text,
                line_count=count_lines(text),
                bullet_count=len(bullets),
            )
            if dry_run:
                logger.info(
                    "Dry run, knowledge document left untouched",
                    accepted=len(merged.accepted),
                    rejected=len(merged.rejected),
                    lines=result.line_count,
                )
                return result

            self.save(updated)
            if self.config.archival.enabled and result.line_count > self.config.archival.max_lines:
                result.archival = self.maintainer.trim_to_limit()
                result.line_count = result.archival.lines_after
            logger.info(
                "Applied deltas to knowledge document",
                accepted=len(merged.accepted),
                rejected=len(merged.rejected),
                evicted=len(merged.evicted),
                lines=result.line_count,
            )
            return result

    def apply_queue(self, ids: Iterable[str] | None = None, *, dry_run: bool = False) -> ApplyResult:
        """Apply queued deltas (all, or only ``ids``) and drop every consumed record from the queue.

        Records failing validation are consumed too: they are reported as
        ``invalid`` and removed, so they cannot linger in the queue.
        """
        entries = self.queue.entries()
        if ids is not None:
            wanted = set(ids)
            entries = [(key, record) for key, record in entries if key in wanted]
        deltas, invalid = parse_entries(entries)
        result = self.apply_deltas(deltas, dry_run=dry_run)
        result.invalid = invalid
        if not dry_run:
            removed = self.queue.dequeue(key for key, _ in entries)
            logger.debug("Dequeued consumed deltas", removed=removed, invalid=len(invalid))
        return result

    def consolidate(self) -> int:
        with operation_context("consolidate"):
            doc = self.load(required=True)
            result = self.consolidation.run(doc.bullets)
            if result.removed:
                self.save(doc.with_bullets(result.bullets))
            return result.removed

    def maintain(self) -> ArchivalResult:
        with operation_context("maintain"):
            return self.maintainer.trim_to_limit()

    def record_feedback(self, bullet_id: str, *, helpful: int = 0, harmful: int = 0) -> bool:
        """Add helpful/harmful votes to a bullet. Returns False if the id is unknown.

        A bullet whose harmful count now exceeds its helpful count is evicted.
        """
        if helpful < 0 or harmful < 0:
            raise ValueError("feedback counts must be non-negative")
        with operation_context("record_feedback", bullet_id=bullet_id):
            doc = self.load(required=True)
            target = next((b for b in doc.bullets if b.id == bullet_id), None)
            if target is None:
                logger.warning("Feedback for unknown bullet ignored")
                return False
            updated = replace(target, helpful=target.helpful + helpful, harmful=target.harmful + harmful)
            bullets = [b for b in doc.bullets if b.id != bullet_id]
            if updated.harmful > updated.helpful:
                logger.info("Evicted bullet after feedback", helpful=updated.helpful, harmful=updated.harmful)
            else:
                bullets.append(updated)
            self.save(doc.with_bullets(sort_bullets(bullets)))
            return True

    def review(self) -> ReviewReport:
        return self.analyzer.review(self.load(required=True).bullets)
