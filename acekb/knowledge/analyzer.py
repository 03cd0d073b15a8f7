"""Signal analysis over knowledge bullets: archival candidates and review reports."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from acekb.knowledge.consolidation import ConsolidationPass, DuplicateGroup
from acekb.knowledge.types import ArchivalCandidate, ArchivalReason, KnowledgeBullet

TOKENS_PER_BULLET = 50
HIGH_HARMFUL_RATIO = 2


@dataclass
class ReviewReport:
    timestamp: str
    total_bullets: int
    duplicate_groups: list[DuplicateGroup]
    archival_candidates: list[ArchivalCandidate]
    estimated_token_savings: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "total_bullets": self.total_bullets,
            "duplicate_groups": [
                {"retained": g.retained.id, "discarded": [b.id for b in g.discarded]}
                for g in self.duplicate_groups
            ],
            "archival_candidates": [
                {"bullet_id": c.bullet.id, "reason": c.reason.label} for c in self.archival_candidates
            ],
            "estimated_token_savings": self.estimated_token_savings,
        }


class SignalAnalyzer:
    """Classifies low-value bullets from their helpful/harmful counters."""

    def __init__(self, consolidation: ConsolidationPass | None = None) -> None:
        self.consolidation = consolidation or ConsolidationPass()

    @staticmethod
    def classify(bullet: KnowledgeBullet) -> ArchivalReason | None:
        if bullet.helpful == 0 and bullet.harmful == 0:
            return ArchivalReason.ZERO_HELPFUL
        if bullet.helpful == 0:
            return ArchivalReason.LOW_SIGNAL
        if bullet.harmful > bullet.helpful * HIGH_HARMFUL_RATIO:
            return ArchivalReason.HIGH_HARMFUL
        return None

    def identify_archival_candidates(self, bullets: Sequence[KnowledgeBullet]) -> list[ArchivalCandidate]:
        candidates: list[ArchivalCandidate] = []
        for bullet in bullets:
            reason = self.classify(bullet)
            if reason is not None:
                candidates.append(ArchivalCandidate(bullet=bullet, reason=reason))
        return candidates

    def __call__(self, bullets: Sequence[KnowledgeBullet]) -> list[ArchivalCandidate]:
        return self.identify_archival_candidates(bullets)

    def review(self, bullets: Sequence[KnowledgeBullet]) -> ReviewReport:
        groups = self.consolidation.find_groups(bullets)
        candidates = self.identify_archival_candidates(bullets)
        removable = sum(len(g.discarded) for g in groups) + len(candidates)
        return ReviewReport(
            timestamp=datetime.now(timezone.utc).isoformat(),
            total_bullets=len(bullets),
            duplicate_groups=groups,
            archival_candidates=candidates,
            estimated_token_savings=removable * TOKENS_PER_BULLET,
        )
