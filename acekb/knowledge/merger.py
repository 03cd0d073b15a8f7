"""Deterministic delta merger.

Rules, applied to each delta in input order:

1. ``confidence < threshold`` -> rejected ``low-confidence``
2. evidence shorter than ``min_evidence_chars`` -> rejected ``low-evidence``
3. identity is ``bullet_hash(section, content)``
4. ``deprecate`` removes the matching bullet, ``amend`` rewrites it and adds
   the delta's counters, ``add`` inserts unless the hash already exists

Afterwards every bullet with ``harmful > helpful`` is evicted and the result
is sorted: section asc, helpful desc, content asc, id asc.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Sequence

from acekb.knowledge.codec import UNKNOWN_OWNER, bullet_hash, clean_content, normalize_section, sidecar_value
from acekb.knowledge.types import (
    Delta,
    KnowledgeBullet,
    Provenance,
    Rejection,
    RejectionReason,
)
from acekb.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.80
MIN_EVIDENCE_CHARS = 8


@dataclass
class MergeResult:
    bullets: list[KnowledgeBullet]
    accepted: list[str] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": list(self.accepted),
            "rejected": [r.to_dict() for r in self.rejected],
            "evicted": list(self.evicted),
            "bullet_count": len(self.bullets),
        }


@dataclass
class DeltaStats:
    total: int
    accepted: int
    rejected: int
    by_section: dict[str, int]
    avg_confidence: float


def sort_key(bullet: KnowledgeBullet) -> tuple[str, int, str, str]:
    return (bullet.section, -bullet.helpful, bullet.content, bullet.id)


def sort_bullets(bullets: Iterable[KnowledgeBullet]) -> list[KnowledgeBullet]:
    return sorted(bullets, key=sort_key)


class _BulletArena:
    """Bullets in insertion order plus a hash -> slot side map."""

    def __init__(self, bullets: Iterable[KnowledgeBullet]) -> None:
        self._slots: list[KnowledgeBullet | None] = []
        self._index: dict[str, int] = {}
        for bullet in bullets:
            if bullet.hash in self._index:
                # Documents edited by hand can repeat a bullet; first one wins.
                logger.warning("Duplicate bullet hash in existing set, dropping later copy", bullet_id=bullet.id)
                continue
            self.insert(bullet)

    def get(self, key: str) -> KnowledgeBullet | None:
        slot = self._index.get(key)
        return None if slot is None else self._slots[slot]

    def insert(self, bullet: KnowledgeBullet) -> None:
        self._index[bullet.hash] = len(self._slots)
        self._slots.append(bullet)

    def update(self, bullet: KnowledgeBullet) -> None:
        self._slots[self._index[bullet.hash]] = bullet

    def remove(self, key: str) -> None:
        slot = self._index.pop(key)
        self._slots[slot] = None

    def live(self) -> list[KnowledgeBullet]:
        return [b for b in self._slots if b is not None]


class DeltaMerger:
    """Applies a batch of deltas to an existing bullet set without side effects."""

    def __init__(
        self,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        min_evidence_chars: int = MIN_EVIDENCE_CHARS,
    ) -> None:
        self.confidence_threshold = confidence_threshold
        self.min_evidence_chars = min_evidence_chars

    def _validate(self, delta: Delta) -> Rejection | None:
        confidence = delta.metadata.confidence
        if confidence < self.confidence_threshold:
            return Rejection(
                id=delta.id,
                reason=RejectionReason.LOW_CONFIDENCE,
                details=f"confidence {confidence} < {self.confidence_threshold}",
            )
        if len(delta.metadata.evidence.strip()) < self.min_evidence_chars:
            return Rejection(
                id=delta.id,
                reason=RejectionReason.LOW_EVIDENCE,
                details=f"evidence shorter than {self.min_evidence_chars} characters",
            )
        return None

    @staticmethod
    def _provenance(delta: Delta) -> Provenance:
        return Provenance(
            delta_id=delta.id,
            owner_id=sidecar_value(delta.metadata.source.owner_id) or UNKNOWN_OWNER,
            created_at=sidecar_value(delta.metadata.created_at),
        )

    def merge(self, existing: Sequence[KnowledgeBullet], incoming: Sequence[Delta]) -> MergeResult:
        accepted: list[str] = []
        rejected: list[Rejection] = []
        arena = _BulletArena(existing)

        for delta in incoming:
            rejection = self._validate(delta)
            if rejection is not None:
                rejected.append(rejection)
                continue

            key = bullet_hash(delta.section, delta.content)
            current = arena.get(key)

            if delta.op == "deprecate":
                if current is None:
                    rejected.append(
                        Rejection(id=delta.id, reason=RejectionReason.INVALID, details="deprecate target not found")
                    )
                    continue
                arena.remove(key)
                accepted.append(delta.id)
                continue

            if delta.op == "amend":
                if current is None:
                    rejected.append(
                        Rejection(id=delta.id, reason=RejectionReason.INVALID, details="amend target not found")
                    )
                    continue
                arena.update(
                    replace(
                        current,
                        content=clean_content(delta.content),
                        helpful=current.helpful + delta.metadata.helpful,
                        harmful=current.harmful + delta.metadata.harmful,
                        provenance=self._provenance(delta),
                    )
                )
                accepted.append(delta.id)
                continue

            if current is not None:
                rejected.append(
                    Rejection(
                        id=delta.id,
                        reason=RejectionReason.DUPLICATE,
                        details=f"hash collision with bullet {current.id}",
                    )
                )
                continue

            arena.insert(
                KnowledgeBullet(
                    id=delta.id,
                    section=normalize_section(delta.section),
                    content=clean_content(delta.content),
                    helpful=delta.metadata.helpful,
                    harmful=delta.metadata.harmful,
                    hash=key,
                    provenance=self._provenance(delta),
                )
            )
            accepted.append(delta.id)

        survivors: list[KnowledgeBullet] = []
        evicted: list[str] = []
        for bullet in arena.live():
            if bullet.harmful > bullet.helpful:
                evicted.append(bullet.id)
            else:
                survivors.append(bullet)
        if evicted:
            logger.info("Evicted bullets with harmful > helpful", bullet_ids=evicted)

        logger.debug(
            "Delta merge finished",
            incoming=len(incoming),
            accepted=len(accepted),
            rejected=len(rejected),
            bullets=len(survivors),
        )
        return MergeResult(
            bullets=sort_bullets(survivors),
            accepted=accepted,
            rejected=rejected,
            evicted=evicted,
        )


def compute_delta_stats(deltas: Sequence[Delta], result: MergeResult) -> DeltaStats:
    accepted_ids = set(result.accepted)
    accepted = [d for d in deltas if d.id in accepted_ids]
    by_section = Counter(normalize_section(d.section) for d in accepted)
    avg_confidence = sum(d.metadata.confidence for d in accepted) / len(accepted) if accepted else 0.0
    return DeltaStats(
        total=len(result.accepted) + len(result.rejected),
        accepted=len(result.accepted),
        rejected=len(result.rejected),
        by_section=dict(sorted(by_section.items())),
        avg_confidence=avg_confidence,
    )
