"""Collapse near-duplicate bullets within a section.

Two bullets in the same section are duplicates when either

- their consolidation keys (lowercase, punctuation replaced by spaces,
  whitespace collapsed) are equal, or
- the Jaccard similarity of their token sets is at least
  ``similarity_threshold``. Tokens are words of the consolidation key with at
  least ``min_token_chars`` characters; empty token sets never match.

Grouping walks the section in retention order (helpful desc, createdAt asc,
id asc). Each unassigned bullet becomes an anchor and absorbs every later
unassigned duplicate of itself, so the anchor is the member that is kept.
Every pair of survivors has been compared once and found distinct, which
makes a second run with no new deltas a no-op.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

from acekb.knowledge.merger import sort_bullets
from acekb.knowledge.types import KnowledgeBullet
from acekb.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.90
DEFAULT_MIN_TOKEN_CHARS = 3

_PUNCT_RE = re.compile(r"[^\w\s]")


def consolidation_key(content: str) -> str:
    return " ".join(_PUNCT_RE.sub(" ", content.lower()).split())


def token_set(content: str, min_token_chars: int = DEFAULT_MIN_TOKEN_CHARS) -> frozenset[str]:
    return frozenset(t for t in consolidation_key(content).split() if len(t) >= min_token_chars)


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


@dataclass
class DuplicateGroup:
    retained: KnowledgeBullet
    discarded: list[KnowledgeBullet]

    @property
    def size(self) -> int:
        return 1 + len(self.discarded)


@dataclass
class ConsolidationResult:
    bullets: list[KnowledgeBullet]
    removed: int = 0
    groups: list[DuplicateGroup] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": self.removed,
            "groups": [
                {
                    "retained": g.retained.id,
                    "discarded": [b.id for b in g.discarded],
                    "aggregated_from": g.retained.aggregated_from,
                }
                for g in self.groups
            ],
        }


def _retention_order(bullet: KnowledgeBullet) -> tuple[int, int, str, str]:
    created_at = bullet.provenance.created_at
    # Missing timestamps sort after every real one.
    return (-bullet.helpful, 0 if created_at else 1, created_at, bullet.id)


class ConsolidationPass:
    def __init__(
        self,
        similarity_threshold: float | None = DEFAULT_SIMILARITY_THRESHOLD,
        min_token_chars: int = DEFAULT_MIN_TOKEN_CHARS,
    ) -> None:
        self.similarity_threshold = similarity_threshold
        self.min_token_chars = min_token_chars

    def is_duplicate(self, a: KnowledgeBullet, b: KnowledgeBullet) -> bool:
        if a.section != b.section:
            return False
        if consolidation_key(a.content) == consolidation_key(b.content):
            return True
        if self.similarity_threshold is None:
            return False
        similarity = jaccard(
            token_set(a.content, self.min_token_chars),
            token_set(b.content, self.min_token_chars),
        )
        return similarity >= self.similarity_threshold

    def _index_groups(self, bullets: Sequence[KnowledgeBullet]) -> list[tuple[int, list[int]]]:
        """Duplicate groups as ``(anchor, duplicates)`` positions into *bullets*."""
        by_section: dict[str, list[int]] = {}
        for index, bullet in enumerate(bullets):
            by_section.setdefault(bullet.section, []).append(index)
        groups: list[tuple[int, list[int]]] = []
        for section in sorted(by_section):
            ordered = sorted(by_section[section], key=lambda k: _retention_order(bullets[k]))
            assigned: set[int] = set()
            for i, anchor in enumerate(ordered):
                if anchor in assigned:
                    continue
                duplicates = [
                    other
                    for other in ordered[i + 1:]
                    if other not in assigned and self.is_duplicate(bullets[anchor], bullets[other])
                ]
                assigned.update(duplicates)
                if duplicates:
                    groups.append((anchor, duplicates))
        return groups

    def find_groups(self, bullets: Sequence[KnowledgeBullet]) -> list[DuplicateGroup]:
        return [
            DuplicateGroup(retained=bullets[anchor], discarded=[bullets[k] for k in duplicates])
            for anchor, duplicates in self._index_groups(bullets)
        ]

    def run(self, bullets: Sequence[KnowledgeBullet]) -> ConsolidationResult:
        groups = self._index_groups(bullets)
        if not groups:
            return ConsolidationResult(bullets=sort_bullets(bullets))

        # Keyed by position: two bullets may share a hash or an id.
        merged: dict[int, KnowledgeBullet] = {}
        dropped: set[int] = set()
        final_groups: list[DuplicateGroup] = []
        for anchor, duplicates in groups:
            discarded = [bullets[k] for k in duplicates]
            members = [bullets[anchor], *discarded]
            survivor = replace(
                bullets[anchor],
                helpful=sum(b.helpful for b in members),
                harmful=sum(b.harmful for b in members),
                aggregated_from=sum(b.aggregated_from for b in members),
            )
            merged[anchor] = survivor
            dropped.update(duplicates)
            final_groups.append(DuplicateGroup(retained=survivor, discarded=discarded))
            logger.debug(
                "Consolidated duplicate bullets",
                section=survivor.section,
                retained=survivor.id,
                discarded=[b.id for b in discarded],
                aggregated_from=survivor.aggregated_from,
            )

        out = [merged.get(index, bullet) for index, bullet in enumerate(bullets) if index not in dropped]
        removed = len(bullets) - len(out)
        logger.info("Consolidation pass removed duplicate bullets", removed=removed, groups=len(final_groups))
        return ConsolidationResult(bullets=sort_bullets(out), removed=removed, groups=final_groups)
