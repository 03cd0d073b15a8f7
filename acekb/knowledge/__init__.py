"""Knowledge document pipeline: codec, merge, consolidation, archival."""

from acekb.knowledge.archival import ArchivalMaintainer, ArchivalResult
from acekb.knowledge.consolidation import ConsolidationPass
from acekb.knowledge.merger import DeltaMerger, MergeResult
from acekb.knowledge.store import KnowledgeStore
from acekb.knowledge.types import Delta, KnowledgeBullet

__all__ = [
    "ArchivalMaintainer",
    "ArchivalResult",
    "ConsolidationPass",
    "Delta",
    "DeltaMerger",
    "KnowledgeBullet",
    "KnowledgeStore",
    "MergeResult",
]
