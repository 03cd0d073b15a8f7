"""Core knowledge-base types: deltas, bullets, rejections, archival reasons."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DeltaOp = Literal["add", "amend", "deprecate"]

# Ids are written unescaped into the bullet tag and the sidecar.
DELTA_ID_PATTERN = r"^[^\s,\]]+$"


class _DeltaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DeltaSource(_DeltaModel):
    owner_id: str = Field(default="unknown", validation_alias=AliasChoices("ownerId", "owner_id", "beadsId"))
    commit: str | None = None
    files: list[str] | None = None
    run_id: str | None = None


class DeltaMetadata(_DeltaModel):
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: str = ""
    helpful: int = Field(default=0, ge=0)
    harmful: int = Field(default=0, ge=0)
    source: DeltaSource = Field(default_factory=DeltaSource)
    tags: list[str] = Field(default_factory=list)
    scope: list[str] | None = None
    created_at: str = ""


class Delta(_DeltaModel):
    """A proposed atomic change to the knowledge base."""

    id: str = Field(pattern=DELTA_ID_PATTERN)
    section: str = Field(min_length=1)
    op: DeltaOp
    content: str = Field(min_length=1)
    metadata: DeltaMetadata

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class Provenance:
    delta_id: str
    owner_id: str = "unknown"
    created_at: str = ""


@dataclass(frozen=True)
class KnowledgeBullet:
    """A retained knowledge item. Identity is ``hash`` (section + content)."""

    id: str
    section: str
    content: str
    helpful: int
    harmful: int
    hash: str
    provenance: Provenance
    aggregated_from: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RejectionReason(str, enum.Enum):
    LOW_CONFIDENCE = "low-confidence"
    LOW_EVIDENCE = "low-evidence"
    INVALID = "invalid"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Rejection:
    id: str
    reason: RejectionReason
    details: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "reason": self.reason.value, "details": self.details}


class ArchivalReason(enum.Enum):
    """Why a bullet is archived. Lower rank is archived first."""

    HIGH_HARMFUL = ("high-harmful", 0)
    LOW_SIGNAL = ("low-signal", 1)
    ZERO_HELPFUL = ("zero-helpful", 2)

    def __init__(self, label: str, rank: int) -> None:
        self.label = label
        self.rank = rank

    @classmethod
    def from_label(cls, label: str) -> ArchivalReason:
        for reason in cls:
            if reason.label == label:
                return reason
        raise ValueError(f"Unknown archival reason: {label!r}")

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ArchivalReason):
            return NotImplemented
        return self.rank < other.rank

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class ArchivalCandidate:
    bullet: KnowledgeBullet
    reason: ArchivalReason


@dataclass
class KnowledgeDocument:
    """Structured in-memory form of the knowledge document.

    ``notes`` holds, per canonical section, the body lines that are neither
    bullets nor their sidecars (prose, sub-headings, code). They survive every
    rewrite.
    """

    preamble: list[str] = field(default_factory=list)
    bullets: list[KnowledgeBullet] = field(default_factory=list)
    notes: dict[str, list[str]] = field(default_factory=dict)

    def with_bullets(self, bullets: list[KnowledgeBullet]) -> KnowledgeDocument:
        return KnowledgeDocument(preamble=self.preamble, bullets=list(bullets), notes=self.notes)
