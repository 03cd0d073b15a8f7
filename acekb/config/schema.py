"""Configuration schema for acekb."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Base(BaseModel):
    """Accepts both camelCase (project JSON files) and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MergeConfig(Base):
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    min_evidence_chars: int = Field(default=8, ge=0)


class ConsolidationConfig(Base):
    enabled: bool = True
    # None disables the token-set similarity rule; exact key matches still merge.
    similarity_threshold: float | None = Field(default=0.9, gt=0.0, le=1.0)
    min_token_chars: int = Field(default=3, ge=1)


class ArchivalConfig(Base):
    enabled: bool = True
    max_lines: int = Field(default=500, ge=1)
    archive_path: str | None = None


class RetentionConfig(Base):
    max_per_owner: int = Field(default=10, ge=0)
    max_age_days: int = Field(default=30, ge=0)
    owner_key: str = "ownerId"
    timestamp_key: str = "timestamp"
    traces_archive_path: str = "logs/archive/execution_traces.archive.jsonl"
    insights_archive_path: str | None = None


class LoggingConfig(Base):
    json_output: bool = False
    level: str = "INFO"


class Config(Base):
    """Root configuration."""

    agents_path: str = "knowledge/AGENTS.md"
    logs_dir: str = "logs"
    insights_path: str = "logs/insights.jsonl"
    traces_path: str = "logs/execution_traces.jsonl"
    delta_queue: str = ".ace/delta-queue.json"
    merge: MergeConfig = Field(default_factory=MergeConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    archival: ArchivalConfig = Field(default_factory=ArchivalConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def agents_file(self) -> Path:
        return Path(self.agents_path).expanduser()

    @property
    def archive_file(self) -> Path:
        if self.archival.archive_path:
            return Path(self.archival.archive_path).expanduser()
        return self.agents_file.with_name(f"{self.agents_file.stem}.archive.md")

    @property
    def delta_queue_file(self) -> Path:
        return Path(self.delta_queue).expanduser()

    @property
    def traces_file(self) -> Path:
        return Path(self.traces_path).expanduser()

    @property
    def insights_file(self) -> Path:
        return Path(self.insights_path).expanduser()

    @property
    def traces_archive_file(self) -> Path:
        return Path(self.retention.traces_archive_path).expanduser()

    @property
    def insights_archive_file(self) -> Path:
        if self.retention.insights_archive_path:
            return Path(self.retention.insights_archive_path).expanduser()
        name = self.insights_file.name
        if name.endswith(".jsonl"):
            name = name[: -len(".jsonl")] + ".archive.jsonl"
        else:
            name = name + ".archive"
        return self.insights_file.with_name(name)
