from datetime import datetime, timezone
from pathlib import Path

import pytest

from acekb.errors import KnowledgeFileNotFoundError
from acekb.knowledge.archival import ArchivalMaintainer, parse_archive, prioritize
from acekb.knowledge.codec import bullet_hash, count_lines, parse_bullets, render_document
from acekb.knowledge.types import (
    ArchivalCandidate,
    ArchivalReason,
    KnowledgeBullet,
    KnowledgeDocument,
    Provenance,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _bullet(bullet_id: str, *, helpful: int = 1, harmful: int = 0, section: str = "patterns") -> KnowledgeBullet:
    content = f"Rule for {bullet_id}"
    return KnowledgeBullet(
        id=bullet_id,
        section=section,
        content=content,
        helpful=helpful,
        harmful=harmful,
        hash=bullet_hash(section, content),
        provenance=Provenance(delta_id=bullet_id, owner_id="owner-1"),
    )


def _write_doc(path: Path, bullets: list[KnowledgeBullet]) -> int:
    text = render_document(KnowledgeDocument(preamble=["# Knowledge"], bullets=bullets))
    path.write_text(text, encoding="utf-8")
    return count_lines(text)


def _scenario_bullets() -> list[KnowledgeBullet]:
    bullets = [_bullet("harm", helpful=1, harmful=3)]
    bullets += [_bullet(f"low{i}", helpful=0, harmful=1) for i in range(3)]
    bullets += [_bullet(f"zero{i}", helpful=0) for i in range(10)]
    bullets += [_bullet(f"keep{i:03d}", helpful=2) for i in range(159)]
    return bullets


def test_prioritize_orders_by_reason_and_keeps_ties_stable() -> None:
    candidates = [
        ArchivalCandidate(_bullet("z1", helpful=0), ArchivalReason.ZERO_HELPFUL),
        ArchivalCandidate(_bullet("l1", helpful=0, harmful=1), ArchivalReason.LOW_SIGNAL),
        ArchivalCandidate(_bullet("z2", helpful=0), ArchivalReason.ZERO_HELPFUL),
        ArchivalCandidate(_bullet("h1", harmful=5), ArchivalReason.HIGH_HARMFUL),
    ]
    assert [c.bullet.id for c in prioritize(candidates)] == ["h1", "l1", "z1", "z2"]


def test_trim_stops_as_soon_as_document_fits(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    assert _write_doc(agents, _scenario_bullets()) == 522

    result = ArchivalMaintainer(agents, max_lines=500).trim_to_limit(now=NOW)

    assert result.bullets_moved == 8
    assert result.lines_before == 522
    assert result.lines_after == 498
    assert result.lines_reduced == 24
    assert result.partial is False
    assert count_lines(agents.read_text(encoding="utf-8")) == 498

    remaining = {b.id for b in parse_bullets(agents.read_text(encoding="utf-8"))}
    archived = {"harm", "low0", "low1", "low2", "zero0", "zero1", "zero2", "zero3"}
    assert not remaining & archived
    assert {"zero4", "zero9"} <= remaining


def test_section_removal_is_counted_exactly(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    bullets = [
        _bullet("a0", helpful=0, section="alpha"),
        _bullet("b0", section="beta"),
        _bullet("b1", section="beta"),
        _bullet("b2", helpful=0, section="beta"),
    ]
    assert _write_doc(agents, bullets) == 17

    result = ArchivalMaintainer(agents, max_lines=13).trim_to_limit(now=NOW)

    assert result.bullets_moved == 1
    assert result.lines_after == 12
    assert "## Alpha" not in agents.read_text(encoding="utf-8")


def test_partial_when_candidates_run_out(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    bullets = [_bullet("zero0", helpful=0), _bullet("zero1", helpful=0)]
    bullets += [_bullet(f"keep{i:03d}", helpful=2) for i in range(171)]
    _write_doc(agents, bullets)

    result = ArchivalMaintainer(agents, max_lines=500).trim_to_limit(now=NOW)

    assert result.partial is True
    assert result.bullets_moved == 2
    assert result.lines_after == 516


def test_under_budget_is_noop(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    _write_doc(agents, [_bullet("zero0", helpful=0)])
    archive = tmp_path / "AGENTS.archive.md"

    result = ArchivalMaintainer(agents, archive, max_lines=500).trim_to_limit(now=NOW)

    assert result.bullets_moved == 0
    assert result.partial is False
    assert not archive.exists()


def test_missing_document_raises(tmp_path: Path) -> None:
    with pytest.raises(KnowledgeFileNotFoundError):
        ArchivalMaintainer(tmp_path / "AGENTS.md").trim_to_limit()


def test_archive_is_append_only_and_complete(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    archive = tmp_path / "AGENTS.archive.md"
    maintainer = ArchivalMaintainer(agents, archive, max_lines=500)

    first = _scenario_bullets()
    _write_doc(agents, first)
    maintainer.trim_to_limit(now=NOW)
    first_archive = archive.read_text(encoding="utf-8")
    assert first_archive.startswith("# Knowledge Archive")

    second = [_bullet(f"zero{i}", helpful=0, section="tools") for i in range(10, 20)]
    second += [_bullet(f"keep{i:03d}", helpful=2) for i in range(163)]
    _write_doc(agents, second)
    maintainer.trim_to_limit(now=datetime(2026, 3, 2, tzinfo=timezone.utc))
    archive_text = archive.read_text(encoding="utf-8")

    assert archive_text.startswith(first_archive)
    assert archive_text.count("# Knowledge Archive") == 1
    assert archive_text.count("## Archived ") == 2
    assert "### Tools (" in archive_text

    entries = parse_archive(archive_text)
    by_id = {e.bullet.id: e for e in entries}
    assert by_id["harm"].reason is ArchivalReason.HIGH_HARMFUL
    assert by_id["low0"].reason is ArchivalReason.LOW_SIGNAL
    assert by_id["zero0"].reason is ArchivalReason.ZERO_HELPFUL
    assert by_id["zero10"].bullet.section == "tools"
    assert by_id["harm"].archived_at == NOW.isoformat()
    for entry in entries:
        assert entry.bullet.content in archive_text
        assert entry.bullet.hash == bullet_hash(entry.bullet.section, entry.bullet.content)


def test_sidecar_less_document_is_trimmed_against_rendered_size(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    lines = ["# Knowledge", "", "## Tools"]
    lines += [f"[Bullet #t{i:03d}, helpful:0, harmful:0] Tool rule {i}" for i in range(300)]
    agents.write_text("\n".join(lines) + "\n", encoding="utf-8")

    result = ArchivalMaintainer(agents, max_lines=290).trim_to_limit(now=NOW)

    assert result.partial is False
    assert result.lines_before == 303
    assert result.lines_after == 288
    assert result.bullets_moved == 205
    assert count_lines(agents.read_text(encoding="utf-8")) == 288


def test_trim_keeps_section_prose(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    lines = ["# Title", "", "## Build", "Always build from a clean checkout."]
    lines += [f"[Bullet #b{i:02d}, helpful:0, harmful:0] Build rule {i}" for i in range(12)]
    agents.write_text("\n".join(lines) + "\n", encoding="utf-8")

    result = ArchivalMaintainer(agents, max_lines=15).trim_to_limit(now=NOW)

    text = agents.read_text(encoding="utf-8")
    assert "Always build from a clean checkout." in text
    assert result.bullets_moved == 9
    assert result.lines_after == 14
    assert result.partial is False
    assert count_lines(text) == 14
