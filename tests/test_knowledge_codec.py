from dataclasses import replace

import pytest

from acekb.errors import CodecError
from acekb.knowledge.codec import (
    bullet_hash,
    count_lines,
    normalize_section,
    parse_bullets,
    parse_document,
    render_bullet_line,
    render_document,
    section_title,
    tokenize_sidecar,
)
from acekb.knowledge.types import KnowledgeBullet, KnowledgeDocument, Provenance


def _bullet(bullet_id: str, section: str, content: str, helpful: int = 1, harmful: int = 0, **kw) -> KnowledgeBullet:
    return KnowledgeBullet(
        id=bullet_id,
        section=normalize_section(section),
        content=content,
        helpful=helpful,
        harmful=harmful,
        hash=bullet_hash(section, content),
        provenance=Provenance(delta_id=bullet_id, owner_id="owner-1", created_at="2026-01-01T00:00:00Z"),
        **kw,
    )


def test_hash_ignores_case_and_whitespace() -> None:
    assert bullet_hash("Patterns", "Use  pytest") == bullet_hash(" patterns ", "use pytest")
    assert bullet_hash("patterns", "use pytest") != bullet_hash("gotchas", "use pytest")
    assert len(bullet_hash("a", "b")) == 16


def test_section_canonicalization_round_trips_through_title() -> None:
    assert normalize_section("Build Test") == "build/test"
    assert section_title("build/test") == "Build Test"
    assert normalize_section(section_title("build/test")) == "build/test"


def test_render_and_parse_round_trip_preserves_bullets() -> None:
    bullets = [
        _bullet("b1", "patterns", "Prefer pathlib over os.path"),
        _bullet("b2", "gotchas", "Close files opened in tests", helpful=3, harmful=1),
        _bullet("b3", "patterns", "Merged rule", helpful=4, aggregated_from=3),
    ]
    doc = KnowledgeDocument(preamble=["# Knowledge", "", "Curated rules."], bullets=bullets)

    text = render_document(doc)
    parsed = parse_document(text)

    assert parsed.preamble == ["# Knowledge", "", "Curated rules."]
    assert {b.id: b for b in parsed.bullets} == {b.id: b for b in bullets}
    assert render_document(parsed) == text


def test_aggregation_marker_lives_in_bullet_tag() -> None:
    bullet = _bullet("b1", "patterns", "Merged rule", helpful=2, aggregated_from=3)
    line = render_bullet_line(bullet)
    assert line == "[Bullet #b1, helpful:2, harmful:0, Aggregated from 3 instances] Merged rule"
    assert parse_bullets(f"## Patterns\n{line}\n")[0].hash == bullet_hash("patterns", "Merged rule")


def test_tokenize_sidecar_rejects_bad_tokens() -> None:
    assert tokenize_sidecar("<!-- deltaId=d1, ownerId=o1, createdAt=, hash=abc -->") == {
        "deltaId": "d1",
        "ownerId": "o1",
        "createdAt": "",
        "hash": "abc",
    }
    with pytest.raises(ValueError):
        tokenize_sidecar("deltaId=d1")
    with pytest.raises(ValueError):
        tokenize_sidecar("<!-- deltaId -->")
    with pytest.raises(ValueError):
        tokenize_sidecar("<!-- deltaId=a, deltaId=b -->")
    with pytest.raises(ValueError):
        tokenize_sidecar("<!-- 1bad=x -->")


def test_malformed_sidecar_falls_back_to_defaults_unless_strict() -> None:
    text = "## Patterns\n[Bullet #b1, helpful:1, harmful:0] Use fixtures\n<!-- deltaId -->\n"

    bullet = parse_bullets(text)[0]
    assert bullet.provenance == Provenance(delta_id="b1", owner_id="unknown", created_at="")

    with pytest.raises(CodecError) as exc_info:
        parse_bullets(text, strict=True)
    assert exc_info.value.line_number == 3


def test_bullet_without_sidecar_gets_default_provenance() -> None:
    bullet = parse_bullets("## Tools\n[Bullet #x9, helpful:0, harmful:0] Run ruff first\n")[0]
    assert bullet.section == "tools"
    assert bullet.provenance.delta_id == "x9"
    assert bullet.provenance.owner_id == "unknown"


def test_stale_stored_hash_is_recomputed() -> None:
    text = "## Tools\n[Bullet #x1, helpful:1, harmful:0] Run ruff\n<!-- deltaId=x1, hash=deadbeef -->\n"
    assert parse_bullets(text)[0].hash == bullet_hash("tools", "Run ruff")


def test_document_line_count_matches_layout() -> None:
    bullets = [_bullet(f"b{i:03d}", "patterns", f"Rule number {i}") for i in range(5)]
    text = render_document(KnowledgeDocument(preamble=["# Knowledge"], bullets=bullets))
    assert count_lines(text) == 3 + 3 * 5


HAND_WRITTEN = """# Project Knowledge

Maintained by the team.

## Patterns

Rules we follow when writing tests.

### Fixtures
[Bullet #p1, helpful:2, harmful:0] Prefer tmp_path over tempfile
More prose after the first bullet.

## Tools
[Bullet #t1, helpful:0, harmful:0] Run ruff before committing
"""


def test_hand_written_document_keeps_section_prose() -> None:
    doc = parse_document(HAND_WRITTEN)

    assert [b.id for b in doc.bullets] == ["p1", "t1"]
    assert doc.notes == {
        "patterns": ["Rules we follow when writing tests.", "", "### Fixtures", "", "More prose after the first bullet."],
    }

    text = render_document(doc)
    assert "Rules we follow when writing tests." in text
    assert "### Fixtures" in text
    assert "More prose after the first bullet." in text
    assert text.index("Rules we follow") < text.index("[Bullet #p1")
    assert render_document(parse_document(text)) == text


def test_section_with_only_prose_keeps_its_header() -> None:
    doc = parse_document("# K\n\n## Gotchas\n\nNothing recorded yet.\n")
    assert doc.bullets == []
    assert render_document(doc) == "# K\n\n## Gotchas\n\nNothing recorded yet.\n"


def test_canonical_document_has_no_notes() -> None:
    bullets = [_bullet("b1", "patterns", "Rule one"), _bullet("b2", "tools", "Rule two")]
    text = render_document(KnowledgeDocument(preamble=["# Knowledge"], bullets=bullets))
    assert parse_document(text).notes == {}


def test_duplicate_bullet_lines_are_both_parsed() -> None:
    line = "[Bullet #d1, helpful:1, harmful:0] Run tests first"
    bullets = parse_bullets(f"## Tools\n{line}\n{line}\n")
    assert len(bullets) == 2
    assert bullets[0].hash == bullets[1].hash


def test_sidecar_values_with_commas_are_sanitized() -> None:
    bullet = replace(
        _bullet("b1", "tools", "Run ruff"),
        provenance=Provenance(delta_id="b1", owner_id="team a, team b", created_at=""),
    )
    text = render_document(KnowledgeDocument(preamble=["# K"], bullets=[bullet]))

    parsed = parse_bullets(text, strict=True)[0]
    assert parsed.provenance.owner_id == "team_a_team_b"
    assert parsed.hash == bullet.hash
