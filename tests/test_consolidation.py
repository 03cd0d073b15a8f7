from acekb.knowledge.codec import bullet_hash, parse_bullets, render_bullet_line, serialize_bullets
from acekb.knowledge.consolidation import ConsolidationPass, consolidation_key, jaccard, token_set
from acekb.knowledge.types import KnowledgeBullet, Provenance

_LONG = "always activate the project virtualenv before running pytest inside the monorepo checkout"


def _bullet(
    bullet_id: str,
    content: str,
    *,
    helpful: int = 1,
    harmful: int = 0,
    section: str = "patterns",
    created_at: str = "",
) -> KnowledgeBullet:
    return KnowledgeBullet(
        id=bullet_id,
        section=section,
        content=content,
        helpful=helpful,
        harmful=harmful,
        hash=bullet_hash(section, content),
        provenance=Provenance(delta_id=bullet_id, created_at=created_at),
    )


def test_consolidation_key_ignores_punctuation_and_case() -> None:
    assert consolidation_key("Use pytest-fixtures, always!") == consolidation_key("use pytest fixtures always")


def test_token_set_drops_short_words() -> None:
    assert token_set("a is the cat on mat") == frozenset({"the", "cat", "mat"})
    assert jaccard(frozenset(), frozenset()) == 0.0


def test_punctuation_variants_collapse_into_highest_helpful() -> None:
    bullets = [
        _bullet("b1", "Use pytest fixtures.", helpful=1, harmful=1),
        _bullet("b2", "use pytest, fixtures", helpful=4),
        _bullet("b3", "Unrelated rule", helpful=2),
    ]
    result = ConsolidationPass().run(bullets)

    assert result.removed == 1
    survivor = next(b for b in result.bullets if b.id == "b2")
    assert survivor.helpful == 5
    assert survivor.harmful == 1
    assert survivor.aggregated_from == 2
    assert survivor.content == "use pytest, fixtures"
    assert "Aggregated from 2 instances" in render_bullet_line(survivor)
    assert result.groups[0].discarded[0].id == "b1"


def test_helpful_tie_keeps_earliest_created() -> None:
    bullets = [
        _bullet("b1", "Pin the lockfile", helpful=2, created_at="2026-02-02T00:00:00Z"),
        _bullet("b2", "pin the LOCKFILE!", helpful=2, created_at="2026-01-01T00:00:00Z"),
        _bullet("b3", "Pin the lockfile...", helpful=2),
    ]
    result = ConsolidationPass().run(bullets)

    assert result.removed == 2
    assert [b.id for b in result.bullets] == ["b2"]
    assert result.bullets[0].aggregated_from == 3


def test_jaccard_rule_merges_near_duplicates() -> None:
    bullets = [
        _bullet("b1", _LONG, helpful=3),
        _bullet("b2", _LONG + " directory", helpful=1),
    ]
    assert jaccard(token_set(bullets[0].content), token_set(bullets[1].content)) >= 0.9

    result = ConsolidationPass().run(bullets)
    assert result.removed == 1
    assert result.bullets[0].id == "b1"


def test_jaccard_rule_disabled_keeps_near_duplicates() -> None:
    bullets = [_bullet("b1", _LONG), _bullet("b2", _LONG + " directory")]
    assert ConsolidationPass(similarity_threshold=None).run(bullets).removed == 0


def test_duplicates_in_different_sections_are_kept() -> None:
    bullets = [_bullet("b1", "Run lint", section="patterns"), _bullet("b2", "Run lint", section="tools")]
    assert ConsolidationPass().run(bullets).removed == 0


def test_second_run_removes_nothing() -> None:
    bullets = [
        _bullet("b1", "Use pytest fixtures.", helpful=1),
        _bullet("b2", "use pytest, fixtures", helpful=4),
        _bullet("b3", _LONG, helpful=2),
        _bullet("b4", _LONG + " directory", helpful=2),
        _bullet("b5", "Prefer pathlib", helpful=1, section="tools"),
    ]
    consolidation = ConsolidationPass()
    first = consolidation.run(bullets)
    assert first.removed == 2

    # Round-trip through the document format before the second run.
    reparsed = parse_bullets(serialize_bullets(first.bullets))
    second = consolidation.run(reparsed)
    assert second.removed == 0
    assert second.bullets == first.bullets


def test_bullets_sharing_a_hash_keep_one_survivor() -> None:
    bullets = [
        _bullet("a", "Run tests first", helpful=2),
        _bullet("b", "Run tests first", helpful=1, harmful=1),
    ]
    assert bullets[0].hash == bullets[1].hash

    result = ConsolidationPass().run(bullets)

    assert result.removed == 1
    [survivor] = result.bullets
    assert survivor.id == "a"
    assert (survivor.helpful, survivor.harmful, survivor.aggregated_from) == (3, 1, 2)


def test_identical_lines_in_a_document_consolidate() -> None:
    line = "[Bullet #d1, helpful:1, harmful:0] Run tests first"
    bullets = parse_bullets(f"## Tools\n{line}\n{line}\n")

    result = ConsolidationPass().run(bullets)

    assert result.removed == 1
    assert len(result.bullets) == 1
    assert result.bullets[0].helpful == 2
    assert "Aggregated from 2 instances" in serialize_bullets(result.bullets)
