"""Parse and render the knowledge document (AGENTS.md) format.

Document layout::

    # Title / front matter            <- preamble, preserved verbatim
    ## Section Name
    [Bullet #<id>, helpful:<n>, harmful:<m>] <content>
    <!-- deltaId=<..>, ownerId=<..>, createdAt=<..>, hash=<..> -->

Consolidated bullets carry ``, Aggregated from <k> instances`` inside the
bracket. Sections are canonicalized (lowercase, whitespace -> ``/``).
"""

from __future__ import annotations

import hashlib
import re
from collections import defaultdict
from dataclasses import replace
from typing import Iterable

from acekb.errors import CodecError
from acekb.knowledge.types import KnowledgeBullet, KnowledgeDocument, Provenance
from acekb.logging import get_logger

logger = get_logger(__name__)

BULLET_RE = re.compile(
    r"^\s*\[Bullet #(?P<id>[^,\]\s]+), helpful:(?P<helpful>\d+), harmful:(?P<harmful>\d+)"
    r"(?:, Aggregated from (?P<aggregated>\d+) instances)?\] (?P<content>.+?)\s*$"
)
_H2_HEADING_RE = re.compile(r"^##\s+(.+?)\s*$")
_SIDECAR_RE = re.compile(r"^\s*<!--(?P<body>.*)-->\s*$")
_SIDECAR_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_WHITESPACE_RE = re.compile(r"\s+")
_SIDECAR_UNSAFE_RE = re.compile(r"[\s,]+")

UNKNOWN_OWNER = "unknown"


def normalize_section(section: str) -> str:
    return _WHITESPACE_RE.sub("/", section.strip().lower())


def normalize_content(content: str) -> str:
    return _WHITESPACE_RE.sub(" ", content.strip().lower())


def clean_content(content: str) -> str:
    """Collapse internal whitespace so content fits on one bullet line."""
    return " ".join(content.split())


def bullet_hash(section: str, content: str) -> str:
    """Identity key of a bullet: digest of normalized section and content."""
    key = f"{normalize_section(section)}::{normalize_content(content)}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def section_title(section: str) -> str:
    """Render a canonical section name as a header title (``build/test`` -> ``Build Test``)."""
    spaced = section.replace("/", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def count_lines(text: str) -> int:
    return len(text.splitlines())


def tokenize_sidecar(line: str) -> dict[str, str]:
    """Split a ``<!-- key=value, ... -->`` comment into a dict.

    Raises:
        ValueError: if the line is not a comment, a token lacks ``=``, a key is
            not an identifier, or a key repeats.
    """
    m = _SIDECAR_RE.match(line)
    if not m:
        raise ValueError("provenance line is not an HTML comment")
    body = m.group("body").strip()
    pairs: dict[str, str] = {}
    if not body:
        return pairs
    for token in body.split(","):
        token = token.strip()
        key, sep, value = token.partition("=")
        key = key.strip()
        if not sep:
            raise ValueError(f"token {token!r} is missing '='")
        if not _SIDECAR_KEY_RE.match(key):
            raise ValueError(f"invalid key {key!r}")
        if key in pairs:
            raise ValueError(f"duplicate key {key!r}")
        pairs[key] = value.strip()
    return pairs


def sidecar_value(value: str) -> str:
    """Make *value* safe as a sidecar token value: commas and whitespace become ``_``."""
    return _SIDECAR_UNSAFE_RE.sub("_", value.strip())


def render_sidecar(bullet: KnowledgeBullet, **extra: str) -> str:
    fields = {
        "deltaId": bullet.provenance.delta_id,
        "ownerId": bullet.provenance.owner_id,
        "createdAt": bullet.provenance.created_at,
        "hash": bullet.hash,
        **extra,
    }
    return "<!-- " + ", ".join(f"{k}={sidecar_value(v)}" for k, v in fields.items()) + " -->"


def render_bullet_line(bullet: KnowledgeBullet) -> str:
    tag = f"Bullet #{bullet.id}, helpful:{bullet.helpful}, harmful:{bullet.harmful}"
    if bullet.aggregated_from > 1:
        tag += f", Aggregated from {bullet.aggregated_from} instances"
    return f"[{tag}] {clean_content(bullet.content)}"


def _is_sidecar_line(line: str) -> bool:
    return line.lstrip().startswith("<!--")


def parse_bullet_lines(
    lines: list[str],
    *,
    strict: bool = False,
    start_line: int = 1,
) -> tuple[list[tuple[str, KnowledgeBullet, dict[str, str]]], list[str], dict[str, list[str]]]:
    """Parse bullet and sidecar lines.

    Returns ``(entries, preamble, notes)``. Each entry is
    ``(raw_section_header, bullet, sidecar_fields)``; ``preamble`` holds the
    lines before the first ``## `` header; ``notes`` maps a canonical section to
    its other body lines. Headers deeper than ``##`` leave the current section
    unchanged and are kept as notes.
    """
    entries: list[tuple[str, KnowledgeBullet, dict[str, str]]] = []
    preamble: list[str] = []
    notes: dict[str, list[str]] = defaultdict(list)
    current_header: str | None = None
    i = 0
    while i < len(lines):
        line = lines[i]
        heading = _H2_HEADING_RE.match(line)
        if heading:
            current_header = heading.group(1)
            notes[normalize_section(current_header)].append("")
            i += 1
            continue
        if current_header is None:
            preamble.append(line)
            i += 1
            continue
        section = normalize_section(current_header)
        m = BULLET_RE.match(line)
        if not m:
            notes[section].append(line.rstrip())
            i += 1
            continue
        # A bullet between two prose runs becomes a paragraph break.
        notes[section].append("")

        bullet_id = m.group("id")
        content = m.group("content")
        fields: dict[str, str] = {}
        if i + 1 < len(lines) and _is_sidecar_line(lines[i + 1]):
            try:
                fields = tokenize_sidecar(lines[i + 1])
            except ValueError as exc:
                if strict:
                    raise CodecError(f"malformed provenance for bullet {bullet_id}: {exc}", line_number=start_line + i + 1) from exc
                logger.warning(
                    "Malformed provenance sidecar, using defaults",
                    bullet_id=bullet_id,
                    line=start_line + i + 1,
                    error=str(exc),
                )
                fields = {}
            i += 1

        computed = bullet_hash(section, content)
        stored = fields.get("hash")
        if stored and stored != computed:
            logger.debug("Stale bullet hash in sidecar, recomputed", bullet_id=bullet_id, stored=stored)
        bullet = KnowledgeBullet(
            id=bullet_id,
            section=section,
            content=content,
            helpful=int(m.group("helpful")),
            harmful=int(m.group("harmful")),
            hash=computed,
            provenance=Provenance(
                delta_id=fields.get("deltaId") or bullet_id,
                owner_id=fields.get("ownerId") or UNKNOWN_OWNER,
                created_at=fields.get("createdAt", ""),
            ),
            aggregated_from=int(m.group("aggregated") or 1),
        )
        entries.append((current_header, bullet, fields))
        i += 1
    tidied = {section: _tidy_notes(body) for section, body in notes.items()}
    return entries, preamble, {section: body for section, body in tidied.items() if body}


def _tidy_notes(lines: list[str]) -> list[str]:
    """Drop leading/trailing blank lines and collapse blank runs to one."""
    out: list[str] = []
    for line in lines:
        if not line.strip() and (not out or not out[-1].strip()):
            continue
        out.append(line)
    while out and not out[-1].strip():
        out.pop()
    return out


def parse_document(text: str, *, strict: bool = False) -> KnowledgeDocument:
    """Parse knowledge document text into a :class:`KnowledgeDocument`."""
    entries, preamble, notes = parse_bullet_lines(text.splitlines(), strict=strict)
    while preamble and not preamble[-1].strip():
        preamble.pop()
    return KnowledgeDocument(preamble=preamble, bullets=[bullet for _, bullet, _ in entries], notes=notes)


def parse_bullets(text: str, *, strict: bool = False) -> list[KnowledgeBullet]:
    return parse_document(text, strict=strict).bullets


def group_by_section(bullets: Iterable[KnowledgeBullet]) -> dict[str, list[KnowledgeBullet]]:
    grouped: dict[str, list[KnowledgeBullet]] = defaultdict(list)
    for bullet in bullets:
        grouped[bullet.section].append(bullet)
    return dict(grouped)


def serialize_bullets(bullets: Iterable[KnowledgeBullet], notes: dict[str, list[str]] | None = None) -> str:
    """Render bullets grouped by section, sections ascending, order within a section kept.

    A section's notes are emitted under its header, before its bullets. A section
    with notes but no bullets keeps its header.
    """
    notes = notes or {}
    lines: list[str] = []
    grouped = group_by_section(bullets)
    for section in sorted(set(grouped) | {s for s, body in notes.items() if body}):
        lines.append(f"## {section_title(section)}")
        lines.append("")
        if notes.get(section):
            lines.extend(notes[section])
            lines.append("")
        for bullet in grouped.get(section, []):
            lines.append(render_bullet_line(bullet))
            lines.append(render_sidecar(bullet))
            lines.append("")
    return "\n".join(lines)


def render_document(doc: KnowledgeDocument) -> str:
    body = serialize_bullets(doc.bullets, doc.notes)
    preamble = "\n".join(doc.preamble).strip("\n")
    if preamble and body:
        return f"{preamble}\n\n{body}"
    if preamble:
        return preamble + "\n"
    return body


def with_section(bullet: KnowledgeBullet, section: str) -> KnowledgeBullet:
    """Return *bullet* moved to canonical *section* with its hash recomputed."""
    canonical = normalize_section(section)
    return replace(bullet, section=canonical, hash=bullet_hash(canonical, bullet.content))
