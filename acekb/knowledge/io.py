"""Knowledge document I/O with atomic semantics."""

from __future__ import annotations

from pathlib import Path

from acekb.errors import KnowledgeFileNotFoundError
from acekb.knowledge.codec import parse_document, render_document
from acekb.knowledge.types import KnowledgeDocument
from acekb.utils.helpers import atomic_append_text, atomic_write_text


class KnowledgeIO:
    """Thin I/O adapter so the knowledge pipeline can be tested independently."""

    @staticmethod
    def read_text(path: Path, *, required: bool = True, encoding: str = "utf-8") -> str:
        if not path.exists():
            if required:
                raise KnowledgeFileNotFoundError(path)
            return ""
        return path.read_text(encoding=encoding)

    @staticmethod
    def write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
        atomic_write_text(path, content, encoding=encoding)

    @staticmethod
    def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
        atomic_append_text(path, content, encoding=encoding)

    @classmethod
    def read_document(cls, path: Path, *, required: bool = True, strict: bool = False) -> KnowledgeDocument:
        return parse_document(cls.read_text(path, required=required), strict=strict)

    @classmethod
    def write_document(cls, path: Path, doc: KnowledgeDocument) -> str:
        text = render_document(doc)
        cls.write_text(path, text)
        return text
