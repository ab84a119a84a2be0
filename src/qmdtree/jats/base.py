"""Rendered-side data model: structured references and lookup tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from lxml import etree


@dataclass(slots=True)
class StructuredReference:
    id: str
    key: str
    publication_type: str = ""
    authors: list[dict[str, str]] = field(default_factory=list)
    title: str = ""
    source: str = ""
    year: str = ""
    volume: str = ""
    issue: str = ""
    pages: str = ""
    doi: str = ""
    uri: str = ""
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Bibliography entry as stored on the document root (``id`` is the citation key)."""
        out: dict[str, Any] = {"id": self.key, "rid": self.id}
        for name in ("publication_type", "title", "source", "year", "volume", "issue", "pages", "doi", "uri"):
            value = getattr(self, name)
            if value:
                out[name] = value
        if self.authors:
            out["authors"] = [dict(a) for a in self.authors]
        out["text"] = self.text
        return out


@dataclass(slots=True)
class ReferenceContext:
    affiliations: dict[str, str] = field(default_factory=dict)
    references: dict[str, StructuredReference] = field(default_factory=dict)
    author_notes: dict[str, str] = field(default_factory=dict)
    figures: dict[str, str] = field(default_factory=dict)
    tables: dict[str, str] = field(default_factory=dict)
    equations: dict[str, str] = field(default_factory=dict)


def flatten_text(element: etree._Element | None) -> str:
    """All descendant text with whitespace collapsed."""
    if element is None:
        return ""
    return " ".join("".join(element.itertext()).split())
