"""One pass over the rendered article building id -> content lookup tables."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from lxml import etree

from .base import ReferenceContext, StructuredReference, flatten_text
from .ids import DEFAULT_SUFFIX_PATTERN, citation_key_from_ref_id, normalize_id

logger = logging.getLogger(__name__)

_CITATION_TAGS = ("element-citation", "mixed-citation", "nlm-citation")


def build_context(article: etree._Element, id_suffix_pattern: str = DEFAULT_SUFFIX_PATTERN) -> ReferenceContext:
    """Collect affiliations, references, notes, figures, tables and equations.

    Only the top-level article is read; sub-articles repeat the same content
    under suffixed ids and are skipped.
    """
    ctx = ReferenceContext()
    for element in _iter_top_level(article):
        raw_id = element.get("id")
        if not raw_id:
            continue
        key = normalize_id(raw_id, id_suffix_pattern)
        tag = element.tag

        if tag == "aff":
            ctx.affiliations[key] = _affiliation_text(element)
        elif tag == "ref":
            ctx.references[key] = parse_reference(element, id_suffix_pattern)
        elif tag in ("corresp", "fn") and _inside(element, "author-notes"):
            ctx.author_notes[key] = flatten_text(element)
        elif tag == "fig":
            ctx.figures[key] = flatten_text(element.find("caption"))
        elif tag == "table-wrap":
            ctx.tables[key] = flatten_text(element.find("caption"))
        elif tag == "disp-formula":
            ctx.equations[key] = formula_tex(element)

    logger.debug(
        "Context: %d affiliations, %d references, %d notes, %d figures, %d tables, %d equations",
        len(ctx.affiliations),
        len(ctx.references),
        len(ctx.author_notes),
        len(ctx.figures),
        len(ctx.tables),
        len(ctx.equations),
    )
    return ctx


def parse_reference(ref: etree._Element, id_suffix_pattern: str = DEFAULT_SUFFIX_PATTERN) -> StructuredReference:
    rid = normalize_id(ref.get("id"), id_suffix_pattern)
    key = citation_key_from_ref_id(rid, id_suffix_pattern)

    citation = None
    for tag in _CITATION_TAGS:
        citation = ref.find(tag)
        if citation is not None:
            break
    if citation is None:
        return StructuredReference(id=rid, key=key, text=flatten_text(ref))

    authors = []
    for person in citation.iter("name", "string-name", "collab"):
        if person.tag == "name":
            authors.append(
                {
                    "given": flatten_text(person.find("given-names")),
                    "surname": flatten_text(person.find("surname")),
                }
            )
        elif person.getparent().tag != "name":
            authors.append({"literal": flatten_text(person)})

    title = flatten_text(citation.find("article-title")) or flatten_text(citation.find("chapter-title"))
    fpage = flatten_text(citation.find("fpage"))
    lpage = flatten_text(citation.find("lpage"))
    pages = f"{fpage}-{lpage}" if fpage and lpage else fpage

    doi = ""
    for pub_id in citation.iterfind("pub-id"):
        if pub_id.get("pub-id-type") == "doi":
            doi = flatten_text(pub_id)
            break

    reference = StructuredReference(
        id=rid,
        key=key,
        publication_type=citation.get("publication-type", ""),
        authors=authors,
        title=title,
        source=flatten_text(citation.find("source")),
        year=flatten_text(citation.find("year")),
        volume=flatten_text(citation.find("volume")),
        issue=flatten_text(citation.find("issue")),
        pages=pages,
        doi=doi,
        uri=flatten_text(citation.find("uri")),
    )
    if citation.tag == "element-citation":
        reference.text = format_reference(reference)
    else:
        reference.text = flatten_text(citation)
    return reference


def format_reference(ref: StructuredReference) -> str:
    """Compact display string: ``Knuth, Donald E. (1984). Title. Source 27(2), 97-111.``"""
    names = []
    for author in ref.authors:
        if "literal" in author:
            names.append(author["literal"])
        elif author.get("given"):
            names.append(f"{author['surname']}, {author['given']}")
        else:
            names.append(author.get("surname", ""))
    parts = []
    if names:
        parts.append("; ".join(n for n in names if n))
    if ref.year:
        parts.append(f"({ref.year}).")
    if ref.title:
        parts.append(ref.title.rstrip(".") + ".")
    venue = ref.source
    if ref.volume:
        venue = f"{venue} {ref.volume}".strip()
        if ref.issue:
            venue += f"({ref.issue})"
    if ref.pages:
        venue = f"{venue}, {ref.pages}" if venue else ref.pages
    if venue:
        parts.append(venue + ".")
    if ref.doi:
        parts.append(f"https://doi.org/{ref.doi}")
    elif ref.uri:
        parts.append(ref.uri)
    return " ".join(parts)


def formula_tex(element: etree._Element) -> str:
    tex = element.find(".//tex-math")
    if tex is not None:
        return "".join(tex.itertext()).strip()
    return flatten_text(element)


def _affiliation_text(aff: etree._Element) -> str:
    parts = [flatten_text(child) for child in aff if isinstance(child.tag, str) and child.tag != "label"]
    parts = [p for p in parts if p]
    if parts:
        return ", ".join(parts)
    return " ".join((aff.text or "").split())


def _inside(element: etree._Element, tag: str) -> bool:
    return any(parent.tag == tag for parent in element.iterancestors())


def _iter_top_level(article: etree._Element) -> Iterator[etree._Element]:
    for child in article:
        if not isinstance(child.tag, str) or child.tag == "sub-article":
            continue
        yield child
        yield from _iter_top_level(child)
