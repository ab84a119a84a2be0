"""Tests for the reference context built from the top-level article."""

from __future__ import annotations

from lxml import etree

from qmdtree.jats.base import StructuredReference
from qmdtree.jats.context import build_context, format_reference, parse_reference
from qmdtree.jats.transformer import parse_rendered_xml


def test_context_from_sample(sample_xml: str) -> None:
    ctx = build_context(parse_rendered_xml(sample_xml))

    assert ctx.affiliations == {"aff-1": "The University"}
    assert list(ctx.references) == ["ref-knuth84"]
    assert ctx.author_notes == {"cor-1": ""}
    assert ctx.figures == {"fig-plot": "Figure 1: A simple plot"}
    assert ctx.tables == {}
    assert ctx.equations == {}


def test_context_skips_notebook_sub_article(sample_xml: str) -> None:
    ctx = build_context(parse_rendered_xml(sample_xml))
    assert not any(key.endswith("-nb-article") for key in ctx.references)
    assert "aff-1-nb-article" not in ctx.affiliations


def test_structured_reference_fields(sample_xml: str) -> None:
    ref = build_context(parse_rendered_xml(sample_xml)).references["ref-knuth84"]

    assert ref.key == "knuth84"
    assert ref.publication_type == "article-journal"
    assert ref.authors == [{"given": "Donald E.", "surname": "Knuth"}]
    assert ref.title == "Literate programming"
    assert ref.source == "Comput. J."
    assert ref.year == "1984"
    assert (ref.volume, ref.issue, ref.pages) == ("27", "2", "97-111")
    assert ref.doi == "10.1093/comjnl/27.2.97"
    assert ref.text == (
        "Knuth, Donald E. (1984). Literate programming. Comput. J. 27(2), 97-111. "
        "https://doi.org/10.1093/comjnl/27.2.97"
    )


def test_reference_to_dict_is_keyed_by_citation_key(sample_xml: str) -> None:
    entry = build_context(parse_rendered_xml(sample_xml)).references["ref-knuth84"].to_dict()

    assert entry["id"] == "knuth84"
    assert entry["rid"] == "ref-knuth84"
    assert entry["year"] == "1984"
    assert "issue" in entry and "uri" in entry
    assert entry["text"].startswith("Knuth, Donald E.")


def test_mixed_citation_keeps_its_text() -> None:
    ref = etree.fromstring(
        b'<ref id="ref-doe-nb-article"><mixed-citation>Doe, J. <italic>A Book</italic>. 2020.</mixed-citation></ref>'
    )
    parsed = parse_reference(ref)

    assert parsed.id == "ref-doe"
    assert parsed.key == "doe"
    assert parsed.text == "Doe, J. A Book. 2020."


def test_reference_without_citation_element() -> None:
    parsed = parse_reference(etree.fromstring(b'<ref id="ref-x"><note>Personal communication</note></ref>'))
    assert parsed.text == "Personal communication"
    assert parsed.authors == []


def test_collab_and_string_name_authors() -> None:
    ref = etree.fromstring(
        b'<ref id="ref-r"><element-citation>'
        b"<person-group><collab>R Core Team</collab><string-name>Ada Lovelace</string-name></person-group>"
        b"<source>R: A Language</source><year>2024</year>"
        b"</element-citation></ref>"
    )
    parsed = parse_reference(ref)

    assert parsed.authors == [{"literal": "R Core Team"}, {"literal": "Ada Lovelace"}]
    assert parsed.text == "R Core Team; Ada Lovelace (2024). R: A Language."


def test_format_reference_prefers_doi_over_uri() -> None:
    ref = StructuredReference(id="ref-a", key="a", title="T", uri="https://example.org", doi="10.1/x")
    assert format_reference(ref) == "T. https://doi.org/10.1/x"
    ref.doi = ""
    assert format_reference(ref) == "T. https://example.org"


def test_tables_and_equations_are_collected() -> None:
    article = parse_rendered_xml(
        b"<article><body>"
        b'<table-wrap id="tbl-res"><caption><p>Table 1: Results</p></caption><table/></table-wrap>'
        b'<disp-formula id="eq-energy"><alternatives><tex-math><![CDATA[E = mc^2]]></tex-math></alternatives></disp-formula>'
        b"</body></article>"
    )
    ctx = build_context(article)

    assert ctx.tables == {"tbl-res": "Table 1: Results"}
    assert ctx.equations == {"eq-energy": "E = mc^2"}
