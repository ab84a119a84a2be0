"""End-to-end: rendered XML + source -> tree -> source."""

from __future__ import annotations

import copy

from qmdtree.pipeline import build_document_view, save_document
from qmdtree.source.base import CommentThread
from qmdtree.source.comments import build_comments_appendix, extract_comments
from qmdtree.tree import nodes

FIG_CHUNK = '```{r}\n#| label: fig-plot\n#| fig-cap: "A simple plot"\nplot(1)\n```'
PARAGRAPH = "This is a simple placeholder for the manuscript's main document [@knuth84]."


def _frontmatter(qmd: str) -> str:
    return qmd[: qmd.index("---", 3) + 3]


def test_unedited_round_trip(sample_xml: str, sample_qmd: str) -> None:
    view = build_document_view(sample_xml, sample_qmd, "doc-1")
    result = save_document(view.tree, sample_qmd, view.comments)

    assert result.text == "\n\n".join(
        [_frontmatter(sample_qmd), "## Section", PARAGRAPH, FIG_CHUNK, "@fig-plot is a simple plot."]
    ) + "\n"
    assert result.issues == []


def test_round_trip_is_idempotent(sample_xml: str, sample_qmd: str) -> None:
    once = save_document(build_document_view(sample_xml, sample_qmd, "doc-1").tree, sample_qmd).text
    twice = save_document(build_document_view(sample_xml, once, "doc-1").tree, once).text
    assert twice == once


def test_prose_edit_keeps_chunk_bytes(sample_xml: str, sample_qmd: str) -> None:
    view = build_document_view(sample_xml, sample_qmd, "doc-1")
    tree = copy.deepcopy(view.tree)
    paragraph = tree["content"][2]
    paragraph["content"][0]["text"] = "A revised sentence about the document ("

    text = save_document(tree, sample_qmd).text

    assert "A revised sentence about the document [@knuth84]." in text
    assert FIG_CHUNK in text
    assert text.startswith(_frontmatter(sample_qmd))


def test_comment_survives_round_trip(sample_xml: str, sample_qmd: str) -> None:
    thread = CommentThread.from_dict({"id": "c-1", "author": "alice", "thread": [{"text": "Cite more?"}]})
    source = sample_qmd.replace("main document", 'main [document]{.comment ref="c-1"}')
    source += build_comments_appendix([thread])

    view = build_document_view(sample_xml, source, "doc-1")
    assert [c.id for c in view.comments] == ["c-1"]

    text = save_document(view.tree, source, view.comments).text

    assert 'main [document]{.comment ref="c-1"} [@knuth84].' in text
    assert [c.to_dict() for c in extract_comments(text).comments] == [thread.to_dict()]


def test_removed_anchor_drops_thread(sample_xml: str, sample_qmd: str) -> None:
    source = sample_qmd.replace("main document", 'main [document]{.comment ref="c-1"}')
    source += build_comments_appendix([CommentThread(id="c-1")])
    view = build_document_view(sample_xml, source, "doc-1")

    tree = copy.deepcopy(view.tree)
    paragraph = tree["content"][2]
    paragraph["content"] = [n for n in paragraph["content"] if not n.get("marks")]

    text = save_document(tree, source, view.comments).text

    assert "Comments Appendix" not in text
    assert ".comment" not in text


def test_document_view_payload(sample_xml: str, sample_qmd: str) -> None:
    view = build_document_view(sample_xml, sample_qmd, "doc-1", "v7")
    payload = view.to_dict()

    assert payload["version"] == "v7"
    assert payload["comments"] == []
    assert payload["tree"]["type"] == nodes.DOC
    figure = payload["tree"]["content"][3]["attrs"]
    assert figure["src"] == "/api/assets/doc-1/v7/index_files/figure-jats/fig-plot-1.png"


def test_prose_after_inline_display_equation_is_written_once() -> None:
    source = "---\ntitle: T\n---\n\n$$x$$ is the value.\n"
    xml = (
        "<article><front><article-meta><title-group><article-title>T</article-title></title-group>"
        "</article-meta></front><body>"
        "<p><disp-formula><tex-math>x</tex-math></disp-formula> is the value.</p>"
        "</body></article>"
    )
    view = build_document_view(xml, source, "doc-1")

    text = save_document(view.tree, source).text

    assert text.count("is the value") == 1
    assert text == "---\ntitle: T\n---\n\n$$x$$\n\nis the value.\n"
