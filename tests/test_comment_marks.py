"""Tests for re-attaching comment marks and pruning orphaned threads."""

from __future__ import annotations

import logging

import pytest

from qmdtree.source.base import CommentThread
from qmdtree.tree import nodes
from qmdtree.tree.comment_marks import comment_ids_in_tree, prune_comments, restore_comment_marks


def _mark(comment_id: str) -> dict:
    return {"type": "comment", "attrs": {"commentId": comment_id}}


def _tree(*paragraphs: list[nodes.Node]) -> nodes.Node:
    return nodes.doc([nodes.paragraph(list(p)) for p in paragraphs])


def test_restore_marks_splits_text_node() -> None:
    tree = _tree([nodes.text_node("The main document is here.")])
    source = 'The main [document]{.comment ref="c-1"} is here.'

    restored = restore_comment_marks(tree, source)

    assert restored["content"][0]["content"] == [
        {"type": "text", "text": "The main "},
        {"type": "text", "text": "document", "marks": [_mark("c-1")]},
        {"type": "text", "text": " is here."},
    ]
    # input tree untouched
    assert tree["content"][0]["content"] == [{"type": "text", "text": "The main document is here."}]


def test_restore_marks_across_nodes_keeps_existing_marks() -> None:
    tree = _tree([nodes.text_node("A "), nodes.text_node("bold", [{"type": "strong"}]), nodes.text_node(" claim.")])
    source = 'A [**bold** claim]{.comment ref="c-2"}.'

    content = restore_comment_marks(tree, source)["content"][0]["content"]

    assert content == [
        {"type": "text", "text": "A "},
        {"type": "text", "text": "bold", "marks": [{"type": "strong"}, _mark("c-2")]},
        {"type": "text", "text": " claim", "marks": [_mark("c-2")]},
        {"type": "text", "text": "."},
    ]


def test_repeated_anchor_text_matches_in_order() -> None:
    tree = _tree([nodes.text_node("word one.")], [nodes.text_node("word two.")])
    source = '[word]{.comment ref="c-1"} one.\n\n[word]{.comment ref="c-2"} two.'

    restored = restore_comment_marks(tree, source)

    first, second = (p["content"][0] for p in restored["content"])
    assert first["marks"] == [_mark("c-1")]
    assert second["marks"] == [_mark("c-2")]


def test_missing_anchor_is_ignored() -> None:
    tree = _tree([nodes.text_node("Nothing matches.")])
    restored = restore_comment_marks(tree, '[gone]{.comment ref="c-1"}')
    assert comment_ids_in_tree(restored) == set()


def test_source_without_spans_returns_same_tree() -> None:
    tree = _tree([nodes.text_node("Plain.")])
    assert restore_comment_marks(tree, "Plain.") is tree


def test_prune_comments_drops_orphans(caplog: pytest.LogCaptureFixture) -> None:
    tree = _tree([nodes.text_node("kept", [_mark("c-1")])])
    threads = [CommentThread(id="c-1"), {"id": "c-2", "thread": []}]

    with caplog.at_level(logging.INFO):
        kept = prune_comments(tree, threads)

    assert kept == [threads[0]]
    assert any("c-2" in r.getMessage() for r in caplog.records)
