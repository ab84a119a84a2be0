"""Attach inline comment marks from source spans and prune orphaned threads."""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Iterable

from qmdtree.source.base import CommentThread
from qmdtree.source.comments import comment_spans

from . import nodes

logger = logging.getLogger(__name__)

_MARKUP_RE = re.compile(r"[*~`]")
_INLINE_CONTAINERS = (nodes.PARAGRAPH, nodes.HEADING)


def restore_comment_marks(tree: nodes.Node, source_text: str) -> nodes.Node:
    """Return a copy of *tree* with a comment mark on each anchored span.

    The renderer drops span classes, so anchors are found again by their text:
    each ``[anchor]{.comment ref="id"}`` in the source is matched, in order,
    against the tree's text nodes, scanning forward from the previous match.
    """
    spans = comment_spans(source_text)
    if not spans:
        return tree

    tree = copy.deepcopy(tree)
    blocks = [n for n in nodes.walk(tree) if n.get("type") in _INLINE_CONTAINERS]
    cursor = 0
    for comment_id, anchor in spans:
        needle = " ".join(_MARKUP_RE.sub("", anchor).split())
        if not needle:
            continue
        flat, offsets = _flatten(blocks)
        pos = flat.find(needle, cursor)
        if pos < 0:
            pos = flat.find(needle)
        if pos < 0:
            logger.debug("Comment anchor %r for %s not found in tree", needle, comment_id)
            continue
        mark = {"type": "comment", "attrs": {"commentId": comment_id}}
        _apply_mark(blocks, offsets, pos, pos + len(needle), mark)
        cursor = pos + len(needle)
    return tree


def comment_ids_in_tree(tree: nodes.Node) -> set[str]:
    ids: set[str] = set()
    for node in nodes.walk(tree):
        for mark in node.get("marks") or ():
            if mark.get("type") == "comment":
                comment_id = (mark.get("attrs") or {}).get("commentId")
                if comment_id:
                    ids.add(comment_id)
    return ids


def prune_comments(tree: nodes.Node, comments: Iterable[CommentThread | dict]) -> list[CommentThread | dict]:
    """Drop threads whose comment mark no longer appears anywhere in *tree*."""
    live = comment_ids_in_tree(tree)
    kept = []
    for thread in comments:
        thread_id = thread.id if isinstance(thread, CommentThread) else thread.get("id")
        if thread_id in live:
            kept.append(thread)
        else:
            logger.info("Dropping comment thread %s: its anchor was removed", thread_id)
    return kept


def _flatten(blocks: list[nodes.Node]) -> tuple[str, dict[tuple[int, int], int]]:
    parts: list[str] = []
    offsets: dict[tuple[int, int], int] = {}
    length = 0
    for bi, block in enumerate(blocks):
        for ni, node in enumerate(block.get("content") or []):
            if node.get("type") == nodes.TEXT:
                text = node.get("text", "")
                offsets[(bi, ni)] = length
            else:
                text = "\x00"
            parts.append(text)
            length += len(text)
        parts.append("\n")
        length += 1
    return "".join(parts), offsets


def _apply_mark(
    blocks: list[nodes.Node],
    offsets: dict[tuple[int, int], int],
    start: int,
    end: int,
    mark: nodes.Mark,
) -> None:
    touched = sorted({bi for (bi, ni), off in offsets.items() if off < end and start < off + len(blocks[bi]["content"][ni]["text"])})
    for bi in touched:
        block = blocks[bi]
        rebuilt: list[nodes.Node] = []
        for ni, node in enumerate(block["content"]):
            off = offsets.get((bi, ni))
            if off is None:
                rebuilt.append(node)
                continue
            text = node["text"]
            s, e = max(start, off) - off, min(end, off + len(text)) - off
            if s >= e:
                rebuilt.append(node)
                continue
            if s:
                rebuilt.append({**node, "text": text[:s]})
            marked = {**node, "text": text[s:e], "marks": [*(node.get("marks") or ()), dict(mark)]}
            rebuilt.append(marked)
            if e < len(text):
                rebuilt.append({**node, "text": text[e:]})
        block["content"] = rebuilt
