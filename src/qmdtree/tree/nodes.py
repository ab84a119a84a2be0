"""Builders and helpers for the editor's JSON document tree."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from typing import Any

Node = dict[str, Any]
Mark = dict[str, Any]

DOC = "doc"
TEXT = "text"
PARAGRAPH = "paragraph"
HEADING = "heading"
CODE_BLOCK = "codeBlock"
QUARTO_BLOCK = "quartoBlock"
BULLET_LIST = "bulletList"
ORDERED_LIST = "orderedList"
LIST_ITEM = "listItem"
BLOCKQUOTE = "blockquote"

CITATION = "citation"
FIGURE_REFERENCE = "figureReference"
TABLE_REFERENCE = "tableReference"
EQUATION_REFERENCE = "equationReference"
REFERENCE_TYPES = (CITATION, FIGURE_REFERENCE, TABLE_REFERENCE, EQUATION_REFERENCE)

_WS_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def text_node(text: str, marks: Iterable[Mark] | None = None) -> Node:
    node: Node = {"type": TEXT, "text": text}
    marks = [dict(m) for m in marks or ()]
    if marks:
        node["marks"] = marks
    return node


def paragraph(content: list[Node]) -> Node:
    return {"type": PARAGRAPH, "content": content}


def heading(level: int, content: list[Node], node_id: str | None = None) -> Node:
    attrs: dict[str, Any] = {"level": level}
    if node_id:
        attrs["id"] = node_id
    return {"type": HEADING, "attrs": attrs, "content": content}


def code_block(code: str, language: str = "", block_key: str | None = None) -> Node:
    node: Node = {"type": CODE_BLOCK, "attrs": {"language": language, "blockKey": block_key}}
    if code:
        node["content"] = [text_node(code)]
    return node


def quarto_block(block_key: str | None, language: str, **attrs: Any) -> Node:
    merged: dict[str, Any] = {"blockKey": block_key, "language": language}
    merged.update({k: v for k, v in attrs.items() if v is not None})
    return {"type": QUARTO_BLOCK, "attrs": merged}


def reference_node(
    node_type: str,
    rid: str,
    label: str,
    original_key: str | None = None,
    marks: Iterable[Mark] | None = None,
) -> Node:
    attrs: dict[str, Any] = {"rid": rid, "label": label}
    if original_key:
        attrs["originalKey"] = original_key
    node: Node = {"type": node_type, "attrs": attrs}
    marks = [dict(m) for m in marks or ()]
    if marks:
        node["marks"] = marks
    return node


def list_item(content: list[Node]) -> Node:
    return {"type": LIST_ITEM, "content": content}


def bullet_list(items: list[Node]) -> Node:
    return {"type": BULLET_LIST, "content": items}


def ordered_list(items: list[Node], start: int = 1) -> Node:
    return {"type": ORDERED_LIST, "attrs": {"start": start}, "content": items}


def blockquote(content: list[Node]) -> Node:
    return {"type": BLOCKQUOTE, "content": content}


def doc(content: list[Node], metadata: dict | None = None, bibliography: dict | None = None) -> Node:
    return {
        "type": DOC,
        "attrs": {"metadata": metadata or {}, "bibliography": bibliography or {}},
        "content": content,
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def mark_key(mark: Mark) -> tuple:
    """Hashable identity of a mark (type plus sorted attrs)."""
    attrs = mark.get("attrs") or {}
    return (mark.get("type"), tuple(sorted((k, str(v)) for k, v in attrs.items())))


def same_marks(a: Node, b: Node) -> bool:
    return {mark_key(m) for m in a.get("marks") or ()} == {mark_key(m) for m in b.get("marks") or ()}


def normalize_inline(nodes: list[Node]) -> list[Node]:
    """Merge equal-mark text runs, collapse whitespace and trim the run edges."""
    merged: list[Node] = []
    for node in nodes:
        if node.get("type") == TEXT:
            if not node.get("text"):
                continue
            if merged and merged[-1].get("type") == TEXT and same_marks(merged[-1], node):
                merged[-1] = {**merged[-1], "text": merged[-1]["text"] + node["text"]}
                continue
        merged.append(node)

    out: list[Node] = []
    for node in merged:
        if node.get("type") == TEXT:
            text = _WS_RE.sub(" ", node["text"])
            if text.startswith(" ") and (not out or _ends_with_space(out[-1])):
                text = text[1:]
            if not text:
                continue
            node = {**node, "text": text}
        out.append(node)

    if out and out[-1].get("type") == TEXT:
        tail = out[-1]["text"].rstrip()
        if tail:
            out[-1] = {**out[-1], "text": tail}
        else:
            out.pop()
    return out


def _ends_with_space(node: Node) -> bool:
    return node.get("type") == TEXT and node.get("text", "").endswith(" ")


def walk(node: Node) -> Iterator[Node]:
    """Depth-first pre-order iteration over *node* and its descendants."""
    yield node
    for child in node.get("content") or ():
        yield from walk(child)


def node_text(node: Node) -> str:
    """Plain text of a node, with reference nodes contributing their label."""
    kind = node.get("type")
    if kind == TEXT:
        return node.get("text", "")
    if kind in REFERENCE_TYPES:
        return (node.get("attrs") or {}).get("label", "")
    return "".join(node_text(child) for child in node.get("content") or ())
