"""Serialize an edited document tree back to Quarto source text.

Non-prose blocks are spliced back verbatim from the original source through
their ``blockKey``; only prose is regenerated from the tree. Blocks whose key
has no span in the source are reconstructed from their attributes, which is
a fidelity loss and is reported as such.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import yaml

from qmdtree.config import Settings
from qmdtree.errors import MissingBlockKey, QmdTreeError, UnresolvedReference
from qmdtree.jats.ids import citation_key_from_ref_id, normalize_id
from qmdtree.source.base import BIBLIOGRAPHY_KEY, YAML_BLOCK_KEY, BlockMap, CommentThread
from qmdtree.source.blocks import index_blocks
from qmdtree.source.comments import build_comments_appendix, extract_comments

from . import nodes
from .sentences import split_sentences

logger = logging.getLogger(__name__)

_CITATION_KEY_RE = re.compile(r"^[A-Za-z_][\w:.#$%&+?<>~/-]*$")
_CROSSREF_PREFIXES = ("fig-", "tbl-", "eq-", "sec-", "lst-", "thm-")
_LABEL_ATTRS = ("figLabel", "tableLabel", "eqLabel")
_CITE_SEPARATOR_RE = re.compile(r"^\s*;\s*$")


@dataclass(slots=True)
class BlockProvenance:
    index: int | None
    node_type: str
    block_key: str | None
    status: str  # preserved | reconstructed | prose | skipped


@dataclass(slots=True)
class SerializationResult:
    text: str
    provenance: list[BlockProvenance] = field(default_factory=list)
    issues: list[QmdTreeError] = field(default_factory=list)

    @property
    def reconstructed(self) -> list[BlockProvenance]:
        return [p for p in self.provenance if p.status == "reconstructed"]


@dataclass(slots=True)
class KeyMaps:
    """Normalized renderer ids and display labels -> original source keys."""

    citations: dict[str, str] = field(default_factory=dict)
    crossrefs: dict[str, str] = field(default_factory=dict)
    citation_labels: dict[str, str] = field(default_factory=dict)
    crossref_labels: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Reference keys
# ---------------------------------------------------------------------------

def build_key_maps(tree: nodes.Node, id_suffix_pattern: str = r"-nb-article$") -> KeyMaps:
    maps = KeyMaps()
    bibliography = dict((tree.get("attrs") or {}).get("bibliography") or {})
    for node in nodes.walk(tree):
        attrs = node.get("attrs") or {}
        if node.get("type") == nodes.QUARTO_BLOCK:
            if attrs.get("blockKey") == BIBLIOGRAPHY_KEY and not bibliography:
                bibliography = dict(attrs.get("bibliography") or {})
            for name in _LABEL_ATTRS:
                label = attrs.get(name)
                if label:
                    maps.crossrefs[normalize_id(label, id_suffix_pattern)] = label
                    if attrs.get("displayLabel"):
                        maps.crossref_labels[attrs["displayLabel"]] = label
            key = attrs.get("blockKey") or ""
            if key.startswith(_CROSSREF_PREFIXES):
                maps.crossrefs.setdefault(key, key)
        elif node.get("type") == nodes.HEADING and attrs.get("id"):
            maps.crossrefs.setdefault(normalize_id(attrs["id"], id_suffix_pattern), attrs["id"])

    for rid, entry in bibliography.items():
        if not isinstance(entry, dict):
            continue
        key = entry.get("id") or entry.get("key") or citation_key_from_ref_id(rid, id_suffix_pattern)
        maps.citations[normalize_id(rid, id_suffix_pattern)] = key
        if entry.get("rid"):
            maps.citations[normalize_id(entry["rid"], id_suffix_pattern)] = key
        for label in _citation_labels(entry):
            maps.citation_labels.setdefault(label, key)
    return maps


def _citation_labels(entry: dict[str, Any]) -> list[str]:
    authors = entry.get("authors") or []
    year = str(entry.get("year") or "")
    if not authors or not year or not isinstance(authors[0], dict):
        return []
    first = authors[0].get("surname") or authors[0].get("literal") or ""
    if not first:
        return []
    if len(authors) == 2 and isinstance(authors[1], dict) and authors[1].get("surname"):
        first = f"{first} and {authors[1]['surname']}"
    elif len(authors) > 2:
        first = f"{first} et al."
    return [f"{first} {year}", f"{first} ({year})", f"{first}, {year}"]


def resolve_reference_key(
    node: nodes.Node,
    maps: KeyMaps,
    strict: bool = False,
    id_suffix_pattern: str = r"-nb-article$",
) -> tuple[str, str]:
    """Return (key, source) for a citation or cross-reference node.

    Sources are tried in order: ``originalKey``, the key maps, a heuristic on
    the visible label, the renderer id, and finally an ``[UNRESOLVED: ...]``
    marker (or :class:`UnresolvedReference` when *strict*).
    """
    kind = node.get("type", "")
    attrs = node.get("attrs") or {}
    original = attrs.get("originalKey")
    if original:
        return original, "originalKey"

    rid = normalize_id(attrs.get("rid"), id_suffix_pattern)
    table = maps.citations if kind == nodes.CITATION else maps.crossrefs
    if rid and rid in table:
        return table[rid], "map"

    label = (attrs.get("label") or "").strip()
    guess = _key_from_label(label, kind, maps)
    if guess:
        return guess, "label"

    derived = citation_key_from_ref_id(rid, id_suffix_pattern) if kind == nodes.CITATION else rid
    if derived:
        return derived, "id"

    if strict:
        raise UnresolvedReference(kind, attrs.get("rid"), label)
    return f"[UNRESOLVED: {label or kind}]", "unresolved"


def _key_from_label(label: str, kind: str, maps: KeyMaps) -> str | None:
    if not label:
        return None
    if kind == nodes.CITATION:
        if label in maps.citation_labels:
            return maps.citation_labels[label]
        candidate = label.strip("[]").lstrip("@")
        if _CITATION_KEY_RE.match(candidate):
            return candidate
        return None
    if label in maps.crossref_labels:
        return maps.crossref_labels[label]
    candidate = label.lstrip("@")
    if candidate.startswith(_CROSSREF_PREFIXES):
        return candidate
    return None


# ---------------------------------------------------------------------------
# Serializer
# ---------------------------------------------------------------------------

class TreeSerializer:
    """Turn one edited tree plus its original source into new source text."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        precedence = list(self.settings.mark_precedence)
        self._rank = {name: idx for idx, name in enumerate(precedence)}

    def serialize(
        self,
        tree: nodes.Node,
        raw_source_text: str,
        comments: Iterable[CommentThread | dict] = (),
    ) -> SerializationResult:
        if not isinstance(tree, dict) or tree.get("type") != nodes.DOC:
            raise ValueError("expected a document tree with type 'doc'")

        source = extract_comments(raw_source_text or "").remaining_text
        block_map = index_blocks(source)
        maps = build_key_maps(tree, self.settings.id_suffix_pattern)
        result = SerializationResult(text="")

        content = tree.get("content") or []
        referenced = {
            (node.get("attrs") or {}).get("blockKey")
            for node in content
            if node.get("type") in (nodes.QUARTO_BLOCK, nodes.CODE_BLOCK)
        }
        pending = [key for key in block_map if key not in referenced]
        if not self.settings.preserve_unreferenced_blocks:
            pending = []

        chunks: list[str] = []
        if YAML_BLOCK_KEY in pending:
            pending.remove(YAML_BLOCK_KEY)
            chunks.append(block_map[YAML_BLOCK_KEY].text)
            result.provenance.append(BlockProvenance(None, "frontmatter", YAML_BLOCK_KEY, "preserved"))

        for index, node in enumerate(content):
            key = (node.get("attrs") or {}).get("blockKey")
            if pending and key in block_map:
                self._flush_unreferenced(pending, block_map, block_map[key].start, chunks, result)
            text, status = self._block(node, block_map, maps, result)
            result.provenance.append(BlockProvenance(index, node.get("type", ""), key, status))
            if text:
                chunks.append(text)

        if pending:
            self._flush_unreferenced(pending, block_map, None, chunks, result)

        body = "\n\n".join(chunks)
        appendix = build_comments_appendix(comments)
        if appendix:
            body = f"{body}\n\n{appendix}"
        result.text = body.strip() + "\n"
        return result

    def _flush_unreferenced(
        self,
        pending: list[str],
        block_map: BlockMap,
        before: int | None,
        chunks: list[str],
        result: SerializationResult,
    ) -> None:
        """Emit source blocks the tree never mentions (e.g. cells hidden from output)."""
        for key in list(pending):
            block = block_map[key]
            if before is not None and block.start >= before:
                continue
            pending.remove(key)
            chunks.append(block.text)
            result.provenance.append(BlockProvenance(None, block.kind, key, "preserved"))
            logger.debug("Kept unreferenced source block %r", key)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def _block(
        self, node: nodes.Node, block_map: BlockMap, maps: KeyMaps, result: SerializationResult
    ) -> tuple[str, str]:
        kind = node.get("type")
        attrs = node.get("attrs") or {}

        if kind == nodes.PARAGRAPH:
            return self._paragraph(node, maps, result), "prose"
        if kind == nodes.HEADING:
            level = max(1, min(6, int(attrs.get("level") or 1)))
            text = self._inlines(node.get("content") or [], maps, result)
            if attrs.get("id"):
                text = f"{text} {{#{attrs['id']}}}"
            return f"{'#' * level} {text}", "prose"
        if kind == nodes.QUARTO_BLOCK:
            return self._quarto_block(attrs, block_map, result)
        if kind == nodes.CODE_BLOCK:
            key = attrs.get("blockKey")
            if key and key in block_map:
                return block_map[key].text, "preserved"
            code = nodes.node_text(node)
            fence = _fence_for(code)
            if key:
                self._record_missing(key, kind, result)
                return f"{fence}{attrs.get('language') or ''}\n{code}\n{fence}", "reconstructed"
            return f"{fence}{attrs.get('language') or ''}\n{code}\n{fence}", "prose"
        if kind in (nodes.BULLET_LIST, nodes.ORDERED_LIST):
            return self._list(node, block_map, maps, result), "prose"
        if kind == nodes.BLOCKQUOTE:
            inner = self._children(node, block_map, maps, result, separator="\n\n")
            return "\n".join(f"> {line}" if line else ">" for line in inner.split("\n")), "prose"
        if kind == "horizontalRule":
            return "---", "prose"

        logger.warning("Unknown block type %r skipped during serialization", kind)
        return "", "skipped"

    def _paragraph(self, node: nodes.Node, maps: KeyMaps, result: SerializationResult) -> str:
        text = self._inlines(node.get("content") or [], maps, result)
        if not self.settings.split_sentences:
            return text
        return "\n".join(split_sentences(text, self.settings.extra_abbreviations))

    def _children(
        self,
        node: nodes.Node,
        block_map: BlockMap,
        maps: KeyMaps,
        result: SerializationResult,
        separator: str,
    ) -> str:
        parts = []
        for child in node.get("content") or []:
            text, _ = self._block(child, block_map, maps, result)
            if text:
                parts.append(text)
        return separator.join(parts)

    def _list(self, node: nodes.Node, block_map: BlockMap, maps: KeyMaps, result: SerializationResult) -> str:
        ordered = node.get("type") == nodes.ORDERED_LIST
        start = int((node.get("attrs") or {}).get("start") or 1)
        lines: list[str] = []
        for idx, item in enumerate(node.get("content") or []):
            marker = f"{start + idx}." if ordered else "*"
            body = self._children(item, block_map, maps, result, separator="\n")
            first, *rest = body.split("\n") if body else [""]
            lines.append(f"{marker} {first}".rstrip())
            pad = " " * (len(marker) + 1)
            lines.extend(pad + line if line else "" for line in rest)
        return "\n".join(lines)

    def _quarto_block(self, attrs: dict[str, Any], block_map: BlockMap, result: SerializationResult) -> tuple[str, str]:
        key = attrs.get("blockKey")
        language = attrs.get("language") or ""
        if key == BIBLIOGRAPHY_KEY or language == "bibliography":
            return "", "skipped"
        if key and key in block_map:
            return block_map[key].text, "preserved"

        self._record_missing(key, nodes.QUARTO_BLOCK, result)
        text = reconstruct_block(attrs)
        return text, "reconstructed" if text else "skipped"

    def _record_missing(self, key: str | None, node_type: str, result: SerializationResult) -> None:
        issue = MissingBlockKey(key, node_type)
        logger.warning("%s; reconstructing from node attributes", issue)
        result.issues.append(issue)

    # ------------------------------------------------------------------
    # Inlines
    # ------------------------------------------------------------------

    def _inlines(self, content: list[nodes.Node], maps: KeyMaps, result: SerializationResult) -> str:
        return self._render_run(_group_citations(content), frozenset(), maps, result)

    def _render_run(
        self,
        run: list[nodes.Node],
        outer: frozenset,
        maps: KeyMaps,
        result: SerializationResult,
    ) -> str:
        """Wrap consecutive nodes sharing their highest-precedence open mark once."""
        out: list[str] = []
        i = 0
        while i < len(run):
            open_marks = [m for m in run[i].get("marks") or () if nodes.mark_key(m) not in outer]
            if not open_marks:
                out.append(self._atom(run[i], maps, result))
                i += 1
                continue
            top = min(open_marks, key=lambda m: self._rank.get(m.get("type"), len(self._rank)))
            top_key = nodes.mark_key(top)
            j = i
            while j < len(run) and top_key in {nodes.mark_key(m) for m in run[j].get("marks") or ()}:
                j += 1
            inner = self._render_run(run[i:j], outer | {top_key}, maps, result)
            out.append(_wrap(top, inner))
            i = j
        return "".join(out)

    def _atom(self, node: nodes.Node, maps: KeyMaps, result: SerializationResult) -> str:
        kind = node.get("type")
        if kind == nodes.TEXT:
            return node.get("text", "")
        if kind == "_citationGroup":
            keys = [self._reference_key(n, maps, result) for n in node["items"]]
            return "[" + "; ".join(f"@{k}" for k in keys) + "]"
        if kind == nodes.CITATION:
            return f"[@{self._reference_key(node, maps, result)}]"
        if kind in nodes.REFERENCE_TYPES:
            return f"@{self._reference_key(node, maps, result)}"
        if kind == "hardBreak":
            return "\\\n"
        return nodes.node_text(node)

    def _reference_key(self, node: nodes.Node, maps: KeyMaps, result: SerializationResult) -> str:
        key, source = resolve_reference_key(node, maps, id_suffix_pattern=self.settings.id_suffix_pattern)
        if source == "unresolved":
            attrs = node.get("attrs") or {}
            issue = UnresolvedReference(node.get("type", ""), attrs.get("rid"), attrs.get("label"))
            logger.warning("%s; writing an explicit marker", issue)
            result.issues.append(issue)
            return key
        if source in ("label", "id"):
            logger.debug("Reference %r resolved by %s fallback to %r", (node.get("attrs") or {}).get("rid"), source, key)
        return key


def serialize_tree(
    tree: nodes.Node,
    raw_source_text: str,
    comments: Iterable[CommentThread | dict] = (),
    settings: Settings | None = None,
) -> str:
    """Serialize *tree* to source text (see :class:`TreeSerializer`)."""
    return TreeSerializer(settings).serialize(tree, raw_source_text, comments).text


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------

def reconstruct_block(attrs: dict[str, Any]) -> str:
    """Best-effort source for a quartoBlock whose original span is gone."""
    language = attrs.get("language") or ""
    code = attrs.get("code") or ""
    caption = attrs.get("caption") or ""

    if language == "metadata" or attrs.get("blockKey") == YAML_BLOCK_KEY:
        metadata = attrs.get("metadata") or {}
        if not metadata:
            return ""
        dumped = yaml.safe_dump(metadata, sort_keys=False, allow_unicode=True, default_flow_style=False)
        return f"---\n{dumped}---"

    if language == "equation":
        label = attrs.get("eqLabel")
        return f"$$\n{code}\n$$" + (f" {{#{label}}}" if label else "")

    if language == "table" and not code:
        return _pipe_table(attrs.get("rows") or [], caption, attrs.get("tableLabel"))

    fig_label = attrs.get("figLabel")
    if fig_label and not code:
        target = attrs.get("path") or attrs.get("src") or ""
        return f"![{caption}]({target}){{#{fig_label}}}"

    label = fig_label or attrs.get("tableLabel")
    key = attrs.get("blockKey")
    if not label and key and not key.startswith("__"):
        label = key
    lines = [f"```{{{language or 'r'}}}"]
    if label:
        lines.append(f"#| label: {label}")
    if caption and label and label.startswith("fig-"):
        lines.append(f"#| fig-cap: {json.dumps(caption, ensure_ascii=False)}")
    elif caption and label and label.startswith("tbl-"):
        lines.append(f"#| tbl-cap: {json.dumps(caption, ensure_ascii=False)}")
    if code:
        lines.append(code)
    lines.append("```")
    return "\n".join(lines)


def _pipe_table(rows: list[list[str]], caption: str, label: str | None) -> str:
    if not rows:
        return ""
    width = max(len(r) for r in rows)
    padded = [list(r) + [""] * (width - len(r)) for r in rows]

    def line(cells: list[str]) -> str:
        return "| " + " | ".join(c.replace("|", "\\|") for c in cells) + " |"

    out = [line(padded[0]), "|" + "|".join(["---"] * width) + "|"]
    out.extend(line(r) for r in padded[1:])
    if caption or label:
        suffix = f" {{#{label}}}" if label else ""
        out.append("")
        out.append(f": {caption}{suffix}".rstrip())
    return "\n".join(out)


# ---------------------------------------------------------------------------
# Inline helpers
# ---------------------------------------------------------------------------

def _group_citations(content: list[nodes.Node]) -> list[nodes.Node]:
    """Collapse ``( cite ; cite )`` runs into one bracketed citation group."""
    out: list[nodes.Node] = []
    i = 0
    while i < len(content):
        node = content[i]
        if node.get("type") == nodes.TEXT and node.get("text", "").endswith("(") and _is_citation(content, i + 1):
            items = [content[i + 1]]
            j = i + 2
            while (
                j + 1 < len(content)
                and content[j].get("type") == nodes.TEXT
                and _CITE_SEPARATOR_RE.match(content[j].get("text", ""))
                and _is_citation(content, j + 1)
            ):
                items.append(content[j + 1])
                j += 2
            if j < len(content) and content[j].get("type") == nodes.TEXT and content[j].get("text", "").startswith(")"):
                before = node["text"][:-1]
                if before:
                    out.append({**node, "text": before if before.endswith(" ") else before + " "})
                group: nodes.Node = {"type": "_citationGroup", "items": items}
                if items[0].get("marks"):
                    group["marks"] = items[0]["marks"]
                out.append(group)
                after = content[j]["text"][1:]
                if after:
                    out.append({**content[j], "text": after})
                i = j + 1
                continue
        out.append(node)
        i += 1
    return out


def _is_citation(content: list[nodes.Node], idx: int) -> bool:
    return idx < len(content) and content[idx].get("type") == nodes.CITATION


def _fence_for(code: str) -> str:
    longest = max((len(m) for m in re.findall(r"`{3,}", code)), default=2)
    return "`" * max(3, longest + 1)


def _wrap(mark: nodes.Mark, inner: str) -> str:
    stripped = inner.strip()
    if not stripped:
        return inner
    lead = inner[: len(inner) - len(inner.lstrip())]
    trail = inner[len(inner.rstrip()):]
    kind = mark.get("type")
    attrs = mark.get("attrs") or {}

    if kind == "comment":
        body = f'[{stripped}]{{.comment ref="{attrs.get("commentId", "")}"}}'
    elif kind == "link":
        body = f"[{stripped}]({attrs.get('href', '')})"
    elif kind == "strikethrough":
        body = f"~~{stripped}~~"
    elif kind == "strong":
        body = f"**{stripped}**"
    elif kind == "em":
        body = f"*{stripped}*"
    elif kind == "code":
        ticks = "`" * (max((len(m) for m in re.findall(r"`+", stripped)), default=0) + 1)
        pad = " " if stripped.startswith("`") or stripped.endswith("`") else ""
        body = f"{ticks}{pad}{stripped}{pad}{ticks}"
    else:
        body = stripped
    return f"{lead}{body}{trail}"
