"""Render a document tree into a self-contained HTML review page."""

from __future__ import annotations

import base64
import html
import mimetypes
import re
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader

from qmdtree.render.assets import AssetBase, asset_file
from qmdtree.source.base import BIBLIOGRAPHY_KEY, CommentThread
from qmdtree.tree import nodes


@dataclass(slots=True)
class RenderedBlock:
    kind: str
    html: str
    anchor: str = ""


class HTMLRenderer:
    """Render a document tree with the bundled preview template."""

    def __init__(self, template_path: Path | None = None, asset_prefix: str = "/api/assets") -> None:
        if template_path is None:
            template_path = Path(__file__).resolve().parent.parent / "template" / "preview.html"

        loader = FileSystemLoader(str(template_path.parent))
        self._env = Environment(loader=loader, autoescape=True, trim_blocks=True, lstrip_blocks=True)
        self._template_name = template_path.name
        self._asset_prefix = asset_prefix

    def render(
        self,
        tree: dict[str, Any],
        *,
        title_override: str | None = None,
        comments: Iterable[CommentThread | dict] = (),
        assets_dir: Path | None = None,
    ) -> str:
        metadata = (tree.get("attrs") or {}).get("metadata") or {}
        page_title = title_override or metadata.get("title") or "Untitled"
        used_anchors: set[str] = set()

        blocks: list[RenderedBlock] = []
        toc_items = []
        for node in tree.get("content") or []:
            block = self._render_block(node, assets_dir=assets_dir, used_anchors=used_anchors)
            if block is None:
                continue
            blocks.append(block)
            if block.kind == nodes.HEADING:
                toc_items.append(
                    {
                        "level": (node.get("attrs") or {}).get("level", 1),
                        "title": nodes.node_text(node),
                        "anchor": block.anchor,
                    }
                )

        threads = [c.to_dict() if isinstance(c, CommentThread) else dict(c) for c in comments]
        bibliography = (tree.get("attrs") or {}).get("bibliography") or {}

        template = self._env.get_template(self._template_name)
        return template.render(
            page_title=page_title,
            authors=metadata.get("authors") or [],
            abstract=metadata.get("abstract") or "",
            toc_items=toc_items,
            blocks=[asdict(b) for b in blocks],
            references=sorted(bibliography.values(), key=lambda r: str(r.get("text") or r.get("id") or "")),
            comments=threads,
        )

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def _render_block(
        self,
        node: dict[str, Any],
        *,
        assets_dir: Path | None,
        used_anchors: set[str],
    ) -> RenderedBlock | None:
        kind = node.get("type")
        attrs = node.get("attrs") or {}

        if kind == nodes.HEADING:
            level = max(1, min(6, int(attrs.get("level") or 1)))
            anchor = _dedupe_anchor(attrs.get("id") or _slugify(nodes.node_text(node)), used_anchors)
            inner = self._render_inlines(node.get("content") or [])
            return RenderedBlock(kind, f'<h{level} id="{html.escape(anchor)}">{inner}</h{level}>', anchor)

        if kind == nodes.PARAGRAPH:
            return RenderedBlock(kind, f'<p class="qt-paragraph">{self._render_inlines(node.get("content") or [])}</p>')

        if kind == nodes.CODE_BLOCK:
            language = html.escape(attrs.get("language") or "")
            code = html.escape(nodes.node_text(node))
            return RenderedBlock(kind, f'<pre class="qt-code" data-language="{language}"><code>{code}</code></pre>')

        if kind == nodes.QUARTO_BLOCK:
            return self._render_quarto_block(attrs, assets_dir=assets_dir)

        if kind in (nodes.BULLET_LIST, nodes.ORDERED_LIST):
            tag = "ol" if kind == nodes.ORDERED_LIST else "ul"
            items = []
            for item in node.get("content") or []:
                parts = [self._render_block(child, assets_dir=assets_dir, used_anchors=used_anchors) for child in item.get("content") or []]
                items.append("<li>" + "".join(p.html for p in parts if p) + "</li>")
            return RenderedBlock(kind, f"<{tag}>{''.join(items)}</{tag}>")

        if kind == nodes.BLOCKQUOTE:
            parts = [self._render_block(child, assets_dir=assets_dir, used_anchors=used_anchors) for child in node.get("content") or []]
            return RenderedBlock(kind, "<blockquote>" + "".join(p.html for p in parts if p) + "</blockquote>")

        return None

    def _render_quarto_block(self, attrs: dict[str, Any], *, assets_dir: Path | None) -> RenderedBlock | None:
        language = attrs.get("language") or ""
        if attrs.get("blockKey") == BIBLIOGRAPHY_KEY or language in ("bibliography", "metadata"):
            return None

        parts = ['<div class="qt-block">']
        key = attrs.get("blockKey")
        if key:
            parts.append(f'<div class="qt-block-key">{html.escape(key)}</div>')
        if attrs.get("code") and language not in ("equation", "table"):
            parts.append(
                f'<pre class="qt-code" data-language="{html.escape(language)}"><code>{html.escape(attrs["code"])}</code></pre>'
            )
        if attrs.get("src") and assets_dir is not None:
            parts.append(self._render_figure(attrs, assets_dir))
        elif attrs.get("renderedOutput"):
            # Built by the transformer from escaped parts.
            parts.append(attrs["renderedOutput"])
        parts.append("</div>")
        return RenderedBlock(nodes.QUARTO_BLOCK, "".join(parts))

    def _render_figure(self, attrs: dict[str, Any], assets_dir: Path) -> str:
        src = attrs.get("src") or ""
        try:
            _, rel = AssetBase.parse(src, prefix=self._asset_prefix)
            embedded = _maybe_embed_image(asset_file(assets_dir, rel))
        except ValueError:
            embedded = None
        caption = attrs.get("caption") or ""
        label = attrs.get("displayLabel") or ""
        text = f"{label}: {caption}" if label and caption else label or caption
        caption_html = f"<figcaption>{html.escape(text)}</figcaption>" if text else ""
        return (
            f'<figure><img src="{html.escape(embedded or src, quote=True)}" '
            f'alt="{html.escape(caption or "Figure", quote=True)}" loading="lazy" />{caption_html}</figure>'
        )

    # ------------------------------------------------------------------
    # Inlines
    # ------------------------------------------------------------------

    def _render_inlines(self, content: list[dict[str, Any]]) -> str:
        return "".join(self._render_inline(node) for node in content)

    def _render_inline(self, node: dict[str, Any]) -> str:
        kind = node.get("type")
        attrs = node.get("attrs") or {}
        if kind == nodes.TEXT:
            out = html.escape(node.get("text", ""))
        elif kind in nodes.REFERENCE_TYPES:
            target = attrs.get("originalKey") or attrs.get("rid") or ""
            out = (
                f'<span class="qt-ref qt-{kind}" data-key="{html.escape(target, quote=True)}">'
                f'{html.escape(attrs.get("label") or target)}</span>'
            )
        else:
            out = html.escape(nodes.node_text(node))

        for mark in reversed(node.get("marks") or []):
            out = _wrap_mark(mark, out)
        return out


def _wrap_mark(mark: dict[str, Any], inner: str) -> str:
    kind = mark.get("type")
    attrs = mark.get("attrs") or {}
    if kind == "strong":
        return f"<strong>{inner}</strong>"
    if kind == "em":
        return f"<em>{inner}</em>"
    if kind == "strikethrough":
        return f"<s>{inner}</s>"
    if kind == "code":
        return f"<code>{inner}</code>"
    if kind == "link":
        return f'<a href="{html.escape(attrs.get("href") or "", quote=True)}">{inner}</a>'
    if kind == "comment":
        comment_id = html.escape(attrs.get("commentId") or "", quote=True)
        return f'<mark class="qt-comment" data-comment-id="{comment_id}">{inner}</mark>'
    return inner


def _slugify(text: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", text.lower()).strip()
    return re.sub(r"[\s_]+", "-", slug) or "section"


def _dedupe_anchor(anchor: str, used: set[str]) -> str:
    if anchor not in used:
        used.add(anchor)
        return anchor

    idx = 2
    while True:
        candidate = f"{anchor}-{idx}"
        if candidate not in used:
            used.add(candidate)
            return candidate
        idx += 1


def _maybe_embed_image(path: Path) -> str | None:
    if not path.exists() or not path.is_file():
        return None
    mime, _ = mimetypes.guess_type(path.name)
    mime = mime or "application/octet-stream"
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{data}"
