"""Convert Quarto's JATS rendering into the editor's document tree.

The transformer walks the notebook sub-article body when there is one (it
carries executable cells) and resolves every cross-reference against the
context built from the top-level article. Non-prose blocks carry a
``blockKey`` pointing at their verbatim span in the source so the serializer
can splice the original bytes back in.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Any

from lxml import etree

from qmdtree.config import Settings
from qmdtree.errors import MalformedSource
from qmdtree.render.assets import AssetBase
from qmdtree.source.base import BIBLIOGRAPHY_KEY, YAML_BLOCK_KEY, BlockMap
from qmdtree.source.blocks import chunk_body
from qmdtree.tree import nodes

from .base import ReferenceContext, flatten_text
from .context import formula_tex
from .ids import XLINK_HREF, cell_label, normalize_id, select_content_root

logger = logging.getLogger(__name__)

_CAPTION_LABEL_RE = re.compile(r"^(Figure|Fig\.|Table)\s+[\w.-]+[:.]\s*")

_MARK_TAGS = {
    "bold": "strong",
    "italic": "em",
    "strike": "strikethrough",
    "monospace": "code",
}
_PASSTHROUGH_INLINE = {"sup", "sub", "sc", "underline", "overline", "roman", "styled-content", "named-content", "span"}
_BLOCK_IN_PARAGRAPH = {"fig", "table-wrap", "disp-formula", "list", "disp-quote", "preformat", "code"}
_SKIPPED_BLOCKS = {"title", "label", "caption", "sec-meta"}
_LANGUAGE_ALIASES = {"python3": "python", "ipython": "python", "ipython3": "python", "sh": "bash"}


def parse_rendered_xml(xml_text: str | bytes) -> etree._Element:
    """Parse the renderer output and return its ``<article>`` element."""
    parser = etree.XMLParser(load_dtd=False, no_network=True, resolve_entities=False, huge_tree=True)
    data = xml_text.encode("utf-8") if isinstance(xml_text, str) else xml_text
    try:
        root = etree.fromstring(data, parser)
    except etree.XMLSyntaxError as exc:
        raise MalformedSource(f"rendered XML is not well-formed: {exc}") from exc
    if root.tag == "article":
        return root
    article = root.find(".//article")
    if article is None:
        raise MalformedSource(f"rendered XML has no <article> element (root is <{root.tag}>)")
    return article


def normalize_language(value: str | None) -> str:
    """``"r script"`` -> ``"r"``; ``"python3"`` -> ``"python"``."""
    lang = (value or "").strip().lower()
    if lang.endswith(" script"):
        lang = lang[: -len(" script")].strip()
    return _LANGUAGE_ALIASES.get(lang, lang)


def split_caption(caption: str, label: str = "") -> tuple[str, str]:
    """Return (display label, caption text) for a figure or table caption."""
    caption = " ".join(caption.split())
    label = " ".join(label.split())
    if label:
        if caption.startswith(label):
            caption = caption[len(label):].lstrip(" :.")
        return label.rstrip(":."), caption
    m = _CAPTION_LABEL_RE.match(caption)
    if m:
        return m.group(0).strip().rstrip(":."), caption[m.end():]
    return "", caption


def extract_metadata(article: etree._Element, context: ReferenceContext) -> dict[str, Any]:
    """Title, authors, abstract and keywords from the top-level front matter."""
    meta_el = article.find("front/article-meta")
    if meta_el is None:
        meta_el = article.find("front-stub")
    if meta_el is None:
        return {}

    metadata: dict[str, Any] = {}
    title = flatten_text(meta_el.find("title-group/article-title"))
    if title:
        metadata["title"] = title

    authors = []
    for contrib in meta_el.iterfind("contrib-group/contrib"):
        if contrib.get("contrib-type", "author") != "author":
            continue
        authors.append(_author(contrib, context))
    if authors:
        metadata["authors"] = authors

    abstract = flatten_text(meta_el.find("abstract"))
    if abstract:
        metadata["abstract"] = abstract
    keywords = [flatten_text(k) for k in meta_el.iterfind("kwd-group/kwd")]
    if keywords:
        metadata["keywords"] = keywords
    return metadata


def _author(contrib: etree._Element, context: ReferenceContext) -> dict[str, Any]:
    name = flatten_text(contrib.find("string-name"))
    if not name:
        parts = (flatten_text(contrib.find("name/given-names")), flatten_text(contrib.find("name/surname")))
        name = " ".join(p for p in parts if p)
    author: dict[str, Any] = {"name": name}

    affiliations = []
    email = flatten_text(contrib.find("email"))
    for xref in contrib.iterfind("xref"):
        rid = normalize_id(xref.get("rid"))
        if xref.get("ref-type") == "aff" and rid in context.affiliations:
            affiliations.append(context.affiliations[rid])
        elif xref.get("ref-type") == "corresp" and not email:
            note = context.author_notes.get(rid, "")
            if "@" in note:
                email = note
    if affiliations:
        author["affiliation"] = "; ".join(affiliations)

    roles = [flatten_text(r) for r in contrib.iterfind("role")]
    roles = [r for r in roles if r]
    if roles:
        author["roles"] = roles[0] if len(roles) == 1 else roles
    if email:
        author["email"] = email
    if contrib.get("corresp") == "yes":
        author["corresponding"] = True
    return author


class JatsTransformer:
    """Stateful walk over one rendered body; build a new instance per document."""

    def __init__(
        self,
        context: ReferenceContext,
        asset_base: AssetBase,
        block_map: BlockMap | None = None,
        heading_base: int = 1,
        settings: Settings | None = None,
    ) -> None:
        self.context = context
        self.asset_base = asset_base
        self.block_map = block_map
        self.heading_base = max(1, heading_base)
        self.settings = settings or Settings()
        self._claimed: set[str] = set()
        self._cursor = -1

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def transform(self, article: etree._Element) -> nodes.Node:
        content_root = select_content_root(article)
        body = content_root.find("body")
        if body is None:
            raise MalformedSource("rendered article has no <body>")
        if content_root is not article:
            logger.debug("Using notebook sub-article %s as content root", content_root.get("id"))

        metadata = extract_metadata(article, self.context)
        content: list[nodes.Node] = []
        if metadata and (self.block_map is None or YAML_BLOCK_KEY in self.block_map):
            content.append(nodes.quarto_block(YAML_BLOCK_KEY, "metadata", metadata=metadata))

        content.extend(self._blocks(body, depth=0))

        bibliography = {rid: ref.to_dict() for rid, ref in self.context.references.items()}
        if bibliography:
            content.append(nodes.quarto_block(BIBLIOGRAPHY_KEY, "bibliography", bibliography=bibliography))
        return nodes.doc(content, metadata=metadata, bibliography=bibliography)

    # ------------------------------------------------------------------
    # Block level
    # ------------------------------------------------------------------

    def _blocks(self, parent: etree._Element, depth: int) -> list[nodes.Node]:
        out: list[nodes.Node] = []
        for child in parent:
            if isinstance(child.tag, str):
                out.extend(self._block(child, depth))
        return out

    def _block(self, el: etree._Element, depth: int) -> list[nodes.Node]:
        tag = el.tag
        if tag == "sec":
            if el.get("specific-use") == "notebook-content":
                return self._cell(el)
            return self._section(el, depth + 1)
        if tag == "p":
            return self._paragraph(el, depth)
        if tag == "fig":
            return [self._figure(el)]
        if tag == "fig-group":
            return self._blocks(el, depth)
        if tag == "table-wrap":
            return [self._table(el)]
        if tag == "disp-formula":
            return [self._equation(el)]
        if tag == "list":
            return [self._list(el, depth)]
        if tag == "disp-quote":
            return [nodes.blockquote(self._blocks(el, depth))]
        if tag in ("code", "preformat"):
            code = "".join(el.itertext()).strip("\n")
            key = self._claim(None, ("code",), code)
            return [nodes.code_block(code, normalize_language(el.get("language")), key)]
        if tag in ("boxed-text", "def-list", "alternatives", "notes"):
            return self._blocks(el, depth)
        if tag in _SKIPPED_BLOCKS or tag in ("sub-article", "back", "front"):
            return []

        text = flatten_text(el)
        if not text:
            return []
        logger.debug("Unknown block <%s>; keeping its text", tag)
        return [nodes.paragraph([nodes.text_node(text)])]

    def _section(self, sec: etree._Element, depth: int) -> list[nodes.Node]:
        out: list[nodes.Node] = []
        title = sec.find("title")
        if title is not None:
            content = nodes.normalize_inline(self._inline_children(title, []))
            if content:
                sec_id = normalize_id(sec.get("id"), self.settings.id_suffix_pattern)
                level = min(6, depth + self.heading_base - 1)
                out.append(nodes.heading(level, content, sec_id if sec_id.startswith("sec-") else None))
        for child in sec:
            if isinstance(child.tag, str) and child is not title:
                out.extend(self._block(child, depth))
        return out

    def _paragraph(self, p: etree._Element, depth: int) -> list[nodes.Node]:
        """Inline content becomes paragraphs split around block-level children."""
        out: list[nodes.Node] = []
        run: list[nodes.Node] = []

        def flush() -> None:
            content = nodes.normalize_inline(run)
            if content:
                out.append(nodes.paragraph(content))
            run.clear()

        if p.text:
            run.append(nodes.text_node(p.text))
        for child in p:
            if isinstance(child.tag, str):
                if child.tag in _BLOCK_IN_PARAGRAPH:
                    flush()
                    out.extend(self._block(child, depth))
                else:
                    run.extend(self._inline(child, []))
            if child.tail:
                run.append(nodes.text_node(child.tail))
        flush()
        return out

    def _list(self, el: etree._Element, depth: int) -> nodes.Node:
        items = []
        for item in el.iterfind("list-item"):
            items.append(nodes.list_item(self._blocks(item, depth)))
        if el.get("list-type") in ("order", "ordered", "arabic", "alpha-lower", "alpha-upper", "roman-lower", "roman-upper"):
            return nodes.ordered_list(items, start=_int_attr(el, "start", 1))
        return nodes.bullet_list(items)

    # ------------------------------------------------------------------
    # Executable cells and floats
    # ------------------------------------------------------------------

    def _cell(self, sec: etree._Element) -> list[nodes.Node]:
        code_el = next(sec.iter("code"), None)
        code = "".join(code_el.itertext()).strip("\n") if code_el is not None else ""
        language = normalize_language(code_el.get("language")) if code_el is not None else ""
        label = cell_label(sec.get("id"), self.settings.id_suffix_pattern)

        fig = next(sec.iter("fig"), None)
        if fig is not None:
            return [self._figure(fig, code=code, language=language, label=label)]
        table = next(sec.iter("table-wrap"), None)
        if table is not None:
            return [self._table(table, code=code, language=language, label=label)]
        if code_el is None:
            logger.debug("Notebook cell %s has no code; skipping", sec.get("id"))
            return []
        key = self._claim(label, ("chunk",), code)
        return [nodes.code_block(code, language, key)]

    def _figure(self, fig: etree._Element, code: str = "", language: str = "", label: str | None = None) -> nodes.Node:
        fig_id = normalize_id(fig.get("id"), self.settings.id_suffix_pattern)
        display_label, caption = split_caption(
            flatten_text(fig.find("caption")), flatten_text(fig.find("label"))
        )
        graphic = next(fig.iter("graphic", "inline-graphic"), None)
        path = ""
        if graphic is not None:
            path = graphic.get(XLINK_HREF) or graphic.get("href") or ""
        src = self.asset_base.url_for(path) if path else ""

        if code:
            block_key = self._claim(fig_id or label, ("chunk",), code)
        else:
            block_key = self._claim(fig_id, (), None) or fig_id or None

        return nodes.quarto_block(
            block_key,
            language,
            code=code,
            figLabel=fig_id or label,
            displayLabel=display_label,
            caption=caption,
            src=src,
            path=path,
            renderedOutput=_figure_html(src, display_label, caption) if src else "",
        )

    def _table(self, wrap: etree._Element, code: str = "", language: str = "", label: str | None = None) -> nodes.Node:
        table_id = normalize_id(wrap.get("id"), self.settings.id_suffix_pattern)
        display_label, caption = split_caption(
            flatten_text(wrap.find("caption")), flatten_text(wrap.find("label"))
        )
        rows: list[list[str]] = []
        header = False
        for tr in wrap.iter("tr"):
            if not rows and tr.getparent() is not None and tr.getparent().tag == "thead":
                header = True
            rows.append([flatten_text(cell) for cell in tr if cell.tag in ("th", "td")])

        if code:
            block_key = self._claim(table_id or label, ("chunk",), code)
        else:
            block_key = self._claim(table_id, ("table",), None)
            language = "table"

        return nodes.quarto_block(
            block_key or table_id or None,
            language,
            code=code,
            tableLabel=table_id or label,
            displayLabel=display_label,
            caption=caption,
            rows=rows,
            header=header,
            renderedOutput=_table_html(rows, header, display_label, caption),
        )

    def _equation(self, formula: etree._Element) -> nodes.Node:
        eq_id = normalize_id(formula.get("id"), self.settings.id_suffix_pattern)
        tex = formula_tex(formula)
        block_key = self._claim(eq_id or None, ("equation",), None)
        return nodes.quarto_block(
            block_key,
            "equation",
            code=tex,
            eqLabel=eq_id or None,
            renderedOutput=f"<div class=\"equation\">\\[{html.escape(tex)}\\]</div>",
        )

    def _claim(self, label: str | None, kinds: tuple[str, ...], body: str | None) -> str | None:
        """Map a rendered block onto an unclaimed source span.

        A label present in the block map wins; otherwise a span of the given
        kind with an identical body; otherwise the next unclaimed span of that
        kind in source order. Without a block map the label is returned as is.
        """
        if self.block_map is None:
            return label
        if label and label in self.block_map and label not in self._claimed:
            return self._take(label)
        if not kinds:
            return None
        candidates = [
            (key, block)
            for key, block in self.block_map.items()
            if block.kind in kinds and key not in self._claimed
        ]
        if body and body.strip():
            wanted = body.strip()
            for key, block in candidates:
                if chunk_body(block.text) == wanted:
                    return self._take(key)
        ahead = [key for key, block in candidates if block.start > self._cursor]
        if ahead:
            logger.debug("Positional block match %r for label %r", ahead[0], label)
            return self._take(ahead[0])
        if candidates:
            return self._take(candidates[0][0])
        logger.debug("No source span for rendered block %r", label)
        return None

    def _take(self, key: str) -> str:
        self._claimed.add(key)
        self._cursor = max(self._cursor, self.block_map[key].start)
        return key

    # ------------------------------------------------------------------
    # Inline level
    # ------------------------------------------------------------------

    def _inline_children(self, el: etree._Element, marks: list[nodes.Mark]) -> list[nodes.Node]:
        out: list[nodes.Node] = []
        if el.text:
            out.append(nodes.text_node(el.text, marks))
        for child in el:
            if isinstance(child.tag, str):
                out.extend(self._inline(child, marks))
            if child.tail:
                out.append(nodes.text_node(child.tail, marks))
        return out

    def _inline(self, el: etree._Element, marks: list[nodes.Mark]) -> list[nodes.Node]:
        tag = el.tag
        if tag in _MARK_TAGS:
            return self._inline_children(el, marks + [{"type": _MARK_TAGS[tag]}])
        if tag == "ext-link":
            href = el.get(XLINK_HREF) or el.get("href") or flatten_text(el)
            return self._inline_children(el, marks + [{"type": "link", "attrs": {"href": href}}])
        if tag == "uri":
            href = el.get(XLINK_HREF) or flatten_text(el)
            return self._inline_children(el, marks + [{"type": "link", "attrs": {"href": href}}])
        if tag == "xref":
            return [self._xref(el, marks)]
        if tag == "inline-formula":
            return [nodes.text_node(f"${formula_tex(el)}$", marks)]
        if tag in ("styled-content", "named-content"):
            comment_id = _comment_id(el)
            if comment_id:
                mark = {"type": "comment", "attrs": {"commentId": comment_id}}
                return self._inline_children(el, marks + [mark])
            return self._inline_children(el, marks)
        if tag == "fn":
            note = flatten_text(el)
            return [nodes.text_node(f"^[{note}]", marks)] if note else []
        if tag == "break":
            return [nodes.text_node(" ", marks)]
        if tag in ("inline-graphic", "graphic"):
            path = el.get(XLINK_HREF) or ""
            return [nodes.text_node(f"![]({path})", marks)] if path else []
        if tag not in _PASSTHROUGH_INLINE:
            logger.debug("Unknown inline <%s>; keeping its text", tag)
        return self._inline_children(el, marks)

    def _xref(self, el: etree._Element, marks: list[nodes.Mark]) -> nodes.Node:
        raw_rid = el.get("rid", "")
        rid = normalize_id(raw_rid, self.settings.id_suffix_pattern)
        label = flatten_text(el) or el.get("alt", "")
        ref_type = el.get("ref-type", "")
        ctx = self.context

        if ref_type in ("bibr", "") and rid in ctx.references:
            return nodes.reference_node(nodes.CITATION, raw_rid, label, ctx.references[rid].key, marks)
        if rid in ctx.figures:
            return nodes.reference_node(nodes.FIGURE_REFERENCE, raw_rid, label, rid, marks)
        if rid in ctx.tables:
            return nodes.reference_node(nodes.TABLE_REFERENCE, raw_rid, label, rid, marks)
        if rid in ctx.equations:
            return nodes.reference_node(nodes.EQUATION_REFERENCE, raw_rid, label, rid, marks)
        logger.debug("Unresolved cross-reference %r (%r); keeping its text", raw_rid, label)
        return nodes.text_node(label, marks)


def build_tree(
    rendered: etree._Element,
    context: ReferenceContext,
    asset_base: AssetBase,
    block_map: BlockMap | None = None,
    heading_base: int = 1,
    settings: Settings | None = None,
) -> nodes.Node:
    """Convert a parsed ``<article>`` into a document tree."""
    return JatsTransformer(context, asset_base, block_map, heading_base, settings).transform(rendered)


def _comment_id(el: etree._Element) -> str | None:
    tags = " ".join(
        el.get(attr, "") for attr in ("content-type", "style-type", "specific-use", "style")
    ).split()
    if "comment" not in tags:
        return None
    return el.get("ref") or el.get("rid") or el.get("alt") or None


def _figure_html(src: str, display_label: str, caption: str) -> str:
    text = f"{display_label}: {caption}" if display_label and caption else display_label or caption
    figcaption = f"<figcaption>{html.escape(text)}</figcaption>" if text else ""
    return (
        f'<figure><img src="{html.escape(src, quote=True)}" '
        f'alt="{html.escape(caption or display_label, quote=True)}" style="max-width: 100%;" />'
        f"{figcaption}</figure>"
    )


def _table_html(rows: list[list[str]], header: bool, display_label: str, caption: str) -> str:
    parts = ["<table>"]
    text = f"{display_label}: {caption}" if display_label and caption else display_label or caption
    if text:
        parts.append(f"<caption>{html.escape(text)}</caption>")
    for idx, row in enumerate(rows):
        cell = "th" if header and idx == 0 else "td"
        parts.append("<tr>" + "".join(f"<{cell}>{html.escape(c)}</{cell}>" for c in row) + "</tr>")
    parts.append("</table>")
    return "".join(parts)


def _int_attr(el: etree._Element, name: str, default: int) -> int:
    value = (el.get(name) or "").strip()
    return int(value) if value.isdigit() else default
