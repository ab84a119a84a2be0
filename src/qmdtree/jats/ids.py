"""Id conventions of Quarto's JATS writer.

Quarto renders an executable document twice inside one ``<article>``: the
top-level article carries front matter, references and figure captions, and a
``sub-article[@article-type="notebook"]`` carries the cell-by-cell rendering
where every id gains a ``-nb-article`` suffix. This module is the only place
that knows about either convention.
"""

from __future__ import annotations

import re
from functools import lru_cache

from lxml import etree

NOTEBOOK_ARTICLE_TYPE = "notebook"
DEFAULT_SUFFIX_PATTERN = r"-nb-article$"
XLINK_HREF = "{http://www.w3.org/1999/xlink}href"

_REF_PREFIX = "ref-"
_CELL_PREFIX = "cell-"


@lru_cache(maxsize=16)
def _suffix_re(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def normalize_id(value: str | None, pattern: str = DEFAULT_SUFFIX_PATTERN) -> str:
    """Strip the renderer's sub-article suffix so both renderings share keys."""
    if not value:
        return ""
    return _suffix_re(pattern).sub("", value.strip())


def citation_key_from_ref_id(value: str | None, pattern: str = DEFAULT_SUFFIX_PATTERN) -> str:
    """``ref-knuth84-nb-article`` -> ``knuth84``."""
    rid = normalize_id(value, pattern)
    return rid[len(_REF_PREFIX):] if rid.startswith(_REF_PREFIX) else rid


def cell_label(value: str | None, pattern: str = DEFAULT_SUFFIX_PATTERN) -> str | None:
    """Chunk label encoded in a notebook cell id; None for positional ids."""
    cell_id = normalize_id(value, pattern)
    if cell_id.startswith(_CELL_PREFIX):
        cell_id = cell_id[len(_CELL_PREFIX):]
    if not cell_id or cell_id.isdigit():
        return None
    return cell_id


def select_content_root(article: etree._Element) -> etree._Element:
    """Prefer the notebook sub-article when it has a body, else the article itself."""
    for sub in article.iterfind("sub-article"):
        if sub.get("article-type") == NOTEBOOK_ARTICLE_TYPE and sub.find("body") is not None:
            return sub
    return article
