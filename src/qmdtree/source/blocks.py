"""Index the non-prose spans of a Quarto source file.

The indexer walks the text line by line with three states (outside, inside
frontmatter, inside a code fence) and records every span that must survive an
edit cycle verbatim: the YAML frontmatter, fenced code chunks, pipe tables and
display equations. Each span is stored under a stable key so the serializer can
splice the original bytes back in.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass

from .base import YAML_BLOCK_KEY, BlockMap, SourceBlock

logger = logging.getLogger(__name__)

_FENCE_OPEN_RE = re.compile(r"^(`{3,}|~{3,})(.*)$")
_QUOTED_LABEL_RE = re.compile(r"""(?<![\w-])label\s*=\s*["']([^"']+)["']""")
_BARE_LABEL_RE = re.compile(r"(?<![\w-])label\s*=\s*([A-Za-z0-9_-]+)")
_FENCE_OPTIONS_RE = re.compile(r"\{([^}]*)\}")
_CELL_OPTION_RE = re.compile(r"^\s*(?:#|//|--)\|")
_CELL_LABEL_RE = re.compile(r"^\s*(?:#|//|--)\|\s*label\s*:\s*(.+?)\s*$")
_LABEL_PREFIXES = ("fig-", "tbl-", "eq-")

_TABLE_CAPTION_RE = re.compile(r"^\s*(?:Table\s*)?:\s*\S")
_TABLE_LABEL_RE = re.compile(r"\{#((?:tbl|fig)-[^\s}]+)[^}]*\}")
_EQ_LABEL_RE = re.compile(r"^\s*\{\s*#((?:eq|eqn)-[^\s}]+)\s*\}")
_ATX_HEADING_RE = re.compile(r"^(#{1,6})\s+\S")


@dataclass(slots=True)
class _Line:
    start: int
    end: int
    text: str


def _split_lines(text: str) -> list[_Line]:
    lines: list[_Line] = []
    pos = 0
    for part in text.split("\n"):
        lines.append(_Line(start=pos, end=pos + len(part), text=part))
        pos += len(part) + 1
    return lines


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def index_blocks(raw_text: str) -> BlockMap:
    """Return an ordered key -> SourceBlock map of every non-prose span."""
    lines = _split_lines(raw_text)
    blocks: BlockMap = {}

    def add(key: str | None, kind: str, first: int, last: int, end: int | None = None) -> None:
        start = lines[first].start
        if end is None:
            end = lines[last].end
        if key and key in blocks:
            logger.warning("Duplicate block label %r at offset %d; using a positional key", key, start)
            key = None
        if not key:
            key = _synthetic_key(kind, blocks)
        blocks[key] = SourceBlock(key=key, kind=kind, text=raw_text[start:end], start=start, end=end)
        logger.debug("Indexed %s block %r (%d chars)", kind, key, end - start)

    i = _frontmatter_end(lines)
    if i is not None:
        first = _first_content_line(lines)
        add(YAML_BLOCK_KEY, "frontmatter", first, i)
        i += 1
    else:
        i = 0

    n = len(lines)
    while i < n:
        stripped = lines[i].text.strip()

        fence = _match_fence(stripped)
        if fence is not None:
            char, length, header = fence
            last, cell_label = _scan_fence(lines, i, char, length)
            kind = "chunk" if header.strip().startswith("{") else "code"
            add(cell_label or label_from_fence_header(header), kind, i, last)
            i = last + 1
            continue

        if _is_table_row(stripped):
            last = _scan_table(lines, i)
            if last is not None:
                span = raw_text[lines[i].start:lines[last].end]
                label = _TABLE_LABEL_RE.search(span)
                add(label.group(1) if label else None, "table", i, last)
                i = last + 1
                continue

        if stripped.startswith("$$"):
            found = _scan_equation(lines, i)
            if found is not None:
                last, label, end = found
                add(label, "equation", i, last, end)
                i = last + 1
                continue

        i += 1

    return blocks


def label_from_fence_header(header: str) -> str | None:
    """Extract a chunk label from the text following the opening fence."""
    m = _QUOTED_LABEL_RE.search(header)
    if m:
        return m.group(1).strip()
    m = _BARE_LABEL_RE.search(header)
    if m:
        return m.group(1).strip()
    m = _FENCE_OPTIONS_RE.search(header)
    if m:
        for part in re.split(r"[\s,]+", m.group(1)):
            if part.startswith(_LABEL_PREFIXES):
                return part
    return None


def chunk_body(text: str) -> str:
    """Code lines of a fenced block, without fences and cell-option lines."""
    lines = text.split("\n")
    if lines and _match_fence(lines[0].strip()) is not None:
        lines = lines[1:]
    if lines and re.fullmatch(r"\s*(`{3,}|~{3,})\s*", lines[-1]):
        lines = lines[:-1]
    return "\n".join(line for line in lines if not _CELL_OPTION_RE.match(line)).strip()


def prose_lines(raw_text: str, block_map: BlockMap | None = None) -> Iterator[str]:
    """Yield source lines that fall outside every indexed block."""
    if block_map is None:
        block_map = index_blocks(raw_text)
    spans = sorted((b.start, b.end) for b in block_map.values())
    for line in _split_lines(raw_text):
        if any(start <= line.start <= end for start, end in spans):
            continue
        yield line.text


def detect_heading_base_level(raw_text: str, block_map: BlockMap | None = None) -> int:
    """Smallest ATX heading level used in prose (1 when there are none)."""
    levels = [len(m.group(1)) for line in prose_lines(raw_text, block_map) if (m := _ATX_HEADING_RE.match(line))]
    return min(levels) if levels else 1


# ---------------------------------------------------------------------------
# Scanners
# ---------------------------------------------------------------------------

def _first_content_line(lines: list[_Line]) -> int:
    for idx, line in enumerate(lines):
        if line.text.strip():
            return idx
    return 0


def _frontmatter_end(lines: list[_Line]) -> int | None:
    """Index of the closing delimiter when the text opens with frontmatter."""
    first = _first_content_line(lines)
    if not lines or lines[first].text.strip() != "---":
        return None
    for idx in range(first + 1, len(lines)):
        if lines[idx].text.strip() in ("---", "..."):
            return idx
    return None


def _match_fence(stripped: str) -> tuple[str, int, str] | None:
    m = _FENCE_OPEN_RE.match(stripped)
    if not m:
        return None
    marker, header = m.group(1), m.group(2)
    # Backtick fences cannot carry backticks in their info string.
    if marker[0] == "`" and "`" in header:
        return None
    return marker[0], len(marker), header


def _scan_fence(lines: list[_Line], open_idx: int, char: str, length: int) -> tuple[int, str | None]:
    cell_label: str | None = None
    idx = open_idx + 1
    while idx < len(lines):
        stripped = lines[idx].text.strip()
        if len(stripped) >= length and stripped == char * len(stripped):
            return idx, cell_label
        m = _CELL_LABEL_RE.match(lines[idx].text)
        if m and cell_label is None:
            cell_label = m.group(1).strip().strip("\"'") or None
        idx += 1
    logger.warning("Unterminated code fence starting at line %d", open_idx + 1)
    return len(lines) - 1, cell_label


def _is_table_row(stripped: str) -> bool:
    return len(stripped) > 1 and stripped.startswith("|") and stripped.endswith("|")


def _scan_table(lines: list[_Line], first: int) -> int | None:
    idx = first
    while idx < len(lines) and _is_table_row(lines[idx].text.strip()):
        idx += 1
    last = idx - 1
    if last == first:
        return None
    if idx < len(lines) and _TABLE_CAPTION_RE.match(lines[idx].text):
        return idx
    if (
        idx + 1 < len(lines)
        and not lines[idx].text.strip()
        and _TABLE_CAPTION_RE.match(lines[idx + 1].text)
    ):
        return idx + 1
    return last


def _scan_equation(lines: list[_Line], first: int) -> tuple[int, str | None, int] | None:
    """Return (closing line, label, end offset) of a display equation.

    The span stops after the closing ``$$`` and its ``{#eq-...}`` attribute,
    so prose sharing the closing line stays prose.
    """
    text = lines[first].text
    col = text.find("$$", text.index("$$") + 2)
    close_idx: int | None = first if col >= 0 else None
    if close_idx is None:
        for idx in range(first + 1, len(lines)):
            col = lines[idx].text.find("$$")
            if col >= 0:
                close_idx = idx
                break
        if close_idx is None:
            return None

    closing = lines[close_idx]
    stop = col + 2
    m = _EQ_LABEL_RE.match(closing.text[stop:])
    if m:
        stop += m.end()
    if not closing.text[stop:].strip():
        stop = len(closing.text)
    return close_idx, (m.group(1) if m else None), closing.start + stop


def _synthetic_key(kind: str, blocks: BlockMap) -> str:
    stem = {"table": "TABLE_BLOCK", "equation": "EQ_BLOCK"}.get(kind, "CODE_BLOCK")
    n = len(blocks)
    key = f"__{stem}_{n}__"
    while key in blocks:
        n += 1
        key = f"__{stem}_{n}__"
    return key
