"""Read and write the hidden comments appendix at the end of a source file."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable

from qmdtree.errors import MalformedCommentAppendix

from .base import CommentThread, ExtractedComments

logger = logging.getLogger(__name__)

APPENDIX_MARKER = "<!-- Comments Appendix -->"
APPENDIX_CONTAINER_ID = "quartorium-comments"

_APPENDIX_RE = re.compile(
    r"<!-- Comments Appendix -->\s*"
    r'<div id="quartorium-comments" style="display:none;">\s*'
    r"```json\s*(?P<payload>.*?)\s*```\s*</div>",
    re.DOTALL,
)

# Inline anchor syntax: [anchor text]{.comment ref="c-123"}
COMMENT_SPAN_RE = re.compile(r'\[(?P<text>[^\[\]]*)\]\{\.comment\s+ref="(?P<id>[^"]+)"\}')


def extract_comments(raw_text: str, strict: bool = False) -> ExtractedComments:
    """Split *raw_text* into its comment threads and the text without the appendix.

    A malformed appendix is dropped with a warning, or raises
    :class:`MalformedCommentAppendix` when *strict*.
    """
    match = _APPENDIX_RE.search(raw_text)
    if not match:
        return ExtractedComments(comments=[], remaining_text=raw_text)

    remaining = (raw_text[: match.start()] + raw_text[match.end():]).strip()

    try:
        payload = json.loads(match.group("payload"))
    except json.JSONDecodeError as exc:
        if strict:
            raise MalformedCommentAppendix(f"invalid JSON in comments appendix: {exc}") from exc
        logger.warning("Invalid JSON in comments appendix (%s); dropping it", exc)
        return ExtractedComments(comments=[], remaining_text=remaining)

    raw_comments = payload.get("comments") if isinstance(payload, dict) else None
    if not isinstance(raw_comments, list):
        if strict:
            raise MalformedCommentAppendix("comments appendix has no 'comments' list")
        logger.warning("Comments appendix has no 'comments' list; dropping it")
        return ExtractedComments(comments=[], remaining_text=remaining)

    comments: list[CommentThread] = []
    for item in raw_comments:
        if not isinstance(item, dict) or not item.get("id"):
            logger.warning("Skipping malformed comment entry: %r", item)
            continue
        comments.append(CommentThread.from_dict(item))
    return ExtractedComments(comments=comments, remaining_text=remaining)


def build_comments_appendix(comments: Iterable[CommentThread | dict]) -> str:
    """Render the appendix block; empty string when there are no comments."""
    items = [c.to_dict() if isinstance(c, CommentThread) else dict(c) for c in comments]
    if not items:
        return ""
    payload = json.dumps({"comments": items}, indent=2, ensure_ascii=False)
    return (
        f"\n{APPENDIX_MARKER}\n"
        f'<div id="{APPENDIX_CONTAINER_ID}" style="display:none;">\n'
        f"```json\n{payload}\n```\n"
        "</div>\n"
    )


def comment_spans(text: str) -> list[tuple[str, str]]:
    """(comment id, anchor text) pairs in source order."""
    return [(m.group("id"), m.group("text")) for m in COMMENT_SPAN_RE.finditer(text)]
