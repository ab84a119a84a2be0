"""Tests for the comments appendix reader and writer."""

from __future__ import annotations

import logging

import pytest

from qmdtree.errors import MalformedCommentAppendix
from qmdtree.source.base import CommentMessage, CommentThread
from qmdtree.source.comments import build_comments_appendix, comment_spans, extract_comments

APPENDIX = """Body with [a note]{.comment ref="c-1"}.

<!-- Comments Appendix -->
<div id="quartorium-comments" style="display:none;">
```json
{
  "comments": [
    {
      "id": "c-1",
      "author": "alice",
      "timestamp": "2025-06-19T21:57:23.131Z",
      "status": "open",
      "thread": [{"text": "Check this", "author": "alice", "timestamp": "2025-06-19T21:57:23.131Z"}],
      "color": "#ffd54f"
    }
  ]
}
```
</div>
"""


def test_extract_comments_parses_threads() -> None:
    extracted = extract_comments(APPENDIX)

    assert extracted.remaining_text == 'Body with [a note]{.comment ref="c-1"}.'
    (thread,) = extracted.comments
    assert thread.id == "c-1"
    assert thread.author == "alice"
    assert thread.status == "open"
    assert not thread.resolved
    assert thread.thread == [
        CommentMessage(text="Check this", author="alice", timestamp="2025-06-19T21:57:23.131Z")
    ]


def test_unknown_thread_keys_survive_round_trip() -> None:
    (thread,) = extract_comments(APPENDIX).comments

    assert thread.extra == {"color": "#ffd54f"}
    assert thread.to_dict()["color"] == "#ffd54f"


def test_no_appendix_returns_text_unchanged() -> None:
    extracted = extract_comments("Plain text.\n")
    assert extracted.comments == []
    assert extracted.remaining_text == "Plain text.\n"


@pytest.mark.parametrize(
    "source",
    [APPENDIX, APPENDIX.replace('"comments": [', '"comments": [,')],
    ids=["valid", "malformed"],
)
def test_extracting_twice_changes_nothing(source: str) -> None:
    remaining = extract_comments(source).remaining_text
    again = extract_comments(remaining)

    assert again.comments == []
    assert again.remaining_text == remaining


def test_malformed_json_is_dropped_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    broken = APPENDIX.replace('"comments": [', '"comments": [,')
    with caplog.at_level(logging.WARNING):
        extracted = extract_comments(broken)

    assert extracted.comments == []
    assert "Comments Appendix" not in extracted.remaining_text
    assert any("Invalid JSON" in r.message for r in caplog.records)


def test_malformed_json_raises_when_strict() -> None:
    broken = APPENDIX.replace('"comments": [', '"comments": [,')
    with pytest.raises(MalformedCommentAppendix):
        extract_comments(broken, strict=True)


def test_missing_comments_list_raises_when_strict() -> None:
    text = (
        "Body.\n\n<!-- Comments Appendix -->\n"
        '<div id="quartorium-comments" style="display:none;">\n```json\n{"threads": []}\n```\n</div>\n'
    )
    assert extract_comments(text).comments == []
    with pytest.raises(MalformedCommentAppendix):
        extract_comments(text, strict=True)


def test_entries_without_id_are_skipped() -> None:
    text = APPENDIX.replace('"id": "c-1"', '"id": ""')
    assert extract_comments(text).comments == []


def test_unknown_status_falls_back_to_open() -> None:
    thread = CommentThread.from_dict({"id": "c-9", "status": "archived"})
    assert thread.status == "open"


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def test_build_appendix_is_empty_without_comments() -> None:
    assert build_comments_appendix([]) == ""


def test_build_then_extract_is_stable() -> None:
    threads = extract_comments(APPENDIX).comments
    appendix = build_comments_appendix(threads)

    assert appendix.startswith("\n<!-- Comments Appendix -->\n")
    assert '<div id="quartorium-comments" style="display:none;">' in appendix
    again = extract_comments("Body.\n" + appendix)
    assert [t.to_dict() for t in again.comments] == [t.to_dict() for t in threads]
    assert build_comments_appendix(again.comments) == appendix


def test_build_appendix_accepts_plain_dicts() -> None:
    appendix = build_comments_appendix([{"id": "c-2", "status": "resolved", "thread": []}])
    assert '"id": "c-2"' in appendix
    assert '"status": "resolved"' in appendix


def test_comment_spans_in_source_order() -> None:
    text = 'One [first]{.comment ref="c-1"} and [second one]{.comment ref="c-2"}.'
    assert comment_spans(text) == [("c-1", "first"), ("c-2", "second one")]
