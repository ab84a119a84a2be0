"""Source-side data model: indexed blocks and comment threads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

YAML_BLOCK_KEY = "__YAML_BLOCK__"
BIBLIOGRAPHY_KEY = "__BIBLIOGRAPHY__"


@dataclass(slots=True)
class SourceBlock:
    key: str
    kind: str  # frontmatter | chunk | code | table | equation
    text: str
    start: int
    end: int


BlockMap = dict[str, SourceBlock]


def block_texts(block_map: BlockMap) -> dict[str, str]:
    """Plain key -> verbatim text view of a block map."""
    return {key: block.text for key, block in block_map.items()}


@dataclass(slots=True)
class CommentMessage:
    text: str
    author: str = ""
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "author": self.author, "timestamp": self.timestamp}


@dataclass(slots=True)
class CommentThread:
    id: str
    author: str = ""
    timestamp: str = ""
    status: str = "open"
    thread: list[CommentMessage] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CommentThread":
        known = {"id", "author", "timestamp", "status", "thread"}
        messages = [
            CommentMessage(
                text=str(msg.get("text", "")),
                author=str(msg.get("author", "")),
                timestamp=str(msg.get("timestamp", "")),
            )
            for msg in data.get("thread") or []
            if isinstance(msg, dict)
        ]
        status = data.get("status") or "open"
        return cls(
            id=str(data.get("id", "")),
            author=str(data.get("author", "")),
            timestamp=str(data.get("timestamp", "")),
            status=status if status in ("open", "resolved") else "open",
            thread=messages,
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "author": self.author,
            "timestamp": self.timestamp,
            "status": self.status,
            "thread": [msg.to_dict() for msg in self.thread],
        }
        out.update(self.extra)
        return out

    @property
    def resolved(self) -> bool:
        return self.status == "resolved"


@dataclass(slots=True)
class ExtractedComments:
    comments: list[CommentThread]
    remaining_text: str
