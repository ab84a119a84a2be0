"""Source package: block indexing and the comments appendix."""

from .base import (
    BIBLIOGRAPHY_KEY,
    YAML_BLOCK_KEY,
    BlockMap,
    CommentMessage,
    CommentThread,
    ExtractedComments,
    SourceBlock,
    block_texts,
)
from .blocks import chunk_body, detect_heading_base_level, index_blocks, label_from_fence_header
from .comments import build_comments_appendix, comment_spans, extract_comments

__all__ = [
    "BIBLIOGRAPHY_KEY",
    "YAML_BLOCK_KEY",
    "BlockMap",
    "CommentMessage",
    "CommentThread",
    "ExtractedComments",
    "SourceBlock",
    "block_texts",
    "build_comments_appendix",
    "chunk_body",
    "comment_spans",
    "detect_heading_base_level",
    "extract_comments",
    "index_blocks",
    "label_from_fence_header",
]
