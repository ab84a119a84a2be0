"""Tree package: document-tree nodes, serializer and comment marks."""

from . import nodes
from .sentences import split_sentences
from .serializer import (
    BlockProvenance,
    KeyMaps,
    SerializationResult,
    TreeSerializer,
    build_key_maps,
    reconstruct_block,
    resolve_reference_key,
    serialize_tree,
)
from .comment_marks import comment_ids_in_tree, prune_comments, restore_comment_marks

__all__ = [
    "BlockProvenance",
    "KeyMaps",
    "SerializationResult",
    "TreeSerializer",
    "build_key_maps",
    "comment_ids_in_tree",
    "nodes",
    "prune_comments",
    "reconstruct_block",
    "resolve_reference_key",
    "restore_comment_marks",
    "serialize_tree",
    "split_sentences",
]
