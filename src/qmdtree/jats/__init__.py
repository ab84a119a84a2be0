"""JATS package: id conventions, reference context and tree transformer."""

from .ids import cell_label, citation_key_from_ref_id, normalize_id, select_content_root
from .base import ReferenceContext, StructuredReference, flatten_text
from .context import build_context, format_reference, parse_reference
from .transformer import JatsTransformer, build_tree, extract_metadata, parse_rendered_xml, split_caption

__all__ = [
    "JatsTransformer",
    "ReferenceContext",
    "StructuredReference",
    "build_context",
    "build_tree",
    "cell_label",
    "citation_key_from_ref_id",
    "extract_metadata",
    "flatten_text",
    "format_reference",
    "normalize_id",
    "parse_reference",
    "parse_rendered_xml",
    "select_content_root",
    "split_caption",
]
