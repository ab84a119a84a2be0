"""Load a source document into an editable tree and save edits back."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from qmdtree.config import Settings
from qmdtree.jats.context import build_context
from qmdtree.jats.transformer import build_tree, parse_rendered_xml
from qmdtree.render.assets import AssetBase
from qmdtree.render.gateway import RenderGateway, RenderKey, content_version
from qmdtree.source.base import CommentThread
from qmdtree.source.blocks import detect_heading_base_level, index_blocks
from qmdtree.source.comments import extract_comments
from qmdtree.tree.comment_marks import prune_comments, restore_comment_marks
from qmdtree.tree.serializer import SerializationResult, TreeSerializer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DocumentView:
    tree: dict[str, Any]
    comments: list[CommentThread] = field(default_factory=list)
    version: str = ""
    assets_dir: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tree": self.tree,
            "comments": [c.to_dict() for c in self.comments],
            "version": self.version,
        }


def build_document_view(
    xml_text: str | bytes,
    source_text: str,
    doc_id: str,
    version: str | None = None,
    *,
    assets_dir: Path | None = None,
    settings: Settings | None = None,
) -> DocumentView:
    """Tree + comments for *source_text* given its already-rendered XML."""
    settings = settings or Settings()
    extracted = extract_comments(source_text)
    clean = extracted.remaining_text
    version = version or content_version(clean)

    block_map = index_blocks(clean)
    article = parse_rendered_xml(xml_text)
    context = build_context(article, settings.id_suffix_pattern)
    tree = build_tree(
        article,
        context,
        AssetBase(doc_id=doc_id, version=version, prefix=settings.asset_prefix),
        block_map=block_map,
        heading_base=detect_heading_base_level(clean, block_map),
        settings=settings,
    )
    tree = restore_comment_marks(tree, clean)
    logger.info(
        "Built tree for %s@%s: %d blocks, %d comment threads",
        doc_id,
        version,
        len(tree["content"]),
        len(extracted.comments),
    )
    return DocumentView(tree=tree, comments=extracted.comments, version=version, assets_dir=assets_dir)


def load_document(
    source_path: Path,
    project_root: Path,
    doc_id: str,
    gateway: RenderGateway,
    version: str | None = None,
    settings: Settings | None = None,
) -> DocumentView:
    """Read, render (through the cache) and transform one source document."""
    settings = settings or gateway.settings
    project_root = Path(project_root)
    path = Path(source_path)
    if not path.is_absolute():
        path = project_root / path
    raw = path.read_text(encoding="utf-8")

    clean = extract_comments(raw).remaining_text
    version = version or content_version(clean)
    rendered = gateway.render(path, project_root, RenderKey(project_id=doc_id, version=version), source_text=clean)
    return build_document_view(
        rendered.xml_text,
        raw,
        doc_id,
        version,
        assets_dir=rendered.assets_dir,
        settings=settings,
    )


def save_document(
    tree: dict[str, Any],
    source_text: str,
    comments: list[CommentThread | dict] | None = None,
    settings: Settings | None = None,
) -> SerializationResult:
    """Serialize an edited tree, keeping only comment threads still anchored in it."""
    live = prune_comments(tree, comments or [])
    result = TreeSerializer(settings).serialize(tree, source_text, live)
    if result.reconstructed:
        logger.warning(
            "%d block(s) were reconstructed without their original source span: %s",
            len(result.reconstructed),
            ", ".join(str(p.block_key) for p in result.reconstructed),
        )
    return result
