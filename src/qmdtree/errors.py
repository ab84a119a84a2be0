"""Exception taxonomy for the conversion pipeline."""

from __future__ import annotations


class QmdTreeError(Exception):
    """Base class for all qmdtree errors."""


class RenderFailure(QmdTreeError):
    """The renderer failed or produced no output for a document version."""

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        base = super().__str__()
        if not self.diagnostics:
            return base
        return f"{base}\n{self.diagnostics.strip()}"


class MalformedSource(QmdTreeError):
    """Rendered XML that cannot yield a document tree."""


class UnresolvedReference(QmdTreeError):
    """A cross-reference whose target cannot be mapped back to a source key."""

    def __init__(self, kind: str, rid: str | None, label: str | None) -> None:
        super().__init__(f"unresolved {kind} reference (rid={rid!r}, label={label!r})")
        self.kind = kind
        self.rid = rid
        self.label = label


class MissingBlockKey(QmdTreeError):
    """A tree block with no matching span in the original source."""

    def __init__(self, block_key: str | None, node_type: str) -> None:
        super().__init__(f"no source span for {node_type} block (blockKey={block_key!r})")
        self.block_key = block_key
        self.node_type = node_type


class MalformedCommentAppendix(QmdTreeError):
    """The trailing comments appendix holds invalid JSON."""
