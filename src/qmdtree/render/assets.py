"""Stable, reversible URLs for renderer-emitted assets."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

_EXTERNAL_PREFIXES = ("http://", "https://", "data:", "//")


@dataclass(frozen=True, slots=True)
class AssetBase:
    """Document identity + content version that every asset URL embeds."""

    doc_id: str
    version: str
    prefix: str = "/api/assets"

    def url_for(self, asset_path: str) -> str:
        if not asset_path or asset_path.startswith(_EXTERNAL_PREFIXES):
            return asset_path
        rel = _clean_relative(asset_path)
        return "/".join(
            (
                self.prefix.rstrip("/"),
                quote(self.doc_id, safe=""),
                quote(self.version, safe=""),
                quote(rel, safe="/"),
            )
        )

    @classmethod
    def parse(cls, url: str, prefix: str = "/api/assets") -> tuple["AssetBase", str]:
        """Inverse of :meth:`url_for`: returns (base, renderer-relative path)."""
        head = prefix.rstrip("/") + "/"
        if not url.startswith(head):
            raise ValueError(f"not an asset URL under {prefix!r}: {url}")
        parts = url[len(head):].split("/", 2)
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"malformed asset URL: {url}")
        doc_id, version, rel = (unquote(p) for p in parts)
        return cls(doc_id=doc_id, version=version, prefix=prefix), rel


def _clean_relative(asset_path: str) -> str:
    rel = asset_path.replace("\\", "/")
    while rel.startswith("./"):
        rel = rel[2:]
    return rel.lstrip("/")


def asset_file(assets_dir: Path, asset_path: str) -> Path:
    """Resolve *asset_path* inside *assets_dir*, refusing path traversal."""
    root = Path(assets_dir).resolve()
    target = (root / _clean_relative(asset_path)).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"asset path escapes the assets directory: {asset_path}")
    return target
