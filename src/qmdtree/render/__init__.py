"""Render package: the Quarto gateway and asset addressing."""

from .assets import AssetBase, asset_file
from .gateway import RenderGateway, RenderKey, RenderResult, content_version

__all__ = [
    "AssetBase",
    "RenderGateway",
    "RenderKey",
    "RenderResult",
    "asset_file",
    "content_version",
]
