"""Pydantic schemas package."""

from stickerlab.schemas.asset import (
    AssetDescriptor,
    AssetInfo,
    AssetSummary,
    SearchOptions,
    SearchResponse,
)

__all__ = ["AssetDescriptor", "AssetInfo", "AssetSummary", "SearchOptions", "SearchResponse"]
