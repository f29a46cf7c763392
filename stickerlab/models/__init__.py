"""Database models package."""

from stickerlab.models.asset import Asset, AssetTag, AssetUsage

__all__ = ["Asset", "AssetTag", "AssetUsage"]
