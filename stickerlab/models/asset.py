"""Asset model."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from stickerlab.database import Base

ASSET_CATEGORIES = (
    "abstract",
    "geometric",
    "hand-drawn",
    "ink",
    "icons",
    "masks",
    "separators",
    "grunge",
    "images",
    "other",
)

TAG_KIND_USER = "user"
TAG_KIND_AUTO = "auto"

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_object_id() -> str:
    """Generate a 24-hex-character record identifier."""
    return uuid4().hex[:24]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssetTag(Base):
    """A user or auto-generated tag attached to an asset."""

    __tablename__ = "asset_tags"

    asset_id = Column(
        String(24),
        ForeignKey("assets.id", ondelete="CASCADE"),
        primary_key=True,
    )
    kind = Column(String(10), primary_key=True)  # user, auto
    tag = Column(String(255), primary_key=True, index=True)

    def __repr__(self) -> str:
        """String representation of AssetTag."""
        return f"<AssetTag(asset_id={self.asset_id}, kind={self.kind}, tag={self.tag})>"


class AssetUsage(Base):
    """One recorded use of an asset by a saved project or template."""

    __tablename__ = "asset_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(
        String(24),
        ForeignKey("assets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id = Column(String(24), nullable=True, index=True)
    template_id = Column(String(24), nullable=True, index=True)
    added_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        """String representation of AssetUsage."""
        return (
            f"<AssetUsage("
            f"asset_id={self.asset_id}, "
            f"project_id={self.project_id}, "
            f"template_id={self.template_id})>"
        )


class Asset(Base):
    """Deduplicated design asset (SVG, image) keyed by the SHA-256 of its content."""

    __tablename__ = "assets"
    __table_args__ = (Index("ix_assets_category_subcategory", "category", "subcategory"),)

    id = Column(String(24), primary_key=True, default=new_object_id)
    hash = Column(String(64), unique=True, index=True, nullable=False)
    asset_id = Column(String(255), unique=True, index=True, nullable=False)
    original_path = Column(String(1024), index=True, nullable=False)
    name = Column(String(255), index=True, nullable=False)
    filename = Column(String(255), index=True, nullable=False)
    content = Column(Text, nullable=False)  # raw SVG markup or base64
    mime_type = Column(String(100), nullable=False)
    blob_url = Column(String(1024), index=True, nullable=True)
    blob_file_name = Column(String(1024), index=True, nullable=True)
    category = Column(String(50), default="other", index=True, nullable=False)
    subcategory = Column(String(50), index=True, nullable=True)
    usage_count = Column(Integer, default=1, index=True, nullable=False)
    asset_metadata = Column(JSONType, nullable=True)
    is_active = Column(Boolean, default=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_used = Column(DateTime(timezone=True), default=_utcnow, index=True, nullable=False)

    # Relationships
    tag_rows = relationship(
        AssetTag,
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by=AssetTag.tag,
    )
    usages = relationship(
        AssetUsage,
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by=[AssetUsage.added_at, AssetUsage.id],
    )

    @property
    def tags(self) -> list[str]:
        """Path and filename derived tags, plus any added by an admin."""
        return [row.tag for row in self.tag_rows if row.kind == TAG_KIND_USER]

    @property
    def auto_tags(self) -> list[str]:
        """Tags derived from content sniffing."""
        return [row.tag for row in self.tag_rows if row.kind == TAG_KIND_AUTO]

    @property
    def used_in_projects(self) -> list[AssetUsage]:
        return list(self.usages)

    def __repr__(self) -> str:
        """String representation of Asset."""
        return f"<Asset(id={self.id}, asset_id={self.asset_id}, hash={self.hash[:12]})>"
