"""Asset schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stickerlab.models.asset import ASSET_CATEGORIES

SORTABLE_FIELDS = ("usage_count", "created_at", "last_used", "name", "category", "asset_id")


def _normalize_tag_list(v: Any) -> Any:
    """Lowercase, strip and drop empty tags. Accepts a comma-separated string."""
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    if isinstance(v, (list, tuple, set)):
        return [tag.strip().lower() for tag in v if isinstance(tag, str) and tag.strip()]
    return v


def _validate_category(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    v = v.strip().lower()
    if v not in ASSET_CATEGORIES:
        raise ValueError(f"category must be one of: {', '.join(ASSET_CATEGORIES)}")
    return v


class AssetDescriptor(BaseModel):
    """Content and hints needed to find or create a deduplicated asset."""

    original_path: str = Field(..., min_length=1, max_length=1024, description="Path the asset was found at")
    content: str = Field(..., min_length=1, description="Raw SVG/text content or base64 for binary assets")
    mime_type: str = Field(..., min_length=1, max_length=100, description="MIME type of the content")
    category: Optional[str] = Field(None, description="Asset category; inferred from the path if omitted")
    subcategory: Optional[str] = Field(None, max_length=50, description="Subcategory; inferred if omitted")
    blob_url: Optional[str] = Field(None, description="URL of the uploaded blob, if any")
    blob_file_name: Optional[str] = Field(None, description="Storage key of the uploaded blob, if any")

    @field_validator("original_path", "mime_type", mode="before")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        """Normalize strings by stripping whitespace."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("category", mode="before")
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        """Reject categories outside the fixed enumeration."""
        return _validate_category(v)


class SearchOptions(BaseModel):
    """Filters, pagination and ordering for an asset search."""

    query: str = Field("", description="Case-insensitive substring matched against names, tags and asset IDs")
    category: Optional[str] = None
    subcategory: Optional[str] = None
    tags: list[str] = Field(default_factory=list, description="Match assets carrying any of these tags")
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=200)
    sort_by: str = Field("usage_count", description=f"One of: {', '.join(SORTABLE_FIELDS)}")
    sort_order: int = Field(-1, description="1 for ascending, -1 for descending")
    is_active: Optional[bool] = Field(True, description="None searches active and inactive assets")

    @field_validator("query", mode="before")
    @classmethod
    def normalize_query(cls, v: Optional[str]) -> str:
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @field_validator("category", mode="before")
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        return _validate_category(v)

    @field_validator("subcategory", mode="before")
    @classmethod
    def normalize_subcategory(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str):
            return v.strip().lower() or None
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: Any) -> Any:
        return _normalize_tag_list(v)

    @field_validator("sort_by")
    @classmethod
    def validate_sort_by(cls, v: str) -> str:
        if v not in SORTABLE_FIELDS:
            raise ValueError(f"sort_by must be one of: {', '.join(SORTABLE_FIELDS)}")
        return v

    @field_validator("sort_order")
    @classmethod
    def validate_sort_order(cls, v: int) -> int:
        if v not in (1, -1):
            raise ValueError("sort_order must be 1 or -1")
        return v


class AssetUsageResponse(BaseModel):
    """One usage history entry."""

    model_config = ConfigDict(from_attributes=True)

    project_id: Optional[str] = None
    template_id: Optional[str] = None
    added_at: datetime


class AssetSummary(BaseModel):
    """Asset fields returned in list views (never includes content)."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Record identifier")
    asset_id: str = Field(..., description="Human-readable asset identifier")
    original_path: str
    name: str
    filename: str
    mime_type: str
    blob_url: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    auto_tags: list[str] = Field(default_factory=list)
    usage_count: int
    is_active: bool
    created_at: datetime
    last_used: datetime


class AssetInfo(AssetSummary):
    """Full asset metadata, including usage history."""

    asset_metadata: Optional[dict] = None
    used_in_projects: list[AssetUsageResponse] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class SearchResponse(BaseModel):
    """Paginated search result."""

    assets: list[AssetSummary]
    pagination: Pagination
    query: dict[str, Any] = Field(default_factory=dict, description="Filters that were applied")


class ProcessDesignRequest(BaseModel):
    """Canvas objects of a design about to be saved."""

    canvas_objects: list[dict[str, Any]] = Field(..., description="Canvas objects as sent by the editor")
    project_id: Optional[str] = Field(None, description="Project ID, possibly a temporary placeholder")
    template_id: Optional[str] = Field(None, description="Template ID, possibly a temporary placeholder")
    user_id: Optional[str] = Field(None, description="Owner used to namespace uploaded blobs")


class ProcessDesignResponse(BaseModel):
    canvas_objects: list[dict[str, Any]]
    message: str = "Assets processed successfully"


class RecordUsageRequest(BaseModel):
    """Canvas objects of a design that now has its persistent ID."""

    canvas_objects: list[dict[str, Any]]
    project_id: Optional[str] = None
    template_id: Optional[str] = None


class RecordUsageResponse(BaseModel):
    updated_count: int


class CleanupRequest(BaseModel):
    days_old: int = Field(30, ge=0, description="Remove assets not used in this many days")
    soft: bool = Field(False, description="Deactivate instead of deleting")


class CleanupResponse(BaseModel):
    deleted_count: int
    message: str


class TagUpdate(BaseModel):
    """Tags to add to and remove from an asset."""

    add_tags: list[str] = Field(default_factory=list)
    remove_tags: list[str] = Field(default_factory=list)

    @field_validator("add_tags", "remove_tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: Any) -> Any:
        return _normalize_tag_list(v)


class TagUpdateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    asset_id: str
    name: str
    tags: list[str]
    auto_tags: list[str]


class TagCount(BaseModel):
    tag: str
    count: int


class PopularTagsResponse(BaseModel):
    user_tags: list[TagCount]
    auto_tags: list[TagCount]


class SubcategorySummary(BaseModel):
    count: int
    usage: int


class CategorySummary(BaseModel):
    total: int = 0
    total_usage: int = 0
    subcategories: dict[str, SubcategorySummary] = Field(default_factory=dict)


class CategoriesResponse(BaseModel):
    categories: dict[str, CategorySummary]


class CategoryUsageStats(BaseModel):
    category: str
    count: int
    total_usage: int
    avg_usage: float


class AssetStatsResponse(BaseModel):
    total_assets: int
    total_usage: int
    category_stats: list[CategoryUsageStats]


class BucketUrlResponse(BaseModel):
    asset_id: str
    bucket_url: str
    name: str
    mime_type: str
