"""Asset router."""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import RedirectResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from stickerlab.core import asset_repository
from stickerlab.core.asset_manager import AssetInUseError, AssetManager, OwnerRefs, get_asset_manager
from stickerlab.core.dependencies import require_admin
from stickerlab.database import get_db
from stickerlab.models.asset import Asset
from stickerlab.schemas.asset import (
    AssetInfo,
    AssetStatsResponse,
    AssetSummary,
    BucketUrlResponse,
    CategoriesResponse,
    CategorySummary,
    CleanupRequest,
    CleanupResponse,
    PopularTagsResponse,
    ProcessDesignRequest,
    ProcessDesignResponse,
    RecordUsageRequest,
    RecordUsageResponse,
    SearchOptions,
    SearchResponse,
    SubcategorySummary,
    TagUpdate,
    TagUpdateResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assets", tags=["assets"])

ASSET_CACHE_CONTROL = "public, max-age=31536000"


def _search(db: Session, **options) -> SearchResponse:
    """Run an asset search, turning invalid options into a 422."""
    try:
        search_options = SearchOptions(**options)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        ) from e

    result = asset_repository.search_assets(db, search_options)
    return SearchResponse(
        assets=[AssetSummary.model_validate(asset) for asset in result["assets"]],
        pagination=result["pagination"],
        query=result["query"],
    )


def _get_record_or_404(db: Session, record_id: str) -> Asset:
    asset = asset_repository.get_by_id(db, record_id)
    if not asset:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Asset not found",
        )
    return asset


def _get_active_or_404(db: Session, asset_id: str) -> Asset:
    asset = asset_repository.get_by_asset_id(db, asset_id)
    if not asset:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Asset not found",
        )
    return asset


@router.get("", response_model=SearchResponse)
def list_assets(
    db: Annotated[Session, Depends(get_db)],
    page: int = 1,
    limit: int = 50,
) -> SearchResponse:
    """List active assets with pagination.

    Args:
        db: Database session
        page: Page number, starting at 1
        limit: Page size

    Returns:
        SearchResponse: A page of assets (without content)
    """
    logger.info(f"Listing assets - page: {page}, limit: {limit}")
    return _search(db, page=page, limit=limit)


@router.get("/search", response_model=SearchResponse)
def search_assets(
    db: Annotated[Session, Depends(get_db)],
    q: str = "",
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    tags: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "usage_count",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
) -> SearchResponse:
    """Search assets by text, category, subcategory and tags.

    Args:
        db: Database session
        q: Text matched against names, filenames, tags and asset IDs
        category: Exact category
        subcategory: Exact subcategory
        tags: Comma-separated tags; assets with any of them match
        page: Page number
        limit: Page size
        sort_by: Field to sort by
        sort_order: ``asc`` or ``desc``

    Returns:
        SearchResponse: Matching assets and pagination
    """
    return _search(
        db,
        query=q,
        category=category,
        subcategory=subcategory,
        tags=tags,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=1 if sort_order == "asc" else -1,
    )


@router.get("/tags", response_model=PopularTagsResponse)
def get_popular_tags(
    db: Annotated[Session, Depends(get_db)],
    limit: int = Query(50, ge=1, le=500),
) -> PopularTagsResponse:
    """Most used tags, for building search filters."""
    return PopularTagsResponse(**asset_repository.get_popular_tags(db, limit))


@router.get("/categories", response_model=CategoriesResponse)
def get_categories(db: Annotated[Session, Depends(get_db)]) -> CategoriesResponse:
    """Asset counts and usage per category, broken down by subcategory."""
    organized: dict[str, CategorySummary] = {}
    for stat in asset_repository.get_category_stats(db):
        summary = organized.setdefault(stat["category"], CategorySummary())
        summary.total += stat["count"]
        summary.total_usage += stat["total_usage"]
        if stat["subcategory"]:
            summary.subcategories[stat["subcategory"]] = SubcategorySummary(
                count=stat["count"],
                usage=stat["total_usage"],
            )
    return CategoriesResponse(categories=organized)


@router.post("/process-design", response_model=ProcessDesignResponse)
def process_design(
    request: ProcessDesignRequest,
    db: Annotated[Session, Depends(get_db)],
    manager: Annotated[AssetManager, Depends(get_asset_manager)],
) -> ProcessDesignResponse:
    """Resolve the image references of a design before it is saved.

    Args:
        request: Canvas objects plus project/template/user IDs
        db: Database session
        manager: Asset manager

    Returns:
        ProcessDesignResponse: Canvas objects with ``assetId`` set on images
    """
    canvas_objects = manager.resolve_assets_for_design(
        db,
        request.canvas_objects,
        OwnerRefs(project_id=request.project_id, template_id=request.template_id),
        request.user_id,
    )
    return ProcessDesignResponse(canvas_objects=canvas_objects)


@router.post("/record-usage", response_model=RecordUsageResponse)
def record_usage(
    request: RecordUsageRequest,
    db: Annotated[Session, Depends(get_db)],
    manager: Annotated[AssetManager, Depends(get_asset_manager)],
) -> RecordUsageResponse:
    """Record asset usage for a design that now has its persistent ID."""
    updated_count = manager.record_final_usage(
        db,
        request.canvas_objects,
        request.project_id,
        request.template_id,
    )
    return RecordUsageResponse(updated_count=updated_count)


@router.get("/admin/stats", response_model=AssetStatsResponse, dependencies=[Depends(require_admin)])
def get_asset_stats(
    db: Annotated[Session, Depends(get_db)],
    manager: Annotated[AssetManager, Depends(get_asset_manager)],
) -> AssetStatsResponse:
    """Asset usage statistics (admin only)."""
    return AssetStatsResponse(**manager.get_asset_stats(db))


@router.post("/admin/cleanup", response_model=CleanupResponse, dependencies=[Depends(require_admin)])
def cleanup_assets(
    request: CleanupRequest,
    db: Annotated[Session, Depends(get_db)],
    manager: Annotated[AssetManager, Depends(get_asset_manager)],
) -> CleanupResponse:
    """Clean up unused assets (admin only)."""
    deleted_count = manager.cleanup_unused(db, request.days_old, soft=request.soft)
    action = "Deactivated" if request.soft else "Cleaned up"
    return CleanupResponse(
        deleted_count=deleted_count,
        message=f"{action} {deleted_count} unused assets",
    )


@router.get("/admin/list", response_model=SearchResponse, dependencies=[Depends(require_admin)])
def admin_list_assets(
    db: Annotated[Session, Depends(get_db)],
    q: str = "",
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    tags: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    sort_by: str = "usage_count",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    is_active: Optional[bool] = None,
) -> SearchResponse:
    """List assets including inactive ones unless ``is_active`` is given (admin only)."""
    return _search(
        db,
        query=q,
        category=category,
        subcategory=subcategory,
        tags=tags,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=1 if sort_order == "asc" else -1,
        is_active=is_active,
    )


@router.delete(
    "/admin/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def delete_asset(
    record_id: str,
    db: Annotated[Session, Depends(get_db)],
    manager: Annotated[AssetManager, Depends(get_asset_manager)],
) -> None:
    """Delete an asset that is no longer used (admin only).

    Raises:
        HTTPException: 404 if the asset does not exist, 400 if it is still in use
    """
    asset = _get_record_or_404(db, record_id)
    try:
        manager.delete_asset(db, asset)
    except AssetInUseError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e


@router.put("/admin/{record_id}/deactivate", response_model=AssetSummary, dependencies=[Depends(require_admin)])
def deactivate_asset(
    record_id: str,
    db: Annotated[Session, Depends(get_db)],
) -> AssetSummary:
    """Hide an asset from search without deleting it (admin only)."""
    asset = _get_record_or_404(db, record_id)
    asset = asset_repository.deactivate(db, asset)
    return AssetSummary.model_validate(asset)


@router.put("/admin/{record_id}/tags", response_model=TagUpdateResponse, dependencies=[Depends(require_admin)])
def update_asset_tags(
    record_id: str,
    tag_update: TagUpdate,
    db: Annotated[Session, Depends(get_db)],
) -> TagUpdateResponse:
    """Add and remove user tags of an asset (admin only)."""
    asset = _get_record_or_404(db, record_id)
    if tag_update.add_tags:
        asset_repository.add_tags(db, asset, tag_update.add_tags)
    if tag_update.remove_tags:
        asset_repository.remove_tags(db, asset, tag_update.remove_tags)
    return TagUpdateResponse.model_validate(asset)


@router.get("/by-id/{asset_id}")
def serve_asset_by_asset_id(
    asset_id: str,
    db: Annotated[Session, Depends(get_db)],
    manager: Annotated[AssetManager, Depends(get_asset_manager)],
) -> Response:
    """Serve asset bytes by human-readable asset ID.

    Uploaded assets are fetched from blob storage; if that fails the inline
    content stored with the record is served instead.
    """
    asset = _get_active_or_404(db, asset_id)
    content = manager.read_asset_bytes(asset)
    return Response(
        content=content,
        media_type=asset.mime_type,
        headers={"Cache-Control": ASSET_CACHE_CONTROL},
    )


@router.get("/info/{asset_id}", response_model=AssetInfo)
def get_asset_info(
    asset_id: str,
    db: Annotated[Session, Depends(get_db)],
) -> AssetInfo:
    """Asset metadata and usage history by asset ID."""
    asset = _get_active_or_404(db, asset_id)
    return AssetInfo.model_validate(asset)


@router.get("/bucket-url/{asset_id}", response_model=BucketUrlResponse)
def get_bucket_url(
    asset_id: str,
    db: Annotated[Session, Depends(get_db)],
) -> BucketUrlResponse:
    """External blob URL of an asset, for services that fetch it directly."""
    asset = _get_active_or_404(db, asset_id)
    if not asset.blob_url:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Asset has no external URL available",
        )
    return BucketUrlResponse(
        asset_id=asset.asset_id,
        bucket_url=asset.blob_url,
        name=asset.name,
        mime_type=asset.mime_type,
    )


# Must stay last: matches any single path segment
@router.get("/{record_id}")
def serve_asset(
    record_id: str,
    db: Annotated[Session, Depends(get_db)],
    manager: Annotated[AssetManager, Depends(get_asset_manager)],
) -> Response:
    """Serve an asset by record ID: redirect to its blob, or send stored content."""
    asset = manager.get_asset(db, record_id)
    if not asset:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Asset not found",
        )

    if asset.blob_url:
        return RedirectResponse(asset.blob_url, status_code=status.HTTP_302_FOUND)

    return Response(
        content=manager.read_asset_bytes(asset),
        media_type=asset.mime_type,
        headers={"Cache-Control": ASSET_CACHE_CONTROL},
    )
