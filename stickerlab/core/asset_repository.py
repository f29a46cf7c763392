"""Queries and mutations on the asset document store.

These functions are the model-level operations of ``Asset``: content-hash
deduplication, usage tracking, tagging, search and aggregate statistics.
Each mutating function commits the session it is given.
"""

import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, defer

from stickerlab.core.classification import (
    compute_hash,
    detect_category,
    detect_subcategory,
    generate_asset_id,
    generate_auto_tags,
    generate_tags,
    human_readable_name,
    is_persistent_id,
    split_asset_path,
)
from stickerlab.models.asset import TAG_KIND_AUTO, TAG_KIND_USER, Asset, AssetTag, AssetUsage, new_object_id
from stickerlab.schemas.asset import AssetDescriptor, SearchOptions

logger = logging.getLogger(__name__)

MAX_CREATE_ATTEMPTS = 3

# SQLSTATE class 53 (insufficient resources) and 54000 (program limit exceeded)
RESOURCE_LIMIT_SQLSTATE_CLASS = "53"
PROGRAM_LIMIT_SQLSTATE = "54000"


class AssetConflictError(Exception):
    """Raised when a new asset cannot be inserted after repeated unique-key conflicts."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_by_id(db: Session, record_id: str) -> Optional[Asset]:
    """Get an asset by its 24-hex record ID. Malformed IDs return None."""
    if not is_persistent_id(record_id):
        return None
    return db.query(Asset).filter(Asset.id == record_id.lower()).first()


def get_by_hash(db: Session, content_hash: str) -> Optional[Asset]:
    return db.query(Asset).filter(Asset.hash == content_hash).first()


def get_by_asset_id(db: Session, asset_id: str, active_only: bool = True) -> Optional[Asset]:
    """Get an asset by its human-readable asset ID."""
    query = db.query(Asset).filter(Asset.asset_id == asset_id)
    if active_only:
        query = query.filter(Asset.is_active.is_(True))
    return query.first()


def _build_asset(descriptor: AssetDescriptor, content_hash: str, suffix: Optional[str] = None) -> Asset:
    """Construct a new, unsaved Asset with derived names, tags and categories."""
    original_path = descriptor.original_path
    filename, stem = split_asset_path(original_path)
    category = descriptor.category or detect_category(original_path)
    now = _utcnow()

    asset = Asset(
        id=new_object_id(),
        hash=content_hash,
        asset_id=generate_asset_id(category, stem, suffix),
        original_path=original_path,
        name=human_readable_name(original_path),
        filename=filename,
        content=descriptor.content,
        mime_type=descriptor.mime_type,
        blob_url=descriptor.blob_url,
        blob_file_name=descriptor.blob_file_name,
        category=category,
        subcategory=descriptor.subcategory or detect_subcategory(original_path),
        usage_count=1,
        asset_metadata={"size": len(descriptor.content.encode("utf-8"))},
        is_active=True,
        created_at=now,
        last_used=now,
    )
    asset.tag_rows = [AssetTag(tag=tag, kind=TAG_KIND_USER) for tag in generate_tags(original_path)] + [
        AssetTag(tag=tag, kind=TAG_KIND_AUTO) for tag in generate_auto_tags(descriptor.content, descriptor.mime_type)
    ]
    return asset


def find_or_create(db: Session, descriptor: AssetDescriptor) -> Asset:
    """Return the asset holding this content, creating it on first sight.

    If a record with the same content hash exists, its usage count is
    incremented and ``last_used`` refreshed. Otherwise a new record is built
    with generated asset ID, name, tags and categories.

    A unique-key violation on insert means another writer created the same
    content (or the same asset ID) concurrently: the session is rolled back,
    the hash is looked up again, and creation is retried with a random
    asset-ID suffix if the record still does not exist.

    Args:
        db: Database session
        descriptor: Validated asset content and hints

    Returns:
        Asset: The existing or newly created asset

    Raises:
        AssetConflictError: If the insert keeps conflicting
    """
    content_hash = compute_hash(descriptor.content)

    for attempt in range(MAX_CREATE_ATTEMPTS):
        existing = get_by_hash(db, content_hash)
        if existing is not None:
            existing.usage_count = Asset.usage_count + 1
            existing.last_used = _utcnow()
            db.commit()
            db.refresh(existing)
            logger.info(f"Asset already exists for hash {content_hash[:12]}: {existing.asset_id}")
            return existing

        suffix = secrets.token_hex(3) if attempt else None
        asset = _build_asset(descriptor, content_hash, suffix)
        db.add(asset)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning(
                f"Unique constraint conflict creating asset for {descriptor.original_path} "
                f"(attempt {attempt + 1}/{MAX_CREATE_ATTEMPTS}), re-checking hash"
            )
            continue

        db.refresh(asset)
        logger.info(f"Created asset {asset.asset_id} ({asset.category}) from {asset.original_path}")
        return asset

    raise AssetConflictError(f"Could not create asset for {descriptor.original_path} after {MAX_CREATE_ATTEMPTS} attempts")


def _usage_entry(record_id: str, project_id: Optional[str], template_id: Optional[str]) -> Optional[AssetUsage]:
    """Build a usage history row, or None if neither owner ID is persistent."""
    project_id = project_id if is_persistent_id(project_id) else None
    template_id = template_id if is_persistent_id(template_id) else None
    if project_id is None and template_id is None:
        return None
    return AssetUsage(asset_id=record_id, project_id=project_id, template_id=template_id, added_at=_utcnow())


def record_usage(
    db: Session,
    record_id: str,
    project_id: Optional[str] = None,
    template_id: Optional[str] = None,
    increment: bool = True,
) -> bool:
    """Record one use of an asset.

    Increments ``usage_count`` in the database (when ``increment``), stamps
    ``last_used`` and appends a usage history entry if the project or
    template ID is a saved record ID. Placeholder IDs of unsaved designs are
    not written to history.

    Args:
        db: Database session
        record_id: Asset record ID
        project_id: Owning project ID, saved or placeholder
        template_id: Owning template ID, saved or placeholder
        increment: Whether to increment the usage count

    Returns:
        bool: False if no asset has this ID
    """
    values: dict[Any, Any] = {Asset.last_used: _utcnow()}
    if increment:
        values[Asset.usage_count] = Asset.usage_count + 1

    updated = db.query(Asset).filter(Asset.id == record_id).update(values, synchronize_session="fetch")
    if not updated:
        db.rollback()
        return False

    entry = _usage_entry(record_id, project_id, template_id)
    if entry is not None:
        db.add(entry)
    else:
        logger.debug(f"Skipping usage history for asset {record_id}: no persistent owner ID ({project_id}, {template_id})")

    db.commit()
    return True


def add_usage(
    db: Session,
    asset: Asset,
    project_id: Optional[str] = None,
    template_id: Optional[str] = None,
) -> Asset:
    """Increment usage of an asset and record the owner if it is saved."""
    record_usage(db, asset.id, project_id, template_id)
    db.refresh(asset)
    return asset


def add_tags(db: Session, asset: Asset, tags: Iterable[str]) -> list[str]:
    """Add user tags (lowercased, deduplicated). Returns the resulting tags."""
    existing = set(asset.tags)
    for tag in tags:
        tag = tag.strip().lower()
        if tag and tag not in existing:
            asset.tag_rows.append(AssetTag(tag=tag, kind=TAG_KIND_USER))
            existing.add(tag)
    db.commit()
    db.refresh(asset)
    return asset.tags


def remove_tags(db: Session, asset: Asset, tags: Iterable[str]) -> list[str]:
    """Remove user tags. Auto tags are left alone. Returns the resulting tags."""
    to_remove = {tag.strip().lower() for tag in tags}
    for row in list(asset.tag_rows):
        if row.kind == TAG_KIND_USER and row.tag in to_remove:
            asset.tag_rows.remove(row)
    db.commit()
    db.refresh(asset)
    return asset.tags


def deactivate(db: Session, asset: Asset) -> Asset:
    """Soft-delete an asset: hidden from search, still resolvable by ID."""
    asset.is_active = False
    db.commit()
    db.refresh(asset)
    return asset


def delete(db: Session, asset: Asset) -> None:
    db.delete(asset)
    db.commit()


def find_unused(db: Session, days_old: int) -> list[Asset]:
    """Assets not used in ``days_old`` days and referenced at most once."""
    cutoff = _utcnow() - timedelta(days=days_old)
    return db.query(Asset).filter(Asset.last_used < cutoff, Asset.usage_count <= 1).all()


def is_resource_limit_error(error: DBAPIError) -> bool:
    """Whether a database error means the query ran out of memory or hit a server limit."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if not isinstance(code, str):
        return False
    return code.startswith(RESOURCE_LIMIT_SQLSTATE_CLASS) or code == PROGRAM_LIMIT_SQLSTATE


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_search_filters(options: SearchOptions) -> list[Any]:
    """Translate search options into SQLAlchemy filter conditions.

    Tag membership and free-text matches are alternatives: an asset
    satisfying any of them passes.
    """
    conditions: list[Any] = []

    if options.is_active is not None:
        conditions.append(Asset.is_active.is_(options.is_active))
    if options.category:
        conditions.append(Asset.category == options.category)
    if options.subcategory:
        conditions.append(Asset.subcategory == options.subcategory)

    alternatives: list[Any] = []
    if options.tags:
        alternatives.append(Asset.tag_rows.any(AssetTag.tag.in_(options.tags)))
    if options.query:
        pattern = f"%{_escape_like(options.query)}%"
        alternatives.extend(
            [
                Asset.name.ilike(pattern, escape="\\"),
                Asset.filename.ilike(pattern, escape="\\"),
                Asset.asset_id.ilike(pattern, escape="\\"),
                Asset.tag_rows.any(AssetTag.tag.ilike(pattern, escape="\\")),
            ]
        )
    if alternatives:
        conditions.append(or_(*alternatives))

    return conditions


def _sorted_page(db: Session, conditions: list[Any], options: SearchOptions) -> list[Asset]:
    sort_column = getattr(Asset, options.sort_by)
    order = sort_column.desc() if options.sort_order < 0 else sort_column.asc()
    return (
        db.query(Asset)
        .options(defer(Asset.content))
        .filter(*conditions)
        .order_by(order, Asset.id)
        .offset((options.page - 1) * options.limit)
        .limit(options.limit)
        .all()
    )


def _unsorted_page(db: Session, conditions: list[Any], options: SearchOptions) -> list[Asset]:
    return (
        db.query(Asset)
        .options(defer(Asset.content))
        .filter(*conditions)
        .offset((options.page - 1) * options.limit)
        .limit(options.limit)
        .all()
    )


def search_assets(db: Session, options: SearchOptions) -> dict[str, Any]:
    """Search assets with filters, pagination and ordering.

    The sorted query is tried first. If the database rejects it for
    exhausting memory or another server resource limit, the same filter is
    run again without ordering; pagination is preserved but result order is
    unspecified. Content is never loaded.

    Args:
        db: Database session
        options: Search options

    Returns:
        dict[str, Any]: ``{"assets", "pagination", "query"}``

    Raises:
        DBAPIError: For database errors other than resource limits
    """
    conditions = build_search_filters(options)

    try:
        assets = _sorted_page(db, conditions, options)
    except DBAPIError as e:
        if not is_resource_limit_error(e):
            raise
        logger.info(f"Sorted asset search exceeded a resource limit, falling back to unsorted query: {e.orig}")
        db.rollback()
        assets = _unsorted_page(db, conditions, options)

    total = db.query(func.count(Asset.id)).filter(*conditions).scalar() or 0

    return {
        "assets": assets,
        "pagination": {
            "page": options.page,
            "limit": options.limit,
            "total": total,
            "pages": math.ceil(total / options.limit),
        },
        "query": options.model_dump(exclude={"page", "limit"}),
    }


def get_popular_tags(db: Session, limit: int = 50) -> dict[str, list[dict[str, Any]]]:
    """Most used user tags and auto tags across active assets."""

    def _top(kind: str) -> list[dict[str, Any]]:
        count = func.count(AssetTag.asset_id)
        rows = (
            db.query(AssetTag.tag, count)
            .join(Asset, Asset.id == AssetTag.asset_id)
            .filter(Asset.is_active.is_(True), AssetTag.kind == kind)
            .group_by(AssetTag.tag)
            .order_by(count.desc(), AssetTag.tag)
            .limit(limit)
            .all()
        )
        return [{"tag": tag, "count": n} for tag, n in rows]

    return {"user_tags": _top(TAG_KIND_USER), "auto_tags": _top(TAG_KIND_AUTO)}


def get_category_stats(db: Session) -> list[dict[str, Any]]:
    """Asset count and total usage per (category, subcategory) over active assets."""
    rows = (
        db.query(
            Asset.category,
            Asset.subcategory,
            func.count(Asset.id),
            func.coalesce(func.sum(Asset.usage_count), 0),
        )
        .filter(Asset.is_active.is_(True))
        .group_by(Asset.category, Asset.subcategory)
        .order_by(Asset.category, Asset.subcategory)
        .all()
    )
    return [
        {"category": category, "subcategory": subcategory, "count": count, "total_usage": int(total_usage)}
        for category, subcategory, count, total_usage in rows
    ]


def get_usage_by_category(db: Session) -> list[dict[str, Any]]:
    """Asset count, total and average usage per category over all assets."""
    rows = (
        db.query(
            Asset.category,
            func.count(Asset.id),
            func.coalesce(func.sum(Asset.usage_count), 0),
            func.avg(Asset.usage_count),
        )
        .group_by(Asset.category)
        .order_by(Asset.category)
        .all()
    )
    return [
        {
            "category": category,
            "count": count,
            "total_usage": int(total_usage),
            "avg_usage": round(float(avg_usage or 0), 2),
        }
        for category, count, total_usage, avg_usage in rows
    ]
