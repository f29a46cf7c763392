"""Asset deduplication and usage tracking for design saves.

``AssetManager`` turns the image references of a canvas design into
deduplicated asset records. Content is hashed; the first time a hash is seen
the bytes are uploaded to blob storage and a record is created, later
references only bump usage. An in-process ``AssetCache`` in front of the
database short-circuits repeat lookups of the same path.

Asset bookkeeping is best-effort: ``resolve_asset`` never raises, so a design
save is never blocked by an asset problem. At worst the reference stays a
raw path.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stickerlab.config import settings
from stickerlab.core import asset_repository
from stickerlab.core.asset_cache import AssetCache, CachedAsset
from stickerlab.core.asset_repository import AssetConflictError
from stickerlab.core.classification import (
    compute_hash,
    detect_category,
    extension_for_mime_type,
    guess_mime_type,
    is_persistent_id,
    is_text_mime_type,
)
from stickerlab.core.storage import BlobStorage, StorageError, get_storage
from stickerlab.models.asset import Asset
from stickerlab.schemas.asset import AssetDescriptor

logger = logging.getLogger(__name__)

IMAGE_OBJECT_TYPE = "image"
IMAGE_PATH_KEY = "imageUrl"
ASSET_ID_KEY = "assetId"


class AssetError(Exception):
    """Raised when an asset reference cannot be resolved."""

    pass


class AssetInUseError(AssetError):
    """Raised when deleting an asset that is still referenced."""

    pass


@dataclass(frozen=True)
class OwnerRefs:
    """Project and/or template a design belongs to.

    Either ID may be a temporary placeholder (``"project-1700000000000"``)
    while the design has not been saved yet.
    """

    project_id: Optional[str] = None
    template_id: Optional[str] = None

    @property
    def has_persistent_id(self) -> bool:
        return is_persistent_id(self.project_id) or is_persistent_id(self.template_id)


class AssetManager:
    """Resolves design asset references to deduplicated asset records.

    Args:
        cache: In-process cache of resolved records, keyed by asset path
        storage: Blob storage new asset bytes are uploaded to
        public_dir: Directory canvas asset paths are relative to
        blob_prefix: Key prefix for uploaded asset blobs
    """

    def __init__(
        self,
        cache: AssetCache,
        storage: BlobStorage,
        public_dir: str | Path,
        blob_prefix: str = "assets/shapes",
    ) -> None:
        self.cache = cache
        self.storage = storage
        self.public_dir = Path(public_dir).resolve()
        self.blob_prefix = blob_prefix

    # Resolution

    def resolve_asset(
        self,
        db: Session,
        asset_path: str,
        category: Optional[str] = None,
        owner_refs: Optional[OwnerRefs] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Resolve an asset path to the ID of its deduplicated record.

        Args:
            db: Database session
            asset_path: Path of the asset relative to the public directory
            category: Category for a newly created record
            owner_refs: Project/template the design belongs to
            user_id: Owner used to namespace the uploaded blob

        Returns:
            str: Asset record ID, or ``asset_path`` unchanged if resolution failed
        """
        owner_refs = owner_refs or OwnerRefs()
        try:
            return self._resolve(db, asset_path, category, owner_refs, user_id)
        except AssetError as e:
            db.rollback()
            logger.error(f"Failed to resolve asset {asset_path}, keeping original reference: {e}")
            return asset_path

    def _resolve(
        self,
        db: Session,
        asset_path: str,
        category: Optional[str],
        owner_refs: OwnerRefs,
        user_id: Optional[str],
    ) -> str:
        """Resolve an asset path, raising AssetError on any failure."""
        try:
            cached = self.cache.get(asset_path)
            if cached is not None:
                if self._record_usage(db, cached.id, owner_refs):
                    logger.debug(f"Asset cache hit for {asset_path}: {cached.asset_id}")
                    return cached.id
                logger.info(f"Cached asset {cached.id} for {asset_path} no longer exists, evicting")
                self.cache.evict(asset_path)

            content, raw_bytes, mime_type = self._read_public_file(asset_path)
            content_hash = compute_hash(content)

            asset = asset_repository.get_by_hash(db, content_hash)
            if asset is not None:
                logger.info(f"Asset exists in database for {asset_path}: {asset.asset_id}")
                self._record_usage(db, asset.id, owner_refs)
                db.refresh(asset)
                self.cache.put(asset_path, CachedAsset.from_record(asset))
                return asset.id

            blob_url, blob_file_name = self._upload(raw_bytes, mime_type, asset_path, user_id)
            descriptor = AssetDescriptor(
                original_path=asset_path,
                content=content,
                mime_type=mime_type,
                category=category,
                blob_url=blob_url,
                blob_file_name=blob_file_name,
            )
            asset = asset_repository.find_or_create(db, descriptor)
            if blob_file_name and asset.blob_file_name != blob_file_name:
                logger.info(f"Asset {asset.asset_id} for {asset_path} was created concurrently, discarding upload")
                self._discard_blob(blob_file_name, asset.id)

            # Creation counts as the first use; only history is added here
            self._record_usage(db, asset.id, owner_refs, increment=False)
            self.cache.put(asset_path, CachedAsset.from_record(asset))

            storage_note = "blob stored" if asset.blob_url else "inline fallback"
            logger.info(f"Resolved new asset {asset_path} -> {asset.asset_id} ({storage_note})")
            return asset.id
        except AssetError:
            raise
        except (OSError, UnicodeDecodeError, ValidationError, SQLAlchemyError, AssetConflictError) as e:
            raise AssetError(f"{type(e).__name__}: {e}") from e
        except Exception as e:
            logger.exception(f"Unexpected error resolving asset {asset_path}")
            raise AssetError(f"Unexpected error: {e}") from e

    def _record_usage(self, db: Session, record_id: str, owner_refs: OwnerRefs, increment: bool = True) -> bool:
        if not owner_refs.has_persistent_id:
            logger.debug(
                f"Skipping usage history for temporary IDs: {owner_refs.project_id}, {owner_refs.template_id}"
            )
        return asset_repository.record_usage(
            db,
            record_id,
            owner_refs.project_id,
            owner_refs.template_id,
            increment=increment,
        )

    def _public_path(self, asset_path: str) -> Path:
        """Map an asset path onto the public directory.

        Raises:
            AssetError: If the path points outside the public directory
        """
        relative = asset_path.split("?", 1)[0].replace("\\", "/").lstrip("/")
        full_path = (self.public_dir / relative).resolve()
        if self.public_dir not in full_path.parents:
            raise AssetError(f"Asset path escapes the public directory: {asset_path}")
        return full_path

    def _read_public_file(self, asset_path: str) -> tuple[str, bytes, str]:
        """Read an asset from the public directory.

        Returns:
            tuple[str, bytes, str]: ``(content, raw bytes, mime type)`` where
            content is UTF-8 text for SVG/text types and base64 otherwise
        """
        full_path = self._public_path(asset_path)
        raw_bytes = full_path.read_bytes()
        mime_type = guess_mime_type(asset_path)
        if is_text_mime_type(mime_type):
            content = raw_bytes.decode("utf-8")
        else:
            content = base64.b64encode(raw_bytes).decode("ascii")
        if not content:
            raise AssetError(f"Asset file is empty: {asset_path}")
        return content, raw_bytes, mime_type

    def _upload(
        self,
        raw_bytes: bytes,
        mime_type: str,
        asset_path: str,
        user_id: Optional[str],
    ) -> tuple[Optional[str], Optional[str]]:
        """Upload new asset bytes. Failures are logged and yield ``(None, None)``."""
        try:
            blob = self.storage.put(
                raw_bytes,
                self.blob_prefix,
                user_id or "system",
                content_type=mime_type,
                extension=extension_for_mime_type(mime_type),
            )
        except StorageError as e:
            logger.warning(f"Blob upload failed for {asset_path}, storing content inline only: {e}")
            return None, None
        logger.info(f"Uploaded asset {asset_path} to blob storage: {blob.url}")
        return blob.url, blob.key

    def resolve_assets_for_design(
        self,
        db: Session,
        canvas_objects: list[dict[str, Any]],
        owner_refs: Optional[OwnerRefs] = None,
        user_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Resolve every image reference of a design before it is saved.

        Objects are processed one at a time in order. Image objects with an
        ``imageUrl`` get an ``assetId``; everything else is copied unchanged.
        The input list and its objects are not modified.

        Args:
            db: Database session
            canvas_objects: Canvas objects of the design
            owner_refs: Project/template the design belongs to
            user_id: Owner used to namespace uploaded blobs

        Returns:
            list[dict[str, Any]]: Copies of the canvas objects
        """
        owner_refs = owner_refs or OwnerRefs()
        logger.info(
            f"Processing {len(canvas_objects)} canvas objects for project {owner_refs.project_id}, "
            f"template {owner_refs.template_id}, user {user_id}"
        )

        updated_objects = []
        for obj in canvas_objects:
            updated = dict(obj)
            image_path = obj.get(IMAGE_PATH_KEY)
            if obj.get("type") == IMAGE_OBJECT_TYPE and isinstance(image_path, str) and image_path:
                updated[ASSET_ID_KEY] = self.resolve_asset(
                    db,
                    image_path,
                    detect_category(image_path),
                    owner_refs,
                    user_id,
                )
            updated_objects.append(updated)

        return updated_objects

    def record_final_usage(
        self,
        db: Session,
        canvas_objects: list[dict[str, Any]],
        project_id: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> int:
        """Backfill usage history once a design has its persistent ID.

        Args:
            db: Database session
            canvas_objects: Canvas objects as returned by ``resolve_assets_for_design``
            project_id: Saved project ID
            template_id: Saved template ID

        Returns:
            int: Number of assets whose usage was recorded
        """
        if not (is_persistent_id(project_id) or is_persistent_id(template_id)):
            logger.info(f"No persistent IDs provided ({project_id}, {template_id}), skipping usage update")
            return 0

        updated_count = 0
        for obj in canvas_objects:
            record_id = obj.get(ASSET_ID_KEY)
            if obj.get("type") != IMAGE_OBJECT_TYPE or not is_persistent_id(record_id):
                continue
            try:
                asset = asset_repository.get_by_id(db, record_id)
                if asset is None:
                    continue
                asset_repository.add_usage(db, asset, project_id, template_id)
                updated_count += 1
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Error updating usage for asset {record_id}: {e}")

        logger.info(f"Updated usage for {updated_count} assets")
        return updated_count

    # Reads

    def get_asset(self, db: Session, record_id: str) -> Optional[Asset]:
        """Get an asset record by ID and remember it in the cache."""
        try:
            asset = asset_repository.get_by_id(db, record_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error retrieving asset {record_id}: {e}")
            return None
        if asset is not None:
            self.cache.put(asset.original_path, CachedAsset.from_record(asset))
        return asset

    def get_asset_content(self, db: Session, asset_id_or_path: str) -> Optional[str]:
        """Content for rendering: blob URL, inline content, or the file itself.

        Args:
            db: Database session
            asset_id_or_path: Asset record ID or original asset path

        Returns:
            Optional[str]: Blob URL if the asset was uploaded, otherwise its
            inline content; for unknown IDs and plain paths the file is read
            from the public directory. None if nothing can be read.
        """
        if is_persistent_id(asset_id_or_path):
            asset = self.get_asset(db, asset_id_or_path)
            if asset is not None:
                return asset.blob_url or asset.content

        try:
            return self._read_public_file(asset_id_or_path)[0]
        except (AssetError, OSError, UnicodeDecodeError) as e:
            logger.error(f"Fallback read failed for {asset_id_or_path}: {e}")
            return None

    def get_asset_url(self, db: Session, asset_id_or_path: str) -> str:
        """URL a client can render an asset from.

        Uploaded assets resolve to their blob URL, other known assets to the
        content endpoint; anything else is returned unchanged.
        """
        if is_persistent_id(asset_id_or_path):
            cached = self.cache.find_by_id(asset_id_or_path)
            if cached is not None and cached.blob_url:
                return cached.blob_url
            asset = self.get_asset(db, asset_id_or_path)
            if asset is not None:
                return asset.blob_url or f"/api/assets/{asset.id}"
        return asset_id_or_path

    def read_asset_bytes(self, asset: Asset) -> bytes:
        """Fetch asset bytes from blob storage, falling back to inline content."""
        if asset.blob_file_name:
            try:
                return self.storage.get(asset.blob_file_name)
            except StorageError as e:
                logger.warning(f"Blob fetch failed for {asset.asset_id}, serving stored content: {e}")

        if is_text_mime_type(asset.mime_type):
            return asset.content.encode("utf-8")
        try:
            return base64.b64decode(asset.content, validate=True)
        except (binascii.Error, ValueError):
            return asset.content.encode("utf-8")

    # Administration

    def cleanup_unused(self, db: Session, days_old: int = 30, soft: bool = False) -> int:
        """Remove assets unused for ``days_old`` days with at most one use.

        Args:
            db: Database session
            days_old: Age threshold on ``last_used``
            soft: Deactivate instead of deleting

        Returns:
            int: Number of assets removed
        """
        unused = asset_repository.find_unused(db, days_old)
        logger.info(f"Found {len(unused)} unused assets to clean up (older than {days_old} days)")

        record_ids = {asset.id for asset in unused}
        for asset in unused:
            if soft:
                asset.is_active = False
            else:
                db.delete(asset)
        db.commit()

        if not soft:
            self.cache.evict_ids(record_ids)
        return len(record_ids)

    def delete_asset(self, db: Session, asset: Asset) -> None:
        """Hard-delete an asset that nothing uses any more.

        Raises:
            AssetInUseError: If the asset's usage count is not zero
        """
        if asset.usage_count > 0:
            raise AssetInUseError(f"Cannot delete asset that is still in use (usage count {asset.usage_count})")

        record_id, blob_file_name = asset.id, asset.blob_file_name
        asset_repository.delete(db, asset)
        self.cache.evict_ids({record_id})

        if blob_file_name:
            self._discard_blob(blob_file_name, record_id)

    def _discard_blob(self, blob_file_name: str, record_id: str) -> None:
        """Delete a blob no record points to. Failures are only logged."""
        try:
            self.storage.delete(blob_file_name)
        except StorageError as e:
            logger.warning(f"Failed to delete blob {blob_file_name} of asset {record_id}: {e}")

    def get_asset_stats(self, db: Session) -> dict[str, Any]:
        """Usage statistics per category and overall."""
        category_stats = asset_repository.get_usage_by_category(db)
        return {
            "total_assets": sum(stat["count"] for stat in category_stats),
            "total_usage": sum(stat["total_usage"] for stat in category_stats),
            "category_stats": category_stats,
        }


# Global asset manager instance
_asset_manager: AssetManager | None = None


def get_asset_manager() -> AssetManager:
    """Get the process-wide asset manager, building it on first use.

    Returns:
        AssetManager: Asset manager with its own in-process cache
    """
    global _asset_manager
    if _asset_manager is None:
        _asset_manager = AssetManager(
            cache=AssetCache(max_size=settings.asset_cache_size),
            storage=get_storage(),
            public_dir=settings.public_dir,
            blob_prefix=settings.asset_blob_prefix,
        )
    return _asset_manager
