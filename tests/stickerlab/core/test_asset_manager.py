"""Tests for AssetManager resolution, usage tracking and administration."""

import base64
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stickerlab.core import asset_repository
from stickerlab.core.asset_cache import AssetCache
from stickerlab.core.asset_manager import AssetInUseError, AssetManager, OwnerRefs
from stickerlab.core.classification import is_persistent_id
from stickerlab.core.storage import BlobStorage, LocalBlobStorage, StorageError
from stickerlab.models.asset import Asset, AssetUsage, new_object_id
from stickerlab.schemas.asset import AssetDescriptor

HEART_PATH = "stock/icons/heart_outline.svg"
STAR_PATH = "stock/shapes/geometric/star_big.svg"
PHOTO_PATH = "stock/images/photo.png"
TEMP_PROJECT_ID = "project-1700000000000"
TEMP_TEMPLATE_ID = "template-1700000000000"


@pytest.fixture
def failing_storage() -> MagicMock:
    storage = MagicMock(spec=BlobStorage)
    storage.put.side_effect = StorageError("bucket unavailable")
    storage.get.side_effect = StorageError("bucket unavailable")
    return storage


@pytest.fixture
def offline_manager(failing_storage: MagicMock, public_dir: Path) -> AssetManager:
    """Asset manager whose blob storage is unreachable."""
    return AssetManager(AssetCache(max_size=10), failing_storage, public_dir)


class TestResolveAsset:
    """Tests for AssetManager.resolve_asset()."""

    def test__first_resolution__creates_uploads_and_caches(
        self,
        test_db_session: Session,
        asset_manager: AssetManager,
        temp_storage: LocalBlobStorage,
        public_dir: Path,
        project_id: str,
    ):
        record_id = asset_manager.resolve_asset(
            test_db_session,
            HEART_PATH,
            "icons",
            OwnerRefs(project_id=project_id, template_id=TEMP_TEMPLATE_ID),
            "user-1",
        )

        assert is_persistent_id(record_id)
        asset = test_db_session.get(Asset, record_id)
        assert asset.usage_count == 1
        assert asset.category == "icons"
        assert asset.content == (public_dir / HEART_PATH).read_text()
        assert asset.blob_url.startswith("/blobs/assets/shapes/user-1/")
        assert asset.blob_file_name.endswith(".svg")
        assert temp_storage.get(asset.blob_file_name) == (public_dir / HEART_PATH).read_bytes()
        assert [(u.project_id, u.template_id) for u in asset.used_in_projects] == [(project_id, None)]
        assert HEART_PATH in asset_manager.cache

    def test__repeat_resolution__hits_cache_and_counts_once(
        self, test_db_session: Session, asset_manager: AssetManager, project_id: str
    ):
        owner = OwnerRefs(project_id=project_id)
        first = asset_manager.resolve_asset(test_db_session, HEART_PATH, owner_refs=owner)

        with patch.object(asset_repository, "get_by_hash") as mock_get_by_hash:
            second = asset_manager.resolve_asset(test_db_session, HEART_PATH, owner_refs=owner)

        mock_get_by_hash.assert_not_called()
        assert second == first
        asset = test_db_session.get(Asset, first)
        test_db_session.refresh(asset)
        assert asset.usage_count == 2
        assert len(asset.used_in_projects) == 2

    def test__same_content_at_new_path__reuses_record(
        self, test_db_session: Session, asset_manager: AssetManager, public_dir: Path
    ):
        copy_path = "uploads/heart-copy.svg"
        (public_dir / "uploads").mkdir()
        (public_dir / copy_path).write_bytes((public_dir / HEART_PATH).read_bytes())

        first = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        second = asset_manager.resolve_asset(test_db_session, copy_path)

        assert second == first
        assert test_db_session.query(Asset).count() == 1
        asset = test_db_session.get(Asset, first)
        test_db_session.refresh(asset)
        assert asset.usage_count == 2
        assert asset.original_path == HEART_PATH
        assert copy_path in asset_manager.cache

    def test__temporary_owner_ids__count_usage_without_history(
        self, test_db_session: Session, asset_manager: AssetManager
    ):
        owner = OwnerRefs(project_id=TEMP_PROJECT_ID, template_id=TEMP_TEMPLATE_ID)

        record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH, owner_refs=owner)
        asset_manager.resolve_asset(test_db_session, HEART_PATH, owner_refs=owner)

        asset = test_db_session.get(Asset, record_id)
        test_db_session.refresh(asset)
        assert asset.usage_count == 2
        assert test_db_session.query(AssetUsage).count() == 0

    def test__upload_failure__stores_content_inline(
        self, test_db_session: Session, offline_manager: AssetManager, failing_storage: MagicMock
    ):
        record_id = offline_manager.resolve_asset(test_db_session, HEART_PATH, user_id="user-1")

        failing_storage.put.assert_called_once()
        asset = test_db_session.get(Asset, record_id)
        assert asset.blob_url is None
        assert asset.blob_file_name is None
        assert asset.content.startswith("<svg")

    def test__blob_directory_not_creatable__still_creates_record(
        self, test_db_session: Session, asset_manager: AssetManager, temp_storage: LocalBlobStorage
    ):
        (temp_storage.base_path / "assets").write_bytes(b"not a directory")

        record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH, user_id="user-1")

        assert is_persistent_id(record_id)
        asset = test_db_session.get(Asset, record_id)
        assert asset.blob_url is None
        assert asset.blob_file_name is None
        assert asset.usage_count == 1
        assert test_db_session.query(Asset).count() == 1

    def test__record_created_concurrently__discards_uploaded_blob(
        self,
        test_db_session: Session,
        asset_manager: AssetManager,
        temp_storage: LocalBlobStorage,
        public_dir: Path,
    ):
        existing = asset_repository.find_or_create(
            test_db_session,
            AssetDescriptor(
                original_path="uploads/heart-copy.svg",
                content=(public_dir / HEART_PATH).read_text(),
                mime_type="image/svg+xml",
            ),
        )
        real_get_by_hash = asset_repository.get_by_hash
        lookups = []

        def miss_until_insert_conflicts(db, content_hash):
            lookups.append(content_hash)
            if len(lookups) <= 2:
                return None
            return real_get_by_hash(db, content_hash)

        with patch.object(asset_repository, "get_by_hash", side_effect=miss_until_insert_conflicts):
            record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH, user_id="user-1")

        assert record_id == existing.id
        assert test_db_session.query(Asset).count() == 1
        assert test_db_session.get(Asset, record_id).blob_file_name is None
        assert [p for p in temp_storage.base_path.rglob("*") if p.is_file()] == []

    def test__binary_asset__stored_as_base64(
        self, test_db_session: Session, offline_manager: AssetManager, public_dir: Path
    ):
        record_id = offline_manager.resolve_asset(test_db_session, PHOTO_PATH)

        asset = test_db_session.get(Asset, record_id)
        raw = (public_dir / PHOTO_PATH).read_bytes()
        assert asset.mime_type == "image/png"
        assert asset.content == base64.b64encode(raw).decode("ascii")
        assert asset.auto_tags == []
        assert offline_manager.read_asset_bytes(asset) == raw

    @pytest.mark.parametrize("asset_path", ["stock/icons/missing.svg", "../outside.svg", "/../../etc/passwd"])
    def test__unreadable_path__returns_path_unchanged(
        self, test_db_session: Session, asset_manager: AssetManager, asset_path: str
    ):
        assert asset_manager.resolve_asset(test_db_session, asset_path) == asset_path
        assert test_db_session.query(Asset).count() == 0

    def test__database_failure__returns_path_and_keeps_session_usable(
        self, test_db_session: Session, asset_manager: AssetManager
    ):
        with patch.object(asset_repository, "find_or_create", side_effect=SQLAlchemyError("connection lost")):
            result = asset_manager.resolve_asset(test_db_session, HEART_PATH)

        assert result == HEART_PATH
        assert HEART_PATH not in asset_manager.cache
        assert test_db_session.query(Asset).count() == 0

    def test__unexpected_error__returns_path(self, test_db_session: Session, asset_manager: AssetManager):
        with patch.object(asset_repository, "get_by_hash", side_effect=RuntimeError("boom")):
            assert asset_manager.resolve_asset(test_db_session, HEART_PATH) == HEART_PATH

    def test__stale_cache_entry__is_replaced(self, test_db_session: Session, asset_manager: AssetManager):
        stale_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        asset_repository.delete(test_db_session, test_db_session.get(Asset, stale_id))

        fresh_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)

        assert is_persistent_id(fresh_id)
        assert fresh_id != stale_id
        assert asset_manager.cache.get(HEART_PATH).id == fresh_id


class TestResolveAssetsForDesign:
    """Tests for AssetManager.resolve_assets_for_design()."""

    def test__image_objects_get_asset_ids(self, test_db_session: Session, asset_manager: AssetManager, project_id: str):
        canvas_objects = [
            {"type": "image", "imageUrl": HEART_PATH, "left": 10},
            {"type": "text", "text": "Hello"},
            {"type": "image"},
            {"type": "image", "imageUrl": STAR_PATH},
        ]

        result = asset_manager.resolve_assets_for_design(
            test_db_session, canvas_objects, OwnerRefs(project_id=project_id), "user-1"
        )

        assert is_persistent_id(result[0]["assetId"])
        assert result[0]["left"] == 10
        assert result[1] == {"type": "text", "text": "Hello"}
        assert result[2] == {"type": "image"}
        assert test_db_session.get(Asset, result[3]["assetId"]).category == "geometric"
        assert all("assetId" not in obj for obj in canvas_objects)

    def test__unresolvable_image__keeps_path_as_asset_id(self, test_db_session: Session, asset_manager: AssetManager):
        result = asset_manager.resolve_assets_for_design(
            test_db_session, [{"type": "image", "imageUrl": "stock/icons/missing.svg"}]
        )

        assert result[0]["assetId"] == "stock/icons/missing.svg"


class TestRecordFinalUsage:
    """Tests for AssetManager.record_final_usage()."""

    def test__persistent_ids__record_usage_for_resolved_images(
        self, test_db_session: Session, asset_manager: AssetManager, project_id: str, template_id: str
    ):
        objects = asset_manager.resolve_assets_for_design(
            test_db_session,
            [
                {"type": "image", "imageUrl": HEART_PATH},
                {"type": "image", "imageUrl": "stock/icons/missing.svg"},
                {"type": "text", "assetId": new_object_id()},
                {"type": "image", "assetId": new_object_id()},
            ],
            OwnerRefs(project_id=TEMP_PROJECT_ID),
        )

        updated = asset_manager.record_final_usage(test_db_session, objects, project_id, template_id)

        assert updated == 1
        asset = test_db_session.get(Asset, objects[0]["assetId"])
        test_db_session.refresh(asset)
        assert asset.usage_count == 2
        assert [(u.project_id, u.template_id) for u in asset.used_in_projects] == [(project_id, template_id)]

    def test__temporary_ids__skip_update(self, test_db_session: Session, asset_manager: AssetManager):
        objects = asset_manager.resolve_assets_for_design(test_db_session, [{"type": "image", "imageUrl": HEART_PATH}])

        assert asset_manager.record_final_usage(test_db_session, objects, TEMP_PROJECT_ID, None) == 0

        asset = test_db_session.get(Asset, objects[0]["assetId"])
        test_db_session.refresh(asset)
        assert asset.usage_count == 1


class TestReadPaths:
    """Tests for get_asset, get_asset_content, get_asset_url and read_asset_bytes."""

    def test__get_asset_content__prefers_blob_url(self, test_db_session: Session, asset_manager: AssetManager):
        record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        asset = test_db_session.get(Asset, record_id)

        assert asset_manager.get_asset_content(test_db_session, record_id) == asset.blob_url

    def test__get_asset_content__inline_without_blob(self, test_db_session: Session, offline_manager: AssetManager):
        record_id = offline_manager.resolve_asset(test_db_session, HEART_PATH)

        assert offline_manager.get_asset_content(test_db_session, record_id).startswith("<svg")

    def test__get_asset_content__reads_plain_paths(
        self, test_db_session: Session, asset_manager: AssetManager, public_dir: Path
    ):
        assert asset_manager.get_asset_content(test_db_session, HEART_PATH) == (public_dir / HEART_PATH).read_text()
        assert asset_manager.get_asset_content(test_db_session, new_object_id()) is None
        assert asset_manager.get_asset_content(test_db_session, "stock/icons/missing.svg") is None

    def test__get_asset_url(self, test_db_session: Session, asset_manager: AssetManager, offline_manager: AssetManager):
        uploaded_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        inline_id = offline_manager.resolve_asset(test_db_session, STAR_PATH)

        assert asset_manager.get_asset_url(test_db_session, uploaded_id).startswith("/blobs/")
        assert asset_manager.get_asset_url(test_db_session, inline_id) == f"/api/assets/{inline_id}"
        assert asset_manager.get_asset_url(test_db_session, "stock/other.svg") == "stock/other.svg"

    def test__get_asset__caches_record(self, test_db_session: Session, offline_manager: AssetManager):
        record_id = offline_manager.resolve_asset(test_db_session, HEART_PATH)
        offline_manager.cache.clear()

        asset = offline_manager.get_asset(test_db_session, record_id)

        assert asset.id == record_id
        assert offline_manager.cache.find_by_id(record_id) is not None
        assert offline_manager.get_asset(test_db_session, "not-an-id") is None

    def test__read_asset_bytes__falls_back_to_inline_content(
        self,
        test_db_session: Session,
        asset_manager: AssetManager,
        temp_storage: LocalBlobStorage,
        public_dir: Path,
    ):
        record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        asset = test_db_session.get(Asset, record_id)
        temp_storage.delete(asset.blob_file_name)

        assert asset_manager.read_asset_bytes(asset) == (public_dir / HEART_PATH).read_bytes()


class TestAdministration:
    """Tests for cleanup_unused, delete_asset and get_asset_stats."""

    def _age(self, db: Session, record_id: str, days: int) -> None:
        asset = db.get(Asset, record_id)
        asset.last_used = datetime.now(timezone.utc) - timedelta(days=days)
        db.commit()

    def test__cleanup_unused__deletes_old_assets_and_evicts_cache(
        self, test_db_session: Session, asset_manager: AssetManager
    ):
        old_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        recent_id = asset_manager.resolve_asset(test_db_session, STAR_PATH)
        self._age(test_db_session, old_id, 45)

        deleted = asset_manager.cleanup_unused(test_db_session, days_old=30)

        assert deleted == 1
        assert test_db_session.get(Asset, old_id) is None
        assert test_db_session.get(Asset, recent_id) is not None
        assert HEART_PATH not in asset_manager.cache
        assert STAR_PATH in asset_manager.cache

    def test__cleanup_unused_soft__deactivates(self, test_db_session: Session, asset_manager: AssetManager):
        old_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        self._age(test_db_session, old_id, 45)

        assert asset_manager.cleanup_unused(test_db_session, days_old=30, soft=True) == 1

        asset = test_db_session.get(Asset, old_id)
        assert asset.is_active is False

    def test__cleanup_unused__keeps_reused_assets(self, test_db_session: Session, asset_manager: AssetManager):
        record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        asset_manager.resolve_asset(test_db_session, HEART_PATH)
        self._age(test_db_session, record_id, 45)

        assert asset_manager.cleanup_unused(test_db_session, days_old=30) == 0

    def test__delete_asset_in_use__raises(self, test_db_session: Session, asset_manager: AssetManager):
        record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)

        with pytest.raises(AssetInUseError):
            asset_manager.delete_asset(test_db_session, test_db_session.get(Asset, record_id))

        assert test_db_session.get(Asset, record_id) is not None

    def test__delete_unused_asset__removes_record_blob_and_cache(
        self, test_db_session: Session, asset_manager: AssetManager, temp_storage: LocalBlobStorage
    ):
        record_id = asset_manager.resolve_asset(test_db_session, HEART_PATH)
        asset = test_db_session.get(Asset, record_id)
        blob_key = asset.blob_file_name
        asset.usage_count = 0
        test_db_session.commit()

        asset_manager.delete_asset(test_db_session, asset)

        assert test_db_session.get(Asset, record_id) is None
        assert temp_storage.exists(blob_key) is False
        assert HEART_PATH not in asset_manager.cache

    def test__get_asset_stats(self, test_db_session: Session, asset_manager: AssetManager):
        asset_manager.resolve_asset(test_db_session, HEART_PATH)
        asset_manager.resolve_asset(test_db_session, HEART_PATH)
        asset_manager.resolve_asset(test_db_session, STAR_PATH)

        stats = asset_manager.get_asset_stats(test_db_session)

        assert stats["total_assets"] == 2
        assert stats["total_usage"] == 3
        assert {s["category"] for s in stats["category_stats"]} == {"icons", "geometric"}


class TestDesignSaveScenario:
    """A stock SVG referenced by two designs under two different paths."""

    def test__second_path_with_same_content__reuses_record(
        self, test_db_session: Session, asset_manager: AssetManager, public_dir: Path, project_id: str
    ):
        svg = '<svg><path d="M12 21C5 15 2 12 2 8.5" stroke="black"/></svg>'
        first_path = "stock/shapes/icons/heart-outline.svg"
        second_path = "uploads/user-1/heart-outline-copy.svg"
        for path in (first_path, second_path):
            (public_dir / path).parent.mkdir(parents=True, exist_ok=True)
            (public_dir / path).write_text(svg)

        first_id = asset_manager.resolve_asset(test_db_session, first_path, owner_refs=OwnerRefs(project_id=project_id))
        asset = test_db_session.get(Asset, first_id)

        assert asset.category == "icons"
        assert asset.subcategory == "hearts"
        assert {"heart", "outline"} <= set(asset.tags)
        assert "stock" not in asset.tags
        assert "shapes" not in asset.tags
        assert {"svg", "vector", "path", "simple"} <= set(asset.auto_tags)
        assert asset.usage_count == 1

        second_id = asset_manager.resolve_asset(test_db_session, second_path, owner_refs=OwnerRefs(project_id=project_id))

        assert second_id == first_id
        test_db_session.refresh(asset)
        assert asset.usage_count == 2
        assert len(asset.used_in_projects) == 2
        assert test_db_session.query(Asset).count() == 1
