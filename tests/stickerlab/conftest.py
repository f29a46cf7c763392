"""Pytest fixtures for stickerlab tests."""

import os
import shutil
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stickerlab.core.asset_cache import AssetCache
from stickerlab.core.asset_manager import AssetManager, get_asset_manager
from stickerlab.core.storage import LocalBlobStorage
from stickerlab.database import Base, get_db
from stickerlab.main import app
from stickerlab.models.asset import new_object_id

HEART_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 24 24">'
    '<path d="M12 21l-1.5-1.3C5.4 15.4 2 12.3 2 8.5" stroke="black" fill="none"/>'
    "</svg>"
)
STAR_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 24 24">'
    '<polygon points="12,2 15,9 22,9 16,14 18,21 12,17 6,21 8,14 2,9 9,9" fill="gold"/>'
    "</svg>"
)
BLOB_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 24 24">'
    '<circle cx="12" cy="12" r="10" fill="teal"/>'
    "</svg>"
)
PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01\x08\x06\x00\x00\x00"

HEART_PATH = "stock/icons/heart_outline.svg"
STAR_PATH = "stock/shapes/geometric/star_big.svg"
BLOB_PATH = "stock/shapes/abstract/blob.svg"
PHOTO_PATH = "stock/images/photo.png"


@pytest.fixture(scope="function")
def test_db_engine():
    """Create a database engine for testing.

    Uses TEST_DATABASE_URL when set (e.g. a PostgreSQL test database),
    otherwise a single-connection in-memory SQLite database.
    """
    test_db_url = os.getenv("TEST_DATABASE_URL")

    if test_db_url:
        engine = create_engine(test_db_url, pool_pre_ping=True, pool_size=5, max_overflow=10)
    else:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup: drop all tables
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create a database session for testing with automatic rollback."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine,
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        # Rollback any uncommitted changes to clean up test data
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def public_dir(tmp_path: Path) -> Path:
    """Public directory populated with a few stock design assets."""
    root = tmp_path / "public"
    files = {
        HEART_PATH: HEART_SVG.encode("utf-8"),
        STAR_PATH: STAR_SVG.encode("utf-8"),
        BLOB_PATH: BLOB_SVG.encode("utf-8"),
        PHOTO_PATH: PNG_BYTES,
    }
    for relative, content in files.items():
        file_path = root / relative
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(content)
    return root


@pytest.fixture(scope="function")
def temp_storage(tmp_path: Path) -> Generator[LocalBlobStorage, None, None]:
    """Create a temporary blob storage directory for testing.

    Args:
        tmp_path: Pytest temporary directory fixture

    Yields:
        LocalBlobStorage: Storage instance using temporary directory
    """
    storage_dir = tmp_path / "test_blobs"
    storage = LocalBlobStorage(base_path=storage_dir, public_base_url="/blobs")

    # Override the global storage instance
    import stickerlab.core.storage as storage_module

    original_storage = getattr(storage_module, "_storage", None)
    storage_module._storage = storage

    try:
        yield storage
    finally:
        # Restore original storage
        storage_module._storage = original_storage
        # Cleanup: remove temporary directory
        if storage_dir.exists():
            shutil.rmtree(storage_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def asset_manager(temp_storage: LocalBlobStorage, public_dir: Path) -> AssetManager:
    """Asset manager with a fresh cache, temporary blob storage and public directory."""
    return AssetManager(
        cache=AssetCache(max_size=100),
        storage=temp_storage,
        public_dir=public_dir,
        blob_prefix="assets/shapes",
    )


@pytest.fixture(scope="function")
def test_client(test_db_session: Session, asset_manager: AssetManager) -> Generator[TestClient, None, None]:
    """Create a test client with database and asset manager overrides."""

    def override_get_db() -> Generator[Session, None, None]:
        """Override get_db dependency to use test database session."""
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_asset_manager] = lambda: asset_manager

    client = TestClient(app)

    try:
        yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def project_id() -> str:
    """Persistent (saved) project ID."""
    return new_object_id()


@pytest.fixture
def template_id() -> str:
    """Persistent (saved) template ID."""
    return new_object_id()
