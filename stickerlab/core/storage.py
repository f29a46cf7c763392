"""Blob storage abstraction for design asset bytes."""

import hashlib
import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import httpx

from stickerlab.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

B2_API_URL = "https://api.backblazeb2.com"


class StorageError(Exception):
    """Base exception for storage operations."""

    pass


class BlobNotFoundError(StorageError):
    """Raised when a blob is not found in storage."""

    pass


@dataclass(frozen=True)
class StoredBlob:
    """Location of an uploaded blob."""

    url: str  # URL clients can fetch the blob from
    key: str  # Storage key used for reads and deletes


def build_blob_key(prefix: str, owner: str | None, extension: str = "") -> str:
    """Build a unique blob key ``<prefix>/<owner>/<ms timestamp>-<random><ext>``.

    Args:
        prefix: Key prefix grouping related blobs (e.g. ``assets/shapes``)
        owner: Owning user ID; ``anonymous`` if not given
        extension: File extension including the dot

    Returns:
        str: Blob key
    """
    prefix = prefix.strip("/")
    owner_folder = owner or "anonymous"
    filename = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}{extension}"
    if prefix:
        return f"{prefix}/{owner_folder}/{filename}"
    return f"{owner_folder}/{filename}"


class BlobStorage:
    """Abstract storage interface for blob operations."""

    def put(
        self,
        content: bytes,
        prefix: str,
        owner: str | None = None,
        content_type: str = "application/octet-stream",
        extension: str = "",
    ) -> StoredBlob:
        """Store bytes under a newly generated key.

        Args:
            content: Blob content
            prefix: Key prefix grouping related blobs
            owner: Owning user ID, used as a folder under the prefix
            content_type: MIME type of the content
            extension: File extension appended to the generated key

        Returns:
            StoredBlob: URL and key of the stored blob

        Raises:
            StorageError: If the blob cannot be stored
        """
        raise NotImplementedError

    def get(self, key_or_url: str) -> bytes:
        """Read blob content.

        Args:
            key_or_url: Storage key, or the URL returned by ``put``

        Returns:
            bytes: Blob content

        Raises:
            BlobNotFoundError: If the blob does not exist
            StorageError: If the blob cannot be read
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """Delete a blob.

        Args:
            key: Storage key

        Raises:
            BlobNotFoundError: If the blob does not exist
            StorageError: If the blob cannot be deleted
        """
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        """Check if a blob exists in storage."""
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    """Local file system blob storage implementation."""

    def __init__(self, base_path: str | Path | None = None, public_base_url: str | None = None):
        """Initialize local storage.

        Args:
            base_path: Base directory for blobs. Defaults to 'uploads' in project root.
            public_base_url: URL prefix blobs are published under. Defaults to settings.
        """
        if base_path is None:
            # Default to 'uploads' directory in project root
            project_root = Path(__file__).resolve().parent.parent.parent
            base_path = project_root / "uploads"
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.storage_public_base_url).rstrip("/")

    def _key_from(self, key_or_url: str) -> str:
        if key_or_url.startswith(self.public_base_url + "/"):
            return key_or_url[len(self.public_base_url) + 1 :]
        return key_or_url

    def _get_file_path(self, key: str) -> Path:
        """Resolve a storage key to a file path inside base_path.

        Raises:
            StorageError: If the key would escape the storage directory
        """
        # Remove null bytes and leading separators
        key = key.replace("\x00", "").replace("\\", "/").lstrip("/")
        file_path = (self.base_path / key).resolve()
        if file_path != self.base_path and self.base_path not in file_path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return file_path

    def put(
        self,
        content: bytes,
        prefix: str,
        owner: str | None = None,
        content_type: str = "application/octet-stream",
        extension: str = "",
    ) -> StoredBlob:
        safe_owner = os.path.basename((owner or "").replace("\\", "/")) or None
        key = build_blob_key(prefix, safe_owner, extension)
        file_path = self._get_file_path(key)

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(content)
        except OSError as e:
            raise StorageError(f"Failed to save blob: {e}") from e

        logger.debug(f"Stored blob {key} ({len(content)} bytes, {content_type})")
        return StoredBlob(url=f"{self.public_base_url}/{key}", key=key)

    def get(self, key_or_url: str) -> bytes:
        file_path = self._get_file_path(self._key_from(key_or_url))

        if not file_path.is_file():
            raise BlobNotFoundError(f"Blob not found: {key_or_url}")

        try:
            return file_path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read blob: {e}") from e

    def delete(self, key: str) -> None:
        file_path = self._get_file_path(self._key_from(key))

        if not file_path.is_file():
            raise BlobNotFoundError(f"Blob not found: {key}")

        try:
            file_path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete blob: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return self._get_file_path(self._key_from(key)).is_file()
        except StorageError:
            return False


class B2BlobStorage(BlobStorage):
    """Backblaze B2 blob storage using the native B2 HTTP API.

    The account is authorized lazily on first use; the authorization token is
    cached and refreshed once when B2 answers 401 (tokens expire after 24h).
    Downloads are made with the account token so private buckets work.

    Args:
        application_key_id: B2 application key ID
        application_key: B2 application key
        bucket_id: ID of the bucket blobs are uploaded to
        bucket_name: Name of that bucket, used to build download URLs
        timeout: Request timeout in seconds
        client: Optional preconfigured HTTP client (used by tests)
    """

    def __init__(
        self,
        application_key_id: Optional[str] = None,
        application_key: Optional[str] = None,
        bucket_id: Optional[str] = None,
        bucket_name: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.application_key_id = application_key_id or settings.b2_application_key_id
        self.application_key = application_key or settings.b2_application_key
        self.bucket_id = bucket_id or settings.b2_bucket_id
        self.bucket_name = bucket_name or settings.b2_bucket_name
        self.timeout = timeout or settings.blob_timeout_seconds
        self._client = client
        self._auth: Optional[dict[str, Any]] = None

        if not (self.application_key_id and self.application_key):
            raise StorageError("B2 credentials missing: set B2_APPLICATION_KEY_ID and B2_APPLICATION_KEY")
        if not (self.bucket_id and self.bucket_name):
            raise StorageError("B2 bucket missing: set B2_BUCKET_ID and B2_BUCKET_NAME")

    @property
    def client(self) -> httpx.Client:
        """Lazy-load HTTP client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def authorize(self) -> dict[str, Any]:
        """Authorize the account and cache apiUrl, downloadUrl and token."""
        logger.info("Authorizing B2 account")
        try:
            response = self.client.get(
                f"{B2_API_URL}/b2api/v2/b2_authorize_account",
                auth=(self.application_key_id, self.application_key),
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._auth = None
            raise StorageError(f"B2 authorization failed: {e}") from e

        if not all(k in data for k in ("apiUrl", "downloadUrl", "authorizationToken")):
            self._auth = None
            raise StorageError("B2 authorization response incomplete")

        self._auth = data
        return data

    def _ensure_authorized(self) -> dict[str, Any]:
        if self._auth is None:
            return self.authorize()
        return self._auth

    def _api_call(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to a B2 API operation, re-authorizing once on an expired token."""
        for attempt in range(2):
            auth = self._ensure_authorized()
            try:
                response = self.client.post(
                    f"{auth['apiUrl']}/b2api/v2/{operation}",
                    json=payload,
                    headers={"Authorization": auth["authorizationToken"]},
                )
                if response.status_code == 401 and attempt == 0:
                    logger.info(f"B2 token rejected for {operation}, re-authorizing")
                    self._auth = None
                    continue
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise StorageError(f"B2 {operation} failed: {e}") from e
        raise StorageError(f"B2 {operation} failed: authorization rejected")

    def public_url(self, file_name: str) -> str:
        auth = self._ensure_authorized()
        return f"{auth['downloadUrl']}/file/{self.bucket_name}/{file_name}"

    def _key_from(self, key_or_url: str) -> str:
        marker = f"/file/{self.bucket_name}/"
        if marker in key_or_url:
            return key_or_url.split(marker, 1)[1]
        return key_or_url

    def put(
        self,
        content: bytes,
        prefix: str,
        owner: str | None = None,
        content_type: str = "application/octet-stream",
        extension: str = "",
    ) -> StoredBlob:
        key = build_blob_key(prefix, owner, extension)
        upload = self._api_call("b2_get_upload_url", {"bucketId": self.bucket_id})

        try:
            upload_url = upload["uploadUrl"]
            upload_token = upload["authorizationToken"]
        except (KeyError, TypeError) as e:
            raise StorageError(f"B2 upload URL response incomplete: {e}") from e

        try:
            response = self.client.post(
                upload_url,
                content=content,
                headers={
                    "Authorization": upload_token,
                    "Content-Type": content_type,
                    "X-Bz-File-Name": quote(key),
                    "X-Bz-Content-Sha1": hashlib.sha1(content).hexdigest(),
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise StorageError(f"B2 upload failed: {e}") from e

        file_name = data.get("fileName", key)
        logger.info(f"Uploaded blob to B2: {file_name} ({len(content)} bytes)")
        return StoredBlob(url=self.public_url(file_name), key=file_name)

    def get(self, key_or_url: str) -> bytes:
        key = self._key_from(key_or_url)
        auth = self._ensure_authorized()
        try:
            response = self.client.get(
                self.public_url(key),
                headers={"Authorization": auth["authorizationToken"]},
            )
            if response.status_code == 404:
                raise BlobNotFoundError(f"Blob not found: {key}")
            response.raise_for_status()
            return response.content
        except httpx.HTTPError as e:
            raise StorageError(f"B2 download failed: {e}") from e

    def _find_file(self, key: str) -> Optional[dict[str, Any]]:
        data = self._api_call(
            "b2_list_file_names",
            {"bucketId": self.bucket_id, "startFileName": key, "maxFileCount": 1},
        )
        files = data.get("files", [])
        if files and files[0].get("fileName") == key:
            return files[0]
        return None

    def delete(self, key: str) -> None:
        key = self._key_from(key)
        file_info = self._find_file(key)
        if file_info is None:
            raise BlobNotFoundError(f"Blob not found: {key}")
        self._api_call(
            "b2_delete_file_version",
            {"fileName": key, "fileId": file_info["fileId"]},
        )
        logger.info(f"Deleted blob from B2: {key}")

    def exists(self, key: str) -> bool:
        return self._find_file(self._key_from(key)) is not None


# Global storage instance
_storage: BlobStorage | None = None


def get_storage() -> BlobStorage:
    """Get storage instance.

    Returns:
        BlobStorage: Storage instance (singleton)

    Example:
        ```python
        from stickerlab.core.storage import get_storage

        storage = get_storage()
        blob = storage.put(content, "assets/shapes", user_id)
        ```
    """
    global _storage
    if _storage is None:
        if settings.storage_backend == "b2":
            _storage = B2BlobStorage()
        elif settings.storage_path:
            # Allow configuration via environment variable for Docker/cloud deployments
            _storage = LocalBlobStorage(base_path=Path(settings.storage_path))
        else:
            # Default behavior: use 'uploads' directory in project root
            _storage = LocalBlobStorage()
    return _storage
