"""Storage service abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3-compatible object storage.
2. **filesystem**: Stores files under ``settings.STORAGE_DIRECTORY`` on disk.

Objects are addressed by a *relative key*. Keys produced by the pipeline
are deterministic (``{user_id}/uploads/{upload_id}/receipt-{index}.jpg``)
so a retried job overwrites its earlier files instead of adding new
ones. Source images may also be given as absolute paths, which are read
straight from disk whatever the backend.
"""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path

from minio import Minio
from minio.error import S3Error

from sheetwise.core.config import settings
from sheetwise.core.errors import FileNotFoundInStorageError, StorageError

logger = logging.getLogger(__name__)

LEGACY_PREFIX = "uploads/"


def upload_object_key(user_id: int, upload_id: int, name: str) -> str:
    """Key for a file derived from one upload (cropped receipt, marked sheet)."""
    return f"{user_id}/uploads/{upload_id}/{name}"


class StorageService:
    """Unified storage service (MinIO or filesystem)."""

    def __init__(self, base_dir: str | Path | None = None, backend: str | None = None) -> None:
        self.backend = (backend or settings.STORAGE_BACKEND or "minio").lower()
        if self.backend == "minio":
            self._client = Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
            )
            self.bucket = settings.MINIO_BUCKET_NAME
            # Ensure bucket exists (idempotent)
            try:
                if not self._client.bucket_exists(self.bucket):
                    self._client.make_bucket(self.bucket)
            except S3Error as e:  # pragma: no cover - startup path
                logger.warning("[storage] MinIO bucket ensure failed: %s", e)
        elif self.backend == "filesystem":
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                repo_root = Path(__file__).resolve().parents[3]
                base_path = (repo_root / base_path).resolve()
            self.base_dir = base_path
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.debug("[storage] Filesystem base_dir: %s", self.base_dir)
        else:
            raise ValueError(f"Unknown storage backend: {self.backend}")

    def get_full_path(self, key: str) -> Path:
        """Resolve a stored file's full path (filesystem only)."""
        return self.base_dir / key.lstrip("/")

    def save_bytes(self, data: bytes, key: str, content_type: str = "image/jpeg") -> str:
        """Persist ``data`` under ``key`` (overwriting) and return the key."""
        if not data:
            raise StorageError(f"Refusing to store empty payload for {key}")

        if self.backend == "minio":
            try:
                self._client.put_object(
                    self.bucket,
                    key,
                    BytesIO(data),
                    len(data),
                    content_type=content_type,
                )
            except S3Error as e:
                raise StorageError(f"MinIO upload failed for {key}: {e}") from e
            logger.debug("[storage] MinIO object put: %s size=%d", key, len(data))
            return key

        file_path = self.get_full_path(key)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(data)
        logger.debug("[storage] FS saved: %s bytes=%d", file_path, len(data))
        return key

    def load(self, path: str) -> bytes:
        """Load raw bytes for an absolute file path or a storage key.

        Raises :class:`FileNotFoundInStorageError` when nothing exists there.
        """
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                return candidate.read_bytes()
            except FileNotFoundError as e:
                raise FileNotFoundInStorageError(f"File not found: {path}") from e

        if self.backend == "minio":
            return self._load_object(path)

        full_path = self.get_full_path(path)
        try:
            return full_path.read_bytes()
        except FileNotFoundError:
            if path.startswith(LEGACY_PREFIX):
                legacy_path = self.get_full_path(path[len(LEGACY_PREFIX):])
                logger.debug("[storage] Legacy FS check %s", legacy_path)
                if legacy_path.exists():
                    return legacy_path.read_bytes()
            raise FileNotFoundInStorageError(f"File not found: {path}")

    def _load_object(self, key: str) -> bytes:
        resp = None
        try:
            resp = self._client.get_object(self.bucket, key)
            data = resp.read()
            logger.debug("[storage] MinIO get ok key=%s bytes=%d", key, len(data))
            return data
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                raise FileNotFoundInStorageError(f"File not found: {key}") from e
            raise StorageError(f"MinIO download failed for {key}: {e}") from e
        finally:
            if resp is not None:
                resp.close()
                resp.release_conn()
