"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for bucket/object operations with LocalStorage
(development, tests) and SupabaseStorage (production). Both guarantee the
target bucket exists with the configured size/type policy, write objects at
exact deterministic paths and derive public URLs without a network call.
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional

import httpx

from wardrobe_imagery.core.config import Settings, settings, split_csv
from wardrobe_imagery.core.exceptions import StorageError
from wardrobe_imagery.core.logging import get_logger

logger = get_logger(__name__)

ORIGINAL_PREFIX = "original"
PROCESSED_PREFIX = "processed"

PURPOSE_UPLOAD = "upload"
PURPOSE_GENERATED = "generated"


# =============================================================================
# Deterministic Paths
# =============================================================================

def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def original_path(owner_id: str, extension: str, timestamp_ms: Optional[int] = None) -> str:
    """Pre-removal upload path. Timestamped so concurrent uploads never collide."""
    ts = timestamp_ms if timestamp_ms is not None else _timestamp_ms()
    return f"{ORIGINAL_PREFIX}/{owner_id}/{ts}.{extension}"


def processed_path(
    owner_id: str,
    purpose: str,
    asset_id: Optional[str] = None,
    extension: str = "png",
    timestamp_ms: Optional[int] = None
) -> str:
    """
    Final asset path.

    Keyed by the owning item when there is one, so a new run for the same
    item overwrites in place. Without an item it falls back to a timestamp.
    """
    key = asset_id if asset_id else str(timestamp_ms if timestamp_ms is not None else _timestamp_ms())
    return f"{PROCESSED_PREFIX}/{owner_id}/{purpose}/{key}.{extension}"


def _validate_object_path(path: str) -> str:
    candidate = PurePosixPath(path)
    if not path or candidate.is_absolute() or ".." in candidate.parts:
        raise StorageError(f"Invalid storage path: {path!r}")
    return str(candidate)


# =============================================================================
# Bucket Policy
# =============================================================================

@dataclass
class BucketPolicy:
    """Size ceiling and MIME allow-list applied to a bucket."""

    file_size_limit: int = 10 * 1024 * 1024
    allowed_mime_types: List[str] = field(
        default_factory=lambda: ["image/webp", "image/png", "image/jpeg"]
    )
    public: bool = True

    @classmethod
    def from_settings(cls, s: Settings) -> "BucketPolicy":
        return cls(
            file_size_limit=s.STORAGE_MAX_SIZE_BYTES,
            allowed_mime_types=list(split_csv(s.BUCKET_MIME_TYPES)),
            public=True,
        )


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    bucket_name: str
    policy: BucketPolicy

    @abstractmethod
    async def ensure_bucket(self) -> None:
        """
        Guarantee the bucket exists with the configured policy.

        Creates it when absent, updates it when the size ceiling differs and
        treats a concurrent "already exists" as success.
        """

    @abstractmethod
    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str = "image/png",
        upsert: bool = False
    ) -> str:
        """
        Write bytes at an exact path and return that path.

        Without upsert an existing object at the path is a StorageError.
        """

    @abstractmethod
    def get_public_url(self, path: str) -> str:
        """Deterministic public URL for a stored object."""

    @abstractmethod
    async def remove(self, paths: Iterable[str]) -> int:
        """Best-effort delete. Failures are logged, never raised."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if an object exists in the bucket."""


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development and tests."""

    POLICY_FILE = ".bucket.json"

    def __init__(
        self,
        base_path: str = "./data/storage",
        bucket_name: str = "wardrobe-images",
        policy: Optional[BucketPolicy] = None,
        public_base_url: str = "http://localhost:8000/static/storage"
    ):
        self.base_path = Path(base_path)
        self.bucket_name = bucket_name
        self.policy = policy or BucketPolicy()
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def bucket_path(self) -> Path:
        return self.base_path / self.bucket_name

    def _read_policy(self) -> Optional[BucketPolicy]:
        policy_file = self.bucket_path / self.POLICY_FILE
        if not policy_file.exists():
            return None
        with open(policy_file, "r", encoding="utf-8") as f:
            return BucketPolicy(**json.load(f))

    def _write_policy(self, policy: BucketPolicy):
        with open(self.bucket_path / self.POLICY_FILE, "w", encoding="utf-8") as f:
            json.dump(asdict(policy), f)

    async def ensure_bucket(self) -> None:
        try:
            current = self._read_policy()
            if current is not None:
                if current.file_size_limit != self.policy.file_size_limit:
                    self._write_policy(self.policy)
                    logger.info(
                        "bucket_policy_updated",
                        bucket=self.bucket_name,
                        file_size_limit=self.policy.file_size_limit
                    )
                return

            # exist_ok covers a racing create
            self.bucket_path.mkdir(parents=True, exist_ok=True)
            self._write_policy(self.policy)
            logger.info("bucket_created", bucket=self.bucket_name)
        except OSError as e:
            raise StorageError(f"Failed to create storage bucket \"{self.bucket_name}\": {e}")

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str = "image/png",
        upsert: bool = False
    ) -> str:
        path = _validate_object_path(path)
        policy = self._read_policy()
        if policy is None:
            raise StorageError(f"Bucket not found: {self.bucket_name}")
        if len(data) > policy.file_size_limit:
            raise StorageError(
                f"Object exceeds bucket size limit ({len(data)} > {policy.file_size_limit} bytes)"
            )
        if policy.allowed_mime_types and content_type not in policy.allowed_mime_types:
            raise StorageError(f"Content type not allowed in bucket: {content_type}")

        file_path = self.bucket_path / path
        if file_path.exists() and not upsert:
            raise StorageError(f"The resource already exists: {path}")

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to upload {path}: {e}")

        return path

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{self.bucket_name}/{path}"

    async def remove(self, paths: Iterable[str]) -> int:
        removed = 0
        for path in paths:
            try:
                file_path = self.bucket_path / _validate_object_path(path)
                if file_path.exists():
                    file_path.unlink()
                    removed += 1
            except (OSError, StorageError) as e:
                logger.warning("storage_remove_failed", path=path, error=str(e))
        return removed

    async def exists(self, path: str) -> bool:
        return (self.bucket_path / _validate_object_path(path)).exists()


class SupabaseStorage(IStorage):
    """Supabase Storage implementation for production (REST API over httpx)."""

    def __init__(
        self,
        url: str,
        service_key: str,
        bucket_name: str = "wardrobe-images",
        policy: Optional[BucketPolicy] = None,
        lookup_timeout: float = 20.0,
        upload_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.bucket_name = bucket_name
        self.policy = policy or BucketPolicy()
        self.lookup_timeout = lookup_timeout
        self.upload_timeout = upload_timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.url}/storage/v1",
            headers={
                "Authorization": f"Bearer {self.service_key}",
                "apikey": self.service_key,
            },
            timeout=timeout,
            transport=self._transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("error") or payload)
        return str(payload)

    def _bucket_body(self) -> dict:
        return {
            "public": self.policy.public,
            "file_size_limit": self.policy.file_size_limit,
            "allowed_mime_types": self.policy.allowed_mime_types,
        }

    async def ensure_bucket(self) -> None:
        try:
            async with self._client(self.lookup_timeout) as client:
                response = await client.get(f"/bucket/{self.bucket_name}")

                if response.is_success:
                    current_limit = response.json().get("file_size_limit")
                    if current_limit != self.policy.file_size_limit:
                        update = await client.put(f"/bucket/{self.bucket_name}", json=self._bucket_body())
                        if not update.is_success:
                            raise StorageError(
                                f"Failed to update storage bucket \"{self.bucket_name}\": "
                                f"{self._error_message(update)}"
                            )
                        logger.info(
                            "bucket_policy_updated",
                            bucket=self.bucket_name,
                            file_size_limit=self.policy.file_size_limit
                        )
                    return

                message = self._error_message(response).lower()
                if response.status_code != 404 and "not found" not in message:
                    raise StorageError(
                        f"Failed to access storage bucket \"{self.bucket_name}\": "
                        f"{self._error_message(response)}"
                    )

                create = await client.post(
                    "/bucket",
                    json={"id": self.bucket_name, "name": self.bucket_name, **self._bucket_body()}
                )
                if not create.is_success:
                    create_message = self._error_message(create)
                    if "already exists" not in create_message.lower():
                        raise StorageError(
                            f"Failed to create storage bucket \"{self.bucket_name}\": {create_message}"
                        )
                logger.info("bucket_created", bucket=self.bucket_name)
        except httpx.HTTPError as e:
            raise StorageError(f"Storage bucket lookup failed: {e}")

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str = "image/png",
        upsert: bool = False
    ) -> str:
        path = _validate_object_path(path)
        try:
            async with self._client(self.upload_timeout) as client:
                response = await client.post(
                    f"/object/{self.bucket_name}/{path}",
                    content=data,
                    headers={
                        "Content-Type": content_type,
                        "x-upsert": "true" if upsert else "false",
                        "cache-control": "max-age=3600",
                    },
                )
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to upload {path}: {e}")

        if not response.is_success:
            raise StorageError(f"Failed to upload {path}: {self._error_message(response)}")
        return path

    def get_public_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket_name}/{path}"

    async def remove(self, paths: Iterable[str]) -> int:
        prefixes = list(paths)
        if not prefixes:
            return 0
        try:
            async with self._client(self.lookup_timeout) as client:
                response = await client.request(
                    "DELETE",
                    f"/object/{self.bucket_name}",
                    json={"prefixes": prefixes},
                )
        except httpx.HTTPError as e:
            logger.warning("storage_remove_failed", paths=prefixes, error=str(e))
            return 0

        if not response.is_success:
            logger.warning(
                "storage_remove_failed",
                paths=prefixes,
                status=response.status_code,
                error=self._error_message(response)
            )
            return 0

        try:
            removed = response.json()
        except ValueError:
            return len(prefixes)
        return len(removed) if isinstance(removed, list) else len(prefixes)

    async def exists(self, path: str) -> bool:
        path = _validate_object_path(path)
        try:
            async with self._client(self.lookup_timeout) as client:
                response = await client.head(f"/object/{self.bucket_name}/{path}")
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to stat {path}: {e}")
        return response.is_success


class StorageFactory:
    """
    Factory for creating storage instances.

    A fresh instance per pipeline run; the backend is chosen by
    STORAGE_BACKEND so moving from local disk to Supabase needs no code change.
    """

    @classmethod
    def create(
        cls,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> IStorage:
        """Get the appropriate storage implementation based on configuration."""
        s = config or settings
        policy = BucketPolicy.from_settings(s)

        if s.STORAGE_BACKEND.lower() == "supabase":
            if not s.SUPABASE_URL or not s.SUPABASE_SERVICE_ROLE_KEY:
                raise StorageError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for supabase storage")
            return SupabaseStorage(
                url=s.SUPABASE_URL,
                service_key=s.SUPABASE_SERVICE_ROLE_KEY,
                bucket_name=s.STORAGE_BUCKET,
                policy=policy,
                lookup_timeout=s.MODEL_LOOKUP_TIMEOUT,
                upload_timeout=s.SUBMIT_TIMEOUT,
                transport=transport,
            )

        return LocalStorage(
            base_path=s.LOCAL_STORAGE_PATH,
            bucket_name=s.STORAGE_BUCKET,
            policy=policy,
            public_base_url=s.PUBLIC_BASE_URL,
        )


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get a storage instance - ready for FastAPI Depends()."""
    return StorageFactory.create()
