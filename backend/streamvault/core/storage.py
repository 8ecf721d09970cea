"""Object store gateway.

Supports S3, MinIO and other S3-compatible stores through boto3, plus an
in-process memory backend for development and tests. Every backend speaks the
same small vocabulary: existence and size checks, whole-object get/put,
streaming file put/download, and pre-signed direct-upload URLs.
"""

import hashlib
import hmac
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import quote, urlencode

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from streamvault.core.config import settings
from streamvault.core.exceptions import GatewayUnavailable, ObjectNotFound

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectVisibility(str, Enum):
    """Access level of a stored object."""

    PRIVATE = "private"
    PUBLIC = "public"


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # s3, minio, aws, memory
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    public_endpoint_url: Optional[str] = None
    use_ssl: bool = True


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""
        pass

    @abstractmethod
    def size(self, key: str) -> int:
        """Return the object's length in bytes. Raises ObjectNotFound."""
        pass

    @abstractmethod
    def content_type(self, key: str) -> Optional[str]:
        """Return the stored Content-Type. Raises ObjectNotFound."""
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read a whole object into memory. Raises ObjectNotFound."""
        pass

    @abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Write an object, overwriting any existing one under the key."""
        pass

    @abstractmethod
    def put_file(
        self,
        key: str,
        file_path: str,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> int:
        """Stream a local file into the store and return its size."""
        pass

    @abstractmethod
    def download(self, key: str, destination: str) -> int:
        """Stream an object to a local path and return its size."""
        pass

    @abstractmethod
    def presigned_upload(
        self,
        key: str,
        ttl_seconds: int,
        headers: Optional[dict[str, str]] = None,
    ) -> str:
        """Create a URL that allows a single PUT of exactly ``key``."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object. Missing objects are ignored."""
        pass


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None
        self._presign_client = None

    def _build_client(self, endpoint_url: Optional[str]):
        client_kwargs = {
            "service_name": "s3",
            "region_name": self.config.region or "us-east-1",
            "aws_access_key_id": self.config.access_key or None,
            "aws_secret_access_key": self.config.secret_key or None,
            "config": BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
            ),
        }

        # For MinIO or other S3-compatible storage
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
            if not self.config.use_ssl:
                client_kwargs["use_ssl"] = False

        return boto3.client(**client_kwargs)

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            self._client = self._build_client(self.config.endpoint_url)
        return self._client

    def _get_presign_client(self):
        """Client whose host is reachable by uploading clients.

        Signatures cover the host, so grants must be signed against the public
        endpoint when it differs from the internal one.
        """
        if self._presign_client is None:
            if self.config.public_endpoint_url:
                self._presign_client = self._build_client(self.config.public_endpoint_url)
            else:
                self._presign_client = self._get_client()
        return self._presign_client

    @staticmethod
    def _is_not_found(error: ClientError) -> bool:
        return str(error.response.get("Error", {}).get("Code")) in _NOT_FOUND_CODES

    def _head(self, key: str) -> dict:
        try:
            return self._get_client().head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFound(key) from e
            raise GatewayUnavailable(f"head_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise GatewayUnavailable(f"head_object failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            self._head(key)
        except ObjectNotFound:
            return False
        return True

    def size(self, key: str) -> int:
        return int(self._head(key).get("ContentLength", 0))

    def content_type(self, key: str) -> Optional[str]:
        return self._head(key).get("ContentType")

    def get(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self.config.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFound(key) from e
            raise GatewayUnavailable(f"get_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise GatewayUnavailable(f"get_object failed for {key}: {e}") from e

    def _extra_args(self, visibility: ObjectVisibility, content_type: str) -> dict:
        extra = {"ContentType": content_type}
        if visibility == ObjectVisibility.PUBLIC:
            extra["ACL"] = "public-read"
        return extra

    def put(
        self,
        key: str,
        data: bytes,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> None:
        try:
            self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=data,
                **self._extra_args(visibility, content_type),
            )
        except (ClientError, BotoCoreError) as e:
            raise GatewayUnavailable(f"put_object failed for {key}: {e}") from e

    def put_file(
        self,
        key: str,
        file_path: str,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> int:
        file_size = os.path.getsize(file_path)
        try:
            self._get_client().upload_file(
                file_path,
                self.config.bucket,
                key,
                ExtraArgs=self._extra_args(visibility, content_type),
            )
        except (ClientError, BotoCoreError) as e:
            raise GatewayUnavailable(f"upload_file failed for {key}: {e}") from e
        return file_size

    def download(self, key: str, destination: str) -> int:
        try:
            self._get_client().download_file(self.config.bucket, key, destination)
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFound(key) from e
            raise GatewayUnavailable(f"download_file failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise GatewayUnavailable(f"download_file failed for {key}: {e}") from e
        return os.path.getsize(destination)

    def presigned_upload(
        self,
        key: str,
        ttl_seconds: int,
        headers: Optional[dict[str, str]] = None,
    ) -> str:
        params = {"Bucket": self.config.bucket, "Key": key}
        content_type = (headers or {}).get("Content-Type")
        if content_type:
            params["ContentType"] = content_type
        try:
            return self._get_presign_client().generate_presigned_url(
                "put_object",
                Params=params,
                ExpiresIn=ttl_seconds,
                HttpMethod="PUT",
            )
        except (ClientError, BotoCoreError) as e:
            raise GatewayUnavailable(f"Could not presign upload for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise GatewayUnavailable(f"delete_object failed for {key}: {e}") from e


@dataclass
class _StoredObject:
    data: bytes
    content_type: str
    visibility: ObjectVisibility
    stored_at: float = field(default_factory=time.time)


class MemoryStorage(StorageBackend):
    """In-process storage backend for development and tests.

    Pre-signed URLs carry an HMAC over the key, expiry and content type so
    tests can check that a grant names exactly one object.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig(backend="memory", bucket="streamvault-media")
        self._objects: dict[str, _StoredObject] = {}
        self._lock = threading.Lock()
        self._signing_key = os.urandom(32)

    def _lookup(self, key: str) -> _StoredObject:
        with self._lock:
            obj = self._objects.get(key)
        if obj is None:
            raise ObjectNotFound(key)
        return obj

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def size(self, key: str) -> int:
        return len(self._lookup(key).data)

    def content_type(self, key: str) -> Optional[str]:
        return self._lookup(key).content_type

    def get(self, key: str) -> bytes:
        return self._lookup(key).data

    def visibility(self, key: str) -> ObjectVisibility:
        return self._lookup(key).visibility

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    def put(
        self,
        key: str,
        data: bytes,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> None:
        with self._lock:
            self._objects[key] = _StoredObject(bytes(data), content_type, visibility)

    def put_file(
        self,
        key: str,
        file_path: str,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> int:
        with open(file_path, "rb") as f:
            data = f.read()
        self.put(key, data, visibility, content_type)
        return len(data)

    def download(self, key: str, destination: str) -> int:
        obj = self._lookup(key)
        with open(destination, "wb") as f:
            f.write(obj.data)
        return len(obj.data)

    def _signature(self, key: str, expires: int, content_type: str) -> str:
        message = f"PUT\n{key}\n{expires}\n{content_type}".encode()
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def presigned_upload(
        self,
        key: str,
        ttl_seconds: int,
        headers: Optional[dict[str, str]] = None,
    ) -> str:
        expires = int(time.time()) + ttl_seconds
        content_type = (headers or {}).get("Content-Type", "")
        query = urlencode({
            "expires": expires,
            "signature": self._signature(key, expires, content_type),
        })
        return f"memory://{self.config.bucket}/{quote(key)}?{query}"

    def verify_presigned(self, key: str, expires: int, signature: str, content_type: str = "") -> bool:
        """Check a signature produced by presigned_upload."""
        if expires < time.time():
            return False
        return hmac.compare_digest(signature, self._signature(key, expires, content_type))

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)


class Storage:
    """Universal storage interface.

    Automatically selects the appropriate backend based on configuration.
    """

    _instance: Optional["Storage"] = None

    def __init__(
        self,
        config: Optional[StorageConfig] = None,
        backend: Optional[StorageBackend] = None,
    ):
        """Initialize storage with configuration.

        Args:
            config: Storage configuration (uses settings if not provided)
            backend: Pre-built backend, bypassing config-based selection
        """
        if config is None:
            config = StorageConfig(
                backend=settings.STORAGE_BACKEND,
                bucket=settings.STORAGE_BUCKET,
                region=settings.STORAGE_REGION,
                access_key=settings.STORAGE_ACCESS_KEY,
                secret_key=settings.STORAGE_SECRET_KEY,
                endpoint_url=settings.STORAGE_ENDPOINT_URL,
                public_endpoint_url=settings.STORAGE_PUBLIC_ENDPOINT_URL,
                use_ssl=settings.STORAGE_USE_SSL,
            )

        self.config = config
        self._backend = backend or self._create_backend(config)

    def _create_backend(self, config: StorageConfig) -> StorageBackend:
        """Create appropriate storage backend."""
        backend_type = config.backend.lower()

        if backend_type == "memory":
            return MemoryStorage(config)
        elif backend_type in ("s3", "minio", "aws"):
            return S3Storage(config)
        else:
            raise ValueError(f"Unsupported storage backend: {backend_type}")

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @classmethod
    def get_instance(cls) -> "Storage":
        """Get singleton storage instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def exists(self, key: str) -> bool:
        return self._backend.exists(key)

    def size(self, key: str) -> int:
        return self._backend.size(key)

    def content_type(self, key: str) -> Optional[str]:
        return self._backend.content_type(key)

    def get(self, key: str) -> bytes:
        return self._backend.get(key)

    def put(
        self,
        key: str,
        data: bytes,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> None:
        self._backend.put(key, data, visibility, content_type)

    def put_file(
        self,
        key: str,
        file_path: str,
        visibility: ObjectVisibility = ObjectVisibility.PRIVATE,
        content_type: str = "application/octet-stream",
    ) -> int:
        return self._backend.put_file(key, file_path, visibility, content_type)

    def download(self, key: str, destination: str) -> int:
        return self._backend.download(key, destination)

    def presigned_upload(
        self,
        key: str,
        ttl_seconds: int,
        headers: Optional[dict[str, str]] = None,
    ) -> str:
        return self._backend.presigned_upload(key, ttl_seconds, headers)

    def delete(self, key: str) -> None:
        self._backend.delete(key)


# Convenience function
def get_storage() -> Storage:
    """Get the default storage instance."""
    return Storage.get_instance()

