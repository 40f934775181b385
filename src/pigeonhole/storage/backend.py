"""Blob backend abstraction for encrypted data.

This module provides:
- Abstract put/get/list interface the core needs from a transport
- LocalFSBackend for local disk
- MemoryBackend for in-process use and testing
- S3Backend for object storage (OVH, AWS, MinIO)

Every operation is idempotent: putting the same key twice with the same
bytes, or deleting a missing key, leaves the backend unchanged.
"""

from __future__ import annotations

import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from pigeonhole.core.errors import BackendError, ChunkNotFoundError, TransientBackendError

if TYPE_CHECKING:
    from typing import Any

BlobNotFoundError = ChunkNotFoundError

_KEY_PATTERN = re.compile(r"[0-9a-f]{8,128}")


def validate_key(key: str) -> str:
    """Check that a blob key is a lowercase hex digest.

    Raises:
        BackendError: If the key could escape the backend's namespace.
    """
    if not _KEY_PATTERN.fullmatch(key):
        raise BackendError(f"Invalid blob key: {key[:80]!r}")
    return key


class BlobBackend(ABC):
    """Abstract interface for content-addressed blob storage."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where blobs are stored."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store a blob.

        Args:
            key: Hex digest naming the blob.
            data: Encrypted bytes.
        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Retrieve a blob.

        Raises:
            BlobNotFoundError: If the blob doesn't exist.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a blob exists."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a blob.

        Returns:
            True if the blob was deleted, False if it didn't exist.
        """

    @abstractmethod
    def list(self) -> list[str]:
        """Return the keys of all stored blobs."""


class LocalFSBackend(BlobBackend):
    """Local filesystem storage.

    Blobs are stored in subdirectories based on key prefix
    to avoid too many files in a single directory.
    """

    SUFFIX = ".enc"

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        return f"Local filesystem: {self._base_path}"

    def _blob_path(self, key: str) -> Path:
        """Get the file path for a blob (first 2 characters as subdirectory)."""
        validate_key(key)
        return self._base_path / key[:2] / f"{key}{self.SUFFIX}"

    def put(self, key: str, data: bytes) -> None:
        """Store a blob atomically (write to temp file, then rename)."""
        path = self._blob_path(key)
        path.parent.mkdir(exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise TransientBackendError(f"Failed to write blob {key}: {e}") from e

    def get(self, key: str) -> bytes:
        path = self._blob_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        except OSError as e:
            raise TransientBackendError(f"Failed to read blob {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._blob_path(key).exists()

    def delete(self, key: str) -> bool:
        path = self._blob_path(key)
        if path.exists():
            path.unlink(missing_ok=True)
            return True
        return False

    def list(self) -> list[str]:
        return sorted(
            p.name[: -len(self.SUFFIX)] for p in self._base_path.glob(f"??/*{self.SUFFIX}")
        )


class MemoryBackend(BlobBackend):
    """In-memory storage, safe for concurrent use."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.put_count = 0

    @property
    def location(self) -> str:
        return "Memory"

    def put(self, key: str, data: bytes) -> None:
        validate_key(key)
        with self._lock:
            self._blobs[key] = bytes(data)
            self.put_count += 1

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[key]
            except KeyError as e:
                raise BlobNotFoundError(key) from e

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._blobs.pop(key, None) is not None

    def list(self) -> list[str]:
        with self._lock:
            return sorted(self._blobs)


class S3Backend(BlobBackend):
    """S3-compatible storage (OVH, AWS, MinIO, etc.)."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "chunks",
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        """Initialize S3 storage.

        Args:
            bucket: S3 bucket name.
            prefix: Key prefix separating this backend's blobs in the bucket.
            endpoint_url: Custom endpoint URL (for OVH, MinIO, etc.).
            access_key: AWS access key ID.
            secret_key: AWS secret access key.
            region: AWS region (default: us-east-1).
        """
        import boto3

        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._endpoint_url = endpoint_url
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @property
    def location(self) -> str:
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}/{self._bucket}/{self._prefix}"
        return f"S3: s3://{self._bucket}/{self._prefix}"

    def _key(self, key: str) -> str:
        validate_key(key)
        return f"{self._prefix}/{key[:2]}/{key}.enc"

    @staticmethod
    def _translate(e: Exception, key: str) -> Exception:
        from botocore.exceptions import ClientError, ReadTimeoutError
        from botocore.exceptions import ConnectionError as BotoConnectionError

        if isinstance(e, ClientError):
            code = e.response["Error"]["Code"]
            if code in ("NoSuchKey", "404"):
                return BlobNotFoundError(key)
            if code in ("SlowDown", "RequestTimeout", "InternalError", "ServiceUnavailable"):
                return TransientBackendError(f"S3 {code} for blob {key}")
            return BackendError(f"S3 {code} for blob {key}")
        if isinstance(e, BotoConnectionError | ReadTimeoutError):
            return TransientBackendError(f"S3 connection failed for blob {key}: {e}")
        return e

    def put(self, key: str, data: bytes) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client.put_object(Bucket=self._bucket, Key=self._key(key), Body=data)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, key) from e

    def get(self, key: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._key(key))
            body: bytes = response["Body"].read()
            return body
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, key) from e

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client.head_object(Bucket=self._bucket, Key=self._key(key))
            return True
        except ClientError:
            return False

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        self._client.delete_object(Bucket=self._bucket, Key=self._key(key))
        return True

    def list(self) -> list[str]:
        keys: list[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self._bucket, Prefix=f"{self._prefix}/"):
            for obj in page.get("Contents", []):
                name = obj["Key"].rsplit("/", 1)[-1]
                if name.endswith(".enc"):
                    keys.append(name[: -len(".enc")])
        return sorted(keys)


def create_backend(config: dict[str, str | None]) -> BlobBackend:
    """Factory function to create a backend from configuration.

    Args:
        config: Backend configuration dict with keys:
            - type: "local", "memory" or "s3"
            - For local: local_path
            - For S3: bucket, prefix, endpoint_url, access_key, secret_key, region

    Raises:
        ValueError: If the backend type is unknown.
    """
    backend_type = config.get("type", "local")

    if backend_type == "local":
        return LocalFSBackend(config.get("local_path") or "./blobs")

    if backend_type == "memory":
        return MemoryBackend()

    if backend_type == "s3":
        bucket = config.get("bucket")
        if not bucket:
            raise ValueError("S3 storage requires 'bucket' configuration")
        return S3Backend(
            bucket=bucket,
            prefix=config.get("prefix") or "chunks",
            endpoint_url=config.get("endpoint_url"),
            access_key=config.get("access_key"),
            secret_key=config.get("secret_key"),
            region=config.get("region") or "us-east-1",
        )

    raise ValueError(f"Unknown storage type: {backend_type}")
