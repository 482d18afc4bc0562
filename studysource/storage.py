"""
Object storage collaborators: source PDFs and pre-stored page images.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from .errors import MissingStorageKeyError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    def get_object_buffer(self, key: str) -> bytes:
        ...


class LocalObjectStorage:
    """Keys are paths relative to a root directory."""

    def __init__(self, root: str = "."):
        self.root = Path(root).resolve()

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents and path != self.root:
            raise MissingStorageKeyError(f"Storage key escapes root: {key}")
        return path

    def get_object_buffer(self, key: str) -> bytes:
        if not key:
            raise MissingStorageKeyError("Empty storage key")
        path = self.path_for(key)
        if not path.is_file():
            raise MissingStorageKeyError(f"Object not found: {key}")
        return path.read_bytes()


class S3ObjectStorage:
    """
    S3-compatible bucket (AWS S3 or Cloudflare R2 via endpoint_url).
    The boto3 client is created on first use.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key: str = "",
        secret_key: str = "",
        region: str = "auto",
        client: Any = None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url or None
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self._client = client

    @classmethod
    def from_config(cls, config: dict) -> "S3ObjectStorage":
        return cls(
            bucket=config.get("storage_bucket", ""),
            endpoint_url=config.get("storage_endpoint_url"),
            access_key=config.get("storage_access_key", ""),
            secret_key=config.get("storage_secret_key", ""),
            region=config.get("storage_region", "auto"),
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 is required for S3 storage. `pip install boto3`.") from e
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                region_name=self.region,
                aws_access_key_id=self.access_key or None,
                aws_secret_access_key=self.secret_key or None,
            )
        return self._client

    def get_object_buffer(self, key: str) -> bytes:
        if not key:
            raise MissingStorageKeyError("Empty storage key")
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            code = getattr(e, "response", {}).get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise MissingStorageKeyError(f"Object not found: {key}") from e
            raise
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()


def create_storage(config: dict, root: str = ".") -> ObjectStorage:
    """Factory: `storage_backend` is "local" (default) or "s3"."""
    backend = config.get("storage_backend", "local")
    if backend == "s3":
        logger.info(f"Using S3 storage bucket {config.get('storage_bucket', '')}")
        return S3ObjectStorage.from_config(config)
    return LocalObjectStorage(config.get("storage_root") or root)
