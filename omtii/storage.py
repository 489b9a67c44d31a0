# omtii/storage.py

import logging
from pathlib import Path

from omtii.errors import BackendUnavailable, RemoteRejected

logger = logging.getLogger(__name__)


class LocalStorage:
    """Public object buckets kept as directories under one root."""

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def resolve(self, bucket: str, path: str) -> Path:
        target = (self.root / bucket / path).resolve()
        bucket_root = (self.root / bucket).resolve()
        if bucket_root not in target.parents:
            raise RemoteRejected("Invalid object path", code="not_authorized")
        return target

    async def upload(self, bucket: str, path: str, data: bytes, upsert: bool = False) -> str:
        """
        Store ``data`` at ``path`` inside ``bucket``.

        Returns:
            str: The stored object's path within the bucket.

        Raises:
            RemoteRejected: If the object already exists and ``upsert`` is off.
        """
        target = self.resolve(bucket, path)
        if target.exists() and not upsert:
            raise RemoteRejected("The resource already exists", code="constraint")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise BackendUnavailable(f"Upload failed: {e.strerror}")
        logger.info(f"Stored {len(data)} bytes at {bucket}/{path}.")
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/storage/{bucket}/{path}"
