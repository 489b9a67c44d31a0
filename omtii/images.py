# omtii/images.py

import logging
import time
import uuid

from omtii.errors import MarketplaceError

logger = logging.getLogger(__name__)

AVATARS_BUCKET = "avatars"
SERVICE_IMAGES_BUCKET = "service-images"


class ImageUploader:
    """Uploads user images into one storage bucket and hands back public URLs."""

    def __init__(self, storage, bucket: str, folder: str = ""):
        self.storage = storage
        self.bucket = bucket
        self.folder = folder
        self.errors: list[str] = []

    def object_path(self, filename: str, user_id: int) -> str:
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
        name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.{extension}"
        if self.folder:
            return f"{user_id}/{self.folder}/{name}"
        return f"{user_id}/{name}"

    async def upload_image(self, filename: str, data: bytes, user_id: int) -> str | None:
        """
        Upload one image.

        Returns:
            str | None: The public URL, or None when the upload failed. The
            failure message is kept in ``errors``.
        """
        path = self.object_path(filename, user_id)
        try:
            await self.storage.upload(self.bucket, path, data)
        except MarketplaceError as e:
            logger.error(f"Upload error for {filename}: {e.detail}")
            self.errors.append(e.message or "Failed to upload image")
            return None
        return self.storage.get_public_url(self.bucket, path)

    async def upload_multiple_images(self, files: list[tuple[str, bytes]], user_id: int) -> list[str]:
        urls = []
        for filename, data in files:
            url = await self.upload_image(filename, data, user_id)
            if url:
                urls.append(url)
        return urls
