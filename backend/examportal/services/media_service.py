import logging
import os
import uuid
from typing import Optional

import aiofiles

from ..core.config import settings
from ..utils.file_paths import FileTypes, ensure_upload_directory, get_relative_upload_path

logger = logging.getLogger(__name__)


class LocalMediaStorage:
    """Stores warning snapshots under the uploads directory served at /uploads"""

    def __init__(self, base_url: Optional[str] = None, file_type: str = FileTypes.WARNING_SNAPSHOTS):
        self.base_url = (base_url or settings.media_base_url).rstrip("/")
        self.file_type = file_type

    async def store(self, image_bytes: bytes) -> str:
        if not image_bytes:
            raise ValueError("Refusing to store an empty image")

        filename = f"{uuid.uuid4().hex}.jpg"
        file_path = os.path.join(ensure_upload_directory(self.file_type), filename)
        async with aiofiles.open(file_path, "wb") as f:
            await f.write(image_bytes)

        url = f"{self.base_url}/{get_relative_upload_path(self.file_type, filename)}"
        logger.info(f"Warning snapshot saved: {file_path} ({len(image_bytes)} bytes)")
        return url


media_storage = LocalMediaStorage()
