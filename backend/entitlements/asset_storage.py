"""
Asset Storage

Generated images and uploads kept in a GridFS bucket, addressed by
slash-separated paths such as users/<account_id>/generations/<id>.jpg.
"""

import logging
import re
from typing import List

from motor.motor_asyncio import AsyncIOMotorGridFSBucket

from .config import COLLECTIONS, REMOTE_CALL_TIMEOUT_SECONDS
from .remote import bounded_call

logger = logging.getLogger(__name__)


class GridFSAssetStorage:
    """Path-addressed blob storage on GridFS."""

    def __init__(self, db, bucket_name: str = COLLECTIONS["assets"],
                 timeout_seconds: float = REMOTE_CALL_TIMEOUT_SECONDS):
        self.bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)
        self.timeout_seconds = timeout_seconds

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        await bounded_call(
            "upload_asset",
            self.bucket.upload_from_stream(path, data, metadata={"contentType": content_type}),
            self.timeout_seconds
        )
        logger.info(f"Stored {len(data)} bytes at {path}")
        return path

    async def _find(self, prefix: str):
        cursor = self.bucket.find({"filename": {"$regex": f"^{re.escape(prefix)}"}})
        return await bounded_call("list_assets", cursor.to_list(length=None), self.timeout_seconds)

    async def list(self, prefix: str) -> List[str]:
        return [grid_out.filename for grid_out in await self._find(prefix)]

    async def _delete_files(self, files) -> int:
        for grid_out in files:
            await bounded_call("delete_asset", self.bucket.delete(grid_out._id), self.timeout_seconds)
        return len(files)

    async def delete(self, path: str) -> int:
        """Delete the file stored at exactly this path."""
        cursor = self.bucket.find({"filename": path})
        files = await bounded_call("list_assets", cursor.to_list(length=None), self.timeout_seconds)
        return await self._delete_files(files)

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every file under prefix; returns how many were removed."""
        return await self._delete_files(await self._find(prefix))
