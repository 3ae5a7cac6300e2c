"""
Chart image storage.

Uploaded charts live on the local filesystem under a root directory, at
keys shaped ``users/{uid}/charts/{timestamp}-{random}.png``.
"""

import logging
import secrets
from pathlib import Path
from typing import Iterable, Union

from .models import now_ms

logger = logging.getLogger(__name__)

DEFAULT_BLOB_DIR = "chart_uploads"


class ChartStore:
    """Filesystem blob store for chart screenshots."""

    def __init__(self, root: Union[str, Path] = DEFAULT_BLOB_DIR, clock=now_ms):
        self.root = Path(root)
        self.clock = clock

    def _resolve(self, key: str) -> Path:
        path = (self.root / key.strip("/")).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key {key!r} escapes the store root")
        return path

    def upload_chart(self, user_id: str, image: bytes) -> str:
        """Store a chart image and return its key.

        Raises:
            ValueError: If the user id or the image is empty
        """
        if not user_id:
            raise ValueError("user_id is required")
        if not image:
            raise ValueError("Chart image is empty")

        key = f"users/{user_id}/charts/{self.clock()}-{secrets.token_hex(4)}.png"
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image)
        logger.debug("Stored chart %s (%d bytes)", key, len(image))
        return key

    def read(self, key: str) -> bytes:
        return self._resolve(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def delete_charts(self, keys: Iterable[str]) -> int:
        """Delete chart images, continuing past individual failures.

        Returns:
            Number of charts deleted
        """
        deleted = 0
        for key in keys:
            try:
                self._resolve(key).unlink()
                deleted += 1
            except (OSError, ValueError):
                logger.exception("Error deleting chart %s", key)
        return deleted
