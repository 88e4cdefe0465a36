"""
Local filesystem storage for uploaded binaries.
Only generated keys are ever written; the database keeps the metadata.
"""
import os
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Optional

import structlog

from ..config import settings
from .provider import FileTooLarge, StorageProvider

CHUNK_SIZE = 1024 * 1024


def generate_key(original_name: str) -> str:
    """<uuid>-<epoch millis>.<ext>"""
    ext = os.path.splitext(original_name or "")[1].lower()
    return f"{uuid.uuid4()}-{int(time.time() * 1000)}{ext}"


class LocalStorageProvider(StorageProvider):
    """Files under <base_dir>/<area>/<key>."""

    def __init__(self, base_dir: Optional[str] = None, area: str = "uploads"):
        self.base_dir = Path(base_dir or settings.upload_dir)
        self.root = self.base_dir / area
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        # Keys are generated, but never let one escape the root
        clean_key = os.path.basename(key.replace("\\", "/"))
        return self.root / clean_key

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def save(self, src: BinaryIO, key: str, max_bytes: Optional[int] = None) -> int:
        """Stream to disk; the partial file is removed if the limit is exceeded."""
        path = self.path_for(key)
        written = 0
        try:
            with open(path, "wb") as f:
                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise FileTooLarge(key)
                    f.write(chunk)
        except Exception:
            self.delete(key)
            raise
        return written

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            structlog.get_logger().warning("storage_delete_failed", key=key, error=str(e))


def get_storage(area: str = "uploads") -> StorageProvider:
    return LocalStorageProvider(area=area)
