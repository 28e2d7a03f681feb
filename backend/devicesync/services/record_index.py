import time
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..core.config import settings


class RecordIndex:
    """TTL cache mapping device ids to the file that holds them.

    Entries are hints only: the store re-reads the file on every hit and
    drops the entry when the file no longer holds that device.
    """

    def __init__(self, ttl_seconds: Optional[float] = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.DEVICE_INDEX_TTL_SECONDS
        self._entries: Dict[str, Tuple[Path, float]] = {}

    def get(self, device_id: str) -> Optional[Path]:
        entry = self._entries.get(device_id)
        if entry is None:
            return None
        path, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._entries[device_id]
            return None
        return path

    def put(self, device_id: str, path: Path):
        self._entries[device_id] = (path, time.monotonic() + self.ttl_seconds)

    def invalidate(self, device_id: str):
        self._entries.pop(device_id, None)

    def clear(self):
        self._entries.clear()

    def purge_expired(self) -> int:
        """Drop expired entries, returning how many were removed"""
        now = time.monotonic()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
