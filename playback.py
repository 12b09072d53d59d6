# playback.py
"""Playback URL resolution for media and episode records.

Local files get a long-lived static URL under the media web prefix. Objects
in the store get a presigned URL that expires after a fixed TTL; clients must
not keep it longer than ``playback_expires_in`` seconds. When no URL can be
produced the record is returned without ``playback_url``.
"""
import logging
import os
from typing import Optional
from urllib.parse import quote

from database import get_episode, get_media
from storage import PLAYBACK_URL_TTL, is_store_locator

logger = logging.getLogger(__name__)


class PlaybackResolver:
    def __init__(self, gateway=None, media_url_prefix: str = "/files/media", ttl_seconds: int = PLAYBACK_URL_TTL):
        self.gateway = gateway
        self.media_url_prefix = media_url_prefix.rstrip("/")
        self.ttl_seconds = ttl_seconds

    def local_url(self, storage_path: str) -> str:
        return f"{self.media_url_prefix}/{quote(os.path.basename(storage_path))}"

    def playback_url(self, storage_path: Optional[str]) -> Optional[str]:
        if not storage_path:
            return None
        if is_store_locator(storage_path):
            if self.gateway is None:
                logger.warning(f"Object storage not configured, cannot sign {storage_path}")
                return None
            return self.gateway.presign_locator(storage_path, self.ttl_seconds)
        return self.local_url(storage_path)

    def resolve(self, record: Optional[dict]) -> Optional[dict]:
        """Copy of ``record`` with playback_url added when one can be produced."""
        if record is None:
            return None
        resolved = dict(record)
        url = self.playback_url(record.get("storage_path"))
        if url:
            resolved["playback_url"] = url
            if is_store_locator(record["storage_path"]):
                resolved["playback_expires_in"] = self.ttl_seconds
        return resolved


def resolve_media(ctx, media_id: str) -> Optional[dict]:
    conn = ctx.connect()
    try:
        record = get_media(conn, media_id)
    finally:
        conn.close()
    return ctx.playback().resolve(record)


def resolve_episode(ctx, episode_id: str) -> Optional[dict]:
    conn = ctx.connect()
    try:
        record = get_episode(conn, episode_id)
    finally:
        conn.close()
    return ctx.playback().resolve(record)
