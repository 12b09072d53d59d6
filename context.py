# context.py
"""Explicitly constructed clients shared by the API and the worker."""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from config import Settings
from database import get_db_connection
from jobs import JobQueue
from playback import PlaybackResolver
from scanner import LibraryScanner
from storage import ObjectStoreGateway
from tmdb import MetadataResolver
from transcode import TranscodeEngine

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    gateway: Optional[ObjectStoreGateway]
    queue: Optional[JobQueue]
    resolver: MetadataResolver
    transcoder: TranscodeEngine

    def connect(self):
        return get_db_connection(self.settings.database_path)

    def scanner(self) -> LibraryScanner:
        return LibraryScanner(self.settings, gateway=self.gateway, queue=self.queue)

    def playback(self) -> PlaybackResolver:
        return PlaybackResolver(
            self.gateway,
            media_url_prefix=self.settings.media_url_prefix,
        )


def build_context(settings: Settings, *, gateway=None, queue=None, resolver=None, transcoder=None) -> AppContext:
    """
    Build every client from ``settings``; explicit arguments win. Object
    storage and the job queue stay None unless configured.
    """
    if gateway is None and settings.storage.enabled:
        gateway = ObjectStoreGateway(settings.storage)
        logger.info(f"Object storage enabled: {gateway!r}")
    if queue is None and settings.queue.enabled:
        queue = JobQueue.from_config(settings.queue)
    elif queue is None:
        logger.warning("REDIS_URL not set, background jobs are disabled")
    return AppContext(
        settings=settings,
        gateway=gateway,
        queue=queue,
        resolver=resolver or MetadataResolver(settings.tmdb),
        transcoder=transcoder or TranscodeEngine(
            settings.videos_dir,
            settings.videos_url_prefix,
            ffmpeg_bin=settings.ffmpeg_bin,
            timeout=settings.transcode_timeout,
        ),
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency: the context attached by create_app()."""
    return request.app.state.context
