# scanner.py
"""Cinetron – Library Scanner
Discovers video files on the local media root and in the object-store bucket
and creates one media record per new storage path.
- Local and remote sources are scanned independently; a failing source is
  reported in the result message and never aborts the other one.
- Re-running a scan with nothing new adds nothing (storage_path is unique).
- New records get filename-derived metadata and a placeholder poster; an
  enrichment job is queued for the worker when a queue is configured.
"""
import logging
import os
import sqlite3
from typing import Iterator, NamedTuple, Optional

from config import Settings
from database import get_db_connection, insert_media, known_storage_paths
from filenames import is_video_file, parse_filename
from jobs import EnrichJob, QueueUnavailable
from storage import ObjectStoreGateway, StorageUnavailable, format_store_locator
from tmdb import placeholder_bundle

logger = logging.getLogger(__name__)


class ScanResult(NamedTuple):
    message: str
    added: int


def walk_media_root(root: str) -> Iterator[str]:
    """
    Yield the absolute path of every regular file below ``root``.

    Symlinked directories are followed, but each directory (by device and
    inode) is entered once, so link cycles terminate. A missing root yields
    nothing.
    """
    root = os.path.abspath(root)
    if not os.path.isdir(root):
        return
    visited = set()
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            st = os.stat(current)
        except OSError as e:
            logger.warning(f"Cannot stat directory {current}: {e}")
            continue
        ident = (st.st_dev, st.st_ino)
        if ident in visited:
            logger.debug(f"Directory already visited (symlink loop?), skipping: {current}")
            continue
        visited.add(ident)
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.warning(f"Cannot list directory {current}: {e}")
            continue
        subdirs = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=True):
                    subdirs.append(entry.path)
                elif entry.is_file(follow_symlinks=True):
                    yield entry.path
            except OSError:
                continue  # dangling link or vanished entry
        stack.extend(reversed(subdirs))


class LibraryScanner:
    """Start → ScanLocal → ScanRemote → Done, both sources always attempted."""

    def __init__(self, settings: Settings, gateway: Optional[ObjectStoreGateway] = None, queue=None):
        self.settings = settings
        self.gateway = gateway
        self.queue = queue

    def scan(self) -> ScanResult:
        logger.info("Starting library scan…")
        conn = get_db_connection(self.settings.database_path)
        try:
            known = known_storage_paths(conn)
            local_msg, local_added = self._scan_local(conn, known)
            remote_msg, remote_added = self._scan_remote(conn, known)
        finally:
            conn.close()
        total = local_added + remote_added
        message = f"{local_msg}; {remote_msg}"
        if total:
            logger.info(f"Scan complete – {total} new item(s) added.")
        else:
            logger.info("Scan complete – library already up to date.")
        return ScanResult(message, total)

    # ───────────────────────── sources ─────────────────────────
    def _scan_local(self, conn, known: set):
        root = self.settings.media_root
        if not root or not os.path.isdir(root):
            logger.warning(f"Media directory not found, skipping local scan: {root}")
            return "local: media directory not found, skipped", 0
        seen = added = 0
        for path in walk_media_root(root):
            if not is_video_file(path):
                continue
            seen += 1
            if path in known:
                continue
            if self._add(conn, path, os.path.basename(path)):
                known.add(path)
                added += 1
        return f"local: {added} added ({seen} video files)", added

    def _scan_remote(self, conn, known: set):
        bucket = self.settings.storage.bucket
        if self.gateway is None or not bucket:
            return "remote: object storage not configured, skipped", 0
        try:
            objects = list(self.gateway.list_all(bucket))
        except StorageUnavailable as e:
            logger.error(f"Remote scan skipped: {e}")
            return f"remote: bucket '{bucket}' unavailable, skipped", 0
        seen = added = 0
        for obj in objects:
            if obj.key.endswith("/") or not is_video_file(obj.key):
                continue
            seen += 1
            storage_path = format_store_locator(bucket, obj.key)
            if storage_path in known:
                continue
            if self._add(conn, storage_path, obj.key.rsplit("/", 1)[-1]):
                known.add(storage_path)
                added += 1
        return f"remote: {added} added ({seen} video objects)", added

    # ───────────────────────── persistence ─────────────────────────
    def _add(self, conn, storage_path: str, file_name: str) -> bool:
        title, year = parse_filename(file_name)
        if not title:
            title = file_name
        placeholder = placeholder_bundle(title, year, file_name)
        try:
            record = insert_media(
                conn,
                title=title,
                year=year,
                storage_path=storage_path,
                original_file_name=file_name,
                type="movie",
                poster_url=placeholder.poster_url,
                overview=placeholder.overview,
                needs_transcode=False,
            )
        except sqlite3.IntegrityError:
            # A concurrent scan or upload got there first
            logger.info(f"Already indexed, skipping: {storage_path}")
            return False
        logger.info(f"→ Indexed: {file_name} as '{title}' ({year})")
        if self.queue is not None and self.settings.enrich_on_scan:
            self._enqueue_enrichment(record["id"])
        return True

    def _enqueue_enrichment(self, media_id: str):
        try:
            self.queue.enqueue(EnrichJob(media_id=media_id))
        except QueueUnavailable as e:
            logger.warning(f"Could not queue enrichment for {media_id}: {e}")
