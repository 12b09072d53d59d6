# worker.py
"""Cinetron background worker.

Consumes scan / transcode / enrich jobs from the Redis stream and runs the
matching component off the request path. Run with ``python worker.py``.
"""
import logging
import os
import signal
import threading
from typing import Optional

from redis.exceptions import RedisError

import database
from config import Settings
from context import AppContext, build_context
from jobs import Delivery, EnrichJob, QueueUnavailable, ScanJob, TranscodeJob
from storage import PLAYBACK_URL_TTL, is_store_locator, parse_store_locator
from transcode import TranscodeFailed

logger = logging.getLogger(__name__)


class MediaNotFound(LookupError):
    """The job refers to a media row that no longer exists."""


def _load_media(ctx: AppContext, media_id: str) -> dict:
    conn = ctx.connect()
    try:
        record = database.get_media(conn, media_id)
    finally:
        conn.close()
    if record is None:
        raise MediaNotFound(media_id)
    return record


def _set_fields(ctx: AppContext, media_id: str, **fields):
    conn = ctx.connect()
    try:
        database.update_media(conn, media_id, **fields)
    finally:
        conn.close()


def _source_for(ctx: AppContext, storage_path: str) -> Optional[str]:
    """Local path as-is; object-store locators become a presigned GET URL."""
    if not is_store_locator(storage_path):
        return storage_path
    if ctx.gateway is None:
        return None
    return ctx.gateway.presign_locator(storage_path, PLAYBACK_URL_TTL)


def _filename_base(storage_path: str) -> str:
    locator = parse_store_locator(storage_path)
    name = locator.key.rsplit("/", 1)[-1] if locator else os.path.basename(storage_path)
    return os.path.splitext(name)[0] or "video"


# ─────────────────────────── handlers ────────────────────────────────────────
def handle_scan(ctx: AppContext, job: ScanJob):
    result = ctx.scanner().scan()
    logger.info(f"Scan job finished: {result.message}")
    return result


def handle_transcode(ctx: AppContext, job: TranscodeJob):
    """
    Encode every ladder quality of one media item, one after another.

    Each finished quality is merged into ``renditions`` as soon as it exists,
    so a crash halfway keeps what was already produced. Raises
    TranscodeFailed when nothing at all could be encoded.
    """
    try:
        record = _load_media(ctx, job.media_id)
    except MediaNotFound:
        logger.warning(f"Transcode skipped, media {job.media_id} no longer exists")
        return {}

    source = _source_for(ctx, record["storage_path"])
    if not source:
        raise TranscodeFailed(f"No readable source for media {job.media_id}: {record['storage_path']}")

    # needs_transcode is owned by ingestion, never changed here
    previous_state = record.get("transcode_state") or "not_started"
    _set_fields(ctx, job.media_id, transcode_state="in_progress")

    def on_rendition(quality: str, url: str):
        conn = ctx.connect()
        try:
            database.add_rendition(conn, job.media_id, quality, url)
        finally:
            conn.close()

    try:
        produced = ctx.transcoder.transcode(source, _filename_base(record["storage_path"]), on_rendition=on_rendition)
    except Exception:
        _set_fields(ctx, job.media_id, transcode_state=previous_state)
        raise

    if not produced:
        _set_fields(ctx, job.media_id, transcode_state=previous_state)
        raise TranscodeFailed(f"No renditions produced for media {job.media_id}")

    state = "complete" if len(produced) == len(ctx.transcoder.ladder) else "partially_complete"
    _set_fields(ctx, job.media_id, transcode_state=state)
    logger.info(f"Transcode of {job.media_id} finished ({state}): {', '.join(produced)}")
    return produced


def handle_enrich(ctx: AppContext, job: EnrichJob):
    """Replace filename-derived metadata with the provider's when it has a match."""
    try:
        record = _load_media(ctx, job.media_id)
    except MediaNotFound:
        logger.warning(f"Enrichment skipped, media {job.media_id} no longer exists")
        return None

    bundle = ctx.resolver.resolve(
        record["title"],
        record.get("year"),
        record.get("type") or "movie",
        external_id=job.external_id,
        file_name=record.get("original_file_name"),
    )
    if bundle.found:
        _set_fields(
            ctx, job.media_id,
            title=bundle.title or record["title"],
            year=bundle.year or record.get("year"),
            overview=bundle.overview or record.get("overview"),
            poster_url=bundle.poster_url or record.get("poster_url"),
            backdrop_url=bundle.backdrop_url or record.get("backdrop_url"),
            genres=bundle.genres,
            cast_members=bundle.cast,
            tmdb_id=bundle.tmdb_id,
        )
        logger.info(f"Enriched {job.media_id} from TMDb id={bundle.tmdb_id}")
    elif not record.get("poster_url"):
        _set_fields(ctx, job.media_id, poster_url=bundle.poster_url)
    return bundle


HANDLERS = {
    "scan": handle_scan,
    "transcode": handle_transcode,
    "enrich": handle_enrich,
}


def process_delivery(ctx: AppContext, delivery: Delivery) -> bool:
    """
    Run one delivered job and acknowledge it. A failing job is put back on
    the stream for another attempt before the original message is acked.
    Returns True when the handler succeeded.
    """
    queue = ctx.queue
    if delivery.job is None:
        logger.error(f"Discarding invalid job {delivery.message_id}: {delivery.error}")
        queue.ack(delivery.message_id)
        return False

    handler = HANDLERS[delivery.job.kind]
    logger.info(f"Processing {delivery.job.kind} job {delivery.message_id} (attempt {delivery.attempts + 1})")
    try:
        handler(ctx, delivery.job)
    except Exception as e:
        logger.exception(f"{delivery.job.kind} job {delivery.message_id} failed: {e}")
        try:
            queue.retry(delivery)
        except QueueUnavailable as qe:
            # Leave the message pending so it can be claimed again
            logger.error(f"Could not re-queue job {delivery.message_id}: {qe}")
            return False
        queue.ack(delivery.message_id)
        return False
    queue.ack(delivery.message_id)
    return True


def run_worker(ctx: AppContext, stop_event: Optional[threading.Event] = None):
    stop_event = stop_event or threading.Event()
    logger.info(f"Worker '{ctx.settings.queue.consumer}' listening on '{ctx.settings.queue.stream}'")
    while not stop_event.is_set():
        try:
            deliveries = ctx.queue.read(count=1)
        except RedisError as e:
            logger.error(f"Queue read failed: {e}")
            stop_event.wait(5)
            continue
        for delivery in deliveries:
            process_delivery(ctx, delivery)
    logger.info("Worker stopped.")


def main():
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    database.initialize_db(settings.database_path)
    ctx = build_context(settings)
    if ctx.queue is None:
        raise SystemExit("REDIS_URL must be set to run the worker")

    stop_event = threading.Event()

    def _stop(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down…")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    run_worker(ctx, stop_event)


if __name__ == "__main__":
    main()
