# main.py
import logging
import mimetypes
import os
import shutil
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote

import requests
from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

import database
from auth import get_user_from_gateway, require_admin
from config import Settings
from context import AppContext, build_context, get_context
from filenames import is_video_file, parse_filename
from history import favorites_router
from history import router as history_router
from jobs import QueueUnavailable, enqueue_metadata_enrichment, enqueue_transcode
from models import EpisodeCreate, JobAccepted, MediaCreate, MediaUpdate, ScanResponse
from playback import resolve_episode, resolve_media
from subtitles import router as sub_router
from tmdb import placeholder_bundle

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

mimetypes.add_type("text/vtt", ".vtt")
mimetypes.add_type("video/x-matroska", ".mkv")


def _queue_or_503(ctx: AppContext):
    if ctx.queue is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job queue not configured")
    return ctx.queue


def _unique_upload_path(conn, root: Path, file_name: str) -> Path:
    """First name under ``root`` that is neither on disk nor already indexed."""
    safe_name = os.path.basename(file_name).replace("\x00", "")
    target = root / safe_name
    stem, ext = os.path.splitext(safe_name)
    n = 1
    while target.exists() or database.find_media_by_storage_path(conn, str(target)) is not None:
        target = root / f"{stem} ({n}){ext}"
        n += 1
    return target


def _rendition_files(settings: Settings, renditions: dict) -> List[str]:
    """Map rendition URLs published under the videos prefix back to their files."""
    prefix = settings.videos_url_prefix.rstrip("/") + "/"
    files = []
    for url in (renditions or {}).values():
        if url and url.startswith(prefix):
            name = os.path.basename(unquote(url[len(prefix):]))
            if name:
                files.append(os.path.join(settings.videos_dir, name))
    return files


def _discard(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def create_app(settings: Optional[Settings] = None, **overrides) -> FastAPI:
    """
    Build the API. ``overrides`` (gateway, queue, resolver, transcoder) are
    passed to build_context so tests can inject fakes.
    """
    settings = settings or Settings.from_env()
    ctx = build_context(settings, **overrides)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Server starting up...")
        database.initialize_db(settings.database_path)
        os.makedirs(settings.videos_dir, exist_ok=True)
        os.makedirs(settings.subtitles_dir, exist_ok=True)
        yield
        logger.info("Server shutting down...")

    app = FastAPI(title="Cinetron Media Server", lifespan=lifespan)
    app.state.context = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # More specific mount first: media root lives under the public prefix
    app.mount(settings.media_url_prefix, StaticFiles(directory=settings.media_root, check_dir=False), name="media")
    app.mount(settings.public_url_prefix, StaticFiles(directory=settings.public_dir, check_dir=False), name="files")

    app.include_router(history_router)
    app.include_router(favorites_router)
    app.include_router(sub_router)

    @app.get("/")
    def read_root():
        return {"Project": "Cinetron", "Status": "Running"}

    # ─────────────────────────── library ───────────────────────────
    @app.post("/media/scan", response_model=ScanResponse)
    def scan_library(ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        result = ctx.scanner().scan()
        return {"message": result.message, "added": result.added}

    @app.get("/media")
    def get_media_list(type: Optional[str] = Query(None, enum=list(database.MEDIA_TYPES)),
                       ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        conn = ctx.connect()
        try:
            return database.list_media(conn, type)
        finally:
            conn.close()

    @app.post("/media", status_code=201)
    def create_media(body: MediaCreate, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        fields = body.model_dump(exclude_none=True)
        if not fields.get("poster_url"):
            fields["poster_url"] = placeholder_bundle(body.title).poster_url
        conn = ctx.connect()
        try:
            return database.insert_media(conn, **fields)
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="A media item with this storage path already exists")
        finally:
            conn.close()

    @app.post("/media/upload", status_code=201)
    def upload_media(file: UploadFile = File(...), ctx: AppContext = Depends(get_context),
                     current_user=Depends(get_user_from_gateway)):
        """Store an uploaded video in the media root and queue its transcode."""
        require_admin(current_user)
        if not file.filename or not is_video_file(file.filename):
            raise HTTPException(status_code=400, detail="Unsupported video format")
        root = Path(os.path.abspath(ctx.settings.media_root))
        root.mkdir(parents=True, exist_ok=True)

        conn = ctx.connect()
        try:
            target = _unique_upload_path(conn, root, file.filename)
            try:
                with open(target, "wb") as out:
                    shutil.copyfileobj(file.file, out)
            except OSError as e:
                _discard(target)
                logger.error(f"Failed to store upload {file.filename}: {e}")
                raise HTTPException(status_code=500, detail="Failed to store uploaded file")

            title, year = parse_filename(target.name)
            placeholder = placeholder_bundle(title or target.name, year, target.name)
            try:
                record = database.insert_media(
                    conn, title=title or target.name, year=year, storage_path=str(target),
                    original_file_name=file.filename, type="movie", poster_url=placeholder.poster_url,
                    overview=placeholder.overview, needs_transcode=True,
                )
            except sqlite3.IntegrityError:
                # A concurrent upload claimed the name first and owns the file
                raise HTTPException(status_code=409, detail="A media item with this storage path already exists")
        finally:
            conn.close()

        if ctx.queue is not None:
            try:
                enqueue_transcode(ctx.queue, record["id"])
                if ctx.settings.enrich_on_scan:
                    enqueue_metadata_enrichment(ctx.queue, record["id"])
            except QueueUnavailable as e:
                logger.warning(f"Upload stored but jobs not queued for {record['id']}: {e}")
        else:
            logger.warning(f"Upload stored but no job queue configured for {record['id']}")
        return record

    @app.get("/media/{media_id}")
    def get_media_item(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        record = resolve_media(ctx, media_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Media not found")
        return record

    @app.patch("/media/{media_id}")
    def edit_media(media_id: str, body: MediaUpdate, ctx: AppContext = Depends(get_context),
                   current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        conn = ctx.connect()
        try:
            if not database.update_media(conn, media_id, **body.model_dump(exclude_unset=True)):
                raise HTTPException(status_code=404, detail="Media not found")
            return database.get_media(conn, media_id)
        finally:
            conn.close()

    @app.delete("/media/{media_id}")
    def delete_media_item(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        conn = ctx.connect()
        try:
            record = database.get_media(conn, media_id)
            if record is None:
                raise HTTPException(status_code=404, detail="Media not found")
            subtitle_files = database.subtitle_files_for_media(conn, media_id)
            database.delete_media(conn, media_id)
        finally:
            conn.close()
        for path in subtitle_files + _rendition_files(ctx.settings, record["renditions"]):
            _discard(path)
        return {"status": "ok"}

    # ─────────────────────────── jobs ───────────────────────────
    @app.post("/media/{media_id}/transcode", status_code=202, response_model=JobAccepted)
    def request_transcode(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        _require_media(ctx, media_id)
        queue = _queue_or_503(ctx)
        try:
            message_id = enqueue_transcode(queue, media_id)
        except QueueUnavailable as e:
            raise HTTPException(status_code=503, detail=f"Job queue unavailable: {e}")
        return {"job": "transcode", "media_id": media_id, "message_id": message_id}

    @app.post("/media/{media_id}/enrich", status_code=202, response_model=JobAccepted)
    def request_enrichment(media_id: str, external_id: Optional[str] = Body(None, embed=True),
                           ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        _require_media(ctx, media_id)
        queue = _queue_or_503(ctx)
        try:
            message_id = enqueue_metadata_enrichment(queue, media_id, external_id)
        except QueueUnavailable as e:
            raise HTTPException(status_code=503, detail=f"Job queue unavailable: {e}")
        return {"job": "enrich", "media_id": media_id, "message_id": message_id}

    # ─────────────────────────── episodes ───────────────────────────
    @app.get("/media/{media_id}/episodes")
    def list_media_episodes(media_id: str, season: Optional[int] = None, ctx: AppContext = Depends(get_context),
                            current_user=Depends(get_user_from_gateway)):
        conn = ctx.connect()
        try:
            if database.get_media(conn, media_id) is None:
                raise HTTPException(status_code=404, detail="Media not found")
            return database.list_episodes(conn, media_id, season)
        finally:
            conn.close()

    @app.post("/media/{media_id}/episodes", status_code=201)
    def add_episode(media_id: str, body: EpisodeCreate, ctx: AppContext = Depends(get_context),
                    current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        conn = ctx.connect()
        try:
            if database.get_media(conn, media_id) is None:
                raise HTTPException(status_code=404, detail="Media not found")
            return database.insert_episode(conn, media_id=media_id, **body.model_dump())
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="Episode number or storage path already in use")
        finally:
            conn.close()

    @app.get("/episodes/{episode_id}")
    def get_episode_item(episode_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        record = resolve_episode(ctx, episode_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Episode not found")
        return record

    # ─────────────────────────── TMDb ───────────────────────────
    @app.get("/tmdb/search")
    def proxy_tmdb_search(q: str, year: Optional[int] = None, type: str = Query("movie", enum=list(database.MEDIA_TYPES)),
                          ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
        if not ctx.resolver.config.has_credentials:
            raise HTTPException(status_code=503, detail="TMDb is not configured")
        try:
            return ctx.resolver.search(q, year, type)
        except requests.RequestException as e:
            raise HTTPException(status_code=502, detail=f"TMDb search error: {e}")

    @app.post("/media/{media_id}/set_tmdb")
    def set_tmdb(media_id: str, tmdb_id: int = Body(..., embed=True), ctx: AppContext = Depends(get_context),
                 current_user=Depends(get_user_from_gateway)):
        require_admin(current_user)
        conn = ctx.connect()
        try:
            record = database.get_media(conn, media_id)
            if record is None:
                raise HTTPException(status_code=404, detail="Media not found")
            try:
                data = ctx.resolver.details(tmdb_id, record["type"])
            except requests.RequestException as e:
                raise HTTPException(status_code=502, detail=f"TMDb details error: {e}")
            bundle = ctx.resolver.bundle_from_result(data)
            database.update_media(
                conn, media_id, title=bundle.title or record["title"], year=bundle.year or record["year"],
                overview=bundle.overview, poster_url=bundle.poster_url or record["poster_url"],
                backdrop_url=bundle.backdrop_url, genres=bundle.genres, cast_members=bundle.cast,
                tmdb_id=bundle.tmdb_id,
            )
            return database.get_media(conn, media_id)
        finally:
            conn.close()

    return app


def _require_media(ctx: AppContext, media_id: str):
    conn = ctx.connect()
    try:
        if database.get_media(conn, media_id) is None:
            raise HTTPException(status_code=404, detail="Media not found")
    finally:
        conn.close()


app = create_app()
