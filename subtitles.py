# subtitles.py
"""Subtitle normalisation and the FastAPI router for subtitle uploads:
- Uploaded SRT files are decoded (encoding sniffed), rewritten as WebVTT and
  the SRT is removed only once the VTT is completely on disk.
- VTT uploads are stored as-is.
- Listing and deleting subtitles of a media item.
"""
import codecs
import logging
import os
import re
import shutil
import uuid
from pathlib import Path
from typing import Tuple

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from auth import get_user_from_gateway
from context import AppContext, get_context
from database import delete_subtitle, get_media, get_subtitle, insert_subtitle, list_subtitles

logger = logging.getLogger(__name__)

router = APIRouter(tags=["subtitles"])

VTT_HEADER = "WEBVTT"
LEGACY_EXTS = {".srt"}
CANONICAL_EXTS = {".vtt"}
# Tried in order after BOM sniffing; latin-1 accepts any byte sequence
FALLBACK_ENCODINGS = ("utf-8", "cp1254", "cp1252", "latin-1")

_SRT_TIMESTAMP = re.compile(r"(\d{2}:\d{2}:\d{2}),(\d{3})")


# ─────────────────────────── normalisation ───────────────────────────────────
def detect_encoding(raw: bytes) -> str:
    """Guess the text encoding of a subtitle file."""
    if raw.startswith(codecs.BOM_UTF8):
        return "utf-8-sig"
    if raw.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return "utf-16"
    for encoding in FALLBACK_ENCODINGS:
        try:
            raw.decode(encoding)
            return encoding
        except UnicodeDecodeError:
            continue
    return "latin-1"


def srt_to_vtt_text(text: str) -> str:
    """
    Convert SRT text to WebVTT.
    • 'WEBVTT' header
    • ',' → '.' in HH:MM:SS,mmm time-codes
    """
    text = text.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    body = _SRT_TIMESTAMP.sub(r"\1.\2", text).lstrip("\n")
    return f"{VTT_HEADER}\n\n{body}"


def normalize_subtitle(path: Path) -> Tuple[Path, str]:
    """
    Bring a caption file into canonical WebVTT form.

    Returns (final_path, detected_encoding). SRT input is converted into a
    sibling ``.vtt`` written through a temporary file; the SRT is deleted only
    after the VTT has been fully written. VTT input is returned unchanged.
    """
    path = Path(path)
    ext = path.suffix.lower()
    if ext in CANONICAL_EXTS:
        return path, "utf-8"
    if ext not in LEGACY_EXTS:
        raise ValueError(f"Unsupported subtitle format: {ext or path.name}")

    raw = path.read_bytes()
    encoding = detect_encoding(raw)
    text = raw.decode(encoding, errors="replace")
    logger.debug(f"SRT input {path} decoded as {encoding}. First 200 chars: {text[:200]}")

    vtt_path = path.with_suffix(".vtt")
    tmp_path = vtt_path.with_name(vtt_path.name + ".part")
    try:
        with open(tmp_path, "w", encoding="utf-8", newline="\n") as dst:
            dst.write(srt_to_vtt_text(text))
        os.replace(tmp_path, vtt_path)
    except OSError:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise
    path.unlink()
    logger.info(f"Converted {path.name} ({encoding}) → {vtt_path.name}")
    return vtt_path, encoding


# ─────────────────────────── endpoints ───────────────────────────────────────
@router.post("/media/{media_id}/subtitles", status_code=201, summary="Upload a subtitle for an item")
def upload_subtitle(
    media_id: str,
    file: UploadFile = File(...),
    language: str = Form(...),
    label: str = Form(...),
    ctx: AppContext = Depends(get_context),
    current_user=Depends(get_user_from_gateway),
):
    ext = Path(file.filename or "").suffix.lower()
    if ext not in LEGACY_EXTS | CANONICAL_EXTS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only .srt and .vtt subtitles are supported.")

    conn = ctx.connect()
    try:
        if get_media(conn, media_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

        sub_dir = Path(ctx.settings.subtitles_dir)
        sub_dir.mkdir(parents=True, exist_ok=True)
        subtitle_id = str(uuid.uuid4())
        upload_path = sub_dir / f"{subtitle_id}{ext}"
        try:
            with open(upload_path, "wb") as out:
                shutil.copyfileobj(file.file, out)
        except OSError as e:
            if upload_path.exists():
                upload_path.unlink()
            logger.error(f"Failed to store subtitle upload {file.filename}: {e}")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to store subtitle")

        try:
            final_path, _ = normalize_subtitle(upload_path)
        except (OSError, ValueError) as e:
            if upload_path.exists():
                upload_path.unlink()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Failed to process subtitle: {e}")

        url = f"{ctx.settings.subtitles_url_prefix}/{final_path.name}"
        record = insert_subtitle(
            conn, subtitle_id=subtitle_id, media_id=media_id, language=language,
            label=label, url=url, file_path=str(final_path),
        )
    finally:
        conn.close()
    return record


@router.get("/media/{media_id}/subtitles", summary="List subtitles for an item")
def list_media_subtitles(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        if get_media(conn, media_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
        return list_subtitles(conn, media_id)
    finally:
        conn.close()


@router.delete("/subtitles/{subtitle_id}", summary="Delete a subtitle")
def remove_subtitle(subtitle_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        record = get_subtitle(conn, subtitle_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subtitle not found")
        delete_subtitle(conn, subtitle_id)
    finally:
        conn.close()
    if record.get("file_path") and os.path.exists(record["file_path"]):
        os.remove(record["file_path"])
    return {"status": "ok"}
