# history.py
"""Per-user watch progress and favorites.

Progress is a single integer per (user, media); every save replaces the
previous value. Favorites are a plain (user, media) set.
"""
from fastapi import APIRouter, Body, Depends, HTTPException

from auth import get_user_from_gateway
from context import AppContext, get_context
from database import get_media

router = APIRouter(prefix="/history", tags=["history"])
favorites_router = APIRouter(prefix="/favorites", tags=["favorites"])


def _ensure_media(conn, media_id: str):
    if get_media(conn, media_id) is None:
        raise HTTPException(status_code=404, detail="Media not found")


@router.get("/", summary="Watch progress of the current user, most recent first")
def list_progress(limit: int = 20, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        rows = conn.execute("""
            SELECT m.id, m.title, m.poster_url, m.type, w.progress_seconds, w.updated_at
              FROM watch_progress w
              JOIN media m ON m.id = w.media_id
             WHERE w.username = ?
          ORDER BY w.updated_at DESC
             LIMIT ?
        """, (current_user["username"], limit)).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


@router.put("/{media_id}", summary="Save watch progress for an item")
def save_progress(
        media_id: str,
        progress_seconds: int = Body(..., ge=0, embed=True),
        ctx: AppContext = Depends(get_context),
        current_user=Depends(get_user_from_gateway),
):
    """Last write wins; no history of earlier positions is kept."""
    conn = ctx.connect()
    try:
        _ensure_media(conn, media_id)
        conn.execute("""
            INSERT INTO watch_progress (username, media_id, progress_seconds)
            VALUES (?, ?, ?)
            ON CONFLICT(username, media_id)
            DO UPDATE SET progress_seconds=excluded.progress_seconds,
                          updated_at=CURRENT_TIMESTAMP
        """, (current_user["username"], media_id, progress_seconds))
        conn.commit()
    finally:
        conn.close()
    return {"status": "ok", "media_id": media_id, "progress_seconds": progress_seconds}


@router.get("/{media_id}", summary="Get watch progress for an item")
def get_progress(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        row = conn.execute(
            "SELECT progress_seconds, updated_at FROM watch_progress WHERE username=? AND media_id=?",
            (current_user["username"], media_id),
        ).fetchone()
    finally:
        conn.close()
    return dict(row) if row else {}


@router.delete("/{media_id}", summary="Clear watch progress for an item")
def clear_progress(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        conn.execute(
            "DELETE FROM watch_progress WHERE username=? AND media_id=?",
            (current_user["username"], media_id),
        )
        conn.commit()
    finally:
        conn.close()
    return {"status": "ok"}


# ─────────────────────────── favorites ───────────────────────────────────────
@favorites_router.get("", summary="Favorites of the current user")
def list_favorites(ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        rows = conn.execute("""
            SELECT m.id, m.title, m.poster_url, m.type, f.created_at
              FROM favorites f
              JOIN media m ON m.id = f.media_id
             WHERE f.username = ?
          ORDER BY f.created_at DESC
        """, (current_user["username"],)).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


@favorites_router.put("/{media_id}", summary="Add an item to favorites")
def add_favorite(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        _ensure_media(conn, media_id)
        conn.execute(
            "INSERT OR IGNORE INTO favorites (username, media_id) VALUES (?, ?)",
            (current_user["username"], media_id),
        )
        conn.commit()
    finally:
        conn.close()
    return {"status": "ok", "media_id": media_id, "favorite": True}


@favorites_router.delete("/{media_id}", summary="Remove an item from favorites")
def remove_favorite(media_id: str, ctx: AppContext = Depends(get_context), current_user=Depends(get_user_from_gateway)):
    conn = ctx.connect()
    try:
        conn.execute(
            "DELETE FROM favorites WHERE username=? AND media_id=?",
            (current_user["username"], media_id),
        )
        conn.commit()
    finally:
        conn.close()
    return {"status": "ok", "media_id": media_id, "favorite": False}
