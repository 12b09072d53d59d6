import json
import os
import sqlite3
import uuid
from typing import Dict, Iterable, List, Optional

DATABASE_PATH = os.getenv("DATABASE_PATH", "cinetron.db")

TRANSCODE_STATES = ("not_started", "in_progress", "partially_complete", "complete")
MEDIA_TYPES = ("movie", "series")

_JSON_COLUMNS = {"genres": list, "cast_members": list, "renditions": dict}

MEDIA_COLUMNS = (
    "title", "year", "overview", "type", "storage_path", "original_file_name",
    "poster_url", "backdrop_url", "genres", "cast_members", "tmdb_id",
    "renditions", "needs_transcode", "transcode_state",
)
EDITABLE_MEDIA_COLUMNS = (
    "title", "year", "overview", "type", "poster_url", "backdrop_url",
    "genres", "cast_members", "tmdb_id",
)


def get_db_connection(path: Optional[str] = None):
    """Establishes a connection to the database."""
    conn = sqlite3.connect(path or DATABASE_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_db(path: Optional[str] = None):
    """
    Creates the necessary tables if they don't exist and makes sure
    any new columns that later versions need are added.
    """
    db_path = path or DATABASE_PATH
    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = get_db_connection(db_path)
    cursor = conn.cursor()

    # storage_path is the dedup key: one media row per file/object
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS media (
            id                 TEXT    PRIMARY KEY,
            title              TEXT    NOT NULL,
            year               INTEGER,
            overview           TEXT,
            type               TEXT    NOT NULL DEFAULT 'movie',
            storage_path       TEXT    NOT NULL UNIQUE,
            original_file_name TEXT,
            poster_url         TEXT,
            backdrop_url       TEXT,
            genres             TEXT    NOT NULL DEFAULT '[]',
            cast_members       TEXT    NOT NULL DEFAULT '[]',
            tmdb_id            INTEGER,
            renditions         TEXT    NOT NULL DEFAULT '{}',
            needs_transcode    INTEGER NOT NULL DEFAULT 0,
            transcode_state    TEXT    NOT NULL DEFAULT 'not_started',
            created_at         TEXT    DEFAULT CURRENT_TIMESTAMP,
            updated_at         TEXT    DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Add missing columns for media table
    for col, ddl in (
        ("original_file_name", "TEXT"),
        ("cast_members",       "TEXT NOT NULL DEFAULT '[]'"),
        ("tmdb_id",            "INTEGER"),
    ):
        try:
            cursor.execute(f"ALTER TABLE media ADD COLUMN {col} {ddl}")
        except sqlite3.OperationalError:
            pass  # Column already exists

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS episodes (
            id              TEXT    PRIMARY KEY,
            media_id        TEXT    NOT NULL,
            season_number   INTEGER NOT NULL,
            episode_number  INTEGER NOT NULL,
            title           TEXT    NOT NULL,
            overview        TEXT,
            storage_path    TEXT    NOT NULL UNIQUE,
            still_url       TEXT,
            created_at      TEXT    DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(media_id, season_number, episode_number),
            FOREIGN KEY (media_id) REFERENCES media(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS subtitles (
            id          TEXT PRIMARY KEY,
            media_id    TEXT NOT NULL,
            language    TEXT NOT NULL,
            label       TEXT NOT NULL,
            url         TEXT NOT NULL,
            file_path   TEXT,
            created_at  TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (media_id) REFERENCES media(id) ON DELETE CASCADE
        )
    """)

    # Single replaceable position per (user, media)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS watch_progress (
            username          TEXT    NOT NULL,
            media_id          TEXT    NOT NULL,
            progress_seconds  INTEGER NOT NULL DEFAULT 0,
            updated_at        TEXT    DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (username, media_id),
            FOREIGN KEY (media_id) REFERENCES media(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS favorites (
            username    TEXT NOT NULL,
            media_id    TEXT NOT NULL,
            created_at  TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (username, media_id),
            FOREIGN KEY (media_id) REFERENCES media(id) ON DELETE CASCADE
        )
    """)

    conn.commit()
    conn.close()


# ───────────────────────────── row helpers ───────────────────────────────────
def _decode(row: Optional[sqlite3.Row]) -> Optional[dict]:
    if row is None:
        return None
    data = dict(row)
    for col, kind in _JSON_COLUMNS.items():
        if col in data:
            try:
                data[col] = json.loads(data[col]) if data[col] else kind()
            except ValueError:
                data[col] = kind()
    if "needs_transcode" in data:
        data["needs_transcode"] = bool(data["needs_transcode"])
        data["processed"] = is_processed(data)
    return data


def _encode(fields: Dict) -> Dict:
    out = {}
    for col, value in fields.items():
        if col in _JSON_COLUMNS and not isinstance(value, str):
            value = json.dumps(value if value is not None else _JSON_COLUMNS[col]())
        elif col == "needs_transcode":
            value = 1 if value else 0
        out[col] = value
    return out


def is_processed(record: Dict) -> bool:
    """Readiness flag: nothing to transcode, or at least one rendition done."""
    if not record.get("needs_transcode"):
        return True
    return record.get("transcode_state") in ("partially_complete", "complete")


# ───────────────────────────── media ─────────────────────────────────────────
def get_media(conn, media_id: str) -> Optional[dict]:
    return _decode(conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone())


def find_media_by_storage_path(conn, storage_path: str) -> Optional[dict]:
    return _decode(conn.execute(
        "SELECT * FROM media WHERE storage_path = ?", (storage_path,)
    ).fetchone())


def known_storage_paths(conn) -> set:
    return {row["storage_path"] for row in conn.execute("SELECT storage_path FROM media")}


def list_media(conn, media_type: Optional[str] = None) -> List[dict]:
    if media_type:
        rows = conn.execute(
            "SELECT * FROM media WHERE type = ? ORDER BY created_at DESC, title", (media_type,)
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM media ORDER BY created_at DESC, title").fetchall()
    return [_decode(r) for r in rows]


def count_media(conn) -> int:
    return conn.execute("SELECT COUNT(*) FROM media").fetchone()[0]


def insert_media(conn, *, title: str, storage_path: str, **fields) -> dict:
    """
    Insert a media row and return it. Raises sqlite3.IntegrityError when a
    row with the same storage_path already exists.
    """
    unknown = set(fields) - set(MEDIA_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown media fields: {', '.join(sorted(unknown))}")
    values = _encode({"title": title, "storage_path": storage_path, **fields})
    values["id"] = str(uuid.uuid4())
    cols = ", ".join(values)
    marks = ", ".join("?" for _ in values)
    conn.execute(f"INSERT INTO media ({cols}) VALUES ({marks})", tuple(values.values()))
    conn.commit()
    return get_media(conn, values["id"])


def update_media(conn, media_id: str, **fields) -> bool:
    unknown = set(fields) - set(MEDIA_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown media fields: {', '.join(sorted(unknown))}")
    if not fields:
        return get_media(conn, media_id) is not None
    values = _encode(fields)
    assignments = ", ".join(f"{col} = ?" for col in values)
    cur = conn.execute(
        f"UPDATE media SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (*values.values(), media_id),
    )
    conn.commit()
    return cur.rowcount > 0


def add_rendition(conn, media_id: str, quality: str, url: str) -> bool:
    """Merge one quality into media.renditions without clobbering others."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        row = conn.execute("SELECT renditions FROM media WHERE id = ?", (media_id,)).fetchone()
        if row is None:
            conn.rollback()
            return False
        renditions = json.loads(row["renditions"] or "{}")
        renditions[quality] = url
        conn.execute(
            "UPDATE media SET renditions = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (json.dumps(renditions), media_id),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return True


def delete_media(conn, media_id: str) -> bool:
    cur = conn.execute("DELETE FROM media WHERE id = ?", (media_id,))
    conn.commit()
    return cur.rowcount > 0


# ───────────────────────────── episodes ──────────────────────────────────────
def get_episode(conn, episode_id: str) -> Optional[dict]:
    return _decode(conn.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,)).fetchone())


def list_episodes(conn, media_id: str, season: Optional[int] = None) -> List[dict]:
    if season is None:
        rows = conn.execute(
            "SELECT * FROM episodes WHERE media_id = ? ORDER BY season_number, episode_number",
            (media_id,),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM episodes WHERE media_id = ? AND season_number = ? ORDER BY episode_number",
            (media_id, season),
        ).fetchall()
    return [_decode(r) for r in rows]


def insert_episode(conn, *, media_id: str, season_number: int, episode_number: int,
                   title: str, storage_path: str, overview: Optional[str] = None,
                   still_url: Optional[str] = None) -> dict:
    episode_id = str(uuid.uuid4())
    conn.execute("""
        INSERT INTO episodes
            (id, media_id, season_number, episode_number, title, overview, storage_path, still_url)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (episode_id, media_id, season_number, episode_number, title, overview, storage_path, still_url))
    conn.commit()
    return get_episode(conn, episode_id)


# ───────────────────────────── subtitles ─────────────────────────────────────
def insert_subtitle(conn, *, media_id: str, language: str, label: str, url: str,
                    file_path: Optional[str] = None, subtitle_id: Optional[str] = None) -> dict:
    subtitle_id = subtitle_id or str(uuid.uuid4())
    conn.execute(
        "INSERT INTO subtitles (id, media_id, language, label, url, file_path) VALUES (?, ?, ?, ?, ?, ?)",
        (subtitle_id, media_id, language, label, url, file_path),
    )
    conn.commit()
    return get_subtitle(conn, subtitle_id)


def get_subtitle(conn, subtitle_id: str) -> Optional[dict]:
    return _decode(conn.execute("SELECT * FROM subtitles WHERE id = ?", (subtitle_id,)).fetchone())


def list_subtitles(conn, media_id: str) -> List[dict]:
    rows = conn.execute(
        "SELECT * FROM subtitles WHERE media_id = ? ORDER BY created_at, label", (media_id,)
    ).fetchall()
    return [_decode(r) for r in rows]


def subtitle_files_for_media(conn, media_id: str) -> Iterable[str]:
    rows = conn.execute(
        "SELECT file_path FROM subtitles WHERE media_id = ? AND file_path IS NOT NULL", (media_id,)
    ).fetchall()
    return [r["file_path"] for r in rows]


def delete_subtitle(conn, subtitle_id: str) -> bool:
    cur = conn.execute("DELETE FROM subtitles WHERE id = ?", (subtitle_id,))
    conn.commit()
    return cur.rowcount > 0
