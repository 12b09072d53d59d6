# filenames.py
"""Filename helpers shared by the scanner, uploads and the worker."""
import os
import re
from typing import NamedTuple, Optional

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov", ".webm")

_YEAR_RE = re.compile(r"\((\d{4})\)")


class ParsedName(NamedTuple):
    title: str
    year: Optional[int]


def is_video_file(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in VIDEO_EXTENSIONS


def parse_filename(file_name: str) -> ParsedName:
    """
    Best-effort title/year from a bare file name.
    "The Matrix (1999).mkv" -> ("The Matrix", 1999)
    "some.movie.title.mp4"  -> ("some movie title", None)
    """
    stem = os.path.splitext(file_name)[0]
    year = None
    match = _YEAR_RE.search(stem)
    if match:
        year = int(match.group(1))
        stem = stem[:match.start()] + stem[match.end():]
    title = re.sub(r"[._]", " ", stem)
    title = re.sub(r"\s{2,}", " ", title).strip()
    return ParsedName(title, year)
