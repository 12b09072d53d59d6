# models.py
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


# --- Media Models ---
class MediaCreate(BaseModel):
    title: str = Field(..., min_length=1)
    storage_path: str = Field(..., min_length=1)
    type: Literal["movie", "series"] = "movie"
    year: Optional[int] = None
    overview: Optional[str] = None
    poster_url: Optional[str] = None
    backdrop_url: Optional[str] = None
    needs_transcode: bool = False


class MediaUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    type: Optional[Literal["movie", "series"]] = None
    year: Optional[int] = None
    overview: Optional[str] = None
    poster_url: Optional[str] = None
    backdrop_url: Optional[str] = None
    genres: Optional[List[str]] = None


# --- Episode Models ---
class EpisodeCreate(BaseModel):
    season_number: int = Field(..., ge=0)
    episode_number: int = Field(..., ge=0)
    title: str = Field(..., min_length=1)
    storage_path: str = Field(..., min_length=1)
    overview: Optional[str] = None
    still_url: Optional[str] = None


# --- Scan / Jobs ---
class ScanResponse(BaseModel):
    message: str
    added: int


class JobAccepted(BaseModel):
    status: str = "queued"
    job: str
    media_id: Optional[str] = None
    message_id: Optional[str] = None
