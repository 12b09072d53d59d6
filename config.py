# config.py
"""Runtime configuration for the Cinetron media server and worker.

Everything is read from the environment (a local .env is honoured). The
values are grouped into small config structs that are built once at startup
and handed to the components that need them.
"""
import os
import socket
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass
class StorageConfig:
    """S3-compatible object store (MinIO, AWS, ...)."""
    endpoint_url: Optional[str] = None
    region: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    bucket: Optional[str] = None
    connect_timeout: float = 3.0
    read_timeout: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.bucket)

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(
            endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
            region=os.getenv("S3_REGION") or None,
            access_key_id=os.getenv("S3_ACCESS_KEY_ID") or None,
            secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY") or None,
            bucket=os.getenv("S3_BUCKET") or None,
            connect_timeout=_env_float("S3_CONNECT_TIMEOUT", 3.0),
            read_timeout=_env_float("S3_READ_TIMEOUT", 10.0),
        )


@dataclass
class TmdbConfig:
    api_key: Optional[str] = None
    read_token: Optional[str] = None
    base_url: str = "https://api.themoviedb.org/3"
    image_base_url: str = "https://image.tmdb.org/t/p"
    language: str = "en-US"
    timeout: float = 10.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key or self.read_token)

    @classmethod
    def from_env(cls) -> "TmdbConfig":
        return cls(
            api_key=os.getenv("TMDB_API_KEY") or None,
            read_token=os.getenv("TMDB_READ_TOKEN") or None,
            base_url=os.getenv("TMDB_BASE_URL", "https://api.themoviedb.org/3").rstrip("/"),
            language=os.getenv("TMDB_LANGUAGE", "en-US"),
            timeout=_env_float("TMDB_TIMEOUT", 10.0),
        )


@dataclass
class QueueConfig:
    redis_url: Optional[str] = None
    stream: str = "media_jobs"
    group: str = "media_workers"
    consumer: str = field(default_factory=lambda: f"worker-{socket.gethostname()}-{os.getpid()}")
    max_attempts: int = 3
    block_ms: int = 5000

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @classmethod
    def from_env(cls) -> "QueueConfig":
        cfg = cls(
            redis_url=os.getenv("REDIS_URL") or None,
            stream=os.getenv("JOB_STREAM", "media_jobs"),
            group=os.getenv("JOB_GROUP", "media_workers"),
            max_attempts=_env_int("JOB_MAX_ATTEMPTS", 3),
        )
        if os.getenv("JOB_CONSUMER"):
            cfg.consumer = os.environ["JOB_CONSUMER"]
        return cfg


@dataclass
class Settings:
    database_path: str = "cinetron.db"
    media_root: str = "media"
    public_dir: str = "public"
    media_url_prefix: str = "/files/media"
    public_url_prefix: str = "/files"
    enrich_on_scan: bool = True
    log_level: str = "INFO"
    ffmpeg_bin: str = "ffmpeg"
    transcode_timeout: Optional[int] = None
    storage: StorageConfig = field(default_factory=StorageConfig)
    tmdb: TmdbConfig = field(default_factory=TmdbConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    @property
    def videos_dir(self) -> str:
        return os.path.join(self.public_dir, "uploads", "videos")

    @property
    def videos_url_prefix(self) -> str:
        return f"{self.public_url_prefix.rstrip('/')}/uploads/videos"

    @property
    def subtitles_dir(self) -> str:
        return os.path.join(self.public_dir, "uploads", "subtitles")

    @property
    def subtitles_url_prefix(self) -> str:
        return f"{self.public_url_prefix.rstrip('/')}/uploads/subtitles"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_path=os.getenv("DATABASE_PATH", "cinetron.db"),
            media_root=os.getenv("MEDIA_PATH", "media"),
            public_dir=os.getenv("PUBLIC_DIR", "public"),
            media_url_prefix=os.getenv("MEDIA_URL_PREFIX", "/files/media").rstrip("/"),
            public_url_prefix=os.getenv("PUBLIC_URL_PREFIX", "/files").rstrip("/"),
            enrich_on_scan=_env_bool("ENRICH_ON_SCAN", True),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            transcode_timeout=_env_int("TRANSCODE_TIMEOUT", None),
            storage=StorageConfig.from_env(),
            tmdb=TmdbConfig.from_env(),
            queue=QueueConfig.from_env(),
        )
