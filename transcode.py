# transcode.py
"""ffmpeg rendition ladder.

Qualities are encoded one after another, never in parallel, to keep a single
host's CPU and disk usage bounded. A quality that fails is logged and skipped;
the remaining ones still run, so a media item can end up with any subset of
the ladder.
"""
import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, Dict, NamedTuple, Optional, Sequence
from urllib.parse import quote

logger = logging.getLogger(__name__)


class Quality(NamedTuple):
    name: str
    height: int
    video_bitrate: str


QUALITY_LADDER = (
    Quality("1080p", 1080, "4500k"),
    Quality("720p", 720, "2500k"),
    Quality("480p", 480, "1000k"),
)

AUDIO_BITRATE = "128k"


class TranscodeFailed(RuntimeError):
    """No rendition at all could be produced."""


def _summarise_ffmpeg_error(stderr: Optional[str]) -> Optional[str]:
    if not stderr:
        return None
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    for keyword in ("error", "invalid", "failed", "no such file"):
        for line in reversed(lines):
            if keyword in line.lower():
                return line
    return lines[-1] if lines else None


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def _bufsize(bitrate: str) -> str:
    if bitrate.endswith("k") and bitrate[:-1].isdigit():
        return f"{int(bitrate[:-1]) * 2}k"
    return bitrate


class TranscodeEngine:
    def __init__(self, output_dir: str, public_prefix: str, ffmpeg_bin: str = "ffmpeg",
                 timeout: Optional[int] = None, ladder: Sequence[Quality] = QUALITY_LADDER):
        self.output_dir = Path(output_dir)
        self.public_prefix = public_prefix.rstrip("/")
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout
        self.ladder = tuple(ladder)

    def build_command(self, source: str, output: Path, quality: Quality) -> list:
        return [
            self.ffmpeg_bin, "-hide_banner", "-y",
            "-i", source,
            "-vf", f"scale=-2:{quality.height}",
            "-c:v", "libx264", "-preset", "veryfast",
            "-b:v", quality.video_bitrate,
            "-maxrate", quality.video_bitrate,
            "-bufsize", _bufsize(quality.video_bitrate),
            "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-b:a", AUDIO_BITRATE,
            "-movflags", "+faststart",
            str(output),
        ]

    def encode(self, source: str, output: Path, quality: Quality):
        """Run one ffmpeg encode; raises on a non-zero exit or timeout."""
        command = self.build_command(source, output, quality)
        logger.debug("ffmpeg command: " + " ".join(command))
        subprocess.run(command, capture_output=True, text=True, check=True, timeout=self.timeout)

    def public_url(self, output: Path) -> str:
        return f"{self.public_prefix}/{quote(output.name)}"

    def transcode(self, source: str, filename_base: str,
                  on_rendition: Optional[Callable[[str, str], None]] = None) -> Dict[str, str]:
        """
        Encode ``source`` into every ladder quality, sequentially.

        ``source`` is a local path or an http(s) URL (presigned object-store
        URL). Returns {quality_name: public_url} for the qualities that
        succeeded; ``on_rendition`` is called after each success.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        results: Dict[str, str] = {}
        display = "<signed url>" if _is_url(source) else source
        logger.info(f"Starting transcoding for {display} -> {self.output_dir}/{filename_base}_*.mp4")

        for quality in self.ladder:
            if not _is_url(source) and not os.path.exists(source):
                logger.error(f"Input file not found, skipping {quality.name}: {source}")
                continue
            output = self.output_dir / f"{filename_base}_{quality.name}.mp4"
            try:
                self.encode(source, output, quality)
            except subprocess.CalledProcessError as e:
                logger.error(f"Failed to generate {quality.name} for {filename_base}: "
                             f"{_summarise_ffmpeg_error(e.stderr) or e}")
                self._discard(output)
                continue
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.error(f"Failed to generate {quality.name} for {filename_base}: {e}")
                self._discard(output)
                continue
            url = self.public_url(output)
            results[quality.name] = url
            logger.info(f"Generated {quality.name}: {url}")
            if on_rendition is not None:
                on_rendition(quality.name, url)

        return results

    @staticmethod
    def _discard(output: Path):
        try:
            output.unlink()
        except FileNotFoundError:
            pass
