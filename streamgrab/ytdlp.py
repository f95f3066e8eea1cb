from __future__ import annotations

import importlib.util
import json
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlparse, parse_qs

from streamgrab.errors import ConfigurationError, UpstreamError
from streamgrab.utils import locate_ffmpeg

logger = logging.getLogger(__name__)

AUDIO = "audio"
OUTPUT_KINDS = ("mp4", "webm", AUDIO)
BEST = "best"

DEFAULT_METADATA_TIMEOUT = 30.0
DEFAULT_PLAYLIST_TIMEOUT = 60.0

_COMMON_FLAGS = ["--no-check-certificates", "--add-header", "user-agent:googlebot"]
_METADATA_FLAGS = ["--dump-single-json", "--no-warnings", "--add-header", "referer:youtube.com"]
_AUDIO_FORMAT = "bestaudio[ext=m4a]/bestaudio[ext=mp3]/bestaudio"

# Substring -> classification, checked in order against tool output.
_ERROR_PATTERNS = (
    ("Video unavailable", UpstreamError.UNAVAILABLE),
    ("This video is unavailable", UpstreamError.UNAVAILABLE),
    ("Sign in to confirm your age", UpstreamError.AGE_RESTRICTED),
    ("Private video", UpstreamError.PRIVATE),
    ("is not a valid URL", UpstreamError.INVALID_URL),
    ("Unsupported URL", UpstreamError.INVALID_URL),
    ("Invalid URL", UpstreamError.INVALID_URL),
    ("Temporary failure in name resolution", UpstreamError.CANNOT_CONNECT),
    ("Name or service not known", UpstreamError.CANNOT_CONNECT),
    ("nodename nor servname", UpstreamError.CANNOT_CONNECT),
    ("getaddrinfo failed", UpstreamError.CANNOT_CONNECT),
    ("Failed to resolve", UpstreamError.CANNOT_CONNECT),
    ("Connection refused", UpstreamError.CANNOT_CONNECT),
    ("Network is unreachable", UpstreamError.CANNOT_CONNECT),
    ("timed out", UpstreamError.CANNOT_CONNECT),
    ("ENOTFOUND", UpstreamError.CANNOT_CONNECT),
)


@dataclass
class VideoMetadata:
    title: str
    duration_seconds: float = 0.0
    thumbnail_url: str = ""
    available_qualities: List[str] = field(default_factory=list)
    has_audio_only: bool = False
    audio_qualities: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "thumbnail": self.thumbnail_url,
            "duration": self.duration_seconds,
            "resolutions": list(self.available_qualities),
            "hasAudioOnly": self.has_audio_only,
            "audioQualities": list(self.audio_qualities),
        }


@dataclass
class PlaylistEntry:
    id: str
    title: str
    url: str
    duration: Optional[float] = None
    thumbnail: Optional[str] = None


@dataclass
class PlaylistInfo:
    title: str
    entries: List[PlaylistEntry] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "itemCount": len(self.entries),
            "entries": [entry.__dict__ for entry in self.entries],
        }


def normalize_url(url: str) -> str:
    """Reduce YouTube links to the bare watch URL, dropping playlist/radio params."""
    text = (url or "").strip()
    try:
        parsed = urlparse(text)
    except ValueError:
        return text
    host = (parsed.hostname or "").lower()
    if host == "youtube.com" or host.endswith(".youtube.com"):
        video_id = parse_qs(parsed.query).get("v", [""])[0]
        if video_id:
            return f"https://www.youtube.com/watch?v={video_id}"
    elif host == "youtu.be":
        video_id = parsed.path.lstrip("/").split("/")[0]
        if video_id:
            return f"https://www.youtube.com/watch?v={video_id}"
    return text


def parse_height(quality: Optional[str]) -> Optional[int]:
    text = str(quality or "").strip().lower()
    if not text or text == BEST:
        return None
    if text.endswith("p"):
        text = text[:-1]
    try:
        height = int(text)
    except ValueError:
        return None
    return height if height > 0 else None


def output_extension(kind: str) -> str:
    return "mp3" if kind == AUDIO else kind


def format_selector(kind: str, quality: Optional[str] = None) -> str:
    if kind == AUDIO:
        return _AUDIO_FORMAT
    height = parse_height(quality)
    if height is not None:
        return f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"
    return "bestvideo+bestaudio/best"


def classify_failure(text: str) -> str:
    for needle, kind in _ERROR_PATTERNS:
        if needle in (text or ""):
            return kind
    return UpstreamError.UNKNOWN


def resolve_executable(override: Optional[str] = None) -> List[str]:
    """Return the command prefix used to invoke yt-dlp."""
    if override:
        candidate = shutil.which(override) or (override if os.path.isfile(override) else None)
        if not candidate:
            raise ConfigurationError(detail=f"yt-dlp executable not found: {override}")
        return [candidate]
    found = shutil.which("yt-dlp")
    if found:
        return [found]
    if importlib.util.find_spec("yt_dlp") is not None:
        return [sys.executable, "-m", "yt_dlp"]
    raise ConfigurationError(detail="yt-dlp is not installed and STREAMGRAB_YTDLP_PATH is not set")


def summarize_formats(info: Mapping[str, Any]) -> VideoMetadata:
    formats = info.get("formats") or []
    heights = set()
    audio_rates = []
    has_audio_only = False
    for fmt in formats:
        height = fmt.get("height")
        if isinstance(height, (int, float)) and height >= 144:
            heights.add(int(height))
        acodec = str(fmt.get("acodec") or "")
        if acodec.startswith("mp4a") or acodec == "aac":
            label = f"{int(fmt.get('abr') or 128)}kbps"
            if label not in audio_rates:
                audio_rates.append(label)
        if fmt.get("ext") in {"m4a", "mp3", "webm"} and fmt.get("vcodec") in {None, "none"}:
            has_audio_only = True
    resolutions = [f"{height}p" for height in sorted(heights, reverse=True)]
    return VideoMetadata(
        title=str(info.get("title") or "Unknown Title"),
        duration_seconds=float(info.get("duration") or 0),
        thumbnail_url=str(info.get("thumbnail") or ""),
        available_qualities=resolutions or [BEST],
        has_audio_only=has_audio_only,
        audio_qualities=audio_rates,
    )


class YtDlpTool:
    """Builds yt-dlp invocations and runs its metadata-only mode."""

    def __init__(
        self,
        executable: Sequence[str],
        *,
        ffmpeg_location: Optional[str] = None,
        use_static_ffmpeg: bool = True,
        cookies_file: Optional[Path] = None,
        metadata_timeout: float = DEFAULT_METADATA_TIMEOUT,
        playlist_timeout: float = DEFAULT_PLAYLIST_TIMEOUT,
    ) -> None:
        self.executable = list(executable)
        self.cookies_file = Path(cookies_file) if cookies_file else None
        self.metadata_timeout = metadata_timeout
        self.playlist_timeout = playlist_timeout
        self._ffmpeg_override = ffmpeg_location
        self._use_static_ffmpeg = use_static_ffmpeg
        self._ffmpeg_resolved = False
        self._ffmpeg_location: Optional[str] = None

    @property
    def ffmpeg_location(self) -> Optional[str]:
        if not self._ffmpeg_resolved:
            self._ffmpeg_location = locate_ffmpeg(self._ffmpeg_override, use_static=self._use_static_ffmpeg)
            self._ffmpeg_resolved = True
        return self._ffmpeg_location

    def environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["PYTHONUNBUFFERED"] = "1"
        return env

    def _cookie_args(self) -> List[str]:
        if self.cookies_file and self.cookies_file.is_file():
            return ["--cookies", str(self.cookies_file)]
        return []

    def build_download_command(self, url: str, output_path: Path, kind: str, quality: Optional[str] = None) -> List[str]:
        if kind not in OUTPUT_KINDS:
            raise ValueError(f"Unsupported output kind: {kind}")
        template = output_path.parent / f"{output_path.stem}.%(ext)s"
        command = [
            *self.executable,
            url,
            "--output",
            str(template),
            "--newline",
            *_COMMON_FLAGS,
            "--add-metadata",
            "--embed-thumbnail",
            *self._cookie_args(),
        ]
        if self.ffmpeg_location:
            command += ["--ffmpeg-location", self.ffmpeg_location]
        command += ["--format", format_selector(kind, quality)]
        if kind == AUDIO:
            command += ["--extract-audio", "--audio-format", "mp3", "--audio-quality", "0"]
        else:
            command += ["--merge-output-format", kind]
        return command

    def fetch_metadata(self, url: str) -> VideoMetadata:
        info = self._dump_json(url, ["--prefer-free-formats"], self.metadata_timeout)
        return summarize_formats(info)

    def fetch_playlist(self, url: str) -> PlaylistInfo:
        info = self._dump_json(url, ["--flat-playlist"], self.playlist_timeout)
        entries = info.get("entries")
        if not entries:
            raise UpstreamError(UpstreamError.UNKNOWN, detail="Invalid playlist or no entries found")
        items: List[PlaylistEntry] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            video_id = str(entry.get("id") or "")
            thumbnails = entry.get("thumbnails") or []
            items.append(
                PlaylistEntry(
                    id=video_id,
                    title=str(entry.get("title") or "Unknown Title"),
                    url=str(entry.get("url") or f"https://www.youtube.com/watch?v={video_id}"),
                    duration=entry.get("duration"),
                    thumbnail=thumbnails[-1].get("url") if thumbnails else None,
                )
            )
        return PlaylistInfo(title=str(info.get("title") or "Unknown Playlist"), entries=items)

    def _dump_json(self, url: str, extra: Sequence[str], timeout: float) -> Dict[str, Any]:
        command = [*self.executable, url, *_METADATA_FLAGS, *_COMMON_FLAGS, *extra, *self._cookie_args()]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env=self.environment(),
            )
        except subprocess.TimeoutExpired as exc:
            raise UpstreamError(
                UpstreamError.CANNOT_CONNECT,
                detail=f"Metadata fetch for {url} timed out after {timeout:g}s",
            ) from exc
        except FileNotFoundError as exc:
            raise ConfigurationError(detail=f"Executable not found: {command[0]}") from exc
        except PermissionError as exc:
            raise ConfigurationError(detail=f"Executable is not runnable: {command[0]}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            kind = classify_failure(stderr)
            logger.warning("yt-dlp metadata fetch failed (%s) for %s: %s", kind, url, stderr[-500:])
            raise UpstreamError(kind, detail=stderr or f"yt-dlp exited with code {completed.returncode}")
        try:
            return json.loads(completed.stdout)
        except json.JSONDecodeError as exc:
            raise UpstreamError(UpstreamError.UNKNOWN, detail=f"Unreadable metadata for {url}: {exc}") from exc
