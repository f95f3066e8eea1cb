"""Scratch-file lifecycle for downloads: reserve, deliver once, always delete."""

from __future__ import annotations

import logging
import mimetypes
import re
import secrets
import shutil
import threading
import time
from pathlib import Path
from typing import Iterator, List, Optional, Set
from urllib.parse import quote

from flask import Response

from streamgrab.errors import ConfigurationError, InsufficientStorageError

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024
MAX_TITLE_LENGTH = 200

_ILLEGAL_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_WHITESPACE_RE = re.compile(r"\s+")
_PARTIAL_SUFFIXES = {".part", ".ytdl", ".temp", ".tmp"}
_SIDECAR_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".json", ".vtt", ".srt"}


def sanitize_filename(title: Optional[str], *, fallback: str = "video") -> str:
    cleaned = _ILLEGAL_FILENAME_RE.sub(" ", title or "")
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip().strip(".").strip()
    if len(cleaned) > MAX_TITLE_LENGTH:
        cleaned = cleaned[:MAX_TITLE_LENGTH].rstrip()
    return cleaned or fallback


def build_download_name(title: Optional[str], extension: str, quality_label: Optional[str] = None) -> str:
    stem = sanitize_filename(title)
    if quality_label:
        stem = f"{stem}-{sanitize_filename(quality_label, fallback='')}".rstrip("-")
    return f"{stem}.{extension.lstrip('.')}"


def content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    if ascii_name == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


class ArtifactManager:
    def __init__(self, scratch_dir: Path, *, min_free_bytes: int = 0) -> None:
        self.scratch_dir = Path(scratch_dir)
        self.min_free_bytes = max(0, int(min_free_bytes))
        self._reserved: Set[str] = set()
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._ensure_scratch_dir()

    # Reservation ----------------------------------------------------------
    def reserve(self, job_id: str, extension: str) -> Path:
        self._ensure_scratch_dir()
        suffix = extension.lstrip(".")
        with self._lock:
            while True:
                stem = f"{time.time_ns()}-{secrets.token_hex(4)}"
                if stem in self._reserved or any(self.scratch_dir.glob(f"{stem}.*")):
                    continue
                self._reserved.add(stem)
                break
        path = self.scratch_dir / f"{stem}.{suffix}"
        logger.debug("Reserved %s for job %s", path.name, job_id)
        return path

    def ensure_free_space(self) -> None:
        if not self.min_free_bytes:
            return
        free = shutil.disk_usage(self.scratch_dir).free
        if free < self.min_free_bytes:
            raise InsufficientStorageError(
                detail=f"Only {free // (1024 * 1024)} MB free in {self.scratch_dir}",
            )

    def locate(self, path: Path) -> Optional[Path]:
        """Find what the tool actually wrote for a reservation."""
        if path.exists():
            return path
        candidates = [
            candidate
            for candidate in self._siblings(path)
            if candidate.suffix.lower() not in _PARTIAL_SUFFIXES | _SIDECAR_SUFFIXES
        ]
        if len(candidates) == 1:
            return candidates[0]
        return None

    def discard(self, path: Path) -> None:
        for candidate in [path, *self._siblings(path)]:
            try:
                candidate.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Unable to delete temporary file %s: %s", candidate, exc)
            else:
                logger.debug("Deleted temporary file %s", candidate.name)
        with self._lock:
            self._reserved.discard(path.stem)

    # Delivery -------------------------------------------------------------
    def deliver(self, path: Path, download_name: str, mimetype: Optional[str] = None) -> Response:
        """Stream ``path`` as an attachment; the file is deleted however the stream ends."""
        size = path.stat().st_size
        mimetype = mimetype or mimetypes.guess_type(download_name)[0] or "application/octet-stream"

        def _stream() -> Iterator[bytes]:
            try:
                with path.open("rb") as handle:
                    while True:
                        chunk = handle.read(STREAM_CHUNK_SIZE)
                        if not chunk:
                            break
                        yield chunk
            except GeneratorExit:
                logger.info("Client disconnected while receiving %s", download_name)
                raise
            finally:
                self.discard(path)

        response = Response(_stream(), mimetype=mimetype, direct_passthrough=True)
        response.headers["Content-Length"] = str(size)
        response.headers["Content-Disposition"] = content_disposition(download_name)
        response.call_on_close(lambda: self.discard(path))
        return response

    # Sweeping -------------------------------------------------------------
    def sweep(self, max_age_seconds: float) -> List[Path]:
        cutoff = time.time() - max_age_seconds
        removed: List[Path] = []
        if not self.scratch_dir.is_dir():
            return removed
        for entry in self.scratch_dir.iterdir():
            if not entry.is_file():
                continue
            with self._lock:
                in_use = entry.name.split(".", 1)[0] in self._reserved
            if in_use:
                continue
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                entry.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Sweep could not delete %s: %s", entry, exc)
                continue
            removed.append(entry)
        if removed:
            logger.info("Swept %d stale temporary file(s) from %s", len(removed), self.scratch_dir)
        return removed

    def start_sweeper(self, max_age_seconds: float, interval_seconds: float) -> None:
        self.sweep(max_age_seconds)
        if interval_seconds <= 0:
            return
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop_event.clear()

        def _loop() -> None:
            while not self._stop_event.wait(interval_seconds):
                try:
                    self.sweep(max_age_seconds)
                except OSError as exc:
                    logger.error("Scratch sweep failed: %s", exc)

        self._sweeper = threading.Thread(target=_loop, name="streamgrab-sweeper", daemon=True)
        self._sweeper.start()

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._sweeper and self._sweeper.is_alive():
            self._sweeper.join(timeout=5)
        self._sweeper = None

    # Internal -------------------------------------------------------------
    def _ensure_scratch_dir(self) -> None:
        try:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(detail=f"Scratch directory {self.scratch_dir} is not writable: {exc}") from exc

    def _siblings(self, path: Path) -> List[Path]:
        return [candidate for candidate in path.parent.glob(f"{path.stem}.*") if candidate != path]
