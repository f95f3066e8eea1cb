from __future__ import annotations

import logging
import mimetypes
import sys
import threading
import time
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from streamgrab.artifacts import ArtifactManager, build_download_name
from streamgrab.errors import (
    ActiveJobError,
    ConversionFailedError,
    ConversionTimeoutError,
    JobCancelledError,
    StreamGrabError,
)
from streamgrab.limiter import ConcurrencyLimiter, TaskOutcome
from streamgrab.notifications import ClientChannel, NotificationHub
from streamgrab.process import ProcessHandle, start_process
from streamgrab.progress import PROGRESS, ProgressEvent
from streamgrab.ytdlp import (
    AUDIO,
    BEST,
    OUTPUT_KINDS,
    PlaylistInfo,
    VideoMetadata,
    YtDlpTool,
    normalize_url,
    output_extension,
    parse_height,
)


_JOB_LOGGER = logging.getLogger("streamgrab.jobs")
if not _JOB_LOGGER.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    _JOB_LOGGER.addHandler(handler)
    _JOB_LOGGER.propagate = False
_JOB_LOGGER.setLevel(logging.DEBUG)

_JOB_LEVEL_MAP: Dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "success": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

_MIMETYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
}

Runner = Callable[["Job", ProcessHandle, Callable[[ProgressEvent], Any]], int]
Launcher = Callable[[Sequence[str], Mapping[str, str]], ProcessHandle]


def _emit_job_log(job_id: str, level: str, message: str) -> None:
    normalized = (level or "info").lower()
    log_level = _JOB_LEVEL_MAP.get(normalized, logging.INFO)
    try:
        _JOB_LOGGER.log(log_level, "[job %s] %s", job_id, message)
    except Exception:
        # A broken log handler must not take the download down with it.
        try:
            sys.stderr.write(f"Logging failed for job {job_id}: {message}\n")
            traceback.print_exc(file=sys.stderr)
        except Exception:
            pass


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobLog:
    timestamp: float
    message: str
    level: str = "info"


@dataclass
class Job:
    id: str
    client_id: str
    url: str
    output_kind: str
    quality: str
    artifact_path: Path
    created_at: float
    title: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    progress: float = 0.0
    error: Optional[str] = None
    exit_code: Optional[int] = None
    cancel_requested: bool = False
    timed_out: bool = False
    handle: Optional[ProcessHandle] = field(default=None, repr=False, compare=False)
    logs: List[JobLog] = field(default_factory=list)

    @property
    def extension(self) -> str:
        return output_extension(self.output_kind)

    @property
    def quality_label(self) -> Optional[str]:
        if self.output_kind == AUDIO:
            return None
        height = parse_height(self.quality)
        return f"{height}p" if height else None

    def add_log(self, message: str, level: str = "info") -> None:
        entry = JobLog(timestamp=time.time(), message=message, level=level)
        self.logs.append(entry)
        _emit_job_log(self.id, level, message)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "url": self.url,
            "title": self.title,
            "format": self.output_kind,
            "resolution": self.quality,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "progress": self.progress,
            "error": self.error,
            "pid": self.handle.pid if self.handle is not None else None,
        }


@dataclass
class ConversionResult:
    job: Job
    path: Path
    download_name: str
    mimetype: str


class JobRegistry:
    """Maps each active client identifier to its Job and process handle."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def claim(self, job: Job) -> None:
        """Register job for its client, refusing if that client already has one."""
        with self._lock:
            existing = self._jobs.get(job.client_id)
            if existing is not None:
                raise ActiveJobError(detail=f"Client {job.client_id} already owns job {existing.id}")
            self._jobs[job.client_id] = job

    def register(self, client_id: str, job: Job) -> None:
        with self._lock:
            self._jobs[client_id] = job

    def attach(self, client_id: str, job: Job, handle: ProcessHandle) -> bool:
        with self._lock:
            if self._jobs.get(client_id) is not job:
                return False
            job.handle = handle
            return True

    def lookup(self, client_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            job = self._jobs.get(client_id)
            return job.handle if job is not None else None

    def get_job(self, client_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(client_id)

    def is_current(self, client_id: str, job: Job) -> bool:
        with self._lock:
            return self._jobs.get(client_id) is job

    def run_if_current(self, client_id: str, job: Job, callback: Callable[[], Any]) -> bool:
        """Invoke callback only while job still owns client_id.

        The lock is held across the call so a concurrent cancel either happens
        entirely before it (callback skipped) or entirely after it.
        """
        with self._lock:
            if self._jobs.get(client_id) is not job:
                return False
            callback()
            return True

    def remove(self, client_id: str, job: Job) -> bool:
        with self._lock:
            if self._jobs.get(client_id) is not job:
                return False
            del self._jobs[client_id]
            return True

    def record_exit(self, job: Job, exit_code: int) -> None:
        with self._lock:
            job.exit_code = exit_code

    def expire(self, client_id: str, job: Job) -> bool:
        """Drop a job that outlived its time limit; a job whose process already exited is left alone."""
        with self._lock:
            if self._jobs.get(client_id) is not job or job.exit_code is not None:
                return False
            del self._jobs[client_id]
            job.timed_out = True
            return True

    def cancel(self, client_id: str) -> bool:
        with self._lock:
            job = self._jobs.pop(client_id, None)
            if job is None:
                return False
            job.cancel_requested = True
            handle = job.handle
        job.add_log("Cancellation requested", level="warning")
        if handle is not None:
            handle.kill()
        return True

    def snapshot(self) -> List[Job]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.created_at)


class DownloadService:
    def __init__(
        self,
        tool: YtDlpTool,
        artifacts: ArtifactManager,
        runner: Runner,
        *,
        launcher: Launcher = start_process,
        notifications: Optional[NotificationHub] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        conversion_timeout: float = 0.0,
    ) -> None:
        self.tool = tool
        self.artifacts = artifacts
        self.notifications = notifications or NotificationHub()
        self.registry = JobRegistry()
        self._limiter = limiter or ConcurrencyLimiter()
        self._runner = runner
        self._launcher = launcher
        self._conversion_timeout = max(0.0, float(conversion_timeout or 0.0))

    # Public API ---------------------------------------------------------
    def list_jobs(self) -> List[Job]:
        return self.registry.snapshot()

    def fetch_metadata(self, url: str) -> VideoMetadata:
        return self.tool.fetch_metadata(normalize_url(url))

    def fetch_playlist(self, url: str) -> PlaylistInfo:
        return self.tool.fetch_playlist(url.strip())

    def fetch_batch(self, urls: Iterable[str]) -> List[TaskOutcome[str, VideoMetadata]]:
        return self._limiter.settle(self.fetch_metadata, list(urls))

    def subscribe(self, client_id: str) -> ClientChannel:
        return self.notifications.subscribe(client_id)

    def unsubscribe(self, client_id: str, channel: Optional[ClientChannel] = None) -> None:
        self.notifications.unsubscribe(client_id, channel)

    def cancel(self, client_id: str) -> bool:
        return self.registry.cancel(client_id)

    def start_conversion(
        self,
        url: str,
        client_id: Optional[str] = None,
        output_kind: str = "mp4",
        quality: Optional[str] = BEST,
        *,
        title: Optional[str] = None,
    ) -> ConversionResult:
        """Download and convert url, blocking the calling thread until the artifact is ready.

        Progress is published to client_id's channel. The returned artifact still
        lives in the scratch directory; the caller must hand it to
        ``artifacts.deliver`` (or ``artifacts.discard``) exactly once.
        """
        if output_kind not in OUTPUT_KINDS:
            raise ValueError(f"Unsupported output kind: {output_kind}")

        job_id = uuid.uuid4().hex
        source = normalize_url(url)
        path = self.artifacts.reserve(job_id, output_extension(output_kind))
        job = Job(
            id=job_id,
            client_id=client_id or job_id,
            url=source,
            output_kind=output_kind,
            quality=quality or BEST,
            artifact_path=path,
            created_at=time.time(),
            title=title,
        )
        try:
            self.registry.claim(job)
        except ActiveJobError:
            self.artifacts.discard(path)
            raise
        job.add_log(f"Job accepted for {source} ({output_kind}, {job.quality})")

        watchdog: Optional[threading.Timer] = None
        try:
            self.artifacts.ensure_free_space()
            if job.title is None:
                job.title = self.fetch_metadata(source).title
            self._raise_if_cancelled(job)

            command = self.tool.build_download_command(source, path, output_kind, job.quality)
            handle = self._launcher(command, self.tool.environment())
            if not self.registry.attach(job.client_id, job, handle):
                # Cancelled between spawn and registration.
                job.handle = handle
                raise JobCancelledError(detail=f"Job {job.id} cancelled before its process was tracked")

            job.status = JobStatus.RUNNING
            job.started_at = time.time()
            job.add_log(f"Process {handle.pid} started")
            watchdog = self._start_watchdog(job)

            exit_code = self._runner(job, handle, lambda event: self._publish(job, event))
            if watchdog is not None:
                watchdog.cancel()
            self.registry.record_exit(job, exit_code)
            if job.timed_out:
                raise ConversionTimeoutError(
                    detail=f"Job {job.id} exceeded {self._conversion_timeout:g}s",
                    exit_code=exit_code,
                )
            self._raise_if_cancelled(job)
            if exit_code != 0:
                raise ConversionFailedError(detail=f"yt-dlp exited with code {exit_code}", exit_code=exit_code)

            artifact = self.artifacts.locate(path)
            if artifact is None:
                raise ConversionFailedError(detail=f"yt-dlp exited cleanly but {path.name} was not written")

            self._publish(job, ProgressEvent.complete())
            job.status = JobStatus.COMPLETED
            job.progress = 100.0
            job.finished_at = time.time()
            job.add_log("Job completed", level="success")
            extension = artifact.suffix.lstrip(".") or job.extension
            return ConversionResult(
                job=job,
                path=artifact,
                download_name=build_download_name(job.title, extension, job.quality_label),
                mimetype=_MIMETYPES.get(extension) or mimetypes.guess_type(artifact.name)[0] or "application/octet-stream",
            )
        except JobCancelledError:
            job.status = JobStatus.CANCELLED
            job.finished_at = time.time()
            job.add_log("Job cancelled", level="warning")
            self.artifacts.discard(path)
            raise
        except StreamGrabError as exc:
            self._fail(job, exc)
            raise
        except OSError as exc:
            failure = ConversionFailedError(detail=f"{exc.__class__.__name__}: {exc}")
            self._fail(job, failure)
            raise failure from exc
        except Exception as exc:
            failure = ConversionFailedError(detail=f"{exc.__class__.__name__}: {exc}")
            self._fail(job, failure)
            raise failure from exc
        finally:
            if watchdog is not None:
                watchdog.cancel()
            if job.handle is not None:
                job.handle.kill()
            self.registry.remove(job.client_id, job)

    def shutdown(self) -> None:
        for job in self.registry.snapshot():
            self.registry.cancel(job.client_id)
        self.notifications.close_all()
        self._limiter.shutdown(wait=False)
        self.artifacts.shutdown()

    # Internal -----------------------------------------------------------
    def _publish(self, job: Job, event: ProgressEvent) -> bool:
        def _deliver() -> None:
            if event.type == PROGRESS and event.percent is not None:
                job.progress = event.percent
            self.notifications.publish(job.client_id, event)

        return self.registry.run_if_current(job.client_id, job, _deliver)

    def _raise_if_cancelled(self, job: Job) -> None:
        if job.cancel_requested or not self.registry.is_current(job.client_id, job):
            raise JobCancelledError(detail=f"Job {job.id} was cancelled")

    def _fail(self, job: Job, exc: StreamGrabError) -> None:
        if job.cancel_requested and not job.timed_out:
            # A killed process exits non-zero; that is not a failure to report.
            job.status = JobStatus.CANCELLED
            job.add_log(f"Job cancelled ({exc.detail})", level="warning")
        else:
            job.status = JobStatus.FAILED
            job.error = exc.user_message
            job.add_log(f"Job failed: {exc.detail}", level="error")
            self._publish(job, ProgressEvent.error(exc.user_message))
        job.finished_at = time.time()
        self.artifacts.discard(job.artifact_path)

    def _start_watchdog(self, job: Job) -> Optional[threading.Timer]:
        if self._conversion_timeout <= 0:
            return None
        timer = threading.Timer(self._conversion_timeout, self._expire, args=(job,))
        timer.daemon = True
        timer.start()
        return timer

    def _expire(self, job: Job) -> None:
        if not self.registry.expire(job.client_id, job):
            return
        job.add_log(f"Conversion exceeded {self._conversion_timeout:g}s; stopping it", level="error")
        self.notifications.publish(job.client_id, ProgressEvent.error(ConversionTimeoutError.default_message))
        if job.handle is not None:
            job.handle.kill()


def build_service(
    runner: Runner,
    *,
    scratch_root: Path,
    tool: YtDlpTool,
    max_concurrency: int = 3,
    min_free_bytes: int = 0,
    conversion_timeout: float = 0.0,
    launcher: Launcher = start_process,
) -> DownloadService:
    artifacts = ArtifactManager(scratch_root, min_free_bytes=min_free_bytes)
    return DownloadService(
        tool,
        artifacts,
        runner,
        launcher=launcher,
        limiter=ConcurrencyLimiter(max_concurrency),
        conversion_timeout=conversion_timeout,
    )
