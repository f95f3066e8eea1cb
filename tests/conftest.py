import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from streamgrab.artifacts import ArtifactManager  # noqa: E402
from streamgrab.notifications import NotificationHub  # noqa: E402
from streamgrab.progress import ProgressEvent  # noqa: E402
from streamgrab.webui.conversion_runner import run_download_job  # noqa: E402
from streamgrab.webui.service import DownloadService  # noqa: E402
from streamgrab.ytdlp import YtDlpTool  # noqa: E402


class ScriptedHandle:
    """Stands in for a running yt-dlp process by replaying canned output."""

    def __init__(
        self,
        command: Sequence[str],
        chunks: Sequence[bytes] = (),
        *,
        exit_code: int = 0,
        write_output: bool = True,
        hold: bool = False,
        late_chunks: Sequence[bytes] = (),
        fail_with: Optional[BaseException] = None,
    ) -> None:
        self.command = list(command)
        self.pid = 4242
        self._chunks = list(chunks)
        self._late_chunks = list(late_chunks)
        self._exit_code = exit_code
        self._write_output = write_output
        self._hold = hold
        self._fail_with = fail_with
        self._release = threading.Event()
        self.streaming = threading.Event()
        self.kill_calls = 0
        self.killed = False
        self.exited = False

    def output_template(self) -> str:
        return self.command[self.command.index("--output") + 1]

    def output_extension(self) -> str:
        if "--merge-output-format" in self.command:
            return self.command[self.command.index("--merge-output-format") + 1]
        return self.command[self.command.index("--audio-format") + 1]

    def output_path(self) -> Path:
        return Path(self.output_template().replace("%(ext)s", self.output_extension()))

    def partial_path(self) -> Path:
        return Path(self.output_template().replace("%(ext)s", "part"))

    def iter_chunks(self, chunk_size: int = 4096):
        for chunk in self._chunks:
            yield chunk
        if self._fail_with is not None:
            self.partial_path().write_bytes(b"partial")
            raise self._fail_with
        if self._hold:
            self.partial_path().write_bytes(b"partial")
            self.streaming.set()
            self._release.wait(5)
            for chunk in self._late_chunks:
                yield chunk
        if self._write_output and not self.killed:
            self.output_path().write_bytes(b"media-bytes")

    def wait(self, timeout: Optional[float] = None) -> int:
        self.exited = True
        return 137 if self.killed else self._exit_code

    def kill(self) -> bool:
        self.kill_calls += 1
        if self.killed or self.exited:
            return False
        self.killed = True
        self._release.set()
        return True


class RecordingHub(NotificationHub):
    def __init__(self) -> None:
        super().__init__()
        self.events: List[Tuple[str, ProgressEvent]] = []
        self._record_lock = threading.Lock()

    def publish(self, client_id: str, event: ProgressEvent) -> bool:
        with self._record_lock:
            self.events.append((client_id, event))
        return super().publish(client_id, event)

    def events_for(self, client_id: str) -> List[ProgressEvent]:
        with self._record_lock:
            return [event for owner, event in self.events if owner == client_id]


@pytest.fixture
def tool():
    return YtDlpTool([sys.executable, "-m", "yt_dlp"], ffmpeg_location="/opt/ffmpeg/bin", use_static_ffmpeg=False)


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def scripted_launcher():
    def factory(**options):
        handles: List[ScriptedHandle] = []

        def launcher(command, env=None):
            handle = ScriptedHandle(command, **options)
            handles.append(handle)
            return handle

        launcher.handles = handles  # type: ignore[attr-defined]
        return launcher

    return factory


@pytest.fixture
def make_service(tmp_path, tool, hub):
    created: List[DownloadService] = []

    def factory(launcher, *, conversion_timeout: float = 0.0) -> DownloadService:
        service = DownloadService(
            tool,
            ArtifactManager(tmp_path / "scratch"),
            run_download_job,
            launcher=launcher,
            notifications=hub,
            conversion_timeout=conversion_timeout,
        )
        created.append(service)
        return service

    yield factory
    for service in created:
        service.shutdown()
