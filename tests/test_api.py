import sys

import pytest

from streamgrab.errors import UpstreamError
from streamgrab.progress import ProgressEvent
from streamgrab.webui.app import create_app
from streamgrab.ytdlp import PlaylistEntry, PlaylistInfo, VideoMetadata


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("STREAMGRAB_SCRATCH_DIR", str(tmp_path / "scratch"))
    monkeypatch.setenv("STREAMGRAB_COOKIES_FILE", str(tmp_path / "cookies.txt"))
    app = create_app(
        {
            "TESTING": True,
            "SCRATCH_FOLDER": str(tmp_path / "scratch"),
            "YTDLP_PATH": sys.executable,
            "FFMPEG_LOCATION": "ffmpeg",
            "USE_STATIC_FFMPEG": False,
            "MIN_FREE_SPACE_MB": 0,
            "SWEEP_INTERVAL": 0,
            "KEEPALIVE_INTERVAL": 0.05,
        }
    )
    yield app
    app.extensions["download_service"].shutdown()


@pytest.fixture
def service(app):
    return app.extensions["download_service"]


def test_video_info_returns_metadata(app, service, monkeypatch):
    metadata = VideoMetadata(
        title="Clip",
        duration_seconds=61.0,
        thumbnail_url="https://img/1.jpg",
        available_qualities=["1080p", "720p"],
        has_audio_only=True,
        audio_qualities=["128kbps"],
    )
    monkeypatch.setattr(service.tool, "fetch_metadata", lambda url: metadata)

    response = app.test_client().post("/api/video-info", json={"url": "https://youtu.be/abc"})

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    assert payload["title"] == "Clip"
    assert payload["resolutions"] == ["1080p", "720p"]
    assert payload["hasAudioOnly"] is True


def test_video_info_requires_url(app):
    response = app.test_client().post("/api/video-info", json={})
    assert response.status_code == 400
    assert response.get_json()["error"] == "URL is required"


def test_upstream_errors_are_classified(app, service, monkeypatch):
    def unavailable(url):
        raise UpstreamError(UpstreamError.UNAVAILABLE, detail="ERROR: [youtube] abc: Video unavailable")

    monkeypatch.setattr(service.tool, "fetch_metadata", unavailable)
    response = app.test_client().post("/api/video-info", json={"url": "https://youtu.be/abc"})

    assert response.status_code == 404
    payload = response.get_json()
    assert payload["success"] is False
    assert payload["error"].startswith("Video unavailable.")
    assert "details" not in payload


def test_playlist_info_lists_entries(app, service, monkeypatch):
    playlist = PlaylistInfo(
        title="Mix",
        entries=[PlaylistEntry(id="a1", title="First", url="https://www.youtube.com/watch?v=a1")],
    )
    monkeypatch.setattr(service.tool, "fetch_playlist", lambda url: playlist)

    response = app.test_client().post("/api/playlist-info", json={"url": "https://www.youtube.com/playlist?list=PL1"})

    payload = response.get_json()
    assert payload["success"] is True
    assert payload["itemCount"] == 1
    assert payload["entries"][0]["id"] == "a1"


def test_batch_info_splits_results_and_errors(app, service, monkeypatch):
    def fetch(url):
        if "bad" in url:
            raise UpstreamError(UpstreamError.PRIVATE)
        return VideoMetadata(title=url.rsplit("/", 1)[-1])

    monkeypatch.setattr(service.tool, "fetch_metadata", fetch)
    response = app.test_client().post(
        "/api/batch-info",
        json={"urls": ["https://example.com/one", "https://example.com/bad", "https://example.com/two"]},
    )

    payload = response.get_json()
    assert [item["title"] for item in payload["results"]] == ["one", "two"]
    assert payload["errors"] == [{"url": "https://example.com/bad", "error": "This video is private."}]


def test_batch_info_requires_urls(app):
    response = app.test_client().post("/api/batch-info", json={"urls": []})
    assert response.status_code == 400


def test_download_streams_file_and_cleans_scratch(app, service, scripted_launcher, tmp_path):
    launcher = scripted_launcher(chunks=[b"  50.0% of 1MiB\n"])
    service._launcher = launcher

    response = app.test_client().post(
        "/api/download",
        json={"url": "https://youtu.be/abc", "format": "mp4", "resolution": "480p", "clientId": "c1", "title": "Clip"},
    )

    assert response.status_code == 200
    assert response.data == b"media-bytes"
    assert response.headers["Content-Type"] == "video/mp4"
    assert response.headers["Content-Length"] == str(len(b"media-bytes"))
    assert response.headers["Content-Disposition"] == 'attachment; filename="Clip-480p.mp4"'
    response.close()
    assert list((tmp_path / "scratch").iterdir()) == []


def test_download_failure_returns_json_error(app, service, scripted_launcher):
    service._launcher = scripted_launcher(exit_code=1, write_output=False)

    response = app.test_client().post("/api/download", json={"url": "https://youtu.be/abc", "title": "Clip"})

    assert response.status_code == 500
    assert response.get_json() == {"success": False, "error": "Download failed."}


def test_download_rejects_unknown_format(app):
    response = app.test_client().post("/api/download", json={"url": "https://youtu.be/abc", "format": "avi"})
    assert response.status_code == 400


def test_cancel_unknown_client_is_404(app):
    response = app.test_client().post("/api/cancel-download", json={"clientId": "nobody"})
    assert response.status_code == 404
    assert response.get_json() == {"success": False, "error": "No active download for this client."}


def test_progress_stream_sends_keepalive_then_events(app, service):
    response = app.test_client().get("/api/progress?clientId=c1")

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    assert response.headers["Cache-Control"] == "no-cache"
    assert response.headers["X-Accel-Buffering"] == "no"

    assert service.notifications.publish("c1", ProgressEvent.progress(42.5))
    assert service.notifications.publish("c1", ProgressEvent.complete())
    service.unsubscribe("c1")

    body = response.get_data(as_text=True)
    response.close()
    assert body.startswith(":\n\n")
    assert 'data: {"type": "progress", "percent": 42.5, "text": "Downloading..."}\n\n' in body
    assert body.rstrip().endswith('"text": "Download complete!"}')


def test_progress_requires_client_id(app):
    assert app.test_client().get("/api/progress").status_code == 400


def test_jobs_lists_nothing_when_idle(app):
    response = app.test_client().get("/api/jobs")
    assert response.get_json() == {"jobs": []}
