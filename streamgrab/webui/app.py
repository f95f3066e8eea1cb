from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, current_app, jsonify
from flask.typing import ResponseReturnValue

from streamgrab.errors import StreamGrabError
from streamgrab.utils import (
    default_cookies_path,
    env_flag,
    env_float,
    env_int,
    get_user_cache_path,
)
from streamgrab.ytdlp import YtDlpTool, resolve_executable

from .conversion_runner import run_download_job
from .service import build_service

logger = logging.getLogger(__name__)


class _SuppressSuccessfulAccessFilter(logging.Filter):
    """Filter out successful (2xx) werkzeug access logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - small utility
        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover
            return True
        # "GET /api/progress?clientId=... HTTP/1.1" 200 -
        return " 200 " not in message and " 201 " not in message and " 204 " not in message


_access_log_filter_attached = False


def _default_config() -> Dict[str, Any]:
    scratch_override = os.environ.get("STREAMGRAB_SCRATCH_DIR")
    if scratch_override:
        scratch = Path(os.path.expanduser(scratch_override)).resolve()
    else:
        scratch = Path(get_user_cache_path("scratch"))

    return {
        "SCRATCH_FOLDER": str(scratch),
        "YTDLP_PATH": os.environ.get("STREAMGRAB_YTDLP_PATH") or None,
        "FFMPEG_LOCATION": os.environ.get("STREAMGRAB_FFMPEG_LOCATION") or None,
        "USE_STATIC_FFMPEG": env_flag("STREAMGRAB_USE_STATIC_FFMPEG", True),
        "COOKIES_FILE": os.environ.get("STREAMGRAB_COOKIES_FILE") or default_cookies_path(),
        "MAX_CONCURRENT_FETCHES": env_int("STREAMGRAB_MAX_CONCURRENT_FETCHES", 3),
        "METADATA_TIMEOUT": env_float("STREAMGRAB_METADATA_TIMEOUT", 30.0),
        "PLAYLIST_TIMEOUT": env_float("STREAMGRAB_PLAYLIST_TIMEOUT", 60.0),
        "ARTIFACT_MAX_AGE": env_float("STREAMGRAB_ARTIFACT_MAX_AGE", 3600.0),
        "SWEEP_INTERVAL": env_float("STREAMGRAB_SWEEP_INTERVAL", 900.0),
        "MIN_FREE_SPACE_MB": env_int("STREAMGRAB_MIN_FREE_SPACE_MB", 500),
        "CONVERSION_TIMEOUT": env_float("STREAMGRAB_CONVERSION_TIMEOUT", 0.0),
        "KEEPALIVE_INTERVAL": env_float("STREAMGRAB_KEEPALIVE_INTERVAL", 15.0),
    }


def _handle_streamgrab_error(exc: StreamGrabError) -> ResponseReturnValue:
    logger.error("%s: %s", exc.__class__.__name__, exc.detail)
    payload: Dict[str, Any] = {"success": False, "error": exc.user_message}
    if current_app.debug:
        payload["details"] = exc.detail
    return jsonify(payload), exc.status_code


def create_app(config: Optional[dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    base_config = _default_config()
    if config:
        base_config.update(config)
    app.config.update(base_config)

    tool = YtDlpTool(
        resolve_executable(app.config["YTDLP_PATH"]),
        ffmpeg_location=app.config["FFMPEG_LOCATION"],
        use_static_ffmpeg=bool(app.config["USE_STATIC_FFMPEG"]),
        cookies_file=Path(app.config["COOKIES_FILE"]) if app.config["COOKIES_FILE"] else None,
        metadata_timeout=float(app.config["METADATA_TIMEOUT"]),
        playlist_timeout=float(app.config["PLAYLIST_TIMEOUT"]),
    )
    service = build_service(
        runner=run_download_job,
        scratch_root=Path(app.config["SCRATCH_FOLDER"]),
        tool=tool,
        max_concurrency=int(app.config["MAX_CONCURRENT_FETCHES"]),
        min_free_bytes=int(app.config["MIN_FREE_SPACE_MB"]) * 1024 * 1024,
        conversion_timeout=float(app.config["CONVERSION_TIMEOUT"]),
    )
    service.artifacts.start_sweeper(
        float(app.config["ARTIFACT_MAX_AGE"]),
        float(app.config["SWEEP_INTERVAL"]),
    )
    app.extensions["download_service"] = service

    from streamgrab.webui.routes import api_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_error_handler(StreamGrabError, _handle_streamgrab_error)

    atexit.register(service.shutdown)

    global _access_log_filter_attached
    if not _access_log_filter_attached:
        logging.getLogger("werkzeug").addFilter(_SuppressSuccessfulAccessFilter())
        _access_log_filter_attached = True

    return app


def main() -> None:
    app = create_app()
    host = os.environ.get("STREAMGRAB_HOST", "0.0.0.0")
    port = int(os.environ.get("STREAMGRAB_PORT", "3000"))
    debug = os.environ.get("STREAMGRAB_DEBUG", "false").lower() == "true"
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":  # pragma: no cover
    main()
