from typing import Any, Dict, List

from flask import Blueprint, Response, current_app, jsonify, request
from flask.typing import ResponseReturnValue

from streamgrab.webui.routes.utils.service import get_service
from streamgrab.ytdlp import BEST, OUTPUT_KINDS

api_bp = Blueprint("api", __name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _require_url(payload: Dict[str, Any]) -> str:
    return str(payload.get("url") or "").strip()


# --- Metadata Routes ---

@api_bp.post("/video-info")
def api_video_info() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    url = _require_url(payload)
    if not url:
        return jsonify({"error": "URL is required"}), 400
    metadata = get_service().fetch_metadata(url)
    return jsonify({"success": True, **metadata.as_dict()})


@api_bp.post("/playlist-info")
def api_playlist_info() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    url = _require_url(payload)
    if not url:
        return jsonify({"error": "URL is required"}), 400
    playlist = get_service().fetch_playlist(url)
    return jsonify({"success": True, **playlist.as_dict()})


@api_bp.post("/batch-info")
def api_batch_info() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    urls = payload.get("urls")
    if not isinstance(urls, list) or not urls:
        return jsonify({"error": "URLs array is required"}), 400

    cleaned = [str(url).strip() for url in urls if str(url or "").strip()]
    results: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for outcome in get_service().fetch_batch(cleaned):
        if outcome.ok and outcome.value is not None:
            results.append(
                {
                    "url": outcome.item,
                    "title": outcome.value.title,
                    "thumbnail": outcome.value.thumbnail_url,
                    "success": True,
                }
            )
        else:
            message = getattr(outcome.error, "user_message", None) or str(outcome.error)
            errors.append({"url": outcome.item, "error": message})
    return jsonify({"success": True, "results": results, "errors": errors})


# --- Download Routes ---

@api_bp.post("/download")
def api_download() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    url = _require_url(payload)
    if not url:
        return jsonify({"error": "URL is required"}), 400
    output_kind = str(payload.get("format") or "mp4").strip().lower()
    if output_kind not in OUTPUT_KINDS:
        return jsonify({"error": f"Unsupported format: {output_kind}"}), 400
    quality = str(payload.get("resolution") or BEST).strip() or BEST
    client_id = str(payload.get("clientId") or "").strip() or None
    title = str(payload.get("title") or "").strip() or None

    service = get_service()
    result = service.start_conversion(url, client_id, output_kind, quality, title=title)
    return service.artifacts.deliver(result.path, result.download_name, result.mimetype)


@api_bp.post("/cancel-download")
def api_cancel_download() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    client_id = str(payload.get("clientId") or "").strip()
    if not client_id:
        return jsonify({"error": "clientId is required"}), 400
    if not get_service().cancel(client_id):
        return jsonify({"success": False, "error": "No active download for this client."}), 404
    return jsonify({"success": True})


@api_bp.get("/progress")
def api_progress() -> ResponseReturnValue:
    client_id = (request.args.get("clientId") or "").strip()
    if not client_id:
        return jsonify({"error": "clientId is required"}), 400

    service = get_service()
    interval = float(current_app.config.get("KEEPALIVE_INTERVAL", 15.0))
    channel = service.subscribe(client_id)

    def generate():
        try:
            yield from channel.frames(interval)
        finally:
            service.unsubscribe(client_id, channel)

    response = Response(generate(), mimetype="text/event-stream", headers=_SSE_HEADERS)
    response.call_on_close(lambda: service.unsubscribe(client_id, channel))
    return response


@api_bp.get("/jobs")
def api_jobs() -> ResponseReturnValue:
    jobs = [job.as_dict() for job in get_service().list_jobs()]
    return jsonify({"jobs": jobs})
