from flask import current_app
from streamgrab.webui.service import DownloadService

def get_service() -> DownloadService:
    return current_app.extensions["download_service"]
