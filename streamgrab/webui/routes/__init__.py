from streamgrab.webui.routes.api import api_bp

__all__ = [
    "api_bp",
]
