import logging
import os
import platform
import shutil
import sys
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv, find_dotenv


def _load_environment() -> None:
    explicit_path = os.environ.get("STREAMGRAB_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


def env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"true", "1", "yes", "on"}


def env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, value)
        return default


def env_int(name: str, default: int) -> int:
    return int(env_float(name, float(default)))


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("STREAMGRAB_SETTINGS_DIR")
    if override:
        return ensure_directory(override)

    data_root = os.environ.get("STREAMGRAB_DATA")
    if data_root:
        try:
            return ensure_directory(os.path.join(data_root, "settings"))
        except OSError:
            pass

    from platformdirs import user_config_dir

    config_dir = user_config_dir("streamgrab", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


# Define cache path
@lru_cache(maxsize=1)
def get_user_cache_root():
    logger = logging.getLogger(__name__)

    def _try_paths(*paths):
        last_error = None
        for candidate in paths:
            if not candidate:
                continue
            try:
                return ensure_directory(candidate)
            except OSError as exc:
                last_error = exc
                logger.debug("Unable to use cache directory %s: %s", candidate, exc)
        if last_error is not None:
            raise last_error

    override = os.environ.get("STREAMGRAB_CACHE_DIR")
    if override:
        try:
            return ensure_directory(override)
        except OSError as exc:
            logger.warning("STREAMGRAB_CACHE_DIR=%s is not writable: %s", override, exc)

    from platformdirs import user_cache_dir

    data_root = os.environ.get("STREAMGRAB_DATA")
    fallback_paths = [
        user_cache_dir("streamgrab", appauthor=False, opinion=True),
        os.path.join(data_root, "cache") if data_root else None,
        "/tmp/streamgrab-cache",
    ]
    try:
        return _try_paths(*fallback_paths)
    except OSError:
        tmp_candidate = os.path.join("/tmp", f"streamgrab-cache-{os.getpid()}")
        logger.warning("Falling back to temp cache directory %s", tmp_candidate)
        return ensure_directory(tmp_candidate)


def get_user_cache_path(folder=None):
    base = get_user_cache_root()
    if folder:
        return ensure_directory(os.path.join(base, folder))
    return base


def default_cookies_path() -> str:
    return os.path.join(get_user_settings_dir(), "cookies.txt")


def locate_ffmpeg(override: Optional[str] = None, *, use_static: bool = True) -> Optional[str]:
    """Return the ffmpeg location handed to yt-dlp, or None to let it search PATH.

    An explicit override wins. Otherwise a system ffmpeg is used when present and,
    failing that, the static build is fetched into the user cache.
    """
    logger = logging.getLogger(__name__)
    if override:
        return override

    system_ffmpeg = shutil.which("ffmpeg")
    if system_ffmpeg or not use_static:
        return system_ffmpeg

    ffmpeg_cache_root = get_user_cache_path("ffmpeg")
    platform_cache = os.path.join(ffmpeg_cache_root, sys.platform)
    os.makedirs(platform_cache, exist_ok=True)
    try:
        import static_ffmpeg
        import static_ffmpeg.run as static_ffmpeg_run

        static_ffmpeg_run.LOCK_FILE = os.path.join(ffmpeg_cache_root, "lock.file")
        static_ffmpeg.add_paths(weak=True, download_dir=platform_cache)
    except Exception as exc:
        logger.warning("Static ffmpeg unavailable, yt-dlp will search PATH: %s", exc)
        return None
    return shutil.which("ffmpeg")


def is_windows() -> bool:
    return platform.system() == "Windows"
