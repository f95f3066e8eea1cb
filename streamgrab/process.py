from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import Iterator, Mapping, Optional, Sequence

import psutil

from streamgrab.errors import ConfigurationError
from streamgrab.utils import is_windows

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


class ProcessHandle:
    """A running external process whose stdout and stderr share one pipe."""

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process
        self._kill_lock = threading.Lock()
        self._killed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll()

    @property
    def killed(self) -> bool:
        return self._killed

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        stream = self._process.stdout
        if stream is None:
            return
        try:
            while True:
                chunk = stream.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            stream.close()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self._process.wait(timeout=timeout)

    def kill(self) -> bool:
        """Kill the whole process tree.

        Returns False when the process had already exited or been killed.
        """
        with self._kill_lock:
            if self._killed:
                return False
            if self._process.poll() is not None:
                # The parent is gone but its group may still hold the merger child.
                if not is_windows():
                    _kill_group(self.pid)
                return False
            self._killed = True
            try:
                kill_tree(self.pid)
            except (psutil.Error, OSError, subprocess.SubprocessError) as exc:
                logger.warning("Tree kill failed for pid %s, signalling it directly: %s", self.pid, exc)
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error("Process %s did not exit after kill", self.pid)
        return True


def start_process(command: Sequence[str], env: Optional[Mapping[str, str]] = None) -> ProcessHandle:
    kwargs = {
        "stdout": subprocess.PIPE,
        "stderr": subprocess.STDOUT,
        "stdin": subprocess.DEVNULL,
        "bufsize": 0,
    }
    if env is not None:
        kwargs["env"] = dict(env)

    if is_windows():
        startupinfo = subprocess.STARTUPINFO()  # type: ignore[attr-defined]
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW  # type: ignore[attr-defined]
        startupinfo.wShowWindow = subprocess.SW_HIDE  # type: ignore[attr-defined]
        kwargs.update(
            {
                "startupinfo": startupinfo,
                "creationflags": subprocess.CREATE_NO_WINDOW,  # type: ignore[attr-defined]
            }
        )
    else:
        # Own process group so the merger child can be signalled with the parent.
        kwargs["start_new_session"] = True

    logger.info("Executing: %s", " ".join(command))
    try:
        process = subprocess.Popen(list(command), **kwargs)
    except FileNotFoundError as exc:
        raise ConfigurationError(detail=f"Executable not found: {command[0]}") from exc
    except PermissionError as exc:
        raise ConfigurationError(detail=f"Executable is not runnable: {command[0]}") from exc
    return ProcessHandle(process)


def kill_tree(pid: int) -> None:
    if is_windows():
        _kill_tree_windows(pid)
    else:
        _kill_tree_posix(pid)


def _kill_tree_windows(pid: int) -> None:
    subprocess.run(
        ["taskkill", "/F", "/T", "/PID", str(pid)],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=True,
        timeout=10,
    )


def _kill_tree_posix(pid: int) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    children = parent.children(recursive=True)
    for proc in [parent, *children]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    # Catches descendants that were reparented before the walk above.
    _kill_group(pid)
    if children:
        psutil.wait_procs(children, timeout=3)


def _kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
