from __future__ import annotations

from typing import Any, Callable, Optional

from streamgrab.process import ProcessHandle
from streamgrab.progress import PROGRESS, ProgressEvent, ProgressParser

from .service import Job


def run_download_job(job: Job, handle: ProcessHandle, emit: Callable[[ProgressEvent], Any]) -> int:
    """Pump the tool's combined output through the parser until it exits.

    Returns the exit code. Killing the handle from another thread closes the
    pipe, which ends the loop.
    """
    parser = ProgressParser()
    stage: Optional[str] = None
    milestone = 0

    for chunk in handle.iter_chunks():
        for event in parser.feed(chunk):
            if event.type == PROGRESS:
                if event.text != stage:
                    stage = event.text
                    job.add_log(f"Stage: {stage}", level="debug")
                percent = event.percent or 0.0
                if percent >= milestone + 25:
                    milestone = int(percent // 25) * 25
                    job.add_log(f"{milestone}% downloaded", level="debug")
            emit(event)
    for event in parser.close():
        emit(event)

    exit_code = handle.wait()
    job.add_log(f"Process {handle.pid} exited with code {exit_code}", level="debug")
    return exit_code
