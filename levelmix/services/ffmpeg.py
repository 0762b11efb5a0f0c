import logging
import os
import shlex
import signal
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .. import settings
from ..errors import AnalysisFailed, AnalysisTimeout, InputNotFound

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


def run(cmd: Sequence[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """Run ``cmd`` capturing text output.

    On timeout the whole process group is killed before
    ``subprocess.TimeoutExpired`` propagates, so no orphaned ffmpeg keeps
    writing after its caller gave up.
    """
    logger.debug("exec: %s", shlex.join(cmd))
    proc = subprocess.Popen(
        list(cmd),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.communicate()
        raise
    return subprocess.CompletedProcess(proc.args, proc.returncode, out, err)


def tail(text: str, limit: int = 400) -> str:
    return (text or "")[-limit:].strip()


def ffmpeg_version(runner: Runner = run) -> Optional[str]:
    try:
        proc = runner([settings.FFMPEG_BIN, "-version"], timeout=10)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode == 0 and proc.stdout:
        return proc.stdout.splitlines()[0]
    return None


def ffprobe_ok(runner: Runner = run) -> bool:
    try:
        proc = runner([settings.FFPROBE_BIN, "-version"], timeout=10)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0


def duration_cmd(path: Path) -> List[str]:
    return [
        settings.FFPROBE_BIN,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]


def probe_duration(path: Path, gate, runner: Runner = run, timeout: float = 60.0) -> float:
    """Duration of ``path`` in seconds, measured with ffprobe under ``gate``."""
    if not Path(path).exists():
        raise InputNotFound(f"input file does not exist: {path}")
    with gate.slot():
        try:
            proc = runner(duration_cmd(path), timeout=timeout)
        except subprocess.TimeoutExpired:
            raise AnalysisTimeout(f"ffprobe timed out after {timeout:.0f}s")
    if proc.returncode != 0:
        raise AnalysisFailed(f"failed to get file duration: {tail(proc.stderr)}")
    try:
        return float(proc.stdout.strip())
    except ValueError:
        raise AnalysisFailed(f"failed to parse duration: {proc.stdout.strip()!r}")
