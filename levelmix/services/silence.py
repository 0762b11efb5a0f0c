import logging
import re
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Tuple

from .. import settings
from ..errors import AnalysisFailed, AnalysisTimeout, InputNotFound
from ..models.job import SilenceSpan
from . import ffmpeg
from .gate import ConcurrencyGate

logger = logging.getLogger(__name__)

NOISE_FLOOR = "-70dB"
MIN_SILENCE = 0.5
# a period this close to either end of the file counts as leading/trailing
EDGE_TOLERANCE = 0.1

_START_RE = re.compile(r"silence_start:\s*([-+\d.eE]+)")
_END_RE = re.compile(r"silence_end:\s*([-+\d.eE]+)")


def silence_periods(text: str, duration: float) -> List[Tuple[float, float]]:
    periods = []
    start: Optional[float] = None
    for line in text.splitlines():
        m = _START_RE.search(line)
        if m:
            start = float(m.group(1))
            continue
        m = _END_RE.search(line)
        if m and start is not None:
            periods.append((start, float(m.group(1))))
            start = None
    if start is not None:
        # silence ran to the end of the file
        periods.append((start, duration))
    return periods


def parse_silence_output(text: str, duration: float) -> SilenceSpan:
    span = SilenceSpan.none(duration)
    periods = silence_periods(text, duration)
    for start, end in periods:
        logger.debug("silence %.3f -> %.3f (%.3fs)", start, end, end - start)
        if start < EDGE_TOLERANCE:
            span.has_leading = True
            span.trim_start = end
        if end >= duration - EDGE_TOLERANCE:
            span.has_trailing = True
            span.trim_end = start

    if span.needs_trimming() and span.trim_start >= span.trim_end:
        # the whole file is silent, or the markers overlap
        logger.warning(
            "Ignoring silence detection: trim window %.3f -> %.3f is empty",
            span.trim_start, span.trim_end,
        )
        return SilenceSpan.none(duration)
    return span


def detect_cmd(path: Path) -> List[str]:
    return [
        settings.FFMPEG_BIN, "-nostdin", "-hide_banner",
        "-i", str(path),
        "-af", f"silencedetect=noise={NOISE_FLOOR}:d={MIN_SILENCE}",
        "-f", "null", "-",
    ]


class SilenceDetector:
    def __init__(self, gate: ConcurrencyGate, runner: ffmpeg.Runner = ffmpeg.run,
                 timeout: Optional[float] = None):
        self.gate = gate
        self.runner = runner
        self.timeout = settings.SILENCE_TIMEOUT if timeout is None else timeout

    def detect(self, path, duration: Optional[float] = None) -> SilenceSpan:
        """Find leading and trailing silence in ``path``.

        ``duration`` skips the ffprobe call when the caller already knows it.
        """
        path = Path(path)
        if not path.exists():
            raise InputNotFound(f"input file does not exist: {path}")
        deadline = time.monotonic() + self.timeout
        if duration is None:
            duration = ffmpeg.probe_duration(path, self.gate, self.runner, timeout=self.timeout)

        remaining = deadline - time.monotonic()
        with self.gate.slot(timeout=remaining):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AnalysisTimeout(f"silence detection timed out after {self.timeout:.0f}s")
            try:
                proc = self.runner(detect_cmd(path), timeout=remaining)
            except subprocess.TimeoutExpired:
                raise AnalysisTimeout(f"silence detection timed out after {self.timeout:.0f}s")
        if proc.returncode != 0:
            raise AnalysisFailed(f"silence detection failed: {ffmpeg.tail(proc.stderr)}")

        span = parse_silence_output(proc.stderr or "", duration)
        if span.needs_trimming():
            logger.info(
                "Silence in %s: keep %.2f -> %.2f of %.2fs",
                path.name, span.trim_start, span.trim_end, duration,
            )
        return span
