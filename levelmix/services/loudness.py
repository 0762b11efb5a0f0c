import json
import logging
import math
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from .. import settings
from ..errors import AnalysisFailed, AnalysisTimeout, InputNotFound
from ..models import specs
from ..models.job import LoudnessMeasurement
from . import ffmpeg
from .gate import ConcurrencyGate

logger = logging.getLogger(__name__)

FIELDS = ("input_i", "input_tp", "input_lra", "input_thresh")


def parse_loudnorm_output(text: str) -> LoudnessMeasurement:
    """Decode the JSON block loudnorm prints among ffmpeg's diagnostics.

    The block spans from the first ``{`` to the last ``}``.  Every field is
    a string-encoded number; one that does not parse is an error rather than
    a silent zero.
    """
    lb = text.find("{")
    rb = text.rfind("}")
    if lb == -1:
        raise AnalysisFailed("no JSON data found in ffmpeg output")
    if rb < lb:
        raise AnalysisFailed("malformed JSON data in ffmpeg output")
    try:
        data = json.loads(text[lb:rb + 1])
    except ValueError as e:
        raise AnalysisFailed(f"failed to parse loudnorm JSON: {e}")
    logger.debug("loudnorm JSON: %s", data)

    values = {}
    for key in FIELDS:
        raw = data.get(key)
        if raw is None:
            if key == "input_thresh":
                continue
            raise AnalysisFailed(f"loudnorm output is missing {key}")
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise AnalysisFailed(f"failed to parse {key}: {raw!r}")
        if not math.isfinite(value):
            raise AnalysisFailed(f"{key} is {raw!r}; input has no measurable loudness")
        values[key] = value

    integrated = values["input_i"]
    return LoudnessMeasurement(
        integrated_lufs=integrated,
        true_peak_db=values["input_tp"],
        loudness_range_lu=values["input_lra"],
        threshold_lufs=values.get("input_thresh", integrated - 10.0),
    )


def measure_cmd(path: Path, start: Optional[float] = None, length: Optional[float] = None) -> List[str]:
    spec = specs.measurement
    cmd = [settings.FFMPEG_BIN, "-nostdin", "-hide_banner"]
    if start is not None:
        cmd += ["-ss", f"{start:.2f}"]
    if length is not None:
        cmd += ["-t", f"{length:.2f}"]
    cmd += [
        "-i", str(path),
        "-af", f"loudnorm=print_format=json:I={spec.I:g}:TP={spec.TP:g}:LRA={spec.LRA:g}",
        "-f", "null", "-",
    ]
    return cmd


class LoudnessMeter:
    """Runs loudnorm's analysis pass over a whole file or a window of it."""

    def __init__(self, gate: ConcurrencyGate, runner: ffmpeg.Runner = ffmpeg.run,
                 timeout: Optional[float] = None):
        self.gate = gate
        self.runner = runner
        self.timeout = settings.ANALYSIS_TIMEOUT if timeout is None else timeout

    def measure(self, path, start: Optional[float] = None, length: Optional[float] = None,
                timeout: Optional[float] = None) -> LoudnessMeasurement:
        path = Path(path)
        if not path.exists():
            raise InputNotFound(f"input file does not exist: {path}")
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget

        with self.gate.slot(timeout=budget):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AnalysisTimeout(f"loudness analysis of {path.name} timed out after {budget:.0f}s")
            try:
                proc = self.runner(measure_cmd(path, start, length), timeout=remaining)
            except subprocess.TimeoutExpired:
                raise AnalysisTimeout(f"loudness analysis of {path.name} timed out after {budget:.0f}s")

        if proc.returncode != 0:
            raise AnalysisFailed(f"loudness analysis failed (exit {proc.returncode}): {ffmpeg.tail(proc.stderr)}")
        info = parse_loudnorm_output((proc.stderr or "") + (proc.stdout or ""))
        logger.info(
            "Loudness %s: %.1f LUFS, peak %.1f dB, LRA %.1f LU, threshold %.1f",
            path.name if start is None else f"{path.name}@{start:.1f}s",
            info.integrated_lufs, info.true_peak_db, info.loudness_range_lu, info.threshold_lufs,
        )
        return info
