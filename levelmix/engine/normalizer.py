"""Dynamics-aware gain staging and the ffmpeg render that applies it.

A track with a wide loudness range is pushed louder than a flat one to make
up for quiet passages pulling the integrated reading down.  The resulting filter chain is

    [atrim] -> volume -> alimiter -> [headroom volume] -> [stage-two volume]

where the bracketed stages only appear when needed.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .. import settings
from ..errors import InputNotFound, InvalidTarget, NormalizationFailed, NormalizationTimeout
from ..models import specs
from ..models.job import LoudnessMeasurement, OutputOptions, SilenceSpan, output_extension
from ..services import ffmpeg
from ..services.gate import ConcurrencyGate

logger = logging.getLogger(__name__)

MAX_ADJUSTMENT_DB = 5.0


def calculate_dynamics_aware_target(lra: float) -> float:
    """dB added to the requested target for a given loudness range.

    Piecewise linear, continuous and non-decreasing, capped at 5 dB.
    """
    if lra < 4:
        return 0.0
    if lra < 6:
        return 0.25 * (lra - 4)
    if lra < 9:
        return 0.5 + (lra - 6) / 3
    if lra < 12:
        return 1.5 + 0.5 * (lra - 9)
    return min(3.0 + 0.25 * (lra - 12), MAX_ADJUSTMENT_DB)


def clamp_target(lufs: float) -> float:
    return max(specs.MIN_LUFS, min(specs.MAX_LUFS, lufs))


def validate_target(target_lufs: float) -> None:
    if not specs.in_bounds(target_lufs):
        raise InvalidTarget(
            f"target LUFS {target_lufs:g} is outside [{specs.MIN_LUFS:g}, {specs.MAX_LUFS:g}]"
        )


def limiter_filter() -> str:
    ceiling = 10 ** (specs.LIMITER_CEILING_DB / 20.0)
    return (
        f"alimiter=limit={ceiling:.4f}:attack={specs.LIMITER_ATTACK_MS}"
        f":release={specs.LIMITER_RELEASE_MS}:level=false"
    )


@dataclass
class NormalizationPlan:
    target_lufs: float
    adjustment_db: float
    unclamped_target: float
    adjusted_target: float
    clamped: bool
    gain_db: float
    predicted_peak_db: float
    headroom: bool
    stage_two_gain_db: Optional[float] = None
    filters: List[str] = field(default_factory=list)

    @property
    def two_stage(self) -> bool:
        return self.stage_two_gain_db is not None

    @property
    def filter_chain(self) -> str:
        return ",".join(self.filters)


def build_plan(target_lufs: float, measurement: LoudnessMeasurement,
               silence: Optional[SilenceSpan] = None,
               two_stage: Optional[bool] = None,
               reference_lufs: Optional[float] = None) -> NormalizationPlan:
    validate_target(target_lufs)
    two_stage = settings.TWO_STAGE_ENABLED if two_stage is None else two_stage
    reference = settings.STREAMING_REFERENCE_LUFS if reference_lufs is None else reference_lufs

    # quiet targets are rendered at the reference level first and then turned down
    anchor = target_lufs
    stage_two = None
    if two_stage and target_lufs < reference:
        anchor = reference
        stage_two = target_lufs - reference

    adjustment = calculate_dynamics_aware_target(measurement.loudness_range_lu)
    unclamped = anchor + adjustment
    adjusted = clamp_target(unclamped)
    gain = adjusted - measurement.integrated_lufs
    predicted_peak = measurement.true_peak_db + gain
    headroom = predicted_peak > specs.HEADROOM_TRIGGER_DB

    filters = []
    if silence is not None and silence.needs_trimming():
        filters.append(silence.trim_filter())
    filters.append(f"volume={gain:.2f}dB")
    filters.append(limiter_filter())
    if headroom:
        filters.append(f"volume={specs.HEADROOM_DB:.1f}dB")
    if stage_two is not None:
        filters.append(f"volume={stage_two:.2f}dB")

    return NormalizationPlan(
        target_lufs=target_lufs,
        adjustment_db=adjustment,
        unclamped_target=unclamped,
        adjusted_target=adjusted,
        clamped=adjusted != unclamped,
        gain_db=gain,
        predicted_peak_db=predicted_peak,
        headroom=headroom,
        stage_two_gain_db=stage_two,
        filters=filters,
    )


def determine_output_format(input_format: str, is_premium: bool) -> str:
    """Free tier always gets mp3; premium keeps wav/flac and falls back to mp3."""
    fmt = (input_format or "").lower()
    if is_premium and fmt in ("wav", "flac"):
        return fmt
    return "mp3"


def output_options_for(output_format: str, is_premium: bool) -> OutputOptions:
    fmt = (output_format or "").lower()
    if fmt == "wav":
        return OutputOptions("pcm_s16le", "", ["-ac", "2"])
    if fmt == "flac":
        return OutputOptions("flac", "", [])
    if is_premium:
        return OutputOptions("libmp3lame", "320k", ["-q:a", "0"])
    return OutputOptions("libmp3lame", "320k", [])


def codec_for_extension(ext: str) -> str:
    return {".mp3": "libmp3lame", ".wav": "pcm_s16le", ".flac": "flac"}.get(ext, "pcm_s16le")


def render_cmd(src: Path, part: Path, fmt: str, chain: str, options: OutputOptions) -> List[str]:
    cmd = [
        settings.FFMPEG_BIN, "-y", "-nostdin", "-hide_banner",
        "-i", str(src),
        "-af", chain,
        "-c:a", options.codec or codec_for_extension(f".{fmt}"),
    ]
    if options.bitrate:
        cmd += ["-b:a", options.bitrate]
    elif fmt == "mp3":
        cmd += ["-b:a", "320k"]
    cmd += ["-ar", str(specs.OUTPUT_SAMPLE_RATE)]
    cmd += list(options.extra_options)
    cmd += ["-f", fmt, str(part)]
    return cmd


class DynamicsNormalizer:
    def __init__(self, gate: ConcurrencyGate, runner: ffmpeg.Runner = ffmpeg.run,
                 timeout: Optional[float] = None):
        self.gate = gate
        self.runner = runner
        self.timeout = settings.NORMALIZE_TIMEOUT if timeout is None else timeout

    def normalize(self, input_path, output_path, target_lufs: float,
                  measurement: LoudnessMeasurement, silence: Optional[SilenceSpan] = None,
                  options: Optional[OutputOptions] = None,
                  timeout: Optional[float] = None) -> NormalizationPlan:
        """Render ``input_path`` to ``output_path`` at ``target_lufs``.

        The file is written next to its destination with a ``.part`` suffix
        and renamed only once ffmpeg has produced a non-empty result, so a
        failed render never leaves a truncated output behind.
        """
        plan = build_plan(target_lufs, measurement, silence)
        src, dst = Path(input_path), Path(output_path)
        if not src.exists():
            raise InputNotFound(f"input file does not exist: {src}")

        if plan.clamped:
            logger.info(
                "Adjusted target %.2f LUFS clamped to %.2f LUFS", plan.unclamped_target, plan.adjusted_target
            )
        logger.info(
            "Normalizing %s: measured %.1f LUFS (LRA %.1f), target %.1f -> adjusted %.2f, "
            "gain %.2f dB, predicted peak %.2f dB%s",
            src.name, measurement.integrated_lufs, measurement.loudness_range_lu, target_lufs,
            plan.adjusted_target, plan.gain_db, plan.predicted_peak_db,
            f", stage two {plan.stage_two_gain_db:.2f} dB" if plan.two_stage else "",
        )

        fmt = dst.suffix.lower().lstrip(".") or "mp3"
        options = options or OutputOptions()
        part = dst.with_name(dst.stem + ".part" + output_extension(fmt))
        cmd = render_cmd(src, part, fmt, plan.filter_chain, options)

        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        try:
            with self.gate.slot(timeout=budget):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise NormalizationTimeout(f"normalization timed out after {budget:.0f}s")
                try:
                    proc = self.runner(cmd, timeout=remaining)
                except subprocess.TimeoutExpired:
                    raise NormalizationTimeout(f"normalization timed out after {budget:.0f}s")

            if proc.returncode != 0:
                diag = ffmpeg.tail(proc.stderr)
                raise NormalizationFailed(f"ffmpeg normalization failed: {diag}", diag)
            if not part.exists() or part.stat().st_size == 0:
                raise NormalizationFailed("ffmpeg produced an empty output file", ffmpeg.tail(proc.stderr))
            os.replace(part, dst)
        finally:
            if part.exists():
                part.unlink()
        return plan
