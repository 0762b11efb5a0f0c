"""Fast-mode loudness estimate from a handful of short windows."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .. import settings
from ..errors import InsufficientSamples, LevelMixError
from ..models.job import LoudnessMeasurement
from .loudness import LoudnessMeter

logger = logging.getLogger(__name__)

# offset between the energy and LUFS scales (ITU-R BS.1770)
K_OFFSET = 0.691
FULL_FILE_MAX_SECONDS = 60.0
MAX_COVERAGE = 0.6


@dataclass(frozen=True)
class SamplingPlan:
    window: float
    points: Tuple[float, ...]
    coverage: float
    full_file: bool


def plan_for(duration: float) -> SamplingPlan:
    if duration <= FULL_FILE_MAX_SECONDS:
        return SamplingPlan(0.0, (), 1.0, True)
    if duration <= 180:
        window, points = 20.0, (0.15, 0.50, 0.85)
    elif duration <= 600:
        window, points = 30.0, (0.10, 0.30, 0.50, 0.70, 0.90)
    else:
        window, points = 30.0, (0.10, 0.25, 0.40, 0.55, 0.70, 0.80, 0.90)
    coverage = window * len(points) / duration
    return SamplingPlan(window, points, coverage, coverage > MAX_COVERAGE)


def sample_windows(duration: float, plan: SamplingPlan) -> List[Tuple[float, float]]:
    """(start, length) of each window, kept inside ``[0, duration]``."""
    if duration <= plan.window:
        return [(0.0, duration) for _ in plan.points]
    windows = []
    for p in plan.points:
        start = duration * p
        if start + plan.window > duration:
            start = duration - plan.window
        windows.append((max(0.0, start), plan.window))
    return windows


def aggregate(samples: Sequence[LoudnessMeasurement]) -> LoudnessMeasurement:
    """Combine window measurements by averaging energy, not decibels."""
    lufs = np.array([s.integrated_lufs for s in samples], dtype=float)
    energy = np.power(10.0, (lufs + K_OFFSET) / 10.0)
    integrated = float(10.0 * np.log10(energy.mean()) - K_OFFSET)
    return LoudnessMeasurement.derived(
        integrated,
        float(max(s.true_peak_db for s in samples)),
        float(np.mean([s.loudness_range_lu for s in samples])),
        sample_count=len(samples),
        spread_lu=float(lufs.max() - lufs.min()),
    )


class AdaptiveSampler:
    def __init__(self, meter: LoudnessMeter, max_workers: Optional[int] = None,
                 variance_threshold: Optional[float] = None,
                 variance_fallback: Optional[bool] = None,
                 sample_timeout: Optional[float] = None):
        self.meter = meter
        self.max_workers = max_workers or meter.gate.capacity
        self.variance_threshold = (
            settings.SAMPLE_VARIANCE_THRESHOLD_LU if variance_threshold is None else variance_threshold
        )
        self.variance_fallback = (
            settings.SAMPLE_VARIANCE_FALLBACK if variance_fallback is None else variance_fallback
        )
        self.sample_timeout = settings.SAMPLE_TIMEOUT if sample_timeout is None else sample_timeout

    def analyze(self, path, duration: float, timeout: Optional[float] = None) -> LoudnessMeasurement:
        """Measure ``path`` from sampled windows.

        ``timeout`` bounds the whole analysis; each window gets the smaller of
        the per-sample timeout and what is left of it.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        def remaining(cap=None):
            if deadline is None:
                return cap
            left = max(0.0, deadline - time.monotonic())
            return left if cap is None else min(cap, left)

        plan = plan_for(duration)
        if plan.full_file:
            logger.info("Sampling %s: %.1fs file, measuring in full", path, duration)
            return self.meter.measure(path, timeout=remaining())

        windows = sample_windows(duration, plan)
        logger.info(
            "Sampling %s: %d x %.0fs windows (%.0f%% coverage)",
            path, len(windows), plan.window, plan.coverage * 100,
        )
        samples, failures = [], []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(windows))) as pool:
            futures = {
                pool.submit(self.meter.measure, path, start, length, remaining(self.sample_timeout)): start
                for start, length in windows
            }
            for fut in as_completed(futures):
                try:
                    samples.append(fut.result())
                except LevelMixError as e:
                    logger.warning("Sample at %.1fs failed: %s", futures[fut], e)
                    failures.append(e)

        if len(failures) * 2 > len(windows):
            raise InsufficientSamples(
                f"{len(failures)} of {len(windows)} loudness samples failed; last error: {failures[-1]}"
            )

        result = aggregate(samples)
        if result.spread_lu > self.variance_threshold:
            logger.warning(
                "High loudness variance across samples of %s: %.1f LU spread", path, result.spread_lu
            )
            if self.variance_fallback:
                logger.info("Falling back to full-file analysis for %s", path)
                return self.meter.measure(path, timeout=remaining())
            result = replace(result, high_variance=True)
        logger.info(
            "Sampled %s: %.1f LUFS, peak %.1f dB, LRA %.1f LU from %d windows",
            path, result.integrated_lufs, result.true_peak_db, result.loudness_range_lu, result.sample_count,
        )
        return result
