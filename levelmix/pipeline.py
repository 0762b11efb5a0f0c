"""Runs one processing job from queued input to uploaded output."""

import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Callable, Optional

from celery.exceptions import SoftTimeLimitExceeded

from . import settings
from .engine.normalizer import (
    DynamicsNormalizer,
    determine_output_format,
    output_options_for,
    validate_target,
)
from .errors import (
    DownloadFailed,
    InvalidTask,
    InvalidTransition,
    JobCancelled,
    JobTimeout,
    LevelMixError,
    NormalizationFailed,
    PanicRecovered,
    ProcessingTimeout,
    RetryRequested,
    UploadFailed,
)
from .jobstore import JobStore
from .models.job import (
    JobStatus,
    ProcessingJob,
    ProcessingMode,
    ProcessingTask,
    output_extension,
    utcnow,
)
from .progress import ProgressStore
from .services import ffmpeg
from .services.gate import ConcurrencyGate
from .services.loudness import LoudnessMeter
from .services.sampler import AdaptiveSampler
from .services.silence import SilenceDetector
from .storage import AudioStore, BulkDownloader, processed_key, upload_key
from .utils.fs import free_disk_mb, remove_quietly

logger = logging.getLogger(__name__)

TICK_STEP = 3
TICK_CEILING = 65


def _bounded(fn: Callable, timeout: float, what: str):
    """Run ``fn`` in a helper thread and give up on it after ``timeout`` seconds."""
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=what.replace(" ", "-"))
    fut = pool.submit(fn)
    try:
        return fut.result(timeout=max(0.0, timeout))
    except FuturesTimeout:
        raise JobTimeout(f"{what} timed out after {timeout:.0f}s")
    finally:
        pool.shutdown(wait=False)


def _one_line(exc: BaseException) -> str:
    text = str(exc).strip().splitlines()
    return f"{type(exc).__name__}: {text[0]}" if text else type(exc).__name__


class ProgressTicker:
    """Reports phase progress and creeps it forward while ffmpeg is busy.

    Every ``interval`` seconds the percentage moves up by 3 until it reaches
    65; an explicit ``set`` at or above that stops the creep.
    """

    def __init__(self, report: Callable[[int, str], None], interval: float):
        self.report = report
        self.interval = interval
        self.percent = 0
        self.status = ""
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="progress-ticker", daemon=True)

    def set(self, percent: int, status: str) -> None:
        with self._lock:
            self.percent, self.status = percent, status
            self.report(percent, status)

    def _loop(self):
        while not self._stop.wait(self.interval):
            with self._lock:
                if not self.status or self.percent >= TICK_CEILING:
                    continue
                self.percent = min(TICK_CEILING, self.percent + TICK_STEP)
                self.report(self.percent, self.status)

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, *exc):
        self._stop.set()
        self._thread.join(timeout=self.interval + 1)


class ProcessingOrchestrator:
    def __init__(
        self,
        jobs: JobStore,
        store: AudioStore,
        progress: ProgressStore,
        gate: ConcurrencyGate,
        meter: Optional[LoudnessMeter] = None,
        sampler: Optional[AdaptiveSampler] = None,
        silence: Optional[SilenceDetector] = None,
        normalizer: Optional[DynamicsNormalizer] = None,
        runner: ffmpeg.Runner = ffmpeg.run,
        work_dir: Optional[str] = None,
        trim_silence: Optional[bool] = None,
    ):
        self.jobs = jobs
        self.store = store
        self.progress = progress
        self.gate = gate
        self.runner = runner
        self.meter = meter or LoudnessMeter(gate, runner)
        self.sampler = sampler or AdaptiveSampler(self.meter)
        self.silence = silence or SilenceDetector(gate, runner)
        self.normalizer = normalizer or DynamicsNormalizer(gate, runner)
        self.work_dir = work_dir or settings.WORK_DIR
        self.trim_silence = settings.TRIM_SILENCE if trim_silence is None else trim_silence
        os.makedirs(self.work_dir, exist_ok=True)

    # -- bookkeeping that must never fail the job -------------------------

    def _report(self, job_id: str, percent: int, status: str) -> None:
        try:
            self.progress.set_progress(job_id, percent, status)
        except Exception as e:
            logger.warning("Progress update for job %s failed: %s", job_id, e)

    def _save(self, job: ProcessingJob) -> None:
        """Persist ``job``; a terminal record in the store means we were cancelled."""
        try:
            self.jobs.update_job(job)
        except InvalidTransition as e:
            raise JobCancelled(str(e))
        except Exception as e:
            logger.error("Failed to update job %s: %s", job.id, e)

    def _checkpoint(self, job_id: str) -> None:
        current = self.jobs.get_job(job_id)
        if current is not None and current.status == JobStatus.CANCELLED:
            raise JobCancelled(f"job {job_id} was cancelled")

    # -- entry point -------------------------------------------------------

    def run(self, task: ProcessingTask, final_attempt: bool = True,
            time_budget: Optional[float] = None) -> ProcessingJob:
        """Process ``task`` and return the finished job record.

        Content errors mark the job failed and propagate.  Retryable errors
        on a non-final attempt put the job back in the queue and raise
        :class:`RetryRequested` instead.  A job cancelled before or during
        the run is returned as-is.

        ``time_budget`` caps the job deadline in seconds so every timeout
        fires inside the worker's own task time limit.
        """
        try:
            self._validate(task)
        except LevelMixError as e:
            logger.error("Job %s rejected: %s", task.job_id or "?", e)
            job = self.jobs.get_job(task.job_id) if task.job_id else None
            if job is not None and not job.status.terminal:
                self._mark_failed(job, e)
            raise

        job = self.jobs.get_job(task.job_id)
        if job is None:
            raise InvalidTask(f"job not found: {task.job_id}")
        if job.status.terminal:
            logger.info("Job %s is already %s; skipping", job.id, job.status.value)
            return job

        temps = []
        try:
            return self._process(task, job, temps, time_budget)
        except JobCancelled as e:
            logger.info("Job %s stopped: %s", job.id, e)
            self._report(job.id, 0, JobStatus.CANCELLED.value)
            return self.jobs.get_job(job.id) or job
        except LevelMixError as e:
            return self._fail(job, e, final_attempt)
        except SoftTimeLimitExceeded:
            logger.error("Job %s reached the task soft time limit", job.id)
            return self._fail(job, JobTimeout("task time limit exceeded"), final_attempt)
        except Exception as e:
            logger.exception("Unexpected error while processing job %s", job.id)
            return self._fail(job, PanicRecovered(f"unexpected error: {_one_line(e)}"), final_attempt)
        finally:
            for p in temps:
                remove_quietly(p)

    def _validate(self, task: ProcessingTask) -> None:
        if not task.job_id:
            raise InvalidTask("job ID is required")
        if not task.file_id:
            raise InvalidTask("file ID is required")
        validate_target(task.target_lufs)

    def _process(self, task: ProcessingTask, job: ProcessingJob, temps: list,
                 time_budget: Optional[float] = None) -> ProcessingJob:
        budget = settings.JOB_TIMEOUT if time_budget is None else min(settings.JOB_TIMEOUT, time_budget)
        deadline = time.monotonic() + budget
        logger.info(
            "Processing job %s (file %s, target %.1f LUFS, %s mode, premium=%s)",
            job.id, task.file_id, task.target_lufs, task.mode.value, task.is_premium,
        )
        job.transition(JobStatus.PROCESSING)
        job.started_at = utcnow()
        job.error_message = None
        self._save(job)
        self._report(job.id, 10, "processing")

        # download
        self._report(job.id, 20, "downloading")
        audio = _bounded(
            lambda: self.jobs.get_audio_file(task.file_id),
            min(settings.METADATA_TIMEOUT, deadline - time.monotonic()),
            "file metadata lookup",
        )
        if audio is None:
            raise InvalidTask(f"audio file not found: {task.file_id}")
        input_path = self._download(audio.id, audio.format, deadline, temps)
        self._checkpoint(job.id)

        # analyze and normalize
        output_format = determine_output_format(audio.format, task.is_premium)
        output_path = os.path.join(
            self.work_dir, f"levelmix_output_{task.file_id}_{job.id}{output_extension(output_format)}"
        )
        temps.append(output_path)
        phase_deadline = min(deadline, time.monotonic() + settings.PROCESSING_TIMEOUT)
        try:
            self._analyze_and_normalize(task, job, input_path, output_path, output_format, phase_deadline)
        except ProcessingTimeout as e:
            if time.monotonic() >= phase_deadline:
                raise JobTimeout(f"processing timed out: {e}") from e
            raise
        if time.monotonic() >= phase_deadline:
            raise JobTimeout(f"processing exceeded {settings.PROCESSING_TIMEOUT:.0f}s")
        self._checkpoint(job.id)

        # upload
        self._report(job.id, 85, "uploading")
        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise NormalizationFailed("processed file is empty")
        key = processed_key(task.file_id, output_format)
        _bounded(
            lambda: self._upload(key, output_path, output_format),
            min(settings.UPLOAD_TIMEOUT, deadline - time.monotonic()),
            "upload",
        )

        job.transition(JobStatus.COMPLETED)
        job.output_format = output_format
        job.completed_at = utcnow()
        self._save(job)
        try:
            self.jobs.update_status(task.file_id, "completed")
        except Exception as e:
            logger.error("Failed to update status of file %s: %s", task.file_id, e)
        self._report(job.id, 100, "completed")
        self._record_stats(job)
        logger.info("Job %s completed in %ds", job.id, job.processing_seconds())
        return job

    def _download(self, file_id: str, fmt: str, deadline: float, temps: list) -> str:
        if free_disk_mb(self.work_dir) < settings.MIN_FREE_DISK_MB:
            raise DownloadFailed(
                f"insufficient disk space in {self.work_dir}: need {settings.MIN_FREE_DISK_MB} MB free"
            )
        fd, path = tempfile.mkstemp(prefix="levelmix_input_", suffix=output_extension(fmt), dir=self.work_dir)
        os.close(fd)
        temps.append(path)
        key = upload_key(file_id, fmt)

        def fetch():
            if isinstance(self.store, BulkDownloader):
                self.store.download_to_file(key, path)
                return
            with self.store.download(key) as src, open(path, "wb") as dst:
                shutil.copyfileobj(src, dst)

        try:
            _bounded(fetch, min(settings.DOWNLOAD_TIMEOUT, deadline - time.monotonic()), "download")
        except JobTimeout:
            raise
        except Exception as e:
            raise DownloadFailed(f"failed to download {key}: {e}") from e
        if os.path.getsize(path) == 0:
            raise DownloadFailed(f"downloaded file {key} is empty")
        logger.info("Downloaded %s (%d bytes)", key, os.path.getsize(path))
        return path

    def _upload(self, key: str, path: str, fmt: str) -> None:
        try:
            with open(path, "rb") as f:
                self.store.upload(key, f, fmt)
        except Exception as e:
            raise UploadFailed(f"failed to upload {key}: {e}") from e

    def _analyze_and_normalize(self, task, job, input_path, output_path, output_format, deadline):
        def remaining():
            return max(0.0, deadline - time.monotonic())

        status = "fast_analyzing" if task.mode == ProcessingMode.FAST else "precise_analyzing"
        interval = settings.PROGRESS_TICK_SECONDS
        with ProgressTicker(lambda p, s: self._report(job.id, p, s), interval) as ticker:
            ticker.set(30, status)

            duration = None
            if task.mode == ProcessingMode.FAST:
                duration = ffmpeg.probe_duration(input_path, self.gate, self.runner, timeout=remaining())

            span = None
            if self.trim_silence:
                try:
                    span = self.silence.detect(input_path, duration)
                except LevelMixError as e:
                    logger.warning("Silence detection failed for job %s, continuing without trim: %s", job.id, e)

            if task.mode == ProcessingMode.FAST:
                measurement = self.sampler.analyze(input_path, duration, timeout=remaining())
            else:
                measurement = self.meter.measure(input_path, timeout=remaining())
            self._checkpoint(job.id)

            ticker.set(70, "normalizing")
            self.normalizer.normalize(
                input_path,
                output_path,
                task.target_lufs,
                measurement,
                silence=span,
                options=output_options_for(output_format, task.is_premium),
                timeout=remaining(),
            )

    # -- failure paths -----------------------------------------------------

    def _fail(self, job: ProcessingJob, exc: LevelMixError, final_attempt: bool) -> ProcessingJob:
        current = self.jobs.get_job(job.id) or job
        if current.status.terminal:
            logger.info("Job %s is already %s; ignoring error: %s", job.id, current.status.value, exc)
            return current

        if exc.retryable and not final_attempt:
            logger.info("Job %s will be retried: %s", job.id, exc)
            current.status = JobStatus.QUEUED
            current.error_message = str(exc)
            try:
                self._save(current)
            except JobCancelled:
                return self.jobs.get_job(job.id) or current
            self._report(job.id, 10, JobStatus.QUEUED.value)
            raise RetryRequested(exc) from exc

        self._mark_failed(current, exc)
        raise exc

    def _mark_failed(self, job: ProcessingJob, exc: LevelMixError) -> None:
        logger.error("Job %s failed: %s", job.id, exc)
        job.transition(JobStatus.FAILED)
        job.error_message = str(exc)
        job.completed_at = utcnow()
        try:
            self._save(job)
        except JobCancelled:
            return
        try:
            self.jobs.update_status(job.audio_file_id, "failed")
        except Exception as e:
            logger.error("Failed to update status of file %s: %s", job.audio_file_id, e)
        self._report(job.id, 0, JobStatus.FAILED.value)

    def _record_stats(self, job: ProcessingJob) -> None:
        if not job.user_id:
            return
        try:
            stats = self.jobs.get_user_stats(job.user_id)
            stats.total_uploads += 1
            stats.total_processing_time_seconds += job.processing_seconds()
            self.jobs.update_user_stats(stats)
        except Exception as e:
            logger.error("Failed to update stats for user %s: %s", job.user_id, e)
