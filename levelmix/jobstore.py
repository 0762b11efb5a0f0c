"""Job, audio-file and user-stats records."""

import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Protocol

from . import settings
from .errors import InvalidTransition
from .models.job import AudioFile, JobStatus, ProcessingJob, UserStats
from .utils.fs import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    def create_job(self, job: ProcessingJob) -> None: ...

    def get_job(self, job_id: str) -> Optional[ProcessingJob]: ...

    def update_job(self, job: ProcessingJob) -> None: ...

    def cancel_job(self, job_id: str) -> ProcessingJob: ...

    def create_audio_file(self, audio: AudioFile) -> None: ...

    def get_audio_file(self, file_id: str) -> Optional[AudioFile]: ...

    def update_status(self, file_id: str, status: str) -> None: ...

    def get_user_stats(self, user_id: str) -> UserStats: ...

    def update_user_stats(self, stats: UserStats) -> None: ...


class JsonJobStore:
    """One JSON document per record under ``root/{jobs,files,stats}``.

    ``update_job`` refuses to move a job out of a terminal status, which is
    what lets an out-of-band cancel win over a worker that is still running.
    Every read-check-write holds an exclusive ``flock`` on ``root/.lock`` so
    the web process and the workers see each other's updates in order.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.DATA_DIR)
        for sub in ("jobs", "files", "stats"):
            (self.root / sub).mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._lock_path = self.root / ".lock"

    @contextmanager
    def _locked(self):
        with self._lock, open(self._lock_path, "a") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)

    def _path(self, kind: str, key: str) -> Path:
        return self.root / kind / f"{os.path.basename(key)}.json"

    def create_job(self, job: ProcessingJob) -> None:
        write_json_atomic(self._path("jobs", job.id), job.to_dict())

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        data = read_json(self._path("jobs", job_id))
        return ProcessingJob.from_dict(data) if data else None

    def update_job(self, job: ProcessingJob) -> None:
        with self._locked():
            current = self.get_job(job.id)
            if current is None:
                raise KeyError(f"job not found: {job.id}")
            if current.status.terminal and job.status != current.status:
                raise InvalidTransition(
                    f"job {job.id} is already {current.status.value}; refusing {job.status.value}"
                )
            write_json_atomic(self._path("jobs", job.id), job.to_dict())

    def cancel_job(self, job_id: str) -> ProcessingJob:
        with self._locked():
            job = self.get_job(job_id)
            if job is None:
                raise KeyError(f"job not found: {job_id}")
            if job.status.terminal:
                raise InvalidTransition(f"job {job_id} is already {job.status.value}")
            job.transition(JobStatus.CANCELLED)
            write_json_atomic(self._path("jobs", job.id), job.to_dict())
        logger.info("Job %s cancelled", job_id)
        return job

    def create_audio_file(self, audio: AudioFile) -> None:
        write_json_atomic(self._path("files", audio.id), audio.to_dict())

    def get_audio_file(self, file_id: str) -> Optional[AudioFile]:
        data = read_json(self._path("files", file_id))
        return AudioFile.from_dict(data) if data else None

    def update_status(self, file_id: str, status: str) -> None:
        with self._locked():
            audio = self.get_audio_file(file_id)
            if audio is None:
                raise KeyError(f"audio file not found: {file_id}")
            audio.status = status
            write_json_atomic(self._path("files", file_id), audio.to_dict())

    def get_user_stats(self, user_id: str) -> UserStats:
        data = read_json(self._path("stats", user_id))
        return UserStats.from_dict(data) if data else UserStats(user_id=user_id)

    def update_user_stats(self, stats: UserStats) -> None:
        write_json_atomic(self._path("stats", stats.user_id), stats.to_dict())
