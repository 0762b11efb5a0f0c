"""Short-lived progress records polled by the status endpoint.

Progress is advisory: the job record is the source of truth and a missing or
expired progress record just makes the status endpoint fall back to it.
"""

import logging
import os
import time
from pathlib import Path
from typing import Optional, Protocol

import redis

from . import settings
from .models.job import ProgressRecord
from .utils.fs import read_json, write_json_atomic

logger = logging.getLogger(__name__)

# percent reported for each job status when no progress record exists
STATUS_PROGRESS = {"queued": 10, "processing": 50, "completed": 100, "failed": 0, "cancelled": 0}


class ProgressStore(Protocol):
    def set_progress(self, job_id: str, percent: int, status: str) -> None: ...

    def get_progress(self, job_id: str) -> Optional[ProgressRecord]: ...


def _clamp(percent: int) -> int:
    return max(0, min(100, int(percent)))


class FileProgressStore:
    def __init__(self, root: Optional[str] = None, ttl: Optional[int] = None):
        self.root = Path(root or os.path.join(settings.DATA_DIR, "progress"))
        self.root.mkdir(parents=True, exist_ok=True)
        self.ttl = settings.PROGRESS_TTL_SECONDS if ttl is None else ttl

    def _path(self, job_id: str) -> Path:
        return self.root / f"{os.path.basename(job_id)}.json"

    def set_progress(self, job_id: str, percent: int, status: str) -> None:
        record = ProgressRecord(job_id, _clamp(percent), status, time.time())
        write_json_atomic(self._path(job_id), record.to_dict())

    def get_progress(self, job_id: str) -> Optional[ProgressRecord]:
        data = read_json(self._path(job_id))
        if not data:
            return None
        if time.time() - data.get("updated_at", 0) > self.ttl:
            self._path(job_id).unlink(missing_ok=True)
            return None
        return ProgressRecord(**data)


class RedisProgressStore:
    def __init__(self, client: "redis.Redis", ttl: Optional[int] = None):
        self.client = client
        self.ttl = settings.PROGRESS_TTL_SECONDS if ttl is None else ttl

    @classmethod
    def from_url(cls, url: str) -> "RedisProgressStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    @staticmethod
    def key(job_id: str) -> str:
        return f"progress:{job_id}"

    def set_progress(self, job_id: str, percent: int, status: str) -> None:
        key = self.key(job_id)
        pipe = self.client.pipeline()
        pipe.hset(key, mapping={
            "progress": _clamp(percent),
            "status": status,
            "updated_at": time.time(),
        })
        pipe.expire(key, self.ttl)
        pipe.execute()

    def get_progress(self, job_id: str) -> Optional[ProgressRecord]:
        data = self.client.hgetall(self.key(job_id))
        if not data:
            return None
        return ProgressRecord(
            job_id=job_id,
            progress=int(data.get("progress", 0)),
            status=data.get("status", ""),
            updated_at=float(data.get("updated_at", 0)),
        )


def get_progress_store() -> ProgressStore:
    if settings.PROGRESS_REDIS_URL:
        return RedisProgressStore.from_url(settings.PROGRESS_REDIS_URL)
    return FileProgressStore()
