"""Records that flow through the processing pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import InvalidTask, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ProcessingMode(str, Enum):
    FAST = "fast"
    PRECISE = "precise"

    @classmethod
    def parse(cls, value: str) -> "ProcessingMode":
        v = (value or "").strip().lower()
        if v in ("fast", "quick", "adaptive"):
            return cls.FAST
        if v in ("precise", "accurate", "full"):
            return cls.PRECISE
        raise InvalidTask(f"invalid processing mode: {value!r}. Use 'fast' or 'precise'")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def truthy(value) -> bool:
    """Read a flag that may arrive as a bool, a number or a form/JSON string."""
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ProcessingTask:
    job_id: str
    file_id: str
    user_id: str
    target_lufs: float
    is_premium: bool = False
    mode: ProcessingMode = ProcessingMode.PRECISE

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProcessingTask":
        """Build a task from queue/HTTP data.

        This is the only place the deprecated ``fast_mode`` flag is read: an
        explicit ``processing_mode`` wins, otherwise ``fast_mode`` selects
        Fast and everything else defaults to Precise.
        """
        raw_mode = payload.get("processing_mode") or payload.get("mode")
        if raw_mode:
            mode = ProcessingMode.parse(str(raw_mode))
        elif truthy(payload.get("fast_mode")):
            mode = ProcessingMode.FAST
        else:
            mode = ProcessingMode.PRECISE
        try:
            target = float(payload.get("target_lufs"))
        except (TypeError, ValueError):
            raise InvalidTask(f"target LUFS must be a number, got {payload.get('target_lufs')!r}")
        return cls(
            job_id=str(payload.get("job_id") or ""),
            file_id=str(payload.get("file_id") or ""),
            user_id=str(payload.get("user_id") or ""),
            target_lufs=target,
            is_premium=truthy(payload.get("is_premium")),
            mode=mode,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "file_id": self.file_id,
            "user_id": self.user_id,
            "target_lufs": self.target_lufs,
            "is_premium": self.is_premium,
            "processing_mode": self.mode.value,
        }


@dataclass(frozen=True)
class LoudnessMeasurement:
    integrated_lufs: float
    true_peak_db: float
    loudness_range_lu: float
    threshold_lufs: float
    sample_count: int = 0
    spread_lu: float = 0.0
    high_variance: bool = False

    @classmethod
    def derived(cls, integrated: float, true_peak: float, lra: float, **extra) -> "LoudnessMeasurement":
        return cls(integrated, true_peak, lra, integrated - 10.0, **extra)


@dataclass
class SilenceSpan:
    has_leading: bool
    has_trailing: bool
    trim_start: float
    trim_end: float
    total_duration: float

    MARGIN = 0.05

    @classmethod
    def none(cls, total_duration: float) -> "SilenceSpan":
        return cls(False, False, 0.0, total_duration, total_duration)

    def needs_trimming(self) -> bool:
        return self.has_leading or self.has_trailing

    def trim_filter(self) -> str:
        """``atrim`` stage for the filter chain, or ``""`` when nothing to trim.

        The detected edges move 50 ms toward the content so the cut never
        lands on the first or last audible transient.
        """
        if not self.needs_trimming():
            return ""
        start, end = self.trim_start, self.trim_end
        if self.has_leading and start > self.MARGIN:
            start -= self.MARGIN
        if self.has_trailing and end < self.total_duration - self.MARGIN:
            end += self.MARGIN
        return f"atrim=start={start:.3f}:end={end:.3f},asetpts=PTS-STARTPTS"

    def content_duration(self) -> float:
        return self.trim_end - self.trim_start


@dataclass
class OutputOptions:
    codec: str = ""
    bitrate: str = ""
    extra_options: List[str] = field(default_factory=list)


@dataclass
class ProcessingJob:
    id: str
    audio_file_id: str
    user_id: str = ""
    status: JobStatus = JobStatus.QUEUED
    error_message: Optional[str] = None
    output_format: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def transition(self, status: JobStatus) -> None:
        status = JobStatus(status)
        if self.status.terminal and status != self.status:
            raise InvalidTransition(f"job {self.id} is {self.status.value}; cannot move to {status.value}")
        self.status = status

    def processing_seconds(self) -> int:
        if self.started_at is None or self.completed_at is None:
            return 0
        return int((self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("started_at", "completed_at", "created_at"):
            data[key] = _iso(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingJob":
        return cls(
            id=data["id"],
            audio_file_id=data["audio_file_id"],
            user_id=data.get("user_id", ""),
            status=JobStatus(data.get("status", "queued")),
            error_message=data.get("error_message"),
            output_format=data.get("output_format", ""),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class AudioFile:
    id: str
    format: str
    user_id: str = ""
    original_filename: str = ""
    file_size: int = 0
    status: str = "uploaded"
    lufs_target: float = 0.0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AudioFile":
        data = dict(data)
        data["created_at"] = _parse_dt(data.get("created_at")) or utcnow()
        return cls(**data)


@dataclass
class UserStats:
    user_id: str
    total_uploads: int = 0
    total_processing_time_seconds: int = 0
    uploads_this_week: int = 0
    last_upload_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_upload_at"] = _iso(self.last_upload_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserStats":
        data = dict(data)
        data["last_upload_at"] = _parse_dt(data.get("last_upload_at"))
        return cls(**data)


@dataclass
class ProgressRecord:
    job_id: str
    progress: int
    status: str
    updated_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def output_extension(fmt: str) -> str:
    fmt = (fmt or "").lower()
    return f".{fmt}" if fmt in ("mp3", "wav", "flac") else ".mp3"

