import os


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _flag(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


DEBUG = _flag("DEBUG", False)
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()

WORK_DIR = os.getenv("WORK_DIR", "/tmp/levelmix")
DATA_DIR = os.getenv("DATA_DIR", os.path.join(WORK_DIR, "data"))
MAX_FILE_MB = _int("MAX_FILE_MB", 500)
MIN_FREE_DISK_MB = _int("MIN_FREE_DISK_MB", 1024)

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")

BROKER_URL = os.getenv("BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
# empty -> progress records are kept as JSON files under DATA_DIR
PROGRESS_REDIS_URL = os.getenv("PROGRESS_REDIS_URL", "")
PROGRESS_TTL_SECONDS = _int("PROGRESS_TTL_SECONDS", 30 * 60)
PROGRESS_TICK_SECONDS = _float("PROGRESS_TICK_SECONDS", 2.0)

# 0 -> size from the CPU count
FFMPEG_CONCURRENCY = _int("FFMPEG_CONCURRENCY", 0)
GATE_WAIT_SECONDS = _float("GATE_WAIT_SECONDS", 30.0)

ANALYSIS_TIMEOUT = _float("ANALYSIS_TIMEOUT", 15 * 60)
SAMPLE_TIMEOUT = _float("SAMPLE_TIMEOUT", 3 * 60)
SILENCE_TIMEOUT = _float("SILENCE_TIMEOUT", 2 * 60)
NORMALIZE_TIMEOUT = _float("NORMALIZE_TIMEOUT", 20 * 60)
PROCESSING_TIMEOUT = _float("PROCESSING_TIMEOUT", 20 * 60)
JOB_TIMEOUT = _float("JOB_TIMEOUT", 30 * 60)
METADATA_TIMEOUT = _float("METADATA_TIMEOUT", 30)
DOWNLOAD_TIMEOUT = _float("DOWNLOAD_TIMEOUT", 10 * 60)
UPLOAD_TIMEOUT = _float("UPLOAD_TIMEOUT", 5 * 60)

SAMPLE_VARIANCE_THRESHOLD_LU = _float("SAMPLE_VARIANCE_THRESHOLD_LU", 6.0)
SAMPLE_VARIANCE_FALLBACK = _flag("SAMPLE_VARIANCE_FALLBACK", False)
TRIM_SILENCE = _flag("TRIM_SILENCE", True)
TWO_STAGE_ENABLED = _flag("TWO_STAGE_ENABLED", True)
STREAMING_REFERENCE_LUFS = _float("STREAMING_REFERENCE_LUFS", -14.0)

FAST_TASK_TIMEOUT = _int("FAST_TASK_TIMEOUT", 10 * 60)
STANDARD_TASK_TIMEOUT = _int("STANDARD_TASK_TIMEOUT", 30 * 60)
# gap between a job's own deadline, the soft limit and the hard limit
TASK_TIME_MARGIN = _int("TASK_TIME_MARGIN", 30)
MAX_RETRIES = _int("MAX_RETRIES", 3)
RETRY_BACKOFF_SECONDS = _int("RETRY_BACKOFF_SECONDS", 30)
# 0 -> 2x CPU count, clamped to [2, 16]
WORKER_CONCURRENCY = _int("WORKER_CONCURRENCY", 0)
