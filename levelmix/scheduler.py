"""Celery queues and the task that drives the orchestrator.

Three queues are consumed with strict priority: ``fast`` before ``premium``
before ``standard``.  Start a worker with::

    celery -A levelmix.scheduler worker -Q fast,premium,standard

Tasks run on the thread pool so every task in a worker shares one
:class:`ConcurrencyGate`.  Each job gets a deadline a margin inside the task
time limit and fails itself once that deadline passes.
"""

import logging
import os
import threading
from typing import Optional

from celery import Celery
from celery.signals import setup_logging
from kombu import Queue

from . import configure_logging, settings
from .errors import LevelMixError, RetryRequested
from .jobstore import JsonJobStore
from .models.job import ProcessingMode, ProcessingTask
from .pipeline import ProcessingOrchestrator
from .progress import get_progress_store
from .services.gate import ConcurrencyGate
from .storage import get_storage

logger = logging.getLogger(__name__)

FAST_QUEUE = "fast"
PREMIUM_QUEUE = "premium"
STANDARD_QUEUE = "standard"
QUEUES = (FAST_QUEUE, PREMIUM_QUEUE, STANDARD_QUEUE)


def worker_concurrency(cpu_count: Optional[int] = None) -> int:
    if settings.WORKER_CONCURRENCY > 0:
        return settings.WORKER_CONCURRENCY
    cpus = cpu_count or os.cpu_count() or 1
    return max(2, min(16, cpus * 2))


celery_app = Celery("levelmix", broker=settings.BROKER_URL)
celery_app.conf.update(
    task_queues=[Queue(name) for name in QUEUES],
    task_default_queue=STANDARD_QUEUE,
    broker_transport_options={"queue_order_strategy": "priority"},
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_pool="threads",
    worker_concurrency=worker_concurrency(),
    task_serializer="json",
    accept_content=["json"],
)


@setup_logging.connect
def _setup_worker_logging(**kwargs):
    configure_logging()


def queue_for(task: ProcessingTask) -> str:
    if task.mode == ProcessingMode.FAST:
        return FAST_QUEUE
    if task.is_premium:
        return PREMIUM_QUEUE
    return STANDARD_QUEUE


def time_limit_for(task: ProcessingTask) -> int:
    if task.mode == ProcessingMode.FAST:
        return settings.FAST_TASK_TIMEOUT
    return settings.STANDARD_TASK_TIMEOUT


def soft_time_limit_for(task: ProcessingTask) -> int:
    return time_limit_for(task) - settings.TASK_TIME_MARGIN


def job_budget_for(task: ProcessingTask) -> int:
    """Seconds the orchestrator may spend on ``task`` before failing it itself."""
    return soft_time_limit_for(task) - settings.TASK_TIME_MARGIN


def retry_countdown(retries: int) -> int:
    """Linear backoff: 30s, 60s, 90s, ..."""
    return (retries + 1) * settings.RETRY_BACKOFF_SECONDS


_orchestrator: Optional[ProcessingOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> ProcessingOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = ProcessingOrchestrator(
                jobs=JsonJobStore(),
                store=get_storage(),
                progress=get_progress_store(),
                gate=ConcurrencyGate(),
            )
        return _orchestrator


@celery_app.task(bind=True, name="levelmix.process_audio", max_retries=settings.MAX_RETRIES)
def process_audio(self, payload: dict) -> dict:
    task = ProcessingTask.from_payload(payload)
    retries = self.request.retries or 0
    final = retries >= self.max_retries
    try:
        job = get_orchestrator().run(task, final_attempt=final, time_budget=job_budget_for(task))
    except RetryRequested as e:
        countdown = retry_countdown(retries)
        logger.info(
            "Job %s attempt %d/%d failed, retrying in %ds: %s",
            task.job_id, retries + 1, self.max_retries + 1, countdown, e.cause,
        )
        raise self.retry(exc=e, countdown=countdown)
    except LevelMixError as e:
        logger.error("Job %s failed after %d attempt(s): %s", task.job_id, retries + 1, e)
        raise
    return job.to_dict()


class JobScheduler:
    def __init__(self, task=process_audio):
        self.task = task

    def enqueue(self, task: ProcessingTask) -> str:
        queue = queue_for(task)
        result = self.task.apply_async(
            args=(task.to_payload(),),
            queue=queue,
            time_limit=time_limit_for(task),
            soft_time_limit=soft_time_limit_for(task),
        )
        logger.info("Queued job %s on %s as %s", task.job_id, queue, result.id)
        return result.id
