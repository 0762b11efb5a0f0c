import logging
import os
import uuid
from pathlib import Path

from flask import Blueprint, current_app, jsonify, request, send_file

from . import settings
from .engine.normalizer import validate_target
from .errors import InvalidTarget, InvalidTask, InvalidTransition
from .models import specs
from .models.job import AudioFile, JobStatus, ProcessingJob, ProcessingTask, truthy
from .progress import STATUS_PROGRESS
from .storage import processed_key, upload_key
from .utils import fs

logger = logging.getLogger(__name__)

bp = Blueprint("main", __name__)

MIMETYPES = {"mp3": "audio/mpeg", "wav": "audio/wav", "flac": "audio/flac"}


def _service(key, factory):
    svc = current_app.config.get(key)
    if svc is None:
        svc = current_app.config[key] = factory()
    return svc


def _jobs():
    from .jobstore import JsonJobStore
    return _service("JOBS", JsonJobStore)


def _storage():
    from .storage import get_storage
    return _service("STORAGE", get_storage)


def _progress():
    from .progress import get_progress_store
    return _service("PROGRESS", get_progress_store)


def _scheduler():
    from .scheduler import JobScheduler
    return _service("SCHEDULER", JobScheduler)


def _target_from_form(form):
    preset = form.get("preset")
    if preset:
        if preset not in specs.PRESETS:
            raise InvalidTarget(f"unknown preset {preset!r}; choose one of {', '.join(specs.PRESETS)}")
        return specs.PRESETS[preset]
    return form.get("target_lufs", specs.DEFAULT_LUFS)


@bp.post("/upload")
def upload():
    f = request.files.get("audio")
    if not f or not f.filename:
        return jsonify({"error": "No audio file provided (form field must be 'audio')."}), 400
    if not fs.allowed_file(f.filename):
        return jsonify({"error": f"Unsupported file type; allowed: {', '.join(sorted(fs.ALLOWED))}"}), 400

    form = request.form
    try:
        task = ProcessingTask.from_payload({
            "job_id": uuid.uuid4().hex,
            "file_id": uuid.uuid4().hex,
            "user_id": form.get("user_id", ""),
            "target_lufs": _target_from_form(form),
            "is_premium": truthy(form.get("premium")),
            "processing_mode": form.get("processing_mode"),
            "fast_mode": truthy(form.get("fast_mode")),
        })
        validate_target(task.target_lufs)
    except (InvalidTask, InvalidTarget) as e:
        return jsonify({"error": str(e)}), 400

    fmt = Path(f.filename).suffix.lower().lstrip(".")
    tmp = os.path.join(current_app.config["UPLOAD_FOLDER"], f"{task.file_id}.{fmt}")
    try:
        f.save(tmp)
        size = os.path.getsize(tmp)
        if size == 0:
            return jsonify({"error": "Uploaded file is empty"}), 400
        if size > settings.MAX_FILE_MB * 1024 * 1024:
            return jsonify({"error": f"File exceeds {settings.MAX_FILE_MB} MB"}), 413
        with open(tmp, "rb") as fh:
            _storage().upload(upload_key(task.file_id, fmt), fh, fmt)
    finally:
        fs.remove_quietly(tmp)

    jobs = _jobs()
    jobs.create_audio_file(AudioFile(
        id=task.file_id,
        format=fmt,
        user_id=task.user_id,
        original_filename=f.filename,
        file_size=size,
        lufs_target=task.target_lufs,
    ))
    job = ProcessingJob(id=task.job_id, audio_file_id=task.file_id, user_id=task.user_id)
    jobs.create_job(job)

    try:
        _scheduler().enqueue(task)
    except Exception as e:
        logger.error("Failed to enqueue job %s: %s", job.id, e)
        job.transition(JobStatus.FAILED)
        job.error_message = "failed to queue processing job"
        jobs.update_job(job)
        return jsonify({"error": "Processing queue unavailable, try again later"}), 503

    return jsonify({
        "job_id": task.job_id,
        "file_id": task.file_id,
        "processing_mode": task.mode.value,
        "status_url": f"/status/{task.job_id}",
    })


@bp.get("/status/<job_id>")
def status(job_id):
    job = _jobs().get_job(job_id)
    record = _progress().get_progress(job_id)
    if job is None and record is None:
        return jsonify({"error": "Job not found"}), 404

    if record is not None:
        body = {"job_id": job_id, "status": record.status, "progress": record.progress}
    else:
        body = {"job_id": job_id, "status": job.status.value, "progress": STATUS_PROGRESS.get(job.status.value, 0)}

    if job is not None:
        if job.status == JobStatus.FAILED and job.error_message:
            body["error"] = job.error_message
        if job.status == JobStatus.COMPLETED:
            body["download_url"] = f"/download/{job_id}"
    resp = jsonify(body)
    resp.headers["Cache-Control"] = "no-store, max-age=0"
    return resp


@bp.post("/cancel/<job_id>")
def cancel(job_id):
    try:
        job = _jobs().cancel_job(job_id)
    except KeyError:
        return jsonify({"error": "Job not found"}), 404
    except InvalidTransition as e:
        return jsonify({"error": str(e)}), 409
    try:
        _progress().set_progress(job_id, 0, JobStatus.CANCELLED.value)
    except Exception as e:
        logger.warning("Progress update for job %s failed: %s", job_id, e)
    return jsonify({"job_id": job.id, "status": job.status.value})


@bp.get("/download/<job_id>")
def download(job_id):
    jobs = _jobs()
    job = jobs.get_job(job_id)
    if job is None:
        return jsonify({"error": "Job not found"}), 404
    if job.status != JobStatus.COMPLETED:
        return jsonify({"error": f"Job is {job.status.value}"}), 409

    fmt = job.output_format or "mp3"
    audio = jobs.get_audio_file(job.audio_file_id)
    stem = Path(audio.original_filename).stem if audio and audio.original_filename else job.audio_file_id
    try:
        stream = _storage().download(processed_key(job.audio_file_id, fmt))
    except FileNotFoundError:
        return jsonify({"error": "Processed file missing"}), 404
    return send_file(
        stream,
        mimetype=MIMETYPES.get(fmt, "application/octet-stream"),
        as_attachment=True,
        download_name=f"{stem}_normalized.{fmt}",
    )
