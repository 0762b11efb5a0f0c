import io

from conftest import FakeScheduler
from levelmix import create_app
from levelmix.models.job import JobStatus, ProcessingMode
from levelmix.storage import processed_key, upload_key


def upload(client, path, name="tone.wav", **fields):
    with open(path, "rb") as f:
        data = {"audio": (f, name), **fields}
        return client.post("/upload", data=data, content_type="multipart/form-data")


def test_healthz():
    app = create_app()
    with app.test_client() as c:
        r = c.get('/healthz')
        assert r.status_code == 200
        js = r.get_json()
        assert isinstance(js.get('ffmpeg'), bool)
        assert isinstance(js.get('ffprobe'), bool)
        assert js['ffmpeg_slots'] >= 2


def test_upload_requires_audio(client):
    r = client.post("/upload", data={}, content_type="multipart/form-data")
    assert r.status_code == 400
    assert "audio" in r.get_json()["error"]


def test_upload_rejects_unsupported_type(client, tmp_path):
    p = tmp_path / "notes.txt"
    p.write_text("hello")
    r = upload(client, p, name="notes.txt")
    assert r.status_code == 400


def test_upload_queues_job(client, sine_file, stores, scheduler):
    r = upload(client, sine_file, target_lufs="-14", user_id="u1")
    assert r.status_code == 200
    body = r.get_json()
    assert body["status_url"] == f"/status/{body['job_id']}"
    assert body["processing_mode"] == "precise"

    queued = scheduler.tasks[0]
    assert queued.job_id == body["job_id"]
    assert queued.target_lufs == -14.0
    assert not queued.is_premium
    assert stores["store"].exists(upload_key(body["file_id"], "wav"))
    audio = stores["jobs"].get_audio_file(body["file_id"])
    assert audio.original_filename == "tone.wav"
    assert audio.file_size > 0

    status = client.get(body["status_url"]).get_json()
    assert status == {"job_id": body["job_id"], "status": "queued", "progress": 10}


def test_upload_folds_legacy_fast_mode(client, sine_file, scheduler):
    upload(client, sine_file, fast_mode="true")
    upload(client, sine_file, processing_mode="quick")
    upload(client, sine_file, processing_mode="precise", fast_mode="true", premium="on")
    modes = [t.mode for t in scheduler.tasks]
    assert modes == [ProcessingMode.FAST, ProcessingMode.FAST, ProcessingMode.PRECISE]
    assert scheduler.tasks[2].is_premium


def test_upload_rejects_bad_target(client, sine_file, scheduler):
    assert upload(client, sine_file, target_lufs="-40").status_code == 400
    assert upload(client, sine_file, target_lufs="loud").status_code == 400
    assert upload(client, sine_file, processing_mode="turbo").status_code == 400
    assert scheduler.tasks == []


def test_upload_with_preset(client, sine_file, scheduler):
    assert upload(client, sine_file, preset="podcast").status_code == 200
    assert scheduler.tasks[0].target_lufs == -16.0
    assert upload(client, sine_file, preset="nightclub").status_code == 400


def test_upload_when_queue_is_down(tmp_path, stores, sine_file):
    app = create_app({
        'TESTING': True,
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'JOBS': stores['jobs'],
        'STORAGE': stores['store'],
        'PROGRESS': stores['progress'],
        'SCHEDULER': FakeScheduler(fail=True),
    })
    r = upload(app.test_client(), sine_file)
    assert r.status_code == 503


def test_status_unknown_job(client):
    assert client.get("/status/nope").status_code == 404


def test_status_prefers_progress_record(client, sine_file, stores):
    job_id = upload(client, sine_file).get_json()["job_id"]
    stores["progress"].set_progress(job_id, 36, "precise_analyzing")
    body = client.get(f"/status/{job_id}").get_json()
    assert (body["status"], body["progress"]) == ("precise_analyzing", 36)


def test_status_reports_failure(client, sine_file, stores):
    job_id = upload(client, sine_file).get_json()["job_id"]
    job = stores["jobs"].get_job(job_id)
    job.transition(JobStatus.FAILED)
    job.error_message = "loudness analysis failed (exit 1): Invalid data"
    stores["jobs"].update_job(job)
    body = client.get(f"/status/{job_id}").get_json()
    assert body["status"] == "failed"
    assert body["progress"] == 0
    assert body["error"].startswith("loudness analysis failed")


def test_cancel(client, sine_file):
    job_id = upload(client, sine_file).get_json()["job_id"]
    r = client.post(f"/cancel/{job_id}")
    assert r.status_code == 200
    assert r.get_json()["status"] == "cancelled"
    assert client.post(f"/cancel/{job_id}").status_code == 409
    assert client.get(f"/status/{job_id}").get_json()["status"] == "cancelled"
    assert client.post("/cancel/nope").status_code == 404


def test_download(client, sine_file, stores):
    body = upload(client, sine_file).get_json()
    job_id, file_id = body["job_id"], body["file_id"]
    assert client.get(f"/download/{job_id}").status_code == 409

    stores["store"].upload(processed_key(file_id, "mp3"), io.BytesIO(b"ID3-normalized"), "mp3")
    job = stores["jobs"].get_job(job_id)
    job.transition(JobStatus.COMPLETED)
    job.output_format = "mp3"
    stores["jobs"].update_job(job)

    r = client.get(f"/download/{job_id}")
    assert r.status_code == 200
    assert r.data == b"ID3-normalized"
    assert r.mimetype == "audio/mpeg"
    assert "tone_normalized.mp3" in r.headers["Content-Disposition"]
    assert client.get(f"/status/{job_id}").get_json()["download_url"] == f"/download/{job_id}"
