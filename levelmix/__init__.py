import logging
import os

from flask import Flask, jsonify

from . import settings

_logging_configured = False


def configure_logging(level=None):
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=level or settings.LOG_LEVEL,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    _logging_configured = True


def create_app(config=None):
    """Create and configure the Flask application.

    Collaborators (job store, audio store, progress store, scheduler) are
    built from settings unless ``config`` already provides them under the
    ``JOBS``, ``STORAGE``, ``PROGRESS`` and ``SCHEDULER`` keys.
    """
    configure_logging()
    app = Flask(__name__)
    app.config["UPLOAD_FOLDER"] = os.path.join(settings.WORK_DIR, "uploads")
    app.config["MAX_CONTENT_LENGTH"] = settings.MAX_FILE_MB * 1024 * 1024
    app.config.update(config or {})
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    from .services import ffmpeg
    from .services.gate import default_capacity

    @app.get("/healthz")
    def healthz():
        return jsonify({
            "status": "ok",
            "ffmpeg": ffmpeg.ffmpeg_version() is not None,
            "ffprobe": ffmpeg.ffprobe_ok(),
            "ffmpeg_slots": default_capacity(),
        })

    from .routes import bp
    app.register_blueprint(bp)

    return app


__all__ = ["create_app", "configure_logging"]
