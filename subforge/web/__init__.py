"""Flask application factory for the SubForge web API."""

import tempfile
from pathlib import Path

from flask import Flask, jsonify

from subforge.config import Settings, load_settings
from subforge.renderers.local import LocalRenderService


def create_app(
    work_dir: Path | None = None,
    settings: Settings | None = None,
    storage=None,
    transcriber=None,
    renderer: LocalRenderService | None = None,
) -> Flask:
    app = Flask(__name__)
    settings = settings or load_settings()
    work_dir = work_dir or Path(tempfile.mkdtemp(prefix="subforge_"))

    app.config["WORK_DIR"] = work_dir
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_mb * 1024 * 1024
    app.extensions["subforge"] = {
        "settings": settings,
        "storage": storage,
        "transcriber": transcriber,
        "renderer": renderer or LocalRenderService(
            work_dir=Path(work_dir) / "engine",
            font_path=settings.font_path,
            ffmpeg=settings.ffmpeg_path,
            ffprobe=settings.ffprobe_path,
        ),
    }

    from subforge.web.routes import bp
    app.register_blueprint(bp)

    @app.errorhandler(413)
    def request_entity_too_large(error):
        return jsonify({"error": "File too large"}), 413

    return app
