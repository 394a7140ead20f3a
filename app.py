"""
Manifest Mapper — HTTP command surface.

Thin JSON API over ``ImportPipeline`` for the presentation layer: upload a
manifest, poll a batch's status, read its proposal, stage log and audits,
and issue ``confirm`` / ``proceed`` / ``rerun`` / ``stop`` commands.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, request
from werkzeug.utils import secure_filename

from manifest_mapper.config import PipelineConfig
from manifest_mapper.exceptions import (
    IngestionError,
    InvalidTransitionError,
    MappingValidationError,
    NotFoundError,
)
from manifest_mapper.pipeline import ImportPipeline
from manifest_mapper.sources import ManifestReader

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"csv", "xlsx", "xlsm"}


# -------------------------------------------------------
# Helpers
# -------------------------------------------------------

def allowed_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def _error(message: str, status: int, **extra: Any):
    body: Dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    return body, status


def _ok(**payload: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    body.update(payload)
    return body


# -------------------------------------------------------
# App factory
# -------------------------------------------------------

def create_app(pipeline: Optional[ImportPipeline] = None) -> Flask:
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024
    app.config["UPLOAD_FOLDER"] = Path(os.environ.get("MANIFEST_MAPPER_UPLOADS", "/tmp"))

    if pipeline is None:
        pipeline = ImportPipeline(
            PipelineConfig(
                database_url=os.environ.get(
                    "MANIFEST_MAPPER_DATABASE_URL", "sqlite+pysqlite:///:memory:"
                ),
                log_level=logging.INFO,
            )
        )
    app.config["PIPELINE"] = pipeline

    # ---------------------------------------------------
    # Error mapping
    # ---------------------------------------------------

    @app.errorhandler(NotFoundError)
    def _not_found(exc: NotFoundError):
        return _error(str(exc), 404)

    @app.errorhandler(InvalidTransitionError)
    def _conflict(exc: InvalidTransitionError):
        return _error(str(exc), 409)

    @app.errorhandler(MappingValidationError)
    def _invalid_mapping(exc: MappingValidationError):
        return _error("Invalid mapping", 400, errors=exc.errors)

    @app.errorhandler(IngestionError)
    def _bad_source(exc: IngestionError):
        return _error(str(exc), 400)

    # ---------------------------------------------------
    # Batches
    # ---------------------------------------------------

    @app.route("/api/batches", methods=["POST"])
    def create_batch():
        if "file" in request.files:
            file = request.files["file"]
            if file.filename == "":
                return _error("No file selected", 400)
            if not allowed_file(file.filename):
                return _error("Invalid file type", 400)

            filename = secure_filename(file.filename)
            filepath = app.config["UPLOAD_FOLDER"] / f"{uuid.uuid4().hex}_{filename}"
            file.save(filepath)
            try:
                rows = ManifestReader.read_path(filepath)
            finally:
                filepath.unlink(missing_ok=True)
            batch_id = request.form.get("batch_id") or uuid.uuid4().hex
            auto_run = request.form.get("auto_run", "").lower() in ("1", "true", "yes")
        else:
            payload = request.get_json(silent=True)
            if not isinstance(payload, dict):
                return _error("Expected a JSON body or a file upload", 400)
            if "records" in payload:
                rows = ManifestReader.read_records(payload["records"])
            else:
                rows = payload.get("rows") or []
            batch_id = payload.get("batch_id") or uuid.uuid4().hex
            auto_run = bool(payload.get("auto_run", False))

        status = pipeline.ingest(batch_id, rows)
        if auto_run:
            status = pipeline.run(batch_id)
        logger.info("Batch %s created with %d rows", batch_id, status.row_count)
        return _ok(batch=status.to_dict()), 201

    @app.route("/api/batches/<batch_id>", methods=["GET"])
    def get_batch(batch_id: str):
        return _ok(batch=pipeline.status(batch_id).to_dict())

    @app.route("/api/batches/<batch_id>/proceed", methods=["POST"])
    def proceed(batch_id: str):
        return _ok(batch=pipeline.proceed(batch_id).to_dict())

    @app.route("/api/batches/<batch_id>/run", methods=["POST"])
    def run(batch_id: str):
        return _ok(batch=pipeline.run(batch_id).to_dict())

    @app.route("/api/batches/<batch_id>/confirm", methods=["POST"])
    def confirm(batch_id: str):
        payload = request.get_json(silent=True) or {}
        mapping = payload.get("mapping")
        if not isinstance(mapping, dict) or not mapping:
            return _error("Body must contain a non-empty 'mapping' object", 400)
        return _ok(batch=pipeline.confirm(batch_id, mapping).to_dict())

    @app.route("/api/batches/<batch_id>/rerun", methods=["POST"])
    def rerun(batch_id: str):
        payload = request.get_json(silent=True) or {}
        stage = payload.get("stage")
        try:
            status = pipeline.rerun(batch_id, stage)
        except ValueError:
            return _error(f"Unknown stage {stage!r}", 400)
        return _ok(batch=status.to_dict())

    @app.route("/api/batches/<batch_id>/stop", methods=["POST"])
    def stop(batch_id: str):
        return _ok(batch=pipeline.stop(batch_id).to_dict())

    @app.route("/api/batches/<batch_id>/resume", methods=["POST"])
    def resume(batch_id: str):
        return _ok(batch=pipeline.resume(batch_id).to_dict())

    @app.route("/api/batches/<batch_id>/acknowledge", methods=["POST"])
    def acknowledge(batch_id: str):
        return _ok(batch=pipeline.acknowledge_review(batch_id).to_dict())

    @app.route("/api/batches/<batch_id>/logs", methods=["GET"])
    def stage_log(batch_id: str):
        return _ok(logs=[run.to_dict() for run in pipeline.stage_log(batch_id)])

    @app.route("/api/batches/<batch_id>/audits", methods=["GET"])
    def audits(batch_id: str):
        phase = request.args.get("phase", "import")
        pipeline.status(batch_id)
        return _ok(audits=[r.to_dict() for r in pipeline.audit_results(batch_id, phase)])

    @app.route("/api/batches/<batch_id>/improvements", methods=["GET"])
    def improvements(batch_id: str):
        pipeline.status(batch_id)
        return _ok(improvements=[r.to_dict() for r in pipeline.improvements(batch_id)])

    @app.route("/api/containers/<container_number>", methods=["GET"])
    def container(container_number: str):
        return _ok(record=pipeline.persister.load_record(container_number).to_dict())

    # ---------------------------------------------------
    # Dictionary and health
    # ---------------------------------------------------

    @app.route("/api/dictionary", methods=["GET"])
    def dictionary():
        entries = pipeline.dictionary.all_entries()
        return _ok(size=len(entries), entries=[e.to_dict() for e in entries])

    @app.route("/api/health", methods=["GET"])
    def api_health():
        return {
            "status": "online",
            "version": "1.0.0",
            "dictionary_entries": pipeline.dictionary.size,
        }, 200

    return app


if __name__ == "__main__":
    print("=" * 60)
    print("Manifest Mapper API")
    print("http://localhost:5000")
    print("=" * 60)

    create_app().run(host="0.0.0.0", port=5000, debug=True)
