"""AdPirate — Flask JSON/SSE API over the ad-creative pipeline."""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, Generator, Optional

import requests
from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, send_from_directory
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure()

import ad_core
import credentials
import storage
from errors import ProviderError, ValidationError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).parent
UPLOADS_DIR = BASE_DIR / "static" / "uploads"
UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

app = Flask(__name__, static_folder=None)
CORS(app)

credential_store: credentials.CredentialStore = credentials.FileCredentialStore()
object_storage = storage.LocalObjectStorage(UPLOADS_DIR, public_base_url="/static/uploads")

UPLOAD_BUCKETS = {
    "competitor": storage.COMPETITOR_BUCKET,
    "project": storage.PROJECT_BUCKET,
    "ad": storage.AD_BUCKET,
}

# Active SSE queues: run_id -> Queue
_run_queues: Dict[str, queue.Queue] = {}
_run_queues_lock = threading.Lock()


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _get_or_create_queue(run_id: str) -> queue.Queue:
    with _run_queues_lock:
        if run_id not in _run_queues:
            _run_queues[run_id] = queue.Queue(maxsize=500)
        return _run_queues[run_id]


def _cleanup_queue(run_id: str) -> None:
    with _run_queues_lock:
        _run_queues.pop(run_id, None)


def _queue_callback(q: queue.Queue) -> Callable[[Dict], None]:
    def progress_cb(event: Dict) -> None:
        try:
            q.put_nowait(event)
        except queue.Full:
            log.debug("Progress queue full, dropping %s event", event.get("stage"))
    return progress_cb


# ---------------------------------------------------------------------------
# Pipeline thread
# ---------------------------------------------------------------------------

def build_pipeline(
    run_id: str,
    session: credentials.Session,
    config: ad_core.PipelineConfig,
    progress_cb: Callable[[Dict], None],
) -> ad_core.AdPipeline:
    return ad_core.AdPipeline(session, config=config, progress_cb=progress_cb, run_id=run_id)


def _persist_creative(run_id: str, image_url: str) -> Optional[str]:
    """Keep a copy of the creative; provider URLs expire after about an hour."""
    try:
        return storage.persist_creative(image_url, object_storage, f"{run_id}.png")
    except (requests.RequestException, OSError, ProviderError) as exc:
        log.warning("Could not store creative for %s: %s", run_id, exc)
        return None


def _run_pipeline_thread(
    run_id: str,
    session: credentials.Session,
    config: ad_core.PipelineConfig,
    competitor_image: str,
    project: ad_core.ProjectData,
    instructions: str,
) -> None:
    q = _get_or_create_queue(run_id)
    progress_cb = _queue_callback(q)

    log.info("Run started: id=%s", run_id)
    progress_cb({"stage": "pipeline", "status": "started", "message": "Pipeline started…"})

    try:
        pipeline = build_pipeline(run_id, session, config, progress_cb)
        result = pipeline.run(competitor_image, project, instructions)
        stored_url = _persist_creative(run_id, result["image_url"])
        progress_cb({
            "stage": "pipeline",
            "status": "complete",
            "message": "Done!",
            "data": {
                "strategy": result["strategy"],
                "image_url": result["image_url"],
                "stored_url": stored_url,
                "warnings": result["warnings"],
                "analyses": result["analyses"],
            },
        })
    except (ProviderError, ValidationError) as exc:
        log.error("Run failed: id=%s  error=%s", run_id, exc)
        progress_cb({
            "stage": "pipeline",
            "status": "failed",
            "message": str(exc) or "Failed to generate content. Please try again.",
            "data": getattr(exc, "partial", {}),
        })
    except Exception as exc:
        log.error("Run crashed: id=%s  error=%s", run_id, exc, exc_info=True)
        progress_cb({
            "stage": "pipeline",
            "status": "failed",
            "message": "Failed to generate content. Please try again.",
        })
    finally:
        # Signal SSE stream to close
        try:
            q.put_nowait(None)
        except queue.Full:
            log.warning("Progress queue full, stream for %s may not close", run_id)


# ---------------------------------------------------------------------------
# Routes — Session
# ---------------------------------------------------------------------------

@app.post("/api/login")
def api_login():
    body = request.get_json(silent=True) or {}
    try:
        session = credentials.login(credential_store, body.get("api_key") or "")
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"logged_in": True, "api_key": session.masked_key})


@app.post("/api/logout")
def api_logout():
    credentials.logout(credential_store)
    return jsonify({"logged_in": False})


@app.get("/api/session")
def api_session():
    try:
        session = credentials.resolve_session(store=credential_store)
    except ValidationError:
        return jsonify({"logged_in": False})
    return jsonify({"logged_in": True, "api_key": session.masked_key})


# ---------------------------------------------------------------------------
# Routes — Uploads
# ---------------------------------------------------------------------------

@app.post("/api/upload/<kind>")
def api_upload(kind: str):
    bucket = UPLOAD_BUCKETS.get(kind)
    if bucket is None:
        return jsonify({"error": f"kind must be one of: {sorted(UPLOAD_BUCKETS)}"}), 404

    file = request.files.get("file")
    if file is None or not file.filename:
        return jsonify({"error": "file is required"}), 400
    if not (file.mimetype or "").startswith("image/"):
        return jsonify({"error": "Please upload an image file"}), 400

    url = object_storage.upload(bucket, file.read(), file.filename, request.form.get("folder", ""))
    return jsonify({"url": url})


@app.get("/static/uploads/<path:filename>")
def serve_upload(filename: str):
    return send_from_directory(str(UPLOADS_DIR), filename)


# ---------------------------------------------------------------------------
# Routes — Model discovery
# ---------------------------------------------------------------------------

@app.get("/api/models")
def api_models():
    return jsonify({
        "text_models": ad_core.TEXT_MODELS,
        "image_models": ad_core.IMAGE_MODELS,
        "image_sizes": [s.value for s in ad_core.ImageSize],
        "qualities": [q.value for q in ad_core.ImageQuality],
        "pipeline_stages": [
            {"id": s.id, "label": s.label, "policy": s.policy}
            for s in ad_core.PIPELINE_STAGES
        ],
    })


# ---------------------------------------------------------------------------
# Routes — Generation
# ---------------------------------------------------------------------------

def _string_field(body: Dict, key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _inline_uploaded(ref: str) -> str:
    """Swap one of our own upload URLs for a data URI the provider can read."""
    return object_storage.read_as_data_uri(ref) or ref


@app.post("/api/generate")
def api_generate():
    body = request.get_json(silent=True) or {}
    if not isinstance(body, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    try:
        competitor_image = _string_field(body, "competitor_image").strip()
        instructions = _string_field(body, "prompt")
        api_key = _string_field(body, "api_key") or None
        project = ad_core.ProjectData.from_dict(body.get("project"))
        config = ad_core.PipelineConfig.from_settings(body.get("settings"))
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 400

    if not competitor_image:
        return jsonify({"error": "Please upload a competitor image"}), 400
    if project.is_empty:
        return jsonify({"error": "Please provide information about your project/offer"}), 400

    try:
        competitor_image = _inline_uploaded(competitor_image)
        project.images = [_inline_uploaded(ref) for ref in project.images]
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    refs = [competitor_image] + project.images
    if not all(storage.is_image_reference(ref) for ref in refs):
        return jsonify({"error": "Images must be uploaded files, data URIs or http(s) URLs"}), 400

    try:
        session = credentials.resolve_session(api_key, credential_store)
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 401

    run_id = str(uuid.uuid4())[:8]

    # Ensure queue exists before thread starts
    _get_or_create_queue(run_id)

    t = threading.Thread(
        target=_run_pipeline_thread,
        args=(run_id, session, config, competitor_image, project, instructions),
        daemon=True,
    )
    t.start()

    return jsonify({"run_id": run_id})


@app.get("/api/stream/<run_id>")
def api_stream(run_id: str):
    """Server-Sent Events stream for a run."""
    q = _get_or_create_queue(run_id)

    def generate() -> Generator[str, None, None]:
        # Send a heartbeat first so the connection opens
        yield _sse_event({"type": "heartbeat", "run_id": run_id})
        try:
            while True:
                try:
                    event = q.get(timeout=25)
                except queue.Empty:
                    yield _sse_event({"type": "heartbeat"})
                    continue

                if event is None:
                    # Sentinel — pipeline finished
                    yield _sse_event({"type": "done"})
                    break

                yield _sse_event(event)

                # Stop streaming after terminal pipeline events
                if (
                    event.get("stage") == "pipeline"
                    and event.get("status") in ("complete", "failed")
                ):
                    yield _sse_event({"type": "done"})
                    break
        finally:
            _cleanup_queue(run_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  AdPirate API → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
