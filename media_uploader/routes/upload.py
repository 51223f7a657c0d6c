"""Upload API routes for media_uploader"""

import json
import threading
import time
from collections import deque
from collections.abc import Generator
from typing import Any

from flask import Blueprint, Response, jsonify, request

from media_uploader.services.errors import CredentialUnavailableError, JobNotFoundError
from media_uploader.services.upload_manager import UploadJob, get_upload_manager
from media_uploader.services.upload_task import UploadRequest

upload_bp = Blueprint("upload", __name__)

# Store for SSE clients per job
_sse_queues: dict[str, list[deque[dict[str, Any]]]] = {}
_sse_lock = threading.Lock()


def send_sse_event(job_id: str, data: dict[str, Any]) -> None:
    """Send an SSE event to all clients listening for a job."""
    with _sse_lock:
        queues = _sse_queues.get(job_id, [])
        for q in queues:
            q.append(data)


def progress_callback(job: UploadJob) -> None:
    """Send progress updates via SSE."""
    send_sse_event(job.job_id, job.to_progress_dict())


@upload_bp.route("/start", methods=["POST"])
def start_upload() -> tuple[Response, int]:
    """Start an upload.

    Request body:
        The upload request (show_name, season, episode, shoot_day, batch,
        unit, source_dirs, files, metadata, is_block) and an optional
        conflict_policy of overwrite, ignore or abort.

    Returns:
        JSON response with the created job
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "No upload request provided"}), 400

    try:
        upload_request = UploadRequest.from_dict(data)
        job = get_upload_manager().start_upload(
            upload_request,
            conflict_policy=data.get("conflict_policy"),
            progress_callback=progress_callback,
            background=True,
        )
    except CredentialUnavailableError as e:
        return jsonify({"error": str(e)}), 409
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"job_id": job.job_id, "status": "started", "job": job.to_dict()}), 202


@upload_bp.route("/progress/<job_id>", methods=["GET"])
def get_progress(job_id: str) -> Response:
    """Stream progress updates for a job via Server-Sent Events.

    Args:
        job_id: The job ID to monitor

    Returns:
        SSE stream of progress updates
    """
    manager = get_upload_manager()

    def generate() -> Generator[str, None, None]:
        # Create a queue for this client
        queue: deque[dict[str, Any]] = deque()
        with _sse_lock:
            if job_id not in _sse_queues:
                _sse_queues[job_id] = []
            _sse_queues[job_id].append(queue)

        try:
            # Send initial state
            job = manager.get_job(job_id)
            if not job:
                yield 'data: {"error": "Job not found"}\n\n'
                return
            yield f"data: {json.dumps(job.to_progress_dict())}\n\n"
            if job.is_terminal:
                return

            # Stream updates
            while True:
                while queue:
                    data = queue.popleft()
                    yield f"data: {json.dumps(data)}\n\n"

                    if data.get("status") in ("completed", "failed", "cancelled"):
                        return

                # Small delay to prevent busy waiting
                time.sleep(0.1)

                job = manager.get_job(job_id)
                if not job:
                    yield 'data: {"error": "Job not found"}\n\n'
                    return

        finally:
            # Clean up queue
            with _sse_lock:
                if job_id in _sse_queues and queue in _sse_queues[job_id]:
                    _sse_queues[job_id].remove(queue)
                    if not _sse_queues[job_id]:
                        del _sse_queues[job_id]

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@upload_bp.route("/status/<job_id>", methods=["GET"])
def get_status(job_id: str) -> tuple[Response, int]:
    """Get current status of a job (non-streaming)."""
    job = get_upload_manager().get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404

    return jsonify(job.to_dict()), 200


@upload_bp.route("/active", methods=["GET"])
def get_active_jobs() -> tuple[Response, int]:
    """List jobs that are still checking, removing or uploading."""
    jobs = sorted(get_upload_manager().get_active_jobs(), key=lambda j: j.created_at)
    return jsonify({"jobs": [j.to_dict() for j in jobs], "count": len(jobs)}), 200


@upload_bp.route("/cancel/<job_id>", methods=["POST"])
def cancel_upload(job_id: str) -> tuple[Response, int]:
    """Cancel an upload job."""
    manager = get_upload_manager()

    job = manager.get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    if not manager.cancel_job(job_id):
        return jsonify({"error": f"Job is already {job.status.value}"}), 409

    return jsonify({"success": True, "job_id": job_id, "job": job.to_dict()}), 200


@upload_bp.route("/retry/<job_id>", methods=["POST"])
def retry_job(job_id: str) -> tuple[Response, int]:
    """Restart a failed or cancelled upload from its original request."""
    try:
        job = get_upload_manager().retry_job(
            job_id, progress_callback=progress_callback, background=True
        )
    except JobNotFoundError:
        return jsonify({"error": "Job not found"}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 409

    return jsonify({"job_id": job.job_id, "status": "restarted", "attempt": job.attempt}), 202


@upload_bp.route("/retry/<job_id>/<unit_id>", methods=["POST"])
def retry_unit(job_id: str, unit_id: str) -> tuple[Response, int]:
    """Retry the data upload of one folder.

    Falls back to restarting the whole job when its metadata upload did not
    succeed.
    """
    try:
        task = get_upload_manager().retry_unit(
            job_id, unit_id, progress_callback=progress_callback, background=True
        )
    except JobNotFoundError:
        return jsonify({"error": "Job or unit not found"}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 409

    if task is None:
        return jsonify({"job_id": job_id, "unit_id": unit_id, "status": "job_restarted"}), 202
    return jsonify(
        {"job_id": job_id, "unit_id": unit_id, "status": "restarted", "task": task.to_dict()}
    ), 202
