"""Logs API routes: event queries and per-job summaries."""

from flask import Blueprint, Response, jsonify, request

from media_uploader.services.log_service import LogQuery, get_log_service

logs_bp = Blueprint("logs", __name__)

MAX_LIMIT = 1000


def _int_arg(name: str, default: int, low: int, high: int | None = None) -> int:
    try:
        value = int(request.args.get(name, default))
    except ValueError:
        return default
    value = max(low, value)
    return min(high, value) if high is not None else value


@logs_bp.route("/entries", methods=["GET"])
def get_log_entries() -> tuple[Response, int]:
    """Query events, newest first.

    Query params:
        level, category: exact filters
        search: substring of message or event name
        job_id, task_id, unit_id: events about one job, task or unit
        offset, limit: paging (limit capped at 1000)
    """
    task_id = request.args.get("task_id")
    if task_id is not None and not task_id.isdigit():
        return jsonify({"error": "task_id must be an integer"}), 400

    query = LogQuery(
        level=request.args.get("level"),
        category=request.args.get("category"),
        search=request.args.get("search"),
        job_id=request.args.get("job_id"),
        task_id=int(task_id) if task_id is not None else None,
        unit_id=request.args.get("unit_id"),
        offset=_int_arg("offset", 0, 0),
        limit=_int_arg("limit", 100, 1, MAX_LIMIT),
    )
    return jsonify(get_log_service().read_log_entries(query)), 200


@logs_bp.route("/jobs/<job_id>", methods=["GET"])
def get_job_summary(job_id: str) -> tuple[Response, int]:
    """Recorded outcome of every finished attempt of a job."""
    attempts = get_log_service().read_job_summary(job_id)
    if not attempts:
        return jsonify({"error": "No summary recorded for this job"}), 404
    return jsonify({"job_id": job_id, "attempts": attempts}), 200
