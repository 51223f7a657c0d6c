"""Settings API routes for media_uploader"""

from typing import Any

from flask import Blueprint, Response, jsonify, request

from media_uploader.config import CONFLICT_POLICIES, get_package_version, get_settings
from media_uploader.services.errors import ToolUnavailableError
from media_uploader.services.log_service import get_log_service
from media_uploader.services.process_runner import check_executable

settings_bp = Blueprint("settings", __name__)

ALLOWED_KEYS = {
    "azcopy_path",
    "max_workers",
    "settling_delay_seconds",
    "conflict_policy",
    "metadata_directory",
    "log_directory",
    "folder_overrides",
    "display_name",
}


def _validate(data: dict[str, Any]) -> str | None:
    """Return an error message for invalid values, or None."""
    if "conflict_policy" in data and data["conflict_policy"] not in CONFLICT_POLICIES:
        return f"conflict_policy must be one of {', '.join(CONFLICT_POLICIES)}"
    if "max_workers" in data:
        value = data["max_workers"]
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            return "max_workers must be a positive integer"
    if "settling_delay_seconds" in data:
        value = data["settling_delay_seconds"]
        if not isinstance(value, int | float) or isinstance(value, bool) or value < 0:
            return "settling_delay_seconds must be a non-negative number"
    if "folder_overrides" in data and not isinstance(data["folder_overrides"], dict):
        return "folder_overrides must be an object"
    return None


@settings_bp.route("", methods=["GET"])
def get_all_settings() -> tuple[Response, int]:
    """Get all current settings.

    Returns:
        JSON response with all settings
    """
    settings = get_settings()
    return jsonify(settings.all()), 200


@settings_bp.route("", methods=["PUT"])
def update_settings() -> tuple[Response, int]:
    """Update settings.

    Worker count, settling delay and tool path are read when the upload
    manager starts, so changes to them apply after a restart.

    Request body:
        JSON object with settings to update

    Returns:
        JSON response with updated settings
    """
    if not request.is_json:
        return jsonify({"error": "JSON body required"}), 400

    data = request.get_json()
    if not data:
        return jsonify({"error": "Empty body"}), 400

    filtered_data = {k: v for k, v in data.items() if k in ALLOWED_KEYS}
    if not filtered_data:
        return jsonify({"error": "No valid settings provided"}), 400

    error = _validate(filtered_data)
    if error:
        return jsonify({"error": error}), 400

    settings = get_settings()
    settings.update(filtered_data)

    log = get_log_service()
    log.info(
        "settings",
        "settings_updated",
        f"Updated settings: {', '.join(filtered_data.keys())}",
        {"changed_keys": list(filtered_data.keys())},
    )

    return jsonify(settings.all()), 200


@settings_bp.route("/validate", methods=["POST"])
def validate_tool() -> tuple[Response, int]:
    """Check that the configured (or provided) AzCopy executable can be launched.

    Request body (optional):
        azcopy_path: Executable to test instead of the configured one
    """
    settings = get_settings()
    data = request.get_json(silent=True) or {}
    path = str(data.get("azcopy_path") or settings.azcopy_path)

    log = get_log_service()
    try:
        check_executable(path)
    except ToolUnavailableError as e:
        log.warning(
            "settings",
            "tool_check",
            str(e),
            {"azcopy_path": path, "success": False},
        )
        return jsonify({"success": False, "azcopy_path": path, "error": str(e)}), 200

    log.info(
        "settings",
        "tool_check",
        f"AzCopy available at {path}",
        {"azcopy_path": path, "success": True},
    )
    return jsonify({"success": True, "azcopy_path": path}), 200


@settings_bp.route("/version", methods=["GET"])
def get_version() -> tuple[Response, int]:
    """Get the application version."""
    return jsonify({"version": get_package_version()}), 200
