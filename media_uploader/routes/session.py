"""Session API routes: credentials handed in by the authentication layer."""

from flask import Blueprint, Response, jsonify, request

from media_uploader.services.upload_manager import get_upload_manager

session_bp = Blueprint("session", __name__)


@session_bp.route("", methods=["GET"])
def get_session() -> tuple[Response, int]:
    """Describe the session without revealing credentials."""
    session = get_upload_manager().session
    return jsonify(
        {
            "user_id": session.user_id,
            "azcopy_path": session.tool_path,
            "shows": session.shows(),
            "closed": session.closed,
        }
    ), 200


@session_bp.route("/credentials/<show_name>", methods=["PUT"])
def put_credential(show_name: str) -> tuple[Response, int]:
    """Store the SAS URL used for uploads to a show.

    Request body:
        credential: SAS URL of the show's container
        user_id: Optional id of the logged-in user
    """
    data = request.get_json(silent=True) or {}
    credential = data.get("credential")
    if not credential or not isinstance(credential, str):
        return jsonify({"error": "credential is required"}), 400

    session = get_upload_manager().session
    if data.get("user_id"):
        session.user_id = str(data["user_id"])
    try:
        session.set_credential(show_name, credential)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"success": True, "show_name": show_name}), 200


@session_bp.route("", methods=["DELETE"])
def close_session() -> tuple[Response, int]:
    """Forget all credentials (logout)."""
    get_upload_manager().session.close()
    return jsonify({"success": True}), 200
