"""Flask application factory for Media Uploader."""

import os

from flask import Flask

from media_uploader.config import get_package_version, get_settings


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Load configuration
    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")

    # Store settings in app config for easy access
    app.config["SETTINGS"] = settings

    # Register blueprints
    from media_uploader.routes.logs import logs_bp
    from media_uploader.routes.session import session_bp
    from media_uploader.routes.settings import settings_bp
    from media_uploader.routes.upload import upload_bp

    app.register_blueprint(upload_bp, url_prefix="/api/upload")
    app.register_blueprint(session_bp, url_prefix="/api/session")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")

    # Log application startup
    from media_uploader.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"{settings.display_name} started (v{get_package_version()})",
        {"version": get_package_version(), "azcopy_path": settings.azcopy_path},
    )

    return app
