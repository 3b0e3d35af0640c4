"""
Flask application factory for the upload service.

Wires configuration, structured logging, error handlers, the upload
orchestrator and the upload blueprint. The orchestrator is built once per
application and stored in ``app.extensions['file_upload_service']``.
"""

import os
from typing import Optional

import structlog
from flask import Flask, send_from_directory

from lms_uploads.blueprints.uploads import SERVICE_EXTENSION_KEY, uploads_bp
from lms_uploads.config.settings import UploadSettings, get_config, get_upload_settings
from lms_uploads.monitoring.logging import configure_logging, init_request_logging
from lms_uploads.monitoring.metrics import metrics_response
from lms_uploads.services.file_upload_service import FileUploadService, create_file_upload_service
from lms_uploads.utils.exceptions import register_error_handlers

logger = structlog.get_logger(__name__)


def create_app(
    config_name: Optional[str] = None,
    upload_service: Optional[FileUploadService] = None,
    **config_overrides
) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config_name: ``development``, ``testing`` or ``production``
        upload_service: Pre-built orchestrator, mainly for tests
        **config_overrides: Flask configuration overrides

    Returns:
        Configured Flask application
    """
    app = Flask(__name__.split('.')[0])
    app.config.from_object(get_config(config_name))
    app.config.update(config_overrides)

    configure_logging(app.config['LOG_LEVEL'], app.config['LOG_FORMAT'])
    init_request_logging(app)
    register_error_handlers(app)

    if upload_service is None:
        settings: UploadSettings = app.config.get('UPLOAD_SETTINGS') or get_upload_settings()
        upload_service = create_file_upload_service(settings)
        upload_service.create_upload_directories()
    app.extensions[SERVICE_EXTENSION_KEY] = upload_service

    app.register_blueprint(uploads_bp)
    _register_local_file_route(app, upload_service)

    @app.route('/metrics', methods=['GET'])
    def prometheus_metrics():
        return metrics_response()

    logger.info(
        "Application created",
        config=config_name or app.config.get('FLASK_ENV'),
        default_storage=upload_service.default_storage
    )
    return app


def _register_local_file_route(app: Flask, upload_service: FileUploadService) -> None:
    """Serve files stored by the local provider under their ``/uploads`` URLs."""
    local = upload_service.settings.local

    @app.route(f"{local.url_prefix}/<path:filename>", methods=['GET'])
    def serve_local_upload(filename: str):
        return send_from_directory(os.path.abspath(local.upload_path), filename)
