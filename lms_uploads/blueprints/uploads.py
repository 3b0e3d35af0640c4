"""
File upload REST endpoints.

Thin HTTP glue: form and query parameters are validated with marshmallow
schemas, werkzeug ``FileStorage`` parts are turned into ``FileUpload`` triples
and every operation is delegated to the ``FileUploadService`` stored in
``current_app.extensions``. Errors propagate to the application error handlers.

Routes (prefix ``/api/v1/uploads``):
- POST   /single           one file in the ``file`` field
- POST   /multiple         up to ten files in the ``files`` field
- POST   /named            files grouped by named field
- DELETE /files            delete by ``fileId`` (identifier or URL)
- GET    /files/info       file metadata
- GET    /files/signed-url time-limited URL
- GET    /files/exists     existence check
- GET    /config           provider configuration
- GET    /health           provider health
"""

import mimetypes
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from flask import Blueprint, current_app, jsonify, request
from marshmallow import EXCLUDE, Schema, fields, validate
from marshmallow import ValidationError as MarshmallowValidationError
from werkzeug.datastructures import FileStorage

from lms_uploads.config.settings import STORAGE_TYPES
from lms_uploads.services.file_upload_service import FileUploadService
from lms_uploads.storage.base import FileUpload, UploadOptions
from lms_uploads.utils.exceptions import ValidationError

logger = structlog.get_logger(__name__)

uploads_bp = Blueprint('uploads', __name__, url_prefix='/api/v1/uploads')

SERVICE_EXTENSION_KEY = 'file_upload_service'


class UploadFormSchema(Schema):
    """Form options accepted by the upload endpoints."""

    class Meta:
        unknown = EXCLUDE

    storageType = fields.String(
        load_default=None,
        allow_none=True,
        validate=validate.OneOf(STORAGE_TYPES),
        metadata={'description': 'Storage provider, defaults to the configured default'}
    )
    uploadType = fields.String(
        load_default='general',
        validate=validate.Regexp(r'^[A-Za-z0-9_-]{1,64}$'),
        metadata={'description': 'Upload category used as the storage namespace'}
    )
    optimizeImage = fields.Boolean(load_default=True)
    generateThumbnail = fields.Boolean(load_default=True)
    entityId = fields.String(
        load_default=None,
        validate=validate.Length(min=1, max=128),
        metadata={'description': 'Identifier of the entity the file belongs to'}
    )


class FileQuerySchema(Schema):
    class Meta:
        unknown = EXCLUDE

    fileId = fields.String(required=True, validate=validate.Length(min=1, max=2048))
    storageType = fields.String(
        load_default=None,
        allow_none=True,
        validate=validate.OneOf(STORAGE_TYPES)
    )


class SignedUrlQuerySchema(FileQuerySchema):
    expiresIn = fields.Integer(load_default=3600, validate=validate.Range(min=1, max=604800))
    operation = fields.String(
        load_default='GET',
        validate=validate.OneOf(['GET', 'PUT', 'DELETE'])
    )
    downloadName = fields.String(load_default=None, allow_none=True)


class ConfigQuerySchema(Schema):
    class Meta:
        unknown = EXCLUDE

    storageType = fields.String(
        load_default=None,
        allow_none=True,
        validate=validate.OneOf(STORAGE_TYPES)
    )


def get_upload_service() -> FileUploadService:
    return current_app.extensions[SERVICE_EXTENSION_KEY]


def format_api_response(data: Any = None, message: str = "Operation completed successfully",
                        status_code: int = 200):
    """Format standardized API response."""
    return jsonify({
        'success': status_code < 400,
        'status': 'success' if status_code < 400 else 'error',
        'message': message,
        'data': data,
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }), status_code


def load_params(schema: Schema, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate request parameters with a marshmallow schema.

    Raises:
        ValidationError: With marshmallow's per-field messages
    """
    # Browsers submit empty strings for untouched form inputs
    data = {key: value for key, value in data.items() if value != ''}
    try:
        return schema.load(data)
    except MarshmallowValidationError as e:
        logger.warning("Request validation failed", endpoint=request.endpoint, validation_errors=e.messages)
        raise ValidationError("Request validation failed", field_errors=e.messages) from e


def to_file_upload(part: FileStorage) -> FileUpload:
    """Read a multipart part into memory."""
    filename = part.filename or ''
    mime_type = part.mimetype or mimetypes.guess_type(filename)[0] or 'application/octet-stream'
    return FileUpload(content=part.read(), original_name=filename, mime_type=mime_type)


def build_options(form: Dict[str, Any], upload_type: Optional[str] = None) -> UploadOptions:
    metadata = {}
    if form.get('entityId'):
        metadata['entity-id'] = form['entityId']

    return UploadOptions(
        storage_type=form.get('storageType'),
        upload_type=upload_type or form.get('uploadType', 'general'),
        optimize_image=form.get('optimizeImage', True),
        generate_thumbnail=form.get('generateThumbnail', True),
        metadata=metadata,
    )


def _parts(field_name: str) -> List[FileStorage]:
    return [part for part in request.files.getlist(field_name) if part and part.filename]


def _summary(results) -> Dict[str, int]:
    succeeded = sum(1 for result in results if result.success)
    return {'total': len(results), 'successful': succeeded, 'failed': len(results) - succeeded}


@uploads_bp.route('/single', methods=['POST'])
def upload_single():
    """
    Upload one file.

    Form Data:
        file: File to upload
        storageType, uploadType, optimizeImage, generateThumbnail, entityId
    """
    form = load_params(UploadFormSchema(), request.form.to_dict())
    service = get_upload_service()
    field_name = service.settings.upload_types['single'].field_name

    parts = _parts(field_name)
    if not parts:
        raise ValidationError("No file uploaded", field_errors={field_name: ['File is required']})

    result = service.upload_single(to_file_upload(parts[0]), build_options(form))
    return format_api_response(result.to_dict(), "File uploaded successfully", 201)


@uploads_bp.route('/multiple', methods=['POST'])
def upload_multiple():
    form = load_params(UploadFormSchema(), request.form.to_dict())
    service = get_upload_service()
    field_name = service.settings.upload_types['multiple'].field_name

    parts = _parts(field_name)
    if not parts:
        raise ValidationError("No files uploaded", field_errors={field_name: ['Files are required']})

    results = service.upload_multiple([to_file_upload(part) for part in parts], build_options(form))
    summary = _summary(results)
    return format_api_response(
        {'results': [result.to_dict() for result in results], 'summary': summary},
        f"Uploaded {summary['successful']} files successfully"
    )


@uploads_bp.route('/named', methods=['POST'])
def upload_named():
    """
    Upload files grouped by named field (``profile``, ``resume``...).

    Each field's results are reported independently.
    """
    form = load_params(UploadFormSchema(), request.form.to_dict())
    service = get_upload_service()

    files_by_field = {
        field_name: [to_file_upload(part) for part in _parts(field_name)]
        for field_name in request.files.keys()
    }
    files_by_field = {name: uploads for name, uploads in files_by_field.items() if uploads}
    if not files_by_field:
        raise ValidationError("No files uploaded")

    results = service.upload_named(files_by_field, build_options(form))
    return format_api_response(
        {name: [result.to_dict() for result in field_results] for name, field_results in results.items()},
        "Files uploaded successfully"
    )


@uploads_bp.route('/files', methods=['DELETE'])
def delete_file():
    params = load_params(FileQuerySchema(), request.args.to_dict())
    deleted = get_upload_service().delete_file(params['fileId'], params['storageType'])
    message = "File deleted successfully" if deleted else "File did not exist"
    return format_api_response({'deleted': deleted}, message)


@uploads_bp.route('/files/info', methods=['GET'])
def get_file_info():
    params = load_params(FileQuerySchema(), request.args.to_dict())
    info = get_upload_service().get_file_info(params['fileId'], params['storageType'])
    return format_api_response(info.to_dict(), "File information retrieved successfully")


@uploads_bp.route('/files/signed-url', methods=['GET'])
def generate_signed_url():
    params = load_params(SignedUrlQuerySchema(), request.args.to_dict())
    url = get_upload_service().generate_signed_url(
        params['fileId'],
        params['storageType'],
        expires_in=params['expiresIn'],
        operation=params['operation'],
        download_name=params['downloadName'],
    )
    return format_api_response(
        {'signedUrl': url, 'expiresIn': params['expiresIn']},
        "Signed URL generated successfully"
    )


@uploads_bp.route('/files/exists', methods=['GET'])
def file_exists():
    params = load_params(FileQuerySchema(), request.args.to_dict())
    exists = get_upload_service().file_exists(params['fileId'], params['storageType'])
    return format_api_response({'exists': exists}, "File existence checked")


@uploads_bp.route('/config', methods=['GET'])
def get_upload_config():
    params = load_params(ConfigQuerySchema(), request.args.to_dict())
    service = get_upload_service()
    return format_api_response({
        'config': service.get_storage_config(params['storageType']),
        'availableServices': service.get_available_storage_services(),
        'defaultStorage': service.default_storage,
    }, "Upload configuration retrieved successfully")


@uploads_bp.route('/health', methods=['GET'])
def health_check():
    health = get_upload_service().health_check()
    status_code = 200 if health['status'] == 'healthy' else 503
    return format_api_response(health, "File upload service health", status_code)
