"""
Exception hierarchy and Flask error handlers for the upload service.

All upload errors derive from ``BaseApplicationError``. Each subclass fixes its
error code, category and HTTP status as class attributes, so request handlers,
batch uploads (which record a failed entry instead of raising) and the Flask
error handlers read the same fields.

Errors pick up the correlation id bound by the request logging hooks when one
exists, log themselves through structlog at a level derived from their category
and increment ``lms_uploads_errors_total``.
"""

import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from flask import Flask, current_app, has_app_context, has_request_context, jsonify, request
from prometheus_client import Counter
from werkzeug.exceptions import HTTPException

errors_total = Counter(
    'lms_uploads_errors_total',
    'Upload service errors by code and category',
    ['code', 'category']
)

logger = structlog.get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "An internal error occurred"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    STORAGE = "storage"
    NOT_FOUND = "not_found"
    SYSTEM = "system"
    UNKNOWN = "unknown"


_LOG_LEVELS = {
    ErrorCategory.VALIDATION: 'info',
    ErrorCategory.NOT_FOUND: 'info',
    ErrorCategory.CONFIGURATION: 'error',
    ErrorCategory.STORAGE: 'error',
    ErrorCategory.SYSTEM: 'critical',
    ErrorCategory.UNKNOWN: 'warning',
}


def _current_correlation_id() -> str:
    return structlog.contextvars.get_contextvars().get('correlation_id') or str(uuid4())


class BaseApplicationError(Exception):
    """
    Root of the upload error hierarchy.

    Attributes:
        message: Human readable description
        code: Stable machine readable code, e.g. ``FILE_TOO_LARGE``
        category: ``ErrorCategory`` used for logging and the response envelope
        http_status: Status returned by the Flask error handlers
        details: Extra context included in the envelope for user-facing errors
        user_friendly: When False the envelope replaces ``message`` with a
            generic text and omits ``details`` outside debug mode
        recoverable: Whether retrying the same request may succeed
    """

    default_code: Optional[str] = None
    category = ErrorCategory.UNKNOWN
    http_status = 500
    user_friendly = True
    recoverable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code or type(self).__name__
        self.details = dict(details or {})
        if http_status is not None:
            self.http_status = http_status
        self.correlation_id = correlation_id or _current_correlation_id()
        self.timestamp = datetime.now(timezone.utc).isoformat()

        log = getattr(logger, _LOG_LEVELS[self.category])
        log(
            self.message,
            error_code=self.code,
            error_category=self.category.value,
            http_status=self.http_status,
            path=request.path if has_request_context() else None,
        )
        errors_total.labels(code=self.code, category=self.category.value).inc()

    def to_dict(self) -> Dict[str, Any]:
        """Render the JSON error envelope."""
        envelope = {
            'error': True,
            'message': self.message if self.user_friendly else INTERNAL_ERROR_MESSAGE,
            'code': self.code,
            'category': self.category.value,
            'correlation_id': self.correlation_id,
            'timestamp': self.timestamp,
            'recoverable': self.recoverable,
        }
        if self.user_friendly or (has_app_context() and current_app.debug):
            envelope['details'] = self.details
        return envelope


class ValidationError(BaseApplicationError):
    """Rejected input. Raised before any storage provider is called."""

    category = ErrorCategory.VALIDATION
    http_status = 400

    def __init__(
        self,
        message: str = "Validation failed",
        field_errors: Optional[Dict[str, List[str]]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.field_errors = field_errors or {}
        if self.field_errors:
            self.details['field_errors'] = self.field_errors


class FileValidationError(ValidationError):
    """A single uploaded file failed a size, name or type check."""

    def __init__(
        self,
        message: str = "File validation failed",
        filename: Optional[str] = None,
        file_size: Optional[int] = None,
        content_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        for key, value in (('filename', filename), ('file_size', file_size), ('content_type', content_type)):
            if value is not None:
                self.details[key] = value


class FileTooLargeError(FileValidationError):
    default_code = 'FILE_TOO_LARGE'


class FileTooSmallError(FileValidationError):
    default_code = 'FILE_TOO_SMALL'


class InvalidFilenameError(FileValidationError):
    default_code = 'INVALID_FILENAME'


class UnsupportedFileTypeError(FileValidationError):
    default_code = 'UNSUPPORTED_FILE_TYPE'


class UploadContractError(ValidationError):
    """Batch size or named-field count limits were exceeded."""

    def __init__(
        self,
        message: str = "Upload contract violated",
        max_count: Optional[int] = None,
        file_count: Optional[int] = None,
        field: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        for key, value in (('max_count', max_count), ('file_count', file_count), ('field', field)):
            if value is not None:
                self.details[key] = value


class TooManyFilesError(UploadContractError):
    default_code = 'TOO_MANY_FILES'


class FieldCountExceededError(UploadContractError):
    default_code = 'FIELD_COUNT_EXCEEDED'


class ConfigurationError(BaseApplicationError):
    category = ErrorCategory.CONFIGURATION


class ProviderNotConfiguredError(ConfigurationError):
    """
    The requested storage provider is unknown or its configuration is incomplete.

    Unknown names are a client error and are raised with ``http_status=400``.
    """

    default_code = 'PROVIDER_NOT_CONFIGURED'

    def __init__(
        self,
        message: str = "Storage provider is not configured",
        storage_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        if storage_type:
            self.details['storage_type'] = storage_type


class StorageOperationError(BaseApplicationError):
    """
    A backend call failed.

    Filesystem, boto3 and Cloudinary exceptions are wrapped in this type and
    chained with ``raise ... from``; SDK exception classes do not leave the
    providers. The message is internal and hidden from API clients.
    """

    category = ErrorCategory.STORAGE
    user_friendly = False
    recoverable = True

    def __init__(
        self,
        message: str = "Storage operation failed",
        operation: Optional[str] = None,
        storage_type: Optional[str] = None,
        identifier: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        for key, value in (('operation', operation), ('storage_type', storage_type), ('identifier', identifier)):
            if value:
                self.details[key] = value


class UploadFailedError(StorageOperationError):
    default_code = 'UPLOAD_FAILED'


class DeleteFailedError(StorageOperationError):
    default_code = 'DELETE_FAILED'


class StoredFileNotFoundError(StorageOperationError):
    default_code = 'FILE_NOT_FOUND'
    category = ErrorCategory.NOT_FOUND
    http_status = 404
    user_friendly = True
    recoverable = False

    def __init__(self, message: str = "File not found", **kwargs):
        super().__init__(message, **kwargs)


class SystemError(BaseApplicationError):
    """Unexpected failure outside the upload error hierarchy."""

    category = ErrorCategory.SYSTEM
    user_friendly = False


def format_error_response(error: Exception, include_traceback: bool = False) -> Dict[str, Any]:
    """
    Build the error envelope for any exception.

    Exceptions outside the hierarchy get a generic envelope with category
    ``unknown`` and are logged and counted here.
    """
    if isinstance(error, BaseApplicationError):
        envelope = error.to_dict()
    else:
        code = type(error).__name__
        envelope = {
            'error': True,
            'message': "An unexpected error occurred",
            'code': code,
            'category': ErrorCategory.UNKNOWN.value,
            'correlation_id': _current_correlation_id(),
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'recoverable': False,
        }
        logger.error(str(error), error_code=code, error_category=ErrorCategory.UNKNOWN.value)
        errors_total.labels(code=code, category=ErrorCategory.UNKNOWN.value).inc()

    if include_traceback and has_app_context() and current_app.debug:
        envelope['traceback'] = traceback.format_exc()
    return envelope


def _http_exception_to_error(error: HTTPException) -> BaseApplicationError:
    status = error.code or 500
    if status == 413:
        return FileTooLargeError(error.description or "Request entity too large", http_status=413)
    if 400 <= status < 500:
        return ValidationError(error.description or "Bad request", http_status=status)
    return SystemError(error.description or "HTTP error", http_status=status)


def register_error_handlers(app: Flask) -> None:
    """Translate the exception hierarchy and Werkzeug HTTP errors into JSON envelopes."""

    @app.errorhandler(BaseApplicationError)
    def handle_application_error(error: BaseApplicationError):
        return jsonify(format_error_response(error)), error.http_status

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        app_error = _http_exception_to_error(error)
        return jsonify(format_error_response(app_error)), app_error.http_status

    @app.errorhandler(Exception)
    def handle_unexpected_exception(error: Exception):
        logger.exception("Unhandled exception", exception_type=type(error).__name__)
        app_error = SystemError(
            "An unexpected error occurred",
            details={'exception_type': type(error).__name__}
        )
        return jsonify(format_error_response(app_error, include_traceback=True)), app_error.http_status


__all__ = [
    'BaseApplicationError',
    'ValidationError',
    'FileValidationError',
    'FileTooLargeError',
    'FileTooSmallError',
    'InvalidFilenameError',
    'UnsupportedFileTypeError',
    'UploadContractError',
    'TooManyFilesError',
    'FieldCountExceededError',
    'ConfigurationError',
    'ProviderNotConfiguredError',
    'StorageOperationError',
    'UploadFailedError',
    'DeleteFailedError',
    'StoredFileNotFoundError',
    'SystemError',
    'ErrorCategory',
    'format_error_response',
    'register_error_handlers',
]
