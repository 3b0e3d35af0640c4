"""
File validation and naming utilities for uploads.

Pure functions validating size, filename, MIME type and extension against the
per-provider upload policy, classifying MIME types into file-type categories,
generating collision-resistant stored filenames and hashing content. The only
I/O performed here is directory creation for the filesystem provider.

Key Features:
- Size ceilings per storage provider with a global minimum size
- Filename validation (length, forbidden characters)
- MIME type and extension allow-lists per storage provider
- File-type categories driving named-field restrictions
- ``{timestamp}_{token}_{stem}.{ext}`` unique filenames
- MD5 content hashes for duplicate detection
"""

import hashlib
import math
import mimetypes
import os
import re
import secrets
import string
import time
from typing import Dict, Iterable, Optional, Union

import structlog

from lms_uploads.config.settings import (
    NamedFieldContract,
    UploadSettings,
    UploadTypeContract,
    get_upload_settings,
)
from lms_uploads.monitoring.metrics import validation_failures_total
from lms_uploads.utils.exceptions import (
    FileTooLargeError,
    FileTooSmallError,
    FileValidationError,
    InvalidFilenameError,
    StorageOperationError,
    UnsupportedFileTypeError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

FORBIDDEN_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
UNSAFE_NAME_CHARS = re.compile(r'[^A-Za-z0-9.-]')
UPLOAD_TYPE_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
TOKEN_LENGTH = 8

OFFICE_DOCUMENT_MARKERS = (
    'msword', 'word', 'excel', 'powerpoint', 'officedocument', 'opendocument', 'rtf'
)
ARCHIVE_MARKERS = ('zip', 'rar', 'tar', '7z-compressed')

SIZE_UNITS = ('Bytes', 'KB', 'MB', 'GB', 'TB')

# Extensions of the MIME types accepted by the providers; the first is canonical.
# A declared type precedes its registered alias sharing the same extension.
MIME_TYPE_EXTENSIONS = {
    'image/jpeg': ('jpg', 'jpeg'),
    'image/png': ('png',),
    'image/gif': ('gif',),
    'image/webp': ('webp',),
    'application/pdf': ('pdf',),
    'application/msword': ('doc',),
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': ('docx',),
    'application/vnd.ms-excel': ('xls',),
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet': ('xlsx',),
    'text/plain': ('txt',),
    'text/csv': ('csv',),
    'application/zip': ('zip',),
    'application/x-rar-compressed': ('rar',),
    'application/vnd.rar': ('rar',),
}


def _settings(settings: Optional[UploadSettings]) -> UploadSettings:
    return settings if settings is not None else get_upload_settings()


def normalize_mime_type(mime_type: Optional[str]) -> str:
    """Lower-case a MIME type and drop parameters such as ``charset``."""
    if not mime_type:
        return ''
    return mime_type.split(';', 1)[0].strip().lower()


def get_file_extension(filename: str) -> str:
    """
    Return the lower-cased extension of ``filename`` without the leading dot.

    >>> get_file_extension('Report.PDF')
    'pdf'
    """
    return os.path.splitext(filename or '')[1].lower().lstrip('.')


def extension_for_mime_type(mime_type: Optional[str]) -> str:
    """Canonical extension for ``mime_type`` without the dot, ``''`` when unknown."""
    mime = normalize_mime_type(mime_type)
    if mime in MIME_TYPE_EXTENSIONS:
        return MIME_TYPE_EXTENSIONS[mime][0]
    return (mimetypes.guess_extension(mime) or '').lstrip('.') if mime else ''


def mime_type_for_filename(filename: str, allowed_mime_types: Optional[Iterable[str]] = None) -> str:
    """
    Map a stored filename back to its MIME type.

    Types from ``allowed_mime_types`` win over the platform ``mimetypes``
    registry, so ``bundle.rar`` reads back as ``application/x-rar-compressed``
    for a provider that only accepts that spelling.
    """
    extension = get_file_extension(filename)
    allowed = None if allowed_mime_types is None else frozenset(allowed_mime_types)
    for mime, extensions in MIME_TYPE_EXTENSIONS.items():
        if extension in extensions and (allowed is None or mime in allowed):
            return mime
    return mimetypes.guess_type(filename)[0] or 'application/octet-stream'


def stored_extension(original_name: str, mime_type: Optional[str]) -> str:
    """
    Extension given to the stored copy of an upload.

    The original extension is kept when it belongs to the declared MIME type.
    A missing or mismatching extension is replaced by the type's canonical one
    so that the stored name maps back to the declared type.
    """
    extension = get_file_extension(original_name)
    known = MIME_TYPE_EXTENSIONS.get(normalize_mime_type(mime_type))
    if known:
        return extension if extension in known else known[0]
    return extension or extension_for_mime_type(mime_type)


def format_file_size(size: int) -> str:
    """Format a byte count for display, e.g. ``10485760`` -> ``'10 MB'``."""
    if size <= 0:
        return '0 Bytes'

    index = min(int(math.floor(math.log(size, 1024))), len(SIZE_UNITS) - 1)
    value = ('%.2f' % (size / math.pow(1024, index))).rstrip('0').rstrip('.')
    return f"{value} {SIZE_UNITS[index]}"


def validate_file_size(
    size: int,
    storage_type: Optional[str] = 'local',
    settings: Optional[UploadSettings] = None
) -> bool:
    """
    Validate a file size against the global minimum and the provider ceiling.

    Args:
        size: File size in bytes
        storage_type: Provider name whose ceiling applies
        settings: Upload settings, defaults to the process-wide settings

    Returns:
        True when the size is acceptable

    Raises:
        FileTooSmallError: If ``size`` is below the global minimum
        FileTooLargeError: If ``size`` exceeds the provider ceiling
    """
    settings = _settings(settings)
    minimum = settings.validation.min_file_size
    maximum = settings.max_file_size_for(storage_type)

    if size < minimum:
        raise FileTooSmallError(
            "File size is too small",
            file_size=size,
            details={'min_file_size': minimum}
        )

    if size > maximum:
        raise FileTooLargeError(
            f"File size exceeds maximum limit of {format_file_size(maximum)}",
            file_size=size,
            details={'max_file_size': maximum, 'storage_type': storage_type}
        )

    return True


def validate_filename(name: Optional[str], settings: Optional[UploadSettings] = None) -> bool:
    """
    Validate an original filename.

    Raises:
        InvalidFilenameError: If the name is empty, longer than the configured
            maximum, or contains any of ``< > : " / \\ | ? *``
    """
    settings = _settings(settings)

    if not name:
        raise InvalidFilenameError("Filename is required")

    if len(name) > settings.validation.max_filename_length:
        raise InvalidFilenameError(
            "Filename is too long",
            filename=name[:64],
            details={'max_length': settings.validation.max_filename_length}
        )

    if FORBIDDEN_FILENAME_CHARS.search(name):
        raise InvalidFilenameError("Filename contains invalid characters", filename=name)

    return True


def validate_mime_type(
    mime_type: Optional[str],
    storage_type: Optional[str] = 'local',
    settings: Optional[UploadSettings] = None
) -> bool:
    """
    Validate a declared MIME type against the provider allow-list.

    Raises:
        UnsupportedFileTypeError: If the type is not allowed for the provider
    """
    settings = _settings(settings)
    normalized = normalize_mime_type(mime_type)

    if normalized not in settings.allowed_mime_types_for(storage_type):
        raise UnsupportedFileTypeError(
            f"File type {mime_type or 'unknown'} is not allowed",
            content_type=mime_type,
            details={'storage_type': storage_type}
        )

    return True


def validate_file_extension(
    filename: str,
    storage_type: Optional[str] = 'local',
    settings: Optional[UploadSettings] = None
) -> bool:
    """
    Validate the filename extension for providers that restrict formats.

    The filesystem provider does not restrict extensions; S3 and Cloudinary
    accept only their configured formats.

    Raises:
        UnsupportedFileTypeError: If the extension is not allowed
    """
    allowed = _settings(settings).allowed_formats_for(storage_type)
    if allowed is None:
        return True

    extension = get_file_extension(filename)
    if extension not in allowed:
        raise UnsupportedFileTypeError(
            f"File format {extension or 'unknown'} is not allowed",
            filename=filename,
            details={'storage_type': storage_type, 'allowed_formats': sorted(allowed)}
        )

    return True


def validate_upload(
    size: int,
    filename: str,
    mime_type: str,
    storage_type: Optional[str] = 'local',
    settings: Optional[UploadSettings] = None
) -> None:
    """
    Run every per-file check for ``storage_type``.

    Order is filename, size, MIME type, extension; the first failure is raised
    and counted in the validation failure metric.
    """
    try:
        validate_filename(filename, settings)
        validate_file_size(size, storage_type, settings)
        validate_mime_type(mime_type, storage_type, settings)
        validate_file_extension(filename, storage_type, settings)
    except FileValidationError as e:
        validation_failures_total.labels(reason=e.code).inc()
        raise


def classify_file_type(mime_type: Optional[str]) -> str:
    """
    Map a MIME type to a file-type category.

    Precedence is image, video, audio, pdf/office document, archive, text;
    anything else is ``other``.
    """
    mime = normalize_mime_type(mime_type)

    if mime.startswith('image/'):
        return 'image'
    if mime.startswith('video/'):
        return 'video'
    if mime.startswith('audio/'):
        return 'audio'
    if mime.startswith('application/pdf'):
        return 'document'
    if any(marker in mime for marker in OFFICE_DOCUMENT_MARKERS):
        return 'document'
    if any(marker in mime for marker in ARCHIVE_MARKERS) or mime == 'application/gzip':
        return 'archive'
    if mime.startswith('text/'):
        return 'text'
    return 'other'


def is_image(mime_type: Optional[str]) -> bool:
    return classify_file_type(mime_type) == 'image'


def sanitize_filename(name: str) -> str:
    """Replace unsafe characters with ``_``, collapse runs and trim them."""
    sanitized = UNSAFE_NAME_CHARS.sub('_', name or '')
    sanitized = re.sub(r'_+', '_', sanitized)
    return sanitized.strip('_')


def generate_unique_filename(original_name: str, extension: Optional[str] = None) -> str:
    """
    Generate a collision-resistant stored filename.

    The name is ``{ms timestamp}_{8-char token}_{sanitized stem}.{ext}``. The
    stem keeps only ``[A-Za-z0-9.-]``, every other character becomes ``_``.

    Args:
        original_name: Client supplied filename
        extension: Extension to use; derived from ``original_name`` when omitted

    Returns:
        Unique filename
    """
    stem, original_ext = os.path.splitext(original_name or '')
    if extension is None:
        extension = original_ext
    extension = extension.lstrip('.').lower()

    timestamp = int(time.time() * 1000)
    token = ''.join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))
    sanitized_stem = UNSAFE_NAME_CHARS.sub('_', stem) or 'file'

    unique_name = f"{timestamp}_{token}_{sanitized_stem}"
    if extension:
        unique_name = f"{unique_name}.{extension}"
    return unique_name


def compute_file_hash(data: bytes) -> str:
    """Return the MD5 hex digest of ``data``."""
    return hashlib.md5(data).hexdigest()


def validate_upload_type_segment(upload_type: Optional[str]) -> str:
    """
    Validate an upload-type name used as a path or key segment.

    Raises:
        ValidationError: If the name is empty or contains characters other
            than letters, digits, ``-`` and ``_``
    """
    if not upload_type or not UPLOAD_TYPE_PATTERN.match(upload_type):
        raise ValidationError(
            f"Invalid upload type: {upload_type!r}",
            field_errors={'uploadType': ['Use letters, digits, "-" or "_" only']}
        )
    return upload_type


def get_upload_path(
    upload_type: str = 'general',
    base_path: Optional[str] = None,
    settings: Optional[UploadSettings] = None
) -> str:
    """Directory holding files of ``upload_type`` for the filesystem provider."""
    if base_path is None:
        base_path = _settings(settings).local.upload_path
    return os.path.join(base_path, validate_upload_type_segment(upload_type))


def ensure_directory_exists(path: str) -> str:
    """
    Create ``path`` and its parents if missing.

    Raises:
        StorageOperationError: If the directory cannot be created
    """
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        logger.error("Failed to create upload directory", path=path, error=str(e))
        raise StorageOperationError(
            "Failed to create upload directory",
            operation='mkdir',
            storage_type='local',
            identifier=path
        ) from e
    return path


def validate_upload_type(
    kind: str,
    field: Optional[str] = None,
    settings: Optional[UploadSettings] = None
) -> Union[UploadTypeContract, NamedFieldContract, Dict[str, NamedFieldContract]]:
    """
    Resolve an upload-type contract.

    Args:
        kind: ``single``, ``multiple`` or ``named``
        field: Field name, only meaningful for ``named``
        settings: Upload settings

    Returns:
        The upload-type contract, the named-field contract for ``field``, or
        every named-field contract when ``kind`` is ``named`` without a field

    Raises:
        ValidationError: For an unknown upload type or field name
    """
    settings = _settings(settings)

    if kind == 'named':
        if field is None:
            return dict(settings.named_fields)
        try:
            return settings.named_fields[field]
        except KeyError:
            raise ValidationError(f"Invalid field name: {field}") from None

    try:
        return settings.upload_types[kind]
    except KeyError:
        raise ValidationError(f"Invalid upload type: {kind}") from None
