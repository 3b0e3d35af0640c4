"""
Shared types and helpers for storage providers.

Providers are plain classes satisfying the ``StorageProvider`` protocol; they
do not inherit from a common base. The steps every provider performs before
touching its backend (validation, unique naming, hashing, image optimization,
thumbnail rendering) live in ``prepare_upload`` and the per-file failure
isolation for batches lives in ``upload_files_in_order``.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, runtime_checkable

import structlog

from lms_uploads.config.settings import UploadSettings
from lms_uploads.monitoring.metrics import (
    upload_bytes_total,
    upload_duration_seconds,
    uploads_total,
)
from lms_uploads.utils.exceptions import BaseApplicationError
from lms_uploads.utils.file_utils import (
    compute_file_hash,
    generate_unique_filename,
    is_image,
    normalize_mime_type,
    stored_extension,
    validate_upload,
    validate_upload_type_segment,
)
from lms_uploads.utils.image_utils import generate_thumbnail, get_image_dimensions, optimize_image

logger = structlog.get_logger(__name__)

THUMBNAIL_PREFIX = 'thumb_'


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class FileUpload:
    """A parsed multipart part: raw bytes, client filename and declared MIME type."""

    content: bytes
    original_name: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class UploadOptions:
    storage_type: Optional[str] = None
    upload_type: str = 'general'
    optimize_image: bool = True
    generate_thumbnail: bool = True
    metadata: Dict[str, str] = field(default_factory=dict)
    provider_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UploadResult:
    """
    Outcome of a single file upload.

    A successful result always carries a non-empty ``url``. A failed result
    carries ``error`` and ``error_code``, and nothing was persisted for it.
    """

    success: bool
    original_name: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    hash: Optional[str] = None
    identifier: Optional[str] = None
    thumbnail_identifier: Optional[str] = None
    upload_type: Optional[str] = None
    storage_type: Optional[str] = None
    uploaded_at: Optional[str] = None
    provider_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def failure(
        cls,
        original_name: str,
        error: str,
        error_code: str,
        mime_type: Optional[str] = None,
        storage_type: Optional[str] = None,
        field: Optional[str] = None
    ) -> 'UploadResult':
        return cls(
            success=False,
            original_name=original_name,
            mime_type=mime_type,
            storage_type=storage_type,
            error=error,
            error_code=error_code,
            field=field,
        )

    @classmethod
    def from_error(
        cls,
        upload: FileUpload,
        error: BaseApplicationError,
        storage_type: Optional[str] = None,
        field: Optional[str] = None
    ) -> 'UploadResult':
        return cls.failure(
            original_name=upload.original_name,
            error=error.message,
            error_code=error.code,
            mime_type=upload.mime_type,
            storage_type=storage_type,
            field=field,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys used by the HTTP API, omitting empty fields."""
        data = {
            'success': self.success,
            'filename': self.filename,
            'originalName': self.original_name,
            'mimeType': self.mime_type,
            'size': self.size,
            'url': self.url,
            'thumbnailUrl': self.thumbnail_url,
            'hash': self.hash,
            'identifier': self.identifier,
            'thumbnailIdentifier': self.thumbnail_identifier,
            'uploadType': self.upload_type,
            'storageType': self.storage_type,
            'uploadedAt': self.uploaded_at,
            'providerData': self.provider_data or None,
            'error': self.error,
            'errorCode': self.error_code,
            'field': self.field,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class FileInfo:
    identifier: str
    filename: str
    size: int
    mime_type: str
    url: str
    storage_type: str
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    provider_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identifier': self.identifier,
            'filename': self.filename,
            'size': self.size,
            'mimeType': self.mime_type,
            'url': self.url,
            'storageType': self.storage_type,
            'createdAt': self.created_at,
            'modifiedAt': self.modified_at,
            'providerData': self.provider_data,
        }


@runtime_checkable
class StorageProvider(Protocol):
    """Capabilities every storage backend exposes to the orchestrator."""

    name: str

    def upload_file(self, upload: FileUpload, options: Optional[UploadOptions] = None) -> UploadResult:
        ...

    def upload_multiple_files(
        self, uploads: Sequence[FileUpload], options: Optional[UploadOptions] = None
    ) -> List[UploadResult]:
        ...

    def delete_file(self, identifier: str, **options) -> bool:
        ...

    def get_file_info(self, identifier: str, **options) -> FileInfo:
        ...

    def generate_signed_url(
        self, identifier: str, expires_in: int = 3600, operation: str = 'GET', **options
    ) -> str:
        ...

    def file_exists(self, identifier: str) -> bool:
        ...

    def validate_config(self) -> bool:
        ...

    def owns_url(self, value: str) -> bool:
        ...

    def resolve_identifier(self, value: str) -> str:
        ...

    def get_config(self) -> Dict[str, Any]:
        ...


@dataclass
class PreparedUpload:
    """Validated upload ready to be written to a backend."""

    filename: str
    original_name: str
    mime_type: str
    upload_type: str
    content: bytes
    original_size: int
    hash: str
    is_image: bool
    wants_thumbnail: bool
    thumbnail: Optional[bytes] = None
    dimensions: Optional[tuple] = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def thumbnail_filename(self) -> str:
        return thumbnail_name(self.filename)


def thumbnail_name(filename: str) -> str:
    return f"{THUMBNAIL_PREFIX}{filename}"


def prepare_upload(
    upload: FileUpload,
    options: UploadOptions,
    storage_type: str,
    settings: UploadSettings,
    render_thumbnail: bool = True
) -> PreparedUpload:
    """
    Validate ``upload`` for ``storage_type`` and derive what will be stored.

    The content hash always covers the original bytes so that duplicate
    detection is unaffected by re-encoding. The thumbnail is rendered from the
    original image, independently of the optimized main artifact.

    Args:
        upload: File to store
        options: Upload options
        storage_type: Provider whose limits apply
        settings: Upload settings
        render_thumbnail: Whether to render thumbnail bytes locally; providers
            that derive thumbnails server-side pass ``False``

    Raises:
        ValidationError: If the upload type or the file fails validation
    """
    upload_type = validate_upload_type_segment(options.upload_type)
    validate_upload(upload.size, upload.original_name, upload.mime_type, storage_type, settings)

    mime_type = normalize_mime_type(upload.mime_type)
    image = is_image(mime_type)
    image_settings = settings.image

    content = upload.content
    if image and options.optimize_image and image_settings.optimization_enabled:
        content = optimize_image(
            upload.content,
            quality=image_settings.quality,
            max_width=image_settings.max_width,
            max_height=image_settings.max_height,
        )

    wants_thumbnail = image and options.generate_thumbnail and image_settings.thumbnails_enabled
    thumbnail = None
    if wants_thumbnail and render_thumbnail:
        thumbnail = generate_thumbnail(
            upload.content,
            width=image_settings.thumbnail_width,
            height=image_settings.thumbnail_height,
            quality=image_settings.quality,
        )

    return PreparedUpload(
        filename=generate_unique_filename(
            upload.original_name, stored_extension(upload.original_name, mime_type)
        ),
        original_name=upload.original_name,
        mime_type=mime_type,
        upload_type=upload_type,
        content=content,
        original_size=upload.size,
        hash=compute_file_hash(upload.content),
        is_image=image,
        wants_thumbnail=wants_thumbnail,
        thumbnail=thumbnail,
        dimensions=get_image_dimensions(content) if image else None,
    )


@contextmanager
def track_upload(storage_type: str, size: int) -> Iterator[None]:
    """Record upload count, duration and byte metrics around a provider upload."""
    started = time.perf_counter()
    try:
        yield
    except Exception:
        uploads_total.labels(storage_type=storage_type, status='failure').inc()
        raise
    else:
        uploads_total.labels(storage_type=storage_type, status='success').inc()
        upload_bytes_total.labels(storage_type=storage_type).inc(size)
    finally:
        upload_duration_seconds.labels(storage_type=storage_type).observe(
            time.perf_counter() - started
        )


def upload_files_in_order(
    upload_one: Callable[[FileUpload, UploadOptions], UploadResult],
    uploads: Sequence[FileUpload],
    options: UploadOptions,
    storage_type: str,
    concurrency: int = 1
) -> List[UploadResult]:
    """
    Upload every file, turning per-file errors into failure results.

    Results are returned in input order. With ``concurrency`` above one the
    files are uploaded on a thread pool; completed files are never rolled back
    when a sibling fails.
    """

    def upload_isolated(upload: FileUpload) -> UploadResult:
        try:
            return upload_one(upload, options)
        except BaseApplicationError as e:
            return UploadResult.from_error(upload, e, storage_type=storage_type)
        except Exception as e:
            logger.exception(
                "Unexpected error uploading file",
                storage_type=storage_type,
                original_name=upload.original_name
            )
            return UploadResult.failure(
                original_name=upload.original_name,
                error=f"Upload failed: {e.__class__.__name__}",
                error_code='UPLOAD_FAILED',
                mime_type=upload.mime_type,
                storage_type=storage_type,
            )

    if concurrency <= 1 or len(uploads) <= 1:
        return [upload_isolated(upload) for upload in uploads]

    with ThreadPoolExecutor(max_workers=min(concurrency, len(uploads))) as executor:
        return list(executor.map(upload_isolated, uploads))
