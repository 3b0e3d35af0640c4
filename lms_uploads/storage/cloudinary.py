"""
Cloudinary CDN-image storage provider.

Public ids are ``{folder}/{upload_type}/{stem}`` for images and PDFs (stored
as the ``image`` resource type, with dots in the stem replaced by ``_``) and
``{folder}/{upload_type}/{filename}`` for other documents (stored as ``raw``).
A bare public id is therefore read as ``raw`` only when it ends in a raw-stored
extension.

Thumbnails are produced by Cloudinary as an eager cover-fit derivative of the
original asset, so deleting the asset also removes its thumbnail.

Credentials are passed on every SDK call; the global SDK configuration is
never touched.
"""

import base64
import posixpath
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils
import structlog

from lms_uploads.config.settings import STORAGE_CLOUDINARY, UploadSettings
from lms_uploads.monitoring.metrics import storage_operation_errors_total
from lms_uploads.storage.base import (
    FileInfo,
    FileUpload,
    UploadOptions,
    UploadResult,
    prepare_upload,
    track_upload,
    upload_files_in_order,
    utc_now_iso,
)
from lms_uploads.utils.exceptions import (
    DeleteFailedError,
    StorageOperationError,
    StoredFileNotFoundError,
    UploadFailedError,
    ValidationError,
)
from lms_uploads.utils.file_utils import MIME_TYPE_EXTENSIONS, mime_type_for_filename

logger = structlog.get_logger(__name__)

DELIVERY_TYPES = ('upload', 'private', 'authenticated')
RESOURCE_TYPES = ('image', 'video', 'raw')
VERSION_SEGMENT = re.compile(r'^v\d+$')
TRANSFORMATION_SEGMENT = re.compile(r'^[a-z]{1,3}_[^/]*(,[a-z]{1,3}_[^/]*)*$')


def resource_type_for(mime_type: str) -> str:
    """Cloudinary resource type used to store a file of ``mime_type``."""
    if mime_type.startswith('image/') or mime_type == 'application/pdf':
        return 'image'
    if mime_type.startswith(('video/', 'audio/')):
        return 'video'
    return 'raw'


RAW_FORMATS = frozenset(
    extension
    for mime_type, extensions in MIME_TYPE_EXTENSIONS.items()
    if resource_type_for(mime_type) == 'raw'
    for extension in extensions
)


class CloudinaryStorageProvider:
    """Stores uploads as Cloudinary assets."""

    name = STORAGE_CLOUDINARY

    def __init__(self, settings: UploadSettings):
        self.settings = settings
        self.config = settings.cloudinary

    def upload_file(self, upload: FileUpload, options: Optional[UploadOptions] = None) -> UploadResult:
        """
        Validate, optionally optimize and upload a file as a Cloudinary asset.

        ``provider_options['transformation']`` is applied as an incoming
        transformation; when thumbnails are enabled an eager
        ``crop=fill, gravity=center`` derivative is requested in the same call.

        Raises:
            ValidationError: If the file fails validation
            UploadFailedError: If the Cloudinary upload fails
        """
        options = options or UploadOptions()

        with track_upload(self.name, upload.size):
            prepared = prepare_upload(
                upload, options, self.name, self.settings, render_thumbnail=False
            )
            resource_type = resource_type_for(prepared.mime_type)
            # raw ids keep their extension; other ids never contain a dot
            public_id = (
                prepared.filename if resource_type == 'raw'
                else posixpath.splitext(prepared.filename)[0].replace('.', '_')
            )

            upload_options: Dict[str, Any] = dict(
                self.config.credentials,
                folder=self._folder(prepared.upload_type),
                public_id=public_id,
                resource_type=resource_type,
                overwrite=False,
                tags=[prepared.upload_type],
                context=dict(
                    options.metadata,
                    original_name=prepared.original_name,
                    upload_type=prepared.upload_type,
                    file_hash=prepared.hash,
                ),
            )
            if options.provider_options.get('transformation'):
                upload_options['transformation'] = options.provider_options['transformation']
            if prepared.wants_thumbnail and resource_type == 'image':
                upload_options['eager'] = [self._thumbnail_transformation()]

            encoded = base64.b64encode(prepared.content).decode('ascii')
            data_uri = f"data:{prepared.mime_type};base64,{encoded}"

            try:
                result = cloudinary.uploader.upload(data_uri, **upload_options)
            except cloudinary.exceptions.Error as e:
                self._log_failure('upload', public_id, e)
                raise UploadFailedError(
                    "Failed to upload file to Cloudinary",
                    operation='upload',
                    storage_type=self.name,
                    identifier=public_id
                ) from e

        thumbnail_url = thumbnail_transformation = None
        eager = result.get('eager') or []
        if eager:
            thumbnail_url = eager[0].get('secure_url') or eager[0].get('url')
            thumbnail_transformation = eager[0].get('transformation')

        logger.info(
            "File uploaded to Cloudinary",
            public_id=result.get('public_id'),
            resource_type=resource_type,
            size=prepared.size
        )

        return UploadResult(
            success=True,
            filename=prepared.filename,
            original_name=prepared.original_name,
            mime_type=prepared.mime_type,
            size=prepared.size,
            url=result['secure_url'],
            thumbnail_url=thumbnail_url,
            hash=prepared.hash,
            identifier=result['public_id'],
            upload_type=prepared.upload_type,
            storage_type=self.name,
            uploaded_at=utc_now_iso(),
            provider_data={
                'asset_id': result.get('asset_id'),
                'version': result.get('version'),
                'resource_type': result.get('resource_type', resource_type),
                'format': result.get('format'),
                'width': result.get('width'),
                'height': result.get('height'),
                'bytes': result.get('bytes'),
                'etag': result.get('etag'),
                'thumbnail_transformation': thumbnail_transformation,
                'original_size': prepared.original_size,
            },
        )

    def upload_multiple_files(
        self, uploads: Sequence[FileUpload], options: Optional[UploadOptions] = None
    ) -> List[UploadResult]:
        return upload_files_in_order(
            self.upload_file,
            uploads,
            options or UploadOptions(),
            self.name,
            self.settings.upload_concurrency,
        )

    def delete_file(self, identifier: str, **options) -> bool:
        """
        Destroy an asset together with its derived thumbnail.

        Returns:
            True when Cloudinary reports ``ok``, False for ``not found``

        Raises:
            DeleteFailedError: For any other outcome
        """
        public_id, resource_type, delivery_type, _ = self.parse_identifier(
            identifier, options.get('resource_type')
        )

        try:
            result = cloudinary.uploader.destroy(
                public_id,
                resource_type=resource_type,
                type=delivery_type,
                invalidate=True,
                **self.config.credentials
            )
        except cloudinary.exceptions.Error as e:
            self._log_failure('delete', public_id, e)
            raise DeleteFailedError(
                "Failed to delete file from Cloudinary",
                operation='delete',
                storage_type=self.name,
                identifier=public_id
            ) from e

        outcome = result.get('result')
        if outcome == 'ok':
            logger.info("File deleted from Cloudinary", public_id=public_id)
            return True
        if outcome == 'not found':
            logger.info("Cloudinary asset already absent", public_id=public_id)
            return False

        storage_operation_errors_total.labels(storage_type=self.name, operation='delete').inc()
        raise DeleteFailedError(
            f"Failed to delete file from Cloudinary: {outcome}",
            operation='delete',
            storage_type=self.name,
            identifier=public_id
        )

    def get_file_info(self, identifier: str, **options) -> FileInfo:
        """
        Raises:
            StoredFileNotFoundError: If the asset does not exist
            StorageOperationError: For any other Cloudinary failure
        """
        public_id, resource_type, delivery_type, _ = self.parse_identifier(
            identifier, options.get('resource_type')
        )

        try:
            resource = cloudinary.api.resource(
                public_id,
                resource_type=resource_type,
                type=delivery_type,
                **self.config.credentials
            )
        except cloudinary.exceptions.NotFound as e:
            raise StoredFileNotFoundError(
                "File not found",
                operation='info',
                storage_type=self.name,
                identifier=public_id
            ) from e
        except cloudinary.exceptions.Error as e:
            self._log_failure('info', public_id, e)
            raise StorageOperationError(
                "Failed to get file information from Cloudinary",
                operation='info',
                storage_type=self.name,
                identifier=public_id
            ) from e

        asset_format = resource.get('format')
        filename = posixpath.basename(resource.get('public_id', public_id))
        if asset_format and not filename.endswith(f".{asset_format}"):
            filename = f"{filename}.{asset_format}"
        mime_type = mime_type_for_filename(filename, self.config.allowed_mime_types)

        return FileInfo(
            identifier=resource.get('public_id', public_id),
            filename=filename,
            size=resource.get('bytes', 0),
            mime_type=mime_type,
            url=resource.get('secure_url') or resource.get('url', ''),
            storage_type=self.name,
            created_at=resource.get('created_at'),
            modified_at=resource.get('created_at'),
            provider_data={
                'asset_id': resource.get('asset_id'),
                'version': resource.get('version'),
                'resource_type': resource.get('resource_type', resource_type),
                'format': asset_format,
                'width': resource.get('width'),
                'height': resource.get('height'),
            },
        )

    def generate_signed_url(
        self, identifier: str, expires_in: int = 3600, operation: str = 'GET', **options
    ) -> str:
        """
        Generate a time-limited download URL via ``private_download_url``.

        Only ``GET`` is supported.

        Raises:
            ValidationError: For a non-positive expiry or another operation
        """
        if expires_in < 1:
            raise ValidationError("expires_in must be at least 1 second")
        if (operation or 'GET').upper() != 'GET':
            raise ValidationError("Cloudinary signed URLs only support GET")

        public_id, resource_type, delivery_type, asset_format = self.parse_identifier(
            identifier, options.get('resource_type')
        )
        if resource_type == 'raw':
            # raw public ids already carry their extension
            asset_format = None

        try:
            return cloudinary.utils.private_download_url(
                public_id,
                options.get('format', asset_format or ''),
                resource_type=resource_type,
                type=delivery_type,
                expires_at=int(time.time()) + expires_in,
                **self.config.credentials
            )
        except cloudinary.exceptions.Error as e:
            self._log_failure('presign', public_id, e)
            raise StorageOperationError(
                "Failed to generate signed URL",
                operation='presign',
                storage_type=self.name,
                identifier=public_id
            ) from e

    def file_exists(self, identifier: str) -> bool:
        try:
            self.get_file_info(identifier)
            return True
        except Exception as e:
            logger.debug("Cloudinary existence check failed", identifier=identifier, error=str(e))
            return False

    def validate_config(self) -> bool:
        return self.config.is_configured

    def owns_url(self, value: str) -> bool:
        parsed = urlparse(value or '')
        host = parsed.netloc.lower()
        return parsed.scheme in ('http', 'https') and (
            host == 'cloudinary.com' or host.endswith('.cloudinary.com')
        )

    def resolve_identifier(self, value: str) -> str:
        return self.parse_identifier(value)[0]

    def parse_identifier(
        self, value: str, resource_type: Optional[str] = None
    ) -> Tuple[str, str, str, Optional[str]]:
        """
        Resolve a public id or delivery URL.

        URLs have the shape
        ``https://res.cloudinary.com/{cloud}/{resource_type}/{type}/[transformations/][v{version}/]{public_id}[.{ext}]``.
        The version segment and any transformation segments are skipped, the
        folder is kept, and the extension is stripped for image and video
        assets. Values that do not parse are returned as opaque public ids.

        Returns:
            ``(public_id, resource_type, delivery_type, format)``
        """
        value = (value or '').strip()

        if self.owns_url(value):
            segments = [unquote(part) for part in urlparse(value).path.split('/') if part]
            parsed = self._parse_delivery_path(segments)
            if parsed is not None:
                url_resource_type, delivery_type, public_id, asset_format = parsed
                return public_id, resource_type or url_resource_type, delivery_type, asset_format
            return value, resource_type or 'image', 'upload', None

        extension = posixpath.splitext(value)[1].lstrip('.').lower()
        inferred = resource_type or ('raw' if extension in RAW_FORMATS else 'image')
        return value, inferred, 'upload', extension or None

    def get_config(self) -> Dict[str, Any]:
        return {
            'storage_type': self.name,
            'cloud_name': self.config.cloud_name,
            'folder': self.config.folder,
            'max_file_size': self.config.max_file_size,
            'allowed_formats': sorted(self.config.allowed_formats),
            'allowed_mime_types': sorted(self.config.allowed_mime_types),
            'transformation': dict(self.config.transformation),
            'configured': self.validate_config(),
        }

    def _folder(self, upload_type: str) -> str:
        return '/'.join(part for part in (self.config.folder, upload_type) if part)

    def _thumbnail_transformation(self) -> Dict[str, Any]:
        image = self.settings.image
        return dict(
            self.config.transformation,
            width=image.thumbnail_width,
            height=image.thumbnail_height,
            crop='fill',
            gravity='center',
        )

    @staticmethod
    def _parse_delivery_path(segments: List[str]) -> Optional[Tuple[str, str, str, Optional[str]]]:
        for index, segment in enumerate(segments[:-1]):
            if segment in DELIVERY_TYPES and index > 0 and segments[index - 1] in RESOURCE_TYPES:
                resource_type = segments[index - 1]
                rest = segments[index + 1:]
                break
        else:
            return None

        version_index = next(
            (i for i, part in enumerate(rest) if VERSION_SEGMENT.match(part)), None
        )
        if version_index is not None:
            rest = rest[version_index + 1:]
        else:
            while len(rest) > 1 and TRANSFORMATION_SEGMENT.match(rest[0]):
                rest = rest[1:]

        if not rest:
            return None

        public_id = '/'.join(rest)
        stem, extension = posixpath.splitext(public_id)
        asset_format = extension.lstrip('.').lower() or None
        if resource_type != 'raw' and extension:
            public_id = stem
        return resource_type, segments[index], public_id, asset_format

    def _log_failure(self, operation: str, public_id: str, error: Exception) -> None:
        storage_operation_errors_total.labels(storage_type=self.name, operation=operation).inc()
        logger.error(
            "Cloudinary operation failed",
            operation=operation,
            storage_type=self.name,
            identifier=public_id,
            error=str(error)
        )
