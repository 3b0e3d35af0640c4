"""
S3 object storage provider.

Keys are ``{folder}/{upload_type}/{filename}`` with the thumbnail stored under
``{folder}/{upload_type}/thumb_{filename}``. Public URLs use the virtual-hosted
form ``https://{bucket}.s3.{region}.amazonaws.com/{key}``, or
``{endpoint}/{bucket}/{key}`` when an S3-compatible endpoint is configured.

Delete is idempotent: a missing object is reported as ``False``.
"""

import posixpath
import threading
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, unquote, urlparse

import structlog
from botocore.exceptions import BotoCoreError, ClientError
from prometheus_client import Histogram

from lms_uploads.config.aws import create_s3_client
from lms_uploads.config.settings import STORAGE_S3, UploadSettings
from lms_uploads.monitoring.metrics import storage_operation_errors_total
from lms_uploads.storage.base import (
    THUMBNAIL_PREFIX,
    FileInfo,
    FileUpload,
    UploadOptions,
    UploadResult,
    prepare_upload,
    thumbnail_name,
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
from lms_uploads.utils.file_utils import sanitize_filename

logger = structlog.get_logger(__name__)

s3_operation_duration = Histogram(
    'lms_uploads_s3_operation_duration_seconds',
    'Time spent on S3 API calls',
    ['operation']
)

NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')

PRESIGN_METHODS = {
    'GET': 'get_object',
    'PUT': 'put_object',
    'DELETE': 'delete_object',
}

MAX_PRESIGN_EXPIRY = 604800  # 7 days


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return str(error.response.get('Error', {}).get('Code', 'Unknown'))
    return type(error).__name__


def _ascii_metadata(value: Any) -> str:
    """S3 user metadata travels as HTTP headers and must be ASCII."""
    return quote(str(value), safe=' !#$&()*+,-./:;=?@[]^_{}~')


class S3StorageProvider:
    """Stores uploads in an S3 bucket through a shared boto3 client."""

    name = STORAGE_S3

    def __init__(self, settings: UploadSettings, client=None):
        self.settings = settings
        self.config = settings.s3
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def client(self):
        """boto3 S3 client, created on first use."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = create_s3_client(self.config)
        return self._client

    @property
    def bucket(self) -> Optional[str]:
        return self.config.bucket_name

    def build_key(self, upload_type: str, filename: str) -> str:
        parts = [part for part in (self.config.folder, upload_type, filename) if part]
        return '/'.join(parts)

    def url_for_key(self, key: str) -> str:
        quoted = quote(key, safe='/')
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.bucket}/{quoted}"
        return f"https://{self.bucket}.s3.{self.config.region}.amazonaws.com/{quoted}"

    def upload_file(self, upload: FileUpload, options: Optional[UploadOptions] = None) -> UploadResult:
        """
        Validate, optionally optimize and put an object, plus its thumbnail.

        Objects carry the configured ACL (overridable through
        ``provider_options['acl']``), server-side encryption and metadata with
        the original name, upload type and content hash.

        Raises:
            ValidationError: If the file fails validation
            UploadFailedError: If the primary object cannot be stored
        """
        options = options or UploadOptions()

        with track_upload(self.name, upload.size):
            prepared = prepare_upload(upload, options, self.name, self.settings)
            key = self.build_key(prepared.upload_type, prepared.filename)

            metadata = {
                'original-name': _ascii_metadata(prepared.original_name),
                'upload-type': prepared.upload_type,
                'file-hash': prepared.hash,
            }
            for meta_key, meta_value in options.metadata.items():
                metadata[str(meta_key).lower()] = _ascii_metadata(meta_value)

            try:
                with s3_operation_duration.labels(operation='put_object').time():
                    response = self.client.put_object(
                        **self._put_args(key, prepared.content, prepared.mime_type, metadata, options)
                    )
            except (ClientError, BotoCoreError) as e:
                self._log_failure('upload', key, e)
                raise UploadFailedError(
                    "Failed to upload file to S3",
                    operation='upload',
                    storage_type=self.name,
                    identifier=key
                ) from e

            thumbnail_key = None
            if prepared.thumbnail is not None:
                candidate = self.build_key(prepared.upload_type, prepared.thumbnail_filename)
                thumb_metadata = dict(metadata, **{'is-thumbnail': 'true'})
                try:
                    with s3_operation_duration.labels(operation='put_object').time():
                        self.client.put_object(
                            **self._put_args(candidate, prepared.thumbnail, 'image/jpeg', thumb_metadata, options)
                        )
                    thumbnail_key = candidate
                except (ClientError, BotoCoreError) as e:
                    logger.warning(
                        "S3 thumbnail upload failed",
                        bucket=self.bucket,
                        key=candidate,
                        error_code=_error_code(e)
                    )

        logger.info(
            "File uploaded to S3",
            bucket=self.bucket,
            key=key,
            size=prepared.size
        )

        provider_data: Dict[str, Any] = {
            'bucket': self.bucket,
            'etag': response.get('ETag', '').strip('"'),
            'original_size': prepared.original_size,
        }
        if response.get('VersionId'):
            provider_data['version_id'] = response['VersionId']
        if prepared.dimensions:
            provider_data['width'], provider_data['height'] = prepared.dimensions

        return UploadResult(
            success=True,
            filename=prepared.filename,
            original_name=prepared.original_name,
            mime_type=prepared.mime_type,
            size=prepared.size,
            url=self.url_for_key(key),
            thumbnail_url=self.url_for_key(thumbnail_key) if thumbnail_key else None,
            hash=prepared.hash,
            identifier=key,
            thumbnail_identifier=thumbnail_key,
            upload_type=prepared.upload_type,
            storage_type=self.name,
            uploaded_at=utc_now_iso(),
            provider_data=provider_data,
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
        Delete an object and, best-effort, its thumbnail.

        Returns:
            True if the object was removed, False if it did not exist

        Raises:
            DeleteFailedError: For any other S3 failure
        """
        key = self.resolve_identifier(identifier)

        try:
            if not self._head(key):
                logger.info("S3 object already absent", bucket=self.bucket, key=key)
                return False

            with s3_operation_duration.labels(operation='delete_object').time():
                self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._log_failure('delete', key, e)
            raise DeleteFailedError(
                "Failed to delete file from S3",
                operation='delete',
                storage_type=self.name,
                identifier=key
            ) from e

        directory, filename = posixpath.split(key)
        if not filename.startswith(THUMBNAIL_PREFIX):
            thumbnail_key = posixpath.join(directory, thumbnail_name(filename))
            try:
                self.client.delete_object(Bucket=self.bucket, Key=thumbnail_key)
            except (ClientError, BotoCoreError) as e:
                logger.warning(
                    "S3 thumbnail delete failed",
                    bucket=self.bucket,
                    key=thumbnail_key,
                    error_code=_error_code(e)
                )

        logger.info("File deleted from S3", bucket=self.bucket, key=key)
        return True

    def get_file_info(self, identifier: str, **options) -> FileInfo:
        """
        Raises:
            StoredFileNotFoundError: If the object does not exist
            StorageOperationError: For any other S3 failure
        """
        key = self.resolve_identifier(identifier)

        try:
            head = self._head(key)
        except (ClientError, BotoCoreError) as e:
            self._log_failure('info', key, e)
            raise StorageOperationError(
                "Failed to get file information from S3",
                operation='info',
                storage_type=self.name,
                identifier=key
            ) from e

        if head is None:
            raise StoredFileNotFoundError(
                "File not found",
                operation='info',
                storage_type=self.name,
                identifier=key
            )

        last_modified = head.get('LastModified')
        modified_at = last_modified.isoformat() if last_modified is not None else None

        provider_data = {
            'bucket': self.bucket,
            'etag': head.get('ETag', '').strip('"'),
            'metadata': head.get('Metadata', {}),
        }
        if head.get('VersionId'):
            provider_data['version_id'] = head['VersionId']

        return FileInfo(
            identifier=key,
            filename=posixpath.basename(key),
            size=head.get('ContentLength', 0),
            mime_type=head.get('ContentType', 'application/octet-stream'),
            url=self.url_for_key(key),
            storage_type=self.name,
            created_at=modified_at,
            modified_at=modified_at,
            provider_data=provider_data,
        )

    def generate_signed_url(
        self, identifier: str, expires_in: int = 3600, operation: str = 'GET', **options
    ) -> str:
        """
        Generate a presigned URL.

        Args:
            identifier: Object key or URL
            expires_in: Lifetime in seconds, between 1 second and 7 days
            operation: ``GET``, ``PUT`` or ``DELETE``
            download_name: Optional filename offered to browsers on ``GET``,
                sanitized into ``Content-Disposition``

        Raises:
            ValidationError: For an invalid expiry or operation
            StorageOperationError: If signing fails
        """
        if not 1 <= expires_in <= MAX_PRESIGN_EXPIRY:
            raise ValidationError("expires_in must be between 1 second and 7 days")

        method = (operation or 'GET').upper()
        if method not in PRESIGN_METHODS:
            raise ValidationError(
                f"operation must be one of {', '.join(PRESIGN_METHODS)}"
            )

        key = self.resolve_identifier(identifier)
        params = {'Bucket': self.bucket, 'Key': key}
        download_name = options.get('download_name')
        if method == 'GET' and download_name:
            params['ResponseContentDisposition'] = (
                f'attachment; filename="{sanitize_filename(download_name)}"'
            )

        try:
            url = self.client.generate_presigned_url(
                PRESIGN_METHODS[method],
                Params=params,
                ExpiresIn=expires_in
            )
        except (ClientError, BotoCoreError) as e:
            self._log_failure('presign', key, e)
            raise StorageOperationError(
                "Failed to generate signed URL",
                operation='presign',
                storage_type=self.name,
                identifier=key
            ) from e

        logger.info(
            "Generated presigned URL",
            bucket=self.bucket,
            key=key,
            method=method,
            expires_in=expires_in
        )
        return url

    def file_exists(self, identifier: str) -> bool:
        try:
            return self._head(self.resolve_identifier(identifier)) is not None
        except Exception as e:
            logger.debug("S3 existence check failed", identifier=identifier, error=str(e))
            return False

    def list_files(
        self,
        prefix: str = '',
        max_keys: int = 1000,
        continuation_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        List objects under ``{folder}/{prefix}`` one page at a time.

        Returns:
            ``files``, ``is_truncated`` and ``next_continuation_token``

        Raises:
            ValidationError: If ``max_keys`` is outside 1-1000
            StorageOperationError: If listing fails
        """
        if not 1 <= max_keys <= 1000:
            raise ValidationError("max_keys must be between 1 and 1000")

        full_prefix = '/'.join(part for part in (self.config.folder, prefix.lstrip('/')) if part)
        params: Dict[str, Any] = {
            'Bucket': self.bucket,
            'Prefix': full_prefix,
            'MaxKeys': max_keys,
        }
        if continuation_token:
            params['ContinuationToken'] = continuation_token

        try:
            with s3_operation_duration.labels(operation='list_objects_v2').time():
                response = self.client.list_objects_v2(**params)
        except (ClientError, BotoCoreError) as e:
            self._log_failure('list', full_prefix, e)
            raise StorageOperationError(
                "Failed to list files from S3",
                operation='list',
                storage_type=self.name,
                identifier=full_prefix
            ) from e

        files = [
            {
                'key': item['Key'],
                'size': item.get('Size', 0),
                'last_modified': item['LastModified'].isoformat() if item.get('LastModified') else None,
                'etag': item.get('ETag', '').strip('"'),
                'url': self.url_for_key(item['Key']),
            }
            for item in response.get('Contents', [])
        ]

        return {
            'files': files,
            'is_truncated': response.get('IsTruncated', False),
            'next_continuation_token': response.get('NextContinuationToken'),
        }

    def validate_config(self) -> bool:
        return self.config.is_configured

    def owns_url(self, value: str) -> bool:
        """Recognise virtual-hosted, path-style and configured-endpoint S3 URLs."""
        parsed = urlparse(value or '')
        if parsed.scheme not in ('http', 'https'):
            return False

        if self.config.endpoint_url and value.startswith(f"{self.config.endpoint_url.rstrip('/')}/"):
            return True

        host = parsed.netloc.lower()
        return host.endswith('.amazonaws.com') and ('.s3.' in host or host.startswith('s3.') or host.startswith('s3-'))

    def resolve_identifier(self, value: str) -> str:
        """
        Map an object URL to its key.

        Values that are not URLs of this bucket are returned unchanged and
        treated as keys.
        """
        value = (value or '').strip()
        parsed = urlparse(value)
        if parsed.scheme not in ('http', 'https') or not self.bucket:
            return value

        path = parsed.path
        host = parsed.netloc.lower()
        bucket_prefix = f"/{self.bucket}/"

        if self.config.endpoint_url:
            endpoint = f"{self.config.endpoint_url.rstrip('/')}{bucket_prefix}"
            if value.startswith(endpoint):
                return unquote(urlparse(value).path.split(bucket_prefix, 1)[1])

        if host.startswith(f"{self.bucket.lower()}.s3") and host.endswith('.amazonaws.com'):
            return unquote(path.lstrip('/'))

        if host.endswith('.amazonaws.com') and path.startswith(bucket_prefix):
            return unquote(path[len(bucket_prefix):])

        return value

    def get_config(self) -> Dict[str, Any]:
        return {
            'storage_type': self.name,
            'bucket': self.bucket,
            'region': self.config.region,
            'folder': self.config.folder,
            'acl': self.config.acl,
            'endpoint_url': self.config.endpoint_url,
            'max_file_size': self.config.max_file_size,
            'allowed_formats': sorted(self.config.allowed_formats),
            'allowed_mime_types': sorted(self.config.allowed_mime_types),
            'configured': self.validate_config(),
        }

    def _put_args(
        self,
        key: str,
        body: bytes,
        content_type: str,
        metadata: Dict[str, str],
        options: UploadOptions
    ) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            'Bucket': self.bucket,
            'Key': key,
            'Body': body,
            'ContentType': content_type,
            'Metadata': metadata,
        }
        acl = options.provider_options.get('acl', self.config.acl)
        if acl:
            args['ACL'] = acl
        if self.config.server_side_encryption:
            args['ServerSideEncryption'] = self.config.server_side_encryption
        return args

    def _head(self, key: str) -> Optional[Dict[str, Any]]:
        """Return ``head_object`` output, or ``None`` when the object is missing."""
        try:
            with s3_operation_duration.labels(operation='head_object').time():
                return self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise

    def _log_failure(self, operation: str, key: str, error: Exception) -> None:
        storage_operation_errors_total.labels(storage_type=self.name, operation=operation).inc()
        logger.error(
            "S3 operation failed",
            operation=operation,
            storage_type=self.name,
            bucket=self.bucket,
            identifier=key,
            error_code=_error_code(error),
            error=str(error)
        )
