"""
Local filesystem storage provider.

Layout is ``{upload_path}/{upload_type}/{filename}`` for the primary artifact
and ``{upload_path}/{upload_type}/thumb_{filename}`` for its thumbnail. Files
are served under ``/uploads/{upload_type}/{filename}``.

Delete is idempotent: removing a file that does not exist returns ``False``.
Identifiers resolving outside the upload directory are treated as missing.
Signed URLs carry no expiry; the filesystem has no signing capability.
"""

import os
import tempfile
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote, unquote, urlparse

import structlog

from lms_uploads.config.settings import STORAGE_LOCAL, UploadSettings
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
    StoredFileNotFoundError,
    UploadFailedError,
)
from lms_uploads.utils.file_utils import ensure_directory_exists, get_upload_path, mime_type_for_filename

logger = structlog.get_logger(__name__)


def _timestamp(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


class LocalStorageProvider:
    """Stores uploads on the local filesystem."""

    name = STORAGE_LOCAL

    def __init__(self, settings: UploadSettings):
        self.settings = settings
        self.config = settings.local

    @property
    def base_path(self) -> str:
        return os.path.realpath(self.config.upload_path)

    def upload_file(self, upload: FileUpload, options: Optional[UploadOptions] = None) -> UploadResult:
        """
        Validate, optionally optimize and write a file, plus its thumbnail.

        The primary file is written through a temporary file and renamed into
        place, so a failed write never leaves a partial artifact. A thumbnail
        write failure is logged and the result simply has no thumbnail.

        Raises:
            ValidationError: If the file fails validation
            UploadFailedError: If the primary file cannot be written
        """
        options = options or UploadOptions()

        with track_upload(self.name, upload.size):
            prepared = prepare_upload(upload, options, self.name, self.settings)
            directory = ensure_directory_exists(
                get_upload_path(prepared.upload_type, self.config.upload_path)
            )
            path = os.path.join(directory, prepared.filename)

            try:
                self._write_atomic(path, prepared.content)
            except OSError as e:
                storage_operation_errors_total.labels(storage_type=self.name, operation='upload').inc()
                logger.error(
                    "Local file write failed",
                    operation='upload',
                    storage_type=self.name,
                    identifier=path,
                    error=str(e)
                )
                raise UploadFailedError(
                    "Failed to upload file to local storage",
                    operation='upload',
                    storage_type=self.name,
                    identifier=prepared.filename
                ) from e

            thumbnail_path = None
            if prepared.thumbnail is not None:
                candidate = os.path.join(directory, prepared.thumbnail_filename)
                try:
                    self._write_atomic(candidate, prepared.thumbnail)
                    thumbnail_path = candidate
                except OSError as e:
                    logger.warning("Thumbnail write failed", identifier=candidate, error=str(e))

        logger.info(
            "File uploaded to local storage",
            filename=prepared.filename,
            upload_type=prepared.upload_type,
            size=prepared.size
        )

        provider_data: Dict[str, Any] = {'original_size': prepared.original_size}
        if prepared.dimensions:
            provider_data['width'], provider_data['height'] = prepared.dimensions

        return UploadResult(
            success=True,
            filename=prepared.filename,
            original_name=prepared.original_name,
            mime_type=prepared.mime_type,
            size=prepared.size,
            url=self._url_for(path),
            thumbnail_url=self._url_for(thumbnail_path) if thumbnail_path else None,
            hash=prepared.hash,
            identifier=path,
            thumbnail_identifier=thumbnail_path,
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
        Delete a file and, best-effort, its thumbnail.

        Returns:
            True if the file was removed, False if it did not exist

        Raises:
            DeleteFailedError: If the file exists but cannot be removed
        """
        try:
            path = self._absolute_path(identifier)
        except StoredFileNotFoundError:
            return False

        if not os.path.isfile(path):
            logger.info("Local file already absent", identifier=identifier)
            return False

        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            storage_operation_errors_total.labels(storage_type=self.name, operation='delete').inc()
            logger.error(
                "Local file delete failed",
                operation='delete',
                storage_type=self.name,
                identifier=path,
                error=str(e)
            )
            raise DeleteFailedError(
                "Failed to delete file from local storage",
                operation='delete',
                storage_type=self.name,
                identifier=os.path.basename(path)
            ) from e

        directory, filename = os.path.split(path)
        if not filename.startswith(THUMBNAIL_PREFIX):
            thumbnail_path = os.path.join(directory, thumbnail_name(filename))
            try:
                os.remove(thumbnail_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Thumbnail delete failed", identifier=thumbnail_path, error=str(e))

        logger.info("File deleted from local storage", identifier=path)
        return True

    def get_file_info(self, identifier: str, **options) -> FileInfo:
        """
        Raises:
            StoredFileNotFoundError: If the file does not exist
        """
        path = self._absolute_path(identifier)

        try:
            stat = os.stat(path)
        except OSError as e:
            raise StoredFileNotFoundError(
                "File not found",
                operation='info',
                storage_type=self.name,
                identifier=os.path.basename(path)
            ) from e

        if not os.path.isfile(path):
            raise StoredFileNotFoundError(
                "File not found",
                operation='info',
                storage_type=self.name,
                identifier=os.path.basename(path)
            )

        filename = os.path.basename(path)
        mime_type = mime_type_for_filename(filename, self.config.allowed_mime_types)

        provider_data: Dict[str, Any] = {'path': path}
        thumbnail_path = os.path.join(os.path.dirname(path), thumbnail_name(filename))
        if os.path.isfile(thumbnail_path):
            provider_data['thumbnail_url'] = self._url_for(thumbnail_path)

        return FileInfo(
            identifier=path,
            filename=filename,
            size=stat.st_size,
            mime_type=mime_type,
            url=self._url_for(path),
            storage_type=self.name,
            created_at=_timestamp(stat.st_ctime),
            modified_at=_timestamp(stat.st_mtime),
            provider_data=provider_data,
        )

    def generate_signed_url(
        self, identifier: str, expires_in: int = 3600, operation: str = 'GET', **options
    ) -> str:
        """
        Return ``{BASE_URL}{url}``. No expiry is enforced for local files;
        ``expires_in`` and ``operation`` are accepted for interface parity.
        """
        path = self._absolute_path(identifier)
        return f"{self.config.base_url}{self._url_for(path)}"

    def file_exists(self, identifier: str) -> bool:
        try:
            return os.path.isfile(self._absolute_path(identifier))
        except Exception as e:
            logger.debug("Local file existence check failed", identifier=identifier, error=str(e))
            return False

    def validate_config(self) -> bool:
        upload_path = self.config.upload_path
        if not upload_path:
            return False
        if os.path.exists(upload_path):
            return os.path.isdir(upload_path) and os.access(upload_path, os.W_OK)
        return True

    def owns_url(self, value: str) -> bool:
        path = urlparse(value).path if '://' in value else value
        return path.startswith(f"{self.config.url_prefix}/")

    def resolve_identifier(self, value: str) -> str:
        """
        Map a previously returned URL to its filesystem path.

        Accepts ``/uploads/...`` paths and absolute URLs on any host. Anything
        else is returned unchanged and treated as a path.
        """
        value = (value or '').strip()
        path = urlparse(value).path if '://' in value else value
        prefix = f"{self.config.url_prefix}/"

        if path.startswith(prefix):
            relative = unquote(path[len(prefix):])
            return os.path.join(self.config.upload_path, *relative.split('/'))
        return value

    def get_config(self) -> Dict[str, Any]:
        return {
            'storage_type': self.name,
            'upload_path': self.config.upload_path,
            'base_url': self.config.base_url,
            'max_file_size': self.config.max_file_size,
            'allowed_mime_types': sorted(self.config.allowed_mime_types),
            'configured': self.validate_config(),
        }

    def create_upload_directories(self, upload_types: Iterable[str] = ('general',)) -> List[str]:
        """Create the base directory and one directory per upload type."""
        created = [ensure_directory_exists(self.config.upload_path)]
        for upload_type in upload_types:
            created.append(ensure_directory_exists(get_upload_path(upload_type, self.config.upload_path)))

        logger.info("Upload directories ready", directories=created)
        return created

    def _absolute_path(self, identifier: str) -> str:
        """
        Resolve an identifier or URL to an absolute path inside the upload directory.

        Relative identifiers are tried against the working directory first
        (identifiers returned by ``upload_file`` include the upload path) and
        then against the upload directory.

        Raises:
            StoredFileNotFoundError: If the identifier resolves outside the
                upload directory
        """
        if not identifier:
            raise StoredFileNotFoundError("File identifier is required", storage_type=self.name)

        native = self.resolve_identifier(identifier)
        base = self.base_path
        candidates = [os.path.realpath(native)]
        if not os.path.isabs(native):
            candidates.append(os.path.realpath(os.path.join(base, native)))

        for candidate in candidates:
            if candidate != base and os.path.commonpath([base, candidate]) == base:
                return candidate

        logger.warning("Identifier resolves outside upload directory", identifier=identifier)
        raise StoredFileNotFoundError(
            "File not found",
            operation='resolve',
            storage_type=self.name
        )

    def _url_for(self, path: str) -> str:
        relative = os.path.relpath(os.path.realpath(path), self.base_path)
        return f"{self.config.url_prefix}/{quote(relative.replace(os.sep, '/'))}"

    @staticmethod
    def _write_atomic(path: str, data: bytes) -> None:
        directory = os.path.dirname(path)
        fd, temp_path = tempfile.mkstemp(dir=directory, prefix='.upload_', suffix='.part')
        try:
            with os.fdopen(fd, 'wb') as handle:
                handle.write(data)
            os.replace(temp_path, path)
        except BaseException:
            with suppress(OSError):
                os.unlink(temp_path)
            raise
