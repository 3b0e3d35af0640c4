"""
Upload orchestrator.

``FileUploadService`` is built once from validated settings with an explicit
map of named storage providers and is shared by all request handlers. It
selects providers, enforces the upload-type and named-field contracts, and
aggregates per-file outcomes into partial-failure results.

Key Features:
- Default provider fallback to ``local`` decided once at construction
- Fail-fast ``ProviderNotConfiguredError`` for an explicitly requested provider
- Pre-validation of single uploads before any provider call
- ``TooManyFilesError`` for oversized batches before any provider call
- Independent named-field processing with per-file failure results
- Provider detection from URL shape with an explicit local fallback
"""

from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from lms_uploads.config.settings import STORAGE_LOCAL, NamedFieldContract, UploadSettings, get_upload_settings
from lms_uploads.monitoring.metrics import storage_providers_configured, validation_failures_total
from lms_uploads.storage import build_providers
from lms_uploads.storage.base import FileInfo, FileUpload, StorageProvider, UploadOptions, UploadResult
from lms_uploads.utils.exceptions import (
    FieldCountExceededError,
    ProviderNotConfiguredError,
    StoredFileNotFoundError,
    TooManyFilesError,
    UnsupportedFileTypeError,
    ValidationError,
)
from lms_uploads.utils.file_utils import classify_file_type, validate_upload, validate_upload_type

logger = structlog.get_logger(__name__)


class FileUploadService:
    """
    Orchestrates uploads across interchangeable storage providers.

    Args:
        providers: Provider instances keyed by name; must include ``local``
        default_storage: Provider used when a call names none
        settings: Upload settings
    """

    def __init__(
        self,
        providers: Mapping[str, StorageProvider],
        default_storage: Optional[str] = None,
        settings: Optional[UploadSettings] = None
    ):
        self.settings = settings or get_upload_settings()
        self.providers: Dict[str, StorageProvider] = dict(providers)

        if STORAGE_LOCAL not in self.providers:
            raise ProviderNotConfiguredError(
                "The local storage provider must always be registered",
                storage_type=STORAGE_LOCAL
            )

        requested_default = default_storage or self.settings.default_storage
        default_provider = self.providers.get(requested_default)
        if default_provider is None or not default_provider.validate_config():
            logger.warning(
                "Default storage is not properly configured, falling back to local storage",
                requested_default=requested_default
            )
            requested_default = STORAGE_LOCAL
        self.default_storage = requested_default

        available = self._configured_names()
        for name in self.providers:
            storage_providers_configured.labels(storage_type=name).set(1 if name in available else 0)

        if self.settings.validation.virus_scan_enabled:
            logger.warning("Virus scanning is enabled in configuration but not implemented")
        if self.settings.validation.duplicate_check_enabled:
            logger.warning("Duplicate checking is enabled in configuration but not implemented")

        logger.info(
            "File upload service initialized",
            available_storage=available,
            default_storage=self.default_storage
        )

    def _configured_names(self) -> List[str]:
        return [name for name, provider in self.providers.items() if provider.validate_config()]

    def select_provider(self, storage_type: Optional[str] = None) -> StorageProvider:
        """
        Resolve a provider by name, or the default provider.

        Raises:
            ProviderNotConfiguredError: If the named provider is unknown or its
                configuration is incomplete
        """
        name = storage_type or self.default_storage
        provider = self.providers.get(name)

        if provider is None:
            raise ProviderNotConfiguredError(
                f"Storage service '{name}' not found",
                storage_type=name,
                http_status=400
            )

        if not provider.validate_config():
            raise ProviderNotConfiguredError(
                f"Storage service '{name}' is not properly configured",
                storage_type=name
            )

        return provider

    def upload_single(self, upload: FileUpload, options: Optional[UploadOptions] = None) -> UploadResult:
        """
        Upload one file.

        The file is validated against the selected provider's limits before the
        provider is called; validation and provider errors propagate.
        """
        options = options or UploadOptions()
        provider = self.select_provider(options.storage_type)

        validate_upload(upload.size, upload.original_name, upload.mime_type, provider.name, self.settings)
        return provider.upload_file(upload, options)

    def upload_multiple(
        self, uploads: Sequence[FileUpload], options: Optional[UploadOptions] = None
    ) -> List[UploadResult]:
        """
        Upload a batch of files with per-file failure isolation.

        Returns:
            One result per input file, in input order

        Raises:
            ValidationError: If no files were supplied
            TooManyFilesError: If the batch exceeds the ``multiple`` contract
            ProviderNotConfiguredError: If the provider cannot be selected
        """
        options = options or UploadOptions()
        contract = validate_upload_type('multiple', settings=self.settings)

        if not uploads:
            raise ValidationError("No files uploaded")

        if len(uploads) > contract.max_count:
            validation_failures_total.labels(reason=TooManyFilesError.default_code).inc()
            raise TooManyFilesError(
                f"Too many files. Maximum {contract.max_count} files allowed",
                max_count=contract.max_count,
                file_count=len(uploads)
            )

        provider = self.select_provider(options.storage_type)
        results = provider.upload_multiple_files(uploads, options)

        logger.info(
            "Multiple file upload completed",
            storage_type=provider.name,
            total=len(results),
            succeeded=sum(1 for result in results if result.success)
        )
        return results

    def upload_named(
        self,
        files_by_field: Mapping[str, Sequence[FileUpload]],
        options: Optional[UploadOptions] = None,
        contracts: Optional[Mapping[str, NamedFieldContract]] = None
    ) -> Dict[str, List[UploadResult]]:
        """
        Upload files grouped by named form field.

        Each field is checked against its contract: files beyond the field's
        ``max_count`` fail with ``FIELD_COUNT_EXCEEDED`` and files whose type
        category is not allowed fail with ``UNSUPPORTED_FILE_TYPE``. Failures
        are returned as results tagged with the field; fields never affect one
        another. Fields without a contract are skipped. The field name is used
        as the upload type.

        Args:
            files_by_field: Files keyed by form field name
            options: Upload options shared by every field
            contracts: Field contracts, defaults to the configured ones

        Returns:
            Results per field, in input order within each field
        """
        options = options or UploadOptions()
        contracts = contracts if contracts is not None else self.settings.named_fields
        provider = self.select_provider(options.storage_type)

        results: Dict[str, List[UploadResult]] = {}
        for field_name, uploads in files_by_field.items():
            contract = contracts.get(field_name)
            if contract is None:
                logger.warning("Skipping files for unknown named field", field=field_name, count=len(uploads))
                continue

            results[field_name] = self._upload_field(
                provider, field_name, list(uploads), contract, replace(options, upload_type=field_name)
            )

        return results

    def _upload_field(
        self,
        provider: StorageProvider,
        field_name: str,
        uploads: List[FileUpload],
        contract: NamedFieldContract,
        options: UploadOptions
    ) -> List[UploadResult]:
        field_results: List[Optional[UploadResult]] = [None] * len(uploads)
        accepted: List[int] = []

        for index, upload in enumerate(uploads):
            if index >= contract.max_count:
                validation_failures_total.labels(reason=FieldCountExceededError.default_code).inc()
                error = FieldCountExceededError(
                    f"Too many files for field '{field_name}'. Maximum {contract.max_count} allowed",
                    max_count=contract.max_count,
                    file_count=len(uploads),
                    field=field_name
                )
                field_results[index] = UploadResult.from_error(upload, error, provider.name, field_name)
                continue

            category = classify_file_type(upload.mime_type)
            if category not in contract.allowed_types:
                validation_failures_total.labels(reason=UnsupportedFileTypeError.default_code).inc()
                error = UnsupportedFileTypeError(
                    f"File type {category} not allowed for field '{field_name}'",
                    filename=upload.original_name,
                    content_type=upload.mime_type,
                    details={'field': field_name, 'allowed_types': sorted(contract.allowed_types)}
                )
                field_results[index] = UploadResult.from_error(upload, error, provider.name, field_name)
                continue

            accepted.append(index)

        if accepted:
            uploaded = provider.upload_multiple_files([uploads[i] for i in accepted], options)
            for index, result in zip(accepted, uploaded):
                result.field = field_name
                field_results[index] = result

        return [result for result in field_results if result is not None]

    def detect_storage_type(self, file_id: str) -> str:
        """
        Determine which provider issued ``file_id`` from its URL shape.

        Every non-local provider's URL recogniser is tried; anything
        unrecognised is attributed to the local provider.
        """
        for name, provider in self.providers.items():
            if name != STORAGE_LOCAL and provider.owns_url(file_id):
                return name

        logger.debug("No provider recognised identifier, using local storage", file_id=file_id)
        return STORAGE_LOCAL

    def _provider_for(self, file_id: str, storage_type: Optional[str]) -> StorageProvider:
        return self.select_provider(storage_type or self.detect_storage_type(file_id))

    def delete_file(self, file_id: str, storage_type: Optional[str] = None, **options) -> bool:
        """
        Delete a file by native identifier or URL.

        Repeated deletes are safe: a missing file yields ``False``.
        """
        if not file_id:
            raise ValidationError("File ID is required")

        provider = self._provider_for(file_id, storage_type)
        try:
            return provider.delete_file(file_id, **options)
        except StoredFileNotFoundError:
            return False

    def get_file_info(self, file_id: str, storage_type: Optional[str] = None, **options) -> FileInfo:
        if not file_id:
            raise ValidationError("File ID is required")
        return self._provider_for(file_id, storage_type).get_file_info(file_id, **options)

    def generate_signed_url(
        self,
        file_id: str,
        storage_type: Optional[str] = None,
        expires_in: int = 3600,
        operation: str = 'GET',
        **options
    ) -> str:
        if not file_id:
            raise ValidationError("File ID is required")
        provider = self._provider_for(file_id, storage_type)
        return provider.generate_signed_url(file_id, expires_in=expires_in, operation=operation, **options)

    def file_exists(self, file_id: str, storage_type: Optional[str] = None) -> bool:
        """Never raises; any failure is reported as ``False``."""
        if not file_id:
            return False
        try:
            return self._provider_for(file_id, storage_type).file_exists(file_id)
        except Exception as e:
            logger.debug("File existence check failed", file_id=file_id, error=str(e))
            return False

    def get_available_storage_services(self) -> List[str]:
        return self._configured_names()

    def get_storage_config(self, storage_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Public, secret-free configuration of one provider.

        Raises:
            ProviderNotConfiguredError: For an unknown provider name
        """
        name = storage_type or self.default_storage
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderNotConfiguredError(
                f"Storage service '{name}' not found",
                storage_type=name,
                http_status=400
            )
        return provider.get_config()

    def create_upload_directories(self, upload_types: Optional[Sequence[str]] = None) -> List[str]:
        """Create local upload directories for ``general`` and every named field."""
        if upload_types is None:
            upload_types = ['general', *self.settings.named_fields]

        local = self.providers[STORAGE_LOCAL]
        if not local.validate_config():
            logger.warning("Local storage is not configured, skipping directory creation")
            return []
        return local.create_upload_directories(upload_types)

    def health_check(self) -> Dict[str, Any]:
        """
        Report provider configuration state.

        Status is ``healthy`` when the default provider is configured and
        ``degraded`` otherwise.
        """
        available = self._configured_names()
        status = 'healthy' if self.default_storage in available else 'degraded'
        return {
            'status': status,
            'default_storage': self.default_storage,
            'available_storage': available,
            'providers': {
                name: {'configured': name in available}
                for name in self.providers
            },
        }


def create_file_upload_service(settings: Optional[UploadSettings] = None) -> FileUploadService:
    """Build the orchestrator with every registered provider."""
    settings = settings or get_upload_settings()
    return FileUploadService(build_providers(settings), settings.default_storage, settings)
