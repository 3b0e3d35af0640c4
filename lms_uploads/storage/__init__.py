"""
Storage providers and the registry mapping provider names to factories.

New backends are added by registering a factory here; the orchestrator only
ever looks providers up by name.
"""

from typing import Callable, Dict

from lms_uploads.config.settings import UploadSettings
from lms_uploads.storage.base import (
    FileInfo,
    FileUpload,
    StorageProvider,
    UploadOptions,
    UploadResult,
)
from lms_uploads.storage.cloudinary import CloudinaryStorageProvider
from lms_uploads.storage.local import LocalStorageProvider
from lms_uploads.storage.s3 import S3StorageProvider

ProviderFactory = Callable[[UploadSettings], StorageProvider]

PROVIDER_FACTORIES: Dict[str, ProviderFactory] = {
    LocalStorageProvider.name: LocalStorageProvider,
    S3StorageProvider.name: S3StorageProvider,
    CloudinaryStorageProvider.name: CloudinaryStorageProvider,
}


def build_providers(settings: UploadSettings) -> Dict[str, StorageProvider]:
    """Instantiate every registered provider. Construction performs no I/O."""
    return {name: factory(settings) for name, factory in PROVIDER_FACTORIES.items()}


__all__ = [
    'PROVIDER_FACTORIES',
    'build_providers',
    'CloudinaryStorageProvider',
    'FileInfo',
    'FileUpload',
    'LocalStorageProvider',
    'S3StorageProvider',
    'StorageProvider',
    'UploadOptions',
    'UploadResult',
]
