"""Configuration: environment-driven upload settings, Flask config classes and AWS clients."""

from lms_uploads.config.settings import (
    BaseConfig,
    CloudinarySettings,
    DevelopmentConfig,
    ImageSettings,
    LocalStorageSettings,
    NamedFieldContract,
    ProductionConfig,
    S3Settings,
    TestingConfig,
    UploadSettings,
    UploadTypeContract,
    ValidationSettings,
    get_config,
    get_upload_settings,
)

__all__ = [
    'BaseConfig',
    'CloudinarySettings',
    'DevelopmentConfig',
    'ImageSettings',
    'LocalStorageSettings',
    'NamedFieldContract',
    'ProductionConfig',
    'S3Settings',
    'TestingConfig',
    'UploadSettings',
    'UploadTypeContract',
    'ValidationSettings',
    'get_config',
    'get_upload_settings',
]
