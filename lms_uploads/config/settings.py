"""
Upload service configuration.

Reads the process-wide upload policy once from the environment (python-dotenv
``.env`` loading followed by ``os.environ``) into immutable dataclasses, and
exposes the Flask configuration classes used by the application factory.

Key Components:
- Per-provider settings (local filesystem, S3, Cloudinary) with size ceilings,
  allowed MIME types and allowed extensions
- Image optimization and thumbnail knobs
- Global validation rules (minimum size, maximum filename length)
- Upload-type contracts (``single``/``multiple``) and named-field contracts
- Environment-specific Flask configuration classes
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Optional, Type

from dotenv import load_dotenv

from lms_uploads.utils.exceptions import ConfigurationError

# Load environment variables early
load_dotenv()

MB = 1024 * 1024

STORAGE_LOCAL = 'local'
STORAGE_S3 = 's3'
STORAGE_CLOUDINARY = 'cloudinary'
STORAGE_TYPES = (STORAGE_LOCAL, STORAGE_S3, STORAGE_CLOUDINARY)

FILE_TYPE_CATEGORIES = frozenset(
    ['image', 'video', 'audio', 'document', 'archive', 'text', 'other']
)

LOCAL_ALLOWED_MIME_TYPES = frozenset([
    'image/jpeg',
    'image/png',
    'image/gif',
    'image/webp',
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'application/vnd.ms-excel',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'text/plain',
    'text/csv',
    'application/zip',
    'application/x-rar-compressed',
])

CLOUDINARY_ALLOWED_MIME_TYPES = frozenset([
    'image/jpeg',
    'image/png',
    'image/gif',
    'image/webp',
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
])

S3_ALLOWED_MIME_TYPES = CLOUDINARY_ALLOWED_MIME_TYPES | frozenset([
    'application/zip',
    'application/x-rar-compressed',
    'application/vnd.rar',
])

CLOUDINARY_ALLOWED_FORMATS = frozenset(
    ['jpg', 'jpeg', 'png', 'gif', 'webp', 'pdf', 'doc', 'docx']
)
S3_ALLOWED_FORMATS = CLOUDINARY_ALLOWED_FORMATS | frozenset(['zip', 'rar'])


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(
            f"Environment variable {name} must be an integer, got {value!r}",
            details={'variable': name}
        ) from e


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() == 'true'


@dataclass(frozen=True)
class LocalStorageSettings:
    """Filesystem provider settings."""

    upload_path: str = './uploads'
    max_file_size: int = 10 * MB
    base_url: str = 'http://localhost:8000'
    url_prefix: str = '/uploads'
    allowed_mime_types: FrozenSet[str] = LOCAL_ALLOWED_MIME_TYPES

    def __post_init__(self):
        if not self.upload_path:
            raise ConfigurationError("Local upload path cannot be empty")
        if self.max_file_size <= 0:
            raise ConfigurationError("Local max file size must be positive")

    @classmethod
    def from_env(cls) -> 'LocalStorageSettings':
        return cls(
            upload_path=_env_str('LOCAL_UPLOAD_PATH', './uploads'),
            max_file_size=_env_int('MAX_FILE_SIZE', 10 * MB),
            base_url=_env_str('BASE_URL', 'http://localhost:8000').rstrip('/'),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.upload_path)


@dataclass(frozen=True)
class S3Settings:
    """
    S3 object storage settings.

    Credentials and bucket are optional at construction time; a provider built
    from incomplete settings reports ``validate_config() == False`` and the
    orchestrator refuses to select it.
    """

    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    region: str = 'us-east-1'
    bucket_name: Optional[str] = None
    folder: str = 'maitexa'
    max_file_size: int = 10 * MB
    acl: Optional[str] = 'public-read'
    endpoint_url: Optional[str] = None
    server_side_encryption: Optional[str] = 'AES256'
    allowed_formats: FrozenSet[str] = S3_ALLOWED_FORMATS
    allowed_mime_types: FrozenSet[str] = S3_ALLOWED_MIME_TYPES

    # Connection tuning passed through to botocore
    max_pool_connections: int = 50
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    retry_max_attempts: int = 3
    retry_mode: str = 'adaptive'

    def __post_init__(self):
        if self.max_file_size <= 0:
            raise ConfigurationError("S3 max file size must be positive")
        if self.retry_mode not in ('legacy', 'standard', 'adaptive'):
            raise ConfigurationError(
                "retry_mode must be 'legacy', 'standard', or 'adaptive'"
            )

    @classmethod
    def from_env(cls) -> 'S3Settings':
        # AWS_S3_ACL=none disables the ACL for buckets with object ownership enforced
        acl = _env_str('AWS_S3_ACL', 'public-read')
        return cls(
            access_key_id=_env_str('AWS_ACCESS_KEY_ID'),
            secret_access_key=_env_str('AWS_SECRET_ACCESS_KEY'),
            session_token=_env_str('AWS_SESSION_TOKEN'),
            region=_env_str('AWS_REGION', 'us-east-1'),
            bucket_name=_env_str('AWS_S3_BUCKET_NAME'),
            folder=_env_str('AWS_S3_FOLDER', 'maitexa').strip('/'),
            max_file_size=_env_int('AWS_S3_MAX_FILE_SIZE', 10 * MB),
            acl=None if acl.lower() == 'none' else acl,
            endpoint_url=_env_str('AWS_S3_ENDPOINT_URL'),
            max_pool_connections=_env_int('AWS_MAX_POOL_CONNECTIONS', 50),
            retry_max_attempts=_env_int('AWS_RETRY_MAX_ATTEMPTS', 3),
            retry_mode=_env_str('AWS_RETRY_MODE', 'adaptive'),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.bucket_name)


@dataclass(frozen=True)
class CloudinarySettings:
    """Cloudinary CDN-image service settings."""

    cloud_name: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    folder: str = 'maitexa'
    max_file_size: int = 10 * MB
    allowed_formats: FrozenSet[str] = CLOUDINARY_ALLOWED_FORMATS
    allowed_mime_types: FrozenSet[str] = CLOUDINARY_ALLOWED_MIME_TYPES
    transformation: Dict[str, Any] = field(
        default_factory=lambda: {'quality': 'auto', 'fetch_format': 'auto'}
    )
    secure: bool = True

    def __post_init__(self):
        if self.max_file_size <= 0:
            raise ConfigurationError("Cloudinary max file size must be positive")

    @classmethod
    def from_env(cls) -> 'CloudinarySettings':
        return cls(
            cloud_name=_env_str('CLOUDINARY_CLOUD_NAME'),
            api_key=_env_str('CLOUDINARY_API_KEY'),
            api_secret=_env_str('CLOUDINARY_API_SECRET'),
            folder=_env_str('CLOUDINARY_FOLDER', 'maitexa').strip('/'),
            max_file_size=_env_int('CLOUDINARY_MAX_FILE_SIZE', 10 * MB),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    @property
    def credentials(self) -> Dict[str, Optional[str]]:
        return {
            'cloud_name': self.cloud_name,
            'api_key': self.api_key,
            'api_secret': self.api_secret,
        }


@dataclass(frozen=True)
class ImageSettings:
    optimization_enabled: bool = False
    quality: int = 80
    max_width: int = 1920
    max_height: int = 1080
    thumbnails_enabled: bool = False
    thumbnail_width: int = 300
    thumbnail_height: int = 300

    def __post_init__(self):
        if not 1 <= self.quality <= 100:
            raise ConfigurationError("Image quality must be between 1 and 100")
        if min(self.max_width, self.max_height, self.thumbnail_width, self.thumbnail_height) <= 0:
            raise ConfigurationError("Image dimensions must be positive")

    @classmethod
    def from_env(cls) -> 'ImageSettings':
        return cls(
            optimization_enabled=_env_bool('ENABLE_IMAGE_OPTIMIZATION'),
            quality=_env_int('IMAGE_QUALITY', 80),
            max_width=_env_int('MAX_IMAGE_WIDTH', 1920),
            max_height=_env_int('MAX_IMAGE_HEIGHT', 1080),
            thumbnails_enabled=_env_bool('GENERATE_THUMBNAILS'),
            thumbnail_width=_env_int('THUMBNAIL_WIDTH', 300),
            thumbnail_height=_env_int('THUMBNAIL_HEIGHT', 300),
        )


@dataclass(frozen=True)
class ValidationSettings:
    max_filename_length: int = 255
    min_file_size: int = 1024
    virus_scan_enabled: bool = False
    duplicate_check_enabled: bool = False

    @classmethod
    def from_env(cls) -> 'ValidationSettings':
        return cls(
            virus_scan_enabled=_env_bool('VIRUS_SCAN_ENABLED'),
            duplicate_check_enabled=_env_bool('DUPLICATE_CHECK_ENABLED'),
        )


@dataclass(frozen=True)
class UploadTypeContract:
    """Form field name and maximum file count for an upload type."""

    field_name: str
    max_count: int


@dataclass(frozen=True)
class NamedFieldContract:
    """Maximum file count and allowed file-type categories for a named field."""

    max_count: int
    allowed_types: FrozenSet[str] = FILE_TYPE_CATEGORIES

    def __post_init__(self):
        if self.max_count < 1:
            raise ConfigurationError("Named field max_count must be at least 1")
        unknown = set(self.allowed_types) - FILE_TYPE_CATEGORIES
        if unknown:
            raise ConfigurationError(
                f"Unknown file type categories: {sorted(unknown)}"
            )


def default_upload_types() -> Dict[str, UploadTypeContract]:
    return {
        'single': UploadTypeContract(field_name='file', max_count=1),
        'multiple': UploadTypeContract(field_name='files', max_count=10),
    }


def default_named_fields() -> Dict[str, NamedFieldContract]:
    return {
        'profile': NamedFieldContract(max_count=1, allowed_types=frozenset(['image'])),
        'resume': NamedFieldContract(max_count=1, allowed_types=frozenset(['document'])),
        'certificate': NamedFieldContract(
            max_count=5, allowed_types=frozenset(['image', 'document'])
        ),
        'assignment': NamedFieldContract(
            max_count=10, allowed_types=frozenset(['document', 'archive'])
        ),
    }


@dataclass(frozen=True)
class UploadSettings:
    """
    Process-wide upload policy.

    Built once at start-up and treated as read-only for the lifetime of the
    process. Lookups keyed by storage type fall back to the local settings for
    unknown names, which keeps validation usable before a provider is selected.
    """

    default_storage: str = STORAGE_LOCAL
    local: LocalStorageSettings = field(default_factory=LocalStorageSettings)
    s3: S3Settings = field(default_factory=S3Settings)
    cloudinary: CloudinarySettings = field(default_factory=CloudinarySettings)
    image: ImageSettings = field(default_factory=ImageSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    upload_types: Dict[str, UploadTypeContract] = field(default_factory=default_upload_types)
    named_fields: Dict[str, NamedFieldContract] = field(default_factory=default_named_fields)
    upload_concurrency: int = 1

    def __post_init__(self):
        if self.default_storage not in STORAGE_TYPES:
            raise ConfigurationError(
                f"DEFAULT_STORAGE must be one of {', '.join(STORAGE_TYPES)}",
                details={'default_storage': self.default_storage}
            )
        if self.upload_concurrency < 1:
            raise ConfigurationError("UPLOAD_CONCURRENCY must be at least 1")

    @classmethod
    def from_env(cls) -> 'UploadSettings':
        """
        Build settings from environment variables.

        Returns:
            UploadSettings populated from ``os.environ``

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        return cls(
            default_storage=_env_str('DEFAULT_STORAGE', STORAGE_LOCAL).lower(),
            local=LocalStorageSettings.from_env(),
            s3=S3Settings.from_env(),
            cloudinary=CloudinarySettings.from_env(),
            image=ImageSettings.from_env(),
            validation=ValidationSettings.from_env(),
            upload_concurrency=_env_int('UPLOAD_CONCURRENCY', 1),
        )

    def provider_settings(self, storage_type: Optional[str]):
        if storage_type == STORAGE_S3:
            return self.s3
        if storage_type == STORAGE_CLOUDINARY:
            return self.cloudinary
        return self.local

    def max_file_size_for(self, storage_type: Optional[str]) -> int:
        return self.provider_settings(storage_type).max_file_size

    def allowed_mime_types_for(self, storage_type: Optional[str]) -> FrozenSet[str]:
        return self.provider_settings(storage_type).allowed_mime_types

    def allowed_formats_for(self, storage_type: Optional[str]) -> Optional[FrozenSet[str]]:
        """Allowed extensions, or ``None`` when the provider does not restrict them."""
        return getattr(self.provider_settings(storage_type), 'allowed_formats', None)


@lru_cache(maxsize=1)
def get_upload_settings() -> UploadSettings:
    """Return the process-wide settings, reading the environment on first use."""
    return UploadSettings.from_env()


class BaseConfig:
    """
    Base Flask configuration shared by all environments.
    """

    SECRET_KEY = os.getenv('SECRET_KEY', os.urandom(32).hex())

    APP_NAME = os.getenv('APP_NAME', 'LMS File Uploads')
    APP_VERSION = os.getenv('APP_VERSION', '1.0.0')
    FLASK_ENV = os.getenv('FLASK_ENV', 'development')

    # Ten files at the largest provider ceiling plus multipart overhead
    MAX_CONTENT_LENGTH = int(os.getenv('MAX_CONTENT_LENGTH', str(110 * MB)))

    JSON_SORT_KEYS = False

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')

    # Overridable by tests; ``None`` means build from the environment
    UPLOAD_SETTINGS: Optional[UploadSettings] = None

    DEBUG = False
    TESTING = False


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'DEBUG')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'console')


class TestingConfig(BaseConfig):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    LOG_LEVEL = 'WARNING'
    LOG_FORMAT = 'console'


class ProductionConfig(BaseConfig):
    LOG_FORMAT = 'json'


config_by_name: Dict[str, Type[BaseConfig]] = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(config_name: Optional[str] = None) -> Type[BaseConfig]:
    """
    Resolve a Flask configuration class by environment name.

    Args:
        config_name: ``development``, ``testing`` or ``production``; defaults
            to ``FLASK_ENV``

    Returns:
        Configuration class

    Raises:
        ConfigurationError: For an unknown environment name
    """
    name = (config_name or os.getenv('FLASK_ENV', 'development')).lower()
    try:
        return config_by_name[name]
    except KeyError as e:
        raise ConfigurationError(
            f"Unknown configuration environment: {name}",
            details={'available': sorted(config_by_name)}
        ) from e
