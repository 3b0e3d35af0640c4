"""
Global pytest configuration and fixtures.

Provides isolated upload settings rooted in a temporary directory, Pillow
generated images, provider and orchestrator instances, moto-backed S3 and the
Flask test client.
"""

import io
import os
from typing import Callable, Tuple

import boto3
import pytest
from moto import mock_aws
from PIL import Image

from lms_uploads.app import create_app
from lms_uploads.config.settings import (
    MB,
    CloudinarySettings,
    ImageSettings,
    LocalStorageSettings,
    S3Settings,
    UploadSettings,
    get_upload_settings,
)
from lms_uploads.services.file_upload_service import FileUploadService
from lms_uploads.storage import build_providers
from lms_uploads.storage.base import FileUpload
from lms_uploads.storage.local import LocalStorageProvider

UPLOAD_ENV_VARS = (
    'DEFAULT_STORAGE', 'LOCAL_UPLOAD_PATH', 'MAX_FILE_SIZE', 'BASE_URL',
    'AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY', 'AWS_SESSION_TOKEN', 'AWS_REGION',
    'AWS_S3_BUCKET_NAME', 'AWS_S3_FOLDER', 'AWS_S3_MAX_FILE_SIZE', 'AWS_S3_ACL',
    'AWS_S3_ENDPOINT_URL', 'CLOUDINARY_CLOUD_NAME', 'CLOUDINARY_API_KEY',
    'CLOUDINARY_API_SECRET', 'CLOUDINARY_FOLDER', 'CLOUDINARY_MAX_FILE_SIZE',
    'ENABLE_IMAGE_OPTIMIZATION', 'IMAGE_QUALITY', 'MAX_IMAGE_WIDTH', 'MAX_IMAGE_HEIGHT',
    'GENERATE_THUMBNAILS', 'THUMBNAIL_WIDTH', 'THUMBNAIL_HEIGHT', 'UPLOAD_CONCURRENCY',
    'VIRUS_SCAN_ENABLED', 'DUPLICATE_CHECK_ENABLED',
)

TEST_BUCKET = 'test-uploads-bucket'


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests with isolated component testing")
    config.addinivalue_line("markers", "integration: Tests exercising the Flask application stack")


@pytest.fixture(autouse=True)
def reset_settings_cache():
    get_upload_settings.cache_clear()
    yield
    get_upload_settings.cache_clear()


@pytest.fixture
def clean_upload_env(monkeypatch):
    """Remove every upload-related environment variable."""
    for name in UPLOAD_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    """
    Factory producing encoded noise images.

    Noise keeps even small images above the 1 KB minimum upload size.
    """

    def factory(size: Tuple[int, int] = (64, 64), fmt: str = 'PNG', mode: str = 'RGB') -> bytes:
        width, height = size
        image = Image.frombytes(mode, size, os.urandom(width * height * len(mode)))
        buffer = io.BytesIO()
        save_kwargs = {'quality': 95} if fmt == 'JPEG' else {}
        image.save(buffer, format=fmt, **save_kwargs)
        return buffer.getvalue()

    return factory


@pytest.fixture
def pdf_bytes() -> bytes:
    return b'%PDF-1.4\n' + b'%' * 4096 + b'\n%%EOF\n'


@pytest.fixture
def pdf_upload(pdf_bytes) -> FileUpload:
    return FileUpload(content=pdf_bytes, original_name='course report.pdf', mime_type='application/pdf')


@pytest.fixture
def image_upload(make_image) -> FileUpload:
    return FileUpload(content=make_image((400, 200)), original_name='avatar.png', mime_type='image/png')


@pytest.fixture
def upload_root(tmp_path) -> str:
    return str(tmp_path / 'uploads')


@pytest.fixture
def upload_settings(upload_root) -> UploadSettings:
    """Local-only settings with image optimization and thumbnails enabled."""
    return UploadSettings(
        local=LocalStorageSettings(upload_path=upload_root, base_url='http://files.test'),
        image=ImageSettings(
            optimization_enabled=True,
            max_width=200,
            max_height=200,
            thumbnails_enabled=True,
            thumbnail_width=50,
            thumbnail_height=50,
        ),
    )


@pytest.fixture
def local_provider(upload_settings) -> LocalStorageProvider:
    return LocalStorageProvider(upload_settings)


@pytest.fixture
def upload_service(upload_settings) -> FileUploadService:
    return FileUploadService(build_providers(upload_settings), 'local', upload_settings)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.delenv('AWS_PROFILE', raising=False)


@pytest.fixture
def s3_settings(upload_root) -> UploadSettings:
    return UploadSettings(
        local=LocalStorageSettings(upload_path=upload_root),
        s3=S3Settings(
            access_key_id='testing',
            secret_access_key='testing',
            region='us-east-1',
            bucket_name=TEST_BUCKET,
            folder='maitexa',
            acl=None,
            max_file_size=5 * MB,
        ),
        image=ImageSettings(thumbnails_enabled=True, thumbnail_width=40, thumbnail_height=40),
    )


@pytest.fixture
def s3_client(aws_credentials):
    with mock_aws():
        client = boto3.client('s3', region_name='us-east-1')
        client.create_bucket(Bucket=TEST_BUCKET)
        yield client


@pytest.fixture
def cloudinary_settings(upload_root) -> UploadSettings:
    return UploadSettings(
        local=LocalStorageSettings(upload_path=upload_root),
        cloudinary=CloudinarySettings(cloud_name='demo', api_key='key', api_secret='secret'),
        image=ImageSettings(thumbnails_enabled=True, thumbnail_width=300, thumbnail_height=300),
    )


@pytest.fixture
def app(upload_service):
    return create_app('testing', upload_service=upload_service)


@pytest.fixture
def client(app):
    return app.test_client()
