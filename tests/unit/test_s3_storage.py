"""
Unit tests for the S3 storage provider.

S3 is emulated in-process with moto's ``mock_aws``; the provider builds its own
boto3 client lazily, inside the mocked context.
"""

from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import ClientError

from lms_uploads.config.settings import S3Settings, UploadSettings
from lms_uploads.storage.base import FileUpload, UploadOptions
from lms_uploads.storage.s3 import S3StorageProvider
from lms_uploads.utils.exceptions import StoredFileNotFoundError, UploadFailedError, ValidationError
from lms_uploads.utils.file_utils import compute_file_hash

TEST_BUCKET = 'test-uploads-bucket'


@pytest.fixture
def s3_provider(s3_client, s3_settings):
    return S3StorageProvider(s3_settings)


@pytest.mark.unit
class TestS3Upload:
    """Putting objects and thumbnails."""

    def test_document_upload(self, s3_provider, s3_client, pdf_upload):
        result = s3_provider.upload_file(pdf_upload, UploadOptions(upload_type='resume', metadata={'entity-id': '42'}))

        assert result.success is True
        assert result.storage_type == 's3'
        assert result.identifier == f"maitexa/resume/{result.filename}"
        assert result.url == (
            f"https://{TEST_BUCKET}.s3.us-east-1.amazonaws.com/maitexa/resume/{result.filename}"
        )
        assert result.hash == compute_file_hash(pdf_upload.content)
        assert result.provider_data['bucket'] == TEST_BUCKET

        head = s3_client.head_object(Bucket=TEST_BUCKET, Key=result.identifier)
        assert head['ContentType'] == 'application/pdf'
        assert head['ContentLength'] == pdf_upload.size
        assert head['Metadata']['upload-type'] == 'resume'
        assert head['Metadata']['file-hash'] == result.hash
        assert head['Metadata']['entity-id'] == '42'
        assert head['Metadata']['original-name'] == 'course report.pdf'

    def test_image_thumbnail_object(self, s3_provider, s3_client, image_upload):
        result = s3_provider.upload_file(image_upload)

        assert result.thumbnail_identifier == f"maitexa/general/thumb_{result.filename}"
        assert result.thumbnail_url.endswith(result.thumbnail_identifier)
        head = s3_client.head_object(Bucket=TEST_BUCKET, Key=result.thumbnail_identifier)
        assert head['ContentType'] == 'image/jpeg'

    def test_rejects_format_not_allowed_for_s3(self, s3_provider, pdf_bytes):
        upload = FileUpload(pdf_bytes, 'notes.txt', 'text/plain')

        with pytest.raises(ValidationError) as exc_info:
            s3_provider.upload_file(upload)
        assert exc_info.value.code == 'UNSUPPORTED_FILE_TYPE'

    def test_missing_bucket_raises_upload_failed(self, s3_client, s3_settings, pdf_upload):
        settings = replace(s3_settings, s3=replace(s3_settings.s3, bucket_name='missing-bucket'))
        provider = S3StorageProvider(settings)

        with pytest.raises(UploadFailedError) as exc_info:
            provider.upload_file(pdf_upload)
        assert isinstance(exc_info.value.__cause__, ClientError)


@pytest.mark.unit
class TestS3FileOperations:

    @pytest.fixture
    def stored(self, s3_provider, image_upload):
        return s3_provider.upload_file(image_upload)

    def test_delete_by_url_is_idempotent(self, s3_provider, stored):
        assert s3_provider.delete_file(stored.url) is True
        assert s3_provider.delete_file(stored.url) is False
        assert s3_provider.file_exists(stored.url) is False

    def test_delete_removes_thumbnail(self, s3_provider, s3_client, stored):
        s3_provider.delete_file(stored.identifier)

        with pytest.raises(ClientError):
            s3_client.head_object(Bucket=TEST_BUCKET, Key=stored.thumbnail_identifier)

    def test_get_file_info(self, s3_provider, stored):
        info = s3_provider.get_file_info(stored.url)

        assert info.identifier == stored.identifier
        assert info.filename == stored.filename
        assert info.size == stored.size
        assert info.mime_type == 'image/png'
        assert info.url == stored.url
        assert info.provider_data['metadata']['upload-type'] == 'general'

    def test_get_file_info_missing(self, s3_provider):
        with pytest.raises(StoredFileNotFoundError):
            s3_provider.get_file_info('maitexa/general/missing.pdf')

    def test_signed_url(self, s3_provider, stored):
        url = s3_provider.generate_signed_url(stored.identifier, expires_in=600)

        assert stored.identifier in url
        assert 'X-Amz-Signature=' in url
        assert 'X-Amz-Expires=600' in url

    def test_signed_url_download_name(self, s3_provider, stored):
        url = s3_provider.generate_signed_url(stored.identifier, download_name='course report (final).pdf')
        query = parse_qs(urlparse(url).query)

        assert query['response-content-disposition'] == ['attachment; filename="course_report_final_.pdf"']

    def test_upload_url_ignores_download_name(self, s3_provider):
        url = s3_provider.generate_signed_url('maitexa/a.pdf', operation='PUT', download_name='a.pdf')

        assert 'response-content-disposition' not in url

    @pytest.mark.parametrize('expires_in', [0, 604801])
    def test_signed_url_rejects_expiry(self, s3_provider, expires_in):
        with pytest.raises(ValidationError):
            s3_provider.generate_signed_url('maitexa/a.pdf', expires_in=expires_in)

    def test_signed_url_rejects_operation(self, s3_provider):
        with pytest.raises(ValidationError):
            s3_provider.generate_signed_url('maitexa/a.pdf', operation='POST')

    def test_list_files(self, s3_provider, stored):
        listing = s3_provider.list_files('general')

        keys = [item['key'] for item in listing['files']]
        assert stored.identifier in keys
        assert stored.thumbnail_identifier in keys
        assert listing['is_truncated'] is False

    def test_list_files_rejects_page_size(self, s3_provider):
        with pytest.raises(ValidationError):
            s3_provider.list_files(max_keys=0)


@pytest.mark.unit
class TestS3Identifiers:
    """URL recognition and key resolution; no S3 calls."""

    @pytest.fixture
    def provider(self, s3_settings):
        return S3StorageProvider(s3_settings, client=object())

    @pytest.mark.parametrize('url, key', [
        (f"https://{TEST_BUCKET}.s3.us-east-1.amazonaws.com/maitexa/general/a.pdf", 'maitexa/general/a.pdf'),
        (f"https://{TEST_BUCKET}.s3.amazonaws.com/maitexa/general/a%20b.pdf", 'maitexa/general/a b.pdf'),
        (f"https://s3.us-east-1.amazonaws.com/{TEST_BUCKET}/maitexa/x.pdf", 'maitexa/x.pdf'),
        ('maitexa/general/a.pdf', 'maitexa/general/a.pdf'),
    ])
    def test_resolve_identifier(self, provider, url, key):
        assert provider.resolve_identifier(url) == key

    def test_foreign_url_returned_unchanged(self, provider):
        url = 'https://res.cloudinary.com/demo/image/upload/v1/a.png'
        assert provider.resolve_identifier(url) == url

    def test_owns_url(self, provider):
        assert provider.owns_url(f"https://{TEST_BUCKET}.s3.us-east-1.amazonaws.com/a.pdf") is True
        assert provider.owns_url('https://s3-eu-west-1.amazonaws.com/bucket/a.pdf') is True
        assert provider.owns_url('https://res.cloudinary.com/demo/image/upload/a.png') is False
        assert provider.owns_url('/uploads/general/a.pdf') is False

    def test_custom_endpoint(self, s3_settings):
        settings = replace(s3_settings, s3=replace(s3_settings.s3, endpoint_url='http://localhost:9000'))
        provider = S3StorageProvider(settings, client=object())

        url = provider.url_for_key('maitexa/general/a.pdf')
        assert url == f"http://localhost:9000/{TEST_BUCKET}/maitexa/general/a.pdf"
        assert provider.owns_url(url) is True
        assert provider.resolve_identifier(url) == 'maitexa/general/a.pdf'

    def test_validate_config(self, provider):
        assert provider.validate_config() is True
        assert S3StorageProvider(UploadSettings(s3=S3Settings())).validate_config() is False

    def test_get_config_hides_credentials(self, provider):
        config = provider.get_config()

        assert config['bucket'] == TEST_BUCKET
        assert config['configured'] is True
        assert 'testing' not in str(config)
