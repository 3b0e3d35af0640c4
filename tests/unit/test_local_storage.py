"""
Unit tests for the local filesystem storage provider.

Every test writes under pytest's ``tmp_path`` through the ``upload_settings``
fixture; nothing touches the working directory.
"""

import os
import re
from unittest.mock import patch

import pytest

from lms_uploads.storage.base import FileUpload, StorageProvider, UploadOptions
from lms_uploads.utils.exceptions import StoredFileNotFoundError, UploadFailedError, ValidationError
from lms_uploads.utils.file_utils import compute_file_hash


@pytest.mark.unit
class TestLocalUpload:
    """Writing files and thumbnails."""

    def test_document_upload(self, local_provider, pdf_upload, upload_root):
        result = local_provider.upload_file(pdf_upload)

        assert result.success is True
        assert result.storage_type == 'local'
        assert result.upload_type == 'general'
        assert result.original_name == 'course report.pdf'
        assert re.match(r'^\d{13}_[a-z0-9]{8}_course_report\.pdf$', result.filename)
        assert result.url == f"/uploads/general/{result.filename}"
        assert result.identifier == os.path.join(upload_root, 'general', result.filename)
        assert result.thumbnail_url is None
        assert result.hash == compute_file_hash(pdf_upload.content)
        assert result.size == pdf_upload.size

        with open(result.identifier, 'rb') as handle:
            assert handle.read() == pdf_upload.content

    def test_upload_type_namespaces_directory(self, local_provider, pdf_upload, upload_root):
        result = local_provider.upload_file(pdf_upload, UploadOptions(upload_type='resume'))

        assert result.url.startswith('/uploads/resume/')
        assert os.path.isfile(os.path.join(upload_root, 'resume', result.filename))

    def test_image_gets_thumbnail(self, local_provider, image_upload):
        result = local_provider.upload_file(image_upload)

        assert result.thumbnail_url == f"/uploads/general/thumb_{result.filename}"
        assert os.path.isfile(result.thumbnail_identifier)
        assert result.provider_data['width'] == 200
        assert result.provider_data['height'] == 100

    def test_hash_covers_original_bytes_when_optimized(self, local_provider, image_upload):
        result = local_provider.upload_file(image_upload)

        assert result.hash == compute_file_hash(image_upload.content)
        assert result.provider_data['original_size'] == image_upload.size
        with open(result.identifier, 'rb') as handle:
            assert compute_file_hash(handle.read()) != result.hash

    def test_thumbnail_disabled_by_option(self, local_provider, image_upload):
        result = local_provider.upload_file(image_upload, UploadOptions(generate_thumbnail=False))

        assert result.success is True
        assert result.thumbnail_url is None

    def test_thumbnail_failure_does_not_fail_upload(self, local_provider, image_upload):
        with patch('lms_uploads.storage.base.generate_thumbnail', return_value=None):
            result = local_provider.upload_file(image_upload)

        assert result.success is True
        assert result.url
        assert result.thumbnail_url is None

    def test_invalid_file_is_not_written(self, local_provider, upload_root):
        tiny = FileUpload(content=b'x' * 50, original_name='tiny.txt', mime_type='text/plain')

        with pytest.raises(ValidationError):
            local_provider.upload_file(tiny)
        assert not os.path.exists(os.path.join(upload_root, 'general'))

    def test_unsafe_upload_type_rejected(self, local_provider, pdf_upload):
        with pytest.raises(ValidationError):
            local_provider.upload_file(pdf_upload, UploadOptions(upload_type='../outside'))

    def test_failed_write_leaves_no_partial_file(self, local_provider, pdf_upload, upload_root):
        with patch('lms_uploads.storage.local.os.replace', side_effect=OSError('disk full')):
            with pytest.raises(UploadFailedError) as exc_info:
                local_provider.upload_file(pdf_upload)

        assert exc_info.value.code == 'UPLOAD_FAILED'
        assert os.listdir(os.path.join(upload_root, 'general')) == []


@pytest.mark.unit
class TestLocalBatchUpload:

    def test_failures_are_isolated_and_ordered(self, local_provider, pdf_bytes):
        uploads = [
            FileUpload(pdf_bytes, 'one.pdf', 'application/pdf'),
            FileUpload(b'x' * 10, 'two.pdf', 'application/pdf'),
            FileUpload(pdf_bytes, 'three.pdf', 'application/pdf'),
        ]

        results = local_provider.upload_multiple_files(uploads)

        assert [result.original_name for result in results] == ['one.pdf', 'two.pdf', 'three.pdf']
        assert [result.success for result in results] == [True, False, True]
        assert results[1].error_code == 'FILE_TOO_SMALL'
        assert results[1].url is None


@pytest.mark.unit
class TestLocalFileOperations:
    """Delete, info, signed URL and existence checks."""

    @pytest.fixture
    def stored(self, local_provider, image_upload):
        return local_provider.upload_file(image_upload)

    def test_delete_is_idempotent(self, local_provider, stored):
        assert local_provider.delete_file(stored.identifier) is True
        assert local_provider.delete_file(stored.identifier) is False

    def test_delete_removes_thumbnail(self, local_provider, stored):
        local_provider.delete_file(stored.identifier)

        assert not os.path.exists(stored.identifier)
        assert not os.path.exists(stored.thumbnail_identifier)

    def test_delete_by_url(self, local_provider, stored):
        assert local_provider.file_exists(stored.url) is True
        assert local_provider.delete_file(stored.url) is True
        assert local_provider.file_exists(stored.url) is False

    def test_delete_by_absolute_url(self, local_provider, stored):
        assert local_provider.delete_file(f"http://files.test{stored.url}") is True

    def test_get_file_info(self, local_provider, stored):
        info = local_provider.get_file_info(stored.url)

        assert info.identifier == os.path.realpath(stored.identifier)
        assert info.filename == stored.filename
        assert info.size == stored.size
        assert info.mime_type == 'image/png'
        assert info.url == stored.url
        assert info.storage_type == 'local'
        assert info.provider_data['thumbnail_url'] == stored.thumbnail_url

    def test_get_file_info_missing(self, local_provider, upload_root):
        with pytest.raises(StoredFileNotFoundError) as exc_info:
            local_provider.get_file_info('/uploads/general/missing.pdf')
        assert exc_info.value.http_status == 404

    def test_signed_url_prefixes_base_url(self, local_provider, stored):
        assert local_provider.generate_signed_url(stored.identifier) == f"http://files.test{stored.url}"

    @pytest.mark.parametrize('identifier', ['../../etc/passwd', '/etc/passwd', '/uploads/../../etc/passwd'])
    def test_identifiers_outside_upload_directory(self, local_provider, identifier):
        assert local_provider.file_exists(identifier) is False
        assert local_provider.delete_file(identifier) is False
        with pytest.raises(StoredFileNotFoundError):
            local_provider.get_file_info(identifier)

    def test_file_exists_never_raises(self, local_provider):
        assert local_provider.file_exists('') is False


@pytest.mark.unit
class TestLocalConfig:

    def test_owns_url(self, local_provider):
        assert local_provider.owns_url('/uploads/general/a.pdf') is True
        assert local_provider.owns_url('http://localhost:8000/uploads/general/a.pdf') is True
        assert local_provider.owns_url('https://bucket.s3.amazonaws.com/a.pdf') is False

    def test_resolve_identifier(self, local_provider, upload_root):
        assert local_provider.resolve_identifier('/uploads/profile/a%20b.png') == os.path.join(
            upload_root, 'profile', 'a b.png'
        )
        assert local_provider.resolve_identifier('some/path.pdf') == 'some/path.pdf'

    def test_validate_config(self, local_provider):
        assert local_provider.validate_config() is True

    def test_create_upload_directories(self, local_provider, upload_root):
        local_provider.create_upload_directories(['general', 'profile'])

        assert os.path.isdir(os.path.join(upload_root, 'general'))
        assert os.path.isdir(os.path.join(upload_root, 'profile'))

    def test_get_config(self, local_provider, upload_root):
        config = local_provider.get_config()

        assert config['storage_type'] == 'local'
        assert config['upload_path'] == upload_root
        assert 'image/png' in config['allowed_mime_types']

    def test_is_storage_provider(self, local_provider):
        assert isinstance(local_provider, StorageProvider)
