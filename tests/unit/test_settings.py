"""
Unit tests for environment driven settings, Flask configuration classes and
boto3 client configuration.
"""

import pytest

from lms_uploads.config.aws import get_boto3_config, get_session_kwargs
from lms_uploads.config.settings import (
    MB,
    ImageSettings,
    NamedFieldContract,
    S3Settings,
    UploadSettings,
    config_by_name,
    get_config,
    get_upload_settings,
)
from lms_uploads.utils.exceptions import ConfigurationError


@pytest.mark.unit
class TestUploadSettingsFromEnv:
    """Reading ``UploadSettings`` from the environment."""

    def test_defaults(self, clean_upload_env):
        settings = UploadSettings.from_env()

        assert settings.default_storage == 'local'
        assert settings.local.upload_path == './uploads'
        assert settings.local.max_file_size == 10 * MB
        assert settings.s3.folder == 'maitexa'
        assert settings.s3.acl == 'public-read'
        assert settings.s3.is_configured is False
        assert settings.cloudinary.is_configured is False
        assert settings.image.optimization_enabled is False
        assert settings.image.thumbnails_enabled is False
        assert settings.validation.min_file_size == 1024
        assert settings.upload_concurrency == 1

    def test_reads_provider_variables(self, clean_upload_env):
        clean_upload_env.setenv('DEFAULT_STORAGE', 'S3')
        clean_upload_env.setenv('AWS_ACCESS_KEY_ID', 'AKIAEXAMPLE')
        clean_upload_env.setenv('AWS_SECRET_ACCESS_KEY', 'secret')
        clean_upload_env.setenv('AWS_S3_BUCKET_NAME', 'lms-files')
        clean_upload_env.setenv('AWS_S3_FOLDER', '/courses/')
        clean_upload_env.setenv('AWS_S3_MAX_FILE_SIZE', str(20 * MB))
        clean_upload_env.setenv('BASE_URL', 'https://lms.example.com/')
        clean_upload_env.setenv('UPLOAD_CONCURRENCY', '4')

        settings = UploadSettings.from_env()

        assert settings.default_storage == 's3'
        assert settings.s3.is_configured is True
        assert settings.s3.folder == 'courses'
        assert settings.max_file_size_for('s3') == 20 * MB
        assert settings.local.base_url == 'https://lms.example.com'
        assert settings.upload_concurrency == 4

    @pytest.mark.parametrize('value, expected', [('true', True), ('TRUE', True), ('1', False), ('false', False)])
    def test_boolean_flags(self, clean_upload_env, value, expected):
        clean_upload_env.setenv('GENERATE_THUMBNAILS', value)
        assert UploadSettings.from_env().image.thumbnails_enabled is expected

    def test_acl_can_be_disabled(self, clean_upload_env):
        clean_upload_env.setenv('AWS_S3_ACL', 'none')
        assert UploadSettings.from_env().s3.acl is None

    def test_invalid_integer(self, clean_upload_env):
        clean_upload_env.setenv('MAX_FILE_SIZE', 'ten megabytes')

        with pytest.raises(ConfigurationError, match='MAX_FILE_SIZE'):
            UploadSettings.from_env()

    def test_invalid_default_storage(self, clean_upload_env):
        clean_upload_env.setenv('DEFAULT_STORAGE', 'ftp')

        with pytest.raises(ConfigurationError):
            UploadSettings.from_env()

    def test_blank_values_use_defaults(self, clean_upload_env):
        clean_upload_env.setenv('LOCAL_UPLOAD_PATH', '   ')
        assert UploadSettings.from_env().local.upload_path == './uploads'

    def test_process_wide_settings_are_cached(self, clean_upload_env):
        first = get_upload_settings()
        clean_upload_env.setenv('DEFAULT_STORAGE', 'cloudinary')

        assert get_upload_settings() is first
        get_upload_settings.cache_clear()
        assert get_upload_settings().default_storage == 'cloudinary'


@pytest.mark.unit
class TestSettingsValidation:

    def test_image_quality_range(self):
        with pytest.raises(ConfigurationError):
            ImageSettings(quality=0)
        with pytest.raises(ConfigurationError):
            ImageSettings(quality=101)

    def test_named_field_contract(self):
        with pytest.raises(ConfigurationError):
            NamedFieldContract(max_count=0)
        with pytest.raises(ConfigurationError, match='spreadsheet'):
            NamedFieldContract(max_count=1, allowed_types=frozenset(['spreadsheet']))

    def test_upload_concurrency(self):
        with pytest.raises(ConfigurationError):
            UploadSettings(upload_concurrency=0)

    def test_provider_lookups(self):
        settings = UploadSettings()

        assert settings.allowed_formats_for('local') is None
        assert 'zip' in settings.allowed_formats_for('s3')
        assert 'zip' not in settings.allowed_formats_for('cloudinary')
        assert settings.provider_settings('unknown') is settings.local


@pytest.mark.unit
class TestFlaskConfig:

    def test_named_config(self):
        assert get_config('testing') is config_by_name['testing']
        assert get_config('TESTING').TESTING is True

    def test_unknown_config(self):
        with pytest.raises(ConfigurationError):
            get_config('staging')


@pytest.mark.unit
class TestBoto3Config:

    def test_virtual_addressing_by_default(self):
        config = get_boto3_config(S3Settings(region='eu-west-1', max_pool_connections=20))

        assert config.signature_version == 's3v4'
        assert config.region_name == 'eu-west-1'
        assert config.max_pool_connections == 20
        assert config.retries == {'max_attempts': 3, 'mode': 'adaptive'}
        assert config.s3 == {'addressing_style': 'virtual'}

    def test_path_addressing_for_custom_endpoint(self):
        config = get_boto3_config(S3Settings(endpoint_url='http://localhost:9000'))
        assert config.s3 == {'addressing_style': 'path'}

    def test_session_kwargs(self):
        kwargs = get_session_kwargs(S3Settings(access_key_id='a', secret_access_key='b', session_token='c'))

        assert kwargs == {
            'region_name': 'us-east-1',
            'aws_access_key_id': 'a',
            'aws_secret_access_key': 'b',
            'aws_session_token': 'c',
        }

    def test_session_kwargs_without_credentials(self):
        assert get_session_kwargs(S3Settings()) == {'region_name': 'us-east-1'}

    def test_invalid_retry_mode(self):
        with pytest.raises(ConfigurationError):
            S3Settings(retry_mode='aggressive')
