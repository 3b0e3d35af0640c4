"""Upload orchestration services."""

from lms_uploads.services.file_upload_service import FileUploadService, create_file_upload_service

__all__ = ['FileUploadService', 'create_file_upload_service']
