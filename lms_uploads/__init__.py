"""
LMS file upload service.

Multi-provider file uploads (local filesystem, S3, Cloudinary) with
validation, image optimization and thumbnail generation, exposed through a
Flask blueprint.
"""

__version__ = "1.0.0"
__title__ = "LMS File Uploads"

PACKAGE_NAME = "lms_uploads"
