"""
Prometheus metrics for the upload service.

Module-level collectors shared by the providers and the orchestrator, plus a
helper serving the default registry in the Prometheus text format.
"""

from typing import Tuple

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

uploads_total = Counter(
    'lms_uploads_files_total',
    'Files processed by the upload service',
    ['storage_type', 'status']
)

upload_duration_seconds = Histogram(
    'lms_uploads_upload_duration_seconds',
    'Time spent persisting a single file, including image processing',
    ['storage_type'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

upload_bytes_total = Counter(
    'lms_uploads_bytes_total',
    'Bytes received for successful uploads (before optimization)',
    ['storage_type']
)

validation_failures_total = Counter(
    'lms_uploads_validation_failures_total',
    'Uploads rejected by validation or contract checks',
    ['reason']
)

storage_operation_errors_total = Counter(
    'lms_uploads_storage_operation_errors_total',
    'Backend storage operation failures',
    ['storage_type', 'operation']
)

storage_providers_configured = Gauge(
    'lms_uploads_storage_providers_configured',
    'Whether a storage provider passed configuration validation',
    ['storage_type']
)


def metrics_response() -> Tuple[bytes, int, dict]:
    """Render the default registry as a Flask response tuple."""
    return generate_latest(), 200, {'Content-Type': CONTENT_TYPE_LATEST}
