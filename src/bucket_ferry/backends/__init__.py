# src/bucket_ferry/backends/__init__.py
"""Storage backends and the factory selecting one for a connection profile."""

import logging
from typing import List, Optional

from bucket_ferry.backends.azure import AzureBlobBackend
from bucket_ferry.backends.base import StorageBackend
from bucket_ferry.backends.s3 import S3Backend
from bucket_ferry.config import ConnectionProfile, TransferSettings
from bucket_ferry.endpoint import StorageEndpoint
from bucket_ferry.metrics import MetricsRecorder
from bucket_ferry.models import Provider

logger: logging.Logger = logging.getLogger(__name__)


def create_backend(
    profile: ConnectionProfile,
    metrics: Optional[MetricsRecorder] = None,
    settings: Optional[TransferSettings] = None,
) -> StorageBackend:
    """
    Builds the backend matching a profile's endpoint.

    Args:
        profile (ConnectionProfile): The connection profile.
        metrics (MetricsRecorder, optional): Usage ledger the backend records to.
        settings (TransferSettings, optional): Call settings.

    Returns:
        StorageBackend: An `S3Backend` or an `AzureBlobBackend`.

    Raises:
        ConfigurationError: If the profile's endpoint cannot be parsed.
        AuthError: If an S3 profile lacks credentials.
    """
    endpoint: StorageEndpoint = profile.resolve()
    logger.debug(
        f"Profile '{profile.name}' resolved to {endpoint.provider.value} "
        f"endpoint '{StorageEndpoint.redacted(endpoint.url)}'."
    )
    if endpoint.provider == Provider.AZURE_BLOB:
        return AzureBlobBackend(profile, endpoint, metrics, settings)
    return S3Backend(profile, endpoint, metrics, settings)


__all__: List[str] = ["AzureBlobBackend", "S3Backend", "StorageBackend", "create_backend"]
