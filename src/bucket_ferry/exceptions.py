# src/bucket_ferry/exceptions.py
"""
Error taxonomy for bucket-ferry.

Backends classify provider-native failures exactly once, at the boundary,
into the `StorageError` subclasses below. Everything upstream (worker,
engine, CLI) only ever inspects these types.
"""

from typing import Optional


class BucketFerryError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigurationError(BucketFerryError):
    """Raised for malformed endpoints, profiles or job requests."""

    pass


class InvalidStateTransition(ConfigurationError):
    """Raised when a job is asked to move to a state it cannot reach."""

    pass


class CheckpointError(BucketFerryError):
    """Raised when a checkpoint file cannot be read or written."""

    pass


class TransferCancelled(BucketFerryError):
    """Raised inside a transfer when the job's cancel signal is observed."""

    pass


class StorageError(BucketFerryError):
    """
    Base class for errors raised by a storage backend call.

    Attributes:
        operation (str): The backend operation that failed, e.g. "get_object".
        bucket (str, optional): The bucket or container involved.
        key (str, optional): The object key involved.
        status (int, optional): The HTTP status code, when one was received.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        operation: str = "",
        bucket: Optional[str] = None,
        key: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.operation: str = operation
        self.bucket: Optional[str] = bucket
        self.key: Optional[str] = key
        self.status: Optional[int] = status


class AuthError(StorageError):
    """Bad, missing or expired credentials. Never retried."""

    pass


class NotFoundError(StorageError):
    """The bucket, container or object does not exist."""

    pass


class TransientError(StorageError):
    """A failure expected to clear up on its own; retried with backoff."""

    retryable = True


class NetworkError(TransientError):
    """Connectivity failure, timeout or server-side (5xx) error."""

    pass


class ThrottledError(TransientError):
    """The provider asked the client to slow down (429, 503 SlowDown)."""

    pass


class ChecksumMismatchError(StorageError):
    """Source and target disagree on size or etag after a copy."""

    pass
