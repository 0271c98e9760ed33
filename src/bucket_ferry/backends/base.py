# src/bucket_ferry/backends/base.py
"""
The capability interface shared by every storage backend.

A backend wraps one connection profile. All calls are async, are bounded by
the configured timeouts, translate provider-native errors into the
`StorageError` taxonomy exactly once, and count exactly one usage event per
request sent.
"""

import abc
import logging
import math
from contextlib import contextmanager
from types import TracebackType
from typing import (
    AsyncIterator,
    Callable,
    Iterator,
    List,
    Optional,
    Type,
)

from bucket_ferry.config import ConnectionProfile, TransferSettings
from bucket_ferry.endpoint import StorageEndpoint
from bucket_ferry.exceptions import StorageError, TransferCancelled
from bucket_ferry.metrics import MetricsRecorder, RequestType
from bucket_ferry.models import (
    ListPage,
    ObjectEntry,
    ObjectMetadata,
    PartialUpload,
    Provider,
)
from bucket_ferry.throttle import RetryPolicy

logger: logging.Logger = logging.getLogger(__name__)

PartCallback = Callable[[PartialUpload], None]


def part_size_for(size_hint: Optional[int], minimum: int, max_parts: int) -> int:
    """
    Chooses the part size of a multipart or block upload.

    Args:
        size_hint (int, optional): Expected object size, if known.
        minimum (int): The configured part size.
        max_parts (int): Most parts the provider accepts in one upload.

    Returns:
        int: `minimum`, or the smallest size that fits `size_hint` bytes
            into `max_parts` parts when `minimum` would need more.
    """
    if not size_hint or size_hint <= minimum * max_parts:
        return minimum
    return math.ceil(size_hint / max_parts)


class _Meter:
    """Byte counters of a single request, filled in by the caller."""

    __slots__ = ("bytes_up", "bytes_down")

    def __init__(self) -> None:
        self.bytes_up: int = 0
        self.bytes_down: int = 0


class StreamReader:
    """
    Reads exact-sized blocks from an async iterator of byte chunks.

    Only the bytes of the block being assembled are held in memory.
    """

    def __init__(self, stream: AsyncIterator[bytes]) -> None:
        self._iterator: AsyncIterator[bytes] = stream.__aiter__()
        self._buffer: bytearray = bytearray()
        self._eof: bool = False

    async def read(self, size: int) -> bytes:
        """
        Returns the next `size` bytes, or fewer at the end of the stream.

        Args:
            size (int): Number of bytes wanted.

        Returns:
            bytes: The data; empty once the stream is exhausted.
        """
        while len(self._buffer) < size and not self._eof:
            try:
                chunk: bytes = await self._iterator.__anext__()
            except StopAsyncIteration:
                self._eof = True
                break
            self._buffer.extend(chunk)
        data: bytes = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def unread(self, data: bytes) -> None:
        """Pushes `data` back in front of the remaining stream."""
        self._buffer[:0] = data


class StorageBackend(abc.ABC):
    """
    Uniform async interface over one storage account.

    Subclasses implement the provider calls and `_translate_error`; the base
    class supplies the error boundary, usage metering and helpers shared by
    both providers.
    """

    provider: Provider
    supports_range_reads: bool = True
    max_parts: int = 10_000

    def __init__(
        self,
        profile: ConnectionProfile,
        endpoint: StorageEndpoint,
        metrics: Optional[MetricsRecorder] = None,
        settings: Optional[TransferSettings] = None,
    ) -> None:
        """
        Initialize the backend.

        Args:
            profile (ConnectionProfile): The profile holding credentials.
            endpoint (StorageEndpoint): The resolved endpoint of the profile.
            metrics (MetricsRecorder, optional): Usage ledger to record to.
            settings (TransferSettings, optional): Call settings.
        """
        self.profile: ConnectionProfile = profile
        self.endpoint: StorageEndpoint = endpoint
        self._metrics: Optional[MetricsRecorder] = metrics
        self._settings: TransferSettings = settings or TransferSettings()
        self._part_retry: RetryPolicy = RetryPolicy(
            max_attempts=self._settings.part_max_attempts,
            base_delay_s=self._settings.part_backoff_s,
            max_delay_s=self._settings.part_backoff_s * 16,
        )

    @property
    def settings(self) -> TransferSettings:
        return self._settings

    def __repr__(self) -> str:
        return f"{type(self).__name__}(profile={self.profile.name!r}, host={self.endpoint.host!r})"

    async def __aenter__(self) -> "StorageBackend":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    # --- multipart sizing ---

    def _upload_part_size(
        self, size_hint: Optional[int], resume: Optional[PartialUpload]
    ) -> int:
        """The part size of a new upload, or the one a resumed upload started with."""
        if resume is not None and resume.part_size:
            return resume.part_size
        size: int = part_size_for(size_hint, self._settings.part_size, self.max_parts)
        if size > self._settings.part_size:
            logger.debug(f"Raised part size to {size} bytes to stay within {self.max_parts} parts.")
        return size

    def _check_part_number(self, number: int, operation: str, bucket: str, key: str) -> None:
        if number > self.max_parts:
            raise StorageError(
                f"Upload of '{bucket}/{key}' needs more than {self.max_parts} parts; "
                "the object is larger than its size hint.",
                operation,
                bucket,
                key,
            )

    # --- error boundary and metering ---

    def _before_call(self) -> None:
        """Hook run before every request; may raise a `StorageError`."""

    @abc.abstractmethod
    def _translate_error(
        self,
        error: Exception,
        operation: str,
        bucket: Optional[str],
        key: Optional[str],
    ) -> Optional[StorageError]:
        """
        Maps a provider-native exception into the shared taxonomy.

        Returns:
            StorageError, optional: The translated error, or None if `error`
                is not a provider error and should propagate unchanged.
        """

    @contextmanager
    def _call(
        self,
        request_type: RequestType,
        operation: str,
        bucket: Optional[str] = None,
        key: Optional[str] = None,
    ) -> Iterator[_Meter]:
        """
        Wraps one request: translates its errors and records its usage.

        Exactly one usage event is recorded whether the request succeeds
        or fails.

        Args:
            request_type (RequestType): Billing category of the request.
            operation (str): Name of the backend operation, for errors.
            bucket (str, optional): Bucket involved, for errors.
            key (str, optional): Key involved, for errors.

        Yields:
            _Meter: Counters the caller fills with bytes sent and received.
        """
        self._before_call()
        meter: _Meter = _Meter()
        try:
            yield meter
        except (StorageError, TransferCancelled):
            raise
        except Exception as e:
            translated: Optional[StorageError] = self._translate_error(
                e, operation, bucket, key
            )
            if translated is None:
                raise
            logger.debug(f"{self.profile.name}: {operation} failed: {translated}")
            raise translated from e
        finally:
            if self._metrics is not None:
                self._metrics.record(
                    self.profile.name,
                    request_type,
                    bytes_up=meter.bytes_up,
                    bytes_down=meter.bytes_down,
                )

    # --- capability interface ---

    @abc.abstractmethod
    async def list_buckets(self) -> List[str]:
        """
        Lists the buckets (containers) visible to the profile.

        Raises:
            AuthError: If the credentials are rejected.
            NetworkError: If the endpoint cannot be reached.
        """

    @abc.abstractmethod
    async def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        include_versions: bool = False,
        max_keys: Optional[int] = None,
    ) -> ListPage:
        """
        Lists one page of objects under a prefix.

        Args:
            bucket (str): The bucket or container.
            prefix (str): Only keys starting with this are returned.
            continuation_token (str, optional): Token of the page to fetch.
            include_versions (bool): Return every version and delete marker,
                latest-first within each key.
            max_keys (int, optional): Page size hint.

        Returns:
            ListPage: The entries and the token of the next page, if any.
        """

    async def list_all_objects(
        self,
        bucket: str,
        prefix: str = "",
        include_versions: bool = False,
    ) -> AsyncIterator[ObjectEntry]:
        """
        Yields every entry under a prefix, following pagination.

        Args:
            bucket (str): The bucket or container.
            prefix (str): Only keys starting with this are returned.
            include_versions (bool): Include older versions and delete markers.

        Yields:
            ObjectEntry: The listed entries, page by page.
        """
        token: Optional[str] = None
        while True:
            page: ListPage = await self.list_objects(
                bucket,
                prefix=prefix,
                continuation_token=token,
                include_versions=include_versions,
            )
            for entry in page.entries:
                yield entry
            if not page.next_token:
                return
            token = page.next_token

    @abc.abstractmethod
    async def head_object(self, bucket: str, key: str) -> ObjectMetadata:
        """
        Fetches an object's metadata.

        Raises:
            NotFoundError: If the object does not exist.
        """

    @abc.abstractmethod
    def get_object(
        self,
        bucket: str,
        key: str,
        range_start: Optional[int] = None,
        version_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """
        Streams an object's content.

        The returned iterator is lazy, finite and not restartable; no
        request is sent until it is first iterated.

        Args:
            bucket (str): The bucket or container.
            key (str): The object key.
            range_start (int, optional): Byte offset to start reading from.
            version_id (str, optional): A specific version to read.

        Returns:
            AsyncIterator[bytes]: The content in chunks of at most
                `TransferSettings.chunk_size` bytes.
        """

    @abc.abstractmethod
    async def put_object(
        self,
        bucket: str,
        key: str,
        stream: AsyncIterator[bytes],
        size_hint: Optional[int] = None,
        content_type: Optional[str] = None,
        resume: Optional[PartialUpload] = None,
        on_part: Optional[PartCallback] = None,
    ) -> str:
        """
        Uploads an object from a stream of chunks.

        Objects above `multipart_threshold` are uploaded in parts, holding at
        most one part in memory. A failed part is retried on its own before
        the whole call fails.

        Args:
            bucket (str): The bucket or container.
            key (str): The object key.
            stream (AsyncIterator[bytes]): The content. When `resume` is
                given, the content starting at `resume.offset`.
            size_hint (int, optional): The total object size, if known.
            content_type (str, optional): MIME type to store.
            resume (PartialUpload, optional): An earlier partial upload to
                continue.
            on_part (Callable[[PartialUpload], None], optional): Called after
                every committed part with the upload's durable state.

        Returns:
            str: The etag of the stored object.
        """

    @abc.abstractmethod
    async def delete_object(
        self, bucket: str, key: str, version_id: Optional[str] = None
    ) -> None:
        """
        Deletes an object or one of its versions.

        Raises:
            NotFoundError: If the object does not exist.
        """

    @abc.abstractmethod
    async def restore_delete_marker(self, bucket: str, key: str) -> None:
        """
        Makes a deleted object current again.

        Raises:
            NotFoundError: If there is no deleted version to restore.
        """

    @abc.abstractmethod
    async def generate_shareable_url(
        self, bucket: str, key: str, expiry_s: Optional[int] = None
    ) -> str:
        """
        Produces a URL that grants temporary read access to an object.

        Args:
            bucket (str): The bucket or container.
            key (str): The object key.
            expiry_s (int, optional): Lifetime in seconds; defaults to
                `TransferSettings.presign_expiry_s`.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Releases HTTP sessions."""
