# src/bucket_ferry/backends/s3.py
"""
S3-compatible backend built on aiobotocore.

Requests are signed with SigV4 by botocore; shareable links are presigned
with `S3Signer`. Botocore's own retries are disabled so the engine's retry
policy is the only one in effect.
"""

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

import aiohttp
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import NoCredentialsError, PartialCredentialsError

from bucket_ferry.backends.base import PartCallback, StorageBackend, StreamReader
from bucket_ferry.config import ConnectionProfile, TransferSettings
from bucket_ferry.endpoint import StorageEndpoint
from bucket_ferry.exceptions import (
    AuthError,
    NetworkError,
    NotFoundError,
    StorageError,
    ThrottledError,
    TransferCancelled,
)
from bucket_ferry.metrics import MetricsRecorder, RequestType
from bucket_ferry.models import (
    ListPage,
    ObjectEntry,
    ObjectMetadata,
    PartialUpload,
    Provider,
    sort_versions,
)
from bucket_ferry.signer import S3Signer

if TYPE_CHECKING:
    from aiobotocore.response import StreamingBody

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE: str = "application/octet-stream"

_AUTH_CODES = frozenset(
    {
        "AccessDenied",
        "AuthorizationHeaderMalformed",
        "ExpiredToken",
        "InvalidAccessKeyId",
        "InvalidToken",
        "SignatureDoesNotMatch",
    }
)
_NOT_FOUND_CODES = frozenset(
    {"NoSuchBucket", "NoSuchKey", "NoSuchUpload", "NoSuchVersion", "NotFound"}
)
_THROTTLE_CODES = frozenset(
    {"SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "TooManyRequests"}
)


def translate_client_error(
    error: Exception,
    operation: str,
    bucket: Optional[str] = None,
    key: Optional[str] = None,
) -> Optional[StorageError]:
    """
    Maps a botocore/aiohttp exception into the shared error taxonomy.

    Args:
        error (Exception): The exception raised by the client.
        operation (str): The backend operation that failed.
        bucket (str, optional): The bucket involved.
        key (str, optional): The key involved.

    Returns:
        StorageError, optional: The classified error, or None for exceptions
            that did not come from the client.
    """
    where: str = f"{bucket}/{key}" if key else (bucket or "")
    if isinstance(error, ClientError):
        code: str = str(error.response.get("Error", {}).get("Code", ""))
        status: Optional[int] = error.response.get("ResponseMetadata", {}).get(
            "HTTPStatusCode"
        )
        message: str = f"{operation} '{where}' failed: {code or status}"
        if code in _AUTH_CODES or status in (401, 403):
            return AuthError(message, operation, bucket, key, status)
        if code in _NOT_FOUND_CODES or status == 404:
            return NotFoundError(message, operation, bucket, key, status)
        if code in _THROTTLE_CODES or status in (429, 503):
            return ThrottledError(message, operation, bucket, key, status)
        if status is not None and status >= 500:
            return NetworkError(message, operation, bucket, key, status)
        return StorageError(message, operation, bucket, key, status)
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return AuthError(f"{operation} '{where}': {error}", operation, bucket, key)
    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return NetworkError(f"{operation} '{where}': {error}", operation, bucket, key)
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientError)):
        return NetworkError(
            f"{operation} '{where}': {type(error).__name__} {error}".rstrip(),
            operation,
            bucket,
            key,
        )
    if isinstance(error, BotoCoreError):
        return StorageError(f"{operation} '{where}': {error}", operation, bucket, key)
    return None


def _strip_etag(etag: Optional[str]) -> str:
    return (etag or "").strip('"')


class S3Backend(StorageBackend):
    """Storage backend for AWS S3 and S3-compatible services."""

    provider: Provider = Provider.S3
    max_parts: int = 10_000

    def __init__(
        self,
        profile: ConnectionProfile,
        endpoint: StorageEndpoint,
        metrics: Optional[MetricsRecorder] = None,
        settings: Optional[TransferSettings] = None,
        max_pool_connections: int = 50,
    ) -> None:
        """
        Initialize the backend. No connection is opened until the first call.

        Args:
            profile (ConnectionProfile): The profile holding credentials.
            endpoint (StorageEndpoint): The resolved S3 endpoint.
            metrics (MetricsRecorder, optional): Usage ledger to record to.
            settings (TransferSettings, optional): Call settings.
            max_pool_connections (int): Size of the HTTP connection pool.

        Raises:
            AuthError: If the profile lacks an access key or secret key.
        """
        super().__init__(profile, endpoint, metrics, settings)
        self._signer: S3Signer = S3Signer(
            profile.access_key, profile.secret_key, endpoint.region or profile.region
        )
        # Explicitly set signature_version and disable payload signing; this
        # is the configuration non-AWS providers accept most reliably.
        self._boto_config: BotoConfig = BotoConfig(
            signature_version="s3v4",
            connect_timeout=self._settings.connect_timeout_s,
            read_timeout=self._settings.read_timeout_s,
            max_pool_connections=max_pool_connections,
            retries={"max_attempts": 1, "mode": "standard"},
            s3={
                "addressing_style": "path" if endpoint.path_style else "virtual",
                "payload_signing_enabled": False,
            },
        )
        self._session: AioSession = get_session()
        self._exit_stack: AsyncExitStack = AsyncExitStack()
        self._client: Any = None
        self._client_lock: asyncio.Lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        async with self._client_lock:
            if self._client is None:
                self._client = await self._exit_stack.enter_async_context(
                    self._session.create_client(
                        "s3",
                        endpoint_url=self.endpoint.base_url,
                        region_name=self._signer.region,
                        aws_access_key_id=self.profile.access_key,
                        aws_secret_access_key=self.profile.secret_key,
                        verify=not self.profile.insecure_allowed,
                        config=self._boto_config,
                    )
                )
                logger.debug(f"Opened S3 client for '{self.endpoint.base_url}'.")
            return self._client

    async def close(self) -> None:
        async with self._client_lock:
            await self._exit_stack.aclose()
            self._client = None

    def _translate_error(
        self,
        error: Exception,
        operation: str,
        bucket: Optional[str],
        key: Optional[str],
    ) -> Optional[StorageError]:
        return translate_client_error(error, operation, bucket, key)

    # --- listing ---

    async def list_buckets(self) -> List[str]:
        client: Any = await self._get_client()
        with self._call(RequestType.LIST, "list_buckets"):
            response: Dict[str, Any] = await client.list_buckets()
        return [b["Name"] for b in response.get("Buckets", [])]

    async def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        include_versions: bool = False,
        max_keys: Optional[int] = None,
    ) -> ListPage:
        if include_versions:
            return await self._list_versions(bucket, prefix, continuation_token, max_keys)

        params: Dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        if max_keys:
            params["MaxKeys"] = max_keys

        client: Any = await self._get_client()
        with self._call(RequestType.LIST, "list_objects", bucket):
            response: Dict[str, Any] = await client.list_objects_v2(**params)

        entries: List[ObjectEntry] = [
            ObjectEntry(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                last_modified=item["LastModified"],
                storage_class=item.get("StorageClass", "STANDARD"),
                etag=_strip_etag(item.get("ETag")),
            )
            for item in response.get("Contents", [])
        ]
        next_token: Optional[str] = (
            response.get("NextContinuationToken") if response.get("IsTruncated") else None
        )
        return ListPage(entries=entries, next_token=next_token)

    async def _list_versions(
        self,
        bucket: str,
        prefix: str,
        continuation_token: Optional[str],
        max_keys: Optional[int],
    ) -> ListPage:
        params: Dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
        if continuation_token:
            markers: Dict[str, str] = json.loads(continuation_token)
            params["KeyMarker"] = markers["key"]
            if markers.get("version"):
                params["VersionIdMarker"] = markers["version"]
        if max_keys:
            params["MaxKeys"] = max_keys

        client: Any = await self._get_client()
        with self._call(RequestType.LIST, "list_objects", bucket):
            response: Dict[str, Any] = await client.list_object_versions(**params)

        by_key: Dict[str, List[ObjectEntry]] = {}
        for item in response.get("Versions", []):
            by_key.setdefault(item["Key"], []).append(
                ObjectEntry(
                    key=item["Key"],
                    size=int(item.get("Size", 0)),
                    last_modified=item["LastModified"],
                    storage_class=item.get("StorageClass", "STANDARD"),
                    version_id=item.get("VersionId"),
                    is_latest=bool(item.get("IsLatest", False)),
                    etag=_strip_etag(item.get("ETag")),
                )
            )
        for item in response.get("DeleteMarkers", []):
            by_key.setdefault(item["Key"], []).append(
                ObjectEntry(
                    key=item["Key"],
                    size=0,
                    last_modified=item["LastModified"],
                    version_id=item.get("VersionId"),
                    is_delete_marker=True,
                    is_latest=bool(item.get("IsLatest", False)),
                )
            )

        entries: List[ObjectEntry] = []
        for key in sorted(by_key):
            entries.extend(sort_versions(by_key[key]))

        next_token: Optional[str] = None
        if response.get("IsTruncated"):
            next_token = json.dumps(
                {
                    "key": response.get("NextKeyMarker", ""),
                    "version": response.get("NextVersionIdMarker", ""),
                }
            )
        return ListPage(entries=entries, next_token=next_token)

    # --- objects ---

    async def head_object(self, bucket: str, key: str) -> ObjectMetadata:
        client: Any = await self._get_client()
        with self._call(RequestType.HEAD, "head_object", bucket, key):
            response: Dict[str, Any] = await client.head_object(Bucket=bucket, Key=key)
        return ObjectMetadata(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            last_modified=response.get("LastModified") or datetime.now(timezone.utc),
            etag=_strip_etag(response.get("ETag")),
            storage_class=response.get("StorageClass", "STANDARD"),
        )

    async def get_object(
        self,
        bucket: str,
        key: str,
        range_start: Optional[int] = None,
        version_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key}
        if range_start:
            params["Range"] = f"bytes={range_start}-"
        if version_id:
            params["VersionId"] = version_id

        client: Any = await self._get_client()
        with self._call(RequestType.GET, "get_object", bucket, key) as meter:
            response: Dict[str, Any] = await client.get_object(**params)
            body: "StreamingBody" = response["Body"]
            try:
                async for chunk in body.iter_chunks(self._settings.chunk_size):
                    meter.bytes_down += len(chunk)
                    yield chunk
            finally:
                body.close()

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
        reader: StreamReader = StreamReader(stream)
        content_type = content_type or DEFAULT_CONTENT_TYPE

        if resume is not None and resume.upload_id:
            logger.debug(
                f"Resuming multipart upload of '{key}' at byte {resume.offset} "
                f"({len(resume.parts)} parts committed)."
            )
            return await self._multipart_upload(
                bucket, key, reader, content_type, size_hint, resume, on_part
            )

        threshold: int = self._settings.multipart_threshold
        head: bytes = await reader.read(threshold + 1)
        if len(head) <= threshold:
            return await self._put_single(bucket, key, head, content_type)

        reader.unread(head)
        return await self._multipart_upload(
            bucket, key, reader, content_type, size_hint, None, on_part
        )

    async def _put_single(
        self, bucket: str, key: str, data: bytes, content_type: str
    ) -> str:
        client: Any = await self._get_client()
        with self._call(RequestType.PUT, "put_object", bucket, key) as meter:
            meter.bytes_up = len(data)
            response: Dict[str, Any] = await client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentLength=len(data),
                ContentType=content_type,
            )
        return _strip_etag(response.get("ETag"))

    async def _multipart_upload(
        self,
        bucket: str,
        key: str,
        reader: StreamReader,
        content_type: str,
        size_hint: Optional[int],
        resume: Optional[PartialUpload],
        on_part: Optional[PartCallback],
    ) -> str:
        client: Any = await self._get_client()
        part_size: int = self._upload_part_size(size_hint, resume)
        if resume is not None and resume.upload_id:
            upload: PartialUpload = PartialUpload(
                offset=resume.offset,
                upload_id=resume.upload_id,
                parts=list(resume.parts),
                part_size=part_size,
            )
        else:
            with self._call(RequestType.POST, "create_multipart_upload", bucket, key):
                created: Dict[str, Any] = await client.create_multipart_upload(
                    Bucket=bucket, Key=key, ContentType=content_type
                )
            upload = PartialUpload(
                offset=0, upload_id=created["UploadId"], parts=[], part_size=part_size
            )

        try:
            while True:
                data: bytes = await reader.read(part_size)
                if not data:
                    break
                part_number: int = len(upload.parts) + 1
                self._check_part_number(part_number, "upload_part", bucket, key)
                etag: str = await self._part_retry.call(
                    lambda: self._upload_part(
                        bucket, key, upload.upload_id or "", part_number, data
                    ),
                    description=f"Part {part_number} of '{key}'",
                )
                upload.parts.append((part_number, etag))
                upload.offset += len(data)
                if on_part is not None:
                    on_part(
                        PartialUpload(
                            offset=upload.offset,
                            upload_id=upload.upload_id,
                            parts=list(upload.parts),
                            part_size=part_size,
                        )
                    )
                if len(data) < part_size:
                    break

            with self._call(RequestType.POST, "complete_multipart_upload", bucket, key):
                completed: Dict[str, Any] = await client.complete_multipart_upload(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload.upload_id,
                    MultipartUpload={
                        "Parts": [{"ETag": tag, "PartNumber": n} for n, tag in upload.parts]
                    },
                )
        except (TransferCancelled, asyncio.CancelledError):
            # Committed parts stay on the server so the upload can be resumed.
            raise
        except Exception:
            await self._abort(bucket, key, upload.upload_id or "")
            raise
        return _strip_etag(completed.get("ETag"))

    async def _upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes
    ) -> str:
        client: Any = await self._get_client()
        with self._call(RequestType.PUT, "upload_part", bucket, key) as meter:
            meter.bytes_up = len(data)
            response: Dict[str, Any] = await client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
                ContentLength=len(data),
            )
        return str(response["ETag"])

    async def _abort(self, bucket: str, key: str, upload_id: str) -> None:
        client: Any = await self._get_client()
        try:
            with self._call(RequestType.DELETE, "abort_multipart_upload", bucket, key):
                await client.abort_multipart_upload(
                    Bucket=bucket, Key=key, UploadId=upload_id
                )
            logger.debug(f"Aborted multipart upload of '{key}'.")
        except StorageError as e:
            logger.warning(f"Could not abort multipart upload of '{key}': {e}")

    async def delete_object(
        self, bucket: str, key: str, version_id: Optional[str] = None
    ) -> None:
        if version_id is None:
            # S3 deletes are idempotent; check existence to report missing keys.
            await self.head_object(bucket, key)
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key}
        if version_id:
            params["VersionId"] = version_id
        client: Any = await self._get_client()
        with self._call(RequestType.DELETE, "delete_object", bucket, key):
            await client.delete_object(**params)

    async def restore_delete_marker(self, bucket: str, key: str) -> None:
        client: Any = await self._get_client()
        with self._call(RequestType.LIST, "restore_delete_marker", bucket, key):
            response: Dict[str, Any] = await client.list_object_versions(
                Bucket=bucket, Prefix=key
            )
        marker: Optional[Dict[str, Any]] = next(
            (
                m
                for m in response.get("DeleteMarkers", [])
                if m["Key"] == key and m.get("IsLatest")
            ),
            None,
        )
        if marker is None:
            raise NotFoundError(
                f"No delete marker to restore for '{bucket}/{key}'.",
                "restore_delete_marker",
                bucket,
                key,
            )
        with self._call(RequestType.DELETE, "restore_delete_marker", bucket, key):
            await client.delete_object(
                Bucket=bucket, Key=key, VersionId=marker["VersionId"]
            )
        logger.info(f"Restored '{bucket}/{key}' by removing its delete marker.")

    async def generate_shareable_url(
        self, bucket: str, key: str, expiry_s: Optional[int] = None
    ) -> str:
        expires: int = expiry_s if expiry_s is not None else self._settings.presign_expiry_s
        return self._signer.presign("GET", self.endpoint.object_url(bucket, key), expires)
