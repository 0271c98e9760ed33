# src/bucket_ferry/backends/azure.py
"""
Azure Blob Storage backend built on azure-storage-blob's aio clients.

Access is authorized by the SAS token embedded in the profile's endpoint.
The token is validated before every request so an expired token surfaces
as an `AuthError` instead of a confusing 403. Large uploads are staged as
blocks and committed with a block list; uncommitted blocks survive an
interruption, so an upload can be resumed from its last committed block.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobClient, BlobServiceClient, ContainerClient

from bucket_ferry.backends.base import PartCallback, StorageBackend, StreamReader
from bucket_ferry.config import ConnectionProfile, TransferSettings
from bucket_ferry.endpoint import StorageEndpoint
from bucket_ferry.exceptions import (
    AuthError,
    NetworkError,
    NotFoundError,
    StorageError,
    ThrottledError,
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
from bucket_ferry.signer import validate_sas

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE: str = "application/octet-stream"
# Commit errors meaning the staged blocks are gone (uncommitted blocks expire
# after a week) or unusable; the upload has to start over.
_LOST_BLOCKS_CODES = frozenset({"InvalidBlockList", "InvalidBlobOrBlock", "BlockListTooLong"})


def block_id(index: int) -> str:
    """Returns the id of the `index`-th block (1-based); the SDK base64-encodes it."""
    return f"{index:06d}"


def translate_azure_error(
    error: Exception,
    operation: str,
    bucket: Optional[str] = None,
    key: Optional[str] = None,
) -> Optional[StorageError]:
    """
    Maps an azure-core/aiohttp exception into the shared error taxonomy.

    Args:
        error (Exception): The exception raised by the SDK.
        operation (str): The backend operation that failed.
        bucket (str, optional): The container involved.
        key (str, optional): The blob name involved.

    Returns:
        StorageError, optional: The classified error, or None for exceptions
            that did not come from the SDK.
    """
    where: str = f"{bucket}/{key}" if key else (bucket or "")
    if isinstance(error, HttpResponseError):
        status: Optional[int] = error.status_code
        code: str = str(getattr(error, "error_code", None) or status or "")
        message: str = f"{operation} '{where}' failed: {code}"
        if isinstance(error, ClientAuthenticationError) or status in (401, 403):
            return AuthError(message, operation, bucket, key, status)
        if isinstance(error, ResourceNotFoundError) or status == 404:
            return NotFoundError(message, operation, bucket, key, status)
        if operation == "commit_block_list" and code in _LOST_BLOCKS_CODES:
            return NotFoundError(message, operation, bucket, key, status)
        if status in (429, 503):
            return ThrottledError(message, operation, bucket, key, status)
        if status is not None and status >= 500:
            return NetworkError(message, operation, bucket, key, status)
        return StorageError(message, operation, bucket, key, status)
    if isinstance(
        error,
        (ServiceRequestError, ServiceResponseError, asyncio.TimeoutError, aiohttp.ClientError),
    ):
        return NetworkError(
            f"{operation} '{where}': {type(error).__name__} {error}".rstrip(),
            operation,
            bucket,
            key,
        )
    return None


def _strip_etag(etag: Optional[str]) -> str:
    return (etag or "").strip('"')


class AzureBlobBackend(StorageBackend):
    """Storage backend for Azure Blob Storage accessed through a SAS URL."""

    provider: Provider = Provider.AZURE_BLOB
    max_parts: int = 50_000

    def __init__(
        self,
        profile: ConnectionProfile,
        endpoint: StorageEndpoint,
        metrics: Optional[MetricsRecorder] = None,
        settings: Optional[TransferSettings] = None,
        service_client: Optional[BlobServiceClient] = None,
    ) -> None:
        """
        Initialize the backend.

        Args:
            profile (ConnectionProfile): The profile.
            endpoint (StorageEndpoint): The resolved Azure endpoint.
            metrics (MetricsRecorder, optional): Usage ledger to record to.
            settings (TransferSettings, optional): Call settings.
            service_client (BlobServiceClient, optional): A preconfigured
                client; built from the endpoint when omitted.
        """
        super().__init__(profile, endpoint, metrics, settings)
        if service_client is None:
            service_client = BlobServiceClient(
                account_url=f"{endpoint.scheme}://{endpoint.host}",
                credential=endpoint.sas_token,
                connection_timeout=self._settings.connect_timeout_s,
                read_timeout=self._settings.read_timeout_s,
                connection_verify=not profile.insecure_allowed,
                retry_total=0,
            )
        self._service: BlobServiceClient = service_client

    def _before_call(self) -> None:
        validate_sas(self.endpoint)

    def _translate_error(
        self,
        error: Exception,
        operation: str,
        bucket: Optional[str],
        key: Optional[str],
    ) -> Optional[StorageError]:
        return translate_azure_error(error, operation, bucket, key)

    def _container(self, bucket: str) -> ContainerClient:
        return self._service.get_container_client(bucket)

    def _blob(self, bucket: str, key: str) -> BlobClient:
        return self._service.get_blob_client(container=bucket, blob=key)

    async def close(self) -> None:
        await self._service.close()

    # --- listing ---

    async def list_buckets(self) -> List[str]:
        if self.endpoint.container:
            # A container-scoped SAS cannot list the account.
            validate_sas(self.endpoint)
            return [self.endpoint.container]
        names: List[str] = []
        with self._call(RequestType.LIST, "list_buckets"):
            async for container in self._service.list_containers():
                names.append(container.name)
        return names

    async def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        include_versions: bool = False,
        max_keys: Optional[int] = None,
    ) -> ListPage:
        include: Optional[List[str]] = ["versions", "deleted"] if include_versions else None
        entries: List[ObjectEntry] = []
        next_token: Optional[str] = None

        with self._call(RequestType.LIST, "list_objects", bucket):
            pages: Any = self._container(bucket).list_blobs(
                name_starts_with=prefix or None,
                include=include,
                results_per_page=max_keys,
            ).by_page(continuation_token=continuation_token)
            async for page in pages:
                async for blob in page:
                    entries.append(self._entry_from_blob(blob, include_versions))
                break
            next_token = pages.continuation_token or None

        if include_versions:
            by_key: Dict[str, List[ObjectEntry]] = {}
            for entry in entries:
                by_key.setdefault(entry.key, []).append(entry)
            entries = [e for key in sorted(by_key) for e in sort_versions(by_key[key])]
        return ListPage(entries=entries, next_token=next_token)

    @staticmethod
    def _entry_from_blob(blob: Any, include_versions: bool) -> ObjectEntry:
        deleted: bool = bool(getattr(blob, "deleted", False))
        is_current: Optional[bool] = getattr(blob, "is_current_version", None)
        content_settings: Any = getattr(blob, "content_settings", None)
        return ObjectEntry(
            key=blob.name,
            size=0 if deleted else int(blob.size or 0),
            last_modified=blob.last_modified,
            storage_class=str(blob.blob_tier or ""),
            version_id=getattr(blob, "version_id", None) if include_versions else None,
            is_delete_marker=deleted,
            is_latest=True if is_current is None else bool(is_current),
            etag=_strip_etag(blob.etag),
            content_type=getattr(content_settings, "content_type", None),
        )

    # --- objects ---

    async def head_object(self, bucket: str, key: str) -> ObjectMetadata:
        with self._call(RequestType.HEAD, "head_object", bucket, key):
            props: Any = await self._blob(bucket, key).get_blob_properties()
        return ObjectMetadata(
            key=key,
            size=int(props.size or 0),
            content_type=props.content_settings.content_type or DEFAULT_CONTENT_TYPE,
            last_modified=props.last_modified,
            etag=_strip_etag(props.etag),
            storage_class=str(props.blob_tier or ""),
        )

    async def get_object(
        self,
        bucket: str,
        key: str,
        range_start: Optional[int] = None,
        version_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        kwargs: Dict[str, Any] = {}
        if range_start:
            kwargs["offset"] = range_start
        if version_id:
            kwargs["version_id"] = version_id

        with self._call(RequestType.GET, "get_object", bucket, key) as meter:
            downloader: Any = await self._blob(bucket, key).download_blob(**kwargs)
            async for chunk in downloader.chunks():
                view: bytes = bytes(chunk)
                meter.bytes_down += len(view)
                chunk_size: int = self._settings.chunk_size
                for start in range(0, len(view), chunk_size):
                    yield view[start : start + chunk_size]

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
        settings: ContentSettings = ContentSettings(
            content_type=content_type or DEFAULT_CONTENT_TYPE
        )

        if resume is not None and resume.parts:
            logger.debug(
                f"Resuming block upload of '{key}' at byte {resume.offset} "
                f"({len(resume.parts)} blocks staged)."
            )
            return await self._block_upload(
                bucket, key, reader, settings, size_hint, resume, on_part
            )

        threshold: int = self._settings.multipart_threshold
        head: bytes = await reader.read(threshold + 1)
        if len(head) <= threshold:
            with self._call(RequestType.PUT, "put_object", bucket, key) as meter:
                meter.bytes_up = len(head)
                result: Dict[str, Any] = await self._blob(bucket, key).upload_blob(
                    head, overwrite=True, content_settings=settings
                )
            return _strip_etag(result.get("etag"))

        reader.unread(head)
        return await self._block_upload(
            bucket, key, reader, settings, size_hint, None, on_part
        )

    async def _block_upload(
        self,
        bucket: str,
        key: str,
        reader: StreamReader,
        settings: ContentSettings,
        size_hint: Optional[int],
        resume: Optional[PartialUpload],
        on_part: Optional[PartCallback],
    ) -> str:
        blob: BlobClient = self._blob(bucket, key)
        part_size: int = self._upload_part_size(size_hint, resume)
        upload: PartialUpload = (
            PartialUpload(offset=resume.offset, parts=list(resume.parts), part_size=part_size)
            if resume is not None
            else PartialUpload(part_size=part_size)
        )

        while True:
            data: bytes = await reader.read(part_size)
            if not data:
                break
            index: int = len(upload.parts) + 1
            self._check_part_number(index, "stage_block", bucket, key)
            bid: str = block_id(index)
            await self._part_retry.call(
                lambda: self._stage_block(blob, bucket, key, bid, data),
                description=f"Block {index} of '{key}'",
            )
            upload.parts.append((index, bid))
            upload.offset += len(data)
            if on_part is not None:
                on_part(
                    PartialUpload(
                        offset=upload.offset, parts=list(upload.parts), part_size=part_size
                    )
                )
            if len(data) < part_size:
                break

        with self._call(RequestType.PUT, "commit_block_list", bucket, key):
            result: Dict[str, Any] = await blob.commit_block_list(
                [bid for _, bid in upload.parts], content_settings=settings
            )
        return _strip_etag(result.get("etag"))

    async def _stage_block(
        self, blob: BlobClient, bucket: str, key: str, bid: str, data: bytes
    ) -> None:
        with self._call(RequestType.PUT, "stage_block", bucket, key) as meter:
            meter.bytes_up = len(data)
            await blob.stage_block(bid, data, length=len(data))

    async def delete_object(
        self, bucket: str, key: str, version_id: Optional[str] = None
    ) -> None:
        kwargs: Dict[str, Any] = {"version_id": version_id} if version_id else {}
        with self._call(RequestType.DELETE, "delete_object", bucket, key):
            await self._blob(bucket, key).delete_blob(**kwargs)

    async def restore_delete_marker(self, bucket: str, key: str) -> None:
        found: bool = False
        with self._call(RequestType.LIST, "restore_delete_marker", bucket, key):
            async for blob in self._container(bucket).list_blobs(
                name_starts_with=key, include=["deleted"]
            ):
                if blob.name == key and getattr(blob, "deleted", False):
                    found = True
                    break
        if not found:
            raise NotFoundError(
                f"No soft-deleted blob to restore for '{bucket}/{key}'.",
                "restore_delete_marker",
                bucket,
                key,
            )
        with self._call(RequestType.PUT, "restore_delete_marker", bucket, key):
            await self._blob(bucket, key).undelete_blob()
        logger.info(f"Undeleted '{bucket}/{key}'.")

    async def generate_shareable_url(
        self, bucket: str, key: str, expiry_s: Optional[int] = None
    ) -> str:
        # The link inherits the SAS token's own expiry; it cannot be extended.
        validate_sas(self.endpoint)
        if expiry_s is not None:
            logger.debug(
                f"Ignoring expiry of {expiry_s}s for '{key}'; Azure links carry "
                "the profile's SAS expiry."
            )
        return self.endpoint.object_url(bucket, key)
