# tests/unit/test_azure_backend.py
"""
Unit tests for the Azure Blob backend.

The backend is given a fake `BlobServiceClient` that mimics the parts of
the azure-storage-blob aio API it uses (paged listings, download streams,
block staging), so listing, block uploads, resume, error translation and
SAS handling can be exercised without a storage account.
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from bucket_ferry.backends.azure import AzureBlobBackend, block_id, translate_azure_error
from bucket_ferry.checkpoint import Checkpoint
from bucket_ferry.config import (
    MIB,
    Config,
    ConnectionProfile,
    MetricsConfig,
    ProfileRegistry,
    TransferSettings,
)
from bucket_ferry.engine import MigrationEngine
from bucket_ferry.exceptions import (
    AuthError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    StorageError,
    ThrottledError,
)
from bucket_ferry.metrics import MetricsRecorder, RequestType
from bucket_ferry.models import (
    JobRequest,
    JobState,
    ListPage,
    MigrationJob,
    ObjectMetadata,
    PartialUpload,
)
from bucket_ferry.report import MigrationReport

SAS: str = "sv=2022-11-02&se=2099-01-01T00%3A00%3A00Z&sp=rwdlac&sig=abc"
T0: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)


# --- Fakes ---
async def _aiter(items: List[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


class FakePages:
    """Pages of a listing; `continuation_token` is set as pages are consumed."""

    def __init__(self, blobs: List[Any], page_size: Optional[int], token: Optional[str]) -> None:
        self._blobs: List[Any] = blobs
        self._size: int = page_size or 5000
        self._start: int = int(token or 0)
        self.continuation_token: Optional[str] = None

    def __aiter__(self) -> AsyncIterator[AsyncIterator[Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AsyncIterator[Any]]:
        start: int = self._start
        while start < len(self._blobs):
            end: int = start + self._size
            self.continuation_token = str(end) if end < len(self._blobs) else None
            yield _aiter(self._blobs[start:end])
            start = end


class FakeBlobList:
    def __init__(self, blobs: List[Any], page_size: Optional[int]) -> None:
        self._blobs: List[Any] = blobs
        self._page_size: Optional[int] = page_size

    def __aiter__(self) -> AsyncIterator[Any]:
        return _aiter(self._blobs)

    def by_page(self, continuation_token: Optional[str] = None) -> FakePages:
        return FakePages(self._blobs, self._page_size, continuation_token)


class FakeAccount:
    """Blob content, soft-deleted blobs and staged blocks of a fake account."""

    def __init__(self) -> None:
        self.blobs: Dict[str, Dict[str, bytes]] = {}
        self.deleted: Dict[str, Dict[str, bytes]] = {}
        self.staged: Dict[str, Dict[str, bytes]] = {}
        self.faults: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []

    def fail(self, method: str) -> None:
        queued: List[Exception] = self.faults.get(method, [])
        if queued:
            raise queued.pop(0)

    def blob_item(self, container: str, name: str, deleted: bool = False) -> Any:
        data: bytes = (self.deleted if deleted else self.blobs)[container][name]
        return SimpleNamespace(
            name=name,
            size=len(data),
            last_modified=T0,
            blob_tier="Hot",
            etag='"0x8DC"',
            deleted=deleted,
            version_id=None,
            is_current_version=None,
            content_settings=SimpleNamespace(content_type="text/plain"),
        )


class FakeDownloader:
    def __init__(self, data: bytes) -> None:
        self._data: bytes = data

    async def chunks(self) -> AsyncIterator[bytes]:
        step: int = 4 * MIB
        for start in range(0, len(self._data), step):
            yield self._data[start : start + step]


class FakeBlobClient:
    def __init__(self, account: FakeAccount, container: str, name: str) -> None:
        self._account: FakeAccount = account
        self._container: str = container
        self._name: str = name

    def _data(self) -> bytes:
        try:
            return self._account.blobs[self._container][self._name]
        except KeyError:
            raise ResourceNotFoundError(message="The specified blob does not exist.") from None

    async def get_blob_properties(self) -> Any:
        self._account.calls.append("get_blob_properties")
        data: bytes = self._data()
        return SimpleNamespace(
            size=len(data),
            content_settings=SimpleNamespace(content_type="text/plain"),
            last_modified=T0,
            etag='"0x8DC"',
            blob_tier="Hot",
        )

    async def download_blob(self, offset: Optional[int] = None, version_id: Optional[str] = None) -> FakeDownloader:
        self._account.calls.append(f"download_blob:{offset}")
        return FakeDownloader(self._data()[offset or 0 :])

    async def upload_blob(self, data: bytes, overwrite: bool, content_settings: Any) -> Dict[str, Any]:
        self._account.calls.append("upload_blob")
        self._account.blobs.setdefault(self._container, {})[self._name] = data
        return {"etag": '"0x8DD"'}

    async def stage_block(self, block_id: str, data: bytes, length: int) -> None:
        self._account.calls.append(f"stage_block:{block_id}")
        self._account.fail("stage_block")
        self._account.staged.setdefault(self._name, {})[block_id] = data

    async def commit_block_list(self, block_list: List[str], content_settings: Any) -> Dict[str, Any]:
        self._account.calls.append("commit_block_list:" + ",".join(block_list))
        if any(b not in self._account.staged.get(self._name, {}) for b in block_list):
            invalid: HttpResponseError = HttpResponseError(
                message="The specified block list is invalid."
            )
            invalid.status_code = 400
            invalid.error_code = "InvalidBlockList"
            raise invalid
        staged: Dict[str, bytes] = self._account.staged.pop(self._name, {})
        self._account.blobs.setdefault(self._container, {})[self._name] = b"".join(
            staged[b] for b in block_list
        )
        return {"etag": '"0x8DE"'}

    async def delete_blob(self, version_id: Optional[str] = None) -> None:
        data: bytes = self._data()
        del self._account.blobs[self._container][self._name]
        self._account.deleted.setdefault(self._container, {})[self._name] = data

    async def undelete_blob(self) -> None:
        self._account.calls.append("undelete_blob")
        data: bytes = self._account.deleted[self._container].pop(self._name)
        self._account.blobs[self._container][self._name] = data


class FakeContainerClient:
    def __init__(self, account: FakeAccount, container: str) -> None:
        self._account: FakeAccount = account
        self._container: str = container

    def list_blobs(
        self,
        name_starts_with: Optional[str] = None,
        include: Optional[List[str]] = None,
        results_per_page: Optional[int] = None,
    ) -> FakeBlobList:
        self._account.calls.append("list_blobs")
        prefix: str = name_starts_with or ""
        items: List[Any] = [
            self._account.blob_item(self._container, name)
            for name in sorted(self._account.blobs.get(self._container, {}))
            if name.startswith(prefix)
        ]
        if include and "deleted" in include:
            items.extend(
                self._account.blob_item(self._container, name, deleted=True)
                for name in sorted(self._account.deleted.get(self._container, {}))
                if name.startswith(prefix)
            )
        return FakeBlobList(items, results_per_page)


class FakeServiceClient:
    def __init__(self, account: FakeAccount) -> None:
        self._account: FakeAccount = account
        self.closed: bool = False

    def get_container_client(self, container: str) -> FakeContainerClient:
        return FakeContainerClient(self._account, container)

    def get_blob_client(self, container: str, blob: str) -> FakeBlobClient:
        return FakeBlobClient(self._account, container, blob)

    def list_containers(self) -> AsyncIterator[Any]:
        self._account.calls.append("list_containers")
        return _aiter([SimpleNamespace(name=n) for n in sorted(self._account.blobs)])

    async def close(self) -> None:
        self.closed = True


# --- Fixtures ---
@pytest.fixture
def account() -> FakeAccount:
    """Provide an account with one container."""
    fake: FakeAccount = FakeAccount()
    fake.blobs["photos"] = {}
    return fake


@pytest.fixture
def metrics(tmp_path: Path) -> MetricsRecorder:
    """Provide a usage ledger in a temporary directory."""
    return MetricsRecorder(MetricsConfig(root=tmp_path / "metrics", flush_every=1000))


def _backend(
    account: FakeAccount,
    metrics: Optional[MetricsRecorder] = None,
    endpoint: str = f"https://acct.blob.core.windows.net/?{SAS}",
) -> AzureBlobBackend:
    profile: ConnectionProfile = ConnectionProfile(name="azure", endpoint=endpoint)
    return AzureBlobBackend(
        profile,
        profile.resolve(),
        metrics,
        TransferSettings(
            chunk_size=MIB,
            multipart_threshold=8 * MIB,
            part_size=5 * MIB,
            part_max_attempts=2,
            part_backoff_s=0.01,
        ),
        service_client=FakeServiceClient(account),  # type: ignore[arg-type]
    )


async def _stream(data: bytes, chunk: int = MIB) -> AsyncIterator[bytes]:
    for start in range(0, len(data), chunk):
        yield data[start : start + chunk]


# --- Tests ---
def test_block_ids_have_equal_length() -> None:
    """
    Tests that block ids are fixed-width, as Azure requires within a blob.
    """
    assert block_id(1) == "000001"
    assert len(block_id(1)) == len(block_id(99999))


@pytest.mark.parametrize(
    "error, expected",
    [
        (ClientAuthenticationError(message="denied"), AuthError),
        (ResourceNotFoundError(message="missing"), NotFoundError),
        (ServiceRequestError(message="connection refused"), NetworkError),
    ],
)
def test_translate_azure_error(error: Exception, expected: type) -> None:
    """
    Tests the mapping of SDK exceptions into the shared taxonomy.

    Args:
        error (Exception): The SDK exception.
        expected (type): The expected `StorageError` subclass.
    """
    translated: Optional[StorageError] = translate_azure_error(error, "get_object", "c", "k")

    assert isinstance(translated, expected)
    assert translated is not None and translated.operation == "get_object"


@pytest.mark.parametrize(
    "status, expected", [(403, AuthError), (404, NotFoundError), (503, ThrottledError), (500, NetworkError), (409, StorageError)]
)
def test_translate_azure_status_codes(status: int, expected: type) -> None:
    """
    Tests the mapping of plain HTTP response errors by status code.

    Args:
        status (int): The HTTP status code.
        expected (type): The expected `StorageError` subclass.
    """
    error: HttpResponseError = HttpResponseError(message=f"status {status}")
    error.status_code = status

    translated: Optional[StorageError] = translate_azure_error(error, "head_object")

    assert type(translated) is expected
    assert translated is not None and translated.status == status
    assert translate_azure_error(ValueError("bug"), "head_object") is None


@pytest.mark.asyncio
async def test_list_buckets(account: FakeAccount) -> None:
    """
    Tests account-level listing and the container-scoped SAS shortcut.

    Args:
        account (FakeAccount): The fake storage account.
    """
    account.blobs["videos"] = {}

    assert await _backend(account).list_buckets() == ["photos", "videos"]
    scoped: AzureBlobBackend = _backend(
        account, endpoint=f"https://acct.blob.core.windows.net/photos?{SAS}"
    )
    account.calls.clear()
    assert await scoped.list_buckets() == ["photos"]
    assert account.calls == []


@pytest.mark.asyncio
async def test_list_objects_paginates(account: FakeAccount, metrics: MetricsRecorder) -> None:
    """
    Tests that listings are paged with continuation tokens and metered.

    Args:
        account (FakeAccount): The fake storage account.
        metrics (MetricsRecorder): The usage ledger.
    """
    for name in ["a", "b", "c", "other/d"]:
        account.blobs["photos"][name] = name.encode()
    backend: AzureBlobBackend = _backend(account, metrics)

    first: ListPage = await backend.list_objects("photos", max_keys=2)
    second: ListPage = await backend.list_objects(
        "photos", continuation_token=first.next_token, max_keys=2
    )
    filtered: ListPage = await backend.list_objects("photos", prefix="other/")

    assert [e.key for e in first.entries] == ["a", "b"]
    assert first.next_token is not None
    assert [e.key for e in second.entries] == ["c", "other/d"]
    assert second.next_token is None
    assert [e.key for e in filtered.entries] == ["other/d"]
    assert first.entries[0].etag == "0x8DC"
    assert first.entries[0].storage_class == "Hot"
    assert metrics.totals("azure").by_type[RequestType.LIST].count == 3


@pytest.mark.asyncio
async def test_list_versions_includes_deleted_blobs(account: FakeAccount) -> None:
    """
    Tests that soft-deleted blobs are listed as delete markers.

    Args:
        account (FakeAccount): The fake storage account.
    """
    account.blobs["photos"]["a"] = b"a"
    account.deleted["photos"] = {"b": b"bb"}

    page: ListPage = await _backend(account).list_objects("photos", include_versions=True)

    assert [(e.key, e.is_delete_marker, e.size) for e in page.entries] == [
        ("a", False, 1),
        ("b", True, 0),
    ]


@pytest.mark.asyncio
async def test_head_and_get(account: FakeAccount) -> None:
    """
    Tests metadata lookup and ranged, re-chunked reads.

    Args:
        account (FakeAccount): The fake storage account.
    """
    data: bytes = os.urandom(6 * MIB)
    account.blobs["photos"]["a"] = data
    backend: AzureBlobBackend = _backend(account)

    meta: ObjectMetadata = await backend.head_object("photos", "a")
    chunks: List[bytes] = [c async for c in backend.get_object("photos", "a", range_start=MIB)]

    assert meta.size == 6 * MIB
    assert meta.content_type == "text/plain"
    assert b"".join(chunks) == data[MIB:]
    assert max(len(c) for c in chunks) <= MIB
    assert f"download_blob:{MIB}" in account.calls
    with pytest.raises(NotFoundError):
        await backend.head_object("photos", "missing")


@pytest.mark.asyncio
async def test_small_put_is_a_single_upload(account: FakeAccount, metrics: MetricsRecorder) -> None:
    """
    Tests that objects under the threshold use one `upload_blob` call.

    Args:
        account (FakeAccount): The fake storage account.
        metrics (MetricsRecorder): The usage ledger.
    """
    backend: AzureBlobBackend = _backend(account, metrics)

    etag: str = await backend.put_object("photos", "a", _stream(b"hello"), size_hint=5)

    assert etag == "0x8DD"
    assert account.blobs["photos"]["a"] == b"hello"
    assert metrics.totals("azure").by_type[RequestType.PUT].count == 1
    assert metrics.totals("azure").total_upload == 5


@pytest.mark.asyncio
async def test_large_put_stages_and_commits_blocks(account: FakeAccount) -> None:
    """
    Tests block uploads and the partial state reported after each block.

    Args:
        account (FakeAccount): The fake storage account.
    """
    data: bytes = os.urandom(9 * MIB)
    partials: List[PartialUpload] = []

    await _backend(account).put_object("photos", "big", _stream(data), on_part=partials.append)

    assert account.blobs["photos"]["big"] == data
    assert "commit_block_list:000001,000002" in account.calls
    assert [p.offset for p in partials] == [5 * MIB, 9 * MIB]
    assert partials[-1].parts == [(1, "000001"), (2, "000002")]


@pytest.mark.asyncio
async def test_resumed_put_commits_earlier_blocks(account: FakeAccount) -> None:
    """
    Tests that a resumed upload stages only the remaining blocks.

    Args:
        account (FakeAccount): The fake storage account.
    """
    data: bytes = os.urandom(9 * MIB)
    account.staged["big"] = {"000001": data[: 5 * MIB]}
    resume: PartialUpload = PartialUpload(offset=5 * MIB, parts=[(1, "000001")])

    await _backend(account).put_object("photos", "big", _stream(data[5 * MIB :]), resume=resume)

    assert account.blobs["photos"]["big"] == data
    assert "stage_block:000001" not in account.calls
    assert "stage_block:000002" in account.calls


@pytest.mark.asyncio
async def test_failed_block_is_retried(account: FakeAccount) -> None:
    """
    Tests that a throttled block is retried on its own.

    Args:
        account (FakeAccount): The fake storage account.
    """
    throttled: HttpResponseError = HttpResponseError(message="Server busy")
    throttled.status_code = 503
    account.faults["stage_block"] = [throttled]
    data: bytes = os.urandom(9 * MIB)

    await _backend(account).put_object("photos", "big", _stream(data))

    assert account.calls.count("stage_block:000001") == 2
    assert account.blobs["photos"]["big"] == data


@pytest.mark.asyncio
async def test_commit_of_expired_blocks_raises_not_found(account: FakeAccount) -> None:
    """
    Tests that committing blocks the service no longer holds reports a lost upload.

    Args:
        account (FakeAccount): The fake storage account.
    """
    resume: PartialUpload = PartialUpload(offset=10 * MIB, parts=[(1, "000001"), (2, "000002")])

    with pytest.raises(NotFoundError) as excinfo:
        await _backend(account).put_object("photos", "big", _stream(b"tail"), resume=resume)

    assert excinfo.value.operation == "commit_block_list"
    assert excinfo.value.status == 400
    assert "big" not in account.blobs["photos"]


@pytest.mark.asyncio
async def test_job_restarts_object_when_staged_blocks_expired(
    account: FakeAccount, test_config: Config
) -> None:
    """
    Tests that a job resuming onto expired blocks copies the object again from byte 0.

    Arrange:
        - Put a multi-block blob in a source container.
        - Checkpoint a partial upload whose first block is no longer staged.
    Act:
        - Run the job.
    Assert:
        - The job completes and the target blob equals the source.
        - The source was read from the resume offset, then from the start.
        - The checkpoint holds no partial upload.

    Args:
        account (FakeAccount): The fake storage account.
        test_config (Config): Configuration with a temporary data directory.
    """
    # Arrange
    data: bytes = os.urandom(9 * MIB)
    account.blobs["source"] = {"big": data}
    account.blobs["target"] = {}
    registry: ProfileRegistry = ProfileRegistry(
        [
            ConnectionProfile(name="src", endpoint=f"https://src.blob.core.windows.net/?{SAS}"),
            ConnectionProfile(name="dst", endpoint=f"https://dst.blob.core.windows.net/?{SAS}"),
        ]
    )
    engine: MigrationEngine = MigrationEngine(
        registry,
        test_config,
        backend_factory=lambda profile: _backend(account, endpoint=profile.endpoint),
    )
    job: MigrationJob = engine.submit(
        JobRequest("src", "source", "", "dst", "target", "", concurrency=1)
    )
    checkpoint: Checkpoint = engine.store.load(job.id)
    checkpoint.in_progress["big"] = PartialUpload(
        offset=5 * MIB, parts=[(1, "000001")], part_size=5 * MIB
    )
    engine.store.save(checkpoint)

    # Act
    report: MigrationReport = await MigrationEngine(
        registry,
        test_config,
        backend_factory=lambda profile: _backend(account, endpoint=profile.endpoint),
    ).run(job.id)

    # Assert
    assert report.state == JobState.COMPLETED
    assert report.succeeded == 1
    assert account.blobs["target"]["big"] == data
    downloads: List[str] = [c for c in account.calls if c.startswith("download_blob:")]
    assert downloads == [f"download_blob:{5 * MIB}", "download_blob:None"]
    assert engine.store.load(job.id).in_progress == {}


@pytest.mark.asyncio
async def test_block_size_grows_to_stay_within_block_limit(account: FakeAccount) -> None:
    """
    Tests that a large size hint raises the block size instead of exceeding the block limit.

    Args:
        account (FakeAccount): The fake storage account.
    """
    # Arrange
    backend: AzureBlobBackend = _backend(account)
    backend.max_parts = 2
    data: bytes = os.urandom(11 * MIB)
    partials: List[PartialUpload] = []

    # Act
    await backend.put_object(
        "photos", "big", _stream(data), size_hint=len(data), on_part=partials.append
    )

    # Assert
    assert account.blobs["photos"]["big"] == data
    assert "commit_block_list:000001,000002" in account.calls
    assert [p.part_size for p in partials] == [11 * MIB // 2, 11 * MIB // 2]


@pytest.mark.asyncio
async def test_delete_and_restore(account: FakeAccount) -> None:
    """
    Tests deleting a blob and undeleting it.

    Args:
        account (FakeAccount): The fake storage account.
    """
    account.blobs["photos"]["a"] = b"a"
    backend: AzureBlobBackend = _backend(account)

    await backend.delete_object("photos", "a")
    assert "a" not in account.blobs["photos"]

    await backend.restore_delete_marker("photos", "a")
    assert account.blobs["photos"]["a"] == b"a"

    with pytest.raises(NotFoundError):
        await backend.restore_delete_marker("photos", "a")
    with pytest.raises(NotFoundError):
        await backend.delete_object("photos", "missing")


@pytest.mark.asyncio
async def test_shareable_url_uses_sas(account: FakeAccount) -> None:
    """
    Tests that links carry the SAS token and ignore a requested expiry.

    Args:
        account (FakeAccount): The fake storage account.
    """
    url: str = await _backend(account).generate_shareable_url("photos", "a b.jpg", expiry_s=60)

    assert url == f"https://acct.blob.core.windows.net/photos/a%20b.jpg?{SAS}"


@pytest.mark.asyncio
async def test_expired_or_unsigned_sas_fails_before_any_request(
    account: FakeAccount, metrics: MetricsRecorder
) -> None:
    """
    Tests that SAS problems surface before a request is sent.

    Args:
        account (FakeAccount): The fake storage account.
        metrics (MetricsRecorder): The usage ledger.
    """
    expired: AzureBlobBackend = _backend(
        account,
        metrics,
        endpoint="https://acct.blob.core.windows.net/?se=2020-01-01T00%3A00%3A00Z&sig=abc",
    )
    unsigned: AzureBlobBackend = _backend(
        account, endpoint="https://acct.blob.core.windows.net/?sv=2022-11-02"
    )

    with pytest.raises(AuthError):
        await expired.head_object("photos", "a")
    with pytest.raises(ConfigurationError):
        await unsigned.list_objects("photos")
    assert account.calls == []
    assert metrics.totals("azure").total_requests == 0


@pytest.mark.asyncio
async def test_close_releases_client(account: FakeAccount) -> None:
    """
    Tests that leaving the async context closes the service client.

    Args:
        account (FakeAccount): The fake storage account.
    """
    backend: AzureBlobBackend = _backend(account)

    async with backend:
        pass

    assert backend._service.closed  # type: ignore[attr-defined]
