# tests/conftest.py
"""
Pytest configuration and fixtures for the bucket-ferry test suite.

This module sets up the testing environment, including:
- An isolated `Config` rooted in a temporary data directory.
- An in-memory storage backend with fault injection, used to exercise the
  migration engine without a network.
- A moto S3 server and boto3 helpers for the S3 backend integration tests.
"""

import asyncio
import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Generator,
    List,
    Optional,
    Set,
    Tuple,
)

import boto3
import pytest
from botocore.config import Config as BotoConfig
from moto.server import ThreadedMotoServer

from bucket_ferry.backends.base import PartCallback, StorageBackend, StreamReader
from bucket_ferry.config import (
    MIB,
    Config,
    ConnectionProfile,
    EngineConfig,
    MetricsConfig,
    ProfileRegistry,
    TransferSettings,
)
from bucket_ferry.engine import MigrationEngine
from bucket_ferry.exceptions import NotFoundError, StorageError
from bucket_ferry.metrics import MetricsRecorder, RequestType
from bucket_ferry.models import (
    ListPage,
    ObjectEntry,
    ObjectMetadata,
    PartialUpload,
    Provider,
)

# --- Constants ---
S3_ACCESS_KEY: str = "testing"
S3_SECRET_KEY: str = "testing"
S3_REGION: str = "us-east-1"

KIB: int = 1024


# --- In-memory backend ---
@dataclass
class MemoryStore:
    """
    The shared state behind every `MemoryBackend` of a test.

    Attributes:
        buckets (Dict[str, Dict[str, bytes]]): Object content by bucket and key.
        content_types (Dict[Tuple[str, str], str]): Stored MIME types.
        etags (Dict[Tuple[str, str], str]): Stored etags.
        uploads (Dict[str, List[bytes]]): Staged parts of open multipart uploads.
        faults (Dict[Tuple[str, str], List[Exception]]): Errors to raise, in
            order, on the next calls of (operation, key).
        chunk_delay_s (float): Sleep before each streamed chunk.
        put_counts (Dict[str, int]): Completed uploads per target key.
        get_ranges (List[Tuple[str, int]]): (key, range start) of every read.
        active_puts (int): Uploads currently running.
        max_active_puts (int): Highest value `active_puts` ever reached.
        on_part (Callable[[str, PartialUpload], None], optional): Hook run
            after every committed part.
        truncate_keys (Set[str]): Keys stored one byte short, to simulate
            a corrupted upload.
    """

    buckets: Dict[str, Dict[str, bytes]] = field(default_factory=dict)
    content_types: Dict[Tuple[str, str], str] = field(default_factory=dict)
    etags: Dict[Tuple[str, str], str] = field(default_factory=dict)
    uploads: Dict[str, List[bytes]] = field(default_factory=dict)
    faults: Dict[Tuple[str, str], List[Exception]] = field(default_factory=dict)
    chunk_delay_s: float = 0.0
    put_counts: Dict[str, int] = field(default_factory=dict)
    get_ranges: List[Tuple[str, int]] = field(default_factory=list)
    active_puts: int = 0
    max_active_puts: int = 0
    on_part: Optional[Callable[[str, PartialUpload], None]] = None
    truncate_keys: Set[str] = field(default_factory=set)

    def add_object(
        self, bucket: str, key: str, data: bytes, content_type: str = "text/plain"
    ) -> None:
        self.buckets.setdefault(bucket, {})[key] = data
        self.content_types[(bucket, key)] = content_type
        self.etags[(bucket, key)] = hashlib.md5(data).hexdigest()

    def inject(self, operation: str, key: str, *errors: Exception) -> None:
        self.faults.setdefault((operation, key), []).extend(errors)

    def maybe_fail(self, operation: str, key: str) -> None:
        queued: List[Exception] = self.faults.get((operation, key), [])
        if queued:
            raise queued.pop(0)

    def content(self, bucket: str, key: str) -> bytes:
        try:
            return self.buckets[bucket][key]
        except KeyError:
            raise NotFoundError(
                f"'{bucket}/{key}' does not exist", "head_object", bucket, key, 404
            ) from None


class MemoryBackend(StorageBackend):
    """A `StorageBackend` over a `MemoryStore`, metered like a real one."""

    provider: Provider = Provider.S3

    def __init__(
        self,
        profile: ConnectionProfile,
        store: MemoryStore,
        metrics: Optional[MetricsRecorder] = None,
        settings: Optional[TransferSettings] = None,
    ) -> None:
        super().__init__(profile, profile.resolve(), metrics, settings)
        self.store: MemoryStore = store
        self.closed: bool = False

    def _translate_error(
        self,
        error: Exception,
        operation: str,
        bucket: Optional[str],
        key: Optional[str],
    ) -> Optional[StorageError]:
        return None

    async def close(self) -> None:
        self.closed = True

    async def list_buckets(self) -> List[str]:
        with self._call(RequestType.LIST, "list_buckets"):
            return sorted(self.store.buckets)

    async def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        include_versions: bool = False,
        max_keys: Optional[int] = None,
    ) -> ListPage:
        page_size: int = max_keys or 2
        with self._call(RequestType.LIST, "list_objects", bucket):
            self.store.maybe_fail("list_objects", prefix)
            keys: List[str] = sorted(
                k for k in self.store.buckets.get(bucket, {}) if k.startswith(prefix)
            )
        start: int = int(continuation_token or 0)
        selected: List[str] = keys[start : start + page_size]
        entries: List[ObjectEntry] = [
            ObjectEntry(
                key=k,
                size=len(self.store.buckets[bucket][k]),
                last_modified=datetime(2024, 1, 1, tzinfo=timezone.utc),
                etag=self.store.etags[(bucket, k)],
            )
            for k in selected
        ]
        next_token: Optional[str] = (
            str(start + page_size) if start + page_size < len(keys) else None
        )
        return ListPage(entries=entries, next_token=next_token)

    async def head_object(self, bucket: str, key: str) -> ObjectMetadata:
        with self._call(RequestType.HEAD, "head_object", bucket, key):
            self.store.maybe_fail("head_object", key)
            data: bytes = self.store.content(bucket, key)
        return ObjectMetadata(
            key=key,
            size=len(data),
            content_type=self.store.content_types.get((bucket, key), "application/octet-stream"),
            last_modified=datetime(2024, 1, 1, tzinfo=timezone.utc),
            etag=self.store.etags[(bucket, key)],
        )

    async def get_object(
        self,
        bucket: str,
        key: str,
        range_start: Optional[int] = None,
        version_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        with self._call(RequestType.GET, "get_object", bucket, key) as meter:
            self.store.maybe_fail("get_object", key)
            data: bytes = self.store.content(bucket, key)
            position: int = range_start or 0
            self.store.get_ranges.append((key, position))
            while position < len(data):
                if self.store.chunk_delay_s:
                    await asyncio.sleep(self.store.chunk_delay_s)
                chunk: bytes = data[position : position + self._settings.chunk_size]
                position += len(chunk)
                meter.bytes_down += len(chunk)
                yield chunk

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
        self.store.active_puts += 1
        self.store.max_active_puts = max(self.store.max_active_puts, self.store.active_puts)
        try:
            reader: StreamReader = StreamReader(stream)
            if resume is not None and resume.upload_id:
                return await self._multipart(bucket, key, reader, content_type, resume, on_part)
            threshold: int = self._settings.multipart_threshold
            head: bytes = await reader.read(threshold + 1)
            if len(head) > threshold:
                reader.unread(head)
                return await self._multipart(bucket, key, reader, content_type, None, on_part)
            with self._call(RequestType.PUT, "put_object", bucket, key) as meter:
                self.store.maybe_fail("put_object", key)
                meter.bytes_up = len(head)
                return self._commit(bucket, key, head, content_type, hashlib.md5(head).hexdigest())
        finally:
            self.store.active_puts -= 1

    async def _multipart(
        self,
        bucket: str,
        key: str,
        reader: StreamReader,
        content_type: Optional[str],
        resume: Optional[PartialUpload],
        on_part: Optional[PartCallback],
    ) -> str:
        if resume is not None:
            upload: PartialUpload = PartialUpload(
                offset=resume.offset, upload_id=resume.upload_id, parts=list(resume.parts)
            )
            if upload.upload_id not in self.store.uploads:
                raise NotFoundError("upload is gone", "upload_part", bucket, key, 404)
        else:
            upload = PartialUpload(upload_id=uuid.uuid4().hex)
            self.store.uploads[upload.upload_id or ""] = []
        staged: List[bytes] = self.store.uploads[upload.upload_id or ""]

        while True:
            data: bytes = await reader.read(self._settings.part_size)
            if not data:
                break
            with self._call(RequestType.PUT, "upload_part", bucket, key) as meter:
                self.store.maybe_fail("upload_part", key)
                meter.bytes_up = len(data)
                staged.append(data)
            upload.parts.append((len(upload.parts) + 1, hashlib.md5(data).hexdigest()))
            upload.offset += len(data)
            snapshot: PartialUpload = PartialUpload(
                offset=upload.offset, upload_id=upload.upload_id, parts=list(upload.parts)
            )
            if on_part is not None:
                on_part(snapshot)
            if self.store.on_part is not None:
                self.store.on_part(key, snapshot)

        with self._call(RequestType.POST, "complete_multipart_upload", bucket, key):
            content: bytes = b"".join(staged)
            del self.store.uploads[upload.upload_id or ""]
            return self._commit(
                bucket, key, content, content_type, f"{hashlib.md5(content).hexdigest()}-{len(staged)}"
            )

    def _commit(
        self, bucket: str, key: str, data: bytes, content_type: Optional[str], etag: str
    ) -> str:
        if key in self.store.truncate_keys:
            data = data[:-1]
        self.store.buckets.setdefault(bucket, {})[key] = data
        self.store.content_types[(bucket, key)] = content_type or "application/octet-stream"
        self.store.etags[(bucket, key)] = etag
        self.store.put_counts[key] = self.store.put_counts.get(key, 0) + 1
        return etag

    async def delete_object(
        self, bucket: str, key: str, version_id: Optional[str] = None
    ) -> None:
        with self._call(RequestType.DELETE, "delete_object", bucket, key):
            self.store.content(bucket, key)
            del self.store.buckets[bucket][key]

    async def restore_delete_marker(self, bucket: str, key: str) -> None:
        raise NotFoundError("versioning is not supported", "restore_delete_marker", bucket, key)

    async def generate_shareable_url(
        self, bucket: str, key: str, expiry_s: Optional[int] = None
    ) -> str:
        return self.endpoint.object_url(bucket, key)


# --- Application Fixtures ---
@pytest.fixture(scope="function")
def test_config(tmp_path: Path) -> Config:
    """
    Provide a Config object with a temporary data directory for isolation.

    Chunks are small and retry delays short so engine tests run quickly.

    Args:
        tmp_path (Path): The pytest fixture for a temporary directory.

    Returns:
        Config: A Config instance for use in tests.
    """
    return Config(
        engine=EngineConfig(
            data_dir=tmp_path,
            concurrency=2,
            max_attempts=3,
            backoff_base_s=0.01,
            backoff_max_s=0.05,
            checkpoint_interval_s=0.0,
        ),
        transfer=TransferSettings(
            chunk_size=64 * KIB,
            multipart_threshold=8 * MIB,
            part_size=5 * MIB,
            part_max_attempts=2,
            part_backoff_s=0.01,
        ),
        metrics=MetricsConfig(root=tmp_path / "metrics", flush_every=1000),
    )


@pytest.fixture(scope="function")
def registry() -> ProfileRegistry:
    """
    Provide two S3-style profiles, "src" and "dst", on different endpoints.

    Returns:
        ProfileRegistry: The registry.
    """
    return ProfileRegistry(
        [
            ConnectionProfile(
                name="src",
                endpoint="http://127.0.0.1:9000",
                access_key="src-key",
                secret_key="src-secret",
            ),
            ConnectionProfile(
                name="dst",
                endpoint="http://127.0.0.1:9001",
                access_key="dst-key",
                secret_key="dst-secret",
            ),
        ]
    )


@pytest.fixture(scope="function")
def memory_store() -> MemoryStore:
    """Provide an empty in-memory store with "source" and "target" buckets."""
    store: MemoryStore = MemoryStore()
    store.buckets["source"] = {}
    store.buckets["target"] = {}
    return store


@pytest.fixture(scope="function")
def engine_factory(
    test_config: Config, registry: ProfileRegistry, memory_store: MemoryStore
) -> Callable[..., MigrationEngine]:
    """
    Provide a factory of engines wired to the in-memory store.

    Engines built by the factory share the data directory, so a job
    submitted by one can be resumed by another, as after a restart.

    Returns:
        Callable[..., MigrationEngine]: Accepts an optional `Config`.
    """

    def _factory(config: Optional[Config] = None) -> MigrationEngine:
        cfg: Config = config or test_config
        metrics: MetricsRecorder = MetricsRecorder(cfg.metrics)
        return MigrationEngine(
            registry,
            cfg,
            metrics,
            backend_factory=lambda profile: MemoryBackend(
                profile, memory_store, metrics, cfg.transfer
            ),
        )

    return _factory


# --- S3 (moto) Fixtures ---
@pytest.fixture(scope="session")
def moto_server() -> Generator[str, None, None]:
    """
    Run a moto S3 server for the session and yield its endpoint URL.

    Yields:
        str: The base URL of the server.
    """
    server: ThreadedMotoServer = ThreadedMotoServer(ip_address="127.0.0.1", port=0)
    server.start()
    host, port = server.get_host_and_port()
    yield f"http://{host}:{port}"
    server.stop()


@pytest.fixture(scope="function")
def s3_resource(moto_server: str) -> Any:
    """
    Provide a boto3 S3 resource for arranging and inspecting test data.

    Args:
        moto_server (str): The endpoint URL of the moto server.

    Returns:
        Any: A boto3 S3 service resource.
    """
    return boto3.resource(
        "s3",
        endpoint_url=moto_server,
        aws_access_key_id=S3_ACCESS_KEY,
        aws_secret_access_key=S3_SECRET_KEY,
        region_name=S3_REGION,
        config=BotoConfig(retries={"max_attempts": 0, "mode": "standard"}),
    )


@pytest.fixture(scope="function")
def s3_bucket(s3_resource: Any) -> Generator[str, None, None]:
    """
    Create a unique, isolated bucket for a single test function.

    Yields:
        str: The bucket name. The bucket and all its versions are deleted
            after the test.
    """
    name: str = f"test-bucket-{uuid.uuid4().hex[:12]}"
    bucket: Any = s3_resource.Bucket(name)
    bucket.create()
    yield name
    bucket.object_versions.all().delete()
    bucket.delete()


@pytest.fixture(scope="function")
def s3_profile(moto_server: str) -> ConnectionProfile:
    """Provide a connection profile pointing at the moto server."""
    return ConnectionProfile(
        name="moto",
        endpoint=moto_server,
        region=S3_REGION,
        access_key=S3_ACCESS_KEY,
        secret_key=S3_SECRET_KEY,
    )
