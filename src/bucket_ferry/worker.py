# src/bucket_ferry/worker.py
"""
Defines the core transfer worker function.

This module contains the logic for a single worker task that continuously
pulls transfer tasks from a queue and performs a streaming, resumable,
cross-provider copy with retries and integrity checks.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional

from bucket_ferry.backends.base import StorageBackend
from bucket_ferry.checkpoint import Checkpoint, CheckpointStore
from bucket_ferry.exceptions import (
    CheckpointError,
    ChecksumMismatchError,
    NotFoundError,
    StorageError,
    TransferCancelled,
    TransientError,
)
from bucket_ferry.models import (
    MigrationJob,
    ObjectMetadata,
    PartialUpload,
    TaskStatus,
    TransferTask,
    target_key_for,
)
from bucket_ferry.throttle import BandwidthLimiter, RetryPolicy, TransferMetrics

logger: logging.Logger = logging.getLogger(__name__)

_MD5_ETAG_RE: re.Pattern[str] = re.compile(r"^[0-9a-fA-F]{32}$")
_UPLOAD_OPERATIONS = frozenset(
    {"upload_part", "complete_multipart_upload", "stage_block", "commit_block_list"}
)


class ProgressTracker:
    """
    Live counters of a running job.

    Workers report into the tracker; the engine turns it into immutable
    `ProgressSnapshot`s. `on_change` is invoked after every update.
    """

    def __init__(
        self,
        total_objects: int = 0,
        total_bytes: int = 0,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.total_objects: int = total_objects
        self.total_bytes: int = total_bytes
        self.completed: int = 0
        self.failed: int = 0
        self.skipped: int = 0
        self.in_flight: int = 0
        self.bytes_copied: int = 0
        self._bytes_this_run: int = 0
        self._started_at: float = time.monotonic()
        self._on_change: Optional[Callable[[], None]] = on_change

    @property
    def throughput_bps(self) -> float:
        elapsed: float = time.monotonic() - self._started_at
        return self._bytes_this_run / elapsed if elapsed > 0 else 0.0

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def add_bytes(self, count: int, transferred: bool = True) -> None:
        self.bytes_copied += count
        if transferred:
            self._bytes_this_run += max(count, 0)
        self._changed()

    def task_started(self) -> None:
        self.in_flight += 1
        self._changed()

    def task_finished(self, status: TaskStatus) -> None:
        self.in_flight -= 1
        if status == TaskStatus.COMPLETED:
            self.completed += 1
        elif status == TaskStatus.FAILED:
            self.failed += 1
        self._changed()


@dataclass
class TransferContext:
    """
    Everything a worker needs to copy the objects of one job.

    Attributes:
        job (MigrationJob): The job being run.
        source (StorageBackend): Backend of the source profile.
        target (StorageBackend): Backend of the target profile.
        checkpoint (Checkpoint): The job's in-memory checkpoint.
        store (CheckpointStore): Where the checkpoint is persisted.
        limiter (BandwidthLimiter): Aggregate bandwidth cap of the job.
        retry (RetryPolicy): Whole-object retry policy.
        cancel_event (asyncio.Event): Set to stop the job cooperatively.
        progress (ProgressTracker): Live counters.
        verify (bool): Compare source and target metadata after copying.
        checkpoint_interval_s (float): Minimum interval between partial
            upload checkpoint writes.
        metrics (List[TransferMetrics]): Collected per-task metrics.
    """

    job: MigrationJob
    source: StorageBackend
    target: StorageBackend
    checkpoint: Checkpoint
    store: CheckpointStore
    limiter: BandwidthLimiter
    retry: RetryPolicy
    cancel_event: asyncio.Event
    progress: ProgressTracker
    verify: bool = True
    checkpoint_interval_s: float = 5.0
    metrics: List[TransferMetrics] = field(default_factory=list)


@dataclass
class _PartialState:
    """Latest partial-upload state of a task and when it was last persisted."""

    partial: Optional[PartialUpload] = None
    saved_at: float = 0.0


async def transfer_worker(
    worker_id: int,
    task_queue: "asyncio.Queue[Optional[TransferTask]]",
    ctx: TransferContext,
) -> None:
    """
    A long-lived worker task that processes transfer tasks from a queue.

    The worker exits when it receives a `None` sentinel. Once the job's
    cancel event is set, remaining tasks are drained without being started.

    Args:
        worker_id (int): A unique identifier for this worker.
        task_queue (asyncio.Queue[Optional[TransferTask]]): The queue from
            which to pull tasks.
        ctx (TransferContext): The job's shared transfer context.

    Raises:
        CheckpointError: If progress can no longer be persisted.
    """
    logger.debug(f"Worker {worker_id} started.")
    while True:
        task: Optional[TransferTask] = await task_queue.get()
        try:
            if task is None:
                logger.debug(f"Worker {worker_id} shutting down.")
                return
            if ctx.cancel_event.is_set():
                continue
            await transfer_object(task, ctx)
        except TransferCancelled:
            logger.debug(f"Worker {worker_id} stopped mid-transfer by cancellation.")
        finally:
            task_queue.task_done()


async def transfer_object(task: TransferTask, ctx: TransferContext) -> None:
    """
    Copies a single object, retrying transient failures.

    On success the key is added to the checkpoint's completed set; a
    permanent failure (or exhausted retries) records it as failed. Neither
    outcome is raised to the caller.

    Args:
        task (TransferTask): The task to run. Mutated in place.
        ctx (TransferContext): The job's shared transfer context.

    Raises:
        TransferCancelled: If the job was cancelled mid-transfer.
        CheckpointError: If the outcome could not be persisted.
    """
    job: MigrationJob = ctx.job
    target_key: str = target_key_for(task.object_key, job.source_prefix, job.target_prefix)
    state: _PartialState = _PartialState(partial=ctx.checkpoint.in_progress.get(task.object_key))
    start_time: float = time.monotonic()
    rtt_ms: Optional[float] = None
    err_tag: Optional[str] = None

    task.set_status(TaskStatus.COPYING)
    ctx.progress.task_started()
    try:
        while True:
            task.attempts += 1
            try:
                head_start: float = time.monotonic()
                source_meta: ObjectMetadata = await ctx.source.head_object(
                    job.source_bucket, task.object_key
                )
                rtt_ms = (time.monotonic() - head_start) * 1000
                await _copy_once(task, target_key, source_meta, state, ctx)
                if ctx.verify:
                    await _verify(task, target_key, source_meta, ctx)
                break
            except TransientError as e:
                task.last_error = str(e)
                ctx.progress.add_bytes(-_reset_progress(task), transferred=False)
                if not ctx.retry.should_retry(e, task.attempts):
                    raise
                delay: float = ctx.retry.delay_for(task.attempts)
                logger.warning(
                    f"Transfer of '{task.object_key}' failed (attempt "
                    f"{task.attempts}/{ctx.retry.max_attempts}): {e}. "
                    f"Retrying in {delay:.2f}s."
                )
                if await _sleep_or_cancel(ctx.cancel_event, delay):
                    raise TransferCancelled(task.object_key) from e

        task.set_status(TaskStatus.COMPLETED)
        ctx.store.mark_completed(ctx.checkpoint, task.object_key)
        logger.debug(
            f"Copied '{job.source_bucket}/{task.object_key}' -> "
            f"'{job.target_bucket}/{target_key}'"
        )

    except TransferCancelled:
        err_tag = TransferCancelled.__name__
        task.status = TaskStatus.PENDING
        if state.partial is not None:
            ctx.store.record_partial(ctx.checkpoint, task.object_key, state.partial)
        raise
    except CheckpointError:
        raise
    except StorageError as e:
        err_tag = type(e).__name__
        _fail(task, f"{err_tag}: {e}", ctx)
        logger.error(f"Failed to transfer '{task.object_key}': {err_tag} - {e}")
    except Exception as e:
        err_tag = type(e).__name__
        _fail(task, f"{err_tag}: {e}", ctx)
        logger.exception(f"An unexpected error occurred transferring '{task.object_key}'")
    finally:
        ctx.progress.task_finished(task.status)
        ctx.metrics.append(
            TransferMetrics(
                bytes=task.bytes_copied,
                duration_s=time.monotonic() - start_time,
                err_tag=err_tag,
                rtt_ms=rtt_ms,
            )
        )


def _fail(task: TransferTask, message: str, ctx: TransferContext) -> None:
    task.last_error = message
    task.set_status(TaskStatus.FAILED)
    ctx.store.mark_failed(ctx.checkpoint, task.object_key, message)


def _reset_progress(task: TransferTask) -> int:
    """Rolls back the byte count of a failed attempt."""
    rolled_back: int = task.bytes_copied
    task.bytes_copied = 0
    return rolled_back


def _drop_partial(task: TransferTask, state: _PartialState, ctx: TransferContext) -> None:
    """Forgets an unusable partial upload; the next attempt starts at byte 0."""
    if state.partial is not None:
        state.partial = None
        ctx.store.record_partial(ctx.checkpoint, task.object_key, None)


async def _sleep_or_cancel(cancel_event: asyncio.Event, delay: float) -> bool:
    """Sleeps for `delay` seconds; returns True early if the job is cancelled."""
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


async def _empty_stream() -> AsyncIterator[bytes]:
    return
    yield b""  # pragma: no cover


async def _pipe(
    source: AsyncIterator[bytes],
    task: TransferTask,
    ctx: TransferContext,
) -> AsyncIterator[bytes]:
    """
    Relays source chunks to the target through the bandwidth limiter.

    The cancel event is checked between chunks.
    """
    try:
        async for chunk in source:
            if ctx.cancel_event.is_set():
                raise TransferCancelled(task.object_key)
            await ctx.limiter.acquire(len(chunk))
            task.bytes_copied += len(chunk)
            ctx.progress.add_bytes(len(chunk))
            yield chunk
    finally:
        if hasattr(source, "aclose"):
            await source.aclose()  # type: ignore[attr-defined]


async def _copy_once(
    task: TransferTask,
    target_key: str,
    source_meta: ObjectMetadata,
    state: _PartialState,
    ctx: TransferContext,
) -> str:
    """
    Streams one object from source to target, resuming a partial upload.

    Returns:
        str: The etag of the stored target object.
    """
    job: MigrationJob = ctx.job
    resume: Optional[PartialUpload] = state.partial
    if resume is not None and not ctx.source.supports_range_reads:
        resume = None
    offset: int = resume.offset if resume is not None else 0
    task.byte_length = source_meta.size
    task.bytes_copied = offset
    ctx.progress.add_bytes(offset, transferred=False)

    source_stream: AsyncIterator[bytes]
    if offset >= source_meta.size and resume is not None:
        source_stream = _empty_stream()
    else:
        source_stream = ctx.source.get_object(
            job.source_bucket, task.object_key, range_start=offset or None
        )

    def on_part(partial: PartialUpload) -> None:
        state.partial = partial
        now: float = time.monotonic()
        if now - state.saved_at >= ctx.checkpoint_interval_s:
            ctx.store.record_partial(ctx.checkpoint, task.object_key, partial)
            state.saved_at = now

    try:
        return await ctx.target.put_object(
            job.target_bucket,
            target_key,
            _pipe(source_stream, task, ctx),
            size_hint=source_meta.size,
            content_type=source_meta.content_type,
            resume=resume,
            on_part=on_part,
        )
    except TransientError:
        # A failed multipart upload has been aborted by the backend.
        _drop_partial(task, state, ctx)
        raise
    except NotFoundError as e:
        if resume is None or e.operation not in _UPLOAD_OPERATIONS:
            raise
        logger.warning(
            f"Partial upload of '{target_key}' no longer exists; restarting from byte 0."
        )
        ctx.progress.add_bytes(-_reset_progress(task), transferred=False)
        _drop_partial(task, state, ctx)
        return await _copy_once(task, target_key, source_meta, state, ctx)


def _is_plain_md5(etag: str) -> bool:
    return bool(_MD5_ETAG_RE.match(etag))


async def _verify(
    task: TransferTask,
    target_key: str,
    source_meta: ObjectMetadata,
    ctx: TransferContext,
) -> None:
    """
    Compares the target object with the source metadata.

    Sizes must match. Etags are compared only when both are plain MD5
    digests, i.e. neither side was a multipart upload nor an Azure blob.

    Raises:
        ChecksumMismatchError: If the objects disagree.
    """
    target_meta: ObjectMetadata = await ctx.target.head_object(ctx.job.target_bucket, target_key)
    if target_meta.size != source_meta.size:
        raise ChecksumMismatchError(
            f"Integrity check failed for '{task.object_key}': size mismatch "
            f"({source_meta.size} != {target_meta.size})",
            "verify",
            ctx.job.target_bucket,
            target_key,
        )
    if (
        _is_plain_md5(source_meta.etag)
        and _is_plain_md5(target_meta.etag)
        and source_meta.etag.lower() != target_meta.etag.lower()
    ):
        raise ChecksumMismatchError(
            f"Integrity check failed for '{task.object_key}': ETag mismatch "
            f"({source_meta.etag} != {target_meta.etag})",
            "verify",
            ctx.job.target_bucket,
            target_key,
        )
