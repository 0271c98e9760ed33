# src/bucket_ferry/engine.py
"""Core orchestration logic for bucket-ferry migrations."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from bucket_ferry.backends import create_backend
from bucket_ferry.backends.base import StorageBackend
from bucket_ferry.checkpoint import Checkpoint, CheckpointStore
from bucket_ferry.config import Config, ConnectionProfile, ProfileRegistry
from bucket_ferry.endpoint import StorageEndpoint
from bucket_ferry.exceptions import (
    CheckpointError,
    ConfigurationError,
    InvalidStateTransition,
    StorageError,
)
from bucket_ferry.metrics import MetricsRecorder
from bucket_ferry.models import (
    JobRequest,
    JobState,
    ListPage,
    MigrationJob,
    ProgressSnapshot,
    TaskStatus,
    TransferTask,
    normalize_prefix,
    target_key_for,
)
from bucket_ferry.report import MigrationReport, ObjectOutcome, Outcome
from bucket_ferry.throttle import BandwidthLimiter, RetryPolicy, TransferMetrics, summarize
from bucket_ferry.worker import ProgressTracker, TransferContext, transfer_worker

logger: logging.Logger = logging.getLogger(__name__)

BackendFactory = Callable[[ConnectionProfile], StorageBackend]

_RUNNING_STATES = frozenset({JobState.DISCOVERING, JobState.COPYING, JobState.VERIFYING})


@dataclass
class _JobRun:
    """Runtime state of a job while `run` is executing it."""

    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    tracker: Optional[ProgressTracker] = None


class MigrationEngine:
    """
    Orchestrates migration jobs from submission to completion.

    Jobs move through PENDING, DISCOVERING, COPYING, VERIFYING and end
    COMPLETED or FAILED; a cancelled job is PAUSED and can be resumed, also
    by a later process, from its checkpoint.
    """

    def __init__(
        self,
        registry: ProfileRegistry,
        config: Optional[Config] = None,
        metrics: Optional[MetricsRecorder] = None,
        backend_factory: Optional[BackendFactory] = None,
    ) -> None:
        """
        Initializes the engine.

        Args:
            registry (ProfileRegistry): Connection profiles jobs refer to.
            config (Config, optional): Application configuration.
            metrics (MetricsRecorder, optional): Usage ledger; one is created
                from the configuration when omitted.
            backend_factory (Callable[[ConnectionProfile], StorageBackend],
                optional): Builds a backend for a profile. Defaults to
                `create_backend`.
        """
        self._registry: ProfileRegistry = registry
        self._config: Config = config or Config()
        self._metrics: MetricsRecorder = metrics or MetricsRecorder(self._config.metrics)
        self._backend_factory: BackendFactory = backend_factory or (
            lambda profile: create_backend(profile, self._metrics, self._config.transfer)
        )
        self._store: CheckpointStore = CheckpointStore(self._config.engine.jobs_dir)
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._runs: Dict[str, _JobRun] = {}
        self._subscribers: Dict[str, List["asyncio.Queue[Optional[ProgressSnapshot]]"]] = {}

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def metrics(self) -> MetricsRecorder:
        return self._metrics

    # --- submission ---

    def submit(self, request: JobRequest) -> MigrationJob:
        """
        Validates a job request and persists the new job.

        No network call is made.

        Args:
            request (JobRequest): The migration to perform.

        Returns:
            MigrationJob: The job, in state PENDING.

        Raises:
            ConfigurationError: If a profile is unknown, an endpoint is
                malformed, a parameter is out of range, or the source and
                target are the same location.
        """
        source: ConnectionProfile = self._registry.get(request.source_profile)
        target: ConnectionProfile = self._registry.get(request.target_profile)
        if not request.source_bucket.strip() or not request.target_bucket.strip():
            raise ConfigurationError("Source and target buckets must not be empty.")
        if request.concurrency < 1:
            raise ConfigurationError(
                f"Concurrency must be at least 1, got {request.concurrency}."
            )
        if request.bandwidth_cap < 0:
            raise ConfigurationError(
                f"Bandwidth cap must not be negative, got {request.bandwidth_cap}."
            )

        source_endpoint: StorageEndpoint = source.resolve()
        target_endpoint: StorageEndpoint = target.resolve()
        same_account: bool = source.name == target.name or (
            source_endpoint.account == target_endpoint.account
            and source.access_key == target.access_key
        )
        if (
            same_account
            and request.source_bucket == request.target_bucket
            and normalize_prefix(request.source_prefix)
            == normalize_prefix(request.target_prefix)
        ):
            raise ConfigurationError(
                "Source and target are the same location "
                f"('{request.source_bucket}/{normalize_prefix(request.source_prefix)}')."
            )

        job: MigrationJob = MigrationJob.from_request(request)
        checkpoint: Checkpoint = Checkpoint(job=job)
        self._store.save(checkpoint)
        self._checkpoints[job.id] = checkpoint
        logger.info(
            f"Submitted job {job.id}: {source.name}:{job.source_bucket}/{job.source_prefix} "
            f"-> {target.name}:{job.target_bucket}/{job.target_prefix} "
            f"(concurrency {job.concurrency}, bandwidth cap {job.bandwidth_cap or 'none'})."
        )
        return job

    def list_jobs(self) -> List[MigrationJob]:
        """Returns every job known to the checkpoint directory, oldest first."""
        return [self._checkpoint(job.id).job for job in self._store.list_jobs()]

    def get_job(self, job_id: str) -> MigrationJob:
        """
        Looks up a job.

        Raises:
            ConfigurationError: If the job is unknown.
        """
        return self._checkpoint(job_id).job

    def _checkpoint(self, job_id: str) -> Checkpoint:
        checkpoint: Optional[Checkpoint] = self._checkpoints.get(job_id)
        if checkpoint is None:
            try:
                checkpoint = self._store.load(job_id)
            except CheckpointError as e:
                if not self._store.exists(job_id):
                    raise ConfigurationError(f"Unknown job '{job_id}'.") from e
                raise
        if checkpoint.job.state in _RUNNING_STATES and job_id not in self._runs:
            # The process that ran it is gone; treat it as paused.
            logger.info(
                f"Job {job_id} was interrupted while {checkpoint.job.state.value}; "
                "treating it as paused."
            )
            checkpoint.job.state = JobState.PAUSED
        self._checkpoints[job_id] = checkpoint
        return checkpoint

    # --- progress ---

    def snapshot(self, job_id: str) -> ProgressSnapshot:
        """
        Returns a consistent view of a job's progress.

        Args:
            job_id (str): The job id.

        Returns:
            ProgressSnapshot: Live counters for a running job, checkpoint
                totals otherwise.
        """
        checkpoint: Checkpoint = self._checkpoint(job_id)
        run: Optional[_JobRun] = self._runs.get(job_id)
        if run is not None and run.tracker is not None:
            tracker: ProgressTracker = run.tracker
            return ProgressSnapshot(
                job_id=job_id,
                state=checkpoint.job.state,
                total_objects=tracker.total_objects,
                completed_objects=tracker.completed,
                failed_objects=tracker.failed,
                skipped_objects=tracker.skipped,
                in_flight=tracker.in_flight,
                bytes_copied=tracker.bytes_copied,
                total_bytes=tracker.total_bytes,
                throughput_bps=tracker.throughput_bps,
                error=checkpoint.job.error,
            )

        tasks: List[TransferTask] = self._store.load_tasks(job_id) or []
        sizes: Dict[str, int] = {t.object_key: t.byte_length for t in tasks}
        return ProgressSnapshot(
            job_id=job_id,
            state=checkpoint.job.state,
            total_objects=len(tasks),
            completed_objects=len(checkpoint.completed_keys),
            failed_objects=len(set(checkpoint.failed) - checkpoint.completed_keys),
            skipped_objects=0,
            in_flight=0,
            bytes_copied=sum(sizes.get(k, 0) for k in checkpoint.completed_keys),
            total_bytes=sum(sizes.values()),
            throughput_bps=0.0,
            error=checkpoint.job.error,
        )

    async def subscribe(self, job_id: str) -> AsyncIterator[ProgressSnapshot]:
        """
        Yields progress snapshots of a job as it changes.

        The current snapshot is yielded first. Intermediate snapshots may be
        coalesced when the consumer is slower than the job. The iterator
        ends when the job's current run ends, or immediately for a job in
        a terminal state.

        Args:
            job_id (str): The job id.

        Yields:
            ProgressSnapshot: The latest progress.
        """
        checkpoint: Checkpoint = self._checkpoint(job_id)
        queue: "asyncio.Queue[Optional[ProgressSnapshot]]" = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        try:
            yield self.snapshot(job_id)
            if checkpoint.job.state.is_terminal and job_id not in self._runs:
                return
            while True:
                item: Optional[ProgressSnapshot] = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            self._subscribers[job_id].remove(queue)

    def _publish(self, job_id: str, final: bool = False) -> None:
        queues: List["asyncio.Queue[Optional[ProgressSnapshot]]"] = self._subscribers.get(
            job_id, []
        )
        if not queues:
            return
        snapshot: ProgressSnapshot = self.snapshot(job_id)
        for queue in queues:
            # Keep only the newest item; a slow consumer skips intermediate ones.
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(snapshot)
            if final:
                queue.put_nowait(None)

    # --- lifecycle ---

    def cancel(self, job_id: str) -> bool:
        """
        Requests cooperative cancellation of a running job.

        In-flight transfers stop after their current chunk and the job
        ends PAUSED.

        Returns:
            bool: True if the job was running, False otherwise.
        """
        run: Optional[_JobRun] = self._runs.get(job_id)
        if run is None:
            logger.debug(f"Cancel requested for job {job_id}, which is not running.")
            return False
        logger.warning(f"Cancelling job {job_id}; it will be paused.")
        run.cancel_event.set()
        return True

    def _transition(
        self, checkpoint: Checkpoint, state: JobState, error: Optional[str] = None
    ) -> None:
        previous: JobState = checkpoint.job.state
        checkpoint.job.transition(state)
        checkpoint.job.error = error
        self._store.save(checkpoint)
        logger.info(f"Job {checkpoint.job_id}: {previous.value} -> {state.value}")
        self._publish(checkpoint.job_id)

    async def resume(self, job_id: str) -> MigrationReport:
        """
        Continues a paused or interrupted job from its checkpoint.

        Objects already copied are skipped; partial uploads continue from
        their last committed part.

        Args:
            job_id (str): The job id.

        Returns:
            MigrationReport: The outcome of this run.
        """
        checkpoint: Checkpoint = self._checkpoint(job_id)
        logger.info(
            f"Resuming job {job_id} ({len(checkpoint.completed_keys)} objects already "
            f"copied, {len(checkpoint.in_progress)} partial uploads)."
        )
        return await self.run(job_id)

    async def run(self, job_id: str) -> MigrationReport:
        """
        Runs a job until it completes, fails or is cancelled.

        Args:
            job_id (str): The job id.

        Returns:
            MigrationReport: The per-object outcome of this run.

        Raises:
            ConfigurationError: If the job is unknown or already running.
            InvalidStateTransition: If the job is COMPLETED or FAILED.
        """
        checkpoint: Checkpoint = self._checkpoint(job_id)
        job: MigrationJob = checkpoint.job
        if job_id in self._runs:
            raise ConfigurationError(f"Job {job_id} is already running.")
        if job.state.is_terminal:
            raise InvalidStateTransition(f"Job {job_id} is already {job.state.value}.")

        run: _JobRun = _JobRun()
        self._runs[job_id] = run
        try:
            source_profile: ConnectionProfile = self._registry.get(job.source_profile)
            target_profile: ConnectionProfile = self._registry.get(job.target_profile)
            async with self._backend_factory(source_profile) as source, self._backend_factory(
                target_profile
            ) as target:
                return await self._run_phases(checkpoint, run, source, target)
        finally:
            self._metrics.flush()
            self._publish(job_id, final=True)
            del self._runs[job_id]

    async def _run_phases(
        self,
        checkpoint: Checkpoint,
        run: _JobRun,
        source: StorageBackend,
        target: StorageBackend,
    ) -> MigrationReport:
        job: MigrationJob = checkpoint.job
        tasks: Optional[List[TransferTask]] = None

        if job.state == JobState.PAUSED:
            tasks = self._store.load_tasks(job.id)
        if tasks is None:
            self._transition(checkpoint, JobState.DISCOVERING)
            try:
                tasks = await self._discover(job, source, run)
            except StorageError as e:
                logger.error(f"Discovery failed for job {job.id}: {e}")
                self._transition(checkpoint, JobState.FAILED, error=f"{type(e).__name__}: {e}")
                return self._build_report(checkpoint, [], set(), [])
            if tasks is None:
                self._transition(checkpoint, JobState.PAUSED)
                return self._build_report(checkpoint, [], set(), [])
            self._store.save_tasks(job.id, tasks)

        self._transition(checkpoint, JobState.COPYING)
        previously_completed: Set[str] = set(checkpoint.completed_keys)
        ctx: TransferContext = await self._copy(checkpoint, run, source, target, tasks)

        unfinished: bool = any(
            t.status == TaskStatus.PENDING and t.object_key not in previously_completed
            for t in tasks
        )
        if run.cancel_event.is_set() and unfinished:
            self._transition(checkpoint, JobState.PAUSED)
            return self._build_report(checkpoint, tasks, previously_completed, ctx.metrics)

        if self._config.engine.verify:
            self._transition(checkpoint, JobState.VERIFYING)

        failed: int = sum(
            1
            for t in tasks
            if t.object_key in checkpoint.failed
            and t.object_key not in checkpoint.completed_keys
        )
        tolerance: Optional[int] = self._config.engine.failure_tolerance
        if tolerance is not None and failed > tolerance:
            self._transition(
                checkpoint,
                JobState.FAILED,
                error=f"{failed} objects failed, more than the tolerated {tolerance}.",
            )
        else:
            self._transition(checkpoint, JobState.COMPLETED)
        return self._build_report(checkpoint, tasks, previously_completed, ctx.metrics)

    async def _discover(
        self, job: MigrationJob, source: StorageBackend, run: _JobRun
    ) -> Optional[List[TransferTask]]:
        """
        Lists the source prefix into a task set.

        Returns:
            List[TransferTask], optional: The tasks, or None if the job was
                cancelled before the listing finished.
        """
        logger.info(f"Listing '{job.source_bucket}/{job.source_prefix}'...")
        retry: RetryPolicy = self._retry_policy()
        tasks: List[TransferTask] = []
        token: Optional[str] = None
        while True:
            if run.cancel_event.is_set():
                logger.warning("Cancellation requested, stopping discovery.")
                return None
            page: ListPage = await retry.call(
                lambda: source.list_objects(
                    job.source_bucket, prefix=job.source_prefix, continuation_token=token
                ),
                description=f"Listing '{job.source_bucket}/{job.source_prefix}'",
            )
            for entry in page.entries:
                if entry.is_folder_placeholder:
                    continue
                tasks.append(
                    TransferTask(object_key=entry.key, byte_length=entry.size, etag=entry.etag)
                )
            if not page.next_token:
                break
            token = page.next_token
        logger.info(f"Found {len(tasks)} objects to migrate.")
        return tasks

    def _retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self._config.engine.max_attempts,
            base_delay_s=self._config.engine.backoff_base_s,
            max_delay_s=self._config.engine.backoff_max_s,
        )

    async def _copy(
        self,
        checkpoint: Checkpoint,
        run: _JobRun,
        source: StorageBackend,
        target: StorageBackend,
        tasks: List[TransferTask],
    ) -> TransferContext:
        """
        Manages the concurrent transfer of objects using a worker pool.

        A single producer feeds a bounded queue consumed by exactly
        `job.concurrency` workers.
        """
        job: MigrationJob = checkpoint.job
        pending: List[TransferTask] = [
            t for t in tasks if t.object_key not in checkpoint.completed_keys
        ]
        tracker: ProgressTracker = ProgressTracker(
            total_objects=len(tasks),
            total_bytes=sum(t.byte_length for t in tasks),
            on_change=lambda: self._publish(job.id),
        )
        tracker.skipped = len(tasks) - len(pending)
        tracker.add_bytes(
            sum(t.byte_length for t in tasks if t.object_key in checkpoint.completed_keys),
            transferred=False,
        )
        run.tracker = tracker

        ctx: TransferContext = TransferContext(
            job=job,
            source=source,
            target=target,
            checkpoint=checkpoint,
            store=self._store,
            limiter=BandwidthLimiter(job.bandwidth_cap),
            retry=self._retry_policy(),
            cancel_event=run.cancel_event,
            progress=tracker,
            verify=self._config.engine.verify,
            checkpoint_interval_s=self._config.engine.checkpoint_interval_s,
        )
        if not pending:
            logger.info("All objects are already copied.")
            return ctx

        logger.info(
            f"Copying {len(pending)} objects ({tracker.skipped} already completed) "
            f"with {job.concurrency} workers."
        )
        task_queue: "asyncio.Queue[Optional[TransferTask]]" = asyncio.Queue(
            maxsize=2 * job.concurrency
        )

        async def producer() -> None:
            """Feeds the task queue, then one stop sentinel per worker."""
            for task in pending:
                if run.cancel_event.is_set():
                    break
                await task_queue.put(task)
            for _ in range(job.concurrency):
                await task_queue.put(None)

        producer_task: "asyncio.Task[None]" = asyncio.create_task(producer())
        worker_tasks: List["asyncio.Task[None]"] = [
            asyncio.create_task(transfer_worker(i, task_queue, ctx))
            for i in range(job.concurrency)
        ]
        try:
            await asyncio.gather(producer_task, *worker_tasks)
        except BaseException:
            for t in (producer_task, *worker_tasks):
                t.cancel()
            await asyncio.gather(producer_task, *worker_tasks, return_exceptions=True)
            raise

        for task in pending:
            if task.status == TaskStatus.COPYING:
                task.status = TaskStatus.PENDING
        return ctx

    def _build_report(
        self,
        checkpoint: Checkpoint,
        tasks: List[TransferTask],
        previously_completed: Set[str],
        metrics: List[TransferMetrics],
    ) -> MigrationReport:
        job: MigrationJob = checkpoint.job
        outcomes: List[ObjectOutcome] = []
        for task in tasks:
            key: str = task.object_key
            outcome: Outcome
            error: Optional[str] = None
            if key in previously_completed:
                outcome = Outcome.SKIPPED
            elif key in checkpoint.completed_keys:
                outcome = Outcome.SUCCEEDED
            elif key in checkpoint.failed:
                outcome = Outcome.FAILED
                error = checkpoint.failed[key]
            else:
                outcome = Outcome.PENDING
            outcomes.append(
                ObjectOutcome(
                    key=key,
                    target_key=target_key_for(key, job.source_prefix, job.target_prefix),
                    size=task.byte_length,
                    outcome=outcome,
                    attempts=task.attempts,
                    error=error,
                )
            )
        report: MigrationReport = MigrationReport(
            job_id=job.id,
            state=job.state,
            outcomes=outcomes,
            stats=summarize(metrics),
            error=job.error,
        )
        logger.info(report.summary())
        return report
