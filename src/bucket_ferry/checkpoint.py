# src/bucket_ferry/checkpoint.py
"""
Durable job checkpoints.

Each job owns two files under the checkpoint directory:

    <job_id>.json          job descriptor, state, completed/failed keys and
                           partial-upload state of interrupted objects
    <job_id>.tasks.ndjson  the discovered task set, one task per line

Files are written to a temporary sibling and moved into place with
`os.replace`, so a reader always sees a whole snapshot. The store is
synchronous and guarded by a single lock; it is called from the asyncio
workers the same way a local key-value store would be.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from bucket_ferry.exceptions import CheckpointError
from bucket_ferry.models import MigrationJob, PartialUpload, TransferTask

logger: logging.Logger = logging.getLogger(__name__)

CHECKPOINT_VERSION: int = 1


@dataclass
class Checkpoint:
    """
    The persisted progress of one job.

    Attributes:
        job (MigrationJob): The job descriptor and its current state.
        completed_keys (Set[str]): Source keys fully copied to the target.
        failed (Dict[str, str]): Source keys that failed, with the last error.
        in_progress (Dict[str, PartialUpload]): Committed partial-upload
            state of objects interrupted mid-transfer.
        updated_at (datetime): Time of the last write.
    """

    job: MigrationJob
    completed_keys: Set[str] = field(default_factory=set)
    failed: Dict[str, str] = field(default_factory=dict)
    in_progress: Dict[str, PartialUpload] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def job_id(self) -> str:
        return self.job.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": CHECKPOINT_VERSION,
            "job": self.job.to_dict(),
            "completed_keys": sorted(self.completed_keys),
            "failed": dict(sorted(self.failed.items())),
            "in_progress": {k: p.to_dict() for k, p in sorted(self.in_progress.items())},
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            job=MigrationJob.from_dict(data["job"]),
            completed_keys=set(data.get("completed_keys", [])),
            failed=dict(data.get("failed", {})),
            in_progress={
                k: PartialUpload.from_dict(v) for k, v in data.get("in_progress", {}).items()
            },
            updated_at=datetime.fromisoformat(data["updated_at"])
            if data.get("updated_at")
            else datetime.now(timezone.utc),
        )


def _task_to_dict(task: TransferTask) -> Dict[str, Any]:
    return {"key": task.object_key, "size": task.byte_length, "etag": task.etag}


def _task_from_dict(data: Dict[str, Any]) -> TransferTask:
    return TransferTask(
        object_key=data["key"], byte_length=int(data["size"]), etag=data.get("etag", "")
    )


class CheckpointStore:
    """Reads and atomically writes job checkpoints in one directory."""

    def __init__(self, root: Path) -> None:
        """
        Initialize the store, creating its directory.

        Args:
            root (Path): Directory holding checkpoint files.

        Raises:
            CheckpointError: If the directory cannot be created.
        """
        self._root: Path = root
        self._lock: threading.Lock = threading.Lock()
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CheckpointError(f"Cannot create checkpoint directory '{root}': {e}") from e

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, job_id: str) -> Path:
        return self._root / f"{job_id}.json"

    def tasks_path_for(self, job_id: str) -> Path:
        return self._root / f"{job_id}.tasks.ndjson"

    def exists(self, job_id: str) -> bool:
        return self.path_for(job_id).exists()

    # --- whole-file I/O ---

    def _write_atomic(self, path: Path, text: str) -> None:
        tmp: Path = path.with_name(f".{path.name}.tmp")
        try:
            with tmp.open("w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise CheckpointError(f"Cannot write checkpoint '{path}': {e}") from e

    def save(self, checkpoint: Checkpoint) -> None:
        """
        Persists a checkpoint, replacing the previous file atomically.

        Args:
            checkpoint (Checkpoint): The checkpoint to write.
        """
        with self._lock:
            self._save_locked(checkpoint)

    def _save_locked(self, checkpoint: Checkpoint) -> None:
        checkpoint.updated_at = datetime.now(timezone.utc)
        self._write_atomic(
            self.path_for(checkpoint.job_id),
            json.dumps(checkpoint.to_dict(), indent=1),
        )

    def load(self, job_id: str) -> Checkpoint:
        """
        Reads the checkpoint of a job.

        Args:
            job_id (str): The job id.

        Returns:
            Checkpoint: The stored checkpoint.

        Raises:
            CheckpointError: If the file is missing or unreadable.
        """
        path: Path = self.path_for(job_id)
        with self._lock:
            try:
                with path.open("r", encoding="utf-8") as fh:
                    data: Dict[str, Any] = json.load(fh)
            except FileNotFoundError:
                raise CheckpointError(f"No checkpoint for job '{job_id}'.") from None
            except (OSError, ValueError) as e:
                raise CheckpointError(f"Unreadable checkpoint '{path}': {e}") from e
        try:
            return Checkpoint.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise CheckpointError(f"Malformed checkpoint '{path}': {e}") from e

    def delete(self, job_id: str) -> None:
        """Removes every file of a job."""
        with self._lock:
            self.path_for(job_id).unlink(missing_ok=True)
            self.tasks_path_for(job_id).unlink(missing_ok=True)

    def list_jobs(self) -> List[MigrationJob]:
        """
        Returns the jobs with a readable checkpoint, oldest first.

        Unreadable files are logged and skipped.
        """
        jobs: List[MigrationJob] = []
        for path in sorted(self._root.glob("*.json")):
            try:
                jobs.append(self.load(path.stem).job)
            except CheckpointError as e:
                logger.warning(f"Skipping checkpoint '{path.name}': {e}")
        return sorted(jobs, key=lambda j: j.created_at)

    # --- task set ---

    def save_tasks(self, job_id: str, tasks: Iterable[TransferTask]) -> int:
        """
        Persists the discovered task set of a job.

        Args:
            job_id (str): The job id.
            tasks (Iterable[TransferTask]): The tasks, in discovery order.

        Returns:
            int: The number of tasks written.
        """
        lines: List[str] = [json.dumps(_task_to_dict(t)) for t in tasks]
        with self._lock:
            self._write_atomic(
                self.tasks_path_for(job_id), "".join(f"{line}\n" for line in lines)
            )
        return len(lines)

    def load_tasks(self, job_id: str) -> Optional[List[TransferTask]]:
        """
        Reads the task set of a job.

        Returns:
            List[TransferTask], optional: The tasks, or None if discovery never
                completed for this job.

        Raises:
            CheckpointError: If the file exists but is unreadable.
        """
        path: Path = self.tasks_path_for(job_id)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as fh:
                    return [_task_from_dict(json.loads(line)) for line in fh if line.strip()]
            except (OSError, ValueError, KeyError) as e:
                raise CheckpointError(f"Unreadable task set '{path}': {e}") from e

    # --- incremental updates ---

    def mark_completed(self, checkpoint: Checkpoint, key: str) -> None:
        """Records a fully copied object and persists the checkpoint."""
        with self._lock:
            checkpoint.completed_keys.add(key)
            checkpoint.failed.pop(key, None)
            checkpoint.in_progress.pop(key, None)
            self._save_locked(checkpoint)

    def mark_failed(self, checkpoint: Checkpoint, key: str, error: str) -> None:
        """Records a failed object, drops its partial upload and persists the checkpoint."""
        with self._lock:
            if key in checkpoint.completed_keys:
                return
            checkpoint.failed[key] = error
            checkpoint.in_progress.pop(key, None)
            self._save_locked(checkpoint)

    def record_partial(
        self, checkpoint: Checkpoint, key: str, partial: Optional[PartialUpload]
    ) -> None:
        """
        Records (or clears, when `partial` is None) an object's partial upload.
        """
        with self._lock:
            if key in checkpoint.completed_keys:
                return
            if partial is None:
                checkpoint.in_progress.pop(key, None)
            else:
                checkpoint.in_progress[key] = partial
            self._save_locked(checkpoint)
