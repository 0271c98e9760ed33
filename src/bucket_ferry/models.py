# src/bucket_ferry/models.py
"""
Shared data types: listings, jobs, tasks and progress snapshots.

Versioned listings are kept flat. `group_versions` projects a flat list into
(latest, older versions) groups at read time for callers that want to
display them that way.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from bucket_ferry.exceptions import InvalidStateTransition


class Provider(str, Enum):
    """The two storage API families a backend can speak."""

    S3 = "s3"
    AZURE_BLOB = "azure_blob"


@dataclass(frozen=True)
class ObjectEntry:
    """
    One listed object, version or delete marker.

    Attributes:
        key (str): The object key (blob name).
        size (int): Size in bytes; 0 for delete markers.
        last_modified (datetime): Last modification time (UTC).
        storage_class (str): S3 storage class or Azure access tier.
        version_id (str, optional): Version id, when listing versions.
        is_delete_marker (bool): True for S3 delete markers and Azure
            soft-deleted blobs.
        is_latest (bool): True if this is the current version of the key.
        etag (str): The entity tag without surrounding quotes.
        content_type (str, optional): MIME type when the listing reports it.
    """

    key: str
    size: int
    last_modified: datetime
    storage_class: str = ""
    version_id: Optional[str] = None
    is_delete_marker: bool = False
    is_latest: bool = True
    etag: str = ""
    content_type: Optional[str] = None

    @property
    def is_folder_placeholder(self) -> bool:
        """Zero-byte "directory" objects created by console uploads."""
        return self.key.endswith("/")


@dataclass(frozen=True)
class ObjectMetadata:
    """Result of a `head_object` call."""

    key: str
    size: int
    content_type: str
    last_modified: datetime
    etag: str
    storage_class: str = ""


@dataclass(frozen=True)
class ListPage:
    """One page of a listing plus the token for the next one, if any."""

    entries: List[ObjectEntry]
    next_token: Optional[str] = None


@dataclass(frozen=True)
class VersionGroup:
    """A key's latest entry and its older versions, newest first."""

    key: str
    latest: ObjectEntry
    older: Tuple[ObjectEntry, ...] = ()


def group_versions(entries: List[ObjectEntry]) -> List[VersionGroup]:
    """
    Groups a flat version listing by key, preserving first-seen key order.

    Args:
        entries (List[ObjectEntry]): Entries as returned with
            `include_versions=True`.

    Returns:
        List[VersionGroup]: One group per key. The latest entry is the one
            flagged `is_latest`, falling back to the most recent one.
    """
    by_key: Dict[str, List[ObjectEntry]] = {}
    for entry in entries:
        by_key.setdefault(entry.key, []).append(entry)

    groups: List[VersionGroup] = []
    for key, versions in by_key.items():
        ordered: List[ObjectEntry] = sort_versions(versions)
        groups.append(VersionGroup(key=key, latest=ordered[0], older=tuple(ordered[1:])))
    return groups


def sort_versions(versions: List[ObjectEntry]) -> List[ObjectEntry]:
    """Orders the versions of a single key latest-first."""
    return sorted(
        versions,
        key=lambda e: (not e.is_latest, -e.last_modified.timestamp()),
    )


def normalize_prefix(prefix: str) -> str:
    """
    Trims a prefix and makes sure a non-empty one ends with a slash.

    Args:
        prefix (str): The user-supplied prefix.

    Returns:
        str: "" or a prefix ending in "/".
    """
    trimmed: str = prefix.strip()
    if not trimmed:
        return ""
    return trimmed if trimmed.endswith("/") else trimmed + "/"


def target_key_for(key: str, source_prefix: str, target_prefix: str) -> str:
    """Maps a source key under `source_prefix` to its key under `target_prefix`."""
    relative: str = key[len(source_prefix) :] if key.startswith(source_prefix) else key
    return target_prefix + relative


class JobState(str, Enum):
    """Lifecycle of a migration job."""

    PENDING = "pending"
    DISCOVERING = "discovering"
    COPYING = "copying"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.DISCOVERING}),
    JobState.DISCOVERING: frozenset(
        {JobState.COPYING, JobState.PAUSED, JobState.FAILED}
    ),
    JobState.COPYING: frozenset(
        {JobState.VERIFYING, JobState.COMPLETED, JobState.PAUSED, JobState.FAILED}
    ),
    JobState.VERIFYING: frozenset(
        {JobState.COMPLETED, JobState.PAUSED, JobState.FAILED}
    ),
    # A job paused before its task set was persisted has to list again.
    JobState.PAUSED: frozenset({JobState.COPYING, JobState.DISCOVERING}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


def can_transition(current: JobState, new: JobState) -> bool:
    """Returns True if a job in `current` may move to `new`."""
    return new in _TRANSITIONS[current]


class TaskStatus(str, Enum):
    """Outcome of a single object transfer."""

    PENDING = "pending"
    COPYING = "copying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class JobRequest:
    """
    Everything a caller supplies to start a migration.

    Attributes:
        source_profile (str): Name of the source connection profile.
        source_bucket (str): Source bucket or container.
        source_prefix (str): Only keys under this prefix are copied.
        target_profile (str): Name of the target connection profile.
        target_bucket (str): Target bucket or container.
        target_prefix (str): Prefix prepended to each copied key.
        concurrency (int): Number of simultaneous object transfers.
        bandwidth_cap (int): Aggregate bytes/second cap; 0 disables it.
    """

    source_profile: str
    source_bucket: str
    source_prefix: str
    target_profile: str
    target_bucket: str
    target_prefix: str
    concurrency: int = 4
    bandwidth_cap: int = 0


@dataclass
class MigrationJob:
    """A submitted migration and its current lifecycle state."""

    id: str
    source_profile: str
    source_bucket: str
    source_prefix: str
    target_profile: str
    target_bucket: str
    target_prefix: str
    concurrency: int
    bandwidth_cap: int
    state: JobState = JobState.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    @classmethod
    def from_request(cls, request: JobRequest) -> "MigrationJob":
        """Creates a PENDING job with normalized prefixes and a fresh id."""
        return cls(
            id=uuid.uuid4().hex,
            source_profile=request.source_profile,
            source_bucket=request.source_bucket,
            source_prefix=normalize_prefix(request.source_prefix),
            target_profile=request.target_profile,
            target_bucket=request.target_bucket,
            target_prefix=normalize_prefix(request.target_prefix),
            concurrency=request.concurrency,
            bandwidth_cap=request.bandwidth_cap,
        )

    def transition(self, new_state: JobState) -> None:
        """
        Moves the job to `new_state`.

        Args:
            new_state (JobState): The requested state.

        Raises:
            InvalidStateTransition: If the move is not allowed.
        """
        if not can_transition(self.state, new_state):
            raise InvalidStateTransition(
                f"Job {self.id} cannot move from {self.state.value} "
                f"to {new_state.value}."
            )
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = asdict(self)
        data["state"] = self.state.value
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationJob":
        values: Dict[str, Any] = dict(data)
        values["state"] = JobState(values["state"])
        values["created_at"] = datetime.fromisoformat(values["created_at"])
        return cls(**values)


@dataclass
class TransferTask:
    """
    The copy of one object. Owned and mutated by a single worker.

    Attributes:
        object_key (str): The source key.
        byte_length (int): Size reported by the source listing.
        etag (str): Source etag from the listing, used for verification.
        bytes_copied (int): Bytes streamed to the target so far.
        attempts (int): Number of attempts started.
        last_error (str, optional): Description of the latest failure.
        status (TaskStatus): Current status.
    """

    object_key: str
    byte_length: int
    etag: str = ""
    bytes_copied: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING

    def set_status(self, status: TaskStatus) -> None:
        """Updates the status; a completed task stays completed."""
        if self.status == TaskStatus.COMPLETED:
            return
        self.status = status


@dataclass
class PartialUpload:
    """
    Durable state of an interrupted multipart (S3) or block (Azure) upload.

    Attributes:
        offset (int): Bytes committed to the target so far.
        upload_id (str, optional): The S3 multipart upload id.
        parts (List[Tuple[int, str]]): (part number, etag or block id) of
            every committed part, in order.
        part_size (int): Bytes per part chosen when the upload started, kept
            so a resumed upload cuts the remaining parts the same way; 0 when
            unknown.
    """

    offset: int = 0
    upload_id: Optional[str] = None
    parts: List[Tuple[int, str]] = field(default_factory=list)
    part_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset": self.offset,
            "upload_id": self.upload_id,
            "parts": [list(p) for p in self.parts],
            "part_size": self.part_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialUpload":
        return cls(
            offset=int(data.get("offset", 0)),
            upload_id=data.get("upload_id"),
            parts=[(int(n), str(tag)) for n, tag in data.get("parts", [])],
            part_size=int(data.get("part_size", 0)),
        )


@dataclass(frozen=True)
class ProgressSnapshot:
    """A consistent, read-only view of a job's progress."""

    job_id: str
    state: JobState
    total_objects: int
    completed_objects: int
    failed_objects: int
    skipped_objects: int
    in_flight: int
    bytes_copied: int
    total_bytes: int
    throughput_bps: float
    error: Optional[str] = None

    @property
    def done_objects(self) -> int:
        return self.completed_objects + self.failed_objects + self.skipped_objects
