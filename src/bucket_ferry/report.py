# src/bucket_ferry/report.py
"""
Per-object outcome manifest of a migration run.

Every object of a job's task set appears exactly once, as succeeded, failed
(with its last error), skipped (already copied by an earlier run) or pending
(not reached before the job was paused). The manifest can be exported as
Parquet or CSV with polars.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import polars as pl

from bucket_ferry.exceptions import ConfigurationError
from bucket_ferry.metrics import format_bytes
from bucket_ferry.models import JobState
from bucket_ferry.throttle import ThroughputStats, summarize

logger: logging.Logger = logging.getLogger(__name__)

MANIFEST_SCHEMA: Dict[str, pl.DataType] = {
    "key": pl.Utf8(),
    "target_key": pl.Utf8(),
    "size": pl.Int64(),
    "outcome": pl.Utf8(),
    "attempts": pl.Int64(),
    "error": pl.Utf8(),
}


class Outcome(str, Enum):
    """Final disposition of one object in a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PENDING = "pending"


@dataclass(frozen=True)
class ObjectOutcome:
    """
    One manifest row.

    Attributes:
        key (str): The source key.
        target_key (str): The key written on the target.
        size (int): Object size in bytes.
        outcome (Outcome): What happened to the object.
        attempts (int): Transfer attempts made during this run.
        error (str, optional): The last error of a failed object.
    """

    key: str
    target_key: str
    size: int
    outcome: Outcome
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class MigrationReport:
    """The result of running (or resuming) a job."""

    job_id: str
    state: JobState
    outcomes: List[ObjectOutcome] = field(default_factory=list)
    stats: ThroughputStats = field(default_factory=lambda: summarize([]))
    error: Optional[str] = None

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count(Outcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(Outcome.SKIPPED)

    @property
    def pending(self) -> int:
        return self._count(Outcome.PENDING)

    @property
    def bytes_copied(self) -> int:
        return sum(o.size for o in self.outcomes if o.outcome == Outcome.SUCCEEDED)

    def failures(self) -> List[ObjectOutcome]:
        return [o for o in self.outcomes if o.outcome == Outcome.FAILED]

    def to_frame(self) -> pl.DataFrame:
        """Returns the manifest as a polars DataFrame, one row per object."""
        return pl.DataFrame(
            {
                "key": [o.key for o in self.outcomes],
                "target_key": [o.target_key for o in self.outcomes],
                "size": [o.size for o in self.outcomes],
                "outcome": [o.outcome.value for o in self.outcomes],
                "attempts": [o.attempts for o in self.outcomes],
                "error": [o.error for o in self.outcomes],
            },
            schema=MANIFEST_SCHEMA,
        )

    def write(self, path: Path) -> Path:
        """
        Exports the manifest.

        Args:
            path (Path): Destination file; `.parquet` or `.csv`.

        Returns:
            Path: The written file.

        Raises:
            ConfigurationError: For any other file extension.
        """
        suffix: str = path.suffix.lower()
        if suffix not in (".parquet", ".csv"):
            raise ConfigurationError(
                f"Unsupported report format '{path.suffix}'; use .parquet or .csv."
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        frame: pl.DataFrame = self.to_frame()
        if suffix == ".parquet":
            frame.write_parquet(path)
        else:
            frame.write_csv(path)
        logger.info(f"Wrote outcome manifest of job {self.job_id} to '{path}'.")
        return path

    def summary(self) -> str:
        lines: List[str] = [
            f"Job {self.job_id}: {self.state.value}",
            f"  succeeded: {self.succeeded}  failed: {self.failed}  "
            f"skipped: {self.skipped}  pending: {self.pending}",
            f"  copied: {format_bytes(self.bytes_copied)}",
        ]
        if self.stats.samples:
            lines.append(
                f"  per-object throughput: median {format_bytes(int(self.stats.median_bps))}/s, "
                f"p90 {format_bytes(int(self.stats.p90_bps))}/s"
            )
        if self.error:
            lines.append(f"  error: {self.error}")
        return "\n".join(lines)
