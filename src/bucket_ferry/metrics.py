# src/bucket_ferry/metrics.py
"""
Per-profile API usage ledger.

Every backend call increments exactly one hourly counter keyed by
(profile, request type), whatever its outcome, so provider request billing
can be estimated. Counters are buffered in memory and appended as NDJSON
lines to one file per profile per hour:

    <root>/<profile>/metrics-YYYYMMDDTHH.ndjson

Files older than the retention period (30 days by default) are pruned
whenever a new hour file is opened, and older events are never returned.
"""

import json
import logging
import re
import shutil
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from bucket_ferry.config import MetricsConfig

logger: logging.Logger = logging.getLogger(__name__)

_FILE_RE: re.Pattern[str] = re.compile(r"^metrics-(\d{8}T\d{2})\.ndjson$")
_FILE_HOUR_FORMAT: str = "%Y%m%dT%H"


class RequestType(str, Enum):
    """Billing category of a backend call."""

    LIST = "LIST"
    GET = "GET"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"
    COPY = "COPY"
    POST = "POST"


def hour_start(moment: datetime) -> datetime:
    """Truncates a time to the start of its UTC hour."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def sanitize_profile_name(name: str) -> str:
    """Maps a profile name to a safe directory name."""
    trimmed: str = name.strip()
    if not trimmed:
        return "default"
    return re.sub(r"[^A-Za-z0-9_\-]", "_", trimmed)


@dataclass(frozen=True)
class MetricsEvent:
    """
    One ledger line: the count of one request type in one hour.

    Attributes:
        profile (str): The profile the requests were made with.
        hour (datetime): Start of the UTC hour.
        request_type (RequestType): The billing category.
        count (int): Number of requests.
        bytes_up (int): Bytes sent by those requests.
        bytes_down (int): Bytes received by those requests.
    """

    profile: str
    hour: datetime
    request_type: RequestType
    count: int
    bytes_up: int = 0
    bytes_down: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "profile": self.profile,
                "hour": self.hour.isoformat(),
                "type": self.request_type.value,
                "count": self.count,
                "up": self.bytes_up,
                "down": self.bytes_down,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, line: str) -> "MetricsEvent":
        data: Dict[str, object] = json.loads(line)
        return cls(
            profile=str(data["profile"]),
            hour=hour_start(datetime.fromisoformat(str(data["hour"]))),
            request_type=RequestType(data["type"]),
            count=int(data["count"]),  # type: ignore[arg-type]
            bytes_up=int(data.get("up", 0)),  # type: ignore[arg-type]
            bytes_down=int(data.get("down", 0)),  # type: ignore[arg-type]
        )


@dataclass
class MetricsCounts:
    """Aggregated count and bytes of one request type."""

    count: int = 0
    bytes_up: int = 0
    bytes_down: int = 0


@dataclass
class MetricsTotals:
    """
    Usage of one profile over a time window.

    Attributes:
        profile (str): The profile.
        by_type (Dict[RequestType, MetricsCounts]): Per-type totals.
        window_start (datetime): Inclusive start of the window.
        window_end (datetime): Inclusive end of the window.
    """

    profile: str
    window_start: datetime
    window_end: datetime
    by_type: Dict[RequestType, MetricsCounts] = field(
        default_factory=lambda: {t: MetricsCounts() for t in RequestType}
    )

    @property
    def total_requests(self) -> int:
        return sum(c.count for c in self.by_type.values())

    @property
    def total_upload(self) -> int:
        return sum(c.bytes_up for c in self.by_type.values())

    @property
    def total_download(self) -> int:
        return sum(c.bytes_down for c in self.by_type.values())

    def add(self, event: MetricsEvent) -> None:
        counts: MetricsCounts = self.by_type[event.request_type]
        counts.count += event.count
        counts.bytes_up += event.bytes_up
        counts.bytes_down += event.bytes_down

    def summary(self) -> str:
        """Plain-text summary suitable for pasting elsewhere."""
        hours: int = round((self.window_end - self.window_start).total_seconds() / 3600)
        lines: List[str] = [f"Usage for '{self.profile}' (last {hours}h)"]
        for request_type, counts in self.by_type.items():
            if counts.count:
                lines.append(f"{request_type.value}: {counts.count}")
        lines.append(f"Total requests: {self.total_requests}")
        lines.append(f"Uploaded: {format_bytes(self.total_upload)}")
        lines.append(f"Downloaded: {format_bytes(self.total_download)}")
        return "\n".join(lines)


def format_bytes(num: int) -> str:
    """Formats a byte count with binary units, e.g. "1.5 MiB"."""
    value: float = float(num)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if abs(value) < 1024 or unit == "TiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TiB"


_PendingKey = Tuple[str, datetime, RequestType]


class MetricsRecorder:
    """
    Buffers request counters and appends them to the hourly ledger.

    All mutation happens under one lock, so concurrent backends never tear
    a counter or interleave partial lines.
    """

    def __init__(self, config: MetricsConfig) -> None:
        """
        Initialize the recorder.

        Args:
            config (MetricsConfig): Ledger location and retention settings.
        """
        self._config: MetricsConfig = config
        self._root: Path = config.root
        self._lock: threading.Lock = threading.Lock()
        self._pending: Dict[_PendingKey, MetricsCounts] = defaultdict(MetricsCounts)
        self._pending_events: int = 0

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self._config.retention_days)

    def record(
        self,
        profile: str,
        request_type: RequestType,
        bytes_up: int = 0,
        bytes_down: int = 0,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """
        Counts one request.

        Args:
            profile (str): The profile the request was made with.
            request_type (RequestType): The billing category.
            bytes_up (int): Bytes sent.
            bytes_down (int): Bytes received.
            timestamp (datetime, optional): When the request was made.
        """
        hour: datetime = hour_start(timestamp or datetime.now(timezone.utc))
        key: _PendingKey = (sanitize_profile_name(profile), hour, request_type)
        with self._lock:
            counts: MetricsCounts = self._pending[key]
            counts.count += 1
            counts.bytes_up += max(bytes_up, 0)
            counts.bytes_down += max(bytes_down, 0)
            self._pending_events += 1
            should_flush: bool = self._pending_events >= self._config.flush_every
        if should_flush:
            self.flush()

    def flush(self) -> None:
        """Appends all buffered counters to their hour files."""
        with self._lock:
            pending: Dict[_PendingKey, MetricsCounts] = dict(self._pending)
            self._pending.clear()
            self._pending_events = 0
            opened_new_file: bool = False
            for (profile, hour, request_type), counts in sorted(
                pending.items(), key=lambda item: (item[0][0], item[0][1])
            ):
                path: Path = self._file_for(profile, hour)
                if not path.exists():
                    path.parent.mkdir(parents=True, exist_ok=True)
                    opened_new_file = True
                event: MetricsEvent = MetricsEvent(
                    profile=profile,
                    hour=hour,
                    request_type=request_type,
                    count=counts.count,
                    bytes_up=counts.bytes_up,
                    bytes_down=counts.bytes_down,
                )
                with path.open("a", encoding="utf-8") as fh:
                    fh.write(event.to_json() + "\n")
            if opened_new_file:
                self._prune_locked(datetime.now(timezone.utc))

    def prune(self, now: Optional[datetime] = None) -> int:
        """
        Deletes hour files older than the retention period.

        Args:
            now (datetime, optional): The reference time.

        Returns:
            int: The number of files removed.
        """
        with self._lock:
            return self._prune_locked(now or datetime.now(timezone.utc))

    def _prune_locked(self, now: datetime) -> int:
        cutoff: datetime = hour_start(now) - self.retention
        removed: int = 0
        if not self._root.exists():
            return removed
        for path, hour in self._iter_files(self._root):
            if hour < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.debug(f"Pruned {removed} expired metrics file(s).")
        return removed

    def events(
        self,
        profile: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[MetricsEvent]:
        """
        Returns ledger events of a profile, buffered ones included.

        Events older than the retention period are never returned.

        Args:
            profile (str): The profile.
            since (datetime): Inclusive lower bound on the event hour.
            until (datetime, optional): Inclusive upper bound; defaults to now.

        Returns:
            List[MetricsEvent]: The events, oldest first.
        """
        now: datetime = datetime.now(timezone.utc)
        end: datetime = until or now
        start: datetime = max(since, hour_start(end) - self.retention)
        profile_key: str = sanitize_profile_name(profile)
        found: List[MetricsEvent] = []

        with self._lock:
            profile_dir: Path = self._root / profile_key
            if profile_dir.exists():
                for path, hour in self._iter_files(profile_dir):
                    if hour < hour_start(start) or hour > end:
                        continue
                    # Files of one hour hold every flush of that hour.
                    found.extend(self._read_file(path))
            for (p, hour, request_type), counts in self._pending.items():
                if p == profile_key:
                    found.append(
                        MetricsEvent(
                            profile=p,
                            hour=hour,
                            request_type=request_type,
                            count=counts.count,
                            bytes_up=counts.bytes_up,
                            bytes_down=counts.bytes_down,
                        )
                    )

        first_hour: datetime = hour_start(start)
        return sorted(
            (e for e in found if first_hour <= e.hour <= end),
            key=lambda e: e.hour,
        )

    def totals(
        self,
        profile: str,
        hours: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MetricsTotals:
        """
        Aggregates a profile's usage over a trailing window.

        Args:
            profile (str): The profile.
            hours (int, optional): Window length; defaults to 72 hours.
            now (datetime, optional): End of the window; defaults to now.

        Returns:
            MetricsTotals: Per-type counts and byte totals.
        """
        end: datetime = now or datetime.now(timezone.utc)
        start: datetime = end - timedelta(hours=hours or self._config.window_hours)
        totals: MetricsTotals = MetricsTotals(
            profile=profile, window_start=start, window_end=end
        )
        for event in self.events(profile, since=start, until=end):
            if start <= event.hour <= end:
                totals.add(event)
        return totals

    def clear(self, profile: str) -> None:
        """Removes every ledger file and buffered counter of a profile."""
        profile_key: str = sanitize_profile_name(profile)
        with self._lock:
            shutil.rmtree(self._root / profile_key, ignore_errors=True)
            for key in [k for k in self._pending if k[0] == profile_key]:
                del self._pending[key]

    def _file_for(self, profile_key: str, hour: datetime) -> Path:
        return self._root / profile_key / f"metrics-{hour.strftime(_FILE_HOUR_FORMAT)}.ndjson"

    @staticmethod
    def _iter_files(directory: Path) -> Iterator[Tuple[Path, datetime]]:
        for path in directory.rglob("metrics-*.ndjson"):
            match: Optional[re.Match[str]] = _FILE_RE.match(path.name)
            if not match:
                continue
            hour: datetime = datetime.strptime(match.group(1), _FILE_HOUR_FORMAT).replace(
                tzinfo=timezone.utc
            )
            yield path, hour

    @staticmethod
    def _read_file(path: Path) -> List[MetricsEvent]:
        events: List[MetricsEvent] = []
        with path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(MetricsEvent.from_json(line))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping malformed metrics line in '{path}': {e}")
        return events
