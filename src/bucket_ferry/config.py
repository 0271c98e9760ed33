# src/bucket_ferry/config.py
"""
Configuration for bucket-ferry.

This module centralizes all configuration, loading values from environment
variables and providing typed dataclasses for use throughout the
application. Connection profiles are read-only inputs kept in a
`ProfileRegistry`.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional

from bucket_ferry.endpoint import StorageEndpoint, parse_endpoint
from bucket_ferry.exceptions import ConfigurationError

ENV_PREFIX: str = "FERRY_"
PROFILE_ENV_RE: re.Pattern[str] = re.compile(
    r"^FERRY_PROFILE_(?P<name>[A-Za-z0-9_\-]+?)_(?P<field>ENDPOINT|REGION|ACCESS_KEY|SECRET_KEY|INSECURE)$"
)

MIB: int = 1024 * 1024
S3_MIN_PART_SIZE: int = 5 * MIB


def _get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Retrieves a required environment variable.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        str: The value of the environment variable.
    """
    value: Optional[str] = os.environ.get(name, default)
    if not value:
        raise ConfigurationError(f"Environment variable '{name}' must be set.")
    return value


def _env_int(name: str, default: int) -> int:
    raw: str = _get_env_var(name, str(default))
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Environment variable '{name}' must be an integer.") from e


def _env_float(name: str, default: float) -> float:
    raw: str = _get_env_var(name, str(default))
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Environment variable '{name}' must be a number.") from e


def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ConnectionProfile:
    """
    Credentials and endpoint for one storage account.

    Attributes:
        name (str): Unique, user-facing profile name.
        endpoint (str): Endpoint URL, host name or Azure SAS URL.
        region (str): Signing region for S3 endpoints.
        access_key (str): Access key id (unused for Azure SAS profiles).
        secret_key (str): Secret access key (unused for Azure SAS profiles).
        insecure_allowed (bool): Skip TLS certificate verification.
    """

    name: str
    endpoint: str
    region: str = ""
    access_key: str = ""
    secret_key: str = field(default="", repr=False)
    insecure_allowed: bool = False

    def resolve(self) -> StorageEndpoint:
        """
        Parses the profile's endpoint string.

        Returns:
            StorageEndpoint: The resolved endpoint.
        """
        return parse_endpoint(self.endpoint, region=self.region or None)


class ProfileRegistry:
    """A read-only collection of connection profiles with unique names."""

    def __init__(self, profiles: Optional[List[ConnectionProfile]] = None) -> None:
        """
        Initialize the registry.

        Args:
            profiles (List[ConnectionProfile], optional): Initial profiles.

        Raises:
            ConfigurationError: If two profiles share a name.
        """
        self._profiles: Dict[str, ConnectionProfile] = {}
        for profile in profiles or []:
            self.add(profile)

    def add(self, profile: ConnectionProfile) -> None:
        """Registers a profile, rejecting blank or duplicate names."""
        if not profile.name.strip():
            raise ConfigurationError("Profile name must not be empty.")
        if profile.name in self._profiles:
            raise ConfigurationError(f"Duplicate profile name '{profile.name}'.")
        self._profiles[profile.name] = profile

    def get(self, name: str) -> ConnectionProfile:
        """
        Looks up a profile by name.

        Raises:
            ConfigurationError: If no such profile exists.
        """
        try:
            return self._profiles[name]
        except KeyError:
            raise ConfigurationError(f"Unknown connection profile '{name}'.") from None

    def names(self) -> List[str]:
        return sorted(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[ConnectionProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProfileRegistry":
        """
        Builds profiles from `FERRY_PROFILE_<NAME>_<FIELD>` variables.

        Recognized fields are ENDPOINT (required), REGION, ACCESS_KEY,
        SECRET_KEY and INSECURE. Profile names are lower-cased.

        Args:
            environ (Mapping[str, str], optional): Defaults to `os.environ`.

        Returns:
            ProfileRegistry: The registry.
        """
        env: Mapping[str, str] = os.environ if environ is None else environ
        fields: Dict[str, Dict[str, str]] = {}
        for var, value in env.items():
            match: Optional[re.Match[str]] = PROFILE_ENV_RE.match(var)
            if match:
                name: str = match.group("name").lower()
                fields.setdefault(name, {})[match.group("field")] = value

        profiles: List[ConnectionProfile] = []
        for name, values in sorted(fields.items()):
            if not values.get("ENDPOINT"):
                raise ConfigurationError(
                    f"Environment variable 'FERRY_PROFILE_{name.upper()}_ENDPOINT' must be set."
                )
            profiles.append(
                ConnectionProfile(
                    name=name,
                    endpoint=values["ENDPOINT"],
                    region=values.get("REGION", ""),
                    access_key=values.get("ACCESS_KEY", ""),
                    secret_key=values.get("SECRET_KEY", ""),
                    insecure_allowed=_env_bool(values.get("INSECURE")),
                )
            )
        return cls(profiles)


@dataclass(frozen=True)
class TransferSettings:
    """
    Parameters of individual backend calls.

    Attributes:
        chunk_size (int): Bytes per streamed read from a source.
        multipart_threshold (int): Objects larger than this are uploaded in
            parts (S3 multipart) or blocks (Azure).
        part_size (int): Bytes per uploaded part or block.
        part_max_attempts (int): Attempts per part before the upload fails.
        part_backoff_s (float): Base delay between part attempts.
        connect_timeout_s (float): Connection timeout per call.
        read_timeout_s (float): Read timeout per call.
        presign_expiry_s (int): Default lifetime of shareable URLs.
    """

    chunk_size: int = 1 * MIB
    multipart_threshold: int = 8 * MIB
    part_size: int = 8 * MIB
    part_max_attempts: int = 3
    part_backoff_s: float = 0.5
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 60.0
    presign_expiry_s: int = 3600

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive.")
        if self.part_size < S3_MIN_PART_SIZE:
            raise ConfigurationError(
                f"part_size must be at least {S3_MIN_PART_SIZE} bytes."
            )
        if self.part_max_attempts < 1:
            raise ConfigurationError("part_max_attempts must be at least 1.")


@dataclass(frozen=True)
class EngineConfig:
    """
    Defines the migration engine's operational parameters.

    Attributes:
        data_dir (Path): Directory holding checkpoint files.
        concurrency (int): Default number of simultaneous transfers.
        bandwidth_cap (int): Default aggregate bytes/second cap; 0 = none.
        max_attempts (int): Max attempts for a single object transfer.
        backoff_base_s (float): First retry delay; doubles per attempt.
        backoff_max_s (float): Upper bound of a single retry delay.
        failure_tolerance (int, optional): Number of failed objects a job
            may accumulate and still complete. None means unlimited.
        verify (bool): Compare size/etag of source and target after copying.
        checkpoint_interval_s (float): Minimum interval between partial
            upload checkpoint writes.
    """

    data_dir: Path = field(default_factory=lambda: Path("data"))
    concurrency: int = 4
    bandwidth_cap: int = 0
    max_attempts: int = 5
    backoff_base_s: float = 0.5
    backoff_max_s: float = 30.0
    failure_tolerance: Optional[int] = None
    verify: bool = True
    checkpoint_interval_s: float = 5.0

    @property
    def jobs_dir(self) -> Path:
        return self.data_dir / "jobs"


@dataclass(frozen=True)
class MetricsConfig:
    """
    Settings of the usage ledger.

    Attributes:
        root (Path): Directory of per-profile ledger files.
        retention_days (int): Age after which events are dropped.
        window_hours (int): Trailing window of usage summaries.
        flush_every (int): Buffered events that trigger a flush.
    """

    root: Path = field(default_factory=lambda: Path("data") / "metrics")
    retention_days: int = 30
    window_hours: int = 72
    flush_every: int = 50


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container for the entire application.

    Attributes:
        engine (EngineConfig): Migration engine settings.
        transfer (TransferSettings): Backend call settings.
        metrics (MetricsConfig): Usage ledger settings.
    """

    engine: EngineConfig = field(default_factory=EngineConfig)
    transfer: TransferSettings = field(default_factory=TransferSettings)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_env(cls, data_dir: Optional[Path] = None) -> "Config":
        """
        Builds a configuration from `FERRY_*` environment variables.

        Args:
            data_dir (Path, optional): Overrides `FERRY_DATA_DIR`.

        Returns:
            Config: The configuration.
        """
        base: Path = data_dir or Path(_get_env_var("FERRY_DATA_DIR", "data"))
        tolerance_raw: Optional[str] = os.environ.get("FERRY_FAILURE_TOLERANCE")
        engine: EngineConfig = EngineConfig(
            data_dir=base,
            concurrency=_env_int("FERRY_CONCURRENCY", 4),
            bandwidth_cap=_env_int("FERRY_BANDWIDTH_CAP", 0),
            max_attempts=_env_int("FERRY_MAX_ATTEMPTS", 5),
            backoff_base_s=_env_float("FERRY_BACKOFF_BASE_S", 0.5),
            backoff_max_s=_env_float("FERRY_BACKOFF_MAX_S", 30.0),
            failure_tolerance=_env_int("FERRY_FAILURE_TOLERANCE", 0) if tolerance_raw else None,
            verify=_env_bool(os.environ.get("FERRY_VERIFY", "true")),
            checkpoint_interval_s=_env_float("FERRY_CHECKPOINT_INTERVAL_S", 5.0),
        )
        transfer: TransferSettings = TransferSettings(
            chunk_size=_env_int("FERRY_CHUNK_SIZE", 1 * MIB),
            multipart_threshold=_env_int("FERRY_MULTIPART_THRESHOLD", 8 * MIB),
            part_size=_env_int("FERRY_PART_SIZE", 8 * MIB),
            part_max_attempts=_env_int("FERRY_PART_MAX_ATTEMPTS", 3),
            connect_timeout_s=_env_float("FERRY_CONNECT_TIMEOUT_S", 10.0),
            read_timeout_s=_env_float("FERRY_READ_TIMEOUT_S", 60.0),
            presign_expiry_s=_env_int("FERRY_PRESIGN_EXPIRY_S", 3600),
        )
        metrics: MetricsConfig = MetricsConfig(
            root=base / "metrics",
            retention_days=_env_int("FERRY_METRICS_RETENTION_DAYS", 30),
        )
        return cls(engine=engine, transfer=transfer, metrics=metrics)
