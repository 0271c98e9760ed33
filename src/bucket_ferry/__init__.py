# src/bucket_ferry/__init__.py
"""
bucket-ferry: a resumable, cross-vendor object storage migration engine.

This package provides one capability interface over S3-compatible APIs and
Azure Blob Storage, a streaming transfer engine that copies objects between
any two of them with checkpoints that survive restarts, and a per-profile
API usage ledger.

The primary entry point for programmatic use is the `MigrationEngine` class.
"""

from typing import List

from bucket_ferry.backends import StorageBackend, create_backend
from bucket_ferry.config import Config, ConnectionProfile, ProfileRegistry
from bucket_ferry.engine import MigrationEngine
from bucket_ferry.metrics import MetricsRecorder
from bucket_ferry.models import JobRequest, JobState, MigrationJob, ProgressSnapshot
from bucket_ferry.report import MigrationReport

__all__: List[str] = [
    "Config",
    "ConnectionProfile",
    "JobRequest",
    "JobState",
    "MetricsRecorder",
    "MigrationEngine",
    "MigrationJob",
    "MigrationReport",
    "ProfileRegistry",
    "ProgressSnapshot",
    "StorageBackend",
    "create_backend",
]
