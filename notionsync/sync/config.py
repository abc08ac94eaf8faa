"""
Configuration schema for the synchronization core.

One YAML document configures a sync deployment: where the durable registries
live, how deep hierarchies are walked, how bulk work is chunked into jobs, and
the retry budgets for every remote I/O boundary.
"""

import os
import yaml
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union, Any
from pydantic import BaseModel, Field, field_validator

from ..config import get_state_directory, get_log_level, DEFAULT_MAX_DEPTH, MAX_DEPTH_CEILING, DEFAULT_BATCH_SIZE, DEFAULT_BATCH_STAGGER_SECONDS, DEFAULT_FETCH_TIMEOUT
from .resilience import RetryPolicy
from .error_tracker import FetchError, MediaDownloadError


class SweepPolicy(str, Enum):
    """When the reference resolver sweep runs."""
    POST_BATCH = "post_batch"  # resolve_links job once a tree's batches are terminal
    MANUAL = "manual"  # only when the host calls resolve_links()


class SyncConfig(BaseModel):
    """Main configuration for the synchronization core."""
    version: str = Field(default="1.0.0", description="Configuration version")
    name: str = Field(default="notionsync", description="Configuration name")
    description: Optional[str] = Field(None, description="Configuration description")

    # Storage configuration
    state_directory: str = Field(default="./state", description="Directory for registries, job table and checkpoints")

    # Hierarchy configuration
    max_depth: int = Field(default=DEFAULT_MAX_DEPTH, description="Deepest level synced below a root")
    truncation_lookahead: int = Field(default=5, description="Levels of 'view externally' leaves listed below max_depth")

    # Scheduling configuration
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, description="Nodes per sync_batch job")
    batch_stagger_seconds: float = Field(default=DEFAULT_BATCH_STAGGER_SECONDS, description="Delay between consecutive batches")
    max_workers: int = Field(default=4, description="Worker threads executing jobs")
    max_job_attempts: int = Field(default=3, description="Attempts per job before it is failed")
    job_retry_delay_seconds: float = Field(default=2.0, description="Base delay before a job is retried")

    # Remote fetch configuration
    fetch_timeout_seconds: int = Field(default=DEFAULT_FETCH_TIMEOUT, description="Timeout per remote fetch or download")
    fetch_max_attempts: int = Field(default=3, description="Attempts per remote fetch")
    fetch_backoff_seconds: float = Field(default=1.0, description="Base backoff between fetch attempts")

    # Media configuration
    media_max_attempts: int = Field(default=3, description="Attempts per media download")
    media_backoff_seconds: float = Field(default=1.0, description="Base backoff between media download attempts")

    # Reference resolution
    resolver_max_sweeps: int = Field(default=3, description="Sweeps before a pending link is reported broken")
    sweep_policy: SweepPolicy = Field(default=SweepPolicy.POST_BATCH, description="When the resolver sweep runs")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(None, description="Log file path")

    # External monitoring
    monitoring: Optional[Dict[str, Any]] = Field(None, description="External monitor settings")

    @field_validator('max_depth')
    @classmethod
    def clamp_max_depth(cls, v):
        """Depth ceiling is always between 1 and MAX_DEPTH_CEILING."""
        return max(1, min(MAX_DEPTH_CEILING, v))

    @field_validator('batch_size')
    @classmethod
    def validate_batch_size(cls, v):
        if v < 1 or v > 100:
            raise ValueError('batch_size must be between 1 and 100')
        return v

    @field_validator('max_workers', 'max_job_attempts', 'fetch_max_attempts', 'media_max_attempts', 'resolver_max_sweeps',
                     'truncation_lookahead')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('must be at least 1')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Invalid log level: {v}')
        return v

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SyncConfig':
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode='json')

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True)

    @property
    def state_path(self) -> Path:
        path = Path(self.state_directory)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def fetch_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.fetch_max_attempts,
            base_delay_seconds=self.fetch_backoff_seconds,
            max_delay_seconds=60.0,
            jitter=True,
            retry_on_exceptions=(FetchError,),
        )

    def media_retry_policy(self) -> RetryPolicy:
        # Deterministic 1s, 2s, 4s... between attempts
        return RetryPolicy(
            max_attempts=self.media_max_attempts,
            base_delay_seconds=self.media_backoff_seconds,
            max_delay_seconds=30.0,
            jitter=False,
            retry_on_exceptions=(MediaDownloadError,),
        )

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> 'SyncConfig':
        """YAML file (when given) with NOTIONSYNC_* environment overrides applied on top."""
        config = cls.from_yaml(path) if path else cls()
        overrides: Dict[str, Any] = {}
        if os.environ.get('NOTIONSYNC_STATE_DIR'):
            overrides['state_directory'] = get_state_directory()
        if os.environ.get('NOTIONSYNC_LOG_LEVEL'):
            overrides['log_level'] = get_log_level()
        if not overrides:
            return config
        return cls(**{**config.model_dump(), **overrides})
