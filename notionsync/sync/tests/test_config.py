"""
Test file for the sync configuration schema.

This module tests loading, validation and environment overrides.
"""

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from ..config import SweepPolicy, SyncConfig
from ..error_tracker import FetchError, MediaDownloadError


class TestSyncConfig:
    """Test cases for SyncConfig class."""

    def test_defaults(self):
        """Test the default deployment settings."""
        config = SyncConfig()

        assert config.max_depth == 5
        assert config.batch_size == 20
        assert config.batch_stagger_seconds == 3.0
        assert config.sweep_policy == SweepPolicy.POST_BATCH
        assert config.resolver_max_sweeps == 3

    def test_load_from_yaml(self):
        """Test loading configuration from YAML file."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("""
name: "Docs sync"
state_directory: "/tmp/docs-state"
max_depth: 3
batch_size: 50
sweep_policy: "manual"
log_level: "debug"
monitoring:
  enabled: true
  webhook_url: "https://hooks.example.com/sync"
""")
            yaml_path = f.name

        try:
            config = SyncConfig.from_yaml(yaml_path)

            assert config.name == "Docs sync"
            assert config.max_depth == 3
            assert config.batch_size == 50
            assert config.sweep_policy == SweepPolicy.MANUAL
            assert config.log_level == "DEBUG"
            assert config.monitoring['webhook_url'] == "https://hooks.example.com/sync"
        finally:
            Path(yaml_path).unlink()

    def test_save_and_reload(self):
        """Test saving configuration to YAML and loading it back."""
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "nested" / "sync.yaml"
            original = SyncConfig(name="Round trip", max_depth=7, sweep_policy=SweepPolicy.MANUAL)
            original.to_yaml(path)

            loaded = SyncConfig.from_yaml(path)

        assert loaded == original

    def test_missing_file(self):
        """Test that a missing configuration file is reported."""
        with pytest.raises(FileNotFoundError):
            SyncConfig.from_yaml("/nonexistent/sync.yaml")

    def test_max_depth_is_clamped(self):
        """Test that max_depth never leaves the 1..10 range."""
        assert SyncConfig(max_depth=25).max_depth == 10
        assert SyncConfig(max_depth=0).max_depth == 1

    @pytest.mark.parametrize('field,value', [
        ('batch_size', 0),
        ('batch_size', 101),
        ('max_workers', 0),
        ('fetch_max_attempts', 0),
        ('truncation_lookahead', 0),
        ('log_level', 'VERBOSE'),
    ])
    def test_invalid_values(self, field, value):
        """Test validation of out-of-range settings."""
        with pytest.raises(ValidationError):
            SyncConfig(**{field: value})

    def test_state_path_is_created(self):
        """Test that the state directory is created on first use."""
        with tempfile.TemporaryDirectory() as temp_dir:
            config = SyncConfig(state_directory=str(Path(temp_dir) / "state"))
            assert config.state_path.is_dir()

    def test_retry_policies(self):
        """Test the retry policies derived from the configuration."""
        config = SyncConfig(fetch_max_attempts=5, media_max_attempts=2, media_backoff_seconds=0.5)

        fetch = config.fetch_retry_policy()
        media = config.media_retry_policy()

        assert fetch.max_attempts == 5
        assert fetch.retry_on_exceptions == (FetchError,)
        assert media.max_attempts == 2
        assert media.retry_on_exceptions == (MediaDownloadError,)
        assert [media.compute_backoff(i) for i in range(3)] == [0.5, 1.0, 2.0]

    def test_environment_overrides(self):
        """Test NOTIONSYNC_* variables applied on top of the file."""
        with patch.dict(os.environ, {'NOTIONSYNC_STATE_DIR': '/srv/notionsync', 'NOTIONSYNC_LOG_LEVEL': 'warning'}):
            config = SyncConfig.load()

        assert config.state_directory == '/srv/notionsync'
        assert config.log_level == 'WARNING'

    def test_load_without_overrides(self):
        """Test that load() without environment variables keeps file values."""
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "sync.yaml"
            SyncConfig(batch_size=7).to_yaml(path)
            with patch.dict(os.environ, {}, clear=True):
                config = SyncConfig.load(path)

        assert config.batch_size == 7
        assert config.state_directory == "./state"
