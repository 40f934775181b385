"""Tests for core configuration classes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pigeonhole.core.config import (
    ChunkingConfig,
    RetryConfig,
    SyncConfig,
    WorkFactor,
    load_config,
    save_config,
)
from pigeonhole.core.errors import ConfigError


class TestWorkFactor:
    """Tests for WorkFactor class."""

    def test_defaults_meet_floor(self) -> None:
        """Default parameters should be above the safety floor."""
        assert WorkFactor().meets_floor()

    def test_floor(self) -> None:
        """The floor is t=2, m=19 MiB, p=1."""
        assert WorkFactor(time_cost=2, memory_cost=19456, parallelism=1).meets_floor()
        assert not WorkFactor(time_cost=2, memory_cost=19455, parallelism=1).meets_floor()
        assert not WorkFactor(time_cost=1, memory_cost=19456, parallelism=1).meets_floor()

    def test_dict_roundtrip(self) -> None:
        wf = WorkFactor(time_cost=4, memory_cost=32768, parallelism=2)
        assert WorkFactor.from_dict(wf.to_dict()) == wf

    def test_from_dict_invalid(self) -> None:
        with pytest.raises(ConfigError, match="Invalid work factor"):
            WorkFactor.from_dict({"time_cost": "x"})


class TestChunkingConfig:
    """Tests for ChunkingConfig class."""

    def test_defaults(self) -> None:
        config = ChunkingConfig()
        assert config.min_size == 1024 * 1024
        assert config.avg_size == 4 * 1024 * 1024
        assert config.max_size == 8 * 1024 * 1024

    @pytest.mark.parametrize(
        ("min_size", "avg_size", "max_size"),
        [(32, 1024, 4096), (256, 128, 4096), (256, 1024, 512), (2048, 1024, 4096)],
    )
    def test_invalid_sizes(self, min_size: int, avg_size: int, max_size: int) -> None:
        """Sizes outside FastCDC bounds or out of order are rejected."""
        with pytest.raises(ConfigError):
            ChunkingConfig(min_size=min_size, avg_size=avg_size, max_size=max_size)


class TestRetryConfig:
    """Tests for RetryConfig class."""

    def test_negative_retries(self) -> None:
        with pytest.raises(ConfigError, match="max_retries"):
            RetryConfig(max_retries=-1)

    def test_backoff_order(self) -> None:
        with pytest.raises(ConfigError, match="Backoff"):
            RetryConfig(initial_backoff=10.0, max_backoff=1.0)


class TestSyncConfig:
    """Tests for SyncConfig class."""

    def test_init_basic(self, tmp_path: Path) -> None:
        """Should initialize with defaults."""
        config = SyncConfig(config_dir=tmp_path)
        assert config.cipher_suite == 1
        assert config.device_index == 0
        assert config.dedup is True
        assert config.max_workers is None

    def test_local_backends_get_separate_paths(self, tmp_path: Path) -> None:
        """Chunks and manifests default to separate directories."""
        config = SyncConfig(config_dir=tmp_path)
        assert config.backend["local_path"] == str(tmp_path / "chunks")
        assert config.manifest_backend["local_path"] == str(tmp_path / "manifests")

    def test_shared_backend_rejected(self, tmp_path: Path) -> None:
        shared = {"type": "local", "local_path": str(tmp_path / "blobs")}
        with pytest.raises(ConfigError, match="must not share"):
            SyncConfig(config_dir=tmp_path, backend=shared, manifest_backend=dict(shared))

    def test_memory_backends_untouched(self, tmp_path: Path) -> None:
        config = SyncConfig(
            config_dir=tmp_path,
            backend={"type": "memory"},
            manifest_backend={"type": "memory"},
        )
        assert "local_path" not in config.backend

    @pytest.mark.parametrize("index", [-1, 2**31])
    def test_device_index_range(self, tmp_path: Path, index: int) -> None:
        with pytest.raises(ConfigError, match="device_index"):
            SyncConfig(config_dir=tmp_path, device_index=index)

    def test_weak_work_factor_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="safety floor"):
            SyncConfig(config_dir=tmp_path, work_factor=WorkFactor(time_cost=1))

    def test_unknown_cipher_suite(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="cipher suite"):
            SyncConfig(config_dir=tmp_path, cipher_suite=3)

    def test_max_workers(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="max_workers"):
            SyncConfig(config_dir=tmp_path, max_workers=0)

    def test_save_load_roundtrip(self, tmp_path: Path) -> None:
        """A saved config loads back equal."""
        config = SyncConfig(
            config_dir=tmp_path,
            work_factor=WorkFactor(time_cost=2, memory_cost=19456, parallelism=1),
            chunking=ChunkingConfig(min_size=256, avg_size=1024, max_size=4096),
            device_index=7,
            dedup=False,
        )
        path = tmp_path / "config.json"
        save_config(config, path)
        assert load_config(path) == config

    def test_load_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.json")

    def test_load_corrupted(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{oops")
        with pytest.raises(ConfigError, match="Corrupted"):
            load_config(path)

    def test_load_invalid_values(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"config_dir": str(tmp_path), "chunking": {"min_size": 1}}))
        with pytest.raises(ConfigError):
            load_config(path)
