"""Configuration classes for pigeonhole.

This module defines the configuration values the core treats as opaque
input (work factor, chunk sizes, device index, backend settings) together
with their documented valid ranges.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from pigeonhole.core.errors import ConfigError

# Argon2id safety floor (OWASP minimum for Argon2id)
MIN_TIME_COST = 2
MIN_MEMORY_COST = 19456  # 19 MiB
MIN_PARALLELISM = 1

# FastCDC accepted bounds
FASTCDC_MIN_SIZE = 64
FASTCDC_MIN_AVG_SIZE = 256
FASTCDC_MIN_MAX_SIZE = 1024

MAX_INDEX = 2**31 - 1  # hardened derivation indices

SUPPORTED_CIPHER_SUITES = (1, 2)  # AES-256-GCM, ChaCha20-Poly1305


@dataclass(frozen=True)
class WorkFactor:
    """Cost parameters of the Argon2id password hash.

    Attributes:
        time_cost: Number of iterations.
        memory_cost: Memory usage in KiB.
        parallelism: Number of lanes.
        hash_len: Length of the derived root secret in bytes.
    """

    time_cost: int = 3
    memory_cost: int = 65536  # 64 MiB
    parallelism: int = 4
    hash_len: int = 32

    def meets_floor(self) -> bool:
        """Check the work factor against the configured safety floor."""
        return (
            self.time_cost >= MIN_TIME_COST
            and self.memory_cost >= MIN_MEMORY_COST
            and self.parallelism >= MIN_PARALLELISM
            and self.hash_len >= 32
        )

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkFactor:
        try:
            return cls(
                time_cost=int(data["time_cost"]),
                memory_cost=int(data["memory_cost"]),
                parallelism=int(data["parallelism"]),
                hash_len=int(data.get("hash_len", 32)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid work factor: {e}") from e


@dataclass(frozen=True)
class ChunkingConfig:
    """Content-defined chunking sizes in bytes (min 1MB, avg 4MB, max 8MB by default)."""

    min_size: int = 1 * 1024 * 1024
    avg_size: int = 4 * 1024 * 1024
    max_size: int = 8 * 1024 * 1024

    def __post_init__(self) -> None:
        """Validate chunk size ordering and FastCDC bounds."""
        if self.min_size < FASTCDC_MIN_SIZE:
            raise ConfigError(f"min_size must be >= {FASTCDC_MIN_SIZE}, got {self.min_size}")
        if self.avg_size < FASTCDC_MIN_AVG_SIZE:
            raise ConfigError(
                f"avg_size must be >= {FASTCDC_MIN_AVG_SIZE}, got {self.avg_size}"
            )
        if self.max_size < FASTCDC_MIN_MAX_SIZE:
            raise ConfigError(
                f"max_size must be >= {FASTCDC_MIN_MAX_SIZE}, got {self.max_size}"
            )
        if not self.min_size <= self.avg_size <= self.max_size:
            raise ConfigError("Chunk sizes must satisfy min_size <= avg_size <= max_size")


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff settings for idempotent backend operations."""

    max_retries: int = 5
    initial_backoff: float = 1.0  # seconds
    max_backoff: float = 60.0  # seconds
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.initial_backoff < 0 or self.max_backoff < self.initial_backoff:
            raise ConfigError("Backoff must satisfy 0 <= initial_backoff <= max_backoff")


@dataclass
class SyncConfig:
    """Configuration for a sync session.

    Attributes:
        config_dir: Directory holding the keyfile.
        work_factor: Argon2id parameters for new keyfiles.
        chunking: Content-defined chunking sizes.
        retry: Backoff settings for backend calls.
        cipher_suite: Envelope format version used for new envelopes.
        user_index: Index of the user identity under the root.
        device_index: Index of this device under the user identity.
        dedup: Whether chunks are deduplicated by default.
        max_workers: Thread pool size for parallel chunk work (None = CPU count).
        backend: Chunk backend settings (see create_backend).
        manifest_backend: Manifest backend settings (see create_backend).
    """

    config_dir: Path
    work_factor: WorkFactor = field(default_factory=WorkFactor)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cipher_suite: int = 1
    user_index: int = 0
    device_index: int = 0
    dedup: bool = True
    max_workers: int | None = None
    backend: dict[str, str | None] = field(default_factory=lambda: {"type": "local"})
    manifest_backend: dict[str, str | None] = field(default_factory=lambda: {"type": "local"})

    def __post_init__(self) -> None:
        """Normalize paths and validate ranges."""
        self.config_dir = Path(self.config_dir).expanduser()
        for name in ("user_index", "device_index"):
            value = getattr(self, name)
            if not 0 <= value <= MAX_INDEX:
                raise ConfigError(f"{name} must be in [0, {MAX_INDEX}], got {value}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigError("max_workers must be >= 1")
        if self.cipher_suite not in SUPPORTED_CIPHER_SUITES:
            raise ConfigError(f"Unknown cipher suite {self.cipher_suite}")
        if not self.work_factor.meets_floor():
            raise ConfigError("Work factor is below the safety floor")
        # Chunk gc deletes everything unreachable, so manifests need their own location
        for name, subdir in (("backend", "chunks"), ("manifest_backend", "manifests")):
            settings = dict(getattr(self, name))
            if settings.get("type", "local") == "local" and not settings.get("local_path"):
                settings["local_path"] = str(self.config_dir / subdir)
            setattr(self, name, settings)
        if self.backend == self.manifest_backend and self.backend.get("type") != "memory":
            raise ConfigError("Chunk and manifest backends must not share a location")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a SyncConfig from a JSON-compatible dict."""
        try:
            return cls(
                config_dir=Path(data["config_dir"]),
                work_factor=WorkFactor.from_dict(data["work_factor"])
                if "work_factor" in data
                else WorkFactor(),
                chunking=ChunkingConfig(**data.get("chunking", {})),
                retry=RetryConfig(**data.get("retry", {})),
                cipher_suite=int(data.get("cipher_suite", 1)),
                user_index=int(data.get("user_index", 0)),
                device_index=int(data.get("device_index", 0)),
                dedup=bool(data.get("dedup", True)),
                max_workers=data.get("max_workers"),
                backend=dict(data.get("backend", {"type": "local"})),
                manifest_backend=dict(data.get("manifest_backend", {"type": "local"})),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["config_dir"] = str(self.config_dir)
        return data


def load_config(path: Path) -> SyncConfig:
    """Load a SyncConfig from a JSON file.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"Corrupted config file {path}: {e}") from e
    return SyncConfig.from_dict(data)


def save_config(config: SyncConfig, path: Path) -> None:
    """Save a SyncConfig to a JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2))
