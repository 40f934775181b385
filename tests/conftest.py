"""Shared fixtures for pigeonhole tests."""

from __future__ import annotations

from collections.abc import Generator

import pytest

from pigeonhole.core.config import ChunkingConfig, RetryConfig, WorkFactor
from pigeonhole.core.keys import KeyHierarchy, Label, SecretKey, derive_root
from pigeonhole.storage.backend import MemoryBackend

# Cheapest work factor the safety floor accepts
FAST_WORK_FACTOR = WorkFactor(time_cost=2, memory_cost=19456, parallelism=1)

# Small chunks so multi-chunk files stay a few KiB
SMALL_CHUNKING = ChunkingConfig(min_size=256, avg_size=1024, max_size=4096)

NO_WAIT_RETRY = RetryConfig(max_retries=2, initial_backoff=0.0, max_backoff=0.0)

SALT = bytes(range(16))


@pytest.fixture(scope="session")
def root_material() -> bytes:
    """Root secret bytes derived once per test session."""
    with derive_root("correct horse battery staple", SALT, FAST_WORK_FACTOR) as root:
        return root.material


@pytest.fixture
def root(root_material: bytes) -> SecretKey:
    """A fresh root secret handle (callers may wipe it)."""
    return SecretKey(root_material, Label.ROOT)


@pytest.fixture
def keys(root: SecretKey) -> Generator[KeyHierarchy, None, None]:
    """Key hierarchy wiped at teardown."""
    with KeyHierarchy(root) as hierarchy:
        yield hierarchy


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def fast_work_factor() -> WorkFactor:
    return FAST_WORK_FACTOR


@pytest.fixture
def small_chunking() -> ChunkingConfig:
    return SMALL_CHUNKING


@pytest.fixture
def no_wait_retry() -> RetryConfig:
    return NO_WAIT_RETRY
