"""Authenticated envelope encryption for chunks and documents.

This module provides:
- Two interchangeable AEAD suites selected by a format-version byte:
  AES-256-GCM (hardware accelerated) and ChaCha20-Poly1305 (software)
- Deterministic nonces derived from the chunk key and content hash, so
  identical plaintext under the same key seals to identical envelopes
- Randomized nonces for data whose content equality must stay hidden

Envelope layout:
    [format_version:1][nonce:N][ciphertext][tag:16][associated_data][ad_len:2]

The format version byte and the associated data are bound into the tag.

Deterministic mode deliberately lets anyone holding two envelopes learn
whether their chunks are byte-identical. Chunks that must hide this are
sealed with deterministic=False under a separately labelled key and give
up cross-file deduplication.
"""

from __future__ import annotations

import os
import struct
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from pigeonhole.core.errors import AuthenticationError, UnsupportedFormatError
from pigeonhole.core.keys import Label, SecretKey, derive

TAG_SIZE = 16  # 128 bits
AD_LEN_SIZE = 2
MAX_ASSOCIATED_DATA = 0xFFFF


class CipherSuite(IntEnum):
    """Envelope format versions. Shipped values stay decryptable forever."""

    AES_256_GCM = 1
    CHACHA20_POLY1305 = 2


@dataclass(frozen=True)
class SuiteInfo:
    """Parameters of one AEAD suite."""

    name: str
    nonce_size: int
    factory: Callable[[bytes], AESGCM | ChaCha20Poly1305]


SUITES: dict[CipherSuite, SuiteInfo] = {
    CipherSuite.AES_256_GCM: SuiteInfo("AES-256-GCM", 12, AESGCM),
    CipherSuite.CHACHA20_POLY1305: SuiteInfo("ChaCha20-Poly1305", 12, ChaCha20Poly1305),
}


def suite_info(format_version: int) -> SuiteInfo:
    """Look up a suite by format version.

    Raises:
        UnsupportedFormatError: If the version is unknown.
    """
    try:
        return SUITES[CipherSuite(format_version)]
    except ValueError as e:
        raise UnsupportedFormatError(f"Unknown envelope format version {format_version}") from e


@dataclass(frozen=True)
class Envelope:
    """Self-describing encrypted and authenticated unit."""

    format_version: int
    nonce: bytes
    ciphertext: bytes
    tag: bytes
    associated_data: bytes = b""

    @property
    def aad(self) -> bytes:
        """Additional data bound into the tag."""
        return bytes([self.format_version]) + self.associated_data

    def to_bytes(self) -> bytes:
        """Serialize to the binary envelope format."""
        return b"".join(
            (
                bytes([self.format_version]),
                self.nonce,
                self.ciphertext,
                self.tag,
                self.associated_data,
                struct.pack(">H", len(self.associated_data)),
            )
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Envelope:
        """Parse the binary envelope format.

        Raises:
            UnsupportedFormatError: If the format version is unknown.
            AuthenticationError: If the envelope is truncated.
        """
        if not data:
            raise AuthenticationError("Empty envelope")
        info = suite_info(data[0])
        header = 1 + info.nonce_size
        if len(data) < header + TAG_SIZE + AD_LEN_SIZE:
            raise AuthenticationError("Truncated envelope")

        (ad_len,) = struct.unpack(">H", data[-AD_LEN_SIZE:])
        body_end = len(data) - AD_LEN_SIZE - ad_len
        if body_end < header + TAG_SIZE:
            raise AuthenticationError("Malformed envelope: associated data length")

        return cls(
            format_version=data[0],
            nonce=data[1:header],
            ciphertext=data[header : body_end - TAG_SIZE],
            tag=data[body_end - TAG_SIZE : body_end],
            associated_data=data[body_end : len(data) - AD_LEN_SIZE],
        )


def derive_nonce(chunk_key: SecretKey, size: int) -> bytes:
    """Derive a deterministic nonce from a chunk key and its content hash.

    The nonce depends on the key's derivation label and context only, never
    on a counter or random source.
    """
    if not chunk_key.context:
        raise ValueError("Deterministic nonces require a key derived with a content context")
    context = chunk_key.label.value.encode("ascii") + chunk_key.context
    with derive(chunk_key, Label.CHUNK_NONCE, context) as nonce_key:
        return nonce_key.material[:size]


class EnvelopeCipher:
    """Seals and opens envelopes with a configured default suite.

    Opening always dispatches on the envelope's own format version, so
    changing the default suite never breaks existing envelopes.
    """

    def __init__(self, suite: CipherSuite | int = CipherSuite.AES_256_GCM) -> None:
        self._suite = CipherSuite(suite)

    @property
    def suite(self) -> CipherSuite:
        return self._suite

    def seal(
        self,
        chunk_key: SecretKey,
        plaintext: bytes,
        associated_data: bytes = b"",
        deterministic: bool = True,
    ) -> Envelope:
        """Encrypt and authenticate plaintext.

        Args:
            chunk_key: Key handle for this chunk.
            plaintext: Data to encrypt.
            associated_data: Data bound into the tag but stored in clear.
            deterministic: Derive the nonce from the key (dedup mode) or
                draw it at random.

        Returns:
            The sealed envelope.
        """
        if len(associated_data) > MAX_ASSOCIATED_DATA:
            raise ValueError(f"Associated data exceeds {MAX_ASSOCIATED_DATA} bytes")

        info = SUITES[self._suite]
        if deterministic:
            nonce = derive_nonce(chunk_key, info.nonce_size)
        else:
            nonce = os.urandom(info.nonce_size)

        aad = bytes([self._suite]) + associated_data
        sealed = info.factory(chunk_key.material).encrypt(nonce, plaintext, aad)
        return Envelope(
            format_version=int(self._suite),
            nonce=nonce,
            ciphertext=sealed[:-TAG_SIZE],
            tag=sealed[-TAG_SIZE:],
            associated_data=associated_data,
        )

    def open(self, chunk_key: SecretKey, envelope: Envelope | bytes) -> bytes:
        """Verify and decrypt an envelope.

        Returns:
            The plaintext. Nothing is returned unless the tag verifies.

        Raises:
            AuthenticationError: If the tag does not verify.
            UnsupportedFormatError: If the format version is unknown.
        """
        if isinstance(envelope, bytes | bytearray):
            envelope = Envelope.from_bytes(bytes(envelope))

        info = suite_info(envelope.format_version)
        if len(envelope.nonce) != info.nonce_size or len(envelope.tag) != TAG_SIZE:
            raise AuthenticationError("Malformed envelope")

        aead = info.factory(chunk_key.material)
        try:
            return aead.decrypt(envelope.nonce, envelope.ciphertext + envelope.tag, envelope.aad)
        except InvalidTag as e:
            raise AuthenticationError(f"{info.name} tag verification failed") from e
