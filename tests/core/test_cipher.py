"""Tests for cipher module - Envelope sealing and opening."""

from __future__ import annotations

import os

import pytest

from pigeonhole.core.cipher import (
    TAG_SIZE,
    CipherSuite,
    Envelope,
    EnvelopeCipher,
    derive_nonce,
    suite_info,
)
from pigeonhole.core.errors import AuthenticationError, UnsupportedFormatError
from pigeonhole.core.keys import Label, SecretKey, chunk_key, derive

CONTENT_HASH = "ab" * 32


@pytest.fixture
def key(root: SecretKey) -> SecretKey:
    """A chunk key derived with a content context."""
    return chunk_key(derive(root, Label.CHUNK_ENCRYPTION), CONTENT_HASH)


@pytest.fixture(params=list(CipherSuite), ids=lambda s: s.name)
def cipher(request: pytest.FixtureRequest) -> EnvelopeCipher:
    return EnvelopeCipher(request.param)


class TestSealOpen:
    """Tests for sealing and opening under both suites."""

    def test_roundtrip(self, cipher: EnvelopeCipher, key: SecretKey) -> None:
        """open(seal(x)) returns x."""
        plaintext = b"Hello, World!"
        envelope = cipher.seal(key, plaintext)
        assert cipher.open(key, envelope) == plaintext

    def test_roundtrip_bytes(self, cipher: EnvelopeCipher, key: SecretKey) -> None:
        """Serialized envelopes open the same way."""
        plaintext = os.urandom(10_000)
        data = cipher.seal(key, plaintext, b"header").to_bytes()
        assert cipher.open(key, data) == plaintext

    def test_empty_plaintext(self, cipher: EnvelopeCipher, key: SecretKey) -> None:
        envelope = cipher.seal(key, b"")
        assert envelope.ciphertext == b""
        assert cipher.open(key, envelope) == b""

    def test_envelope_layout(self, cipher: EnvelopeCipher, key: SecretKey) -> None:
        """Layout is [fv][nonce][ct][tag][ad][ad_len]."""
        envelope = cipher.seal(key, b"data", b"ad")
        data = envelope.to_bytes()
        assert data[0] == cipher.suite
        assert data[1:13] == envelope.nonce
        assert data[-2:] == b"\x00\x02"
        assert data[-4:-2] == b"ad"
        assert len(data) == 1 + 12 + 4 + TAG_SIZE + 2 + 2

    def test_deterministic_mode_repeats(self, cipher: EnvelopeCipher, key: SecretKey) -> None:
        """Identical plaintext under the same key seals identically."""
        a = cipher.seal(key, b"same content").to_bytes()
        b = cipher.seal(key, b"same content").to_bytes()
        assert a == b

    def test_random_mode_differs(self, cipher: EnvelopeCipher, key: SecretKey) -> None:
        """Random nonces give distinct envelopes for equal plaintext."""
        a = cipher.seal(key, b"same content", deterministic=False)
        b = cipher.seal(key, b"same content", deterministic=False)
        assert a.nonce != b.nonce
        assert a.to_bytes() != b.to_bytes()
        assert cipher.open(key, a) == cipher.open(key, b) == b"same content"

    def test_wrong_key_fails(self, cipher: EnvelopeCipher, key: SecretKey, root: SecretKey) -> None:
        """A different key never yields plaintext."""
        other = chunk_key(derive(root, Label.CHUNK_ENCRYPTION), "cd" * 32)
        envelope = cipher.seal(key, b"secret")
        with pytest.raises(AuthenticationError, match="tag verification failed"):
            cipher.open(other, envelope)


class TestTamperDetection:
    """Any modified byte must fail verification."""

    def test_every_byte_flip_detected(self, key: SecretKey) -> None:
        """Flipping any single byte of the envelope is rejected."""
        cipher = EnvelopeCipher()
        data = cipher.seal(key, b"important data", b"meta").to_bytes()
        for i in range(len(data)):
            tampered = bytearray(data)
            tampered[i] ^= 0x01
            with pytest.raises(AuthenticationError):
                cipher.open(key, bytes(tampered))

    def test_associated_data_swap_detected(self, key: SecretKey) -> None:
        """Replacing the associated data breaks the tag."""
        cipher = EnvelopeCipher()
        envelope = cipher.seal(key, b"payload", b"mode-0")
        forged = Envelope(
            envelope.format_version,
            envelope.nonce,
            envelope.ciphertext,
            envelope.tag,
            b"mode-1",
        )
        with pytest.raises(AuthenticationError):
            cipher.open(key, forged)

    def test_format_version_swap_detected(self, key: SecretKey) -> None:
        """Relabelling an AES envelope as ChaCha fails the tag."""
        envelope = EnvelopeCipher(CipherSuite.AES_256_GCM).seal(key, b"payload")
        forged = Envelope(
            int(CipherSuite.CHACHA20_POLY1305),
            envelope.nonce,
            envelope.ciphertext,
            envelope.tag,
        )
        with pytest.raises(AuthenticationError):
            EnvelopeCipher().open(key, forged)

    def test_truncated(self, key: SecretKey) -> None:
        data = EnvelopeCipher().seal(key, b"payload").to_bytes()
        with pytest.raises(AuthenticationError):
            EnvelopeCipher().open(key, data[:10])

    def test_empty(self, key: SecretKey) -> None:
        with pytest.raises(AuthenticationError, match="Empty"):
            EnvelopeCipher().open(key, b"")


class TestFormatVersions:
    """Tests for suite dispatch by format version."""

    def test_unknown_version(self, key: SecretKey) -> None:
        data = bytearray(EnvelopeCipher().seal(key, b"x").to_bytes())
        data[0] = 99
        with pytest.raises(UnsupportedFormatError, match="99"):
            EnvelopeCipher().open(key, bytes(data))

    def test_open_uses_envelope_version(self, key: SecretKey) -> None:
        """A ChaCha envelope opens with an AES-default cipher."""
        envelope = EnvelopeCipher(CipherSuite.CHACHA20_POLY1305).seal(key, b"data")
        assert EnvelopeCipher(CipherSuite.AES_256_GCM).open(key, envelope) == b"data"

    def test_suite_info(self) -> None:
        assert suite_info(1).name == "AES-256-GCM"
        assert suite_info(2).nonce_size == 12
        with pytest.raises(UnsupportedFormatError):
            suite_info(0)

    def test_oversized_associated_data(self, key: SecretKey) -> None:
        with pytest.raises(ValueError, match="Associated data"):
            EnvelopeCipher().seal(key, b"x", b"a" * 0x10000)


class TestDeriveNonce:
    """Tests for deterministic nonce derivation."""

    def test_depends_on_context(self, root: SecretKey) -> None:
        master = derive(root, Label.CHUNK_ENCRYPTION)
        a = derive_nonce(chunk_key(master, "aa" * 32), 12)
        b = derive_nonce(chunk_key(master, "bb" * 32), 12)
        assert len(a) == 12
        assert a != b

    def test_requires_context(self, root: SecretKey) -> None:
        """Keys without a content context cannot derive nonces."""
        with pytest.raises(ValueError, match="content context"):
            derive_nonce(derive(root, Label.CHUNK_ENCRYPTION), 12)
