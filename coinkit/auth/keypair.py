"""
Ed25519 identity — key generation, signing, verification, public key text.

Public key text format (70 chars):
    "0x" + 64 hex chars (32-byte key) + 4 hex chars (checksum)

The checksum is the first 2 bytes of SHA-512/256 over the raw key, so a
mistyped key is caught before anything is signed for it.

Signatures are base64 with the "=" padding stripped (86 chars). Both
encodings match the Go and JavaScript clients byte for byte.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from coinkit import (
    CHECKSUM_SIZE,
    PRIVATE_KEY_SIZE,
    PUBLIC_KEY_SIZE,
    PUBLIC_KEY_TEXT_LENGTH,
    SEED_SIZE,
    SIGNATURE_SIZE,
)

log = logging.getLogger(__name__)

# Lowercase only: the upper/lower case forms would otherwise both decode
# to the same key, and envelopes must not be malleable.
_PUBLIC_KEY_RE = re.compile(r"^0x[0-9a-f]{%d}$" % (PUBLIC_KEY_TEXT_LENGTH - 2))


def sha512_256(data: bytes) -> bytes:
    """SHA-512/256 digest (32 bytes). Not the same as truncated SHA-512."""
    digest = hashes.Hash(hashes.SHA512_256())
    digest.update(data)
    return digest.finalize()


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    """Decode unpadded base64. Raises ValueError on non-canonical input."""
    if not isinstance(text, str):
        raise ValueError("base64 text must be a string")
    padded = text + "=" * (-len(text) % 4)
    try:
        raw = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64: {e}") from e
    # Unused trailing bits make several texts decode to the same bytes
    if _b64encode(raw) != text:
        raise ValueError("Non-canonical base64 encoding")
    return raw


def encode_public_key(raw: bytes) -> str:
    """Encode a raw 32-byte public key as 70-char checksummed text."""
    if not isinstance(raw, (bytes, bytearray)) or len(raw) != PUBLIC_KEY_SIZE:
        raise ValueError(f"Public key must be {PUBLIC_KEY_SIZE} bytes")
    raw = bytes(raw)
    checksum = sha512_256(raw)[:CHECKSUM_SIZE]
    return "0x" + raw.hex() + checksum.hex()


def decode_public_key(text: str) -> bytes:
    """Decode checksummed public key text back to 32 raw bytes.

    Raises ValueError on bad length, prefix, characters, or checksum.
    """
    if not isinstance(text, str) or len(text) != PUBLIC_KEY_TEXT_LENGTH:
        raise ValueError(
            f"Public key text must be {PUBLIC_KEY_TEXT_LENGTH} chars, got {text!r}"
        )
    if not _PUBLIC_KEY_RE.match(text):
        raise ValueError(f"Public key text must be 0x + lowercase hex, got {text!r}")
    data = bytes.fromhex(text[2:])
    raw, checksum = data[:PUBLIC_KEY_SIZE], data[PUBLIC_KEY_SIZE:]
    if sha512_256(raw)[:CHECKSUM_SIZE] != checksum:
        raise ValueError(f"Public key checksum mismatch: {text!r}")
    return raw


def shorten(public_key_text: str) -> str:
    """Short form of a public key for log lines."""
    return public_key_text[:8] + ".." if public_key_text else "?"


def verify(public_key_text: str, message: str, signature_text: str) -> bool:
    """Verify a detached signature over the UTF-8 bytes of ``message``.

    Never raises: any malformed input is simply an invalid signature.
    """
    try:
        raw_key = decode_public_key(public_key_text)
        sig = _b64decode(signature_text)
        if len(sig) != SIGNATURE_SIZE or not isinstance(message, str):
            return False
        Ed25519PublicKey.from_public_bytes(raw_key).verify(sig, message.encode("utf-8"))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


class KeyPair:
    """An Ed25519 keypair. Immutable once constructed.

    ``private_key`` is the 64-byte form used by the Go and JS clients:
    the 32-byte seed followed by the 32-byte public key.

    Usage:
        kp = KeyPair.from_secret_phrase("monkey")
        sig = kp.sign("hello")
        assert verify(kp.public_key_text, "hello", sig)
    """

    __slots__ = ("_public_key", "_private_key", "_signer")

    def __init__(self, public_key: bytes, private_key: bytes) -> None:
        if len(public_key) != PUBLIC_KEY_SIZE:
            raise ValueError(f"Public key must be {PUBLIC_KEY_SIZE} bytes")
        if len(private_key) != PRIVATE_KEY_SIZE:
            raise ValueError(f"Private key must be {PRIVATE_KEY_SIZE} bytes")
        signer = Ed25519PrivateKey.from_private_bytes(bytes(private_key[:SEED_SIZE]))
        derived = signer.public_key().public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
        if derived != bytes(public_key) or private_key[SEED_SIZE:] != public_key:
            raise ValueError("Private key does not match public key")
        self._public_key = bytes(public_key)
        self._private_key = bytes(private_key)
        self._signer = signer

    def __setattr__(self, name, value):
        if hasattr(self, "_signer"):
            raise AttributeError("KeyPair is immutable")
        object.__setattr__(self, name, value)

    @classmethod
    def from_seed(cls, seed: bytes) -> KeyPair:
        """Expand a 32-byte seed into a keypair."""
        if len(seed) != SEED_SIZE:
            raise ValueError(f"Seed must be {SEED_SIZE} bytes")
        public = (
            Ed25519PrivateKey.from_private_bytes(bytes(seed))
            .public_key()
            .public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        )
        return cls(public, bytes(seed) + public)

    @classmethod
    def from_random(cls) -> KeyPair:
        return cls.from_seed(os.urandom(SEED_SIZE))

    @classmethod
    def from_private_key_bytes(cls, raw: bytes) -> KeyPair:
        """Build from the 64-byte seed+public private key form."""
        if len(raw) != PRIVATE_KEY_SIZE:
            raise ValueError(
                f"Private key must be {PRIVATE_KEY_SIZE} bytes, got {len(raw)}"
            )
        kp = cls.from_seed(raw[:SEED_SIZE])
        if kp.private_key != bytes(raw):
            raise ValueError("Private key does not match public key")
        return kp

    @classmethod
    def from_secret_phrase(cls, phrase: str) -> KeyPair:
        """Deterministic keypair: seed = SHA-512/256 of the UTF-8 phrase."""
        return cls.from_seed(sha512_256(phrase.encode("utf-8")))

    @classmethod
    def from_serialized(cls, serialized: str) -> KeyPair:
        """Parse the JSON record produced by ``serialize()``."""
        try:
            record = json.loads(serialized)
            private_text = record["Private"]
            public_text = record["Public"]
        except (json.JSONDecodeError, TypeError, KeyError) as e:
            raise ValueError(f"Invalid serialized keypair: {e}") from e
        kp = cls.from_private_key_bytes(_b64decode(private_text))
        if kp.public_key_text != public_text:
            raise ValueError("Serialized keypair halves do not match")
        return kp

    def serialize(self) -> str:
        return json.dumps(
            {"Private": _b64encode(self._private_key), "Public": self.public_key_text},
            sort_keys=True,
        )

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def private_key(self) -> bytes:
        return self._private_key

    @property
    def public_key_text(self) -> str:
        return encode_public_key(self._public_key)

    def sign(self, message: str) -> str:
        """Sign the UTF-8 bytes of ``message``; returns unpadded base64."""
        return _b64encode(self._signer.sign(message.encode("utf-8")))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyPair):
            return NotImplemented
        return self._private_key == other._private_key

    def __hash__(self) -> int:
        return hash(self._public_key)

    def __repr__(self) -> str:
        return f"KeyPair({shorten(self.public_key_text)})"


# ---------------------------------------------------------------------------
# Key files
# ---------------------------------------------------------------------------

def load_key_pair(path: str | Path) -> KeyPair:
    """Load a keypair from a file written by ``save_key_pair``.

    Raises ValueError naming the path if it is missing or unreadable.
    """
    path = Path(path)
    if not path.exists():
        raise ValueError(f"{path} does not exist")
    if not path.is_file():
        raise ValueError(f"{path} is not a file")
    try:
        return KeyPair.from_serialized(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ValueError(f"{path} does not contain a valid keypair: {e}") from e


def save_key_pair(kp: KeyPair, path: str | Path) -> None:
    """Write a keypair to ``path`` with mode 600."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(kp.serialize(), encoding="utf-8")
    try:
        path.chmod(0o600)
    except OSError:
        log.debug("Could not chmod 600 %s", path)
