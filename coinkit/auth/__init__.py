"""
Identity and message authentication for the coinkit ledger protocol.

Modules:
    keypair   — Ed25519 keys, checksummed public key text, key files
    envelope  — canonical messages, signed envelopes, signed operations
"""

from coinkit.auth.keypair import (
    KeyPair,
    decode_public_key,
    encode_public_key,
    load_key_pair,
    save_key_pair,
    verify,
)
from coinkit.auth.envelope import (
    Message,
    ProtocolError,
    SignedMessage,
    canonical_json,
    sign_operation,
    verify_operation,
)

__all__ = [
    "KeyPair",
    "decode_public_key",
    "encode_public_key",
    "load_key_pair",
    "save_key_pair",
    "verify",
    "Message",
    "ProtocolError",
    "SignedMessage",
    "canonical_json",
    "sign_operation",
    "verify_operation",
]
