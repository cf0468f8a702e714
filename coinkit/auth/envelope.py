"""
Signed message envelope — canonical messages, signing, and wire framing.

Wire format (one line, text/plain):
    e:<signer public key text>:<base64 signature>:<canonical message JSON>

The message text is everything after the third colon, since the JSON may
contain colons itself. Canonical JSON sorts keys at every depth and uses
compact separators, so any implementation signs identical bytes for
logically identical messages.

Message JSON:
    {"message": {...payload}, "type": "Query" | "Data" | "Error" | "Operation"}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from coinkit import ENVELOPE_VERSION
from coinkit.auth.keypair import KeyPair, verify

# Message types understood by the ledger
QUERY = "Query"
DATA = "Data"
ERROR = "Error"
OPERATION = "Operation"


class ProtocolError(Exception):
    """Malformed envelope or message. Never retried."""


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace, UTF-8 kept as-is."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class Message:
    """A typed message for the ledger. ``payload`` must be JSON-compatible."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.type, str) or not self.type:
            raise ProtocolError("Message type must be a non-empty string")
        if not isinstance(self.payload, dict):
            raise ProtocolError("Message payload must be a JSON object")

    def serialize(self) -> str:
        return canonical_json({"type": self.type, "message": self.payload})

    @classmethod
    def from_serialized(cls, serialized: str) -> Message:
        try:
            data = json.loads(serialized)
        except (json.JSONDecodeError, TypeError) as e:
            raise ProtocolError(f"Invalid message JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("Message must be a JSON object")
        payload = data.get("message")
        if payload is None:
            payload = {}
        return cls(data.get("type"), payload)

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


@dataclass(frozen=True)
class SignedMessage:
    """A message plus the signature over its canonical text.

    Build with ``from_signing`` or ``from_serialized`` only; both
    guarantee that ``signature`` verifies over ``message_string``.
    """

    message: Message
    message_string: str
    signer: str
    signature: str

    @classmethod
    def from_signing(cls, message: Message, key_pair: KeyPair) -> SignedMessage:
        if message is None:
            raise ValueError("cannot sign a missing message")
        message_string = message.serialize()
        return cls(
            message=message,
            message_string=message_string,
            signer=key_pair.public_key_text,
            signature=key_pair.sign(message_string),
        )

    def serialize(self) -> str:
        return ":".join((ENVELOPE_VERSION, self.signer, self.signature, self.message_string))

    @classmethod
    def from_serialized(cls, serialized: str) -> SignedMessage:
        """Parse and verify a wire envelope. Raises ProtocolError if invalid."""
        parts = serialized.split(":", 3)
        if len(parts) < 4:
            raise ProtocolError("could not find 4 parts")
        version, signer, signature, message_string = parts
        if version != ENVELOPE_VERSION:
            raise ProtocolError(f"unrecognized version: {version!r}")
        if not verify(signer, message_string, signature):
            raise ProtocolError(f"signature failed verification for signer {signer[:12]!r}")
        return cls(
            message=Message.from_serialized(message_string),
            message_string=message_string,
            signer=signer,
            signature=signature,
        )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def sign_operation(key_pair: KeyPair, op_type: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Build a signed operation record for an Operation message.

    The signer field is filled in from the keypair. The signature covers
    ``op_type`` immediately followed by the canonical operation JSON.
    """
    operation = dict(fields)
    operation["signer"] = key_pair.public_key_text
    return {
        "type": op_type,
        "operation": operation,
        "signature": key_pair.sign(op_type + canonical_json(operation)),
    }


def verify_operation(record: dict[str, Any]) -> bool:
    """Check a signed operation record against its own signer field."""
    try:
        op_type = record["type"]
        operation = record["operation"]
        return verify(
            operation["signer"],
            op_type + canonical_json(operation),
            record["signature"],
        )
    except (KeyError, TypeError):
        return False
