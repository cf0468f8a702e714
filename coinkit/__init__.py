"""
coinkit — hosting client for the coinkit storage ledger.

Architecture:
    Identity:   Ed25519 keypair, "0x" + hex + checksum public key text
    Envelope:   "e:<signer>:<signature>:<canonical JSON message>"
    Chain:      HTTP client for the ledger's /messages endpoint
    Hosting:    polls the ledger for a provider's buckets and keeps the
                matching torrents seeded under ~/hostfiles/<info_hash>
"""

from pathlib import Path

__version__ = "0.1.0"

# Signed message envelope
ENVELOPE_VERSION = "e"

# Key material sizes (Ed25519)
PUBLIC_KEY_SIZE = 32
PRIVATE_KEY_SIZE = 64  # seed (32) + public key (32)
SEED_SIZE = 32
SIGNATURE_SIZE = 64
CHECKSUM_SIZE = 2  # leading bytes of SHA-512/256 appended to the public key
PUBLIC_KEY_TEXT_LENGTH = 2 + 2 * (PUBLIC_KEY_SIZE + CHECKSUM_SIZE)  # 70

# Chain RPC constants
CHAIN_MESSAGES_PATH = "/messages"
RPC_RETRIES = 3
RPC_RETRY_WAIT_SECS = 1.0
RPC_TIMEOUT_SECS = 30
CONSISTENCY_POLL_SECS = 1.0

# Hosting constants
LISTENER_POLL_INTERVAL_SECS = 2.0
METADATA_POLL_SECS = 0.5
MIN_INFO_HASH_LENGTH = 5  # refuse to delete anything keyed by a shorter hash
BYTES_PER_MEGABYTE = 1024 * 1024

DEFAULT_NETWORK = "local"
DEFAULT_CONFIG_PATH = Path.home() / ".coinkit" / "host.toml"
DEFAULT_HOSTING_DIR = Path.home() / "hostfiles"
