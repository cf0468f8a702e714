"""
Ledger access — entities, named networks, the RPC client, and the
provider listener.

Modules:
    models    — Account, Provider, Bucket
    network   — NetworkConfig for the local and alpha networks
    client    — ChainClient: signed queries and operations over HTTP
    listener  — ProviderListener: snapshot stream of allocated buckets
"""

from coinkit.chain.models import Account, Bucket, Provider
from coinkit.chain.network import KNOWN_NETWORKS, NetworkConfig
from coinkit.chain.client import (
    Cancelled,
    ChainClient,
    ChainClientError,
    ChainError,
    ConsistencyTimeout,
    TransportError,
)
from coinkit.chain.listener import ProviderListener

__all__ = [
    "Account",
    "Bucket",
    "Provider",
    "KNOWN_NETWORKS",
    "NetworkConfig",
    "Cancelled",
    "ChainClient",
    "ChainClientError",
    "ChainError",
    "ConsistencyTimeout",
    "TransportError",
    "ProviderListener",
]
