"""
Hosting — seed the torrents behind the buckets allocated to a provider.

Optional layer: requires ``pip install coinkit[torrent]`` for libtorrent.

Modules:
    torrent  — magnet parsing, engine interface, libtorrent adapter
    config   — HostingConfig and TOML loading
    server   — HostingServer reconciliation loop and run_host entry point
"""

from coinkit.hosting.config import ConfigurationError, HostingConfig, load_config
from coinkit.hosting.torrent import (
    LibtorrentEngine,
    MagnetError,
    MetadataTimeout,
    TorrentEngine,
    TorrentHandle,
    parse_info_hash,
)
from coinkit.hosting.server import HostingServer, PassResult, run_host

__all__ = [
    "ConfigurationError",
    "HostingConfig",
    "load_config",
    "LibtorrentEngine",
    "MagnetError",
    "MetadataTimeout",
    "TorrentEngine",
    "TorrentHandle",
    "parse_info_hash",
    "HostingServer",
    "PassResult",
    "run_host",
]
