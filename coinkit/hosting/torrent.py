"""
Torrent engine interface for the hosting server, plus a libtorrent adapter.

The hosting server only needs to: start a magnet download into a
directory, learn the content size once metadata arrives, and drop a
torrent. Anything that can do those three things can stand in for
libtorrent, which is what the tests do.

libtorrent is optional: ``pip install coinkit[torrent]``.
"""

from __future__ import annotations

import abc
import logging
import re
import threading
import time
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

from coinkit import METADATA_POLL_SECS

log = logging.getLogger(__name__)

_BTIH_PREFIX = "urn:btih:"
_HEX_HASH = re.compile(r"^[0-9a-fA-F]{40}$")
_BASE32_HASH = re.compile(r"^[A-Za-z2-7]{32}$")


class MagnetError(ValueError):
    """A magnet URI without a usable BitTorrent info-hash."""


class MetadataTimeout(Exception):
    """Torrent metadata did not arrive in time."""


def parse_info_hash(magnet: str) -> str:
    """Extract the info-hash from a magnet URI.

    Hex hashes come back lowercased, base32 hashes uppercased, so the same
    torrent always maps to the same directory name.
    """
    if not isinstance(magnet, str) or not magnet.startswith("magnet:?"):
        raise MagnetError(f"not a magnet URI: {magnet!r}")

    params = parse_qs(urlsplit(magnet).query)
    for xt in params.get("xt", []):
        if not xt.lower().startswith(_BTIH_PREFIX):
            continue
        value = xt[len(_BTIH_PREFIX):]
        if _HEX_HASH.match(value):
            return value.lower()
        if _BASE32_HASH.match(value):
            return value.upper()
        raise MagnetError(f"malformed info-hash in magnet: {value!r}")

    raise MagnetError(f"magnet has no urn:btih parameter: {magnet!r}")


class TorrentHandle(abc.ABC):
    """One torrent being downloaded or seeded."""

    @property
    @abc.abstractmethod
    def info_hash(self) -> str: ...

    @abc.abstractmethod
    def wait_for_metadata(self, timeout: float | None = None) -> None:
        """Block until the torrent's metadata is known.

        Raises MetadataTimeout if ``timeout`` elapses first.
        """

    @abc.abstractmethod
    def total_bytes(self) -> int:
        """Total content size. Only valid after metadata has arrived."""


class TorrentEngine(abc.ABC):
    @abc.abstractmethod
    def download(self, magnet: str, directory: Path) -> TorrentHandle:
        """Start fetching and seeding ``magnet`` into ``directory``.

        Data already present in ``directory`` is checked and reused.
        """

    @abc.abstractmethod
    def remove(self, info_hash: str) -> None:
        """Stop a torrent. Unknown hashes are ignored."""

    def close(self) -> None:
        pass


def _import_libtorrent():
    """Lazily import libtorrent.

    Raises ImportError with a helpful message if not installed.
    """
    try:
        import libtorrent

        return libtorrent
    except ImportError:
        raise ImportError(
            "libtorrent is required for hosting torrents. "
            "Install with: pip install coinkit[torrent]"
        )


class LibtorrentHandle(TorrentHandle):
    def __init__(self, info_hash: str, handle, stop: threading.Event) -> None:
        self._info_hash = info_hash
        self._handle = handle
        self._stop = stop

    @property
    def info_hash(self) -> str:
        return self._info_hash

    def wait_for_metadata(self, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._handle.status().has_metadata:
            if deadline is not None and time.monotonic() >= deadline:
                raise MetadataTimeout(
                    f"no metadata for {self._info_hash} after {timeout}s"
                )
            if self._stop.wait(METADATA_POLL_SECS):
                raise MetadataTimeout(f"stopped waiting for {self._info_hash}")

    def total_bytes(self) -> int:
        return self._handle.torrent_file().total_size()


class LibtorrentEngine(TorrentEngine):
    """Torrent engine backed by a single libtorrent session."""

    def __init__(self, trackers: tuple[str, ...] = (), stop: threading.Event | None = None) -> None:
        self._lt = _import_libtorrent()
        self._session = self._lt.session()
        self._trackers = tuple(trackers)
        self._stop = stop or threading.Event()
        self._handles: dict[str, object] = {}
        self._lock = threading.Lock()

    def download(self, magnet: str, directory: Path) -> TorrentHandle:
        info_hash = parse_info_hash(magnet)
        with self._lock:
            handle = self._handles.get(info_hash)
            if handle is None:
                Path(directory).mkdir(parents=True, exist_ok=True)
                params = self._lt.parse_magnet_uri(magnet)
                params.save_path = str(directory)
                if self._trackers:
                    params.trackers = list(params.trackers) + list(self._trackers)
                handle = self._session.add_torrent(params)
                self._handles[info_hash] = handle
                log.debug("Added torrent %s into %s", info_hash, directory)
        return LibtorrentHandle(info_hash, handle, self._stop)

    def remove(self, info_hash: str) -> None:
        with self._lock:
            handle = self._handles.pop(info_hash, None)
        if handle is not None:
            self._session.remove_torrent(handle)
            log.debug("Removed torrent %s", info_hash)

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            self._session.remove_torrent(handle)
