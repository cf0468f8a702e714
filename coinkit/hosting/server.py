"""
Hosting server — keeps the torrents on disk matching the buckets the
ledger has allocated to our provider.

Each reconciliation pass compares the ledger's current allocation with
what we host:
    1. Parse every bucket's magnet to an info-hash (bad magnets skipped)
    2. Drop hashes we host that are no longer allocated
    3. Fetch newly allocated hashes into <directory>/<info_hash>, and
       drop any whose content is larger than the bucket allows
    4. Remember the new allocation as what we host

Start with ``run_host()``.
"""

from __future__ import annotations

import logging
import shutil
import signal
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path

from coinkit import BYTES_PER_MEGABYTE, MIN_INFO_HASH_LENGTH
from coinkit.auth.keypair import KeyPair, load_key_pair, shorten
from coinkit.chain.client import Cancelled, ChainClient, ChainClientError
from coinkit.chain.listener import ProviderListener
from coinkit.chain.models import Bucket
from coinkit.hosting.config import ConfigurationError, HostingConfig, load_config
from coinkit.hosting.torrent import LibtorrentEngine, MagnetError, TorrentEngine, parse_info_hash

log = logging.getLogger(__name__)


@dataclass
class PassResult:
    """What one reconciliation pass changed."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)  # over the bucket's size
    failed: list[str] = field(default_factory=list)


class HostingServer:
    """Hosts the buckets allocated to one provider.

    Usage:
        server = HostingServer(load_config())
        server.serve()  # runs until stop()
    """

    def __init__(
        self,
        config: HostingConfig,
        client: ChainClient | None = None,
        engine: TorrentEngine | None = None,
        listener: ProviderListener | None = None,
    ) -> None:
        self.config = config
        self.root = Path(config.directory)

        if client is None:
            client = ChainClient(
                self._load_key_pair(),
                config.network_config(),
                consistency_timeout=config.consistency_timeout,
            )
        self.client = client
        # Every wait in the client, listener and engine watches this event
        self._stop_event: threading.Event = client.stop_event

        if engine is None:
            engine = LibtorrentEngine(
                trackers=client.network.trackers, stop=self._stop_event
            )
        self.engine = engine
        self._listener = listener

        self.provider_id: int | None = config.id
        self._hosted: dict[str, Bucket] = {}
        self._pass_lock = threading.Lock()

    def _load_key_pair(self) -> KeyPair:
        if self.config.key_pair is None:
            # Queries only; any key will do
            return KeyPair.from_random()
        path = Path(self.config.key_pair).expanduser()
        try:
            return load_key_pair(path)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot load key pair: {e}") from e

    @property
    def hosted(self) -> dict[str, Bucket]:
        """Info-hash → bucket for everything currently hosted."""
        return dict(self._hosted)

    # ------------------------------------------------------------------
    # Provider bootstrap
    # ------------------------------------------------------------------

    def acquire_provider_id(self) -> int:
        """Work out which provider we host for, creating it if needed."""
        if self.config.id is not None:
            provider = self.client.wait_for_provider(
                self.config.id, timeout=self.config.consistency_timeout
            )
            self.provider_id = provider.id
            return self.provider_id

        owner = self.client.public_key_text
        owned = self.client.get_providers({"owner": owner})
        if not owned:
            log.info("No provider owned by %s, creating one", shorten(owner))
            provider = self.client.create_provider(self.config.capacity)
        elif len(owned) == 1:
            provider = owned[0]
            if provider.capacity < self.config.capacity:
                raise ConfigurationError(
                    f"provider {provider.id} has capacity {provider.capacity} MB "
                    f"but {self.config.capacity} MB is configured"
                )
            log.info("Using existing provider %d", provider.id)
        else:
            ids = ", ".join(str(p.id) for p in owned)
            raise ConfigurationError(
                f"key {shorten(owner)} owns {len(owned)} providers ({ids}); "
                "set id to pick one"
            )

        self.provider_id = provider.id
        return self.provider_id

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def handle_buckets(self, buckets: list[Bucket]) -> PassResult:
        """Run one reconciliation pass against the full current allocation."""
        with self._pass_lock:
            wanted: dict[str, Bucket] = {}
            for bucket in buckets:
                try:
                    info_hash = parse_info_hash(bucket.magnet)
                except MagnetError as e:
                    log.warning("Skipping bucket %r: %s", bucket.name, e)
                    continue
                wanted[info_hash] = bucket

            result = PassResult()

            for info_hash in list(self._hosted):
                if info_hash not in wanted:
                    self.remove(info_hash)
                    result.removed.append(info_hash)

            for info_hash, bucket in wanted.items():
                if info_hash in self._hosted:
                    continue
                if self._stop_event.is_set():
                    result.failed.append(info_hash)
                    continue
                try:
                    if self._add(info_hash, bucket):
                        result.added.append(info_hash)
                    else:
                        result.rejected.append(info_hash)
                except Exception:
                    log.exception("Failed to host bucket %r (%s)", bucket.name, info_hash)
                    self._stop_torrent(info_hash)
                    result.failed.append(info_hash)

            # Failed additions are retried next pass; rejected ones are not
            for info_hash in result.failed:
                wanted.pop(info_hash, None)
            self._hosted = wanted

            if result.added or result.removed or result.rejected or result.failed:
                log.info(
                    "Pass done: %d added, %d removed, %d rejected, %d failed, %d hosted",
                    len(result.added), len(result.removed), len(result.rejected),
                    len(result.failed), len(self._hosted),
                )
            return result

    def _add(self, info_hash: str, bucket: Bucket) -> bool:
        """Fetch a bucket's torrent. Returns False if it is too big to keep."""
        log.info("Hosting bucket %r (%s)", bucket.name, info_hash)
        handle = self.engine.download(bucket.magnet, self.root / info_hash)
        handle.wait_for_metadata(self.config.metadata_timeout)

        total = handle.total_bytes()
        limit = bucket.size * BYTES_PER_MEGABYTE
        if total > limit:
            log.warning(
                "Bucket %r holds %d bytes but its size is %d MB, dropping it",
                bucket.name, total, bucket.size,
            )
            self.remove(info_hash)
            return False
        return True

    def _stop_torrent(self, info_hash: str) -> None:
        try:
            self.engine.remove(info_hash)
        except Exception as e:
            log.warning("Failed to stop torrent %s: %s", info_hash, e)

    def remove(self, info_hash: str) -> bool:
        """Stop seeding ``info_hash`` and delete its directory.

        Refuses anything that could name a path other than one direct
        child of the hosting root. Returns False if refused.
        """
        if not isinstance(info_hash, str) or len(info_hash) < MIN_INFO_HASH_LENGTH:
            log.error("Refusing to remove suspiciously short info-hash %r", info_hash)
            return False
        if "/" in info_hash or "\\" in info_hash or info_hash.startswith("."):
            log.error("Refusing to remove info-hash with path characters %r", info_hash)
            return False

        root = self.root.resolve()
        target = (root / info_hash).resolve()
        if target.parent != root:
            log.error("Refusing to remove %s outside %s", target, root)
            return False

        self._stop_torrent(info_hash)
        try:
            shutil.rmtree(target)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Failed to delete %s: %s", target, e)
        log.info("Removed %s", info_hash)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def serve(self) -> None:
        """Acquire the provider, then reconcile every snapshot until stopped."""
        try:
            provider_id = self.acquire_provider_id()
            if self._listener is None:
                self._listener = ProviderListener(
                    self.client,
                    provider_id,
                    poll_interval=self.config.poll_interval,
                    stop=self._stop_event,
                )
            log.info("Hosting for provider %d in %s", provider_id, self.root)
            self._listener.listen(self.handle_buckets)
        except Cancelled:
            log.info("Hosting server interrupted")
        finally:
            self.engine.close()

    def stop(self) -> None:
        """Interrupt whatever the server is waiting on."""
        log.info("Stopping hosting server")
        self._stop_event.set()
        if self._listener is not None:
            self._listener.stop()


def run_host(config_path: str | Path | None = None, **overrides) -> None:
    """Entry point for the hosting server. Runs in the foreground."""
    try:
        config = load_config(config_path, **overrides)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    try:
        server = HostingServer(config)
    except (ConfigurationError, ImportError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    def _signal_shutdown(signum, frame) -> None:
        log.info("Received shutdown signal")
        server.stop()

    for sig_name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, sig_name, None)
        if sig:
            signal.signal(sig, _signal_shutdown)

    print("coinkit hosting server started")
    print(f"  key:       {shorten(server.client.public_key_text)}")
    print(f"  network:   {server.client.network.name}")
    print(f"  directory: {server.root}")
    print(f"  capacity:  {config.capacity} MB")
    print()

    try:
        server.serve()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ChainClientError as e:
        print(f"Error: failed to acquire provider id: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
