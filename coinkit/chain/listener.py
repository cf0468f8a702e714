"""
ProviderListener — polls the ledger for the buckets allocated to one
provider and hands out full snapshots of that set.

Every delivery is the complete current allocation, never a delta; the
consumer works out what changed. A failed poll is logged and retried on
the next interval.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator

from coinkit import LISTENER_POLL_INTERVAL_SECS
from coinkit.chain.client import Cancelled, ChainClient
from coinkit.chain.models import Bucket

logger = logging.getLogger(__name__)


class ProviderListener:
    """Snapshot stream of one provider's allocated buckets.

    Usage:
        listener = ProviderListener(client, provider_id=7)
        listener.start(server.handle_buckets)
        # ... later ...
        listener.stop()
    """

    def __init__(
        self,
        client: ChainClient,
        provider_id: int,
        poll_interval: float = LISTENER_POLL_INTERVAL_SECS,
        stop: threading.Event | None = None,
    ) -> None:
        self._client = client
        self.provider_id = provider_id
        self._poll_interval = poll_interval
        self._stop_event = stop or threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll(self) -> list[Bucket]:
        """Fetch the current allocation once."""
        return self._client.get_buckets({"provider": self.provider_id})

    def snapshots(self) -> Iterator[list[Bucket]]:
        """Yield the full allocation every poll interval until stopped."""
        while not self._stop_event.is_set():
            try:
                buckets = self.poll()
            except Cancelled:
                return
            except Exception:
                logger.exception("Listener poll error for provider %d", self.provider_id)
            else:
                yield buckets
            self._stop_event.wait(self._poll_interval)

    def listen(self, consumer: Callable[[list[Bucket]], object]) -> None:
        """Feed every snapshot to ``consumer`` in the calling thread."""
        for buckets in self.snapshots():
            try:
                consumer(buckets)
            except Cancelled:
                return
            except Exception:
                logger.exception("Snapshot consumer error for provider %d", self.provider_id)

    def start(self, consumer: Callable[[list[Bucket]], object]) -> None:
        """Run ``listen(consumer)`` in a daemon thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.listen,
            args=(consumer,),
            name=f"provider-listener-{self.provider_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Listening for buckets of provider %d (poll interval: %ss)",
            self.provider_id, self._poll_interval,
        )

    def stop(self) -> None:
        """Signal the stream to end and join the thread, if any."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Listener for provider %d stopped", self.provider_id)
