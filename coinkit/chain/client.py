"""
Chain client — signed requests to the ledger's /messages endpoint.

Every request is a signed envelope POSTed as text/plain to a randomly
chosen node of the configured network. The ledger answers with a signed
envelope, or with an empty body meaning "no content".

The ledger applies writes eventually, not immediately. ``send_operation``
therefore does not return until the submitting account's sequence number
shows the operation has landed, so callers get read-after-write
consistency.

Zero HTTP dependencies — uses stdlib urllib.request.
"""

from __future__ import annotations

import http.client
import logging
import random
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Iterable, TypeVar

from coinkit import (
    CHAIN_MESSAGES_PATH,
    CONSISTENCY_POLL_SECS,
    DEFAULT_NETWORK,
    RPC_RETRY_WAIT_SECS,
    RPC_TIMEOUT_SECS,
)
from coinkit.auth.envelope import (
    DATA,
    ERROR,
    OPERATION,
    QUERY,
    Message,
    ProtocolError,
    SignedMessage,
    sign_operation,
)
from coinkit.auth.keypair import KeyPair, shorten
from coinkit.chain.models import Account, Bucket, Provider
from coinkit.chain.network import NetworkConfig

log = logging.getLogger(__name__)

T = TypeVar("T")


class ChainClientError(Exception):
    """Base class for chain client failures."""


class TransportError(ChainClientError):
    """The ledger could not be reached within the retry budget."""


class ChainError(ChainClientError):
    """The ledger rejected a request, or answered with something unusable."""


class ConsistencyTimeout(ChainError):
    """A submitted operation was not observed on the ledger in time."""


class Cancelled(ChainClientError):
    """The client's stop event interrupted a wait."""


def _require_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} {value!r} must be int, not {type(value).__name__}")


class ChainClient:
    """Client for one keypair against one ledger network.

    Cheap to construct; use a separate client per keypair.

    Usage:
        client = ChainClient(KeyPair.from_secret_phrase("monkey"))
        provider = client.create_provider(capacity=100)
        buckets = client.get_buckets({"provider": provider.id})
    """

    def __init__(
        self,
        key_pair: KeyPair | None = None,
        network: NetworkConfig | None = None,
        *,
        timeout: float = RPC_TIMEOUT_SECS,
        retry_wait: float = RPC_RETRY_WAIT_SECS,
        poll_interval: float = CONSISTENCY_POLL_SECS,
        consistency_timeout: float | None = None,
        stop: threading.Event | None = None,
    ) -> None:
        self.key_pair = key_pair or KeyPair.from_random()
        self.network = network or NetworkConfig.from_name(DEFAULT_NETWORK)
        self.timeout = timeout
        self.retry_wait = retry_wait
        self.poll_interval = poll_interval
        # None waits forever for an operation to land
        self.consistency_timeout = consistency_timeout
        self.stop_event = stop or threading.Event()
        # One operation in flight per client, so two submissions never
        # claim the same sequence number
        self._op_lock = threading.Lock()

    @property
    def public_key_text(self) -> str:
        return self.key_pair.public_key_text

    def cancel(self) -> None:
        """Interrupt any retry or consistency wait in progress."""
        self.stop_event.set()

    def _sleep(self, seconds: float) -> None:
        if self.stop_event.wait(seconds):
            raise Cancelled("chain client was stopped")

    def _pick_url(self) -> str:
        return random.choice(self.network.chain) + CHAIN_MESSAGES_PATH

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _post(self, body: bytes) -> str:
        """POST a body, retrying transport failures. Returns the response text."""
        retries = self.network.retries
        last_error = ""
        for attempt in range(1, retries + 1):
            if self.stop_event.is_set():
                raise Cancelled("chain client was stopped")
            url = self._pick_url()
            req = urllib.request.Request(
                url,
                data=body,
                headers={"Content-Type": "text/plain"},
                method="POST",
            )
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                    raw = resp.read()
            except urllib.error.HTTPError as e:
                last_error = f"HTTP {e.code}: {e.reason}"
            except urllib.error.URLError as e:
                last_error = f"Connection failed: {e.reason}"
            except (OSError, http.client.HTTPException) as e:  # also truncated reads
                last_error = f"Connection failed: {e!r}"
            else:
                try:
                    return raw.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise ProtocolError(f"response from {url} is not UTF-8: {e}") from e

            log.warning(
                "Connection error to %s (attempt %d/%d): %s",
                url, attempt, retries, last_error,
            )
            if attempt < retries:
                self._sleep(self.retry_wait)

        raise TransportError(
            f"connection to the chain failed after {retries} attempts: {last_error}"
        )

    def send_message(self, message: Message) -> Message | None:
        """Sign and send a message. Returns the response message.

        Returns None for an empty keepalive response. Raises ChainError if
        the ledger answers with an Error message, ProtocolError if the
        response envelope is invalid, TransportError if unreachable.
        """
        signed = SignedMessage.from_signing(message, self.key_pair)
        body = (signed.serialize() + "\n").encode("utf-8")
        log.debug("Sending %s message from %s", message.type, shorten(signed.signer))

        text = self._post(body)
        if text.endswith("\n"):
            text = text[:-1]
        if not text:
            return None

        response = SignedMessage.from_serialized(text)
        if response.message.type == ERROR:
            error = response.message.get("error", "")
            log.info("Chain rejected %s message: %s", message.type, error)
            raise ChainError(str(error))
        return response.message

    def query(self, params: dict[str, Any]) -> Message:
        """Send a Query message and return the Data response."""
        response = self.send_message(Message(QUERY, dict(params)))
        if response is None:
            raise ChainError("no content in response to query")
        if response.type != DATA:
            raise ChainError(f"unexpected {response.type} response to query")
        return response

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def send_operation(
        self,
        op_type: str,
        fields: dict[str, Any],
        timeout: float | None = None,
    ) -> None:
        """Submit an operation and wait until the ledger shows it applied.

        The signer, fee and sequence fields are filled in here. Waits for
        the account's sequence to reach the submitted one; with no timeout
        (the default) a ledger that never applies the operation makes this
        wait forever, or until ``cancel()``.

        Raises ChainError if the account does not exist,
        ConsistencyTimeout if ``timeout`` elapses first.
        """
        if timeout is None:
            timeout = self.consistency_timeout
        owner = self.public_key_text

        with self._op_lock:
            account = self.get_account(owner)
            if account is None:
                raise ChainError(
                    f"cannot send {op_type} for nonexistent account {shorten(owner)}"
                )

            sequence = account.sequence + 1
            record = sign_operation(
                self.key_pair, op_type, {**fields, "fee": 0, "sequence": sequence}
            )
            self.send_message(Message(OPERATION, {"operations": [record]}))
            log.debug("%s submitted with sequence %d", op_type, sequence)

            self._wait_for_sequence(owner, sequence, timeout)
            log.info("%s accepted at sequence %d", op_type, sequence)

    def _wait_for_sequence(self, owner: str, sequence: int, timeout: float | None) -> None:
        def landed() -> bool:
            account = self.get_account(owner)
            if account is None:
                return False
            if account.sequence > sequence:
                log.warning(
                    "Account %s moved past sequence %d to %d while waiting",
                    shorten(owner), sequence, account.sequence,
                )
            return account.sequence >= sequence

        self._wait_until(
            landed,
            timeout,
            f"operation with sequence {sequence} not observed for {shorten(owner)}",
        )

    def _wait_until(
        self,
        check: Callable[[], T],
        timeout: float | None,
        what: str,
    ) -> T:
        """Poll ``check`` until it returns a truthy value."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            result = check()
            if result:
                return result
            if deadline is not None and time.monotonic() >= deadline:
                raise ConsistencyTimeout(f"{what} after {timeout}s")
            self._sleep(self.poll_interval)

    @staticmethod
    def _find_new(before: Iterable[Any], after: Iterable[T], key: Callable[[Any], Any]) -> T | None:
        """Return the first entity in ``after`` whose key was not in ``before``."""
        seen = {key(item) for item in before}
        for item in after:
            if key(item) not in seen:
                return item
        return None

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account(self, owner: str | None = None) -> Account | None:
        """Fetch an account (ours by default), or None if it doesn't exist."""
        owner = owner or self.public_key_text
        dm = self.query({"account": owner})
        data = (dm.get("accounts") or {}).get(owner)
        if not data:
            return None
        return Account.from_dict(data, owner=owner)

    def get_balance(self) -> int:
        account = self.get_account()
        return account.balance if account else 0

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def get_providers(self, query: dict[str, Any]) -> list[Provider]:
        """Providers matching the query ("owner", "id" or "bucket"), unordered."""
        dm = self.query({"providers": query})
        return [Provider.from_dict(p) for p in dm.get("providers") or []]

    def get_provider(self, provider_id: int) -> Provider | None:
        providers = self.get_providers({"id": provider_id})
        return providers[0] if providers else None

    def wait_for_provider(self, provider_id: int, timeout: float | None = None) -> Provider:
        """Re-fetch the provider until it exists."""
        log.info("Waiting for provider %d to be created", provider_id)
        return self._wait_until(
            lambda: self.get_provider(provider_id),
            timeout,
            f"provider {provider_id} not found",
        )

    def create_provider(self, capacity: int) -> Provider:
        """Create a provider owned by us and return it.

        The ledger does not report new ids, so we diff our providers
        before and after the operation.
        """
        _require_int("capacity", capacity)
        owner = self.public_key_text
        before = self.get_providers({"owner": owner})
        log.debug("Existing providers: %s", [p.id for p in before])

        self.send_operation("CreateProvider", {"capacity": capacity})

        provider = self._find_new(before, self.get_providers({"owner": owner}), lambda p: p.id)
        if provider is None:
            raise ChainError("no provider seems to have been created")
        log.info("Created provider %d with capacity %d MB", provider.id, capacity)
        return provider

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def get_buckets(self, query: dict[str, Any]) -> list[Bucket]:
        """Buckets matching the query ("name", "owner" or "provider"), unordered."""
        dm = self.query({"buckets": query})
        return [Bucket.from_dict(b) for b in dm.get("buckets") or []]

    def get_bucket(self, name: str) -> Bucket | None:
        buckets = self.get_buckets({"name": name})
        return buckets[0] if buckets else None

    def create_bucket(self, name: str, size: int) -> Bucket:
        """Create a bucket of ``size`` megabytes and return it."""
        _require_int("bucket size", size)
        owner = self.public_key_text
        before = self.get_buckets({"owner": owner})

        self.send_operation("CreateBucket", {"name": name, "size": size})

        after = [b for b in self.get_buckets({"owner": owner}) if b.name == name]
        bucket = self._find_new(before, after, lambda b: b.name)
        if bucket is None:
            raise ChainError(f"bucket {name!r} does not seem to have been created")
        return bucket

    def update_bucket(self, name: str, magnet: str) -> Bucket | None:
        """Point a bucket at new content."""
        self.send_operation("UpdateBucket", {"name": name, "magnet": magnet})
        return self.get_bucket(name)

    def delete_bucket(self, name: str) -> None:
        self.send_operation("DeleteBucket", {"name": name})

    def allocate(self, bucket_name: str, provider_id: int) -> None:
        """Assign a bucket to a provider for hosting."""
        _require_int("provider id", provider_id)
        self.send_operation("Allocate", {"bucketName": bucket_name, "providerID": provider_id})

    def deallocate(self, bucket_name: str, provider_id: int) -> None:
        _require_int("provider id", provider_id)
        self.send_operation("Deallocate", {"bucketName": bucket_name, "providerID": provider_id})
