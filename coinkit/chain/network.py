"""
Named ledger networks — which endpoints to talk to and how hard to retry.

    local  — four nodes on this machine, for development
    alpha  — the public alpha test network
"""

from __future__ import annotations

from dataclasses import dataclass, field

from coinkit import RPC_RETRIES


@dataclass(frozen=True)
class NetworkConfig:
    """Endpoints for one ledger network."""

    name: str
    chain: tuple[str, ...]
    trackers: tuple[str, ...] = field(default_factory=tuple)
    retries: int = RPC_RETRIES

    def __post_init__(self) -> None:
        if not self.chain:
            raise ValueError(f"network {self.name!r} has no chain endpoints")
        if self.retries < 1:
            raise ValueError(f"network {self.name!r} needs at least one attempt")

    @classmethod
    def from_name(cls, name: str) -> NetworkConfig:
        if name == "local":
            return cls(
                name="local",
                chain=tuple(f"http://localhost:{port}" for port in range(8000, 8004)),
                trackers=("ws://localhost:4000",),
                retries=3,
            )
        if name == "alpha":
            return cls(
                name="alpha",
                chain=tuple(f"http://{i}.alphatest.network:8000" for i in range(4)),
                trackers=tuple(f"ws://{i}.alphatest.network:4000" for i in range(4)),
                retries=10,
            )
        raise ValueError(f"unrecognized network config name: {name!r}")

    @classmethod
    def custom(cls, urls: list[str], retries: int = RPC_RETRIES) -> NetworkConfig:
        return cls(name="custom", chain=tuple(u.rstrip("/") for u in urls), retries=retries)


KNOWN_NETWORKS = ("local", "alpha")
