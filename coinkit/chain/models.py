"""
Ledger entities as seen by clients. The ledger owns these; clients only
read them from Data messages and propose changes through operations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _pick(data: dict[str, Any], key: str, default: Any = None) -> Any:
    """Read ``key`` or its capitalized form (the Go server emits both)."""
    if key in data:
        return data[key]
    return data.get(key[:1].upper() + key[1:], default)


@dataclass(frozen=True)
class Account:
    owner: str
    sequence: int = 0  # sequence of the last operation this account authorized
    balance: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any], owner: str = "") -> Account:
        return cls(
            owner=_pick(data, "owner") or owner,
            sequence=int(_pick(data, "sequence", 0) or 0),
            balance=int(_pick(data, "balance", 0) or 0),
        )


@dataclass(frozen=True)
class Provider:
    id: int
    owner: str = ""
    capacity: int = 0  # megabytes

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Provider:
        return cls(
            id=int(_pick(data, "id", 0) or 0),
            owner=_pick(data, "owner", "") or "",
            capacity=int(_pick(data, "capacity", 0) or 0),
        )


@dataclass(frozen=True)
class Bucket:
    name: str
    owner: str = ""
    size: int = 0  # megabytes
    magnet: str = ""
    providers: tuple[int, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Bucket:
        providers = []
        for p in _pick(data, "providers") or []:
            if isinstance(p, dict):
                providers.append(int(_pick(p, "id", 0) or 0))
            else:
                providers.append(int(p))
        return cls(
            name=_pick(data, "name", "") or "",
            owner=_pick(data, "owner", "") or "",
            size=int(_pick(data, "size", 0) or 0),
            magnet=_pick(data, "magnet", "") or "",
            providers=tuple(providers),
        )
