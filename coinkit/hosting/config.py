"""
Hosting configuration — TOML file plus environment and explicit overrides.

Precedence (later wins):
    defaults  <  ~/.coinkit/host.toml  <  COINKIT_NETWORK  <  overrides

Example host.toml:
    key_pair = "~/.coinkit/keypair.json"
    capacity = 100          # megabytes
    directory = "~/hostfiles"
    network = "alpha"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from coinkit import DEFAULT_CONFIG_PATH, DEFAULT_HOSTING_DIR, DEFAULT_NETWORK, LISTENER_POLL_INTERVAL_SECS
from coinkit.chain.network import KNOWN_NETWORKS, NetworkConfig

log = logging.getLogger(__name__)

NETWORK_ENV_VAR = "COINKIT_NETWORK"


class ConfigurationError(Exception):
    """Invalid hosting configuration. Fatal at startup."""


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


@dataclass
class HostingConfig:
    id: int | None = None  # provider id, when the provider already exists
    key_pair: str | None = None  # path to a key file; used to find or create the provider
    capacity: int = 0  # megabytes
    directory: Path = DEFAULT_HOSTING_DIR
    verbose: bool = False
    network: str = DEFAULT_NETWORK
    chain: list[str] | None = None
    poll_interval: float = LISTENER_POLL_INTERVAL_SECS
    consistency_timeout: float | None = None
    metadata_timeout: float | None = None

    def validate(self) -> None:
        """Raise ConfigurationError describing the first problem found."""
        if (self.id is None) == (self.key_pair is None):
            raise ConfigurationError("exactly one of id and key_pair must be set")
        if self.id is not None and (
            isinstance(self.id, bool) or not isinstance(self.id, int) or self.id < 1
        ):
            raise ConfigurationError(f"id must be a positive integer, got {self.id!r}")
        if self.key_pair is not None and not isinstance(self.key_pair, str):
            raise ConfigurationError(f"key_pair must be a file path, got {self.key_pair!r}")
        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int) or self.capacity < 1:
            raise ConfigurationError(
                f"capacity must be a positive number of megabytes, got {self.capacity!r}"
            )
        if not Path(self.directory).is_dir():
            raise ConfigurationError(f"hosting directory does not exist: {self.directory}")
        if not isinstance(self.verbose, bool):
            raise ConfigurationError(f"verbose must be true or false, got {self.verbose!r}")
        if self.chain is None and self.network not in KNOWN_NETWORKS:
            raise ConfigurationError(
                f"unknown network {self.network!r} (expected one of {', '.join(KNOWN_NETWORKS)})"
            )
        if self.chain is not None and (
            not isinstance(self.chain, list)
            or not self.chain
            or not all(isinstance(url, str) and url for url in self.chain)
        ):
            raise ConfigurationError(
                f"chain must be a non-empty list of endpoint URLs, got {self.chain!r}"
            )
        if not _is_positive_number(self.poll_interval):
            raise ConfigurationError(f"poll_interval must be positive, got {self.poll_interval!r}")
        for name in ("consistency_timeout", "metadata_timeout"):
            value = getattr(self, name)
            if value is not None and not _is_positive_number(value):
                raise ConfigurationError(f"{name} must be a positive number, got {value!r}")

    def network_config(self) -> NetworkConfig:
        if self.chain:
            return NetworkConfig.custom(self.chain)
        return NetworkConfig.from_name(self.network)


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"failed to load config from {path}: {e}") from e


def load_config(path: str | Path | None = None, **overrides: Any) -> HostingConfig:
    """Build and validate a HostingConfig.

    A missing file at the default location is fine; a missing file that
    was asked for explicitly is not. ``None`` overrides are ignored so CLI
    flags that were not given don't clobber the file.
    """
    known = {f.name for f in fields(HostingConfig)}
    values: dict[str, Any] = {}

    config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
    if config_path.is_file():
        file_values = _read_toml(config_path)
        unknown = set(file_values) - known
        if unknown:
            raise ConfigurationError(
                f"unknown keys in {config_path}: {', '.join(sorted(unknown))}"
            )
        values.update(file_values)
        log.debug("Loaded config from %s", config_path)
    elif path:
        raise ConfigurationError(f"config file not found: {config_path}")

    env_network = os.environ.get(NETWORK_ENV_VAR)
    if env_network:
        values["network"] = env_network

    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(f"unknown config option: {key}")
        if value is not None:
            values[key] = value

    if "directory" in values:
        values["directory"] = Path(values["directory"]).expanduser()
    if isinstance(values.get("key_pair"), Path):
        values["key_pair"] = str(values["key_pair"])

    config = HostingConfig(**values)
    config.validate()
    return config
