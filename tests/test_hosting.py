"""
Tests for the hosting server — magnet parsing, configuration, provider
bootstrap, and reconciliation passes.

All tests use a fake torrent engine and a mock chain client; no
libtorrent or ledger required.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from coinkit.auth.keypair import KeyPair, save_key_pair
from coinkit.chain.client import Cancelled, ChainClient, TransportError
from coinkit.chain.listener import ProviderListener
from coinkit.chain.models import Bucket, Provider
from coinkit.chain.network import NetworkConfig
from coinkit.hosting.config import ConfigurationError, HostingConfig, load_config
from coinkit.hosting.server import HostingServer, run_host
from coinkit.hosting.torrent import (
    MagnetError,
    MetadataTimeout,
    TorrentEngine,
    TorrentHandle,
    parse_info_hash,
)

MB = 1024 * 1024

HASH_A = "a" * 40
HASH_B = "b" * 40
HASH_C = "c" * 40


def _magnet(info_hash: str) -> str:
    return f"magnet:?xt=urn:btih:{info_hash}&dn=files"


def _bucket(name: str, info_hash: str, size: int = 10) -> Bucket:
    return Bucket(name=name, size=size, magnet=_magnet(info_hash))


# ---------------------------------------------------------------------------
# Fake torrent engine
# ---------------------------------------------------------------------------

class FakeHandle(TorrentHandle):
    def __init__(self, info_hash: str, size: int, error: Exception | None = None) -> None:
        self._info_hash = info_hash
        self._size = size
        self._error = error

    @property
    def info_hash(self) -> str:
        return self._info_hash

    def wait_for_metadata(self, timeout=None) -> None:
        if self._error is not None:
            raise self._error

    def total_bytes(self) -> int:
        return self._size


class FakeEngine(TorrentEngine):
    """Records calls; content sizes and failures are set per info-hash."""

    def __init__(self) -> None:
        self.sizes: dict[str, int] = {}
        self.errors: dict[str, Exception] = {}
        self.downloads: list[tuple[str, Path]] = []
        self.removed: list[str] = []
        self.remove_error: Exception | None = None
        self.closed = False

    def download(self, magnet: str, directory: Path) -> TorrentHandle:
        info_hash = parse_info_hash(magnet)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "data.bin").write_bytes(b"x")
        self.downloads.append((info_hash, directory))
        return FakeHandle(info_hash, self.sizes.get(info_hash, MB), self.errors.get(info_hash))

    def remove(self, info_hash: str) -> None:
        self.removed.append(info_hash)
        if self.remove_error is not None:
            raise self.remove_error

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def mock_client():
    client = MagicMock(spec=ChainClient)
    client.stop_event = threading.Event()
    client.network = NetworkConfig.from_name("local")
    client.public_key_text = KeyPair.from_secret_phrase("test-hosting").public_key_text
    return client


@pytest.fixture
def config(tmp_path):
    root = tmp_path / "hostfiles"
    root.mkdir()
    return HostingConfig(id=7, capacity=100, directory=root)


@pytest.fixture
def server(config, mock_client, engine):
    return HostingServer(config, client=mock_client, engine=engine)


# ---------------------------------------------------------------------------
# TestParseInfoHash
# ---------------------------------------------------------------------------

class TestParseInfoHash:
    def test_hex_lowercased(self):
        assert parse_info_hash(_magnet("AB" * 20)) == "ab" * 20

    def test_base32_uppercased(self):
        value = "abcdefghijklmnopqrstuvwxyz234567"
        assert parse_info_hash(_magnet(value)) == value.upper()

    def test_skips_other_xt(self):
        magnet = f"magnet:?xt=urn:sha1:xyz&xt=urn:btih:{HASH_A}"
        assert parse_info_hash(magnet) == HASH_A

    @pytest.mark.parametrize("magnet", [
        "",
        None,
        f"http://example.com/?xt=urn:btih:{HASH_A}",
        "magnet:?dn=nothing",
        "magnet:?xt=urn:btih:abc",
        "magnet:?xt=urn:btih:" + "z" * 40,
        "magnet:?xt=urn:btih:../../etc/passwd",
    ])
    def test_rejected(self, magnet):
        with pytest.raises(MagnetError):
            parse_info_hash(magnet)

    def test_magnet_error_is_value_error(self):
        assert issubclass(MagnetError, ValueError)


# ---------------------------------------------------------------------------
# TestHostingConfig
# ---------------------------------------------------------------------------

class TestHostingConfig:
    def test_valid(self, config):
        config.validate()

    def test_needs_id_or_key_pair(self, config):
        config.id = None
        with pytest.raises(ConfigurationError, match="exactly one"):
            config.validate()

    def test_not_both(self, config):
        config.key_pair = "/tmp/key.json"
        with pytest.raises(ConfigurationError, match="exactly one"):
            config.validate()

    @pytest.mark.parametrize("field,value,match", [
        ("id", 0, "id"),
        ("id", "7", "id"),
        ("id", True, "id"),
        ("capacity", 0, "capacity"),
        ("capacity", -5, "capacity"),
        ("capacity", 1.5, "capacity"),
        ("verbose", "yes", "verbose"),
        ("network", "mainnet", "network"),
        ("poll_interval", 0, "poll_interval"),
        ("poll_interval", "2", "poll_interval"),
        ("poll_interval", None, "poll_interval"),
        ("chain", "http://node:8000", "chain"),
        ("chain", [], "chain"),
        ("chain", [1], "chain"),
        ("chain", [""], "chain"),
        ("consistency_timeout", "5", "consistency_timeout"),
        ("consistency_timeout", 0, "consistency_timeout"),
        ("metadata_timeout", -1, "metadata_timeout"),
        ("metadata_timeout", True, "metadata_timeout"),
    ])
    def test_invalid_field(self, config, field, value, match):
        setattr(config, field, value)
        with pytest.raises(ConfigurationError, match=match):
            config.validate()

    def test_missing_directory(self, config, tmp_path):
        config.directory = tmp_path / "missing"
        with pytest.raises(ConfigurationError, match="does not exist"):
            config.validate()

    def test_network_config(self, config):
        assert config.network_config().name == "local"
        config.chain = ["http://ledger:9000/"]
        assert config.network_config().chain == ("http://ledger:9000",)

    def test_timeouts_accept_numbers(self, config):
        config.poll_interval = 1
        config.consistency_timeout = 2.5
        config.metadata_timeout = 60
        config.validate()


class TestLoadConfig:
    @pytest.fixture(autouse=True)
    def no_default_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            "coinkit.hosting.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.toml"
        )
        monkeypatch.delenv("COINKIT_NETWORK", raising=False)

    def _write(self, tmp_path, text):
        path = tmp_path / "host.toml"
        path.write_text(text)
        return path

    def test_from_file(self, tmp_path):
        path = self._write(
            tmp_path,
            f'id = 3\ncapacity = 50\ndirectory = "{tmp_path.as_posix()}"\nnetwork = "alpha"\n',
        )
        config = load_config(path)
        assert config.id == 3
        assert config.capacity == 50
        assert config.directory == tmp_path
        assert config.network == "alpha"

    def test_overrides_win(self, tmp_path):
        path = self._write(tmp_path, f'id = 3\ncapacity = 50\ndirectory = "{tmp_path.as_posix()}"\n')
        config = load_config(path, capacity=80, verbose=None)
        assert config.capacity == 80
        assert config.verbose is False

    def test_env_network(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COINKIT_NETWORK", "alpha")
        config = load_config(id=1, capacity=1, directory=tmp_path)
        assert config.network == "alpha"
        assert load_config(id=1, capacity=1, directory=tmp_path, network="local").network == "local"

    def test_defaults_only(self, tmp_path):
        config = load_config(key_pair="/some/key.json", capacity=5, directory=str(tmp_path))
        assert config.directory == tmp_path
        assert config.network == "local"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_bad_toml(self, tmp_path):
        path = self._write(tmp_path, "capacity = = 5")
        with pytest.raises(ConfigurationError, match="failed to load"):
            load_config(path)

    def test_unknown_keys(self, tmp_path):
        path = self._write(tmp_path, "colour = 'blue'\n")
        with pytest.raises(ConfigurationError, match="colour"):
            load_config(path)
        with pytest.raises(ConfigurationError, match="unknown config option"):
            load_config(id=1, capacity=1, directory=tmp_path, colour="blue")

    def test_validation_runs(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(capacity=1, directory=tmp_path)

    def test_string_poll_interval_in_file(self, tmp_path):
        path = self._write(
            tmp_path,
            f'id = 3\ncapacity = 50\ndirectory = "{tmp_path.as_posix()}"\npoll_interval = "2"\n',
        )
        with pytest.raises(ConfigurationError, match="poll_interval"):
            load_config(path)

    def test_string_chain_in_file(self, tmp_path):
        path = self._write(
            tmp_path,
            f'id = 3\ncapacity = 50\ndirectory = "{tmp_path.as_posix()}"\nchain = "http://node:8000"\n',
        )
        with pytest.raises(ConfigurationError, match="chain"):
            load_config(path)


# ---------------------------------------------------------------------------
# TestReconciliation
# ---------------------------------------------------------------------------

class TestReconciliation:
    def test_adds_new_buckets(self, server, engine, config):
        result = server.handle_buckets([_bucket("a", HASH_A), _bucket("b", HASH_B)])
        assert sorted(result.added) == [HASH_A, HASH_B]
        assert result.removed == []
        assert (HASH_A, config.directory / HASH_A) in engine.downloads
        assert set(server.hosted) == {HASH_A, HASH_B}

    def test_diff_is_minimal(self, server, engine, config):
        server.handle_buckets([_bucket("a", HASH_A), _bucket("b", HASH_B)])
        engine.downloads.clear()

        result = server.handle_buckets([_bucket("b", HASH_B), _bucket("c", HASH_C)])

        assert result.added == [HASH_C]
        assert result.removed == [HASH_A]
        assert [h for h, _ in engine.downloads] == [HASH_C]
        assert engine.removed == [HASH_A]
        assert not (config.directory / HASH_A).exists()
        assert (config.directory / HASH_B).exists()

    def test_same_snapshot_is_a_no_op(self, server, engine):
        buckets = [_bucket("a", HASH_A)]
        server.handle_buckets(buckets)
        result = server.handle_buckets(buckets)
        assert result.added == result.removed == []
        assert len(engine.downloads) == 1

    def test_empty_snapshot_removes_everything(self, server, engine):
        server.handle_buckets([_bucket("a", HASH_A), _bucket("b", HASH_B)])
        result = server.handle_buckets([])
        assert sorted(result.removed) == [HASH_A, HASH_B]
        assert server.hosted == {}

    def test_oversize_bucket_rejected(self, server, engine, config):
        engine.sizes[HASH_A] = 2 * MB
        result = server.handle_buckets([_bucket("a", HASH_A, size=1)])

        assert result.rejected == [HASH_A]
        assert result.added == []
        assert engine.removed == [HASH_A]
        assert not (config.directory / HASH_A).exists()

    def test_oversize_bucket_not_refetched(self, server, engine):
        engine.sizes[HASH_A] = 2 * MB
        buckets = [_bucket("a", HASH_A, size=1)]
        server.handle_buckets(buckets)
        server.handle_buckets(buckets)
        assert len(engine.downloads) == 1

    def test_exact_size_accepted(self, server, engine):
        engine.sizes[HASH_A] = MB
        result = server.handle_buckets([_bucket("a", HASH_A, size=1)])
        assert result.added == [HASH_A]

    def test_malformed_magnet_skipped(self, server, engine, caplog):
        bad = Bucket(name="broken", size=1, magnet="not-a-magnet")
        empty = Bucket(name="unset", size=1)
        with caplog.at_level(logging.WARNING):
            result = server.handle_buckets([bad, empty, _bucket("a", HASH_A)])
        assert result.added == [HASH_A]
        assert "broken" in caplog.text
        assert "unset" in caplog.text

    def test_failure_does_not_abort_siblings(self, server, engine):
        engine.errors[HASH_A] = MetadataTimeout("no peers")
        result = server.handle_buckets([_bucket("a", HASH_A), _bucket("b", HASH_B)])

        assert result.failed == [HASH_A]
        assert result.added == [HASH_B]
        assert HASH_A in engine.removed
        assert set(server.hosted) == {HASH_B}

    def test_failed_addition_retried(self, server, engine):
        engine.errors[HASH_A] = MetadataTimeout("no peers")
        buckets = [_bucket("a", HASH_A)]
        server.handle_buckets(buckets)
        del engine.errors[HASH_A]

        result = server.handle_buckets(buckets)
        assert result.added == [HASH_A]

    def test_stopped_server_adds_nothing(self, server, engine):
        server.stop()
        result = server.handle_buckets([_bucket("a", HASH_A)])
        assert result.failed == [HASH_A]
        assert engine.downloads == []

    def test_passes_are_serialized(self, server, engine):
        active = []
        overlap = []
        original = engine.download

        def slow_download(magnet, directory):
            active.append(1)
            if len(active) > 1:
                overlap.append(True)
            threading.Event().wait(0.05)
            active.pop()
            return original(magnet, directory)

        engine.download = slow_download
        threads = [
            threading.Thread(target=server.handle_buckets, args=([_bucket(n, h)],))
            for n, h in (("a", HASH_A), ("b", HASH_B))
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert overlap == []

    def test_engine_stop_failure_still_drops_bucket(self, server, engine, config, caplog):
        server.handle_buckets([_bucket("a", HASH_A)])
        engine.remove_error = RuntimeError("session gone")

        with caplog.at_level(logging.WARNING):
            result = server.handle_buckets([_bucket("b", HASH_B)])

        assert result.removed == [HASH_A]
        assert result.added == [HASH_B]
        assert set(server.hosted) == {HASH_B}
        assert not (config.directory / HASH_A).exists()
        assert "session gone" in caplog.text

    def test_engine_stop_failure_after_failed_addition(self, server, engine):
        engine.errors[HASH_A] = MetadataTimeout("no peers")
        engine.remove_error = RuntimeError("session gone")

        result = server.handle_buckets([_bucket("a", HASH_A), _bucket("b", HASH_B)])

        assert result.failed == [HASH_A]
        assert result.added == [HASH_B]
        assert set(server.hosted) == {HASH_B}

    def test_listener_keeps_reconciling_after_engine_failure(self, server, engine, mock_client):
        snapshots = [[_bucket("a", HASH_A)], [_bucket("b", HASH_B)], [_bucket("c", HASH_C)]]

        def get_buckets(query):
            if not snapshots:
                raise Cancelled("chain client was stopped")
            return snapshots.pop(0)

        mock_client.get_buckets.side_effect = get_buckets
        engine.remove_error = RuntimeError("session gone")
        listener = ProviderListener(
            mock_client, 7, poll_interval=0, stop=mock_client.stop_event
        )

        listener.listen(server.handle_buckets)

        assert set(server.hosted) == {HASH_C}
        assert engine.removed == [HASH_A, HASH_B]


# ---------------------------------------------------------------------------
# TestRemove
# ---------------------------------------------------------------------------

class TestRemove:
    def test_removes_directory(self, server, engine, config):
        target = config.directory / HASH_A
        (target / "nested").mkdir(parents=True)
        (target / "nested" / "f").write_text("x")
        assert server.remove(HASH_A)
        assert not target.exists()
        assert engine.removed == [HASH_A]

    def test_missing_directory_is_fine(self, server, engine):
        assert server.remove(HASH_B)
        assert engine.removed == [HASH_B]

    @pytest.mark.parametrize("info_hash", [
        "",
        "abcd",
        "..",
        "........",
        "../../../etc",
        "abcdef/../..",
        "abc\\..\\..",
        None,
    ])
    def test_refuses_unsafe_hashes(self, server, engine, config, info_hash):
        (config.directory / HASH_A).mkdir()
        assert server.remove(info_hash) is False
        assert engine.removed == []
        assert (config.directory / HASH_A).exists()
        assert config.directory.exists()

    def test_delete_failure_is_logged(self, server, config, caplog):
        (config.directory / HASH_A).mkdir()
        with patch("coinkit.hosting.server.shutil.rmtree", side_effect=PermissionError("denied")):
            with caplog.at_level(logging.WARNING):
                assert server.remove(HASH_A)
        assert "denied" in caplog.text


# ---------------------------------------------------------------------------
# TestProviderBootstrap
# ---------------------------------------------------------------------------

class TestProviderBootstrap:
    @pytest.fixture
    def key_config(self, config):
        config.id = None
        config.key_pair = "/unused/when/client/injected.json"
        return config

    def test_explicit_id(self, server, mock_client):
        mock_client.wait_for_provider.return_value = Provider(id=7, capacity=100)
        assert server.acquire_provider_id() == 7
        mock_client.wait_for_provider.assert_called_once_with(7, timeout=None)
        mock_client.get_providers.assert_not_called()

    def test_creates_when_none_owned(self, key_config, mock_client, engine):
        mock_client.get_providers.return_value = []
        mock_client.create_provider.return_value = Provider(id=12, capacity=100)
        server = HostingServer(key_config, client=mock_client, engine=engine)

        assert server.acquire_provider_id() == 12
        mock_client.get_providers.assert_called_once_with({"owner": mock_client.public_key_text})
        mock_client.create_provider.assert_called_once_with(100)

    def test_adopts_single_provider(self, key_config, mock_client, engine):
        mock_client.get_providers.return_value = [Provider(id=4, capacity=150)]
        server = HostingServer(key_config, client=mock_client, engine=engine)

        assert server.acquire_provider_id() == 4
        mock_client.create_provider.assert_not_called()

    def test_adopts_provider_of_equal_capacity(self, key_config, mock_client, engine):
        mock_client.get_providers.return_value = [Provider(id=4, capacity=100)]
        server = HostingServer(key_config, client=mock_client, engine=engine)

        assert server.acquire_provider_id() == 4

    def test_single_provider_too_small(self, key_config, mock_client, engine):
        mock_client.get_providers.return_value = [Provider(id=4, capacity=60)]
        server = HostingServer(key_config, client=mock_client, engine=engine)

        with pytest.raises(ConfigurationError, match="capacity"):
            server.acquire_provider_id()

    def test_multiple_providers(self, key_config, mock_client, engine):
        mock_client.get_providers.return_value = [Provider(id=4), Provider(id=5)]
        server = HostingServer(key_config, client=mock_client, engine=engine)

        with pytest.raises(ConfigurationError, match="2 providers"):
            server.acquire_provider_id()


# ---------------------------------------------------------------------------
# TestServerLifecycle
# ---------------------------------------------------------------------------

class TestServerLifecycle:
    def test_serve_feeds_listener_snapshots(self, config, mock_client, engine):
        mock_client.wait_for_provider.return_value = Provider(id=7)
        listener = MagicMock(spec=ProviderListener)
        listener.listen.side_effect = lambda consumer: consumer([_bucket("a", HASH_A)])
        server = HostingServer(config, client=mock_client, engine=engine, listener=listener)

        server.serve()

        assert set(server.hosted) == {HASH_A}
        assert engine.closed

    def test_serve_builds_listener(self, config, mock_client, engine):
        mock_client.wait_for_provider.return_value = Provider(id=7)
        mock_client.stop_event.set()
        server = HostingServer(config, client=mock_client, engine=engine)

        server.serve()

        mock_client.get_buckets.assert_not_called()
        assert engine.closed

    def test_stop_sets_shared_event(self, server, mock_client):
        server.stop()
        assert mock_client.stop_event.is_set()

    def test_builds_client_from_key_file(self, config, engine, tmp_path):
        kp = KeyPair.from_secret_phrase("host-key")
        key_path = tmp_path / "key.json"
        save_key_pair(kp, key_path)
        config.id = None
        config.key_pair = str(key_path)
        config.consistency_timeout = 30.0

        server = HostingServer(config, engine=engine)

        assert server.client.key_pair == kp
        assert server.client.network.name == "local"
        assert server.client.consistency_timeout == 30.0

    def test_bad_key_file(self, config, engine, tmp_path):
        config.id = None
        config.key_pair = str(tmp_path / "missing.json")
        with pytest.raises(ConfigurationError, match="missing.json"):
            HostingServer(config, engine=engine)


class TestRunHost:
    def test_configuration_error_exits_1(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(
            "coinkit.hosting.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.toml"
        )
        with pytest.raises(SystemExit) as exc:
            run_host(capacity=1, directory=tmp_path)
        assert exc.value.code == 1
        assert "exactly one" in capsys.readouterr().err

    def test_unreachable_chain_exits_1(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(
            "coinkit.hosting.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.toml"
        )
        monkeypatch.delenv("COINKIT_NETWORK", raising=False)
        monkeypatch.setattr("coinkit.hosting.server.signal.signal", MagicMock())
        server = MagicMock(spec=HostingServer)
        server.client = MagicMock(spec=ChainClient)
        server.client.public_key_text = KeyPair.from_secret_phrase("run-host").public_key_text
        server.client.network = NetworkConfig.from_name("local")
        server.root = tmp_path
        server.serve.side_effect = TransportError("connection refused")
        monkeypatch.setattr("coinkit.hosting.server.HostingServer", MagicMock(return_value=server))

        with pytest.raises(SystemExit) as exc:
            run_host(id=1, capacity=1, directory=tmp_path)

        assert exc.value.code == 1
        err = capsys.readouterr().err
        assert "failed to acquire provider id" in err
        assert "connection refused" in err
