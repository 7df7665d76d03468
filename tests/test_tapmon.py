"""Tests for tapmon.py config loading and process lifecycle"""

import asyncio
import logging
import os
import signal

import pytest

from conftest import FakeSink, FakeSource
from sinks.base import FatalError
from tapmon import load_config, main, setup_logging

VALID_CONFIG = """
interval: 60
devices:
  - ip: 192.168.1.20
    username: me@example.com
    password: secret
  - ip: 192.168.1.21
prometheus:
  endpoint: https://prometheus.example.com/api/v1/write
  username: tapmon
  password: push-secret
  flush_interval: 120
"""


def write_config(tmp_path, text):
    path = tmp_path / "tapmon.yaml"
    path.write_text(text)
    return str(path)


class TestLoadConfig:
    """Test the load_config() reader and its hard fails"""

    def test_load_config_success(self, tmp_path, monkeypatch):
        """Test a complete config with env credential fallback"""
        monkeypatch.setenv("TAPMON_DEVICE_USERNAME", "shared@example.com")
        monkeypatch.setenv("TAPMON_DEVICE_PASSWORD", "shared-secret")
        monkeypatch.delenv("TAPMON_PROMETHEUS_USERNAME", raising=False)
        monkeypatch.delenv("TAPMON_PROMETHEUS_PASSWORD", raising=False)

        config = load_config(write_config(tmp_path, VALID_CONFIG))

        assert config.interval == 60
        assert config.queue_size == 0
        assert [d.address for d in config.devices] == ["192.168.1.20", "192.168.1.21"]
        assert config.devices[0].username == "me@example.com"
        assert config.devices[1].username == "shared@example.com"
        assert config.devices[1].password == "shared-secret"
        assert config.prometheus.endpoint == "https://prometheus.example.com/api/v1/write"
        assert config.prometheus.username == "tapmon"
        assert config.prometheus.flush_interval == 120
        assert config.prometheus.timeout == 30
        assert config.prometheus.retry_recoverable is False

    def test_load_config_defaults(self, tmp_path):
        """Test intervals default to five minutes"""
        config = load_config(write_config(tmp_path, """
devices:
  - {ip: 10.0.0.5, username: a, password: b}
prometheus:
  endpoint: http://localhost:9090/api/v1/write
"""))

        assert config.interval == 300
        assert config.prometheus.flush_interval == 300

    def test_load_config_env_overrides_sink_credentials(self, tmp_path, monkeypatch):
        """Test sink credentials can come from the environment"""
        monkeypatch.setenv("TAPMON_PROMETHEUS_USERNAME", "env-user")
        monkeypatch.setenv("TAPMON_PROMETHEUS_PASSWORD", "env-pass")
        monkeypatch.setenv("TAPMON_DEVICE_USERNAME", "shared@example.com")
        monkeypatch.setenv("TAPMON_DEVICE_PASSWORD", "shared-secret")

        config = load_config(write_config(tmp_path, VALID_CONFIG))

        assert config.prometheus.username == "env-user"
        assert config.prometheus.password == "env-pass"

    def test_load_config_no_devices_exits(self, tmp_path):
        """Test an empty device list is a startup failure"""
        path = write_config(tmp_path, """
devices: []
prometheus:
  endpoint: http://localhost:9090/api/v1/write
""")

        with pytest.raises(SystemExit) as exc_info:
            load_config(path)

        assert exc_info.value.code == 1

    def test_load_config_missing_credentials_exits(self, tmp_path, monkeypatch):
        """Test a device without credentials and no env fallback fails"""
        monkeypatch.delenv("TAPMON_DEVICE_USERNAME", raising=False)
        monkeypatch.delenv("TAPMON_DEVICE_PASSWORD", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            load_config(write_config(tmp_path, VALID_CONFIG))

        assert exc_info.value.code == 1

    def test_load_config_malformed_endpoint_exits(self, tmp_path):
        """Test an unparseable endpoint fails before anything starts"""
        path = write_config(tmp_path, """
devices:
  - {ip: 10.0.0.5, username: a, password: b}
prometheus:
  endpoint: "not a url"
""")

        with pytest.raises(SystemExit) as exc_info:
            load_config(path)

        assert exc_info.value.code == 1

    def test_load_config_non_positive_interval_exits(self, tmp_path):
        """Test intervals must be positive"""
        path = write_config(tmp_path, """
interval: 0
devices:
  - {ip: 10.0.0.5, username: a, password: b}
prometheus:
  endpoint: http://localhost:9090/api/v1/write
""")

        with pytest.raises(SystemExit) as exc_info:
            load_config(path)

        assert exc_info.value.code == 1

    def test_load_config_quoted_retry_flag_exits(self, tmp_path):
        """Test a string retry_recoverable is rejected, not read as true"""
        path = write_config(tmp_path, """
devices:
  - {ip: 10.0.0.5, username: a, password: b}
prometheus:
  endpoint: http://localhost:9090/api/v1/write
  retry_recoverable: "false"
""")

        with pytest.raises(SystemExit) as exc_info:
            load_config(path)

        assert exc_info.value.code == 1

    def test_load_config_retry_flag_true(self, tmp_path):
        """Test a real YAML bool switches the requeue policy on"""
        config = load_config(write_config(tmp_path, """
devices:
  - {ip: 10.0.0.5, username: a, password: b}
prometheus:
  endpoint: http://localhost:9090/api/v1/write
  retry_recoverable: true
"""))

        assert config.prometheus.retry_recoverable is True

    def test_load_config_boolean_queue_size_exits(self, tmp_path):
        """Test queue_size: true is not taken as a capacity of 1"""
        path = write_config(tmp_path, """
queue_size: true
devices:
  - {ip: 10.0.0.5, username: a, password: b}
prometheus:
  endpoint: http://localhost:9090/api/v1/write
""")

        with pytest.raises(SystemExit) as exc_info:
            load_config(path)

        assert exc_info.value.code == 1

    def test_load_config_unreadable_file_exits(self, tmp_path):
        """Test a missing config file is a startup failure"""
        with pytest.raises(SystemExit) as exc_info:
            load_config(str(tmp_path / "missing.yaml"))

        assert exc_info.value.code == 1


class TestSetupLogging:
    """Test TAPMON_LOGLEVEL handling"""

    def test_setup_logging_uses_env_level(self, monkeypatch):
        monkeypatch.setenv("TAPMON_LOGLEVEL", "debug")
        setup_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_defaults_to_info(self, monkeypatch):
        monkeypatch.delenv("TAPMON_LOGLEVEL", raising=False)
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_invalid_level_falls_back(self, monkeypatch):
        monkeypatch.setenv("TAPMON_LOGLEVEL", "chatty")
        setup_logging()
        assert logging.getLogger().level == logging.INFO


def fast_config(tmp_path):
    return load_config(write_config(tmp_path, """
interval: 0.01
devices:
  - {ip: 192.168.1.20, username: a, password: b}
  - {ip: 192.168.1.21, username: a, password: b}
prometheus:
  endpoint: http://localhost:9090/api/v1/write
  flush_interval: 0.05
"""))


@pytest.mark.asyncio
async def test_main_fatal_sink_error_exits_non_zero(tmp_path, mocker):
    """Test a fatal send stops every task and main() returns 1"""
    sources = {}

    def make_source(device):
        sources[device.address] = FakeSource(device.address, watts=10)
        return sources[device.address]

    sink = FakeSink([FatalError("HTTP 401: unauthorized")])
    mocker.patch('tapmon.TapoSource', side_effect=make_source)
    mocker.patch('tapmon.RemoteWriteSink', return_value=sink)

    code = await asyncio.wait_for(main(fast_config(tmp_path)), timeout=5)

    assert code == 1
    assert len(sink.attempts) == 1
    assert all(source.closed for source in sources.values())


@pytest.mark.asyncio
async def test_main_sigterm_exits_cleanly(tmp_path, mocker):
    """Test SIGTERM drains the pipeline and main() returns 0"""
    mocker.patch('tapmon.TapoSource', side_effect=lambda device: FakeSource(device.address, watts=10))
    mocker.patch('tapmon.RemoteWriteSink', return_value=FakeSink())

    asyncio.get_running_loop().call_later(0.1, os.kill, os.getpid(), signal.SIGTERM)
    code = await asyncio.wait_for(main(fast_config(tmp_path)), timeout=5)

    assert code == 0


@pytest.mark.asyncio
async def test_main_connect_failure_closes_connected_sources(tmp_path, mocker):
    """Test a device failing at startup releases the devices already connected"""
    sources = []

    def make_source(device):
        error = SystemExit(1) if device.address == "192.168.1.21" else None
        sources.append(FakeSource(device.address, watts=10, connect_error=error))
        return sources[-1]

    mocker.patch('tapmon.TapoSource', side_effect=make_source)
    mocker.patch('tapmon.RemoteWriteSink', return_value=FakeSink())

    with pytest.raises(SystemExit) as exc_info:
        await main(fast_config(tmp_path))

    assert exc_info.value.code == 1
    assert sources[0].connected is True
    assert sources[0].closed is True
