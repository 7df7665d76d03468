import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass

import yaml
from dotenv import load_dotenv

from pipeline.flusher import DEFAULT_FLUSH_INTERVAL, Flusher
from pipeline.poller import DEFAULT_POLL_INTERVAL, Poller
from pipeline.shutdown import Shutdown
from sinks.remote_write import RemoteWriteSink, is_valid_endpoint
from sources.base import Device
from sources.tapo import TapoSource

ENV_FILE = "tapmon.env"
LOGLEVEL_ENV = "TAPMON_LOGLEVEL"

logger = logging.getLogger(__name__)


@dataclass
class PrometheusConfig:
    endpoint: str
    username: str | None = None
    password: str | None = None
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    timeout: float = 30.0
    retry_recoverable: bool = False


@dataclass
class Config:
    devices: list[Device]
    prometheus: PrometheusConfig
    interval: float = DEFAULT_POLL_INTERVAL
    queue_size: int = 0


def setup_logging() -> None:
    """Configure the root logger from TAPMON_LOGLEVEL (default: info)"""
    logging.basicConfig(
        format='%(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    name = os.getenv(LOGLEVEL_ENV, "")
    level = logging.getLevelName(name.upper()) if name else logging.INFO
    if not isinstance(level, int):
        level = logging.INFO
        logger.warning(f"could not use log level {name}, using default level INFO")
    logging.getLogger().setLevel(level)


def _fail(message: str):
    logger.error(message)
    sys.exit(1)


def _positive(raw: dict, key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool):
        _fail(f"Config: {key} must be a number, got {value!r}")
    try:
        value = float(value)
    except (TypeError, ValueError):
        _fail(f"Config: {key} must be a number, got {value!r}")
    if value <= 0:
        _fail(f"Config: {key} must be positive, got {value}")
    return value


def load_config(path: str) -> Config:
    """Read and validate the config file with hard fail on misconfiguration"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        _fail(f"Config: could not read {path}: {e}")

    if not isinstance(raw, dict):
        _fail(f"Config: {path} must contain a mapping")

    default_username = os.getenv("TAPMON_DEVICE_USERNAME")
    default_password = os.getenv("TAPMON_DEVICE_PASSWORD")

    entries = raw.get("devices") or []
    if not isinstance(entries, list) or not entries:
        _fail("Config: no devices configured")

    devices = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("ip"):
            _fail(f"Config: device entry without ip: {entry!r}")
        username = entry.get("username") or default_username
        password = entry.get("password") or default_password
        if not username or not password:
            _fail(f"Config: no credentials for device {entry['ip']}")
        devices.append(Device(address=str(entry["ip"]), username=username, password=password))

    prometheus = raw.get("prometheus") or {}
    if not isinstance(prometheus, dict):
        _fail("Config: prometheus must be a mapping")

    endpoint = prometheus.get("endpoint") or ""
    if not is_valid_endpoint(endpoint):
        _fail(f"Config: cannot parse prometheus endpoint url {endpoint!r}")

    queue_size = raw.get("queue_size", 0)
    if isinstance(queue_size, bool) or not isinstance(queue_size, int) or queue_size < 0:
        _fail(f"Config: queue_size must be a non-negative integer, got {queue_size!r}")

    retry_recoverable = prometheus.get("retry_recoverable", False)
    if not isinstance(retry_recoverable, bool):
        _fail(f"Config: retry_recoverable must be true or false, got {retry_recoverable!r}")

    return Config(
        devices=devices,
        prometheus=PrometheusConfig(
            endpoint=endpoint,
            username=os.getenv("TAPMON_PROMETHEUS_USERNAME") or prometheus.get("username"),
            password=os.getenv("TAPMON_PROMETHEUS_PASSWORD") or prometheus.get("password"),
            flush_interval=_positive(prometheus, "flush_interval", DEFAULT_FLUSH_INTERVAL),
            timeout=_positive(prometheus, "timeout", 30.0),
            retry_recoverable=retry_recoverable,
        ),
        interval=_positive(raw, "interval", DEFAULT_POLL_INTERVAL),
        queue_size=queue_size,
    )


async def connect_sources(devices: list[Device]) -> list[TapoSource]:
    """Check we can communicate with every device before anything starts"""
    sources = []
    try:
        for device in devices:
            source = TapoSource(device)
            await source.connect()
            sources.append(source)
    except BaseException:
        # connect() hard fails; release the sessions opened so far
        for source in sources:
            await source.close()
        raise
    return sources


async def main(config: Config) -> int:
    sources = await connect_sources(config.devices)

    sink = RemoteWriteSink(
        endpoint=config.prometheus.endpoint,
        username=config.prometheus.username,
        password=config.prometheus.password,
        timeout=config.prometheus.timeout,
    )

    intake: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
    shutdown = Shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.trigger, f"received {sig.name}")

    try:
        for source in sources:
            logger.info(f"starting poller for {source.address}")
            poller = Poller(source, intake, shutdown, interval=config.interval)
            shutdown.spawn(poller.run(), name=f"poller-{source.address}")

        logger.info("starting remote writer")
        flusher = Flusher(
            sink,
            intake,
            shutdown,
            interval=config.prometheus.flush_interval,
            retry_recoverable=config.prometheus.retry_recoverable,
        )
        shutdown.spawn(flusher.run(), name="remote-writer")

        await shutdown.join()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        for source in sources:
            await source.close()

    if shutdown.fatal:
        logger.error(f"stopped after fatal error: {shutdown.reason}")
        return 1
    logger.info("stopped")
    return 0


def cli() -> None:
    # Load environment and secrets from a single .env file
    load_dotenv(ENV_FILE)
    setup_logging()

    # Parse command line arguments
    parser = argparse.ArgumentParser(
        description="Poll Tapo smart plugs and push power usage to Prometheus remote write"
    )
    parser.add_argument("config", type=str, help="Path to the YAML/JSON config file")
    args = parser.parse_args()

    config = load_config(args.config)
    sys.exit(asyncio.run(main(config)))


if __name__ == "__main__":
    cli()
