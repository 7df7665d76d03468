"""Base definitions for metric sinks - samples, errors and protocols"""
from dataclasses import dataclass
from typing import Protocol, Sequence

METRIC_CURRENT_POWER = "current_power"


@dataclass(frozen=True)
class Sample:
    """
    One timestamped reading from one device.

    Attributes:
        device: Address of the device the reading came from (the `ip` label).
        metric: Metric name (the `__name__` label).
        value: Reading value. For `current_power` this is Watts.
        timestamp_ms: Unix timestamp in milliseconds.
    """
    device: str
    metric: str
    value: float
    timestamp_ms: int

    def labels(self) -> list[tuple[str, str]]:
        """Label pairs sorted by name, as remote-write receivers expect them."""
        return sorted([("__name__", self.metric), ("ip", self.device)])


class SinkError(Exception):
    """Base class for failures while sending a batch."""


class RecoverableError(SinkError):
    """Transient failure (rate limited, server error, connection lost)."""


class FatalError(SinkError):
    """Failure that makes further sending pointless (bad request, auth, encoding)."""


class MetricsSink(Protocol):
    """
    Protocol for egress sinks.

    `send` either returns normally or raises exactly one of
    RecoverableError / FatalError.
    """

    async def send(self, batch: Sequence[Sample]) -> None:
        ...
