"""Base definitions for device sources - data contracts and protocols"""
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class Device:
    """
    A configured smart plug.

    Attributes:
        address: IP address or hostname of the plug.
        username: Cloud account e-mail used to authenticate with the plug.
        password: Cloud account password.
    """
    address: str
    username: str
    password: str = field(repr=False)


@dataclass
class EnergyReading:
    """
    Result of a single energy usage query.

    Attributes:
        error_code: Error code reported by the device. Non-zero = soft failure.
        power_watts: Instantaneous power draw in Watts, None if not reported.
    """
    error_code: int
    power_watts: float | None = None


class PowerSource(Protocol):
    """
    Protocol for polled device sources (Tapo plugs and the like).

    Uses Protocol for duck typing - implementations don't need to inherit,
    just implement the methods with matching signatures.
    """

    device: Device

    async def connect(self) -> None:
        """
        Establish a session with the device.

        Called once at startup, before any polling begins.
        Should hard fail if the device can't be reached.
        """
        ...

    async def fetch_power(self) -> EnergyReading:
        """
        Query the device for its current power draw.

        May raise on transport errors; the caller treats that as a
        skipped tick.
        """
        ...

    async def close(self) -> None:
        """Release the session."""
        ...
