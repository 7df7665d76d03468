"""TP-Link Tapo ingress module - polls energy usage from smart plugs"""
import logging
import sys

from kasa import Credentials, DeviceError, Discover

from sources.base import Device, EnergyReading

logger = logging.getLogger(__name__)


class TapoSource:
    """
    Tapo smart plug (P110 and compatible) power source.

    Authenticates against the plug's local API with the owner's cloud
    credentials and queries the `get_energy_usage` method on demand.
    """

    def __init__(self, device: Device, timeout: float = 10.0):
        """
        Initialize Tapo source.

        Args:
            device: Address and credentials of the plug
            timeout: Discovery/handshake timeout in seconds (default: 10.0)
        """
        self.device = device
        self.timeout = timeout
        self.client = None

    @property
    def address(self) -> str:
        return self.device.address

    async def connect(self) -> None:
        """
        Phase 1: Handshake.
        Discovers the plug, negotiates the session and fetches its state once.
        """
        if not self.device.address:
            logger.error("Tapo: device address not configured")
            sys.exit(1)
            return  # For test mocking: prevent further execution

        credentials = Credentials(self.device.username, self.device.password)

        try:
            logger.debug(f"Tapo {self.address}: Connecting")
            self.client = await Discover.discover_single(
                self.address,
                credentials=credentials,
                discovery_timeout=int(self.timeout),
            )
            await self.client.update()
        except Exception as e:
            logger.error(f"Tapo {self.address}: could not connect to device: {e}")
            await self.close()
            sys.exit(1)
            return

        logger.info(
            f"Tapo {self.address}: connected to device "
            f"({self.client.model}, '{self.client.alias}')"
        )

    async def fetch_power(self) -> EnergyReading:
        """
        Phase 2: Energy usage query.

        The plug reports `current_power` in milliwatts. Device-side error
        codes come back as a reading with a non-zero `error_code`;
        transport errors propagate to the caller.
        """
        if self.client is None:
            raise RuntimeError(f"Tapo {self.address}: fetch_power() called before connect()")

        try:
            response = await self.client.protocol.query("get_energy_usage")
        except DeviceError as e:
            code = e.error_code
            return EnergyReading(error_code=int(code) if code is not None else -1)

        usage = response.get("get_energy_usage") or {}
        current_power = usage.get("current_power")
        if current_power is None:
            return EnergyReading(error_code=0)

        return EnergyReading(error_code=0, power_watts=current_power / 1000)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.disconnect()
            self.client = None
            logger.debug(f"Tapo {self.address}: Client closed")
