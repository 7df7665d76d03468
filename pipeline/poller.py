"""Per-device poller - reads one plug on a fixed cadence and queues samples"""
import asyncio
import logging
import time

from pipeline.shutdown import Shutdown
from sinks.base import METRIC_CURRENT_POWER, Sample
from sources.base import PowerSource

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 300.0


def push_sample(intake: asyncio.Queue, sample: Sample) -> bool:
    """
    Queue a sample without ever blocking the producer.

    Only a bounded intake can refuse; the sample is then dropped.
    """
    try:
        intake.put_nowait(sample)
    except asyncio.QueueFull:
        logger.warning(
            f"Intake full ({intake.maxsize} samples), dropping sample from {sample.device}"
        )
        return False
    return True


class Poller:
    """
    Polls a single device every `interval` seconds.

    Ticks never overlap: the next deadline is only computed once the
    current poll returned. Deadlines missed by a slow poll are skipped.
    """

    def __init__(
        self,
        source: PowerSource,
        intake: asyncio.Queue,
        shutdown: Shutdown,
        interval: float = DEFAULT_POLL_INTERVAL
    ):
        self.source = source
        self.intake = intake
        self.shutdown = shutdown
        self.interval = interval

    @property
    def address(self) -> str:
        return self.source.device.address

    async def poll_once(self) -> Sample | None:
        """
        Query the device once and queue the resulting sample.

        Returns the sample, or None when the tick was skipped.
        """
        try:
            reading = await self.source.fetch_power()
        except Exception as e:
            logger.warning(f"Tapo {self.address}: poll failed: {e}")
            return None

        if reading.error_code != 0:
            logger.warning(f"Tapo {self.address}: non zero error code {reading.error_code}")
            return None

        if reading.power_watts is None:
            logger.warning(f"Tapo {self.address}: response has no current_power")
            return None

        sample = Sample(
            device=self.address,
            metric=METRIC_CURRENT_POWER,
            value=float(reading.power_watts),
            timestamp_ms=int(time.time() * 1000),
        )
        logger.debug(f"Tapo {self.address}: {sample.value} W")

        if not push_sample(self.intake, sample):
            return None
        return sample

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval

        while not await self.shutdown.sleep(next_tick - loop.time()):
            await self.poll_once()

            now = loop.time()
            next_tick += self.interval
            while next_tick <= now:
                next_tick += self.interval

        logger.info(f"Tapo {self.address}: stopping poller")
