"""Batch aggregator - collects queued samples and flushes them on a timer"""
import asyncio
import logging
import time

from pipeline.shutdown import Shutdown
from sinks.base import MetricsSink, RecoverableError, Sample

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 300.0
# Offset the flush timer from the pollers' ticks at startup
DEFAULT_START_DELAY = 1.0


class Flusher:
    """
    Single consumer of the sample intake.

    Appends every arriving sample to the current batch and hands the batch
    to the sink once per `interval`. Batches are sent one at a time, in
    the order their windows closed. A window closes at its deadline:
    samples stamped at or after it are carried into the next batch.

    Known limitation: a batch that fails with a RecoverableError is
    dropped, not retried (at-most-once delivery). Set `retry_recoverable`
    to put it back in front of the next batch instead.
    """

    def __init__(
        self,
        sink: MetricsSink,
        intake: asyncio.Queue,
        shutdown: Shutdown,
        interval: float = DEFAULT_FLUSH_INTERVAL,
        start_delay: float = DEFAULT_START_DELAY,
        retry_recoverable: bool = False
    ):
        self.sink = sink
        self.intake = intake
        self.shutdown = shutdown
        self.interval = interval
        self.start_delay = start_delay
        self.retry_recoverable = retry_recoverable
        self.batch: list[Sample] = []

    def drain(self) -> int:
        """Move every sample already waiting in the intake into the batch."""
        drained = 0
        while True:
            try:
                sample = self.intake.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            self.batch.append(sample)
            drained += 1

    async def flush(self) -> bool:
        """
        Send the current batch.

        Returns False when the failure was fatal; shutdown has been
        triggered by then and the caller must stop.
        """
        logger.debug(f"RemoteWrite: performing batched remote write for {len(self.batch)} samples")
        if not self.batch:
            return True

        batch, self.batch = self.batch, []
        try:
            await self.sink.send(batch)
        except RecoverableError as e:
            if self.retry_recoverable:
                self.batch = batch + self.batch
                logger.warning(f"RemoteWrite: recoverable error, keeping {len(batch)} samples for next flush: {e}")
            else:
                logger.warning(f"RemoteWrite: recoverable error, dropping {len(batch)} samples: {e}")
            return True
        except Exception as e:
            logger.critical(f"RemoteWrite: error pushing samples: {e}")
            self.shutdown.trigger(f"remote write failed: {e}", fatal=True)
            return False

        logger.info(f"RemoteWrite: pushed {len(batch)} samples")
        return True

    def close_window(self, cutoff_ms: int) -> list[Sample]:
        """
        Keep only samples stamped before `cutoff_ms` in the batch.

        Returns the later samples; they belong to the next window.
        """
        later = [s for s in self.batch if s.timestamp_ms >= cutoff_ms]
        if later:
            self.batch = [s for s in self.batch if s.timestamp_ms < cutoff_ms]
        return later

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        # Deadlines are fixed from the start so the startup offset holds
        next_flush = loop.time() + self.start_delay + self.interval

        if await self.shutdown.sleep(self.start_delay):
            logger.info("RemoteWrite: stopping")
            return

        stopped = asyncio.ensure_future(self.shutdown.wait())
        getter = None

        try:
            while True:
                if getter is None:
                    getter = asyncio.ensure_future(self.intake.get())

                done, _ = await asyncio.wait(
                    {getter, stopped},
                    timeout=max(next_flush - loop.time(), 0),
                    return_when=asyncio.FIRST_COMPLETED
                )

                if stopped in done:
                    if getter in done:
                        logger.debug(f"RemoteWrite: discarding sample from {getter.result().device} taken during shutdown")
                    break

                if getter in done:
                    self.batch.append(getter.result())
                    getter = None
                    if loop.time() < next_flush:
                        continue

                deadline = next_flush
                next_flush += self.interval
                while next_flush <= loop.time():
                    next_flush += self.interval

                self.drain()
                # Wall clock time of the deadline, in the samples' unit
                cutoff_ms = int((time.time() - (loop.time() - deadline)) * 1000)
                carried = self.close_window(cutoff_ms)
                flushed = await self.flush()
                self.batch.extend(carried)
                if not flushed:
                    break
        finally:
            for waiter in (getter, stopped):
                if waiter is not None and not waiter.done():
                    waiter.cancel()

        logger.info("RemoteWrite: stopping")
