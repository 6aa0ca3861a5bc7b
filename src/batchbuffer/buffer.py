"""
BatchBuffer: per-key record buffers flushed in batches to async sinks.

Each key owns a pending list, a sink and a periodic flush task. Records are
appended by add(); a flush swaps the pending list for an empty one, hands the
snapshot to the sink and retries with exponential backoff. When every attempt
fails, the snapshot is put back in front of whatever was added meanwhile, so a
failing sink delays records but never drops them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sink = Callable[[List[T]], Awaitable[None]]


@dataclass
class _Channel(Generic[T]):
    """State for one key."""

    pending: List[T] = field(default_factory=list)
    sink: Optional[Sink] = None
    # None = never flushed, so the first flush is never throttled
    last_flush: Optional[float] = None
    timer: Optional[asyncio.Task] = None


# pylint: disable=too-many-instance-attributes
class BatchBuffer(Generic[T]):
    """
    Buffer records per key and flush them to the key's sink in batches.

    - register(key, sink) starts a periodic flush for that key.
    - add(key, record) never blocks; once a key holds max_buffer_size records
      a flush starts in the background (unless the key flushed less than
      min_flush_interval seconds ago).
    - A failed sink call is retried max_retry_attempts times in total, with
      retry_base_delay * 2 ** (attempt - 1) seconds between calls.
    - destroy() stops every timer and drops all state.

    Must be used from within a running event loop.
    """

    def __init__(
        self,
        *,
        max_buffer_size: int = 100,
        flush_interval: float = 5.0,
        min_flush_interval: float = 1.0,
        max_retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sink_timeout: Optional[float] = 30.0,
    ) -> None:
        self.max_buffer_size = max(1, max_buffer_size)
        self.flush_interval = flush_interval
        self.min_flush_interval = min_flush_interval
        self.max_retry_attempts = max(1, max_retry_attempts)
        self.retry_base_delay = retry_base_delay
        self.sink_timeout = sink_timeout
        self._channels: Dict[str, _Channel[T]] = {}
        # Size-triggered flushes running in the background
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Buffer store
    # ------------------------------------------------------------------

    def register(self, key: str, sink: Sink) -> None:
        """(Re)initialize key with an empty buffer and start its flush timer.

        Registering a key again replaces the sink and drops anything buffered
        for it.
        """
        old = self._channels.get(key)
        if old is not None and old.timer is not None:
            old.timer.cancel()
        channel: _Channel[T] = _Channel(sink=sink)
        self._channels[key] = channel
        channel.timer = asyncio.get_running_loop().create_task(
            self._run_timer(key, channel), name=f"batchbuffer-timer-{key}"
        )
        logger.info(
            "BatchBuffer: registered %r (flush every %.1fs)", key, self.flush_interval
        )

    def add(self, key: str, record: T) -> None:
        """Append record to key's buffer.

        Unknown keys buffer without a sink; those records wait for register().
        """
        channel = self._channels.get(key)
        if channel is None:
            channel = self._channels[key] = _Channel()
        channel.pending.append(record)

        if len(channel.pending) >= self.max_buffer_size and self._can_flush(channel):
            self._flush_in_background(key)

    def get_size(self, key: str) -> int:
        """Number of records waiting for key (0 if unknown)."""
        channel = self._channels.get(key)
        return len(channel.pending) if channel else 0

    def keys(self) -> List[str]:
        """Return all keys that have a buffer."""
        return list(self._channels)

    def is_registered(self, key: str) -> bool:
        """True if key has a sink."""
        channel = self._channels.get(key)
        return channel is not None and channel.sink is not None

    def destroy(self) -> None:
        """Cancel every timer and background flush and drop all buffers."""
        for channel in self._channels.values():
            if channel.timer is not None:
                channel.timer.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._channels:
            logger.info("BatchBuffer: destroyed (%d keys)", len(self._channels))
        self._channels.clear()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def flush(self, key: str) -> None:
        """Flush key now, ignoring min_flush_interval. Sink errors are not raised."""
        taken = self._take(key)
        if taken is not None:
            await self._deliver(key, *taken)

    async def flush_all(self) -> None:
        """Flush every key concurrently."""
        await asyncio.gather(*(self.flush(key) for key in list(self._channels)))

    async def close(self) -> None:
        """Wait for background flushes, flush what is buffered, then destroy()."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.flush_all()
        self.destroy()

    async def __aenter__(self) -> "BatchBuffer[T]":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _can_flush(self, channel: _Channel[T]) -> bool:
        if channel.last_flush is None:
            return True
        return time.monotonic() - channel.last_flush >= self.min_flush_interval

    async def _run_timer(self, key: str, channel: _Channel[T]) -> None:
        """Attempt a flush for key every flush_interval seconds until cancelled."""
        while True:
            await asyncio.sleep(self.flush_interval)
            if not self._can_flush(channel):
                continue
            try:
                await self.flush(key)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("BatchBuffer: timer flush for %r failed", key)

    def _flush_in_background(self, key: str) -> None:
        """Snapshot key now and deliver it from a separate task."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run the delivery on; the timer will pick it up.
            return
        taken = self._take(key)
        if taken is None:
            return
        task = loop.create_task(
            self._deliver(key, *taken), name=f"batchbuffer-flush-{key}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("BatchBuffer: background flush crashed: %r", exc)

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    def _take(self, key: str) -> Optional[Tuple[_Channel[T], Sink, List[T]]]:
        """Swap key's pending list for an empty one and stamp last_flush.

        Returns None when there is nothing to flush or no sink to flush to.
        """
        channel = self._channels.get(key)
        if channel is None or not channel.pending or channel.sink is None:
            return None
        items = channel.pending
        channel.pending = []
        channel.last_flush = time.monotonic()
        return channel, channel.sink, items

    async def _deliver(
        self, key: str, channel: _Channel[T], sink: Sink, items: List[T]
    ) -> None:
        """Hand items to sink, retrying with backoff; put them back if all attempts fail."""
        attempt = 1
        while True:
            try:
                if self.sink_timeout is None:
                    await sink(list(items))
                else:
                    await asyncio.wait_for(sink(list(items)), timeout=self.sink_timeout)
                logger.debug(
                    "BatchBuffer: flushed %d records for %r (attempt %d)",
                    len(items),
                    key,
                    attempt,
                )
                return
            except Exception as e:  # pylint: disable=broad-exception-caught
                if attempt < self.max_retry_attempts:
                    delay = self.retry_base_delay * 2 ** (attempt - 1)
                    logger.warning(
                        "BatchBuffer: flush of %r failed (attempt %d/%d), "
                        "retrying in %.1fs: %r",
                        key,
                        attempt,
                        self.max_retry_attempts,
                        delay,
                        e,
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                self._restore(key, channel, items)
                logger.error(
                    "BatchBuffer: failed to flush %r after %d attempts: %r",
                    key,
                    attempt,
                    e,
                )
                return

    def _restore(self, key: str, channel: _Channel[T], items: List[T]) -> None:
        """Put items back in front of anything added since the flush began."""
        if self._channels.get(key) is not channel:
            # Key was re-registered or the buffer destroyed; that reset wins.
            logger.warning(
                "BatchBuffer: %r was reset during flush, discarding %d records",
                key,
                len(items),
            )
            return
        channel.pending = items + channel.pending
