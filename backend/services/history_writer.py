"""
Background writer for resonance history

Resonance computations append a snapshot to the pair's ResonanceRecord.
That write is off the scoring path: submit() only enqueues, and a consumer
task persists updates in order. Contract: eventually persisted, loss
tolerant. When the queue is full or the store fails, the update is dropped
and logged, never raised back to the caller.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from models.domain.resonance_record import ResonanceRecord, ResonanceSnapshot, pair_key

logger = logging.getLogger(__name__)


@dataclass
class HistoryUpdate:
    """One pending history append"""
    user_a_id: str
    user_b_id: str
    snapshot: ResonanceSnapshot


class ResonanceHistoryWriter:
    """
    Queue + consumer task that appends snapshots to ResonanceRecords.

    The consumer starts lazily on the first submit() inside a running loop.
    """

    def __init__(self, resonance_repository, maxsize: int = 1000, history_limit: int = 50):
        self.resonance_repository = resonance_repository
        self.history_limit = history_limit
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.written = 0
        self.dropped = 0

    def submit(self, user_a_id: str, user_b_id: str, snapshot: ResonanceSnapshot) -> bool:
        """
        Enqueue a history append without waiting.

        Returns:
            True if queued, False if dropped
        """
        try:
            self.queue.put_nowait(HistoryUpdate(user_a_id, user_b_id, snapshot))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"History queue full, dropping update for {pair_key(user_a_id, user_b_id)}"
            )
            return False

        self._ensure_consumer()
        return True

    def _ensure_consumer(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self):
        while True:
            update = await self.queue.get()
            try:
                await self._write(update)
                self.written += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.dropped += 1
                logger.warning(
                    f"Failed to persist resonance history for "
                    f"{pair_key(update.user_a_id, update.user_b_id)}: {e}",
                    exc_info=True
                )
            finally:
                self.queue.task_done()

    async def _write(self, update: HistoryUpdate):
        key = pair_key(update.user_a_id, update.user_b_id)
        record = await self.resonance_repository.get(key)
        if record is None:
            record = ResonanceRecord(
                user_a_id=update.user_a_id,
                user_b_id=update.user_b_id,
                history_limit=self.history_limit,
            )
        record.apply(update.snapshot)
        await self.resonance_repository.save(record)

    async def flush(self):
        """Wait until every queued update has been processed"""
        if self.queue.empty() and (self._task is None or self._task.done()):
            return
        self._ensure_consumer()
        await self.queue.join()

    async def close(self):
        """Drain pending updates and stop the consumer"""
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"History writer closed. Written: {self.written}, Dropped: {self.dropped}")
