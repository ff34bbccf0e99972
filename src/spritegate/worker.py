"""In-process job queue for heavy generations.

Jobs carry only ``{"generation_id": ...}``.  A bounded pool of asyncio
tasks pulls jobs and runs each generation end-to-end.  A job that raises
is redelivered with exponential backoff (2 s, 4 s, ...) up to
``QUEUE_JOB_ATTEMPTS`` deliveries; every redelivery restarts the
controller from attempt 1 on the same generation id.

Only the final delivery records a failure on the generation record.
Earlier deliveries run with ``record_failure=False``, so an exception
leaves the record in Processing while its redelivery is pending; the
record turns Failed when the last delivery raises, or through the
service's stale watchdog if the worker goes away in between.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from spritegate.constants import QUEUE_BACKOFF_SECONDS, QUEUE_JOB_ATTEMPTS, QUEUE_NAME
from spritegate.errors import GenerationNotFoundError, InvalidTransitionError
from spritegate.logging import generation_logger, get_logger

if TYPE_CHECKING:
    from spritegate.service import SpriteService

logger = get_logger("worker")

# Errors a redelivery cannot fix.
_NON_RETRYABLE = (GenerationNotFoundError, InvalidTransitionError)


@dataclass
class GenerationJob:
    """One queued generation and its delivery count."""

    generation_id: str
    delivery: int = 1

    @property
    def payload(self) -> dict[str, str]:
        return {"generation_id": self.generation_id}


def backoff_delay(delivery: int, base_seconds: float = QUEUE_BACKOFF_SECONDS) -> float:
    """Delay before redelivering a job whose *delivery*-th run failed."""
    return base_seconds * (2 ** (delivery - 1))


class GenerationWorker:
    """Bounded-concurrency consumer of generation jobs.

    Usage::

        worker = GenerationWorker(service, concurrency=2)
        await worker.start()
        await worker.enqueue(generation_id)
        await worker.join()
        await worker.stop()
    """

    def __init__(
        self,
        service: SpriteService,
        concurrency: int | None = None,
        max_deliveries: int = QUEUE_JOB_ATTEMPTS,
        backoff_seconds: float = QUEUE_BACKOFF_SECONDS,
        name: str = QUEUE_NAME,
    ) -> None:
        self.service = service
        self.concurrency = max(1, concurrency or service.settings.worker_concurrency)
        self.max_deliveries = max(1, max_deliveries)
        self.backoff_seconds = backoff_seconds
        self.name = name
        self._queue: asyncio.Queue[GenerationJob] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._pending_retries: set[asyncio.Task[None]] = set()
        self.completed: list[str] = []
        self.failed: list[str] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Spawn the consumer tasks. Calling twice is a no-op."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"{self.name}-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Worker %s started with concurrency %d", self.name, self.concurrency)

    async def enqueue(self, generation_id: str) -> GenerationJob:
        """Queue *generation_id* for processing."""
        job = GenerationJob(generation_id=generation_id)
        await self._queue.put(job)
        logger.debug("Enqueued %s", job.payload)
        return job

    async def join(self) -> None:
        """Wait until every queued job, including redeliveries, has settled."""
        while True:
            await self._queue.join()
            if not self._pending_retries:
                return
            await asyncio.gather(*list(self._pending_retries))

    async def stop(self) -> None:
        """Cancel the consumers and any scheduled redeliveries."""
        for task in [*self._tasks, *self._pending_retries]:
            task.cancel()
        await asyncio.gather(*self._tasks, *self._pending_retries, return_exceptions=True)
        self._tasks = []
        self._pending_retries.clear()
        logger.info("Worker %s stopped", self.name)

    async def _consume(self, slot: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job, slot)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: GenerationJob, slot: int) -> None:
        log = generation_logger(logger, job.generation_id)
        final_delivery = job.delivery >= self.max_deliveries
        log.info(
            "[%s] processing %s (delivery %d/%d)",
            slot,
            job.generation_id,
            job.delivery,
            self.max_deliveries,
        )
        # Failures are recorded on the final delivery only.
        try:
            result = await self.service.process_generation(
                job.generation_id, record_failure=final_delivery
            )
        except _NON_RETRYABLE as exc:
            log.error("Job %s dropped: %s", job.generation_id, exc)
            self.failed.append(job.generation_id)
            return
        except Exception as exc:
            if final_delivery:
                log.error(
                    "Job %s failed after %d deliveries: %s",
                    job.generation_id,
                    job.delivery,
                    exc,
                )
                self.failed.append(job.generation_id)
                return
            delay = backoff_delay(job.delivery, self.backoff_seconds)
            log.warning(
                "Job %s failed (delivery %d/%d), retrying in %.1fs: %s",
                job.generation_id,
                job.delivery,
                self.max_deliveries,
                delay,
                exc,
            )
            self._schedule_retry(
                GenerationJob(job.generation_id, delivery=job.delivery + 1), delay
            )
            return

        self.completed.append(job.generation_id)
        log.info(
            "Job %s finished: %s", job.generation_id, result.outcome.value
        )

    def _schedule_retry(self, job: GenerationJob, delay: float) -> None:
        async def _redeliver() -> None:
            await asyncio.sleep(delay)
            await self._queue.put(job)

        task = asyncio.create_task(_redeliver())
        self._pending_retries.add(task)
        task.add_done_callback(self._pending_retries.discard)
