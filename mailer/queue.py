"""
mailer/queue.py -- Fire-and-forget notification delivery.

Pattern: bounded work queue + fixed pool of consumer tasks.

  notify() is called from auth flows running on FastAPI's threadpool. It
      renders nothing and never raises: it hands the job to the event loop
      with call_soon_threadsafe and returns. A flow therefore never fails or
      rolls back because mail could not be delivered.

  Consumers: Settings.mail_concurrency tasks (default 1, i.e. at most one
      delivery in flight per process) pull jobs, render them, and send them
      through the transport in a worker thread.

  Retries: tenacity, exponential backoff, Settings.mail_retries retries after
      the first attempt. After exhaustion the job is logged and dropped.

  Back-pressure: when the queue is full (Settings.mail_queue_size) the new
      job is logged and dropped rather than blocking the request.

Lifecycle: start() in the api/main.py lifespan startup, stop() on shutdown. drain() waits until every queued job has been handled --
used by tests and by stop() for a graceful shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from core.config import Settings
from mailer.notices import Notice
from mailer.render import Renderer
from mailer.transport import Transport, build_transport

logger = logging.getLogger("latchkey.mailer")


@dataclass(frozen=True)
class MailJob:
    to: str
    notice: Notice


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("Mail delivery failed (attempt %d): %s; retrying", state.attempt_number, exc)


class MailQueue:
    def __init__(
        self,
        settings: Settings,
        transport: Transport | None = None,
        renderer: Renderer | None = None,
        wait: wait_base | None = None,
    ) -> None:
        self.transport = transport or build_transport(settings)
        self.renderer = renderer or Renderer(settings.mail_from_name)
        self.retries = settings.mail_retries
        self.concurrency = settings.mail_concurrency
        self.maxsize = settings.mail_queue_size
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=30)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[MailJob] | None = None
        self._workers: list[asyncio.Task] = []
        self.delivered = 0
        self.dropped = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.concurrency)]
        logger.info("Mail queue started (%d consumer(s), %d retries)", self.concurrency, self.retries)

    async def drain(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, timeout: float = 10.0) -> None:
        try:
            await asyncio.wait_for(self.drain(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Mail queue stopped with %d undelivered job(s)", self._queue.qsize() if self._queue else 0)
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._loop = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def notify(self, to: str, notice: Notice) -> None:
        """Queue a notice for delivery. Thread-safe; never raises."""
        job = MailJob(to=to, notice=notice)
        loop = self._loop
        if loop is None or loop.is_closed():
            self.dropped += 1
            logger.error("Mail queue not running; dropped %s notice", notice.template)
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, job)
        except RuntimeError:
            # Loop closed between the check and the call (shutdown race).
            self.dropped += 1
            logger.error("Mail queue shutting down; dropped %s notice", notice.template)

    def _enqueue(self, job: MailJob) -> None:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error("Mail queue full (%d); dropped %s notice", self.maxsize, job.notice.template)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._deliver(job)
            finally:
                self._queue.task_done()

    async def _deliver(self, job: MailJob) -> None:
        try:
            message = self.renderer.render(job.to, job.notice)
        except Exception:
            self.dropped += 1
            logger.exception("Rendering %s notice failed; dropped", job.notice.template)
            return
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retries + 1),
                wait=self._wait,
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    await asyncio.to_thread(self.transport.send, message)
        except Exception as exc:
            self.dropped += 1
            logger.error(
                "Mail %s undeliverable after %d attempts; dropped: %s",
                job.notice.template,
                self.retries + 1,
                exc,
            )
            return
        self.delivered += 1
