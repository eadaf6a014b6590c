"""Background delivery for transactional email.

Request handlers enqueue jobs and return immediately; a worker task sends
them through EmailService in a thread. A send that returns False or raises
is retried with exponential backoff until the attempt budget runs out, then
the failure is logged and the job dropped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from tenantauth.logging import get_logger
from tenantauth.service.email import EmailService

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_SECONDS = 1.0
MAX_QUEUE_DEPTH = 1000

VERIFICATION = "verification"
PASSWORD_RESET = "password_reset"
WELCOME = "welcome"


@dataclass
class EmailJob:
    kind: str
    to_email: str
    token: Optional[str] = None
    display_name: Optional[str] = None
    attempts: int = 0


class EmailQueue:
    def __init__(
        self,
        email_service: EmailService,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
    ) -> None:
        self.email = email_service
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self._queue: asyncio.Queue[EmailJob] = asyncio.Queue(maxsize=MAX_QUEUE_DEPTH)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, job: EmailJob) -> bool:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error("email_queue_full", kind=job.kind, depth=self._queue.qsize())
            return False
        return True

    def send_verification(self, to_email: str, token: str, display_name: Optional[str] = None) -> bool:
        return self.submit(EmailJob(VERIFICATION, to_email, token, display_name))

    def send_password_reset(self, to_email: str, token: str, display_name: Optional[str] = None) -> bool:
        return self.submit(EmailJob(PASSWORD_RESET, to_email, token, display_name))

    def send_welcome(self, to_email: str, display_name: Optional[str] = None) -> bool:
        return self.submit(EmailJob(WELCOME, to_email, None, display_name))

    def _send_now(self, job: EmailJob) -> bool:
        if job.kind == VERIFICATION:
            return self.email.send_verification_email(job.to_email, job.token or "", job.display_name)
        if job.kind == PASSWORD_RESET:
            return self.email.send_password_reset_email(job.to_email, job.token or "", job.display_name)
        if job.kind == WELCOME:
            return self.email.send_welcome_email(job.to_email, job.display_name)
        raise ValueError(f"unknown email job kind: {job.kind}")

    async def deliver(self, job: EmailJob) -> bool:
        """Send one job, retrying with backoff. Returns the final outcome."""
        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                sent = await asyncio.to_thread(self._send_now, job)
            except Exception as exc:
                logger.warning(
                    "email_delivery_attempt_failed",
                    kind=job.kind,
                    attempt=job.attempts,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                sent = False
            if sent:
                return True
            if job.attempts < self.max_attempts:
                await asyncio.sleep(self.retry_base_seconds * (2 ** (job.attempts - 1)))
        logger.error(
            "email_delivery_failed",
            kind=job.kind,
            attempts=job.attempts,
            to=EmailService._redact_email(job.to_email),
        )
        return False

    async def run_pending(self) -> int:
        """Deliver everything currently queued; returns the number sent."""
        sent = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                if await self.deliver(job):
                    sent += 1
            finally:
                self._queue.task_done()
        return sent

    async def start(self) -> None:
        if self._running:
            logger.warning("email_queue_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("email_queue_started")

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        if self._task and self.pending:
            try:
                await asyncio.wait_for(self._queue.join(), drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("email_queue_drain_timeout", pending=self.pending)
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("email_queue_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            job = await self._queue.get()
            try:
                await self.deliver(job)
            except Exception as exc:
                logger.error("email_queue_loop_error", error=str(exc), error_type=type(exc).__name__)
            finally:
                self._queue.task_done()
