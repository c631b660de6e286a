"""Bounded status polling for report generation jobs."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    stop_any,
    wait_fixed,
)

from intake_funnel.adapters.funnel_api_client import FunnelApi, business_error_from_body
from intake_funnel.domain.errors import (
    BusinessRuleError,
    JobCancelledError,
    JobTimeoutError,
)
from intake_funnel.domain.jobs import JobStatus, ReadingJob, ReadingResult, ReadingType

_logger = logging.getLogger(__name__)


@dataclass
class CancellationToken:
    """Signal used to abandon a running poll."""

    _event: asyncio.Event = field(default_factory=asyncio.Event)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class JobPoller:
    """Poll the status endpoint until a terminal answer or the budget runs out."""

    api: FunnelApi
    max_attempts: int = 60
    interval_seconds: float = 5.0
    deadline_seconds: float | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    clock: Callable[[], float] = time.monotonic

    async def poll(
        self,
        lead_id: str,
        reading_type: ReadingType,
        cancel: CancellationToken | None = None,
    ) -> ReadingResult:
        """Return the ready report or raise a classified error.

        Every attempt is classified as ready, processing, not found, an explicit
        failure, or unknown. Processing and unknown answers wait one interval and
        try again; the rest end the loop.
        """
        job = ReadingJob(lead_id=lead_id, reading_type=reading_type)
        started = self.clock()

        async def pause(seconds: float) -> None:
            await self._wait(seconds, cancel)

        retrying = AsyncRetrying(
            stop=stop_any(
                stop_after_attempt(self.max_attempts),
                partial(self._past_deadline, started),
                lambda _: cancel is not None and cancel.cancelled,
            ),
            wait=wait_fixed(self.interval_seconds),
            retry=retry_if_result(lambda result: result is None),
            sleep=pause,
        )
        try:
            result = await retrying(self._attempt, job, cancel)
        except RetryError:
            self._check_cancelled(cancel, job)
            _logger.warning(
                "Polling gave up for lead %s after %s attempts", lead_id, job.attempt
            )
            raise JobTimeoutError() from None
        _logger.info(
            "Reading ready for lead %s after %s attempts", lead_id, job.attempt
        )
        return result

    async def _attempt(
        self, job: ReadingJob, cancel: CancellationToken | None
    ) -> ReadingResult | None:
        self._check_cancelled(cancel, job)
        job.attempt += 1
        body = await self.api.poll_status(job.lead_id, job.reading_type)
        self._check_cancelled(cancel, job)
        return self._classify(job, body)

    def _classify(
        self, job: ReadingJob, body: dict[str, object]
    ) -> ReadingResult | None:
        data = body.get("data")
        data = data if isinstance(data, dict) else {}
        if not body.get("success"):
            job.status = JobStatus.FAILED
            error = business_error_from_body(body)
            if error is None:
                code = str(body.get("error_code") or data.get("error_code") or "")
                error = BusinessRuleError(
                    code or "generation_error",
                    str(body.get("message") or "") or None,
                    payload=data,
                )
            raise error
        status = str(data.get("status") or "")
        if status == JobStatus.READY:
            html = data.get("reading_html")
            if isinstance(html, str) and html:
                job.status = JobStatus.READY
                reading_id = data.get("reading_id")
                return ReadingResult(
                    reading_html=html,
                    reading_id=str(reading_id) if reading_id else None,
                    reading_type=job.reading_type,
                    lead_id=job.lead_id,
                )
            _logger.info("Ready status without content for lead %s", job.lead_id)
            return None
        if status == JobStatus.NOT_FOUND:
            job.status = JobStatus.NOT_FOUND
            raise BusinessRuleError("not_found", "No reading is currently processing.")
        if status != JobStatus.PROCESSING:
            _logger.info("Unknown poll status %r for lead %s", status, job.lead_id)
        return None

    async def _wait(self, seconds: float, cancel: CancellationToken | None) -> None:
        if cancel is None:
            await self.sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self.sleep(seconds))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()

    def _past_deadline(self, started: float, _retry_state: RetryCallState) -> bool:
        if self.deadline_seconds is None:
            return False
        if self.clock() - started + self.interval_seconds <= self.deadline_seconds:
            return False
        _logger.warning("Polling deadline reached after %ss", self.deadline_seconds)
        return True

    @staticmethod
    def _check_cancelled(cancel: CancellationToken | None, job: ReadingJob) -> None:
        if cancel is not None and cancel.cancelled:
            _logger.info("Polling cancelled for lead %s", job.lead_id)
            raise JobCancelledError()
