"""Exactly-once side effects that gate forward navigation."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from intake_funnel.adapters.funnel_api_client import FunnelApi
from intake_funnel.domain.errors import (
    IMAGE_RETRY_CODES,
    BusinessRuleError,
    FunnelError,
    InputValidationError,
    JobCancelledError,
    RejectedRequestError,
)
from intake_funnel.domain.jobs import ReadingResult, ReadingType
from intake_funnel.domain.questions import (
    answer_payload,
    is_blank_answer,
    legacy_answers_payload,
    normalize_questions,
)
from intake_funnel.domain.session import (
    DEFAULT_AGE_RANGE,
    DEFAULT_GENDER,
    Demographics,
    SessionRecord,
)
from intake_funnel.domain.steps import FlowStep, StepKind
from intake_funnel.services import persistence as keys
from intake_funnel.services.flow import FlowController, Proceed, running_task
from intake_funnel.services.persistence import PersistenceAdapter
from intake_funnel.services.polling import CancellationToken, JobPoller
from intake_funnel.services.view import FunnelView

_logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CODE_LENGTH = 4

LOADING_MESSAGES = (
    "Connecting with your intuitive blueprint...",
    "Attuning to your heart-centered signals...",
    "Balancing light and shadow in your aura...",
    "Clarifying your direction and momentum...",
    "Gathering symbols of growth and healing...",
    "Revealing your core aura tone...",
    "Preparing your personalized reading...",
)
PROCESSING_NOTE = "This can take a minute. We will email you when it is ready."
DEFERRED_FAILURE_MESSAGE = (
    "Some data may not have saved. Your reading will use default questions."
)
CONTACT_SUPPORT_MESSAGE = (
    "We could not verify your aura photo after multiple attempts. "
    "Please contact support if you need help."
)
_IMAGE_ERROR_MESSAGES = {
    "palm_image_invalid": (
        "We could not clearly see your aura photo. Please upload a clearer image."
    ),
    "image_not_found": "Please upload your aura photo first.",
}
_GENERATION_FAILED_MESSAGE = (
    "We could not generate your reading. Please try again or contact support."
)


@dataclass
class TaskOrchestrator:
    """Runs each step's network work once, under a single in-flight mutex."""

    api: FunnelApi
    controller: FlowController
    persistence: PersistenceAdapter
    poller: JobPoller
    view: FunnelView
    reading_type: ReadingType = ReadingType.TEASER
    loading_messages: tuple[str, ...] = LOADING_MESSAGES
    loading_interval_seconds: float = 3.0
    otp_wait_seconds: float = 3.0
    pending_code: str = ""
    _background: set[asyncio.Task] = field(default_factory=set, init=False)
    _inflight: dict[str, asyncio.Future] = field(default_factory=dict, init=False)
    _poll_cancel: CancellationToken | None = field(default=None, init=False)
    _image_error: BusinessRuleError | None = field(default=None, init=False)
    _generation: asyncio.Task | None = field(default=None, init=False)

    @property
    def session(self) -> SessionRecord:
        return self.controller.session

    def attach(self) -> None:
        """Register with the controller's interceptor chain and step listeners."""
        self.controller.add_interceptor(self.on_advance_requested)
        self.controller.on_entered(self._on_step_entered)
        self.controller.on_exited(self._on_step_exited)

    async def on_advance_requested(self, step_id: str, proceed: Proceed) -> bool:
        """Run the step's pending side effects, then let navigation proceed."""
        session = self.session
        if session.processing_request:
            _logger.info("Request in progress, ignoring advance for %s", step_id)
            return False
        step = self.controller.step_by_id(step_id)
        if step is None:
            return False
        session.processing_request = True
        self.view.set_busy(True)
        try:
            if not await self._run_step(step):
                return False
            advanced = await proceed()
            if advanced and step.kind is StepKind.IMAGE_CAPTURE:
                self._spawn(self._run_deferred_image_tasks())
            return advanced
        except FunnelError as exc:
            _logger.warning("Navigation blocked at %s: %s", step_id, exc.message)
            self._report_failure(step, exc)
            return False
        finally:
            session.processing_request = False
            self.view.set_busy(False)

    async def retry_image(self) -> bool:
        """Send the user back to image capture after an image rejection."""
        error = self._image_error
        if error is None:
            return False
        retries = error.retry_remaining
        if error.code == "palm_image_invalid" and _out_of_retries(retries):
            self.view.show_toast(CONTACT_SUPPORT_MESSAGE)
            return False
        image_step = self.controller.first_step_of(StepKind.IMAGE_CAPTURE)
        if image_step is None:
            return False
        session = self.session
        session.image_uploaded = False
        session.reading_generated = False
        session.reading_start_requested = False
        session.image_reference = None
        session.user.image = None
        self._image_error = None
        await self._write_flow_state(step_id=image_step.id, status="image_retry")
        return await self.controller.jump_to(image_step.id)

    async def start_over(self) -> None:
        """Abandon everything and return to the first step."""
        self.cancel_generation()
        self._image_error = None
        self.pending_code = ""
        await self.controller.restart()

    def cancel_generation(self) -> None:
        if self._poll_cancel is not None:
            self._poll_cancel.cancel()

    def close(self) -> None:
        """Abandon the poll and every background task of this session."""
        self.cancel_generation()
        current = running_task()
        pending = [*self._background, *self._inflight.values()]
        for task in pending:
            if task is not current and not task.done():
                task.cancel()
        self._background.clear()
        self._inflight.clear()

    async def show_existing_report(
        self, result: ReadingResult, token: str | None = None
    ) -> bool:
        """Jump to the result step with an already generated report."""
        session = self.session
        session.reading = result
        session.reading_generated = True
        if result.lead_id:
            session.lead_id = result.lead_id
        self.persistence.set(keys.READING_TYPE, result.reading_type.value)
        if token:
            self.persistence.set(keys.READING_TOKEN, token)
        result_step = self.controller.first_step_of(StepKind.RESULT)
        if result_step is None:
            return False
        await self.controller.jump_to(result_step.id)
        return self.persistence.get_flag(keys.READING_LOADED)

    async def settle(self, generation_timeout: float | None = None) -> None:
        """Wait for background work spawned so far.

        Report generation is awaited for at most ``generation_timeout`` seconds
        when a timeout is given and keeps running afterwards.
        """
        while True:
            generation = self._generation
            pending = [task for task in self._background if task is not generation]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                continue
            if generation is None or generation.done():
                return
            done, _ = await asyncio.wait({generation}, timeout=generation_timeout)
            if not done:
                return

    async def _run_step(self, step: FlowStep) -> bool:
        handlers: dict[StepKind, Callable[[FlowStep], Awaitable[bool]]] = {
            StepKind.LEAD_CAPTURE: self._run_lead_capture,
            StepKind.OTP_WAIT: self._run_otp_wait,
            StepKind.OTP_VERIFY: self._run_otp_verify,
            StepKind.IMAGE_CAPTURE: self._run_image_capture,
            StepKind.QUESTION: self._run_question,
            StepKind.JOB_WAIT: self._run_job_wait,
        }
        handler = handlers.get(step.kind)
        if handler is None:
            return True
        return await handler(step)

    async def _run_lead_capture(self, step: FlowStep) -> bool:
        session = self.session
        user = session.user
        if not session.lead_id:
            _validate_lead_fields(session)
            data = await self.api.create_lead(
                name=user.name.strip(),
                email=user.email.strip(),
                identity=user.identity,
                gdpr=user.gdpr_consent,
                age=user.age,
                age_range=user.age_range,
            )
            if data.get("existing_reading") and data.get("reading_html"):
                _logger.info("Existing reading returned for email, skipping OTP")
                await self._show_inline_report(data)
                return False
            lead_id = data.get("lead_id")
            if not lead_id:
                raise RejectedRequestError("Invalid response from lead creation")
            session.lead_id = str(lead_id)
            self.persistence.set(keys.LEAD_CACHE, {"lead_id": session.lead_id})
            self.persistence.set(keys.EMAIL, user.email.strip())
            self.controller.persist()
            await self._write_flow_state(
                step_id=self._step_id(StepKind.OTP_VERIFY),
                status="otp_pending",
                lead_id=session.lead_id,
                email=user.email.strip(),
            )
        if not session.otp_sent:
            await self._send_code()
        return True

    async def _run_otp_wait(self, step: FlowStep) -> bool:
        if not self.session.otp_sent:
            await self._send_code()
        return True

    async def _run_otp_verify(self, step: FlowStep) -> bool:
        session = self.session
        if session.otp_verified:
            return True
        code = self.pending_code.strip()
        if len(code) != _CODE_LENGTH or not code.isdigit():
            raise InputValidationError("Please enter all 4 digits")
        await self.api.verify_code(self._require_lead(), code)
        session.otp_verified = True
        session.user.email_verified = True
        self.pending_code = ""
        if session.user.email:
            self.persistence.set(keys.EMAIL, session.user.email)
        self.controller.persist()
        _logger.info("Code verified for lead %s", session.lead_id)
        await self._write_flow_state(
            step_id=self._step_id(StepKind.IMAGE_CAPTURE), status="otp_verified"
        )
        self._spawn(self._sync_subscriber(self._require_lead()))
        return True

    async def _run_image_capture(self, step: FlowStep) -> bool:
        session = self.session
        if not (session.user.has_local_image() or session.image_uploaded):
            raise InputValidationError("Please capture or upload your aura photo first")
        return True

    async def _run_question(self, step: FlowStep) -> bool:
        session = self.session
        question_steps = self.controller.question_steps()
        answer = session.answers.get(step.id)
        if answer in (None, "", []):
            raise InputValidationError("Please choose an answer to continue.")
        if step.id == question_steps[-1].id and not session.quiz_saved:
            await self._save_answers(question_steps)
        return True

    async def _run_job_wait(self, step: FlowStep) -> bool:
        session = self.session
        if session.reading_generated:
            return True
        session.reading_start_requested = True
        try:
            result = await self._generate()
        except FunnelError:
            session.reading_start_requested = False
            raise
        session.reading = result
        session.reading_generated = True
        self.persistence.set(keys.READING_LEAD_ID, result.lead_id)
        self.persistence.set(keys.READING_TYPE, result.reading_type.value)
        if result.reading_id:
            self.persistence.set(keys.EXISTING_READING_ID, result.reading_id)
        self.controller.persist()
        await self._write_flow_state(
            step_id=self._step_id(StepKind.RESULT),
            status="reading_ready",
            reading_id=result.reading_id,
        )
        return True

    async def _generate(self) -> ReadingResult:
        lead_id = self._require_lead()
        await self._ensure_image_uploaded()
        data = await self.api.generate_report(lead_id, self.reading_type)
        if data.get("status") == "processing":
            self.view.update_loading_note(PROCESSING_NOTE)
            self._poll_cancel = CancellationToken()
            try:
                return await self.poller.poll(
                    lead_id, self.reading_type, self._poll_cancel
                )
            finally:
                self._poll_cancel = None
        html = data.get("reading_html")
        if not isinstance(html, str) or not html:
            raise RejectedRequestError("Invalid response from reading generation")
        reading_id = data.get("reading_id")
        return ReadingResult(
            reading_html=html,
            reading_id=str(reading_id) if reading_id else None,
            reading_type=self.reading_type,
            lead_id=lead_id,
        )

    async def _send_code(self) -> None:
        session = self.session
        await self.api.send_code(self._require_lead(), session.user.email.strip())
        session.otp_sent = True
        self.controller.persist()
        _logger.info("Verification code sent for lead %s", session.lead_id)

    async def _ensure_image_uploaded(self) -> None:
        if self.session.image_uploaded:
            return
        await self._once("upload", self._upload_image)

    async def _upload_image(self) -> None:
        session = self.session
        image = session.user.image
        if not session.user.has_local_image() or image is None:
            raise InputValidationError("Please upload your aura photo first.")
        reference = await self.api.upload_image(self._require_lead(), image)
        session.image_uploaded = True
        session.image_reference = reference
        self.controller.persist()
        _logger.info("Image uploaded for lead %s", session.lead_id)
        first_question = self.controller.first_step_of(StepKind.QUESTION)
        await self._write_flow_state(
            step_id=first_question.id if first_question else "quiz",
            status="otp_verified",
        )

    async def _ensure_questions(self) -> None:
        if self.session.questions:
            return
        await self._once("questions", self._load_questions)

    async def _load_questions(self) -> None:
        session = self.session
        resolved = session.resolve_demographics()
        demographics = Demographics(
            age_range=resolved.age_range or DEFAULT_AGE_RANGE,
            gender=resolved.gender or DEFAULT_GENDER,
        )
        raw_questions = await self.api.fetch_questions(session.lead_id, demographics)
        session.questions = normalize_questions(raw_questions)
        session.demographics = demographics
        self.controller.persist()
        _logger.info("Loaded %s dependent questions", len(session.questions))

    async def _run_deferred_image_tasks(self) -> None:
        try:
            await self._ensure_image_uploaded()
            await self._ensure_questions()
        except FunnelError as exc:
            _logger.warning("Deferred image tasks failed: %s", exc.message)
            self.view.show_toast(DEFERRED_FAILURE_MESSAGE, level="warning")

    async def _save_answers(self, question_steps: list[FlowStep]) -> None:
        session = self.session
        pending = self._inflight.get("questions")
        if pending is not None and not pending.done():
            try:
                await pending
            except FunnelError as exc:
                _logger.info("Question fetch failed, saving static answers: %s", exc)
        if session.questions:
            demographics = session.resolve_demographics()
            if not demographics.is_complete():
                raise InputValidationError(
                    "Please select your age range and how you identify to continue."
                )
            questions = session.questions[: len(question_steps)]
            if len(questions) != len(question_steps):
                raise InputValidationError(
                    "We had trouble loading your personalized questions. "
                    "Please go back and try again."
                )
            entries = []
            for question, step in zip(questions, question_steps, strict=True):
                raw_answer = session.answers.get(step.id)
                if is_blank_answer(question, raw_answer):
                    _logger.warning("Question %s has an empty answer", question.id)
                entries.append(answer_payload(question, raw_answer))
            payload: dict[str, object] = {
                "demographics": {
                    "age_range": demographics.age_range,
                    "gender": demographics.gender,
                },
                "questions": entries,
                "selected_at": datetime.now(tz=UTC).strftime("%Y-%m-%d %H:%M:%S"),
            }
        else:
            payload = legacy_answers_payload(session.answers)
        await self.api.save_answers(self._require_lead(), payload)
        session.quiz_saved = True
        self.controller.persist()
        await self._write_flow_state(
            step_id=self._step_id(StepKind.JOB_WAIT), status="quiz_completed"
        )

    async def _sync_subscriber(self, lead_id: str) -> None:
        try:
            await self.api.sync_subscriber(lead_id)
        except FunnelError as exc:
            _logger.warning("Mailing list sync failed (non-blocking): %s", exc.message)

    async def _show_inline_report(self, data: dict[str, object]) -> None:
        lead_id = data.get("lead_id")
        reading_id = data.get("reading_id")
        result = ReadingResult(
            reading_html=str(data["reading_html"]),
            reading_id=str(reading_id) if reading_id else None,
            reading_type=ReadingType.parse(data.get("reading_type")),
            lead_id=str(lead_id) if lead_id else None,
        )
        await self._write_flow_state(
            step_id=self._step_id(StepKind.RESULT),
            status="reading_ready",
            lead_id=result.lead_id,
            reading_id=result.reading_id,
            email=self.session.user.email,
        )
        await self.show_existing_report(result)

    async def _on_step_entered(self, step: FlowStep) -> None:
        if step.kind is StepKind.OTP_WAIT:
            self._track(self._auto_advance_after(self.otp_wait_seconds))
        elif step.kind is StepKind.JOB_WAIT:
            self._track(self._rotate_loading_messages())
            session = self.session
            if not session.reading_generated and not session.reading_start_requested:
                session.reading_start_requested = True
                self._generation = self._spawn(self.controller.request_advance())
        elif step.kind is StepKind.RESULT:
            self._render_report()

    async def _on_step_exited(self, step: FlowStep) -> None:
        if step.kind is StepKind.JOB_WAIT and not self.session.reading_generated:
            self.cancel_generation()

    async def _auto_advance_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.controller.request_advance()

    async def _rotate_loading_messages(self) -> None:
        messages = self.loading_messages
        if len(messages) < 2:  # noqa: PLR2004
            return
        index = 0
        while True:
            await asyncio.sleep(self.loading_interval_seconds)
            index = (index + 1) % len(messages)
            self.view.update_loading_note(messages[index])

    def _render_report(self) -> None:
        result = self.session.reading
        if result is None:
            _logger.warning("Result step entered without a report")
            return
        if not self.view.render_report(result):
            _logger.warning("Report injected but result container not found")
            return
        self.persistence.set(keys.READING_LOADED, True)
        if result.lead_id:
            self.persistence.set(keys.READING_LEAD_ID, result.lead_id)
        if result.reading_id:
            self.persistence.set(keys.EXISTING_READING_ID, result.reading_id)

    def _report_failure(self, step: FlowStep, exc: FunnelError) -> None:
        if isinstance(exc, BusinessRuleError):
            if exc.redirect_to:
                _logger.info("Redirecting out of the flow: %s", exc.code)
                self.view.redirect(exc.redirect_to, exc.redirect_delay_ms)
                return
            if exc.code in IMAGE_RETRY_CODES:
                self._image_error = exc
                self._show_image_error(exc)
                return
        if isinstance(exc, JobCancelledError):
            return
        if step.kind is StepKind.JOB_WAIT and not isinstance(exc, InputValidationError):
            message = _message_or(exc, _GENERATION_FAILED_MESSAGE)
            self.view.show_reading_error(message, None)
        self.view.show_toast(exc.message)

    def _show_image_error(self, exc: BusinessRuleError) -> None:
        message = _message_or(exc, _IMAGE_ERROR_MESSAGES[exc.code])
        retry_remaining = exc.retry_remaining
        if exc.code == "palm_image_invalid" and _out_of_retries(retry_remaining):
            message = CONTACT_SUPPORT_MESSAGE
        self.view.show_reading_error(message, retry_remaining)

    async def _write_flow_state(self, **updates: object) -> None:
        await self.api.set_flow_state(
            {key: value for key, value in updates.items() if value is not None}
        )

    async def _once(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        future = self._inflight.get(name)
        if future is None or future.done():
            future = asyncio.ensure_future(factory())
            self._inflight[name] = future
        await future

    def _spawn(self, coroutine: Awaitable[object]) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _track(self, coroutine: Awaitable[object]) -> asyncio.Task:
        return self.controller.track_step_task(asyncio.ensure_future(coroutine))

    def _step_id(self, kind: StepKind) -> str | None:
        step = self.controller.first_step_of(kind)
        return step.id if step else None

    def _require_lead(self) -> str:
        if not self.session.lead_id:
            raise InputValidationError("Please enter your details to continue.")
        return self.session.lead_id


def _validate_lead_fields(session: SessionRecord) -> None:
    user = session.user
    if not user.name.strip():
        raise InputValidationError("Please enter your name.")
    if not _EMAIL_PATTERN.match(user.email.strip()):
        raise InputValidationError("Please enter a valid email address.")
    if not user.identity:
        raise InputValidationError("Please select how you identify.")
    if not user.gdpr_consent:
        raise InputValidationError("Please accept the privacy policy to continue.")


def _out_of_retries(retry_remaining: int | None) -> bool:
    """Unknown retry counts allow another attempt."""
    return retry_remaining is not None and retry_remaining <= 0


def _message_or(exc: FunnelError, fallback: str) -> str:
    if exc.message == exc.default_message:
        return fallback
    return exc.message
