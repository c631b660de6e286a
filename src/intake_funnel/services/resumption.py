"""Boot-time decision between fresh start, resume, deep link and report."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from intake_funnel.adapters.funnel_api_client import FunnelApi
from intake_funnel.domain.errors import BusinessRuleError, CorruptionError, FunnelError
from intake_funnel.domain.jobs import ReadingResult, ReadingType
from intake_funnel.domain.session import UserData
from intake_funnel.domain.steps import FlowStep, StepKind
from intake_funnel.services import persistence as keys
from intake_funnel.services.flow import FlowController
from intake_funnel.services.persistence import PersistenceAdapter
from intake_funnel.services.tasks import TaskOrchestrator
from intake_funnel.services.view import FunnelView

_logger = logging.getLogger(__name__)

_TERMINAL_KINDS = frozenset({StepKind.JOB_WAIT, StepKind.RESULT})
_STEP_ALIASES = {"quiz": StepKind.QUESTION}
_MAGIC_LINK_FAILED = "Link invalid or expired. Please enter the code manually."


class ResolutionKind(StrEnum):
    """How a boot was resolved."""

    HALTED = "halted"
    HANDLED = "handled"
    REDIRECTED = "redirected"
    REPORT = "report"
    START_NEW = "start_new"
    MAGIC_LINK = "magic_link"
    FLOW_STATE = "flow_state"
    RESUMED = "resumed"
    RESET = "reset"
    FRESH = "fresh"


@dataclass(frozen=True)
class BootContext:
    """What the host knows about this load."""

    params: dict[str, str] = field(default_factory=dict)
    authenticated: bool = False

    @property
    def report_view(self) -> bool:
        return "sm_report" in self.params

    @property
    def url_lead_id(self) -> str | None:
        return self.params.get("lead_id") or self.params.get("lead") or None


@dataclass(frozen=True)
class Resolution:
    """Outcome of boot resolution."""

    kind: ResolutionKind
    step_id: str | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ResumptionResolver:
    """Runs once per load and picks where the wizard starts.

    Branches are tried in a fixed priority order and the first applicable
    one wins: reload-loop guard, report already on the page, report refresh
    for a known lead, start-new for signed-in users, magic link, backend flow
    state for signed-in users, persisted step, first step. A report view URL
    therefore takes precedence over magic-link parameters on the same URL.
    """

    api: FunnelApi
    controller: FlowController
    orchestrator: TaskOrchestrator
    persistence: PersistenceAdapter
    view: FunnelView
    reading_type: ReadingType = ReadingType.TEASER
    loop_guard_window_ms: int = 500
    loop_guard_max_loads: int = 5
    clock_ms: Callable[[], int] = _now_ms

    async def resolve(self, boot: BootContext) -> Resolution:
        if self._loop_detected():
            return Resolution(ResolutionKind.HALTED)
        self._hydrate_session()

        if boot.report_view and self.view.has_terminal_artifact():
            _logger.info("Report already rendered, skipping resolution")
            return self._at_current(ResolutionKind.HANDLED)

        resolution = await self._resume_report(boot)
        if resolution is not None:
            return resolution

        if boot.authenticated and boot.params.get("start_new") == "1":
            resolution = await self._start_new()
            if resolution is not None:
                return resolution

        token = boot.params.get("token")
        if boot.params.get("sm_magic") and token and boot.url_lead_id:
            return await self._magic_link(str(boot.url_lead_id), token)

        if boot.authenticated:
            resolution = await self._bootstrap_flow_state(boot)
            if resolution is not None:
                return resolution

        return await self._restore_persisted(boot)

    async def on_page_show(
        self, boot: BootContext, persisted: bool
    ) -> Resolution | None:
        """Handle a back/forward cache restore of a report page."""
        if not persisted or not boot.report_view:
            return None
        if self.view.has_terminal_artifact():
            return self._at_current(ResolutionKind.HANDLED)
        if boot.authenticated:
            return await self._bootstrap_flow_state(boot)
        return await self._resume_report(boot)

    def _at_current(self, kind: ResolutionKind) -> Resolution:
        return Resolution(kind, self.controller.current_step().id)

    def _loop_detected(self) -> bool:
        now = self.clock_ms()
        guard = self.persistence.get(keys.LOOP_GUARD)
        recent = (
            isinstance(guard, dict)
            and now - int(guard.get("timestamp", 0)) < self.loop_guard_window_ms
        )
        if recent:
            count = int(guard.get("count", 1)) + 1
            if count >= self.loop_guard_max_loads:
                _logger.error(
                    "Reload loop detected (%s loads within %sms), stopping",
                    count,
                    self.loop_guard_window_ms,
                )
                self.persistence.remove(keys.LOOP_GUARD)
                return True
            self.persistence.set(keys.LOOP_GUARD, {"count": count, "timestamp": now})
            return False
        self.persistence.set(keys.LOOP_GUARD, {"count": 1, "timestamp": now})
        return False

    def _hydrate_session(self) -> None:
        record = self.persistence.load_session()
        if record is not None:
            self.controller.session.replace_with(record)

    async def _resume_report(self, boot: BootContext) -> Resolution | None:
        lead_id = self._report_lead(boot)
        if lead_id is None:
            if boot.report_view:
                _logger.error("Report refresh requested but no lead id is known")
            return None
        reading_type = ReadingType.parse(
            boot.params.get("reading_type")
            or self.persistence.get_str(keys.READING_TYPE),
            self.reading_type,
        )
        token = boot.params.get("token") or self.persistence.get_str(keys.READING_TOKEN)
        try:
            result = await self._fetch_report(lead_id, reading_type, token)
        except BusinessRuleError as exc:
            if exc.redirect_to:
                self.view.redirect(exc.redirect_to, exc.redirect_delay_ms)
                return Resolution(ResolutionKind.REDIRECTED)
            self._clear_reading_state(exc)
            return None
        except FunnelError as exc:
            self._clear_reading_state(exc)
            return None
        await self.orchestrator.show_existing_report(result, token)
        return self._at_current(ResolutionKind.REPORT)

    def _report_lead(self, boot: BootContext) -> str | None:
        if boot.report_view:
            cache = self.persistence.get(keys.LEAD_CACHE)
            cached = cache.get("lead_id") if isinstance(cache, dict) else None
            return (
                boot.url_lead_id
                or (str(cached) if cached else None)
                or self.persistence.get_str(keys.READING_LEAD_ID)
            )
        if self.persistence.get_flag(keys.READING_LOADED):
            return self.persistence.get_str(keys.READING_LEAD_ID)
        return None

    async def _fetch_report(
        self, lead_id: str, reading_type: ReadingType, token: str | None
    ) -> ReadingResult:
        data = await self.api.get_by_lead(lead_id, reading_type, token)
        html = data.get("reading_html")
        if not data.get("exists") or not isinstance(html, str) or not html:
            raise CorruptionError("Report data not found in response.")
        reading_id = data.get("reading_id")
        return ReadingResult(
            reading_html=html,
            reading_id=str(reading_id) if reading_id else None,
            reading_type=ReadingType.parse(data.get("reading_type"), reading_type),
            lead_id=lead_id,
        )

    def _clear_reading_state(self, exc: FunnelError) -> None:
        _logger.info("Report reload failed, clearing reading state: %s", exc.message)
        for key in keys.READING_KEYS:
            self.persistence.remove(key)

    async def _start_new(self) -> Resolution | None:
        try:
            data = await self.api.current_lead()
        except FunnelError as exc:
            _logger.warning("Start-new flow failed: %s", exc.message)
            self.view.show_toast(exc.message)
            return None
        lead = data.get("lead")
        if not isinstance(lead, dict):
            self.view.show_toast("Unable to load your profile.")
            return None

        session = self.controller.session
        session.reset()
        session.user = _user_from_lead(lead, UserData())
        session.user.email_verified = True
        if session.user.email:
            self.persistence.set(keys.EMAIL, session.user.email)

        missing = data.get("missing_fields") or []
        if data.get("profile_complete") or missing == ["gdpr"]:
            session.lead_id = str(lead.get("id") or "") or None
            session.otp_sent = True
            session.otp_verified = True
            target = self.controller.first_step_of(StepKind.IMAGE_CAPTURE)
        else:
            target = self.controller.first_step_of(StepKind.LEAD_CAPTURE)
            self.view.show_toast(
                "Please confirm your details to continue.", level="info"
            )
        if target is None:
            return None
        await self.controller.jump_to(target.id)
        return Resolution(ResolutionKind.START_NEW, target.id)

    async def _magic_link(self, lead_id: str, token: str) -> Resolution:
        self.view.show_toast("Verifying your magic link. Please wait...", level="info")
        try:
            data = await self.api.verify_magic_link(lead_id, token)
        except FunnelError as exc:
            _logger.warning("Magic link verification failed: %s", exc.message)
            await self.orchestrator.start_over()
            message = exc.message
            if message == exc.default_message:
                message = _MAGIC_LINK_FAILED
            self.view.show_toast(f"{message} Starting over...")
            return self._at_current(ResolutionKind.RESET)

        lead = data.get("lead") if isinstance(data.get("lead"), dict) else {}
        reading = data.get("reading") if isinstance(data.get("reading"), dict) else {}
        flow = data.get("flow") if isinstance(data.get("flow"), dict) else {}

        session = self.controller.session
        session.lead_id = str(lead.get("id") or lead_id)
        session.otp_sent = True
        session.otp_verified = True
        if lead:
            session.user = _user_from_lead(lead, session.user)
        session.user.email_verified = True
        self.persistence.set(keys.LEAD_CACHE, {"lead_id": session.lead_id})
        if session.user.email:
            self.persistence.set(keys.EMAIL, session.user.email)
        self.controller.persist()
        self.view.show_toast(
            "Email verified automatically. Continue to the next step.", level="success"
        )

        html = reading.get("reading_html")
        if reading.get("exists") and isinstance(html, str) and html:
            reading_id = reading.get("reading_id")
            result = ReadingResult(
                reading_html=html,
                reading_id=str(reading_id) if reading_id else None,
                reading_type=ReadingType.parse(
                    reading.get("reading_type"), self.reading_type
                ),
                lead_id=session.lead_id,
            )
            await self.orchestrator.show_existing_report(result, token)
            return self._at_current(ResolutionKind.MAGIC_LINK)

        target = self._known_step(flow.get("step_id"))
        if target is None or target.kind is StepKind.RESULT:
            target = self.controller.first_step_of(StepKind.IMAGE_CAPTURE)
        if target is None:
            target = self.controller.steps[0]
        await self.controller.jump_to(target.id)
        return Resolution(ResolutionKind.MAGIC_LINK, target.id)

    async def _bootstrap_flow_state(self, boot: BootContext) -> Resolution | None:
        flow = await self.api.get_flow_state()
        if not flow or not flow.get("step_id"):
            return None
        flow_lead = flow.get("lead_id")
        if flow_lead:
            self.controller.session.lead_id = str(flow_lead)

        reading_ready = flow.get("status") == "reading_ready"
        if reading_ready and flow_lead:
            loaded = self.persistence.get_flag(keys.READING_LOADED)
            if not boot.report_view and not loaded:
                return None
            if self.view.has_terminal_artifact():
                return self._at_current(ResolutionKind.HANDLED)
            try:
                result = await self._fetch_report(
                    str(flow_lead), self.reading_type, None
                )
            except BusinessRuleError as exc:
                if exc.redirect_to:
                    self.view.redirect(exc.redirect_to, exc.redirect_delay_ms)
                    return Resolution(ResolutionKind.REDIRECTED)
                _logger.info("Flow reading reload failed: %s", exc.message)
            except FunnelError as exc:
                _logger.info("Flow reading reload failed: %s", exc.message)
            else:
                await self.orchestrator.show_existing_report(result)
                return self._at_current(ResolutionKind.REPORT)

        target = self._known_step(flow.get("step_id"))
        if target is None or target.order == 0:
            return None
        if target.kind in _TERMINAL_KINDS and not reading_ready:
            return None
        await self.controller.jump_to(target.id)
        return Resolution(ResolutionKind.FLOW_STATE, target.id)

    async def _restore_persisted(self, boot: BootContext) -> Resolution:
        try:
            target = self._persisted_step()
        except CorruptionError as exc:
            _logger.warning("Discarding corrupt snapshot: %s", exc.message)
            await self.controller.restart()
            return self._at_current(ResolutionKind.FRESH)
        if target is not None and not boot.params.get("sm_magic"):
            if target.kind is StepKind.JOB_WAIT:
                return await self._resume_job_wait(target)
            await self.controller.jump_to(target.id)
            return Resolution(ResolutionKind.RESUMED, target.id)
        first = self.controller.steps[0]
        await self.controller.jump_to(first.id)
        return Resolution(ResolutionKind.FRESH, first.id)

    async def _resume_job_wait(self, step: FlowStep) -> Resolution:
        """Ask the backend for the report and otherwise start a new job."""
        session = self.controller.session
        lead_id = session.lead_id or ""
        reading_type = ReadingType.parse(
            self.persistence.get_str(keys.READING_TYPE), self.reading_type
        )
        try:
            result = await self._fetch_report(lead_id, reading_type, None)
        except BusinessRuleError as exc:
            if exc.redirect_to:
                self.view.redirect(exc.redirect_to, exc.redirect_delay_ms)
                return Resolution(ResolutionKind.REDIRECTED)
            _logger.info("No report for lead %s yet: %s", lead_id, exc.message)
        except FunnelError as exc:
            _logger.info("No report for lead %s yet: %s", lead_id, exc.message)
        else:
            await self.orchestrator.show_existing_report(result)
            return self._at_current(ResolutionKind.REPORT)
        session.reading_generated = False
        session.reading_start_requested = False
        await self.controller.jump_to(step.id)
        return Resolution(ResolutionKind.RESUMED, step.id)

    def _persisted_step(self) -> FlowStep | None:
        step_id = self.persistence.get_str(keys.STEP_ID)
        loaded = self.persistence.get_flag(keys.READING_LOADED)
        if step_id is None:
            if loaded:
                raise CorruptionError("Reading marked loaded without a step")
            return None
        step = self.controller.step_by_id(step_id)
        if step is None:
            raise CorruptionError(f"Unknown persisted step {step_id}")
        if step.kind is StepKind.RESULT and not loaded:
            raise CorruptionError(f"Persisted {step_id} step without a rendered report")
        if step.kind is StepKind.JOB_WAIT and not self.controller.session.lead_id:
            raise CorruptionError(f"Persisted {step_id} step without a lead")
        if loaded and step.kind is not StepKind.RESULT:
            _logger.info("Clearing reading flag left over on step %s", step_id)
            self.persistence.remove(keys.READING_LOADED)
        return step

    def _known_step(self, step_id: object) -> FlowStep | None:
        if not isinstance(step_id, str) or not step_id:
            return None
        step = self.controller.step_by_id(step_id)
        if step is None and step_id in _STEP_ALIASES:
            step = self.controller.first_step_of(_STEP_ALIASES[step_id])
        return step


def _user_from_lead(lead: dict[str, object], current: UserData) -> UserData:
    gdpr = lead.get("gdpr")
    return UserData(
        name=str(lead.get("name") or current.name),
        email=str(lead.get("email") or current.email),
        identity=str(lead.get("identity") or current.identity),
        age=str(lead.get("age") or current.age),
        age_range=str(lead.get("age_range") or current.age_range),
        gdpr_consent=bool(gdpr) if gdpr is not None else current.gdpr_consent,
        image=current.image,
        email_verified=current.email_verified,
    )
