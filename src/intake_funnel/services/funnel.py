"""One wizard session: every funnel component wired for a single host."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from intake_funnel.adapters.funnel_api_client import FunnelApi
from intake_funnel.config import Settings
from intake_funnel.domain.errors import InputValidationError
from intake_funnel.domain.jobs import ReadingType
from intake_funnel.domain.session import SessionContext, SessionRecord
from intake_funnel.domain.steps import DEFAULT_STEPS, FlowStep, StepKind
from intake_funnel.domain.unlocks import UnlockStatus
from intake_funnel.services.flow import FlowController
from intake_funnel.services.persistence import PersistenceAdapter, SnapshotStore
from intake_funnel.services.polling import JobPoller
from intake_funnel.services.resumption import (
    BootContext,
    Resolution,
    ResumptionResolver,
)
from intake_funnel.services.tasks import TaskOrchestrator
from intake_funnel.services.unlocks import UnlockLedger
from intake_funnel.services.view import BufferedView

_logger = logging.getLogger(__name__)

_USER_TEXT_FIELDS = ("name", "email", "identity", "age")


@dataclass(frozen=True)
class FunnelOptions:
    """Tunables shared by every session of a host."""

    reading_type: ReadingType = ReadingType.TEASER
    offerings_url: str = ""
    max_free_unlocks: int = 2
    poll_max_attempts: int = 60
    poll_interval_seconds: float = 5.0
    poll_deadline_seconds: float | None = None
    snapshot_ttl_seconds: int = 86400
    loop_guard_window_ms: int = 500
    loop_guard_max_loads: int = 5
    loading_message_interval_seconds: float = 3.0
    otp_wait_seconds: float = 3.0
    response_wait_seconds: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "FunnelOptions":
        return cls(
            reading_type=ReadingType.parse(settings.reading_type),
            offerings_url=settings.offerings_url,
            max_free_unlocks=settings.max_free_unlocks,
            poll_max_attempts=settings.poll_max_attempts,
            poll_interval_seconds=settings.poll_interval_seconds,
            poll_deadline_seconds=settings.poll_deadline_seconds,
            snapshot_ttl_seconds=settings.snapshot_ttl_seconds,
            loop_guard_window_ms=settings.loop_guard_window_ms,
            loop_guard_max_loads=settings.loop_guard_max_loads,
            loading_message_interval_seconds=(
                settings.loading_message_interval_seconds
            ),
            otp_wait_seconds=settings.otp_wait_seconds,
            response_wait_seconds=settings.response_wait_seconds,
        )


def context_for(boot: BootContext) -> SessionContext:
    """Pick the persistence partition for a load."""
    if boot.params.get("sm_magic"):
        return SessionContext.DEEP_LINK
    if boot.authenticated:
        return SessionContext.AUTHENTICATED
    return SessionContext.GUEST


@dataclass
class FunnelSession:
    """Facade the host drives: boot once, then forward user events."""

    api: FunnelApi
    view: BufferedView
    persistence: PersistenceAdapter
    controller: FlowController
    orchestrator: TaskOrchestrator
    resolver: ResumptionResolver
    boot_context: BootContext
    options: FunnelOptions
    ledger: UnlockLedger | None = None
    resolution: Resolution | None = None

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        api: FunnelApi,
        store: SnapshotStore,
        boot: BootContext,
        options: FunnelOptions | None = None,
        steps: list[FlowStep] | None = None,
        prefix: str = "sm",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "FunnelSession":
        """Wire a session for one load of the wizard."""
        resolved = options or FunnelOptions()
        view = BufferedView()
        persistence = PersistenceAdapter(
            store=store,
            context=context_for(boot),
            ttl_seconds=resolved.snapshot_ttl_seconds,
            prefix=prefix,
        )
        controller = FlowController(
            steps=list(steps or DEFAULT_STEPS),
            session=SessionRecord(),
            persistence=persistence,
            view=view,
        )
        poller = JobPoller(
            api=api,
            max_attempts=resolved.poll_max_attempts,
            interval_seconds=resolved.poll_interval_seconds,
            deadline_seconds=resolved.poll_deadline_seconds,
            sleep=sleep,
        )
        orchestrator = TaskOrchestrator(
            api=api,
            controller=controller,
            persistence=persistence,
            poller=poller,
            view=view,
            reading_type=resolved.reading_type,
            loading_interval_seconds=resolved.loading_message_interval_seconds,
            otp_wait_seconds=resolved.otp_wait_seconds,
        )
        orchestrator.attach()
        resolver = ResumptionResolver(
            api=api,
            controller=controller,
            orchestrator=orchestrator,
            persistence=persistence,
            view=view,
            reading_type=resolved.reading_type,
            loop_guard_window_ms=resolved.loop_guard_window_ms,
            loop_guard_max_loads=resolved.loop_guard_max_loads,
        )
        funnel = cls(
            api=api,
            view=view,
            persistence=persistence,
            controller=controller,
            orchestrator=orchestrator,
            resolver=resolver,
            boot_context=boot,
            options=resolved,
        )
        controller.on_entered(funnel._on_step_entered)
        return funnel

    @property
    def session(self) -> SessionRecord:
        return self.controller.session

    async def boot(self) -> Resolution:
        """Resolve where this load starts."""
        self.resolution = await self.resolver.resolve(self.boot_context)
        _logger.info(
            "Boot resolved as %s at %s",
            self.resolution.kind,
            self.resolution.step_id,
        )
        return self.resolution

    async def page_show(self, persisted: bool) -> Resolution | None:
        """Handle a page restored from the back/forward cache."""
        resolution = await self.resolver.on_page_show(self.boot_context, persisted)
        if resolution is not None:
            self.resolution = resolution
        return resolution

    async def advance(self) -> bool:
        return await self.controller.request_advance()

    async def retreat(self) -> bool:
        return await self.controller.retreat()

    def update_input(self, values: dict[str, object]) -> None:
        """Apply user-entered field values to the session record."""
        session = self.session
        user = session.user
        for name in _USER_TEXT_FIELDS:
            if name in values:
                setattr(user, name, str(values[name] or "").strip())
        if "gdpr_consent" in values:
            user.gdpr_consent = bool(values["gdpr_consent"])
        if "age_range" in values:
            user.age_range = str(values["age_range"] or "")
            session.demographics.age_range = user.age_range
        if "gender" in values:
            session.demographics.gender = str(values["gender"] or "")
        if "image" in values:
            image = values["image"]
            user.image = str(image) if image else None
            session.image_uploaded = False
            session.image_reference = None
        if "code" in values:
            self.orchestrator.pending_code = str(values["code"] or "")
        if "answer" in values:
            step = self.controller.current_step()
            if step.kind is not StepKind.QUESTION:
                raise InputValidationError("There is no question to answer right now.")
            session.answers[step.id] = values["answer"]
            # a changed answer must be saved again
            session.quiz_saved = False
        self.controller.persist()

    async def unlock(self, key: str) -> UnlockStatus:
        if self.ledger is None:
            raise InputValidationError("Your reading is not loaded yet.")
        return await self.ledger.request_unlock(key)

    async def retry_image(self) -> bool:
        return await self.orchestrator.retry_image()

    async def start_over(self) -> None:
        self.ledger = None
        await self.orchestrator.start_over()

    async def settle(self, generation_timeout: float | None = None) -> None:
        await self.orchestrator.settle(generation_timeout)

    def close(self) -> None:
        """Stop timers, the running poll and background uploads."""
        self.orchestrator.close()
        self.controller.close()

    def describe(self) -> dict[str, object]:
        """Return a serializable view of the session position and flags."""
        step = self.controller.current_step()
        session = self.session
        state: dict[str, object] = {
            "step_id": step.id,
            "step_kind": step.kind.value,
            "context": self.persistence.context.value,
            "lead_id": session.lead_id,
            "otp_sent": session.otp_sent,
            "otp_verified": session.otp_verified,
            "image_uploaded": session.image_uploaded,
            "quiz_saved": session.quiz_saved,
            "reading_generated": session.reading_generated,
            "processing": session.processing_request,
            "question_count": len(session.questions),
        }
        if self.resolution is not None:
            state["resolution"] = self.resolution.kind.value
        if self.ledger is not None:
            state["unlocks"] = {
                "unlocked": sorted(self.ledger.state.unlocked_keys),
                "remaining": self.ledger.state.remaining,
                "max_free": self.ledger.state.max_free,
                "has_full_access": self.ledger.has_full_access,
                "status": self.ledger.status_text(),
            }
        return state

    async def _on_step_entered(self, step: FlowStep) -> None:
        if step.kind is not StepKind.RESULT:
            return
        result = self.session.reading
        if result is None or not self.view.has_terminal_artifact():
            return
        self.ledger = UnlockLedger.from_report(
            api=self.api,
            view=self.view,
            persistence=self.persistence,
            result=result,
            offerings_url=self.options.offerings_url,
            max_free=self.options.max_free_unlocks,
            return_url=self.boot_context.params.get("return_url", ""),
        )


@dataclass
class FunnelRegistry:
    """Live sessions keyed by the host's session id."""

    api: FunnelApi
    store: SnapshotStore
    options: FunnelOptions = field(default_factory=FunnelOptions)
    sessions: dict[str, FunnelSession] = field(default_factory=dict)

    async def boot(self, session_id: str, boot: BootContext) -> FunnelSession:
        """Start a fresh load for a session id, replacing any previous one."""
        previous = self.sessions.pop(session_id, None)
        if previous is not None:
            previous.close()
        funnel = FunnelSession.create(
            self.api,
            self.store,
            boot,
            self.options,
            prefix=f"sm:{session_id}",
        )
        self.sessions[session_id] = funnel
        await funnel.boot()
        return funnel

    def get(self, session_id: str) -> FunnelSession | None:
        return self.sessions.get(session_id)

    def close(self) -> None:
        for funnel in self.sessions.values():
            funnel.close()
        self.sessions.clear()
