"""Step state machine for the intake wizard."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial

from intake_funnel.domain.session import SessionRecord
from intake_funnel.domain.steps import FlowState, FlowStep, StepKind
from intake_funnel.services import persistence as keys
from intake_funnel.services.persistence import PersistenceAdapter
from intake_funnel.services.view import FunnelView

_logger = logging.getLogger(__name__)

Proceed = Callable[[], Awaitable[bool]]
Interceptor = Callable[[str, Proceed], Awaitable[bool]]
StepListener = Callable[[FlowStep], Awaitable[None]]
StepGuard = Callable[[FlowStep, SessionRecord], bool]


@dataclass
class FlowController:
    """Owns the current step and gates transitions on session flags."""

    steps: list[FlowStep]
    session: SessionRecord
    persistence: PersistenceAdapter
    view: FunnelView | None = None
    guards: dict[StepKind, StepGuard] | None = None
    state: FlowState = field(init=False)
    _interceptors: list[Interceptor] = field(default_factory=list, init=False)
    _entered: list[StepListener] = field(default_factory=list, init=False)
    _exited: list[StepListener] = field(default_factory=list, init=False)
    _step_tasks: set[asyncio.Task] = field(default_factory=set, init=False)
    _started: bool = field(default=False, init=False)
    closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("A flow needs at least one step")
        self.state = FlowState(current_step_id=self.steps[0].id)
        if self.guards is None:
            self.guards = default_guards(self.steps)

    def current_step(self) -> FlowStep:
        return self.steps[self._position(self.state.current_step_id)]

    def step_by_id(self, step_id: str) -> FlowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def first_step_of(self, kind: StepKind) -> FlowStep | None:
        """Return the earliest step of a kind, if the topology has one."""
        for step in self.steps:
            if step.kind is kind:
                return step
        return None

    def question_steps(self) -> list[FlowStep]:
        return [step for step in self.steps if step.kind is StepKind.QUESTION]

    def is_last_step(self) -> bool:
        return self._position(self.state.current_step_id) == len(self.steps) - 1

    def can_advance(self) -> bool:
        """Return True when a forward transition would be accepted now."""
        if self.state.transitioning or self.is_last_step():
            return False
        return self._guard_allows(self.current_step())

    async def advance(self) -> bool:
        """Move one step forward; a no-op while transitioning or at the end."""
        if not self.can_advance():
            return False
        position = self._position(self.state.current_step_id)
        await self._transition(self.steps[position + 1])
        return True

    async def retreat(self) -> bool:
        """Move one step back, resetting the session when leaving identity behind."""
        position = self._position(self.state.current_step_id)
        if self.state.transitioning or position == 0:
            return False
        target = self.steps[position - 1]
        lead_capture = self.first_step_of(StepKind.LEAD_CAPTURE)
        boundary = lead_capture.order if lead_capture else 0
        if target.order < boundary:
            _logger.info("Returning before lead capture, resetting session")
            self.session.reset()
            self.persistence.clear()
        await self._transition(target)
        return True

    async def jump_to(self, step_id: str) -> bool:
        """Move directly to a step, bypassing guards."""
        target = self.step_by_id(step_id)
        if target is None:
            raise ValueError(f"Unknown step id: {step_id}")
        if self.state.transitioning:
            _logger.warning("Jump to %s ignored during a transition", step_id)
            return False
        await self._transition(target)
        return True

    async def restart(self) -> None:
        """Forget all progress and show the first step."""
        self.session.reset()
        self.persistence.clear()
        await self.jump_to(self.steps[0].id)

    async def request_advance(self) -> bool:
        """Run the interceptor chain for the current step, ending in advance()."""
        step_id = self.state.current_step_id
        proceed: Proceed = self.advance
        for interceptor in reversed(self._interceptors):
            proceed = partial(interceptor, step_id, proceed)
        return await proceed()

    def add_interceptor(self, interceptor: Interceptor) -> None:
        self._interceptors.append(interceptor)

    def on_entered(self, listener: StepListener) -> None:
        self._entered.append(listener)

    def on_exited(self, listener: StepListener) -> None:
        self._exited.append(listener)

    def track_step_task(self, task: asyncio.Task) -> asyncio.Task:
        """Tie a task to the current step; it is cancelled when the step exits."""
        self._step_tasks.add(task)
        task.add_done_callback(self._step_tasks.discard)
        return task

    def persist(self) -> None:
        """Mirror the current step and session flags."""
        if self.closed:
            _logger.debug("Ignoring persist on a closed flow")
            return
        self.persistence.set(keys.STEP_ID, self.state.current_step_id)
        self.persistence.save_session(self.session)

    async def _transition(self, target: FlowStep) -> None:
        self.state.transitioning = True
        try:
            if self._started:
                previous = self.current_step()
                self.cancel_step_tasks()
                for listener in self._exited:
                    await listener(previous)
            self._started = True
            self.state.current_step_id = target.id
            self.persist()
            _logger.info("Entered step %s", target.id)
            if self.view is not None:
                self.view.show_step(target)
            for listener in self._entered:
                await listener(target)
        finally:
            self.state.transitioning = False

    def close(self) -> None:
        """Stop step timers and ignore any later writes from orphaned work."""
        self.closed = True
        self.cancel_step_tasks()

    def cancel_step_tasks(self) -> None:
        """Cancel timers tied to the current step."""
        current = running_task()
        for task in list(self._step_tasks):
            if task is not current and not task.done():
                task.cancel()
        self._step_tasks.clear()

    def _guard_allows(self, step: FlowStep) -> bool:
        guard = (self.guards or {}).get(step.kind)
        return guard is None or guard(step, self.session)

    def _position(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise ValueError(f"Unknown step id: {step_id}")


def running_task() -> asyncio.Task | None:
    """Return the current task, or None when no event loop is running."""
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def default_guards(steps: list[FlowStep]) -> dict[StepKind, StepGuard]:
    """Build the per-kind predicates that must hold before leaving a step."""
    question_ids = [step.id for step in steps if step.kind is StepKind.QUESTION]
    last_question = question_ids[-1] if question_ids else None

    def question_answered(step: FlowStep, session: SessionRecord) -> bool:
        answer = session.answers.get(step.id)
        if answer in (None, "", []):
            return False
        return step.id != last_question or session.quiz_saved

    return {
        StepKind.LEAD_CAPTURE: lambda _, session: bool(session.lead_id)
        and session.otp_sent,
        StepKind.OTP_WAIT: lambda _, session: session.otp_sent,
        StepKind.OTP_VERIFY: lambda _, session: session.otp_verified,
        StepKind.IMAGE_CAPTURE: lambda _, session: session.image_uploaded
        or bool(session.user.image),
        StepKind.QUESTION: question_answered,
        StepKind.JOB_WAIT: lambda _, session: session.reading_generated,
        StepKind.RESULT: lambda _, __: False,
    }
