"""Domain models for the wizard step topology."""

from dataclasses import dataclass
from enum import StrEnum


class StepKind(StrEnum):
    """Kinds of wizard steps."""

    IDENTITY = "identity"
    LEAD_CAPTURE = "leadCapture"
    OTP_WAIT = "otpWait"
    OTP_VERIFY = "otpVerify"
    IMAGE_CAPTURE = "imageCapture"
    QUESTION = "question"
    JOB_WAIT = "jobWait"
    RESULT = "result"


@dataclass(frozen=True)
class FlowStep:
    """Represents one node of the fixed wizard sequence."""

    id: str
    kind: StepKind
    order: int


@dataclass
class FlowState:
    """Current position in the wizard."""

    current_step_id: str
    transitioning: bool = False


def build_steps(definitions: list[tuple[str, StepKind]]) -> list[FlowStep]:
    """Build an ordered step list, rejecting duplicate ids."""
    seen: set[str] = set()
    steps: list[FlowStep] = []
    for order, (step_id, kind) in enumerate(definitions):
        if step_id in seen:
            raise ValueError(f"Duplicate step id: {step_id}")
        seen.add(step_id)
        steps.append(FlowStep(id=step_id, kind=kind, order=order))
    if not steps:
        raise ValueError("A flow needs at least one step")
    return steps


DEFAULT_STEPS: list[FlowStep] = build_steps(
    [
        ("welcome", StepKind.IDENTITY),
        ("leadCapture", StepKind.LEAD_CAPTURE),
        ("emailLoading", StepKind.OTP_WAIT),
        ("emailVerification", StepKind.OTP_VERIFY),
        ("palmPhoto", StepKind.IMAGE_CAPTURE),
        ("quiz1", StepKind.QUESTION),
        ("quiz2", StepKind.QUESTION),
        ("quiz3", StepKind.QUESTION),
        ("quiz4", StepKind.QUESTION),
        ("resultLoading", StepKind.JOB_WAIT),
        ("result", StepKind.RESULT),
    ]
)
