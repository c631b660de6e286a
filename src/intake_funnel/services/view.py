"""Rendering boundary for the funnel."""

import re
from dataclasses import dataclass, field
from typing import Protocol

from intake_funnel.domain.jobs import ReadingResult
from intake_funnel.domain.steps import FlowStep

_RESULT_CONTAINER = re.compile(
    r"""id\s*=\s*["'](?:aura|palm)-reading-result["']""", re.IGNORECASE
)
_BODY = re.compile(r"<body[^>]*>(.*)</body>", re.IGNORECASE | re.DOTALL)


class FunnelView(Protocol):
    """Interface to whatever renders the wizard."""

    def show_step(self, step: FlowStep) -> None:
        """Render a step."""

    def set_busy(self, busy: bool) -> None:
        """Toggle the submit affordance loading state."""

    def show_toast(self, message: str, level: str = "error") -> None:
        """Show a transient user-visible message."""

    def redirect(self, url: str, delay_ms: int = 0) -> None:
        """Move the user out of the flow."""

    def render_report(self, result: ReadingResult) -> bool:
        """Inject a report; return True when the terminal container exists."""

    def has_terminal_artifact(self) -> bool:
        """Return True when a rendered report is present in markup."""

    def update_loading_note(self, message: str) -> None:
        """Replace the loading subtext."""

    def show_reading_error(self, message: str, retry_remaining: int | None) -> None:
        """Show the generation error state with a retry affordance."""

    def show_upsell(self, reason: str) -> None:
        """Open the upsell modal."""

    def reveal_section(self, key: str) -> None:
        """Visually unlock a report section."""

    def update_unlock_counter(self, remaining: int, max_free: int) -> None:
        """Refresh unlock counters."""


@dataclass(frozen=True)
class ViewEffect:
    """A single recorded rendering instruction."""

    kind: str
    payload: dict[str, object] = field(default_factory=dict)


@dataclass
class BufferedView(FunnelView):
    """View that records effects so a host can replay them."""

    effects: list[ViewEffect] = field(default_factory=list)
    artifact_present: bool = False

    def show_step(self, step: FlowStep) -> None:
        self._record(
            "step", step_id=step.id, step_kind=step.kind.value, order=step.order
        )

    def set_busy(self, busy: bool) -> None:
        self._record("busy", busy=busy)

    def show_toast(self, message: str, level: str = "error") -> None:
        self._record("toast", message=message, level=level)

    def redirect(self, url: str, delay_ms: int = 0) -> None:
        self._record("redirect", url=url, delay_ms=delay_ms)

    def render_report(self, result: ReadingResult) -> bool:
        html = extract_body(result.reading_html)
        self.artifact_present = has_result_container(html)
        self._record(
            "report",
            html=html,
            reading_id=result.reading_id,
            reading_type=result.reading_type.value,
        )
        return self.artifact_present

    def has_terminal_artifact(self) -> bool:
        return self.artifact_present

    def update_loading_note(self, message: str) -> None:
        self._record("loading_note", message=message)

    def show_reading_error(self, message: str, retry_remaining: int | None) -> None:
        self._record("reading_error", message=message, retry_remaining=retry_remaining)

    def show_upsell(self, reason: str) -> None:
        self._record("upsell", reason=reason)

    def reveal_section(self, key: str) -> None:
        self._record("reveal", key=key)

    def update_unlock_counter(self, remaining: int, max_free: int) -> None:
        self._record("unlock_counter", remaining=remaining, max_free=max_free)

    def drain(self) -> list[ViewEffect]:
        """Return and forget the recorded effects."""
        drained = list(self.effects)
        self.effects.clear()
        return drained

    def _record(self, kind: str, **payload: object) -> None:
        self.effects.append(ViewEffect(kind=kind, payload=payload))


def extract_body(html: str) -> str:
    """Return the body content when given a full HTML document."""
    match = _BODY.search(html)
    return match.group(1) if match else html


def has_result_container(html: str) -> bool:
    """Return True when markup contains the report result container."""
    return bool(_RESULT_CONTAINER.search(html))
