"""Paywalled section unlocks on the rendered report."""

import asyncio
import logging
import re
from dataclasses import dataclass, field

from intake_funnel.adapters.funnel_api_client import FunnelApi
from intake_funnel.domain.errors import FunnelError, InputValidationError
from intake_funnel.domain.jobs import ReadingResult
from intake_funnel.domain.unlocks import UnlockState, UnlockStatus, normalize_unlock_key
from intake_funnel.services import persistence as keys
from intake_funnel.services.persistence import PersistenceAdapter
from intake_funnel.services.view import FunnelView

_logger = logging.getLogger(__name__)

_CONTAINER_TAG = re.compile(
    r"""<[^>]*\bid\s*=\s*["'](?:aura|palm)-reading-result["'][^>]*>""", re.IGNORECASE
)
_DATA_ATTRIBUTE = re.compile(
    r"""data-([a-z0-9-]+)\s*=\s*["']([^"']*)["']""", re.IGNORECASE
)
_OPEN_SECTION = re.compile(
    r"""<[^>]*\bdata-lock\s*=\s*["']([^"']+)["'][^>]*>""", re.IGNORECASE
)
_LOCKED_CLASS = re.compile(r"""class\s*=\s*["'][^"']*\blocked\b""", re.IGNORECASE)


@dataclass
class UnlockLedger:
    """Tracks revealed sections and reconciles the free unlock counter."""

    api: FunnelApi
    view: FunnelView
    persistence: PersistenceAdapter
    reading_id: str | None = None
    lead_id: str | None = None
    offerings_url: str = ""
    return_url: str = ""
    has_full_access: bool = False
    state: UnlockState = field(default_factory=UnlockState)
    _inflight: dict[str, asyncio.Future] = field(default_factory=dict, init=False)

    @classmethod
    def from_report(  # noqa: PLR0913
        cls,
        api: FunnelApi,
        view: FunnelView,
        persistence: PersistenceAdapter,
        result: ReadingResult,
        offerings_url: str = "",
        max_free: int = 2,
        return_url: str = "",
    ) -> "UnlockLedger":
        """Build a ledger from the markup of a rendered report."""
        attributes = report_attributes(result.reading_html)
        unlocked = {
            normalize_unlock_key(key)
            for key in attributes.get("unlocked-sections", "").split(",")
            if key.strip()
        }
        unlocked.update(open_sections(result.reading_html))
        ledger = cls(
            api=api,
            view=view,
            persistence=persistence,
            reading_id=attributes.get("reading-id") or result.reading_id,
            lead_id=attributes.get("lead-id") or result.lead_id,
            offerings_url=attributes.get("offerings-url", "").strip() or offerings_url,
            return_url=return_url,
            has_full_access=attributes.get("has-full-access") == "1",
            state=UnlockState(
                unlocked_keys=unlocked,
                unlock_count=_as_int(attributes.get("unlock-count"), 0),
                max_free=_as_int(attributes.get("max-free-unlocks"), max_free),
            ),
        )
        for key in sorted(unlocked):
            view.reveal_section(key)
        ledger.refresh_counters()
        return ledger

    async def request_unlock(self, key: str) -> UnlockStatus:
        """Unlock one section; repeated or concurrent calls share one request."""
        section = normalize_unlock_key(key or "")
        if not section:
            raise InputValidationError("Unlock key missing.")
        if section in self.state.unlocked_keys:
            _logger.info("Section already unlocked: %s", section)
            return UnlockStatus.ALREADY_UNLOCKED
        if not self.reading_id:
            _logger.error("Missing reading id, cannot unlock %s", section)
            self._redirect_to_offerings()
            return UnlockStatus.REDIRECTED
        future = self._inflight.get(section)
        if future is None:
            future = asyncio.ensure_future(self._unlock(section))
            self._inflight[section] = future
            future.add_done_callback(lambda _: self._inflight.pop(section, None))
        return await future

    def status_text(self) -> str:
        remaining = self.state.remaining
        if remaining <= 0:
            return "You've reached your unlock limit"
        if remaining == 1:
            return "You have 1 unlock remaining"
        return f"You have {remaining} unlocks remaining"

    def badge_text(self) -> str:
        return (
            f"Free unlocks: {self.state.remaining} of {self.state.max_free} remaining"
        )

    def refresh_counters(self) -> None:
        if self.has_full_access:
            return
        self.view.update_unlock_counter(self.state.remaining, self.state.max_free)

    async def _unlock(self, section: str) -> UnlockStatus:
        try:
            data = await self.api.unlock_section(
                str(self.reading_id), self.lead_id, section
            )
            status = UnlockStatus(str(data.get("status") or ""))
        except (FunnelError, ValueError) as exc:
            _logger.warning("Unlock request for %s failed: %s", section, exc)
            self._redirect_to_offerings()
            return UnlockStatus.REDIRECTED

        if status is UnlockStatus.UNLOCKED:
            self._grant(section)
            self.state.unlock_count += 1
            self._reconcile(data)
            self.refresh_counters()
        elif status is UnlockStatus.ALREADY_UNLOCKED:
            self._grant(section)
            self._reconcile(data)
        elif status is UnlockStatus.UNLOCKED_ALL:
            self.has_full_access = True
            self._grant(section)
        elif status in {UnlockStatus.LIMIT_REACHED, UnlockStatus.PREMIUM_LOCKED}:
            _logger.info("Unlock of %s refused: %s", section, status)
            self._reconcile(data)
            self.view.show_upsell(status.value)
        else:
            self._redirect_to_offerings()
        return status

    def _grant(self, section: str) -> None:
        if section not in self.state.unlocked_keys:
            self.state.unlocked_keys.add(section)
            self.view.reveal_section(section)

    def _reconcile(self, data: dict[str, object]) -> None:
        remaining = data.get("unlocks_remaining")
        count = data.get("unlock_count")
        if isinstance(remaining, int):
            self.state.unlock_count = max(0, self.state.max_free - remaining)
        elif isinstance(count, int):
            self.state.unlock_count = count

    def _redirect_to_offerings(self) -> None:
        destination = self.offerings_url.strip()
        if not destination:
            _logger.error("Redirect suppressed, offerings url missing")
            return
        self.persistence.set(keys.PAYWALL_REDIRECT, True)
        self.persistence.set(keys.PAYWALL_RETURN_URL, self.return_url)
        self.view.redirect(destination)


def report_attributes(html: str) -> dict[str, str]:
    """Return the data attributes carried by the report result container."""
    match = _CONTAINER_TAG.search(html)
    if match is None:
        return {}
    tag = match.group(0)
    return {name.lower(): value for name, value in _DATA_ATTRIBUTE.findall(tag)}


def open_sections(html: str) -> set[str]:
    """Return lockable section keys rendered without the locked class."""
    sections: set[str] = set()
    for match in _OPEN_SECTION.finditer(html):
        if not _LOCKED_CLASS.search(match.group(0)):
            sections.add(normalize_unlock_key(match.group(1)))
    return sections


def _as_int(raw: str | None, default: int) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        return default
