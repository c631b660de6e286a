"""Shared test fixtures."""

import asyncio
from dataclasses import dataclass, field

import pytest

from intake_funnel.adapters.funnel_api_client import FunnelApi
from intake_funnel.config import Settings
from intake_funnel.containers import AppContainer
from intake_funnel.domain.errors import FunnelError
from intake_funnel.domain.jobs import ReadingType
from intake_funnel.domain.session import Demographics
from intake_funnel.services.funnel import FunnelOptions, FunnelRegistry
from intake_funnel.services.persistence import InMemorySnapshotStore

REPORT_HTML = (
    '<div id="aura-reading-result" data-reading-id="reading-1" '
    'data-lead-id="lead-1" data-unlock-count="0" data-max-free-unlocks="2" '
    'data-offerings-url="https://shop.test/offerings">'
    '<section data-lock="overview"><p>Your aura</p></section>'
    '<section data-lock="love" class="locked"><p>Love</p></section>'
    '<section data-lock="career" class="locked"><p>Career</p></section>'
    '<section data-lock="purpose" class="locked"><p>Purpose</p></section>'
    "</div>"
)

QUESTIONS = [
    {
        "id": "q_energy",
        "question": "How is your energy today?",
        "type": "single_choice",
        "options": [{"label": "Calm"}, {"label": "Restless"}],
        "category_map": ["balance", "fire"],
    },
    {
        "id": "q_focus",
        "question": "What do you focus on?",
        "type": "multi_select",
        "options": ["Love", "Career", "Health"],
    },
    {
        "id": "q_story",
        "question": "Describe a recent turning point.",
        "type": "textarea",
        "category": "reflection",
    },
    {
        "id": "q_hope",
        "question": "How hopeful do you feel?",
        "type": "rating",
        "min": 1,
        "max": 10,
    },
]


def processing() -> dict[str, object]:
    return {"success": True, "data": {"status": "processing"}}


def ready(html: str = REPORT_HTML) -> dict[str, object]:
    return {
        "success": True,
        "data": {"status": "ready", "reading_html": html, "reading_id": "reading-1"},
    }


async def instant_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@dataclass
class FakeFunnelApi(FunnelApi):
    """Fake funnel backend that records calls and replays scripted answers."""

    calls: list[tuple[str, dict[str, object]]] = field(default_factory=list)
    errors: dict[str, FunnelError] = field(default_factory=dict)
    lead_id: str = "lead-1"
    lead_response: dict[str, object] | None = None
    current_lead_response: dict[str, object] = field(default_factory=dict)
    questions: list[dict[str, object]] = field(
        default_factory=lambda: [dict(item) for item in QUESTIONS]
    )
    generate_response: dict[str, object] = field(
        default_factory=lambda: {"status": "processing"}
    )
    poll_responses: list[dict[str, object]] = field(default_factory=list)
    report: dict[str, object] | None = None
    flow_state: dict[str, object] | None = None
    magic_link_response: dict[str, object] = field(default_factory=dict)
    unlock_responses: dict[str, dict[str, object]] = field(default_factory=dict)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    async def create_lead(  # noqa: PLR0913
        self,
        *,
        name: str,
        email: str,
        identity: str,
        gdpr: bool,
        age: str,
        age_range: str,
    ) -> dict[str, object]:
        await self._record("create_lead", name=name, email=email, identity=identity)
        if self.lead_response is not None:
            return self.lead_response
        return {"lead_id": self.lead_id}

    async def current_lead(self) -> dict[str, object]:
        await self._record("current_lead")
        return self.current_lead_response

    async def send_code(self, lead_id: str, email: str) -> None:
        await self._record("send_code", lead_id=lead_id, email=email)

    async def verify_code(self, lead_id: str, code: str) -> None:
        await self._record("verify_code", lead_id=lead_id, code=code)

    async def sync_subscriber(self, lead_id: str) -> None:
        await self._record("sync_subscriber", lead_id=lead_id)

    async def upload_image(self, lead_id: str, image: str) -> str:
        await self._record("upload_image", lead_id=lead_id)
        return "https://cdn.test/aura/lead-1.jpg"

    async def fetch_questions(
        self, lead_id: str | None, demographics: Demographics
    ) -> list[dict[str, object]]:
        await self._record(
            "fetch_questions",
            lead_id=lead_id,
            age_range=demographics.age_range,
            gender=demographics.gender,
        )
        return self.questions

    async def save_answers(self, lead_id: str, answers: dict[str, object]) -> None:
        await self._record("save_answers", lead_id=lead_id, answers=answers)

    async def generate_report(
        self, lead_id: str, reading_type: ReadingType
    ) -> dict[str, object]:
        await self._record(
            "generate_report", lead_id=lead_id, reading_type=reading_type
        )
        return self.generate_response

    async def poll_status(
        self, lead_id: str, reading_type: ReadingType
    ) -> dict[str, object]:
        await self._record("poll_status", lead_id=lead_id)
        if len(self.poll_responses) > 1:
            return self.poll_responses.pop(0)
        if self.poll_responses:
            return self.poll_responses[0]
        return processing()

    async def get_by_lead(
        self, lead_id: str, reading_type: ReadingType, token: str | None = None
    ) -> dict[str, object]:
        await self._record("get_by_lead", lead_id=lead_id, token=token)
        if self.report is None:
            return {"exists": False}
        return self.report

    async def get_flow_state(self) -> dict[str, object] | None:
        await self._record("get_flow_state")
        return self.flow_state

    async def set_flow_state(
        self, updates: dict[str, object]
    ) -> dict[str, object] | None:
        await self._record("set_flow_state", **updates)
        return updates

    async def verify_magic_link(self, lead_id: str, token: str) -> dict[str, object]:
        await self._record("verify_magic_link", lead_id=lead_id, token=token)
        return self.magic_link_response

    async def unlock_section(
        self, reading_id: str, lead_id: str | None, section: str
    ) -> dict[str, object]:
        await self._record("unlock_section", reading_id=reading_id, section=section)
        return self.unlock_responses.get(section, {"status": "unlocked"})

    async def _record(self, call: str, **payload: object) -> None:
        self.calls.append((call, payload))
        await asyncio.sleep(0)
        error = self.errors.get(call)
        if error is not None:
            raise error


@pytest.fixture
def funnel_api() -> FakeFunnelApi:
    return FakeFunnelApi()


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def options() -> FunnelOptions:
    return FunnelOptions(
        offerings_url="https://shop.test/offerings",
        poll_max_attempts=5,
        poll_interval_seconds=0,
        loading_message_interval_seconds=60.0,
        otp_wait_seconds=60.0,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url="https://funnel.test/api/v1",
        nonce="nonce-1",
        offerings_url="https://shop.test/offerings",
        poll_interval_seconds=0,
        poll_max_attempts=5,
        loading_message_interval_seconds=60.0,
        otp_wait_seconds=60.0,
    )


@pytest.fixture
def container(
    settings: Settings,
    funnel_api: FakeFunnelApi,
    snapshot_store: InMemorySnapshotStore,
    options: FunnelOptions,
) -> AppContainer:
    registry = FunnelRegistry(api=funnel_api, store=snapshot_store, options=options)

    async def close_resources() -> None:
        registry.close()

    return AppContainer(
        settings=settings,
        funnel_api=funnel_api,
        snapshot_store=snapshot_store,
        registry=registry,
        close_resources=close_resources,
    )
