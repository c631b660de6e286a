"""Tests for boot-time resumption."""

import asyncio

from intake_funnel.domain.errors import RejectedRequestError
from intake_funnel.domain.session import SessionContext
from intake_funnel.services import persistence as keys
from intake_funnel.services.funnel import FunnelOptions, FunnelSession
from intake_funnel.services.persistence import InMemorySnapshotStore, PersistenceAdapter
from intake_funnel.services.resumption import BootContext, ResolutionKind
from tests.conftest import REPORT_HTML, FakeFunnelApi
from tests.test_task_orchestrator import _reach_image_capture, _reach_job_wait

EXISTING_REPORT = {
    "exists": True,
    "reading_html": REPORT_HTML,
    "reading_id": "reading-1",
    "reading_type": "aura_teaser",
}


def _funnel(
    api: FakeFunnelApi,
    options: FunnelOptions,
    store: InMemorySnapshotStore,
    boot: BootContext | None = None,
) -> FunnelSession:
    return FunnelSession.create(api, store, boot or BootContext(), options)


def test_fresh_load_starts_at_first_step(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel = _funnel(funnel_api, options, snapshot_store)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.FRESH
    assert resolution.step_id == "welcome"
    assert funnel_api.calls == []


def test_reload_restores_step_and_flags_without_calls(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    first = _funnel(funnel_api, options, snapshot_store)

    async def run_first() -> None:
        await _reach_image_capture(first)
        await first.settle()

    asyncio.run(run_first())
    calls_before = list(funnel_api.calls)

    reloaded = _funnel(funnel_api, options, snapshot_store)
    resolution = asyncio.run(reloaded.boot())

    assert resolution.kind is ResolutionKind.RESUMED
    assert reloaded.controller.current_step().id == "palmPhoto"
    assert reloaded.session.lead_id == "lead-1"
    assert reloaded.session.otp_sent
    assert reloaded.session.otp_verified
    assert not reloaded.session.image_uploaded
    assert funnel_api.calls == calls_before


def test_reload_on_result_renders_with_only_existence_check(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.generate_response = {"reading_html": REPORT_HTML, "reading_id": "r-1"}
    first = _funnel(funnel_api, options, snapshot_store)

    async def run_first() -> None:
        await _reach_job_wait(first)
        await first.settle()

    asyncio.run(run_first())
    assert first.controller.current_step().id == "result"
    funnel_api.calls.clear()
    funnel_api.report = dict(EXISTING_REPORT)

    reloaded = _funnel(
        funnel_api, options, snapshot_store, BootContext(params={"sm_report": "1"})
    )
    resolution = asyncio.run(reloaded.boot())

    assert resolution.kind is ResolutionKind.REPORT
    assert funnel_api.names() == ["get_by_lead"]
    assert reloaded.controller.current_step().id == "result"
    assert [e.kind for e in reloaded.view.drain()].count("report") == 1
    assert reloaded.ledger is not None


def test_report_already_rendered_is_a_noop(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel = _funnel(
        funnel_api, options, snapshot_store, BootContext(params={"sm_report": "1"})
    )
    funnel.view.artifact_present = True

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.HANDLED
    assert funnel_api.calls == []


def test_report_view_beats_magic_link(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.report = dict(EXISTING_REPORT)
    boot = BootContext(
        params={"sm_report": "1", "sm_magic": "1", "token": "t", "lead_id": "lead-1"}
    )
    funnel = _funnel(funnel_api, options, snapshot_store, boot)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.REPORT
    assert funnel_api.count("verify_magic_link") == 0
    assert funnel.persistence.get(keys.READING_TOKEN) == "t"


def test_stale_loaded_flag_is_cleared(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    persistence = PersistenceAdapter(store=snapshot_store)
    persistence.set(keys.READING_LOADED, True)
    persistence.set(keys.READING_LEAD_ID, "lead-1")
    persistence.set(keys.STEP_ID, "quiz2")
    funnel = _funnel(funnel_api, options, snapshot_store)

    resolution = asyncio.run(funnel.boot())

    assert funnel_api.names() == ["get_by_lead"]
    assert persistence.get(keys.READING_LOADED) is None
    assert persistence.get(keys.READING_LEAD_ID) is None
    assert resolution.kind is ResolutionKind.RESUMED
    assert resolution.step_id == "quiz2"


def test_persisted_result_step_without_report_is_corruption(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    persistence = PersistenceAdapter(store=snapshot_store)
    persistence.set(keys.STEP_ID, "result")
    persistence.set(keys.EMAIL, "ada@example.com")
    funnel = _funnel(funnel_api, options, snapshot_store)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.FRESH
    assert funnel.controller.current_step().id == "welcome"
    assert persistence.get(keys.EMAIL) is None


def test_reload_during_generation_keeps_progress_and_restarts_job(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    first = _funnel(funnel_api, options, snapshot_store)
    reloaded = _funnel(funnel_api, options, snapshot_store)

    async def scenario() -> tuple[ResolutionKind, int]:
        await _reach_job_wait(first)
        first.close()
        generated = funnel_api.count("generate_report")
        resolution = await reloaded.boot()
        session = reloaded.session
        assert session.lead_id == "lead-1"
        assert session.otp_verified
        assert session.image_uploaded
        assert session.quiz_saved
        await reloaded.settle()
        return resolution.kind, funnel_api.count("generate_report") - generated

    kind, new_jobs = asyncio.run(scenario())

    assert kind is ResolutionKind.RESUMED
    assert reloaded.controller.current_step().id == "resultLoading"
    assert funnel_api.count("get_by_lead") == 1
    assert new_jobs == 1


def test_reload_during_generation_shows_finished_report(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    first = _funnel(funnel_api, options, snapshot_store)
    reloaded = _funnel(funnel_api, options, snapshot_store)

    async def scenario() -> ResolutionKind:
        await _reach_job_wait(first)
        first.close()
        funnel_api.report = EXISTING_REPORT
        return (await reloaded.boot()).kind

    assert asyncio.run(scenario()) is ResolutionKind.REPORT
    assert reloaded.controller.current_step().id == "result"
    assert reloaded.session.lead_id == "lead-1"


def test_unknown_persisted_step_restarts(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    PersistenceAdapter(store=snapshot_store).set(keys.STEP_ID, "legacyStep")
    funnel = _funnel(funnel_api, options, snapshot_store)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.FRESH
    assert resolution.step_id == "welcome"


def test_magic_link_jumps_to_backend_step(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.magic_link_response = {
        "lead": {"id": "lead-7", "email": "grace@example.com", "name": "Grace"},
        "reading": {"exists": False},
        "flow": {"step_id": "quiz", "status": "otp_verified"},
    }
    boot = BootContext(params={"sm_magic": "1", "token": "tok", "lead_id": "lead-7"})
    funnel = _funnel(funnel_api, options, snapshot_store, boot)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.MAGIC_LINK
    assert resolution.step_id == "quiz1"
    assert funnel.persistence.context is SessionContext.DEEP_LINK
    assert funnel.session.lead_id == "lead-7"
    assert funnel.session.otp_verified
    assert funnel.session.user.email == "grace@example.com"
    levels = [e.payload["level"] for e in funnel.view.drain() if e.kind == "toast"]
    assert levels == ["info", "success"]


def test_magic_link_with_report_shows_it(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.magic_link_response = {
        "lead": {"id": "lead-7"},
        "reading": dict(EXISTING_REPORT),
        "flow": {"step_id": "result", "status": "reading_ready"},
    }
    boot = BootContext(params={"sm_magic": "1", "token": "tok", "lead_id": "lead-7"})
    funnel = _funnel(funnel_api, options, snapshot_store, boot)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.MAGIC_LINK
    assert funnel.controller.current_step().id == "result"
    assert funnel.persistence.get(keys.READING_TOKEN) == "tok"


def test_magic_link_failure_resets_to_first_step(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    deep_link = PersistenceAdapter(
        store=snapshot_store, context=SessionContext.DEEP_LINK
    )
    deep_link.set(keys.STEP_ID, "quiz3")
    funnel_api.errors["verify_magic_link"] = RejectedRequestError("Link expired.")
    boot = BootContext(params={"sm_magic": "1", "token": "tok", "lead_id": "lead-7"})
    funnel = _funnel(funnel_api, options, snapshot_store, boot)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.RESET
    assert funnel.controller.current_step().id == "welcome"
    assert funnel.session.lead_id is None
    assert deep_link.get(keys.STEP_ID) == "welcome"
    messages = [e.payload["message"] for e in funnel.view.drain() if e.kind == "toast"]
    assert "Link expired. Starting over..." in messages


def test_reload_loop_is_halted(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    kinds = []
    for _ in range(5):
        funnel = _funnel(funnel_api, options, snapshot_store)
        funnel.resolver.clock_ms = lambda: 1_000
        kinds.append(asyncio.run(funnel.boot()).kind)

    assert kinds[-1] is ResolutionKind.HALTED
    assert ResolutionKind.HALTED not in kinds[:-1]


def test_start_new_with_complete_profile_skips_to_image(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.current_lead_response = {
        "lead": {"id": "lead-5", "name": "Ada", "email": "ada@example.com"},
        "profile_complete": True,
    }
    boot = BootContext(params={"start_new": "1"}, authenticated=True)
    funnel = _funnel(funnel_api, options, snapshot_store, boot)

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.START_NEW
    assert resolution.step_id == "palmPhoto"
    assert funnel.session.lead_id == "lead-5"
    assert funnel.session.otp_verified
    assert funnel.persistence.context is SessionContext.AUTHENTICATED


def test_start_new_with_incomplete_profile_asks_for_details(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.current_lead_response = {
        "lead": {"id": "lead-5", "email": "ada@example.com"},
        "profile_complete": False,
        "missing_fields": ["name", "gdpr"],
    }
    boot = BootContext(params={"start_new": "1"}, authenticated=True)
    funnel = _funnel(funnel_api, options, snapshot_store, boot)

    resolution = asyncio.run(funnel.boot())

    assert resolution.step_id == "leadCapture"
    assert funnel.session.lead_id is None
    assert funnel.session.user.email == "ada@example.com"


def test_authenticated_load_follows_flow_state(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.flow_state = {
        "step_id": "quiz2",
        "lead_id": "lead-3",
        "status": "otp_verified",
    }
    funnel = _funnel(
        funnel_api, options, snapshot_store, BootContext(authenticated=True)
    )

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.FLOW_STATE
    assert resolution.step_id == "quiz2"
    assert funnel.session.lead_id == "lead-3"


def test_flow_state_never_lands_on_terminal_step_without_report(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel_api.flow_state = {"step_id": "resultLoading", "status": "quiz_completed"}
    funnel = _funnel(
        funnel_api, options, snapshot_store, BootContext(authenticated=True)
    )

    resolution = asyncio.run(funnel.boot())

    assert resolution.kind is ResolutionKind.FRESH
    assert funnel.controller.current_step().id == "welcome"


def test_page_show_restore_is_noop_when_report_present(
    funnel_api: FakeFunnelApi,
    options: FunnelOptions,
    snapshot_store: InMemorySnapshotStore,
) -> None:
    funnel = _funnel(
        funnel_api, options, snapshot_store, BootContext(params={"sm_report": "1"})
    )
    funnel.view.artifact_present = True

    async def scenario() -> list[object]:
        await funnel.boot()
        not_persisted = await funnel.page_show(False)
        persisted = await funnel.page_show(True)
        return [not_persisted, persisted.kind if persisted else None]

    assert asyncio.run(scenario()) == [None, ResolutionKind.HANDLED]
    assert funnel_api.calls == []
