"""Tests for HTTP-based adapters."""

import asyncio
import json

import httpx
import pytest

from intake_funnel.adapters.funnel_api_client import HttpxFunnelApiClient
from intake_funnel.domain.errors import (
    AuthorizationError,
    BusinessRuleError,
    RejectedRequestError,
    TransientError,
)
from intake_funnel.domain.jobs import ReadingType
from intake_funnel.domain.session import Demographics

BASE_URL = "https://funnel.test/api/v1"
REFRESH_URL = "https://funnel.test/api/v1/nonce"


def _client(handler) -> HttpxFunnelApiClient:  # type: ignore[no-untyped-def]
    transport = httpx.MockTransport(handler)
    return HttpxFunnelApiClient(
        base_url=BASE_URL,
        nonce="nonce-1",
        http_client=httpx.AsyncClient(transport=transport),
        nonce_refresh_url=REFRESH_URL,
    )


def test_create_lead_sends_nonce_and_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/lead/create"
        assert request.headers["X-SM-Nonce"] == "nonce-1"
        payload = json.loads(request.content.decode())
        assert payload["email"] == "ada@example.com"
        assert payload["gdpr"] is True
        return httpx.Response(200, json={"success": True, "data": {"lead_id": "L1"}})

    client = _client(handler)

    data = asyncio.run(
        client.create_lead(
            name="Ada",
            email="ada@example.com",
            identity="woman",
            gdpr=True,
            age="30",
            age_range="",
        )
    )

    assert data == {"lead_id": "L1"}


def test_auth_failure_refreshes_nonce_and_retries_once() -> None:
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers["X-SM-Nonce"]))
        if str(request.url) == REFRESH_URL:
            return httpx.Response(
                200, json={"success": True, "data": {"nonce": "nonce-2"}}
            )
        if request.headers["X-SM-Nonce"] == "nonce-1":
            return httpx.Response(403, json={"success": False})
        return httpx.Response(200, json={"success": True})

    client = _client(handler)

    asyncio.run(client.send_code("L1", "ada@example.com"))

    assert client.nonce == "nonce-2"
    assert seen == [
        ("/api/v1/otp/send", "nonce-1"),
        ("/api/v1/nonce", "nonce-1"),
        ("/api/v1/otp/send", "nonce-2"),
    ]


def test_auth_failure_after_refresh_is_surfaced() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if str(request.url) == REFRESH_URL:
            return httpx.Response(
                200, json={"success": True, "data": {"nonce": "nonce-2"}}
            )
        return httpx.Response(401, json={"success": False})

    client = _client(handler)

    with pytest.raises(AuthorizationError):
        asyncio.run(client.verify_code("L1", "1234"))

    assert calls.count("/api/v1/otp/verify") == 2


def test_server_and_transport_failures_are_transient() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"success": False})

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError):
        asyncio.run(_client(failing).save_answers("L1", {"energy": "Calm"}))
    with pytest.raises(TransientError):
        asyncio.run(_client(broken).save_answers("L1", {"energy": "Calm"}))


def test_business_error_carries_redirect() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/reading/generate-paid"
        return httpx.Response(
            402,
            json={
                "success": False,
                "message": "You have no credits left.",
                "data": {
                    "error_code": "credits_exhausted",
                    "redirect_to": "https://shop.test/credits",
                    "redirect_delay_ms": 1500,
                },
            },
        )

    client = _client(handler)

    with pytest.raises(BusinessRuleError) as exc_info:
        asyncio.run(client.generate_report("L1", ReadingType.FULL))

    error = exc_info.value
    assert error.code == "credits_exhausted"
    assert error.redirect_to == "https://shop.test/credits"
    assert error.redirect_delay_ms == 1500
    assert error.message == "You have no credits left."


def test_rejected_code_keeps_server_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"success": False, "message": "Invalid verification code"}
        )

    with pytest.raises(RejectedRequestError) as exc_info:
        asyncio.run(_client(handler).verify_code("L1", "0000"))

    assert exc_info.value.message == "Invalid verification code"
    assert exc_info.value.status_code == 400


def test_flow_state_failures_are_ignored() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"success": False})

    client = _client(handler)

    assert asyncio.run(client.get_flow_state()) is None
    assert asyncio.run(client.set_flow_state({"step_id": "quiz1"})) is None


def test_fetch_questions_sends_demographics() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.params["age_range"] == "age_26_35"
        assert request.url.params["gender"] == "female"
        assert request.url.params["lead_id"] == "L1"
        return httpx.Response(
            200,
            json={"success": True, "questions": [{"id": "q1"}, "skip-me"]},
        )

    questions = asyncio.run(
        _client(handler).fetch_questions(
            "L1", Demographics(age_range="age_26_35", gender="female")
        )
    )

    assert questions == [{"id": "q1"}]


def test_upload_image_returns_reference() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content.decode())
        assert payload["image"].startswith("data:image/jpeg")
        return httpx.Response(
            200,
            json={"success": True, "data": {"image_url": "https://cdn.test/a.jpg"}},
        )

    reference = asyncio.run(
        _client(handler).upload_image("L1", "data:image/jpeg;base64,AAAA")
    )

    assert reference == "https://cdn.test/a.jpg"


def test_poll_status_returns_raw_envelope() -> None:
    envelope = {"success": True, "data": {"status": "processing"}}

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content.decode())
        assert payload == {"lead_id": "L1", "reading_type": "aura_teaser"}
        return httpx.Response(200, json=envelope)

    body = asyncio.run(_client(handler).poll_status("L1", ReadingType.TEASER))

    assert body == envelope
