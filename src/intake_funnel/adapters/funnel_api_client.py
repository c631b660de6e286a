"""Funnel backend API client adapter."""

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from intake_funnel.domain.errors import (
    BUSINESS_CODES,
    AuthorizationError,
    BusinessRuleError,
    FunnelError,
    RejectedRequestError,
    TransientError,
)
from intake_funnel.domain.jobs import ReadingType
from intake_funnel.domain.session import Demographics

_AUTH_STATUSES = {401, 403}
_TOO_MANY_REQUESTS = 429

_logger = logging.getLogger(__name__)


class FunnelApi(Protocol):
    """Interface for the funnel backend."""

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
        """Create a lead; the data may carry an existing report instead."""

    async def current_lead(self) -> dict[str, object]:
        """Return the authenticated user's lead profile."""

    async def send_code(self, lead_id: str, email: str) -> None:
        """Send a one-time code to the lead's email."""

    async def verify_code(self, lead_id: str, code: str) -> None:
        """Verify a one-time code."""

    async def sync_subscriber(self, lead_id: str) -> None:
        """Push the verified lead to the mailing list."""

    async def upload_image(self, lead_id: str, image: str) -> str:
        """Upload the captured image and return its reference."""

    async def fetch_questions(
        self, lead_id: str | None, demographics: Demographics
    ) -> list[dict[str, object]]:
        """Return the dependent question list for the demographics."""

    async def save_answers(self, lead_id: str, answers: dict[str, object]) -> None:
        """Persist questionnaire answers."""

    async def generate_report(
        self, lead_id: str, reading_type: ReadingType
    ) -> dict[str, object]:
        """Request report generation; data is content or a processing marker."""

    async def poll_status(
        self, lead_id: str, reading_type: ReadingType
    ) -> dict[str, object]:
        """Return the raw job status envelope."""

    async def get_by_lead(
        self, lead_id: str, reading_type: ReadingType, token: str | None = None
    ) -> dict[str, object]:
        """Return an existing report for a lead, if any."""

    async def get_flow_state(self) -> dict[str, object] | None:
        """Return the authoritative flow state."""

    async def set_flow_state(
        self, updates: dict[str, object]
    ) -> dict[str, object] | None:
        """Write through a flow state update."""

    async def verify_magic_link(self, lead_id: str, token: str) -> dict[str, object]:
        """Verify a magic link and return lead, report and flow snapshots."""

    async def unlock_section(
        self, reading_id: str, lead_id: str | None, section: str
    ) -> dict[str, object]:
        """Unlock a paywalled section and return its status data."""


@dataclass
class HttpxFunnelApiClient(FunnelApi):
    """Funnel backend client implemented with httpx."""

    base_url: str
    nonce: str
    http_client: httpx.AsyncClient
    nonce_refresh_url: str | None = None
    timeout: float = 15.0
    _refreshing: bool = field(default=False, init=False, repr=False)

    @classmethod
    def create(
        cls,
        base_url: str,
        nonce: str,
        nonce_refresh_url: str | None = None,
        timeout: float = 15.0,
    ) -> "HttpxFunnelApiClient":
        """Create a backend client with a managed httpx session."""
        return cls(
            base_url=base_url.rstrip("/"),
            nonce=nonce,
            http_client=httpx.AsyncClient(),
            nonce_refresh_url=nonce_refresh_url,
            timeout=timeout,
        )

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
        """Create a lead using the lead/create endpoint."""
        body = await self._request(
            "POST",
            "lead/create",
            payload={
                "name": name,
                "email": email,
                "identity": identity,
                "gdpr": gdpr,
                "age": age,
                "age_range": age_range,
            },
        )
        return _ensure_data(body, "Invalid response from lead creation")

    async def current_lead(self) -> dict[str, object]:
        """Load the logged-in profile for a start-new flow."""
        body = await self._request("GET", "lead/current", params={"start_new": "1"})
        return _ensure_data(body, "Unable to load your profile.")

    async def send_code(self, lead_id: str, email: str) -> None:
        """Send a verification code."""
        body = await self._request(
            "POST", "otp/send", payload={"lead_id": lead_id, "email": email}
        )
        _ensure_success(body, "Failed to send verification code. Please try again.")

    async def verify_code(self, lead_id: str, code: str) -> None:
        """Verify a 4-digit code."""
        body = await self._request(
            "POST", "otp/verify", payload={"lead_id": lead_id, "otp": code}
        )
        _ensure_success(body, "Invalid verification code")

    async def sync_subscriber(self, lead_id: str) -> None:
        """Sync the lead to the mailing list."""
        body = await self._request(
            "POST", "mailerlite/sync", payload={"lead_id": lead_id}
        )
        _ensure_success(body, "Mailing list sync failed")

    async def upload_image(self, lead_id: str, image: str) -> str:
        """Upload an image data URL."""
        body = await self._request(
            "POST", "image/upload", payload={"lead_id": lead_id, "image": image}
        )
        data = _ensure_data(body, "Invalid response from image upload")
        image_url = data.get("image_url")
        if not isinstance(image_url, str) or not image_url:
            raise RejectedRequestError("Invalid response from image upload")
        return image_url

    async def fetch_questions(
        self, lead_id: str | None, demographics: Demographics
    ) -> list[dict[str, object]]:
        """Fetch dependent questions for the demographics."""
        params: dict[str, str] = {
            "age_range": demographics.age_range,
            "gender": demographics.gender,
        }
        if lead_id:
            params["lead_id"] = lead_id
        body = await self._request("GET", "quiz/questions", params=params)
        questions = body.get("questions")
        if questions is None:
            questions = _data(body).get("questions")
        if not body.get("success") or not isinstance(questions, list):
            raise RejectedRequestError("Invalid response from questions endpoint")
        return [question for question in questions if isinstance(question, dict)]

    async def save_answers(self, lead_id: str, answers: dict[str, object]) -> None:
        """Save questionnaire answers."""
        body = await self._request(
            "POST", "quiz/save", payload={"lead_id": lead_id, "answers": answers}
        )
        _ensure_success(body, "Invalid response from quiz save")

    async def generate_report(
        self, lead_id: str, reading_type: ReadingType
    ) -> dict[str, object]:
        """Request async report generation."""
        endpoint = (
            "reading/generate-paid"
            if reading_type is ReadingType.FULL
            else "reading/generate"
        )
        body = await self._request(
            "POST",
            endpoint,
            payload={
                "lead_id": lead_id,
                "async": True,
                "reading_type": reading_type.value,
            },
        )
        return _ensure_data(body, "Invalid response from reading generation")

    async def poll_status(
        self, lead_id: str, reading_type: ReadingType
    ) -> dict[str, object]:
        """Fetch the job status envelope without interpreting it."""
        return await self._request(
            "POST",
            "reading/status",
            payload={"lead_id": lead_id, "reading_type": reading_type.value},
        )

    async def get_by_lead(
        self, lead_id: str, reading_type: ReadingType, token: str | None = None
    ) -> dict[str, object]:
        """Fetch an existing report for a lead."""
        params = {"lead_id": lead_id, "reading_type": reading_type.value}
        if token:
            params["token"] = token
        body = await self._request("GET", "reading/get-by-lead", params=params)
        return _ensure_data(body, "Report data not found in response.")

    async def get_flow_state(self) -> dict[str, object] | None:
        """Fetch flow state; failures are non-critical."""
        try:
            body = await self._request("GET", "flow/state")
        except FunnelError:
            _logger.info("Flow state fetch failed (non-critical), continuing")
            return None
        if body.get("success") and isinstance(body.get("data"), dict):
            return body["data"]
        return None

    async def set_flow_state(
        self, updates: dict[str, object]
    ) -> dict[str, object] | None:
        """Write flow state; failures are non-critical."""
        try:
            body = await self._request("POST", "flow/state", payload=updates)
        except FunnelError:
            _logger.info("Flow state update error (non-critical), continuing")
            return None
        if body.get("success") and isinstance(body.get("data"), dict):
            return body["data"]
        _logger.info("Flow state update failed (non-critical), continuing")
        return None

    async def verify_magic_link(self, lead_id: str, token: str) -> dict[str, object]:
        """Verify a magic link token."""
        body = await self._request(
            "POST", "flow/magic/verify", payload={"lead_id": lead_id, "token": token}
        )
        if not body.get("success"):
            raise RejectedRequestError(
                str(body.get("message") or "Magic link verification failed")
            )
        return _data(body)

    async def unlock_section(
        self, reading_id: str, lead_id: str | None, section: str
    ) -> dict[str, object]:
        """Unlock a report section."""
        body = await self._request(
            "POST",
            "reading/unlock",
            payload={
                "reading_id": reading_id,
                "lead_id": lead_id,
                "section_name": section,
            },
        )
        return _ensure_data(body, "An unknown error occurred.")

    async def refresh_nonce(self) -> bool:
        """Fetch a fresh nonce; return True when one was obtained."""
        if not self.nonce_refresh_url or self._refreshing:
            return False
        self._refreshing = True
        try:
            response = await self.http_client.get(
                self.nonce_refresh_url, headers=self._headers(), timeout=self.timeout
            )
            body = _json_body(response)
            nonce = _data(body).get("nonce")
            if response.is_success and isinstance(nonce, str) and nonce:
                self.nonce = nonce
                _logger.info("Nonce refreshed successfully")
                return True
            _logger.warning("Nonce refresh failed: status=%s", response.status_code)
            return False
        except httpx.HTTPError as exc:
            _logger.warning("Nonce refresh request failed: %s", exc)
            return False
        finally:
            self._refreshing = False

    async def close(self) -> None:
        """Close the underlying HTTP client session."""
        await self.http_client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        payload: dict[str, object] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, object]:
        """Send a request, refreshing the nonce once on an auth failure."""
        try:
            response = await self._send(method, endpoint, payload, params)
            if response.status_code in _AUTH_STATUSES and await self.refresh_nonce():
                _logger.info("Retrying %s %s after nonce refresh", method, endpoint)
                response = await self._send(method, endpoint, payload, params)
        except httpx.TimeoutException as exc:
            _logger.warning("%s %s timed out", method, endpoint)
            raise TransientError("The request timed out. Please try again.") from exc
        except httpx.TransportError as exc:
            _logger.warning("%s %s failed: %s", method, endpoint, exc)
            raise TransientError() from exc

        body = _json_body(response)
        if response.is_error:
            _logger.warning(
                "%s %s failed: status=%s code=%s",
                method,
                endpoint,
                response.status_code,
                body.get("error_code") or body.get("code"),
            )
            raise _classify_failure(response.status_code, body)
        return body

    async def _send(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, object] | None,
        params: dict[str, str] | None,
    ) -> httpx.Response:
        url = f"{self.base_url}/{endpoint}"
        return await self.http_client.request(
            method,
            url,
            params=params,
            json=payload if method != "GET" else None,
            headers=self._headers(),
            timeout=self.timeout,
        )

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "X-SM-Nonce": self.nonce}


def business_error_from_body(body: dict[str, object]) -> BusinessRuleError | None:
    """Build a business-rule error from an envelope, if it carries one."""
    data = _data(body)
    code = body.get("error_code") or data.get("error_code") or body.get("code")
    redirect_to = body.get("redirect_to") or data.get("redirect_to")
    if code not in BUSINESS_CODES and not redirect_to:
        return None
    retry_remaining = data.get("retry_remaining")
    delay = data.get("redirect_delay_ms")
    return BusinessRuleError(
        str(code or "redirect"),
        str(body.get("message") or "") or None,
        redirect_to=str(redirect_to) if redirect_to else None,
        redirect_delay_ms=delay if isinstance(delay, int) else 0,
        retry_remaining=retry_remaining if isinstance(retry_remaining, int) else None,
        payload=data,
    )


def _classify_failure(status_code: int, body: dict[str, object]) -> FunnelError:
    message = str(body.get("message") or "") or None
    if status_code in _AUTH_STATUSES:
        return AuthorizationError(message)
    business = business_error_from_body(body)
    if business is not None:
        return business
    if status_code == _TOO_MANY_REQUESTS or status_code >= 500:  # noqa: PLR2004
        return TransientError(message)
    return RejectedRequestError(message or "API request failed", status_code)


def _ensure_success(body: dict[str, object], fallback: str) -> None:
    if body.get("success"):
        return
    business = business_error_from_body(body)
    if business is not None:
        raise business
    raise RejectedRequestError(str(body.get("message") or fallback))


def _ensure_data(body: dict[str, object], fallback: str) -> dict[str, object]:
    _ensure_success(body, fallback)
    data = body.get("data")
    if not isinstance(data, dict):
        raise RejectedRequestError(fallback)
    return data


def _data(body: dict[str, object]) -> dict[str, object]:
    data = body.get("data")
    return data if isinstance(data, dict) else {}


def _json_body(response: httpx.Response) -> dict[str, object]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
