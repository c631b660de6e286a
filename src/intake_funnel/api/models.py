"""Pydantic models for the funnel HTTP surface."""

from pydantic import BaseModel, Field


class BootRequest(BaseModel):
    """A page load: URL query parameters plus the host's auth state."""

    params: dict[str, str] = Field(default_factory=dict)
    authenticated: bool = False


class InputRequest(BaseModel):
    """Field values entered on the current step."""

    name: str | None = None
    email: str | None = None
    identity: str | None = None
    age: str | None = None
    age_range: str | None = None
    gender: str | None = None
    gdpr_consent: bool | None = None
    image: str | None = None
    code: str | None = None
    answer: str | float | list[str] | None = None


class UnlockRequest(BaseModel):
    key: str


class PageShowRequest(BaseModel):
    persisted: bool = False


class EffectModel(BaseModel):
    """One rendering instruction for the host."""

    kind: str
    payload: dict[str, object] = Field(default_factory=dict)


class FunnelResponse(BaseModel):
    """Outcome of a request against a funnel session."""

    accepted: bool = True
    result: str | None = None
    state: dict[str, object] = Field(default_factory=dict)
    effects: list[EffectModel] = Field(default_factory=list)
