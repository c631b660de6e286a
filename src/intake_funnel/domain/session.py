"""Domain models for the per-session funnel record."""

from dataclasses import dataclass, field
from enum import StrEnum

from intake_funnel.domain.jobs import ReadingResult
from intake_funnel.domain.questions import Question

IMAGE_SENTINEL = "__image_captured__"

DEFAULT_AGE_RANGE = "age_26_35"
DEFAULT_GENDER = "prefer_not_to_say"

_GENDER_BY_IDENTITY = {
    "woman": "female",
    "female": "female",
    "f": "female",
    "man": "male",
    "male": "male",
    "m": "male",
    "prefer-not": "prefer_not_to_say",
    "prefer_not": "prefer_not_to_say",
    "prefer not to say": "prefer_not_to_say",
    "prefer_not_to_say": "prefer_not_to_say",
}


class SessionContext(StrEnum):
    """Partitions under which persisted state is namespaced."""

    GUEST = "guest"
    AUTHENTICATED = "authenticated"
    DEEP_LINK = "deep_link"


@dataclass
class Demographics:
    """Demographics used to pick dependent questions."""

    age_range: str = ""
    gender: str = ""

    def is_complete(self) -> bool:
        return bool(self.age_range and self.gender)


@dataclass
class UserData:
    """Form fields captured by the wizard before confirmation."""

    name: str = ""
    email: str = ""
    identity: str = ""
    age: str = ""
    age_range: str = ""
    gdpr_consent: bool = False
    image: str | None = None
    email_verified: bool = False

    def has_local_image(self) -> bool:
        """Return True when an image payload (not just a marker) is held."""
        return bool(self.image) and self.image != IMAGE_SENTINEL


@dataclass
class SessionRecord:
    """Flow facts owned by the orchestrator for one session context."""

    lead_id: str | None = None
    otp_sent: bool = False
    otp_verified: bool = False
    image_uploaded: bool = False
    quiz_saved: bool = False
    reading_start_requested: bool = False
    reading_generated: bool = False
    processing_request: bool = False
    demographics: Demographics = field(default_factory=Demographics)
    user: UserData = field(default_factory=UserData)
    answers: dict[str, object] = field(default_factory=dict)
    questions: list[Question] = field(default_factory=list)
    image_reference: str | None = None
    reading: ReadingResult | None = None

    def reset(self) -> None:
        """Return every field to its initial value."""
        self.replace_with(SessionRecord())

    def replace_with(self, other: "SessionRecord") -> None:
        """Copy every field of another record into this one."""
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(other, name))

    def resolve_demographics(self) -> Demographics:
        """Return demographics, derived from user data when not set."""
        if self.demographics.is_complete():
            return self.demographics
        return Demographics(
            age_range=self.demographics.age_range
            or self.user.age_range
            or _age_to_range(self.user.age),
            gender=self.demographics.gender or normalize_gender(self.user.identity),
        )


def normalize_gender(identity: str) -> str:
    """Map the identity field to the gender value the backend expects."""
    return _GENDER_BY_IDENTITY.get(identity.strip().lower(), "")


def _age_to_range(raw_age: str) -> str:
    try:
        age = int(str(raw_age).strip())
    except ValueError:
        return ""
    if age < 18:  # noqa: PLR2004
        return ""
    if age <= 25:  # noqa: PLR2004
        return "age_18_25"
    if age <= 35:  # noqa: PLR2004
        return "age_26_35"
    if age <= 50:  # noqa: PLR2004
        return "age_36_50"
    if age <= 65:  # noqa: PLR2004
        return "age_51_65"
    return "age_65_plus"
