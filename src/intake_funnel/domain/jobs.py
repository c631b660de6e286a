"""Domain models for report generation jobs."""

from dataclasses import dataclass
from enum import StrEnum


class ReadingType(StrEnum):
    """Report tiers, with their wire values."""

    TEASER = "aura_teaser"
    FULL = "aura_full"

    @classmethod
    def parse(cls, raw: object, default: "ReadingType | None" = None) -> "ReadingType":
        """Parse a wire value, accepting the short names too."""
        value = str(raw or "").strip().lower()
        for member in cls:
            if value in {member.value, member.name.lower()}:
                return member
        return default or cls.TEASER


class JobStatus(StrEnum):
    """Status values reported by the job status endpoint."""

    PROCESSING = "processing"
    READY = "ready"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class ReadingJob:
    """In-memory record of a generation job being polled."""

    lead_id: str
    reading_type: ReadingType
    status: JobStatus = JobStatus.PROCESSING
    attempt: int = 0


@dataclass(frozen=True)
class ReadingResult:
    """A generated report ready to be rendered."""

    reading_html: str
    reading_id: str | None
    reading_type: ReadingType
    lead_id: str | None = None
