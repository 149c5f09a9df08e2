"""Pydantic models for schedule data.

All data structures use Pydantic v2 for validation, serialization, and type safety.
Fields are snake_case in Python and serialize to camelCase for API clients
(``model_dump(by_alias=True)``).
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel

from src.classutp.logging import mask_username

# Label used for events spanning the whole academic term
TERM_SPAN_DAY = "entire term"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Credentials(BaseModel):
    """Portal login, held only for the duration of one session."""

    username: str
    password: SecretStr

    @property
    def masked_username(self) -> str | None:
        return mask_username(self.username)


class WeekInfo(ApiModel):
    """Header of the calendar week view."""

    cycle: str | None = None  # e.g. "Ciclo 2025 - 2"
    current_week: str | None = None  # e.g. "Semana 7"
    date_range: str | None = None  # e.g. "29 sep - 5 oct"


class Course(ApiModel):
    """A course card from the dashboard."""

    name: str | None = None
    modality: str | None = None  # "Presencial", "Virtual en vivo", ...
    instructor: str | None = None


class ClassEvent(ApiModel):
    """A scheduled class session in the week grid."""

    kind: Literal["class"] = "class"
    course: str | None = None
    time: str | None = None  # "08:00 - 10:00"
    modality: str | None = None
    day: str | None = None  # Spanish weekday label, e.g. "Lunes"
    date: str | None = None  # YYYY-MM-DD from data-date


class ActivityEvent(ApiModel):
    """A graded activity (assignment, forum, exam) shown in the week grid."""

    kind: Literal["activity"] = "activity"
    activity_name: str | None = None
    course: str | None = None
    time: str | None = None
    status: str | None = None  # "Por entregar", "Programada", ...
    day: str | None = None
    date: str | None = None


class CourseSpanEvent(ApiModel):
    """A multi-day card covering the whole term."""

    kind: Literal["course-span"] = "course-span"
    course: str | None = None
    modality: str | None = None
    day: str = TERM_SPAN_DAY
    date: None = None


Event = Annotated[
    Union[ClassEvent, ActivityEvent, CourseSpanEvent],
    Field(discriminator="kind"),
]


class ExtractionResult(ApiModel):
    """Everything one pipeline run reads from the portal."""

    student_name: str | None = None
    week_info: WeekInfo = Field(default_factory=WeekInfo)
    courses: list[Course] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Success body for ``POST /api/events`` and the SSE ``done`` event."""
        return {"success": True, **self.model_dump(mode="json", by_alias=True)}


class PoolStats(ApiModel):
    """Read-only snapshot of the browser pool, recomputed on every call."""

    pool_size: int
    max_size: int
    in_use: int
    available: int
    connected_count: int
    creating: int = 0
    creation_failures: int = 0


class GateStatus(ApiModel):
    """Diagnostic view of the request gate for ``GET /status``."""

    mode: Literal["single", "pool"]
    busy: bool
    current_session_masked: str | None = None
    busy_since: datetime | None = None
    uptime: float = 0.0
