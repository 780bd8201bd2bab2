"""Core domain models for alerts, matches and the indexed job projection.

This module defines the data structures shared across the service:
- Alert: a saved search subscription evaluated on a recurring schedule
- AlertMatch: one (alert, job) pair surfaced to an alert owner
- JobDocument: the search-index projection of a job posting
- SearchHit / SearchResult: what the search index returns for a query
- AlertNotificationPayload: the job handed to the notification pipeline
- Invitation: organization invitation tracked for expiry
"""

import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _to_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class Frequency(str, Enum):
    """How often an alert is evaluated."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def next_due(self, last_sent_at: datetime) -> datetime:
        """Earliest time the alert is due again after ``last_sent_at``.

        Monthly alerts step by calendar month and keep the day of month,
        clamped to the length of shorter months (Jan 31 -> Feb 28).
        """
        if self is Frequency.MONTHLY:
            return _add_month(last_sent_at)
        return last_sent_at + _FIXED_INTERVALS[self]


_FIXED_INTERVALS = {
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
}


def _add_month(dt: datetime) -> datetime:
    year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


class Alert(BaseModel):
    """Saved search subscription owned by a user.

    An alert must carry at least one criterion; an alert with none would
    match every active job on the board.
    """

    id: Optional[int] = Field(None, description="Primary key, None until persisted")
    owner_id: int = Field(..., description="User who owns the alert")
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    search_query: Optional[str] = Field(None, description="Free-text query")
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    skills: List[str] = Field(default_factory=list)
    job_types: List[str] = Field(default_factory=list)
    experience_levels: List[str] = Field(default_factory=list)
    include_remote: bool = True
    frequency: Frequency = Frequency.WEEKLY
    is_active: bool = True
    is_paused: bool = False
    last_sent_at: Optional[datetime] = Field(None, description="Last evaluation (UTC)")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Alert name cannot be empty or whitespace-only")
        return stripped

    @field_validator("search_query", "city", "state", "country", "description")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        stripped = v.strip()
        return stripped or None

    @field_validator("skills", "job_types", "experience_levels")
    @classmethod
    def clean_list(cls, v: List[str]) -> List[str]:
        """Strip entries, drop blanks and keep the first occurrence of duplicates."""
        cleaned: List[str] = []
        for item in v:
            stripped = item.strip()
            if stripped and stripped not in cleaned:
                cleaned.append(stripped)
        return cleaned

    @field_validator("last_sent_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc(v)

    @model_validator(mode="after")
    def require_criteria(self):
        if not (
            self.search_query
            or self.city
            or self.state
            or self.skills
            or self.job_types
            or self.experience_levels
        ):
            raise ValueError(
                "At least one search criterion is required: search query, city, state, "
                "skills, job types or experience levels"
            )
        return self

    def is_due(self, now: datetime, drift_tolerance: timedelta = timedelta(0)) -> bool:
        """Whether the alert's period has elapsed since its last evaluation.

        An alert never evaluated before is always due. ``drift_tolerance``
        lets a schedule that fires slightly early still count.
        """
        if self.last_sent_at is None:
            return True
        return now >= self.frequency.next_due(self.last_sent_at) - drift_tolerance


class AlertMatch(BaseModel):
    """A job surfaced to an alert. (alert_id, job_id) is unique for all time."""

    id: Optional[int] = None
    alert_id: int
    job_id: int
    match_score: float = Field(1.0, ge=0.0)
    was_sent: bool = False
    matched_at: datetime
    created_at: Optional[datetime] = None

    @field_validator("matched_at", "created_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc(v)


class JobDocument(BaseModel):
    """Search-index projection of a job posting.

    Field aliases follow the index schema (camelCase); attribute names stay
    snake_case. ``created_at`` is epoch seconds.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    company: str = ""
    description: str = ""
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zipcode: Optional[str] = None
    is_remote: bool = Field(False, alias="isRemote")
    is_active: bool = Field(True, alias="isActive")
    experience: Optional[str] = None
    job_type: Optional[str] = Field(None, alias="jobType")
    skills: List[str] = Field(default_factory=list)
    created_at: int = Field(..., alias="createdAt", ge=0)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("zipcode", mode="before")
    @classmethod
    def coerce_zipcode(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def to_index(self) -> Dict[str, Any]:
        """Document body in the index's field naming."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SearchHit(BaseModel):
    """A single document returned by the search index."""

    document: Dict[str, Any]
    text_match: Optional[int] = None

    @property
    def job_id(self) -> int:
        return int(self.document["id"])


class SearchResult(BaseModel):
    """One page of search results."""

    hits: List[SearchHit] = Field(default_factory=list)
    found: int = 0
    page: int = 1
    search_time_ms: int = 0

    def job_ids(self) -> List[int]:
        """Job ids in hit order, without duplicates."""
        seen: List[int] = []
        for hit in self.hits:
            if hit.job_id not in seen:
                seen.append(hit.job_id)
        return seen


class AlertNotificationPayload(BaseModel):
    """Payload of the notification job produced for a batch of new matches.

    Serialised with camelCase keys: ``{"alertId", "ownerId", "jobIds"}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    alert_id: int = Field(..., alias="alertId", ge=1)
    owner_id: int = Field(..., alias="ownerId", ge=1)
    job_ids: List[int] = Field(..., alias="jobIds", min_length=1)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class InvitationStatus(str, Enum):
    """Lifecycle states of an organization invitation."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class Invitation(BaseModel):
    """Invitation for a user to join an organization."""

    id: Optional[int] = None
    organization_id: int
    email: str
    role: str = "member"
    status: InvitationStatus = InvitationStatus.PENDING
    expires_at: datetime
    expired_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("expires_at", "expired_at", "created_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc(v)
