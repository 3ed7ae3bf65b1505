"""
Pydantic v2 domain models shared across the sync services.
These are wire/internal representations, not ORM models.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, model_validator

from shared.models.enums import DecidedBy, Outcome, Sport


class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Scores ──────────────────────────────────────────────────────────────
class ScorePair(DomainModel):
    model_config = ConfigDict(frozen=True)

    home: int = Field(ge=0)
    away: int = Field(ge=0)

    @property
    def outcome(self) -> Outcome:
        if self.home > self.away:
            return Outcome.HOME
        if self.home < self.away:
            return Outcome.AWAY
        return Outcome.DRAW

    @property
    def total(self) -> int:
        return self.home + self.away


# ── Provider snapshot ───────────────────────────────────────────────────
class ExternalSnapshot(DomainModel):
    """Provider-reported state of one fixture. Never persisted."""

    external_id: str
    sport: Sport
    status_code: str
    status_detail: Optional[str] = None
    home_name: str
    away_name: str
    kickoff_at: datetime
    home_score: Optional[int] = Field(default=None, ge=0)
    away_score: Optional[int] = Field(default=None, ge=0)
    elapsed_minute: Optional[int] = None
    decided_by: Optional[DecidedBy] = None

    @model_validator(mode="after")
    def _normalize(self) -> "ExternalSnapshot":
        self.kickoff_at = ensure_utc(self.kickoff_at)
        self.status_code = self.status_code.strip().upper()
        return self

    @property
    def score(self) -> Optional[ScorePair]:
        if self.home_score is None or self.away_score is None:
            return None
        return ScorePair(home=self.home_score, away=self.away_score)


# ── Reconciliation ──────────────────────────────────────────────────────
class ReconcileWindow(DomainModel):
    """
    Inclusive date range for one pass.

    Validating with context={"max_days": n} also rejects windows longer than n days.
    """

    date_from: date
    date_to: date

    @model_validator(mode="after")
    def _ordered(self, info: ValidationInfo) -> "ReconcileWindow":
        if self.date_to < self.date_from:
            raise ValueError("date_to must not precede date_from")
        max_days = (info.context or {}).get("max_days")
        if max_days is not None and (self.date_to - self.date_from).days + 1 > max_days:
            raise ValueError(f"window spans more than {max_days} days")
        return self

    @classmethod
    def bounded(cls, date_from: date, date_to: date, max_days: int) -> "ReconcileWindow":
        return cls.model_validate(
            {"date_from": date_from, "date_to": date_to}, context={"max_days": max_days}
        )

    def days(self) -> list[date]:
        span = (self.date_to - self.date_from).days
        return [date.fromordinal(self.date_from.toordinal() + i) for i in range(span + 1)]


class ReconcileResult(DomainModel):
    sport: Sport
    updated_count: int = 0
    skipped_count: int = 0
    changed_count: int = 0
    scored_count: int = 0
    aborted: bool = False


# ── Change notification ─────────────────────────────────────────────────
class ChangeSignal(DomainModel):
    """Refresh cue pushed to subscribers. Carries no payload beyond identity."""

    type: str = "refresh"
    timestamp: datetime = Field(default_factory=utcnow)
    signal_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    reason: Optional[str] = None


class NotifyResult(DomainModel):
    subscriber_count: int
    signal_id: str


class MissedPredictions(DomainModel):
    competition_id: uuid.UUID
    counts: dict[str, int]
