"""
SQLAlchemy 2.0 ORM models for the sync engine.

Column types are dialect-neutral so the same metadata runs on PostgreSQL in
production and on SQLite in tests.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.models.enums import CompetitionStatus, MatchStatus


class Base(DeclarativeBase):
    pass


class CompetitionORM(Base):
    __tablename__ = "competitions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sport: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CompetitionStatus.UPCOMING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    matches: Mapped[list["MatchORM"]] = relationship(back_populates="competition")


class TeamORM(Base):
    __tablename__ = "teams"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sport: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    short_name: Mapped[Optional[str]] = mapped_column(String(50))


class MatchORM(Base):
    __tablename__ = "matches"
    __table_args__ = (
        CheckConstraint("home_team_id != away_team_id", name="chk_different_teams"),
        UniqueConstraint("sport", "external_id", name="uq_match_external_binding"),
        Index("ix_matches_status_kickoff", "status", "kickoff_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("competitions.id"), nullable=False)
    sport: Mapped[str] = mapped_column(String(20), nullable=False)
    home_team_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("teams.id"), nullable=False)
    away_team_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("teams.id"), nullable=False)
    kickoff_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=MatchStatus.UPCOMING.value)

    external_id: Mapped[Optional[str]] = mapped_column(String(64))
    external_status: Mapped[Optional[str]] = mapped_column(String(16))
    status_detail: Mapped[Optional[str]] = mapped_column(String(100))
    elapsed_minute: Mapped[Optional[int]] = mapped_column(SmallInteger)

    live_home_score: Mapped[Optional[int]] = mapped_column(SmallInteger)
    live_away_score: Mapped[Optional[int]] = mapped_column(SmallInteger)
    final_home_score: Mapped[Optional[int]] = mapped_column(SmallInteger)
    final_away_score: Mapped[Optional[int]] = mapped_column(SmallInteger)
    decided_by: Mapped[Optional[str]] = mapped_column(String(8))

    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    competition: Mapped["CompetitionORM"] = relationship(back_populates="matches")
    home_team: Mapped["TeamORM"] = relationship(foreign_keys=[home_team_id])
    away_team: Mapped["TeamORM"] = relationship(foreign_keys=[away_team_id])
    predictions: Mapped[list["PredictionORM"]] = relationship(back_populates="match")


class CompetitionParticipantORM(Base):
    __tablename__ = "competition_participants"
    __table_args__ = (
        UniqueConstraint("competition_id", "participant_id", name="uq_competition_participant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("competitions.id"), nullable=False)
    participant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)


class PredictionORM(Base):
    __tablename__ = "predictions"
    __table_args__ = (
        UniqueConstraint("match_id", "participant_id", name="uq_prediction_per_match"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    match_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("matches.id"), nullable=False)
    participant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    predicted_home: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    predicted_away: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    match: Mapped["MatchORM"] = relationship(back_populates="predictions")
