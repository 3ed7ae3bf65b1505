"""
Shared fixtures: settings pinned to an in-memory SQLite database, a connected
DatabaseManager with the schema created, and small seeding helpers.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import AsyncIterator, Optional

import pytest
import pytest_asyncio

from shared.config import Settings
from shared.models.enums import CompetitionStatus, MatchStatus, Sport
from shared.models.orm import (
    CompetitionORM,
    CompetitionParticipantORM,
    MatchORM,
    PredictionORM,
    TeamORM,
)
from shared.utils.database import DatabaseManager


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        metrics_enabled=False,
        api_sports_football_key="test-key",
        api_sports_rugby_key="test-key",
        kickoff_grace_s=120,
        scheduler_safety_interval_s=60,
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[DatabaseManager]:
    manager = DatabaseManager(settings)
    await manager.connect()
    await manager.create_schema()
    try:
        yield manager
    finally:
        await manager.disconnect()


class Seeder:
    """Inserts rows with sensible defaults so tests only spell out what they check."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db
        self._teams: dict[tuple[str, str], uuid.UUID] = {}

    async def competition(
        self,
        sport: Sport = Sport.FOOTBALL,
        status: CompetitionStatus = CompetitionStatus.UPCOMING,
        name: str = "Weekend Cup",
    ) -> uuid.UUID:
        async with self._db.write_session() as session:
            row = CompetitionORM(name=name, sport=sport.value, status=status.value)
            session.add(row)
            await session.flush()
            return row.id

    async def team(self, name: str, sport: Sport = Sport.FOOTBALL, short_name: Optional[str] = None) -> uuid.UUID:
        key = (sport.value, name)
        if key not in self._teams:
            async with self._db.write_session() as session:
                row = TeamORM(name=name, sport=sport.value, short_name=short_name)
                session.add(row)
                await session.flush()
                self._teams[key] = row.id
        return self._teams[key]

    async def match(
        self,
        competition_id: uuid.UUID,
        home: str,
        away: str,
        kickoff_at: datetime,
        sport: Sport = Sport.FOOTBALL,
        status: MatchStatus = MatchStatus.UPCOMING,
        external_id: Optional[str] = None,
        final: Optional[tuple[int, int]] = None,
    ) -> uuid.UUID:
        home_id = await self.team(home, sport)
        away_id = await self.team(away, sport)
        async with self._db.write_session() as session:
            row = MatchORM(
                competition_id=competition_id,
                sport=sport.value,
                home_team_id=home_id,
                away_team_id=away_id,
                kickoff_at=kickoff_at,
                status=status.value,
                external_id=external_id,
            )
            if final is not None:
                row.final_home_score, row.final_away_score = final
            session.add(row)
            await session.flush()
            return row.id

    async def participant(self, competition_id: uuid.UUID) -> uuid.UUID:
        participant_id = uuid.uuid4()
        async with self._db.write_session() as session:
            session.add(CompetitionParticipantORM(competition_id=competition_id, participant_id=participant_id))
        return participant_id

    async def prediction(self, match_id: uuid.UUID, participant_id: uuid.UUID, home: int, away: int) -> uuid.UUID:
        async with self._db.write_session() as session:
            row = PredictionORM(
                match_id=match_id,
                participant_id=participant_id,
                predicted_home=home,
                predicted_away=away,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def get_match(self, match_id: uuid.UUID) -> MatchORM:
        async with self._db.read_session() as session:
            return await session.get(MatchORM, match_id)

    async def get_prediction(self, prediction_id: uuid.UUID) -> PredictionORM:
        async with self._db.read_session() as session:
            return await session.get(PredictionORM, prediction_id)

    async def get_competition(self, competition_id: uuid.UUID) -> CompetitionORM:
        async with self._db.read_session() as session:
            return await session.get(CompetitionORM, competition_id)


@pytest.fixture
def seed(db: DatabaseManager) -> Seeder:
    return Seeder(db)


class FakeRedis:
    """RedisManager leader-key helpers over a dict, with keys that expire on a manual clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self._keys: dict[str, tuple[str, float]] = {}

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _owner(self, name: str) -> Optional[str]:
        entry = self._keys.get(name)
        if entry is None or entry[1] <= self.now:
            self._keys.pop(name, None)
            return None
        return entry[0]

    async def try_acquire_leader(self, name: str, owner: str, ttl_s: int) -> bool:
        if self._owner(name) is not None:
            return False
        self._keys[name] = (owner, self.now + ttl_s)
        return True

    async def renew_leader(self, name: str, owner: str, ttl_s: int) -> bool:
        if self._owner(name) != owner:
            return False
        self._keys[name] = (owner, self.now + ttl_s)
        return True

    async def release_leader(self, name: str, owner: str) -> bool:
        if self._owner(name) != owner:
            return False
        del self._keys[name]
        return True

    async def leader_owner(self, name: str) -> Optional[str]:
        return self._owner(name)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
