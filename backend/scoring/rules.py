"""
Scoring rule sets, one per sport.

Rule sets are immutable configuration. Point values come from settings so a
deployment can change its scale without touching the engine.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.config import Settings, get_settings
from shared.models.enums import Sport


class ScoringRuleSet(BaseModel):
    """
    Points for each prediction category.

    With proximity_tolerance set, the top tier is "total goal/point error within
    tolerance" instead of "exact score".
    """

    model_config = ConfigDict(frozen=True)

    name: str
    exact_points: int = Field(ge=0)
    outcome_points: int = Field(ge=0)
    miss_points: int = Field(default=0, ge=0)
    proximity_tolerance: Optional[int] = Field(default=None, ge=0)


FOOTBALL_STANDARD = ScoringRuleSet(name="FOOTBALL_STANDARD", exact_points=3, outcome_points=1, miss_points=0)
RUGBY_PROXIMITY = ScoringRuleSet(
    name="RUGBY_PROXIMITY",
    exact_points=3,
    outcome_points=1,
    miss_points=0,
    proximity_tolerance=5,
)


def rule_set_for_sport(sport: Sport, settings: Settings | None = None) -> ScoringRuleSet:
    settings = settings or get_settings()
    if sport == Sport.RUGBY:
        return ScoringRuleSet(
            name=RUGBY_PROXIMITY.name,
            exact_points=settings.rugby_proximity_points,
            outcome_points=settings.rugby_outcome_points,
            miss_points=settings.rugby_miss_points,
            proximity_tolerance=settings.rugby_proximity_tolerance,
        )
    return ScoringRuleSet(
        name=FOOTBALL_STANDARD.name,
        exact_points=settings.football_exact_points,
        outcome_points=settings.football_outcome_points,
        miss_points=settings.football_miss_points,
    )
