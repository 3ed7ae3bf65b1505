"""Domain enumerations and the match lifecycle state machine."""
from __future__ import annotations

from enum import Enum


class Sport(str, Enum):
    FOOTBALL = "football"
    RUGBY = "rugby"

    @property
    def max_elapsed_minute(self) -> int:
        """Upper bound for a reported match clock, extra time and stoppage included."""
        return _MAX_ELAPSED[self]


_MAX_ELAPSED = {
    Sport.FOOTBALL: 130,
    Sport.RUGBY: 110,
}


class MatchStatus(str, Enum):
    """
    Internal match lifecycle.

    UPCOMING -> LIVE -> FINISHED, with CANCELLED reachable from either
    non-terminal state. Nothing leaves FINISHED or CANCELLED.
    """

    UPCOMING = "UPCOMING"
    LIVE = "LIVE"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.FINISHED, MatchStatus.CANCELLED)

    @property
    def has_started(self) -> bool:
        return self in (MatchStatus.LIVE, MatchStatus.FINISHED)

    @property
    def rank(self) -> int:
        return _RANK[self]

    def can_advance_to(self, target: "MatchStatus") -> bool:
        """
        True when moving from self to target is a forward step.

        UPCOMING -> FINISHED is accepted as a single step for a fixture first
        observed after it ended. No LIVE state is recorded for such a match.
        """
        if self == target:
            return True
        if self.is_terminal:
            return False
        return target.rank > self.rank


_RANK = {
    MatchStatus.UPCOMING: 0,
    MatchStatus.LIVE: 1,
    MatchStatus.FINISHED: 2,
    MatchStatus.CANCELLED: 2,
}


class CompetitionStatus(str, Enum):
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class DecidedBy(str, Enum):
    """How a finished match was settled."""
    REGULAR_TIME = "FT"
    EXTRA_TIME = "AET"
    PENALTIES = "PEN"


class Outcome(str, Enum):
    HOME = "home"
    DRAW = "draw"
    AWAY = "away"


class SkipReason(str, Enum):
    """Why a fixture was not applied during a reconciliation pass."""
    NOT_FOUND = "not_found"
    NO_CANDIDATE = "no_candidate"
    BELOW_THRESHOLD = "below_threshold"
    AMBIGUOUS = "ambiguous"
    DATE_SLOP = "date_slop"
    ALREADY_BOUND = "already_bound"
    ALREADY_CLAIMED = "already_claimed"
    UNKNOWN_STATUS = "unknown_status"
    PERSISTENCE_ERROR = "persistence_error"
