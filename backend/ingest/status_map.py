"""
Provider status code -> internal MatchStatus.

Tables are explicit per sport. A code missing from a table maps to None and the
caller keeps the stored status; terminal states are never inferred from unknown codes.
"""
from __future__ import annotations

from typing import Optional

from shared.models.enums import DecidedBy, MatchStatus, Sport
from shared.utils.logging import get_logger

logger = get_logger(__name__)

_U, _L, _F, _C = MatchStatus.UPCOMING, MatchStatus.LIVE, MatchStatus.FINISHED, MatchStatus.CANCELLED

FOOTBALL_STATUS: dict[str, MatchStatus] = {
    # not started / rescheduled
    "NS": _U, "TBD": _U, "PST": _U,
    # in play: halves, break, extra time, penalty shootout
    "1H": _L, "HT": _L, "2H": _L, "ET": _L, "BT": _L, "P": _L, "LIVE": _L,
    # settled
    "FT": _F, "AET": _F, "PEN": _F, "AWD": _F, "WO": _F,
    # called off
    "CANC": _C, "SUSP": _C, "INT": _C, "ABD": _C,
}

RUGBY_STATUS: dict[str, MatchStatus] = {
    "NS": _U, "POST": _U, "TBD": _U,
    "1H": _L, "HT": _L, "2H": _L, "ET": _L, "BT": _L, "PT": _L,
    "FT": _F, "AET": _F, "PEN": _F, "AOT": _F, "AWARDED": _F,
    "CANC": _C, "SUSP": _C, "INT": _C, "ABD": _C, "ABAN": _C,
}

_TABLES: dict[Sport, dict[str, MatchStatus]] = {
    Sport.FOOTBALL: FOOTBALL_STATUS,
    Sport.RUGBY: RUGBY_STATUS,
}

_DECIDED_BY: dict[str, DecidedBy] = {
    "FT": DecidedBy.REGULAR_TIME,
    "AET": DecidedBy.EXTRA_TIME,
    "AOT": DecidedBy.EXTRA_TIME,
    "PEN": DecidedBy.PENALTIES,
}


def map_status(sport: Sport, code: Optional[str]) -> Optional[MatchStatus]:
    """Return the internal status for a provider code, or None if the code is unknown."""
    if not code:
        return None
    status = _TABLES[sport].get(code.strip().upper())
    if status is None:
        logger.warning("unknown_status_code", sport=sport.value, code=code)
    return status


def decided_by(code: Optional[str]) -> Optional[DecidedBy]:
    if not code:
        return None
    return _DECIDED_BY.get(code.strip().upper())


def clamp_elapsed(sport: Sport, elapsed: Optional[int]) -> Optional[int]:
    """Bound a provider clock to [0, sport max]; negative or missing values become None."""
    if elapsed is None or elapsed < 0:
        return None
    return min(elapsed, sport.max_elapsed_minute)
