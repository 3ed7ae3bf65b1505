"""
Team-name similarity and fixture candidate selection.

Provider team names drift from ours ("Atlético Madrid" vs "Atletico de Madrid",
"Paris SG" vs "Paris Saint-Germain", "Stade Toulousain" vs "Toulouse"). Similarity
is a tiered score in [0, 1]:

    exact (normalized)      1.0
    containment             0.76 - 0.95, by length ratio
    token alignment         0.70 - 0.75, by share of the longer name covered
    fuzzy token overlap     <= 0.65 (rapidfuzz token_set_ratio)

Token alignment walks the shorter name's tokens in order against the longer
name. A token aligns with an equal token, a prefix of one ("man" / "manchester"),
a near spelling, or the initials of consecutive tokens ("sg" / "saint germain").
Every token of the shorter name must align and at least one must be an exact
token match; a one-token name aligns only as the acronym of the whole longer
name ("psg").

A fixture is only as similar as its weaker side. Selection keeps the single best
candidate above the threshold and refuses to choose between tied candidates.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Generic, Optional, Sequence, TypeVar

from rapidfuzz import fuzz

from shared.models.enums import SkipReason

T = TypeVar("T")

_AFFIXES = frozenset({"fc", "cf", "ac", "afc", "sc", "club", "rfc", "rc", "the"})
_PUNCT = re.compile(r"[^\w\s]|_")
_WS = re.compile(r"\s+")

CONTAINMENT_MIN = 0.76
CONTAINMENT_MAX = 0.95
ALIGNMENT_MIN = 0.70
ALIGNMENT_MAX = 0.75
TOKEN_OVERLAP_CAP = 0.65
# Shortest token that may stand for a longer word by prefix.
MIN_PREFIX_LEN = 3
# rapidfuzz ratio at which two tokens count as the same word misspelt.
NEAR_SPELLING_RATIO = 85.0
# Scores closer than this count as a tie.
TIE_EPSILON = 1e-6


def normalize_name(name: str) -> str:
    """Case-fold, strip diacritics and punctuation, drop common club affixes."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    cleaned = _PUNCT.sub(" ", stripped.casefold())
    tokens = [t for t in _WS.split(cleaned) if t and t not in _AFFIXES]
    return " ".join(tokens)


def _initials_span(token: str, tokens: Sequence[str], start: int) -> int:
    span = len(token)
    if span < 2 or start + span > len(tokens):
        return 0
    if all(tokens[start + k][0] == token[k] for k in range(span)):
        return span
    return 0


def _align_token(token: str, tokens: Sequence[str], start: int) -> tuple[int, bool]:
    """(tokens covered, exact) for token against tokens[start:], or (0, False)."""
    other = tokens[start]
    if token == other:
        return 1, True
    span = _initials_span(token, tokens, start)
    if span:
        return span, False
    if len(token) >= MIN_PREFIX_LEN and other.startswith(token):
        return 1, False
    if min(len(token), len(other)) > MIN_PREFIX_LEN and fuzz.ratio(token, other) >= NEAR_SPELLING_RATIO:
        return 1, False
    return 0, False


def _alignment_coverage(short: Sequence[str], long: Sequence[str]) -> Optional[float]:
    """Share of long covered when every token of short aligns in order, else None."""
    if len(short) == 1:
        if _initials_span(short[0], long, 0) == len(long):
            return 1.0
        return None

    pos = covered = 0
    any_exact = False
    for token in short:
        while pos < len(long):
            span, exact = _align_token(token, long, pos)
            pos += max(span, 1)
            if span:
                covered += span
                any_exact = any_exact or exact
                break
        else:
            return None
    return covered / len(long) if any_exact else None


def token_alignment(na: str, nb: str) -> Optional[float]:
    """Alignment score for two normalized names, or None when they do not align."""
    ta, tb = na.split(), nb.split()
    if len(ta) == len(tb):
        orders = [(ta, tb), (tb, ta)]
    else:
        orders = [(ta, tb) if len(ta) < len(tb) else (tb, ta)]

    coverages = [c for c in (_alignment_coverage(short, long) for short, long in orders) if c is not None]
    if not coverages:
        return None
    return round(ALIGNMENT_MIN + (ALIGNMENT_MAX - ALIGNMENT_MIN) * max(coverages), 4)


def name_similarity(a: str, b: str) -> float:
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0

    shorter, longer = (na, nb) if len(na) <= len(nb) else (nb, na)
    if re.search(rf"(?:^|\s){re.escape(shorter)}(?:\s|$)", longer):
        ratio = len(shorter) / len(longer)
        return CONTAINMENT_MIN + (CONTAINMENT_MAX - CONTAINMENT_MIN) * ratio

    aligned = token_alignment(na, nb)
    if aligned is not None:
        return aligned

    overlap = fuzz.token_set_ratio(na, nb) / 100.0
    return round(min(overlap * TOKEN_OVERLAP_CAP, TOKEN_OVERLAP_CAP), 4)


def fixture_similarity(
    ext_home: str,
    ext_away: str,
    home_names: Sequence[str],
    away_names: Sequence[str],
) -> float:
    """
    Score an external fixture against one internal match.

    home_names/away_names hold every known alias of the internal side
    (full name, short name); the best alias counts.
    """
    home = max((name_similarity(ext_home, n) for n in home_names if n), default=0.0)
    away = max((name_similarity(ext_away, n) for n in away_names if n), default=0.0)
    return min(home, away)


@dataclass(frozen=True)
class Selection(Generic[T]):
    candidate: Optional[T]
    score: float
    reason: Optional[SkipReason] = None

    @property
    def accepted(self) -> bool:
        return self.candidate is not None


def select_candidate(scored: Sequence[tuple[T, float]], threshold: float) -> Selection[T]:
    """Pick the unique best-scoring candidate at or above threshold."""
    if not scored:
        return Selection(None, 0.0, SkipReason.NO_CANDIDATE)

    ranked = sorted(scored, key=lambda pair: pair[1], reverse=True)
    best, best_score = ranked[0]
    if best_score < threshold:
        return Selection(None, best_score, SkipReason.BELOW_THRESHOLD)
    if len(ranked) > 1 and best_score - ranked[1][1] <= TIE_EPSILON:
        return Selection(None, best_score, SkipReason.AMBIGUOUS)
    return Selection(best, best_score)
