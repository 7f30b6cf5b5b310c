from __future__ import annotations

import math
import re
from typing import Iterable, Optional, Tuple, Union

from .models import Candidate, MatchResult

YEAR_EXACT_SCORE = 100.0
YEAR_NEAR_SCORE = 50.0
TITLE_EXACT_SCORE = 50.0
TITLE_PARTIAL_SCORE = 25.0
RATING_WEIGHT = 2.0
POPULARITY_WEIGHT = 5.0

_TRAILING_YEAR = re.compile(r"^(.*?)\s*\((\d{4})\)\s*$")

YearLike = Union[int, str, None]


def split_title_year(title: str) -> Tuple[str, Optional[str]]:
    """Split "Name (2019)" into ("Name", "2019"); titles without a year pass through."""
    m = _TRAILING_YEAR.match(title)
    if not m:
        return title, None
    return m.group(1).strip(), m.group(2)


def _as_year(value: YearLike) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()[:4]
    return int(text) if len(text) == 4 and text.isdigit() else None


def score_candidate(candidate: Candidate, target_title: str, target_year: YearLike = None) -> float:
    score = 0.0

    wanted = _as_year(target_year)
    got = candidate.year
    if wanted is not None and got is not None:
        if got == wanted:
            score += YEAR_EXACT_SCORE
        elif abs(got - wanted) <= 1:
            score += YEAR_NEAR_SCORE

    name = (candidate.original_title or candidate.title).lower()
    target = target_title.lower()
    if name == target:
        score += TITLE_EXACT_SCORE
    elif name in target or target in name:
        score += TITLE_PARTIAL_SCORE

    score += RATING_WEIGHT * candidate.vote_average
    score += POPULARITY_WEIGHT * math.log10(max(candidate.popularity, 0.0) + 1)
    return score


def select_best(
    candidates: Iterable[Candidate],
    target_title: str,
    target_year: YearLike = None,
) -> Optional[MatchResult]:
    """Pick the highest scoring candidate that has a backdrop image.

    Ties keep the earliest candidate. A pick must score above zero, so an
    empty or all image-less list yields None."""
    best: Optional[MatchResult] = None
    for candidate in candidates:
        if not candidate.backdrop_path:
            continue
        score = score_candidate(candidate, target_title, target_year)
        if score > (best.score if best else 0.0):
            best = MatchResult(candidate=candidate, score=score)
    return best
