"""Weighted fuzzy matching of free-text queries against user access records."""

from __future__ import annotations

import sys
from difflib import SequenceMatcher
from typing import List, Optional, Sequence, Tuple

from .models import MatchDetail, SearchMatch, UserAccess

FIELD_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    ("email", 0.5),
    ("username", 0.3),
    ("title", 0.2),
)
DEFAULT_THRESHOLD = 0.4

# Exact matches still need a non-zero factor so the field weight matters.
_EPSILON = sys.float_info.epsilon


def _matched_ranges(matcher: SequenceMatcher, offset: int) -> Tuple[Tuple[int, int], ...]:
    return tuple(
        (offset + block.b, offset + block.b + block.size - 1)
        for block in matcher.get_matching_blocks()
        if block.size
    )


def score_field(query: str, value: str) -> Optional[Tuple[float, Tuple[Tuple[int, int], ...]]]:
    """Score ``query`` against the closest stretch of ``value``.

    Every query-length window of the field is compared, so where the match
    occurs within the field does not affect the score. Returns ``None`` when
    the field is empty. ``0.0`` is an exact match and ``1.0`` no match at all.
    """

    needle = query.lower()
    haystack = value.lower()
    if not needle or not haystack:
        return None

    width = len(needle)
    if width >= len(haystack):
        windows = [(0, haystack)]
    else:
        windows = [(start, haystack[start : start + width]) for start in range(len(haystack) - width + 1)]

    best_start, first_window = windows[0]
    best_matcher = SequenceMatcher(None, needle, first_window, autojunk=False)
    best_ratio = best_matcher.ratio()
    for start, window in windows[1:]:
        if best_ratio == 1.0:
            break
        matcher = SequenceMatcher(None, needle, window, autojunk=False)
        ratio = matcher.ratio()
        if ratio > best_ratio:
            best_start, best_matcher, best_ratio = start, matcher, ratio

    return 1.0 - best_ratio, _matched_ranges(best_matcher, best_start)


class FuzzyIndex:
    """Rank user access records by weighted similarity to a query."""

    def __init__(
        self,
        users: Sequence[UserAccess],
        *,
        keys: Sequence[Tuple[str, float]] = FIELD_WEIGHTS,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        self._users = list(users)
        self._keys = tuple(keys)
        self._threshold = threshold

    def __len__(self) -> int:
        return len(self._users)

    def _match(self, query: str, user: UserAccess) -> Optional[SearchMatch]:
        total = 1.0
        details: List[MatchDetail] = []
        for key, weight in self._keys:
            value = getattr(user, key, None)
            if not value:
                continue
            scored = score_field(query, str(value))
            if scored is None:
                continue
            field_score, indices = scored
            if field_score > self._threshold:
                continue
            total *= max(field_score, _EPSILON) ** weight
            details.append(MatchDetail(key=key, value=str(value), indices=indices))

        if not details:
            return None
        return SearchMatch(score=total, user=user, match_details=tuple(details))

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchMatch]:
        cleaned = query.strip()
        if not cleaned:
            return []

        matches = [match for match in (self._match(cleaned, user) for user in self._users) if match is not None]
        matches.sort(key=lambda match: match.score)
        if limit is not None:
            return matches[: max(limit, 0)]
        return matches


__all__ = ["DEFAULT_THRESHOLD", "FIELD_WEIGHTS", "FuzzyIndex", "score_field"]
