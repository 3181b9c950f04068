"""
Fuzzy identity matching against a watchlist snapshot

The engine is pure: it reads an immutable snapshot and a candidate
identity and returns a score in [0, 100] together with the best
matching entry. It holds no mutable state and is shared by all scoring
workers without locking.
"""

import logging
import time
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from rapidfuzz import fuzz

from config_manager import MatchingConfig
from normalization import normalize_text, tokenize
from watchlist import CustomerIdentity, WatchlistEntry, WatchlistSnapshot

logger = logging.getLogger(__name__)


class ScreeningTimeout(Exception):
    """Raised when a screening attempt runs past its deadline"""
    code = "TIMEOUT"


@dataclass(frozen=True)
class MatchResult:
    """Best match of one candidate against one snapshot"""
    score: int
    matched_entry: Optional[WatchlistEntry] = None
    matched_name: Optional[str] = None
    name_similarity: float = 0.0
    location_similarity: float = 0.0

    @property
    def matched_entry_id(self) -> Optional[str]:
        return self.matched_entry.entry_id if self.matched_entry else None


NO_MATCH = MatchResult(score=0)


@dataclass(frozen=True)
class _Candidate:
    """Candidate identity in normalized form"""
    name: str
    street: str
    city: str
    country: str

    @classmethod
    def from_identity(cls, identity: CustomerIdentity) -> '_Candidate':
        return cls(
            name=normalize_text(identity.name),
            street=normalize_text(identity.address),
            city=normalize_text(identity.city),
            country=normalize_text(identity.country),
        )


def name_similarity(left: str, right: str, floor: float = 0.0) -> float:
    """
    Similarity of two normalized names in [0, 1].

    Takes the larger of token-set Jaccard overlap (tolerates word
    reordering) and the Indel edit-distance ratio over the whole string
    (tolerates typos). Values below ``floor`` are treated as 0.

    Args:
        left: Normalized name
        right: Normalized name
        floor: Minimum similarity considered meaningful

    Returns:
        Similarity between 0.0 and 1.0
    """
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0

    left_tokens = set(tokenize(left))
    right_tokens = set(tokenize(right))
    union = left_tokens | right_tokens
    jaccard = len(left_tokens & right_tokens) / len(union) if union else 0.0
    edit_ratio = fuzz.ratio(left, right) / 100.0

    best = max(jaccard, edit_ratio)
    return best if best >= floor else 0.0


def location_similarity(candidate: _Candidate, entry: WatchlistEntry, config: MatchingConfig) -> float:
    """
    Weighted location similarity in [0, 1] over the components the entry has.

    City and country count 1.0 on exact normalized equality, else 0.0.
    Street uses a token-set ratio. A component the candidate lacks counts 0.
    """
    weighted = 0.0
    total_weight = 0.0

    if entry.normalized_city:
        total_weight += config.city_weight
        if candidate.city == entry.normalized_city:
            weighted += config.city_weight

    if entry.normalized_country:
        total_weight += config.country_weight
        if candidate.country == entry.normalized_country:
            weighted += config.country_weight

    if entry.normalized_street:
        total_weight += config.address_weight
        if candidate.street:
            street_score = fuzz.token_set_ratio(candidate.street, entry.normalized_street) / 100.0
            weighted += config.address_weight * street_score

    if total_weight <= 0:
        return 0.0
    return weighted / total_weight


def _entry_names(entry: WatchlistEntry) -> Iterator[Tuple[str, str]]:
    """(normalized, display) pairs, primary name first"""
    yield entry.normalized_primary_name, entry.primary_name
    for normalized, display in zip(entry.normalized_alt_names, entry.alt_names):
        yield normalized, display


class ScreeningEngine:
    """Scores customers against a watchlist snapshot"""

    def __init__(self, config: Optional[MatchingConfig] = None):
        """Initialize engine

        Args:
            config: Matching weights and thresholds
        """
        self.config = config or MatchingConfig()

    def score(
        self,
        candidate: CustomerIdentity,
        snapshot: WatchlistSnapshot,
        deadline: Optional[float] = None
    ) -> MatchResult:
        """Score one candidate against every entry of a snapshot

        Args:
            candidate: Customer identity to screen
            snapshot: Pinned watchlist snapshot
            deadline: time.monotonic() value after which the attempt is abandoned

        Returns:
            MatchResult with score 0-100 and the best entry (None when nothing matched)

        Raises:
            ScreeningTimeout: If the deadline passes before all entries are compared
        """
        normalized = _Candidate.from_identity(candidate)
        if not normalized.name or not snapshot.entries:
            return NO_MATCH

        cfg = self.config
        best_raw = 0.0
        best: Optional[MatchResult] = None

        for entry in snapshot.entries:
            if deadline is not None and time.monotonic() > deadline:
                raise ScreeningTimeout(
                    f"Screening of customer {candidate.customer_id} exceeded its time budget"
                )

            best_name = 0.0
            best_display = None
            for entry_name, display in _entry_names(entry):
                similarity = name_similarity(normalized.name, entry_name, cfg.min_name_similarity)
                if similarity > best_name:
                    best_name = similarity
                    best_display = display
            if best_name <= 0.0:
                continue

            if entry.has_location_data:
                loc = location_similarity(normalized, entry, cfg)
                raw = cfg.name_weight * best_name + cfg.location_weight * loc
            else:
                loc = 0.0
                raw = best_name

            if raw > best_raw:
                best_raw = raw
                best = MatchResult(
                    score=0,
                    matched_entry=entry,
                    matched_name=best_display,
                    name_similarity=best_name,
                    location_similarity=loc,
                )

        if best is None:
            return NO_MATCH

        score = max(0, min(100, int(round(best_raw * 100))))
        return MatchResult(
            score=score,
            matched_entry=best.matched_entry,
            matched_name=best.matched_name,
            name_similarity=best.name_similarity,
            location_similarity=best.location_similarity,
        )
