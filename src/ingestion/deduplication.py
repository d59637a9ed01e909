"""
Module for event deduplication.

Decides whether an extracted candidate is an event the catalog already holds:

- generate_event_hash: exact identity over title + location + start date
- calculate_string_similarity / calculate_time_similarity: per-field scores
- find_similar_events: weighted multi-signal fuzzy matching against a corpus
- merge_event_data: field merge applied on the update path
- calculate_event_quality_score: completeness score used to pick winners

It also provides in-run deduplication strategies (Strategy pattern) that
collapse duplicates inside a single batch of candidates:

- ExactMatchDeduplicator: same hash, keep the highest quality candidate
- FuzzyMatchDeduplicator: near duplicates via find_similar_events
- CompositeDeduplicator: chain multiple strategies

All functions are pure and never raise on malformed field values.
"""

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TypeVar

from rapidfuzz.distance import Levenshtein

from src.schemas.scraping import EventDeduplicationMatch, MatchType, RawEventData

SIMILARITY_WEIGHTS = {
    "title": 0.5,
    "location": 0.3,
    "time": 0.2,
}

_WHITESPACE = re.compile(r"\s+")

EventT = TypeVar("EventT", bound=RawEventData)


@dataclass(frozen=True)
class DeduplicationConfig:
    """Tunable thresholds for fuzzy matching."""

    title_similarity_threshold: float = 0.85
    location_similarity_threshold: float = 0.9
    time_similarity_threshold: float = 0.9
    time_tolerance_minutes: float = 30
    combined_similarity_threshold: float = 0.8
    enable_fuzzy_matching: bool = True


# ============================================================================
# FIELD HELPERS
# ============================================================================


def parse_event_time(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Returns None for missing or unparsable values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _collapse(text: str | None) -> str | None:
    if text is None:
        return None
    return _WHITESPACE.sub(" ", text).strip()


def normalize_event_data(event: EventT) -> EventT:
    """
    Normalize a candidate for matching.

    Collapses whitespace in free-text fields and rewrites parsable start/end
    times as canonical ISO-8601 UTC strings. Unparsable times are kept as-is.
    """
    updates: dict = {
        "title": _collapse(event.title) or "",
        "description": _collapse(event.description),
        "location": _collapse(event.location),
    }
    for field_name in ("start_time", "end_time"):
        parsed = parse_event_time(getattr(event, field_name))
        if parsed is not None:
            updates[field_name] = parsed.isoformat()
    return event.model_copy(update=updates)


def generate_event_hash(event: RawEventData) -> str:
    """
    Generate the exact-duplicate hash for an event.

    Uses the lowercased, trimmed title and location and the start date at
    day resolution (UTC).
    """
    title = (event.title or "").lower().strip()
    location = (event.location or "").lower().strip()
    start = parse_event_time(event.start_time)
    day = start.date().isoformat() if start else ""

    key = f"{title}|{location}|{day}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def is_exact_duplicate(event_hash: str, existing_hashes: set[str] | list[str]) -> bool:
    """Check whether a hash is already present in the catalog."""
    return event_hash in existing_hashes


# ============================================================================
# SIMILARITY
# ============================================================================


def calculate_string_similarity(str1: str | None, str2: str | None) -> float:
    """
    Normalized edit-distance similarity in [0, 1].

    Comparison ignores case and whitespace runs. Returns 0 if
    either string is empty.
    """
    if not str1 or not str2:
        return 0.0

    normalized1 = _WHITESPACE.sub(" ", str1).strip().lower()
    normalized2 = _WHITESPACE.sub(" ", str2).strip().lower()

    if not normalized1 or not normalized2:
        return 0.0
    if normalized1 == normalized2:
        return 1.0

    max_length = max(len(normalized1), len(normalized2))
    distance = Levenshtein.distance(normalized1, normalized2)
    return max(0.0, 1.0 - distance / max_length)


def calculate_time_similarity(
    time1: str | datetime | None,
    time2: str | datetime | None,
    tolerance_minutes: float = DeduplicationConfig.time_tolerance_minutes,
) -> float:
    """
    Similarity of two timestamps.

    1 when equal, decaying linearly to 0 at ``tolerance_minutes`` apart.
    0 beyond the tolerance and for missing or unparsable input.
    """
    date1 = parse_event_time(time1)
    date2 = parse_event_time(time2)
    if date1 is None or date2 is None or tolerance_minutes <= 0:
        return 0.0

    diff_minutes = abs((date1 - date2).total_seconds()) / 60
    if diff_minutes >= tolerance_minutes:
        return 0.0
    return 1.0 - diff_minutes / tolerance_minutes


def find_similar_events(
    new_event: RawEventData,
    existing_events: list[RawEventData],
    config: DeduplicationConfig | None = None,
) -> list[EventDeduplicationMatch]:
    """
    Find existing events that are likely the same as ``new_event``.

    Each existing event gets a combined score of
    ``title * 0.5 + location * 0.3 + time * 0.2``. Only events whose combined
    score reaches ``combined_similarity_threshold`` are returned. The match
    type names the single dimension that reached its own threshold (title,
    then location, then time; later ones take precedence), falling back to
    ``combined``.

    Args:
        new_event: Candidate to classify
        existing_events: Corpus to match against (EventRecord ids are used
            as ``event_id`` when present)
        config: Thresholds; defaults to DeduplicationConfig()

    Returns:
        Matches sorted by descending similarity
    """
    config = config or DeduplicationConfig()
    matches: list[EventDeduplicationMatch] = []

    for existing in existing_events:
        title_similarity = calculate_string_similarity(new_event.title, existing.title)
        location_similarity = (
            calculate_string_similarity(new_event.location, existing.location)
            if new_event.location and existing.location
            else 0.0
        )
        time_similarity = (
            calculate_time_similarity(
                new_event.start_time, existing.start_time, config.time_tolerance_minutes
            )
            if new_event.start_time and existing.start_time
            else 0.0
        )

        combined = (
            title_similarity * SIMILARITY_WEIGHTS["title"]
            + location_similarity * SIMILARITY_WEIGHTS["location"]
            + time_similarity * SIMILARITY_WEIGHTS["time"]
        )

        if combined < config.combined_similarity_threshold:
            continue

        match_type = MatchType.COMBINED
        confidence = combined

        if title_similarity >= config.title_similarity_threshold:
            match_type = MatchType.TITLE
            confidence = max(confidence, title_similarity)
        if location_similarity >= config.location_similarity_threshold:
            match_type = MatchType.LOCATION
            confidence = max(confidence, location_similarity)
        if time_similarity >= config.time_similarity_threshold:
            match_type = MatchType.TIME
            confidence = max(confidence, time_similarity)

        matches.append(
            EventDeduplicationMatch(
                event_id=getattr(existing, "id", existing.source_id),
                similarity=combined,
                match_type=match_type,
                confidence=confidence,
            )
        )

    return sorted(matches, key=lambda m: m.similarity, reverse=True)


# ============================================================================
# MERGE & QUALITY
# ============================================================================

MERGEABLE_FIELDS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "location",
    "price",
    "image_url",
    "source_url",
)


def merge_event_data(existing: EventT, incoming: RawEventData) -> EventT:
    """
    Merge an incoming observation into an existing event.

    Mutable fields take the incoming value when present, otherwise keep the
    existing one. ``source_id`` and any persisted id stay with the existing
    event; ``extracted_at`` and ``scrape_hash`` come from the incoming one.
    """
    updates = {
        name: getattr(incoming, name) or getattr(existing, name) for name in MERGEABLE_FIELDS
    }
    updates["extracted_at"] = incoming.extracted_at
    updates["scrape_hash"] = incoming.scrape_hash
    return existing.model_copy(update=updates)


def calculate_event_quality_score(event: RawEventData) -> int:
    """
    Score a candidate's completeness from 0 to 100.

    Title 30, description 25, time 20, location 15, auxiliary fields 10.
    """
    score = 0

    if event.title:
        score += 20
        if len(event.title) > 10:
            score += 5
        if len(event.title) > 30:
            score += 5

    if event.description:
        score += 15
        if len(event.description) > 50:
            score += 5
        if len(event.description) > 200:
            score += 5

    if event.start_time:
        score += 15
        if event.end_time:
            score += 5

    if event.location:
        score += 10
        if len(event.location) > 10:
            score += 5

    if event.image_url:
        score += 3
    if event.price:
        score += 3
    if event.source_url:
        score += 4

    return min(score, 100)


# ============================================================================
# IN-RUN STRATEGIES
# ============================================================================


class DeduplicationStrategy(str, Enum):
    """Available in-run deduplication strategies."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    COMPOSITE = "composite"


class EventDeduplicator(ABC):
    """Abstract base for in-run deduplication strategies."""

    @abstractmethod
    def deduplicate(self, events: list[RawEventData]) -> list[RawEventData]:
        """Deduplicate events and return unique set."""
        pass


class ExactMatchDeduplicator(EventDeduplicator):
    """Match by event hash (title + location + date)."""

    def deduplicate(self, events: list[RawEventData]) -> list[RawEventData]:
        """
        Collapse candidates sharing a hash.

        The highest quality candidate of each group wins; ties keep the first
        occurrence. Output keeps first-occurrence order.

        Returns:
            List of unique events
        """
        winners: dict[str, RawEventData] = {}
        order: list[str] = []

        for event in events:
            key = event.scrape_hash or generate_event_hash(event)
            current = winners.get(key)
            if current is None:
                winners[key] = event
                order.append(key)
            elif calculate_event_quality_score(event) > calculate_event_quality_score(current):
                winners[key] = event

        return [winners[key] for key in order]


class FuzzyMatchDeduplicator(EventDeduplicator):
    """
    Fuzzy match for typos and slight variations.

    A candidate is dropped when it matches an already accepted candidate
    above ``combined_similarity_threshold``.
    """

    def __init__(self, config: DeduplicationConfig | None = None):
        """
        Initialize with matching thresholds.

        Args:
            config: DeduplicationConfig; defaults are used when omitted
        """
        self.config = config or DeduplicationConfig()

    def deduplicate(self, events: list[RawEventData]) -> list[RawEventData]:
        """
        Deduplicate events using weighted fuzzy matching.

        Returns:
            List of unique events (first occurrence kept)
        """
        unique_events: list[RawEventData] = []

        for event in events:
            if not find_similar_events(event, unique_events, self.config):
                unique_events.append(event)

        return unique_events


class CompositeDeduplicator(EventDeduplicator):
    """Chain multiple strategies; each runs on the previous one's output."""

    def __init__(self, strategies: list[EventDeduplicator] | None = None):
        """
        Initialize with an ordered list of strategies.

        Args:
            strategies: Strategies to apply in order. Defaults to exact matching.
        """
        self.strategies = strategies or [ExactMatchDeduplicator()]

    def deduplicate(self, events: list[RawEventData]) -> list[RawEventData]:
        """Apply each strategy in turn."""
        result = events
        for strategy in self.strategies:
            result = strategy.deduplicate(result)
        return result


def get_deduplicator(
    strategy: DeduplicationStrategy = DeduplicationStrategy.EXACT,
    config: DeduplicationConfig | None = None,
) -> EventDeduplicator:
    """
    Build a deduplicator for the given strategy.

    Args:
        strategy: Strategy name
        config: Thresholds for fuzzy matching

    Returns:
        EventDeduplicator instance
    """
    if strategy == DeduplicationStrategy.FUZZY:
        return FuzzyMatchDeduplicator(config)
    if strategy == DeduplicationStrategy.COMPOSITE:
        return CompositeDeduplicator([ExactMatchDeduplicator(), FuzzyMatchDeduplicator(config)])
    return ExactMatchDeduplicator()
