"""
Candidate validation.

Classifies extracted candidates as events, attractions (permanent or ongoing
venues without a date) or invalid content such as navigation menu entries
picked up by extraction.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from src.ingestion.deduplication import parse_event_time
from src.schemas.scraping import RawEventData

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 10
MIN_DESCRIPTION_LENGTH = 50
MAX_PAST_DAYS = 60
MAX_FUTURE_YEARS = 2

INVALID_TITLE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^home$",
        r"^menu$",
        r"^navigation$",
        r"^contact$",
        r"^about\s*us$",
        r"^services$",
        r"^browse\s*events$",
        r"^all\s*events$",
        r"^view\s*all$",
        r"^more\s*events$",
        r"^upcoming$",
        r"^past\s*events$",
        r"^calendar$",
        r"^search$",
        r"^filter$",
        r"^categories$",
        r"^sign\s*(in|up)$",
        r"^log\s*(in|out)$",
        r"^(my\s*)?account$",
        r"^cart$",
        r"^checkout$",
        r"^wishlist$",
        r"^favorites$",
    )
]

ATTRACTION_KEYWORDS = (
    "permanent",
    "ongoing",
    "year-round",
    "daily",
    "open every",
    "always open",
    "museum",
    "gallery",
    "exhibition hall",
)


class EventClassification(str, Enum):
    """What a candidate represents."""

    EVENT = "event"
    ATTRACTION = "attraction"
    INVALID = "invalid"


@dataclass
class ValidationResult:
    """Outcome of validating one candidate."""

    is_valid: bool
    classification: EventClassification
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ValidationSummary:
    """Outcome of validating a batch of candidates."""

    valid: list[RawEventData] = field(default_factory=list)
    attractions: list[RawEventData] = field(default_factory=list)
    invalid: list[RawEventData] = field(default_factory=list)
    rejection_reasons: Counter = field(default_factory=Counter)

    @property
    def accepted(self) -> list[RawEventData]:
        """Events and attractions, in that order."""
        return self.valid + self.attractions

    @property
    def validation_rate(self) -> float:
        """Percentage of candidates accepted."""
        total = len(self.valid) + len(self.attractions) + len(self.invalid)
        if total == 0:
            return 0.0
        return len(self.accepted) / total * 100


def _is_attraction(event: RawEventData) -> bool:
    title = (event.title or "").lower()
    description = (event.description or "").lower()
    if any(keyword in title or keyword in description for keyword in ATTRACTION_KEYWORDS):
        return True
    return not event.start_time and not event.end_time


def classify_event(event: RawEventData) -> EventClassification:
    """Classify a candidate as event, attraction or invalid."""
    title = (event.title or "").strip()
    if any(pattern.match(title) for pattern in INVALID_TITLE_PATTERNS):
        return EventClassification.INVALID
    if _is_attraction(event):
        return EventClassification.ATTRACTION
    return EventClassification.EVENT


def _has_suspicious_pattern(text: str) -> bool:
    # shouting, but acronyms up to 5 chars are fine
    if len(text) > 5 and text == text.upper() and re.search(r"[A-Z]{6,}", text):
        return True
    if re.search(r"(.)\1{5,}", text):
        return True
    special = len(re.findall(r"[^a-zA-Z0-9\s]", text))
    return special > len(text) * 0.3


def _validate_event_date(value: str, now: datetime) -> str | None:
    parsed = parse_event_time(value)
    if parsed is None:
        return "Invalid date format"
    if parsed < now - timedelta(days=MAX_PAST_DAYS):
        return f"Event date is more than {MAX_PAST_DAYS} days in the past"
    if parsed > now + timedelta(days=365 * MAX_FUTURE_YEARS):
        return f"Event date is more than {MAX_FUTURE_YEARS} years in the future"
    return None


def validate_event(event: RawEventData, now: datetime | None = None) -> ValidationResult:
    """
    Validate a candidate against the content rules.

    Args:
        event: Candidate to validate
        now: Reference time for date range checks (defaults to current UTC)

    Returns:
        ValidationResult
    """
    now = now or datetime.now(UTC)
    title = (event.title or "").strip()

    if not title:
        return ValidationResult(False, EventClassification.INVALID, "Missing title")
    if len(title) < MIN_TITLE_LENGTH:
        return ValidationResult(
            False,
            EventClassification.INVALID,
            f"Title too short ({len(title)} chars, minimum {MIN_TITLE_LENGTH})",
        )

    classification = classify_event(event)
    if classification == EventClassification.INVALID:
        return ValidationResult(False, classification, "Title matches navigation/menu pattern")

    warnings: list[str] = []
    description = (event.description or "").strip()
    if not description:
        warnings.append("Missing description")
    elif len(description) < MIN_DESCRIPTION_LENGTH:
        warnings.append(
            f"Description too short ({len(description)} chars, "
            f"recommended {MIN_DESCRIPTION_LENGTH}+)"
        )

    if classification == EventClassification.EVENT:
        if not event.start_time:
            warnings.append("Missing start time")
        else:
            reason = _validate_event_date(event.start_time, now)
            if reason:
                return ValidationResult(False, classification, reason, warnings)

    if not event.location:
        warnings.append("Missing venue/location information")

    if _has_suspicious_pattern(title):
        return ValidationResult(
            False, EventClassification.INVALID, "Title contains suspicious patterns", warnings
        )

    return ValidationResult(True, classification, warnings=warnings)


def validate_events(events: list[RawEventData], now: datetime | None = None) -> ValidationSummary:
    """Validate a batch of candidates and tally rejection reasons."""
    summary = ValidationSummary()

    for event in events:
        result = validate_event(event, now)
        if not result.is_valid:
            summary.invalid.append(event)
            summary.rejection_reasons[result.reason or "Unknown reason"] += 1
            logger.debug(f"Rejected event '{event.title}': {result.reason}")
            continue

        if result.classification == EventClassification.ATTRACTION:
            summary.attractions.append(event)
        else:
            summary.valid.append(event)
        if result.warnings:
            logger.debug(f"Event '{event.title}' has warnings: {result.warnings}")

    return summary
