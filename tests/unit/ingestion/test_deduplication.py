"""
Unit tests for the deduplication module.

Tests hashing, similarity scoring, fuzzy matching, merge, quality scoring
and the in-run deduplication strategies.
"""

from datetime import UTC, datetime

import pytest

from src.ingestion.deduplication import (
    CompositeDeduplicator,
    DeduplicationConfig,
    DeduplicationStrategy,
    ExactMatchDeduplicator,
    FuzzyMatchDeduplicator,
    calculate_event_quality_score,
    calculate_string_similarity,
    calculate_time_similarity,
    find_similar_events,
    generate_event_hash,
    get_deduplicator,
    is_exact_duplicate,
    merge_event_data,
    normalize_event_data,
    parse_event_time,
)
from src.schemas.scraping import MatchType, RawEventData

# =============================================================================
# FIELD HELPERS
# =============================================================================


class TestParseEventTime:
    """Tests for parse_event_time."""

    def test_parses_zulu_suffix(self):
        """A trailing Z should be read as UTC."""
        parsed = parse_event_time("2025-06-01T20:00:00Z")
        assert parsed == datetime(2025, 6, 1, 20, 0, tzinfo=UTC)

    def test_naive_is_treated_as_utc(self):
        """Naive timestamps get a UTC timezone."""
        parsed = parse_event_time("2025-06-01T20:00:00")
        assert parsed.tzinfo is not None
        assert parsed.hour == 20

    def test_offset_is_converted_to_utc(self):
        """Offsets are normalized to UTC."""
        parsed = parse_event_time("2025-06-01T22:00:00+02:00")
        assert parsed == datetime(2025, 6, 1, 20, 0, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "   ", "next friday", "2025-13-45"])
    def test_unparsable_returns_none(self, value):
        """Missing or malformed values yield None instead of raising."""
        assert parse_event_time(value) is None


class TestNormalizeEventData:
    """Tests for normalize_event_data."""

    def test_collapses_whitespace(self, create_candidate):
        """Runs of whitespace in text fields are collapsed and trimmed."""
        candidate = create_candidate(
            title="  Jazz   Night \n at the  Club ", location=" Main  Hall "
        )
        normalized = normalize_event_data(candidate)
        assert normalized.title == "Jazz Night at the Club"
        assert normalized.location == "Main Hall"

    def test_rewrites_parsable_times(self, create_candidate):
        """Parsable times become canonical ISO-8601 UTC strings."""
        candidate = create_candidate(start_time="2025-06-01T20:00:00Z")
        assert normalize_event_data(candidate).start_time == "2025-06-01T20:00:00+00:00"

    def test_keeps_unparsable_times(self, create_candidate):
        """Unparsable times are left untouched."""
        candidate = create_candidate(start_time="every friday")
        assert normalize_event_data(candidate).start_time == "every friday"

    def test_does_not_mutate_input(self, create_candidate):
        """Normalization returns a copy."""
        candidate = create_candidate(title="  Padded Title Here  ")
        normalize_event_data(candidate)
        assert candidate.title == "  Padded Title Here  "


# =============================================================================
# HASHING
# =============================================================================


class TestGenerateEventHash:
    """Tests for generate_event_hash and is_exact_duplicate."""

    def test_case_and_padding_insensitive(self, create_candidate):
        """Title and location are compared lowercased and trimmed."""
        a = create_candidate(title="Jazz Night", location="Blue Note")
        b = create_candidate(title="  JAZZ NIGHT ", location="blue note ")
        assert generate_event_hash(a) == generate_event_hash(b)

    def test_same_day_different_hour(self, create_candidate):
        """Start time only matters at day resolution."""
        a = create_candidate(start_time="2025-06-01T10:00:00Z")
        b = create_candidate(start_time="2025-06-01T21:30:00Z")
        assert generate_event_hash(a) == generate_event_hash(b)

    def test_different_day(self, create_candidate):
        """Different days produce different hashes."""
        a = create_candidate(start_time="2025-06-01T20:00:00Z")
        b = create_candidate(start_time="2025-06-02T20:00:00Z")
        assert generate_event_hash(a) != generate_event_hash(b)

    def test_missing_fields_do_not_raise(self):
        """Hashing tolerates missing location and time."""
        event = RawEventData(source_id="s", title="Only A Title")
        assert len(generate_event_hash(event)) == 64

    def test_is_exact_duplicate(self, create_candidate):
        """Membership check against known hashes."""
        event_hash = generate_event_hash(create_candidate())
        assert is_exact_duplicate(event_hash, {event_hash})
        assert not is_exact_duplicate(event_hash, set())


# =============================================================================
# SIMILARITY
# =============================================================================


class TestStringSimilarity:
    """Tests for calculate_string_similarity."""

    def test_identical_ignoring_case_and_spacing(self):
        assert calculate_string_similarity("Hello  World", "hello world") == 1.0

    def test_edit_distance(self):
        """kitten -> sitting is 3 edits over 7 characters."""
        assert calculate_string_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)

    @pytest.mark.parametrize("a,b", [("", "abc"), ("abc", None), ("   ", "abc"), (None, None)])
    def test_empty_input_is_zero(self, a, b):
        assert calculate_string_similarity(a, b) == 0.0

    def test_range(self):
        """Scores stay within [0, 1]."""
        score = calculate_string_similarity("a", "completely different")
        assert 0.0 <= score <= 1.0


class TestTimeSimilarity:
    """Tests for calculate_time_similarity."""

    def test_equal_times(self):
        assert calculate_time_similarity("2025-06-01T20:00:00Z", "2025-06-01T20:00:00Z") == 1.0

    def test_linear_decay(self):
        """15 minutes apart with a 30 minute tolerance scores 0.5."""
        score = calculate_time_similarity("2025-06-01T20:00:00Z", "2025-06-01T20:15:00Z", 30)
        assert score == pytest.approx(0.5)

    def test_exactly_at_tolerance(self):
        assert calculate_time_similarity("2025-06-01T20:00:00Z", "2025-06-01T20:30:00Z", 30) == 0.0

    def test_just_inside_tolerance(self):
        """29 minutes apart with a 30 minute tolerance keeps 1/30 of the score."""
        score = calculate_time_similarity("2025-06-01T20:00:00Z", "2025-06-01T20:29:00Z", 30)
        assert score == pytest.approx(1 / 30)
        assert score > 0.0

    def test_beyond_tolerance(self):
        assert calculate_time_similarity("2025-06-01T20:00:00Z", "2025-06-01T21:00:00Z", 30) == 0.0

    def test_unparsable(self):
        assert calculate_time_similarity("garbage", "2025-06-01T20:00:00Z") == 0.0
        assert calculate_time_similarity(None, None) == 0.0


class TestFindSimilarEvents:
    """Tests for weighted multi-signal matching."""

    def test_identical_event_matches(self, create_candidate, create_record):
        """Same title, location and time give a perfect combined score."""
        existing = create_record(start_time="2025-06-01T20:00:00Z")
        candidate = create_candidate(start_time="2025-06-01T20:00:00Z")

        matches = find_similar_events(candidate, [existing])

        assert len(matches) == 1
        assert matches[0].event_id == existing.id
        assert matches[0].similarity == pytest.approx(1.0)
        # time is the last dimension checked, so it names the match
        assert matches[0].match_type == MatchType.TIME
        assert matches[0].confidence == pytest.approx(1.0)

    def test_title_only_is_below_threshold(self, create_candidate, create_record):
        """A title match alone only contributes 0.5."""
        existing = create_record(location=None, start_time="")
        candidate = create_candidate(location=None, start_time="")
        assert find_similar_events(candidate, [existing]) == []

    def test_title_and_location_match_without_time(self, create_candidate, create_record):
        """Title and location at a different time still match on a lower threshold."""
        existing = create_record(start_time="2025-06-01T20:00:00Z")
        candidate = create_candidate(start_time="2025-06-04T20:00:00Z")
        config = DeduplicationConfig(combined_similarity_threshold=0.75)

        matches = find_similar_events(candidate, [existing], config)

        assert len(matches) == 1
        assert matches[0].match_type == MatchType.LOCATION

    def test_unrelated_events_do_not_match(self, create_candidate, create_record):
        existing = create_record(title="Symphony Orchestra Gala", location="Opera House")
        candidate = create_candidate(title="Street Food Market Weekend", location="Harbour Front")
        assert find_similar_events(candidate, [existing]) == []

    def test_sorted_by_similarity(self, create_candidate, create_record):
        """Best match first."""
        close = create_record(
            title="Jazz Night at the Blue Note", start_time="2025-06-01T20:00:00Z"
        )
        near = create_record(
            title="Jazz Nights at the Blue Note", start_time="2025-06-01T20:10:00Z"
        )
        candidate = create_candidate(start_time="2025-06-01T20:00:00Z")

        matches = find_similar_events(candidate, [near, close])

        assert [m.event_id for m in matches] == [close.id, near.id]
        assert matches[0].similarity >= matches[1].similarity


# =============================================================================
# MERGE & QUALITY
# =============================================================================


class TestMergeEventData:
    """Tests for merge_event_data."""

    def test_incoming_values_win_when_present(self, create_candidate, create_record):
        existing = create_record(description="Original description", price=None)
        incoming = create_candidate(description=None, price="20 EUR")
        incoming.scrape_hash = "new-hash"

        merged = merge_event_data(existing, incoming)

        assert merged.description == "Original description"
        assert merged.price == "20 EUR"
        assert merged.scrape_hash == "new-hash"

    def test_identity_is_preserved(self, create_candidate, create_record):
        """The persisted id and source stay with the existing event."""
        existing = create_record(source_id="source-a")
        incoming = create_candidate(source_id="source-b")

        merged = merge_event_data(existing, incoming)

        assert merged.id == existing.id
        assert merged.source_id == "source-a"
        assert merged.created_at == existing.created_at


class TestQualityScore:
    """Tests for calculate_event_quality_score."""

    def test_complete_event_scores_100(self):
        event = RawEventData(
            source_id="s",
            title="An Evening of Contemporary Jazz Standards",
            description="x" * 250,
            start_time="2025-06-01T20:00:00Z",
            end_time="2025-06-01T23:00:00Z",
            location="The Blue Note Jazz Club",
            image_url="https://img.example.com/1.jpg",
            price="25 EUR",
            source_url="https://example.com/e/1",
        )
        assert calculate_event_quality_score(event) == 100

    def test_empty_event_scores_0(self):
        assert calculate_event_quality_score(RawEventData(source_id="s")) == 0

    def test_adding_a_field_never_lowers_the_score(self):
        """Quality is monotonic in the fields present."""
        fields = {
            "title": "Jazz Night at the Blue Note",
            "description": "A night of live jazz with local musicians and guests.",
            "start_time": "2025-06-01T20:00:00Z",
            "end_time": "2025-06-01T23:00:00Z",
            "location": "Blue Note Club",
            "image_url": "https://img.example.com/1.jpg",
            "price": "25 EUR",
            "source_url": "https://example.com/e/1",
        }
        data: dict = {"source_id": "s"}
        previous = calculate_event_quality_score(RawEventData(**data))
        for name, value in fields.items():
            data[name] = value
            score = calculate_event_quality_score(RawEventData(**data))
            assert score >= previous
            assert 0 <= score <= 100
            previous = score


# =============================================================================
# IN-RUN STRATEGIES
# =============================================================================


class TestExactMatchDeduplicator:
    """Tests for ExactMatchDeduplicator."""

    def test_collapses_same_hash(self, create_candidate):
        events = [create_candidate(), create_candidate(title="JAZZ NIGHT AT THE BLUE NOTE")]
        assert len(ExactMatchDeduplicator().deduplicate(events)) == 1

    def test_highest_quality_wins_in_first_position(self, create_candidate):
        sparse = create_candidate()
        rich = create_candidate(description="Live jazz all night with the house band and guests.")
        other = create_candidate(title="Salsa Social Dance Evening", location="Latin Club")

        result = ExactMatchDeduplicator().deduplicate([sparse, other, rich])

        assert result == [rich, other]

    def test_empty(self):
        assert ExactMatchDeduplicator().deduplicate([]) == []


class TestFuzzyAndComposite:
    """Tests for FuzzyMatchDeduplicator, CompositeDeduplicator and the factory."""

    def test_fuzzy_collapses_near_duplicates(self, create_candidate):
        events = [
            create_candidate(title="Jazz Night at the Blue Note"),
            create_candidate(title="Jazz Night at the Blue Note!"),
            create_candidate(title="Salsa Social Dance Evening", location="Latin Club"),
        ]
        result = FuzzyMatchDeduplicator().deduplicate(events)
        assert [e.title for e in result] == [
            "Jazz Night at the Blue Note",
            "Salsa Social Dance Evening",
        ]

    def test_composite_runs_strategies_in_order(self, create_candidate):
        events = [
            create_candidate(),
            create_candidate(),
            create_candidate(title="Jazz Night at the Blue Note!"),
        ]
        composite = CompositeDeduplicator([ExactMatchDeduplicator(), FuzzyMatchDeduplicator()])
        assert len(composite.deduplicate(events)) == 1

    def test_composite_defaults_to_exact(self):
        composite = CompositeDeduplicator()
        assert len(composite.strategies) == 1
        assert isinstance(composite.strategies[0], ExactMatchDeduplicator)

    @pytest.mark.parametrize(
        "strategy,expected",
        [
            (DeduplicationStrategy.EXACT, ExactMatchDeduplicator),
            (DeduplicationStrategy.FUZZY, FuzzyMatchDeduplicator),
            (DeduplicationStrategy.COMPOSITE, CompositeDeduplicator),
        ],
    )
    def test_get_deduplicator(self, strategy, expected):
        assert isinstance(get_deduplicator(strategy), expected)
