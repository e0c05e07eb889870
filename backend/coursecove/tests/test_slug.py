"""
Tests for organization slug rules.

Covers:
- slugify normalization of business names
- Format validation order: too_short, too_long, invalid_format, reserved
- Availability checks and suggestions against existing organizations
- Property checks on slugify output
"""

import pytest
from hypothesis import given, strategies as st

from coursecove.utils.slug import (
    RESERVED_SLUGS,
    SLUG_MAX_LENGTH,
    SLUG_PATTERN,
    SlugReason,
    check_slug_availability,
    slugify,
    suggest_slug,
    validate_slug_format,
)


class TestSlugify:

    @pytest.mark.parametrize("name,expected", [
        ("Joe's @ Music #1", "joes-music-1"),
        ("  Harbor   Music  ", "harbor-music"),
        ("piano_and_voice", "piano-and-voice"),
        ("--Drums--", "drums"),
        ("Café Lessons", "caf-lessons"),
        ("!!!", ""),
    ])
    def test_examples(self, name, expected):
        assert slugify(name) == expected

    @given(st.text(max_size=80))
    def test_output_is_empty_or_well_formed(self, text):
        slug = slugify(text)
        assert slug == "" or SLUG_PATTERN.match(slug)

    @given(st.text(max_size=80))
    def test_idempotent(self, text):
        assert slugify(slugify(text)) == slugify(text)


class TestValidateSlugFormat:

    def test_valid(self):
        result = validate_slug_format("my-business")
        assert result.valid is True
        assert result.available is True
        assert result.reason is None
        assert result.message is None

    @pytest.mark.parametrize("slug,reason", [
        ("ab", SlugReason.TOO_SHORT),
        ("", SlugReason.TOO_SHORT),
        ("a" * 51, SlugReason.TOO_LONG),
        ("my--business", SlugReason.INVALID_FORMAT),
        ("-leading", SlugReason.INVALID_FORMAT),
        ("trailing-", SlugReason.INVALID_FORMAT),
        ("Upper-Case", SlugReason.INVALID_FORMAT),
        ("under_score", SlugReason.INVALID_FORMAT),
        ("admin", SlugReason.RESERVED),
        ("sign-in", SlugReason.RESERVED),
    ])
    def test_rejections(self, slug, reason):
        result = validate_slug_format(slug)
        assert result.valid is False
        assert result.available is False
        assert result.reason == reason
        assert result.message

    def test_length_bounds(self):
        assert validate_slug_format("abc").valid
        assert validate_slug_format("a" * SLUG_MAX_LENGTH).valid

    def test_length_checked_before_format(self):
        assert validate_slug_format("A_").reason == SlugReason.TOO_SHORT

    def test_reserved_words_are_well_formed(self):
        # otherwise they would be reported as invalid_format, not reserved
        for word in RESERVED_SLUGS:
            assert SLUG_PATTERN.match(word), word


class TestAvailability:

    def test_available(self, db_session):
        assert check_slug_availability(db_session, "harbor-music").available is True

    def test_taken(self, db_session, make_org):
        make_org(slug="harbor-music")
        result = check_slug_availability(db_session, "harbor-music")
        assert result.valid is True
        assert result.available is False
        assert result.reason == SlugReason.TAKEN

    def test_own_slug_is_available_when_excluded(self, db_session, make_org):
        org = make_org(slug="harbor-music")
        assert check_slug_availability(db_session, "harbor-music", exclude_org_id=org.id).available

    def test_format_failure_skips_database(self, db_session):
        assert check_slug_availability(db_session, "admin").reason == SlugReason.RESERVED

    def test_suggest_unused(self, db_session):
        assert suggest_slug(db_session, "Harbor Music") == "harbor-music"

    def test_suggest_appends_counter(self, db_session, make_org):
        make_org(slug="harbor-music")
        make_org(slug="harbor-music-2")
        assert suggest_slug(db_session, "Harbor Music") == "harbor-music-3"

    def test_suggest_for_reserved_name(self, db_session):
        assert suggest_slug(db_session, "Admin") == "org-admin"

    def test_suggest_for_unusable_name(self, db_session):
        assert suggest_slug(db_session, "!!") == "org"

    def test_suggest_respects_max_length(self, db_session):
        slug = suggest_slug(db_session, "x" * 200)
        assert len(slug) <= SLUG_MAX_LENGTH
        assert validate_slug_format(slug).valid
