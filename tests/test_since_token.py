"""
Tests for fleet_event_sync.since_token module.

Tests decoding of the timestamp prefix, age/expiry checks and the advance
used to skip tokens the provider keeps failing on.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from fleet_event_sync.since_token import (
    NEW_SINCE_TOKEN,
    advance_since_token,
    format_since_timestamp,
    is_since_token_expired,
    parse_since_token_timestamp,
    since_token_age,
)


class TestParseAndFormat:
    """Test timestamp prefix handling."""

    def test_parses_prefix_and_ignores_suffix(self) -> None:
        """Should decode the first 14 characters as UTC."""
        assert parse_since_token_timestamp('20240315120000abc') == datetime(
            2024, 3, 15, 12, 0, 0, tzinfo=UTC
        )

    @pytest.mark.parametrize(
        'since_token',
        [None, '', NEW_SINCE_TOKEN, '2024031512', '2024O315120000', '20241345120000'],
    )
    def test_undecodable_tokens_return_none(self, since_token: str | None) -> None:
        """Should return None for missing, 'NEW', short, non-digit or invalid dates."""
        assert parse_since_token_timestamp(since_token) is None

    def test_format_treats_naive_as_utc(self) -> None:
        """Should render naive datetimes unchanged and aware ones in UTC."""
        assert format_since_timestamp(datetime(2024, 3, 1, 6, 5, 4)) == '20240301060504'
        plus_two = timezone(timedelta(hours=2))
        assert (
            format_since_timestamp(datetime(2024, 3, 1, 10, 5, 4, tzinfo=plus_two))
            == '20240301080504'
        )


class TestAgeAndExpiry:
    """Test since_token_age() and is_since_token_expired()."""

    def test_age(self, fixed_now: datetime) -> None:
        """Should measure from the embedded timestamp."""
        assert since_token_age('20240316060000000', fixed_now) == timedelta(hours=6)

    def test_age_unknown_for_new(self, fixed_now: datetime) -> None:
        """Should return None when there is no timestamp."""
        assert since_token_age(NEW_SINCE_TOKEN, fixed_now) is None

    def test_expiry_threshold(self, fixed_now: datetime) -> None:
        """Should expire strictly after max_age_days."""
        assert is_since_token_expired('20240310120000000', 6, fixed_now) is False
        assert is_since_token_expired('20240310115959000', 6, fixed_now) is True

    def test_undecodable_token_never_expires(self, fixed_now: datetime) -> None:
        """Should not report 'NEW' as expired."""
        assert is_since_token_expired(NEW_SINCE_TOKEN, 6, fixed_now) is False


class TestAdvance:
    """Test advance_since_token()."""

    def test_moves_forward_one_second_keeping_suffix(self, fixed_now: datetime) -> None:
        """Should add one second to the prefix and keep the opaque tail."""
        assert (
            advance_since_token('20240316100000042', 6, fixed_now) == '20240316100001042'
        )

    def test_rolls_over_minute_boundary(self, fixed_now: datetime) -> None:
        """Should carry into minutes and hours like a real clock."""
        assert (
            advance_since_token('20240316095959xyz', 6, fixed_now) == '20240316100000xyz'
        )

    def test_expired_token_becomes_new(self, fixed_now: datetime) -> None:
        """Should restart from 'NEW' once the token is too old."""
        assert advance_since_token('20240301000000000', 6, fixed_now) == NEW_SINCE_TOKEN

    def test_new_cannot_be_advanced(self, fixed_now: datetime) -> None:
        """Should return None for a token without a timestamp."""
        assert advance_since_token(NEW_SINCE_TOKEN, 6, fixed_now) is None
