# fleet_event_sync/since_token.py
"""
Helpers for the provider's incremental continuation token ("since-token").

The token is opaque except for its first 14 characters, which encode the
creation time as `YYYYMMDDHHMMSS` in UTC. The provider accepts the literal
'NEW' to start a stream from the current moment and stops honouring tokens
after roughly seven days.

Only monitoring and the incremental worker's skip logic look inside a token;
everything else treats it as an opaque string.
"""

from datetime import UTC, datetime, timedelta
from typing import Final

__all__: list[str] = [
    'NEW_SINCE_TOKEN',
    'PROVIDER_TOKEN_LIFETIME_DAYS',
    'SINCE_TOKEN_TIMESTAMP_FORMAT',
    'advance_since_token',
    'format_since_timestamp',
    'is_since_token_expired',
    'parse_since_token_timestamp',
    'since_token_age',
]

NEW_SINCE_TOKEN: Final[str] = 'NEW'
SINCE_TOKEN_TIMESTAMP_FORMAT: Final[str] = '%Y%m%d%H%M%S'
SINCE_TOKEN_TIMESTAMP_LENGTH: Final[int] = 14
PROVIDER_TOKEN_LIFETIME_DAYS: Final[int] = 7


def format_since_timestamp(moment: datetime) -> str:
    """Render a datetime as the 14-character UTC prefix (also used in URLs)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime(SINCE_TOKEN_TIMESTAMP_FORMAT)


def parse_since_token_timestamp(since_token: str | None) -> datetime | None:
    """
    Decode the creation time embedded in a since-token.

    Returns:
        Aware UTC datetime, or None for 'NEW', empty, short or malformed tokens.
    """
    if not since_token or since_token == NEW_SINCE_TOKEN:
        return None

    prefix: str = since_token[:SINCE_TOKEN_TIMESTAMP_LENGTH]
    if len(prefix) < SINCE_TOKEN_TIMESTAMP_LENGTH or not prefix.isdigit():
        return None

    try:
        parsed: datetime = datetime.strptime(prefix, SINCE_TOKEN_TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return parsed.replace(tzinfo=UTC)


def since_token_age(
    since_token: str | None,
    now: datetime | None = None,
) -> timedelta | None:
    """Time elapsed since the token was issued, or None if it has no timestamp."""
    issued_at: datetime | None = parse_since_token_timestamp(since_token)
    if issued_at is None:
        return None
    reference: datetime = now if now is not None else datetime.now(UTC)
    return reference - issued_at


def is_since_token_expired(
    since_token: str | None,
    max_age_days: float,
    now: datetime | None = None,
) -> bool:
    """True when the token is older than max_age_days (undecodable tokens are not)."""
    age: timedelta | None = since_token_age(since_token, now)
    return age is not None and age > timedelta(days=max_age_days)


def advance_since_token(
    since_token: str,
    max_age_days: float,
    now: datetime | None = None,
) -> str | None:
    """
    Produce the token that skips past a window the provider keeps failing on.

    The timestamp prefix moves forward one second; the opaque suffix is kept.
    Tokens older than max_age_days are replaced by 'NEW', which restarts the
    stream at the present and accepts the gap.

    Returns:
        The next token, or None when the token carries no timestamp and cannot
        be advanced.
    """
    issued_at: datetime | None = parse_since_token_timestamp(since_token)
    if issued_at is None:
        return None

    if is_since_token_expired(since_token, max_age_days, now):
        return NEW_SINCE_TOKEN

    advanced: datetime = issued_at + timedelta(seconds=1)
    suffix: str = since_token[SINCE_TOKEN_TIMESTAMP_LENGTH:]
    return f'{format_since_timestamp(advanced)}{suffix}'
