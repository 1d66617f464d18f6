"""
Authority timestamp tokens.

The Authority exchanges instants as 14-digit ``YYYYMMDDHHMMSS`` tokens and
dates as 8-digit ``YYYYMMDD`` tokens.  Tokens are split by fixed-width
slicing (4-2-2-2-2-2) and range-checked; they are never handed to a
locale-aware date parser, which would happily read ``20240102...`` as
February 1st under a day-first locale.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fiscal_kernel.exceptions import InvalidAuthorityTimestampError

_TOKEN = re.compile(r"[0-9]{14}")


@dataclass(frozen=True, slots=True)
class AuthorityTimestamp:
    """A parsed ``YYYYMMDDHHMMSS`` token."""

    token: str
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int

    @property
    def display_date(self) -> str:
        """``DD/MM/YYYY`` as printed on receipts."""
        return f"{self.day:02d}/{self.month:02d}/{self.year:04d}"

    @property
    def display_time(self) -> str:
        """``HH:MM:SS`` as printed on receipts."""
        return f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}"

    def to_datetime(self, utc_offset_hours: int = 3) -> datetime:
        return datetime(
            self.year, self.month, self.day,
            self.hour, self.minute, self.second,
            tzinfo=timezone(timedelta(hours=utc_offset_hours)),
        )


def parse_authority_timestamp(token: object) -> AuthorityTimestamp:
    """
    Split a 14-digit token into its fields.

    Raises:
        InvalidAuthorityTimestampError: if the token is not exactly fourteen
            ASCII digits or any field is out of range.
    """
    if not isinstance(token, str) or not _TOKEN.fullmatch(token):
        raise InvalidAuthorityTimestampError(token, "expected 14 digits YYYYMMDDHHMMSS")

    year = int(token[0:4])
    month = int(token[4:6])
    day = int(token[6:8])
    hour = int(token[8:10])
    minute = int(token[10:12])
    second = int(token[12:14])

    if year < 1:
        raise InvalidAuthorityTimestampError(token, "year out of range")
    if not 1 <= month <= 12:
        raise InvalidAuthorityTimestampError(token, f"month {month} out of range")
    if not 1 <= day <= calendar.monthrange(year, month)[1]:
        raise InvalidAuthorityTimestampError(token, f"day {day} out of range")
    if hour > 23 or minute > 59 or second > 59:
        raise InvalidAuthorityTimestampError(token, "time of day out of range")

    return AuthorityTimestamp(token, year, month, day, hour, minute, second)


def format_authority_timestamp(moment: datetime) -> str:
    """Render ``moment`` (already in Authority local time) as YYYYMMDDHHMMSS."""
    return (
        f"{moment.year:04d}{moment.month:02d}{moment.day:02d}"
        f"{moment.hour:02d}{moment.minute:02d}{moment.second:02d}"
    )


def format_authority_date(moment: datetime) -> str:
    """Render ``moment`` as YYYYMMDD."""
    return f"{moment.year:04d}{moment.month:02d}{moment.day:02d}"
