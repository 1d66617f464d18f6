"""Tests for Authority timestamp tokens and the injectable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from fiscal_kernel.domain.clock import DeterministicClock
from fiscal_kernel.domain.timestamps import (
    format_authority_date,
    format_authority_timestamp,
    parse_authority_timestamp,
)
from fiscal_kernel.exceptions import InvalidAuthorityTimestampError


class TestParse:

    def test_fields_sliced(self):
        stamp = parse_authority_timestamp("20240102030405")
        assert (stamp.year, stamp.month, stamp.day) == (2024, 1, 2)
        assert (stamp.hour, stamp.minute, stamp.second) == (3, 4, 5)

    def test_day_first_ambiguity_not_reordered(self):
        """2024-01-02 stays January 2nd."""
        assert parse_authority_timestamp("20240102000000").display_date == "02/01/2024"

    def test_display_time(self):
        assert parse_authority_timestamp("20241231235959").display_time == "23:59:59"

    def test_leap_day(self):
        assert parse_authority_timestamp("20240229120000").day == 29

    def test_to_datetime_in_eat(self):
        moment = parse_authority_timestamp("20240315123000").to_datetime()
        assert moment.utcoffset() == timedelta(hours=3)
        assert moment.astimezone(timezone.utc).hour == 9

    @pytest.mark.parametrize(
        "token",
        [
            None,
            20240102030405,
            "2024010203040",
            "202401020304055",
            "2024-01-02 03:04",
            "20241302030405",
            "20230229030405",
            "20240100030405",
            "20240102240405",
            "20240102036005",
            "２０２４０１０２０３０４０５",
        ],
    )
    def test_invalid_tokens(self, token):
        with pytest.raises(InvalidAuthorityTimestampError):
            parse_authority_timestamp(token)


class TestFormat:

    def test_round_trip_token(self):
        moment = datetime(2024, 3, 15, 12, 30, 1, tzinfo=timezone(timedelta(hours=3)))
        token = format_authority_timestamp(moment)
        assert token == "20240315123001"
        assert parse_authority_timestamp(token).to_datetime() == moment

    def test_date_token(self):
        assert format_authority_date(datetime(2024, 3, 5)) == "20240305"


class TestClock:

    def test_now_in_offset(self):
        clock = DeterministicClock(datetime(2024, 3, 15, 22, 0, 0, tzinfo=timezone.utc))
        local = clock.now_in(3)
        assert (local.day, local.hour) == (16, 1)

    def test_advance(self):
        clock = DeterministicClock()
        start = clock.now()
        assert clock.tick() == start + timedelta(seconds=1)
