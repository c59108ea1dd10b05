"""Tests for FILETIME decoding and raw attribute parsing."""

import logging
from datetime import datetime, timedelta, timezone

from laps2onepass import (
    FILETIME_EPOCH,
    FILETIME_MAX,
    fncFiletimeToDatetime,
    fncParseFiletime,
)

UNIX_EPOCH_TICKS = 116444736000000000
TICKS_SECOND = 10_000_000

SAMPLES = [
    0,
    1,
    9,
    10,
    11,
    TICKS_SECOND,
    UNIX_EPOCH_TICKS,
    UNIX_EPOCH_TICKS + 123456789,
    133_000_000_000_000_000,
    2**53 + 7,
    2**61 + 987654321,
    2_650_467_743_999_999_999,   # 9999-12-31T23:59:59.999999
]


def test_zero_is_epoch():
    assert fncFiletimeToDatetime(0) == datetime(1601, 1, 1, tzinfo=timezone.utc)
    assert fncFiletimeToDatetime(0) == FILETIME_EPOCH


def test_unix_epoch():
    assert fncFiletimeToDatetime(UNIX_EPOCH_TICKS) == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_known_laps_expiry():
    # 2023-11-14T22:13:20Z
    ticks = UNIX_EPOCH_TICKS + 1_700_000_000 * TICKS_SECOND
    assert fncFiletimeToDatetime(ticks) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_matches_integer_reference():
    for ticks in SAMPLES:
        decoded = fncFiletimeToDatetime(ticks)
        elapsed_us = (decoded - FILETIME_EPOCH) // timedelta(microseconds=1)
        assert elapsed_us == ticks // 10, ticks


def test_sub_microsecond_digit_truncated():
    assert fncFiletimeToDatetime(UNIX_EPOCH_TICKS + 19) == datetime(1970, 1, 1, 0, 0, 0, 1, tzinfo=timezone.utc)


def test_monotonic():
    decoded = [fncFiletimeToDatetime(t) for t in sorted(SAMPLES)]
    assert decoded == sorted(decoded)


def test_never_expires_clamps():
    never = fncFiletimeToDatetime(0x7FFFFFFFFFFFFFFF)
    assert never == datetime.max.replace(tzinfo=timezone.utc)
    assert fncFiletimeToDatetime(FILETIME_MAX) == never
    assert fncFiletimeToDatetime(2_650_467_744_000_000_000) == never


def test_result_is_utc_aware():
    assert fncFiletimeToDatetime(UNIX_EPOCH_TICKS).tzinfo is timezone.utc


def test_parse_valid():
    assert fncParseFiletime("133000000000000000") == 133000000000000000
    assert fncParseFiletime(" 42 ") == 42
    assert fncParseFiletime(b"116444736000000000") == UNIX_EPOCH_TICKS
    assert fncParseFiletime(str(FILETIME_MAX)) == FILETIME_MAX


def test_parse_absent_is_zero_without_warning(caplog):
    with caplog.at_level(logging.DEBUG, logger="laps2onepass"):
        assert fncParseFiletime(None, "PC01.example.com") == 0
        assert fncParseFiletime("", "PC01.example.com") == 0
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


def test_parse_non_numeric_warns_and_substitutes_zero(caplog):
    with caplog.at_level(logging.WARNING, logger="laps2onepass"):
        assert fncParseFiletime("soon", "PC01.example.com") == 0
    assert "PC01.example.com" in caplog.text
    assert fncFiletimeToDatetime(0) == FILETIME_EPOCH


def test_parse_out_of_range(caplog):
    with caplog.at_level(logging.WARNING, logger="laps2onepass"):
        assert fncParseFiletime("-1") == 0
        assert fncParseFiletime(str(FILETIME_MAX + 1)) == 0
    assert len([r for r in caplog.records if r.levelno == logging.WARNING]) == 2
