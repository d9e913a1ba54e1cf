from datetime import date

import pytest

from catalog_crawler.sequencer import (
    DateOrdinalScheme,
    Direction,
    NumericScheme,
    format_id,
    is_past,
    is_valid_id,
    next_id,
    parse_id,
)


def _walk(start, scheme, direction, cap=100000):
    seen = [start]
    cur = start
    while len(seen) < cap:
        cur = next_id(cur, scheme, direction)
        if cur is None:
            return seen
        seen.append(cur)
    raise AssertionError("walk did not terminate")


def test_numeric_forward_visits_every_value_once():
    scheme = NumericScheme(width=4, min_value=1, max_value=25)
    ids = _walk("0001", scheme, Direction.FORWARD)
    assert ids == [str(n).zfill(4) for n in range(1, 26)]
    assert len(set(ids)) == len(ids)


def test_numeric_reverse_mirrors_forward():
    scheme = NumericScheme(width=4, min_value=1, max_value=25)
    ids = _walk("0025", scheme, Direction.REVERSE)
    assert ids == [str(n).zfill(4) for n in range(25, 0, -1)]


def test_numeric_without_padding():
    scheme = NumericScheme(width=1, min_value=1, max_value=999999)
    assert next_id("34000", scheme, Direction.FORWARD) == "34001"
    assert next_id("9", scheme, Direction.FORWARD) == "10"


def test_numeric_rejects_garbage():
    scheme = NumericScheme(width=4, min_value=1, max_value=9999)
    assert not is_valid_id("abc", scheme)
    assert not is_valid_id("0000", scheme)
    assert not is_valid_id("10000", scheme)
    assert next_id("abc", scheme, Direction.FORWARD) is None


def test_date_ordinal_increments_ordinal_in_both_directions():
    scheme = DateOrdinalScheme(max_per_date=10, latest=date(2024, 12, 31))
    assert next_id("112924_001", scheme, Direction.REVERSE) == "112924_002"
    assert next_id("112924_001", scheme, Direction.FORWARD) == "112924_002"


def test_date_ordinal_rolls_date_by_exactly_one_day():
    scheme = DateOrdinalScheme(max_per_date=10, latest=date(2024, 12, 31))
    assert next_id("112924_010", scheme, Direction.REVERSE) == "112824_001"
    assert next_id("112924_010", scheme, Direction.FORWARD) == "113024_001"
    # month and year boundaries
    assert next_id("010124_010", scheme, Direction.REVERSE) == "123123_001"
    assert next_id("022924_010", scheme, Direction.FORWARD) == "030124_001"


def test_date_ordinal_exhausts_before_earliest():
    scheme = DateOrdinalScheme(max_per_date=2, earliest=date(2024, 1, 1), latest=date(2024, 1, 31))
    assert next_id("010124_001", scheme, Direction.REVERSE) == "010124_002"
    assert next_id("010124_002", scheme, Direction.REVERSE) is None


def test_date_ordinal_exhausts_after_latest():
    scheme = DateOrdinalScheme(max_per_date=3, latest=date(2024, 11, 29))
    assert next_id("112924_003", scheme, Direction.FORWARD) is None


def test_date_ordinal_latest_defaults_to_today():
    scheme = DateOrdinalScheme(max_per_date=1, today=lambda: date(2024, 6, 1))
    assert next_id("053124_001", scheme, Direction.FORWARD) == "060124_001"
    assert next_id("060124_001", scheme, Direction.FORWARD) is None


def test_date_ordinal_full_reverse_walk_is_finite_and_unique():
    scheme = DateOrdinalScheme(max_per_date=3, earliest=date(2024, 1, 1), latest=date(2024, 1, 10))
    ids = _walk("011024_001", scheme, Direction.REVERSE)
    assert len(ids) == 10 * 3
    assert len(set(ids)) == len(ids)
    assert ids[-1] == "010124_003"


def test_date_ordinal_validation():
    scheme = DateOrdinalScheme()
    assert is_valid_id("112924_001", scheme)
    assert not is_valid_id("113124_001", scheme)   # Nov 31
    assert not is_valid_id("112924_000", scheme)
    assert not is_valid_id("11292401", scheme)
    assert next_id("garbage", scheme, Direction.REVERSE) is None


def test_parse_and_format_id():
    numeric = NumericScheme(width=6, min_value=1, max_value=999999)
    assert parse_id("000123", numeric) == 123
    assert format_id(123, numeric) == "000123"

    dated = DateOrdinalScheme(ordinal_width=4, max_per_date=20, latest=date(2025, 1, 1))
    assert parse_id("010224_0007", dated) == (date(2024, 1, 2), 7)
    assert format_id((date(2024, 1, 2), 7), dated) == "010224_0007"
    with pytest.raises(ValueError):
        parse_id("0102-24", dated)


def test_is_past_numeric():
    scheme = NumericScheme(width=4, min_value=1, max_value=9999)
    assert not is_past("0010", "0010", scheme, Direction.FORWARD)
    assert is_past("0011", "0010", scheme, Direction.FORWARD)
    assert not is_past("0011", "0010", scheme, Direction.REVERSE)
    assert is_past("0009", "0010", scheme, Direction.REVERSE)


def test_is_past_reverse_date_ordinal_compares_dates_not_strings():
    scheme = DateOrdinalScheme(latest=date(2024, 12, 31))
    # "010124" sorts before "112824" as a string, but is much earlier as a date.
    assert is_past("010124_001", "112824_001", scheme, Direction.REVERSE)
    assert not is_past("112924_001", "112824_001", scheme, Direction.REVERSE)
    # same day: ordinals still count upwards
    assert not is_past("112824_001", "112824_003", scheme, Direction.REVERSE)
    assert is_past("112824_004", "112824_003", scheme, Direction.REVERSE)
