from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Callable, Optional, Tuple, Union


class Direction(str, Enum):
    FORWARD = "forward"
    REVERSE = "reverse"

    @property
    def step(self) -> int:
        return 1 if self is Direction.FORWARD else -1


@dataclass(frozen=True)
class NumericScheme:
    """Zero-padded counter, e.g. ``0001`` .. ``9999``."""
    width: int = 4
    min_value: int = 1
    max_value: int = 9999

    def parse(self, local_id: str) -> int:
        s = (local_id or "").strip()
        if not s.isdigit():
            raise ValueError(f"not a numeric id: {local_id!r}")
        n = int(s)
        if not self.min_value <= n <= self.max_value:
            raise ValueError(f"id {local_id!r} outside [{self.min_value}, {self.max_value}]")
        return n

    def format(self, n: int) -> str:
        return str(n).zfill(self.width)

    def next(self, local_id: str, direction: Direction) -> Optional[str]:
        try:
            n = self.parse(local_id)
        except ValueError:
            return None
        n += direction.step
        if n < self.min_value or n > self.max_value:
            return None
        return self.format(n)

    def position(self, local_id: str) -> Tuple[int, ...]:
        return (self.parse(local_id),)


_DATE_ORDINAL = re.compile(r"^(\d{2})(\d{2})(\d{2})_(\d+)$")


def _today() -> date:
    return date.today()


@dataclass(frozen=True)
class DateOrdinalScheme:
    """
    ``MMDDYY_NNN``: release date plus a per-day ordinal.

    The ordinal counts up to ``max_per_date`` in both directions; only the date moves
    with the direction. ``latest`` defaults to today, evaluated on every call.
    """
    ordinal_width: int = 3
    max_per_date: int = 10
    earliest: date = date(2000, 1, 1)
    latest: Optional[date] = None
    today: Callable[[], date] = field(default=_today, compare=False, repr=False)

    def parse(self, local_id: str) -> Tuple[date, int]:
        m = _DATE_ORDINAL.match((local_id or "").strip())
        if not m:
            raise ValueError(f"not a MMDDYY_N id: {local_id!r}")
        mm, dd, yy, seq = (int(g) for g in m.groups())
        try:
            d = date(2000 + yy, mm, dd)
        except ValueError as e:
            raise ValueError(f"bad date in id {local_id!r}: {e}") from e
        if seq < 1:
            raise ValueError(f"ordinal must be >= 1 in {local_id!r}")
        return d, seq

    def format(self, d: date, seq: int) -> str:
        return f"{d:%m%d%y}_{str(seq).zfill(self.ordinal_width)}"

    def upper_bound(self) -> date:
        return self.latest if self.latest is not None else self.today()

    def next(self, local_id: str, direction: Direction) -> Optional[str]:
        try:
            d, seq = self.parse(local_id)
        except ValueError:
            return None
        if seq < self.max_per_date:
            return self.format(d, seq + 1)
        d = d + timedelta(days=direction.step)
        if d < self.earliest or d > self.upper_bound():
            return None
        return self.format(d, 1)

    def position(self, local_id: str) -> Tuple[int, ...]:
        d, seq = self.parse(local_id)
        return (d.toordinal(), seq)


IdScheme = Union[NumericScheme, DateOrdinalScheme]


def next_id(current_id: str, scheme: IdScheme, direction: Direction) -> Optional[str]:
    """Next candidate identifier, or None when the scheme is exhausted."""
    return scheme.next(current_id, direction)


def parse_id(local_id: str, scheme: IdScheme):
    """Parsed form of an id (int, or ``(date, ordinal)``). Raises ValueError when malformed."""
    return scheme.parse(local_id)


def format_id(parsed, scheme: IdScheme) -> str:
    if isinstance(scheme, DateOrdinalScheme):
        d, seq = parsed
        return scheme.format(d, seq)
    return scheme.format(parsed)


def is_valid_id(local_id: str, scheme: IdScheme) -> bool:
    try:
        scheme.position(local_id)
    except ValueError:
        return False
    return True


def is_past(current_id: str, end_id: str, scheme: IdScheme, direction: Direction) -> bool:
    """
    True once ``current_id`` has moved beyond ``end_id`` in the direction of travel.

    Compares parsed positions: ``MMDDYY`` strings do not sort chronologically.
    """
    cur = scheme.position(current_id)
    end = scheme.position(end_id)
    if direction is Direction.FORWARD:
        return cur > end
    # Reverse walks dates backwards but ordinals upwards within a day.
    if isinstance(scheme, DateOrdinalScheme):
        return cur[0] < end[0] or (cur[0] == end[0] and cur[1] > end[1])
    return cur < end
