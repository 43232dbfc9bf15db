from __future__ import annotations

from dataclasses import dataclass
from datetime import date

# The Bundesarchiv uses 2222 as placeholder for undated records.
SENTINEL_YEAR = 2222
MIN_PLAUSIBLE_YEAR = 800
MAX_PLAUSIBLE_SPAN = 150
MAX_CORRECTION_DISTANCE = 100


def max_plausible_year(today: date | None = None) -> int:
    return (today or date.today()).year + 1


@dataclass(frozen=True)
class UnitDate:
    """
    Validated, optionally digit-corrected date range of a unit.

    `start_uncorrected` / `end_uncorrected` keep the parsed source values so a
    date range filter can still match the original dates.
    """

    start_date: date | None
    end_date: date | None
    text: str | None = None
    is_range: bool = False
    start_uncorrected: date | None = None
    end_uncorrected: date | None = None

    @property
    def corrected(self) -> bool:
        return (self.start_date, self.end_date) != (self.start_uncorrected, self.end_uncorrected)

    @property
    def start_year(self) -> int | None:
        return self.start_date.year if self.start_date else None


def parse_iso_date(value: str | None, *, max_year: int) -> date | None:
    value = (value or "").strip()
    if not value:
        return None
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        return None
    if parsed.year == SENTINEL_YEAR or parsed.year > max_year:
        return None
    return parsed


def _with_year(d: date, year: int) -> date:
    try:
        return d.replace(year=year)
    except ValueError:
        # 29 February in a non-leap year.
        return d.replace(year=year, day=28)


def fix_single_digit(bad: date, good: date, *, max_year: int) -> date | None:
    """
    Tries every single-digit substitution in `bad`'s four-digit year and returns
    the candidate closest to `good`, or None when no candidate is plausible.
    """
    bad_year = f"{bad.year:04d}"
    best: date | None = None
    best_distance: int | None = None

    for i in range(4):
        for digit in "0123456789":
            if digit == bad_year[i]:
                continue
            candidate = int(bad_year[:i] + digit + bad_year[i + 1 :])
            if candidate < MIN_PLAUSIBLE_YEAR or candidate > max_year:
                continue
            distance = abs(candidate - good.year)
            if distance > MAX_CORRECTION_DISTANCE:
                continue
            if best_distance is None or distance < best_distance:
                best_distance = distance
                best = _with_year(bad, candidate)

    return best


def correct_date_range(
    start: str | None,
    end: str | None,
    *,
    text: str | None = None,
    today: date | None = None,
) -> UnitDate:
    max_year = max_plausible_year(today)
    start_date = parse_iso_date(start, max_year=max_year)
    end_date = parse_iso_date(end, max_year=max_year)
    start_uncorrected, end_uncorrected = start_date, end_date

    if start_date and end_date:
        span = end_date.year - start_date.year
        if span > MAX_PLAUSIBLE_SPAN:
            # Start year is suspiciously old relative to the end year.
            start_date = fix_single_digit(start_date, end_date, max_year=max_year) or start_date
        elif span < 0:
            end_date = fix_single_digit(end_date, start_date, max_year=max_year) or end_date

    return UnitDate(
        start_date=start_date,
        end_date=end_date or start_date,
        text=text,
        is_range=end_date is not None,
        start_uncorrected=start_uncorrected,
        end_uncorrected=end_uncorrected or start_uncorrected,
    )


def parse_unit_date(normal: str | None, text: str | None = None, *, today: date | None = None) -> UnitDate:
    """
    Parses a unit-date `normal` attribute: "1959-01-01/1959-12-31" or "1920-01-01".
    """
    start, _, end = (normal or "").partition("/")
    return correct_date_range(start or None, end or None, text=text, today=today)


def decade_of(year: int) -> int:
    return (year // 10) * 10


def period_of(year: int) -> tuple[int, int]:
    """Returns (period_start, span): centuries before 1800, decades after."""
    if year < 1800:
        return (year // 100) * 100, 100
    return decade_of(year), 10
