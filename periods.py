from dataclasses import dataclass
from datetime import date, datetime
from typing import Union


@dataclass(frozen=True, order=True)
class Month:
    year: int
    month: int

    @classmethod
    def of(cls, value: Union[date, datetime]) -> "Month":
        return cls(value.year, value.month)

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return self.shift(1).start - date.resolution

    def shift(self, months: int) -> "Month":
        total = self.year * 12 + (self.month - 1) + months
        return Month(total // 12, total % 12 + 1)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def days_in_month(year: int, month: int) -> int:
    month_ = Month(year, month)
    return (month_.end - month_.start).days + 1


def floor_to_month(value: Union[date, datetime]) -> date:
    return date(value.year, value.month, 1)


def add_months(value: date, months: int) -> date:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    target = Month.of(value).shift(months)
    day = min(value.day, days_in_month(target.year, target.month))
    return date(target.year, target.month, day)
