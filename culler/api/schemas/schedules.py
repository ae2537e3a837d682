"""Operator-facing schedule variants and their five-field cron form"""

from pydantic import BaseModel, Field
from typing import Union, Literal, Annotated
from datetime import datetime, timedelta


class DailyAt(BaseModel):
    """Once a day, on the hour"""
    kind: Literal["daily"] = "daily"
    hour: int = Field(..., ge=0, le=23)

    def next_after(self, moment: datetime) -> datetime:
        candidate = moment.replace(hour=self.hour, minute=0, second=0, microsecond=0)
        if candidate <= moment:
            candidate += timedelta(days=1)
        return candidate

    def describe(self) -> str:
        return f"daily at {self.hour:02d}:00"


class EveryHours(BaseModel):
    """On the hour, every N hours counted from midnight (same firing times as cron */N)"""
    kind: Literal["every"] = "every"
    hours: int = Field(..., ge=1, le=24)

    def next_after(self, moment: datetime) -> datetime:
        candidate = moment.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        while candidate.hour % self.hours != 0:
            candidate += timedelta(hours=1)
        return candidate

    def describe(self) -> str:
        return "every hour" if self.hours == 1 else f"every {self.hours} hours"


Schedule = Annotated[Union[DailyAt, EveryHours], Field(discriminator="kind")]


def parse_cron(expression: str) -> Union[DailyAt, EveryHours]:
    """Convert cron text into a schedule variant.

    Only the shapes the operator can pick are accepted: ``0 H * * *`` and
    ``0 */N * * *`` (``0 * * * *`` meaning every hour).
    """
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron schedule: {expression!r} (expected five fields)")

    minute, hour, day, month, weekday = parts
    if minute != "0" or (day, month, weekday) != ("*", "*", "*"):
        raise ValueError(f"Unsupported cron schedule: {expression!r}")

    if hour == "*":
        return EveryHours(hours=1)
    if hour.startswith("*/") and hour[2:].isdigit():
        return EveryHours(hours=int(hour[2:]))
    if hour.isdigit():
        return DailyAt(hour=int(hour))

    raise ValueError(f"Unsupported cron schedule: {expression!r}")


def to_cron(schedule: Union[DailyAt, EveryHours]) -> str:
    """Render a schedule variant as cron text"""
    if isinstance(schedule, DailyAt):
        return f"0 {schedule.hour} * * *"
    if schedule.hours == 1:
        return "0 * * * *"
    return f"0 */{schedule.hours} * * *"
