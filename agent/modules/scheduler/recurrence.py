"""Recurrence evaluation: next trigger instant for a cron expression in a named zone.

Cron fields are matched against *civil* time in the job's zone, not UTC, so
"0 9 * * 1" means 9am local every Monday on both sides of a DST change.

DST policy:
- A local time skipped by a spring-forward transition is read with the
  offset in force before the gap (RFC 5545), e.g. 02:30 becomes 03:30
  local that day. It never raises and never fires twice.
- A local time that occurs twice in a fall-back transition fires once, at
  its first occurrence.

Everything here is side-effect free.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, CroniterBadDateError, CroniterError, croniter

from modules.scheduler.clock import Clock, SystemClock
from modules.scheduler.errors import InvalidScheduleError, UnsatisfiableScheduleError

DEFAULT_HORIZON_YEARS = 5

_MACROS = {"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"}


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA zone name or raise InvalidScheduleError."""
    if not name or not isinstance(name, str):
        raise InvalidScheduleError("timezone is required")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScheduleError(f"Unknown timezone: {name!r}") from e


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _make_iter(cron_expression: str, start: datetime, horizon_years: int) -> croniter:
    expr = " ".join(cron_expression.split()) if isinstance(cron_expression, str) else ""
    if not expr:
        raise InvalidScheduleError("cron_expression is required")

    if expr.lower() in _MACROS:
        fields = 5
    else:
        fields = len(expr.split(" "))
        if fields not in (5, 6):
            raise InvalidScheduleError(
                f"Invalid cron expression {cron_expression!r}: expected 5 or 6 fields, got {fields}"
            )

    try:
        return croniter(
            expr,
            start,
            ret_type=datetime,
            max_years_between_matches=horizon_years,
            # Six-field expressions carry seconds first: "s m h dom mon dow"
            second_at_beginning=fields == 6,
        )
    except (CroniterBadCronError, CroniterError, ValueError, KeyError) as e:
        raise InvalidScheduleError(f"Invalid cron expression {cron_expression!r}: {e}") from e


def next_run(
    cron_expression: str,
    tz_name: str,
    after: datetime | None = None,
    *,
    clock: Clock | None = None,
    horizon_years: int = DEFAULT_HORIZON_YEARS,
) -> datetime:
    """Return the earliest instant strictly after ``after`` matching the expression.

    ``after`` defaults to the clock's now. The result is an aware UTC datetime.

    Raises InvalidScheduleError for malformed expressions or zones, and
    UnsatisfiableScheduleError when nothing matches within ``horizon_years``.
    """
    tz = resolve_timezone(tz_name)
    if after is None:
        after = (clock or SystemClock()).now()
    after_utc = _as_utc(after)

    # Walk naive wall-clock candidates in the job's zone
    start_local = after_utc.astimezone(tz).replace(tzinfo=None, fold=0)
    limit_year = start_local.year + horizon_years
    itr = _make_iter(cron_expression, start_local, horizon_years)

    while True:
        try:
            candidate = itr.get_next(datetime)
        except CroniterBadDateError as e:
            raise UnsatisfiableScheduleError(
                f"Cron expression {cron_expression!r} has no occurrence within {horizon_years} years"
            ) from e
        except (CroniterError, ValueError) as e:
            raise InvalidScheduleError(f"Invalid cron expression {cron_expression!r}: {e}") from e

        if candidate.year > limit_year:
            raise UnsatisfiableScheduleError(
                f"Cron expression {cron_expression!r} has no occurrence within {horizon_years} years"
            )

        # fold=0 picks the first of a repeated time and the pre-gap offset
        # for a skipped one
        resolved = candidate.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)
        if resolved > after_utc:
            return resolved


def upcoming_runs(
    cron_expression: str,
    tz_name: str,
    after: datetime,
    count: int = 5,
    *,
    horizon_years: int = DEFAULT_HORIZON_YEARS,
) -> list[datetime]:
    """Return the next ``count`` occurrences after ``after``."""
    runs: list[datetime] = []
    anchor = after
    for _ in range(count):
        anchor = next_run(cron_expression, tz_name, anchor, horizon_years=horizon_years)
        runs.append(anchor)
    return runs


class RecurrenceEvaluator:
    """Holds the search horizon so callers can be handed one evaluator."""

    def __init__(self, horizon_years: int = DEFAULT_HORIZON_YEARS) -> None:
        self.horizon_years = horizon_years

    def next_run(self, cron_expression: str, tz_name: str, after: datetime) -> datetime:
        return next_run(cron_expression, tz_name, after, horizon_years=self.horizon_years)

    def validate(self, cron_expression: str, tz_name: str, after: datetime) -> datetime:
        """Validate an expression by computing its first occurrence."""
        return self.next_run(cron_expression, tz_name, after)
