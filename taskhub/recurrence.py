"""
Recurrence Scheduler

Decides whether a recurring-task rule is due on a calendar date, and
materializes concrete tasks from recurring definitions.

Weekday numbering follows the hub: 0 = Sunday ... 6 = Saturday.
A monthly rule targets the Nth occurrence of a weekday in the month; when a
month has no Nth occurrence (a fifth Monday in a four-Monday month) the
rule is simply not due that month.
"""

import calendar
import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, Iterator, List, Optional

from .models import RecurrenceRule, RecurrenceType, RecurringTaskDefinition, Task, TaskStatus

logger = logging.getLogger("recurrence")

# How far ahead next_due_date looks before giving up
NEXT_DUE_HORIZON_DAYS = 400

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
ORDINAL_NAMES = {1: "First", 2: "Second", 3: "Third", 4: "Fourth", 5: "Fifth"}


def day_of_week(on: date) -> int:
    """Weekday of a date with Sunday = 0."""
    return (on.weekday() + 1) % 7


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> Optional[date]:
    """
    Date of the nth `weekday` (Sunday = 0) in a month, or None if the
    month has fewer than n of them.
    """
    if n < 1:
        return None
    first = date(year, month, 1)
    offset = (weekday - day_of_week(first)) % 7
    day = 1 + offset + 7 * (n - 1)
    if day > calendar.monthrange(year, month)[1]:
        return None
    return date(year, month, day)


def is_due(rule: RecurrenceRule, on: date) -> bool:
    """Whether the rule produces an occurrence on the given date."""
    if rule.end_date is not None and on > rule.end_date:
        return False

    if rule.type == RecurrenceType.DAILY:
        return True
    if rule.type == RecurrenceType.WEEKLY:
        return day_of_week(on) == rule.day_of_week
    if rule.type == RecurrenceType.MONTHLY:
        if day_of_week(on) != rule.day_of_week:
            return False
        return nth_weekday_of_month(on.year, on.month, rule.day_of_week, rule.week_of_month) == on
    raise ValueError(f"Unhandled recurrence type: {rule.type}")


def occurrences(rule: RecurrenceRule, start: date, end: date) -> Iterator[date]:
    """Due dates in [start, end], in order."""
    current = start
    while current <= end:
        if is_due(rule, current):
            yield current
        current += timedelta(days=1)


def next_due_date(rule: RecurrenceRule, after: date) -> Optional[date]:
    """First due date strictly after `after`, or None if none within the horizon."""
    start = after + timedelta(days=1)
    return next(occurrences(rule, start, after + timedelta(days=NEXT_DUE_HORIZON_DAYS)), None)


def due_datetime(rule: RecurrenceRule, on: date, tz: tzinfo = timezone.utc) -> datetime:
    """The target date combined with the rule's time of day."""
    return datetime.combine(on, time(rule.hour, rule.minute), tzinfo=tz)


def materialize(
    definition: RecurringTaskDefinition,
    target_date: date,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
    task_id: Optional[str] = None,
) -> Task:
    """
    Build a new TODO task from a recurring definition.

    Pure construction: the definition is not touched and `is_due` is not
    consulted, so operators can generate ad-hoc occurrences for any date.
    """
    created_at = now or datetime.now(timezone.utc)
    return Task(
        task_id=task_id or uuid.uuid4().hex,
        title=definition.title,
        status=TaskStatus.TODO,
        description=definition.description,
        priority=definition.priority,
        client_id=definition.client_id,
        project_id=definition.project_id,
        assigned_user_id=definition.assigned_user_id,
        activity_type=definition.activity_type,
        due_date=due_datetime(definition.recurrence, target_date, tz),
        requires_two_step_approval=definition.requires_two_step_approval,
        estimated_minutes=definition.estimated_minutes,
        accumulated_seconds=0,
        created_at=created_at,
        updated_at=created_at,
        source_definition_id=definition.definition_id,
    )


def due_definitions(definitions: Iterable[RecurringTaskDefinition], on: date) -> List[RecurringTaskDefinition]:
    """Active definitions whose rule is due on the date."""
    return [d for d in definitions if d.is_active and is_due(d.recurrence, on)]


def sweep(
    definitions: Iterable[RecurringTaskDefinition],
    on: date,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> List[Task]:
    """Materialize every active definition due on the date."""
    tasks = [materialize(d, on, now=now, tz=tz) for d in due_definitions(definitions, on)]
    logger.info(f"Recurrence sweep for {on.isoformat()}: {len(tasks)} task(s) materialized")
    return tasks


def describe(rule: RecurrenceRule) -> str:
    """Human-readable cadence, e.g. 'Second Tuesday of every month at 10:00'."""
    if rule.type == RecurrenceType.DAILY:
        return f"Every day at {rule.time}"
    weekday = WEEKDAY_NAMES[rule.day_of_week]
    if rule.type == RecurrenceType.WEEKLY:
        return f"Every {weekday} at {rule.time}"
    return f"{ORDINAL_NAMES[rule.week_of_month]} {weekday} of every month at {rule.time}"
