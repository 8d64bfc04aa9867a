"""Recurrence rules for recurring task templates.

A rule is stored as plain text on ``Task.recurrence_rule``. Two forms exist:

* simple: one of ``DAILY``, ``WEEKLY``, ``MONTHLY``, ``YEARLY`` (any case)
* structured: ``;``-separated ``KEY=value`` pairs. ``FREQ`` and ``INTERVAL``
  are understood, any other key is ignored, e.g. ``FREQ=WEEKLY;INTERVAL=2``

Either form may carry the pause marker ``;PAUSED=true``. A paused rule never
generates instances until the marker is removed.

The marker is added and removed by plain string surgery (``pause_rule`` /
``resume_rule``) so the stored text stays in this format. Because the simple
form has no ``=``, ``DAILY;PAUSED=true`` parses with ``frequency=None``; it is
paused either way and ``resume_rule`` restores ``DAILY``.

Rules are re-parsed on every generation pass; nothing caches the parsed form.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from dateutil.relativedelta import relativedelta

from . import config
from .utils import as_utc

logger = logging.getLogger(__name__)

PAUSE_MARKER = ';PAUSED=true'


class Frequency(str, Enum):
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'
    MONTHLY = 'MONTHLY'
    YEARLY = 'YEARLY'

    @classmethod
    def from_token(cls, raw: str | None) -> Optional['Frequency']:
        if not raw:
            return None
        try:
            return cls(raw.strip().upper())
        except ValueError:
            return None


class RuleForm(str, Enum):
    SIMPLE = 'simple'
    STRUCTURED = 'structured'


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Optional[Frequency]
    interval: int = 1
    paused: bool = False
    form: RuleForm = RuleForm.STRUCTURED

    @property
    def generates(self) -> bool:
        """True when this rule can produce instances at all."""
        return self.frequency is not None and not self.paused

    def as_dict(self) -> dict:
        return {
            'frequency': self.frequency.value if self.frequency else None,
            'interval': self.interval,
            'paused': self.paused,
            'form': self.form.value,
        }


def parse_recurrence_rule(rule: str | None) -> RecurrenceRule:
    """Parse a stored rule string into a RecurrenceRule.

    Never raises: malformed segments are skipped, an unknown FREQ yields
    ``frequency=None`` and a missing or non-numeric INTERVAL yields 1.
    """
    if not rule:
        return RecurrenceRule(frequency=None)

    freq = Frequency.from_token(rule)
    if freq is not None:
        return RecurrenceRule(frequency=freq, interval=1, form=RuleForm.SIMPLE)

    bag: dict[str, str] = {}
    for part in rule.split(';'):
        key, sep, value = part.partition('=')
        key = key.strip()
        value = value.strip()
        if not sep or not key or not value:
            continue
        bag[key.lower()] = value

    # Strict: a value with trailing junk such as '2abc' is rejected, not read as 2.
    try:
        interval = int(bag.get('interval', ''))
    except ValueError:
        interval = 1
    if interval < 1:
        interval = 1

    return RecurrenceRule(
        frequency=Frequency.from_token(bag.get('freq')),
        interval=interval,
        paused='PAUSED=true' in rule,
        form=RuleForm.STRUCTURED,
    )


def pause_rule(rule: str | None) -> str:
    """Append the pause marker unless the rule already mentions PAUSED."""
    rule = rule or ''
    if 'PAUSED' in rule:
        return rule
    return rule + PAUSE_MARKER


def resume_rule(rule: str | None) -> str:
    """Strip every pause marker, leaving frequency and interval untouched."""
    return (rule or '').replace(PAUSE_MARKER, '')


def recurrence_anchor(task) -> Optional[datetime]:
    """The date a template recurs from: its deadline, else its creation time."""
    return as_utc(task.deadline or task.created_at)


def calculate_next_due_date(anchor: datetime, rule: RecurrenceRule) -> Optional[datetime]:
    """Advance ``anchor`` by one step of ``rule``.

    Always computed from the template's anchor, never from a previously
    generated instance. Month and year steps use relativedelta, which clamps
    to the last valid day (2024-01-31 + 1 month == 2024-02-29).
    """
    if anchor is None or rule.frequency is None:
        return None
    n = rule.interval or 1
    if rule.frequency is Frequency.DAILY:
        return anchor + timedelta(days=n)
    if rule.frequency is Frequency.WEEKLY:
        return anchor + timedelta(days=7 * n)
    if rule.frequency is Frequency.MONTHLY:
        return anchor + relativedelta(months=n)
    if rule.frequency is Frequency.YEARLY:
        return anchor + relativedelta(years=n)
    return None


def days_until(candidate: datetime, reference: datetime) -> int:
    """Whole days from reference to candidate, rounded up."""
    delta = as_utc(candidate) - as_utc(reference)
    return math.ceil(delta.total_seconds() / 86400)


def should_generate(candidate: datetime, reference: datetime, max_overdue_days: int | None = None) -> bool:
    """Whether an occurrence due at ``candidate`` should be created now.

    It must be due today or earlier, and not more than ``max_overdue_days``
    in the past. Anything older is dropped for good; a generator that was
    offline longer than that loses the occurrence.
    """
    if max_overdue_days is None:
        max_overdue_days = config.RECURRING_MAX_OVERDUE_DAYS
    diff = days_until(candidate, reference)
    return -max_overdue_days <= diff <= 0
