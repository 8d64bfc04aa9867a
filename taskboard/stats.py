"""Productivity statistics for the analytics dashboard.

A task counts as completed at its ``updated_at`` once ``is_completed`` is
set. Day boundaries are UTC midnights.
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import date, datetime, timedelta

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .models import Priority, ProductivityStats, Task
from .utils import as_utc

logger = logging.getLogger(__name__)

TREND_DAYS = 30
# Centered moving-average window: three days either side of each point.
TREND_HALF_WINDOW = 3


def start_of_day(dt: datetime) -> datetime:
    dt = as_utc(dt)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def completion_rate(completed: int, created: int) -> float:
    if created <= 0:
        return 0
    return (completed / created) * 100


async def _count(sess: AsyncSession, *conds) -> int:
    q = select(func.count(Task.id))
    for c in conds:
        q = q.where(c)
    res = await sess.exec(q)
    return int(res.one() or 0)


async def _completion_days(sess: AsyncSession, user_id: int, start: datetime, end: datetime) -> Counter:
    """Completed-task counts per date for completions in [start, end)."""
    res = await sess.exec(
        select(Task.updated_at)
        .where(Task.user_id == user_id)
        .where(Task.is_completed == True)  # noqa: E712
        .where(Task.updated_at >= start)
        .where(Task.updated_at < end)
    )
    return Counter(as_utc(ts).date() for ts in res.all() if ts is not None)


async def _creation_days(sess: AsyncSession, user_id: int, start: datetime, end: datetime) -> Counter:
    res = await sess.exec(
        select(Task.created_at)
        .where(Task.user_id == user_id)
        .where(Task.created_at >= start)
        .where(Task.created_at < end)
    )
    return Counter(as_utc(ts).date() for ts in res.all() if ts is not None)


async def _upsert_stats(sess: AsyncSession, user_id: int, now: datetime, **fields) -> ProductivityStats:
    row = await sess.get(ProductivityStats, user_id)
    if row is None:
        row = ProductivityStats(user_id=user_id)
    for k, v in fields.items():
        setattr(row, k, v)
    row.updated_at = now
    sess.add(row)
    await sess.commit()
    await sess.refresh(row)
    return row


async def daily_stats(sess: AsyncSession, user_id: int, now: datetime) -> dict:
    now = as_utc(now)
    start = start_of_day(now)
    end = start + timedelta(days=1)
    mine = Task.user_id == user_id

    completed_today = await _count(
        sess, mine, Task.is_completed == True, Task.updated_at >= start, Task.updated_at < end  # noqa: E712
    )
    created_today = await _count(sess, mine, Task.created_at >= start, Task.created_at < end)
    overdue = await _count(
        sess, mine, Task.is_completed == False, Task.deadline != None, Task.deadline < now  # noqa: E711,E712
    )

    res = await sess.exec(select(Task.priority).where(mine).where(Task.is_completed == False))  # noqa: E712
    pending_priorities = list(res.all())
    by_priority = Counter(pending_priorities)
    distribution = {p.value: by_priority.get(p, 0) for p in (Priority.high, Priority.medium, Priority.low)}
    distribution['none'] = by_priority.get(None, 0)

    await _upsert_stats(sess, user_id, now, completed_today=completed_today)

    return {
        'completed_today': completed_today,
        'created_today': created_today,
        'pending_tasks': len(pending_priorities),
        'overdue_tasks': overdue,
        'completion_rate': completion_rate(completed_today, created_today),
        'priority_distribution': distribution,
        'date': start.date().isoformat(),
    }


async def weekly_stats(sess: AsyncSession, user_id: int, now: datetime) -> dict:
    """Seven daily buckets for the current week, which starts on Sunday."""
    today = start_of_day(now)
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    week_end = week_start + timedelta(days=7)

    completed = await _completion_days(sess, user_id, week_start, week_end)
    created = await _creation_days(sess, user_id, week_start, week_end)

    days = []
    for i in range(7):
        day = week_start + timedelta(days=i)
        d = day.date()
        days.append({
            'date': d.isoformat(),
            'day_name': day.strftime('%a'),
            'completed': completed.get(d, 0),
            'created': created.get(d, 0),
        })

    total_completed = sum(d['completed'] for d in days)
    total_created = sum(d['created'] for d in days)
    await _upsert_stats(sess, user_id, as_utc(now), weekly_completed=total_completed)

    return {
        'daily_stats': days,
        'total_completed': total_completed,
        'total_created': total_created,
        'completion_rate': completion_rate(total_completed, total_created),
        'week_start': week_start.date().isoformat(),
    }


async def monthly_stats(sess: AsyncSession, user_id: int, now: datetime) -> dict:
    """Totals for the current month plus 7-day buckets from the 1st.

    The final bucket is cut short at the end of the month.
    """
    now = as_utc(now)
    month_start = start_of_day(now).replace(day=1)
    next_month = month_start + relativedelta(months=1)
    last_day = (next_month - timedelta(days=1)).date()

    completed = await _completion_days(sess, user_id, month_start, next_month)
    created = await _creation_days(sess, user_id, month_start, next_month)

    weeks = []
    ws = month_start.date()
    while ws <= last_day:
        we = min(ws + timedelta(days=6), last_day)
        count = sum(n for d, n in completed.items() if ws <= d <= we)
        weeks.append({'week_start': ws.isoformat(), 'week_end': we.isoformat(), 'completed': count})
        ws = ws + timedelta(days=7)

    total_completed = sum(completed.values())
    total_created = sum(created.values())
    return {
        'weekly_breakdown': weeks,
        'total_completed': total_completed,
        'total_created': total_created,
        'completion_rate': completion_rate(total_completed, total_created),
        'month': now.strftime('%B %Y'),
    }


def moving_average(values: list[int], half_window: int = TREND_HALF_WINDOW) -> list[float]:
    """Centered moving average, shrinking the window at both edges.

    Rounded half-up to one decimal.
    """
    out = []
    for i in range(len(values)):
        window = values[max(0, i - half_window):i + half_window + 1]
        avg = sum(window) / len(window)
        out.append(math.floor(avg * 10 + 0.5) / 10)
    return out


async def productivity_trends(sess: AsyncSession, user_id: int, now: datetime, days: int = TREND_DAYS) -> list[dict]:
    today = start_of_day(now)
    first = today - timedelta(days=days - 1)
    completed = await _completion_days(sess, user_id, first, today + timedelta(days=1))

    dates = [(first + timedelta(days=i)).date() for i in range(days)]
    counts = [completed.get(d, 0) for d in dates]
    return [
        {'date': d.isoformat(), 'completed': c, 'moving_average': avg}
        for d, c, avg in zip(dates, counts, moving_average(counts))
    ]


def streak_from_dates(completion_dates: set[date], today: date) -> int:
    """Consecutive days with a completion, ending today.

    If nothing has been completed yet today the streak is counted up to
    yesterday, so it does not reset until a full day is missed.
    """
    day = today if today in completion_dates else today - timedelta(days=1)
    streak = 0
    while day in completion_dates:
        streak += 1
        day -= timedelta(days=1)
    return streak


async def completion_streak(sess: AsyncSession, user_id: int, now: datetime) -> int:
    res = await sess.exec(
        select(Task.updated_at)
        .where(Task.user_id == user_id)
        .where(Task.is_completed == True)  # noqa: E712
    )
    dates = {as_utc(ts).date() for ts in res.all() if ts is not None}
    return streak_from_dates(dates, as_utc(now).date())


async def get_focus_mode(sess: AsyncSession, user_id: int) -> bool:
    row = await sess.get(ProductivityStats, user_id)
    return bool(row.focus_mode_enabled) if row else False


async def set_focus_mode(sess: AsyncSession, user_id: int, enabled: bool, now: datetime) -> bool:
    row = await _upsert_stats(sess, user_id, now, focus_mode_enabled=bool(enabled))
    logger.info('focus mode user=%s enabled=%s', user_id, row.focus_mode_enabled)
    return row.focus_mode_enabled
