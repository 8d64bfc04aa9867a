"""Overdue-task check for reminder delivery.

Nothing is sent from here: the check groups overdue tasks by owner and hands
the result to whatever delivers reminders.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .models import Task, User
from .utils import as_utc

logger = logging.getLogger(__name__)


async def check_overdue_tasks(sess: AsyncSession, now: datetime, user_id: Optional[int] = None) -> dict:
    """Pending tasks whose deadline has passed, grouped per owner.

    Owners appear in order of their first overdue task by deadline.
    """
    now = as_utc(now)
    q = (
        select(Task, User.username)
        .join(User, User.id == Task.user_id, isouter=True)
        .where(Task.is_completed == False)  # noqa: E712
        .where(Task.deadline != None)  # noqa: E711
        .where(Task.deadline < now)
        .order_by(Task.deadline.asc())
    )
    if user_id is not None:
        q = q.where(Task.user_id == user_id)
    res = await sess.exec(q)
    rows = res.all()

    by_user: dict[int, dict] = {}
    for task, username in rows:
        entry = by_user.setdefault(task.user_id, {
            'user_id': task.user_id,
            'username': username,
            'overdue_count': 0,
            'tasks': [],
        })
        entry['overdue_count'] += 1
        entry['tasks'].append({
            'id': task.id,
            'title': task.title,
            'deadline': as_utc(task.deadline).isoformat(),
            'priority': task.priority.value if task.priority else None,
        })

    logger.info('overdue check: %d tasks for %d users', len(rows), len(by_user))
    return {
        'success': True,
        'overdue_count': len(rows),
        'users_affected': len(by_user),
        'notifications': list(by_user.values()),
    }
