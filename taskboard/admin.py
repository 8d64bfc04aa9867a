"""Operator actions behind the admin page: user management, task moderation
and system-wide counters.

Every function here acts across all users; callers are expected to have
checked ``require_admin`` already.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete as sqlalchemy_delete, func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .models import ProductivityStats, Task, User
from .recurring_service import TaskNotFoundError
from .stats import completion_rate
from .utils import as_utc

logger = logging.getLogger(__name__)

ALL_TASKS_LIMIT = 1000
ACTIVE_USER_DAYS = 30


class UserNotFoundError(Exception):
    pass


async def task_counts_by_user(sess: AsyncSession) -> dict[int, int]:
    res = await sess.exec(select(Task.user_id, func.count(Task.id)).group_by(Task.user_id))
    return {user_id: int(n) for user_id, n in res.all()}


async def stats_by_user(sess: AsyncSession) -> dict[int, ProductivityStats]:
    res = await sess.exec(select(ProductivityStats))
    return {row.user_id: row for row in res.all()}


async def list_users(sess: AsyncSession) -> list[User]:
    res = await sess.exec(select(User).order_by(User.created_at.desc()))
    return list(res.all())


async def get_user(sess: AsyncSession, user_id: int) -> User:
    user = await sess.get(User, user_id)
    if user is None:
        raise UserNotFoundError(f'user {user_id} not found')
    return user


async def user_tasks(sess: AsyncSession, user_id: int) -> list[Task]:
    res = await sess.exec(select(Task).where(Task.user_id == user_id).order_by(Task.created_at.desc()))
    return list(res.all())


async def delete_user(sess: AsyncSession, user_id: int) -> int:
    """Remove a user together with their tasks and stats row.

    Returns the number of tasks removed.
    """
    user = await get_user(sess, user_id)
    res = await sess.exec(sqlalchemy_delete(Task).where(Task.user_id == user_id))
    removed = res.rowcount or 0
    await sess.exec(sqlalchemy_delete(ProductivityStats).where(ProductivityStats.user_id == user_id))
    await sess.delete(user)
    await sess.commit()
    logger.info('admin: deleted user %s (%s) and %d tasks', user_id, user.username, removed)
    return removed


async def set_disabled(sess: AsyncSession, user_id: int, disabled: bool) -> User:
    user = await get_user(sess, user_id)
    user.is_disabled = disabled
    sess.add(user)
    await sess.commit()
    await sess.refresh(user)
    logger.info('admin: user %s disabled=%s', user_id, disabled)
    return user


async def list_all_tasks(sess: AsyncSession, limit: int = ALL_TASKS_LIMIT) -> list[tuple[Task, Optional[str]]]:
    """Newest tasks across every user, each paired with its owner's username."""
    res = await sess.exec(
        select(Task, User.username)
        .join(User, User.id == Task.user_id, isouter=True)
        .order_by(Task.created_at.desc())
        .limit(limit)
    )
    return list(res.all())


async def _get_task(sess: AsyncSession, task_id: str) -> Task:
    task = await sess.get(Task, task_id)
    if task is None:
        raise TaskNotFoundError(f'task {task_id} not found')
    return task


async def delete_task(sess: AsyncSession, task_id: str) -> None:
    task = await _get_task(sess, task_id)
    await sess.delete(task)
    await sess.commit()
    logger.info('admin: deleted task %s of user %s', task_id, task.user_id)


async def force_complete_task(sess: AsyncSession, task_id: str, now: datetime) -> Task:
    task = await _get_task(sess, task_id)
    task.is_completed = True
    task.updated_at = now
    sess.add(task)
    await sess.commit()
    await sess.refresh(task)
    logger.info('admin: force-completed task %s of user %s', task_id, task.user_id)
    return task


async def _count(sess: AsyncSession, column, *conds) -> int:
    q = select(func.count(column))
    for c in conds:
        q = q.where(c)
    res = await sess.exec(q)
    return int(res.one() or 0)


async def system_stats(sess: AsyncSession, now: datetime) -> dict:
    now = as_utc(now)
    total_users = await _count(sess, User.id)
    total_tasks = await _count(sess, Task.id)
    completed_tasks = await _count(sess, Task.id, Task.is_completed == True)  # noqa: E712
    active_users = await _count(
        sess, User.id, User.last_login_at != None, User.last_login_at > now - timedelta(days=ACTIVE_USER_DAYS)  # noqa: E711
    )
    tasks_this_week = await _count(sess, Task.id, Task.created_at >= now - timedelta(days=7))
    return {
        'total_users': total_users,
        'total_tasks': total_tasks,
        'completed_tasks': completed_tasks,
        'active_users': active_users,
        'tasks_this_week': tasks_this_week,
        'completion_rate': completion_rate(completed_tasks, total_tasks),
    }
