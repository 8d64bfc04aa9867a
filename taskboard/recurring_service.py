"""Recurring task generation and template maintenance.

Each generation pass is stateless: templates are re-read and their rules
re-parsed every time, and the next occurrence is always computed from the
template's own anchor. Nothing records which occurrence was generated last,
so running a pass twice on the same day would produce the same candidate
twice. ``find_recent_duplicate`` is the only thing preventing that, and it is
applied on every insert.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from . import config
from .models import Task
from .recurrence import (
    calculate_next_due_date,
    parse_recurrence_rule,
    pause_rule,
    recurrence_anchor,
    resume_rule,
    should_generate,
)
from .utils import as_utc

logger = logging.getLogger(__name__)


class RecurringTaskError(Exception):
    """Base class for errors surfaced to the caller of a recurring operation."""


class RecurrenceValidationError(RecurringTaskError):
    pass


class TaskNotFoundError(RecurringTaskError):
    pass


@dataclass
class GenerationResult:
    tasks: list[Task] = field(default_factory=list)
    skipped_duplicates: int = 0
    failed: int = 0

    @property
    def generated_count(self) -> int:
        return len(self.tasks)


def generate_instance(template: Task, reference: datetime) -> Optional[dict]:
    """Return field values for the instance due now, or None.

    None covers every "nothing to do" case: no rule, a paused rule, an
    unrecognized frequency, or a candidate outside the generation window.
    """
    rule = parse_recurrence_rule(template.recurrence_rule)
    if not rule.generates:
        return None
    next_due = calculate_next_due_date(recurrence_anchor(template), rule)
    if next_due is None or not should_generate(next_due, reference):
        return None
    return {
        'title': template.title,
        'description': template.description,
        'priority': template.priority,
        'recurrence_rule': template.recurrence_rule,
        'user_id': template.user_id,
        'deadline': next_due,
        'is_completed': False,
        'is_recurring': False,
        'created_at': reference,
        'updated_at': reference,
    }


async def find_recent_duplicate(sess: AsyncSession, user_id: int, title: str, reference: datetime) -> Optional[str]:
    """Id of a task with this owner and title created inside the duplicate window.

    Title equality is the whole key, so an unrelated task that happens to
    share the title also suppresses generation.
    """
    cutoff = as_utc(reference) - timedelta(hours=config.RECURRING_DUPLICATE_WINDOW_HOURS)
    q = await sess.exec(
        select(Task.id)
        .where(Task.user_id == user_id)
        .where(Task.title == title)
        .where(Task.created_at >= cutoff)
        .limit(1)
    )
    return q.first()


async def _insert_instance(sess: AsyncSession, values: dict) -> Task:
    task = Task(**values)
    sess.add(task)
    await sess.commit()
    await sess.refresh(task)
    sess.expunge(task)
    return task


async def fetch_active_templates(sess: AsyncSession, user_id: Optional[int] = None) -> list[Task]:
    q = select(Task).where(Task.is_recurring == True).where(Task.is_completed == False)  # noqa: E712
    if user_id is not None:
        q = q.where(Task.user_id == user_id)
    res = await sess.exec(q)
    templates = list(res.all())
    # Detached objects keep their loaded state when a failed insert is
    # rolled back later in the pass.
    for t in templates:
        sess.expunge(t)
    return templates


async def generate_recurring_tasks(sess: AsyncSession, reference: datetime, user_id: Optional[int] = None) -> GenerationResult:
    """Run one generation pass over all active templates, or one user's.

    Templates are independent and their order is unspecified. An error on
    one template, whether in date math or in the store, is logged and rolled
    back; the pass carries on.
    """
    reference = as_utc(reference)
    templates = await fetch_active_templates(sess, user_id)
    result = GenerationResult()
    for template in templates:
        template_id = template.id
        try:
            # Date math can overflow for very large intervals.
            values = generate_instance(template, reference)
            if values is None:
                continue
            dup = await find_recent_duplicate(sess, values['user_id'], values['title'], reference)
            if dup:
                logger.debug('recurring: template %s already has recent instance %s', template_id, dup)
                result.skipped_duplicates += 1
                continue
            inserted = await _insert_instance(sess, values)
        except Exception:
            logger.exception('recurring: failed to generate instance for template %s', template_id)
            await sess.rollback()
            result.failed += 1
            continue
        result.tasks.append(inserted)
    logger.info(
        'recurring: pass user=%s templates=%d generated=%d duplicates=%d failed=%d',
        user_id if user_id is not None else '*',
        len(templates),
        result.generated_count,
        result.skipped_duplicates,
        result.failed,
    )
    return result


async def _get_owned_task(sess: AsyncSession, task_id: str, owner_id: Optional[int]) -> Task:
    q = await sess.exec(select(Task).where(Task.id == task_id))
    task = q.first()
    if not task or (owner_id is not None and task.user_id != owner_id):
        raise TaskNotFoundError(f'task {task_id} not found')
    return task


async def update_recurrence_rule(sess: AsyncSession, task_id: Optional[str], recurrence_rule: Optional[str], reference: datetime, owner_id: Optional[int] = None) -> Task:
    """Store a new rule on a task and mark it as a template.

    The rule is stored as given; it is parsed again on every pass.
    """
    if not task_id or not recurrence_rule:
        raise RecurrenceValidationError('Task ID and recurrence rule required')
    task = await _get_owned_task(sess, task_id, owner_id)
    task.recurrence_rule = recurrence_rule
    task.is_recurring = True
    task.updated_at = reference
    sess.add(task)
    await sess.commit()
    await sess.refresh(task)
    return task


async def set_paused(sess: AsyncSession, task_id: Optional[str], paused: bool, reference: datetime, owner_id: Optional[int] = None) -> Task:
    if not task_id:
        raise RecurrenceValidationError('Task ID required')
    task = await _get_owned_task(sess, task_id, owner_id)
    task.recurrence_rule = pause_rule(task.recurrence_rule) if paused else resume_rule(task.recurrence_rule)
    task.updated_at = reference
    sess.add(task)
    await sess.commit()
    await sess.refresh(task)
    logger.info('recurring: task %s paused=%s rule=%r', task.id, paused, task.recurrence_rule)
    return task


async def list_recurring_tasks(sess: AsyncSession, owner_id: Optional[int] = None) -> list[Task]:
    q = select(Task).where(Task.is_recurring == True)  # noqa: E712
    if owner_id is not None:
        q = q.where(Task.user_id == owner_id)
    res = await sess.exec(q.order_by(Task.created_at.desc()))
    return list(res.all())
