from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import select
from pydantic import BaseModel
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging
import sys

from . import config
from .db import async_session, init_db
from .models import Task, User, Priority, ProductivityStats
from .auth import (
    authenticate_user,
    create_access_token,
    create_user,
    get_current_user,
    record_login,
    require_admin,
    require_login,
)
from .utils import Clock, now_utc, as_utc, parse_iso_to_utc
from .recurrence import parse_recurrence_rule
from . import recurring_service
from .recurring_service import RecurrenceValidationError, TaskNotFoundError
from . import stats
from . import admin
from .admin import UserNotFoundError
from .notifications import check_overdue_tasks

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from this module appear on the server console when
# no handlers are configured (safe fallback for development/testing).
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


def get_clock() -> Clock:
    """Time source for request handlers. Tests override this dependency."""
    return now_utc


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to start with the placeholder secret unless explicitly in dev mode.
    if config.SECRET_KEY == 'CHANGE_ME_IN_ENV_FOR_TESTS' and not config.DEV_MODE:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    await init_db()
    logger.info('starting server using DATABASE_URL=%s', config.DATABASE_URL)
    yield


app = FastAPI(lifespan=lifespan)


@app.exception_handler(Exception)
async def _unhandled_exception(request: Request, exc: Exception):
    logger.exception('unhandled error on %s %s', request.method, request.url.path)
    return JSONResponse(status_code=500, content={'detail': 'Internal server error'})


async def _json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail='invalid JSON')
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail='JSON object required')
    return payload


def _fmt(dt: Optional[datetime]) -> Optional[str]:
    if not dt:
        return None
    return as_utc(dt).isoformat()


def _serialize_task(task: Task) -> dict:
    return {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'priority': task.priority.value if task.priority else None,
        'deadline': _fmt(task.deadline),
        'is_completed': task.is_completed,
        'is_recurring': task.is_recurring,
        'recurrence_rule': task.recurrence_rule,
        'created_at': _fmt(task.created_at),
        'updated_at': _fmt(task.updated_at),
        'user_id': task.user_id,
    }


def _serialize_template(task: Task) -> dict:
    out = _serialize_task(task)
    out['rule'] = parse_recurrence_rule(task.recurrence_rule).as_dict()
    return out


def _parse_priority(value) -> Optional[Priority]:
    if value is None or value == '':
        return None
    try:
        return Priority(str(value).lower())
    except ValueError:
        raise HTTPException(status_code=400, detail='priority must be one of low, medium, high')


def _parse_datetime_field(name: str, value) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f'{name} must be an ISO-8601 string')
    try:
        return parse_iso_to_utc(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f'invalid datetime: {value}')


# --- auth ---


class TokenRequest(BaseModel):
    username: str
    password: str


@app.post('/auth/token')
async def login_for_access_token(req: TokenRequest, clock: Clock = Depends(get_clock)):
    user = await authenticate_user(req.username, req.password)
    if not user:
        raise HTTPException(status_code=401, detail='Incorrect username or password')
    await record_login(user, clock())
    access_token = create_access_token(data={'sub': user.username})
    return {'access_token': access_token, 'token_type': 'bearer'}


def _serialize_user(user: User) -> dict:
    return {
        'id': user.id,
        'username': user.username,
        'role': 'admin' if user.is_admin else 'user',
        'is_admin': user.is_admin,
        'is_disabled': user.is_disabled,
        'created_at': _fmt(user.created_at),
        'last_login_at': _fmt(user.last_login_at),
    }


@app.get('/auth/me')
async def user_info(current_user: User = Depends(require_login)):
    return {'user': _serialize_user(current_user)}


@app.post('/auth/register')
async def register(req: TokenRequest):
    if not config.ALLOW_REGISTRATION:
        raise HTTPException(status_code=403, detail='registration disabled')
    username = req.username.strip()
    if not username or not req.password:
        raise HTTPException(status_code=400, detail='username and password are required')
    try:
        user = await create_user(username, req.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _serialize_user(user)


# --- tasks ---

_SORT_COLUMNS = {
    'created_at': Task.created_at,
    'updated_at': Task.updated_at,
    'deadline': Task.deadline,
    'priority': Task.priority,
    'title': Task.title,
}


@app.get('/tasks')
async def list_tasks(
    action: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    criteria: str = 'created_at',
    order: str = 'desc',
    current_user: User = Depends(require_login),
):
    """List the caller's tasks.

    action=filter narrows by status (completed|pending), priority and a
    created_at range; action=sort orders by ``criteria`` in ``order``.
    Without an action tasks come back newest first.
    """
    q = select(Task).where(Task.user_id == current_user.id)
    sort_col = Task.created_at
    descending = True
    if action == 'filter':
        if status == 'completed':
            q = q.where(Task.is_completed == True)  # noqa: E712
        elif status == 'pending':
            q = q.where(Task.is_completed == False)  # noqa: E712
        if priority:
            q = q.where(Task.priority == _parse_priority(priority))
        start = _parse_datetime_field('start_date', start_date)
        end = _parse_datetime_field('end_date', end_date)
        if start:
            q = q.where(Task.created_at >= start)
        if end:
            q = q.where(Task.created_at <= end)
    elif action == 'sort':
        if criteria not in _SORT_COLUMNS:
            raise HTTPException(status_code=400, detail=f'invalid sort criteria: {criteria}')
        sort_col = _SORT_COLUMNS[criteria]
        descending = order != 'asc'
    elif action is not None:
        raise HTTPException(status_code=400, detail='Invalid action')
    q = q.order_by(sort_col.desc() if descending else sort_col.asc())
    async with async_session() as sess:
        res = await sess.exec(q)
        tasks = res.all()
    return {'tasks': [_serialize_task(t) for t in tasks]}


@app.post('/tasks')
async def create_task(request: Request, current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    """
    Create a task for the caller. Expects a JSON payload with:
    - title: str (required)
    - description, priority, deadline, is_recurring, recurrence_rule (optional)
    """
    payload = await _json_body(request)
    title = payload.get('title')
    if not title or not isinstance(title, str) or not title.strip():
        raise HTTPException(status_code=400, detail='title is required and must be a string')
    now = clock()
    task = Task(
        title=title.strip(),
        description=payload.get('description'),
        priority=_parse_priority(payload.get('priority')),
        deadline=_parse_datetime_field('deadline', payload.get('deadline')),
        is_recurring=bool(payload.get('is_recurring') or False),
        recurrence_rule=payload.get('recurrence_rule') or None,
        user_id=current_user.id,
        created_at=now,
        updated_at=now,
    )
    async with async_session() as sess:
        sess.add(task)
        await sess.commit()
        await sess.refresh(task)
    logger.info('task created id=%s user=%s recurring=%s', task.id, current_user.id, task.is_recurring)
    return {'task': _serialize_task(task)}


async def _load_own_task(sess, task_id: str, user: User) -> Task:
    q = await sess.exec(select(Task).where(Task.id == task_id).where(Task.user_id == user.id))
    task = q.first()
    if not task:
        raise HTTPException(status_code=404, detail='task not found')
    return task


@app.get('/tasks/{task_id}')
async def get_task(task_id: str, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        task = await _load_own_task(sess, task_id, current_user)
    return {'task': _serialize_task(task)}


_UPDATABLE_FIELDS = ('title', 'description', 'priority', 'deadline', 'is_completed', 'is_recurring', 'recurrence_rule')


@app.put('/tasks/{task_id}')
async def update_task(task_id: str, request: Request, current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    payload = await _json_body(request)
    unknown = [k for k in payload if k not in _UPDATABLE_FIELDS]
    if unknown:
        raise HTTPException(status_code=400, detail=f'unknown fields: {", ".join(sorted(unknown))}')
    if 'title' in payload and (not isinstance(payload['title'], str) or not payload['title'].strip()):
        raise HTTPException(status_code=400, detail='title must be a non-empty string')
    async with async_session() as sess:
        task = await _load_own_task(sess, task_id, current_user)
        for key, value in payload.items():
            if key == 'priority':
                value = _parse_priority(value)
            elif key == 'deadline':
                value = _parse_datetime_field('deadline', value)
            elif key in ('is_completed', 'is_recurring'):
                value = bool(value)
            elif key == 'title':
                value = value.strip()
            setattr(task, key, value)
        task.updated_at = clock()
        sess.add(task)
        await sess.commit()
        await sess.refresh(task)
    return {'task': _serialize_task(task)}


@app.delete('/tasks/{task_id}')
async def delete_task(task_id: str, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        task = await _load_own_task(sess, task_id, current_user)
        await sess.delete(task)
        await sess.commit()
    logger.info('task deleted id=%s user=%s', task_id, current_user.id)
    return {'success': True}


@app.post('/tasks/{task_id}/toggle')
async def toggle_task(task_id: str, current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        task = await _load_own_task(sess, task_id, current_user)
        task.is_completed = not task.is_completed
        task.updated_at = clock()
        sess.add(task)
        await sess.commit()
        await sess.refresh(task)
    return {'task': _serialize_task(task)}


# --- recurring tasks ---


def _generation_response(result: recurring_service.GenerationResult) -> dict:
    return {
        'success': True,
        'generated_count': result.generated_count,
        'tasks': [_serialize_task(t) for t in result.tasks],
    }


@app.post('/recurring/generate')
async def generate_recurring(current_user: User = Depends(require_admin), clock: Clock = Depends(get_clock)):
    """System-wide generation pass, meant for a scheduler running as an admin."""
    async with async_session() as sess:
        result = await recurring_service.generate_recurring_tasks(sess, clock())
    return _generation_response(result)


@app.post('/recurring/process-user')
async def process_user_recurring(request: Request, current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    payload = await _json_body(request)
    user_id = payload.get('userId')
    if user_id is None or user_id == '':
        raise HTTPException(status_code=400, detail='User ID required')
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail='User ID must be an integer')
    if user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail='forbidden')
    async with async_session() as sess:
        result = await recurring_service.generate_recurring_tasks(sess, clock(), user_id=user_id)
    return _generation_response(result)


def _owner_scope(user: User) -> Optional[int]:
    # Admins may manage any template; everyone else only their own.
    return None if user.is_admin else user.id


@app.post('/recurring/update-rule')
async def update_recurrence_rule(request: Request, current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    payload = await _json_body(request)
    async with async_session() as sess:
        try:
            task = await recurring_service.update_recurrence_rule(
                sess, payload.get('taskId'), payload.get('recurrenceRule'), clock(), owner_id=_owner_scope(current_user)
            )
        except RecurrenceValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail='task not found')
    return {'success': True, 'task': _serialize_task(task)}


@app.post('/recurring/pause')
async def pause_recurring_task(request: Request, current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    payload = await _json_body(request)
    paused = payload.get('paused', True)
    if not isinstance(paused, bool):
        raise HTTPException(status_code=400, detail='paused must be a boolean')
    async with async_session() as sess:
        try:
            task = await recurring_service.set_paused(
                sess, payload.get('taskId'), paused, clock(), owner_id=_owner_scope(current_user)
            )
        except RecurrenceValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail='task not found')
    return {'success': True, 'task': _serialize_task(task), 'paused': paused}


@app.get('/recurring')
async def get_recurring_tasks(current_user: Optional[User] = Depends(get_current_user)):
    """Recurring templates, scoped to the caller when a bearer token is sent."""
    owner_id = _owner_scope(current_user) if current_user else None
    async with async_session() as sess:
        tasks = await recurring_service.list_recurring_tasks(sess, owner_id=owner_id)
    return {'recurring_tasks': [_serialize_template(t) for t in tasks]}


# --- productivity ---


@app.get('/stats/daily')
async def get_daily_stats(current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        data = await stats.daily_stats(sess, current_user.id, clock())
    return {'stats': data}


@app.get('/stats/weekly')
async def get_weekly_stats(current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        data = await stats.weekly_stats(sess, current_user.id, clock())
    return {'weekly_stats': data}


@app.get('/stats/monthly')
async def get_monthly_stats(current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        data = await stats.monthly_stats(sess, current_user.id, clock())
    return {'monthly_stats': data}


@app.get('/stats/trends')
async def get_productivity_trends(current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        data = await stats.productivity_trends(sess, current_user.id, clock())
    return {'trends': data}


@app.get('/stats/streak')
async def get_completion_streak(current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        days = await stats.completion_streak(sess, current_user.id, clock())
    return {'streak_days': days}


@app.get('/focus-mode')
async def get_focus_mode(current_user: User = Depends(require_login)):
    async with async_session() as sess:
        enabled = await stats.get_focus_mode(sess, current_user.id)
    return {'focus_mode_enabled': enabled}


@app.post('/focus-mode')
async def set_focus_mode(request: Request, current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    payload = await _json_body(request)
    if 'enabled' not in payload:
        raise HTTPException(status_code=400, detail='enabled is required')
    async with async_session() as sess:
        enabled = await stats.set_focus_mode(sess, current_user.id, bool(payload['enabled']), clock())
    return {'success': True, 'focus_mode_enabled': enabled}


# --- notifications ---


@app.post('/notifications/check-overdue')
async def check_overdue(current_user: User = Depends(require_login), clock: Clock = Depends(get_clock)):
    """Overdue pending tasks grouped by owner; admins see every user."""
    async with async_session() as sess:
        return await check_overdue_tasks(sess, clock(), user_id=_owner_scope(current_user))


# --- admin ---


def _serialize_stats(row: Optional[ProductivityStats]) -> Optional[dict]:
    if row is None:
        return None
    return {
        'completed_today': row.completed_today,
        'weekly_completed': row.weekly_completed,
        'focus_mode_enabled': row.focus_mode_enabled,
        'updated_at': _fmt(row.updated_at),
    }


@app.get('/admin/users')
async def admin_list_users(current_user: User = Depends(require_admin)):
    async with async_session() as sess:
        users = await admin.list_users(sess)
        counts = await admin.task_counts_by_user(sess)
        stats_rows = await admin.stats_by_user(sess)
    out = []
    for u in users:
        item = _serialize_user(u)
        item['task_count'] = counts.get(u.id, 0)
        item['productivity_stats'] = _serialize_stats(stats_rows.get(u.id))
        out.append(item)
    return {'users': out}


@app.get('/admin/users/{user_id}')
async def admin_get_user(user_id: int, current_user: User = Depends(require_admin)):
    async with async_session() as sess:
        try:
            user = await admin.get_user(sess, user_id)
        except UserNotFoundError:
            raise HTTPException(status_code=404, detail='user not found')
        tasks = await admin.user_tasks(sess, user_id)
        stats_row = await sess.get(ProductivityStats, user_id)
    item = _serialize_user(user)
    item['productivity_stats'] = _serialize_stats(stats_row)
    item['tasks'] = [_serialize_task(t) for t in tasks]
    return {'user': item}


@app.delete('/admin/users/{user_id}')
async def admin_delete_user(user_id: int, current_user: User = Depends(require_admin)):
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail='cannot delete your own account')
    async with async_session() as sess:
        try:
            removed = await admin.delete_user(sess, user_id)
        except UserNotFoundError:
            raise HTTPException(status_code=404, detail='user not found')
    return {'success': True, 'deleted_tasks': removed}


@app.post('/admin/users/{user_id}/disable')
async def admin_disable_user(user_id: int, disable: bool = True, current_user: User = Depends(require_admin)):
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail='cannot disable your own account')
    async with async_session() as sess:
        try:
            user = await admin.set_disabled(sess, user_id, disable)
        except UserNotFoundError:
            raise HTTPException(status_code=404, detail='user not found')
    return {'success': True, 'disabled': user.is_disabled}


@app.get('/admin/tasks')
async def admin_list_tasks(current_user: User = Depends(require_admin)):
    async with async_session() as sess:
        rows = await admin.list_all_tasks(sess)
    out = []
    for task, username in rows:
        item = _serialize_task(task)
        item['username'] = username
        out.append(item)
    return {'tasks': out}


@app.delete('/admin/tasks/{task_id}')
async def admin_delete_task(task_id: str, current_user: User = Depends(require_admin)):
    async with async_session() as sess:
        try:
            await admin.delete_task(sess, task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail='task not found')
    return {'success': True}


@app.post('/admin/tasks/{task_id}/force-complete')
async def admin_force_complete_task(task_id: str, current_user: User = Depends(require_admin), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        try:
            task = await admin.force_complete_task(sess, task_id, clock())
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail='task not found')
    return {'task': _serialize_task(task)}


@app.get('/admin/stats')
async def admin_system_stats(current_user: User = Depends(require_admin), clock: Clock = Depends(get_clock)):
    async with async_session() as sess:
        data = await admin.system_stats(sess, clock())
    return {'stats': data}
