from typing import Optional
from datetime import datetime
from enum import Enum
import uuid
from .utils import now_utc
from sqlmodel import SQLModel, Field


def new_task_id() -> str:
    return uuid.uuid4().hex


class Priority(str, Enum):
    low = 'low'
    medium = 'medium'
    high = 'high'


class User(SQLModel, table=True):
    """Account record: password stored as a passlib hash."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    is_admin: bool = Field(default=False)
    # Disabled accounts cannot log in and their tokens stop working.
    is_disabled: bool = Field(default=False)
    created_at: datetime | None = Field(default_factory=now_utc)
    last_login_at: Optional[datetime] = None


class Task(SQLModel, table=True):
    # Opaque identifier assigned on creation; never updated.
    id: str = Field(default_factory=new_task_id, primary_key=True)
    title: str
    description: Optional[str] = None
    priority: Optional[Priority] = Field(default=None, index=True)
    # When absent, created_at is the recurrence anchor.
    deadline: Optional[datetime] = Field(default=None, index=True)
    is_completed: bool = Field(default=False, index=True)
    # A recurring task is a template; generated instances always have this
    # set to False.
    is_recurring: bool = Field(default=False, index=True)
    # Plain-text rule, e.g. "DAILY" or "FREQ=WEEKLY;INTERVAL=2;PAUSED=true".
    # See taskboard.recurrence for the grammar.
    recurrence_rule: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc, index=True)
    updated_at: datetime | None = Field(default_factory=now_utc)
    user_id: int = Field(foreign_key="user.id", index=True)


class ProductivityStats(SQLModel, table=True):
    """Per-user counters refreshed by the stats endpoints, plus focus mode."""
    user_id: int = Field(foreign_key="user.id", primary_key=True)
    completed_today: int = Field(default=0)
    weekly_completed: int = Field(default=0)
    focus_mode_enabled: bool = Field(default=False)
    updated_at: datetime | None = Field(default_factory=now_utc)
