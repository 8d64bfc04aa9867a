"""Runtime configuration for the Taskboard service.

Settings are read from environment variables so they can be changed in
development or production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# Full SQLAlchemy URL. The default is a local SQLite file driven by aiosqlite.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./taskboard.db')

# SECRET_KEY must be set in the environment in production. The fallback only
# exists so local tooling can import the package; the app refuses to start
# with it (see main.lifespan).
SECRET_KEY = os.getenv('SECRET_KEY', 'CHANGE_ME_IN_ENV_FOR_TESTS')
ACCESS_TOKEN_EXPIRE_MINUTES = _int_env('ACCESS_TOKEN_EXPIRE_MINUTES', 60 * 24)

# A generated occurrence is only created when it is due today or at most this
# many days in the past. Older candidates are skipped, not backfilled.
RECURRING_MAX_OVERDUE_DAYS = _int_env('RECURRING_MAX_OVERDUE_DAYS', 7)

# An existing task with the same owner and title created within this many
# hours counts as the current period's instance.
RECURRING_DUPLICATE_WINDOW_HOURS = _int_env('RECURRING_DUPLICATE_WINDOW_HOURS', 24)

# When false, POST /auth/register is disabled and accounts must be created by
# an operator.
ALLOW_REGISTRATION = _trueish(os.getenv('ALLOW_REGISTRATION', '1'))

# DEV_MODE=1 relaxes the SECRET_KEY startup check for local runs.
DEV_MODE = _trueish(os.getenv('DEV_MODE', '0'))

# Optional local overrides: define variables in taskboard/local_config.py to
# override the defaults above without changing versioned config. Keep that
# file out of version control.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
