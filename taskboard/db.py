from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text
from sqlalchemy.pool import NullPool

import atexit
import logging

from . import config
# Import models so their tables are registered on SQLModel.metadata before
# create_all runs.
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Columns added after the first release. Older SQLite databases get them via
# ALTER TABLE in init_db; CREATE TABLE alone does not change an existing table.
_LATE_COLUMNS = {
    'task': (
        ('recurrence_rule', 'TEXT'),
        ('is_recurring', 'BOOLEAN DEFAULT 0 NOT NULL'),
        ('updated_at', 'DATETIME'),
    ),
    'user': (
        ('is_disabled', 'BOOLEAN DEFAULT 0 NOT NULL'),
        ('last_login_at', 'DATETIME'),
    ),
}


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if not DATABASE_URL.startswith('sqlite'):
            return
        try:
            for table, columns in _LATE_COLUMNS.items():
                res = await conn.execute(text(f"PRAGMA table_info('{table}')"))
                cols = [r[1] for r in res.fetchall()]
                for name, decl in columns:
                    if cols and name not in cols:
                        s = f'ALTER TABLE "{table}" ADD COLUMN {name} {decl}'
                        try:
                            await conn.execute(text(s))
                            logger.info('init_db migration: added %s.%s', table, name)
                        except Exception:
                            logger.exception('failed to add column during init_db: %s', s)
            await conn.execute(text(
                "CREATE INDEX IF NOT EXISTS ix_task_user_title_created ON task(user_id, title, created_at)"
            ))
        except Exception:
            # Best-effort only; do not fail init_db if PRAGMA isn't supported
            logger.exception('failed to ensure late columns in init_db')


async def reset_db():
    """Drop and recreate every table. Used by the test suite."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await init_db()


# Dispose the sync pool at interpreter exit so pooled SQLite connections are
# not finalized by the garbage collector during shutdown.
def _dispose_sync_engine():
    try:
        if getattr(engine, 'sync_engine', None) is not None:
            engine.sync_engine.dispose()
    except Exception:
        logger.debug('engine dispose at exit failed', exc_info=True)


atexit.register(_dispose_sync_engine)
