"""Run one recurring-task generation pass against the configured database.

Intended for cron or any other external scheduler. Each run is independent:
re-running on the same day does not create duplicates because recently
created instances are detected and skipped.

Usage: run via `python tools/generate_recurring.py [--user ID]` from the
project root while the virtualenv is active. It uses the application's
DATABASE_URL so it writes to the same database as the server.
"""
from taskboard.db import async_session, init_db
from taskboard.recurring_service import generate_recurring_tasks
from taskboard.utils import now_utc
import argparse
import asyncio
import logging

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


async def main(user_id: int | None = None) -> int:
    await init_db()
    async with async_session() as sess:
        result = await generate_recurring_tasks(sess, now_utc(), user_id=user_id)
    for t in result.tasks:
        logger.info('generated %s %r due %s for user %s', t.id, t.title, t.deadline, t.user_id)
    logger.info('done: generated=%d duplicates=%d failed=%d', result.generated_count, result.skipped_duplicates, result.failed)
    return result.generated_count


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument('--user', type=int, default=None, help='only process templates owned by this user id')
    args = parser.parse_args()
    asyncio.run(main(args.user))
