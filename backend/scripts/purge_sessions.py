"""
Delete sessions whose retention window (expires_at) has passed.

    python -m scripts.purge_sessions

Intended for a daily cron / Cloud Scheduler job.
"""
import asyncio
import logging

from engine.session_service import SessionService

logger = logging.getLogger(__name__)


async def run(service: SessionService = None) -> int:
    service = service or SessionService(schedule_timers=False)
    deleted = await service.purge_expired_sessions()
    logger.info(f"Purge complete: {deleted} session(s) removed")
    return deleted


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run())


if __name__ == "__main__":
    main()
