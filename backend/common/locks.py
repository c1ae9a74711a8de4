import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError

from common.config import settings
from common.errors import DraftBusyError

logger = logging.getLogger(__name__)


def lock_key(sender_id: str) -> str:
    return f"listing:lock:{sender_id}"


@asynccontextmanager
async def user_lock(redis_client, sender_id: str) -> AsyncIterator[None]:
    """Serialize message handling per sender across API processes."""
    lock = redis_client.lock(
        lock_key(sender_id),
        timeout=settings.draft_lock_timeout_seconds,
        blocking_timeout=settings.DRAFT_LOCK_WAIT_SECONDS,
    )
    acquired = await lock.acquire()
    if not acquired:
        logger.warning("Draft lock busy for sender=%s", sender_id)
        raise DraftBusyError(f"Draft for {sender_id} is busy")
    try:
        yield
    finally:
        try:
            await lock.release()
        except LockError:
            logger.warning("Draft lock for sender=%s expired before release", sender_id)
