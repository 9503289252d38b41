import logging
from contextlib import contextmanager

import redis

from greenpay.config import Config
from greenpay.errors import AccountBusy, ServiceUnavailable
from greenpay import redis_client

logger = logging.getLogger(__name__)


def lock_key(user_id):
    return f"lock:account:{user_id}"


@contextmanager
def account_lock(*user_ids):
    """Serialize balance-changing work per account.

    Locks are taken in sorted order so a transfer A->B and B->A can never
    deadlock. Redis being down fails the request closed rather than letting
    it run unserialized.
    """
    keys = sorted({lock_key(user_id) for user_id in user_ids if user_id})
    try:
        client = redis_client.get_redis()
    except redis.RedisError as e:
        logger.error(f"Account lock unavailable: {e}")
        raise ServiceUnavailable("Unable to verify account state, please retry")

    held = []
    try:
        for key in keys:
            lock = client.lock(
                key,
                timeout=Config.ACCOUNT_LOCK_TIMEOUT,
                blocking_timeout=Config.ACCOUNT_LOCK_WAIT,
            )
            if not lock.acquire():
                logger.warning(f"BLOCKED [LOCK-TIMEOUT]: {key}")
                raise AccountBusy()
            held.append(lock)
        yield
    except redis.RedisError as e:
        logger.error(f"Redis error while locking {keys}: {e}")
        raise ServiceUnavailable("Unable to verify account state, please retry")
    finally:
        for lock in reversed(held):
            try:
                lock.release()
            except redis.exceptions.LockError:
                # held longer than ACCOUNT_LOCK_TIMEOUT
                logger.warning(f"Account lock expired before release: {lock.name}")
