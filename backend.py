import redis
import json
from typing import Any, Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB, CACHE_NAMESPACE
from redis_keys import CACHE_KEY
from logging_config import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Keyed session cache with TTL.

    Survives client restarts so a reloaded client can resume its user id,
    room and join code. Values are stored as JSON strings.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, namespace: str = CACHE_NAMESPACE):
        # redis.Redis connects lazily, nothing is opened until the first command
        self.redis_client = redis_client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True
        )
        self.namespace = namespace
        logger.debug(f"Initializing RedisCache for namespace {namespace}")

    def _key(self, key: str) -> str:
        return CACHE_KEY.format(namespace=self.namespace, key=key)

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.error(f"Failed to reach Redis at {REDIS_HOST}:{REDIS_PORT}: {e}")
            return False

    def load(self, key: str) -> Optional[Any]:
        raw = self.redis_client.get(self._key(key))
        if raw is None:
            logger.debug(f"Cache miss for {key}")
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding unreadable cache entry for {key}")
            self.remove(key)
            return None

    def save(self, key: str, data: Any, expiration_mins: Optional[int] = None):
        ttl = int(expiration_mins * 60) if expiration_mins else None
        self.redis_client.set(self._key(key), json.dumps(data), ex=ttl)
        logger.debug(f"Cached {key} (ttl={ttl})")

    def remove(self, key: str):
        deleted = self.redis_client.delete(self._key(key))
        logger.debug(f"Removed {key} from cache: {deleted}")
