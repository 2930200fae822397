"""
Report snapshot cache backed by Redis.
Stores each report as JSON with a TTL so every API worker shares it.
"""
import logging
import json
from typing import Any, Dict, Optional
from redis import Redis
from redis.exceptions import RedisError
from ..core.models import LocationSource
from ..core.report_cache import report_key

logger = logging.getLogger(__name__)


class RedisReportCache:
    """
    Report cache using Redis.

    One key per event and location source: report:{event_id}:{source}.
    Redis failures are logged and behave like cache misses.
    """

    def __init__(self, redis_url: str, ttl_seconds: int = 15) -> None:
        """
        Args:
            redis_url: Redis connection URL (e.g. redis://localhost:6379/0)
            ttl_seconds: lifetime of a cached report
        """
        self._redis = Redis.from_url(redis_url, decode_responses=False)
        self._ttl_seconds = ttl_seconds

        try:
            self._redis.ping()
            logger.info(f"RedisReportCache initialized: redis_url={redis_url}, ttl={ttl_seconds}s")
        except RedisError as e:
            logger.error(f"Could not connect to Redis: {e}")
            raise

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def get(self, event_id: str, source: str) -> Optional[Dict[str, Any]]:
        key = report_key(event_id, source)
        try:
            data = self._redis.get(key)
        except RedisError as e:
            logger.error(f"Error reading report from Redis: key={key}, error={e}")
            return None
        if not data:
            return None
        return json.loads(data.decode("utf-8"))

    def set(self, event_id: str, source: str, report: Dict[str, Any]) -> None:
        if self._ttl_seconds <= 0:
            return
        key = report_key(event_id, source)
        try:
            payload = json.dumps(report, ensure_ascii=False).encode("utf-8")
            self._redis.setex(key, self._ttl_seconds, payload)
            logger.debug(f"Report cached in Redis: key={key}, ttl={self._ttl_seconds}s")
        except RedisError as e:
            # A missing snapshot only costs a recomputation
            logger.error(f"Error caching report in Redis: key={key}, error={e}")

    def invalidate(self, event_id: str) -> None:
        keys = [report_key(event_id, source.value) for source in LocationSource]
        try:
            self._redis.delete(*keys)
        except RedisError as e:
            logger.error(f"Error invalidating reports in Redis: event_id={event_id}, error={e}")
