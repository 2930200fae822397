"""
Report snapshot caches.
Supports both InMemoryReportCache and RedisReportCache.
"""

from .redis_report_cache import RedisReportCache
from ..core.report_cache import InMemoryReportCache

__all__ = ["RedisReportCache", "InMemoryReportCache"]
