import logging
from typing import Any, Dict, Optional
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker
from .csv_import import ImportResult, import_participants_csv
from .errors import ResetNotAllowedError
from .models import LocationSource, ScanType
from .report_cache import InMemoryReportCache
from .reporting import ReportBuilder
from .resolver import LocationResolver
from .roster_manager import CascadeResult, RosterManager
from .scan_engine import BackfillResult, ScanOutcome, ScanTransitionEngine
from ..cache.redis_report_cache import RedisReportCache
from ..config import AppConfig
from ..storage.database import create_session_factory

logger = logging.getLogger(__name__)


class CheckinEngine:
    """
    Logical core of the check-in service.

    - Owns the database session factory and the report cache
    - Wires roster management, the location resolver, the scan state
      machine and reporting together
    - Invalidates cached reports whenever locations or the roster change
    """

    def __init__(self, config: AppConfig, db_session_factory: Optional[sessionmaker] = None) -> None:
        self._config = config

        # Redis if configured, otherwise in memory
        if config.redis_url and config.redis_url.strip():
            try:
                self._report_cache = RedisReportCache(
                    redis_url=config.redis_url,
                    ttl_seconds=config.report_cache_ttl_seconds,
                )
                logger.info(f"Report cache using Redis: url={config.redis_url}")
            except Exception as e:
                logger.error(f"Error initializing RedisReportCache: {e}, falling back to in-memory cache")
                self._report_cache = InMemoryReportCache(ttl_seconds=config.report_cache_ttl_seconds)
        else:
            self._report_cache = InMemoryReportCache(ttl_seconds=config.report_cache_ttl_seconds)
            logger.info("Report cache using process memory (REDIS_URL not set)")

        if db_session_factory is None:
            # In production tables come from Alembic migrations
            create_tables = config.env == "dev"
            db_session_factory = create_session_factory(config.database_url, create_tables=create_tables)
        self._db_session_factory = db_session_factory

        self.resolver = LocationResolver(db_session_factory)
        self.roster = RosterManager(db_session_factory, on_roster_change=self._report_cache.invalidate)
        self.scans = ScanTransitionEngine(
            db_session_factory,
            self.resolver,
            on_location_change=self._report_cache.invalidate,
        )
        self._reports = ReportBuilder(db_session_factory, self.resolver)

        db_type = "sqlite" if "sqlite" in config.database_url else "postgres" if "postgres" in config.database_url else "unknown"
        logger.info(
            f"CheckinEngine initialized: database_type={db_type}, env={config.env}, "
            f"report_cache_ttl={config.report_cache_ttl_seconds}s"
        )

    def scan(
        self,
        event_id: str,
        qr_payload: str,
        scan_type: ScanType,
        leader_id: str,
        target_activity_id: Optional[str] = None,
    ) -> ScanOutcome:
        self.roster.get_event(event_id)
        return self.scans.handle_scan(
            event_id=event_id,
            qr_payload=qr_payload,
            scan_type=scan_type,
            leader_id=leader_id,
            target_activity_id=target_activity_id,
        )

    def event_report(self, event_id: str, source: LocationSource = LocationSource.CACHE) -> Dict[str, Any]:
        """
        Dashboard report, served from the snapshot cache when fresh.
        """
        self.roster.get_event(event_id)
        cached = self._report_cache.get(event_id, source.value)
        if cached is not None:
            logger.debug(f"Report served from cache: event_id={event_id}, source={source.value}")
            return cached

        report = self._reports.build_event_report(event_id, source=source)
        self._report_cache.set(event_id, source.value, report)
        return report

    def backfill_locations(self, event_id: str) -> BackfillResult:
        self.roster.get_event(event_id)
        return self.scans.backfill_locations(event_id)

    def import_participants(self, event_id: str, csv_text: str) -> ImportResult:
        return import_participants_csv(self.roster, event_id, csv_text)

    def reset_test_data(self, event_id: str) -> CascadeResult:
        if not self._config.allow_test_reset:
            raise ResetNotAllowedError("Test data reset is disabled in this environment.")
        return self.roster.reset_test_data(event_id)

    def check_database(self) -> bool:
        db_session = self._db_session_factory()
        try:
            db_session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False
        finally:
            db_session.close()

    def check_report_cache(self) -> bool:
        if isinstance(self._report_cache, RedisReportCache):
            return self._report_cache.ping()
        return True
