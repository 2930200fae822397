import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict
from sqlalchemy.orm import sessionmaker
from .models import LocationSource, ParticipantType
from .resolver import LocationResolver
from ..storage.repository import ActivityRepository, ParticipantRepository

logger = logging.getLogger(__name__)


class ReportBuilder:
    """
    Read-only event dashboard aggregation.

    Issues several independent reads without locking, so the report is a
    point-in-time snapshot that may lag a scan happening concurrently.
    """

    def __init__(self, db_session_factory: sessionmaker, resolver: LocationResolver) -> None:
        self._db_session_factory = db_session_factory
        self._resolver = resolver

    def build_event_report(
        self,
        event_id: str,
        source: LocationSource = LocationSource.CACHE,
    ) -> Dict[str, Any]:
        """
        Builds the dashboard summary of one event.

        Returns a JSON-serializable dict with totals, counts by type and
        church, camp and per-activity occupancy and engagement counts.
        Activities are ordered by engagement, highest first.
        """
        db_session = self._db_session_factory()
        try:
            participants = ParticipantRepository(db_session).list_by_event(event_id)
            activities = ActivityRepository(db_session).list_by_event(event_id)
        finally:
            db_session.close()

        partition = self._resolver.partition_by_location(event_id, source=source)
        engagement = self._resolver.engagement_counts(event_id)

        by_type = Counter(participant.type for participant in participants)
        by_church = Counter(participant.church for participant in participants)

        activity_rows = []
        for activity in activities:
            activity_rows.append({
                "activity_id": activity.id,
                "name": activity.name,
                "location": activity.location,
                "occupancy": len(partition.by_activity.get(activity.id, [])),
                "engagement": engagement.get(activity.id, 0),
            })
        activity_rows.sort(key=lambda row: (-row["engagement"], row["name"]))

        report = {
            "event_id": event_id,
            "generated_at": datetime.utcnow().isoformat(),
            "source": source.value,
            "total_participants": len(participants),
            "by_type": {kind.value: by_type.get(kind.value, 0) for kind in ParticipantType},
            "by_church": dict(sorted(by_church.items(), key=lambda item: (-item[1], item[0]))),
            "at_camp": len(partition.camp),
            "away": sum(len(ids) for ids in partition.by_activity.values()),
            "activities": activity_rows,
        }

        logger.debug(
            f"Report built: event_id={event_id}, source={source.value}, "
            f"participants={report['total_participants']}, at_camp={report['at_camp']}"
        )
        return report
