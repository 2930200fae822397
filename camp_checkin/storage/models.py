from uuid import uuid4
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint, Index
from datetime import datetime
from .database import Base

CAMP_LOCATION = "camp"


def new_id() -> str:
    return uuid4().hex


class Event(Base):
    """
    Camp event. At most one event is active at a time.
    """
    __tablename__ = "events"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    active = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Activity(Base):
    """
    Activity a participant can leave camp for. Name is unique per event.
    """
    __tablename__ = "activities"
    __table_args__ = (
        UniqueConstraint("event_id", "name", name="uq_activities_event_name"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    event_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    location = Column(String(200), nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Participant(Base):
    """
    Camp participant (student or leader).

    current_location is a cached projection of the activity log:
    "camp" or an activity id. location_version is bumped on every
    cached-location write and used as an optimistic-concurrency token.
    """
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("event_id", "qr_code", name="uq_participants_event_qr"),
        Index("ix_participants_event_location", "event_id", "current_location"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    event_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    church = Column(String(200), nullable=False)
    type = Column(String(20), nullable=False)
    assigned_leaders = Column(Text, nullable=False, default="")  # comma separated
    qr_code = Column(String(512), nullable=False)
    current_location = Column(String(64), nullable=False, default=CAMP_LOCATION)
    location_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def assigned_leader_list(self):
        if not self.assigned_leaders:
            return []
        return [leader for leader in self.assigned_leaders.split(",") if leader]


class ActivityLog(Base):
    """
    Append-only location transition record.

    activity_id is the destination for departure/change and the activity
    left for return. There are no foreign keys on purpose: entries may
    reference activities that were deleted later.
    """
    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("ix_activity_logs_participant_ts", "participant_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, index=True)
    participant_id = Column(String(64), nullable=False)
    type = Column(String(20), nullable=False)
    activity_id = Column(String(64), nullable=False, index=True)
    from_activity_id = Column(String(64), nullable=True)
    leader_id = Column(String(128), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
