from types import SimpleNamespace

import pytest

from camp_checkin.config import AppConfig
from camp_checkin.core.engine import CheckinEngine
from camp_checkin.core.models import ScanType
from camp_checkin.storage.database import create_session_factory

LEADER = "leader-001"


@pytest.fixture
def db_session_factory(monkeypatch):
    monkeypatch.delenv("ENV", raising=False)
    return create_session_factory("sqlite://", create_tables=True)


@pytest.fixture
def config():
    return AppConfig(database_url="sqlite://", report_cache_ttl_seconds=60)


@pytest.fixture
def engine(config, db_session_factory):
    return CheckinEngine(config=config, db_session_factory=db_session_factory)


@pytest.fixture
def camp(engine):
    """
    One event with two activities and three participants, everybody at camp.
    """
    event = engine.roster.create_event(name="Summer Camp", event_id="evt-1")
    lake = engine.roster.create_activity(event.id, "Lake", location="North shore")
    hike = engine.roster.create_activity(event.id, "Hike")
    ana = engine.roster.create_participant(event.id, "Ana Souza", "First Church", "student")
    bruno = engine.roster.create_participant(event.id, "Bruno Lima", "First Church", "student")
    carla = engine.roster.create_participant(
        event.id, "Carla Dias", "Hope Church", "leader", assigned_leaders=["Pastor Joe"]
    )
    return SimpleNamespace(
        event_id=event.id,
        lake=lake.id,
        hike=hike.id,
        ana=ana,
        bruno=bruno,
        carla=carla,
    )


@pytest.fixture
def depart(engine, camp):
    def _depart(participant, activity_id):
        return engine.scan(
            camp.event_id, participant.qr_code, ScanType.DEPARTURE, LEADER, target_activity_id=activity_id
        )
    return _depart


@pytest.fixture
def come_back(engine, camp):
    def _come_back(participant):
        return engine.scan(camp.event_id, participant.qr_code, ScanType.RETURN, LEADER)
    return _come_back
