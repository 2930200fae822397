from datetime import datetime

import pytest

from camp_checkin.core.errors import (
    ActivityNotFoundError,
    DuplicateActivityError,
    DuplicateParticipantError,
    EventNotFoundError,
    ParticipantNotFoundError,
    ResetNotAllowedError,
    ValidationError,
)
from camp_checkin.core.engine import CheckinEngine
from camp_checkin.core.models import Location, LocationSource, LogType, ScanType
from camp_checkin.config import AppConfig
from camp_checkin.storage.models import ActivityLog, Participant


def count_logs(db_session_factory, **filters):
    db = db_session_factory()
    try:
        return db.query(ActivityLog).filter_by(**filters).count()
    finally:
        db.close()


class TestEvents:

    def test_create_and_get(self, engine):
        event = engine.roster.create_event(
            name="  Summer   Camp ",
            description="Lakeside",
            start_date=datetime(2024, 7, 1),
            end_date=datetime(2024, 7, 5),
            created_by="leader-001",
        )
        fetched = engine.roster.get_event(event.id)
        assert fetched.name == "Summer Camp"
        assert fetched.created_by == "leader-001"
        assert fetched.active is False

    def test_end_before_start(self, engine):
        with pytest.raises(ValidationError):
            engine.roster.create_event(name="Camp", start_date=datetime(2024, 7, 5), end_date=datetime(2024, 7, 1))

    def test_name_required(self, engine):
        with pytest.raises(ValidationError):
            engine.roster.create_event(name="   ")

    def test_explicit_id_must_be_unique(self, engine):
        engine.roster.create_event(name="Camp", event_id="evt-1")
        with pytest.raises(ValidationError):
            engine.roster.create_event(name="Other", event_id="evt-1")

    def test_unknown_event(self, engine):
        with pytest.raises(EventNotFoundError):
            engine.roster.get_event("missing")

    def test_only_one_active_event(self, engine):
        first = engine.roster.create_event(name="First")
        second = engine.roster.create_event(name="Second")

        assert engine.roster.get_active_event() is None

        assert engine.roster.set_active_event(first.id).active is True
        assert engine.roster.get_active_event().id == first.id

        engine.roster.set_active_event(second.id)
        active = [event.id for event in engine.roster.list_events() if event.active]
        assert active == [second.id]


class TestActivities:

    def test_duplicate_name(self, engine, camp):
        with pytest.raises(DuplicateActivityError):
            engine.roster.create_activity(camp.event_id, " Lake ")

    def test_same_name_in_another_event(self, engine, camp):
        other = engine.roster.create_event(name="Winter Camp")
        activity = engine.roster.create_activity(other.id, "Lake")
        assert activity.event_id == other.id

    def test_update(self, engine, camp):
        activity = engine.roster.update_activity(camp.event_id, camp.hike, description="Ridge trail", location="Gate 2")
        assert activity.name == "Hike"
        assert activity.description == "Ridge trail"
        assert activity.location == "Gate 2"

    def test_rename_to_existing_name(self, engine, camp):
        with pytest.raises(DuplicateActivityError):
            engine.roster.update_activity(camp.event_id, camp.hike, name="Lake")

    def test_unknown_activity(self, engine, camp):
        with pytest.raises(ActivityNotFoundError):
            engine.roster.get_activity(camp.event_id, "missing")

    def test_delete_activity_cascade(self, engine, camp, db_session_factory, depart, come_back):
        # Ana visited the lake and came back, Bruno is still there,
        # Carla moved on from the lake to the hike.
        depart(camp.ana, camp.lake)
        come_back(camp.ana)
        depart(camp.bruno, camp.lake)
        depart(camp.carla, camp.lake)
        depart(camp.carla, camp.hike)

        result = engine.roster.delete_activity(camp.event_id, camp.lake)

        assert result.deleted_activities == 1
        assert result.deleted_logs == 2
        assert result.relocated_participants == 1

        resolver = engine.resolver
        assert resolver.current_location(camp.ana.id).is_camp
        assert resolver.current_location(camp.bruno.id).is_camp
        assert resolver.current_location(camp.carla.id) == Location.at(camp.hike)

        # Ana keeps her return, Bruno keeps his latest departure as a dangling reference
        assert count_logs(db_session_factory, participant_id=camp.ana.id, type=LogType.RETURN.value) == 1
        assert count_logs(db_session_factory, participant_id=camp.bruno.id, activity_id=camp.lake) == 1
        assert count_logs(db_session_factory, participant_id=camp.carla.id) == 1

        for source in LocationSource:
            partition = resolver.partition_by_location(camp.event_id, source=source)
            assert camp.lake not in partition.by_activity
            assert partition.by_activity[camp.hike] == [camp.carla.id]
            assert sorted(partition.camp) == sorted([camp.ana.id, camp.bruno.id])

        with pytest.raises(ActivityNotFoundError):
            engine.roster.get_activity(camp.event_id, camp.lake)

    def test_engagement_after_activity_deletion(self, engine, camp, depart, come_back):
        # Ana went hiking, then to the lake, and is back at camp
        depart(camp.ana, camp.hike)
        come_back(camp.ana)
        depart(camp.ana, camp.lake)
        come_back(camp.ana)
        # Bruno moved from the hike to the lake and is still there
        depart(camp.bruno, camp.hike)
        depart(camp.bruno, camp.lake)
        # Carla only ever went to the lake
        depart(camp.carla, camp.lake)
        come_back(camp.carla)

        assert engine.resolver.engagement_counts(camp.event_id) == {camp.lake: 3, camp.hike: 0}

        engine.roster.delete_activity(camp.event_id, camp.lake)

        # Ana's lake departure is gone, so her hike counts again. Bruno's
        # latest entry still targets the deleted lake and counts nowhere.
        assert engine.resolver.engagement_counts(camp.event_id) == {camp.hike: 1}
        assert engine.resolver.current_location(camp.bruno.id).is_camp

    def test_history_survives_activity_deletion(self, engine, camp, depart):
        depart(camp.carla, camp.lake)
        depart(camp.carla, camp.hike)
        engine.roster.delete_activity(camp.event_id, camp.lake)

        history = engine.resolver.participant_history(camp.carla.id)

        assert len(history) == 1
        assert history[0].entry.from_activity_id == camp.lake
        assert history[0].from_activity_name is None
        assert history[0].activity_name == "Hike"


class TestParticipants:

    def test_create_generates_deterministic_qr(self, engine, camp):
        assert camp.ana.qr_code == "evt-1-ana-souza-first-church"
        assert camp.ana.current_location == "camp"
        assert camp.carla.assigned_leader_list == ["Pastor Joe"]

    def test_duplicate_name_and_church(self, engine, camp):
        with pytest.raises(DuplicateParticipantError):
            engine.roster.create_participant(camp.event_id, "Ana  Souza", "First Church", "leader")

    def test_same_name_other_church(self, engine, camp):
        other = engine.roster.create_participant(camp.event_id, "Ana Souza", "Hope Church", "student")
        assert other.qr_code == "evt-1-ana-souza-hope-church"

    def test_invalid_type(self, engine, camp):
        with pytest.raises(ValidationError):
            engine.roster.create_participant(camp.event_id, "Dan", "First Church", "counselor")

    def test_lookup_by_qr_code(self, engine, camp):
        found = engine.roster.get_participant_by_qr_code(camp.event_id, f" {camp.bruno.qr_code} ")
        assert found.id == camp.bruno.id
        with pytest.raises(ParticipantNotFoundError):
            engine.roster.get_participant_by_qr_code(camp.event_id, "")

    def test_list_filters(self, engine, camp, depart):
        depart(camp.ana, camp.lake)

        first_church = engine.roster.list_participants(camp.event_id, church="First Church")
        at_lake = engine.roster.list_participants(camp.event_id, location=camp.lake)

        assert [p.id for p in first_church] == [camp.ana.id, camp.bruno.id]
        assert [p.id for p in at_lake] == [camp.ana.id]

    def test_update_type_and_leaders(self, engine, camp):
        updated = engine.roster.update_participant(
            camp.event_id, camp.ana.id, participant_type="LEADER", assigned_leaders="Joe, Mary, Joe"
        )
        assert updated.type == "leader"
        assert updated.assigned_leader_list == ["Joe", "Mary"]
        assert updated.qr_code == camp.ana.qr_code

    def test_delete_participant_removes_logs(self, engine, camp, db_session_factory, depart, come_back):
        depart(camp.ana, camp.lake)
        come_back(camp.ana)
        depart(camp.bruno, camp.lake)

        result = engine.roster.delete_participant(camp.event_id, camp.ana.id)

        assert result.deleted_logs == 2
        assert result.deleted_participants == 1
        assert count_logs(db_session_factory, participant_id=camp.ana.id) == 0
        assert count_logs(db_session_factory, participant_id=camp.bruno.id) == 1
        with pytest.raises(ParticipantNotFoundError):
            engine.roster.get_participant(camp.event_id, camp.ana.id)


def test_delete_event_cascade(engine, camp, db_session_factory, depart):
    other = engine.roster.create_event(name="Winter Camp")
    skate = engine.roster.create_activity(other.id, "Skating")
    dan = engine.roster.create_participant(other.id, "Dan", "First Church", "student")
    engine.scan(other.id, dan.qr_code, ScanType.DEPARTURE, "leader-001", target_activity_id=skate.id)
    depart(camp.ana, camp.lake)
    depart(camp.bruno, camp.hike)

    result = engine.roster.delete_event(camp.event_id)

    assert result.deleted_logs == 2
    assert result.deleted_participants == 3
    assert result.deleted_activities == 2
    with pytest.raises(EventNotFoundError):
        engine.roster.get_event(camp.event_id)

    db = db_session_factory()
    try:
        assert db.query(Participant).filter_by(event_id=camp.event_id).count() == 0
    finally:
        db.close()
    assert count_logs(db_session_factory, event_id=other.id) == 1


def test_reset_test_data(engine, camp, db_session_factory, depart):
    depart(camp.ana, camp.lake)
    depart(camp.bruno, camp.hike)

    result = engine.reset_test_data(camp.event_id)

    assert result.deleted_logs == 2
    assert result.relocated_participants == 3
    assert count_logs(db_session_factory, event_id=camp.event_id) == 0
    partition = engine.resolver.partition_by_location(camp.event_id, source=LocationSource.CACHE)
    assert len(partition.camp) == 3
    assert len(engine.roster.list_activities(camp.event_id)) == 2


def test_reset_disabled(db_session_factory):
    engine = CheckinEngine(
        config=AppConfig(database_url="sqlite://", allow_test_reset=False),
        db_session_factory=db_session_factory,
    )
    event = engine.roster.create_event(name="Camp")
    with pytest.raises(ResetNotAllowedError):
        engine.reset_test_data(event.id)
