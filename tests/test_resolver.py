from datetime import datetime, timedelta

from camp_checkin.core.models import Change, Departure, Location, LocationSource, LogEntry, Return
from camp_checkin.core.resolver import last_engaged_activity, latest_entry, resolve_location

T0 = datetime(2024, 7, 1, 9, 0, 0)


def entry(entry_id, transition, minutes=0, participant_id="p1"):
    return LogEntry(
        id=entry_id,
        event_id="evt-1",
        participant_id=participant_id,
        transition=transition,
        leader_id="leader-001",
        timestamp=T0 + timedelta(minutes=minutes),
    )


def test_empty_history_is_camp():
    assert resolve_location([]) == Location.camp()


def test_latest_departure_is_its_activity():
    entries = [entry(1, Departure("lake"), minutes=0)]
    assert resolve_location(entries) == Location.at("lake")


def test_latest_return_is_camp():
    entries = [
        entry(2, Return("lake"), minutes=30),
        entry(1, Departure("lake"), minutes=0),
    ]
    assert resolve_location(entries).is_camp


def test_change_goes_to_new_activity():
    entries = [
        entry(1, Departure("lake"), minutes=0),
        entry(2, Change(from_activity_id="lake", activity_id="hike"), minutes=10),
    ]
    assert resolve_location(entries) == Location.at("hike")


def test_same_timestamp_uses_id_as_tiebreak():
    entries = [
        entry(8, Return("lake"), minutes=5),
        entry(7, Departure("lake"), minutes=5),
    ]
    assert latest_entry(entries).id == 8
    assert resolve_location(entries).is_camp


def test_unknown_activity_resolves_to_camp():
    entries = [entry(1, Departure("deleted-activity"))]
    assert resolve_location(entries, known_activity_ids={"lake"}).is_camp
    assert resolve_location(entries) == Location.at("deleted-activity")


def test_last_engaged_activity_ignores_returns():
    entries = [
        entry(1, Departure("lake"), minutes=0),
        entry(2, Change(from_activity_id="lake", activity_id="hike"), minutes=10),
        entry(3, Return("hike"), minutes=20),
    ]
    assert last_engaged_activity(entries) == "hike"
    assert last_engaged_activity([]) is None


def test_current_location_follows_scans(engine, camp, depart, come_back):
    assert engine.resolver.current_location(camp.ana.id).is_camp

    depart(camp.ana, camp.lake)
    assert engine.resolver.current_location(camp.ana.id) == Location.at(camp.lake)

    come_back(camp.ana)
    assert engine.resolver.current_location(camp.ana.id).is_camp


def test_partition_sources_agree(engine, camp, depart):
    depart(camp.ana, camp.lake)
    depart(camp.bruno, camp.hike)

    from_log = engine.resolver.partition_by_location(camp.event_id, source=LocationSource.LOG)
    from_cache = engine.resolver.partition_by_location(camp.event_id, source=LocationSource.CACHE)

    for partition in (from_log, from_cache):
        assert partition.camp == [camp.carla.id]
        assert partition.by_activity[camp.lake] == [camp.ana.id]
        assert partition.by_activity[camp.hike] == [camp.bruno.id]

    assert from_log.source == LocationSource.LOG
    assert from_cache.source == LocationSource.CACHE


def test_partition_lists_empty_activities(engine, camp):
    partition = engine.resolver.partition_by_location(camp.event_id)
    assert partition.by_activity == {camp.lake: [], camp.hike: []}
    assert sorted(partition.camp) == sorted([camp.ana.id, camp.bruno.id, camp.carla.id])


def test_engagement_counts_latest_departure_only(engine, camp, depart, come_back):
    depart(camp.ana, camp.lake)
    depart(camp.ana, camp.hike)
    come_back(camp.ana)
    depart(camp.bruno, camp.lake)

    counts = engine.resolver.engagement_counts(camp.event_id)

    assert counts == {camp.lake: 1, camp.hike: 1}


def test_participant_history_is_newest_first_with_names(engine, camp, depart, come_back):
    depart(camp.ana, camp.lake)
    depart(camp.ana, camp.hike)
    come_back(camp.ana)

    history = engine.resolver.participant_history(camp.ana.id)

    assert [item.entry.type.value for item in history] == ["return", "change", "departure"]
    assert history[1].activity_name == "Hike"
    assert history[1].from_activity_name == "Lake"
    assert history[2].from_activity_name is None
