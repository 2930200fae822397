from camp_checkin.core.models import LocationSource


def test_event_report_counts(engine, camp, depart, come_back):
    depart(camp.ana, camp.lake)
    come_back(camp.ana)
    depart(camp.bruno, camp.lake)
    depart(camp.carla, camp.hike)

    report = engine.event_report(camp.event_id, source=LocationSource.LOG)

    assert report["event_id"] == camp.event_id
    assert report["source"] == "log"
    assert report["total_participants"] == 3
    assert report["by_type"] == {"student": 2, "leader": 1}
    assert report["by_church"] == {"First Church": 2, "Hope Church": 1}
    assert list(report["by_church"]) == ["First Church", "Hope Church"]
    assert report["at_camp"] == 1
    assert report["away"] == 2

    lake, hike = report["activities"]
    assert lake["name"] == "Lake"
    assert lake["location"] == "North shore"
    assert lake["occupancy"] == 1
    assert lake["engagement"] == 2
    assert hike["name"] == "Hike"
    assert hike["occupancy"] == 1
    assert hike["engagement"] == 1


def test_camp_plus_away_is_total(engine, camp, depart):
    depart(camp.ana, camp.hike)

    for source in LocationSource:
        report = engine.event_report(camp.event_id, source=source)
        assert report["at_camp"] + report["away"] == report["total_participants"]


def test_report_is_cached_until_a_scan(engine, camp, depart):
    first = engine.event_report(camp.event_id)
    assert engine.event_report(camp.event_id)["generated_at"] == first["generated_at"]

    depart(camp.ana, camp.lake)

    fresh = engine.event_report(camp.event_id)
    assert fresh["generated_at"] >= first["generated_at"]
    assert fresh["at_camp"] == 2


def test_roster_change_invalidates_report(engine, camp):
    first = engine.event_report(camp.event_id)

    engine.roster.create_participant(camp.event_id, "Dan Reis", "Hope Church", "student")

    assert engine.event_report(camp.event_id)["total_participants"] == first["total_participants"] + 1


def test_empty_event_report(engine):
    event = engine.roster.create_event(name="Empty Camp")

    report = engine.event_report(event.id)

    assert report["total_participants"] == 0
    assert report["by_type"] == {"student": 0, "leader": 0}
    assert report["by_church"] == {}
    assert report["activities"] == []


def test_cached_report_cannot_be_modified_by_callers(engine, camp):
    first = engine.event_report(camp.event_id)
    first["at_camp"] = 99
    first["activities"].clear()

    again = engine.event_report(camp.event_id)

    assert again["at_camp"] == 3
    assert len(again["activities"]) == 2
