import threading

from camp_checkin.config import AppConfig
from camp_checkin.core import report_cache
from camp_checkin.core.engine import CheckinEngine
from camp_checkin.core.report_cache import InMemoryReportCache, report_key


def test_key_format():
    assert report_key("evt-1", "cache") == "report:evt-1:cache"


def test_get_after_set():
    cache = InMemoryReportCache(ttl_seconds=10)
    cache.set("evt-1", "cache", {"total_participants": 3})

    assert cache.get("evt-1", "cache") == {"total_participants": 3}
    assert cache.get("evt-1", "log") is None


def test_entries_expire(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(report_cache.time, "monotonic", lambda: now[0])
    cache = InMemoryReportCache(ttl_seconds=10)
    cache.set("evt-1", "cache", {"at_camp": 1})

    now[0] += 9
    assert cache.get("evt-1", "cache") is not None
    now[0] += 1
    assert cache.get("evt-1", "cache") is None


def test_zero_ttl_disables_caching():
    cache = InMemoryReportCache(ttl_seconds=0)
    cache.set("evt-1", "cache", {"at_camp": 1})
    assert cache.get("evt-1", "cache") is None


def test_invalidate_only_touches_one_event():
    cache = InMemoryReportCache(ttl_seconds=10)
    cache.set("evt-1", "cache", {"a": 1})
    cache.set("evt-1", "log", {"a": 2})
    cache.set("evt-10", "cache", {"a": 3})

    cache.invalidate("evt-1")

    assert cache.get("evt-1", "cache") is None
    assert cache.get("evt-1", "log") is None
    assert cache.get("evt-10", "cache") == {"a": 3}


def test_engine_falls_back_when_redis_is_unreachable(db_session_factory):
    engine = CheckinEngine(
        config=AppConfig(database_url="sqlite://", redis_url="redis://127.0.0.1:1/0"),
        db_session_factory=db_session_factory,
    )
    assert engine.check_report_cache() is True
    assert engine.check_database() is True


def test_cached_reports_are_copies():
    cache = InMemoryReportCache(ttl_seconds=10)
    report = {"activities": [{"name": "Lake"}]}
    cache.set("evt-1", "cache", report)
    report["activities"].clear()

    cached = cache.get("evt-1", "cache")
    cached["activities"].append({"name": "Hike"})

    assert cache.get("evt-1", "cache") == {"activities": [{"name": "Lake"}]}


def test_invalidate_while_other_threads_write():
    cache = InMemoryReportCache(ttl_seconds=10)
    errors = []
    done = threading.Event()

    def writer():
        i = 0
        while not done.is_set():
            cache.set(f"evt-{i % 50}", "cache", {"i": i})
            i += 1

    def invalidator():
        try:
            for _ in range(3000):
                cache.invalidate("evt-1")
        except Exception as e:
            errors.append(repr(e))

    writer_thread = threading.Thread(target=writer)
    invalidators = [threading.Thread(target=invalidator) for _ in range(3)]
    writer_thread.start()
    for thread in invalidators:
        thread.start()
    for thread in invalidators:
        thread.join()
    done.set()
    writer_thread.join()

    assert errors == []


def test_concurrent_expiry_of_the_same_key(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(report_cache.time, "monotonic", lambda: now[0])
    cache = InMemoryReportCache(ttl_seconds=1)
    errors = []

    def reader():
        try:
            for _ in range(2000):
                cache.set("evt-1", "cache", {"a": 1})
                now[0] += 2
                cache.get("evt-1", "cache")
        except Exception as e:
            errors.append(repr(e))

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
