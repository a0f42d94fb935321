import threading
import time

import pytest

from kibble.config import default_config
from kibble.errors import AlreadyRefreshingError, ProviderError, RefreshError
from kibble.models import ChatResult
from kibble.scheduler import Scheduler
from kibble.storage import create_topic, get_topic, init_db, list_facts, list_refresh_log

SUN = "The Sun contains 99.86 percent of the mass in the Solar System."
SUN_TOTAL = "The Sun contains 99.86 percent of the total mass in the Solar System."
VENUS = "Venus rotates backwards compared to most other planets."
SUN_ABOUT = "The Sun contains about 99.86 percent of the mass in the Solar System."
MERCURY = "A day on Mercury lasts longer than its year."


class FakeProvider:
    name = "gemini"


class FakeAI:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0
        self.entered = threading.Event()
        self.release = None

    def provider_for(self, topic_provider, settings):
        return FakeProvider()

    def generate_facts(self, topic, settings):
        self.calls += 1
        self.entered.set()
        if self.release is not None:
            self.release.wait(5)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply, ChatResult(text="\n".join(reply), tokens_used=120, model="gemini-2.5-flash", provider="gemini")


class NoopDiscovery:
    def discover(self, conn, topic, settings):
        raise AssertionError("facts refreshes never discover sources")

    def replace(self, conn, topic, settings, count):
        raise AssertionError("facts refreshes never replace sources")


def _scheduler(db_path, ai):
    return Scheduler(
        default_config(),
        connect=lambda: init_db(db_path),
        ai=ai,
        scraper=object(),
        discovery=NoopDiscovery(),
    )


def _usage_rows(conn, topic_id):
    return conn.execute(
        "SELECT facts_requested, facts_generated, facts_discarded, tokens_used, error "
        "FROM api_usage_log WHERE topic_id = ? ORDER BY id",
        (topic_id,),
    ).fetchall()


def test_near_duplicates_are_discarded(conn, db_path):
    topic_id = create_topic(conn, "Space", facts_per_refresh=3)
    ai = FakeAI([[SUN, SUN_TOTAL, VENUS, SUN_ABOUT, MERCURY]])

    result = _scheduler(db_path, ai).refresh_now(topic_id)

    assert result.generated == 3
    assert result.discarded == 2
    assert result.error == ""
    assert [fact.content for fact in list_facts(conn, topic_id)] == [SUN, VENUS, MERCURY]
    assert _usage_rows(conn, topic_id) == [(3, 3, 2, 120, "")]
    assert get_topic(conn, topic_id).last_refreshed_at is not None
    log = list_refresh_log(conn, "facts", topic_id)
    assert [(entry["status"], entry["item_count"]) for entry in log] == [("success", 3)]


def test_new_facts_are_checked_against_stored_ones(conn, db_path):
    topic_id = create_topic(conn, "Space", facts_per_refresh=2)
    ai = FakeAI([[SUN, VENUS], [SUN_ABOUT, MERCURY]])
    scheduler = _scheduler(db_path, ai)

    scheduler.refresh_now(topic_id)
    second = scheduler.refresh_now(topic_id)

    assert (second.generated, second.discarded) == (1, 1)
    assert [fact.content for fact in list_facts(conn, topic_id)] == [SUN, VENUS, MERCURY]


def test_provider_failure_is_logged_and_topic_stays_due(conn, db_path):
    topic_id = create_topic(conn, "Space", facts_per_refresh=3)
    ai = FakeAI([ProviderError("gemini returned status 429: quota")])

    result = _scheduler(db_path, ai).refresh_now(topic_id)

    assert result.generated == 0
    assert result.error == "gemini returned status 429: quota"
    assert list_facts(conn, topic_id) == []
    assert _usage_rows(conn, topic_id) == [(3, 0, 0, 0, "gemini returned status 429: quota")]
    assert get_topic(conn, topic_id).last_refreshed_at is None
    log = list_refresh_log(conn, "facts", topic_id)
    assert [(entry["status"], entry["error_type"]) for entry in log] == [("error", "rate_limited")]


def test_unexpected_errors_are_contained(conn, db_path):
    topic_id = create_topic(conn, "Space")
    ai = FakeAI([ZeroDivisionError("division by zero")])

    result = _scheduler(db_path, ai).refresh_now(topic_id)

    assert result.error == "panic: division by zero"
    log = list_refresh_log(conn, "facts", topic_id)
    assert [(entry["status"], entry["error_type"]) for entry in log] == [("error", "panic")]


def test_unexpected_json_errors_are_still_panics(conn, db_path):
    topic_id = create_topic(conn, "Space")
    ai = FakeAI([TypeError("Object of type set is not JSON serializable")])

    result = _scheduler(db_path, ai).refresh_now(topic_id)

    assert result.error == "panic: Object of type set is not JSON serializable"
    log = list_refresh_log(conn, "facts", topic_id)
    assert [(entry["status"], entry["error_type"]) for entry in log] == [("error", "panic")]


def test_missing_topic(db_path):
    with pytest.raises(RefreshError, match="topic 999 not found"):
        _scheduler(db_path, FakeAI([])).refresh_now(999)


def test_concurrent_manual_refresh_is_rejected(conn, db_path):
    topic_id = create_topic(conn, "Space", facts_per_refresh=1)
    ai = FakeAI([[VENUS], [MERCURY]])
    ai.release = threading.Event()
    scheduler = _scheduler(db_path, ai)
    results = []

    worker = threading.Thread(target=lambda: results.append(scheduler.refresh_now(topic_id)))
    worker.start()
    try:
        assert ai.entered.wait(5)
        with pytest.raises(AlreadyRefreshingError, match=f"topic {topic_id} is already being refreshed"):
            scheduler.refresh_now(topic_id)
    finally:
        ai.release.set()
        worker.join(5)

    assert ai.calls == 1
    assert [result.generated for result in results] == [1]
    assert [fact.content for fact in list_facts(conn, topic_id)] == [VENUS]
    assert len(_usage_rows(conn, topic_id)) == 1


def test_tick_refreshes_due_topics_and_skips_paused_ones(conn, db_path):
    due = create_topic(conn, "Space", facts_per_refresh=1)
    create_topic(conn, "Paused", facts_per_refresh=1, is_active=False)
    ai = FakeAI([[VENUS]])

    _scheduler(db_path, ai).check_and_refresh()

    assert ai.calls == 1
    assert [fact.content for fact in list_facts(conn, due)] == [VENUS]


def test_run_stops_when_event_is_set(db_path):
    scheduler = _scheduler(db_path, FakeAI([]))
    scheduler.stop_event.set()

    scheduler.run()


class StoppingAI(FakeAI):
    def __init__(self, replies, stop_event):
        super().__init__(replies)
        self.stop_event = stop_event

    def generate_facts(self, topic, settings):
        self.stop_event.set()
        return super().generate_facts(topic, settings)


def _wait_for_refresh_log(conn, topic_id, timeout=5):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        log = list_refresh_log(conn, "facts", topic_id)
        if log:
            return log
        time.sleep(0.05)
    return []


def test_stop_during_generation_discards_the_facts(conn, db_path):
    topic_id = create_topic(conn, "Space", facts_per_refresh=1)
    stop_event = threading.Event()
    ai = StoppingAI([[VENUS]], stop_event)
    scheduler = Scheduler(
        default_config(),
        connect=lambda: init_db(db_path),
        ai=ai,
        scraper=object(),
        discovery=NoopDiscovery(),
        stop_event=stop_event,
    )

    result = scheduler.refresh_now(topic_id)

    assert result.generated == 0
    assert result.error == "refresh canceled: context canceled"
    assert list_facts(conn, topic_id) == []
    assert get_topic(conn, topic_id).last_refreshed_at is None
    log = list_refresh_log(conn, "facts", topic_id)
    assert [(entry["status"], entry["error_type"]) for entry in log] == [("error", "timeout")]


def test_run_returns_promptly_while_a_refresh_is_in_flight(conn, db_path):
    topic_id = create_topic(conn, "Space", facts_per_refresh=1)
    ai = FakeAI([[VENUS]])
    ai.release = threading.Event()
    scheduler = _scheduler(db_path, ai)

    runner = threading.Thread(target=scheduler.run)
    runner.start()
    try:
        assert ai.entered.wait(5)
        scheduler.stop_event.set()
        runner.join(2)
        assert not runner.is_alive()
    finally:
        ai.release.set()
        runner.join(5)

    log = _wait_for_refresh_log(conn, topic_id)
    assert [(entry["status"], entry["error_type"]) for entry in log] == [("error", "timeout")]
    assert list_facts(conn, topic_id) == []
    assert get_topic(conn, topic_id).last_refreshed_at is None
