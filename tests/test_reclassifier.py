import json
import logging
import time

import pytest

from collector import reclassifier
from collector import signals as sig
from collector.reclassifier import (
    Reclassifier,
    Rule,
    escalate,
    materialize_sessions,
    run_rules,
)

from .conftest import NOW

SINCE = NOW - 15 * 60 * 1000


def signal_names(row):
    return [s["name"] for s in json.loads(row["bot_signals"])]


def patterns(db, event_id):
    rows = db.execute("SELECT pattern FROM event_patterns WHERE event_id = ?", (event_id,))
    return sorted(r["pattern"] for r in rows)


def add_fast_session(add_event, session_id="fast", count=60, step_ms=130, **fields):
    return [
        add_event(session_id=session_id, timestamp=NOW - 60_000 + i * step_ms, **fields)
        for i in range(count)
    ]


def add_metronome_clicks(add_event, session_id="clicker", count=12, step_ms=50, **fields):
    return [
        add_event(session_id=session_id, event_type="click", has_click=1,
                  timestamp=NOW - 60_000 + i * step_ms, **fields)
        for i in range(count)
    ]


# -----------------------------------------------------------------------------
# zero_interaction
# -----------------------------------------------------------------------------
def test_zero_interaction_scores_once(db, add_event, event_row):
    event_id = add_event(page_duration=500)

    assert run_rules(db, SINCE, now=NOW) == 1
    row = event_row(event_id)
    assert row["bot_score"] == 25
    assert row["bot_category"] == sig.SUSPICIOUS
    assert signal_names(row) == ["zero_interaction"]
    assert patterns(db, event_id) == ["zero_interaction"]

    assert run_rules(db, SINCE, now=NOW) == 0
    row = event_row(event_id)
    assert row["bot_score"] == 25
    assert row["bot_category"] == sig.SUSPICIOUS
    assert signal_names(row) == ["zero_interaction"]


@pytest.mark.parametrize("fields", [
    {"page_duration": 1500},
    {"page_duration": 200, "has_scroll": 1},
    {"page_duration": 200, "has_mouse_move": 1},
    {"event_type": "click", "page_duration": 200},
])
def test_zero_interaction_needs_a_bare_pageview(db, add_event, event_row, fields):
    event_id = add_event(**fields)
    run_rules(db, SINCE, now=NOW)
    assert event_row(event_id)["bot_score"] == 0


def test_zero_interaction_ignores_sessions_with_more_events(db, add_event, event_row):
    first = add_event(page_duration=100)
    add_event(page_duration=100, timestamp=NOW - 30_000)
    run_rules(db, SINCE, now=NOW)
    assert event_row(first)["bot_score"] == 0


def test_zero_interaction_missing_duration_counts_as_zero(db, add_event, event_row):
    event_id = add_event(page_duration=None)
    run_rules(db, SINCE, now=NOW)
    assert event_row(event_id)["bot_score"] == 25


def test_zero_interaction_skips_high_prior_scores(db, add_event, event_row):
    event_id = add_event(page_duration=100, bot_score=80, bot_category=sig.BAD_BOT)
    run_rules(db, SINCE, now=NOW)
    row = event_row(event_id)
    assert row["bot_score"] == 80
    assert patterns(db, event_id) == []


def test_zero_interaction_crossing_bad_bot_threshold(db, add_event, event_row):
    event_id = add_event(page_duration=100, bot_score=40, bot_category=sig.SUSPICIOUS)
    run_rules(db, SINCE, now=NOW)
    row = event_row(event_id)
    assert row["bot_score"] == 65
    assert row["bot_category"] == sig.BAD_BOT


def test_events_outside_window_are_ignored(db, add_event, event_row):
    event_id = add_event(page_duration=100, timestamp=NOW - 20 * 60 * 1000)
    assert run_rules(db, SINCE, now=NOW) == 0
    assert event_row(event_id)["bot_score"] == 0


def test_good_bots_are_left_alone(db, add_event, event_row):
    event_id = add_event(page_duration=100, bot_category=sig.GOOD_BOT,
                         bot_signals='[{"name":"known_good_bot","weight":0,"value":"Googlebot"}]')
    run_rules(db, SINCE, now=NOW)
    row = event_row(event_id)
    assert row["bot_score"] == 0
    assert row["bot_category"] == sig.GOOD_BOT


# -----------------------------------------------------------------------------
# impossible_speed
# -----------------------------------------------------------------------------
def test_impossible_speed_forces_bad_bot(db, add_event, event_row):
    ids = add_fast_session(add_event)

    assert run_rules(db, SINCE, now=NOW) == 60
    for event_id in (ids[0], ids[-1]):
        row = event_row(event_id)
        assert row["bot_score"] == 30
        assert row["bot_category"] == sig.BAD_BOT
        assert signal_names(row) == ["impossible_speed"]

    assert run_rules(db, SINCE, now=NOW) == 0
    assert event_row(ids[0])["bot_score"] == 30


def test_impossible_speed_clamps_score(db, add_event, event_row):
    ids = add_fast_session(add_event, bot_score=90, bot_category=sig.BAD_BOT)
    run_rules(db, SINCE, now=NOW)
    assert event_row(ids[5])["bot_score"] == 100


def test_slow_or_small_sessions_are_not_impossible(db, add_event, event_row):
    slow = add_fast_session(add_event, session_id="slow", step_ms=500)
    small = add_fast_session(add_event, session_id="small", count=50)
    run_rules(db, SINCE, now=NOW)
    assert event_row(slow[0])["bot_score"] == 0
    assert event_row(small[0])["bot_score"] == 0


def test_sessions_are_keyed_by_domain_too(db, add_event, event_row):
    ids = [add_event(session_id="shared", domain=f"site{i % 2}.com",
                     timestamp=NOW - 60_000 + i * 100) for i in range(60)]
    run_rules(db, SINCE, now=NOW)
    # 30 pageviews per (session, domain) is below the threshold
    assert event_row(ids[0])["bot_score"] == 0


# -----------------------------------------------------------------------------
# perfect_timing
# -----------------------------------------------------------------------------
def test_perfect_timing_marks_suspicious(db, add_event, event_row):
    ids = add_metronome_clicks(add_event)
    run_rules(db, SINCE, now=NOW)
    row = event_row(ids[0])
    assert row["bot_score"] == 20
    assert row["bot_category"] == sig.SUSPICIOUS
    assert signal_names(row) == ["perfect_timing"]


def test_perfect_timing_escalates_to_bad_bot(db, add_event, event_row):
    ids = add_metronome_clicks(add_event, bot_score=40, bot_category=sig.SUSPICIOUS)
    run_rules(db, SINCE, now=NOW)
    row = event_row(ids[0])
    assert row["bot_score"] == 60
    assert row["bot_category"] == sig.BAD_BOT


def test_perfect_timing_never_demotes(db, add_event, event_row):
    # odd legacy row: low score but already bad_bot
    ids = add_metronome_clicks(add_event, bot_score=5, bot_category=sig.BAD_BOT)
    run_rules(db, SINCE, now=NOW)
    row = event_row(ids[0])
    assert row["bot_score"] == 25
    assert row["bot_category"] == sig.BAD_BOT


def test_human_click_pace_is_fine(db, add_event, event_row):
    ids = add_metronome_clicks(add_event, step_ms=800)
    few = add_metronome_clicks(add_event, session_id="few", count=9)
    run_rules(db, SINCE, now=NOW)
    assert event_row(ids[0])["bot_score"] == 0
    assert event_row(few[0])["bot_score"] == 0


# -----------------------------------------------------------------------------
# cross-rule properties
# -----------------------------------------------------------------------------
def test_rules_stack_and_rerun_is_stable(db, add_event, event_row):
    ids = add_fast_session(add_event, session_id="mixed")
    ids += add_metronome_clicks(add_event, session_id="mixed")

    run_rules(db, SINCE, now=NOW)
    first = {i: (event_row(i)["bot_score"], event_row(i)["bot_category"]) for i in ids}
    assert first[ids[0]] == (50, sig.BAD_BOT)

    run_rules(db, SINCE, now=NOW)
    second = {i: (event_row(i)["bot_score"], event_row(i)["bot_category"]) for i in ids}
    assert second == first


def test_scores_never_decrease(db, add_event, event_row):
    before = {}
    for score, category in ((0, sig.HUMAN), (30, sig.SUSPICIOUS), (70, sig.BAD_BOT), (100, sig.BAD_BOT)):
        for event_id in add_metronome_clicks(add_event, session_id=f"c{score}",
                                             bot_score=score, bot_category=category):
            before[event_id] = (score, category)

    run_rules(db, SINCE, now=NOW)

    rank = {sig.HUMAN: 0, sig.SUSPICIOUS: 1, sig.BAD_BOT: 2}
    for event_id, (score, category) in before.items():
        row = event_row(event_id)
        assert score <= row["bot_score"] <= 100
        assert rank[row["bot_category"]] >= rank[category]


def test_failing_rule_does_not_block_others(db, add_event, event_row, monkeypatch, caplog):
    broken = Rule(
        name="broken",
        weight=10,
        candidates_sql="SELECT session_id, domain FROM no_such_table WHERE timestamp >= ?",
        category=sig.category_for_score,
    )
    monkeypatch.setattr(reclassifier, "RULES", (broken,) + reclassifier.RULES)
    event_id = add_event(page_duration=100)

    with caplog.at_level(logging.ERROR, logger="collector.reclassifier"):
        assert run_rules(db, SINCE, now=NOW) == 1

    assert "broken analysis failed" in caplog.text
    assert event_row(event_id)["bot_score"] == 25


@pytest.mark.parametrize("score,category,weight,expected", [
    (0, sig.HUMAN, 25, (25, sig.SUSPICIOUS)),
    (90, sig.BAD_BOT, 30, (100, sig.BAD_BOT)),
    (None, None, 10, (10, sig.HUMAN)),
])
def test_escalate(score, category, weight, expected):
    assert escalate(score, category, weight, sig.category_for_score) == expected


# -----------------------------------------------------------------------------
# sessions + lifecycle
# -----------------------------------------------------------------------------
def test_materialize_sessions_is_an_upsert(db, add_event):
    add_event(url="https://example.com/a", timestamp=NOW - 50_000, page_duration=3000)
    add_event(event_type="click", url="https://example.com/a", timestamp=NOW - 40_000)
    add_event(url="https://example.com/b", timestamp=NOW - 30_000,
              bot_score=30, bot_category=sig.SUSPICIOUS)
    add_event(session_id="bounce", url="https://example.com/c")

    assert materialize_sessions(db, SINCE) == 2
    assert materialize_sessions(db, SINCE) == 2

    rows = db.execute("SELECT * FROM visitor_sessions ORDER BY session_id").fetchall()
    assert len(rows) == 2
    bounce, s1 = rows
    assert s1["id"] == "s1_example.com"
    assert s1["pageviews"] == 2
    assert s1["is_bounce"] == 0
    assert s1["entry_url"] == "https://example.com/a"
    assert s1["exit_url"] == "https://example.com/b"
    assert s1["duration"] == 20_000
    assert s1["bot_score"] == 30
    assert s1["bot_category"] == sig.SUSPICIOUS
    assert bounce["is_bounce"] == 1


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def test_background_task_runs_immediately_and_stops(db_path, db, add_event, event_row):
    event_id = add_event(page_duration=100)

    task = Reclassifier(db_path, interval=3600, window=900)
    task.start()
    try:
        assert task.running
        scheduler = task._scheduler
        task.start()  # no second scheduler
        assert task._scheduler is scheduler
        assert len(scheduler.get_jobs()) == 1

        # first pass does not wait for the interval
        assert wait_for(lambda: event_row(event_id)["bot_score"] == 25)
    finally:
        task.stop()

    assert not task.running
    task.stop()  # already stopped
    assert event_row(event_id)["bot_score"] == 25
    session = db.execute("SELECT * FROM visitor_sessions").fetchone()
    assert session["bot_category"] == sig.SUSPICIOUS


def test_run_once_twice_is_idempotent(db_path, add_event, event_row):
    event_id = add_event(page_duration=100)
    task = Reclassifier(db_path, window=900)
    assert task.run_once(now=NOW) == 1
    assert task.run_once(now=NOW) == 0
    assert event_row(event_id)["bot_score"] == 25
