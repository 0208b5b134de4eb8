import json

import pytest

from collector import signals as sig
from collector.signals import Signal


@pytest.mark.parametrize("score,category", [
    (0, sig.HUMAN),
    (20, sig.HUMAN),
    (21, sig.SUSPICIOUS),
    (50, sig.SUSPICIOUS),
    (51, sig.BAD_BOT),
    (100, sig.BAD_BOT),
])
def test_category_thresholds(score, category):
    assert sig.category_for_score(score) == category


def test_category_is_monotonic_in_score():
    rank = {sig.HUMAN: 0, sig.SUSPICIOUS: 1, sig.BAD_BOT: 2}
    ranks = [rank[sig.category_for_score(s)] for s in range(101)]
    assert ranks == sorted(ranks)
    assert sig.GOOD_BOT not in {sig.category_for_score(s) for s in range(101)}


@pytest.mark.parametrize("current,candidate,expected", [
    (sig.HUMAN, sig.SUSPICIOUS, sig.SUSPICIOUS),
    (sig.SUSPICIOUS, sig.HUMAN, sig.SUSPICIOUS),
    (sig.BAD_BOT, sig.SUSPICIOUS, sig.BAD_BOT),
    (sig.SUSPICIOUS, sig.BAD_BOT, sig.BAD_BOT),
    (sig.HUMAN, sig.HUMAN, sig.HUMAN),
])
def test_escalate_category_never_demotes(current, candidate, expected):
    assert sig.escalate_category(current, candidate) == expected


def test_signal_json_omits_empty_value():
    raw = sig.signals_to_json([Signal("empty_ua", 20), Signal("automation_ua", 35, "selenium")])
    assert json.loads(raw) == [
        {"name": "empty_ua", "weight": 20},
        {"name": "automation_ua", "weight": 35, "value": "selenium"},
    ]


def test_signal_json_decodes_stored_lists():
    raw = '[{"name":"webdriver","weight":30},{"name":"known_good_bot","weight":0,"value":"Googlebot"}]'
    assert sig.signals_from_json(raw) == [
        Signal("webdriver", 30),
        Signal("known_good_bot", 0, "Googlebot"),
    ]


@pytest.mark.parametrize("raw", [None, "", "not json", "{}", '[1, "x", {"weight": 5}]'])
def test_malformed_signal_lists_decode_empty(raw):
    assert sig.signals_from_json(raw) == []


def test_good_bot_lookup():
    assert sig.good_bot_name("Mozilla/5.0 (compatible; bingbot/2.0)") == "Bingbot"
    assert sig.good_bot_name("Feedly/1.0 (+http://www.feedly.com/fetcher.html)") == "Feedly"
    assert sig.good_bot_name("") == ""
    assert sig.good_bot_name("Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0") == ""


def test_signals_are_immutable():
    s = Signal("empty_ua", 20)
    with pytest.raises(AttributeError):
        s.weight = 0
