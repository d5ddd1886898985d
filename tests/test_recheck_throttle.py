from config import config
from scheduler import RecheckThrottle

INTERVAL = 15 * 60 * 1000
T0 = 1_700_000_000_000


def test_unseen_sources_are_due_and_marked():
    throttle = RecheckThrottle(INTERVAL)

    assert throttle.select_due(["a", "b"], T0) == ["a", "b"]
    assert throttle.last_checked == {"a": T0, "b": T0}


def test_duplicates_collapse_to_one_fetch():
    throttle = RecheckThrottle(INTERVAL)

    assert throttle.select_due(["a", "b", "a", "a"], T0) == ["a", "b"]
    assert len(throttle) == 2


def test_source_is_not_due_at_exactly_the_interval():
    throttle = RecheckThrottle(INTERVAL)
    throttle.select_due(["a"], T0)

    assert throttle.select_due(["a"], T0 + INTERVAL - 1) == []
    assert throttle.select_due(["a"], T0 + INTERVAL) == []
    assert throttle.last_checked["a"] == T0


def test_source_is_due_one_millisecond_after_the_interval():
    throttle = RecheckThrottle(INTERVAL)
    throttle.select_due(["a"], T0)

    assert throttle.select_due(["a"], T0 + INTERVAL + 1) == ["a"]
    assert throttle.last_checked["a"] == T0 + INTERVAL + 1


def test_new_source_is_due_while_others_are_throttled():
    throttle = RecheckThrottle(INTERVAL)
    throttle.select_due(["a"], T0)

    assert throttle.select_due(["a", "b"], T0 + 5000) == ["b"]


def test_sources_that_disappear_keep_their_history():
    throttle = RecheckThrottle(INTERVAL)
    throttle.select_due(["a", "b"], T0)
    throttle.select_due(["b"], T0 + INTERVAL + 1)

    assert throttle.last_checked["a"] == T0
    assert throttle.select_due(["a"], T0 + 1000) == []


def test_default_interval_comes_from_config(monkeypatch):
    monkeypatch.setattr(config, "AGGREGATE_INTERVAL_MINUTES", 2)

    assert RecheckThrottle().interval_ms == 2 * 60 * 1000
