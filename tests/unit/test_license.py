"""Unit tests for PlanQuota."""

import threading

import pytest

from shopassist.events import USAGE_TRACKED, EventBus
from shopassist.license import (
    FEATURE_ADD_TO_CART,
    FEATURE_BASIC_CHAT,
    FEATURE_CUSTOM_MESSAGES,
    METRIC_CONVERSATIONS,
    METRIC_ITEMS_INDEXED,
    PlanQuota,
)


def test_unknown_plan_raises():
    with pytest.raises(ValueError):
        PlanQuota("enterprise")


@pytest.mark.parametrize(
    "plan,conversations,items",
    [("free", 30, 30), ("pro", 100, 100), ("unlimited", 1000, 2000)],
)
def test_plan_limits(plan, conversations, items):
    quota = PlanQuota(plan)

    assert quota.get_limit(METRIC_CONVERSATIONS) == conversations
    assert quota.get_limit(METRIC_ITEMS_INDEXED) == items


def test_check_limit_counts_requested_amount():
    quota = PlanQuota("free", usage={METRIC_ITEMS_INDEXED: 25})

    within = quota.check_limit(METRIC_ITEMS_INDEXED, 5)
    over = quota.check_limit(METRIC_ITEMS_INDEXED, 6)

    assert within.within_limits is True
    assert within.remaining == 5
    assert over.within_limits is False


def test_uncapped_metric():
    status = PlanQuota("free").check_limit("api_calls", 1000)

    assert status.within_limits is True
    assert status.remaining == -1
    assert status.limit is None


def test_track_usage_publishes_event():
    events = EventBus()
    received = []
    events.subscribe(USAGE_TRACKED, lambda event, payload: received.append(payload))
    quota = PlanQuota("pro", events=events)

    quota.track_usage(METRIC_CONVERSATIONS)
    quota.track_usage(METRIC_CONVERSATIONS, 2)

    assert quota.get_usage(METRIC_CONVERSATIONS) == 3
    assert received[-1] == {"metric": METRIC_CONVERSATIONS, "amount": 2, "total": 3}


def test_reserve_takes_usage_only_when_it_fits():
    quota = PlanQuota("free", usage={METRIC_ITEMS_INDEXED: 28})

    taken = quota.reserve(METRIC_ITEMS_INDEXED, 2)
    refused = quota.reserve(METRIC_ITEMS_INDEXED)

    assert taken.within_limits is True
    assert taken.used == 28
    assert refused.within_limits is False
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 30


def test_release_gives_usage_back():
    events = EventBus()
    received = []
    events.subscribe(USAGE_TRACKED, lambda event, payload: received.append(payload))
    quota = PlanQuota("free", events=events, usage={METRIC_CONVERSATIONS: 29})

    quota.reserve(METRIC_CONVERSATIONS)
    quota.release(METRIC_CONVERSATIONS)
    quota.release(METRIC_CONVERSATIONS, 100)

    assert quota.get_usage(METRIC_CONVERSATIONS) == 0
    assert received == [
        {"metric": METRIC_CONVERSATIONS, "amount": 1, "total": 30},
        {"metric": METRIC_CONVERSATIONS, "amount": -1, "total": 29},
        {"metric": METRIC_CONVERSATIONS, "amount": -29, "total": 0},
    ]


def test_reserve_from_many_threads_never_passes_limit():
    quota = PlanQuota("free")
    granted = []

    def worker():
        for _ in range(10):
            if quota.reserve(METRIC_CONVERSATIONS).within_limits:
                granted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(granted) == 30
    assert quota.get_usage(METRIC_CONVERSATIONS) == 30


def test_reset_usage():
    quota = PlanQuota("free", usage={METRIC_CONVERSATIONS: 10, METRIC_ITEMS_INDEXED: 4})

    quota.reset_usage(METRIC_CONVERSATIONS)
    assert quota.get_usage(METRIC_CONVERSATIONS) == 0
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 4

    quota.reset_usage()
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 0


def test_features_follow_plan():
    assert PlanQuota("free").is_feature_enabled(FEATURE_BASIC_CHAT)
    assert not PlanQuota("free").is_feature_enabled(FEATURE_CUSTOM_MESSAGES)
    assert PlanQuota("pro").is_feature_enabled(FEATURE_CUSTOM_MESSAGES)
    assert not PlanQuota("pro").is_feature_enabled(FEATURE_ADD_TO_CART)
    assert PlanQuota("unlimited").is_feature_enabled(FEATURE_ADD_TO_CART)
    assert not PlanQuota("unlimited").is_feature_enabled("teleport")
