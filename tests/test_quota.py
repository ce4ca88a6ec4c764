from __future__ import annotations

import pytest

from database import get_quota_usage
from quota import QuotaExhaustedError, QuotaTracker


def test_costs_per_operation() -> None:
    quota = QuotaTracker(daily_limit=10000)

    assert quota.use("search.list") == 100
    assert quota.use("videos.list") == 1
    assert quota.use("commentThreads.list", count=3) == 3
    assert quota.used == 104
    assert quota.operations == {"search.list": 100, "videos.list": 1, "commentThreads.list": 3}


def test_abort_threshold_blocks_unaffordable_calls() -> None:
    quota = QuotaTracker(daily_limit=1000, abort_threshold=0.5)
    quota.use("search.list", count=4)

    assert quota.can_afford("search.list")
    quota.check_or_abort("search.list")

    quota.use("search.list")
    assert not quota.can_afford("videos.list")
    with pytest.raises(QuotaExhaustedError):
        quota.check_or_abort("videos.list")


def test_remaining_and_fraction() -> None:
    quota = QuotaTracker(daily_limit=200)
    quota.use("search.list")

    assert quota.remaining() == 100
    assert quota.used_fraction() == pytest.approx(0.5)

    quota.use("search.list", count=3)
    assert quota.remaining() == 0


def test_usage_is_persisted_and_resumed(conn) -> None:
    first = QuotaTracker(conn, daily_limit=10000)
    first.use("search.list")
    first.use("videos.list", count=2)
    first.flush()

    stored = get_quota_usage(conn, first.today)
    assert stored["used"] == 102

    second = QuotaTracker(conn, daily_limit=10000)
    assert second.used == 102
    assert second.session_used == 0
    assert second.operations["videos.list"] == 2


def test_checkpoint_saves_without_explicit_flush(conn) -> None:
    quota = QuotaTracker(conn, daily_limit=10000, checkpoint_threshold=150)

    quota.use("search.list")
    assert get_quota_usage(conn, quota.today) is None

    quota.use("search.list")
    assert get_quota_usage(conn, quota.today)["used"] == 200


def test_reset_clears_persisted_usage(conn) -> None:
    quota = QuotaTracker(conn, daily_limit=10000)
    quota.use("search.list", count=5)
    quota.flush()

    quota.reset()

    assert quota.used == 0
    assert get_quota_usage(conn, quota.today) == {"used": 0, "operations": {}}


def test_summary_reports_session_usage() -> None:
    quota = QuotaTracker(daily_limit=1000)
    quota.use("commentThreads.list", count=10)

    summary = quota.get_summary()

    assert summary["used"] == 10
    assert summary["session_used"] == 10
    assert summary["remaining"] == 990
    assert summary["by_operation"] == {"commentThreads.list": 10}
