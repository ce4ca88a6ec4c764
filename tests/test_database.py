from __future__ import annotations

import pytest

from database import (
    PostgresConnection,
    add_channel_for_user,
    get_channels_for_user,
    get_comments_for_video,
    get_quota_usage,
    get_video_by_upstream_id,
    get_videos_for_user,
    insert_comment,
    insert_video_if_absent,
    is_retryable_error,
    needs_connection_refresh,
    remove_channel_for_user,
    save_quota_usage,
    set_channel_upstream_id,
    update_video_counters,
)
from fakes import count_rows


def _video(video_id: str = "abc", **overrides) -> dict:
    video = {
        "video_id": video_id,
        "title": "Launch day",
        "description": "We shipped it",
        "published_at": "2024-05-01T12:00:00Z",
        "thumbnail_url": "https://i.ytimg.com/vi/abc/maxresdefault.jpg",
        "channel_title": "Acme",
        "view_count": 10,
        "like_count": 2,
        "dislike_count": 0,
        "comment_count": 1,
    }
    video.update(overrides)
    return video


def test_channels_are_scoped_to_their_user(conn) -> None:
    add_channel_for_user(conn, "alice", "Acme")
    add_channel_for_user(conn, "alice", "Globex")
    add_channel_for_user(conn, "bob", "Initech")

    names = [c["name"] for c in get_channels_for_user(conn, "alice")]

    assert sorted(names) == ["Acme", "Globex"]
    assert get_channels_for_user(conn, "carol") == []


def test_upstream_channel_id_is_set_only_once(conn) -> None:
    channel = add_channel_for_user(conn, "alice", "Acme")

    set_channel_upstream_id(conn, "alice", channel["id"], "UCX1")
    set_channel_upstream_id(conn, "alice", channel["id"], "UCOTHER")

    [stored] = get_channels_for_user(conn, "alice")
    assert stored["channel_id"] == "UCX1"


def test_upstream_channel_id_update_requires_owner(conn) -> None:
    channel = add_channel_for_user(conn, "alice", "Acme")

    set_channel_upstream_id(conn, "mallory", channel["id"], "UCX1")

    [stored] = get_channels_for_user(conn, "alice")
    assert stored["channel_id"] is None


def test_remove_channel_only_touches_the_owners_row(conn) -> None:
    channel = add_channel_for_user(conn, "alice", "Acme")

    remove_channel_for_user(conn, "bob", channel["id"])
    assert len(get_channels_for_user(conn, "alice")) == 1

    remove_channel_for_user(conn, "alice", channel["id"])
    assert get_channels_for_user(conn, "alice") == []


def test_insert_video_if_absent_creates_then_reuses(conn) -> None:
    row, created = insert_video_if_absent(conn, "alice", "UCX1", _video())
    again, created_again = insert_video_if_absent(conn, "alice", "UCX1", _video(title="Renamed"))

    assert created is True
    assert created_again is False
    assert again["id"] == row["id"]
    assert again["title"] == "Launch day"
    assert row["channel_id"] == "UCX1"
    assert count_rows(conn, "videos") == 1


def test_same_video_is_stored_once_per_user(conn) -> None:
    _, created_alice = insert_video_if_absent(conn, "alice", "UCX1", _video())
    _, created_bob = insert_video_if_absent(conn, "bob", "UCX1", _video())

    assert created_alice and created_bob
    assert count_rows(conn, "videos") == 2
    assert len(get_videos_for_user(conn, "alice")) == 1


def test_update_video_counters_leaves_other_fields(conn) -> None:
    row, _ = insert_video_if_absent(conn, "alice", "UCX1", _video())

    update_video_counters(conn, row["id"], {
        "view_count": 999, "like_count": 50, "dislike_count": 1, "comment_count": 7,
        "title": "ignored",
    })

    stored = get_video_by_upstream_id(conn, "alice", "abc")
    assert (stored["view_count"], stored["like_count"], stored["dislike_count"], stored["comment_count"]) == (
        999, 50, 1, 7,
    )
    assert stored["title"] == "Launch day"
    assert stored["published_at"] == row["published_at"]
    assert stored["updated_at"] >= row["updated_at"]


def test_insert_comment_always_appends(conn) -> None:
    row, _ = insert_video_if_absent(conn, "alice", "UCX1", _video())
    comment = {"comment_id": "c1", "text": "first!", "like_count": 4, "published_at": "2024-05-02T08:00:00Z"}

    insert_comment(conn, "alice", row["id"], comment)
    insert_comment(conn, "alice", row["id"], comment)

    stored = get_comments_for_video(conn, row["id"])
    assert len(stored) == 2
    assert stored[0]["comment_text"] == "first!"
    assert stored[0]["like_count"] == 4
    assert stored[0]["dislike_count"] == 0
    assert stored[0]["user_id"] == "alice"


def test_quota_usage_round_trips(conn) -> None:
    assert get_quota_usage(conn, "2024-05-01") is None

    save_quota_usage(conn, "2024-05-01", 300, {"search.list": 300})
    save_quota_usage(conn, "2024-05-01", 301, {"search.list": 300, "videos.list": 1})

    assert get_quota_usage(conn, "2024-05-01") == {
        "used": 301,
        "operations": {"search.list": 300, "videos.list": 1},
    }


@pytest.mark.parametrize("message, retryable, refresh", [
    ("503 Service Unavailable", True, False),
    ("Hrana: stream not found", True, True),
    ("UNIQUE constraint failed: videos.user_id", False, False),
])
def test_error_patterns(message, retryable, refresh) -> None:
    error = RuntimeError(message)
    assert is_retryable_error(error) is retryable
    assert needs_connection_refresh(error) is refresh


def test_postgres_sql_conversion() -> None:
    sql = "INSERT OR IGNORE INTO videos (id, video_id) VALUES (?, ?)"
    assert PostgresConnection.convert_sql(sql) == (
        "INSERT INTO videos (id, video_id) VALUES (%s, %s) ON CONFLICT DO NOTHING"
    )
    assert PostgresConnection.convert_sql("SELECT * FROM videos WHERE id = ?") == (
        "SELECT * FROM videos WHERE id = %s"
    )
