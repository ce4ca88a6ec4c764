#!/usr/bin/env python3
"""
Channel Sync - ingest YouTube channel videos and comments per user.

For every channel a user has registered:
- resolve the channel name to an upstream channel id (once, then stored)
- list every video id the channel has published, newest first
- fetch video details in batches of 50
- store each video once per user, reusing the stored row when it exists
- fetch up to 100 comments per video and store them under the video

A separate statistics pass re-reads the counters of already stored videos.

Usage:
    python ingest.py --user alice --add-channel "Acme"
    python ingest.py --user alice
    python ingest.py --user alice --refresh-stats
    python ingest.py --user alice --list-videos
"""

import argparse
import sys
import time
from typing import Optional

from config import get_config
from database import (
    add_channel_for_user,
    get_channels_for_user,
    get_connection,
    get_videos_for_user,
    init_database,
    insert_comment,
    insert_video_if_absent,
    remove_channel_for_user,
    set_channel_upstream_id,
    update_video_counters,
)
from logger import (
    LogContext,
    clear_channel_context,
    get_logger,
    set_channel_context,
    setup_logging,
)
from quota import QuotaTracker
from youtube_api import FetchResult, QuotaExceededError, YouTubeFetcher

log = get_logger("ingest")


class PreconditionError(Exception):
    """A run cannot start; nothing has been written."""
    pass


class NotAuthenticatedError(PreconditionError):
    pass


class NoChannelsError(PreconditionError):
    pass


def require_user(user_id: Optional[str]) -> str:
    if not user_id or not str(user_id).strip():
        raise NotAuthenticatedError("User not authenticated")
    return str(user_id).strip()


# ============================================================================
# CHANNEL REGISTRY
# ============================================================================

def add_channel(conn, user_id: str, name: str) -> dict:
    """Register a channel name for the user."""
    user_id = require_user(user_id)
    name = (name or "").strip()
    if not name:
        raise ValueError("Channel name must not be empty")
    channel = add_channel_for_user(conn, user_id, name)
    log.info(f"Added channel '{name}' ({channel['id']})")
    return channel


def remove_channel(conn, user_id: str, channel_row_id: str) -> None:
    user_id = require_user(user_id)
    remove_channel_for_user(conn, user_id, channel_row_id)
    log.info(f"Removed channel {channel_row_id}")


def list_channels(conn, user_id: str) -> list[dict]:
    return get_channels_for_user(conn, require_user(user_id))


def list_videos(conn, user_id: str) -> list[dict]:
    return get_videos_for_user(conn, require_user(user_id))


# ============================================================================
# INGESTION
# ============================================================================

def resolve_channel(fetcher: YouTubeFetcher, conn, user_id: str, channel: dict) -> FetchResult:
    """
    Return the channel's upstream id, searching only if none is stored yet.

    A successful lookup is written to the channel row before anything else
    happens for the channel.
    """
    if channel.get("channel_id"):
        return FetchResult([channel["channel_id"]])

    result = fetcher.resolve_channel_id(channel["name"])
    if result.ok:
        set_channel_upstream_id(conn, user_id, channel["id"], result.first)
        channel["channel_id"] = result.first
        log.info(f"Resolved '{channel['name']}' to {result.first}")
    return result


def _ingest_channel(
    fetcher: YouTubeFetcher,
    conn,
    user_id: str,
    channel: dict,
    max_comments: Optional[int],
    new_videos: list[dict],
    stats: dict,
) -> None:
    """
    Run one channel through resolve, list, detail and store.

    Newly created video rows are appended to new_videos as soon as they
    exist, so they are reported even if a later step fails.

    Raises:
        QuotaExceededError: When any stage ran out of quota
    """
    resolved = resolve_channel(fetcher, conn, user_id, channel)
    if isinstance(resolved.error, QuotaExceededError):
        raise resolved.error
    if not resolved.ok:
        log.error(f"Could not find channel ID for '{channel['name']}', skipping: {resolved.error}")
        stats["channels_skipped"] += 1
        return
    channel_id = resolved.first

    with LogContext(log, f"Listing videos for {channel_id}"):
        listing = fetcher.list_channel_video_ids(channel_id)
    if isinstance(listing.error, QuotaExceededError):
        raise listing.error
    if listing.error is not None:
        log.warning(f"Continuing with {len(listing.items)} listed videos after: {listing.error}")
    stats["videos_listed"] += len(listing.items)

    if not listing.items:
        log.info("No videos listed")
        stats["channels"] += 1
        return

    with LogContext(log, f"Fetching details for {len(listing.items)} videos"):
        details = fetcher.fetch_videos(listing.items)
    if isinstance(details.error, QuotaExceededError):
        raise details.error

    created_here = 0
    for video in details.items:
        row, created = insert_video_if_absent(conn, user_id, channel_id, video)
        if created:
            new_videos.append(row)
            created_here += 1

        # Comments are fetched and appended on every run, known video or not
        comments = fetcher.fetch_comments(video["video_id"], limit=max_comments)
        for comment in comments.items:
            insert_comment(conn, user_id, row["id"], comment)
        stats["comments"] += len(comments.items)

        if isinstance(comments.error, QuotaExceededError):
            raise comments.error

    log.info(f"{len(details.items)} videos processed, {created_here} new")
    stats["channels"] += 1


def ingest_all(
    fetcher: YouTubeFetcher,
    conn,
    user_id: Optional[str],
    max_comments: Optional[int] = None,
) -> list[dict]:
    """
    Ingest every registered channel of a user.

    Channels and videos are handled strictly one after another. A channel
    that cannot be resolved is skipped; a failed page or batch shortens the
    data for that step only; running out of quota ends the run early.
    Store errors propagate unchanged, leaving earlier writes in place.

    Args:
        fetcher: Upstream client
        conn: Database connection
        user_id: Authenticated user identity
        max_comments: Comments kept per video (default: from config, 100)

    Returns:
        Video rows created by this call. Videos that were already stored
        are not included even though their comments were fetched again.

    Raises:
        NotAuthenticatedError: No user identity
        NoChannelsError: The user has no registered channels
    """
    user_id = require_user(user_id)

    channels = get_channels_for_user(conn, user_id)
    if not channels:
        raise NoChannelsError("No channels found for the user")

    log.info(f"Ingesting {len(channels)} channel(s) for user {user_id}")
    start_time = time.time()
    new_videos = []
    stats = {
        "channels": 0,
        "channels_skipped": 0,
        "videos_listed": 0,
        "comments": 0,
    }

    for channel in channels:
        set_channel_context(channel["name"])
        try:
            log.info(f"Processing: {channel['name']}")
            _ingest_channel(fetcher, conn, user_id, channel, max_comments, new_videos, stats)
        except QuotaExceededError as e:
            log.error(f"Quota exhausted, stopping run: {e}")
            break
        finally:
            clear_channel_context()

    elapsed = time.time() - start_time
    log.info("=" * 60)
    log.info("INGEST SUMMARY")
    log.info("=" * 60)
    log.info(f"Runtime: {elapsed:.1f}s")
    log.info(f"Channels processed: {stats['channels']}")
    log.info(f"Channels skipped: {stats['channels_skipped']}")
    log.info(f"Videos listed: {stats['videos_listed']} ({len(new_videos)} new)")
    log.info(f"Comments stored: {stats['comments']}")

    return new_videos


def refresh_statistics(fetcher: YouTubeFetcher, conn, user_id: Optional[str]) -> int:
    """
    Re-read view/like/dislike/comment counts for every stored video of a user.

    One detail lookup per video. Videos that no longer resolve upstream are
    left untouched; nothing but the counters and updated_at is rewritten.

    Returns:
        Number of video rows updated
    """
    user_id = require_user(user_id)
    videos = get_videos_for_user(conn, user_id)
    log.info(f"Refreshing statistics for {len(videos)} videos")

    updated = 0
    for video in videos:
        result = fetcher.fetch_video_details([video["video_id"]])
        if isinstance(result.error, QuotaExceededError):
            log.error(f"Quota exhausted after {updated} updates, stopping: {result.error}")
            break

        fresh = result.first
        if fresh is None:
            log.debug(f"Skipping {video['video_id']}: {result.error or 'not returned upstream'}")
            continue

        update_video_counters(conn, video["id"], fresh)
        updated += 1

    log.info(f"Statistics refreshed for {updated}/{len(videos)} videos")
    return updated


# ============================================================================
# COMMAND LINE
# ============================================================================

def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Ingest YouTube channel videos and comments per user",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--user", "-u",
        help="User identity to run as (default: CHANNEL_SYNC_USER_ID / settings user_id)"
    )
    parser.add_argument(
        "--config",
        help="Path to settings YAML file"
    )

    action_group = parser.add_mutually_exclusive_group()
    action_group.add_argument(
        "--add-channel",
        metavar="NAME",
        help="Register a channel name for the user"
    )
    action_group.add_argument(
        "--remove-channel",
        metavar="ID",
        help="Remove a registered channel by its row id"
    )
    action_group.add_argument(
        "--list-channels",
        action="store_true",
        help="List the user's registered channels"
    )
    action_group.add_argument(
        "--list-videos",
        action="store_true",
        help="List the user's stored videos"
    )
    action_group.add_argument(
        "--refresh-stats",
        action="store_true",
        help="Refresh counters of stored videos instead of ingesting"
    )

    parser.add_argument(
        "--max-comments",
        type=int,
        default=None,
        help="Maximum comments per video (default: from config, 100)"
    )
    parser.add_argument(
        "--quota-limit",
        type=int,
        default=None,
        help="Daily API quota limit (default: from config)"
    )
    parser.add_argument(
        "--reset-quota",
        action="store_true",
        help="Reset today's quota counter to 0 (use if quota tracking was corrupted)"
    )

    args = parser.parse_args(argv)

    cfg = get_config(args.config, reload=args.config is not None)
    setup_logging()
    log.debug(f"Arguments: {vars(args)}")

    user_id = args.user or cfg.user_id

    log.info("Connecting to database...")
    conn = get_connection()
    init_database(conn)

    try:
        if args.add_channel:
            add_channel(conn, user_id, args.add_channel)
            return 0

        if args.remove_channel:
            remove_channel(conn, user_id, args.remove_channel)
            return 0

        if args.list_channels:
            for channel in list_channels(conn, user_id):
                log.info(f"{channel['id']}  {channel['name']}  {channel['channel_id'] or '(unresolved)'}")
            return 0

        if args.list_videos:
            for video in list_videos(conn, user_id):
                log.info(f"{video['video_id']}  {video['published_at']}  views={video['view_count']}  "
                         f"{video['title']}")
            return 0

        quota = QuotaTracker(conn, daily_limit=args.quota_limit)
        if args.reset_quota:
            quota.reset()

        if quota.used >= quota.daily_limit:
            log.error(f"Quota already exhausted: {quota.used}/{quota.daily_limit}")
            log.error("Use --reset-quota if you believe this is incorrect, or wait until quota resets")
            return 1

        fetcher = YouTubeFetcher(quota=quota)
        try:
            if args.refresh_stats:
                refresh_statistics(fetcher, conn, user_id)
            else:
                new_videos = ingest_all(fetcher, conn, user_id, max_comments=args.max_comments)
                for video in new_videos:
                    log.info(f"  new: {video['video_id']}  {video['title']}")
        finally:
            quota.flush()
            quota.log_summary()

    except (PreconditionError, ValueError) as e:
        log.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
