"""
YouTube API fetcher module.
Handles all interactions with the YouTube Data API v3.

Features:
- Retry with exponential backoff for transient errors
- Rate limiting between requests
- Quota accounting before every call
- Upstream failures sorted into NotFound / Transport / QuotaExceeded kinds

Paginated endpoints are exposed twice: as generators yielding one page at a
time (restartable from any continuation token), and as collecting helpers
that return a FetchResult carrying whatever was fetched plus the error that
stopped them, if any. The collecting helpers never raise upstream errors.
"""

import json
import ssl
import time
from collections import namedtuple
from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Iterator, Optional

import httplib2
import requests
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config import get_config
from logger import get_logger
from quota import QuotaExhaustedError, QuotaTracker

log = get_logger("youtube_api")

# videos.list accepts at most 50 ids per call
MAX_VIDEO_BATCH = 50

THUMBNAIL_PRIORITY = ("maxres", "standard", "high", "medium", "default")


# ============================================================================
# ERROR KINDS
# ============================================================================

class UpstreamError(Exception):
    """Base class for failures talking to the Data API."""
    pass


class NotFoundError(UpstreamError):
    """The requested channel/video/comment thread does not exist or is unavailable."""
    pass


class TransportError(UpstreamError):
    """Network failure or an API error that is not one of the other kinds."""
    pass


class QuotaExceededError(UpstreamError):
    """The daily quota is spent (upstream) or would cross the local abort threshold."""
    pass


QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded", "rateLimitExceeded"}
NOT_FOUND_REASONS = {"commentsDisabled", "videoNotFound", "channelNotFound"}

NETWORK_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    httplib2.HttpLib2Error,
    ConnectionResetError,
    TimeoutError,
    ssl.SSLError,
    OSError,
)


def http_error_reason(error: HttpError) -> Optional[str]:
    """Extract the first error reason (e.g. 'quotaExceeded') from an API error body."""
    content = getattr(error, "content", None)
    if not content:
        return None
    try:
        if isinstance(content, bytes):
            content = content.decode("utf-8")
        data = json.loads(content)
        return data["error"]["errors"][0]["reason"]
    except (ValueError, KeyError, IndexError, TypeError):
        return None


def classify_error(error: Exception) -> UpstreamError:
    """Map a raw client/network exception onto an UpstreamError kind."""
    if isinstance(error, UpstreamError):
        return error

    if isinstance(error, HttpError):
        status = getattr(error.resp, "status", None)
        reason = http_error_reason(error)
        message = f"HTTP {status}{f' ({reason})' if reason else ''}: {error}"
        if reason in QUOTA_REASONS:
            return QuotaExceededError(message)
        if status == 404 or reason in NOT_FOUND_REASONS:
            return NotFoundError(message)
        return TransportError(message)

    if isinstance(error, QuotaExhaustedError):
        return QuotaExceededError(str(error))

    return TransportError(f"{type(error).__name__}: {error}")


# ============================================================================
# RETRY LOGIC WITH EXPONENTIAL BACKOFF
# ============================================================================

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def retry_with_backoff(
    max_retries: int = None,
    base_delay: float = None,
    max_delay: float = None,
    exponential_base: float = 2.0,
):
    """
    Decorator for retrying functions with exponential backoff.

    Retries on:
    - HTTP 429 (rate limit)
    - HTTP 5xx (server errors)
    - Connection errors

    Unset limits are read from config on every call.
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            cfg = get_config()
            _max_retries = max_retries if max_retries is not None else cfg.api_max_retries
            _base_delay = base_delay if base_delay is not None else cfg.api_base_delay
            _max_delay = max_delay if max_delay is not None else cfg.api_max_delay

            last_exception = None

            for attempt in range(_max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except HttpError as e:
                    status_code = e.resp.status if hasattr(e, 'resp') else None
                    if status_code not in RETRYABLE_STATUS_CODES:
                        log.debug(f"Non-retryable HTTP error {status_code}: {e}")
                        raise

                    last_exception = e
                    if attempt < _max_retries:
                        delay = min(_base_delay * (exponential_base ** attempt), _max_delay)
                        retry_after = e.resp.get('retry-after') if hasattr(e, 'resp') else None
                        if retry_after:
                            try:
                                delay = max(delay, float(retry_after))
                            except ValueError:
                                pass
                        log.warning(f"HTTP {status_code} error, retrying in {delay:.1f}s "
                                    f"(attempt {attempt + 1}/{_max_retries + 1}): {e}")
                        time.sleep(delay)

                except NETWORK_ERRORS as e:
                    last_exception = e
                    if attempt < _max_retries:
                        delay = min(_base_delay * (exponential_base ** attempt), _max_delay)
                        log.warning(f"Connection error, retrying in {delay:.1f}s "
                                    f"(attempt {attempt + 1}/{_max_retries + 1}): {type(e).__name__}: {e}")
                        time.sleep(delay)

            log.error(f"All {_max_retries + 1} attempts failed for {func.__name__}")
            raise last_exception

        return wrapper
    return decorator


# ============================================================================
# RESULTS AND NORMALISATION
# ============================================================================

Page = namedtuple("Page", ["items", "next_page_token"])


@dataclass
class FetchResult:
    """What one fetch operation got, and the error that cut it short (if any)."""

    items: list = field(default_factory=list)
    error: Optional[UpstreamError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def first(self):
        return self.items[0] if self.items else None


def best_thumbnail(thumbnails: Optional[dict]) -> Optional[str]:
    """Return the URL of the largest thumbnail present, maxres down to default."""
    thumbnails = thumbnails or {}
    for key in THUMBNAIL_PRIORITY:
        variant = thumbnails.get(key)
        if variant and variant.get("url"):
            return variant["url"]
    return None


def parse_count(value) -> int:
    """Statistics arrive as strings and may be missing entirely."""
    try:
        return int(value or "0")
    except (ValueError, TypeError):
        return 0


class YouTubeFetcher:
    """Handles fetching data from YouTube API with rate limiting, quota and retry logic."""

    def __init__(
        self,
        api_key: str = None,
        youtube=None,
        quota: Optional[QuotaTracker] = None,
        requests_per_second: float = None,
    ):
        """
        Args:
            api_key: Data API key (default: YOUTUBE_API_KEY from the environment)
            youtube: Pre-built API resource; skips building a client from the key
            quota: Tracker charged for every call (optional)
            requests_per_second: Client-side rate limit, 0 disables (default: from config)
        """
        cfg = get_config()
        if youtube is None:
            api_key = api_key or cfg.youtube_api_key
            if not api_key:
                raise ValueError("YOUTUBE_API_KEY not provided")
            youtube = build("youtube", "v3", developerKey=api_key)

        self.youtube = youtube
        self.quota = quota

        if requests_per_second is None:
            requests_per_second = cfg.api_requests_per_second
        self.min_request_interval = 1.0 / requests_per_second if requests_per_second else 0.0
        self.last_request_time = 0.0

        log.debug(f"YouTubeFetcher initialized, rate limit: {requests_per_second or 'off'} req/s")

    def _rate_limit(self):
        """Enforce rate limiting between API calls."""
        if not self.min_request_interval:
            return
        elapsed = time.time() - self.last_request_time
        if elapsed < self.min_request_interval:
            sleep_time = self.min_request_interval - elapsed
            log.debug(f"Rate limiting: sleeping {sleep_time:.3f}s")
            time.sleep(sleep_time)
        self.last_request_time = time.time()

    @retry_with_backoff()
    def _execute(self, build_request: Callable):
        self._rate_limit()
        return build_request().execute()

    def _call(self, operation: str, build_request: Callable) -> dict:
        """
        Run one API request under quota accounting and retry.

        Raises:
            UpstreamError: One of NotFoundError, TransportError, QuotaExceededError
        """
        if self.quota is not None:
            try:
                self.quota.check_or_abort(operation)
            except QuotaExhaustedError as e:
                raise QuotaExceededError(str(e)) from e

        try:
            return self._execute(build_request) or {}
        except (HttpError,) + NETWORK_ERRORS as e:
            raise classify_error(e) from e
        finally:
            if self.quota is not None:
                self.quota.use(operation)

    # ------------------------------------------------------------------
    # Channel Resolver
    # ------------------------------------------------------------------

    def resolve_channel_id(self, name: str) -> FetchResult:
        """
        Look a channel up by name with a single channel-scoped search.

        Returns a FetchResult holding the top hit's channel id, or an empty
        result with NotFoundError when nothing matched.
        """
        log.debug(f"Resolving channel name: {name}")
        try:
            response = self._call('search.list', lambda: self.youtube.search().list(
                part="snippet",
                type="channel",
                q=name,
                maxResults=1,
            ))
        except UpstreamError as e:
            log.warning(f"Channel search failed for '{name}': {e}")
            return FetchResult(error=e)

        items = response.get("items") or []
        channel_id = (items[0].get("id") or {}).get("channelId") if items else None
        if not channel_id:
            log.warning(f"No channel found for '{name}'")
            return FetchResult(error=NotFoundError(f"No channel matches '{name}'"))

        log.debug(f"Resolved '{name}' to channel ID: {channel_id}")
        return FetchResult(items=[channel_id])

    # ------------------------------------------------------------------
    # Video Enumerator
    # ------------------------------------------------------------------

    def iter_channel_video_pages(
        self,
        channel_id: str,
        page_token: str = None,
        max_pages: int = None,
    ) -> Iterator[Page]:
        """
        Yield pages of video ids for a channel, newest first.

        Each page is requested only when the consumer asks for it. Stops when
        the response carries no continuation token, or after max_pages.

        Raises:
            UpstreamError: When a page request fails
        """
        page_size = get_config().video_page_size
        pages = 0

        while True:
            token = page_token
            response = self._call('search.list', lambda: self.youtube.search().list(
                part="id",
                channelId=channel_id,
                type="video",
                order="date",
                maxResults=page_size,
                pageToken=token,
            ))
            pages += 1

            video_ids = [
                (item.get("id") or {}).get("videoId")
                for item in response.get("items") or []
            ]
            page_token = response.get("nextPageToken")
            yield Page([video_id for video_id in video_ids if video_id], page_token)

            if not page_token:
                return
            if max_pages and pages >= max_pages:
                log.warning(f"Video listing page limit reached ({pages} pages), stopping")
                return

    def list_channel_video_ids(self, channel_id: str, max_pages: int = None) -> FetchResult:
        """Collect every video id for a channel. A failed page ends the listing early."""
        if max_pages is None:
            max_pages = get_config().video_page_limit or None

        video_ids = []
        pages = 0
        try:
            for page in self.iter_channel_video_pages(channel_id, max_pages=max_pages):
                pages += 1
                video_ids.extend(page.items)
                if pages % 10 == 0:
                    log.debug(f"Listing progress: {len(video_ids)} videos, page {pages}")
        except UpstreamError as e:
            log.warning(f"Video listing for {channel_id} stopped after {pages} pages "
                        f"({len(video_ids)} ids kept): {e}")
            return FetchResult(video_ids, e)

        log.debug(f"Listed {len(video_ids)} videos for {channel_id} in {pages} pages")
        return FetchResult(video_ids)

    # ------------------------------------------------------------------
    # Video Detail Fetcher
    # ------------------------------------------------------------------

    def fetch_video_details(self, video_ids: list[str]) -> FetchResult:
        """
        Fetch snippet and statistics for one batch of videos.

        Only ids that were asked for come back; unknown or private videos
        are simply absent.
        """
        if not video_ids:
            raise ValueError("fetch_video_details needs at least one video id")
        if len(video_ids) > MAX_VIDEO_BATCH:
            raise ValueError(f"At most {MAX_VIDEO_BATCH} video ids per call, got {len(video_ids)}")

        try:
            response = self._call('videos.list', lambda: self.youtube.videos().list(
                part="snippet,statistics",
                id=",".join(video_ids),
            ))
        except UpstreamError as e:
            log.warning(f"Video details failed for {len(video_ids)} videos: {e}")
            return FetchResult(error=e)

        requested = set(video_ids)
        videos = [
            self._parse_video(item)
            for item in response.get("items") or []
            if item.get("id") in requested
        ]
        return FetchResult(videos)

    def fetch_videos(self, video_ids: list[str]) -> FetchResult:
        """Fetch details for any number of videos in batches.

        A failed batch is skipped; a quota error stops the remaining batches.
        """
        batch_size = min(get_config().video_batch_size, MAX_VIDEO_BATCH)
        videos = []
        error = None
        total_batches = (len(video_ids) + batch_size - 1) // batch_size

        for i in range(0, len(video_ids), batch_size):
            batch = video_ids[i:i + batch_size]
            log.debug(f"Fetching video batch {i // batch_size + 1}/{total_batches} ({len(batch)} videos)")

            result = self.fetch_video_details(batch)
            videos.extend(result.items)
            if result.error is not None:
                error = result.error
                if isinstance(error, QuotaExceededError):
                    break

        log.debug(f"Fetched details for {len(videos)}/{len(video_ids)} videos")
        return FetchResult(videos, error)

    def _parse_video(self, item: dict) -> dict:
        """Parse video API response into our schema."""
        snippet = item.get("snippet") or {}
        statistics = item.get("statistics") or {}

        return {
            "video_id": item["id"],
            "title": snippet.get("title"),
            "description": snippet.get("description"),
            "published_at": snippet.get("publishedAt"),
            "thumbnail_url": best_thumbnail(snippet.get("thumbnails")),
            "channel_id": snippet.get("channelId"),
            "channel_title": snippet.get("channelTitle"),
            "view_count": parse_count(statistics.get("viewCount")),
            "like_count": parse_count(statistics.get("likeCount")),
            "dislike_count": parse_count(statistics.get("dislikeCount")),
            "comment_count": parse_count(statistics.get("commentCount")),
        }

    # ------------------------------------------------------------------
    # Comment Fetcher
    # ------------------------------------------------------------------

    def iter_comment_pages(self, video_id: str, page_token: str = None) -> Iterator[Page]:
        """
        Yield pages of top-level comments for a video.

        Raises:
            UpstreamError: When a page request fails (NotFoundError if comments are disabled)
        """
        page_size = get_config().comment_page_size

        while True:
            token = page_token
            response = self._call('commentThreads.list', lambda: self.youtube.commentThreads().list(
                part="snippet",
                videoId=video_id,
                maxResults=page_size,
                pageToken=token,
            ))

            comments = [self._parse_comment(item) for item in response.get("items") or []]
            page_token = response.get("nextPageToken")
            yield Page(comments, page_token)

            if not page_token:
                return

    def fetch_comments(self, video_id: str, limit: int = None) -> FetchResult:
        """
        Fetch up to `limit` top-level comments (default: max_comments_per_video).

        Pagination stops as soon as the cap is reached, so no page beyond
        it is requested.
        """
        if limit is None:
            limit = get_config().max_comments_per_video

        comments = []
        if limit <= 0:
            return FetchResult(comments)

        try:
            for page in self.iter_comment_pages(video_id):
                comments.extend(page.items[:limit - len(comments)])
                if len(comments) >= limit:
                    break
        except NotFoundError as e:
            log.debug(f"No comments available for video {video_id}: {e}")
            return FetchResult(comments, e)
        except UpstreamError as e:
            log.warning(f"Comment fetch for {video_id} stopped at {len(comments)} comments: {e}")
            return FetchResult(comments, e)

        log.debug(f"Fetched {len(comments)} comments for video {video_id}")
        return FetchResult(comments)

    def _parse_comment(self, item: dict) -> dict:
        snippet = ((item.get("snippet") or {}).get("topLevelComment") or {}).get("snippet") or {}
        return {
            "comment_id": item.get("id"),
            "text": snippet.get("textDisplay"),
            "like_count": parse_count(snippet.get("likeCount")),
            "published_at": snippet.get("publishedAt"),
        }
