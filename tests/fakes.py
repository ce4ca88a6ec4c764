"""In-memory stand-in for the Data API v3 resource used by YouTubeFetcher."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import httplib2
from googleapiclient.errors import HttpError


def http_error(status: int, reason: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> HttpError:
    resp = httplib2.Response({"status": status, **(headers or {})})
    body = {"error": {"code": status, "message": reason or "error"}}
    if reason:
        body["error"]["errors"] = [{"reason": reason, "message": reason}]
    return HttpError(resp, json.dumps(body).encode("utf-8"))


def video_item(
    video_id: str,
    title: Optional[str] = None,
    statistics: Optional[Dict[str, str]] = None,
    thumbnails: Optional[Dict[str, Any]] = None,
    channel_title: str = "Acme",
) -> Dict[str, Any]:
    item = {
        "id": video_id,
        "snippet": {
            "title": title or f"Video {video_id}",
            "description": f"About {video_id}",
            "publishedAt": "2024-05-01T12:00:00Z",
            "channelTitle": channel_title,
            "thumbnails": thumbnails
            or {"default": {"url": f"https://i.ytimg.com/vi/{video_id}/default.jpg"}},
        },
    }
    if statistics is not None:
        item["statistics"] = statistics
    return item


def comment_item(comment_id: str, text: Optional[str] = None, likes: int = 0) -> Dict[str, Any]:
    return {
        "id": comment_id,
        "snippet": {
            "topLevelComment": {
                "snippet": {
                    "textDisplay": text or f"comment {comment_id}",
                    "likeCount": likes,
                    "publishedAt": "2024-05-02T08:00:00Z",
                }
            }
        },
    }


class _Request:
    def __init__(self, outcome: Any):
        self._outcome = outcome

    def execute(self) -> Any:
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


class _Collection:
    def __init__(self, api: "FakeYouTube", name: str):
        self._api = api
        self._name = name

    def list(self, **kwargs: Any) -> _Request:
        self._api.calls.append((self._name, kwargs))
        return _Request(self._api.respond(self._name, kwargs))


class FakeYouTube:
    """
    Scripted catalog answering search/videos/commentThreads list calls.

    `failures` maps a request key to an exception raised instead of the
    response. Keys: ("channel_search", name), ("video_search", page_token),
    ("videos", comma_joined_ids), ("commentThreads", video_id, page_token).
    The first page's token is None. `transient_failures` uses the same keys
    but holds a queue of exceptions, each raised once before the request
    starts succeeding.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.channels: Dict[str, str] = {}
        self.uploads: Dict[str, List[str]] = {}
        self.video_catalog: Dict[str, Dict[str, Any]] = {}
        self.comments: Dict[str, List[Dict[str, Any]]] = {}
        self.failures: Dict[tuple, Exception] = {}
        self.transient_failures: Dict[tuple, List[Exception]] = {}

    # resource accessors, named like the real client
    def search(self) -> _Collection:
        return _Collection(self, "search")

    def videos(self) -> _Collection:
        return _Collection(self, "videos")

    def commentThreads(self) -> _Collection:
        return _Collection(self, "commentThreads")

    def calls_to(self, name: str, **match: Any) -> List[Dict[str, Any]]:
        return [
            kw for n, kw in self.calls
            if n == name and all(kw.get(k) == v for k, v in match.items())
        ]

    # catalog building
    def add_channel(self, name: str, channel_id: str, video_ids: List[str]) -> None:
        self.channels[name] = channel_id
        self.uploads[channel_id] = list(video_ids)
        for video_id in video_ids:
            self.video_catalog.setdefault(video_id, video_item(video_id, statistics={"viewCount": "1"}))

    def add_comments(self, video_id: str, count: int) -> None:
        self.comments[video_id] = [comment_item(f"{video_id}-c{i}") for i in range(count)]

    # dispatch
    def respond(self, name: str, kwargs: Dict[str, Any]) -> Any:
        if name == "search" and kwargs.get("type") == "channel":
            return self._fail_or(("channel_search", kwargs.get("q")), lambda: self._channel_search(kwargs))
        if name == "search":
            return self._fail_or(("video_search", kwargs.get("pageToken")), lambda: self._video_search(kwargs))
        if name == "videos":
            return self._fail_or(("videos", kwargs.get("id")), lambda: self._video_details(kwargs))
        key = ("commentThreads", kwargs["videoId"], kwargs.get("pageToken"))
        return self._fail_or(key, lambda: self._comment_threads(kwargs))

    def _fail_or(self, key: tuple, build: Any) -> Any:
        if key in self.failures:
            return self.failures[key]
        if self.transient_failures.get(key):
            return self.transient_failures[key].pop(0)
        return build()

    def _channel_search(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        channel_id = self.channels.get(kwargs["q"])
        if channel_id is None:
            return {"items": []}
        return {"items": [{"id": {"kind": "youtube#channel", "channelId": channel_id}}]}

    @staticmethod
    def _paginate(items: List[Any], kwargs: Dict[str, Any]) -> tuple:
        start = int((kwargs.get("pageToken") or "page-0").split("-")[1])
        size = kwargs["maxResults"]
        page = items[start:start + size]
        end = start + size
        return page, (f"page-{end}" if end < len(items) else None)

    def _video_search(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        ids = self.uploads.get(kwargs["channelId"], [])
        page, token = self._paginate(ids, kwargs)
        response: Dict[str, Any] = {
            "items": [{"id": {"kind": "youtube#video", "videoId": video_id}} for video_id in page]
        }
        if token:
            response["nextPageToken"] = token
        return response

    def _video_details(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        ids = kwargs["id"].split(",")
        return {"items": [self.video_catalog[i] for i in ids if i in self.video_catalog]}

    def _comment_threads(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        items = self.comments.get(kwargs["videoId"], [])
        page, token = self._paginate(items, kwargs)
        response: Dict[str, Any] = {"items": page}
        if token:
            response["nextPageToken"] = token
        return response


def count_rows(connection: Any, table: str) -> int:
    return connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
