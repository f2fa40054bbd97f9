from __future__ import annotations

import logging
import re
from datetime import datetime
from urllib.parse import parse_qs, urlparse

from feedsync.beds24_client import Beds24Client, status_color
from feedsync.fetcher import RemoteFetcher
from feedsync.ical_parser import parse_calendar
from feedsync.models import EventSource, Feed, RemoteEvent, SyncConfig, sync_window


logger = logging.getLogger(__name__)

ROOM_TOKEN_PATTERN = re.compile(r"Room (\d+)")


def _host_matches(url: str, domain: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return host == domain or host.endswith(f".{domain}")


def feed_room_id(feed: Feed) -> str:
    query = parse_qs(urlparse(feed.url).query)
    for key, values in query.items():
        if key.lower() == "roomid" and values and values[0].strip().isdigit():
            return values[0].strip()
    return ""


def title_room_id(title: str) -> str:
    match = ROOM_TOKEN_PATTERN.search(title or "")
    return match.group(1) if match else ""


class SourceAdapter:
    """Feed-type specific behaviour plugged into the reconciliation core."""

    source_type = "ical"
    all_day = False

    def fetch(self, feed: Feed, fetcher: RemoteFetcher, now: datetime, sync_config: SyncConfig) -> list[RemoteEvent]:
        raise NotImplementedError

    def rejects(self, feed: Feed, remote: RemoteEvent) -> str:
        """Return a reason when the remote event does not belong to this feed."""
        return ""

    def build_source(self, feed: Feed, remote: RemoteEvent) -> EventSource:
        return EventSource(
            type=self.source_type,
            external_id=remote.uid,
            feed_id=feed.id,
            url=feed.url,
            original_data=dict(remote.original_data),
        )

    def color_for(self, feed: Feed, remote: RemoteEvent) -> str:
        return feed.color


class ICalFeedAdapter(SourceAdapter):
    def fetch(self, feed: Feed, fetcher: RemoteFetcher, now: datetime, sync_config: SyncConfig) -> list[RemoteEvent]:
        payload = fetcher.fetch_text(feed.url)
        return parse_calendar(payload)


class Beds24ICalAdapter(ICalFeedAdapter):
    def rejects(self, feed: Feed, remote: RemoteEvent) -> str:
        expected = feed_room_id(feed)
        if not expected:
            return ""
        actual = title_room_id(remote.title)
        if actual and actual != expected:
            return f"room {actual} does not match feed room {expected}"
        return ""


class Beds24ApiAdapter(SourceAdapter):
    source_type = "beds24"
    all_day = True

    def __init__(self, base_url: str = "https://beds24.com/api/v2") -> None:
        self.base_url = base_url

    def fetch(self, feed: Feed, fetcher: RemoteFetcher, now: datetime, sync_config: SyncConfig) -> list[RemoteEvent]:
        window = sync_window(now, sync_config)
        client = Beds24Client(fetcher, base_url=feed.url or self.base_url)
        return client.fetch_remote_events(
            token=feed.credential,
            property_id=feed.external_id,
            arrival_from=window.start.date(),
            arrival_to=window.end.date(),
        )

    def color_for(self, feed: Feed, remote: RemoteEvent) -> str:
        return status_color(remote.original_data.get("status"))


def resolve_adapter(feed: Feed, beds24_base_url: str = "https://beds24.com/api/v2") -> SourceAdapter:
    if feed.sync_method == "api":
        return Beds24ApiAdapter(base_url=beds24_base_url)
    if _host_matches(feed.url, "beds24.com"):
        return Beds24ICalAdapter()
    return ICalFeedAdapter()
