from __future__ import annotations


class FeedSyncError(Exception):
    """Base class for reconciliation failures reported per feed."""


class FetchError(FeedSyncError):
    def __init__(self, message: str, *, url: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RateLimitedError(FetchError):
    pass


class ServerError(FetchError):
    """5xx response other than a rate limit; retried like a transport failure."""


class ParseError(FeedSyncError):
    pass


class FeedNotFoundError(FeedSyncError):
    def __init__(self, feed_id: int) -> None:
        super().__init__(f"Feed not found: {feed_id}")
        self.feed_id = feed_id


class FeedNotSyncableError(FeedSyncError):
    pass


class FeedBusyError(FeedSyncError):
    def __init__(self, feed_id: int) -> None:
        super().__init__(f"Feed {feed_id} is already synchronizing")
        self.feed_id = feed_id
