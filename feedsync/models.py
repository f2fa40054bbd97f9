from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


DEFAULT_FEED_COLOR = "#8b5cf6"
DEFAULT_EVENT_SPAN = timedelta(hours=24)

FEED_DIRECTIONS = {"import", "export"}
SYNC_METHODS = {"ical", "api"}
SOURCE_TYPES = {"ical", "beds24", "csv_import"}


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass
class DatabaseConfig:
    path: str = "data/feedsync.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DatabaseConfig":
        data = data or {}
        return cls(path=str(data.get("path", "data/feedsync.db")).strip() or "data/feedsync.db")


@dataclass
class FetchConfig:
    timeout_seconds: int = 30
    max_attempts: int = 3
    rate_limit_backoff_seconds: float = 120.0
    rate_limit_backoff_cap_seconds: float = 300.0
    transient_backoff_seconds: float = 1.0
    user_agent: str = "feedsync/0.1 (+calendar reconciliation)"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FetchConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            max_attempts=max(1, int(data.get("max_attempts", 3))),
            rate_limit_backoff_seconds=max(0.0, float(data.get("rate_limit_backoff_seconds", 120.0))),
            rate_limit_backoff_cap_seconds=max(0.0, float(data.get("rate_limit_backoff_cap_seconds", 300.0))),
            transient_backoff_seconds=max(0.0, float(data.get("transient_backoff_seconds", 1.0))),
            user_agent=str(data.get("user_agent", "")).strip() or "feedsync/0.1 (+calendar reconciliation)",
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 60
    window_past_days: int = 30
    window_future_days: int = 360
    preservation_days: int = 3 * 365
    run_on_startup: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 60))),
            window_past_days=max(0, int(data.get("window_past_days", 30))),
            window_future_days=max(1, int(data.get("window_future_days", 360))),
            preservation_days=max(1, int(data.get("preservation_days", 3 * 365))),
            run_on_startup=bool(data.get("run_on_startup", True)),
        )


@dataclass
class Beds24Config:
    api_base_url: str = "https://beds24.com/api/v2"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Beds24Config":
        data = data or {}
        base_url = str(data.get("api_base_url", "")).strip().rstrip("/")
        return cls(api_base_url=base_url or "https://beds24.com/api/v2")


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    beds24: Beds24Config = field(default_factory=Beds24Config)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            database=DatabaseConfig.from_dict(data.get("database")),
            fetch=FetchConfig.from_dict(data.get("fetch")),
            sync=SyncConfig.from_dict(data.get("sync")),
            beds24=Beds24Config.from_dict(data.get("beds24")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Feed:
    id: int
    user_id: int
    name: str
    url: str
    credential: str = ""
    external_id: str = ""
    enabled: bool = True
    direction: str = "import"
    color: str = DEFAULT_FEED_COLOR
    last_synchronized: datetime | None = None
    sync_method: str = "ical"

    @property
    def is_reconcilable(self) -> bool:
        return self.enabled and self.direction == "import"

    def to_dict(self, mask_credential: bool = True) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_synchronized"] = serialize_datetime(self.last_synchronized)
        if mask_credential and self.credential:
            payload["credential"] = "***"
        return payload


@dataclass
class EventSource:
    type: str
    external_id: str = ""
    feed_id: int | None = None
    url: str = ""
    original_data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EventSource | None":
        if not data:
            return None
        feed_id = data.get("feed_id")
        return cls(
            type=str(data.get("type", "")).strip(),
            external_id=str(data.get("external_id", "") or ""),
            feed_id=int(feed_id) if feed_id is not None else None,
            url=str(data.get("url", "") or ""),
            original_data=dict(data.get("original_data") or {}),
        )


@dataclass
class LocalEvent:
    id: int
    user_id: int
    title: str
    start_time: datetime
    end_time: datetime | None = None
    description: str = ""
    color: str = ""
    all_day: bool = False
    source: EventSource | None = None
    csv_protected: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def effective_end(self) -> datetime:
        if self.end_time is not None:
            return self.end_time
        return self.start_time + DEFAULT_EVENT_SPAN

    @property
    def external_id(self) -> str:
        if self.source is None:
            return ""
        return self.source.external_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
            "color": self.color,
            "all_day": self.all_day,
            "source": self.source.to_dict() if self.source else None,
            "csv_protected": self.csv_protected,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class RemoteEvent:
    uid: str
    start: datetime
    end: datetime
    title: str
    description: str = ""
    original_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    protected: int = 0
    unchanged: int = 0
    skipped: int = 0

    @property
    def total_changes(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, int]:
        payload = asdict(self)
        payload["total_changes"] = self.total_changes
        return payload


@dataclass
class FeedSyncResult:
    feed_id: int
    feed_name: str
    trigger: str
    status: str
    message: str
    counts: SyncCounts = field(default_factory=SyncCounts)
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "feed_name": self.feed_name,
            "trigger": self.trigger,
            "status": self.status,
            "message": self.message,
            "counts": self.counts.to_dict(),
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class BatchSyncResult:
    trigger: str
    results: list[FeedSyncResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.results if item.status == "success")

    @property
    def error_count(self) -> int:
        return sum(1 for item in self.results if item.status == "error")

    @property
    def skipped_count(self) -> int:
        return sum(1 for item in self.results if item.status == "skipped")

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "success": self.success_count,
            "errors": self.error_count,
            "skipped": self.skipped_count,
            "results": [item.to_dict() for item in self.results],
        }


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime
    preservation_threshold: datetime

    def contains(self, value: datetime) -> bool:
        return self.start <= _ensure_tz(value) <= self.end

    def is_historical(self, value: datetime) -> bool:
        return _ensure_tz(value) < self.preservation_threshold


def sync_window(now: datetime, config: SyncConfig | None = None) -> SyncWindow:
    config = config or SyncConfig()
    now_utc = _ensure_tz(now)
    return SyncWindow(
        start=now_utc - timedelta(days=config.window_past_days),
        end=now_utc + timedelta(days=config.window_future_days),
        preservation_threshold=now_utc - timedelta(days=config.preservation_days),
    )
