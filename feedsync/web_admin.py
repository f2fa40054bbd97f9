from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from feedsync.config_manager import ConfigManager
from feedsync.duplicates import DuplicateAuditor
from feedsync.errors import (
    FeedBusyError,
    FeedNotFoundError,
    FeedNotSyncableError,
    FeedSyncError,
    FetchError,
    ParseError,
    RateLimitedError,
)
from feedsync.event_store import EventStore
from feedsync.models import DEFAULT_FEED_COLOR, FEED_DIRECTIONS, SYNC_METHODS
from feedsync.scheduler import SyncScheduler
from feedsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

MASKED_SECRET = "***"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class FeedCreateRequest(BaseModel):
    user_id: int
    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1)
    credential: str = ""
    external_id: str = ""
    enabled: bool = True
    direction: str = "import"
    color: str = DEFAULT_FEED_COLOR
    sync_method: str = "ical"


class FeedUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    url: str | None = Field(default=None, min_length=1)
    credential: str | None = None
    external_id: str | None = None
    enabled: bool | None = None
    direction: str | None = None
    color: str | None = None
    sync_method: str | None = None


class AppContext:
    def __init__(self, config_path: str, db_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.store = EventStore(db_path or self.config_manager.database_path())
        self.sync_engine = SyncEngine(self.config_manager, self.store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)
        self.auditor = DuplicateAuditor(self.store)


def _validate_feed_fields(fields: dict[str, Any]) -> None:
    direction = fields.get("direction")
    if direction is not None and direction not in FEED_DIRECTIONS:
        raise HTTPException(status_code=400, detail=f"direction must be one of {sorted(FEED_DIRECTIONS)}")
    sync_method = fields.get("sync_method")
    if sync_method is not None and sync_method not in SYNC_METHODS:
        raise HTTPException(status_code=400, detail=f"sync_method must be one of {sorted(SYNC_METHODS)}")


def _sanitize_feed_update(fields: dict[str, Any]) -> dict[str, Any]:
    sanitized = {key: value for key, value in fields.items() if value is not None}
    credential = sanitized.get("credential")
    if credential is not None and str(credential).strip() in {"", MASKED_SECRET}:
        sanitized.pop("credential")
    return sanitized


def _sync_error_to_http(exc: FeedSyncError) -> HTTPException:
    if isinstance(exc, FeedNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (FeedNotSyncableError, FeedBusyError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, RateLimitedError):
        return HTTPException(status_code=429, detail="Feed provider is rate limiting requests, try later")
    if isinstance(exc, ParseError):
        return HTTPException(status_code=422, detail=f"Feed could not be parsed: {exc}")
    if isinstance(exc, FetchError):
        return HTTPException(status_code=502, detail=f"Feed could not be fetched: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


def create_app() -> FastAPI:
    config_path = os.getenv("FEEDSYNC_CONFIG_PATH", "config.yaml")
    db_path = os.getenv("FEEDSYNC_DB_PATH")
    context = AppContext(config_path=config_path, db_path=db_path)

    app = FastAPI(title="Feedsync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        updated = app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": updated.to_dict(),
        }

    @app.get("/api/feeds")
    def list_feeds(user_id: int | None = None) -> dict[str, Any]:
        store = app.state.context.store
        feeds = store.list_feeds() if user_id is None else store.get_feeds_for_user(user_id)
        return {"feeds": [feed.to_dict() for feed in feeds]}

    @app.post("/api/feeds", status_code=201)
    def create_feed(request: FeedCreateRequest) -> dict[str, Any]:
        fields = request.model_dump()
        _validate_feed_fields(fields)
        feed = app.state.context.store.create_feed(**fields)
        logger.info("Created feed %s (%s) for user %s", feed.id, feed.name, feed.user_id)
        return {"message": "feed created", "feed": feed.to_dict()}

    @app.put("/api/feeds/{feed_id}")
    def update_feed(feed_id: int, request: FeedUpdateRequest) -> dict[str, Any]:
        fields = _sanitize_feed_update(request.model_dump())
        _validate_feed_fields(fields)
        store = app.state.context.store
        if store.get_feed(feed_id) is None:
            raise HTTPException(status_code=404, detail=f"Feed not found: {feed_id}")
        feed = store.update_feed(feed_id, **fields)
        return {"message": "feed updated", "feed": feed.to_dict()}

    @app.delete("/api/feeds/{feed_id}")
    def delete_feed(feed_id: int) -> dict[str, Any]:
        if not app.state.context.store.delete_feed(feed_id):
            raise HTTPException(status_code=404, detail=f"Feed not found: {feed_id}")
        logger.info("Deleted feed %s", feed_id)
        return {"message": "feed deleted", "feed_id": feed_id}

    @app.post("/api/feeds/{feed_id}/sync")
    def sync_feed(feed_id: int) -> dict[str, Any]:
        try:
            result = app.state.context.sync_engine.sync_feed(feed_id, trigger="manual")
        except FeedSyncError as exc:
            raise _sync_error_to_http(exc) from exc
        return {"message": "sync completed", "result": result.to_dict()}

    @app.post("/api/users/{user_id}/sync")
    def sync_user_feeds(user_id: int) -> Any:
        batch = app.state.context.sync_engine.sync_user_feeds(user_id, trigger="manual")
        if batch.error_count:
            reasons = "; ".join(item.message for item in batch.results if item.status == "error")
            return JSONResponse(
                status_code=502,
                content={
                    "message": f"sync failed for {batch.error_count} of {len(batch.results)} feeds: {reasons}",
                    "result": batch.to_dict(),
                },
            )
        return {"message": "sync completed", "result": batch.to_dict()}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, feed_id: int | None = None) -> dict[str, Any]:
        scheduler = app.state.context.scheduler
        last_result = scheduler.last_result
        return {
            "scheduler": {
                "running": scheduler.is_running,
                "batch_in_progress": scheduler.batch_in_progress,
                "last_batch": last_result.to_dict() if last_result else None,
            },
            "runs": app.state.context.store.recent_sync_runs(limit=limit, feed_id=feed_id),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.post("/api/admin/cleanup-duplicates")
    def cleanup_duplicates() -> dict[str, Any]:
        summary = app.state.context.auditor.remove_exact_duplicates()
        return {"message": "duplicate cleanup completed", **summary}

    @app.get("/api/admin/similar-events")
    def similar_events(threshold: float = 0.8) -> dict[str, Any]:
        if not 0.0 < threshold <= 1.0:
            raise HTTPException(status_code=400, detail="threshold must be in (0, 1]")
        groups = app.state.context.auditor.find_similar_events(threshold=threshold)
        return {"threshold": threshold, "groups": groups}

    return app


app = create_app()
