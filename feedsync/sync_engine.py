from __future__ import annotations

import logging
import threading
import time
import traceback
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator

from feedsync.adapters import SourceAdapter, resolve_adapter
from feedsync.config_manager import ConfigManager
from feedsync.errors import (
    FeedBusyError,
    FeedNotFoundError,
    FeedNotSyncableError,
    FetchError,
    ParseError,
    RateLimitedError,
)
from feedsync.event_store import EventStore
from feedsync.fetcher import RemoteFetcher
from feedsync.models import (
    AppConfig,
    BatchSyncResult,
    Feed,
    FeedSyncResult,
    SyncCounts,
    utc_now,
)
from feedsync.reconciler import ReconcilePlan, plan_reconciliation


logger = logging.getLogger(__name__)


class FeedLeases:
    """Non-blocking per-feed locks shared by scheduled and on-demand runs."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[int] = set()

    def acquire(self, feed_id: int) -> bool:
        with self._guard:
            if feed_id in self._held:
                return False
            self._held.add(feed_id)
            return True

    def release(self, feed_id: int) -> None:
        with self._guard:
            self._held.discard(feed_id)

    def is_held(self, feed_id: int) -> bool:
        with self._guard:
            return feed_id in self._held

    @contextmanager
    def hold(self, feed_id: int) -> Iterator[None]:
        if not self.acquire(feed_id):
            raise FeedBusyError(feed_id)
        try:
            yield
        finally:
            self.release(feed_id)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _failure_message(feed: Feed, exc: Exception) -> str:
    if isinstance(exc, RateLimitedError):
        return f"Feed {feed.id} rate limited, try later"
    if isinstance(exc, ParseError):
        return f"Feed {feed.id} could not be parsed: {exc}"
    if isinstance(exc, FetchError):
        return f"Feed {feed.id} could not be fetched: {exc}"
    return f"{type(exc).__name__}: {exc}"


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        store: EventStore,
        fetcher: RemoteFetcher | None = None,
        clock: Callable[[], datetime] = utc_now,
        adapter_resolver: Callable[[Feed, str], SourceAdapter] = resolve_adapter,
    ) -> None:
        self.config_manager = config_manager
        self.store = store
        self.fetcher = fetcher
        self.clock = clock
        self.adapter_resolver = adapter_resolver
        self.leases = FeedLeases()

    def _fetcher_for(self, config: AppConfig) -> RemoteFetcher:
        if self.fetcher is not None:
            return self.fetcher
        return RemoteFetcher(config.fetch)

    def sync_feed(self, feed_id: int, trigger: str = "manual") -> FeedSyncResult:
        """Reconcile one feed on demand.

        Raises ``FeedNotFoundError``, ``FeedNotSyncableError`` or
        ``FeedBusyError`` before any work starts, and propagates fetch, parse
        and persistence errors after recording the failed run.
        """
        feed = self.store.get_feed(feed_id)
        if feed is None:
            raise FeedNotFoundError(feed_id)
        if not feed.is_reconcilable:
            raise FeedNotSyncableError(
                f"Feed {feed_id} is {'disabled' if not feed.enabled else 'an export feed'} and cannot be synchronized"
            )
        return self._run_feed(feed, trigger, self.config_manager.load())

    def sync_all_feeds(self, trigger: str = "scheduled") -> BatchSyncResult:
        config = self.config_manager.load()
        feeds = self.store.get_enabled_import_feeds()
        logger.info("Starting %s sync batch for %d feeds", trigger, len(feeds))
        batch = self._run_batch(feeds, trigger, config)
        logger.info(
            "Finished %s sync batch: %d succeeded, %d failed, %d skipped",
            trigger,
            batch.success_count,
            batch.error_count,
            batch.skipped_count,
        )
        return batch

    def sync_user_feeds(self, user_id: int, trigger: str = "manual") -> BatchSyncResult:
        config = self.config_manager.load()
        feeds = [feed for feed in self.store.get_feeds_for_user(user_id) if feed.is_reconcilable]
        logger.info("Starting %s sync for user %s (%d feeds)", trigger, user_id, len(feeds))
        return self._run_batch(feeds, trigger, config)

    def _run_batch(self, feeds: list[Feed], trigger: str, config: AppConfig) -> BatchSyncResult:
        batch = BatchSyncResult(trigger=trigger)
        for feed in feeds:
            try:
                batch.results.append(self._run_feed(feed, trigger, config))
            except FeedBusyError as exc:
                logger.info("Feed %s skipped: %s", feed.id, exc)
                batch.results.append(
                    FeedSyncResult(
                        feed_id=feed.id,
                        feed_name=feed.name,
                        trigger=trigger,
                        status="skipped",
                        message=str(exc),
                    )
                )
            except Exception as exc:
                batch.results.append(
                    FeedSyncResult(
                        feed_id=feed.id,
                        feed_name=feed.name,
                        trigger=trigger,
                        status="error",
                        message=_failure_message(feed, exc),
                    )
                )
        return batch

    def _run_feed(self, feed: Feed, trigger: str, config: AppConfig) -> FeedSyncResult:
        with self.leases.hold(feed.id):
            started = time.monotonic()
            try:
                return self._reconcile(feed, trigger, config, started)
            except Exception as exc:
                self._record_failure(feed, trigger, exc, _elapsed_ms(started))
                raise

    def _reconcile(self, feed: Feed, trigger: str, config: AppConfig, started: float) -> FeedSyncResult:
        now = self.clock()
        adapter = self.adapter_resolver(feed, config.beds24.api_base_url)

        # Remote data is fully fetched and parsed before local state is read.
        remote_events = adapter.fetch(feed, self._fetcher_for(config), now, config.sync)
        local_events = self.store.get_events_for_feed(feed.user_id, feed.id)

        plan = plan_reconciliation(
            feed,
            local_events,
            remote_events,
            now=now,
            adapter=adapter,
            sync_config=config.sync,
        )
        self.store.apply_plan(plan, synced_at=now)

        counts = plan.counts
        duration_ms = _elapsed_ms(started)
        message = (
            f"Synced {len(remote_events)} remote events: {counts.created} created, "
            f"{counts.updated} updated, {counts.deleted} deleted, {counts.protected} protected."
        )
        # The plan is committed at this point; bookkeeping failures must not report it as failed.
        try:
            run_id = self.store.record_sync_run(
                feed_id=feed.id,
                trigger=trigger,
                status="success",
                message=message,
                duration_ms=duration_ms,
                created=counts.created,
                updated=counts.updated,
                deleted=counts.deleted,
                protected=counts.protected,
            )
            self._record_plan_audit(feed, plan, run_id)
        except Exception:
            logger.exception("Feed %s synced but its run could not be recorded", feed.id)
        logger.info("Feed %s (%s): %s", feed.id, feed.name, message)
        return FeedSyncResult(
            feed_id=feed.id,
            feed_name=feed.name,
            trigger=trigger,
            status="success",
            message=message,
            counts=counts,
            duration_ms=duration_ms,
            run_at=now,
        )

    def _record_plan_audit(self, feed: Feed, plan: ReconcilePlan, run_id: int) -> None:
        for draft in plan.creates:
            self.store.record_audit_event(
                run_id=run_id,
                feed_id=feed.id,
                uid=draft.source.external_id,
                action="create",
                details={"title": draft.title, "start_time": draft.start_time.isoformat()},
            )
        for update in plan.updates:
            self.store.record_audit_event(
                run_id=run_id,
                feed_id=feed.id,
                uid=update.external_id,
                action="update",
                details={"event_id": update.event_id, "changed_fields": update.changed_fields},
            )
        for deletion in plan.deletes:
            self.store.record_audit_event(
                run_id=run_id,
                feed_id=feed.id,
                uid=deletion.external_id,
                action="delete",
                details={"event_id": deletion.event_id, "title": deletion.title, "reason": deletion.reason},
            )
        for event_id in plan.protected_ids:
            self.store.record_audit_event(
                run_id=run_id,
                feed_id=feed.id,
                uid=str(event_id),
                action="protected",
                details={"event_id": event_id},
            )

    def _record_failure(self, feed: Feed, trigger: str, exc: Exception, duration_ms: int) -> None:
        error_message = _failure_message(feed, exc)
        if isinstance(exc, RateLimitedError):
            logger.warning("%s (%s)", error_message, exc)
        else:
            logger.exception("Feed %s (%s) sync failed", feed.id, feed.name)
        try:
            run_id = self.store.record_sync_run(
                feed_id=feed.id,
                trigger=trigger,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
            )
            self.store.record_audit_event(
                run_id=run_id,
                feed_id=feed.id,
                uid="sync",
                action="sync_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
        except Exception:
            logger.exception("Could not record failed sync run for feed %s", feed.id)
