from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from feedsync.adapters import ICalFeedAdapter, SourceAdapter
from feedsync.models import (
    EventSource,
    Feed,
    LocalEvent,
    RemoteEvent,
    SyncConfig,
    SyncCounts,
    SyncWindow,
    sync_window,
)
from feedsync.sanitize import sanitize_description


logger = logging.getLogger(__name__)


@dataclass
class EventDraft:
    user_id: int
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    color: str
    all_day: bool
    source: EventSource


@dataclass
class EventUpdate:
    event_id: int
    external_id: str
    changes: dict[str, Any]
    changed_fields: list[str]


@dataclass
class EventDeletion:
    event_id: int
    external_id: str
    title: str
    reason: str


@dataclass
class ReconcilePlan:
    feed_id: int
    window: SyncWindow
    creates: list[EventDraft] = field(default_factory=list)
    updates: list[EventUpdate] = field(default_factory=list)
    deletes: list[EventDeletion] = field(default_factory=list)
    protected_ids: list[int] = field(default_factory=list)
    counts: SyncCounts = field(default_factory=SyncCounts)

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)


def _changed_fields(existing: LocalEvent, candidate: dict[str, Any]) -> list[str]:
    changed: list[str] = []
    if (existing.title or "") != candidate["title"]:
        changed.append("title")
    if (existing.description or "") != candidate["description"]:
        changed.append("description")
    if existing.start_time != candidate["start_time"]:
        changed.append("start_time")
    if existing.effective_end != candidate["end_time"]:
        changed.append("end_time")
    return changed


def _is_deletable(event: LocalEvent, window: SyncWindow) -> bool:
    return (
        not event.csv_protected
        and not window.is_historical(event.start_time)
        and window.contains(event.start_time)
    )


def plan_reconciliation(
    feed: Feed,
    local_events: Iterable[LocalEvent],
    remote_events: Iterable[RemoteEvent],
    *,
    now: datetime,
    adapter: SourceAdapter | None = None,
    sync_config: SyncConfig | None = None,
    sanitize: Callable[[str | None], str] = sanitize_description,
) -> ReconcilePlan:
    """Compute the create/update/delete plan that brings a feed's local events
    in line with its current remote pull.

    Remote and local events are matched only by the remote UID stored in
    ``source.external_id``. Protected events, events older than the
    preservation threshold and events outside the sync window are never
    touched. Nothing is written here; the caller applies the plan.
    """
    adapter = adapter or ICalFeedAdapter()
    window = sync_window(now, sync_config)
    plan = ReconcilePlan(feed_id=feed.id, window=window)
    counts = plan.counts

    local_list = list(local_events)
    local_by_uid: dict[str, LocalEvent] = {}
    events_to_keep: set[int] = set()
    current_feed_uids: set[str] = set()
    planned_delete_ids: set[int] = set()

    for event in local_list:
        if event.external_id:
            local_by_uid[event.external_id] = event
        if window.is_historical(event.start_time):
            events_to_keep.add(event.id)

    for remote in remote_events:
        current_feed_uids.add(remote.uid)

        if not window.contains(remote.start):
            counts.skipped += 1
            continue

        existing = local_by_uid.get(remote.uid)

        rejection = adapter.rejects(feed, remote)
        if rejection:
            counts.skipped += 1
            if existing is None:
                logger.info("Feed %s: skipping %s (%s)", feed.id, remote.uid, rejection)
                continue
            if existing.csv_protected:
                events_to_keep.add(existing.id)
                plan.protected_ids.append(existing.id)
                counts.protected += 1
                continue
            if existing.id in events_to_keep or not _is_deletable(existing, window):
                events_to_keep.add(existing.id)
                continue
            if existing.id not in planned_delete_ids:
                planned_delete_ids.add(existing.id)
                plan.deletes.append(
                    EventDeletion(
                        event_id=existing.id,
                        external_id=remote.uid,
                        title=existing.title,
                        reason=rejection,
                    )
                )
            continue

        if existing is not None:
            events_to_keep.add(existing.id)
            if existing.csv_protected:
                plan.protected_ids.append(existing.id)
                counts.protected += 1
                continue
            candidate = {
                "title": remote.title,
                "description": sanitize(remote.description),
                "start_time": remote.start,
                "end_time": remote.end,
            }
            changed = _changed_fields(existing, candidate)
            if not changed:
                counts.unchanged += 1
                continue
            changes = dict(candidate)
            changes["source"] = adapter.build_source(feed, remote)
            plan.updates.append(
                EventUpdate(
                    event_id=existing.id,
                    external_id=remote.uid,
                    changes=changes,
                    changed_fields=changed,
                )
            )
            counts.updated += 1
            continue

        plan.creates.append(
            EventDraft(
                user_id=feed.user_id,
                title=remote.title,
                description=sanitize(remote.description),
                start_time=remote.start,
                end_time=remote.end,
                color=adapter.color_for(feed, remote),
                all_day=adapter.all_day,
                source=adapter.build_source(feed, remote),
            )
        )
        counts.created += 1

    for event in local_list:
        if event.id in events_to_keep or event.id in planned_delete_ids:
            continue
        if window.is_historical(event.start_time):
            continue
        if not window.contains(event.start_time):
            continue
        if event.csv_protected:
            plan.protected_ids.append(event.id)
            counts.protected += 1
            continue
        planned_delete_ids.add(event.id)
        plan.deletes.append(
            EventDeletion(
                event_id=event.id,
                external_id=event.external_id,
                title=event.title,
                reason="missing_from_feed" if event.external_id not in current_feed_uids else "stale_copy",
            )
        )

    counts.deleted = len(plan.deletes)
    return plan
