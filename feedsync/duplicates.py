from __future__ import annotations

import logging
from datetime import timedelta
from itertools import groupby
from typing import Any

from feedsync.event_store import EventStore
from feedsync.models import LocalEvent, serialize_datetime


logger = logging.getLogger(__name__)

TITLE_WEIGHT = 3.0
DESCRIPTION_WEIGHT = 2.0
START_WEIGHT = 2.0
END_WEIGHT = 1.0
TOTAL_WEIGHT = TITLE_WEIGHT + DESCRIPTION_WEIGHT + START_WEIGHT + END_WEIGHT


def levenshtein(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def string_similarity(left: str, right: str) -> float:
    if not left and not right:
        return 1.0
    longest = max(len(left), len(right))
    return 1.0 - levenshtein(left, right) / longest


def event_similarity(first: LocalEvent, second: LocalEvent) -> float:
    """Weighted similarity in [0, 1] between two events.

    Title counts 3, description 2, start 2 and end 1. Starts score full credit
    when equal, 1.5 within an hour and 1 within a day; ends score full credit
    when equal and half within an hour.
    """
    score = TITLE_WEIGHT * string_similarity(first.title.lower(), second.title.lower())
    score += DESCRIPTION_WEIGHT * string_similarity(
        (first.description or "").lower(),
        (second.description or "").lower(),
    )

    start_delta = abs(first.start_time - second.start_time)
    if start_delta == timedelta(0):
        score += START_WEIGHT
    elif start_delta <= timedelta(hours=1):
        score += 1.5
    elif start_delta <= timedelta(hours=24):
        score += 1.0

    end_delta = abs(first.effective_end - second.effective_end)
    if end_delta == timedelta(0):
        score += END_WEIGHT
    elif end_delta <= timedelta(hours=1):
        score += 0.5

    return score / TOTAL_WEIGHT


def _summary(event: LocalEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "start_time": serialize_datetime(event.start_time),
        "end_time": serialize_datetime(event.end_time),
        "feed_id": event.source.feed_id if event.source else None,
    }


class DuplicateAuditor:
    def __init__(self, store: EventStore) -> None:
        self.store = store

    def count_exact_duplicates(self) -> int:
        return self.store.count_exact_duplicates()

    def remove_exact_duplicates(self) -> dict[str, int]:
        """Delete exact iCal copies, keeping the newest row of each group."""
        found = self.store.count_exact_duplicates()
        removed = self.store.delete_exact_duplicates() if found else 0
        logger.info("Duplicate cleanup: %d found, %d removed", found, removed)
        return {"found": found, "removed": removed}

    def find_similar_events(
        self,
        threshold: float = 0.8,
        max_start_delta_hours: float = 24,
    ) -> list[dict[str, Any]]:
        """Report groups of feed-synchronized events that look alike.

        Advisory only; nothing is deleted. Events are compared within one user
        and only against later events starting at most
        ``max_start_delta_hours`` after them.
        """
        max_delta = timedelta(hours=max_start_delta_hours)
        groups: list[dict[str, Any]] = []
        events = self.store.list_feed_synced_events()
        for user_id, user_events in groupby(events, key=lambda item: item.user_id):
            ordered = sorted(user_events, key=lambda item: (item.start_time, item.id))
            processed: set[int] = set()
            for index, event in enumerate(ordered):
                if event.id in processed:
                    continue
                matches: list[dict[str, Any]] = []
                for other in ordered[index + 1 :]:
                    if other.start_time - event.start_time > max_delta:
                        break
                    if other.id in processed:
                        continue
                    score = event_similarity(event, other)
                    if score >= threshold:
                        match = _summary(other)
                        match["similarity"] = round(score, 3)
                        matches.append(match)
                        processed.add(other.id)
                if matches:
                    processed.add(event.id)
                    groups.append({"user_id": user_id, "event": _summary(event), "similar": matches})
        logger.info("Similarity scan found %d candidate groups", len(groups))
        return groups
