from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from icalendar import Calendar as ICalendar

from feedsync.errors import ParseError
from feedsync.models import DEFAULT_EVENT_SPAN, RemoteEvent, date_to_datetime


logger = logging.getLogger(__name__)


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data or "")


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value).astimezone(timezone.utc)
    return None


def _optional_text(component: Any, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def load_calendar(raw_data: Any) -> ICalendar:
    text = _decode_raw_ical(raw_data)
    if "BEGIN:VCALENDAR" not in text:
        raise ParseError("Payload is not an iCalendar document")
    try:
        calendar_obj = ICalendar.from_ical(text)
    except ValueError as exc:
        raise ParseError(f"Could not parse iCalendar data: {exc}") from exc
    if getattr(calendar_obj, "name", "") != "VCALENDAR":
        raise ParseError("Payload is not an iCalendar document")
    return calendar_obj


def parse_vevent(vevent: Any) -> RemoteEvent:
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        raise ValueError("VEVENT has no UID")
    title = str(vevent.get("SUMMARY", "")).strip()
    if not title:
        raise ValueError(f"VEVENT {uid} has no SUMMARY")
    if vevent.get("DTSTART") is None:
        raise ValueError(f"VEVENT {uid} has no DTSTART")

    start = _coerce_datetime(vevent.decoded("DTSTART"))
    if start is None:
        raise ValueError(f"VEVENT {uid} has an undecodable DTSTART")

    end: datetime | None = None
    if vevent.get("DTEND") is not None:
        end = _coerce_datetime(vevent.decoded("DTEND"))
    elif vevent.get("DURATION") is not None:
        duration = vevent.decoded("DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
    if end is None:
        end = start + DEFAULT_EVENT_SPAN

    return RemoteEvent(
        uid=uid,
        start=start,
        end=end,
        title=title,
        description=str(vevent.get("DESCRIPTION", "") or ""),
        original_data={
            "location": _optional_text(vevent, "LOCATION"),
            "organizer": _optional_text(vevent, "ORGANIZER"),
            "status": _optional_text(vevent, "STATUS"),
        },
    )


def parse_calendar(raw_data: Any) -> list[RemoteEvent]:
    """Parse an iCalendar payload into normalized remote events.

    A document that cannot be read at all raises ``ParseError``. Individual
    VEVENTs that are malformed are logged and skipped.
    """
    calendar_obj = load_calendar(raw_data)
    events: list[RemoteEvent] = []
    seen_uids: set[str] = set()
    for component in calendar_obj.walk("VEVENT"):
        try:
            event = parse_vevent(component)
        except Exception as exc:
            logger.warning("Skipped invalid calendar entry: %s", exc)
            continue
        if event.uid in seen_uids:
            logger.warning("Skipped repeated calendar entry for UID %s", event.uid)
            continue
        seen_uids.add(event.uid)
        events.append(event)
    return events
