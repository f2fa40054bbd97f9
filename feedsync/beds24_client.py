from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from feedsync.errors import FetchError
from feedsync.fetcher import RemoteFetcher
from feedsync.models import RemoteEvent


logger = logging.getLogger(__name__)

CHECK_IN_TIME = time(14, 0)
CHECK_OUT_TIME = time(11, 0)
ECHO_TITLE_MARKERS = ("Guest - Room", "[Calendar Export]")
ECHO_COMMENT_MARKERS = ("Generated by Smart Hjem Calendar", "[AUTO-CREATED]")

STATUS_COLORS = {
    "new": "#10b981",
    "confirmed": "#3b82f6",
    "cancelled": "#ef4444",
    "black": "#000000",
    "request": "#f59e0b",
    "inquiry": "#8b5cf6",
}
DEFAULT_STATUS_COLOR = "#6b7280"


def status_color(status: str | None) -> str:
    return STATUS_COLORS.get(str(status or "new").strip().lower(), DEFAULT_STATUS_COLOR)


def _first_value(booking: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = booking.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_day(value: Any) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def booking_id(booking: dict[str, Any]) -> str:
    value = _first_value(booking, "id", "bookId", "bookingId", "booking_id")
    return str(value) if value is not None else ""


def guest_name(booking: dict[str, Any]) -> str:
    first = str(_first_value(booking, "guestFirstName", "firstName", "first_name") or "").strip()
    last = str(_first_value(booking, "guestName", "lastName", "last_name", "surname") or "").strip()
    name = f"{first} {last}".strip()
    return name or "Guest"


def is_echo_booking(booking: dict[str, Any]) -> bool:
    title = str(_first_value(booking, "summary", "title") or "")
    if any(marker in title for marker in ECHO_TITLE_MARKERS):
        return True
    comments = str(booking.get("comments") or "")
    return any(marker in comments for marker in ECHO_COMMENT_MARKERS)


def booking_to_remote_event(booking: dict[str, Any]) -> RemoteEvent | None:
    """Convert one Beds24 booking into a remote event, or None when unusable."""
    bid = booking_id(booking)
    if not bid:
        return None

    arrival = _parse_day(_first_value(booking, "arrival", "firstNight", "arrivalDate"))
    departure = _parse_day(_first_value(booking, "departure", "departureDate"))
    if departure is None:
        last_night = _parse_day(booking.get("lastNight"))
        if last_night is not None:
            departure = last_night + timedelta(days=1)
    if arrival is None or departure is None:
        logger.warning("Beds24 booking %s is missing arrival/departure dates", bid)
        return None

    name = guest_name(booking)
    lines = [f"Booking ID: {bid}", f"Guest: {name}"]
    phone = booking.get("phone") or booking.get("guestPhone")
    if phone:
        lines.append(f"Phone: {phone}")
    adults = booking.get("numAdult")
    children = booking.get("numChild")
    if adults or children:
        lines.append(f"Adults: {adults or 0}, Children: {children or 0}")
    price = booking.get("price")
    if price:
        lines.append(f"Price: {price} {booking.get('currency') or ''}".rstrip())

    status = str(booking.get("status") or "new")
    return RemoteEvent(
        uid=f"beds24-{bid}",
        start=datetime.combine(arrival, CHECK_IN_TIME, tzinfo=timezone.utc),
        end=datetime.combine(departure, CHECK_OUT_TIME, tzinfo=timezone.utc),
        title=name,
        description="\n".join(lines),
        original_data={
            "booking_id": bid,
            "property_id": str(_first_value(booking, "propertyId", "propId", "property_id") or ""),
            "room_id": str(booking.get("roomId") or ""),
            "status": status,
        },
    )


class Beds24Client:
    def __init__(self, fetcher: RemoteFetcher, base_url: str = "https://beds24.com/api/v2") -> None:
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")

    def _bookings_endpoint(self) -> str:
        return f"{self.base_url}/bookings"

    def fetch_bookings(
        self,
        *,
        token: str,
        property_id: str,
        arrival_from: date,
        arrival_to: date,
    ) -> list[dict[str, Any]]:
        if not token:
            raise FetchError("Beds24 feed has no API token configured")
        if not property_id:
            raise FetchError("Property ID is required for Beds24 sync")
        payload = self.fetcher.fetch_json(
            self._bookings_endpoint(),
            headers={"token": token},
            params={
                "propertyId": property_id,
                "arrivalFrom": arrival_from.isoformat(),
                "arrivalTo": arrival_to.isoformat(),
            },
        )
        if isinstance(payload, dict):
            if payload.get("error") or (payload.get("success") is False and payload.get("message")):
                raise FetchError(f"Beds24 API error: {payload.get('error') or payload.get('message')}")
            items = payload.get("data", [])
        else:
            items = payload
        if not isinstance(items, list):
            logger.warning("Unexpected Beds24 response format: %s", str(payload)[:200])
            return []
        return [item for item in items if isinstance(item, dict)]

    def fetch_remote_events(
        self,
        *,
        token: str,
        property_id: str,
        arrival_from: date,
        arrival_to: date,
    ) -> list[RemoteEvent]:
        bookings = self.fetch_bookings(
            token=token,
            property_id=property_id,
            arrival_from=arrival_from,
            arrival_to=arrival_to,
        )
        events: list[RemoteEvent] = []
        for booking in bookings:
            bid = booking_id(booking)
            booking_property = str(_first_value(booking, "propertyId", "propId", "property_id") or "")
            if booking_property and booking_property != str(property_id):
                logger.error(
                    "Beds24 booking %s belongs to property %s, expected %s; skipped",
                    bid,
                    booking_property,
                    property_id,
                )
                continue
            if is_echo_booking(booking):
                logger.info("Skipped Beds24 booking %s exported by this system", bid)
                continue
            event = booking_to_remote_event(booking)
            if event is None:
                continue
            events.append(event)
        logger.info("Fetched %d Beds24 bookings for property %s", len(events), property_id)
        return events
