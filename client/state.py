"""
client/state.py
Session-lifetime caches over AlAbraarClient with the derived views the
dashboards need. Nothing here is persisted.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from client.api import AlAbraarClient, ApiError

logger = logging.getLogger(__name__)

Notifier = Callable[[str], None]


def _ref_id(value: Any) -> Optional[str]:
    """A user reference is either an id string or an embedded user mapping."""
    if value is None:
        return None
    if isinstance(value, dict):
        for key in ("id", "_id", "userId"):
            if value.get(key):
                return str(value[key])
        return None
    return str(value)


def _lesson_start(slot: dict) -> datetime:
    hours, minutes = slot["startTime"].split(":")
    day = date.fromisoformat(slot["date"])
    return datetime(day.year, day.month, day.day, int(hours), int(minutes), tzinfo=timezone.utc)


class BookingStore:
    def __init__(self, client: AlAbraarClient):
        self.client = client
        self.bookings: List[dict] = []

    async def refresh(self, role: str) -> List[dict]:
        if role == "admin":
            self.bookings = await self.client.all_bookings()
        else:
            self.bookings = await self.client.my_bookings()
        return self.bookings

    def get_bookings_by_user(self, user_id: str, role: str) -> List[dict]:
        if role == "student":
            return [b for b in self.bookings if _ref_id(b.get("studentId")) == str(user_id)]
        if role == "ustaadh":
            return [b for b in self.bookings if _ref_id(b.get("ustaadhId")) == str(user_id)]
        return list(self.bookings)

    def upcoming_lessons(self, now: Optional[datetime] = None) -> List[dict]:
        """Scheduled lessons of live bookings that have not started yet, soonest first."""
        now = now or datetime.now(timezone.utc)
        lessons = []
        for booking in self.bookings:
            if booking.get("status") not in ("pending", "confirmed"):
                continue
            for slot in booking.get("schedule", []):
                if slot.get("status") != "scheduled" or _lesson_start(slot) < now:
                    continue
                lessons.append({
                    "bookingId": booking["id"],
                    "slotId": slot.get("id"),
                    "ustaadhId": _ref_id(booking.get("ustaadhId")),
                    "studentId": _ref_id(booking.get("studentId")),
                    "packageType": booking.get("packageType"),
                    "date": slot["date"],
                    "startTime": slot["startTime"],
                    "endTime": slot["endTime"],
                    "meetingLink": slot.get("meetingLink"),
                })
        return sorted(lessons, key=lambda lesson: (lesson["date"], lesson["startTime"]))

    def active_subscriptions(self, now: Optional[datetime] = None) -> List[dict]:
        """Confirmed bookings whose period has not ended."""
        today = (now or datetime.now(timezone.utc)).date()
        return [
            b for b in self.bookings
            if b.get("status") == "confirmed" and date.fromisoformat(b["endDate"]) >= today
        ]


class AvailabilityStore:
    """
    Weekly templates keyed by ustaadh id.

    save() is optimistic: the local template is replaced before the request
    goes out. If the server rejects it the previous template is restored,
    the error message goes to the notifier and the ApiError is re-raised.
    """

    def __init__(self, client: AlAbraarClient, notifier: Optional[Notifier] = None):
        self.client = client
        self.notifier = notifier
        self._templates: Dict[str, List[dict]] = {}

    def get(self, ustaadh_id: str) -> List[dict]:
        return list(self._templates.get(str(ustaadh_id), []))

    async def load(self, ustaadh_id: str) -> List[dict]:
        slots = await self.client.get_availability(str(ustaadh_id))
        self._templates[str(ustaadh_id)] = slots
        return list(slots)

    async def save(self, ustaadh_id: str, slots: List[dict]) -> List[dict]:
        key = str(ustaadh_id)
        snapshot = self._templates.get(key)
        self._templates[key] = [dict(s) for s in slots]
        try:
            saved = await self.client.set_availability(slots)
        except ApiError as e:
            if snapshot is None:
                self._templates.pop(key, None)
            else:
                self._templates[key] = snapshot
            logger.warning(f"Availability save rejected for {key}: {e.detail}")
            if self.notifier:
                self.notifier(str(e.detail))
            raise
        self._templates[key] = saved
        return list(saved)
