"""
client/api.py
Async HTTP client for the Al-Abraar API.

Every call returns decoded JSON (camelCase keys, as the API emits them)
and raises ApiError on any non-2xx response.
"""

import logging
from datetime import date
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response from the API."""

    def __init__(self, status_code: int, detail: Any, retry_after: Optional[int] = None):
        self.status_code = status_code
        self.detail = detail
        self.retry_after = retry_after
        super().__init__(f"{status_code}: {detail}")


def _iso(value) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


class AlAbraarClient:
    """Thin wrapper over httpx.AsyncClient with bearer-token auth."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.token = token
        self.http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "AlAbraarClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> Any:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        response = await self.http.request(method, path, params=params, json=json, headers=headers)

        if response.status_code >= 400:
            try:
                body = response.json()
                detail = body.get("detail", body) if isinstance(body, dict) else body
            except ValueError:
                detail = response.text
            retry_after = response.headers.get("Retry-After")
            logger.warning(f"{method} {path} failed with {response.status_code}")
            raise ApiError(
                response.status_code,
                detail,
                int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ── Auth ──────────────────────────────────────────────────

    async def register(self, **payload) -> dict:
        data = await self.request("POST", "/auth/register", json=payload)
        self.token = data["accessToken"]
        return data

    async def login(self, email: str, password: str) -> dict:
        data = await self.request(
            "POST", "/auth/login", json={"email": email, "password": password}
        )
        self.token = data["accessToken"]
        return data

    async def logout(self) -> None:
        await self.request("POST", "/auth/logout")
        self.token = None

    async def me(self) -> dict:
        return await self.request("GET", "/auth/me")

    # ── Users ─────────────────────────────────────────────────

    async def list_ustaadhs(self, q: Optional[str] = None, specialty: Optional[str] = None) -> list:
        return await self.request("GET", "/users/ustaadhs", params={"q": q, "specialty": specialty})

    async def update_profile(self, **changes) -> dict:
        return await self.request("PUT", "/users/me", json=changes)

    # ── Availability ──────────────────────────────────────────

    async def get_availability(self, ustaadh_id: str) -> list:
        return await self.request("GET", "/availability", params={"ustaadhId": ustaadh_id})

    async def set_availability(self, slots: list) -> list:
        return await self.request("PUT", "/availability", json=slots)

    async def get_available_slots(self, ustaadh_id: str, on_date) -> list:
        return await self.request(
            "GET", "/availability/slots",
            params={"ustaadhId": ustaadh_id, "date": _iso(on_date)},
        )

    async def check_slot(self, ustaadh_id: str, on_date, start_time: str, end_time: str) -> bool:
        data = await self.request(
            "GET", "/availability/check",
            params={
                "ustaadhId": ustaadh_id,
                "date": _iso(on_date),
                "startTime": start_time,
                "endTime": end_time,
            },
        )
        return bool(data["available"])

    async def reserve(self, ustaadh_id: str, on_date, start_time: str, end_time: str) -> dict:
        return await self.request(
            "POST", "/availability/reservations",
            json={
                "ustaadhId": ustaadh_id,
                "date": _iso(on_date),
                "startTime": start_time,
                "endTime": end_time,
            },
        )

    # ── Bookings ──────────────────────────────────────────────

    async def create_booking(self, payload: dict) -> dict:
        return await self.request("POST", "/bookings", json=payload)

    async def my_bookings(self) -> list:
        return await self.request("GET", "/bookings/mine")

    async def all_bookings(self, page_size: int = 100) -> list:
        items, page = [], 1
        while True:
            data = await self.request(
                "GET", "/bookings", params={"page": page, "pageSize": page_size}
            )
            items.extend(data["items"])
            if len(items) >= data["total"] or not data["items"]:
                return items
            page += 1

    async def update_booking(self, booking_id: str, changes: dict) -> dict:
        return await self.request("PATCH", f"/bookings/{booking_id}", json=changes)

    async def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> dict:
        return await self.request(
            "POST", f"/bookings/{booking_id}/cancel", json={"reason": reason}
        )

    async def upcoming_lessons(self) -> list:
        return await self.request("GET", "/bookings/upcoming-lessons")

    # ── Messages, Achievements, Notifications ─────────────────

    async def send_message(self, receiver_id: str, content: str, booking_id: Optional[str] = None) -> dict:
        return await self.request(
            "POST", "/messages",
            json={"receiverId": receiver_id, "content": content, "bookingId": booking_id},
        )

    async def conversation(self, partner_id: str) -> list:
        return await self.request("GET", f"/messages/conversation/{partner_id}")

    async def my_achievements(self) -> list:
        return await self.request("GET", "/achievements/my-achievements")

    async def notifications(self, unread_only: bool = False) -> dict:
        return await self.request(
            "GET", "/notifications", params={"unreadOnly": str(unread_only).lower()}
        )
