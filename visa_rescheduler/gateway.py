"""
HTTP gateway to the appointment API.

Three calls (slot dates, slot times, reschedule), each turning HTTP status
codes and bodies into return values or GatewayError subclasses so callers
never look at raw responses.

Шлюз к API записи: даты, время слотов и перенос записи.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, List, Optional

import httpx
from pydantic import SecretStr, ValidationError

from .config import DEFAULT_API_BASE, IdentityConfig
from .models import DateWindow, RescheduleOutcome, Slot
from .utils import api_date, twelve_hour

logger = logging.getLogger(__name__)


SLOT_DATES_PATH = "/appointments/getSlotDates"
SLOT_TIMES_PATH = "/appointments/getSlotTimes"
RESCHEDULE_PATH = "/appointments/reschedule"

CONFLICT_STATUS = 409
SCHEDULED_STATUS = "SCHEDULED"


class GatewayError(Exception):
    """Any failure that aborts the current step."""


class AuthExpired(GatewayError):
    """The bearer token was rejected; it has to be refreshed externally."""


class Forbidden(GatewayError):
    pass


class MalformedResponse(GatewayError):
    pass


class NetworkFailure(GatewayError):
    pass


class SlotGateway:
    """Stateless wrapper around the appointment API endpoints."""

    def __init__(
        self,
        identity: IdentityConfig,
        *,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._identity = identity
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def identity(self) -> IdentityConfig:
        return self._identity

    def rotate_token(self, token: str) -> None:
        """Swap in a fresh bearer token; requests already sent keep the old one."""
        self._identity = self._identity.model_copy(update={"token": SecretStr(token)})
        logger.info("Auth token rotated")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # region transport
    async def _send(self, method: str, path: str, payload: Any) -> httpx.Response:
        identity = self._identity
        headers = {
            "Authorization": f"Bearer {identity.token.get_secret_value()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        try:
            return await self._client.request(
                method, f"{self._base_url}{path}", json=payload, headers=headers
            )
        except httpx.RequestError as e:
            raise NetworkFailure(f"{method} {path} failed: {e!r}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(
                f"Unparsable body from {response.request.url.path} ({response.status_code})"
            ) from e

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        path = response.request.url.path
        if response.status_code == 401:
            raise AuthExpired(f"401 from {path}")
        if response.status_code == 403:
            raise Forbidden(f"403 from {path}")
        if not response.is_success:
            raise GatewayError(f"HTTP {response.status_code} from {path}: {response.text[:200]}")

    # endregion

    async def list_dates(self, from_date: date, to_date: date) -> List[date]:
        """
        Dates with some availability inside [from_date, to_date].

        404 and an empty body both mean "nothing available" and yield [].
        """
        identity = self._identity
        payload = {
            "fromDate": api_date(from_date),
            "toDate": api_date(to_date),
            "postUserId": identity.post_user_id,
            "applicantId": identity.applicant_id,
            "applicationId": identity.application_id,
            "locationType": "POST",
            "visaClass": identity.visa_class,
            "visaType": identity.visa_type,
        }
        response = await self._send("POST", SLOT_DATES_PATH, payload)
        if response.status_code == 404:
            return []
        self._raise_for_status(response)

        data = self._json(response)
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponse(f"Expected a list of dates, got {type(data).__name__}")

        dates: List[date] = []
        for item in data:
            raw = item.get("date") if isinstance(item, dict) else item
            try:
                dates.append(date.fromisoformat(str(raw)[:10]))
            except ValueError as e:
                raise MalformedResponse(f"Bad date entry: {item!r}") from e
        return dates

    async def list_times(self, from_date: date, to_date: date, slot_date: date) -> List[Slot]:
        identity = self._identity
        payload = {
            "fromDate": api_date(from_date),
            "toDate": api_date(to_date),
            "slotDate": api_date(slot_date),
            "postUserId": identity.post_user_id,
            "applicantId": identity.applicant_id,
            "applicationId": identity.application_id,
            "visaClass": identity.visa_class,
            "visaType": identity.visa_type,
        }
        response = await self._send("POST", SLOT_TIMES_PATH, payload)
        self._raise_for_status(response)

        data = self._json(response)
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponse(f"Expected a list of slots, got {type(data).__name__}")
        try:
            return [Slot.model_validate(item) for item in data]
        except ValidationError as e:
            raise MalformedResponse(f"Bad slot record for {slot_date}: {e}") from e

    async def submit_reschedule(self, slot: Slot, window: DateWindow) -> RescheduleOutcome:
        """
        Try to move the appointment onto `slot`.

        Returns a SCHEDULED or CONFLICT outcome; raises AuthExpired or
        GatewayError for everything else.
        """
        identity = self._identity
        payload = [
            {
                "applicantId": identity.applicant_id,
                "applicationId": identity.application_id,
                "postUserId": identity.post_user_id,
                "appointmentId": identity.appointment_id,
                "appointmentDt": api_date(slot.slot_date),
                "appointmentTime": twelve_hour(slot.start_time),
                "slotId": slot.slot_id,
                "fromDate": api_date(window.start),
                "toDate": api_date(window.end),
                "visaType": identity.visa_type,
                "visaClass": identity.visa_class,
            }
        ]
        response = await self._send("PUT", RESCHEDULE_PATH, payload)
        if response.status_code == CONFLICT_STATUS:
            return RescheduleOutcome.conflict(slot.slot_id)
        self._raise_for_status(response)

        data = self._json(response)
        if isinstance(data, dict) and data.get("status") == CONFLICT_STATUS:
            return RescheduleOutcome.conflict(slot.slot_id)
        if isinstance(data, list) and data and isinstance(data[0], dict):
            status = data[0].get("appointmentStatus")
            if status == SCHEDULED_STATUS:
                return RescheduleOutcome.scheduled(slot.slot_id)
            raise GatewayError(f"Reschedule of slot {slot.slot_id} not confirmed: {status!r}")
        raise MalformedResponse(f"Unexpected reschedule response: {str(data)[:200]}")


__all__ = [
    "AuthExpired",
    "Forbidden",
    "GatewayError",
    "MalformedResponse",
    "NetworkFailure",
    "SlotGateway",
]
