import json
from datetime import date
from typing import Callable, List

import httpx
import pytest

from conftest import make_slot
from visa_rescheduler.gateway import (
    AuthExpired,
    Forbidden,
    GatewayError,
    MalformedResponse,
    NetworkFailure,
    SlotGateway,
)
from visa_rescheduler.models import OutcomeKind

BASE = "https://appointments.test/api"


def _gateway(identity, handler: Callable[[httpx.Request], httpx.Response]) -> SlotGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SlotGateway(identity, base_url=BASE, client=client)


@pytest.mark.asyncio
async def test_list_dates_request_shape_and_parsing(identity) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=["2025-06-03", {"date": "2025-06-07T00:00:00"}])

    gateway = _gateway(identity, handler)
    dates = await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10))

    assert dates == [date(2025, 6, 3), date(2025, 6, 7)]
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/appointments/getSlotDates"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert json.loads(request.content) == {
        "fromDate": "2025-06-01",
        "toDate": "2025-06-10",
        "postUserId": 42,
        "applicantId": "APP-1",
        "applicationId": "APPL-9",
        "locationType": "POST",
        "visaClass": "B1/B2",
        "visaType": "NIV",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "expected"),
    [(401, AuthExpired), (403, Forbidden), (500, GatewayError)],
)
async def test_list_dates_error_statuses(identity, status, expected) -> None:
    gateway = _gateway(identity, lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(expected):
        await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10))


@pytest.mark.asyncio
async def test_list_dates_not_found_and_empty_mean_no_dates(identity) -> None:
    gateway = _gateway(identity, lambda request: httpx.Response(404))
    assert await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10)) == []

    gateway = _gateway(identity, lambda request: httpx.Response(200, json=[]))
    assert await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10)) == []


@pytest.mark.asyncio
async def test_list_dates_unparsable_body(identity) -> None:
    gateway = _gateway(identity, lambda request: httpx.Response(200, text="<html>maintenance</html>"))
    with pytest.raises(MalformedResponse):
        await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10))


@pytest.mark.asyncio
async def test_network_errors_become_network_failure(identity) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(identity, handler)
    with pytest.raises(NetworkFailure):
        await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10))


@pytest.mark.asyncio
async def test_list_times_parses_slots(identity) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {"slotId": 11, "slotDate": "2025-06-03", "startTime": "09:00", "slotStatus": "UNBOOKED"},
                {"slotId": 12, "slotDate": "2025-06-03", "startTime": "10:00", "slotStatus": "BOOKED"},
            ],
        )

    gateway = _gateway(identity, handler)
    slots = await gateway.list_times(date(2025, 6, 1), date(2025, 6, 10), date(2025, 6, 3))

    assert [s.slot_id for s in slots] == [11, 12]
    assert [s.is_unbooked for s in slots] == [True, False]
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/api/appointments/getSlotTimes"
    assert body["slotDate"] == "2025-06-03"
    assert "locationType" not in body


@pytest.mark.asyncio
async def test_list_times_bad_record_is_malformed(identity) -> None:
    gateway = _gateway(identity, lambda request: httpx.Response(200, json=[{"slotId": 1}]))
    with pytest.raises(MalformedResponse):
        await gateway.list_times(date(2025, 6, 1), date(2025, 6, 10), date(2025, 6, 3))


@pytest.mark.asyncio
async def test_submit_reschedule_payload_and_success(identity, window) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"appointmentStatus": "SCHEDULED"}])

    gateway = _gateway(identity, handler)
    outcome = await gateway.submit_reschedule(make_slot(55, "2025-06-03", "13:30"), window)

    assert outcome.kind is OutcomeKind.SCHEDULED
    assert outcome.slot_id == 55
    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/api/appointments/reschedule"
    assert json.loads(seen[0].content) == [
        {
            "applicantId": "APP-1",
            "applicationId": "APPL-9",
            "postUserId": 42,
            "appointmentId": 777,
            "appointmentDt": "2025-06-03",
            "appointmentTime": "01:30 PM",
            "slotId": 55,
            "fromDate": "2025-06-01",
            "toDate": "2025-06-10",
            "visaType": "NIV",
            "visaClass": "B1/B2",
        }
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(409, text="taken"),
        httpx.Response(200, json={"status": 409, "message": "Slot already booked"}),
    ],
)
async def test_submit_reschedule_conflict(identity, window, response) -> None:
    gateway = _gateway(identity, lambda request: response)
    outcome = await gateway.submit_reschedule(make_slot(55, "2025-06-03", "09:00"), window)
    assert outcome.kind is OutcomeKind.CONFLICT


@pytest.mark.asyncio
async def test_submit_reschedule_failures(identity, window) -> None:
    slot = make_slot(55, "2025-06-03", "09:00")

    gateway = _gateway(identity, lambda request: httpx.Response(401))
    with pytest.raises(AuthExpired):
        await gateway.submit_reschedule(slot, window)

    gateway = _gateway(identity, lambda request: httpx.Response(200, json=[{"appointmentStatus": "PENDING"}]))
    with pytest.raises(GatewayError):
        await gateway.submit_reschedule(slot, window)

    gateway = _gateway(identity, lambda request: httpx.Response(200, json={"ok": True}))
    with pytest.raises(MalformedResponse):
        await gateway.submit_reschedule(slot, window)


@pytest.mark.asyncio
async def test_rotate_token_applies_to_next_request(identity) -> None:
    tokens: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        tokens.append(request.headers["Authorization"])
        return httpx.Response(200, json=[])

    gateway = _gateway(identity, handler)
    await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10))
    gateway.rotate_token("fresh-token")
    await gateway.list_dates(date(2025, 6, 1), date(2025, 6, 10))

    assert tokens == ["Bearer secret-token", "Bearer fresh-token"]
    assert gateway.identity.applicant_id == "APP-1"
