from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pytest
from pydantic import SecretStr

from visa_rescheduler.config import IdentityConfig, SchedulerConfig
from visa_rescheduler.models import DateWindow, RescheduleOutcome, Slot

# (delay seconds, "scheduled" | "conflict" | exception instance)
Step = Tuple[float, Union[str, BaseException]]


def make_slot(slot_id: Any, day: str, start: str, status: str = "UNBOOKED") -> Slot:
    return Slot.model_validate(
        {"slotId": slot_id, "slotDate": day, "startTime": start, "slotStatus": status}
    )


class FakeGateway:
    """Scripted stand-in for SlotGateway; records every call."""

    def __init__(
        self,
        dates: Union[List[date], BaseException, None] = None,
        times: Optional[Dict[date, Union[List[Slot], BaseException]]] = None,
        reschedule: Optional[Dict[Any, Sequence[Step]]] = None,
    ) -> None:
        self.dates = dates if dates is not None else []
        self.times = times or {}
        self.reschedule = {key: list(steps) for key, steps in (reschedule or {}).items()}
        self.date_calls: List[Tuple[date, date]] = []
        self.time_calls: List[date] = []
        self.reschedule_calls: List[Any] = []

    async def list_dates(self, from_date: date, to_date: date) -> List[date]:
        self.date_calls.append((from_date, to_date))
        if isinstance(self.dates, BaseException):
            raise self.dates
        return list(self.dates)

    async def list_times(self, from_date: date, to_date: date, slot_date: date) -> List[Slot]:
        self.time_calls.append(slot_date)
        result = self.times.get(slot_date, [])
        if isinstance(result, BaseException):
            raise result
        return list(result)

    async def submit_reschedule(self, slot: Slot, window: DateWindow) -> RescheduleOutcome:
        self.reschedule_calls.append(slot.slot_id)
        steps = self.reschedule.get(slot.slot_id) or [(0.0, "conflict")]
        delay, result = steps.pop(0) if len(steps) > 1 else steps[0]
        await asyncio.sleep(delay)
        if isinstance(result, BaseException):
            raise result
        if result == "scheduled":
            return RescheduleOutcome.scheduled(slot.slot_id)
        return RescheduleOutcome.conflict(slot.slot_id)

    def calls_for(self, slot_id: Any) -> int:
        return self.reschedule_calls.count(slot_id)

    def rotate_token(self, token: str) -> None:
        pass

    async def close(self) -> None:
        pass


@pytest.fixture
def window() -> DateWindow:
    return DateWindow(start=date(2025, 6, 1), end=date(2025, 6, 10))


@pytest.fixture
def identity() -> IdentityConfig:
    return IdentityConfig(
        token=SecretStr("secret-token"),
        applicant_id="APP-1",
        application_id="APPL-9",
        post_user_id=42,
        appointment_id=777,
        visa_type="NIV",
        visa_class="B1/B2",
    )


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(
        preferred_start_date=date(2025, 6, 1),
        preferred_end_date=date(2025, 6, 10),
        poll_interval_ms=50,
        parallel_attempts=2,
        max_retries=1,
    )
