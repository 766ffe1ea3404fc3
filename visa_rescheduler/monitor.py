"""
Polling service for open appointment slots.

Fixed-cadence loop: every tick lists slot dates in the preferred window,
fans out for slot times, ranks the UNBOOKED slots and races reschedule
attempts. A tick is skipped while the previous one (or its race) is still
running. Polling ends on explicit stop, on a confirmed reschedule or, if
configured, when the total attempt budget is spent.

Сервис опроса в фоне:
- проверки с фиксированным интервалом, без наложения тиков
- однократное логирование пустых результатов
- остановка после успешного переноса
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import SchedulerConfig
from .coordinator import RaceCoordinator
from .gateway import AuthExpired, GatewayError, SlotGateway
from .models import ActivityState, RescheduleOutcome, Slot, StatusSnapshot
from .selector import eligible, select

logger = logging.getLogger(__name__)


NotifyFunc = Callable[[str], Awaitable[None]]


async def _silent(text: str) -> None:
    return None


@dataclass
class MonitorService:
    """High-level polling loop."""

    gateway: SlotGateway
    settings: SchedulerConfig
    on_text: NotifyFunc = _silent
    configuration: Dict[str, Any] = field(default_factory=dict)
    _state: ActivityState = field(default_factory=ActivityState)
    _task: Optional[asyncio.Task[None]] = None
    _tick_task: Optional[asyncio.Task[None]] = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    _no_dates_reported: bool = False
    _auth_expired_reported: bool = False
    _stop_reason: Optional[str] = None

    def __post_init__(self) -> None:
        self._coordinator = RaceCoordinator(
            self.gateway,
            self._state,
            window=self.settings.window,
            max_retries=self.settings.max_retries,
            conflict_policy=self.settings.conflict_policy,
            race_policy=self.settings.race_policy,
            on_success=self._on_scheduled,
        )

    @property
    def is_running(self) -> bool:
        return self._state.polling

    @property
    def state(self) -> ActivityState:
        return self._state

    @property
    def coordinator(self) -> RaceCoordinator:
        return self._coordinator

    def snapshot(self) -> StatusSnapshot:
        st = self._state
        return StatusSnapshot(
            polling=st.polling,
            rescheduling=st.rescheduling,
            ticks_count=st.ticks_count,
            attempts_total=st.attempts_total,
            last_tick_at=st.last_tick_at,
            last_error=st.last_error,
            scheduled_slot_id=st.scheduled_slot_id,
            configuration=self.configuration,
        )

    async def start(self) -> None:
        if self._task and not self._task.done():
            logger.info("Polling already active")
            return
        self._stop_event.clear()
        self._stop_reason = None
        self._no_dates_reported = False
        self._auth_expired_reported = False
        self._state.polling = True
        self._state.rescheduling = False
        self._coordinator.reset()
        self._task = asyncio.create_task(self._run_loop(), name="slot-poll-loop")
        logger.info(
            "Polling every %sms for slots between %s and %s",
            self.settings.poll_interval_ms,
            self.settings.preferred_start_date,
            self.settings.preferred_end_date,
        )
        await self.on_text("Polling started ✅")

    async def stop(self, timeout: float = 30) -> None:
        if not self._task:
            return
        if self._stop_reason is None:
            self._stop_reason = "stopped by operator"
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Poll loop did not stop within timeout")
        self._task = None

    async def wait_stopped(self) -> None:
        """Block until the loop has ended, however it ended."""
        if self._task:
            await self._task

    async def _run_loop(self) -> None:
        interval = self.settings.poll_interval
        try:
            while not self._stop_event.is_set():
                if self._busy():
                    logger.debug("Previous tick still running, skipping")
                else:
                    self._tick_task = asyncio.create_task(self.tick(), name="slot-poll-tick")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
            if self._tick_task and not self._tick_task.done():
                await self._tick_task
            await self._coordinator.drain()
        finally:
            if self._tick_task and not self._tick_task.done():
                # stop timed out mid-race; end the race before clearing its flag
                self._tick_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._tick_task
            self._state.polling = False
            self._state.rescheduling = False
            reason = self._stop_reason or "stopped"
            logger.info("Polling stopped: %s", reason)
            await self.on_text(f"Polling stopped ⏹️ ({reason})")

    def _busy(self) -> bool:
        if self._tick_task and not self._tick_task.done():
            return True
        return self._state.rescheduling or self._coordinator.busy

    async def tick(self) -> None:
        """One full dates -> times -> select -> race cycle. Never raises."""
        if self._state.rescheduling or self._coordinator.busy:
            return
        self._state.ticks_count += 1
        self._state.last_tick_at = datetime.now(timezone.utc)
        try:
            await self._run_tick()
        except Exception as e:  # noqa: BLE001
            logger.exception("Unexpected error in poll tick: %s", e)
            self._state.last_error = repr(e)

    async def _run_tick(self) -> None:
        window = self.settings.window
        try:
            dates = await self.gateway.list_dates(window.start, window.end)
        except AuthExpired as e:
            await self._report_auth_expired(e)
            return
        except GatewayError as e:
            logger.warning("Slot dates query failed: %s", e)
            self._state.last_error = str(e)
            return
        self._auth_expired_reported = False

        if not dates:
            if not self._no_dates_reported:
                logger.info("No slot dates available between %s and %s", window.start, window.end)
                self._no_dates_reported = True
            return
        self._no_dates_reported = False
        logger.debug("Slot dates available: %s", _fmt_dates(dates))

        results = await asyncio.gather(
            *(self.gateway.list_times(window.start, window.end, d) for d in dates),
            return_exceptions=True,
        )
        slots: List[Slot] = []
        for day, result in zip(dates, results):
            if isinstance(result, AuthExpired):
                await self._report_auth_expired(result)
                return
            if isinstance(result, GatewayError):
                logger.warning("Slot times query for %s failed: %s", day, result)
                continue
            if isinstance(result, BaseException):
                raise result
            slots.extend(result)

        open_slots = eligible(slots)
        if not open_slots:
            logger.debug("No UNBOOKED slots on %s", _fmt_dates(dates))
            return

        candidates = select(open_slots, self.settings.parallel_attempts, window)
        reserve = select(open_slots, len(open_slots), window)[len(candidates):]
        if not candidates:
            return
        logger.info(
            "Found %s open slot(s), racing for %s",
            len(open_slots),
            ", ".join(f"{s.slot_date} {s.start_time.strftime('%H:%M')}" for s in candidates),
        )

        outcome = await self._coordinator.race(candidates, reserve)
        if outcome is not None and not outcome.is_success:
            self._check_attempt_budget()

    def _check_attempt_budget(self) -> None:
        limit = self.settings.max_total_attempts
        if limit is None or self._state.attempts_total < limit:
            return
        logger.warning("Retry budget exhausted after %s reschedule attempts", self._state.attempts_total)
        self._state.polling = False
        self._stop_reason = f"retry budget of {limit} attempts exhausted"
        self._stop_event.set()

    def _on_scheduled(self, outcome: RescheduleOutcome) -> None:
        self._stop_reason = f"rescheduled onto slot {outcome.slot_id} 🎉"
        self._stop_event.set()

    async def _report_auth_expired(self, error: AuthExpired) -> None:
        self._state.last_error = f"auth expired: {error}"
        if self._auth_expired_reported:
            return
        self._auth_expired_reported = True
        logger.error("Auth token rejected (%s); waiting for a fresh token", error)
        await self.on_text("Auth token expired. Send a fresh one with /token to continue.")


def _fmt_dates(dates: List[date]) -> str:
    return ", ".join(d.isoformat() for d in dates)


__all__ = ["MonitorService"]
