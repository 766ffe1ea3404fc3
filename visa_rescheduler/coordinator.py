"""
Concurrent reschedule attempts over the ranked candidate slots.

Every candidate gets its own task with a bounded retry loop. The race is
settled by the first task to reach a terminal state (first_settled) or by
the first success (first_success). After that no task sends another
request; requests already in flight are left to finish on their own.

Параллельные попытки переноса записи на лучшие слоты с ограничением ретраев.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Sequence, Set

from .config import ConflictPolicy, RacePolicy
from .gateway import AuthExpired, GatewayError, SlotGateway
from .models import ActivityState, DateWindow, RescheduleOutcome, Slot

logger = logging.getLogger(__name__)


SuccessCallback = Callable[[RescheduleOutcome], None]


class RaceCoordinator:
    """Runs one reschedule race per tick and records the result in ActivityState."""

    def __init__(
        self,
        gateway: SlotGateway,
        state: ActivityState,
        *,
        window: DateWindow,
        max_retries: int,
        conflict_policy: ConflictPolicy = ConflictPolicy.SAME_SLOT,
        race_policy: RacePolicy = RacePolicy.FIRST_SETTLED,
        on_success: Optional[SuccessCallback] = None,
    ) -> None:
        self._gateway = gateway
        self._state = state
        self._window = window
        self._max_retries = max_retries
        self._conflict_policy = conflict_policy
        self._race_policy = race_policy
        self._on_success = on_success
        self._stragglers: Set[asyncio.Task[RescheduleOutcome]] = set()
        self._scheduled = False

    @property
    def busy(self) -> bool:
        """True while requests from an already decided race are still in flight."""
        return bool(self._stragglers)

    @property
    def scheduled(self) -> bool:
        return self._scheduled

    def reset(self) -> None:
        """Forget a previous success so a restarted poller can race again."""
        self._scheduled = False

    async def race(
        self,
        candidates: Sequence[Slot],
        reserve: Sequence[Slot] = (),
    ) -> Optional[RescheduleOutcome]:
        """
        Race `candidates` and return the outcome that settles the cycle.

        `reserve` holds lower-ranked slots; with the next_candidate policy a
        task that hits a conflict moves on to the next one of them.
        """
        if not candidates or self._scheduled:
            return None

        self._state.rescheduling = True
        decided = asyncio.Event()
        pool: Deque[Slot] = deque(reserve)
        tasks = [
            asyncio.create_task(
                self._run_candidate(slot, decided, pool),
                name=f"reschedule-{slot.slot_id}",
            )
            for slot in candidates
        ]
        try:
            outcome = await self._resolve(tasks)
        finally:
            decided.set()
            for task in tasks:
                if not task.done():
                    self._stragglers.add(task)
                    task.add_done_callback(self._on_straggler_done)
            self._state.rescheduling = False

        if outcome.is_success:
            logger.info(
                "Rescheduled onto slot %s after %s attempt(s)", outcome.slot_id, outcome.attempts
            )
            self._record_success(outcome)
        elif not self._scheduled:
            self._state.last_error = outcome.detail
            logger.warning("Reschedule race lost: slot %s - %s", outcome.slot_id, outcome.detail)
        return outcome

    async def drain(self) -> None:
        """Wait for requests still in flight from races that are already decided."""
        if self._stragglers:
            await asyncio.gather(*self._stragglers, return_exceptions=True)

    async def _resolve(self, tasks: List[asyncio.Task[RescheduleOutcome]]) -> RescheduleOutcome:
        errors: List[RescheduleOutcome] = []
        pending: Set[asyncio.Task[RescheduleOutcome]] = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            # several tasks can settle in the same loop iteration; keep candidate order
            finished = [task.result() for task in tasks if task in done]
            for outcome in finished:
                if outcome.is_success:
                    return outcome
            errors.extend(finished)
            if self._race_policy is RacePolicy.FIRST_SETTLED:
                break
        return errors[0]

    async def _run_candidate(
        self,
        slot: Slot,
        decided: asyncio.Event,
        pool: Deque[Slot],
    ) -> RescheduleOutcome:
        current = slot
        attempts = 0
        try:
            while attempts < self._max_retries:
                if self._scheduled:
                    return RescheduleOutcome.error(
                        current.slot_id, "appointment already rescheduled", attempts=attempts
                    )
                if decided.is_set():
                    return RescheduleOutcome.error(
                        current.slot_id, "race already decided", attempts=attempts
                    )
                attempts += 1
                self._state.attempts_total += 1
                logger.info(
                    "Attempting reschedule (slot %s %s %s, try %s/%s)",
                    current.slot_id,
                    current.slot_date,
                    current.start_time.strftime("%H:%M"),
                    attempts,
                    self._max_retries,
                )
                outcome = await self._gateway.submit_reschedule(current, self._window)
                if outcome.is_success:
                    return outcome.model_copy(update={"attempts": attempts})

                logger.info("Conflict on slot %s (try %s/%s)", current.slot_id, attempts, self._max_retries)
                if self._conflict_policy is ConflictPolicy.NEXT_CANDIDATE and pool:
                    current = pool.popleft()
        except AuthExpired as e:
            logger.error("Auth expired while rescheduling slot %s: %s", current.slot_id, e)
            return RescheduleOutcome.error(current.slot_id, f"auth expired: {e}", attempts=attempts)
        except GatewayError as e:
            logger.warning("Reschedule of slot %s failed: %s", current.slot_id, e)
            return RescheduleOutcome.error(current.slot_id, str(e), attempts=attempts)
        except Exception as e:  # noqa: BLE001
            logger.exception("Unexpected error while rescheduling slot %s: %s", current.slot_id, e)
            return RescheduleOutcome.error(current.slot_id, repr(e), attempts=attempts)

        return RescheduleOutcome.error(
            current.slot_id,
            f"conflict on all {attempts} attempt(s)",
            attempts=attempts,
        )

    def _on_straggler_done(self, task: asyncio.Task[RescheduleOutcome]) -> None:
        self._stragglers.discard(task)
        if task.cancelled():
            return
        outcome = task.result()
        if outcome.is_success:
            # the remote appointment moved even though another task settled the race
            logger.warning("Slot %s was scheduled after the race had been decided", outcome.slot_id)
            self._record_success(outcome)

    def _record_success(self, outcome: RescheduleOutcome) -> None:
        self._scheduled = True
        self._state.scheduled_slot_id = outcome.slot_id
        self._state.last_error = None
        self._state.polling = False
        if self._on_success is not None:
            self._on_success(outcome)


__all__ = ["RaceCoordinator"]
