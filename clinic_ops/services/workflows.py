"""Reschedule and transfer workflows as explicit state machines.

Both workflows live for one UI session and hold no state in the store until
they commit. Conflict checks are debounced; a newer selection cancels the
pending check so a stale result can never gate a commit, and the store
re-validates again at commit time.
"""

from __future__ import annotations

import enum
import threading
from contextlib import nullcontext
from datetime import date
from typing import Any, Protocol

from flask import current_app, has_app_context

from clinic_ops.models import SLOT_MINUTES, Appointment, CandidateSlot, ConflictCandidate, ConflictResult, format_clock
from clinic_ops.services.availability import (
    AvailabilityPolicy,
    StaffAvailability,
    normalize_date,
    parse_clock,
    resolve_availability,
)
from clinic_ops.services.clock import SystemClock
from clinic_ops.services.conflicts import check_conflict
from clinic_ops.services.debounce import CancellationToken, Debouncer, ManualScheduler, ThreadingScheduler
from clinic_ops.services.errors import ConflictDetected, InvalidInput, NoAvailability, SchedulingError
from clinic_ops.services.slots import generate_slots

DEFAULT_DEBOUNCE_SECONDS = 0.5


class Store(Protocol):
    def staff_availability(self, staff_id: str) -> StaffAvailability: ...

    def appointments_for(self, staff_id: str) -> list[Appointment]: ...

    def reschedule(self, appointment: Appointment, new_day: date, new_time: str) -> Appointment: ...

    def transfer(self, appointment: Appointment, new_staff_id: str) -> Appointment: ...

    def transfer_targets(self, appointment: Appointment) -> list[dict]: ...


class RescheduleState(enum.Enum):
    IDLE = "idle"
    DATE_SELECTED = "date_selected"
    SLOTS_OFFERED = "slots_offered"
    TIME_SELECTED = "time_selected"
    CONFLICT_CHECKED = "conflict_checked"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class TransferState(enum.Enum):
    IDLE = "idle"
    TARGET_SELECTED = "target_selected"
    AVAILABILITY_CHECKED = "availability_checked"
    CONFLICT_CHECKED = "conflict_checked"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


def _debounce_seconds() -> float:
    if has_app_context():
        return float(current_app.config.get("SCHEDULING_DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS))
    return DEFAULT_DEBOUNCE_SECONDS


class _Workflow:
    def __init__(
        self,
        store: Store,
        appointment: Appointment,
        *,
        scheduler: ThreadingScheduler | ManualScheduler | None = None,
        debounce_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.appointment = appointment
        self.conflict: ConflictResult | None = None
        self.checks_run = 0
        self._lock = threading.RLock()
        self._debouncer = Debouncer(
            _debounce_seconds() if debounce_seconds is None else debounce_seconds,
            scheduler,
        )
        # Timer threads need the app back to reach the store.
        self._app = current_app._get_current_object() if has_app_context() else None

    def _app_context(self):
        if self._app is not None and not has_app_context():
            return self._app.app_context()
        return nullcontext()

    def _schedule_check(self, staff_id: str, day: date, start: int) -> None:
        candidate = ConflictCandidate(
            staff_id=staff_id,
            day=day,
            start=start,
            duration_minutes=self.appointment.duration_minutes,
            id=self.appointment.id,
        )
        self._debouncer.schedule(lambda token: self._run_check(token, candidate))

    def _run_check(self, token: CancellationToken, candidate: ConflictCandidate) -> None:
        with self._app_context():
            appointments = self.store.appointments_for(candidate.staff_id)
            result = check_conflict(appointments, candidate, slot_minutes=self._slot_minutes())
        with self._lock:
            if token.cancelled:
                return
            self.checks_run += 1
            self.conflict = result
            self._on_checked(result)

    def _slot_minutes(self) -> int:
        raise NotImplementedError

    def _on_checked(self, result: ConflictResult) -> None:
        raise NotImplementedError


class RescheduleWorkflow(_Workflow):
    """Idle → DateSelected → SlotsOffered → TimeSelected → ConflictChecked → Confirmed | Rejected."""

    def __init__(self, store: Store, appointment: Appointment, *, clock: SystemClock | None = None, **kwargs: Any) -> None:
        super().__init__(store, appointment, **kwargs)
        self.clock = clock
        self.state = RescheduleState.IDLE
        self.selected_date: date | None = None
        self.selected_time: int | None = None
        self.slots: list[CandidateSlot] = []
        self._policy: AvailabilityPolicy | None = None

    def _slot_minutes(self) -> int:
        return self._policy.slot_minutes if self._policy else SLOT_MINUTES

    @property
    def no_slots(self) -> bool:
        return self.state is RescheduleState.DATE_SELECTED and not self.slots

    def _is_noop(self) -> bool:
        return self.selected_date == self.appointment.day and self.selected_time == self.appointment.start

    def select_date(self, day: Any) -> list[CandidateSlot]:
        target = normalize_date(day)
        with self._lock:
            self._debouncer.cancel()
            self.selected_date = target
            self.selected_time = None
            self.conflict = None
            self.state = RescheduleState.DATE_SELECTED
        staff = self.store.staff_availability(self.appointment.staff_id)
        self._policy = staff.policy
        slots = generate_slots(
            staff,
            target,
            self.store.appointments_for(self.appointment.staff_id),
            exclude_id=self.appointment.id,
            clock=self.clock,
        )
        with self._lock:
            if self.selected_date != target:
                return slots
            self.slots = slots
            if slots:
                self.state = RescheduleState.SLOTS_OFFERED
        return slots

    def select_time(self, value: Any) -> None:
        start = parse_clock(value)
        with self._lock:
            if self.selected_date is None or self.state is RescheduleState.IDLE:
                raise InvalidInput("select_date_first")
            if self.state is RescheduleState.CONFIRMED:
                raise InvalidInput("workflow_finished")
            offered = {slot.start for slot in self.slots}
            unchanged = self.selected_date == self.appointment.day and start == self.appointment.start
            if start not in offered and not unchanged:
                raise InvalidInput("no_slots" if not offered else "time_not_offered")
            self.selected_time = start
            self.conflict = None
            self.state = RescheduleState.TIME_SELECTED
            if unchanged:
                self._debouncer.cancel()
                return
            self._schedule_check(self.appointment.staff_id, self.selected_date, start)

    def _on_checked(self, result: ConflictResult) -> None:
        self.state = RescheduleState.REJECTED if result.has_conflict else RescheduleState.CONFLICT_CHECKED

    def confirm(self) -> Appointment:
        with self._lock:
            if self.selected_date is None or self.selected_time is None:
                raise InvalidInput("select_time_first")
            if self._is_noop():
                self._debouncer.cancel()
                self.state = RescheduleState.CONFIRMED
                return self.appointment
            if self.state is RescheduleState.REJECTED and self.conflict is not None:
                raise ConflictDetected(self.conflict.conflicts)
            if self.state is not RescheduleState.CONFLICT_CHECKED:
                raise InvalidInput("conflict_check_pending")
            day, start = self.selected_date, self.selected_time
        try:
            updated = self.store.reschedule(self.appointment, day, format_clock(start))
        except ConflictDetected as exc:
            with self._lock:
                self.conflict = ConflictResult(conflicts=list(exc.conflicts))
                self.state = RescheduleState.REJECTED
            raise
        except SchedulingError:
            with self._lock:
                self.state = RescheduleState.TIME_SELECTED
                self.conflict = None
                self._schedule_check(self.appointment.staff_id, day, start)
            raise
        with self._lock:
            self.appointment = updated
            self.state = RescheduleState.CONFIRMED
        return updated

    def abandon(self) -> None:
        """Leave the workflow; nothing has been written."""

        with self._lock:
            self._debouncer.cancel()
            self.selected_date = None
            self.selected_time = None
            self.slots = []
            self.conflict = None
            self.state = RescheduleState.IDLE


class TransferWorkflow(_Workflow):
    """Idle → TargetSelected → AvailabilityChecked → ConflictChecked → Confirmed | Rejected."""

    def __init__(self, store: Store, appointment: Appointment, **kwargs: Any) -> None:
        super().__init__(store, appointment, **kwargs)
        self.state = TransferState.IDLE
        self.target_id: str | None = None
        self.reason: str | None = None
        self._slot_size = SLOT_MINUTES

    def _slot_minutes(self) -> int:
        return self._slot_size

    def candidates(self) -> list[dict]:
        return [
            member
            for member in self.store.transfer_targets(self.appointment)
            if member["id"] != self.appointment.staff_id
        ]

    def select_target(self, staff_id: str) -> TransferState:
        pool = {member["id"] for member in self.candidates()}
        if staff_id not in pool:
            raise InvalidInput("target_not_eligible")
        with self._lock:
            self._debouncer.cancel()
            self.target_id = staff_id
            self.conflict = None
            self.reason = None
            self.state = TransferState.TARGET_SELECTED

        staff = self.store.staff_availability(staff_id)
        self._slot_size = staff.policy.slot_minutes
        effective = resolve_availability(staff, self.appointment.day)
        end = self.appointment.end(self._slot_size)
        with self._lock:
            if self.target_id != staff_id:
                return self.state
            if not effective.enabled or not effective.open_ranges:
                self.reason = "target_unavailable_on_date"
            elif not effective.covers(self.appointment.start, end):
                self.reason = "target_unavailable_at_time"
            if self.reason:
                self.state = TransferState.REJECTED
                return self.state
            self.state = TransferState.AVAILABILITY_CHECKED
            self._schedule_check(staff_id, self.appointment.day, self.appointment.start)
            return self.state

    def _on_checked(self, result: ConflictResult) -> None:
        self.state = TransferState.REJECTED if result.has_conflict else TransferState.CONFLICT_CHECKED

    def confirm(self) -> Appointment:
        with self._lock:
            if self.target_id is None:
                raise InvalidInput("select_target_first")
            if self.reason:
                raise NoAvailability(self.reason)
            if self.state is TransferState.REJECTED and self.conflict is not None:
                raise ConflictDetected(self.conflict.conflicts)
            if self.state is not TransferState.CONFLICT_CHECKED:
                raise InvalidInput("conflict_check_pending")
            target = self.target_id
        try:
            updated = self.store.transfer(self.appointment, target)
        except ConflictDetected as exc:
            with self._lock:
                self.conflict = ConflictResult(conflicts=list(exc.conflicts))
                self.state = TransferState.REJECTED
            raise
        except NoAvailability as exc:
            with self._lock:
                self.reason = exc.reason
                self.state = TransferState.REJECTED
            raise
        except SchedulingError:
            with self._lock:
                self.state = TransferState.CONFLICT_CHECKED
            raise
        with self._lock:
            self.appointment = updated
            self.state = TransferState.CONFIRMED
        return updated

    def abandon(self) -> None:
        with self._lock:
            self._debouncer.cancel()
            self.target_id = None
            self.reason = None
            self.conflict = None
            self.state = TransferState.IDLE
