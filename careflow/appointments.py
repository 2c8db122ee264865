"""
Appointment lifecycle.

**State machine:**

    SCHEDULED -> COMPLETED | CANCELLED | NO_SHOW

All three targets are terminal.

**Scheduling guards:**

* A doctor never has two ``scheduled`` appointments whose
  ``[start, start + duration)`` intervals intersect.
* A patient may not hold two ``scheduled`` appointments starting at the
  exact same instant.  Only exact equality is checked on the patient side.
* Both booking checks and the insert run while holding the repository's
  guards for the doctor and for the patient, so concurrent bookings with
  different doctors still see each other on the patient side.

**Who may do what:**

* book: ``schedule_any_doctor``, or ``schedule_own_appointments`` when the
  principal is the doctor or the patient being booked.  Patients always
  book for their own profile.
* update: admin, secretary, the owning doctor or the owning patient.
  Patients may only change ``notes``.
* cancel: ``cancel_any_appointment``, or ``cancel_own_appointments`` for
  the owning doctor or patient.
* complete: the owning doctor, with ``mark_appointment_complete``.
* mark_no_show: admin, secretary or the owning doctor.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from careflow.access import manages_resource, require_access, require_cancel, require_modify
from careflow.exceptions import Conflict, NotFound, PermissionDenied, ResourceAccessDenied
from careflow.lifecycle import (
    CheckContext,
    RecordService,
    StateMachine,
    append_note,
    apply_transition,
)
from careflow.models import Appointment, AppointmentStatus, Principal, Role
from careflow.rbac import require_any_permission, require_authenticated, require_permission
from careflow.refs import Ref, resolve_id, same_ref
from careflow.store import hold_locks

logger = logging.getLogger(__name__)


APPOINTMENT_LIFECYCLE: StateMachine[AppointmentStatus] = StateMachine(
    "Appointment",
    {
        AppointmentStatus.SCHEDULED: {
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
        },
        AppointmentStatus.COMPLETED: set(),
        AppointmentStatus.CANCELLED: set(),
        AppointmentStatus.NO_SHOW: set(),
    },
    initial=AppointmentStatus.SCHEDULED,
)

EDITABLE_FIELDS = frozenset({"reason", "notes", "start", "duration_minutes"})
PATIENT_EDITABLE_FIELDS = frozenset({"notes"})


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval intersection: touching intervals do not overlap."""
    return a_start < b_end and b_start < a_end


def _is_owner(appointment: Appointment, principal: Principal, ctx: CheckContext) -> bool:
    if same_ref(appointment.doctor, principal.user_id):
        return True
    if principal.role == Role.PATIENT and ctx.directory is not None:
        profile_id = ctx.directory.patient_profile_for_user(principal.user_id)
        return profile_id is not None and same_ref(appointment.patient, profile_id)
    return False


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def resolve_booking_patient(
    principal: Principal,
    patient: Optional[Ref],
    ctx: CheckContext,
) -> str:
    """Return the patient profile id an appointment will be booked for.

    Patients book for their own profile; any other requested profile is
    refused.  Other roles must name the patient.
    """
    if principal.role == Role.PATIENT:
        own = ctx.directory.patient_profile_for_user(principal.user_id) if ctx.directory else None
        if own is None:
            raise NotFound("Patient record not found.")
        if patient is not None and not same_ref(patient, own):
            raise ResourceAccessDenied("Patients can only book appointments for themselves.")
        return own
    patient_id = resolve_id(patient)
    if patient_id is None:
        raise ValueError("A patient is required to book an appointment.")
    return patient_id


def check_book(principal: Optional[Principal], appointment: None, ctx: CheckContext) -> AppointmentStatus:
    principal = require_authenticated(principal)
    held = require_any_permission(
        principal, ["schedule_any_doctor", "schedule_own_appointments"], ctx.registry,
    )
    patient_id = resolve_booking_patient(principal, ctx.params.get("patient"), ctx)
    if held == "schedule_own_appointments":
        is_doctor = same_ref(ctx.params.get("doctor"), principal.user_id)
        is_patient = principal.role == Role.PATIENT
        if not (is_doctor or is_patient):
            raise PermissionDenied("missing permission: schedule_any_doctor")
    ctx.params["patient"] = patient_id
    return APPOINTMENT_LIFECYCLE.initial


def check_view(principal: Optional[Principal], appointment: Appointment, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_any_permission(
        principal, ["view_all_appointments", "view_own_appointments"], ctx.registry,
    )
    require_access(appointment, principal, ctx.directory, ctx.registry, ctx.now)
    return None


def check_update(principal: Optional[Principal], appointment: Appointment, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_any_permission(
        principal, ["schedule_any_doctor", "schedule_own_appointments"], ctx.registry,
    )
    require_modify(appointment, principal, ctx.directory, ctx.now)
    fields = set(ctx.params.get("fields", ()))
    unknown = fields - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
    if principal.role == Role.PATIENT and not fields <= PATIENT_EDITABLE_FIELDS:
        raise PermissionDenied("Patients can only update notes.")
    return None


def check_cancel(principal: Optional[Principal], appointment: Appointment, ctx: CheckContext) -> AppointmentStatus:
    principal = require_authenticated(principal)
    held = require_any_permission(
        principal, ["cancel_any_appointment", "cancel_own_appointments"], ctx.registry,
    )
    if held == "cancel_own_appointments" and not _is_owner(appointment, principal, ctx):
        raise ResourceAccessDenied("You are not allowed to cancel this appointment.")
    require_cancel(appointment, principal, ctx.directory, ctx.now)
    APPOINTMENT_LIFECYCLE.validate(appointment.status, AppointmentStatus.CANCELLED)
    return AppointmentStatus.CANCELLED


def check_complete(principal: Optional[Principal], appointment: Appointment, ctx: CheckContext) -> AppointmentStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "mark_appointment_complete", ctx.registry)
    if not same_ref(appointment.doctor, principal.user_id):
        raise ResourceAccessDenied("You can only complete your own appointments.")
    APPOINTMENT_LIFECYCLE.validate(appointment.status, AppointmentStatus.COMPLETED)
    return AppointmentStatus.COMPLETED


def check_no_show(principal: Optional[Principal], appointment: Appointment, ctx: CheckContext) -> AppointmentStatus:
    principal = require_authenticated(principal)
    require_any_permission(
        principal, ["cancel_any_appointment", "mark_appointment_complete"], ctx.registry,
    )
    allowed = principal.role in (Role.ADMIN, Role.SECRETARY) or (
        principal.role == Role.DOCTOR and manages_resource(appointment, principal, ctx.directory)
    )
    if not allowed:
        raise ResourceAccessDenied("You are not allowed to mark this appointment as a no-show.")
    APPOINTMENT_LIFECYCLE.validate(appointment.status, AppointmentStatus.NO_SHOW)
    return AppointmentStatus.NO_SHOW


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AppointmentService(RecordService):
    """Books, edits and moves appointments through their lifecycle."""

    resource_type = "appointment"

    # -- conflict detection --

    def find_doctor_conflict(
        self,
        doctor: Ref,
        start: datetime,
        duration_minutes: int,
        exclude: Optional[Ref] = None,
    ) -> Optional[Appointment]:
        """Return a scheduled appointment of ``doctor`` overlapping the interval."""
        end = start + timedelta(minutes=duration_minutes)
        exclude_id = resolve_id(exclude)
        matches = self.repository.find(
            lambda a: a.id != exclude_id and overlaps(a.start, a.end, start, end),
            doctor=resolve_id(doctor),
            status=AppointmentStatus.SCHEDULED,
        )
        return matches[0] if matches else None

    def find_patient_conflict(self, patient: Ref, start: datetime) -> Optional[Appointment]:
        matches = self.repository.find(
            lambda a: a.start == start,
            patient=resolve_id(patient),
            status=AppointmentStatus.SCHEDULED,
        )
        return matches[0] if matches else None

    # -- operations --

    def get(self, principal: Optional[Principal], appointment_ref: Ref) -> Appointment:
        appointment = self.load(appointment_ref)
        check_view(principal, appointment, self.context())
        return appointment

    def book(
        self,
        principal: Optional[Principal],
        doctor: Ref,
        start: datetime,
        patient: Optional[Ref] = None,
        duration_minutes: Optional[int] = None,
        reason: str = "",
        notes: str = "",
    ) -> Appointment:
        """Book a new ``scheduled`` appointment.

        Raises:
            PermissionDenied: If no scheduling permission covers this booking.
            ResourceAccessDenied: If a patient books for someone else.
            Conflict: If the doctor is busy or the patient is already booked
                at this instant.
        """
        with self.recording(principal, "book") as audit:
            ctx = self.context(doctor=doctor, patient=patient)
            check_book(principal, None, ctx)
            patient_id = ctx.params["patient"]
            doctor_id = resolve_id(doctor)
            duration = duration_minutes or self.settings.slot_duration_minutes

            with hold_locks(self.repository, [f"doctor:{doctor_id}", f"patient:{patient_id}"]):
                if self.find_doctor_conflict(doctor_id, start, duration) is not None:
                    logger.warning("Booking conflict for doctor=%s at %s", doctor_id, start.isoformat())
                    raise Conflict("The doctor is not available at this time. Please choose another slot.")
                if self.find_patient_conflict(patient_id, start) is not None:
                    raise Conflict("Patient already has an appointment at this time.")
                appointment = self.repository.create(Appointment(
                    patient=patient_id,
                    doctor=doctor_id,
                    start=start,
                    duration_minutes=duration,
                    reason=reason,
                    notes=notes,
                    created_by=principal.user_id,
                    created_at=self.now(),
                ))

            audit["resource_id"] = appointment.id
            logger.info("Appointment %s booked for doctor=%s", appointment.id, doctor_id)
            return appointment

    def update(self, principal: Optional[Principal], appointment_ref: Ref, **changes: Any) -> Appointment:
        """Edit a scheduled appointment; a new time is re-checked for conflicts."""
        with self.recording(principal, "update", resolve_id(appointment_ref)) as audit:
            appointment = self.load(appointment_ref)
            check_update(principal, appointment, self.context(fields=list(changes)))
            audit["metadata"]["fields"] = sorted(changes)

            if "start" not in changes and "duration_minutes" not in changes:
                return self.repository.update_if(
                    appointment.id, {"status": AppointmentStatus.SCHEDULED}, changes,
                )

            start = changes.get("start", appointment.start)
            duration = changes.get("duration_minutes", appointment.duration_minutes)
            doctor_id = resolve_id(appointment.doctor)
            with self.repository.locked(f"doctor:{doctor_id}"):
                if self.find_doctor_conflict(doctor_id, start, duration, exclude=appointment.id):
                    logger.warning("Reschedule conflict for appointment=%s", appointment.id)
                    raise Conflict("Time slot conflict detected.")
                updated = self.repository.update_if(
                    appointment.id,
                    {"status": AppointmentStatus.SCHEDULED, "start": appointment.start},
                    changes,
                )
            logger.info("Appointment %s rescheduled to %s", appointment.id, start.isoformat())
            return updated

    def cancel(self, principal: Optional[Principal], appointment_ref: Ref, reason: str = "") -> Appointment:
        with self.recording(principal, "cancel", resolve_id(appointment_ref)):
            appointment = self.load(appointment_ref)
            target = check_cancel(principal, appointment, self.context())
            return apply_transition(
                APPOINTMENT_LIFECYCLE, self.repository, appointment, target,
                changes={
                    "cancelled_at": self.now(),
                    "cancelled_by": principal.user_id,
                    "notes": append_note(appointment.notes, "Cancellation reason", reason),
                },
            )

    def complete(self, principal: Optional[Principal], appointment_ref: Ref, notes: str = "") -> Appointment:
        with self.recording(principal, "complete", resolve_id(appointment_ref)):
            appointment = self.load(appointment_ref)
            target = check_complete(principal, appointment, self.context())
            return apply_transition(
                APPOINTMENT_LIFECYCLE, self.repository, appointment, target,
                changes={
                    "completed_at": self.now(),
                    "notes": append_note(appointment.notes, "Completion notes", notes),
                },
            )

    def mark_no_show(self, principal: Optional[Principal], appointment_ref: Ref) -> Appointment:
        with self.recording(principal, "no_show", resolve_id(appointment_ref)):
            appointment = self.load(appointment_ref)
            target = check_no_show(principal, appointment, self.context())
            return apply_transition(APPOINTMENT_LIFECYCLE, self.repository, appointment, target)

    def available_slots(
        self,
        principal: Optional[Principal],
        doctor: Ref,
        day: date,
        tz: timezone = timezone.utc,
    ) -> list[datetime]:
        """Free slot start times for ``doctor`` on ``day`` within working hours.

        A slot is free when no scheduled appointment of the doctor overlaps
        it.  Hours and slot length come from the settings.
        """
        require_authenticated(principal)
        slot = timedelta(minutes=self.settings.slot_duration_minutes)
        day_start = datetime.combine(day, time(self.settings.working_hours_start), tzinfo=tz)
        if self.settings.working_hours_end >= 24:
            day_end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
        else:
            day_end = datetime.combine(day, time(self.settings.working_hours_end), tzinfo=tz)

        booked = self.repository.find(
            lambda a: overlaps(a.start, a.end, day_start, day_end),
            doctor=resolve_id(doctor),
            status=AppointmentStatus.SCHEDULED,
        )
        slots = []
        cursor = day_start
        while cursor + slot <= day_end:
            if not any(overlaps(a.start, a.end, cursor, cursor + slot) for a in booked):
                slots.append(cursor)
            cursor += slot
        return slots
