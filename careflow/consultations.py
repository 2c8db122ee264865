"""
Consultation lifecycle.

**State machine:**

    DRAFT -> COMPLETED -> REVIEWED -> ARCHIVED

DRAFT and COMPLETED may also be archived directly.  ARCHIVED is terminal
and freezes the record.  Deleting a consultation archives it; records are
never removed from storage.

An appointment has at most one consultation; the check and the insert
run under the repository's guard for that appointment.  Only the owning
doctor (or admin) edits, completes, archives or deletes a consultation.
Vital signs may be recorded by anyone who can read the consultation and
holds ``edit_consultations``, so a nurse can take them during intake.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Optional

from careflow.access import manages_resource, require_access, require_modify
from careflow.exceptions import Conflict, InvalidTransition, ResourceAccessDenied
from careflow.lifecycle import CheckContext, RecordService, StateMachine, apply_transition
from careflow.models import Consultation, ConsultationStatus, Principal, Role, VitalSigns
from careflow.rbac import require_authenticated, require_permission
from careflow.refs import Ref, resolve_id
from careflow.store import Repository

logger = logging.getLogger(__name__)


CONSULTATION_LIFECYCLE: StateMachine[ConsultationStatus] = StateMachine(
    "Consultation",
    {
        ConsultationStatus.DRAFT: {ConsultationStatus.COMPLETED, ConsultationStatus.ARCHIVED},
        ConsultationStatus.COMPLETED: {ConsultationStatus.REVIEWED, ConsultationStatus.ARCHIVED},
        ConsultationStatus.REVIEWED: {ConsultationStatus.ARCHIVED},
        ConsultationStatus.ARCHIVED: set(),
    },
    initial=ConsultationStatus.DRAFT,
)

PROTECTED_FIELDS = frozenset({"patient", "doctor", "appointment"})
EDITABLE_FIELDS = frozenset({
    "consultation_type", "chief_complaint", "diagnoses", "treatment_plan", "private_notes",
})


def _require_owner(consultation: Consultation, principal: Principal, action: str) -> None:
    if principal.role != Role.ADMIN and not manages_resource(consultation, principal):
        raise ResourceAccessDenied(f"You are not allowed to {action} this consultation.")


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def check_create(principal: Optional[Principal], consultation: None, ctx: CheckContext) -> ConsultationStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "create_consultations", ctx.registry)
    if resolve_id(ctx.params.get("patient")) is None:
        raise ValueError("A patient is required to open a consultation.")
    return CONSULTATION_LIFECYCLE.initial


def check_view(principal: Optional[Principal], consultation: Consultation, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_access(consultation, principal, ctx.directory, ctx.registry, ctx.now)


def check_update(principal: Optional[Principal], consultation: Consultation, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_consultations", ctx.registry)
    require_modify(consultation, principal, ctx.directory, ctx.now)
    unknown = set(ctx.params.get("fields", ())) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


def check_vital_signs(principal: Optional[Principal], consultation: Consultation, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_consultations", ctx.registry)
    require_access(consultation, principal, ctx.directory, ctx.registry, ctx.now)
    if CONSULTATION_LIFECYCLE.is_terminal(consultation.status):
        raise InvalidTransition(
            f"Consultation cannot be modified in status '{consultation.status.value}'."
        )


def check_complete(principal: Optional[Principal], consultation: Consultation, ctx: CheckContext) -> ConsultationStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_consultations", ctx.registry)
    _require_owner(consultation, principal, "complete")
    CONSULTATION_LIFECYCLE.validate(consultation.status, ConsultationStatus.COMPLETED)
    return ConsultationStatus.COMPLETED


def check_review(principal: Optional[Principal], consultation: Consultation, ctx: CheckContext) -> ConsultationStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_consultations", ctx.registry)
    if principal.role not in (Role.ADMIN, Role.DOCTOR):
        raise ResourceAccessDenied("Only a doctor can review a consultation.")
    require_access(consultation, principal, ctx.directory, ctx.registry, ctx.now)
    CONSULTATION_LIFECYCLE.validate(consultation.status, ConsultationStatus.REVIEWED)
    return ConsultationStatus.REVIEWED


def check_archive(principal: Optional[Principal], consultation: Consultation, ctx: CheckContext) -> ConsultationStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_consultations", ctx.registry)
    _require_owner(consultation, principal, "archive")
    CONSULTATION_LIFECYCLE.validate(consultation.status, ConsultationStatus.ARCHIVED)
    return ConsultationStatus.ARCHIVED


def check_delete(principal: Optional[Principal], consultation: Consultation, ctx: CheckContext) -> ConsultationStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "delete_consultations", ctx.registry)
    _require_owner(consultation, principal, "delete")
    CONSULTATION_LIFECYCLE.validate(consultation.status, ConsultationStatus.ARCHIVED)
    return ConsultationStatus.ARCHIVED


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ConsultationService(RecordService):
    """Opens, edits and closes consultations.

    Args:
        repository: Consultation storage.
        appointments: Appointment storage, used to check that a linked
            appointment exists.  Optional.
    """

    resource_type = "consultation"

    def __init__(self, repository: Repository, appointments: Optional[Repository] = None, **kwargs) -> None:
        super().__init__(repository, **kwargs)
        self.appointments = appointments

    def get(self, principal: Optional[Principal], consultation_ref: Ref) -> Consultation:
        consultation = self.load(consultation_ref)
        check_view(principal, consultation, self.context())
        return consultation

    def create(
        self,
        principal: Optional[Principal],
        patient: Ref,
        appointment: Optional[Ref] = None,
        doctor: Optional[Ref] = None,
        consultation_type: str = "initial",
        chief_complaint: str = "",
    ) -> Consultation:
        """Open a draft consultation.

        Raises:
            NotFound: If the linked appointment does not exist.
            Conflict: If the appointment already has a consultation.
        """
        with self.recording(principal, "create") as audit:
            check_create(principal, None, self.context(patient=patient))
            appointment_id = resolve_id(appointment)
            guard = (
                self.repository.locked(f"appointment:{appointment_id}")
                if appointment_id is not None
                else contextlib.nullcontext()
            )
            with guard:
                if appointment_id is not None:
                    if self.appointments is not None:
                        self.load(appointment_id, self.appointments, "Appointment")
                    if self.repository.find(appointment=appointment_id):
                        raise Conflict("A consultation already exists for this appointment.")
                consultation = self.repository.create(Consultation(
                    patient=resolve_id(patient),
                    doctor=resolve_id(doctor) or principal.user_id,
                    appointment=appointment_id,
                    consultation_type=consultation_type,
                    chief_complaint=chief_complaint,
                    created_at=self.now(),
                ))
            audit["resource_id"] = consultation.id
            logger.info("Consultation %s opened", consultation.id)
            return consultation

    def update(self, principal: Optional[Principal], consultation_ref: Ref, **changes: Any) -> Consultation:
        """Edit clinical content.  Protected fields are dropped silently."""
        changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}
        with self.recording(principal, "update", resolve_id(consultation_ref)) as audit:
            consultation = self.load(consultation_ref)
            check_update(principal, consultation, self.context(fields=list(changes)))
            audit["metadata"]["fields"] = sorted(changes)
            checked = Consultation.model_validate({**consultation.model_dump(), **changes})
            return self.repository.update_if(
                consultation.id,
                {"status": consultation.status},
                {field: getattr(checked, field) for field in changes},
            )

    def record_vital_signs(
        self,
        principal: Optional[Principal],
        consultation_ref: Ref,
        vital_signs: VitalSigns,
    ) -> Consultation:
        with self.recording(principal, "vital_signs", resolve_id(consultation_ref)):
            consultation = self.load(consultation_ref)
            check_vital_signs(principal, consultation, self.context())
            return self.repository.update_if(
                consultation.id, {"status": consultation.status}, {"vital_signs": vital_signs},
            )

    def complete(self, principal: Optional[Principal], consultation_ref: Ref) -> Consultation:
        with self.recording(principal, "complete", resolve_id(consultation_ref)):
            consultation = self.load(consultation_ref)
            target = check_complete(principal, consultation, self.context())
            return apply_transition(
                CONSULTATION_LIFECYCLE, self.repository, consultation, target,
                changes={"completed_at": self.now()},
            )

    def review(self, principal: Optional[Principal], consultation_ref: Ref) -> Consultation:
        with self.recording(principal, "review", resolve_id(consultation_ref)):
            consultation = self.load(consultation_ref)
            target = check_review(principal, consultation, self.context())
            return apply_transition(
                CONSULTATION_LIFECYCLE, self.repository, consultation, target,
                changes={"reviewed_by": principal.user_id, "reviewed_at": self.now()},
            )

    def archive(self, principal: Optional[Principal], consultation_ref: Ref) -> Consultation:
        with self.recording(principal, "archive", resolve_id(consultation_ref)):
            consultation = self.load(consultation_ref)
            target = check_archive(principal, consultation, self.context())
            return apply_transition(CONSULTATION_LIFECYCLE, self.repository, consultation, target)

    def delete(self, principal: Optional[Principal], consultation_ref: Ref) -> Consultation:
        """Soft-delete: the consultation is archived and stays linked to its appointment."""
        with self.recording(principal, "delete", resolve_id(consultation_ref)):
            consultation = self.load(consultation_ref)
            target = check_delete(principal, consultation, self.context())
            deleted = apply_transition(CONSULTATION_LIFECYCLE, self.repository, consultation, target)
            logger.info("Consultation %s deleted by %s", consultation.id, principal.user_id)
            return deleted
