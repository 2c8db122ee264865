"""
Prescription lifecycle.

**State machine:**

    DRAFT -> SIGNED -> SENT -> PARTIALLY_DISPENSED -> DISPENSED

DRAFT, SIGNED, SENT and PARTIALLY_DISPENSED may also move to CANCELLED.
PARTIALLY_DISPENSED may repeat while line items remain.  DISPENSED,
CANCELLED and EXPIRED are terminal.

A prescription is content-editable only as a draft, and only by the
prescribing doctor or admin.  ``patient``, ``doctor`` and ``number`` are
never editable.  Expiry is computed, not stored: a prescription past its
expiry date that is not already dispensed or cancelled is ``expired``.

Dispensing records one line item at a time.  A line item is dispensed
at most once, and the prescription becomes DISPENSED only when every
line item has a dispensation record.  The write is conditional on the
dispensation records read, so two pharmacists racing on the last line
item get exactly one success.

Renewal never touches the original: it creates a new draft that points
back at it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from careflow.access import (
    can_access_resource,
    manages_resource,
    require_access,
    require_cancel,
    require_modify,
)
from careflow.exceptions import Conflict, InvalidTransition, NotFound, ResourceAccessDenied
from careflow.lifecycle import CheckContext, RecordService, StateMachine, apply_transition
from careflow.models import (
    Dispensation,
    Medication,
    Prescription,
    PrescriptionStatus,
    Principal,
    Role,
)
from careflow.rbac import require_authenticated, require_permission
from careflow.refs import Ref, resolve_id

logger = logging.getLogger(__name__)


PRESCRIPTION_LIFECYCLE: StateMachine[PrescriptionStatus] = StateMachine(
    "Prescription",
    {
        PrescriptionStatus.DRAFT: {PrescriptionStatus.SIGNED, PrescriptionStatus.CANCELLED},
        PrescriptionStatus.SIGNED: {PrescriptionStatus.SENT, PrescriptionStatus.CANCELLED},
        PrescriptionStatus.SENT: {
            PrescriptionStatus.PARTIALLY_DISPENSED,
            PrescriptionStatus.DISPENSED,
            PrescriptionStatus.CANCELLED,
        },
        PrescriptionStatus.PARTIALLY_DISPENSED: {
            PrescriptionStatus.PARTIALLY_DISPENSED,
            PrescriptionStatus.DISPENSED,
            PrescriptionStatus.CANCELLED,
        },
        PrescriptionStatus.DISPENSED: set(),
        PrescriptionStatus.CANCELLED: set(),
        PrescriptionStatus.EXPIRED: set(),
    },
    initial=PrescriptionStatus.DRAFT,
)

PROTECTED_FIELDS = frozenset({"patient", "doctor", "number"})
EDITABLE_FIELDS = frozenset({"medications", "diagnosis", "notes", "pharmacy", "consultation"})

_EXPIRY_EXEMPT = frozenset({PrescriptionStatus.DISPENSED, PrescriptionStatus.CANCELLED})


def effective_status(prescription: Prescription, now: Optional[datetime] = None) -> PrescriptionStatus:
    """The stored status, or ``expired`` once past the expiry date."""
    if prescription.status in _EXPIRY_EXEMPT:
        return prescription.status
    if prescription.is_past_expiry(now):
        return PrescriptionStatus.EXPIRED
    return prescription.status


def _require_prescriber(rx: Prescription, principal: Principal, action: str) -> None:
    if principal.role != Role.ADMIN and not manages_resource(rx, principal):
        raise ResourceAccessDenied(f"You are not allowed to {action} this prescription.")


def _validate_move(rx: Prescription, target: PrescriptionStatus, now: datetime) -> None:
    PRESCRIPTION_LIFECYCLE.validate(effective_status(rx, now), target)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def check_create(principal: Optional[Principal], rx: None, ctx: CheckContext) -> PrescriptionStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "create_prescriptions", ctx.registry)
    return PRESCRIPTION_LIFECYCLE.initial


def check_view(principal: Optional[Principal], rx: Prescription, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_access(rx, principal, ctx.directory, ctx.registry, ctx.now)


def check_update(principal: Optional[Principal], rx: Prescription, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "create_prescriptions", ctx.registry)
    require_modify(rx, principal, ctx.directory, ctx.now)


def check_sign(principal: Optional[Principal], rx: Prescription, ctx: CheckContext) -> PrescriptionStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "sign_prescriptions", ctx.registry)
    _require_prescriber(rx, principal, "sign")
    _validate_move(rx, PrescriptionStatus.SIGNED, ctx.now)
    return PrescriptionStatus.SIGNED


def check_send(principal: Optional[Principal], rx: Prescription, ctx: CheckContext) -> PrescriptionStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "send_prescriptions", ctx.registry)
    _require_prescriber(rx, principal, "send")
    _validate_move(rx, PrescriptionStatus.SENT, ctx.now)
    pharmacy = ctx.params.get("pharmacy") or rx.pharmacy
    if pharmacy is None or ctx.directory is None or not ctx.directory.pharmacy_exists(pharmacy):
        raise NotFound("Pharmacy not found.")
    ctx.params["pharmacy"] = resolve_id(pharmacy)
    return PrescriptionStatus.SENT


def check_dispense(principal: Optional[Principal], rx: Prescription, ctx: CheckContext) -> PrescriptionStatus:
    """Guard one dispensation; returns the status the prescription moves to.

    ``ctx.params['medication_id']`` names the line item being dispensed.
    """
    principal = require_authenticated(principal)
    require_permission(principal, "dispense_prescriptions", ctx.registry)
    if principal.role != Role.ADMIN and not (
        principal.role == Role.PHARMACIST
        and can_access_resource(rx, principal, ctx.directory, ctx.registry, ctx.now)
    ):
        raise ResourceAccessDenied("You are not allowed to dispense this prescription.")

    medication_id = resolve_id(ctx.params.get("medication_id"))
    if not any(m.id == medication_id for m in rx.medications):
        raise NotFound("Medication not found on this prescription.")
    dispensed = rx.dispensed_medication_ids()
    if medication_id in dispensed:
        raise Conflict("This medication has already been dispensed.")

    current = effective_status(rx, ctx.now)
    if current not in (PrescriptionStatus.SENT, PrescriptionStatus.PARTIALLY_DISPENSED):
        raise InvalidTransition(f"Prescription cannot be dispensed in status '{current.value}'.")

    remaining = {m.id for m in rx.medications} - dispensed - {medication_id}
    target = PrescriptionStatus.PARTIALLY_DISPENSED if remaining else PrescriptionStatus.DISPENSED
    PRESCRIPTION_LIFECYCLE.validate(current, target)
    return target


def check_cancel(principal: Optional[Principal], rx: Prescription, ctx: CheckContext) -> PrescriptionStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "create_prescriptions", ctx.registry)
    require_cancel(rx, principal, ctx.directory, ctx.now)
    _validate_move(rx, PrescriptionStatus.CANCELLED, ctx.now)
    return PrescriptionStatus.CANCELLED


def check_renew(principal: Optional[Principal], rx: Prescription, ctx: CheckContext) -> PrescriptionStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "create_prescriptions", ctx.registry)
    _require_prescriber(rx, principal, "renew")
    return PRESCRIPTION_LIFECYCLE.initial


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PrescriptionService(RecordService):
    """Drafts, signs, routes and dispenses prescriptions."""

    resource_type = "prescription"

    def _expiry_for(self, prescription_date: datetime) -> datetime:
        return prescription_date + timedelta(days=self.settings.prescription_validity_days)

    def get(self, principal: Optional[Principal], rx_ref: Ref) -> Prescription:
        rx = self.load(rx_ref)
        check_view(principal, rx, self.context())
        return rx

    def create(
        self,
        principal: Optional[Principal],
        patient: Ref,
        medications: list[Medication],
        doctor: Optional[Ref] = None,
        pharmacy: Optional[Ref] = None,
        consultation: Optional[Ref] = None,
        diagnosis: str = "",
        notes: str = "",
    ) -> Prescription:
        """Create a draft; it expires after the configured validity period."""
        with self.recording(principal, "create") as audit:
            check_create(principal, None, self.context())
            if not medications:
                raise ValueError("A prescription needs at least one medication.")
            issued = self.now()
            rx = self.repository.create(Prescription(
                patient=resolve_id(patient),
                doctor=resolve_id(doctor) or principal.user_id,
                pharmacy=resolve_id(pharmacy),
                consultation=resolve_id(consultation),
                medications=list(medications),
                diagnosis=diagnosis,
                notes=notes,
                prescription_date=issued,
                expiry_date=self._expiry_for(issued),
            ))
            audit["resource_id"] = rx.id
            logger.info("Prescription %s drafted", rx.number)
            return rx

    def update(self, principal: Optional[Principal], rx_ref: Ref, **changes: Any) -> Prescription:
        """Edit a draft.  Protected fields are dropped silently."""
        with self.recording(principal, "update", resolve_id(rx_ref)):
            rx = self.load(rx_ref)
            check_update(principal, rx, self.context())
            changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}
            unknown = set(changes) - EDITABLE_FIELDS
            if unknown:
                raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
            if "medications" in changes and not changes["medications"]:
                raise ValueError("A prescription needs at least one medication.")
            return self.repository.update_if(rx.id, {"status": PrescriptionStatus.DRAFT}, changes)

    def sign(self, principal: Optional[Principal], rx_ref: Ref) -> Prescription:
        with self.recording(principal, "sign", resolve_id(rx_ref)):
            rx = self.load(rx_ref)
            target = check_sign(principal, rx, self.context())
            return apply_transition(
                PRESCRIPTION_LIFECYCLE, self.repository, rx, target,
                changes={"signed_by": principal.user_id, "signed_at": self.now()},
            )

    def send_to_pharmacy(
        self,
        principal: Optional[Principal],
        rx_ref: Ref,
        pharmacy: Optional[Ref] = None,
    ) -> Prescription:
        """Route a signed prescription to an existing pharmacy."""
        with self.recording(principal, "send", resolve_id(rx_ref)):
            rx = self.load(rx_ref)
            ctx = self.context(pharmacy=pharmacy)
            target = check_send(principal, rx, ctx)
            return apply_transition(
                PRESCRIPTION_LIFECYCLE, self.repository, rx, target,
                changes={"pharmacy": ctx.params["pharmacy"], "sent_at": self.now()},
            )

    def dispense(
        self,
        principal: Optional[Principal],
        rx_ref: Ref,
        medication_id: str,
        quantity: Optional[int] = None,
        batch_number: str = "",
        notes: str = "",
    ) -> Prescription:
        """Record the dispensation of one line item.

        Raises:
            ResourceAccessDenied: If the pharmacist is not assigned to the
                prescription's pharmacy.
            InvalidTransition: If the prescription has not been sent, or is
                terminal or expired.
            Conflict: If the line item was already dispensed, including by
                a concurrent request.
        """
        with self.recording(principal, "dispense", resolve_id(rx_ref)) as audit:
            rx = self.load(rx_ref)
            target = check_dispense(principal, rx, self.context(medication_id=medication_id))
            medication = next(m for m in rx.medications if m.id == medication_id)
            record = Dispensation(
                medication_id=medication_id,
                dispensed_quantity=quantity or medication.quantity,
                dispensed_by=principal.user_id,
                dispensed_at=self.now(),
                batch_number=batch_number,
                notes=notes,
            )
            changes: dict[str, Any] = {"dispensations": [*rx.dispensations, record]}
            if target == PrescriptionStatus.DISPENSED:
                changes["dispensed_at"] = record.dispensed_at
            audit["metadata"]["medication_id"] = medication_id
            return apply_transition(
                PRESCRIPTION_LIFECYCLE, self.repository, rx, target,
                changes=changes,
                expected={"dispensations": rx.dispensations},
            )

    def cancel(self, principal: Optional[Principal], rx_ref: Ref, reason: str = "") -> Prescription:
        with self.recording(principal, "cancel", resolve_id(rx_ref)):
            rx = self.load(rx_ref)
            target = check_cancel(principal, rx, self.context())
            return apply_transition(
                PRESCRIPTION_LIFECYCLE, self.repository, rx, target,
                changes={
                    "cancellation_reason": reason,
                    "cancelled_by": principal.user_id,
                    "cancelled_at": self.now(),
                },
            )

    def renew(
        self,
        principal: Optional[Principal],
        rx_ref: Ref,
        medications: Optional[list[Medication]] = None,
        notes: Optional[str] = None,
    ) -> Prescription:
        """Create a new draft from an existing prescription.

        The original is left untouched.  Line items are copied with fresh
        ids unless ``medications`` is given.
        """
        with self.recording(principal, "renew", resolve_id(rx_ref)) as audit:
            original = self.load(rx_ref)
            check_renew(principal, original, self.context())
            items = medications or [
                m.model_copy(update={"id": str(uuid.uuid4())}) for m in original.medications
            ]
            issued = self.now()
            doctor = principal.user_id if principal.role == Role.DOCTOR else resolve_id(original.doctor)
            renewed = self.repository.create(Prescription(
                patient=resolve_id(original.patient),
                doctor=doctor,
                pharmacy=resolve_id(original.pharmacy),
                medications=list(items),
                diagnosis=original.diagnosis,
                notes=notes if notes is not None else f"Renewal of {original.number}. {original.notes}".strip(),
                prescription_date=issued,
                expiry_date=self._expiry_for(issued),
                is_renewal=True,
                original_prescription=original.id,
                renewal_count=original.renewal_count + 1,
            ))
            audit["metadata"]["renewal_id"] = renewed.id
            logger.info("Prescription %s renewed as %s", original.number, renewed.number)
            return renewed
