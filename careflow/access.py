"""
Resource Access Rules: the ownership layer of the Authorization Engine.

Holding a permission says a principal may perform a *kind* of action;
these rules decide whether they may perform it on *this* record.

Access (read) rules, by record type:

* admin: always.
* holder of the type's "view all" permission: always.
* doctor / nurse: the record's ``doctor`` reference is the principal.
* lab_technician: every lab order and lab result.
* pharmacist: prescriptions routed to a pharmacy the principal works at.
* secretary: appointments and patient profiles (front desk, no clinical
  records).
* doctor: every patient profile.
* patient: the record's patient profile is the principal's own profile.
* documents additionally: the uploader, and any non-expired share.

Modification and cancellation narrow the set of owners (e.g. only the
prescribing doctor edits a prescription) and add a status gate.  Admin
overrides ownership but never the status gate, so a terminal record
stays terminal.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from careflow.config import get_settings
from careflow.exceptions import InvalidTransition, ResourceAccessDenied
from careflow.models import (
    Appointment,
    AppointmentStatus,
    Consultation,
    ConsultationStatus,
    Document,
    DocumentStatus,
    LabOrder,
    LabOrderStatus,
    LabResult,
    LabResultStatus,
    PatientProfile,
    Prescription,
    PrescriptionStatus,
    Principal,
    Role,
)
from careflow.refs import ref_in, same_ref
from careflow.registry import PermissionRegistry, default_registry
from careflow.store import Directory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Status gates
# ---------------------------------------------------------------------------

LAB_ORDER_LOCKED_STATUSES = frozenset({
    LabOrderStatus.IN_PROGRESS,
    LabOrderStatus.COMPLETED,
    LabOrderStatus.VALIDATED,
    LabOrderStatus.REPORTED,
    LabOrderStatus.CANCELLED,
    LabOrderStatus.REJECTED,
})
"""Lab order content (tests, priority, notes) is frozen in these statuses."""

LAB_ORDER_UNCANCELLABLE_STATUSES = frozenset({
    LabOrderStatus.COMPLETED,
    LabOrderStatus.VALIDATED,
    LabOrderStatus.REPORTED,
    LabOrderStatus.CANCELLED,
    LabOrderStatus.REJECTED,
})

PRESCRIPTION_LOCKED_STATUSES = frozenset({
    PrescriptionStatus.SIGNED,
    PrescriptionStatus.SENT,
    PrescriptionStatus.DISPENSED,
    PrescriptionStatus.PARTIALLY_DISPENSED,
    PrescriptionStatus.CANCELLED,
    PrescriptionStatus.EXPIRED,
})

PRESCRIPTION_UNCANCELLABLE_STATUSES = frozenset({
    PrescriptionStatus.DISPENSED,
    PrescriptionStatus.CANCELLED,
    PrescriptionStatus.EXPIRED,
})

VIEW_ALL_PERMISSIONS: dict[type, str] = {
    Appointment: "view_all_appointments",
    Consultation: "view_all_consultations",
    PatientProfile: "view_all_patients",
    LabOrder: "view_all_lab_orders",
    LabResult: "view_all_lab_orders",
    Prescription: "view_all_prescriptions",
    Document: "view_all_documents",
}
"""Permission that lets its holder read every record of a type."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _own_profile(principal: Principal, directory: Optional[Directory]) -> Optional[str]:
    if directory is None:
        return None
    return directory.patient_profile_for_user(principal.user_id)


def _is_own_patient(patient_ref: Any, principal: Principal, directory: Optional[Directory]) -> bool:
    profile_id = _own_profile(principal, directory)
    return profile_id is not None and same_ref(patient_ref, profile_id)


def _is_doctor_of(resource: Any, principal: Principal) -> bool:
    return same_ref(getattr(resource, "doctor", None), principal.user_id)


def _has_view_all(
    resource: Any,
    principal: Principal,
    registry: Optional[PermissionRegistry],
) -> bool:
    permission = VIEW_ALL_PERMISSIONS.get(type(resource))
    if permission is None:
        return False
    reg = registry if registry is not None else default_registry()
    if get_settings().bypass_respects_disabled_permissions:
        return reg.is_granted(principal, permission)
    return permission in reg.permissions_of(principal.role)


# ---------------------------------------------------------------------------
# Per-type read rules
# ---------------------------------------------------------------------------

def _access_appointment(appt: Appointment, principal: Principal, directory, now=None) -> bool:
    if principal.role == Role.SECRETARY:
        return True
    if principal.role in (Role.DOCTOR, Role.NURSE):
        return _is_doctor_of(appt, principal)
    if principal.role == Role.PATIENT:
        return _is_own_patient(appt.patient, principal, directory)
    return False


def _access_consultation(consultation: Consultation, principal: Principal, directory, now=None) -> bool:
    if principal.role in (Role.DOCTOR, Role.NURSE):
        return _is_doctor_of(consultation, principal)
    if principal.role == Role.PATIENT:
        return _is_own_patient(consultation.patient, principal, directory)
    return False


def _access_lab_record(record: LabOrder | LabResult, principal: Principal, directory, now=None) -> bool:
    if principal.role == Role.LAB_TECHNICIAN:
        return True
    if principal.role in (Role.DOCTOR, Role.NURSE):
        return _is_doctor_of(record, principal)
    if principal.role == Role.PATIENT:
        return _is_own_patient(record.patient, principal, directory)
    return False


def _access_prescription(rx: Prescription, principal: Principal, directory, now=None) -> bool:
    if principal.role in (Role.DOCTOR, Role.NURSE):
        return _is_doctor_of(rx, principal)
    if principal.role == Role.PHARMACIST:
        if directory is None or rx.pharmacy is None:
            return False
        return ref_in(rx.pharmacy, directory.pharmacies_for_user(principal.user_id))
    if principal.role == Role.PATIENT:
        return _is_own_patient(rx.patient, principal, directory)
    return False


def _access_document(doc: Document, principal: Principal, directory, now=None) -> bool:
    if principal.role == Role.PATIENT and not _is_own_patient(doc.patient, principal, directory):
        # A patient never sees another patient's document, even if shared.
        return False
    if same_ref(doc.uploaded_by, principal.user_id):
        return True
    if principal.role == Role.PATIENT:
        return True
    return doc.share_for(principal.user_id, now) is not None


def _access_patient_profile(profile: PatientProfile, principal: Principal, directory, now=None) -> bool:
    if principal.role in (Role.SECRETARY, Role.DOCTOR):
        return True
    if principal.role == Role.PATIENT:
        return same_ref(profile.user, principal.user_id)
    return False


_ACCESS_RULES: dict[type, Callable[..., bool]] = {
    Appointment: _access_appointment,
    Consultation: _access_consultation,
    LabOrder: _access_lab_record,
    LabResult: _access_lab_record,
    Prescription: _access_prescription,
    Document: _access_document,
    PatientProfile: _access_patient_profile,
}


def can_access_resource(
    resource: Any,
    principal: Principal,
    directory: Optional[Directory] = None,
    registry: Optional[PermissionRegistry] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Check whether ``principal`` may read ``resource``.

    Args:
        resource: A record model instance.
        principal: The acting principal.
        directory: Lookup for patient profiles and pharmacy assignments.
        registry: Registry for "view all" bypass checks.
        now: Reference time for share expiry.

    Returns:
        True if any access rule for the record's type matches.  Unknown
        record types are denied to everyone but admin.
    """
    if principal.role == Role.ADMIN:
        return True
    if _has_view_all(resource, principal, registry):
        return True
    rule = _ACCESS_RULES.get(type(resource))
    if rule is None:
        return False
    return rule(resource, principal, directory, now)


# ---------------------------------------------------------------------------
# Modification and cancellation
# ---------------------------------------------------------------------------

def manages_resource(
    resource: Any,
    principal: Principal,
    directory: Optional[Directory] = None,
) -> bool:
    """Ownership for writes; admin is handled by the caller."""
    role = principal.role
    if isinstance(resource, Appointment):
        if role == Role.SECRETARY:
            return True
        if role == Role.DOCTOR:
            return _is_doctor_of(resource, principal)
        if role == Role.PATIENT:
            return _is_own_patient(resource.patient, principal, directory)
        return False
    if isinstance(resource, LabOrder):
        if role == Role.LAB_TECHNICIAN:
            return True
        return role == Role.DOCTOR and _is_doctor_of(resource, principal)
    if isinstance(resource, LabResult):
        return role == Role.LAB_TECHNICIAN
    if isinstance(resource, (Prescription, Consultation)):
        return role == Role.DOCTOR and _is_doctor_of(resource, principal)
    if isinstance(resource, Document):
        return same_ref(resource.uploaded_by, principal.user_id)
    if isinstance(resource, PatientProfile):
        return _access_patient_profile(resource, principal, directory)
    return False


def _modifiable(resource: Any, now: Optional[datetime] = None) -> bool:
    if isinstance(resource, Appointment):
        return resource.status == AppointmentStatus.SCHEDULED
    if isinstance(resource, LabOrder):
        return resource.status not in LAB_ORDER_LOCKED_STATUSES
    if isinstance(resource, LabResult):
        return resource.status == LabResultStatus.PRELIMINARY
    if isinstance(resource, Prescription):
        return (
            resource.status not in PRESCRIPTION_LOCKED_STATUSES
            and not resource.is_past_expiry(now)
        )
    if isinstance(resource, Consultation):
        return resource.status != ConsultationStatus.ARCHIVED
    if isinstance(resource, Document):
        return resource.status == DocumentStatus.ACTIVE
    return True


def _cancellable(resource: Any, now: Optional[datetime] = None) -> bool:
    if isinstance(resource, Appointment):
        return resource.status == AppointmentStatus.SCHEDULED
    if isinstance(resource, LabOrder):
        return resource.status not in LAB_ORDER_UNCANCELLABLE_STATUSES
    if isinstance(resource, Prescription):
        return (
            resource.status not in PRESCRIPTION_UNCANCELLABLE_STATUSES
            and not resource.is_past_expiry(now)
        )
    return False


def _cancel_owner(resource: Any, principal: Principal, directory: Optional[Directory]) -> bool:
    if isinstance(resource, LabOrder):
        return principal.role == Role.DOCTOR and _is_doctor_of(resource, principal)
    return manages_resource(resource, principal, directory)


def can_modify_resource(
    resource: Any,
    principal: Principal,
    directory: Optional[Directory] = None,
    now: Optional[datetime] = None,
) -> bool:
    owner = principal.role == Role.ADMIN or manages_resource(resource, principal, directory)
    return owner and _modifiable(resource, now)


def can_cancel_resource(
    resource: Any,
    principal: Principal,
    directory: Optional[Directory] = None,
    now: Optional[datetime] = None,
) -> bool:
    owner = principal.role == Role.ADMIN or _cancel_owner(resource, principal, directory)
    return owner and _cancellable(resource, now)


# ---------------------------------------------------------------------------
# Raising forms
# ---------------------------------------------------------------------------

def _label(resource: Any) -> str:
    return type(resource).__name__


def _status_value(resource: Any) -> str:
    status = getattr(resource, "status", None)
    return getattr(status, "value", str(status))


def _deny(resource: Any, principal: Principal, verb: str) -> ResourceAccessDenied:
    logger.warning(
        "Resource access denied: user=%s role=%s %s %s=%s",
        principal.user_id, principal.role.value, verb,
        _label(resource), getattr(resource, "id", None),
    )
    return ResourceAccessDenied(f"You are not allowed to {verb} this {_label(resource).lower()}.")


def require_access(
    resource: Any,
    principal: Principal,
    directory: Optional[Directory] = None,
    registry: Optional[PermissionRegistry] = None,
    now: Optional[datetime] = None,
) -> None:
    if not can_access_resource(resource, principal, directory, registry, now):
        raise _deny(resource, principal, "access")


def require_modify(
    resource: Any,
    principal: Principal,
    directory: Optional[Directory] = None,
    now: Optional[datetime] = None,
) -> None:
    """Raise unless ``principal`` may edit ``resource`` in its current status.

    Raises:
        ResourceAccessDenied: If the principal does not own the record.
        InvalidTransition: If the record's status forbids edits.
    """
    if principal.role != Role.ADMIN and not manages_resource(resource, principal, directory):
        raise _deny(resource, principal, "modify")
    if not _modifiable(resource, now):
        raise InvalidTransition(
            f"{_label(resource)} cannot be modified in status '{_status_value(resource)}'."
        )


def require_cancel(
    resource: Any,
    principal: Principal,
    directory: Optional[Directory] = None,
    now: Optional[datetime] = None,
) -> None:
    """Raise unless ``principal`` may cancel ``resource`` in its current status.

    Raises:
        ResourceAccessDenied: If the principal does not own the record.
        InvalidTransition: If the record's status forbids cancellation.
    """
    if principal.role != Role.ADMIN and not _cancel_owner(resource, principal, directory):
        raise _deny(resource, principal, "cancel")
    if not _cancellable(resource, now):
        raise InvalidTransition(
            f"{_label(resource)} cannot be cancelled in status '{_status_value(resource)}'."
        )
