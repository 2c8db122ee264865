"""
Core data models for the CareFlow authorization and lifecycle core.

Every clinical record carries one or more ownership references (doctor,
patient profile, pharmacy, uploader).  References are typed as ``Ref``:
callers may pass a bare identifier or a hydrated object, and the core
resolves both through ``careflow.refs.resolve_id`` before comparing.

Clinical records point at a *patient profile*, not at the patient's user
account.  A patient principal is matched to records by looking up the
profile keyed by the principal's user id.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from careflow.refs import Ref, resolve_id


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """The closed set of roles.  Every user holds exactly one."""

    ADMIN = "admin"
    DOCTOR = "doctor"
    NURSE = "nurse"
    SECRETARY = "secretary"
    PATIENT = "patient"
    PHARMACIST = "pharmacist"
    LAB_TECHNICIAN = "lab_technician"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class ConsultationStatus(str, enum.Enum):
    DRAFT = "draft"
    COMPLETED = "completed"
    REVIEWED = "reviewed"
    ARCHIVED = "archived"


class LabOrderStatus(str, enum.Enum):
    """Lab order lifecycle.

    ``rejected`` is a recognised status (e.g. imported records) but no
    transition in the table leads to it.
    """

    ORDERED = "ordered"
    COLLECTED = "collected"
    RECEIVED = "received"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VALIDATED = "validated"
    REPORTED = "reported"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class LabPriority(str, enum.Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


class LabResultStatus(str, enum.Enum):
    PRELIMINARY = "preliminary"
    FINAL = "final"
    AMENDED = "amended"
    CANCELLED = "cancelled"


class PrescriptionStatus(str, enum.Enum):
    DRAFT = "draft"
    SIGNED = "signed"
    SENT = "sent"
    DISPENSED = "dispensed"
    PARTIALLY_DISPENSED = "partially_dispensed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class DocumentStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"
    SUPERSEDED = "superseded"


class ShareAccessLevel(str, enum.Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    EDIT = "edit"


# ---------------------------------------------------------------------------
# Principal and directory records
# ---------------------------------------------------------------------------

class Principal(BaseModel):
    """The authenticated actor, as resolved by the authentication layer.

    ``disabled_permissions`` is a per-user subtraction from the role's
    permission set.  ``permissions`` is whatever the authentication layer
    delivered; the registry stays the source of truth for role grants.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    role: Role
    permissions: frozenset[str] = Field(default_factory=frozenset)
    disabled_permissions: frozenset[str] = Field(default_factory=frozenset)


class Allergy(BaseModel):
    allergen: str
    severity: str = Field(default="mild", pattern="^(mild|moderate|severe)$")
    notes: str = ""


class MedicalHistoryEntry(BaseModel):
    condition: str
    diagnosed_date: Optional[datetime] = None
    status: str = Field(default="active", pattern="^(active|resolved|chronic)$")
    notes: str = ""
    recorded_by: Optional[Ref] = None


class EmergencyContact(BaseModel):
    name: str = ""
    relationship: str = ""
    phone: str = ""


class Consents(BaseModel):
    data_sharing: bool = False
    treatment_consent: bool = False
    consent_date: Optional[datetime] = None


class PatientProfile(BaseModel):
    """Clinical profile of a patient, linked to the patient's user account.

    Allergies and medical history are append-only through the patient
    record service; the patient may edit only the emergency contact and
    consents.
    """

    id: str = Field(default_factory=_new_id)
    user: Optional[Ref] = Field(
        default=None,
        description="User account owning this profile (may be absent for walk-in records).",
    )
    display_name: str = ""
    blood_type: Optional[str] = Field(
        default=None, pattern="^(A|B|AB|O)[+-]$",
    )
    allergies: list[Allergy] = Field(default_factory=list)
    medical_history: list[MedicalHistoryEntry] = Field(default_factory=list)
    emergency_contact: Optional[EmergencyContact] = None
    consents: Consents = Field(default_factory=Consents)
    created_by: Optional[Ref] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Pharmacy(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    assigned_users: list[Ref] = Field(
        default_factory=list,
        description="Pharmacist user ids working at this pharmacy.",
    )
    is_active: bool = True


# ---------------------------------------------------------------------------
# Appointments and consultations
# ---------------------------------------------------------------------------

class Appointment(BaseModel):
    """A time-bound booking of a patient profile with a doctor."""

    id: str = Field(default_factory=_new_id)
    patient: Ref = Field(..., description="Patient profile reference.")
    doctor: Ref = Field(..., description="Doctor user reference.")
    start: datetime
    duration_minutes: int = Field(default=30, gt=0)
    reason: str = ""
    notes: str = ""
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    created_by: Optional[Ref] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[Ref] = None

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)


class VitalSigns(BaseModel):
    temperature_c: Optional[float] = Field(default=None, ge=25, le=45)
    heart_rate: Optional[int] = Field(default=None, gt=0)
    systolic: Optional[int] = Field(default=None, gt=0)
    diastolic: Optional[int] = Field(default=None, gt=0)
    weight_kg: Optional[float] = Field(default=None, gt=0)
    height_cm: Optional[float] = Field(default=None, gt=0)

    @property
    def bmi(self) -> Optional[float]:
        if self.weight_kg is None or self.height_cm is None:
            return None
        height_m = self.height_cm / 100
        return round(self.weight_kg / (height_m * height_m), 2)


class Consultation(BaseModel):
    """Clinical notes of one encounter.  At most one per appointment."""

    id: str = Field(default_factory=_new_id)
    patient: Ref
    doctor: Ref
    appointment: Optional[Ref] = None
    consultation_type: str = Field(
        default="initial",
        pattern="^(initial|follow_up|emergency|routine_checkup|specialist)$",
    )
    chief_complaint: str = ""
    diagnoses: list[str] = Field(default_factory=list)
    treatment_plan: str = ""
    private_notes: str = ""
    vital_signs: Optional[VitalSigns] = None
    status: ConsultationStatus = ConsultationStatus.DRAFT
    completed_at: Optional[datetime] = None
    reviewed_by: Optional[Ref] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Laboratory
# ---------------------------------------------------------------------------

class LabTest(BaseModel):
    code: str
    name: str = ""
    category: str = ""


class SpecimenCollection(BaseModel):
    collected_at: datetime = Field(default_factory=_utcnow)
    collected_by: Optional[Ref] = None
    condition: str = "good"
    notes: str = ""
    received_at: Optional[datetime] = None
    received_by: Optional[Ref] = None


class LabOrder(BaseModel):
    id: str = Field(default_factory=_new_id)
    number: str = Field(default_factory=lambda: f"LAB-{uuid.uuid4().hex[:8].upper()}")
    patient: Ref
    doctor: Ref
    consultation: Optional[Ref] = None
    tests: list[LabTest] = Field(default_factory=list)
    priority: LabPriority = LabPriority.ROUTINE
    clinical_notes: str = ""
    status: LabOrderStatus = LabOrderStatus.ORDERED
    specimen: Optional[SpecimenCollection] = None
    cancellation_reason: str = ""
    cancelled_by: Optional[Ref] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


class AnalyteResult(BaseModel):
    test_code: str
    value: str
    unit: str = ""
    flag: str = "normal"


class LabResultRevision(BaseModel):
    revised_at: datetime = Field(default_factory=_utcnow)
    revised_by: Ref
    reason: str
    changes: str = ""
    previous_test_results: list[AnalyteResult] = Field(default_factory=list)


class LabResult(BaseModel):
    """Results for a lab order.

    Once ``final``, results are never edited in place; corrections are
    appended as revisions.
    """

    id: str = Field(default_factory=_new_id)
    lab_order: Ref
    patient: Ref
    doctor: Ref
    performed_by: Optional[Ref] = None
    test_results: list[AnalyteResult] = Field(default_factory=list)
    status: LabResultStatus = LabResultStatus.PRELIMINARY
    validated_by: Optional[Ref] = None
    validated_at: Optional[datetime] = None
    revisions: list[LabResultRevision] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Prescriptions
# ---------------------------------------------------------------------------

class Medication(BaseModel):
    """A prescription line item."""

    id: str = Field(default_factory=_new_id)
    name: str
    dosage: str = ""
    quantity: int = Field(default=1, gt=0)
    instructions: str = ""


class Dispensation(BaseModel):
    medication_id: str
    dispensed_quantity: int = Field(..., gt=0)
    dispensed_by: Ref
    dispensed_at: datetime = Field(default_factory=_utcnow)
    batch_number: str = ""
    notes: str = ""


class Prescription(BaseModel):
    id: str = Field(default_factory=_new_id)
    number: str = Field(default_factory=lambda: f"RX-{uuid.uuid4().hex[:8].upper()}")
    patient: Ref
    doctor: Ref
    pharmacy: Optional[Ref] = None
    consultation: Optional[Ref] = None
    medications: list[Medication] = Field(default_factory=list)
    dispensations: list[Dispensation] = Field(default_factory=list)
    status: PrescriptionStatus = PrescriptionStatus.DRAFT
    diagnosis: str = ""
    notes: str = ""
    prescription_date: datetime = Field(default_factory=_utcnow)
    expiry_date: Optional[datetime] = None
    signed_by: Optional[Ref] = None
    signed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    dispensed_at: Optional[datetime] = None
    cancellation_reason: str = ""
    cancelled_by: Optional[Ref] = None
    cancelled_at: Optional[datetime] = None
    is_renewal: bool = False
    original_prescription: Optional[Ref] = None
    renewal_count: int = Field(default=0, ge=0)

    def dispensed_medication_ids(self) -> set[str]:
        return {d.medication_id for d in self.dispensations}

    def is_fully_dispensed(self) -> bool:
        """True once every line item has at least one dispensation record."""
        if not self.medications:
            return False
        dispensed = self.dispensed_medication_ids()
        return all(m.id in dispensed for m in self.medications)

    def is_past_expiry(self, now: Optional[datetime] = None) -> bool:
        if self.expiry_date is None:
            return False
        return (now or _utcnow()) > self.expiry_date


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentShare(BaseModel):
    user: Ref
    access_level: ShareAccessLevel = ShareAccessLevel.VIEW
    shared_by: Optional[Ref] = None
    shared_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Expired shares are treated as absent."""
        if self.expires_at is None:
            return True
        return self.expires_at > (now or _utcnow())


class Document(BaseModel):
    """Metadata for one version of a clinical document.

    The binary content lives in external storage; ``storage_key`` is an
    opaque pointer to it.
    """

    id: str = Field(default_factory=_new_id)
    title: str
    category: str = "other"
    patient: Ref
    uploaded_by: Ref
    storage_key: str = ""
    checksum: str = ""
    version: int = Field(default=1, ge=1)
    status: DocumentStatus = DocumentStatus.ACTIVE
    replaces_document: Optional[Ref] = None
    replaced_by: Optional[Ref] = None
    version_notes: str = ""
    shared_with: list[DocumentShare] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[Ref] = None

    def share_for(self, user: Ref, now: Optional[datetime] = None) -> Optional[DocumentShare]:
        """Return the active share entry for ``user``, if any."""
        user_id = resolve_id(user)
        for share in self.shared_with:
            if resolve_id(share.user) == user_id and share.is_active(now):
                return share
        return None


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class Decision(BaseModel):
    """Outcome of an authorization/lifecycle evaluation.

    ``reason`` is user-safe and only set on denial.  ``next_state`` is the
    status the record would move to if the action were applied.
    """

    allowed: bool
    reason: Optional[str] = None
    next_state: Optional[str] = None
    status_code: int = 200

    @classmethod
    def allow(cls, next_state: Optional[str] = None) -> "Decision":
        return cls(allowed=True, next_state=next_state)

    @classmethod
    def deny(cls, reason: str, status_code: int = 403) -> "Decision":
        return cls(allowed=False, reason=reason, status_code=status_code)
