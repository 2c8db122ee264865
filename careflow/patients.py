"""
Patient record service.

Profiles are created by clinical or front-desk staff, one per user
account.  Staff who can reach a profile may edit its demographic and
contact fields; a patient editing their own profile may touch only the
emergency contact and consents.  Allergies and medical history are
append-only and need ``edit_medical_history``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from careflow.access import require_access, require_modify
from careflow.exceptions import Conflict, PermissionDenied
from careflow.lifecycle import CheckContext, RecordService
from careflow.models import Allergy, MedicalHistoryEntry, PatientProfile, Principal, Role
from careflow.rbac import require_any_permission, require_authenticated, require_permission
from careflow.refs import Ref, resolve_id

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({"display_name", "blood_type", "emergency_contact", "consents"})
PATIENT_EDITABLE_FIELDS = frozenset({"emergency_contact", "consents"})

VIEW_PERMISSIONS = ("view_all_patients", "view_assigned_patients", "view_own_record")


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def check_create(principal: Optional[Principal], profile: None, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "create_patient_records", ctx.registry)


def check_view(principal: Optional[Principal], profile: PatientProfile, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_any_permission(principal, VIEW_PERMISSIONS, ctx.registry)
    require_access(profile, principal, ctx.directory, ctx.registry, ctx.now)


def check_update(principal: Optional[Principal], profile: PatientProfile, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_any_permission(principal, ("view_assigned_patients", "view_own_record"), ctx.registry)
    require_modify(profile, principal, ctx.directory, ctx.now)
    fields = set(ctx.params.get("fields", ()))
    unknown = fields - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
    if principal.role == Role.PATIENT and fields - PATIENT_EDITABLE_FIELDS:
        raise PermissionDenied("Patients can only update emergency contact and consents.")


def check_add_medical_history(principal: Optional[Principal], profile: PatientProfile, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_medical_history", ctx.registry)


check_add_allergy = check_add_medical_history


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PatientRecordService(RecordService):
    resource_type = "patient"

    def get(self, principal: Optional[Principal], profile_ref: Ref) -> PatientProfile:
        profile = self.load(profile_ref)
        check_view(principal, profile, self.context())
        return profile

    def create(
        self,
        principal: Optional[Principal],
        user: Optional[Ref] = None,
        display_name: str = "",
        **fields: Any,
    ) -> PatientProfile:
        """Create a profile, optionally linked to a user account.

        Raises:
            Conflict: If the user already has a profile.
        """
        with self.recording(principal, "create") as audit:
            check_create(principal, None, self.context())
            user_id = resolve_id(user)
            profile = PatientProfile(
                user=user_id,
                display_name=display_name,
                created_by=principal.user_id,
                created_at=self.now(),
                **fields,
            )
            if user_id is None:
                created = self.repository.create(profile)
            else:
                with self.repository.locked(f"user:{user_id}"):
                    if self.repository.find(user=user_id):
                        raise Conflict("A patient profile already exists for this user.")
                    created = self.repository.create(profile)
            audit["resource_id"] = created.id
            logger.info("Patient profile %s created by %s", created.id, principal.user_id)
            return created

    def update(self, principal: Optional[Principal], profile_ref: Ref, **changes: Any) -> PatientProfile:
        with self.recording(principal, "update", resolve_id(profile_ref)) as audit:
            profile = self.load(profile_ref)
            check_update(principal, profile, self.context(fields=list(changes)))
            audit["metadata"]["fields"] = sorted(changes)
            checked = PatientProfile.model_validate({**profile.model_dump(), **changes})
            return self.repository.update_if(
                profile.id, {}, {field: getattr(checked, field) for field in changes},
            )

    def add_medical_history(
        self,
        principal: Optional[Principal],
        profile_ref: Ref,
        entry: MedicalHistoryEntry,
    ) -> PatientProfile:
        """Append a history entry stamped with the recording user."""
        with self.recording(principal, "add_medical_history", resolve_id(profile_ref)):
            profile = self.load(profile_ref)
            check_add_medical_history(principal, profile, self.context())
            entry = entry.model_copy(update={"recorded_by": principal.user_id})
            return self.repository.update_if(
                profile.id,
                {"medical_history": profile.medical_history},
                {"medical_history": [*profile.medical_history, entry]},
            )

    def add_allergy(self, principal: Optional[Principal], profile_ref: Ref, allergy: Allergy) -> PatientProfile:
        with self.recording(principal, "add_allergy", resolve_id(profile_ref)):
            profile = self.load(profile_ref)
            check_add_allergy(principal, profile, self.context())
            return self.repository.update_if(
                profile.id,
                {"allergies": profile.allergies},
                {"allergies": [*profile.allergies, allergy]},
            )
