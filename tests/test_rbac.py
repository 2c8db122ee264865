"""
Tests for careflow.rbac -- permission layer of the Authorization Engine.
"""

import pytest

from careflow.exceptions import AuthenticationRequired, PermissionDenied, to_problem
from careflow.models import Principal, Role
from careflow.rbac import (
    check_permission,
    effective_permissions,
    evaluate_permission,
    get_permissions_for_role,
    require_any_permission,
    require_permission,
)


def _principal(role: Role, disabled: frozenset[str] = frozenset()) -> Principal:
    return Principal(user_id=f"{role.value}_1", role=role, disabled_permissions=disabled)


class TestRBAC:
    def test_doctor_can_create_prescriptions(self):
        assert check_permission(_principal(Role.DOCTOR), "create_prescriptions") is True

    def test_patient_cannot_create_prescriptions(self):
        assert check_permission(_principal(Role.PATIENT), "create_prescriptions") is False

    def test_pharmacist_can_dispense(self):
        assert check_permission(_principal(Role.PHARMACIST), "dispense_prescriptions") is True

    def test_nurse_cannot_cancel_any_appointment(self):
        assert check_permission(_principal(Role.NURSE), "cancel_any_appointment") is False

    def test_admin_can_access_system_settings(self):
        assert check_permission(_principal(Role.ADMIN), "access_system_settings") is True

    def test_require_permission_raises_on_denied(self):
        with pytest.raises(PermissionDenied):
            require_permission(_principal(Role.PATIENT), "sign_prescriptions")

    def test_require_permission_passes_on_allowed(self):
        decision = require_permission(_principal(Role.DOCTOR), "sign_prescriptions")
        assert decision.allowed is True

    def test_require_permission_without_principal(self):
        with pytest.raises(AuthenticationRequired):
            require_permission(None, "view_own_record")

    def test_get_permissions_returns_all_permissions(self):
        perms = get_permissions_for_role(Role.LAB_TECHNICIAN)
        assert perms["receive_specimens"] is True
        assert perms["create_prescriptions"] is False
        assert "create_users" in perms


class TestDisabledPermissions:
    def test_disabled_medical_history_edit_is_denied(self):
        """A doctor whose edit_medical_history is disabled is refused."""
        doctor = _principal(Role.DOCTOR, frozenset({"edit_medical_history"}))
        with pytest.raises(PermissionDenied) as excinfo:
            require_permission(doctor, "edit_medical_history")
        assert excinfo.value.status_code == 403
        assert excinfo.value.message == "missing permission: edit_medical_history"

    def test_other_permissions_unaffected(self):
        doctor = _principal(Role.DOCTOR, frozenset({"edit_medical_history"}))
        assert check_permission(doctor, "create_lab_orders") is True

    def test_effective_permissions_subtracts_disabled(self):
        doctor = _principal(Role.DOCTOR, frozenset({"sign_prescriptions"}))
        effective = effective_permissions(doctor)
        assert "sign_prescriptions" not in effective
        assert "create_prescriptions" in effective


class TestDecisions:
    def test_denial_reason_names_only_the_permission(self):
        decision = evaluate_permission(_principal(Role.SECRETARY), "view_all_users")
        assert decision.allowed is False
        assert decision.reason == "missing permission: view_all_users"
        assert decision.status_code == 403

    def test_unauthenticated_decision_is_401(self):
        decision = evaluate_permission(None, "view_own_record")
        assert decision.allowed is False
        assert decision.status_code == 401

    def test_require_any_returns_first_held(self):
        held = require_any_permission(
            _principal(Role.DOCTOR), ["schedule_any_doctor", "schedule_own_appointments"],
        )
        assert held == "schedule_own_appointments"

    def test_require_any_raises_naming_first(self):
        with pytest.raises(PermissionDenied, match="schedule_any_doctor"):
            require_any_permission(
                _principal(Role.PHARMACIST), ["schedule_any_doctor", "schedule_own_appointments"],
            )

    def test_require_any_of_nothing_is_denied(self):
        with pytest.raises(PermissionDenied) as excinfo:
            require_any_permission(_principal(Role.ADMIN), [])
        assert excinfo.value.message == "missing permission"

    def test_to_problem(self):
        problem = to_problem(PermissionDenied("missing permission: x"))
        assert problem == {
            "status": 403,
            "error": "permission_denied",
            "message": "missing permission: x",
        }
