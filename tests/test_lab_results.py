"""
Tests for careflow.lab_results -- Lab result lifecycle and revisions.
"""

from __future__ import annotations

import threading

import pytest

from careflow.audit import AuditLog, AuditRecorder
from careflow.exceptions import Conflict, InvalidTransition, PermissionDenied, ResourceAccessDenied
from careflow.lab_results import LAB_RESULT_LIFECYCLE, LabResultService
from careflow.models import (
    AnalyteResult,
    LabOrder,
    LabOrderStatus,
    LabResultStatus,
    LabTest,
    PatientProfile,
    Principal,
    Role,
)
from careflow.store import InMemoryDirectory, InMemoryRepository

DOCTOR = Principal(user_id="doc_1", role=Role.DOCTOR)
NURSE = Principal(user_id="nurse_1", role=Role.NURSE)
LAB_TECH = Principal(user_id="lab_1", role=Role.LAB_TECHNICIAN)
ALICE = Principal(user_id="u_alice", role=Role.PATIENT)
BOB = Principal(user_id="u_bob", role=Role.PATIENT)

HB_NORMAL = [AnalyteResult(test_code="HB", value="13.9", unit="g/dL")]
HB_LOW = [AnalyteResult(test_code="HB", value="9.1", unit="g/dL", flag="low")]


def _make_service() -> LabResultService:
    directory = InMemoryDirectory(profiles=[
        PatientProfile(id="pp_alice", user="u_alice"),
        PatientProfile(id="pp_bob", user="u_bob"),
    ])
    return LabResultService(
        InMemoryRepository(),
        InMemoryRepository(),
        directory=directory,
        audit=AuditRecorder(AuditLog()),
    )


def _seed_order(service: LabResultService, status=LabOrderStatus.IN_PROGRESS) -> LabOrder:
    return service.lab_orders.create(LabOrder(
        patient="pp_alice",
        doctor="doc_1",
        tests=[LabTest(code="HB")],
        status=status,
    ))


def _order_status(service: LabResultService, order: LabOrder) -> LabOrderStatus:
    return service.lab_orders.find_by_id(order.id).status


class TestResultLifecycleTable:
    def test_amended_can_be_amended_again(self):
        assert LAB_RESULT_LIFECYCLE.can_transition(LabResultStatus.AMENDED, LabResultStatus.AMENDED)

    def test_preliminary_cannot_jump_to_amended(self):
        assert not LAB_RESULT_LIFECYCLE.can_transition(
            LabResultStatus.PRELIMINARY, LabResultStatus.AMENDED,
        )


class TestCreateResult:
    def test_entry_completes_in_progress_order(self):
        service = _make_service()
        order = _seed_order(service)
        result = service.create(LAB_TECH, order.id, HB_NORMAL)
        assert result.status == LabResultStatus.PRELIMINARY
        assert result.patient == "pp_alice"
        assert result.doctor == "doc_1"
        assert result.performed_by == "lab_1"
        assert _order_status(service, order) == LabOrderStatus.COMPLETED

    def test_order_must_be_processing(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.RECEIVED)
        with pytest.raises(InvalidTransition):
            service.create(LAB_TECH, order.id, HB_NORMAL)

    def test_one_result_per_order(self):
        service = _make_service()
        order = _seed_order(service)
        service.create(LAB_TECH, order.id, HB_NORMAL)
        with pytest.raises(Conflict):
            service.create(LAB_TECH, order.id, HB_LOW)

    @pytest.mark.parametrize("status", [LabOrderStatus.IN_PROGRESS, LabOrderStatus.COMPLETED])
    def test_concurrent_entries_leave_one_result(self, monkeypatch, status):
        """Two technicians entering results at once: one wins, nothing orphaned."""
        service = _make_service()
        order = _seed_order(service, status=status)
        gate = threading.Barrier(2, timeout=0.5)
        unguarded_find = service.repository.find

        def find_then_wait(*args, **kwargs):
            found = unguarded_find(*args, **kwargs)
            try:
                gate.wait()
            except threading.BrokenBarrierError:
                pass
            return found

        monkeypatch.setattr(service.repository, "find", find_then_wait)
        outcomes: list[str] = []

        def enter(tech: Principal) -> None:
            try:
                service.create(tech, order.id, HB_NORMAL)
                outcomes.append("ok")
            except Conflict:
                outcomes.append("conflict")

        techs = [LAB_TECH, Principal(user_id="lab_2", role=Role.LAB_TECHNICIAN)]
        threads = [threading.Thread(target=enter, args=(t,)) for t in techs]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["conflict", "ok"]
        assert len(service.repository) == 1
        assert _order_status(service, order) == LabOrderStatus.COMPLETED

    def test_doctor_cannot_enter_results(self):
        service = _make_service()
        order = _seed_order(service)
        with pytest.raises(PermissionDenied, match="create_lab_results"):
            service.create(DOCTOR, order.id, HB_NORMAL)


class TestValidateAndRevise:
    def test_preliminary_edit_in_place(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        updated = service.update(LAB_TECH, result.id, HB_LOW)
        assert updated.test_results[0].value == "9.1"
        assert updated.revisions == []

    def test_validation_finalizes_result_and_order(self):
        service = _make_service()
        order = _seed_order(service)
        result = service.create(LAB_TECH, order.id, HB_NORMAL)
        final = service.validate(LAB_TECH, result.id)
        assert final.status == LabResultStatus.FINAL
        assert final.validated_by == "lab_1"
        assert _order_status(service, order) == LabOrderStatus.VALIDATED

    def test_final_result_is_not_edited_in_place(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        service.validate(LAB_TECH, result.id)
        with pytest.raises(InvalidTransition):
            service.update(LAB_TECH, result.id, HB_LOW)

    def test_revision_keeps_previous_values(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        service.validate(LAB_TECH, result.id)

        amended = service.add_revision(LAB_TECH, result.id, "Transcription error", HB_LOW)
        assert amended.status == LabResultStatus.AMENDED
        assert amended.test_results[0].value == "9.1"
        assert amended.revisions[0].previous_test_results[0].value == "13.9"
        assert amended.revisions[0].revised_by == "lab_1"

        again = service.add_revision(LAB_TECH, result.id, "Unit correction", HB_NORMAL)
        assert len(again.revisions) == 2
        assert again.status == LabResultStatus.AMENDED

    def test_revision_requires_reason(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        service.validate(LAB_TECH, result.id)
        with pytest.raises(ValueError):
            service.add_revision(LAB_TECH, result.id, "", HB_LOW)

    def test_preliminary_cannot_be_revised(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        with pytest.raises(InvalidTransition):
            service.add_revision(LAB_TECH, result.id, "Too early", HB_LOW)

    def test_validate_twice_is_invalid(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        service.validate(LAB_TECH, result.id)
        with pytest.raises(InvalidTransition):
            service.validate(LAB_TECH, result.id)

    def test_nurse_cannot_validate(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        with pytest.raises(PermissionDenied):
            service.validate(NURSE, result.id)

    def test_cancel_preliminary_only(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        assert service.cancel(LAB_TECH, result.id).status == LabResultStatus.CANCELLED

        other = _make_service()
        final = other.create(LAB_TECH, _seed_order(other).id, HB_NORMAL)
        other.validate(LAB_TECH, final.id)
        with pytest.raises(InvalidTransition):
            other.cancel(LAB_TECH, final.id)


class TestResultVisibility:
    def test_ordering_doctor_and_patient_can_read(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        assert service.get(DOCTOR, result.id).id == result.id
        assert service.get(ALICE, result.id).id == result.id

    def test_other_patient_cannot_read(self):
        service = _make_service()
        result = service.create(LAB_TECH, _seed_order(service).id, HB_NORMAL)
        with pytest.raises(ResourceAccessDenied):
            service.get(BOB, result.id)
