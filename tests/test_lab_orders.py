"""
Tests for careflow.lab_orders -- Lab order lifecycle.

Covers: creation, content edits and the content freeze, specimen
collection and reception, processing status updates, cancellation
rules, visibility, and audit metadata.
"""

from __future__ import annotations

import pytest

from careflow.audit import AuditLog, AuditOutcome, AuditRecorder
from careflow.exceptions import (
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ResourceAccessDenied,
)
from careflow.lab_orders import LabOrderService
from careflow.models import (
    LabOrder,
    LabOrderStatus,
    LabPriority,
    LabTest,
    PatientProfile,
    Principal,
    Role,
)
from careflow.store import InMemoryDirectory, InMemoryRepository

DOCTOR = Principal(user_id="doc_1", role=Role.DOCTOR)
OTHER_DOCTOR = Principal(user_id="doc_2", role=Role.DOCTOR)
NURSE = Principal(user_id="nurse_1", role=Role.NURSE)
LAB_TECH = Principal(user_id="lab_1", role=Role.LAB_TECHNICIAN)
ADMIN = Principal(user_id="admin_1", role=Role.ADMIN)
PATIENT = Principal(user_id="u_alice", role=Role.PATIENT)

CBC = LabTest(code="CBC", name="Complete blood count", category="hematology")
LIPIDS = LabTest(code="LIP", name="Lipid panel", category="chemistry")


def _make_service(log: AuditLog | None = None) -> LabOrderService:
    return LabOrderService(
        InMemoryRepository(),
        directory=InMemoryDirectory(profiles=[PatientProfile(id="pp_alice", user="u_alice")]),
        audit=AuditRecorder(log if log is not None else AuditLog()),
    )


def _make_order(service: LabOrderService, **kwargs) -> LabOrder:
    return service.create(DOCTOR, "pp_alice", [CBC], **kwargs)


def _seed_order(service: LabOrderService, status: LabOrderStatus) -> LabOrder:
    order = LabOrder(patient="pp_alice", doctor="doc_1", tests=[CBC], status=status)
    return service.repository.create(order)


def _advance_to(service: LabOrderService, order: LabOrder, status: LabOrderStatus) -> LabOrder:
    order = service.collect_specimen(NURSE, order.id)
    order = service.receive_specimen(LAB_TECH, order.id)
    path = [
        LabOrderStatus.IN_PROGRESS,
        LabOrderStatus.COMPLETED,
        LabOrderStatus.VALIDATED,
        LabOrderStatus.REPORTED,
    ]
    for step in path[: path.index(status) + 1] if status in path else []:
        order = service.update_status(LAB_TECH, order.id, step)
    return order


# ---------------------------------------------------------------------------
# 1. Creation
# ---------------------------------------------------------------------------

class TestCreate:
    def test_doctor_creates_order(self):
        order = _make_order(_make_service(), priority=LabPriority.URGENT)
        assert order.status == LabOrderStatus.ORDERED
        assert order.doctor == "doc_1"
        assert order.priority == LabPriority.URGENT
        assert order.number.startswith("LAB-")

    def test_order_needs_tests(self):
        with pytest.raises(ValueError):
            _make_service().create(DOCTOR, "pp_alice", [])

    def test_nurse_cannot_order(self):
        with pytest.raises(PermissionDenied, match="create_lab_orders"):
            _make_service().create(NURSE, "pp_alice", [CBC])


# ---------------------------------------------------------------------------
# 2. Content edits
# ---------------------------------------------------------------------------

class TestUpdate:
    def test_owning_doctor_edits_ordered(self):
        service = _make_service()
        order = _make_order(service)
        updated = service.update(DOCTOR, order.id, tests=[CBC, LIPIDS], clinical_notes="fasting")
        assert [t.code for t in updated.tests] == ["CBC", "LIP"]
        assert updated.clinical_notes == "fasting"

    def test_other_doctor_cannot_edit(self):
        service = _make_service()
        order = _make_order(service)
        with pytest.raises(ResourceAccessDenied):
            service.update(OTHER_DOCTOR, order.id, tests=[LIPIDS])

    def test_reported_order_tests_are_frozen(self):
        """Changing the test list of a reported order is refused."""
        service = _make_service()
        order = _advance_to(service, _make_order(service), LabOrderStatus.REPORTED)
        assert order.status == LabOrderStatus.REPORTED
        with pytest.raises(InvalidTransition):
            service.update(DOCTOR, order.id, tests=[LIPIDS])
        assert [t.code for t in service.repository.find_by_id(order.id).tests] == ["CBC"]

    def test_admin_cannot_edit_reported_order(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.REPORTED)
        with pytest.raises(InvalidTransition):
            service.update(ADMIN, order.id, tests=[LIPIDS])

    @pytest.mark.parametrize("status", [
        LabOrderStatus.IN_PROGRESS, LabOrderStatus.COMPLETED,
        LabOrderStatus.VALIDATED, LabOrderStatus.CANCELLED,
    ])
    def test_content_frozen_once_processing_started(self, status):
        service = _make_service()
        order = _seed_order(service, status)
        with pytest.raises(InvalidTransition):
            service.update(DOCTOR, order.id, priority=LabPriority.STAT)

    def test_collected_order_still_editable(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.COLLECTED)
        assert service.update(DOCTOR, order.id, priority=LabPriority.STAT).priority == LabPriority.STAT


# ---------------------------------------------------------------------------
# 3. Specimen handling and processing
# ---------------------------------------------------------------------------

class TestProcessing:
    def test_collect_and_receive(self):
        service = _make_service()
        order = _make_order(service)
        collected = service.collect_specimen(NURSE, order.id, condition="hemolyzed")
        assert collected.status == LabOrderStatus.COLLECTED
        assert collected.specimen.collected_by == "nurse_1"
        assert collected.specimen.condition == "hemolyzed"

        received = service.receive_specimen(LAB_TECH, order.id)
        assert received.status == LabOrderStatus.RECEIVED
        assert received.specimen.received_by == "lab_1"
        assert received.specimen.collected_by == "nurse_1"

    def test_patient_cannot_collect(self):
        service = _make_service()
        order = _make_order(service)
        with pytest.raises(PermissionDenied):
            service.collect_specimen(PATIENT, order.id)

    def test_cannot_skip_states(self):
        service = _make_service()
        order = _make_order(service)
        with pytest.raises(InvalidTransition):
            service.update_status(LAB_TECH, order.id, LabOrderStatus.IN_PROGRESS)

    def test_cannot_collect_twice(self):
        service = _make_service()
        order = _make_order(service)
        service.collect_specimen(NURSE, order.id)
        with pytest.raises(InvalidTransition):
            service.collect_specimen(NURSE, order.id)

    def test_status_update_cannot_cancel(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.RECEIVED)
        with pytest.raises(InvalidTransition, match="cancellation"):
            service.update_status(LAB_TECH, order.id, LabOrderStatus.CANCELLED)

    def test_reported_is_terminal(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.REPORTED)
        with pytest.raises(InvalidTransition, match="can no longer change status"):
            service.update_status(LAB_TECH, order.id, LabOrderStatus.VALIDATED)

    def test_status_update_is_audited_with_move(self):
        log = AuditLog()
        service = _make_service(log)
        order = _seed_order(service, LabOrderStatus.RECEIVED)
        service.update_status(LAB_TECH, order.id, LabOrderStatus.IN_PROGRESS)
        entry = log.query(action="lab_order.update_status")[0]
        assert entry.outcome == AuditOutcome.SUCCESS
        assert entry.metadata == {"from_status": "received", "to_status": "in_progress"}


# ---------------------------------------------------------------------------
# 4. Cancellation
# ---------------------------------------------------------------------------

class TestCancel:
    def test_cancel_requires_reason(self):
        log = AuditLog()
        service = _make_service(log)
        order = _make_order(service)
        with pytest.raises(ValueError):
            service.cancel(DOCTOR, order.id, reason="   ")
        assert len(log.query(action="lab_order.cancel")) == 0

    def test_owning_doctor_cancels(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.COLLECTED)
        cancelled = service.cancel(DOCTOR, order.id, reason=" Duplicate order ")
        assert cancelled.status == LabOrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "Duplicate order"
        assert cancelled.cancelled_by == "doc_1"

    def test_in_progress_can_be_cancelled(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.IN_PROGRESS)
        assert service.cancel(DOCTOR, order.id, reason="Sample lost").status == LabOrderStatus.CANCELLED

    def test_completed_cannot_be_cancelled(self):
        service = _make_service()
        order = _seed_order(service, LabOrderStatus.COMPLETED)
        with pytest.raises(InvalidTransition):
            service.cancel(DOCTOR, order.id, reason="Too late")

    def test_other_doctor_cannot_cancel(self):
        service = _make_service()
        order = _make_order(service)
        with pytest.raises(ResourceAccessDenied):
            service.cancel(OTHER_DOCTOR, order.id, reason="Not mine")

    def test_lab_technician_cannot_cancel(self):
        service = _make_service()
        order = _make_order(service)
        with pytest.raises(PermissionDenied):
            service.cancel(LAB_TECH, order.id, reason="Rejected specimen")


# ---------------------------------------------------------------------------
# 5. Visibility
# ---------------------------------------------------------------------------

class TestView:
    def test_lab_technician_sees_every_order(self):
        service = _make_service()
        order = _make_order(service)
        assert service.get(LAB_TECH, order.id).id == order.id

    def test_other_doctor_cannot_view(self):
        service = _make_service()
        order = _make_order(service)
        with pytest.raises(ResourceAccessDenied):
            service.get(OTHER_DOCTOR, order.id)

    def test_missing_order(self):
        with pytest.raises(NotFound, match="Lab order not found"):
            _make_service().get(DOCTOR, "missing")
