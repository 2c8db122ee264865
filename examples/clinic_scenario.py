"""
Synthetic Scenario: A Day at the Clinic
=======================================

This script walks one synthetic patient through the CareFlow core using
in-memory storage.  No real patient data is used.

Steps demonstrated:
  1. Load the permission registry and set up the directory
  2. Book an appointment, hit a scheduling conflict, and hold the consultation
  3. Order labs and move the order through the laboratory
  4. Enter, validate and revise the result
  5. Draft, sign, send and dispense a prescription
  6. Upload a document, publish a new version and share it
  7. Pre-flight actions with decide()
  8. Export the audit log for review

Usage:
    python -m examples.clinic_scenario
    # or: python examples/clinic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from careflow.appointments import AppointmentService
from careflow.audit import AuditLog, AuditRecorder
from careflow.consultations import ConsultationService
from careflow.decisions import decide
from careflow.documents import DocumentService
from careflow.exceptions import CareflowError, to_problem
from careflow.lab_orders import LabOrderService
from careflow.lab_results import LabResultService
from careflow.models import (
    AnalyteResult,
    LabOrderStatus,
    LabTest,
    Medication,
    MedicalHistoryEntry,
    PatientProfile,
    Pharmacy,
    Principal,
    Role,
    VitalSigns,
)
from careflow.patients import PatientRecordService
from careflow.prescriptions import PrescriptionService
from careflow.registry import default_registry
from careflow.store import InMemoryDirectory, InMemoryRepository


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    _banner("CareFlow Synthetic Scenario")

    # ------------------------------------------------------------------
    # Step 1: Registry, directory and services
    # ------------------------------------------------------------------
    _banner("Step 1: Registry and Directory")

    registry = default_registry()
    print(f"Registry v{registry.version}: {len(registry)} permissions in {registry.categories()}")

    directory = InMemoryDirectory(
        profiles=[PatientProfile(id="pp_demo", user="u_demo", display_name="Demo Patient")],
        pharmacies=[Pharmacy(id="ph_demo", name="Demo Pharmacy", assigned_users=["pharm_1"])],
    )
    log = AuditLog()
    shared = dict(directory=directory, registry=registry, audit=AuditRecorder(log))

    appointment_store = InMemoryRepository()
    appointments = AppointmentService(appointment_store, **shared)
    patients = PatientRecordService(InMemoryRepository(directory.profiles), **shared)
    consultations = ConsultationService(InMemoryRepository(), appointment_store, **shared)
    order_store = InMemoryRepository()
    lab_orders = LabOrderService(order_store, **shared)
    lab_results = LabResultService(InMemoryRepository(), order_store, **shared)
    prescriptions = PrescriptionService(InMemoryRepository(), **shared)
    documents = DocumentService(InMemoryRepository(), **shared)

    secretary = Principal(user_id="sec_1", role=Role.SECRETARY)
    doctor = Principal(user_id="dr_1", role=Role.DOCTOR)
    nurse = Principal(user_id="nurse_1", role=Role.NURSE)
    lab_tech = Principal(user_id="lab_1", role=Role.LAB_TECHNICIAN)
    pharmacist = Principal(user_id="pharm_1", role=Role.PHARMACIST)
    patient = Principal(user_id="u_demo", role=Role.PATIENT)

    # ------------------------------------------------------------------
    # Step 2: Scheduling and consultation
    # ------------------------------------------------------------------
    _banner("Step 2: Scheduling and Consultation")

    tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).date()
    slots = appointments.available_slots(secretary, "dr_1", tomorrow)
    appt = appointments.book(secretary, "dr_1", slots[0], patient="pp_demo", reason="Fatigue")
    print(f"Booked {appt.id} at {appt.start.isoformat()} ({appt.status.value})")

    try:
        appointments.book(patient, "dr_1", slots[0] + timedelta(minutes=15))
    except CareflowError as exc:
        print(f"Second booking refused: {to_problem(exc)}")

    visit = consultations.create(nurse, "pp_demo", appointment=appt.id, doctor="dr_1", chief_complaint="Fatigue")
    consultations.record_vital_signs(doctor, visit.id, VitalSigns(temperature_c=36.9, weight_kg=64, height_cm=168))
    consultations.update(doctor, visit.id, diagnoses=["Suspected anaemia"], treatment_plan="CBC, iron")
    visit = consultations.complete(doctor, visit.id)
    print(f"Consultation {visit.id}: {visit.status.value}, BMI {visit.vital_signs.bmi}")

    profile = patients.add_medical_history(doctor, "pp_demo", MedicalHistoryEntry(condition="Anaemia"))
    print(f"Medical history: {[e.condition for e in profile.medical_history]}")

    appointments.complete(doctor, appt.id, notes="Order CBC")
    print(f"Appointment completed by {doctor.user_id}")

    # ------------------------------------------------------------------
    # Step 3: Laboratory
    # ------------------------------------------------------------------
    _banner("Step 3: Lab Order")

    order = lab_orders.create(doctor, "pp_demo", [LabTest(code="CBC", name="Complete blood count")])
    lab_orders.collect_specimen(nurse, order.id)
    lab_orders.receive_specimen(lab_tech, order.id)
    order = lab_orders.update_status(lab_tech, order.id, LabOrderStatus.IN_PROGRESS)
    print(f"Lab order {order.number}: {order.status.value}")

    # ------------------------------------------------------------------
    # Step 4: Results
    # ------------------------------------------------------------------
    _banner("Step 4: Lab Result")

    result = lab_results.create(lab_tech, order.id, [AnalyteResult(test_code="HB", value="11.2", unit="g/dL")])
    result = lab_results.validate(lab_tech, result.id)
    result = lab_results.add_revision(
        lab_tech, result.id, "Analyzer recalibrated",
        [AnalyteResult(test_code="HB", value="11.8", unit="g/dL")],
    )
    print(f"Result {result.id}: {result.status.value}, {len(result.revisions)} revision(s)")
    print(f"Order now: {lab_orders.get(doctor, order.id).status.value}")

    # ------------------------------------------------------------------
    # Step 5: Prescription
    # ------------------------------------------------------------------
    _banner("Step 5: Prescription")

    rx = prescriptions.create(doctor, "pp_demo", [
        Medication(name="Ferrous sulfate", dosage="325 mg", quantity=30),
        Medication(name="Vitamin C", dosage="500 mg", quantity=30),
    ])
    prescriptions.sign(doctor, rx.id)
    rx = prescriptions.send_to_pharmacy(doctor, rx.id, pharmacy="ph_demo")
    for medication in rx.medications:
        rx = prescriptions.dispense(pharmacist, rx.id, medication.id)
        print(f"Dispensed {medication.name}: prescription is {rx.status.value}")

    # ------------------------------------------------------------------
    # Step 6: Documents
    # ------------------------------------------------------------------
    _banner("Step 6: Documents")

    doc = documents.upload(doctor, "pp_demo", "Visit summary", "blob://summary-v1")
    doc_v2 = documents.create_new_version(doctor, doc.id, "blob://summary-v2", version_notes="Added labs")
    documents.share(doctor, doc_v2.id, "nurse_1")
    history = documents.version_history(doc.id)
    print("Versions: " + ", ".join(f"v{d.version}={d.status.value}" for d in history))

    # ------------------------------------------------------------------
    # Step 7: decide()
    # ------------------------------------------------------------------
    _banner("Step 7: Pre-flight Decisions")

    context = {"directory": directory, "registry": registry}
    for principal, action, target in [
        (doctor, "prescription.renew", rx),
        (patient, "prescription.view", rx),
        (pharmacist, "document.view", doc_v2),
        (nurse, "lab_order.cancel", order),
        (patient, "consultation.view", visit),
        (patient, "patient.update", profile),
    ]:
        decision = decide(principal, action, target, context)
        print(f"{principal.role.value:>14} {action:<20} -> {decision.model_dump(exclude_none=True)}")

    # ------------------------------------------------------------------
    # Step 8: Audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Audit Export")

    export = log.export_for_review()
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")


if __name__ == "__main__":
    main()
