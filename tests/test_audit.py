"""
Tests for careflow.audit -- Audit Recorder and hash-chained audit log.

Covers: append + chain verification, tamper detection, query filtering,
export format, PHI redaction, empty log verification, append ordering,
outcome classification, and best-effort recording.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from careflow.audit import (
    AuditEntry,
    AuditLog,
    AuditOutcome,
    AuditRecorder,
    outcome_for,
    redact_phi_from_metadata,
)
from careflow.exceptions import (
    AuthenticationRequired,
    Conflict,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ResourceAccessDenied,
)
from careflow.models import Principal, Role


def _make_entry(
    actor_id: str = "doctor_1",
    actor_role: str = "doctor",
    action: str = "prescription.sign",
    resource_id: str = "rx_1",
    outcome: AuditOutcome = AuditOutcome.SUCCESS,
    metadata: dict | None = None,
) -> AuditEntry:
    """Helper to create audit entries for testing."""
    return AuditEntry(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        resource_type=action.split(".")[0],
        resource_id=resource_id,
        outcome=outcome,
        metadata=metadata or {},
    )


class _BrokenSink:
    def append(self, entry):
        raise RuntimeError("audit store unavailable")


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChainVerification:
    def test_append_single_entry(self):
        log = AuditLog()
        appended = log.append(_make_entry())
        assert appended.previous_hash == ""
        assert len(log) == 1

    def test_append_multiple_entries_builds_chain(self):
        log = AuditLog()
        e1 = log.append(_make_entry(actor_id="actor_1"))
        e2 = log.append(_make_entry(actor_id="actor_2"))
        e3 = log.append(_make_entry(actor_id="actor_3"))

        assert e1.previous_hash == ""
        assert e2.previous_hash == e1.compute_hash()
        assert e3.previous_hash == e2.compute_hash()

    def test_chain_verification_passes_for_valid_log(self):
        log = AuditLog()
        for i in range(5):
            log.append(_make_entry(actor_id=f"actor_{i}"))
        valid, broken_at = log.verify_chain()
        assert valid is True
        assert broken_at is None


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_entry_breaks_chain(self):
        """If an entry is modified after appending, verify_chain detects it."""
        log = AuditLog()
        log.append(_make_entry(actor_id="actor_1"))
        log.append(_make_entry(actor_id="actor_2"))
        log.append(_make_entry(actor_id="actor_3"))

        log._entries[1].metadata = {"tampered": True}

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at == 1

    def test_rewritten_outcome_detected(self):
        log = AuditLog()
        log.append(_make_entry(outcome=AuditOutcome.DENIED))
        log.append(_make_entry())

        log._entries[0].outcome = AuditOutcome.SUCCESS

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at == 0

    def test_export_reports_broken_chain(self):
        log = AuditLog()
        log.append(_make_entry())
        log.append(_make_entry())
        log._entries[1].actor_id = "someone_else"
        export = log.export_for_review()
        assert export["export_metadata"]["chain_integrity"] == "BROKEN_AT_INDEX_1"


# ---------------------------------------------------------------------------
# 3. Empty log verification
# ---------------------------------------------------------------------------

class TestEmptyLog:
    def test_empty_log_is_valid(self):
        log = AuditLog()
        valid, broken_at = log.verify_chain()
        assert valid is True
        assert broken_at is None

    def test_empty_log_length_is_zero(self):
        assert len(AuditLog()) == 0


# ---------------------------------------------------------------------------
# 4. Query filtering
# ---------------------------------------------------------------------------

class TestQueryFiltering:
    def test_query_by_action(self):
        log = AuditLog()
        log.append(_make_entry(action="prescription.sign"))
        log.append(_make_entry(action="prescription.dispense"))
        log.append(_make_entry(action="prescription.sign"))

        results = log.query(action="prescription.dispense")
        assert len(results) == 1

    def test_query_by_outcome(self):
        log = AuditLog()
        log.append(_make_entry(outcome=AuditOutcome.DENIED))
        log.append(_make_entry(outcome=AuditOutcome.SUCCESS))
        assert len(log.query(outcome=AuditOutcome.DENIED)) == 1

    def test_query_by_time_range(self):
        log = AuditLog()
        now = datetime.now(timezone.utc)

        for offset in (timedelta(hours=2), timedelta(hours=1), timedelta(0)):
            entry = _make_entry()
            entry.timestamp = now - offset
            log.append(entry)

        results = log.query(
            time_start=now - timedelta(hours=1, minutes=30),
            time_end=now - timedelta(minutes=30),
        )
        assert len(results) == 1

    def test_query_by_actor_and_resource(self):
        log = AuditLog()
        log.append(_make_entry(actor_id="doctor_1", resource_id="rx_1"))
        log.append(_make_entry(actor_id="doctor_2", resource_id="rx_1"))
        log.append(_make_entry(actor_id="doctor_1", resource_id="rx_2"))

        results = log.query(actor_id="doctor_1", resource_id="rx_1")
        assert len(results) == 1

    def test_query_returns_copies(self):
        log = AuditLog()
        log.append(_make_entry())
        log.query()[0].metadata["injected"] = True
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 5. PHI redaction
# ---------------------------------------------------------------------------

class TestPHIRedaction:
    def test_redact_known_phi_keys(self):
        metadata = {
            "name": "John Doe",
            "diagnosis": "Type 2 diabetes",
            "email": "john@example.com",
            "status": "signed",
        }
        redacted = redact_phi_from_metadata(metadata)
        assert redacted["name"] == "[REDACTED]"
        assert redacted["diagnosis"] == "[REDACTED]"
        assert redacted["email"] == "[REDACTED]"
        assert redacted["status"] == "signed"

    def test_redact_patterns_in_values(self):
        metadata = {"reason": "Call back on 555-123-4567 or jane@example.org"}
        redacted = redact_phi_from_metadata(metadata)
        assert "555-123-4567" not in redacted["reason"]
        assert "[REDACTED-PHONE]" in redacted["reason"]
        assert "[REDACTED-EMAIL]" in redacted["reason"]

    def test_redact_nested_metadata(self):
        redacted = redact_phi_from_metadata({"outer": {"clinical_notes": "x", "count": 2}})
        assert redacted["outer"]["clinical_notes"] == "[REDACTED]"
        assert redacted["outer"]["count"] == 2

    def test_export_applies_redaction(self):
        log = AuditLog()
        log.append(_make_entry(metadata={"chief_complaint": "chest pain", "error": "conflict"}))
        entry = log.export_for_review()["entries"][0]
        assert entry["metadata"]["chief_complaint"] == "[REDACTED]"
        assert entry["metadata"]["error"] == "conflict"


# ---------------------------------------------------------------------------
# 6. Export format
# ---------------------------------------------------------------------------

class TestExportFormat:
    def test_export_contains_required_fields(self):
        log = AuditLog()
        log.append(_make_entry())
        export = log.export_for_review()

        meta = export["export_metadata"]
        assert meta["entry_count"] == 1
        assert meta["chain_integrity"] == "VALID"
        assert "exported_at" in meta
        assert export["entries"][0]["outcome"] == "SUCCESS"

    def test_export_time_window(self):
        log = AuditLog()
        old = _make_entry()
        old.timestamp = datetime.now(timezone.utc) - timedelta(days=3)
        log.append(old)
        log.append(_make_entry())
        export = log.export_for_review(time_start=datetime.now(timezone.utc) - timedelta(days=1))
        assert export["export_metadata"]["entry_count"] == 1


# ---------------------------------------------------------------------------
# 7. Append ordering
# ---------------------------------------------------------------------------

class TestAppendOrdering:
    def test_entries_maintain_insertion_order(self):
        log = AuditLog()
        ids = []
        for i in range(10):
            entry = _make_entry(actor_id=f"actor_{i}")
            log.append(entry)
            ids.append(entry.entry_id)
        assert [e.entry_id for e in log.query()] == ids


# ---------------------------------------------------------------------------
# 8. Recorder
# ---------------------------------------------------------------------------

class TestOutcomeClassification:
    @pytest.mark.parametrize("exc", [
        AuthenticationRequired("x"), PermissionDenied("x"), ResourceAccessDenied("x"),
    ])
    def test_authorization_errors_are_denied(self, exc):
        assert outcome_for(exc) == AuditOutcome.DENIED

    @pytest.mark.parametrize("exc", [Conflict("x"), InvalidTransition("x"), NotFound("x")])
    def test_other_errors_are_failures(self, exc):
        assert outcome_for(exc) == AuditOutcome.FAILURE


class TestAuditRecorder:
    def test_record_success(self):
        log = AuditLog()
        recorder = AuditRecorder(log)
        principal = Principal(user_id="doc_1", role=Role.DOCTOR)
        entry = recorder.record(
            principal, "prescription.sign", "prescription", "rx_1", AuditOutcome.SUCCESS,
        )
        assert entry is not None
        assert entry.actor_role == "doctor"
        assert len(log) == 1

    def test_anonymous_principal(self):
        log = AuditLog()
        AuditRecorder(log).record(None, "appointment.book", "appointment", None, AuditOutcome.DENIED)
        assert log.query()[0].actor_id == "anonymous"

    def test_sink_failure_is_swallowed(self, caplog):
        recorder = AuditRecorder(_BrokenSink())
        principal = Principal(user_id="doc_1", role=Role.DOCTOR)
        with caplog.at_level("ERROR", logger="careflow.audit"):
            result = recorder.record(
                principal, "prescription.sign", "prescription", "rx_1", AuditOutcome.SUCCESS,
            )
        assert result is None
        assert "Audit write failed" in caplog.text

    def test_recording_block_success_sets_resource(self):
        log = AuditLog()
        recorder = AuditRecorder(log)
        with recorder.recording(None, "document.upload", "document") as audit:
            audit["resource_id"] = "doc_9"
            audit["metadata"]["version"] = 1
        entry = log.query()[0]
        assert entry.outcome == AuditOutcome.SUCCESS
        assert entry.resource_id == "doc_9"
        assert entry.metadata == {"version": 1}

    def test_recording_block_reraises_and_records_error_code(self):
        log = AuditLog()
        recorder = AuditRecorder(log)
        with pytest.raises(Conflict):
            with recorder.recording(None, "appointment.book", "appointment"):
                raise Conflict("slot taken")
        entry = log.query()[0]
        assert entry.outcome == AuditOutcome.FAILURE
        assert entry.metadata["error"] == "conflict"

    def test_recording_ignores_non_business_errors(self):
        log = AuditLog()
        recorder = AuditRecorder(log)
        with pytest.raises(ValueError):
            with recorder.recording(None, "lab_order.cancel", "lab_order", "lo_1"):
                raise ValueError("reason is required")
        assert len(log) == 0

    def test_action_survives_sink_outage(self):
        recorder = AuditRecorder(_BrokenSink())
        with recorder.recording(None, "document.archive", "document", "doc_1") as audit:
            audit["metadata"]["ok"] = True
        assert audit["metadata"] == {"ok": True}
