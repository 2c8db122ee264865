"""
Audit Recorder and append-only, hash-chained audit log.

Every mutation attempt on a clinical record ends in exactly one audit
entry: ``SUCCESS`` once the write has committed, ``DENIED`` when the
authorization engine refused it, ``FAILURE`` when the lifecycle guard or
a conditional write stopped it.

Entries are linked by a SHA-256 hash chain: each stores the hash of its
predecessor, and ``AuditLog.verify_chain()`` detects any entry changed
after the fact.

Recording is best-effort.  ``AuditRecorder`` hands each entry to its sink
synchronously; if the sink raises, the error is logged and discarded so
that an audit outage never fails or rolls back a clinical action.
"""

from __future__ import annotations

import contextlib
import enum
import hashlib
import json
import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Protocol

from pydantic import BaseModel, Field

from careflow.exceptions import (
    AuthenticationRequired,
    CareflowError,
    PermissionDenied,
    ResourceAccessDenied,
)
from careflow.models import Principal

logger = logging.getLogger(__name__)


class AuditOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    DENIED = "DENIED"
    FAILURE = "FAILURE"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """One recorded action: who did what to which record, and how it ended."""

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the outcome.",
    )
    actor_id: str = Field(..., description="User id of the acting principal.")
    actor_role: str = Field(..., description="Role of the acting principal.")
    action: str = Field(
        ...,
        description="Action name, e.g. 'appointment.cancel' or 'prescription.dispense'.",
    )
    resource_type: str = Field(default="", description="Record type acted upon.")
    resource_id: str = Field(default="", description="Identifier of the record acted upon.")
    outcome: AuditOutcome = Field(...)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Action-specific detail (status moves, error codes).",
    )
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry in the chain."
        ),
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic sorted-JSON representation used for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "outcome": self.outcome.value,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# PHI redaction
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_PHI_KEYS = {
    "name", "full_name", "first_name", "last_name", "dob", "date_of_birth",
    "ssn", "email", "phone", "address", "diagnosis", "clinical_notes",
    "chief_complaint",
}


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with PHI-looking keys and values masked.

    Args:
        metadata: The original metadata dictionary.

    Returns:
        A new dictionary; nested dictionaries are redacted recursively.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            masked = value
            for pattern_name, pattern in _PHI_PATTERNS.items():
                masked = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", masked)
            redacted[key] = masked
        elif isinstance(value, dict):
            redacted[key] = redact_phi_from_metadata(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditSink(Protocol):
    def append(self, entry: AuditEntry) -> AuditEntry: ...


class AuditLog:
    """Append-only, thread-safe audit log with SHA-256 hash chaining.

    There is no update or delete.  ``verify_chain()`` walks the full log
    and reports the index of the first broken link.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the chain and store it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken link, or None if the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != entries[i - 1].compute_hash():
                return (False, i)
            if hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        outcome: Optional[AuditOutcome] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Return copies of the entries matching every given filter."""
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if action is not None and entry.action != action:
                continue
            if resource_id is not None and entry.resource_id != resource_id:
                continue
            if outcome is not None and entry.outcome != outcome:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable bundle for compliance review.

        Metadata is PHI-redacted; the chain verification result is included.
        """
        entries = self.query(time_start=time_start, time_end=time_end)
        exported = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_phi_from_metadata(entry.metadata)
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

_DENIAL_ERRORS = (AuthenticationRequired, PermissionDenied, ResourceAccessDenied)


def outcome_for(exc: CareflowError) -> AuditOutcome:
    """Authorization errors are DENIED; every other business error is FAILURE."""
    if isinstance(exc, _DENIAL_ERRORS):
        return AuditOutcome.DENIED
    return AuditOutcome.FAILURE


class AuditRecorder:
    """Best-effort dispatcher of audit entries to a sink.

    Args:
        sink: Anything with ``append(entry)``.  Defaults to a fresh
            in-memory ``AuditLog``.
    """

    def __init__(self, sink: Optional[AuditSink] = None) -> None:
        self.sink: AuditSink = sink if sink is not None else AuditLog()

    def record(
        self,
        principal: Optional[Principal],
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        outcome: AuditOutcome,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[AuditEntry]:
        """Build and dispatch one entry; never raises."""
        try:
            entry = AuditEntry(
                actor_id=principal.user_id if principal is not None else "anonymous",
                actor_role=principal.role.value if principal is not None else "anonymous",
                action=action,
                resource_type=resource_type,
                resource_id=resource_id or "",
                outcome=outcome,
                metadata=metadata or {},
            )
            return self.sink.append(entry)
        except Exception:
            logger.error(
                "Audit write failed for action=%s resource=%s/%s outcome=%s",
                action, resource_type, resource_id, outcome.value,
                exc_info=True,
            )
            return None

    @contextlib.contextmanager
    def recording(
        self,
        principal: Optional[Principal],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
    ) -> Iterator[dict[str, Any]]:
        """Record the outcome of the enclosed block.

        Yields a mutable dict: the block may set ``resource_id`` (e.g. after
        creating a record) and add ``metadata``.  A ``CareflowError`` leaving
        the block is recorded as DENIED or FAILURE and re-raised; a normal
        exit is recorded as SUCCESS.
        """
        ctx: dict[str, Any] = {"resource_id": resource_id, "metadata": {}}
        try:
            yield ctx
        except CareflowError as exc:
            metadata = dict(ctx["metadata"])
            metadata["error"] = exc.error_code
            self.record(
                principal, action, resource_type, ctx["resource_id"],
                outcome_for(exc), metadata,
            )
            raise
        self.record(
            principal, action, resource_type, ctx["resource_id"],
            AuditOutcome.SUCCESS, ctx["metadata"],
        )
