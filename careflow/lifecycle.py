"""
Transition-table state machines for clinical record lifecycles.

Each record type declares a static table mapping a status to the set of
statuses it may move to.  States with no outgoing edges are terminal.
States cannot be skipped: a move is legal only if the target is listed
for the current state.

Writes go through ``apply_transition``, which re-checks the table and
then performs a compare-and-swap on the stored status, so two callers
that both read the same status cannot both move the record.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from careflow.audit import AuditRecorder
from careflow.config import CareflowSettings, get_settings
from careflow.exceptions import Conflict, InvalidTransition, NotFound
from careflow.refs import resolve_id
from careflow.registry import PermissionRegistry, default_registry
from careflow.store import Directory, Repository

logger = logging.getLogger(__name__)

StatusT = TypeVar("StatusT", bound=enum.Enum)


class StateMachine(Generic[StatusT]):
    """An immutable transition table for one record type.

    Args:
        name: Record type name used in error messages (e.g. ``"Lab order"``).
        transitions: Mapping of status to the statuses reachable from it.
            Statuses missing from the mapping are treated as terminal.
        initial: Status assigned to newly created records.
    """

    def __init__(
        self,
        name: str,
        transitions: dict[StatusT, set[StatusT]],
        initial: StatusT,
    ) -> None:
        self.name = name
        self._transitions = {k: frozenset(v) for k, v in transitions.items()}
        self.initial = initial

    def allowed_targets(self, state: StatusT) -> frozenset[StatusT]:
        return self._transitions.get(state, frozenset())

    def is_terminal(self, state: StatusT) -> bool:
        return not self.allowed_targets(state)

    def can_transition(self, current: StatusT, target: StatusT) -> bool:
        return target in self.allowed_targets(current)

    def validate(self, current: StatusT, target: StatusT) -> None:
        """Raise InvalidTransition if ``current -> target`` is not in the table."""
        if self.can_transition(current, target):
            return
        if self.is_terminal(current):
            raise InvalidTransition(
                f"{self.name} is {current.value} and can no longer change status."
            )
        allowed = sorted(s.value for s in self.allowed_targets(current))
        raise InvalidTransition(
            f"Cannot transition {self.name.lower()} from {current.value} to "
            f"{target.value}. Allowed transitions: {allowed}"
        )

    def states(self) -> set[StatusT]:
        found = set(self._transitions)
        for targets in self._transitions.values():
            found |= targets
        return found


def apply_transition(
    machine: StateMachine,
    repository: Repository,
    record: BaseModel,
    target: enum.Enum,
    changes: Optional[dict[str, Any]] = None,
    expected: Optional[dict[str, Any]] = None,
) -> Any:
    """Validate and persist a status change with a conditional write.

    Args:
        machine: The record type's state machine.
        repository: Where the record is stored.
        record: The record as read by the caller.
        target: The status to move to.
        changes: Extra fields written together with the new status.
        expected: Extra fields that must still hold at write time.

    Returns:
        The updated record.

    Raises:
        InvalidTransition: If the move is not in the table.
        Conflict: If the stored record changed since ``record`` was read.
    """
    current = record.status
    machine.validate(current, target)

    guard = {"status": current}
    guard.update(expected or {})
    payload = dict(changes or {})
    payload["status"] = target

    try:
        updated = repository.update_if(record.id, guard, payload)
    except Conflict:
        logger.warning(
            "%s %s: lost race moving %s -> %s",
            machine.name, record.id, current.value, target.value,
        )
        raise
    logger.info(
        "%s %s: %s -> %s", machine.name, record.id, current.value, target.value,
    )
    return updated


# ---------------------------------------------------------------------------
# Shared service plumbing
# ---------------------------------------------------------------------------

class CheckContext(BaseModel):
    """Collaborators and parameters a guard needs to reach a decision.

    Built by services from their own collaborators, and by ``decide`` from
    the caller-supplied context.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    directory: Optional[Any] = None
    registry: Optional[PermissionRegistry] = None
    now: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    params: dict[str, Any] = Field(default_factory=dict)


class RecordService:
    """Base for the per-record-type services.

    Holds the collaborators every service needs: the record repository,
    the directory, the permission registry, the audit recorder and a clock.
    """

    resource_type = "record"

    def __init__(
        self,
        repository: Repository,
        directory: Optional[Directory] = None,
        registry: Optional[PermissionRegistry] = None,
        audit: Optional[AuditRecorder] = None,
        settings: Optional[CareflowSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.directory = directory
        self.registry = registry if registry is not None else default_registry()
        self.audit = audit if audit is not None else AuditRecorder()
        self.settings = settings if settings is not None else get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def context(self, **params: Any) -> CheckContext:
        return CheckContext(
            directory=self.directory,
            registry=self.registry,
            now=self.now(),
            params=params,
        )

    def load(
        self,
        ref: Any,
        repository: Optional[Repository] = None,
        label: Optional[str] = None,
    ) -> Any:
        """Fetch a record by reference or raise NotFound."""
        repo = repository if repository is not None else self.repository
        record = repo.find_by_id(resolve_id(ref) or "")
        if record is None:
            label = label or self.resource_type.replace("_", " ").capitalize()
            raise NotFound(f"{label} not found.")
        return record

    def recording(self, principal: Any, action: str, resource_id: Optional[str] = None):
        return self.audit.recording(
            principal, f"{self.resource_type}.{action}", self.resource_type, resource_id,
        )


def append_note(existing: str, label: str, text: str) -> str:
    """Append a labelled line to a free-text notes field."""
    if not text:
        return existing
    line = f"{label}: {text}"
    return f"{existing}\n{line}" if existing else line
