"""
Lab result lifecycle and correction path.

**State machine:**

    PRELIMINARY -> FINAL | CANCELLED
    FINAL -> AMENDED
    AMENDED -> AMENDED

Results are edited in place only while ``preliminary``.  Once validated
(``final``), a correction is an appended revision that keeps the
previous values; the result moves to ``amended``.

Creating a result requires the order to be ``in_progress`` or
``completed`` and moves an ``in_progress`` order to ``completed``.
Validating a result moves its order from ``completed`` to ``validated``.
"""

from __future__ import annotations

import logging
from typing import Optional

from careflow.access import manages_resource, require_access, require_modify
from careflow.exceptions import Conflict, InvalidTransition, ResourceAccessDenied
from careflow.lab_orders import LAB_ORDER_LIFECYCLE
from careflow.lifecycle import CheckContext, RecordService, StateMachine, apply_transition
from careflow.models import (
    AnalyteResult,
    LabOrder,
    LabOrderStatus,
    LabResult,
    LabResultRevision,
    LabResultStatus,
    Principal,
    Role,
)
from careflow.rbac import require_authenticated, require_permission
from careflow.refs import Ref, resolve_id
from careflow.store import Repository

logger = logging.getLogger(__name__)


LAB_RESULT_LIFECYCLE: StateMachine[LabResultStatus] = StateMachine(
    "Lab result",
    {
        LabResultStatus.PRELIMINARY: {LabResultStatus.FINAL, LabResultStatus.CANCELLED},
        LabResultStatus.FINAL: {LabResultStatus.AMENDED},
        LabResultStatus.AMENDED: {LabResultStatus.AMENDED},
        LabResultStatus.CANCELLED: set(),
    },
    initial=LabResultStatus.PRELIMINARY,
)

RESULT_ENTRY_ORDER_STATUSES = frozenset({LabOrderStatus.IN_PROGRESS, LabOrderStatus.COMPLETED})


def _require_result_author(result: LabResult, principal: Principal) -> None:
    if principal.role != Role.ADMIN and not manages_resource(result, principal):
        raise ResourceAccessDenied("You are not allowed to change this lab result.")


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def check_create(principal: Optional[Principal], order: LabOrder, ctx: CheckContext) -> LabResultStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "create_lab_results", ctx.registry)
    require_access(order, principal, ctx.directory, ctx.registry, ctx.now)
    if order.status not in RESULT_ENTRY_ORDER_STATUSES:
        raise InvalidTransition(
            "The lab order must be in progress or completed before results are entered."
        )
    return LAB_RESULT_LIFECYCLE.initial


def check_view(principal: Optional[Principal], result: LabResult, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "view_lab_results", ctx.registry)
    require_access(result, principal, ctx.directory, ctx.registry, ctx.now)


def check_update(principal: Optional[Principal], result: LabResult, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_lab_results", ctx.registry)
    require_modify(result, principal, ctx.directory, ctx.now)


def check_validate(principal: Optional[Principal], result: LabResult, ctx: CheckContext) -> LabResultStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "validate_lab_results", ctx.registry)
    _require_result_author(result, principal)
    LAB_RESULT_LIFECYCLE.validate(result.status, LabResultStatus.FINAL)
    return LabResultStatus.FINAL


def check_revise(principal: Optional[Principal], result: LabResult, ctx: CheckContext) -> LabResultStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_lab_results", ctx.registry)
    _require_result_author(result, principal)
    LAB_RESULT_LIFECYCLE.validate(result.status, LabResultStatus.AMENDED)
    return LabResultStatus.AMENDED


def check_cancel(principal: Optional[Principal], result: LabResult, ctx: CheckContext) -> LabResultStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_lab_results", ctx.registry)
    _require_result_author(result, principal)
    LAB_RESULT_LIFECYCLE.validate(result.status, LabResultStatus.CANCELLED)
    return LabResultStatus.CANCELLED


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class LabResultService(RecordService):
    """Enters, validates and revises lab results.

    Args:
        repository: Lab result storage.
        lab_orders: Lab order storage, for the linked order's status.
    """

    resource_type = "lab_result"

    def __init__(self, repository: Repository, lab_orders: Repository, **kwargs) -> None:
        super().__init__(repository, **kwargs)
        self.lab_orders = lab_orders

    def get(self, principal: Optional[Principal], result_ref: Ref) -> LabResult:
        result = self.load(result_ref)
        check_view(principal, result, self.context())
        return result

    def create(
        self,
        principal: Optional[Principal],
        order_ref: Ref,
        test_results: list[AnalyteResult],
    ) -> LabResult:
        """Enter results for a lab order.

        Raises:
            InvalidTransition: If the order is not being processed.
            Conflict: If the order already has a result.
        """
        with self.recording(principal, "create") as audit:
            with self.repository.locked(f"lab_order:{resolve_id(order_ref)}"):
                order = self.load(order_ref, self.lab_orders, "Lab order")
                check_create(principal, order, self.context())
                if self.repository.find(lab_order=order.id):
                    raise Conflict("A result already exists for this lab order. Update it instead.")

                # The order moves first so a lost race leaves no result behind.
                if order.status == LabOrderStatus.IN_PROGRESS:
                    apply_transition(LAB_ORDER_LIFECYCLE, self.lab_orders, order, LabOrderStatus.COMPLETED)
                result = self.repository.create(LabResult(
                    lab_order=order.id,
                    patient=resolve_id(order.patient),
                    doctor=resolve_id(order.doctor),
                    performed_by=principal.user_id,
                    test_results=list(test_results),
                    created_at=self.now(),
                ))

            audit["resource_id"] = result.id
            logger.info("Lab result %s entered for order %s", result.id, order.number)
            return result

    def update(
        self,
        principal: Optional[Principal],
        result_ref: Ref,
        test_results: list[AnalyteResult],
    ) -> LabResult:
        with self.recording(principal, "update", resolve_id(result_ref)):
            result = self.load(result_ref)
            check_update(principal, result, self.context())
            return self.repository.update_if(
                result.id,
                {"status": LabResultStatus.PRELIMINARY},
                {"test_results": list(test_results)},
            )

    def validate(self, principal: Optional[Principal], result_ref: Ref) -> LabResult:
        """Finalize a preliminary result and mark its order validated."""
        with self.recording(principal, "validate", resolve_id(result_ref)):
            result = self.load(result_ref)
            target = check_validate(principal, result, self.context())
            order = self.load(result.lab_order, self.lab_orders, "Lab order")
            LAB_ORDER_LIFECYCLE.validate(order.status, LabOrderStatus.VALIDATED)

            validated = apply_transition(
                LAB_RESULT_LIFECYCLE, self.repository, result, target,
                changes={"validated_by": principal.user_id, "validated_at": self.now()},
            )
            apply_transition(LAB_ORDER_LIFECYCLE, self.lab_orders, order, LabOrderStatus.VALIDATED)
            return validated

    def add_revision(
        self,
        principal: Optional[Principal],
        result_ref: Ref,
        reason: str,
        test_results: list[AnalyteResult],
        changes: str = "",
    ) -> LabResult:
        """Correct a validated result by appending a revision.

        The previous values are kept on the revision record.
        """
        if not reason or not reason.strip():
            raise ValueError("A revision reason is required.")
        with self.recording(principal, "revise", resolve_id(result_ref)):
            result = self.load(result_ref)
            target = check_revise(principal, result, self.context())
            revision = LabResultRevision(
                revised_at=self.now(),
                revised_by=principal.user_id,
                reason=reason.strip(),
                changes=changes,
                previous_test_results=list(result.test_results),
            )
            return apply_transition(
                LAB_RESULT_LIFECYCLE, self.repository, result, target,
                changes={
                    "test_results": list(test_results),
                    "revisions": [*result.revisions, revision],
                },
                expected={"revisions": result.revisions},
            )

    def cancel(self, principal: Optional[Principal], result_ref: Ref) -> LabResult:
        with self.recording(principal, "cancel", resolve_id(result_ref)):
            result = self.load(result_ref)
            target = check_cancel(principal, result, self.context())
            return apply_transition(LAB_RESULT_LIFECYCLE, self.repository, result, target)
