"""
Lab order lifecycle.

**State machine:**

    ORDERED -> COLLECTED -> RECEIVED -> IN_PROGRESS -> COMPLETED -> VALIDATED -> REPORTED

Any status up to and including IN_PROGRESS may also move to CANCELLED.
CANCELLED, REJECTED and REPORTED are terminal; no transition leads to
REJECTED.

Order content (tests, priority, clinical notes) is frozen once the
laboratory has started work (IN_PROGRESS onwards) and in terminal
statuses.  Cancellation requires a reason and is refused once results
exist (COMPLETED onwards).

Specimen handling (collect, receive, processing status) is open to
nurses and lab technicians on any order; the ordering doctor and admin
may also record it.
"""

from __future__ import annotations

import logging
from typing import Optional

from careflow.access import require_access, require_cancel, require_modify
from careflow.exceptions import InvalidTransition, ResourceAccessDenied
from careflow.lifecycle import CheckContext, RecordService, StateMachine, apply_transition
from careflow.models import (
    LabOrder,
    LabOrderStatus,
    LabPriority,
    LabTest,
    Principal,
    Role,
    SpecimenCollection,
)
from careflow.rbac import require_any_permission, require_authenticated, require_permission
from careflow.refs import Ref, resolve_id, same_ref

logger = logging.getLogger(__name__)


LAB_ORDER_LIFECYCLE: StateMachine[LabOrderStatus] = StateMachine(
    "Lab order",
    {
        LabOrderStatus.ORDERED: {LabOrderStatus.COLLECTED, LabOrderStatus.CANCELLED},
        LabOrderStatus.COLLECTED: {LabOrderStatus.RECEIVED, LabOrderStatus.CANCELLED},
        LabOrderStatus.RECEIVED: {LabOrderStatus.IN_PROGRESS, LabOrderStatus.CANCELLED},
        LabOrderStatus.IN_PROGRESS: {LabOrderStatus.COMPLETED, LabOrderStatus.CANCELLED},
        LabOrderStatus.COMPLETED: {LabOrderStatus.VALIDATED},
        LabOrderStatus.VALIDATED: {LabOrderStatus.REPORTED},
        LabOrderStatus.REPORTED: set(),
        LabOrderStatus.CANCELLED: set(),
        LabOrderStatus.REJECTED: set(),
    },
    initial=LabOrderStatus.ORDERED,
)

SPECIMEN_HANDLER_ROLES = frozenset({Role.NURSE, Role.LAB_TECHNICIAN})


def _require_processing_access(order: LabOrder, principal: Principal) -> None:
    if principal.role == Role.ADMIN or principal.role in SPECIMEN_HANDLER_ROLES:
        return
    if principal.role == Role.DOCTOR and same_ref(order.doctor, principal.user_id):
        return
    raise ResourceAccessDenied("You are not allowed to process this lab order.")


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def check_create(principal: Optional[Principal], order: None, ctx: CheckContext) -> LabOrderStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "create_lab_orders", ctx.registry)
    return LAB_ORDER_LIFECYCLE.initial


def check_view(principal: Optional[Principal], order: LabOrder, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_any_permission(principal, ["view_all_lab_orders", "view_lab_orders"], ctx.registry)
    require_access(order, principal, ctx.directory, ctx.registry, ctx.now)


def check_update(principal: Optional[Principal], order: LabOrder, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_lab_orders", ctx.registry)
    require_modify(order, principal, ctx.directory, ctx.now)


def check_collect(principal: Optional[Principal], order: LabOrder, ctx: CheckContext) -> LabOrderStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "collect_specimens", ctx.registry)
    _require_processing_access(order, principal)
    LAB_ORDER_LIFECYCLE.validate(order.status, LabOrderStatus.COLLECTED)
    return LabOrderStatus.COLLECTED


def check_receive(principal: Optional[Principal], order: LabOrder, ctx: CheckContext) -> LabOrderStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "receive_specimens", ctx.registry)
    _require_processing_access(order, principal)
    LAB_ORDER_LIFECYCLE.validate(order.status, LabOrderStatus.RECEIVED)
    return LabOrderStatus.RECEIVED


def check_update_status(principal: Optional[Principal], order: LabOrder, ctx: CheckContext) -> LabOrderStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "update_lab_order_status", ctx.registry)
    _require_processing_access(order, principal)
    target = LabOrderStatus(ctx.params["status"])
    if target == LabOrderStatus.CANCELLED:
        raise InvalidTransition("Lab orders are cancelled through cancellation, with a reason.")
    LAB_ORDER_LIFECYCLE.validate(order.status, target)
    return target


def check_cancel(principal: Optional[Principal], order: LabOrder, ctx: CheckContext) -> LabOrderStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "cancel_lab_orders", ctx.registry)
    require_cancel(order, principal, ctx.directory, ctx.now)
    LAB_ORDER_LIFECYCLE.validate(order.status, LabOrderStatus.CANCELLED)
    return LabOrderStatus.CANCELLED


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class LabOrderService(RecordService):
    """Creates lab orders and moves them through specimen handling."""

    resource_type = "lab_order"

    def get(self, principal: Optional[Principal], order_ref: Ref) -> LabOrder:
        order = self.load(order_ref)
        check_view(principal, order, self.context())
        return order

    def create(
        self,
        principal: Optional[Principal],
        patient: Ref,
        tests: list[LabTest],
        doctor: Optional[Ref] = None,
        priority: LabPriority = LabPriority.ROUTINE,
        clinical_notes: str = "",
        consultation: Optional[Ref] = None,
    ) -> LabOrder:
        """Create an ``ordered`` lab order.

        The ordering doctor defaults to the acting principal.
        """
        with self.recording(principal, "create") as audit:
            check_create(principal, None, self.context())
            if not tests:
                raise ValueError("A lab order needs at least one test.")
            order = self.repository.create(LabOrder(
                patient=resolve_id(patient),
                doctor=resolve_id(doctor) or principal.user_id,
                consultation=resolve_id(consultation),
                tests=list(tests),
                priority=priority,
                clinical_notes=clinical_notes,
                created_at=self.now(),
            ))
            audit["resource_id"] = order.id
            logger.info("Lab order %s created (%d tests)", order.number, len(tests))
            return order

    def update(
        self,
        principal: Optional[Principal],
        order_ref: Ref,
        tests: Optional[list[LabTest]] = None,
        priority: Optional[LabPriority] = None,
        clinical_notes: Optional[str] = None,
    ) -> LabOrder:
        with self.recording(principal, "update", resolve_id(order_ref)):
            order = self.load(order_ref)
            check_update(principal, order, self.context())
            changes = {}
            if tests is not None:
                if not tests:
                    raise ValueError("A lab order needs at least one test.")
                changes["tests"] = list(tests)
            if priority is not None:
                changes["priority"] = priority
            if clinical_notes is not None:
                changes["clinical_notes"] = clinical_notes
            return self.repository.update_if(order.id, {"status": order.status}, changes)

    def collect_specimen(
        self,
        principal: Optional[Principal],
        order_ref: Ref,
        condition: str = "good",
        notes: str = "",
    ) -> LabOrder:
        with self.recording(principal, "collect", resolve_id(order_ref)):
            order = self.load(order_ref)
            target = check_collect(principal, order, self.context())
            specimen = SpecimenCollection(
                collected_at=self.now(),
                collected_by=principal.user_id,
                condition=condition,
                notes=notes,
            )
            return apply_transition(
                LAB_ORDER_LIFECYCLE, self.repository, order, target,
                changes={"specimen": specimen},
            )

    def receive_specimen(self, principal: Optional[Principal], order_ref: Ref) -> LabOrder:
        with self.recording(principal, "receive", resolve_id(order_ref)):
            order = self.load(order_ref)
            target = check_receive(principal, order, self.context())
            specimen = (order.specimen or SpecimenCollection()).model_copy(
                update={"received_at": self.now(), "received_by": principal.user_id},
            )
            return apply_transition(
                LAB_ORDER_LIFECYCLE, self.repository, order, target,
                changes={"specimen": specimen},
            )

    def update_status(
        self,
        principal: Optional[Principal],
        order_ref: Ref,
        status: LabOrderStatus,
    ) -> LabOrder:
        with self.recording(principal, "update_status", resolve_id(order_ref)) as audit:
            order = self.load(order_ref)
            target = check_update_status(principal, order, self.context(status=status))
            audit["metadata"].update(from_status=order.status.value, to_status=target.value)
            return apply_transition(LAB_ORDER_LIFECYCLE, self.repository, order, target)

    def cancel(self, principal: Optional[Principal], order_ref: Ref, reason: str) -> LabOrder:
        """Cancel an order that has no results yet.

        Raises:
            ValueError: If ``reason`` is blank.
            InvalidTransition: If the order is completed or already terminal.
        """
        if not reason or not reason.strip():
            raise ValueError("A cancellation reason is required.")
        with self.recording(principal, "cancel", resolve_id(order_ref)):
            order = self.load(order_ref)
            target = check_cancel(principal, order, self.context())
            return apply_transition(
                LAB_ORDER_LIFECYCLE, self.repository, order, target,
                changes={
                    "cancellation_reason": reason.strip(),
                    "cancelled_by": principal.user_id,
                    "cancelled_at": self.now(),
                },
            )
