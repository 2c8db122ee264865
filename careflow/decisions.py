"""
Action decision surface.

``decide(principal, action, target, context)`` answers "may this
principal do this to this record, and where would it end up?" without
touching storage.  It runs the same guard each service runs before a
mutation: permission first, then ownership, then the lifecycle table.

The boundary layer can use it to pre-flight a request, or to render
which actions a user is offered for a record.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

from careflow import (
    appointments,
    consultations,
    documents,
    lab_orders,
    lab_results,
    patients,
    prescriptions,
)
from careflow.exceptions import CareflowError
from careflow.lifecycle import CheckContext
from careflow.models import Decision, Principal

logger = logging.getLogger(__name__)


class ActionSpec(BaseModel):
    """One supported action and the guard that decides it."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    resource_type: str
    check: Callable[..., Any]
    requires_target: bool = True


def _spec(resource_type: str, check: Callable[..., Any], requires_target: bool = True) -> ActionSpec:
    return ActionSpec(resource_type=resource_type, check=check, requires_target=requires_target)


ACTIONS: dict[str, ActionSpec] = {
    # Appointments
    "appointment.book": _spec("appointment", appointments.check_book, requires_target=False),
    "appointment.view": _spec("appointment", appointments.check_view),
    "appointment.update": _spec("appointment", appointments.check_update),
    "appointment.cancel": _spec("appointment", appointments.check_cancel),
    "appointment.complete": _spec("appointment", appointments.check_complete),
    "appointment.no_show": _spec("appointment", appointments.check_no_show),
    # Consultations
    "consultation.create": _spec("consultation", consultations.check_create, requires_target=False),
    "consultation.view": _spec("consultation", consultations.check_view),
    "consultation.update": _spec("consultation", consultations.check_update),
    "consultation.vital_signs": _spec("consultation", consultations.check_vital_signs),
    "consultation.complete": _spec("consultation", consultations.check_complete),
    "consultation.review": _spec("consultation", consultations.check_review),
    "consultation.archive": _spec("consultation", consultations.check_archive),
    "consultation.delete": _spec("consultation", consultations.check_delete),
    # Patient records
    "patient.create": _spec("patient", patients.check_create, requires_target=False),
    "patient.view": _spec("patient", patients.check_view),
    "patient.update": _spec("patient", patients.check_update),
    "patient.add_allergy": _spec("patient", patients.check_add_allergy),
    "patient.add_medical_history": _spec("patient", patients.check_add_medical_history),
    # Lab orders
    "lab_order.create": _spec("lab_order", lab_orders.check_create, requires_target=False),
    "lab_order.view": _spec("lab_order", lab_orders.check_view),
    "lab_order.update": _spec("lab_order", lab_orders.check_update),
    "lab_order.collect": _spec("lab_order", lab_orders.check_collect),
    "lab_order.receive": _spec("lab_order", lab_orders.check_receive),
    "lab_order.update_status": _spec("lab_order", lab_orders.check_update_status),
    "lab_order.cancel": _spec("lab_order", lab_orders.check_cancel),
    # Lab results (``lab_result.create`` targets the lab order)
    "lab_result.create": _spec("lab_order", lab_results.check_create),
    "lab_result.view": _spec("lab_result", lab_results.check_view),
    "lab_result.update": _spec("lab_result", lab_results.check_update),
    "lab_result.validate": _spec("lab_result", lab_results.check_validate),
    "lab_result.revise": _spec("lab_result", lab_results.check_revise),
    "lab_result.cancel": _spec("lab_result", lab_results.check_cancel),
    # Prescriptions
    "prescription.create": _spec("prescription", prescriptions.check_create, requires_target=False),
    "prescription.view": _spec("prescription", prescriptions.check_view),
    "prescription.update": _spec("prescription", prescriptions.check_update),
    "prescription.sign": _spec("prescription", prescriptions.check_sign),
    "prescription.send": _spec("prescription", prescriptions.check_send),
    "prescription.dispense": _spec("prescription", prescriptions.check_dispense),
    "prescription.cancel": _spec("prescription", prescriptions.check_cancel),
    "prescription.renew": _spec("prescription", prescriptions.check_renew),
    # Documents
    "document.upload": _spec("document", documents.check_upload, requires_target=False),
    "document.view": _spec("document", documents.check_view),
    "document.new_version": _spec("document", documents.check_new_version),
    "document.share": _spec("document", documents.check_share),
    "document.revoke_share": _spec("document", documents.check_share),
    "document.archive": _spec("document", documents.check_archive),
    "document.restore": _spec("document", documents.check_restore),
    "document.delete": _spec("document", documents.check_delete),
}


_CONTEXT_KEYS = ("directory", "registry", "now")


def decide(
    principal: Optional[Principal],
    action: str,
    target: Any = None,
    context: Optional[dict[str, Any]] = None,
) -> Decision:
    """Evaluate an action without mutating anything.

    Args:
        principal: The acting principal, or None if unauthenticated.
        action: A key of ``ACTIONS`` (e.g. ``'prescription.sign'``).
        target: The record acted upon; None for creation actions.
        context: ``directory``, ``registry`` and ``now`` collaborators,
            plus action parameters (e.g. ``doctor`` and ``patient`` for
            booking, ``status`` for a lab order status update,
            ``medication_id`` for dispensing, ``fields`` for updates).

    Returns:
        An allowing ``Decision`` carrying the resulting status (if the
        action moves one), or a denying ``Decision`` with a user-safe
        reason and the status code the service would have raised.
    """
    spec = ACTIONS.get(action)
    if spec is None:
        return Decision.deny(f"Unknown action: {action}", status_code=400)
    if spec.requires_target and target is None:
        return Decision.deny("Target record not found.", status_code=404)

    context = dict(context or {})
    collaborators = {k: context.pop(k) for k in _CONTEXT_KEYS if context.get(k) is not None}
    ctx = CheckContext(params=context, **collaborators)

    try:
        next_state = spec.check(principal, target, ctx)
    except CareflowError as exc:
        logger.debug("decide(%s) denied: %s", action, exc.error_code)
        return Decision.deny(exc.message, status_code=exc.status_code)
    except ValueError as exc:
        return Decision.deny(str(exc), status_code=400)

    if isinstance(next_state, enum.Enum):
        return Decision.allow(next_state.value)
    return Decision.allow()
