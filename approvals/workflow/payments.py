"""
approvals/workflow/payments.py

Payment request workflow:

    pending_accountant --(accountant sets due amount)--> pending_manager
    pending_manager --(manager pays <= due, priority 1|2)--> approved_manager | approved_manager_partial
    pending_accountant | pending_manager --(reject)--> rejected

Approval is terminal. The ERP sync that follows is a side effect recorded on the record,
not a workflow stage.

IMPORTANT:
- A request that is not in the expected prior stage answers 404 (the client re-fetches).
- The manager transition validates against accountant_due_amount under a row lock
  (SELECT ... FOR UPDATE) because that value is not part of the UPDATE predicate.
- Sync and notifications run after commit, never inside the approval transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Mapping, Tuple

from flask import current_app
from sqlalchemy import or_

from ..audit import log_action, serialize_model
from ..errors import StateConflict, ValidationError
from ..extensions import db
from ..models import (
    PAYMENT_STATE_FULL,
    PAYMENT_STATE_PARTIAL,
    PRIORITIES,
    ROLE_ACCOUNTANT,
    ROLE_MANAGER,
    STAGE_ACCOUNTANT,
    STAGE_MANAGER,
    STAGE_MANAGER_DONE,
    STAGE_REJECTED,
    STATUS_APPROVED_MANAGER,
    STATUS_APPROVED_MANAGER_PARTIAL,
    STATUS_PENDING_ACCOUNTANT,
    STATUS_PENDING_MANAGER,
    STATUS_REJECTED,
    SYNC_SENT,
    PaymentRequest,
    User,
    money,
    to_decimal,
)
from ..utils import optional_text, parse_optional_bool, parse_optional_date, require_text
from .financials import parse_positive_decimal
from .gate import FieldPatch, StageGate, run_unit_of_work, transaction
from .sequence import create_with_sequence_id

logger = logging.getLogger(__name__)

LIST_LIMIT = 200
LIST_FILTERS = ("pending", "sent", "all")
WORKFLOW_ROLES = (ROLE_ACCOUNTANT, ROLE_MANAGER)

gate = StageGate(PaymentRequest, conflict_status=404)


def _now() -> datetime:
    return gate.clock()


def _sync_adapter():
    return current_app.extensions["erp_sync"]


def _notifier():
    return current_app.extensions["notifier"]


# ---------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------
def create_payment_request(data: Mapping[str, Any], actor: User) -> PaymentRequest:
    """Validate originator input and insert a request at the accountant stage."""
    beneficiary_id = require_text(data, "beneficiaryId")
    beneficiary_name = require_text(data, "beneficiaryName")
    beneficiary_type = require_text(data, "beneficiaryType")
    amount = money(parse_positive_decimal(data.get("amount"), "amount"))
    due_date = parse_optional_date(data.get("dueDate"), "dueDate")
    description = optional_text(data.get("description"))
    account_added = parse_optional_bool(data.get("isBeneficiaryAccountAdded"))

    def unit(sequence_id: str) -> PaymentRequest:
        payment = PaymentRequest(
            sequence_id=sequence_id,
            beneficiary_id=beneficiary_id,
            beneficiary_name=beneficiary_name,
            beneficiary_type=beneficiary_type,
            operation_amount=amount,
            due_date=due_date,
            description=description,
            is_beneficiary_account_added=account_added,
            stage=STAGE_ACCOUNTANT,
            status=STATUS_PENDING_ACCOUNTANT,
            created_by=actor.actor_name,
            created_by_user_id=actor.id,
        )
        db.session.add(payment)
        db.session.flush()
        log_action(payment, "CREATE", after=serialize_model(payment))
        return payment

    payment = run_unit_of_work(
        lambda: create_with_sequence_id(unit, PaymentRequest),
        what="create payment request",
    )
    logger.info("Payment request %s created by %s (%s)", payment.sequence_id, actor.username, amount)

    _notifier().notify(
        payment,
        "CREATED",
        f"Payment request {payment.sequence_id} awaits accountant review",
        target_role=ROLE_ACCOUNTANT,
        actor=actor.actor_name,
    )
    return payment


# ---------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------
def get_payment_request(request_id: int) -> PaymentRequest:
    return gate.get(request_id)


def list_for_role(role: str, status: str = "pending") -> List[PaymentRequest]:
    """
    Requests visible to a workflow role.

    pending: waiting for this role.
    sent:    this role already acted (accountant: reviewed; manager: decided).
    all:     both.
    """
    if role not in WORKFLOW_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(WORKFLOW_ROLES)}")
    status = (status or "pending").strip().lower()
    if status not in LIST_FILTERS:
        raise ValidationError(f"status must be one of: {', '.join(LIST_FILTERS)}")

    if role == ROLE_ACCOUNTANT:
        pending = (PaymentRequest.stage == STAGE_ACCOUNTANT) & (PaymentRequest.status == STATUS_PENDING_ACCOUNTANT)
        sent = PaymentRequest.accountant_updated_at.isnot(None)
    else:
        pending = (PaymentRequest.stage == STAGE_MANAGER) & (PaymentRequest.status == STATUS_PENDING_MANAGER)
        sent = PaymentRequest.stage == STAGE_MANAGER_DONE

    criteria = {"pending": pending, "sent": sent, "all": or_(pending, sent)}[status]
    return (
        PaymentRequest.query
        .filter(criteria)
        .order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
        .limit(LIST_LIMIT)
        .all()
    )


# ---------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------
def accountant_review(request_id: int, data: Mapping[str, Any], actor: User) -> PaymentRequest:
    """Accountant certifies the due amount; the request moves to the manager."""
    due_amount = money(parse_positive_decimal(data.get("dueAmount"), "dueAmount"))
    patch = FieldPatch.build(
        PaymentRequest,
        accountant_due_amount=due_amount,
        accountant_note=optional_text(data.get("accountantNote")),
        accountant_name=actor.actor_name,
        accountant_id=str(actor.id),
        accountant_updated_at=_now(),
    )

    def unit() -> PaymentRequest:
        with transaction():
            before = serialize_model(gate.get(request_id))
            payment = gate.advance(
                request_id,
                STAGE_ACCOUNTANT,
                STATUS_PENDING_ACCOUNTANT,
                STAGE_MANAGER,
                STATUS_PENDING_MANAGER,
                patch,
            )
            log_action(payment, "ACCOUNTANT_REVIEW", before=before, after=serialize_model(payment))
        return payment

    payment = run_unit_of_work(unit, what="accountant review")

    _notifier().notify(
        payment,
        "ACCOUNTANT_REVIEW",
        f"Payment request {payment.sequence_id} awaits manager approval (due {payment.accountant_due_amount})",
        target_role=ROLE_MANAGER,
        actor=actor.actor_name,
    )
    return payment


def _manager_values(data: Mapping[str, Any]) -> Tuple[Any, str]:
    amount = money(parse_positive_decimal(data.get("amountToPay"), "amountToPay"))
    priority = optional_text(data.get("priority"))
    if priority not in PRIORITIES:
        raise ValidationError(f"priority must be one of: {', '.join(PRIORITIES)}")
    return amount, priority


def manager_decision(request_id: int, data: Mapping[str, Any], actor: User):
    """
    Manager sets the amount to pay (<= accountant due amount) and the priority.

    Returns (payment, sync_outcome). The approval is committed before the sync runs;
    a failed sync only marks the record FAILED.
    """
    amount, priority = _manager_values(data)
    statement = optional_text(data.get("statement"))
    manager_note = optional_text(data.get("managerNote"))

    def unit() -> PaymentRequest:
        with transaction():
            current = gate.lock(request_id)
            if current.stage != STAGE_MANAGER or current.status != STATUS_PENDING_MANAGER:
                raise StateConflict(
                    f"Payment request {request_id} is not in manager stage",
                    status_code=gate.conflict_status,
                )

            due = to_decimal(current.accountant_due_amount)
            if amount > due:
                raise ValidationError(
                    "amountToPay cannot exceed the accountant due amount",
                    details={"dueAmount": str(due), "amountToPay": str(amount)},
                )

            remaining = money(due - amount)
            partial = remaining > 0
            before = serialize_model(current)
            patch = FieldPatch.build(
                PaymentRequest,
                manager_paid_amount=amount,
                priority=priority,
                statement=statement,
                manager_note=manager_note,
                manager_approved=True,
                manager_name=actor.actor_name,
                manager_id=str(actor.id),
                manager_updated_at=_now(),
                remaining_amount=remaining,
                payment_state=PAYMENT_STATE_PARTIAL if partial else PAYMENT_STATE_FULL,
            )
            payment = gate.advance(
                request_id,
                STAGE_MANAGER,
                STATUS_PENDING_MANAGER,
                STAGE_MANAGER_DONE,
                STATUS_APPROVED_MANAGER_PARTIAL if partial else STATUS_APPROVED_MANAGER,
                patch,
            )
            log_action(payment, "MANAGER_APPROVE", before=before, after=serialize_model(payment))
        return payment

    payment = run_unit_of_work(unit, what="manager decision")
    logger.info(
        "Payment request %s approved by %s: paid %s, remaining %s",
        payment.sequence_id, actor.username, payment.manager_paid_amount, payment.remaining_amount,
    )

    outcome = _sync_adapter().sync_payment(payment)
    db.session.refresh(payment)

    _notifier().notify(
        payment,
        "MANAGER_APPROVE",
        f"Payment request {payment.sequence_id} approved ({payment.payment_state}); Medad: {outcome.status}",
        actor=actor.actor_name,
    )
    return payment, outcome


def reject_payment(request_id: int, data: Mapping[str, Any], actor: User) -> PaymentRequest:
    """Reject at the stage the actor holds (admin may reject at either stage)."""
    stages = []
    if actor.has_role(ROLE_ACCOUNTANT):
        stages.append((STAGE_ACCOUNTANT, STATUS_PENDING_ACCOUNTANT))
    if actor.has_role(ROLE_MANAGER):
        stages.append((STAGE_MANAGER, STATUS_PENDING_MANAGER))
    if not stages:
        raise StateConflict(f"Payment request {request_id} is not pending your review", status_code=gate.conflict_status)

    patch = FieldPatch.build(
        PaymentRequest,
        rejected_by=actor.actor_name,
        rejected_at=_now(),
        rejection_note=optional_text(data.get("note")),
    )
    guard = or_(*[(PaymentRequest.stage == stage) & (PaymentRequest.status == status) for stage, status in stages])

    def unit() -> PaymentRequest:
        with transaction():
            before = serialize_model(gate.get(request_id))
            payment = gate.guarded_update(
                request_id,
                [guard],
                FieldPatch(model=PaymentRequest, values=patch.merged(stage=STAGE_REJECTED, status=STATUS_REJECTED)),
                conflict_message=f"Payment request {request_id} is not pending your review",
            )
            log_action(payment, "REJECT", before=before, after=serialize_model(payment))
        return payment

    payment = run_unit_of_work(unit, what="reject payment request")
    logger.info("Payment request %s rejected by %s", payment.sequence_id, actor.username)

    _notifier().notify(
        payment,
        "REJECT",
        f"Payment request {payment.sequence_id} was rejected by {actor.actor_name}",
        actor=actor.actor_name,
    )
    return payment


def resync_payment(request_id: int, *, force: bool = False):
    """Re-send an approved request to Medad. Returns (payment, sync_outcome)."""
    payment = gate.get(request_id)
    if not payment.is_approved:
        raise StateConflict(f"Payment request {request_id} is not approved", status_code=gate.conflict_status)
    if payment.medad_sync_status == SYNC_SENT and not force:
        raise StateConflict(f"Payment request {payment.sequence_id} was already sent to Medad", status_code=409)

    outcome = _sync_adapter().sync_payment(payment)
    db.session.refresh(payment)
    return payment, outcome

