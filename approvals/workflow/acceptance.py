"""
approvals/workflow/acceptance.py

Acceptance chains for orders and quotations.

Chain: manager -> supervisor -> storekeeper. Each role flips its own flag from
"pending" to "accepted", guarded by:
    flag = 'pending' AND every predecessor accepted AND status = 'not_delivered'
The visible stage and "fully accepted" are derived by the reader (see models).

Orders:
- fully accepted = all three flags; the order is then posted to Medad as an invoice.
- the driver marks a fully accepted order delivered (terminal).
Quotations:
- fully accepted = manager + supervisor; no ERP document.

Editing:
- a delivered record refuses edit/delete with 400 (row-locked check, then a guarded
  statement with status <> 'delivered').
- delete is only allowed before any acceptance (initial or rejected records) and never
  once Medad booked the record.
- editing after any acceptance (or after a rejection) starts a new round: every flag
  goes back to pending and the sequence id gains/increments its " Rev<N>" marker.
  The Medad sync state is reset so the fully re-accepted revision is posted again.
- line items are replaced as a whole and totals recomputed in the same transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from flask import current_app
from sqlalchemy import and_, delete, or_

from ..audit import log_action, serialize_model
from ..errors import RecordNotFound, StateConflict, ValidationError
from ..extensions import db
from ..models import (
    ACCEPT_ACCEPTED,
    ACCEPT_PENDING,
    DELIVERY_DELIVERED,
    DELIVERY_NOT_DELIVERED,
    DELIVERY_REJECTED,
    ROLE_DRIVER,
    ROLE_MANAGER,
    ROLE_STOREKEEPER,
    ROLE_SUPERVISOR,
    SYNC_NOT_SENT,
    SYNC_SENT,
    Client,
    Order,
    OrderLine,
    Quotation,
    QuotationLine,
    User,
)
from ..utils import optional_text, page_params, parse_optional_datetime, parse_optional_int
from .financials import aggregate
from .gate import FieldPatch, StageGate, run_unit_of_work, transaction
from .sequence import create_with_sequence_id, next_revision

logger = logging.getLogger(__name__)

STATUS_FILTERS = (DELIVERY_NOT_DELIVERED, DELIVERY_DELIVERED, DELIVERY_REJECTED)


def _reset_acceptance(chain) -> dict:
    values = {}
    for role in chain:
        values[f"{role}_accept"] = ACCEPT_PENDING
        values[f"{role}_accept_at"] = None
        values[f"{role}_accept_by"] = None
    return values


class AcceptanceWorkflow:
    """Create/edit/accept/reject/deliver for one acceptance record type."""

    def __init__(
        self,
        model: type,
        line_model: type,
        parent_key: str,
        *,
        label: str,
        extra_fields: Optional[Mapping[str, str]] = None,
        sync_on_acceptance: bool = False,
    ):
        self.model = model
        self.line_model = line_model
        self.parent_key = parent_key
        self.label = label
        self.extra_fields = dict(extra_fields or {})
        self.sync_on_acceptance = sync_on_acceptance
        self.gate = StageGate(model)

    # -----------------------------------------------------------------
    # Guards
    # -----------------------------------------------------------------
    def _column(self, name: str):
        return getattr(self.model, name)

    def _check_role(self, role: str) -> None:
        if role not in self.model.ACCEPT_CHAIN:
            raise ValidationError(f"role must be one of: {', '.join(self.model.ACCEPT_CHAIN)}")

    def awaiting(self, role: str):
        """SQL criteria: records whose next acceptance belongs to `role`."""
        self._check_role(role)
        chain = self.model.ACCEPT_CHAIN
        predecessors = chain[: chain.index(role)]
        return and_(
            self._column(f"{role}_accept") == ACCEPT_PENDING,
            self.model.status == DELIVERY_NOT_DELIVERED,
            *[self._column(f"{prior}_accept") == ACCEPT_ACCEPTED for prior in predecessors],
        )

    def _fully_accepted(self):
        return and_(*[self._column(f"{role}_accept") == ACCEPT_ACCEPTED for role in self.model.REQUIRED_ACCEPTANCES])

    # -----------------------------------------------------------------
    # Input
    # -----------------------------------------------------------------
    def _priced_lines(self, products: Any):
        if not isinstance(products, list) or not products:
            raise ValidationError("products must be a non-empty list")
        return aggregate(products)

    def _client_id(self, value: Any) -> int:
        client_id = parse_optional_int(value)
        if client_id is None:
            raise ValidationError("clientId is required")
        if db.session.get(Client, client_id) is None:
            raise ValidationError(f"Client {client_id} does not exist")
        return client_id

    def _header_values(self, data: Mapping[str, Any], *, partial: bool) -> dict:
        """Column values from request data. With partial=True only supplied keys are returned."""
        mapping = {
            "deliveryDate": ("delivery_date", lambda v: parse_optional_datetime(v, "deliveryDate")),
            "deliveryType": ("delivery_type", optional_text),
            "notes": ("notes", optional_text),
            "storekeeperNotes": ("storekeeper_notes", optional_text),
            "medadSalesmanId": ("medad_salesman_id", optional_text),
            "warehouseNo": ("warehouse_no", optional_text),
        }
        for key, column in self.extra_fields.items():
            mapping[key] = (column, optional_text)

        values = {}
        for key, (column, parse) in mapping.items():
            if partial and key not in data:
                continue
            values[column] = parse(data.get(key))
        if not partial or "clientId" in data:
            values["client_id"] = self._client_id(data.get("clientId"))
        return values

    # -----------------------------------------------------------------
    # Create / read
    # -----------------------------------------------------------------
    def create(self, data: Mapping[str, Any], actor: User):
        header = self._header_values(data, partial=False)
        lines, totals = self._priced_lines(data.get("products"))

        # ERP prerequisites default to the creating user's settings
        header["medad_salesman_id"] = header.get("medad_salesman_id") or actor.medad_salesman_id
        header["warehouse_no"] = header.get("warehouse_no") or actor.warehouse_no
        # omitted values fall back to column defaults
        header = {column: value for column, value in header.items() if value is not None}

        def unit(sequence_id: str):
            record = self.model(
                sequence_id=sequence_id,
                username=actor.actor_name,
                created_by_user_id=actor.id,
                status=DELIVERY_NOT_DELIVERED,
                **header,
                **totals.as_columns(),
            )
            record.lines = [self.line_model(**line.as_columns()) for line in lines]
            db.session.add(record)
            db.session.flush()
            log_action(record, "CREATE", after=serialize_model(record))
            return record

        record = run_unit_of_work(
            lambda: create_with_sequence_id(unit, self.model),
            what=f"create {self.label}",
        )
        logger.info("%s %s created by %s (%d lines)", self.model.__name__, record.sequence_id, actor.username, len(lines))

        self._notify(record, "CREATED", f"New {self.label} {record.sequence_id} awaits acceptance", ROLE_MANAGER, actor)
        return record

    def get(self, record_id: int):
        return self.gate.get(record_id)

    def list(self, args: Mapping[str, Any]) -> dict:
        """Paginated listing: ?status=&awaiting=<role>&query=&page=&limit="""
        page, limit = page_params(args)
        q = self.model.query

        status = optional_text(args.get("status"))
        if status:
            if status not in STATUS_FILTERS:
                raise ValidationError(f"status must be one of: {', '.join(STATUS_FILTERS)}")
            q = q.filter(self.model.status == status)

        awaiting = optional_text(args.get("awaiting"))
        if awaiting:
            q = q.filter(self.awaiting(awaiting))

        search = optional_text(args.get("query"))
        if search:
            like = f"%{search}%"
            q = q.outerjoin(Client, self.model.client_id == Client.id).filter(
                or_(
                    self.model.sequence_id.ilike(like),
                    Client.client_name.ilike(like),
                    Client.company_name.ilike(like),
                    self.model.username.ilike(like),
                )
            )

        pagination = q.order_by(self.model.created_at.desc(), self.model.id.desc()).paginate(
            page=page, per_page=limit, error_out=False
        )
        return {
            "items": [record.to_dict() for record in pagination.items],
            "total": pagination.total,
            "page": page,
            "totalPages": pagination.pages,
            "limit": limit,
        }

    # -----------------------------------------------------------------
    # Edit / delete
    # -----------------------------------------------------------------
    def _lock_editable(self, record_id: int, verb: str):
        record = self.gate.lock(record_id)
        if record.status == DELIVERY_DELIVERED:
            raise ValidationError(f"Delivered {self.label}s cannot be {verb}")
        return record

    def _not_delivered_guard(self):
        return self.model.status != DELIVERY_DELIVERED

    def _booked(self, record) -> bool:
        """Medad holds a document for this record (possibly for an earlier revision)."""
        return record.medad_sync_status == SYNC_SENT or bool(getattr(record, "medad_invoice_no", None))

    def _deletable_guard(self):
        """Only records nobody has accepted and Medad has not booked may be deleted."""
        not_booked = [self.model.medad_sync_status != SYNC_SENT]
        if hasattr(self.model, "medad_invoice_no"):
            not_booked.append(self.model.medad_invoice_no.is_(None))
        return and_(
            self._not_delivered_guard(),
            *not_booked,
            *[self._column(f"{role}_accept") != ACCEPT_ACCEPTED for role in self.model.ACCEPT_CHAIN],
        )

    def edit(self, record_id: int, data: Mapping[str, Any], actor: User):
        values = self._header_values(data, partial=True)
        lines = None
        if "products" in data:
            lines, totals = self._priced_lines(data.get("products"))
            values.update(totals.as_columns())

        def unit():
            with transaction():
                current = self._lock_editable(record_id, "edited")
                before = serialize_model(current)
                new_round = current.status == DELIVERY_REJECTED or any(
                    current.acceptance(role) == ACCEPT_ACCEPTED for role in self.model.ACCEPT_CHAIN
                )

                changes = dict(values)
                if new_round:
                    changes.update(_reset_acceptance(self.model.ACCEPT_CHAIN))
                    changes["sequence_id"] = next_revision(current.sequence_id)
                    changes["status"] = DELIVERY_NOT_DELIVERED
                    # the revision is a new document for Medad
                    changes.update(medad_sync_status=SYNC_NOT_SENT, medad_error=None, medad_synced_at=None)

                if lines is not None:
                    db.session.execute(
                        delete(self.line_model)
                        .where(getattr(self.line_model, self.parent_key) == record_id)
                        .execution_options(synchronize_session=False)
                    )

                record = self.gate.guarded_update(
                    record_id,
                    [self._not_delivered_guard()],
                    FieldPatch.build(self.model, **changes),
                    conflict_message=f"Delivered {self.label}s cannot be edited",
                )
                if lines is not None:
                    for line in lines:
                        db.session.add(self.line_model(**line.as_columns(), **{self.parent_key: record_id}))
                    db.session.flush()
                    db.session.expire(record, ["lines"])

                log_action(record, "UPDATE", before=before, after=serialize_model(record))
            return record, new_round

        record, new_round = run_unit_of_work(unit, what=f"edit {self.label}")
        logger.info(
            "%s %s edited by %s%s",
            self.model.__name__, record.sequence_id, actor.username, " (acceptance reset)" if new_round else "",
        )
        if new_round:
            self._notify(record, "REVISED", f"{self.label.title()} {record.sequence_id} was revised", ROLE_MANAGER, actor)
        return record

    def delete(self, record_id: int, actor: User) -> None:
        def unit():
            with transaction():
                current = self._lock_editable(record_id, "deleted")
                if self._booked(current):
                    raise ValidationError(f"{self.label.title()} {current.sequence_id} was already sent to Medad")
                if any(current.acceptance(role) == ACCEPT_ACCEPTED for role in self.model.ACCEPT_CHAIN):
                    raise ValidationError(
                        f"{self.label.title()} {current.sequence_id} has acceptances; reject it before deleting"
                    )
                log_action(current, "DELETE", before=serialize_model(current))
                sequence_id = current.sequence_id

                db.session.execute(
                    delete(self.line_model)
                    .where(getattr(self.line_model, self.parent_key) == record_id)
                    .execution_options(synchronize_session=False)
                )
                self.gate.guarded_delete(
                    record_id,
                    [self._deletable_guard()],
                    conflict_message=f"{self.label.title()} {record_id} can no longer be deleted",
                )
                db.session.expunge(current)
            return sequence_id

        sequence_id = run_unit_of_work(unit, what=f"delete {self.label}")
        logger.info("%s %s deleted by %s", self.model.__name__, sequence_id, actor.username)

    # -----------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------
    def accept(self, record_id: int, role: str, data: Mapping[str, Any], actor: User):
        """Record `role`'s acceptance. Returns (record, sync_outcome or None)."""
        self._check_role(role)
        values = {
            f"{role}_accept": ACCEPT_ACCEPTED,
            f"{role}_accept_at": self.gate.clock(),
            f"{role}_accept_by": actor.actor_name,
        }
        note = optional_text(data.get("notes"))
        if note is not None and role == ROLE_STOREKEEPER:
            values["storekeeper_notes"] = note
        elif note is not None and role == ROLE_MANAGER and "manager_notes" in self.model.PATCHABLE_FIELDS:
            values["manager_notes"] = note

        def unit():
            with transaction():
                before = serialize_model(self.gate.get(record_id))
                record = self.gate.guarded_update(
                    record_id,
                    [self.awaiting(role)],
                    FieldPatch.build(self.model, **values),
                    conflict_message=f"{self.label.title()} {record_id} is not awaiting {role} acceptance",
                )
                log_action(record, f"ACCEPT_{role.upper()}", before=before, after=serialize_model(record))
            return record

        record = run_unit_of_work(unit, what=f"{role} accepts {self.label}")
        logger.info("%s %s accepted by %s (%s)", self.model.__name__, record.sequence_id, actor.username, role)

        outcome = None
        if self.sync_on_acceptance and record.fully_accepted and record.medad_sync_status != SYNC_SENT:
            outcome = current_app.extensions["erp_sync"].sync_order(record)
            db.session.refresh(record)

        chain = self.model.ACCEPT_CHAIN
        next_role = chain[chain.index(role) + 1] if role != chain[-1] else (
            ROLE_DRIVER if self.model is Order else None
        )
        self._notify(
            record,
            f"ACCEPT_{role.upper()}",
            f"{self.label.title()} {record.sequence_id} accepted by {role}",
            next_role,
            actor,
        )
        return record, outcome

    def reject(self, record_id: int, data: Mapping[str, Any], actor: User):
        """Reject: status rejected, every flag back to pending, note kept in `notes`."""
        changes = _reset_acceptance(self.model.ACCEPT_CHAIN)
        changes["status"] = DELIVERY_REJECTED
        changes["notes"] = optional_text(data.get("notes")) or ""

        def unit():
            with transaction():
                before = serialize_model(self.gate.get(record_id))
                record = self.gate.guarded_update(
                    record_id,
                    [self.model.status == DELIVERY_NOT_DELIVERED],
                    FieldPatch.build(self.model, **changes),
                    conflict_message=f"{self.label.title()} {record_id} can no longer be rejected",
                )
                log_action(record, "REJECT", before=before, after=serialize_model(record))
            return record

        record = run_unit_of_work(unit, what=f"reject {self.label}")
        logger.info("%s %s rejected by %s", self.model.__name__, record.sequence_id, actor.username)
        self._notify(record, "REJECT", f"{self.label.title()} {record.sequence_id} was rejected", ROLE_SUPERVISOR, actor)
        return record

    def deliver(self, record_id: int, data: Mapping[str, Any], actor: User):
        """Driver marks a fully accepted record delivered."""
        delivered_at = parse_optional_datetime(data.get("deliveredAt"), "deliveredAt") or self.gate.clock()
        values = {"status": DELIVERY_DELIVERED}
        if "actual_delivery_date" in self.model.PATCHABLE_FIELDS:
            values["actual_delivery_date"] = delivered_at

        def unit():
            with transaction():
                before = serialize_model(self.gate.get(record_id))
                record = self.gate.guarded_update(
                    record_id,
                    [self.model.status == DELIVERY_NOT_DELIVERED, self._fully_accepted()],
                    FieldPatch.build(self.model, **values),
                    conflict_message=f"{self.label.title()} {record_id} is not fully accepted or already closed",
                )
                log_action(record, "DELIVERED", before=before, after=serialize_model(record))
            return record

        record = run_unit_of_work(unit, what=f"deliver {self.label}")
        logger.info("%s %s delivered by %s", self.model.__name__, record.sequence_id, actor.username)
        self._notify(record, "DELIVERED", f"{self.label.title()} {record.sequence_id} was delivered", ROLE_MANAGER, actor)
        return record

    def resync(self, record_id: int, *, force: bool = False):
        """Manual ERP re-send for a fully accepted record. Returns (record, sync_outcome)."""
        if not self.sync_on_acceptance:
            raise RecordNotFound(f"{self.label.title()}s are not synchronized with Medad")

        record = self.gate.get(record_id)
        if record.status == DELIVERY_REJECTED or not record.fully_accepted:
            raise StateConflict(f"{self.label.title()} {record.sequence_id} is not fully accepted")
        if record.medad_sync_status == SYNC_SENT and not force:
            raise StateConflict(f"{self.label.title()} {record.sequence_id} was already sent to Medad")

        outcome = current_app.extensions["erp_sync"].sync_order(record)
        db.session.refresh(record)
        return record, outcome

    def _notify(self, record, action: str, message: str, target_role: Optional[str], actor: User) -> None:
        current_app.extensions["notifier"].notify(
            record, action, message, target_role=target_role, actor=actor.actor_name
        )


orders = AcceptanceWorkflow(
    Order,
    OrderLine,
    "order_id",
    label="order",
    sync_on_acceptance=True,
)

quotations = AcceptanceWorkflow(
    Quotation,
    QuotationLine,
    "quotation_id",
    label="quotation",
    extra_fields={"condition": "condition", "managerNotes": "manager_notes"},
)
