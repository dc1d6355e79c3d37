"""
Staged-Approval Workflow – Domain Models

Records that move through role-gated stages:
- PaymentRequest (accountant -> manager -> manager_done, or rejected)
- Order          (manager -> supervisor -> storekeeper acceptance, then delivered)
- Quotation      (manager -> supervisor -> storekeeper acceptance)

Supporting entities:
- User (role + actor identity, ERP salesman/warehouse defaults)
- Client (with its linked Medad customer)
- OrderLine / QuotationLine (priced line items, computed by workflow.financials)
- AuditLog (who did what, before/after snapshots)

IMPORTANT:
- Workflow fields are only written through workflow.gate (conditional updates).
  Models never advance themselves.
- sequence_id is UNIQUE at the database level; generation retries on collision.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

from flask_login import UserMixin
from sqlalchemy.orm import declared_attr
from werkzeug.security import generate_password_hash, check_password_hash

from .extensions import db
from .utils import utcnow
from .workflow.financials import AMOUNT_DIGITS, AMOUNT_PLACES, INPUT_DIGITS, PRICE_PLACES, QUANTITY_PLACES


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def to_decimal(value) -> Decimal:
    """Convert Numeric/None to Decimal safely."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value))


def money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _json_value(value):
    """JSON-friendly value: Decimal as string, dates as ISO 8601."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _columns_dict(instance) -> dict:
    return {column.name: _json_value(getattr(instance, column.name)) for column in instance.__table__.columns}


# ---------------------------------------------------------------------
# Workflow vocabulary
# ---------------------------------------------------------------------
ROLE_ADMIN = "admin"
ROLE_SALES_REP = "sales_rep"
ROLE_ACCOUNTANT = "accountant"
ROLE_MANAGER = "manager"
ROLE_SUPERVISOR = "supervisor"
ROLE_STOREKEEPER = "storekeeper"
ROLE_DRIVER = "driver"

ROLES = (
    ROLE_ADMIN,
    ROLE_SALES_REP,
    ROLE_ACCOUNTANT,
    ROLE_MANAGER,
    ROLE_SUPERVISOR,
    ROLE_STOREKEEPER,
    ROLE_DRIVER,
)

# Payment workflow
STAGE_ACCOUNTANT = "accountant"
STAGE_MANAGER = "manager"
STAGE_MANAGER_DONE = "manager_done"
STAGE_REJECTED = "rejected"

STATUS_PENDING_ACCOUNTANT = "pending_accountant"
STATUS_PENDING_MANAGER = "pending_manager"
STATUS_APPROVED_MANAGER = "approved_manager"
STATUS_APPROVED_MANAGER_PARTIAL = "approved_manager_partial"
STATUS_REJECTED = "rejected"

PAYMENT_STATE_FULL = "full"
PAYMENT_STATE_PARTIAL = "partial"

PRIORITIES = ("1", "2")

# Order / quotation acceptance
ACCEPT_PENDING = "pending"
ACCEPT_ACCEPTED = "accepted"

DELIVERY_NOT_DELIVERED = "not_delivered"
DELIVERY_DELIVERED = "delivered"
DELIVERY_REJECTED = "rejected"

# ERP sync
SYNC_NOT_SENT = "not_sent"
SYNC_SENT = "SENT_TO_MEDAD"
SYNC_FAILED = "FAILED"


# ---------------------------------------------------------------------
# Users & clients
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """API user. The role decides which workflow stage the user may act on."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(150), nullable=True)

    role = db.Column(db.String(30), nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Defaults copied onto orders/quotations this user creates (ERP prerequisites)
    medad_salesman_id = db.Column(db.String(50), nullable=True)
    warehouse_no = db.Column(db.String(50), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def has_role(self, *roles: str) -> bool:
        return self.is_admin or self.role in roles

    @property
    def actor_name(self) -> str:
        return self.display_name or self.username

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "role": self.role,
            "medad_salesman_id": self.medad_salesman_id,
            "warehouse_no": self.warehouse_no,
        }

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"


class Client(db.Model):
    """Customer of orders/quotations, with its linked Medad customer (if any)."""

    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)

    client_name = db.Column(db.String(255), nullable=False)
    company_name = db.Column(db.String(255), nullable=True)
    phone_number = db.Column(db.String(50), nullable=True)
    tax_number = db.Column(db.String(50), nullable=True)
    street = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    region = db.Column(db.String(100), nullable=True)

    medad_customer_id = db.Column(db.String(50), nullable=True, index=True)
    medad_vat_no = db.Column(db.String(50), nullable=True)
    medad_vat_type = db.Column(db.String(20), nullable=True)
    medad_address1 = db.Column(db.String(255), nullable=True)
    medad_address2 = db.Column(db.String(255), nullable=True)
    medad_city = db.Column(db.String(100), nullable=True)
    medad_region = db.Column(db.String(100), nullable=True)
    medad_warehouse_no = db.Column(db.String(50), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return _columns_dict(self)

    def __repr__(self):
        return f"<Client {self.company_name or self.client_name}>"


# ---------------------------------------------------------------------
# Shared record columns
# ---------------------------------------------------------------------
class SyncStateMixin:
    """Durable ERP sync state. Written only by erp.ExternalSyncAdapter."""

    SYNC_FIELDS = frozenset(
        {"medad_payload", "medad_response", "medad_sync_status", "medad_error", "medad_synced_at"}
    )

    medad_payload = db.Column(db.JSON, nullable=True)
    medad_response = db.Column(db.JSON, nullable=True)
    medad_sync_status = db.Column(db.String(30), nullable=False, default=SYNC_NOT_SENT, index=True)
    medad_error = db.Column(db.Text, nullable=True)
    medad_synced_at = db.Column(db.DateTime, nullable=True)

    def sync_summary(self) -> dict:
        return {
            "status": self.medad_sync_status,
            "error": self.medad_error,
            "synced_at": _json_value(self.medad_synced_at),
        }


class LineItemMixin:
    """
    Priced line. Amount columns are produced by workflow.financials.aggregate().

    Input precision is capped (price 2, quantity 3 decimals) so price * quantity * 0.15
    fits AMOUNT_PLACES exactly and is stored without rounding.
    """

    id = db.Column(db.Integer, primary_key=True)

    description = db.Column(db.Text, nullable=False, default="")
    medad_product_no = db.Column(db.String(50), nullable=True)

    quantity = db.Column(db.Numeric(INPUT_DIGITS, QUANTITY_PLACES), nullable=False)
    unit_price = db.Column(db.Numeric(INPUT_DIGITS, PRICE_PLACES), nullable=False)

    line_total = db.Column(db.Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)
    vat = db.Column(db.Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)
    subtotal = db.Column(db.Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False)

    def to_dict(self) -> dict:
        return _columns_dict(self)


class AcceptanceRecordMixin(SyncStateMixin):
    """
    Columns shared by orders and quotations.

    Acceptance flags are independent columns. The visible stage is derived by the
    reader (see `stage` / `fully_accepted`) and never stored.
    """

    ACCEPT_CHAIN = (ROLE_MANAGER, ROLE_SUPERVISOR, ROLE_STOREKEEPER)
    REQUIRED_ACCEPTANCES = ACCEPT_CHAIN

    PATCHABLE_FIELDS = SyncStateMixin.SYNC_FIELDS | frozenset(
        {
            # edit
            "sequence_id",
            "client_id",
            "delivery_date",
            "delivery_type",
            "notes",
            "storekeeper_notes",
            "medad_salesman_id",
            "warehouse_no",
            "total_price",
            "total_vat",
            "total_subtotal",
            # transitions
            "status",
            "manager_accept",
            "manager_accept_at",
            "manager_accept_by",
            "supervisor_accept",
            "supervisor_accept_at",
            "supervisor_accept_by",
            "storekeeper_accept",
            "storekeeper_accept_at",
            "storekeeper_accept_by",
        }
    )

    id = db.Column(db.Integer, primary_key=True)
    sequence_id = db.Column(db.String(40), nullable=False, unique=True, index=True)

    @declared_attr
    def client_id(cls):
        return db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True)

    @declared_attr
    def client(cls):
        return db.relationship("Client")

    username = db.Column(db.String(150), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True, index=True)

    delivery_date = db.Column(db.DateTime, nullable=True)
    delivery_type = db.Column(db.String(80), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    storekeeper_notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(30), nullable=False, default=DELIVERY_NOT_DELIVERED, index=True)

    manager_accept = db.Column(db.String(20), nullable=False, default=ACCEPT_PENDING, index=True)
    manager_accept_at = db.Column(db.DateTime, nullable=True)
    manager_accept_by = db.Column(db.String(150), nullable=True)

    supervisor_accept = db.Column(db.String(20), nullable=False, default=ACCEPT_PENDING, index=True)
    supervisor_accept_at = db.Column(db.DateTime, nullable=True)
    supervisor_accept_by = db.Column(db.String(150), nullable=True)

    storekeeper_accept = db.Column(db.String(20), nullable=False, default=ACCEPT_PENDING, index=True)
    storekeeper_accept_at = db.Column(db.DateTime, nullable=True)
    storekeeper_accept_by = db.Column(db.String(150), nullable=True)

    total_price = db.Column(db.Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False, default=Decimal("0"))
    total_vat = db.Column(db.Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False, default=Decimal("0"))
    total_subtotal = db.Column(db.Numeric(AMOUNT_DIGITS, AMOUNT_PLACES), nullable=False, default=Decimal("0"))

    medad_salesman_id = db.Column(db.String(50), nullable=True)
    warehouse_no = db.Column(db.String(50), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def acceptance(self, role: str) -> str:
        return getattr(self, f"{role}_accept")

    @property
    def stage(self) -> str:
        """Reader-computed stage: last contiguous acceptance in the chain."""
        if self.status == DELIVERY_REJECTED:
            return "rejected"
        if self.status == DELIVERY_DELIVERED:
            return "delivered"
        stage = "pending"
        for role in self.ACCEPT_CHAIN:
            if self.acceptance(role) != ACCEPT_ACCEPTED:
                break
            stage = f"{role}_accepted"
        return stage

    @property
    def fully_accepted(self) -> bool:
        return all(self.acceptance(role) == ACCEPT_ACCEPTED for role in self.REQUIRED_ACCEPTANCES)

    @property
    def is_terminal(self) -> bool:
        return self.status == DELIVERY_DELIVERED

    def to_dict(self, with_lines: bool = False) -> dict:
        data = _columns_dict(self)
        data["stage"] = self.stage
        data["fully_accepted"] = self.fully_accepted
        if with_lines:
            data["products"] = [line.to_dict() for line in self.lines]
            data["client"] = self.client.to_dict() if self.client else None
        return data


# ---------------------------------------------------------------------
# Payment workflow
# ---------------------------------------------------------------------
class PaymentRequest(SyncStateMixin, db.Model):
    """Payment request: originator -> accountant (due amount) -> manager (pay amount)."""

    __tablename__ = "payment_requests"

    SEQUENCE_PREFIX = "PAY"

    # Fields a stage transition may write (see workflow.gate.FieldPatch)
    PATCHABLE_FIELDS = SyncStateMixin.SYNC_FIELDS | frozenset(
        {
            "accountant_due_amount",
            "accountant_note",
            "accountant_name",
            "accountant_id",
            "accountant_updated_at",
            "manager_paid_amount",
            "priority",
            "statement",
            "manager_note",
            "manager_approved",
            "manager_name",
            "manager_id",
            "manager_updated_at",
            "remaining_amount",
            "payment_state",
            "rejected_by",
            "rejected_at",
            "rejection_note",
            "medad_payment_no",
        }
    )

    id = db.Column(db.Integer, primary_key=True)
    sequence_id = db.Column(db.String(40), nullable=False, unique=True, index=True)

    beneficiary_id = db.Column(db.String(80), nullable=False, index=True)
    beneficiary_name = db.Column(db.String(255), nullable=False)
    beneficiary_type = db.Column(db.String(50), nullable=False)
    operation_amount = db.Column(db.Numeric(12, 2), nullable=False)
    due_date = db.Column(db.Date, nullable=True)
    description = db.Column(db.Text, nullable=True)
    is_beneficiary_account_added = db.Column(db.Boolean, nullable=True)

    stage = db.Column(db.String(30), nullable=False, default=STAGE_ACCOUNTANT, index=True)
    status = db.Column(db.String(40), nullable=False, default=STATUS_PENDING_ACCOUNTANT, index=True)

    accountant_due_amount = db.Column(db.Numeric(12, 2), nullable=True)
    accountant_note = db.Column(db.Text, nullable=True)
    accountant_name = db.Column(db.String(150), nullable=True)
    accountant_id = db.Column(db.String(80), nullable=True)
    accountant_updated_at = db.Column(db.DateTime, nullable=True)

    manager_paid_amount = db.Column(db.Numeric(12, 2), nullable=True)
    priority = db.Column(db.String(5), nullable=True)
    statement = db.Column(db.Text, nullable=True)
    manager_note = db.Column(db.Text, nullable=True)
    manager_approved = db.Column(db.Boolean, nullable=True)
    manager_name = db.Column(db.String(150), nullable=True)
    manager_id = db.Column(db.String(80), nullable=True)
    manager_updated_at = db.Column(db.DateTime, nullable=True)
    remaining_amount = db.Column(db.Numeric(12, 2), nullable=True)
    payment_state = db.Column(db.String(20), nullable=True)

    rejected_by = db.Column(db.String(150), nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    rejection_note = db.Column(db.Text, nullable=True)

    medad_payment_no = db.Column(db.String(80), nullable=True)

    created_by = db.Column(db.String(150), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_approved(self) -> bool:
        return self.status in (STATUS_APPROVED_MANAGER, STATUS_APPROVED_MANAGER_PARTIAL)

    def to_dict(self) -> dict:
        return _columns_dict(self)

    def __repr__(self):
        return f"<PaymentRequest {self.sequence_id} {self.stage}/{self.status}>"


# ---------------------------------------------------------------------
# Orders & quotations
# ---------------------------------------------------------------------
class Order(AcceptanceRecordMixin, db.Model):
    __tablename__ = "orders"

    SEQUENCE_PREFIX = "NPO"
    ACCEPT_CHAIN = (ROLE_MANAGER, ROLE_SUPERVISOR, ROLE_STOREKEEPER)
    REQUIRED_ACCEPTANCES = ACCEPT_CHAIN

    PATCHABLE_FIELDS = AcceptanceRecordMixin.PATCHABLE_FIELDS | frozenset(
        {"actual_delivery_date", "medad_order_no", "medad_invoice_no"}
    )

    actual_delivery_date = db.Column(db.DateTime, nullable=True)

    medad_order_no = db.Column(db.String(80), nullable=True)
    medad_invoice_no = db.Column(db.String(80), nullable=True)

    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.id",
    )

    def __repr__(self):
        return f"<Order {self.sequence_id} {self.stage}>"


class Quotation(AcceptanceRecordMixin, db.Model):
    __tablename__ = "quotations"

    SEQUENCE_PREFIX = "NPQ"
    ACCEPT_CHAIN = (ROLE_MANAGER, ROLE_SUPERVISOR, ROLE_STOREKEEPER)
    # A quotation is accepted once management signs off; the storekeeper step is informational.
    REQUIRED_ACCEPTANCES = (ROLE_MANAGER, ROLE_SUPERVISOR)

    PATCHABLE_FIELDS = AcceptanceRecordMixin.PATCHABLE_FIELDS | frozenset({"condition", "manager_notes"})

    condition = db.Column(db.String(120), nullable=True, default="cash")
    manager_notes = db.Column(db.Text, nullable=True)

    lines = db.relationship(
        "QuotationLine",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="QuotationLine.id",
    )

    def __repr__(self):
        return f"<Quotation {self.sequence_id} {self.stage}>"


class OrderLine(LineItemMixin, db.Model):
    __tablename__ = "order_lines"

    order_id = db.Column(
        db.Integer,
        db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    order = db.relationship("Order", back_populates="lines")


class QuotationLine(LineItemMixin, db.Model):
    __tablename__ = "quotation_lines"

    quotation_id = db.Column(
        db.Integer,
        db.ForeignKey("quotations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    quotation = db.relationship("Quotation", back_populates="lines")


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
class AuditLog(db.Model):
    """Workflow audit trail."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    action = db.Column(db.String(30), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
