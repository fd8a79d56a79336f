"""
Rental Finance – Domain Models

Financial core:
- Invoice / InvoiceItem (signed line-item ledger, optimistic version counter)
- ExpenseCategory / Expense (COGS/OPEX ledger, soft delete, system-managed back-references)
- InvestorPayout / PayoutVehicleLine (snapshotted payout totals and per-vehicle breakdown)
- Payment

Collaborator records read by the core:
- User, Settings, InvestorProfile, Vehicle, Booking, MaintenanceRecord, SalaryRecord

IMPORTANT:
- Amounts are Numeric(12, 2); arithmetic happens on Decimal in the services.
- Line items, discounts and deposits are signed. No model validator rejects negative amounts.
"""

from __future__ import annotations

from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from .extensions import db
from .money import ZERO, to_decimal


# ---------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------
ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_ADMIN = "ADMIN"
ROLE_FINANCE = "FINANCE"
ROLE_MANAGER = "MANAGER"
ROLE_STAFF = "STAFF"
ROLE_INVESTOR = "INVESTOR"
FINANCE_ROLES = (ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_FINANCE)

INVOICE_DRAFT = "DRAFT"
INVOICE_ISSUED = "ISSUED"
INVOICE_PAID = "PAID"
INVOICE_VOID = "VOID"
INVOICE_STATUSES = (INVOICE_DRAFT, INVOICE_ISSUED, INVOICE_PAID, INVOICE_VOID)
INVOICE_TERMINAL_STATUSES = (INVOICE_PAID, INVOICE_VOID)
REVENUE_INVOICE_STATUSES = (INVOICE_ISSUED, INVOICE_PAID)

BILLABLE_BOOKING_STATUSES = ("CONFIRMED", "CHECKED_OUT", "CHECKED_IN")

CATEGORY_COGS = "COGS"
CATEGORY_OPEX = "OPEX"

CODE_SALARIES = "SALARIES"
CODE_RENT = "RENT"
CODE_UTILITIES = "UTILITIES"
CODE_FINES = "FINES"
CODE_INVESTOR_PAYOUTS = "INVESTOR_PAYOUTS"
SYSTEM_MANAGED_CATEGORY_CODES = (CODE_SALARIES, CODE_INVESTOR_PAYOUTS)

PAYOUT_DRAFT = "DRAFT"
PAYOUT_APPROVED = "APPROVED"
PAYOUT_PAID = "PAID"
PAYOUT_CANCELLED = "CANCELLED"
PAYOUT_STATUSES = (PAYOUT_DRAFT, PAYOUT_APPROVED, PAYOUT_PAID, PAYOUT_CANCELLED)

PAYMENT_PENDING = "PENDING"
PAYMENT_SUCCESS = "SUCCESS"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_SUCCESS, PAYMENT_FAILED, PAYMENT_REFUNDED)
PAYMENT_METHODS = ("CASH", "CARD", "BANK_TRANSFER", "ONLINE", "OTHER")

MAINTENANCE_COSTED_STATUSES = ("COMPLETED", "IN_PROGRESS")


# ---------------------------------------------------------------------
# Optimistic locking
# ---------------------------------------------------------------------
class VersionedMixin:
    """Rows guarded by a hand-incremented `version` column."""

    def bump_version(self) -> None:
        self.version = (self.version or 0) + 1


# ---------------------------------------------------------------------
# Users & settings
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """System login user. Role drives both staff permissions and investor scoping."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=True)

    role = db.Column(db.String(20), nullable=False, default=ROLE_STAFF, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    investor_profile = db.relationship("InvestorProfile", back_populates="user", uselist=False)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    def is_finance_staff(self) -> bool:
        return self.role in FINANCE_ROLES

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"


class Settings(db.Model):
    """Tenant-wide settings (single row)."""

    __tablename__ = "settings"

    id = db.Column(db.Integer, primary_key=True)

    company_name = db.Column(db.String(255), nullable=False, default="MisterWheels")
    default_currency = db.Column(db.String(3), nullable=False, default="AED")
    timezone = db.Column(db.String(64), nullable=False, default="Asia/Dubai")
    default_tax_percent = db.Column(db.Numeric(5, 2), nullable=False, default=to_decimal("5.00"))

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ---------------------------------------------------------------------
# Fleet & bookings (collaborator data)
# ---------------------------------------------------------------------
class InvestorProfile(db.Model):
    __tablename__ = "investor_profiles"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    type = db.Column(db.String(20), nullable=False, default="INDIVIDUAL")
    company_name = db.Column(db.String(255), nullable=True)
    tax_id = db.Column(db.String(50), nullable=True)

    bank_account_name = db.Column(db.String(255))
    bank_name = db.Column(db.String(120))
    iban = db.Column(db.String(34))
    swift = db.Column(db.String(11))

    payout_frequency = db.Column(db.String(20), nullable=False, default="MONTHLY")

    # Operator's share of revenue; None => configured default
    commission_percent = db.Column(db.Numeric(5, 2), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    user = db.relationship("User", back_populates="investor_profile")
    vehicles = db.relationship("Vehicle", back_populates="investor", lazy=True)

    @property
    def display_name(self) -> str:
        if self.company_name:
            return self.company_name
        if self.user and self.user.name:
            return self.user.name
        return "Unknown Investor"

    def __repr__(self):
        return f"<InvestorProfile {self.display_name}>"


class Vehicle(db.Model):
    __tablename__ = "vehicles"

    id = db.Column(db.Integer, primary_key=True)

    plate_number = db.Column(db.String(20), nullable=False, unique=True, index=True)
    brand = db.Column(db.String(80), nullable=False)
    model = db.Column(db.String(80), nullable=False)
    year = db.Column(db.Integer, nullable=True)
    category = db.Column(db.String(40), nullable=False, default="ECONOMY")

    ownership_type = db.Column(db.String(20), nullable=False, default="COMPANY", index=True)
    investor_id = db.Column(
        db.Integer,
        db.ForeignKey("investor_profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    daily_rate = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    weekly_rate = db.Column(db.Numeric(12, 2), nullable=True)
    monthly_rate = db.Column(db.Numeric(12, 2), nullable=True)

    current_branch = db.Column(db.String(80), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    investor = db.relationship("InvestorProfile", back_populates="vehicles")

    def __repr__(self):
        return f"<Vehicle {self.plate_number}>"


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    vehicle_id = db.Column(
        db.Integer,
        db.ForeignKey("vehicles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    customer_name = db.Column(db.String(255), nullable=True)

    start_datetime = db.Column(db.DateTime, nullable=False, index=True)
    end_datetime = db.Column(db.DateTime, nullable=True, index=True)

    pickup_branch = db.Column(db.String(80), nullable=True, index=True)
    dropoff_branch = db.Column(db.String(80), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="PENDING", index=True)
    rental_type = db.Column(db.String(10), nullable=False, default="DAILY")

    discounts = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    deposit_amount = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    vehicle = db.relationship("Vehicle", backref=db.backref("bookings", lazy=True))
    invoice = db.relationship("Invoice", back_populates="booking", uselist=False)

    def __repr__(self):
        return f"<Booking {self.id} vehicle={self.vehicle_id}>"


class MaintenanceRecord(db.Model):
    __tablename__ = "maintenance_records"

    id = db.Column(db.Integer, primary_key=True)

    vehicle_id = db.Column(
        db.Integer,
        db.ForeignKey("vehicles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    type = db.Column(db.String(20), nullable=False, default="SERVICE", index=True)
    description = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="OPEN", index=True)

    scheduled_date = db.Column(db.Date, nullable=True, index=True)
    completed_date = db.Column(db.Date, nullable=True, index=True)

    cost = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    vendor_name = db.Column(db.String(255), nullable=True)
    branch_id = db.Column(db.String(80), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    vehicle = db.relationship("Vehicle", backref=db.backref("maintenance_records", lazy=True))

    @property
    def cost_date(self):
        """Date the cost is booked on: completion, else the scheduled date."""
        return self.completed_date or self.scheduled_date


# ---------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------
class Invoice(VersionedMixin, db.Model):
    """
    One invoice per booking.

    Invariants (maintained by services.invoices):
    - subtotal == sum(item.amount)
    - total == max(0, subtotal + tax_amount)
    - PAID / VOID are terminal.

    `version` is the version_id_col. Services call bump_version() on every write,
    so a change that only touches invoice_items still moves the counter; the
    UPDATE is guarded by the previously committed value.
    """

    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)

    booking_id = db.Column(
        db.Integer,
        db.ForeignKey("bookings.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
        index=True,
    )

    invoice_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    issue_date = db.Column(db.Date, nullable=False, index=True)
    due_date = db.Column(db.Date, nullable=False)

    currency = db.Column(db.String(3), nullable=False, default="AED")
    vat_percent = db.Column(db.Numeric(5, 2), nullable=False, default=ZERO)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    total = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)

    status = db.Column(db.String(10), nullable=False, default=INVOICE_ISSUED, index=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    booking = db.relationship("Booking", back_populates="invoice")

    items = db.relationship(
        "InvoiceItem",
        back_populates="invoice",
        order_by="InvoiceItem.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def is_editable(self) -> bool:
        return self.status not in INVOICE_TERMINAL_STATUSES

    def __repr__(self):
        return f"<Invoice {self.invoice_number} {self.status}>"


class InvoiceItem(db.Model):
    __tablename__ = "invoice_items"

    id = db.Column(db.Integer, primary_key=True)

    invoice_id = db.Column(
        db.Integer,
        db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position = db.Column(db.Integer, nullable=False, default=0)
    label = db.Column(db.String(255), nullable=False)

    # Signed: charges positive, discounts/deposits negative
    amount = db.Column(db.Numeric(12, 2), nullable=False)

    invoice = db.relationship("Invoice", back_populates="items")


# ---------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------
class ExpenseCategory(db.Model):
    __tablename__ = "expense_categories"

    id = db.Column(db.Integer, primary_key=True)

    code = db.Column(db.String(40), nullable=False, unique=True, index=True)
    name = db.Column(db.String(120), nullable=False)

    # COGS / OPEX; NULL on legacy rows (treated as COGS by the P&L)
    type = db.Column(db.String(10), nullable=True, index=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ExpenseCategory {self.code} ({self.type})>"


class Expense(db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)

    category_id = db.Column(
        db.Integer,
        db.ForeignKey("expense_categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    description = db.Column(db.String(500), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="AED")
    date_incurred = db.Column(db.Date, nullable=False, index=True)
    branch_id = db.Column(db.String(80), nullable=True, index=True)

    # Back-references of system-generated expenses
    salary_record_id = db.Column(
        db.Integer,
        db.ForeignKey("salary_records.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
        index=True,
    )
    investor_payout_id = db.Column(
        db.Integer,
        db.ForeignKey("investor_payouts.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
        index=True,
    )
    investor_id = db.Column(
        db.Integer,
        db.ForeignKey("investor_profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    is_deleted = db.Column(db.Boolean, default=False, nullable=False, index=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    category = db.relationship("ExpenseCategory", backref=db.backref("expenses", lazy=True))
    salary_record = db.relationship("SalaryRecord", back_populates="expense")
    investor_payout = db.relationship("InvestorPayout", back_populates="expense")
    investor = db.relationship("InvestorProfile")

    @property
    def is_system_managed(self) -> bool:
        """Owned by the salary or payout subsystem; not editable through the generic interface."""
        if self.salary_record_id is not None or self.investor_payout_id is not None:
            return True
        return bool(self.category and self.category.code in SYSTEM_MANAGED_CATEGORY_CODES)

    def __repr__(self):
        return f"<Expense {self.id} {self.amount}>"


# ---------------------------------------------------------------------
# Payments & investor payouts
# ---------------------------------------------------------------------
class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)

    booking_id = db.Column(
        db.Integer,
        db.ForeignKey("bookings.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    method = db.Column(db.String(20), nullable=False, default="BANK_TRANSFER")
    status = db.Column(db.String(10), nullable=False, default=PAYMENT_PENDING, index=True)
    transaction_id = db.Column(db.String(120), nullable=True, index=True)
    gateway_reference = db.Column(db.String(120), nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    investor_payout = db.relationship("InvestorPayout", back_populates="payment", uselist=False)


class InvestorPayout(VersionedMixin, db.Model):
    """
    Investor payout with snapshotted totals.

    Linked records:
    - exactly one Expense (Expense.investor_payout_id)
    - at most one Payment (payment_id)
    """

    __tablename__ = "investor_payouts"

    id = db.Column(db.Integer, primary_key=True)

    investor_id = db.Column(
        db.Integer,
        db.ForeignKey("investor_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    period_from = db.Column(db.Date, nullable=False, index=True)
    period_to = db.Column(db.Date, nullable=False, index=True)
    branch_id = db.Column(db.String(80), nullable=True, index=True)

    total_revenue = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    commission_percent = db.Column(db.Numeric(5, 2), nullable=False, default=ZERO)
    commission_amount = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    net_payout = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)

    status = db.Column(db.String(10), nullable=False, default=PAYOUT_DRAFT, index=True)

    payment_id = db.Column(
        db.Integer,
        db.ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
        index=True,
    )

    notes = db.Column(db.Text, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    investor = db.relationship("InvestorProfile", backref=db.backref("payouts", lazy=True))
    payment = db.relationship("Payment", back_populates="investor_payout")
    expense = db.relationship("Expense", back_populates="investor_payout", uselist=False)
    created_by = db.relationship("User")

    lines = db.relationship(
        "PayoutVehicleLine",
        back_populates="payout",
        order_by="PayoutVehicleLine.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def is_active(self) -> bool:
        return self.status != PAYOUT_CANCELLED

    def __repr__(self):
        return f"<InvestorPayout {self.id} {self.status}>"


class PayoutVehicleLine(db.Model):
    """Per-vehicle revenue breakdown snapshotted into a payout."""

    __tablename__ = "payout_vehicle_lines"

    id = db.Column(db.Integer, primary_key=True)

    payout_id = db.Column(
        db.Integer,
        db.ForeignKey("investor_payouts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = db.Column(db.Integer, nullable=False, default=0)

    vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    plate_number = db.Column(db.String(20), nullable=False)
    brand = db.Column(db.String(80), nullable=False)
    model = db.Column(db.String(80), nullable=False)
    category = db.Column(db.String(40), nullable=False)

    bookings_count = db.Column(db.Integer, nullable=False, default=0)
    revenue = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)

    payout = db.relationship("InvestorPayout", back_populates="lines")


# ---------------------------------------------------------------------
# Payroll
# ---------------------------------------------------------------------
class SalaryRecord(db.Model):
    __tablename__ = "salary_records"

    id = db.Column(db.Integer, primary_key=True)

    staff_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    month = db.Column(db.Integer, nullable=False)
    year = db.Column(db.Integer, nullable=False)

    gross_salary = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    allowances = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    deductions = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    net_salary = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)

    status = db.Column(db.String(10), nullable=False, default="PENDING", index=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    branch_id = db.Column(db.String(80), nullable=True, index=True)

    is_deleted = db.Column(db.Boolean, default=False, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    staff_user = db.relationship("User")
    expense = db.relationship("Expense", back_populates="salary_record", uselist=False)

    __table_args__ = (
        db.UniqueConstraint("staff_user_id", "month", "year", name="uq_salary_staff_month"),
    )


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
class AuditLog(db.Model):
    """Who changed which financial record, with before/after snapshots."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    action = db.Column(db.String(20), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    user = db.relationship("User", backref=db.backref("audit_entries", lazy=True))
