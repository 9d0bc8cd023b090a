import json
import math
import os
import re
import secrets
import smtplib
import ssl
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.message import EmailMessage
from email.utils import formataddr, format_datetime, make_msgid
from functools import wraps
from pathlib import Path

import stripe
from dotenv import load_dotenv
from flask import Flask, current_app, g, jsonify, request, session
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import or_
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from pricing import (
    BILLING_CYCLES,
    PLAN_CATALOGUE,
    PLAN_TIERS,
    WEBSITE_TYPES,
    RateTable,
    auto_invoice_lines,
    calculate_cloud_price,
    filter_services_for_location,
    generate_quote,
    get_website_price,
    plan_price,
    round_currency,
    subscription_period_end,
    to_cents,
)
from profiles import profile_completion_percentage, validate_client_profile
from reports import (
    build_intervention_report,
    clean_work_details,
    dashboard_stats,
    monthly_report,
    render_intervention_report,
)
from workflow import (
    TICKET_PRIORITY_OPTIONS,
    TICKET_STATUS_OPTIONS,
    TICKET_TYPE_OPTIONS,
    Allowed,
    TicketStatus,
    TicketType,
    check_finalization,
    check_transition,
    coerce_steps,
    completion_percentage,
    ensure_workflow_steps,
    find_step,
    is_terminal,
    toggle_step,
)

load_dotenv()

db = SQLAlchemy()

StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError

STRIPE_DEFAULT_CURRENCY = "eur"

PORTAL_SESSION_KEY = "client_portal_id"
TECH_SESSION_KEY = "technician_portal_id"

CLIENT_STATUS_OPTIONS = ["active", "suspended", "cancelled"]
CLIENT_PRIORITY_OPTIONS = ["low", "normal", "high"]
SUBSCRIPTION_STATUS_OPTIONS = ["active", "past_due", "cancelled", "suspended"]
INVOICE_STATUS_OPTIONS = ["draft", "sent", "paid", "overdue", "cancelled"]
WEBSITE_STATUS_OPTIONS = ["planning", "development", "review", "live", "maintenance"]
TECH_NOTE_TYPES = ["diagnostic", "intervention", "completion", "photo"]
NOTIFICATION_TYPES = [
    "ticket_update",
    "invoice_due",
    "payment_received",
    "system",
    "intervention_scheduled",
]

PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "phone",
    "address",
    "city",
    "province",
    "postal_code",
)

TICKET_STATUS_MESSAGES = {
    "in_progress": "Your intervention has started.",
    "resolved": "Your intervention has been resolved.",
    "closed": "Your ticket has been closed.",
    "cancelled": "Your ticket has been cancelled.",
}

DEFAULT_WEBSITE_PAGES = ["Home", "Services", "About", "Contact"]

TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def isoformat_or_none(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value).isoformat()
    return value.isoformat()


def cents_to_amount(cents: int | None) -> float:
    if not cents:
        return 0.0
    return float(Decimal(cents) / Decimal(100))


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def generate_invoice_number(prefix: str = "INV") -> str:
    return f"{prefix}-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


def generate_subdomain(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", (name or "").lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or f"site-{secrets.token_hex(3)}"


def parse_amount(raw: object) -> Decimal | None:
    if raw is None or raw == "":
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not value.is_finite():
        return None
    return value.quantize(Decimal("0.01"))


def parse_date(raw: object) -> date | None:
    """Parse a YYYY-MM-DD value, raising ValueError on malformed input."""

    if raw is None or raw == "":
        return None
    return datetime.strptime(str(raw).strip(), "%Y-%m-%d").date()


def parse_datetime(raw: object) -> datetime | None:
    if raw is None or raw == "":
        return None
    cleaned = str(raw).strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(cleaned))


def parse_int(raw: object) -> int | None:
    if raw is None or raw == "" or isinstance(raw, bool):
        return None
    try:
        return int(float(str(raw).strip()))
    except (OverflowError, ValueError):
        return None


def request_payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def payload_text(payload: dict, key: str, strip: bool = True) -> str:
    """Read a text field from a JSON or form payload, ignoring lists and objects."""

    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (str, int, float, Decimal)):
        return ""
    text = str(value)
    return text.strip() if strip else text


def stripe_active(app: Flask | None = None) -> bool:
    app = app or current_app
    if app is None:
        return False
    return bool(app.config.get("STRIPE_SECRET_KEY"))


def init_stripe(app: Flask) -> None:
    stripe.api_key = app.config.get("STRIPE_SECRET_KEY") or None


class AdminUser(db.Model):
    __tablename__ = "admin_users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(120), nullable=False, unique=True)
    email = db.Column(db.String(255), unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime(timezone=True))

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<AdminUser {self.username}>"


class Technician(db.Model):
    __tablename__ = "technicians"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone = db.Column(db.String(50))
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    tickets = db.relationship("ServiceTicket", back_populates="technician")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Technician {self.email}>"


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    first_name = db.Column(db.String(120))
    last_name = db.Column(db.String(120))
    phone = db.Column(db.String(40))
    address = db.Column(db.String(255))
    city = db.Column(db.String(120))
    province = db.Column(db.String(60), default="QC")
    postal_code = db.Column(db.String(20))
    is_in_islands = db.Column(db.Boolean, nullable=False, default=True)
    subscription_plan = db.Column(db.String(20), nullable=False, default="base")
    subscription_price_cents = db.Column(db.Integer, nullable=False, default=2500)
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    subscription_status = db.Column(db.String(20), nullable=False, default="active")
    current_period_start = db.Column(db.DateTime(timezone=True))
    current_period_end = db.Column(db.DateTime(timezone=True))
    stripe_subscription_id = db.Column(db.String(64))
    cloud_quota_gb = db.Column(db.Float, nullable=False, default=10)
    cloud_used_gb = db.Column(db.Float, nullable=False, default=0)
    priority = db.Column(db.String(20), nullable=False, default="normal")
    status = db.Column(db.String(20), nullable=False, default="active")
    internal_notes = db.Column(db.Text)
    portal_password_hash = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_activity_at = db.Column(db.DateTime(timezone=True))

    tickets = db.relationship(
        "ServiceTicket", back_populates="client", order_by="ServiceTicket.created_at.desc()"
    )
    invoices = db.relationship("Invoice", back_populates="client")
    websites = db.relationship("WebsiteProject", back_populates="client")
    notifications = db.relationship(
        "Notification", back_populates="client", order_by="Notification.created_at.desc()"
    )

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @property
    def subscription(self) -> dict[str, object]:
        return {
            "plan": self.subscription_plan,
            "price": cents_to_amount(self.subscription_price_cents),
            "billing_cycle": self.billing_cycle,
            "status": self.subscription_status,
            "current_period_start": isoformat_or_none(self.current_period_start),
            "current_period_end": isoformat_or_none(self.current_period_end),
            "stripe_subscription_id": self.stripe_subscription_id,
        }

    def to_dict(self, include_internal: bool = False) -> dict[str, object]:
        data = {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "province": self.province,
            "postal_code": self.postal_code,
            "is_in_islands": self.is_in_islands,
            "subscription": self.subscription,
            "cloud_quota_gb": self.cloud_quota_gb,
            "cloud_used_gb": self.cloud_used_gb,
            "priority": self.priority,
            "status": self.status,
            "created_at": isoformat_or_none(self.created_at),
            "last_activity_at": isoformat_or_none(self.last_activity_at),
        }
        if include_internal:
            data["internal_notes"] = self.internal_notes
        return data

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Client {self.email}>"


class ServiceTicket(db.Model):
    __tablename__ = "service_tickets"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    ticket_type = db.Column(db.String(20), nullable=False, default="support")
    priority = db.Column(db.String(20), nullable=False, default="normal")
    status = db.Column(db.String(20), nullable=False, default="open")
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("technicians.id"))
    scheduled_for = db.Column(db.DateTime(timezone=True))
    location = db.Column(db.String(255))
    estimated_duration = db.Column(db.Integer)
    actual_duration = db.Column(db.Integer)
    internal_notes = db.Column(db.Text)
    client_notes = db.Column(db.Text)
    workflow_steps_data = db.Column(db.JSON)
    completion_percentage = db.Column(db.Integer, nullable=False, default=0)
    completion_notes = db.Column(db.Text)
    intervention_started_at = db.Column(db.DateTime(timezone=True))
    follow_up_of_id = db.Column(db.Integer, db.ForeignKey("service_tickets.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    resolved_at = db.Column(db.DateTime(timezone=True))

    client = db.relationship("Client", back_populates="tickets")
    technician = db.relationship("Technician", back_populates="tickets")
    notes = db.relationship(
        "TechNote",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TechNote.created_at.desc()",
    )
    reports = db.relationship(
        "InterventionReport", back_populates="ticket", cascade="all, delete-orphan"
    )

    @property
    def workflow_steps(self):
        return coerce_steps(self.workflow_steps_data)

    def set_workflow_steps(self, steps) -> None:
        # Reassign the list so the JSON column is flagged dirty.
        self.workflow_steps_data = [step.to_dict() for step in steps]
        self.completion_percentage = completion_percentage(steps)

    def to_dict(self, include_internal: bool = False) -> dict[str, object]:
        data = {
            "id": self.id,
            "client_id": self.client_id,
            "title": self.title,
            "description": self.description,
            "type": self.ticket_type,
            "priority": self.priority,
            "status": self.status,
            "assigned_to_id": self.assigned_to_id,
            "scheduled_for": isoformat_or_none(self.scheduled_for),
            "location": self.location,
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
            "client_notes": self.client_notes,
            "workflow_steps": [step.to_dict() for step in self.workflow_steps],
            "completion_percentage": self.completion_percentage,
            "completion_notes": self.completion_notes,
            "intervention_started_at": isoformat_or_none(self.intervention_started_at),
            "follow_up_of_id": self.follow_up_of_id,
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
            "resolved_at": isoformat_or_none(self.resolved_at),
        }
        if include_internal:
            data["internal_notes"] = self.internal_notes
        return data

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ServiceTicket {self.id} for client {self.client_id}>"


class TechNote(db.Model):
    __tablename__ = "tech_notes"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("service_tickets.id"), nullable=False, index=True
    )
    technician_id = db.Column(db.Integer, db.ForeignKey("technicians.id"))
    content = db.Column(db.Text, nullable=False)
    note_type = db.Column(db.String(20), nullable=False, default="intervention")
    location = db.Column(db.String(120))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    ticket = db.relationship("ServiceTicket", back_populates="notes")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "technician_id": self.technician_id,
            "content": self.content,
            "type": self.note_type,
            "location": self.location,
            "created_at": isoformat_or_none(self.created_at),
        }


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("service_tickets.id"))
    invoice_number = db.Column(db.String(40), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="draft")
    due_date = db.Column(db.Date)
    paid_at = db.Column(db.DateTime(timezone=True))
    sent_at = db.Column(db.DateTime(timezone=True))
    stripe_payment_intent_id = db.Column(db.String(64))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    client = db.relationship("Client", back_populates="invoices")
    items = db.relationship(
        "InvoiceItem", back_populates="invoice", cascade="all, delete-orphan"
    )

    @property
    def total(self) -> float:
        return cents_to_amount(self.total_cents)

    def set_amounts(self, amount: Decimal | float, tax: Decimal | float) -> None:
        self.amount_cents = to_cents(amount)
        self.tax_cents = to_cents(tax)
        self.total_cents = self.amount_cents + self.tax_cents

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "ticket_id": self.ticket_id,
            "invoice_number": self.invoice_number,
            "description": self.description,
            "amount": cents_to_amount(self.amount_cents),
            "tax": cents_to_amount(self.tax_cents),
            "total": self.total,
            "items": [item.to_dict() for item in self.items],
            "status": self.status,
            "due_date": isoformat_or_none(self.due_date),
            "paid_at": isoformat_or_none(self.paid_at),
            "sent_at": isoformat_or_none(self.sent_at),
            "created_at": isoformat_or_none(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Invoice {self.invoice_number} for client {self.client_id}>"


class InvoiceItem(db.Model):
    __tablename__ = "invoice_items"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    invoice = db.relationship("Invoice", back_populates="items")

    def to_dict(self) -> dict[str, object]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": cents_to_amount(self.unit_price_cents),
            "total": cents_to_amount(self.total_cents),
        }


class WebsiteProject(db.Model):
    __tablename__ = "website_projects"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    site_type = db.Column(db.String(20), nullable=False, default="vitrine")
    name = db.Column(db.String(255), nullable=False)
    domain = db.Column(db.String(255))
    subdomain = db.Column(db.String(120), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="planning")
    content = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    launched_at = db.Column(db.DateTime(timezone=True))

    client = db.relationship("Client", back_populates="websites")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "type": self.site_type,
            "name": self.name,
            "domain": self.domain,
            "subdomain": self.subdomain,
            "status": self.status,
            "content": self.content or {},
            "created_at": isoformat_or_none(self.created_at),
            "launched_at": isoformat_or_none(self.launched_at),
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    notification_type = db.Column(db.String(40), nullable=False, default="system")
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    action_url = db.Column(db.String(255))
    read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    read_at = db.Column(db.DateTime(timezone=True))

    client = db.relationship("Client", back_populates="notifications")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "action_url": self.action_url,
            "read": self.read,
            "created_at": isoformat_or_none(self.created_at),
            "read_at": isoformat_or_none(self.read_at),
        }


class InterventionReport(db.Model):
    __tablename__ = "intervention_reports"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("service_tickets.id"), nullable=False, index=True
    )
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False)
    technician_id = db.Column(db.Integer, db.ForeignKey("technicians.id"))
    report_type = db.Column(db.String(20), nullable=False, default="intervention")
    title = db.Column(db.String(255), nullable=False)
    summary = db.Column(db.Text)
    work_performed = db.Column(db.JSON)
    parts_used = db.Column(db.JSON)
    issues = db.Column(db.JSON)
    recommendations = db.Column(db.JSON)
    time_spent = db.Column(db.Integer, nullable=False, default=0)
    technician_signature = db.Column(db.String(255))
    client_signature = db.Column(db.String(255))
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    ticket = db.relationship("ServiceTicket", back_populates="reports")
    client = db.relationship("Client")

    def to_report_dict(self) -> dict[str, object]:
        return {
            "ticket_id": self.ticket_id,
            "client_id": self.client_id,
            "technician_id": self.technician_id,
            "report_type": self.report_type,
            "title": self.title,
            "summary": self.summary,
            "work_performed": self.work_performed or [],
            "parts_used": self.parts_used or [],
            "issues": self.issues or [],
            "recommendations": self.recommendations or [],
            "time_spent": self.time_spent,
            "technician_signature": self.technician_signature,
            "client_signature": self.client_signature,
            "completed_at": self.completed_at,
        }


class PricingConfig(db.Model):
    __tablename__ = "pricing_config"

    id = db.Column(db.Integer, primary_key=True)
    rates = db.Column(db.JSON, nullable=False, default=dict)
    updated_by = db.Column(db.String(120))
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


def get_rate_table() -> RateTable:
    config = PricingConfig.query.first()
    if config is None:
        return RateTable()
    return RateTable.from_mapping(config.rates)


def save_rate_table(rates: RateTable, updated_by: str) -> PricingConfig:
    config = PricingConfig.query.first()
    if config is None:
        config = PricingConfig()
        db.session.add(config)
    config.rates = rates.to_dict()
    config.updated_by = updated_by
    config.updated_at = utcnow()
    return config


def cloud_summary(client: Client, rates: RateTable) -> dict[str, object]:
    quota = client.cloud_quota_gb or 0
    used = client.cloud_used_gb or 0
    return {
        "quota_gb": quota,
        "used_gb": used,
        "usage_percent": round_currency(used / quota * 100) if quota > 0 else 0,
        "monthly_price": round_currency(calculate_cloud_price(quota, rates)),
    }


def apply_subscription_plan(
    client: Client, plan: str, billing_cycle: str, rates: RateTable
) -> None:
    period_start = utcnow()
    client.subscription_plan = plan
    client.subscription_price_cents = to_cents(plan_price(plan, rates))
    client.billing_cycle = billing_cycle
    client.subscription_status = "active"
    client.current_period_start = period_start
    client.current_period_end = subscription_period_end(period_start, billing_cycle)
    included = PLAN_CATALOGUE[plan]["cloud_storage_gb"]
    if (client.cloud_quota_gb or 0) < included:
        client.cloud_quota_gb = included


def send_notification_email(app: Flask, recipient: str, subject: str, body: str) -> bool:
    if not recipient:
        return False

    sender = app.config.get("NOTIFICATION_EMAIL_SENDER")
    if callable(sender):
        try:
            return bool(sender(recipient, subject, body))
        except Exception as exc:  # pragma: no cover - custom hook failure
            app.logger.warning("Custom notification email sender failed: %s", exc)
            return False

    host = (app.config.get("SMTP_HOST") or "").strip()
    if not host:
        return False

    try:
        port = int(app.config.get("SMTP_PORT") or 587)
    except (TypeError, ValueError):
        port = 587

    username = (app.config.get("SMTP_USERNAME") or "").strip()
    password = app.config.get("SMTP_PASSWORD") or ""
    from_email = (app.config.get("NOTIFICATION_FROM_EMAIL") or username).strip()
    from_name = (app.config.get("COMPANY_NAME") or "").strip()
    if not from_email:
        app.logger.warning("Notification email skipped: no sender address configured.")
        return False

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((from_name, from_email))
    message["To"] = recipient
    message["Date"] = format_datetime(utcnow())
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])
    message.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            smtp.ehlo()
            if app.config.get("SMTP_USE_TLS", True):
                context = ssl.create_default_context()
                smtp.starttls(context=context)
                smtp.ehlo()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(message)
        return True
    except Exception as exc:  # pragma: no cover - external service dependency
        app.logger.warning("Notification email delivery failed: %s", exc)
        return False


def create_notification(
    client: Client,
    notification_type: str,
    title: str,
    message: str,
    action_url: str | None = None,
) -> Notification:
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")

    notification = Notification(
        client_id=client.id,
        notification_type=notification_type,
        title=title,
        message=message,
        action_url=action_url,
    )
    db.session.add(notification)
    send_notification_email(current_app, client.email, title, message)
    return notification


def notify_ticket_update(ticket: ServiceTicket, status: str) -> Notification:
    message = TICKET_STATUS_MESSAGES.get(status, "Your ticket has been updated.")
    return create_notification(
        ticket.client,
        "ticket_update",
        f"Update - {ticket.title}",
        message,
        "/portal/tickets",
    )


def notify_invoice_due(invoice: Invoice) -> Notification:
    due_line = invoice.due_date.isoformat() if invoice.due_date else "upon receipt"
    return create_notification(
        invoice.client,
        "invoice_due",
        "Invoice to pay",
        f"Your invoice {invoice.invoice_number} of {invoice.total:.2f}$ is due {due_line}.",
        "/portal/invoices",
    )


def notify_payment_received(invoice: Invoice) -> Notification:
    return create_notification(
        invoice.client,
        "payment_received",
        "Payment confirmed",
        f"Your payment of {invoice.total:.2f}$ for invoice {invoice.invoice_number} was received.",
        "/portal/invoices",
    )


def notify_intervention_scheduled(ticket: ServiceTicket) -> Notification:
    scheduled = ensure_aware(ticket.scheduled_for)
    return create_notification(
        ticket.client,
        "intervention_scheduled",
        "Intervention scheduled",
        f'Your intervention "{ticket.title}" is scheduled for {scheduled:%Y-%m-%d at %H:%M}.',
        "/portal/tickets",
    )


def on_client_created(client: Client) -> None:
    company = current_app.config.get("COMPANY_NAME")
    create_notification(
        client,
        "system",
        f"Welcome to {company}!",
        "Your account has been created. Your cloud space is now available.",
        "/portal",
    )


def create_auto_invoice(ticket: ServiceTicket, rates: RateTable) -> Invoice:
    lines = auto_invoice_lines(ticket.actual_duration, ticket.title, rates)
    due_days = int(current_app.config.get("INVOICE_DUE_DAYS", 30))
    invoice = Invoice(
        client_id=ticket.client_id,
        ticket_id=ticket.id,
        invoice_number=generate_invoice_number("AUTO"),
        description=lines["description"],
        status="draft",
        due_date=date.today() + timedelta(days=due_days),
    )
    invoice.set_amounts(lines["amount"], lines["tax"])
    for line in lines["items"]:
        invoice.items.append(
            InvoiceItem(
                description=line["description"],
                quantity=line["quantity"],
                unit_price_cents=to_cents(line["unit_price"]),
                total_cents=to_cents(line["total"]),
            )
        )
    db.session.add(invoice)
    return invoice


def schedule_follow_up(ticket: ServiceTicket) -> ServiceTicket:
    delay_days = int(current_app.config.get("FOLLOW_UP_DELAY_DAYS", 7))
    follow_up = ServiceTicket(
        client_id=ticket.client_id,
        title="Automatic intervention follow-up",
        description=(
            f"Automatic follow-up of the previous intervention (ticket #{ticket.id}). "
            "How is everything running since our visit?"
        ),
        ticket_type=TicketType.SUPPORT.value,
        priority="low",
        status=TicketStatus.OPEN.value,
        scheduled_for=utcnow() + timedelta(days=delay_days),
        follow_up_of_id=ticket.id,
    )
    db.session.add(follow_up)
    return follow_up


def store_intervention_report(
    ticket: ServiceTicket, work_details: dict | None
) -> InterventionReport:
    data = build_intervention_report(ticket, work_details)
    report = InterventionReport(
        ticket_id=ticket.id,
        client_id=ticket.client_id,
        technician_id=data["technician_id"],
        report_type=data["report_type"],
        title=data["title"],
        summary=data["summary"],
        work_performed=data["work_performed"],
        parts_used=data["parts_used"],
        issues=data["issues"],
        recommendations=data["recommendations"],
        time_spent=data["time_spent"],
        technician_signature=data["technician_signature"],
        client_signature=data["client_signature"],
        completed_at=data["completed_at"],
    )
    ticket.reports.append(report)
    return report


def on_ticket_status_changed(
    ticket: ServiceTicket,
    old_status: str,
    new_status: str,
    work_details: dict | None = None,
) -> dict[str, object]:
    """Side effects of a status change, added to the caller's session."""

    effects: dict[str, object] = {}
    notify_ticket_update(ticket, new_status)

    if new_status != TicketStatus.RESOLVED.value or old_status == TicketStatus.RESOLVED.value:
        return effects
    if ticket.reports:
        # Re-resolved after being reopened.
        return effects

    db.session.flush()
    effects["report"] = store_intervention_report(ticket, work_details)

    if ticket.ticket_type == TicketType.INTERVENTION.value:
        if ticket.actual_duration:
            effects["invoice"] = create_auto_invoice(ticket, get_rate_table())
        effects["follow_up"] = schedule_follow_up(ticket)

    current_app.logger.info(
        "Ticket %s resolved: report stored, invoice=%s, follow-up=%s",
        ticket.id,
        "invoice" in effects,
        "follow_up" in effects,
    )
    return effects


def process_overdue_invoices(today: date | None = None) -> int:
    today = today or date.today()
    overdue = Invoice.query.filter(
        Invoice.status == "sent",
        Invoice.due_date.isnot(None),
        Invoice.due_date < today,
    ).all()
    for invoice in overdue:
        invoice.status = "overdue"
        notify_invoice_due(invoice)
    if overdue:
        current_app.logger.info("Marked %s invoice(s) overdue", len(overdue))
    return len(overdue)


def resolution_gate(ticket: ServiceTicket, completion_notes: str | None):
    if ticket.ticket_type != TicketType.INTERVENTION.value:
        return Allowed()
    steps = ensure_workflow_steps(ticket.workflow_steps_data)
    return check_finalization(steps, completion_notes)


def ensure_invoice_payment_intent(invoice: Invoice, client: Client):
    if not stripe_active():
        return None

    if invoice.stripe_payment_intent_id:
        payment_intent = stripe.PaymentIntent.retrieve(invoice.stripe_payment_intent_id)
        if getattr(payment_intent, "status", "") != "canceled":
            return payment_intent
        invoice.stripe_payment_intent_id = None

    payment_intent = stripe.PaymentIntent.create(
        amount=invoice.total_cents,
        currency=current_app.config.get("STRIPE_CURRENCY") or STRIPE_DEFAULT_CURRENCY,
        description=f"Invoice {invoice.invoice_number} - {invoice.description}"[:220],
        metadata={"invoice_id": str(invoice.id), "client_id": str(client.id)},
        automatic_payment_methods={"enabled": True},
    )
    invoice.stripe_payment_intent_id = payment_intent.id
    return payment_intent


def _stripe_field(stripe_object: object, key: str) -> object:
    if isinstance(stripe_object, dict):
        return stripe_object.get(key)
    return getattr(stripe_object, key, None)


def handle_stripe_event(event: object) -> bool:
    if _stripe_field(event, "type") != "payment_intent.succeeded":
        return False

    intent = _stripe_field(_stripe_field(event, "data") or {}, "object") or {}
    metadata = _stripe_field(intent, "metadata") or {}
    invoice = None
    invoice_id = parse_int(_stripe_field(metadata, "invoice_id"))
    if invoice_id is not None:
        invoice = db.session.get(Invoice, invoice_id)
    if invoice is None and _stripe_field(intent, "id"):
        invoice = Invoice.query.filter_by(
            stripe_payment_intent_id=_stripe_field(intent, "id")
        ).first()
    if invoice is None:
        current_app.logger.warning(
            "Stripe payment %s did not match any invoice", _stripe_field(intent, "id")
        )
        return False

    if invoice.status != "paid":
        invoice.status = "paid"
        invoice.paid_at = utcnow()
        notify_payment_received(invoice)
    return True


def ensure_default_admin_user() -> None:
    if AdminUser.query.count() > 0:
        return

    username = (current_app.config.get("ADMIN_USERNAME") or "").strip()
    password = current_app.config.get("ADMIN_PASSWORD")
    contact_email = current_app.config.get("ADMIN_EMAIL") or current_app.config.get(
        "CONTACT_EMAIL"
    )

    if not username or not password:
        current_app.logger.warning(
            "No admin users exist and ADMIN_USERNAME/ADMIN_PASSWORD were not provided."
        )
        return

    admin = AdminUser(username=username, email=contact_email)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()


def login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not session.get("admin_authenticated"):
            return jsonify({"error": "Administrator login required."}), 401
        return func(*args, **kwargs)

    return wrapper


def client_login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        client_id = session.get(PORTAL_SESSION_KEY)
        if not client_id:
            return jsonify({"error": "Customer login required."}), 401

        client = db.session.get(Client, client_id)
        if not client or client.status == "cancelled":
            session.pop(PORTAL_SESSION_KEY, None)
            return jsonify({"error": "Customer session expired."}), 401

        g.portal_client = client
        return func(client, *args, **kwargs)

    return wrapper


def technician_login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        technician_id = session.get(TECH_SESSION_KEY)
        if not technician_id:
            return jsonify({"error": "Technician login required."}), 401

        technician = db.session.get(Technician, technician_id)
        if not technician or not technician.is_active:
            session.pop(TECH_SESSION_KEY, None)
            return jsonify({"error": "Technician session expired."}), 401

        g.technician = technician
        return func(technician, *args, **kwargs)

    return wrapper


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "portal.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": os.environ.get(
            "DATABASE_URL", f"sqlite:///{db_path}"
        ),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "ADMIN_USERNAME": os.environ.get("ADMIN_USERNAME"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD"),
        "ADMIN_EMAIL": os.environ.get("ADMIN_EMAIL"),
        "COMPANY_NAME": os.environ.get("COMPANY_NAME", "TechÎle Solutions"),
        "CONTACT_EMAIL": os.environ.get("CONTACT_EMAIL", "dev@kastor.ca"),
        "STRIPE_SECRET_KEY": os.environ.get("STRIPE_SECRET_KEY"),
        "STRIPE_PUBLISHABLE_KEY": os.environ.get("STRIPE_PUBLISHABLE_KEY"),
        "STRIPE_WEBHOOK_SECRET": os.environ.get("STRIPE_WEBHOOK_SECRET"),
        "STRIPE_CURRENCY": os.environ.get("STRIPE_CURRENCY", STRIPE_DEFAULT_CURRENCY),
        "SMTP_HOST": os.environ.get("SMTP_HOST"),
        "SMTP_PORT": os.environ.get("SMTP_PORT", "587"),
        "SMTP_USERNAME": os.environ.get("SMTP_USERNAME"),
        "SMTP_PASSWORD": os.environ.get("SMTP_PASSWORD"),
        "SMTP_USE_TLS": is_truthy(os.environ.get("SMTP_USE_TLS", "true")),
        "NOTIFICATION_FROM_EMAIL": os.environ.get("NOTIFICATION_FROM_EMAIL"),
        "NOTIFICATION_EMAIL_SENDER": None,
        "INVOICE_DUE_DAYS": int(os.environ.get("INVOICE_DUE_DAYS", "30")),
        "FOLLOW_UP_DELAY_DAYS": int(os.environ.get("FOLLOW_UP_DELAY_DAYS", "7")),
    }

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    init_stripe(app)

    register_routes(app)

    with app.app_context():
        db.create_all()
        ensure_default_admin_user()

    return app


def init_db() -> None:
    """Initialize the database tables if they do not exist."""

    app = create_app()
    with app.app_context():
        db.create_all()
        ensure_default_admin_user()


def register_routes(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"error": error.description}), error.code

    def _client_fields_from(payload: dict, client: Client) -> None:
        for field_name in PROFILE_FIELDS:
            if field_name in payload:
                value = payload.get(field_name)
                setattr(client, field_name, str(value).strip() if value is not None else None)

    def _parse_ticket_fields(payload: dict, default_type: str):
        title = payload_text(payload, "title")
        description = payload_text(payload, "description")
        ticket_type = (payload_text(payload, "type") or default_type).lower()
        priority = (payload_text(payload, "priority") or "normal").lower()

        if not title or not description:
            return None, "A title and description are required."
        if ticket_type not in TICKET_TYPE_OPTIONS:
            return None, "Unknown ticket type."
        if priority not in TICKET_PRIORITY_OPTIONS:
            priority = "normal"

        try:
            scheduled_for = parse_datetime(payload.get("scheduled_for"))
        except ValueError:
            return None, "Use ISO 8601 timestamps for scheduled dates."

        return {
            "title": title,
            "description": description,
            "ticket_type": ticket_type,
            "priority": priority,
            "scheduled_for": scheduled_for,
            "location": payload_text(payload, "location") or None,
            "estimated_duration": parse_int(payload.get("estimated_duration")),
            "client_notes": payload_text(payload, "client_notes") or None,
        }, None

    def _open_ticket(client: Client, fields: dict, **extra) -> ServiceTicket | None:
        if fields["ticket_type"] == TicketType.INTERVENTION.value and not client.is_in_islands:
            return None
        ticket = ServiceTicket(
            client_id=client.id, status=TicketStatus.OPEN.value, **fields, **extra
        )
        db.session.add(ticket)
        return ticket

    def _create_client(payload: dict, rates: RateTable) -> tuple[Client | None, str | None, int]:
        email = payload_text(payload, "email").lower()
        if not email:
            return None, "An email address is required.", 400
        if Client.query.filter_by(email=email).first():
            return None, "An account already exists for that email.", 409

        plan = (payload_text(payload, "plan") or "base").lower()
        if plan not in PLAN_TIERS:
            return None, "Unknown subscription plan.", 400
        billing_cycle = (payload_text(payload, "billing_cycle") or "monthly").lower()
        if billing_cycle not in BILLING_CYCLES:
            return None, "Unknown billing cycle.", 400

        client = Client(
            email=email,
            is_in_islands=is_truthy(payload.get("is_in_islands", True)),
            cloud_quota_gb=0,
        )
        _client_fields_from(payload, client)
        apply_subscription_plan(client, plan, billing_cycle, rates)

        password = payload_text(payload, "password", strip=False)
        if password:
            client.portal_password_hash = generate_password_hash(password)

        db.session.add(client)
        db.session.flush()
        on_client_created(client)
        return client, None, 201

    # ----- authentication -------------------------------------------------

    @app.post("/login")
    def login():
        payload = request_payload()
        username_or_email = payload_text(payload, "username")
        password = payload_text(payload, "password", strip=False)

        if username_or_email and password:
            admin = AdminUser.query.filter(
                or_(
                    AdminUser.username == username_or_email,
                    AdminUser.email == username_or_email,
                )
            ).first()

            if admin and admin.check_password(password):
                session["admin_authenticated"] = True
                session["admin_logged_in_at"] = utcnow().isoformat()
                session["admin_user_id"] = admin.id
                admin.last_login_at = utcnow()
                db.session.commit()
                return jsonify({"message": "Welcome back!", "username": admin.username})

        return jsonify({"error": "Invalid credentials. Please try again."}), 401

    @app.get("/logout")
    def logout():
        session.clear()
        return jsonify({"message": "You have been logged out."})

    @app.post("/signup")
    def signup():
        payload = request_payload()
        password = payload_text(payload, "password", strip=False)
        confirm = payload.get("confirm_password")

        first_name = payload_text(payload, "first_name")
        last_name = payload_text(payload, "last_name")
        if not first_name or not last_name:
            return jsonify({"error": "First and last name are required."}), 400
        if len(password) < 8:
            return jsonify({"error": "Passwords must be at least 8 characters."}), 400
        if confirm is not None and confirm != password:
            return jsonify({"error": "Passwords do not match."}), 400

        client, error, status_code = _create_client(payload, get_rate_table())
        if client is None:
            return jsonify({"error": error}), status_code

        client.last_activity_at = utcnow()
        db.session.commit()
        session[PORTAL_SESSION_KEY] = client.id
        return jsonify({"client": client.to_dict()}), 201

    @app.post("/portal/login")
    def portal_login():
        payload = request_payload()
        email = payload_text(payload, "email").lower()
        password = payload_text(payload, "password")

        client = Client.query.filter_by(email=email).first()
        if client and not client.portal_password_hash:
            return jsonify(
                {"error": "Your portal password has not been issued yet. Please contact support."}
            ), 403
        if (
            client is None
            or not password
            or not check_password_hash(client.portal_password_hash, password)
        ):
            return jsonify({"error": "Invalid email or password. Please try again."}), 401
        if client.status == "cancelled":
            return jsonify({"error": "This account has been cancelled."}), 403

        session[PORTAL_SESSION_KEY] = client.id
        session["portal_authenticated_at"] = utcnow().isoformat()
        client.last_activity_at = utcnow()
        db.session.commit()
        return jsonify({"message": "Welcome to your customer portal!", "client_id": client.id})

    @app.get("/portal/logout")
    def portal_logout():
        session.pop(PORTAL_SESSION_KEY, None)
        session.pop("portal_authenticated_at", None)
        return jsonify({"message": "You have been logged out of the customer portal."})

    @app.post("/tech/login")
    def tech_login():
        payload = request_payload()
        email = payload_text(payload, "email").lower()
        password = payload_text(payload, "password")

        technician = Technician.query.filter_by(email=email).first()
        if (
            technician
            and technician.is_active
            and password
            and check_password_hash(technician.password_hash, password)
        ):
            session[TECH_SESSION_KEY] = technician.id
            session["technician_authenticated_at"] = utcnow().isoformat()
            return jsonify(
                {
                    "message": "Welcome to the field operations portal.",
                    "technician": technician.to_dict(),
                }
            )

        return jsonify({"error": "Invalid technician credentials or inactive account."}), 401

    @app.get("/tech/logout")
    def tech_logout():
        session.pop(TECH_SESSION_KEY, None)
        session.pop("technician_authenticated_at", None)
        return jsonify({"message": "You have been logged out of the technician portal."})

    # ----- client portal --------------------------------------------------

    @app.get("/portal")
    @client_login_required
    def portal_dashboard(client: Client):
        rates = get_rate_table()
        profile_status = validate_client_profile(client)
        open_tickets = [
            ticket.to_dict() for ticket in client.tickets if not is_terminal(ticket.status)
        ]
        outstanding = [
            invoice.to_dict()
            for invoice in client.invoices
            if invoice.status in {"sent", "overdue"}
        ]
        unread = [
            notification.to_dict()
            for notification in client.notifications
            if not notification.read
        ]

        return jsonify(
            {
                "client": client.to_dict(),
                "profile": {
                    **profile_status.to_dict(),
                    "completion_percentage": profile_completion_percentage(client),
                },
                "plan": PLAN_CATALOGUE.get(client.subscription_plan),
                "cloud": cloud_summary(client, rates),
                "open_tickets": open_tickets,
                "outstanding_invoices": outstanding,
                "total_due": round_currency(sum(invoice["total"] for invoice in outstanding)),
                "unread_notifications": unread,
            }
        )

    @app.post("/portal/profile")
    @client_login_required
    def portal_update_profile(client: Client):
        payload = request_payload()
        _client_fields_from(payload, client)
        client.last_activity_at = utcnow()
        db.session.commit()

        profile_status = validate_client_profile(client)
        return jsonify(
            {
                "client": client.to_dict(),
                "profile": {
                    **profile_status.to_dict(),
                    "completion_percentage": profile_completion_percentage(client),
                },
            }
        )

    @app.get("/portal/tickets")
    @client_login_required
    def portal_tickets(client: Client):
        return jsonify({"tickets": [ticket.to_dict() for ticket in client.tickets]})

    @app.post("/portal/tickets")
    @client_login_required
    def portal_create_ticket(client: Client):
        fields, error = _parse_ticket_fields(request_payload(), "support")
        if error:
            return jsonify({"error": error}), 400

        ticket = _open_ticket(client, fields)
        if ticket is None:
            return jsonify(
                {"error": "On-site interventions are only available in the islands."}
            ), 400

        db.session.commit()
        return jsonify(
            {
                "message": "Your support request has been submitted. We'll reach out shortly.",
                "ticket": ticket.to_dict(),
            }
        ), 201

    @app.post("/portal/quote")
    @client_login_required
    def portal_quote(client: Client):
        payload = request.get_json(silent=True)
        services = payload.get("services", payload) if isinstance(payload, dict) else None
        if not isinstance(services, dict):
            return jsonify({"error": "Services must be an object."}), 400

        allowed, rejected = filter_services_for_location(services, client.is_in_islands)
        quote = generate_quote(allowed, get_rate_table())
        return jsonify({"quote": quote.to_dict(), "rejected_services": rejected})

    @app.post("/portal/subscription")
    @client_login_required
    def portal_change_subscription(client: Client):
        profile_status = validate_client_profile(client)
        if not profile_status.can_purchase:
            return jsonify(
                {
                    "error": "Complete your profile before making a purchase.",
                    "missing_fields": profile_status.missing_fields,
                }
            ), 403

        payload = request_payload()
        plan = payload_text(payload, "plan").lower()
        billing_cycle = (payload_text(payload, "billing_cycle") or client.billing_cycle).lower()
        if plan not in PLAN_TIERS:
            return jsonify({"error": "Unknown subscription plan."}), 400
        if billing_cycle not in BILLING_CYCLES:
            return jsonify({"error": "Unknown billing cycle."}), 400

        apply_subscription_plan(client, plan, billing_cycle, get_rate_table())
        create_notification(
            client,
            "system",
            "Subscription updated",
            f"Your subscription is now on the {PLAN_CATALOGUE[plan]['label']} plan.",
            "/portal",
        )
        db.session.commit()
        return jsonify({"subscription": client.subscription})

    @app.post("/portal/website")
    @client_login_required
    def portal_request_website(client: Client):
        profile_status = validate_client_profile(client)
        if not profile_status.can_purchase:
            return jsonify(
                {
                    "error": "Complete your profile before making a purchase.",
                    "missing_fields": profile_status.missing_fields,
                }
            ), 403

        payload = request_payload()
        project, error = _build_website_project(client, payload)
        if project is None:
            return jsonify({"error": error}), 400

        db.session.commit()
        return jsonify(
            {
                "website": project.to_dict(),
                "monthly_price": get_website_price(project.site_type, get_rate_table()),
            }
        ), 201

    @app.get("/portal/cloud")
    @client_login_required
    def portal_cloud(client: Client):
        return jsonify({"cloud": cloud_summary(client, get_rate_table())})

    @app.get("/portal/invoices")
    @client_login_required
    def portal_invoices(client: Client):
        invoices = (
            Invoice.query.filter(Invoice.client_id == client.id, Invoice.status != "draft")
            .order_by(Invoice.created_at.desc())
            .all()
        )
        return jsonify({"invoices": [invoice.to_dict() for invoice in invoices]})

    @app.post("/portal/invoices/<int:invoice_id>/pay")
    @client_login_required
    def portal_pay_invoice(client: Client, invoice_id: int):
        invoice = Invoice.query.filter_by(id=invoice_id, client_id=client.id).first_or_404()
        if invoice.status not in {"sent", "overdue"}:
            return jsonify({"error": f"Invoice is {invoice.status} and cannot be paid."}), 409
        if not stripe_active():
            return jsonify({"error": "Online payments are not configured."}), 503

        try:
            payment_intent = ensure_invoice_payment_intent(invoice, client)
        except StripeError as exc:
            current_app.logger.warning(
                "Stripe payment intent failed for %s: %s", invoice.invoice_number, exc
            )
            return jsonify({"error": "The payment processor is unavailable."}), 502

        db.session.commit()
        return jsonify(
            {
                "client_secret": getattr(payment_intent, "client_secret", None),
                "publishable_key": current_app.config.get("STRIPE_PUBLISHABLE_KEY"),
                "invoice": invoice.to_dict(),
            }
        )

    @app.get("/portal/notifications")
    @client_login_required
    def portal_notifications(client: Client):
        limit = parse_int(request.args.get("limit")) or 20
        notifications = (
            Notification.query.filter_by(client_id=client.id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .all()
        )
        return jsonify({"notifications": [item.to_dict() for item in notifications]})

    @app.post("/portal/notifications/<int:notification_id>/read")
    @client_login_required
    def portal_mark_notification_read(client: Client, notification_id: int):
        notification = Notification.query.filter_by(
            id=notification_id, client_id=client.id
        ).first_or_404()
        if not notification.read:
            notification.read = True
            notification.read_at = utcnow()
            db.session.commit()
        return jsonify({"notification": notification.to_dict()})

    # ----- technician portal ----------------------------------------------

    @app.get("/tech")
    @technician_login_required
    def tech_dashboard(technician: Technician):
        tickets = (
            ServiceTicket.query.filter_by(ticket_type=TicketType.INTERVENTION.value)
            .order_by(
                ServiceTicket.scheduled_for.is_(None),
                ServiceTicket.scheduled_for.asc(),
                ServiceTicket.created_at.asc(),
            )
            .all()
        )
        return jsonify(
            {
                "technician": technician.to_dict(),
                "tickets": [ticket.to_dict() for ticket in tickets],
            }
        )

    @app.get("/tech/tickets/<int:ticket_id>")
    @technician_login_required
    def tech_ticket_detail(technician: Technician, ticket_id: int):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        if not ticket.workflow_steps_data and not is_terminal(ticket.status):
            ticket.set_workflow_steps(ensure_workflow_steps(None))
            db.session.commit()

        return jsonify(
            {
                "ticket": ticket.to_dict(include_internal=True),
                "client": ticket.client.to_dict(),
                "notes": [note.to_dict() for note in ticket.notes],
            }
        )

    @app.post("/tech/tickets")
    @technician_login_required
    def tech_create_ticket(technician: Technician):
        payload = request_payload()
        client = db.session.get(Client, parse_int(payload.get("client_id")) or 0)
        if client is None:
            return jsonify({"error": "Select a valid client."}), 400

        fields, error = _parse_ticket_fields(payload, TicketType.INTERVENTION.value)
        if error:
            return jsonify({"error": error}), 400

        ticket = _open_ticket(client, fields, assigned_to_id=technician.id)
        if ticket is None:
            return jsonify(
                {"error": "On-site interventions are only available in the islands."}
            ), 400
        if ticket.ticket_type == TicketType.INTERVENTION.value:
            ticket.set_workflow_steps(ensure_workflow_steps(None))
        db.session.flush()
        if ticket.scheduled_for:
            notify_intervention_scheduled(ticket)
        db.session.commit()
        return jsonify({"ticket": ticket.to_dict()}), 201

    @app.post("/tech/tickets/<int:ticket_id>/start")
    @technician_login_required
    def tech_start_intervention(technician: Technician, ticket_id: int):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        result = check_transition(ticket.status, TicketStatus.IN_PROGRESS)
        if not result:
            return jsonify({"error": result.reason}), 409

        old_status = ticket.status
        ticket.status = TicketStatus.IN_PROGRESS.value
        ticket.intervention_started_at = utcnow()
        if ticket.assigned_to_id is None:
            ticket.assigned_to_id = technician.id
        if not ticket.workflow_steps_data:
            ticket.set_workflow_steps(ensure_workflow_steps(None))
        on_ticket_status_changed(ticket, old_status, ticket.status)
        db.session.commit()
        return jsonify({"ticket": ticket.to_dict()})

    @app.post("/tech/tickets/<int:ticket_id>/steps/<step_id>")
    @technician_login_required
    def tech_toggle_step(technician: Technician, ticket_id: int, step_id: str):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        if is_terminal(ticket.status):
            return jsonify({"error": f"Ticket is {ticket.status} and can no longer change."}), 409

        steps = ensure_workflow_steps(ticket.workflow_steps_data)
        step = find_step(steps, step_id)
        if step is None:
            return jsonify({"error": "Unknown workflow step."}), 404

        payload = request_payload()
        if "completed" in payload:
            completed = is_truthy(payload["completed"])
        else:
            completed = not step.completed
        notes = payload_text(payload, "notes") or None

        updated = toggle_step(steps, step_id, completed, notes)
        if step.completed and not completed:
            db.session.add(
                TechNote(
                    ticket_id=ticket.id,
                    technician_id=technician.id,
                    content=f"Step '{step.title}' marked incomplete by {technician.name}.",
                    note_type="intervention",
                )
            )
        ticket.set_workflow_steps(updated)
        ticket.updated_at = utcnow()
        db.session.commit()
        return jsonify(
            {
                "workflow_steps": [item.to_dict() for item in updated],
                "completion_percentage": ticket.completion_percentage,
            }
        )

    @app.post("/tech/tickets/<int:ticket_id>/notes")
    @technician_login_required
    def tech_add_note(technician: Technician, ticket_id: int):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        payload = request_payload()
        content = payload_text(payload, "content")
        note_type = (payload_text(payload, "type") or "intervention").lower()
        if not content:
            return jsonify({"error": "Note content is required."}), 400
        if note_type not in TECH_NOTE_TYPES:
            return jsonify({"error": "Unknown note type."}), 400

        note = TechNote(
            ticket_id=ticket.id,
            technician_id=technician.id,
            content=content,
            note_type=note_type,
            location=payload_text(payload, "location") or None,
        )
        db.session.add(note)
        db.session.commit()
        return jsonify({"note": note.to_dict()}), 201

    @app.post("/tech/tickets/<int:ticket_id>/complete")
    @technician_login_required
    def tech_complete_intervention(technician: Technician, ticket_id: int):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        payload = request_payload()
        completion_notes = payload_text(payload, "completion_notes")

        result = check_transition(ticket.status, TicketStatus.RESOLVED)
        if not result:
            return jsonify({"error": result.reason}), 409
        gate = resolution_gate(ticket, completion_notes)
        if not gate:
            return jsonify({"error": gate.reason}), 409

        try:
            details = clean_work_details(payload)
        except ValueError as error:
            return jsonify({"error": str(error)}), 400

        time_spent = parse_int(payload.get("time_spent"))
        if time_spent is None and ticket.intervention_started_at:
            elapsed = utcnow() - ensure_aware(ticket.intervention_started_at)
            time_spent = max(1, round(elapsed.total_seconds() / 60))

        old_status = ticket.status
        ticket.status = TicketStatus.RESOLVED.value
        ticket.resolved_at = utcnow()
        ticket.completion_notes = completion_notes
        ticket.actual_duration = time_spent
        db.session.add(
            TechNote(
                ticket_id=ticket.id,
                technician_id=technician.id,
                content=completion_notes,
                note_type="completion",
            )
        )

        work_details = {
            **details,
            "summary": completion_notes,
            "work_performed": details["work_performed"] or ["Technical intervention performed"],
            "technician_signature": details["technician_signature"] or technician.name,
        }
        effects = on_ticket_status_changed(ticket, old_status, ticket.status, work_details)
        db.session.commit()

        invoice = effects.get("invoice")
        follow_up = effects.get("follow_up")
        return jsonify(
            {
                "ticket": ticket.to_dict(),
                "invoice": invoice.to_dict() if invoice else None,
                "follow_up_ticket_id": follow_up.id if follow_up else None,
            }
        )

    # ----- admin dashboard ------------------------------------------------

    @app.get("/dashboard")
    @login_required
    def dashboard():
        stats = dashboard_stats(
            Client.query.all(), ServiceTicket.query.all(), Invoice.query.all(), utcnow()
        )
        return jsonify({"stats": stats})

    @app.get("/clients")
    @login_required
    def list_clients():
        query = Client.query
        status_filter = (request.args.get("status") or "").strip().lower()
        if status_filter:
            query = query.filter(Client.status == status_filter)
        search = (request.args.get("q") or "").strip()
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Client.email.ilike(pattern),
                    Client.first_name.ilike(pattern),
                    Client.last_name.ilike(pattern),
                    Client.city.ilike(pattern),
                )
            )
        clients = query.order_by(Client.created_at.desc()).all()
        return jsonify({"clients": [client.to_dict(include_internal=True) for client in clients]})

    @app.post("/clients")
    @login_required
    def create_client():
        client, error, status_code = _create_client(request_payload(), get_rate_table())
        if client is None:
            return jsonify({"error": error}), status_code
        db.session.commit()
        return jsonify({"client": client.to_dict(include_internal=True)}), 201

    @app.post("/clients/<int:client_id>/update")
    @login_required
    def update_client(client_id: int):
        client = Client.query.get_or_404(client_id)
        payload = request_payload()

        status_value = (payload_text(payload, "status") or client.status).lower()
        priority_value = (payload_text(payload, "priority") or client.priority).lower()
        subscription_status = (
            payload_text(payload, "subscription_status") or client.subscription_status
        ).strip().lower()
        if status_value not in CLIENT_STATUS_OPTIONS:
            return jsonify({"error": "Unknown client status."}), 400
        if priority_value not in CLIENT_PRIORITY_OPTIONS:
            return jsonify({"error": "Unknown client priority."}), 400
        if subscription_status not in SUBSCRIPTION_STATUS_OPTIONS:
            return jsonify({"error": "Unknown subscription status."}), 400

        plan = payload_text(payload, "plan").lower()
        if plan:
            billing_cycle = (payload_text(payload, "billing_cycle") or client.billing_cycle).lower()
            if plan not in PLAN_TIERS or billing_cycle not in BILLING_CYCLES:
                return jsonify({"error": "Unknown subscription plan or billing cycle."}), 400
            apply_subscription_plan(client, plan, billing_cycle, get_rate_table())

        _client_fields_from(payload, client)
        if "is_in_islands" in payload:
            client.is_in_islands = is_truthy(payload.get("is_in_islands"))
        if "internal_notes" in payload:
            client.internal_notes = payload_text(payload, "internal_notes") or None
        client.status = status_value
        client.priority = priority_value
        client.subscription_status = subscription_status
        db.session.commit()
        return jsonify({"client": client.to_dict(include_internal=True)})

    @app.post("/clients/<int:client_id>/cancel")
    @login_required
    def cancel_client(client_id: int):
        client = Client.query.get_or_404(client_id)
        client.status = "cancelled"
        client.subscription_status = "cancelled"
        db.session.commit()
        current_app.logger.info("Client %s cancelled", client.email)
        return jsonify({"client": client.to_dict(include_internal=True)})

    @app.post("/clients/<int:client_id>/cloud")
    @login_required
    def update_client_cloud(client_id: int):
        client = Client.query.get_or_404(client_id)
        payload = request_payload()
        try:
            quota = float(payload.get("quota_gb", client.cloud_quota_gb))
            used = float(payload.get("used_gb", client.cloud_used_gb))
        except (TypeError, ValueError):
            return jsonify({"error": "Cloud quota and usage must be numbers."}), 400
        if not (math.isfinite(quota) and math.isfinite(used)):
            return jsonify({"error": "Cloud quota and usage must be numbers."}), 400
        if quota < 0 or used < 0:
            return jsonify({"error": "Cloud quota and usage cannot be negative."}), 400

        client.cloud_quota_gb = quota
        client.cloud_used_gb = used
        db.session.commit()
        return jsonify({"cloud": cloud_summary(client, get_rate_table())})

    @app.post("/clients/<int:client_id>/portal/set-password")
    @login_required
    def set_client_portal_password(client_id: int):
        client = Client.query.get_or_404(client_id)
        password = request_payload().get("password") or ""
        if len(password) < 8:
            return jsonify({"error": "Passwords must be at least 8 characters."}), 400

        client.portal_password_hash = generate_password_hash(password)
        db.session.commit()
        return jsonify({"message": f"Portal password updated for {client.email}."})

    @app.post("/technicians")
    @login_required
    def create_technician():
        payload = request_payload()
        name = payload_text(payload, "name")
        email = payload_text(payload, "email").lower()
        password = payload_text(payload, "password", strip=False)
        if not name or not email or len(password) < 8:
            return jsonify(
                {"error": "Name, email and a password of at least 8 characters are required."}
            ), 400
        if Technician.query.filter_by(email=email).first():
            return jsonify({"error": "A technician with that email already exists."}), 409

        technician = Technician(
            name=name,
            email=email,
            phone=payload_text(payload, "phone") or None,
            password_hash=generate_password_hash(password),
        )
        db.session.add(technician)
        db.session.commit()
        return jsonify({"technician": technician.to_dict()}), 201

    @app.get("/tickets")
    @login_required
    def list_tickets():
        query = ServiceTicket.query
        status_filter = (request.args.get("status") or "").strip().lower()
        if status_filter:
            if status_filter not in TICKET_STATUS_OPTIONS:
                return jsonify({"error": "Unknown ticket status."}), 400
            query = query.filter(ServiceTicket.status == status_filter)
        type_filter = (request.args.get("type") or "").strip().lower()
        if type_filter:
            query = query.filter(ServiceTicket.ticket_type == type_filter)
        client_filter = parse_int(request.args.get("client_id"))
        if client_filter is not None:
            query = query.filter(ServiceTicket.client_id == client_filter)
        tickets = query.order_by(ServiceTicket.created_at.desc()).all()
        return jsonify({"tickets": [ticket.to_dict(include_internal=True) for ticket in tickets]})

    @app.post("/tickets")
    @login_required
    def create_ticket():
        payload = request_payload()
        client = db.session.get(Client, parse_int(payload.get("client_id")) or 0)
        if client is None:
            return jsonify({"error": "Select a valid client."}), 400

        fields, error = _parse_ticket_fields(payload, "support")
        if error:
            return jsonify({"error": error}), 400

        ticket = _open_ticket(client, fields)
        if ticket is None:
            return jsonify(
                {"error": "On-site interventions are only available in the islands."}
            ), 400
        ticket.internal_notes = payload_text(payload, "internal_notes") or None
        db.session.commit()
        return jsonify({"ticket": ticket.to_dict(include_internal=True)}), 201

    @app.post("/tickets/<int:ticket_id>/status")
    @login_required
    def update_ticket_status(ticket_id: int):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        payload = request_payload()
        target = payload_text(payload, "status").lower()

        result = check_transition(ticket.status, target)
        if not result:
            current_app.logger.warning(
                "Rejected status change on ticket %s: %s", ticket.id, result.reason
            )
            return jsonify({"error": result.reason}), 409

        completion_notes = (
            payload_text(payload, "completion_notes") or ticket.completion_notes or ""
        ).strip()
        if target == TicketStatus.RESOLVED.value:
            gate = resolution_gate(ticket, completion_notes)
            if not gate:
                return jsonify({"error": gate.reason}), 409
            ticket.resolved_at = utcnow()
            ticket.completion_notes = completion_notes or None
            actual_duration = parse_int(payload.get("actual_duration"))
            if actual_duration is not None:
                ticket.actual_duration = actual_duration
        elif target == TicketStatus.IN_PROGRESS.value and ticket.intervention_started_at is None:
            ticket.intervention_started_at = utcnow()

        old_status = ticket.status
        ticket.status = target
        effects = on_ticket_status_changed(ticket, old_status, target)
        db.session.commit()

        invoice = effects.get("invoice")
        return jsonify(
            {
                "ticket": ticket.to_dict(include_internal=True),
                "invoice": invoice.to_dict() if invoice else None,
            }
        )

    @app.post("/tickets/<int:ticket_id>/assign")
    @login_required
    def assign_ticket(ticket_id: int):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        payload = request_payload()
        technician = db.session.get(Technician, parse_int(payload.get("technician_id")) or 0)
        if technician is None or not technician.is_active:
            return jsonify({"error": "Select an active technician."}), 400
        try:
            scheduled_for = parse_datetime(payload.get("scheduled_for"))
        except ValueError:
            return jsonify({"error": "Use ISO 8601 timestamps for scheduled dates."}), 400

        ticket.assigned_to_id = technician.id
        if scheduled_for is not None:
            ticket.scheduled_for = scheduled_for
            notify_intervention_scheduled(ticket)
        db.session.commit()
        return jsonify({"ticket": ticket.to_dict(include_internal=True)})

    @app.get("/tickets/<int:ticket_id>/report")
    @login_required
    def ticket_report(ticket_id: int):
        ticket = ServiceTicket.query.get_or_404(ticket_id)
        if not ticket.reports:
            return jsonify({"error": "No intervention report exists for this ticket."}), 404

        report = max(ticket.reports, key=lambda item: item.id)
        html = render_intervention_report(
            report.to_report_dict(),
            ticket.client,
            current_app.config.get("COMPANY_NAME") or "",
            utcnow(),
        )
        return app.response_class(html, mimetype="text/html")

    @app.get("/invoices")
    @login_required
    def list_invoices():
        query = Invoice.query
        status_filter = (request.args.get("status") or "").strip().lower()
        if status_filter:
            query = query.filter(Invoice.status == status_filter)
        invoices = query.order_by(Invoice.created_at.desc()).all()
        return jsonify({"invoices": [invoice.to_dict() for invoice in invoices]})

    def _apply_invoice_payload(invoice: Invoice, payload: dict, rates: RateTable) -> str | None:
        description = payload_text(payload, "description") or invoice.description or ""
        if not description:
            return "Invoice description is required."

        amount = parse_amount(payload.get("amount"))
        if amount is None:
            if invoice.amount_cents is None:
                return "Please provide a valid invoice amount."
            amount = Decimal(invoice.amount_cents) / 100
        if amount < 0:
            return "Invoice amounts must be positive."

        tax = parse_amount(payload.get("tax"))
        if tax is None and payload.get("amount") in (None, "") and invoice.tax_cents is not None:
            tax = Decimal(invoice.tax_cents) / 100
        elif tax is None:
            tax = Decimal(str(round_currency(amount * Decimal(str(rates.tax_rate)) / 100)))
        if tax < 0:
            return "Invoice tax cannot be negative."

        try:
            due_date_value = parse_date(payload.get("due_date"))
        except ValueError:
            return "Please use the YYYY-MM-DD format for due dates."

        status_value = (payload_text(payload, "status") or invoice.status or "draft").lower()
        if status_value not in INVOICE_STATUS_OPTIONS:
            return "Unknown invoice status."

        invoice.description = description
        invoice.set_amounts(amount, tax)
        if due_date_value is not None:
            invoice.due_date = due_date_value
        invoice.status = status_value
        if status_value == "paid":
            invoice.paid_at = invoice.paid_at or utcnow()
        else:
            invoice.paid_at = None
        if status_value == "sent":
            invoice.sent_at = invoice.sent_at or utcnow()

        raw_items = payload.get("items")
        if isinstance(raw_items, list):
            invoice.items.clear()
            for raw in raw_items:
                if not isinstance(raw, dict) or not raw.get("description"):
                    continue
                quantity = parse_int(raw.get("quantity")) or 1
                unit_price = parse_amount(raw.get("unit_price")) or Decimal("0")
                invoice.items.append(
                    InvoiceItem(
                        description=str(raw["description"]).strip(),
                        quantity=quantity,
                        unit_price_cents=to_cents(unit_price),
                        total_cents=to_cents(unit_price * quantity),
                    )
                )
        return None

    @app.post("/clients/<int:client_id>/invoices")
    @login_required
    def create_invoice(client_id: int):
        client = Client.query.get_or_404(client_id)
        payload = request_payload()
        if parse_amount(payload.get("amount")) is None:
            return jsonify({"error": "Please provide a valid invoice amount."}), 400

        invoice = Invoice(
            client_id=client.id,
            invoice_number=generate_invoice_number(),
            status="draft",
        )
        error = _apply_invoice_payload(invoice, payload, get_rate_table())
        if error:
            return jsonify({"error": error}), 400
        if invoice.due_date is None:
            invoice.due_date = date.today() + timedelta(
                days=int(current_app.config.get("INVOICE_DUE_DAYS", 30))
            )

        db.session.add(invoice)
        db.session.flush()
        if invoice.status == "sent":
            notify_invoice_due(invoice)
        db.session.commit()
        return jsonify({"invoice": invoice.to_dict()}), 201

    @app.post("/invoices/<int:invoice_id>/update")
    @login_required
    def update_invoice(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        payload = request_payload()
        error = _apply_invoice_payload(invoice, payload, get_rate_table())
        if error:
            return jsonify({"error": error}), 400
        db.session.commit()
        return jsonify({"invoice": invoice.to_dict()})

    @app.post("/invoices/<int:invoice_id>/send")
    @login_required
    def send_invoice(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        if invoice.status != "draft":
            return jsonify({"error": f"Invoice is already {invoice.status}."}), 409

        invoice.status = "sent"
        invoice.sent_at = utcnow()
        notify_invoice_due(invoice)
        db.session.commit()
        return jsonify({"invoice": invoice.to_dict()})

    @app.post("/invoices/overdue/run")
    @login_required
    def run_overdue_invoices():
        processed = process_overdue_invoices()
        db.session.commit()
        return jsonify({"processed": processed})

    @app.get("/pricing")
    @login_required
    def get_pricing():
        config = PricingConfig.query.first()
        return jsonify(
            {
                "rates": get_rate_table().to_dict(),
                "is_default": config is None,
                "updated_by": config.updated_by if config else None,
                "updated_at": isoformat_or_none(config.updated_at) if config else None,
                "plans": PLAN_CATALOGUE,
            }
        )

    @app.post("/pricing")
    @login_required
    def update_pricing():
        payload = request_payload()
        merged = {**get_rate_table().to_dict(), **payload}
        rates = RateTable.from_mapping(merged)
        admin = db.session.get(AdminUser, session.get("admin_user_id") or 0)
        config = save_rate_table(rates, admin.username if admin else "admin")
        db.session.commit()
        return jsonify(
            {
                "rates": rates.to_dict(),
                "is_default": False,
                "updated_by": config.updated_by,
                "updated_at": isoformat_or_none(config.updated_at),
            }
        )

    @app.post("/quotes")
    @login_required
    def create_quote():
        payload = request.get_json(silent=True)
        services = payload.get("services", payload) if isinstance(payload, dict) else None
        if not isinstance(services, dict):
            return jsonify({"error": "Services must be an object."}), 400
        quote = generate_quote(services, get_rate_table())
        return jsonify({"quote": quote.to_dict()})

    def _build_website_project(
        client: Client, payload: dict
    ) -> tuple[WebsiteProject | None, str | None]:
        name = payload_text(payload, "name")
        site_type = (payload_text(payload, "type") or "vitrine").lower()
        if not name:
            return None, "A website name is required."
        if site_type not in WEBSITE_TYPES:
            return None, "Unknown website type."

        colors = payload.get("colors") if isinstance(payload.get("colors"), dict) else {}
        pages = payload.get("pages")
        if not isinstance(pages, list) or not pages:
            pages = [
                {
                    "name": page,
                    "slug": generate_subdomain(page),
                    "content": "",
                    "is_published": False,
                }
                for page in DEFAULT_WEBSITE_PAGES
            ]

        project = WebsiteProject(
            client_id=client.id,
            site_type=site_type,
            name=name,
            domain=payload_text(payload, "domain") or None,
            subdomain=generate_subdomain(name),
            status="planning",
            content={
                "company_name": payload_text(payload, "company_name") or name,
                "description": payload_text(payload, "description"),
                "contact": {
                    "email": payload_text(payload, "contact_email") or client.email,
                    "phone": payload_text(payload, "contact_phone") or client.phone or None,
                    "address": payload_text(payload, "contact_address") or client.address or None,
                },
                "colors": {
                    "primary": colors.get("primary") or "#2563eb",
                    "secondary": colors.get("secondary") or "#1e40af",
                },
                "pages": pages,
            },
        )
        db.session.add(project)
        return project, None

    @app.get("/websites")
    @login_required
    def list_websites():
        projects = WebsiteProject.query.order_by(WebsiteProject.created_at.desc()).all()
        return jsonify({"websites": [project.to_dict() for project in projects]})

    @app.post("/websites")
    @login_required
    def create_website():
        payload = request_payload()
        client = db.session.get(Client, parse_int(payload.get("client_id")) or 0)
        if client is None:
            return jsonify({"error": "Select a valid client."}), 400

        project, error = _build_website_project(client, payload)
        if project is None:
            return jsonify({"error": error}), 400
        db.session.commit()
        return jsonify({"website": project.to_dict()}), 201

    @app.post("/websites/<int:website_id>/update")
    @login_required
    def update_website(website_id: int):
        project = WebsiteProject.query.get_or_404(website_id)
        payload = request_payload()

        status_value = (payload_text(payload, "status") or project.status).lower()
        if status_value not in WEBSITE_STATUS_OPTIONS:
            return jsonify({"error": "Unknown website status."}), 400

        if "name" in payload and payload_text(payload, "name"):
            project.name = payload["name"].strip()
        if "domain" in payload:
            project.domain = payload_text(payload, "domain") or None
        if isinstance(payload.get("content"), dict):
            project.content = {**(project.content or {}), **payload["content"]}
        if status_value == "live" and project.launched_at is None:
            project.launched_at = utcnow()
        project.status = status_value
        db.session.commit()
        return jsonify({"website": project.to_dict()})

    @app.get("/reports/monthly")
    @login_required
    def monthly_report_view():
        now = utcnow()
        year = parse_int(request.args.get("year"))
        month = parse_int(request.args.get("month"))
        if year is None:
            year = now.year
        if month is None:
            month = now.month
        if not 1 <= month <= 12:
            return jsonify({"error": "Month must be between 1 and 12."}), 400

        report = monthly_report(ServiceTicket.query.all(), Invoice.query.all(), year, month)
        return jsonify({"report": report})

    @app.post("/stripe/webhook")
    def stripe_webhook():
        if not stripe_active():
            return jsonify({"status": "disabled"}), 200

        payload = request.data
        sig_header = request.headers.get("Stripe-Signature")
        webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
            else:
                json_payload = json.loads(payload.decode("utf-8"))
                event = stripe.Event.construct_from(json_payload, stripe.api_key)
        except (ValueError, SignatureVerificationError, StripeError) as error:
            current_app.logger.warning("Rejected Stripe webhook: %s", error)
            return jsonify({"error": str(error)}), 400

        if handle_stripe_event(event):
            db.session.commit()
            return jsonify({"status": "ok"}), 200

        db.session.rollback()
        return jsonify({"status": "ignored"}), 200
