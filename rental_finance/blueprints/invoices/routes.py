"""
rental_finance/blueprints/invoices/routes.py

Invoice endpoints.

- POST  /api/invoices/from-booking   price a booking and issue its invoice
- POST  /api/invoices                invoice with manual items
- GET   /api/invoices/export         rows for the export collaborator
- GET   /api/invoices/<id>
- PATCH /api/invoices/<id>           reprice (items) and/or change status

IMPORTANT:
- Mutations are finance staff only.
- PATCH accepts "version"; a stale version is answered with 409.
- PATCH with items and status is all-or-nothing.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...models import Invoice
from ...security import finance_required
from ...services import invoices as invoice_service
from ...services.exporting import INVOICE_COLUMNS, invoice_rows
from ...services.pnl import DateWindow
from ...services.pricing import normalize_items
from ...services.settings import load_pricing_config
from ..parsing import json_body, optional_decimal, optional_int, parse_date, require_date, require_int

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.route("/from-booking", methods=["POST"])
@finance_required
def create_from_booking():
    data = json_body()
    booking = invoice_service.get_booking(require_int(data, "bookingId"))

    existing = Invoice.query.filter_by(booking_id=booking.id).first()
    if existing is not None:
        return jsonify({"invoice": invoice_service.invoice_to_dict(existing), "created": False})

    charges = normalize_items(data["charges"]) if data.get("charges") else None
    invoice = invoice_service.create_invoice_from_booking(
        booking,
        load_pricing_config(),
        rate_override=optional_decimal(data, "rateOverride"),
        charges=charges,
        issue_date=parse_date(data.get("issueDate")),
        actor=current_user,
    )
    return jsonify({"invoice": invoice_service.invoice_to_dict(invoice), "created": True}), 201


@invoices_bp.route("", methods=["POST"])
@finance_required
def create_custom():
    data = json_body()
    booking = invoice_service.get_booking(require_int(data, "bookingId"))

    invoice = invoice_service.create_custom_invoice(
        booking,
        data.get("items"),
        load_pricing_config(),
        issue_date=parse_date(data.get("issueDate")),
        due_date=parse_date(data.get("dueDate")),
        status=(data.get("status") or "ISSUED").upper(),
        actor=current_user,
    )
    return jsonify({"invoice": invoice_service.invoice_to_dict(invoice)}), 201


@invoices_bp.route("/<int:invoice_id>", methods=["GET"])
@finance_required
def get_invoice(invoice_id: int):
    invoice = invoice_service.get_invoice(invoice_id)
    return jsonify({"invoice": invoice_service.invoice_to_dict(invoice)})


@invoices_bp.route("/<int:invoice_id>", methods=["PATCH"])
@finance_required
def update_invoice(invoice_id: int):
    data = json_body()
    invoice = invoice_service.get_invoice(invoice_id)

    # "items": null still means a reprice, and is rejected as empty
    raw_items = (data.get("items") or []) if "items" in data else None
    status = str(data["status"]).upper() if data.get("status") else None

    invoice = invoice_service.update_invoice(
        invoice,
        load_pricing_config() if raw_items is not None else None,
        raw_items=raw_items,
        status=status,
        expected_version=optional_int(data, "version"),
        actor=current_user,
    )
    return jsonify({"invoice": invoice_service.invoice_to_dict(invoice)})


@invoices_bp.route("/export", methods=["GET"])
@finance_required
def export_invoices():
    window = DateWindow(require_date(request.args, "dateFrom"), require_date(request.args, "dateTo"))
    query = Invoice.query.filter(Invoice.issue_date.between(window.date_from, window.date_to))
    if request.args.get("status"):
        query = query.filter(Invoice.status == request.args["status"].upper())

    invoices = query.order_by(Invoice.issue_date, Invoice.invoice_number).all()
    return jsonify(
        {
            "columns": [{"key": key, "label": label} for key, label in INVOICE_COLUMNS],
            "rows": invoice_rows(invoices),
        }
    )
