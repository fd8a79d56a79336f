"""
rental_finance/blueprints/payouts/routes.py

Investor payout endpoints.

- GET   /api/investor-payouts            list (INVESTOR users: own payouts only)
- GET   /api/investor-payouts/preview    totals for a period, nothing written
- POST  /api/investor-payouts            create payout + expense (+ payment)
- GET   /api/investor-payouts/<id>
- PATCH /api/investor-payouts/<id>       status / period / notes / payment info

IMPORTANT:
- Reads are scoped by services.payouts.payouts_visible_to(); another investor's payout is a 404.
- Every mutation requires finance staff.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...errors import ValidationError
from ...security import finance_required
from ...services import payouts as payout_service
from ..parsing import (
    json_body,
    optional_decimal,
    optional_int,
    parse_bool,
    parse_date,
    parse_datetime,
    parse_optional_int,
    require_date,
    require_int,
)

payouts_bp = Blueprint("payouts", __name__, url_prefix="/api/investor-payouts")


@payouts_bp.route("", methods=["GET"])
@login_required
def list_payouts():
    args = request.args
    query = payout_service.payouts_visible_to(
        current_user,
        investor_id=parse_optional_int(args.get("investorId")),
        status=(args.get("status") or "").upper() or None,
    )
    return jsonify({"payouts": [payout_service.payout_to_dict(p) for p in query.all()]})


@payouts_bp.route("/preview", methods=["GET"])
@finance_required
def preview():
    args = request.args
    result = payout_service.preview_payout(
        require_int(args, "investorId"),
        require_date(args, "periodFrom"),
        require_date(args, "periodTo"),
        branch_id=args.get("branchId"),
        commission_percent=optional_decimal(args, "commissionPercent"),
    )
    return jsonify({"preview": result.to_dict()})


@payouts_bp.route("", methods=["POST"])
@finance_required
def create_payout():
    data = json_body()
    payout = payout_service.create_payout_with_expense_and_payment(
        require_int(data, "investorId"),
        require_date(data, "periodFrom"),
        require_date(data, "periodTo"),
        branch_id=data.get("branchId"),
        commission_percent=optional_decimal(data, "commissionPercent"),
        notes=data.get("notes"),
        create_payment=parse_bool(data.get("createPayment")),
        payment_method=(data.get("paymentMethod") or "BANK_TRANSFER").upper(),
        payment_status=(data.get("paymentStatus") or "PENDING").upper(),
        actor=current_user,
    )
    return jsonify({"payout": payout_service.payout_to_dict(payout)}), 201


@payouts_bp.route("/<int:payout_id>", methods=["GET"])
@login_required
def get_payout(payout_id: int):
    payout = payout_service.get_payout_for(current_user, payout_id)
    return jsonify({"payout": payout_service.payout_to_dict(payout)})


def _payment_info(raw) -> dict | None:
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValidationError("paymentInfo must be an object.", code="INVALID_BODY")
    info = {}
    if raw.get("status"):
        info["status"] = str(raw["status"]).upper()
    if raw.get("method"):
        info["method"] = str(raw["method"]).upper()
    if "transactionId" in raw:
        info["transaction_id"] = raw.get("transactionId")
    if "paidAt" in raw:
        info["paid_at"] = parse_datetime(raw.get("paidAt"))
    return info


@payouts_bp.route("/<int:payout_id>", methods=["PATCH"])
@finance_required
def update_payout(payout_id: int):
    data = json_body()
    payout = payout_service.get_payout_for(current_user, payout_id)

    period_from = parse_date(data.get("periodFrom"))
    period_to = parse_date(data.get("periodTo"))
    if (data.get("periodFrom") and period_from is None) or (data.get("periodTo") and period_to is None):
        raise ValidationError("Period dates must be YYYY-MM-DD.", code="INVALID_DATE")

    payout = payout_service.update_payout(
        payout,
        status=(data.get("status") or "").upper() or None,
        period_from=period_from,
        period_to=period_to,
        notes=data.get("notes"),
        payment_info=_payment_info(data.get("paymentInfo")),
        expected_version=optional_int(data, "version"),
        actor=current_user,
    )
    return jsonify({"payout": payout_service.payout_to_dict(payout)})
