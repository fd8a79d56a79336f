"""
P&L report endpoints (read-only).

Query string: dateFrom, dateTo (YYYY-MM-DD, required), periodType
(DAY/WEEK/MONTH/QUARTER/YEAR, default MONTH), branchId, compareWith
(PREVIOUS_PERIOD / YEAR_OVER_YEAR).
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...security import finance_required
from ...services.exporting import PNL_COLUMNS, pnl_rows
from ...services.pnl import DateWindow, compute_profit_and_loss
from ..parsing import require_date

logger = logging.getLogger(__name__)

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _report_from_args():
    args = request.args
    window = DateWindow(require_date(args, "dateFrom"), require_date(args, "dateTo"))
    return compute_profit_and_loss(
        window,
        period=args.get("periodType") or "MONTH",
        branch_id=args.get("branchId"),
        comparison=args.get("compareWith"),
    )


@reports_bp.route("/pnl", methods=["GET"])
@finance_required
def pnl():
    return jsonify(_report_from_args().to_dict())


@reports_bp.route("/pnl/export", methods=["GET"])
@finance_required
def pnl_export():
    report = _report_from_args()
    logger.info("P&L export by %s for %s..%s", current_user.username, report.window.date_from, report.window.date_to)
    return jsonify(
        {
            "columns": [{"key": key, "label": label} for key, label in PNL_COLUMNS],
            "rows": pnl_rows(report),
        }
    )
