"""
Flattened rows handed to the export collaborator.

Rendering (CSV/Excel/PDF) happens elsewhere; rows here are plain dicts keyed by
the column keys below, values already rounded.
"""

from __future__ import annotations

from typing import Iterable, List

from ..money import money, ratio_percent
from .pnl import PnLReport

PNL_COLUMNS = [
    ("metric", "Metric"),
    ("category", "Category"),
    ("type", "Type"),
    ("amount", "Amount"),
    ("value", "Value"),
    ("percentage", "Percentage %"),
]

INVOICE_COLUMNS = [
    ("invoice_number", "Invoice Number"),
    ("issue_date", "Issue Date"),
    ("due_date", "Due Date"),
    ("booking_id", "Booking"),
    ("customer", "Customer"),
    ("status", "Status"),
    ("subtotal", "Subtotal"),
    ("tax_amount", "Tax"),
    ("total", "Total"),
    ("currency", "Currency"),
]


def _metric(name, value) -> dict:
    return {"metric": name, "value": money(value) if value is not None else None}


def _cost(category, type_, amount, percentage) -> dict:
    return {
        "category": category,
        "type": type_,
        "amount": money(amount),
        "percentage": money(percentage),
    }


def pnl_rows(report: PnLReport) -> List[dict]:
    result = report.result
    summary = result.summary

    rows = [
        _metric("Total Revenue", summary.revenue),
        _metric("Total COGS", summary.cogs),
        _metric("Total Operating Expenses", summary.opex),
        _metric("Gross Profit", summary.gross_profit),
        _metric("Net Profit", summary.net_profit),
        _metric("Gross Profit Margin %", summary.gross_margin),
        _metric("Net Profit Margin %", summary.net_margin),
    ]

    rows += [_cost(line.category_name, "COGS", line.amount, line.percentage) for line in result.cogs_by_category]

    if result.maintenance_total:
        rows.append(
            _cost(
                "Maintenance Costs",
                "COGS",
                result.maintenance_total,
                ratio_percent(result.maintenance_total, result.cogs_total),
            )
        )
        rows += [
            _cost(f"  - {type_}", "COGS", amount, 0)
            for type_, amount in sorted(result.maintenance_by_type.items())
        ]

    rows += [_cost(line.category_name, "OPEX", line.amount, line.percentage) for line in result.opex_by_category]

    fixed = result.fixed_costs
    rows += [
        _cost("Salaries", "Fixed Cost", fixed.salaries, 0),
        _cost("Rent", "Fixed Cost", fixed.rent, 0),
        _cost("Utilities", "Fixed Cost", fixed.utilities, 0),
        _cost("Other Fixed Costs", "Fixed Cost", fixed.other, 0),
    ]

    if report.comparison:
        previous = report.comparison.previous
        change = report.comparison.change_dict()
        rows += [
            _metric("Previous Revenue", previous.revenue),
            _metric("Previous COGS", previous.cogs),
            _metric("Previous OPEX", previous.opex),
            _metric("Previous Net Profit", previous.net_profit),
            _metric("Revenue Change", change["revenue"]),
            _metric("Revenue Change %", change["revenuePercent"]),
            _metric("Net Profit Change", change["netProfit"]),
            _metric("Net Profit Change %", change["netProfitPercent"]),
        ]

    return rows


def invoice_rows(invoices: Iterable) -> List[dict]:
    rows = []
    for invoice in invoices:
        booking = invoice.booking
        rows.append(
            {
                "invoice_number": invoice.invoice_number,
                "issue_date": invoice.issue_date.isoformat(),
                "due_date": invoice.due_date.isoformat(),
                "booking_id": invoice.booking_id,
                "customer": booking.customer_name if booking else None,
                "status": invoice.status,
                "subtotal": money(invoice.subtotal),
                "tax_amount": money(invoice.tax_amount),
                "total": money(invoice.total),
                "currency": invoice.currency,
            }
        )
    return rows
