"""
Financial core services.

- pricing / invoices : invoice line items, tax, totals, fine expenses
- pnl                : profit-and-loss aggregation (read-only)
- payouts            : investor payout preview and payout/expense/payment sync
- expenses, salaries, payments : system-managed ledger rules
- settings, exporting : injected configuration and flattened export rows
"""
