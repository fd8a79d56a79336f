"""Payment record guards."""

from __future__ import annotations

import logging

from ..audit import log_action, serialize_model
from ..errors import NotFoundError, StateConflictError
from ..extensions import db
from ..models import Payment

logger = logging.getLogger(__name__)


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")
    return payment


def delete_payment(payment_id: int, actor=None) -> None:
    """
    Physically delete a payment that no investor payout references.

    A payout's payment is its payment history and stays for audit, also after
    the payout is cancelled.
    """
    payment = get_payment(payment_id)

    payout = payment.investor_payout
    if payout is not None:
        raise StateConflictError(
            f"Payment is linked to investor payout {payout.id} ({payout.status}) and is kept for audit.",
            code="PAYMENT_LINKED_TO_PAYOUT",
            current_state=payout.status,
        )

    log_action(payment, "DELETE", before=serialize_model(payment), actor=actor)
    db.session.delete(payment)
    db.session.commit()
    logger.info("Payment %s deleted", payment_id)
