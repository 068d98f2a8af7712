"""
Customer disputes and admin resolutions.

Before payout (``completed_pending_verification``) a dispute freezes the
escrowed payout and stops the 48h auto-release.  After payout (within the
dispute window of ``completed``) the released payout is left alone; any
refund the admin grants comes out of the platform balance.

Resolution outcomes:

    disputed             no_refund       release full share      -> completed
    disputed             partial_refund  refund, release rest    -> completed_with_issues
    disputed             full_refund     refund, payout frozen   -> cancelled
    post_payment_dispute no_refund       -                       -> completed
    post_payment_dispute partial/full    platform refund         -> completed_with_issues
"""

import logging

from models import db, Dispute, utcnow
from errors import (
    DisputeAlreadyOpen, DisputeWindowExpired, InvalidTransition, NotFound,
    RefundAmountOutOfRange, ValidationError,
)
from booking_service import _after_commit, _as_admin, _as_customer, _commit, _load, _transaction
import deadlines
import ledger
import lifecycle
import notifications

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_LENGTH = 20
RESOLUTIONS = ("full_refund", "partial_refund", "no_refund")
DEFAULT_PARTIAL_PERCENTAGE = 50.0


def open_dispute_for(booking):
    return booking.disputes.filter(Dispute.status == "open").first()


def raise_dispute(booking_id, actor, data, now=None):
    """Customer reports a problem with a finished job."""
    now = now or utcnow()
    data = data or {}
    booking = _load(booking_id)
    kind = _as_customer(booking, actor)

    reason = (data.get("reason") or "").strip()
    description = (data.get("description") or "").strip()
    if not reason:
        raise ValidationError("reason is required")
    if len(description) < MIN_DESCRIPTION_LENGTH:
        raise ValidationError(
            "description must be at least {} characters".format(MIN_DESCRIPTION_LENGTH)
        )

    suggested = data.get("suggested_refund_amount")
    if suggested is not None:
        try:
            suggested = round(float(suggested), 2)
        except (TypeError, ValueError):
            raise RefundAmountOutOfRange("suggested_refund_amount must be a number")
        if suggested < 0 or suggested > float(booking.total_price or 0):
            raise RefundAmountOutOfRange(
                "Suggested refund must be between $0.00 and ${:.2f}".format(booking.total_price or 0)
            )

    if open_dispute_for(booking) is not None:
        raise DisputeAlreadyOpen("This booking already has an open dispute")

    with _transaction():
        if booking.status == lifecycle.COMPLETED:
            lifecycle.check_transition(booking, "post_payment_dispute", kind)
            if booking.payout_status != "released":
                raise InvalidTransition("Payout has not been released for this booking")
            if not deadlines.dispute_window_open(booking, now):
                raise DisputeWindowExpired(
                    "Disputes must be raised within {} days of completion".format(
                        deadlines.dispute_window().days)
                )
            booking.status = lifecycle.POST_PAYMENT_DISPUTE
            post_payment = True
        else:
            lifecycle.check_transition(booking, "dispute", kind)
            ledger.freeze(booking)
            deadlines.disarm(booking, deadlines.AUTO_RELEASE, now)
            booking.status = lifecycle.DISPUTED
            post_payment = False

        dispute = Dispute(
            booking_id=booking.id,
            raised_by="customer",
            reason=reason,
            description=description,
            photo_paths=list(data.get("photo_paths") or []),
            suggested_refund_amount=suggested,
            is_post_payment=post_payment,
            status="open",
        )
        db.session.add(dispute)
        db.session.flush()
        notifications.dispute_opened(booking, dispute)
        _commit(booking)

    _after_commit()
    logger.info("Dispute %s opened on booking %s (post_payment=%s)", dispute.id, booking.id, post_payment)
    return dispute


def _refund_percentage(resolution, data):
    if resolution == "full_refund":
        return 100.0
    if resolution == "no_refund":
        return 0.0
    value = data.get("refund_percentage")
    if value is None:
        return DEFAULT_PARTIAL_PERCENTAGE
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise RefundAmountOutOfRange("refund_percentage must be a number")
    if value < 0 or value > 100:
        raise RefundAmountOutOfRange("refund_percentage must be between 0 and 100")
    return value


def resolve_dispute(dispute_id, actor, data, now=None):
    """Admin decision on an open dispute. Suggested amounts are advisory only."""
    now = now or utcnow()
    data = data or {}
    _as_admin(actor)

    dispute = db.session.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFound("Dispute not found")
    if dispute.status != "open":
        raise InvalidTransition("Dispute has already been resolved")

    resolution = data.get("resolution")
    if resolution not in RESOLUTIONS:
        raise ValidationError("resolution must be one of: {}".format(", ".join(RESOLUTIONS)))

    booking = _load(dispute.booking_id)
    total = float(booking.total_price or 0)
    percentage = _refund_percentage(resolution, data)
    amount = round(total * percentage / 100.0, 2)
    if amount < 0 or amount > total:
        raise RefundAmountOutOfRange("Refund must be between $0.00 and ${:.2f}".format(total))

    entries = []
    released = None
    with _transaction():
        if booking.status == lifecycle.DISPUTED:
            lifecycle.check_transition(booking, "resolve_dispute", lifecycle.ADMIN)
            if resolution == "full_refund":
                entries.append(ledger.refund(booking, amount, reference=dispute.id))
                booking.status = lifecycle.CANCELLED
                booking.cancelled_at = now
            else:
                if amount > 0:
                    entries.append(ledger.refund(booking, amount, reference=dispute.id))
                ledger.unfreeze(booking)
                booking.status = (lifecycle.COMPLETED if resolution == "no_refund"
                                  else lifecycle.COMPLETED_WITH_ISSUES)
                released = ledger.release(booking, now)
                entries.append(released)
        else:
            lifecycle.check_transition(booking, "resolve_post_payment_dispute", lifecycle.ADMIN)
            if resolution == "no_refund":
                booking.status = lifecycle.COMPLETED
            else:
                if amount > 0:
                    entries.append(ledger.refund(booking, amount, reference=dispute.id, from_platform=True))
                booking.status = lifecycle.COMPLETED_WITH_ISSUES

        dispute.status = "resolved"
        dispute.resolution = resolution
        dispute.refund_percentage = percentage
        dispute.refund_amount = amount
        dispute.resolved_by = actor.user_id
        dispute.resolved_at = now

        notifications.dispute_resolved(booking, dispute)
        if released is not None:
            notifications.payout_released(booking, released.amount)
        _commit(booking)

    _after_commit(entries)
    logger.info("Dispute %s resolved: %s (refund %.2f), booking %s -> %s",
                dispute_id, resolution, amount, booking.id, booking.status)
    return dispute


def list_disputes(actor, status=None):
    _as_admin(actor)
    query = Dispute.query
    if status:
        query = query.filter(Dispute.status == status)
    return query.order_by(Dispute.created_at.desc()).all()
