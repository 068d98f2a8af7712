"""
Escrow ledger for Lawnly bookings.

Customer funds are captured onto the platform account when a contractor
accepts, held while the job is done and reviewed, then transferred to the
contractor's connected account (less the platform commission) on release.

Every fund movement is a ``LedgerEntry`` row unique on
``(booking_id, operation, reference)``.  The same triple is the Stripe
idempotency key, so a retried or raced movement reaches the processor at
most once.

Two phases:
  * ``charge`` talks to Stripe before the booking transition commits, since
    a declined card must stop the transition.  Each attempt gets its own
    reference, so only retries within one attempt share a Stripe key.
  * ``release`` and ``refund`` only record a pending entry inside the
    caller's transaction.  ``settle`` performs the transfer/refund after the
    commit; a failure leaves the entry ``failed`` for the retry sweep in
    deadlines.retry_failed_movements and never rolls back the booking.

Without ``STRIPE_SECRET_KEY`` the ledger runs in dev mode and fabricates
processor ids.
"""

import logging

from flask import current_app

from models import db, Booking, LedgerEntry, generate_uuid, utcnow
from errors import LedgerOperationFailed, RefundAmountOutOfRange, InvalidTransition

logger = logging.getLogger(__name__)

_stripe = None

OP_CHARGE = "charge"
OP_RELEASE = "release"
OP_REFUND = "refund"
OP_PLATFORM_REFUND = "platform_refund"

DEFERRED_OPERATIONS = (OP_RELEASE, OP_REFUND, OP_PLATFORM_REFUND)
MAX_ATTEMPTS = 5


def _get_stripe():
    global _stripe
    if _stripe is None:
        import stripe
        _stripe = stripe
    _stripe.api_key = current_app.config.get("STRIPE_SECRET_KEY", "")
    # network retries reuse the idempotency key of the call they retry
    _stripe.max_network_retries = current_app.config.get("STRIPE_MAX_NETWORK_RETRIES", 2)
    return _stripe


def _live():
    return bool(current_app.config.get("STRIPE_SECRET_KEY"))


def _cents(amount):
    return int(round(float(amount) * 100))


def _dev_id(prefix):
    return "{}_dev_{}".format(prefix, generate_uuid()[:8])


def contractor_share(amount):
    """Contractor payout for *amount* after the platform commission."""
    commission = float(current_app.config.get("PLATFORM_COMMISSION", 0.15))
    return round(max(float(amount), 0.0) * (1 - commission), 2)


def find_entry(booking_id, operation, reference=""):
    return LedgerEntry.query.filter_by(
        booking_id=booking_id, operation=operation, reference=reference or ""
    ).first()


def succeeded_charge(booking_id):
    return LedgerEntry.query.filter_by(
        booking_id=booking_id, operation=OP_CHARGE, status="succeeded"
    ).first()


def _charge_reference(booking):
    """A fresh reference per charge attempt.

    A declined or rolled-back attempt leaves nothing behind in the database,
    but Stripe keeps its idempotency key for 24h; the next attempt must not
    replay it.
    """
    return "{}-{}".format((booking.payment_method_id or "pm")[:48], generate_uuid()[:8])


def _record(booking, operation, amount, reference=""):
    entry = find_entry(booking.id, operation, reference)
    if entry is None:
        entry = LedgerEntry(
            booking_id=booking.id,
            operation=operation,
            reference=reference or "",
            amount=round(float(amount), 2),
            status="pending",
        )
        db.session.add(entry)
    return entry


# ---------------------------------------------------------------------------
# Escrow operations
# ---------------------------------------------------------------------------

def reserve(booking, payment_method_id):
    """Store the customer's saved payment method; nothing is charged."""
    if not payment_method_id:
        raise LedgerOperationFailed("A saved payment method is required")
    booking.payment_method_id = payment_method_id
    booking.payment_status = "pending"
    return booking


def require_payout_account(contractor):
    """Contractors must be able to receive a transfer before they take a paid job."""
    if _live() and not contractor.stripe_account_id:
        raise LedgerOperationFailed("Contractor has no connected payout account")


def charge(booking):
    """Capture the booking total onto the platform account.

    Runs inside the caller's transaction: raises LedgerOperationFailed on a
    processor error so the caller can roll back without changing status.
    """
    existing = succeeded_charge(booking.id)
    if existing is not None:
        booking.payment_status = "paid"
        return existing

    if not booking.payment_method_id:
        raise LedgerOperationFailed("No payment method on file for this booking")
    if not booking.total_price or booking.total_price <= 0:
        raise LedgerOperationFailed("Booking has no price to charge")

    entry = _record(booking, OP_CHARGE, booking.total_price, _charge_reference(booking))
    entry.attempts = (entry.attempts or 0) + 1

    if _live():
        stripe = _get_stripe()
        customer = booking.customer
        try:
            intent = stripe.PaymentIntent.create(
                amount=_cents(booking.total_price),
                currency=current_app.config.get("CURRENCY", "aud"),
                customer=customer.stripe_customer_id if customer else None,
                payment_method=booking.payment_method_id,
                off_session=True,
                confirm=True,
                transfer_group=booking.id,
                metadata={"booking_id": booking.id, "user_id": booking.user_id},
                idempotency_key=entry.idempotency_key,
            )
        except Exception as e:
            logger.exception("Stripe charge failed for booking %s", booking.id)
            raise LedgerOperationFailed("Payment could not be processed: {}".format(e))
        intent_id = intent.id
    else:
        intent_id = _dev_id("pi")

    entry.processor_id = intent_id
    entry.status = "succeeded"
    entry.last_error = None
    booking.payment_intent_id = intent_id
    booking.payment_status = "paid"
    logger.info("Charged booking %s (%s) %.2f", booking.id, intent_id, booking.total_price)
    return entry


def release(booking, now=None):
    """Mark the contractor payout released and queue the transfer.

    Idempotent: a booking already released returns its existing entry.
    """
    existing = find_entry(booking.id, OP_RELEASE)
    if booking.payout_status == "released":
        return existing
    if booking.payout_status == "frozen":
        raise InvalidTransition("Payout is frozen by an open dispute")
    if existing is not None:
        return existing

    net = float(booking.total_price or 0) - float(booking.refunded_amount or 0)
    entry = _record(booking, OP_RELEASE, contractor_share(net))
    booking.payout_status = "released"
    booking.payout_released_at = now or utcnow()
    return entry


def freeze(booking):
    """Block release while a dispute is open."""
    if booking.payout_status == "released":
        raise InvalidTransition("Payout has already been released")
    booking.payout_status = "frozen"


def unfreeze(booking):
    if booking.payout_status == "frozen":
        booking.payout_status = "pending"


def refund(booking, amount, reference="", from_platform=False):
    """Queue a refund to the customer.

    ``from_platform`` refunds come out of the platform balance; the
    contractor's released payout is left untouched.
    """
    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        raise RefundAmountOutOfRange("Refund amount must be a number")

    total = float(booking.total_price or 0)
    already = float(booking.refunded_amount or 0)
    if amount < 0 or amount > total:
        raise RefundAmountOutOfRange(
            "Refund of ${:.2f} is outside 0 to ${:.2f}".format(amount, total)
        )
    if amount > round(total - already, 2):
        raise RefundAmountOutOfRange(
            "Refund of ${:.2f} exceeds the ${:.2f} not yet refunded".format(amount, total - already)
        )
    if amount == 0:
        return None

    operation = OP_PLATFORM_REFUND if from_platform else OP_REFUND
    existing = find_entry(booking.id, operation, reference)
    if existing is not None:
        return existing

    entry = _record(booking, operation, amount, reference)
    booking.refunded_amount = round(already + amount, 2)
    return entry


# ---------------------------------------------------------------------------
# Post-commit execution
# ---------------------------------------------------------------------------

def _execute(entry):
    booking = db.session.get(Booking, entry.booking_id)
    if not entry.amount or entry.amount <= 0:
        return None

    if entry.operation == OP_RELEASE:
        contractor = booking.contractor if booking else None
        if contractor is None or not contractor.stripe_account_id:
            if _live():
                raise LedgerOperationFailed("Contractor has no connected payout account")
            return _dev_id("tr")
        if not _live():
            return _dev_id("tr")
        transfer = _get_stripe().Transfer.create(
            amount=_cents(entry.amount),
            currency=current_app.config.get("CURRENCY", "aud"),
            destination=contractor.stripe_account_id,
            transfer_group=booking.id,
            metadata={"booking_id": booking.id, "contractor_id": contractor.id},
            idempotency_key=entry.idempotency_key,
        )
        return transfer.id

    if entry.operation in (OP_REFUND, OP_PLATFORM_REFUND):
        intent_id = booking.payment_intent_id if booking else None
        if not _live() or not intent_id or intent_id.startswith("pi_dev_"):
            return _dev_id("re")
        refund_obj = _get_stripe().Refund.create(
            payment_intent=intent_id,
            amount=_cents(entry.amount),
            metadata={
                "booking_id": booking.id,
                "source": "platform_balance" if entry.operation == OP_PLATFORM_REFUND else "escrow",
            },
            idempotency_key=entry.idempotency_key,
        )
        return refund_obj.id

    raise LedgerOperationFailed("Unsupported deferred operation: {}".format(entry.operation))


def settle(entries):
    """Perform queued movements after the booking transition has committed.

    Never raises; failures are stored on the entry for the retry sweep.
    """
    settled = []
    for entry in entries:
        if entry is None or entry.status == "succeeded":
            continue
        entry_id = entry.id
        try:
            entry.attempts = (entry.attempts or 0) + 1
            entry.processor_id = _execute(entry)
            entry.status = "succeeded"
            entry.last_error = None
            db.session.commit()
            settled.append(entry)
            logger.info("Ledger %s for booking %s settled (%s)",
                        entry.operation, entry.booking_id, entry.processor_id)
        except Exception as e:
            db.session.rollback()
            logger.exception("Ledger entry %s failed", entry_id)
            failed = db.session.get(LedgerEntry, entry_id)
            if failed is not None:
                failed.status = "failed"
                failed.attempts = (failed.attempts or 0) + 1
                failed.last_error = str(e)[:500]
                db.session.commit()
    return settled


def compensate_charge(booking_id, payment_intent_id, amount):
    """Refund a charge whose booking transition then lost a concurrent race."""
    if not payment_intent_id or not _live() or payment_intent_id.startswith("pi_dev_"):
        logger.warning("Compensating dev charge %s for booking %s", payment_intent_id, booking_id)
        return None
    try:
        return _get_stripe().Refund.create(
            payment_intent=payment_intent_id,
            amount=_cents(amount),
            metadata={"booking_id": booking_id, "reason": "transition_conflict"},
            idempotency_key="lawnly-{}-charge-compensation-{}".format(booking_id, payment_intent_id),
        )
    except Exception:
        logger.exception("Compensating refund failed for booking %s (%s)", booking_id, payment_intent_id)
        return None


def create_setup_intent(user):
    """Start saving a card for later off-session charges."""
    if not _live():
        intent_id = _dev_id("seti")
        return {"setup_intent_id": intent_id, "client_secret": "{}_secret_dev".format(intent_id)}

    stripe = _get_stripe()
    try:
        if not user.stripe_customer_id:
            customer = stripe.Customer.create(email=user.email, name=user.name,
                                              metadata={"user_id": user.id})
            user.stripe_customer_id = customer.id
            db.session.commit()
        intent = stripe.SetupIntent.create(
            customer=user.stripe_customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata={"user_id": user.id},
        )
    except Exception as e:
        logger.exception("SetupIntent creation failed for user %s", user.id)
        raise LedgerOperationFailed("Could not start saving the card: {}".format(e))
    return {"setup_intent_id": intent.id, "client_secret": intent.client_secret}
