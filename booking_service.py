"""
Booking commands.

One function per lifecycle transition.  Each command follows the same
shape:

    load -> authorize actor -> check the transition table -> mutate the row
    (plus ledger entries, scheduled tasks and notifications in the same
    session) -> commit under the booking's version check -> settle ledger
    movements and send emails.

A lost optimistic-lock race (``StaleDataError``) surfaces as
``InvalidTransition``; the caller simply lost to whoever committed first.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from models import (
    db, Address, AlternativeSuggestion, Booking, Contractor, Dispute, JobPhoto, utcnow,
)
from errors import (
    InvalidTransition, NotFound, PhotosInsufficient, Unauthorized, ValidationError,
)
import deadlines
import ledger
import lifecycle
import notifications
import pricing

logger = logging.getLogger(__name__)

TIME_SLOTS = ("morning", "midday", "afternoon")

# (max concurrent active jobs, max job price); None means unlimited
TIER_LIMITS = {
    "probation": (3, 150.0),
    "standard": (10, None),
    "premium": (None, None),
}

ACTIVE_JOB_STATUSES = (lifecycle.CONFIRMED,)

AUTO_RATING_COMMENT = "Auto-rated: no review submitted within {} hours"
PRICE_EXPIRY_NOTE = "Auto-cancelled: customer did not approve price change within {} days"


# ---------------------------------------------------------------------------
# Plumbing
# ---------------------------------------------------------------------------

@contextmanager
def _transaction():
    """Roll back the session and drop staged emails if the body raises.

    An early autoflush can hit the version check before the commit does, so
    StaleDataError is mapped here as well as in _commit.
    """
    try:
        yield
    except StaleDataError:
        db.session.rollback()
        notifications.discard_outbox()
        raise InvalidTransition("Booking was changed by another request; reload and try again")
    except Exception:
        db.session.rollback()
        notifications.discard_outbox()
        raise


def _commit(*bookings):
    for booking in bookings:
        lifecycle.assert_invariants(booking)
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        notifications.discard_outbox()
        raise InvalidTransition("Booking was changed by another request; reload and try again")


def _after_commit(entries=()):
    ledger.settle([e for e in entries if e is not None])
    notifications.flush_outbox()


def _load(booking_id):
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


def _parse_date(value, field):
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError("{} must be an ISO date (YYYY-MM-DD)".format(field))


def _as_customer(booking, actor):
    if actor.user_id != booking.user_id:
        raise Unauthorized("Only the customer who made this booking can do that")
    return lifecycle.CUSTOMER


def _as_admin(actor):
    if not actor.is_admin:
        raise Unauthorized("Admin access required")
    return lifecycle.ADMIN


def _as_contractor(actor):
    if not actor.is_contractor:
        raise Unauthorized("Contractor profile required")
    return lifecycle.CONTRACTOR


def _as_assigned_contractor(booking, actor):
    _as_contractor(actor)
    if booking.contractor_id is None or booking.contractor_id != actor.contractor_id:
        raise Unauthorized("You are not the contractor assigned to this booking")
    return lifecycle.CONTRACTOR


def _gst_rate():
    return current_app.config.get("GST_RATE", pricing.DEFAULT_GST_RATE)


def _quote(address, scheduled_date, grass_length, clippings_removal):
    try:
        return pricing.quote(address, scheduled_date, grass_length, clippings_removal,
                             gst_rate=_gst_rate())
    except pricing.QuoteUnavailable as e:
        raise ValidationError(str(e))


# ---------------------------------------------------------------------------
# Visibility and contractor limits
# ---------------------------------------------------------------------------

def is_visible_to(booking, contractor):
    """Whether *contractor* may see and accept this unassigned booking."""
    if contractor is None or not contractor.is_active or contractor.approval_status != "approved":
        return False
    if booking.preferred_contractor_id:
        return booking.preferred_contractor_id == contractor.id
    postal_code = booking.address.postal_code if booking.address else None
    return contractor.serves_postal_code(postal_code)


def _check_tier_limits(contractor, booking):
    max_jobs, max_price = TIER_LIMITS.get(contractor.tier or "probation", TIER_LIMITS["probation"])
    if max_price is not None and (booking.total_price or 0) > max_price:
        raise Unauthorized(
            "{} contractors cannot accept jobs over ${:.0f}".format(
                (contractor.tier or "probation").capitalize(), max_price)
        )
    if max_jobs is not None:
        active = Booking.query.filter(
            Booking.contractor_id == contractor.id,
            Booking.status.in_(ACTIVE_JOB_STATUSES),
        ).count()
        if active >= max_jobs:
            raise Unauthorized(
                "You already have {} active jobs; the limit for your tier is {}".format(active, max_jobs)
            )


def _decline_pending_suggestions(booking, now, keep_id=None):
    pending = booking.suggestions.filter(AlternativeSuggestion.status == "pending").all()
    for suggestion in pending:
        if suggestion.id != keep_id:
            suggestion.status = "rejected"
            suggestion.responded_at = now


def _assign(booking, contractor, now):
    """Shared by contractor acceptance and accepted alternatives.

    Callers run with autoflush off: the versioned UPDATE, and the row lock it
    takes, must not be sent until the charge has returned.
    """
    _check_tier_limits(contractor, booking)
    if not booking.payment_method_id:
        raise ValidationError("Customer has no saved payment method for this booking")
    ledger.require_payout_account(contractor)
    booking.contractor = contractor
    booking.contractor_accepted_at = now
    booking.status = lifecycle.CONFIRMED


def _charge_and_commit(booking):
    """Charge into escrow, then commit; the charge is refunded if anything after it fails.

    A lost version race only surfaces at the commit, after the charge.
    """
    ledger.charge(booking)
    payment_intent_id = booking.payment_intent_id
    amount = booking.total_price
    booking_id = booking.id
    try:
        notifications.booking_confirmed(booking)
        _commit(booking)
    except Exception:
        ledger.compensate_charge(booking_id, payment_intent_id, amount)
        raise


# ---------------------------------------------------------------------------
# Creation and address verification
# ---------------------------------------------------------------------------

def create_booking(actor, data, now=None):
    """Create a booking for one of the customer's addresses.

    Unverified addresses get a preliminary price and wait for an admin to
    measure the lawn; verified addresses go straight to ``pending`` with the
    customer's saved payment method reserved.
    """
    now = now or utcnow()
    data = data or {}

    address_id = data.get("address_id")
    if not address_id:
        raise ValidationError("address_id is required")
    address = db.session.get(Address, address_id)
    if address is None or address.user_id != actor.user_id:
        raise NotFound("Address not found")
    if address.verification_status == "rejected":
        raise ValidationError("Address has been rejected")

    scheduled_date = _parse_date(data.get("scheduled_date"), "scheduled_date")
    if scheduled_date < now.date():
        raise ValidationError("scheduled_date cannot be in the past")
    time_slot = data.get("time_slot")
    if time_slot not in TIME_SLOTS:
        raise ValidationError("time_slot must be one of: {}".format(", ".join(TIME_SLOTS)))
    grass_length = data.get("grass_length") or "short"
    if grass_length not in pricing.GRASS_LENGTHS:
        raise ValidationError("grass_length must be one of: {}".format(", ".join(pricing.GRASS_LENGTHS)))
    clippings_removal = bool(data.get("clippings_removal", False))

    preferred_id = data.get("preferred_contractor_id")
    if preferred_id:
        preferred = db.session.get(Contractor, preferred_id)
        if preferred is None or not preferred.is_active or preferred.approval_status != "approved":
            raise ValidationError("Preferred contractor is not available")

    payment_method_id = data.get("payment_method_id")
    if address.is_verified and not payment_method_id:
        raise ValidationError("payment_method_id is required")

    breakdown = _quote(address, scheduled_date, grass_length, clippings_removal)

    with _transaction():
        booking = Booking(
            user_id=actor.user_id,
            address_id=address.id,
            preferred_contractor_id=preferred_id or None,
            scheduled_date=scheduled_date,
            time_slot=time_slot,
            grass_length=grass_length,
            clippings_removal=clippings_removal,
            notes=data.get("notes"),
            original_price=breakdown["total_with_gst"],
            total_price=breakdown["total_with_gst"],
            quote_breakdown=breakdown,
            payment_status="unpaid",
            payout_status="pending",
        )
        if address.is_verified:
            booking.status = lifecycle.PENDING
            ledger.reserve(booking, payment_method_id)
        else:
            booking.status = lifecycle.PENDING_ADDRESS_VERIFICATION
            booking.payment_method_id = payment_method_id
        db.session.add(booking)
        db.session.flush()

        if booking.status == lifecycle.PENDING:
            message = "We're finding a contractor for {}.".format(scheduled_date.isoformat())
        else:
            message = "We'll measure your lawn and confirm the final price shortly."
        notifications.booking_status_changed(booking, "Booking received", message,
                                             type_="booking_created")
        _commit(booking)

    _after_commit()
    logger.info("Booking %s created (%s) for user %s", booking.id, booking.status, actor.user_id)
    return booking


def save_payment_method(booking_id, actor, payment_method_id, now=None):
    """Attach a saved card to a booking that has not been charged yet."""
    booking = _load(booking_id)
    _as_customer(booking, actor)
    if booking.status not in (lifecycle.PENDING_ADDRESS_VERIFICATION,
                              lifecycle.PRICE_CHANGE_PENDING, lifecycle.PENDING):
        raise InvalidTransition("Payment method can only change before a contractor accepts")
    with _transaction():
        ledger.reserve(booking, payment_method_id)
        if booking.status != lifecycle.PENDING:
            # held until the price is final
            booking.payment_status = "unpaid"
        _commit(booking)
    return booking


def verify_address(address_id, actor, data=None, now=None):
    """Admin measures the lawn; every booking waiting on the address is re-quoted.

    A price increase beyond PRICE_CHANGE_TOLERANCE needs the customer's
    approval (``price_change_pending``); otherwise the booking moves to
    ``pending`` and keeps the lower of the two prices.
    """
    now = now or utcnow()
    data = data or {}
    _as_admin(actor)

    address = db.session.get(Address, address_id)
    if address is None:
        raise NotFound("Address not found")
    if address.verification_status == "verified":
        raise InvalidTransition("Address is already verified")

    square_meters = data.get("square_meters", address.square_meters)
    try:
        square_meters = float(square_meters)
    except (TypeError, ValueError):
        raise ValidationError("square_meters must be a number")
    if square_meters <= 0:
        raise ValidationError("square_meters must be positive")
    slope = data.get("slope", address.slope) or "flat"
    if slope not in pricing.SLOPES:
        raise ValidationError("slope must be one of: {}".format(", ".join(pricing.SLOPES)))
    try:
        tier_count = int(data.get("tier_count", address.tier_count) or 1)
    except (TypeError, ValueError):
        raise ValidationError("tier_count must be an integer")
    if tier_count < 1:
        raise ValidationError("tier_count must be at least 1")

    tolerance = float(current_app.config.get("PRICE_CHANGE_TOLERANCE", 0.50))
    settings = pricing.load_settings()
    updated = []

    with _transaction():
        address.square_meters = square_meters
        address.slope = slope
        address.tier_count = tier_count
        address.verification_status = "verified"
        address.verified_at = now
        address.verified_by = actor.user_id
        if data.get("admin_notes"):
            address.admin_notes = data["admin_notes"]

        waiting = Booking.query.filter_by(
            address_id=address.id, status=lifecycle.PENDING_ADDRESS_VERIFICATION
        ).all()
        for booking in waiting:
            lifecycle.check_transition(booking, "verify_address", lifecycle.ADMIN)
            try:
                breakdown = pricing.quote(address, booking.scheduled_date, booking.grass_length,
                                          booking.clippings_removal, settings=settings,
                                          gst_rate=_gst_rate())
            except pricing.QuoteUnavailable as e:
                raise ValidationError(str(e))
            new_price = breakdown["total_with_gst"]
            old_price = float(booking.total_price or 0)

            if new_price > old_price and (new_price - old_price) > tolerance:
                booking.status = lifecycle.PRICE_CHANGE_PENDING
                booking.original_price = old_price
                booking.total_price = new_price
                booking.quote_breakdown = breakdown
                booking.price_change_notified_at = now
                approve_by = now + deadlines.price_approval_window()
                deadlines.arm(booking, deadlines.PRICE_CHANGE_EXPIRY, approve_by)
                notifications.price_change_pending(booking, approve_by)
            else:
                booking.status = lifecycle.PENDING
                booking.payment_status = "unpaid"
                if new_price < old_price:
                    booking.total_price = new_price
                    booking.quote_breakdown = breakdown
                notifications.booking_status_changed(
                    booking, "Address verified",
                    "Your price is confirmed at ${:.2f}. We're finding a contractor.".format(
                        booking.total_price or 0),
                )
            logger.info("Booking %s re-quoted %.2f -> %.2f (%s)",
                        booking.id, old_price, new_price, booking.status)
            updated.append(booking)

        _commit(*updated)

    _after_commit()
    return address, updated


def reject_address(address_id, actor, notes=None, now=None):
    """Admin rejects an address; every booking waiting on it is cancelled."""
    now = now or utcnow()
    _as_admin(actor)
    address = db.session.get(Address, address_id)
    if address is None:
        raise NotFound("Address not found")
    if address.verification_status == "rejected":
        raise InvalidTransition("Address is already rejected")

    cancelled = []
    with _transaction():
        address.verification_status = "rejected"
        address.verified_by = actor.user_id
        if notes:
            address.admin_notes = notes
        waiting = Booking.query.filter_by(
            address_id=address.id, status=lifecycle.PENDING_ADDRESS_VERIFICATION
        ).all()
        for booking in waiting:
            lifecycle.check_transition(booking, "reject_address", lifecycle.ADMIN)
            booking.status = lifecycle.CANCELLED
            booking.cancelled_at = now
            booking.admin_notes = notes or "Address could not be serviced"
            notifications.booking_status_changed(
                booking, "Booking cancelled",
                "We couldn't verify your address, so this booking was cancelled. You have not been charged.",
                type_="booking_cancelled",
            )
            cancelled.append(booking)
        _commit(*cancelled)

    _after_commit()
    return address, cancelled


# ---------------------------------------------------------------------------
# Price change approval
# ---------------------------------------------------------------------------

def approve_price_change(booking_id, actor, now=None):
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction():
        kind = _as_customer(booking, actor)
        lifecycle.check_transition(booking, "approve_price_change", kind)
        booking.status = lifecycle.PENDING
        booking.payment_status = "unpaid"
        deadlines.disarm(booking, deadlines.PRICE_CHANGE_EXPIRY, now)
        notifications.booking_status_changed(
            booking, "New price approved",
            "Thanks! We're finding a contractor at ${:.2f}.".format(booking.total_price or 0),
        )
        _commit(booking)
    _after_commit()
    return booking


def reject_price_change(booking_id, actor, now=None):
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction():
        kind = _as_customer(booking, actor)
        lifecycle.check_transition(booking, "reject_price_change", kind)
        booking.status = lifecycle.CANCELLED
        booking.cancelled_at = now
        deadlines.disarm(booking, deadlines.PRICE_CHANGE_EXPIRY, now)
        notifications.booking_status_changed(
            booking, "Booking cancelled",
            "You declined the updated price, so this booking was cancelled. You have not been charged.",
            type_="booking_cancelled",
        )
        _commit(booking)
    _after_commit()
    return booking


def expire_price_change(booking_id, now=None):
    """Scheduler: cancel a price change the customer ignored."""
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction():
        lifecycle.check_transition(booking, "expire_price_change", lifecycle.SCHEDULER)
        notified_at = booking.price_change_notified_at or booking.updated_at
        if notified_at and now < notified_at + deadlines.price_approval_window():
            raise InvalidTransition("Price approval window is still open")
        days = current_app.config.get("PRICE_APPROVAL_DAYS", 7)
        booking.status = lifecycle.CANCELLED
        booking.cancelled_at = now
        booking.admin_notes = PRICE_EXPIRY_NOTE.format(days)
        deadlines.disarm(booking, deadlines.PRICE_CHANGE_EXPIRY, now, fired=True)
        notifications.booking_status_changed(
            booking, "Booking cancelled",
            "The updated price wasn't approved within {} days, so this booking was cancelled.".format(days),
            type_="booking_cancelled",
        )
        _commit(booking)
    _after_commit()
    logger.info("Booking %s price change expired", booking_id)
    return booking


# ---------------------------------------------------------------------------
# Contractor acceptance and alternatives
# ---------------------------------------------------------------------------

def list_available_bookings(actor):
    """Unassigned pending bookings the contractor may accept, soonest first."""
    _as_contractor(actor)
    candidates = Booking.query.filter(
        Booking.status == lifecycle.PENDING,
        Booking.contractor_id.is_(None),
    ).order_by(Booking.scheduled_date, Booking.created_at).all()
    return [b for b in candidates if is_visible_to(b, actor.contractor)]


def accept_booking(booking_id, actor, now=None):
    """Contractor accepts a pending booking; the customer is charged into escrow."""
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction(), db.session.no_autoflush:
        kind = _as_contractor(actor)
        lifecycle.check_transition(booking, "accept", kind)
        if booking.contractor_id is not None:
            raise InvalidTransition("Booking already has a contractor")
        if not is_visible_to(booking, actor.contractor):
            raise Unauthorized("This booking is not available to you")
        _decline_pending_suggestions(booking, now)
        _assign(booking, actor.contractor, now)
        _charge_and_commit(booking)
    _after_commit()
    logger.info("Booking %s accepted by contractor %s", booking_id, actor.contractor_id)
    return booking


def suggest_alternative(booking_id, actor, data, now=None):
    """Contractor offers a different date/slot for a pending booking."""
    now = now or utcnow()
    data = data or {}
    booking = _load(booking_id)
    kind = _as_contractor(actor)
    lifecycle.check_transition(booking, "suggest_alternative", kind)
    if not is_visible_to(booking, actor.contractor):
        raise Unauthorized("This booking is not available to you")

    suggested_date = _parse_date(data.get("suggested_date"), "suggested_date")
    if suggested_date < now.date():
        raise ValidationError("suggested_date cannot be in the past")
    slot = data.get("suggested_time_slot")
    if slot not in TIME_SLOTS:
        raise ValidationError("suggested_time_slot must be one of: {}".format(", ".join(TIME_SLOTS)))
    if suggested_date == booking.scheduled_date and slot == booking.time_slot:
        raise ValidationError("Suggestion is the same as the requested time")

    duplicate = AlternativeSuggestion.query.filter_by(
        booking_id=booking.id, contractor_id=actor.contractor_id,
        suggested_date=suggested_date, suggested_time_slot=slot,
    ).first()
    if duplicate is not None:
        raise ValidationError("You have already suggested this time")

    with _transaction():
        suggestion = AlternativeSuggestion(
            booking_id=booking.id,
            contractor_id=actor.contractor_id,
            suggested_date=suggested_date,
            suggested_time_slot=slot,
            status="pending",
        )
        db.session.add(suggestion)
        db.session.flush()
        notifications.alternative_suggested(booking, suggestion)
        db.session.commit()
    _after_commit()
    return suggestion


def _load_suggestion(booking, suggestion_id):
    suggestion = db.session.get(AlternativeSuggestion, suggestion_id)
    if suggestion is None or suggestion.booking_id != booking.id:
        raise NotFound("Suggestion not found")
    if suggestion.status != "pending":
        raise InvalidTransition("Suggestion has already been {}".format(suggestion.status))
    return suggestion


def accept_alternative(booking_id, suggestion_id, actor, now=None):
    """Customer takes a contractor's suggested time; that contractor is assigned."""
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction(), db.session.no_autoflush:
        kind = _as_customer(booking, actor)
        lifecycle.check_transition(booking, "accept_alternative", kind)
        suggestion = _load_suggestion(booking, suggestion_id)
        contractor = suggestion.contractor
        if not is_visible_to(booking, contractor):
            raise InvalidTransition("That contractor can no longer take this booking")

        booking.scheduled_date = suggestion.suggested_date
        booking.time_slot = suggestion.suggested_time_slot
        suggestion.status = "accepted"
        suggestion.responded_at = now
        _decline_pending_suggestions(booking, now, keep_id=suggestion.id)
        _assign(booking, contractor, now)
        _charge_and_commit(booking)
    _after_commit()
    return booking


def decline_alternative(booking_id, suggestion_id, actor, now=None):
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction():
        kind = _as_customer(booking, actor)
        lifecycle.check_transition(booking, "decline_alternative", kind)
        suggestion = _load_suggestion(booking, suggestion_id)
        suggestion.status = "rejected"
        suggestion.responded_at = now
        db.session.commit()
    return suggestion


def cancel_booking(booking_id, actor, reason=None, now=None):
    """Customer cancels before any contractor has accepted."""
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction():
        kind = _as_customer(booking, actor)
        lifecycle.check_transition(booking, "cancel", kind)
        if booking.contractor_id is not None:
            raise InvalidTransition("A contractor has already accepted this booking")
        booking.status = lifecycle.CANCELLED
        booking.cancelled_at = now
        if reason:
            booking.admin_notes = "Cancelled by customer: {}".format(reason)
        _decline_pending_suggestions(booking, now)
        _commit(booking)
    _after_commit()
    logger.info("Booking %s cancelled by customer", booking_id)
    return booking


# ---------------------------------------------------------------------------
# Doing the job
# ---------------------------------------------------------------------------

def record_photo(booking_id, actor, photo_type, storage_path, now=None):
    booking = _load(booking_id)
    kind = _as_assigned_contractor(booking, actor)
    lifecycle.check_transition(booking, "record_photo", kind)
    if photo_type not in ("before", "after"):
        raise ValidationError("photo_type must be 'before' or 'after'")
    if not storage_path:
        raise ValidationError("storage_path is required")

    with _transaction():
        photo = JobPhoto(
            booking_id=booking.id,
            contractor_id=actor.contractor_id,
            photo_type=photo_type,
            storage_path=storage_path,
        )
        db.session.add(photo)
        db.session.commit()
    return photo


def photo_counts(booking):
    counts = {"before": 0, "after": 0}
    photos = booking.photos.filter(JobPhoto.contractor_id == booking.contractor_id).all()
    for photo in photos:
        counts[photo.photo_type] = counts.get(photo.photo_type, 0) + 1
    return counts


def _check_photo_gate(booking):
    minimum = int(current_app.config.get("MIN_COMPLETION_PHOTOS", 4))
    counts = photo_counts(booking)
    short = ["{}: {}/{}".format(kind, counts[kind], minimum)
             for kind in ("before", "after") if counts[kind] < minimum]
    if short:
        raise PhotosInsufficient(
            "minimum photos required: {m} before, {m} after; you have {b} before, {a} after ({s})".format(
                m=minimum, b=counts["before"], a=counts["after"], s=", ".join(short)),
            before=counts["before"], after=counts["after"], minimum=minimum,
        )


def complete_job(booking_id, actor, now=None):
    """Contractor marks the job done; the customer's review window opens."""
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction():
        kind = _as_assigned_contractor(booking, actor)
        lifecycle.check_transition(booking, "complete", kind)
        _check_photo_gate(booking)
        booking.status = lifecycle.COMPLETED_PENDING_VERIFICATION
        booking.completed_at = now
        booking.payout_status = "pending"
        deadlines.arm(booking, deadlines.AUTO_RELEASE, now + deadlines.review_window())
        notifications.job_completed(booking)
        _commit(booking)
    _after_commit()
    logger.info("Booking %s completed by contractor %s", booking_id, actor.contractor_id)
    return booking


def _validate_rating(rating):
    if rating is None:
        return None
    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise ValidationError("rating must be an integer from 1 to 5")
    if rating < 1 or rating > 5:
        raise ValidationError("rating must be an integer from 1 to 5")
    return rating


def approve_job(booking_id, actor, rating=None, comment=None, now=None):
    """Customer approves the work; the payout is released."""
    now = now or utcnow()
    rating = _validate_rating(rating)
    booking = _load(booking_id)
    with _transaction():
        kind = _as_customer(booking, actor)
        lifecycle.check_transition(booking, "approve", kind)
        booking.status = lifecycle.COMPLETED
        if rating is not None:
            booking.customer_rating = rating
            booking.rating_comment = comment
        entry = ledger.release(booking, now)
        deadlines.disarm(booking, deadlines.AUTO_RELEASE, now)
        notifications.payout_released(booking, entry.amount if entry else None)
        _commit(booking)
    _after_commit([entry])
    logger.info("Booking %s approved by customer", booking_id)
    return booking


def auto_release(booking_id, now=None):
    """Scheduler: the review window closed with no customer action."""
    now = now or utcnow()
    booking = _load(booking_id)
    with _transaction():
        lifecycle.check_transition(booking, "auto_release", lifecycle.SCHEDULER)
        if booking.completed_at and now < booking.completed_at + deadlines.review_window():
            raise InvalidTransition("Review window is still open")
        booking.status = lifecycle.COMPLETED
        if booking.customer_rating is None:
            booking.customer_rating = 5
            booking.rating_comment = AUTO_RATING_COMMENT.format(
                current_app.config.get("REVIEW_WINDOW_HOURS", 48))
        entry = ledger.release(booking, now)
        deadlines.disarm(booking, deadlines.AUTO_RELEASE, now, fired=True)
        notifications.payout_released(booking, entry.amount if entry else None, automatic=True)
        _commit(booking)
    _after_commit([entry])
    logger.info("Booking %s auto-released after review window", booking_id)
    return booking


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _can_view(booking, actor):
    if actor.is_admin or actor.user_id == booking.user_id:
        return True
    if actor.is_contractor:
        if booking.contractor_id == actor.contractor_id:
            return True
        if booking.status == lifecycle.PENDING and booking.contractor_id is None:
            return is_visible_to(booking, actor.contractor)
    return False


def get_booking(booking_id, actor, now=None):
    """Full booking view with the live review/dispute window countdowns."""
    now = now or utcnow()
    booking = _load(booking_id)
    if not _can_view(booking, actor):
        raise NotFound("Booking not found")

    data = booking.to_dict()
    data["hours_remaining_in_review_window"] = deadlines.hours_remaining_in_review_window(booking, now)
    data["days_remaining_in_dispute_window"] = deadlines.days_remaining_in_dispute_window(booking, now)
    data["photo_counts"] = photo_counts(booking) if booking.contractor_id else {"before": 0, "after": 0}
    data["allowed_events"] = lifecycle.allowed_events(booking.status)

    open_dispute = booking.disputes.filter(Dispute.status == "open").first()
    data["open_dispute"] = open_dispute.to_dict() if open_dispute else None

    if actor.user_id == booking.user_id or actor.is_admin:
        data["suggestions"] = [s.to_dict() for s in booking.suggestions.all()]
    return data

