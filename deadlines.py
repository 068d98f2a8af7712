"""
Durable deadlines for the booking lifecycle.

Deadlines are ``ScheduledTask`` rows, so they survive restarts and can be
inspected.  ``arm`` and ``disarm`` only add to the caller's session: a task
is created or cancelled in the same commit as the transition that caused it.

``run_due_tasks`` is called by the APScheduler job in scheduler.py (and by
the admin "run now" endpoint).  It applies each due task's transition
through booking_service with the expected from-state; if a manual action
committed first the command raises InvalidTransition and the task is
dropped with no effect.

``promote_contractors`` is the periodic tier review for contractors; it runs
on the same scheduler.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, func, or_

from models import db, Booking, Contractor, Dispute, LedgerEntry, ScheduledTask, utcnow
from errors import BookingError, InvalidTransition
import lifecycle

logger = logging.getLogger(__name__)

AUTO_RELEASE = "auto_release"
PRICE_CHANGE_EXPIRY = "price_change_expiry"

KIND_SOURCE_STATUS = {
    AUTO_RELEASE: lifecycle.COMPLETED_PENDING_VERIFICATION,
    PRICE_CHANGE_EXPIRY: lifecycle.PRICE_CHANGE_PENDING,
}

# entries still pending this long after creation missed their post-commit settle
STALE_PENDING_AFTER = timedelta(minutes=10)


def review_window():
    return timedelta(hours=current_app.config.get("REVIEW_WINDOW_HOURS", 48))


def dispute_window():
    return timedelta(days=current_app.config.get("DISPUTE_WINDOW_DAYS", 7))


def price_approval_window():
    return timedelta(days=current_app.config.get("PRICE_APPROVAL_DAYS", 7))


def armed_task(booking_id, kind):
    return ScheduledTask.query.filter_by(booking_id=booking_id, kind=kind, status="armed").first()


def arm(booking, kind, due_at):
    """Arm a deadline for *booking*; re-arming moves the existing task."""
    task = armed_task(booking.id, kind)
    if task is None:
        task = ScheduledTask(booking_id=booking.id, kind=kind, due_at=due_at, status="armed")
        db.session.add(task)
    else:
        task.due_at = due_at
    logger.debug("Armed %s for booking %s due %s", kind, booking.id, due_at)
    return task


def disarm(booking, kind, now=None, fired=False):
    """Cancel (or mark fired) any armed task of *kind*. Safe to call twice."""
    now = now or utcnow()
    tasks = ScheduledTask.query.filter_by(booking_id=booking.id, kind=kind, status="armed").all()
    for task in tasks:
        if fired:
            task.status = "fired"
            task.fired_at = now
        else:
            task.status = "cancelled"
            task.cancelled_at = now
    return tasks


def hours_remaining_in_review_window(booking, now=None):
    if booking.status != lifecycle.COMPLETED_PENDING_VERIFICATION or not booking.completed_at:
        return None
    remaining = (booking.completed_at + review_window()) - (now or utcnow())
    return max(round(remaining.total_seconds() / 3600, 1), 0.0)


def dispute_window_closes_at(booking):
    if not booking.completed_at:
        return None
    return booking.completed_at + dispute_window()


def days_remaining_in_dispute_window(booking, now=None):
    if booking.status != lifecycle.COMPLETED or booking.payout_status != "released":
        return None
    closes_at = dispute_window_closes_at(booking)
    if closes_at is None:
        return None
    remaining = closes_at - (now or utcnow())
    return max(round(remaining.total_seconds() / 86400, 1), 0.0)


def dispute_window_open(booking, now=None):
    closes_at = dispute_window_closes_at(booking)
    return closes_at is not None and (now or utcnow()) <= closes_at


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

def _arm_orphaned_reviews(now):
    """Arm auto-release for reviewable bookings that have no armed task."""
    bookings = Booking.query.filter(
        Booking.status == lifecycle.COMPLETED_PENDING_VERIFICATION,
        Booking.payout_status == "pending",
        Booking.completed_at.isnot(None),
    ).all()
    armed = 0
    for booking in bookings:
        if armed_task(booking.id, AUTO_RELEASE) is None:
            arm(booking, AUTO_RELEASE, booking.completed_at + review_window())
            armed += 1
    if armed:
        db.session.commit()
        logger.warning("Armed %d auto-release tasks that were missing", armed)
    return armed


def _fire(task_id, now):
    import booking_service

    task = db.session.get(ScheduledTask, task_id)
    if task is None or task.status != "armed":
        return "skipped"

    booking_id = task.booking_id
    kind = task.kind
    try:
        if kind == AUTO_RELEASE:
            booking_service.auto_release(booking_id, now=now)
        elif kind == PRICE_CHANGE_EXPIRY:
            booking_service.expire_price_change(booking_id, now=now)
        else:
            logger.error("Unknown scheduled task kind %s (%s)", kind, task_id)
            return "failed"
        return "fired"
    except InvalidTransition as e:
        # a manual action won the race, or the task outlived its from-state
        db.session.rollback()
        task = db.session.get(ScheduledTask, task_id)
        booking = db.session.get(Booking, booking_id)
        if task is not None and task.status == "armed" and (
            booking is None or booking.status != KIND_SOURCE_STATUS.get(kind)
        ):
            task.status = "cancelled"
            task.cancelled_at = now
            db.session.commit()
        logger.info("Scheduled %s for booking %s not applied: %s", kind, booking_id, e.message)
        return "skipped"
    except BookingError:
        db.session.rollback()
        logger.exception("Scheduled %s for booking %s failed", kind, booking_id)
        return "failed"


def run_due_tasks(now=None):
    """Fire every armed task whose due time has passed. Returns counts."""
    now = now or utcnow()
    _arm_orphaned_reviews(now)

    due_ids = [
        task.id for task in ScheduledTask.query.filter(
            ScheduledTask.status == "armed",
            ScheduledTask.due_at <= now,
        ).order_by(ScheduledTask.due_at).all()
    ]

    results = {"fired": 0, "skipped": 0, "failed": 0}
    for task_id in due_ids:
        try:
            outcome = _fire(task_id, now)
        except Exception:
            db.session.rollback()
            logger.exception("Scheduled task %s crashed", task_id)
            outcome = "failed"
        results[outcome] += 1

    if due_ids:
        logger.info("Deadlines: %(fired)d fired, %(skipped)d skipped, %(failed)d failed", results)
    return results


def retry_failed_movements(now=None):
    """Re-run ledger transfers/refunds that failed or never settled after commit."""
    import ledger

    now = now or utcnow()
    entries = LedgerEntry.query.filter(
        LedgerEntry.operation.in_(ledger.DEFERRED_OPERATIONS),
        LedgerEntry.attempts < ledger.MAX_ATTEMPTS,
        or_(
            LedgerEntry.status == "failed",
            and_(LedgerEntry.status == "pending",
                 LedgerEntry.created_at <= now - STALE_PENDING_AFTER),
        ),
    ).order_by(LedgerEntry.created_at).all()

    settled = ledger.settle(entries)
    if entries:
        logger.info("Ledger retry: %d of %d movements settled", len(settled), len(entries))
    return len(settled)


# ---------------------------------------------------------------------------
# Contractor tiers
# ---------------------------------------------------------------------------

COMPLETED_STATUSES = (lifecycle.COMPLETED, lifecycle.COMPLETED_PENDING_VERIFICATION)

# (from tier, to tier, min completed jobs, min average rating)
PROMOTION_RULES = (
    ("probation", "standard", 5, 4.5),
    ("standard", "premium", 50, 4.7),
)
PREMIUM_MAX_DISPUTE_RATE = 0.03


def _completed_job_stats(contractor_id):
    jobs, avg_rating = db.session.query(
        func.count(Booking.id), func.avg(Booking.customer_rating)
    ).filter(
        Booking.contractor_id == contractor_id,
        Booking.status.in_(COMPLETED_STATUSES),
    ).one()
    return jobs or 0, (float(avg_rating) if avg_rating is not None else None)


def _dispute_rate(contractor_id, jobs):
    disputes = Dispute.query.join(Booking, Dispute.booking_id == Booking.id).filter(
        Booking.contractor_id == contractor_id
    ).count()
    return disputes / float(max(jobs, 1))


def _earned_tier(tier, contractor_id, jobs, avg_rating):
    for from_tier, to_tier, min_jobs, min_rating in PROMOTION_RULES:
        if tier != from_tier:
            continue
        if avg_rating is None or jobs < min_jobs or avg_rating < min_rating:
            return None
        if to_tier == "premium" and _dispute_rate(contractor_id, jobs) >= PREMIUM_MAX_DISPUTE_RATE:
            return None
        return to_tier
    return None


def promote_contractors():
    """Move active contractors up a tier once their job record earns it.

    Refreshes ``total_jobs``/``avg_rating`` on every contractor inspected and
    commits per contractor.  Returns the promotions made.
    """
    import notifications

    contractors = Contractor.query.filter(
        Contractor.is_active.is_(True),
        Contractor.approval_status == "approved",
    ).order_by(Contractor.created_at).all()

    promotions = []
    for contractor in contractors:
        contractor_id = contractor.id
        try:
            jobs, avg_rating = _completed_job_stats(contractor_id)
            contractor.total_jobs = jobs
            contractor.avg_rating = round(avg_rating, 2) if avg_rating is not None else 0.0

            made = []
            tier = contractor.tier or "probation"
            new_tier = _earned_tier(tier, contractor_id, jobs, avg_rating)
            while new_tier:
                made.append({"contractor_id": contractor_id, "from": tier, "to": new_tier})
                notifications.tier_promoted(contractor, new_tier)
                tier = new_tier
                new_tier = _earned_tier(tier, contractor_id, jobs, avg_rating)
            contractor.tier = tier
            db.session.commit()
        except Exception:
            db.session.rollback()
            notifications.discard_outbox()
            logger.exception("Tier check failed for contractor %s", contractor_id)
            continue

        notifications.flush_outbox()
        for promotion in made:
            logger.info("Contractor %(contractor_id)s promoted %(from)s -> %(to)s", promotion)
        promotions.extend(made)

    return promotions
