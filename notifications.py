"""
Notification services for Lawnly.

In-app: ``Notification`` rows, added to the session of the transition that
caused them so they commit (or roll back) with it.
Email: Resend.  Emails are collected in a per-app-context outbox while the
transition runs and only sent by ``flush_outbox`` once it has committed.

IMPORTANT: No function in this module should ever raise an exception for a
delivery problem.  Those are caught and logged so that a notification failure
never takes down a booking or payment flow.  Database errors are the
exception: they belong to the caller's transaction and are re-raised.

Email sending is performed asynchronously via a background thread so that
HTTP request handlers are never blocked by network I/O to the email provider.
"""

import logging
import threading

from flask import current_app, g
from sqlalchemy.exc import SQLAlchemyError

from models import db, Notification, User
from email_templates import (
    booking_update_html,
    price_change_html,
    job_completed_html,
    payout_released_html,
    dispute_opened_html,
    dispute_resolved_html,
    tier_promoted_html,
    TIER_TITLES,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Email: Resend
# ---------------------------------------------------------------------------

def _send_email_sync(to_email, subject, html_content, api_key, sender):
    """Send one email via Resend. Returns the response id, or None in dev mode. Never raises."""
    try:
        if not api_key:
            logger.info("[DEV] Email to %s: %s", to_email, subject)
            return None

        import resend
        resend.api_key = api_key
        params = {
            "from": sender,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        response = resend.Emails.send(params)
        logger.info("Email sent via Resend to %s (id: %s)", to_email, response.get("id"))
        return response.get("id")
    except Exception:
        logger.exception("Resend email failed for %s", to_email)
        return None


def send_email(to_email, subject, html_content):
    """Send an email asynchronously in a background thread. Never raises."""
    try:
        config = current_app.config
        sender = "{} <{}>".format(config.get("EMAIL_FROM_NAME", "Lawnly"), config.get("EMAIL_FROM"))
        thread = threading.Thread(
            target=_send_email_sync,
            args=(to_email, subject, html_content, config.get("RESEND_API_KEY", ""), sender),
            daemon=True,
        )
        thread.start()
        logger.debug("Email queued (async) to %s: %s", to_email, subject)
    except Exception:
        logger.exception("Failed to queue async email to %s", to_email)


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------

def _outbox():
    if "notification_outbox" not in g:
        g.notification_outbox = []
    return g.notification_outbox


def flush_outbox():
    """Send every email queued by the transition that just committed. Never raises."""
    try:
        pending = list(_outbox())
        g.notification_outbox = []
        for to_email, subject, html in pending:
            send_email(to_email, subject, html)
        return len(pending)
    except Exception:
        logger.exception("Failed to flush notification outbox")
        return 0


def discard_outbox():
    try:
        g.notification_outbox = []
    except Exception:
        logger.exception("Failed to discard notification outbox")


def _booking_url(booking):
    return "{}/bookings/{}".format(current_app.config.get("FRONTEND_URL", "").rstrip("/"), booking.id)


def _notify(user_id, booking, type_, title, body, data=None, email=None):
    """Stage an in-app notification and, optionally, an email.

    The recipient lookup must not autoflush the caller's pending changes; a
    failed flush would be hidden here and leave the session unusable.
    """
    try:
        if not user_id:
            return None
        notification = Notification(
            user_id=user_id,
            booking_id=booking.id if booking is not None else None,
            type=type_,
            title=title,
            body=body,
            data=data or {},
        )
        db.session.add(notification)
        if email is not None:
            with db.session.no_autoflush:
                user = db.session.get(User, user_id)
            if user is not None and user.email:
                subject, html = email
                _outbox().append((user.email, subject, html))
        return notification
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed to stage %s notification for user %s", type_, user_id)
        return None


def _customer_name(booking):
    return booking.customer.name if booking.customer else None


def _contractor_user_id(booking):
    return booking.contractor.user_id if booking.contractor else None


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------

def booking_status_changed(booking, title, message, type_="booking_update"):
    """Tell the customer about a status change. Never raises."""
    try:
        html = booking_update_html(_customer_name(booking), title, message, booking.id,
                                   url=_booking_url(booking),
                                   rows=[("Status", booking.status.replace("_", " "))])
        return _notify(booking.user_id, booking, type_, title, message,
                       data={"status": booking.status}, email=(title, html))
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in booking_status_changed for booking %s", booking.id)
        return None


def price_change_pending(booking, approve_by):
    try:
        title = "Your lawn quote has changed"
        message = "New price ${:.2f} (was ${:.2f}). Approve by {}.".format(
            booking.total_price or 0, booking.original_price or 0, approve_by.strftime("%d %b %Y"))
        html = price_change_html(_customer_name(booking), booking.id, booking.original_price,
                                 booking.total_price, approve_by.strftime("%d %b %Y"),
                                 _booking_url(booking))
        return _notify(booking.user_id, booking, "price_change_pending", title, message,
                       data={"original_price": booking.original_price, "new_price": booking.total_price},
                       email=(title, html))
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in price_change_pending for booking %s", booking.id)
        return None


def booking_confirmed(booking):
    try:
        name = booking.contractor.business_name or (
            booking.contractor.user.name if booking.contractor.user else None)
        message = "{} will mow your lawn on {} ({}).".format(
            name or "A contractor", booking.scheduled_date.isoformat(), booking.time_slot)
        return booking_status_changed(booking, "Booking confirmed", message, type_="booking_confirmed")
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in booking_confirmed for booking %s", booking.id)
        return None


def alternative_suggested(booking, suggestion):
    try:
        message = "A contractor can do {} ({}) instead.".format(
            suggestion.suggested_date.isoformat(), suggestion.suggested_time_slot)
        return _notify(booking.user_id, booking, "alternative_suggested", "New time suggested", message,
                       data={"suggestion_id": suggestion.id})
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in alternative_suggested for booking %s", booking.id)
        return None


def job_completed(booking):
    try:
        hours = current_app.config.get("REVIEW_WINDOW_HOURS", 48)
        title = "Your lawn is done - please review"
        message = "Approve the job or raise an issue within {} hours.".format(hours)
        html = job_completed_html(_customer_name(booking), booking.id, booking.total_price,
                                  hours, _booking_url(booking))
        return _notify(booking.user_id, booking, "job_completed", title, message, email=(title, html))
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in job_completed for booking %s", booking.id)
        return None


def payout_released(booking, amount, automatic=False):
    """Tell the contractor; on auto-release also remind the customer of the dispute window."""
    try:
        contractor_user_id = _contractor_user_id(booking)
        if contractor_user_id:
            name = booking.contractor.user.name if booking.contractor.user else None
            html = payout_released_html(name, booking.id, amount, automatic)
            _notify(contractor_user_id, booking, "payout_released", "Payout released",
                    "${:.2f} is on its way.".format(amount or 0),
                    data={"amount": amount, "automatic": automatic},
                    email=("Payout released", html))
        if automatic:
            days = current_app.config.get("DISPUTE_WINDOW_DAYS", 7)
            booking_status_changed(
                booking, "Job approved automatically",
                "The review window closed, so payment was released to your contractor. "
                "You can still report a problem within {} days of completion.".format(days),
                type_="auto_released",
            )
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in payout_released for booking %s", booking.id)


def dispute_opened(booking, dispute):
    try:
        contractor_user_id = _contractor_user_id(booking)
        if contractor_user_id:
            name = booking.contractor.user.name if booking.contractor.user else None
            html = dispute_opened_html(name, booking.id, dispute.reason, dispute.is_post_payment)
            _notify(contractor_user_id, booking, "dispute_opened", "A customer raised an issue",
                    dispute.reason, data={"dispute_id": dispute.id},
                    email=("A customer raised an issue", html))
        with db.session.no_autoflush:
            admins = User.query.filter_by(role="admin").all()
        for admin in admins:
            _notify(admin.id, booking, "dispute_opened", "New dispute", dispute.reason,
                    data={"dispute_id": dispute.id, "post_payment": bool(dispute.is_post_payment)})
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in dispute_opened for booking %s", booking.id)


def dispute_resolved(booking, dispute):
    try:
        refund = dispute.refund_amount or 0
        recipients = [(booking.user_id, _customer_name(booking))]
        if booking.contractor is not None:
            recipients.append((booking.contractor.user_id,
                               booking.contractor.user.name if booking.contractor.user else None))
        for user_id, name in recipients:
            html = dispute_resolved_html(name, booking.id, dispute.resolution, refund)
            _notify(user_id, booking, "dispute_resolved", "Dispute resolved",
                    "Outcome: {} (refund ${:.2f}).".format(dispute.resolution.replace("_", " "), refund),
                    data={"dispute_id": dispute.id, "resolution": dispute.resolution},
                    email=("Dispute resolved", html))
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in dispute_resolved for booking %s", booking.id)


def tier_promoted(contractor, tier):
    try:
        title = "Promoted to {}".format(TIER_TITLES.get(tier, tier.capitalize()))
        name = contractor.user.name if contractor.user else None
        html = tier_promoted_html(name, tier)
        return _notify(contractor.user_id, None, "tier_promoted", title,
                       "Congratulations! You are now a {}.".format(TIER_TITLES.get(tier, tier)),
                       data={"tier": tier}, email=(title, html))
    except SQLAlchemyError:
        raise
    except Exception:
        logger.exception("Failed in tier_promoted for contractor %s", contractor.id)
        return None
