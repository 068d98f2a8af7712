"""
Customer booking routes for Lawnly.
One endpoint per lifecycle command; the commands live in booking_service
and disputes, which raise BookingError subclasses rendered by server.py.
"""

from flask import Blueprint, request, jsonify

from models import Booking, Notification
from auth_routes import require_auth, load_actor
from extensions import limiter
import booking_service
import disputes
import ledger

bookings_bp = Blueprint("bookings", __name__, url_prefix="/api/bookings")


def _status(booking, code=200, **extra):
    payload = {"success": True, "booking_id": booking.id, "status": booking.status}
    payload.update(extra)
    return jsonify(payload), code


@bookings_bp.route("", methods=["POST"])
@limiter.limit("10 per minute")
@require_auth
def create_booking(user_id):
    """
    Book a mow.
    Body JSON: address_id, scheduled_date (YYYY-MM-DD), time_slot,
               grass_length, clippings_removal, notes,
               preferred_contractor_id, payment_method_id
    """
    actor = load_actor(user_id)
    booking = booking_service.create_booking(actor, request.get_json() or {})
    return jsonify({
        "success": True,
        "booking": booking.to_dict(),
        "is_preliminary": booking.status == "pending_address_verification",
    }), 201


@bookings_bp.route("", methods=["GET"])
@require_auth
def list_my_bookings(user_id):
    status = request.args.get("status")
    query = Booking.query.filter_by(user_id=user_id)
    if status:
        query = query.filter_by(status=status)
    bookings = query.order_by(Booking.scheduled_date.desc()).all()
    return jsonify({"success": True, "bookings": [b.to_dict() for b in bookings]}), 200


@bookings_bp.route("/setup-intent", methods=["POST"])
@require_auth
def create_setup_intent(user_id):
    """Start saving a card for off-session charges when a contractor accepts."""
    actor = load_actor(user_id)
    return jsonify({"success": True, **ledger.create_setup_intent(actor.user)}), 200


@bookings_bp.route("/<booking_id>", methods=["GET"])
@require_auth
def get_booking(user_id, booking_id):
    actor = load_actor(user_id)
    return jsonify({"success": True, "booking": booking_service.get_booking(booking_id, actor)}), 200


@bookings_bp.route("/<booking_id>/payment-method", methods=["POST"])
@require_auth
def save_payment_method(user_id, booking_id):
    data = request.get_json() or {}
    actor = load_actor(user_id)
    booking = booking_service.save_payment_method(booking_id, actor, data.get("payment_method_id"))
    return _status(booking, payment_status=booking.payment_status)


@bookings_bp.route("/<booking_id>/cancel", methods=["POST"])
@require_auth
def cancel_booking(user_id, booking_id):
    data = request.get_json(silent=True) or {}
    actor = load_actor(user_id)
    return _status(booking_service.cancel_booking(booking_id, actor, reason=data.get("reason")))


@bookings_bp.route("/<booking_id>/price-change/approve", methods=["POST"])
@require_auth
def approve_price_change(user_id, booking_id):
    actor = load_actor(user_id)
    booking = booking_service.approve_price_change(booking_id, actor)
    return _status(booking, total_price=booking.total_price, payment_status=booking.payment_status)


@bookings_bp.route("/<booking_id>/price-change/reject", methods=["POST"])
@require_auth
def reject_price_change(user_id, booking_id):
    actor = load_actor(user_id)
    return _status(booking_service.reject_price_change(booking_id, actor))


@bookings_bp.route("/<booking_id>/approve", methods=["POST"])
@require_auth
def approve_job(user_id, booking_id):
    """
    Approve completed work and release the contractor's payout.
    Body JSON: rating (1-5, optional), comment (optional)
    """
    data = request.get_json(silent=True) or {}
    actor = load_actor(user_id)
    booking = booking_service.approve_job(booking_id, actor, rating=data.get("rating"),
                                          comment=data.get("comment"))
    return _status(booking, payout_status=booking.payout_status)


@bookings_bp.route("/<booking_id>/dispute", methods=["POST"])
@limiter.limit("5 per minute")
@require_auth
def raise_dispute(user_id, booking_id):
    """
    Report a problem with a completed job.
    Body JSON: reason, description (20+ chars), suggested_refund_amount,
               photo_paths
    """
    actor = load_actor(user_id)
    dispute = disputes.raise_dispute(booking_id, actor, request.get_json() or {})
    return jsonify({
        "success": True,
        "dispute": dispute.to_dict(),
        "status": dispute.booking.status,
        "payout_status": dispute.booking.payout_status,
    }), 201


@bookings_bp.route("/<booking_id>/alternatives/<suggestion_id>/accept", methods=["POST"])
@require_auth
def accept_alternative(user_id, booking_id, suggestion_id):
    actor = load_actor(user_id)
    booking = booking_service.accept_alternative(booking_id, suggestion_id, actor)
    return _status(booking, scheduled_date=booking.scheduled_date.isoformat(),
                   time_slot=booking.time_slot, contractor_id=booking.contractor_id)


@bookings_bp.route("/<booking_id>/alternatives/<suggestion_id>/decline", methods=["POST"])
@require_auth
def decline_alternative(user_id, booking_id, suggestion_id):
    actor = load_actor(user_id)
    suggestion = booking_service.decline_alternative(booking_id, suggestion_id, actor)
    return jsonify({"success": True, "suggestion": suggestion.to_dict()}), 200


@bookings_bp.route("/notifications", methods=["GET"])
@require_auth
def list_notifications(user_id):
    notifications = (
        Notification.query.filter_by(user_id=user_id)
        .order_by(Notification.created_at.desc())
        .limit(50)
        .all()
    )
    return jsonify({"success": True, "notifications": [n.to_dict() for n in notifications]}), 200
