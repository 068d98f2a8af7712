"""
Contractor job routes for Lawnly.
Contractors browse pending jobs in their service areas, accept them,
upload before/after photos and mark jobs complete.
"""

from flask import Blueprint, request, jsonify

from models import Booking
from auth_routes import require_auth, load_actor, require_contractor
import booking_service

contractor_bp = Blueprint("contractor", __name__, url_prefix="/api/contractor")


@contractor_bp.route("/jobs/available", methods=["GET"])
@require_auth
def available_jobs(user_id):
    actor = load_actor(user_id)
    bookings = booking_service.list_available_bookings(actor)
    return jsonify({"success": True, "jobs": [b.to_dict() for b in bookings]}), 200


@contractor_bp.route("/jobs", methods=["GET"])
@require_auth
def my_jobs(user_id):
    """Jobs assigned to the current contractor, optionally filtered by status."""
    actor = load_actor(user_id)
    require_contractor(actor)
    query = Booking.query.filter_by(contractor_id=actor.contractor_id)
    status = request.args.get("status")
    if status:
        query = query.filter_by(status=status)
    jobs = query.order_by(Booking.scheduled_date).all()
    return jsonify({"success": True, "jobs": [b.to_dict() for b in jobs]}), 200


@contractor_bp.route("/jobs/<booking_id>/accept", methods=["POST"])
@require_auth
def accept_job(user_id, booking_id):
    actor = load_actor(user_id)
    booking = booking_service.accept_booking(booking_id, actor)
    return jsonify({
        "success": True,
        "booking_id": booking.id,
        "status": booking.status,
        "payment_status": booking.payment_status,
    }), 200


@contractor_bp.route("/jobs/<booking_id>/alternatives", methods=["POST"])
@require_auth
def suggest_alternative(user_id, booking_id):
    """
    Offer a different time for a pending job.
    Body JSON: suggested_date (YYYY-MM-DD), suggested_time_slot
    """
    actor = load_actor(user_id)
    suggestion = booking_service.suggest_alternative(booking_id, actor, request.get_json() or {})
    return jsonify({"success": True, "suggestion": suggestion.to_dict()}), 201


@contractor_bp.route("/jobs/<booking_id>/photos", methods=["POST"])
@require_auth
def record_photo(user_id, booking_id):
    """
    Register an uploaded job photo.
    Body JSON: photo_type ("before" | "after"), storage_path
    """
    data = request.get_json() or {}
    actor = load_actor(user_id)
    photo = booking_service.record_photo(booking_id, actor, data.get("photo_type"),
                                         data.get("storage_path"))
    booking = photo.booking
    return jsonify({
        "success": True,
        "photo": photo.to_dict(),
        "photo_counts": booking_service.photo_counts(booking),
    }), 201


@contractor_bp.route("/jobs/<booking_id>/complete", methods=["POST"])
@require_auth
def complete_job(user_id, booking_id):
    actor = load_actor(user_id)
    booking = booking_service.complete_job(booking_id, actor)
    return jsonify({
        "success": True,
        "booking_id": booking.id,
        "status": booking.status,
        "completed_at": booking.completed_at.isoformat(),
    }), 200
