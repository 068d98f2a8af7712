"""
Admin API routes for Lawnly.
Protected by role-based access (admin only).
"""

from flask import Blueprint, request, jsonify
from functools import wraps

from models import db, User, Address, LedgerEntry, ScheduledTask
from auth_routes import require_auth, load_actor
import booking_service
import deadlines
import disputes

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def require_admin(f):
    """Wrap require_auth and additionally check that the user has admin role."""
    @wraps(f)
    @require_auth
    def wrapper(user_id, *args, **kwargs):
        user = db.session.get(User, user_id)
        if not user or user.role != "admin":
            return jsonify({"error": "Admin access required"}), 403
        return f(user_id=user_id, *args, **kwargs)
    return wrapper


@admin_bp.route("/addresses", methods=["GET"])
@require_admin
def list_addresses(user_id):
    """Addresses awaiting verification (or filter with ?status=)."""
    status = request.args.get("status", "pending")
    addresses = Address.query.filter_by(verification_status=status).order_by(Address.created_at).all()
    return jsonify({"success": True, "addresses": [a.to_dict() for a in addresses]}), 200


@admin_bp.route("/addresses/<address_id>/verify", methods=["POST"])
@require_admin
def verify_address(user_id, address_id):
    """
    Record the measured lawn and re-quote waiting bookings.
    Body JSON: square_meters, slope, tier_count, admin_notes
    """
    actor = load_actor(user_id)
    address, bookings = booking_service.verify_address(address_id, actor, request.get_json() or {})
    return jsonify({
        "success": True,
        "address": address.to_dict(),
        "bookings": [
            {"id": b.id, "status": b.status, "original_price": b.original_price,
             "total_price": b.total_price}
            for b in bookings
        ],
    }), 200


@admin_bp.route("/addresses/<address_id>/reject", methods=["POST"])
@require_admin
def reject_address(user_id, address_id):
    data = request.get_json(silent=True) or {}
    actor = load_actor(user_id)
    address, cancelled = booking_service.reject_address(address_id, actor, notes=data.get("notes"))
    return jsonify({
        "success": True,
        "address": address.to_dict(),
        "cancelled_booking_ids": [b.id for b in cancelled],
    }), 200


@admin_bp.route("/disputes", methods=["GET"])
@require_admin
def list_disputes(user_id):
    actor = load_actor(user_id)
    items = disputes.list_disputes(actor, status=request.args.get("status"))
    return jsonify({
        "success": True,
        "disputes": [
            dict(d.to_dict(), booking_status=d.booking.status, total_price=d.booking.total_price)
            for d in items
        ],
    }), 200


@admin_bp.route("/disputes/<dispute_id>/resolve", methods=["POST"])
@require_admin
def resolve_dispute(user_id, dispute_id):
    """
    Resolve an open dispute.
    Body JSON: resolution (full_refund | partial_refund | no_refund),
               refund_percentage (0-100, partial only; default 50)
    """
    actor = load_actor(user_id)
    dispute = disputes.resolve_dispute(dispute_id, actor, request.get_json() or {})
    booking = dispute.booking
    return jsonify({
        "success": True,
        "dispute": dispute.to_dict(),
        "status": booking.status,
        "payout_status": booking.payout_status,
        "refunded_amount": booking.refunded_amount,
    }), 200


@admin_bp.route("/scheduler/run", methods=["POST"])
@require_admin
def run_scheduler(user_id):
    """Fire due deadlines and retry failed ledger movements now."""
    results = deadlines.run_due_tasks()
    results["ledger_retried"] = deadlines.retry_failed_movements()
    return jsonify({"success": True, "results": results}), 200


@admin_bp.route("/contractors/promote", methods=["POST"])
@require_admin
def promote_contractors(user_id):
    """Run the contractor tier review now."""
    promotions = deadlines.promote_contractors()
    return jsonify({"success": True, "promotions": promotions}), 200


@admin_bp.route("/scheduler/tasks", methods=["GET"])
@require_admin
def list_tasks(user_id):
    status = request.args.get("status", "armed")
    tasks = ScheduledTask.query.filter_by(status=status).order_by(ScheduledTask.due_at).limit(200).all()
    return jsonify({"success": True, "tasks": [t.to_dict() for t in tasks]}), 200


@admin_bp.route("/ledger/<booking_id>", methods=["GET"])
@require_admin
def booking_ledger(user_id, booking_id):
    entries = LedgerEntry.query.filter_by(booking_id=booking_id).order_by(LedgerEntry.created_at).all()
    return jsonify({"success": True, "entries": [e.to_dict() for e in entries]}), 200
