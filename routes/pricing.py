"""
Pricing API routes for Lawnly.
Quotes are preliminary until an admin has verified the address.
"""

from flask import Blueprint, request, jsonify, current_app

from models import db, Address
from auth_routes import require_auth
from errors import NotFound, ValidationError
import pricing

pricing_bp = Blueprint("pricing", __name__, url_prefix="/api/pricing")


@pricing_bp.route("/quote", methods=["POST"])
@require_auth
def get_quote(user_id):
    """
    Price a mow at one of the customer's addresses.

    Body JSON:
        address_id: str
        scheduled_date: str (YYYY-MM-DD)
        grass_length: short | medium | long | very_long
        clippings_removal: bool
    """
    data = request.get_json() or {}
    address_id = data.get("address_id")
    scheduled_date = data.get("scheduled_date")
    if not address_id or not scheduled_date:
        raise ValidationError("Missing required fields: address_id, scheduled_date")

    address = db.session.get(Address, address_id)
    if address is None or address.user_id != user_id:
        raise NotFound("Address not found")

    try:
        breakdown = pricing.quote(
            address,
            scheduled_date,
            data.get("grass_length") or "short",
            bool(data.get("clippings_removal", False)),
            gst_rate=current_app.config.get("GST_RATE", pricing.DEFAULT_GST_RATE),
        )
    except pricing.QuoteUnavailable as e:
        raise ValidationError(str(e))
    except ValueError:
        raise ValidationError("scheduled_date must be an ISO date (YYYY-MM-DD)")

    return jsonify({
        "success": True,
        "quote": breakdown,
        "is_preliminary": breakdown["is_preliminary"],
    }), 200
