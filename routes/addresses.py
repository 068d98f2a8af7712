"""
Customer address routes for Lawnly.
New addresses start unverified; an admin measures the lawn before the
price is final.
"""

from flask import Blueprint, request, jsonify

from models import db, Address
from auth_routes import require_auth
from errors import ValidationError
from pricing import SLOPES

addresses_bp = Blueprint("addresses", __name__, url_prefix="/api/addresses")

REQUIRED_FIELDS = ("street_address", "city", "state", "postal_code")


@addresses_bp.route("", methods=["POST"])
@require_auth
def create_address(user_id):
    """
    Add a property for the current customer.
    Body JSON: street_address, city, state, postal_code,
               square_meters (estimate, optional), slope, tier_count
    """
    data = request.get_json() or {}
    missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
    if missing:
        raise ValidationError("Missing required fields: {}".format(", ".join(missing)))

    slope = data.get("slope") or "flat"
    if slope not in SLOPES:
        raise ValidationError("slope must be one of: {}".format(", ".join(SLOPES)))
    try:
        square_meters = float(data["square_meters"]) if data.get("square_meters") else None
        tier_count = int(data.get("tier_count") or 1)
    except (TypeError, ValueError):
        raise ValidationError("square_meters and tier_count must be numbers")

    address = Address(
        user_id=user_id,
        street_address=data["street_address"].strip(),
        city=data["city"].strip(),
        state=data["state"].strip(),
        postal_code=str(data["postal_code"]).strip(),
        square_meters=square_meters,
        slope=slope,
        tier_count=max(tier_count, 1),
        verification_status="pending",
    )
    db.session.add(address)
    db.session.commit()
    return jsonify({"success": True, "address": address.to_dict()}), 201


@addresses_bp.route("", methods=["GET"])
@require_auth
def list_addresses(user_id):
    addresses = Address.query.filter_by(user_id=user_id).order_by(Address.created_at).all()
    return jsonify({"success": True, "addresses": [a.to_dict() for a in addresses]}), 200
