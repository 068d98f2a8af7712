"""
Lawnly API Route Blueprints
"""
from .addresses import addresses_bp
from .bookings import bookings_bp
from .contractor import contractor_bp
from .admin import admin_bp
from .pricing import pricing_bp

__all__ = [
    "addresses_bp",
    "bookings_bp",
    "contractor_bp",
    "admin_bp",
    "pricing_bp",
]
