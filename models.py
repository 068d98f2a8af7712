"""
Lawnly SQLAlchemy Models
All database entities for the lawn-care escrow marketplace.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, String, Float, Boolean, Integer, Text, Date, DateTime, ForeignKey, JSON,
    CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    """Naive UTC timestamp; every DateTime column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------
class User(db.Model):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=True, index=True)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="customer")
    stripe_customer_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="active")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    contractor_profile = relationship("Contractor", back_populates="user", uselist=False, lazy="joined")
    notifications = relationship("Notification", back_populates="user", lazy="dynamic")

    __table_args__ = (
        CheckConstraint(
            "role IN ('customer', 'contractor', 'admin')",
            name="ck_user_role",
        ),
    )

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self, include_private=False):
        data = {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }
        if include_private:
            data["stripe_customer_id"] = self.stripe_customer_id
        return data


# ---------------------------------------------------------------------------
# Contractor
# ---------------------------------------------------------------------------
class Contractor(db.Model):
    __tablename__ = "contractors"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    business_name = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True)
    approval_status = Column(String(20), default="pending")  # pending, approved, rejected
    service_areas = Column(JSON, nullable=True, default=list)  # postal codes
    tier = Column(String(20), default="probation")  # probation, standard, premium
    stripe_account_id = Column(String(255), nullable=True)
    avg_rating = Column(Float, default=0.0)
    total_jobs = Column(Integer, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="contractor_profile")
    bookings = relationship("Booking", back_populates="contractor", lazy="dynamic",
                            foreign_keys="Booking.contractor_id")

    def serves_postal_code(self, postal_code):
        return bool(postal_code) and postal_code in (self.service_areas or [])

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.user.name if self.user else None,
            "business_name": self.business_name,
            "is_active": self.is_active,
            "approval_status": self.approval_status,
            "service_areas": self.service_areas or [],
            "tier": self.tier or "probation",
            "avg_rating": self.avg_rating,
            "total_jobs": self.total_jobs,
        }


# ---------------------------------------------------------------------------
# Address
# ---------------------------------------------------------------------------
class Address(db.Model):
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    street_address = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(50), nullable=False)
    postal_code = Column(String(10), nullable=False, index=True)

    verification_status = Column(String(20), nullable=False, default="pending")
    square_meters = Column(Float, nullable=True)
    slope = Column(String(10), nullable=False, default="flat")  # flat, mild, steep
    tier_count = Column(Integer, nullable=False, default=1)
    admin_notes = Column(Text, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    verified_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "verification_status IN ('pending', 'verified', 'rejected')",
            name="ck_address_verification_status",
        ),
    )

    @property
    def is_verified(self):
        return self.verification_status == "verified"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "street_address": self.street_address,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "verification_status": self.verification_status,
            "square_meters": self.square_meters,
            "slope": self.slope,
            "tier_count": self.tier_count,
            "verified_at": _iso(self.verified_at),
        }


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------
class Booking(db.Model):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    address_id = Column(String(36), ForeignKey("addresses.id"), nullable=False, index=True)
    contractor_id = Column(String(36), ForeignKey("contractors.id", ondelete="SET NULL"), nullable=True, index=True)
    preferred_contractor_id = Column(String(36), ForeignKey("contractors.id", ondelete="SET NULL"), nullable=True)

    scheduled_date = Column(Date, nullable=False)
    time_slot = Column(String(30), nullable=False)
    grass_length = Column(String(20), nullable=False, default="short")
    clippings_removal = Column(Boolean, default=False)
    notes = Column(Text, nullable=True)

    original_price = Column(Float, nullable=True)
    total_price = Column(Float, nullable=True)
    quote_breakdown = Column(JSON, nullable=True)
    payment_status = Column(String(20), nullable=False, default="unpaid")
    payout_status = Column(String(20), nullable=False, default="pending")
    payment_method_id = Column(String(255), nullable=True)
    payment_intent_id = Column(String(255), nullable=True)
    refunded_amount = Column(Float, default=0.0)

    status = Column(String(40), nullable=False, default="pending", index=True)
    contractor_accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    payout_released_at = Column(DateTime, nullable=True)
    price_change_notified_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    customer_rating = Column(Integer, nullable=True)
    rating_comment = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    customer = relationship("User", foreign_keys=[user_id])
    address = relationship("Address", lazy="joined")
    contractor = relationship("Contractor", back_populates="bookings", foreign_keys=[contractor_id])
    photos = relationship("JobPhoto", back_populates="booking", lazy="dynamic", cascade="all, delete-orphan")
    disputes = relationship("Dispute", back_populates="booking", lazy="dynamic",
                            order_by="Dispute.created_at")
    suggestions = relationship("AlternativeSuggestion", back_populates="booking", lazy="dynamic")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('unpaid', 'pending', 'paid')",
            name="ck_booking_payment_status",
        ),
        CheckConstraint(
            "payout_status IN ('pending', 'released', 'frozen')",
            name="ck_booking_payout_status",
        ),
        CheckConstraint(
            "customer_rating IS NULL OR (customer_rating >= 1 AND customer_rating <= 5)",
            name="ck_booking_customer_rating",
        ),
        Index("ix_bookings_status_completed_at", "status", "completed_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "address_id": self.address_id,
            "address": self.address.to_dict() if self.address else None,
            "contractor_id": self.contractor_id,
            "preferred_contractor_id": self.preferred_contractor_id,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "time_slot": self.time_slot,
            "grass_length": self.grass_length,
            "clippings_removal": bool(self.clippings_removal),
            "notes": self.notes,
            "original_price": self.original_price,
            "total_price": self.total_price,
            "quote_breakdown": self.quote_breakdown,
            "payment_status": self.payment_status,
            "payout_status": self.payout_status,
            "refunded_amount": self.refunded_amount or 0.0,
            "status": self.status,
            "contractor_accepted_at": _iso(self.contractor_accepted_at),
            "completed_at": _iso(self.completed_at),
            "payout_released_at": _iso(self.payout_released_at),
            "price_change_notified_at": _iso(self.price_change_notified_at),
            "cancelled_at": _iso(self.cancelled_at),
            "customer_rating": self.customer_rating,
            "rating_comment": self.rating_comment,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ---------------------------------------------------------------------------
# AlternativeSuggestion
# ---------------------------------------------------------------------------
class AlternativeSuggestion(db.Model):
    __tablename__ = "alternative_suggestions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    contractor_id = Column(String(36), ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False)
    suggested_date = Column(Date, nullable=False)
    suggested_time_slot = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, accepted, rejected
    responded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="suggestions")
    contractor = relationship("Contractor")

    __table_args__ = (
        UniqueConstraint(
            "booking_id", "contractor_id", "suggested_date", "suggested_time_slot",
            name="uq_suggestion_booking_contractor_slot",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "contractor_id": self.contractor_id,
            "suggested_date": self.suggested_date.isoformat() if self.suggested_date else None,
            "suggested_time_slot": self.suggested_time_slot,
            "status": self.status,
            "responded_at": _iso(self.responded_at),
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# JobPhoto
# ---------------------------------------------------------------------------
class JobPhoto(db.Model):
    __tablename__ = "job_photos"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    contractor_id = Column(String(36), ForeignKey("contractors.id", ondelete="CASCADE"), nullable=False)
    photo_type = Column(String(10), nullable=False)  # before, after
    storage_path = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="photos")

    __table_args__ = (
        CheckConstraint("photo_type IN ('before', 'after')", name="ck_job_photo_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "contractor_id": self.contractor_id,
            "photo_type": self.photo_type,
            "storage_path": self.storage_path,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# Dispute
# ---------------------------------------------------------------------------
class Dispute(db.Model):
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    raised_by = Column(String(20), nullable=False, default="customer")
    reason = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    photo_paths = Column(JSON, nullable=True, default=list)
    suggested_refund_amount = Column(Float, nullable=True)
    is_post_payment = Column(Boolean, default=False)

    status = Column(String(20), nullable=False, default="open")  # open, resolved
    resolution = Column(String(20), nullable=True)  # full_refund, partial_refund, no_refund
    refund_percentage = Column(Float, nullable=True)
    refund_amount = Column(Float, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="disputes")

    __table_args__ = (
        CheckConstraint(
            "resolution IS NULL OR resolution IN ('full_refund', 'partial_refund', 'no_refund')",
            name="ck_dispute_resolution",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "raised_by": self.raised_by,
            "reason": self.reason,
            "description": self.description,
            "photo_paths": self.photo_paths or [],
            "suggested_refund_amount": self.suggested_refund_amount,
            "is_post_payment": bool(self.is_post_payment),
            "status": self.status,
            "resolution": self.resolution,
            "refund_percentage": self.refund_percentage,
            "refund_amount": self.refund_amount,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# LedgerEntry  (one row per logical fund movement)
# ---------------------------------------------------------------------------
class LedgerEntry(db.Model):
    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    operation = Column(String(20), nullable=False)  # charge, release, refund, platform_refund
    reference = Column(String(64), nullable=False, default="")
    amount = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default="pending")  # pending, succeeded, failed
    processor_id = Column(String(255), nullable=True)
    attempts = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("booking_id", "operation", "reference", name="uq_ledger_operation"),
    )

    @property
    def idempotency_key(self):
        return "lawnly-{}-{}-{}".format(self.booking_id, self.operation, self.reference or "0")

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "operation": self.operation,
            "reference": self.reference,
            "amount": self.amount,
            "status": self.status,
            "processor_id": self.processor_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# ScheduledTask  (durable deadline owned by the server)
# ---------------------------------------------------------------------------
class ScheduledTask(db.Model):
    __tablename__ = "scheduled_tasks"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String(30), nullable=False)  # auto_release, price_change_expiry
    due_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default="armed")  # armed, fired, cancelled
    fired_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_scheduled_tasks_due", "status", "due_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "kind": self.kind,
            "due_at": _iso(self.due_at),
            "status": self.status,
            "fired_at": _iso(self.fired_at),
            "cancelled_at": _iso(self.cancelled_at),
        }


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------
class Notification(db.Model):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="notifications")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "booking_id": self.booking_id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": self.data or {},
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# PricingConfig  (key/value pricing settings)
# ---------------------------------------------------------------------------
class PricingConfig(db.Model):
    __tablename__ = "pricing_config"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": _iso(self.updated_at),
        }
