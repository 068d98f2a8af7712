"""
Booking lifecycle: statuses, events and the transition table.

``TRANSITIONS`` is the single source of truth for which event may move a
booking out of which status, who may trigger it and where it can land.
booking_service and disputes look events up here before touching a row.
"""

from collections import namedtuple

from errors import InvalidTransition, Unauthorized

# Statuses
PENDING_ADDRESS_VERIFICATION = "pending_address_verification"
PRICE_CHANGE_PENDING = "price_change_pending"
PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED_PENDING_VERIFICATION = "completed_pending_verification"
COMPLETED = "completed"
DISPUTED = "disputed"
POST_PAYMENT_DISPUTE = "post_payment_dispute"
COMPLETED_WITH_ISSUES = "completed_with_issues"
CANCELLED = "cancelled"

ALL_STATUSES = (
    PENDING_ADDRESS_VERIFICATION,
    PRICE_CHANGE_PENDING,
    PENDING,
    CONFIRMED,
    COMPLETED_PENDING_VERIFICATION,
    COMPLETED,
    DISPUTED,
    POST_PAYMENT_DISPUTE,
    COMPLETED_WITH_ISSUES,
    CANCELLED,
)

# A contractor is assigned exactly while the booking is in one of these
ASSIGNED_STATUSES = frozenset({
    CONFIRMED,
    COMPLETED_PENDING_VERIFICATION,
    COMPLETED,
    DISPUTED,
    POST_PAYMENT_DISPUTE,
    COMPLETED_WITH_ISSUES,
})

# payout_status == released only ever alongside these
RELEASED_STATUSES = frozenset({COMPLETED, POST_PAYMENT_DISPUTE, COMPLETED_WITH_ISSUES})

TERMINAL_STATUSES = frozenset({CANCELLED, COMPLETED_WITH_ISSUES})

# Actors
CUSTOMER = "customer"
CONTRACTOR = "contractor"
ADMIN = "admin"
SCHEDULER = "scheduler"

Transition = namedtuple("Transition", ["event", "sources", "targets", "actors"])

_TABLE = [
    Transition("verify_address", {PENDING_ADDRESS_VERIFICATION}, {PENDING, PRICE_CHANGE_PENDING}, {ADMIN}),
    Transition("reject_address", {PENDING_ADDRESS_VERIFICATION}, {CANCELLED}, {ADMIN}),
    Transition("approve_price_change", {PRICE_CHANGE_PENDING}, {PENDING}, {CUSTOMER}),
    Transition("reject_price_change", {PRICE_CHANGE_PENDING}, {CANCELLED}, {CUSTOMER}),
    Transition("expire_price_change", {PRICE_CHANGE_PENDING}, {CANCELLED}, {SCHEDULER}),
    Transition("accept", {PENDING}, {CONFIRMED}, {CONTRACTOR}),
    Transition("suggest_alternative", {PENDING}, {PENDING}, {CONTRACTOR}),
    Transition("accept_alternative", {PENDING}, {CONFIRMED}, {CUSTOMER}),
    Transition("decline_alternative", {PENDING}, {PENDING}, {CUSTOMER}),
    Transition("cancel", {PENDING_ADDRESS_VERIFICATION, PENDING, CONFIRMED}, {CANCELLED}, {CUSTOMER}),
    Transition("record_photo", {CONFIRMED}, {CONFIRMED}, {CONTRACTOR}),
    Transition("complete", {CONFIRMED}, {COMPLETED_PENDING_VERIFICATION}, {CONTRACTOR}),
    Transition("approve", {COMPLETED_PENDING_VERIFICATION}, {COMPLETED}, {CUSTOMER}),
    Transition("auto_release", {COMPLETED_PENDING_VERIFICATION}, {COMPLETED}, {SCHEDULER}),
    Transition("dispute", {COMPLETED_PENDING_VERIFICATION}, {DISPUTED}, {CUSTOMER}),
    Transition("post_payment_dispute", {COMPLETED}, {POST_PAYMENT_DISPUTE}, {CUSTOMER}),
    Transition("resolve_dispute", {DISPUTED},
               {COMPLETED, COMPLETED_WITH_ISSUES, CANCELLED}, {ADMIN}),
    Transition("resolve_post_payment_dispute", {POST_PAYMENT_DISPUTE},
               {COMPLETED, COMPLETED_WITH_ISSUES}, {ADMIN}),
]

TRANSITIONS = {t.event: t for t in _TABLE}


def allowed_events(status):
    """Events that may fire from *status*."""
    return sorted(t.event for t in _TABLE if status in t.sources)


def check_transition(booking, event, actor_kind, target=None):
    """Raise unless *event* by *actor_kind* is legal for the booking's status.

    Returns the Transition so callers can read its targets.
    """
    transition = TRANSITIONS.get(event)
    if transition is None:
        raise InvalidTransition("Unknown booking event: {}".format(event))
    if actor_kind not in transition.actors:
        raise Unauthorized("A {} cannot {} a booking".format(actor_kind, event.replace("_", " ")))
    if booking.status not in transition.sources:
        raise InvalidTransition(
            "Cannot {} a booking that is {}".format(event.replace("_", " "), booking.status),
            status=booking.status,
        )
    if target is not None and target not in transition.targets:
        raise InvalidTransition("{} cannot move a booking to {}".format(event, target))
    return transition


def assert_invariants(booking):
    """Raise InvalidTransition if the booking is about to be saved inconsistent."""
    has_contractor = booking.contractor_id is not None
    if booking.status in ASSIGNED_STATUSES and not has_contractor:
        raise InvalidTransition("{} booking must have a contractor".format(booking.status))
    # cancelled after a full-refund dispute keeps its contractor for audit
    if has_contractor and booking.status not in ASSIGNED_STATUSES and booking.status != CANCELLED:
        raise InvalidTransition("{} booking cannot have a contractor".format(booking.status))
    if booking.payout_status == "released" and booking.status not in RELEASED_STATUSES:
        raise InvalidTransition("Released payout on a {} booking".format(booking.status))
