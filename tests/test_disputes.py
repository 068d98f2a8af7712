"""
Dispute tests: raising before and after payout, and every admin resolution
"""
import pytest
from datetime import timedelta

import deadlines
import disputes
import ledger
from errors import (
    DisputeAlreadyOpen, DisputeWindowExpired, InvalidTransition, RefundAmountOutOfRange,
    Unauthorized, ValidationError,
)
from models import db, Booking, LedgerEntry, ScheduledTask

COMPLAINT = {
    'reason': 'Missed a section',
    'description': 'The back corner near the shed was not mowed at all.',
}


def _raise(booking, customer, actor_for, now, **extra):
    data = dict(COMPLAINT)
    data.update(extra)
    return disputes.raise_dispute(booking.id, actor_for(customer), data, now=now)


def _resolve(dispute, admin_user, actor_for, now, **data):
    return disputes.resolve_dispute(dispute.id, actor_for(admin_user), data, now=now)


class TestRaiseDispute:
    """Test raise_dispute"""

    def test_before_payout_freezes_and_stops_timer(self, reviewable_booking, customer, actor_for, clock):
        dispute = _raise(reviewable_booking, customer, actor_for, clock.now + timedelta(hours=5))

        booking = db.session.get(Booking, reviewable_booking.id)
        assert booking.status == 'disputed'
        assert booking.payout_status == 'frozen'
        assert dispute.status == 'open'
        assert dispute.is_post_payment is False
        task = ScheduledTask.query.filter_by(booking_id=booking.id, kind='auto_release').one()
        assert task.status == 'cancelled'

        assert deadlines.run_due_tasks(clock.now + timedelta(hours=49))['fired'] == 0
        assert db.session.get(Booking, booking.id).status == 'disputed'

    def test_after_payout_within_window(self, completed_booking, customer, actor_for, clock):
        dispute = _raise(completed_booking, customer, actor_for, clock.now + timedelta(days=6))

        booking = db.session.get(Booking, completed_booking.id)
        assert booking.status == 'post_payment_dispute'
        assert booking.payout_status == 'released'
        assert dispute.is_post_payment is True

    def test_after_dispute_window(self, completed_booking, customer, actor_for, clock):
        """Day 8 is outside the 7 day window"""
        with pytest.raises(DisputeWindowExpired):
            _raise(completed_booking, customer, actor_for, clock.now + timedelta(days=8))
        assert db.session.get(Booking, completed_booking.id).status == 'completed'

    def test_short_description(self, reviewable_booking, customer, actor_for, clock):
        with pytest.raises(ValidationError, match='at least 20'):
            _raise(reviewable_booking, customer, actor_for, clock.now, description='Bad job')

    def test_missing_reason(self, reviewable_booking, customer, actor_for, clock):
        with pytest.raises(ValidationError, match='reason'):
            _raise(reviewable_booking, customer, actor_for, clock.now, reason='')

    def test_second_open_dispute(self, reviewable_booking, customer, actor_for, clock):
        _raise(reviewable_booking, customer, actor_for, clock.now)
        with pytest.raises(DisputeAlreadyOpen):
            _raise(reviewable_booking, customer, actor_for, clock.now)

    def test_suggested_refund_above_total(self, reviewable_booking, customer, actor_for, clock):
        with pytest.raises(RefundAmountOutOfRange):
            _raise(reviewable_booking, customer, actor_for, clock.now, suggested_refund_amount=60)
        assert db.session.get(Booking, reviewable_booking.id).status == 'completed_pending_verification'

    def test_cannot_dispute_unfinished_job(self, confirmed_booking, customer, actor_for, clock):
        with pytest.raises(InvalidTransition):
            _raise(confirmed_booking, customer, actor_for, clock.now)

    def test_only_customer_can_dispute(self, reviewable_booking, other_customer, actor_for, clock):
        with pytest.raises(Unauthorized):
            _raise(reviewable_booking, other_customer, actor_for, clock.now)


class TestResolveBeforePayout:
    """Resolutions for disputes raised during the review window"""

    @pytest.fixture
    def dispute(self, reviewable_booking, customer, actor_for, clock):
        return _raise(reviewable_booking, customer, actor_for, clock.now, suggested_refund_amount=20)

    def test_no_refund_releases_full_share(self, dispute, admin_user, actor_for, clock):
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='no_refund')

        booking = db.session.get(Booking, dispute.booking_id)
        assert booking.status == 'completed'
        assert booking.payout_status == 'released'
        assert booking.refunded_amount == 0.0
        assert ledger.find_entry(booking.id, ledger.OP_RELEASE).amount == 46.75
        assert dispute.status == 'resolved'
        assert dispute.refund_amount == 0.0

    def test_partial_refund_releases_remainder(self, dispute, admin_user, actor_for, clock):
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='partial_refund', refund_percentage=40)

        booking = db.session.get(Booking, dispute.booking_id)
        assert booking.status == 'completed_with_issues'
        assert booking.payout_status == 'released'
        assert booking.refunded_amount == 22.0
        refund = ledger.find_entry(booking.id, ledger.OP_REFUND, dispute.id)
        assert refund.amount == 22.0
        assert refund.status == 'succeeded'
        assert ledger.find_entry(booking.id, ledger.OP_RELEASE).amount == 28.05

    def test_partial_refund_defaults_to_half(self, dispute, admin_user, actor_for, clock):
        resolved = _resolve(dispute, admin_user, actor_for, clock.now, resolution='partial_refund')
        assert resolved.refund_percentage == 50.0
        assert resolved.refund_amount == 27.5

    def test_full_refund_cancels(self, dispute, contractor, admin_user, actor_for, clock):
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='full_refund')

        booking = db.session.get(Booking, dispute.booking_id)
        assert booking.status == 'cancelled'
        assert booking.payout_status == 'frozen'
        assert booking.contractor_id == contractor.id
        assert booking.refunded_amount == 55.0
        assert ledger.find_entry(booking.id, ledger.OP_RELEASE) is None

    def test_percentage_out_of_range(self, dispute, admin_user, actor_for, clock):
        with pytest.raises(RefundAmountOutOfRange):
            _resolve(dispute, admin_user, actor_for, clock.now, resolution='partial_refund',
                     refund_percentage=120)
        assert db.session.get(Booking, dispute.booking_id).status == 'disputed'
        assert dispute.status == 'open'

    def test_unknown_resolution(self, dispute, admin_user, actor_for, clock):
        with pytest.raises(ValidationError):
            _resolve(dispute, admin_user, actor_for, clock.now, resolution='split_the_difference')

    def test_customer_cannot_resolve(self, dispute, customer, actor_for, clock):
        with pytest.raises(Unauthorized):
            _resolve(dispute, customer, actor_for, clock.now, resolution='full_refund')

    def test_resolve_twice(self, dispute, admin_user, actor_for, clock):
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='no_refund')
        with pytest.raises(InvalidTransition):
            _resolve(dispute, admin_user, actor_for, clock.now, resolution='full_refund')


class TestResolveAfterPayout:
    """Resolutions for disputes raised after the payout was released"""

    @pytest.fixture
    def dispute(self, completed_booking, customer, actor_for, clock):
        return _raise(completed_booking, customer, actor_for, clock.now + timedelta(days=3))

    def test_partial_refund_from_platform(self, dispute, admin_user, actor_for, clock):
        """40% of $55 comes from the platform; the contractor keeps the payout"""
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='partial_refund', refund_percentage=40)

        booking = db.session.get(Booking, dispute.booking_id)
        assert booking.status == 'completed_with_issues'
        assert booking.payout_status == 'released'
        assert booking.refunded_amount == 22.0
        refund = ledger.find_entry(booking.id, ledger.OP_PLATFORM_REFUND, dispute.id)
        assert refund.amount == 22.0
        assert refund.processor_id.startswith('re_dev_')
        assert ledger.find_entry(booking.id, ledger.OP_REFUND, dispute.id) is None
        assert ledger.find_entry(booking.id, ledger.OP_RELEASE).amount == 46.75

    def test_zero_percent_partial(self, dispute, admin_user, actor_for, clock):
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='partial_refund', refund_percentage=0)

        booking = db.session.get(Booking, dispute.booking_id)
        assert booking.status == 'completed_with_issues'
        assert LedgerEntry.query.filter_by(booking_id=booking.id, operation='platform_refund').count() == 0

    def test_no_refund(self, dispute, admin_user, actor_for, clock):
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='no_refund')
        assert db.session.get(Booking, dispute.booking_id).status == 'completed'

    def test_full_refund(self, dispute, admin_user, actor_for, clock):
        _resolve(dispute, admin_user, actor_for, clock.now, resolution='full_refund')

        booking = db.session.get(Booking, dispute.booking_id)
        assert booking.status == 'completed_with_issues'
        assert booking.refunded_amount == 55.0
        assert ledger.find_entry(booking.id, ledger.OP_PLATFORM_REFUND, dispute.id).amount == 55.0


class TestListDisputes:

    def test_filter_by_status(self, reviewable_booking, customer, admin_user, actor_for, clock):
        dispute = _raise(reviewable_booking, customer, actor_for, clock.now)

        assert disputes.list_disputes(actor_for(admin_user), 'open') == [dispute]
        assert disputes.list_disputes(actor_for(admin_user), 'resolved') == []

    def test_admin_only(self, customer, actor_for):
        with pytest.raises(Unauthorized):
            disputes.list_disputes(actor_for(customer))
