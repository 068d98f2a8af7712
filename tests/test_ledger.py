"""
Escrow ledger tests: charge, release, refund bounds and Stripe idempotency
"""
import pytest
from unittest.mock import MagicMock

from sqlalchemy import event

import booking_service
import deadlines
import ledger
from errors import InvalidTransition, LedgerOperationFailed, RefundAmountOutOfRange
from models import db, LedgerEntry


@pytest.fixture
def live_stripe(app, monkeypatch):
    """Pretend a Stripe key is configured and capture every API call"""
    stripe = MagicMock()
    stripe.Transfer.create.return_value.id = 'tr_live_1'
    stripe.Refund.create.return_value.id = 're_live_1'
    stripe.PaymentIntent.create.return_value.id = 'pi_live_1'
    monkeypatch.setitem(app.config, 'STRIPE_SECRET_KEY', 'sk_test_x')
    monkeypatch.setattr(ledger, '_get_stripe', lambda: stripe)
    return stripe


@pytest.mark.usefixtures('app')
class TestContractorShare:

    def test_commission_is_taken(self):
        assert ledger.contractor_share(100) == 85.0

    def test_negative_amount_pays_nothing(self):
        assert ledger.contractor_share(-5) == 0.0


class TestCharge:
    """Test escrow capture"""

    def test_reserve_requires_payment_method(self, booking_factory):
        booking = booking_factory(payment_method_id=None)
        with pytest.raises(LedgerOperationFailed):
            ledger.reserve(booking, None)

    def test_dev_mode_charge(self, db_session, booking_factory):
        booking = booking_factory()
        entry = ledger.charge(booking)
        db_session.commit()

        assert entry.status == 'succeeded'
        assert booking.payment_status == 'paid'
        assert booking.payment_intent_id.startswith('pi_dev_')

    def test_live_charge_uses_idempotency_key(self, db_session, booking_factory, live_stripe):
        booking = booking_factory()
        entry = ledger.charge(booking)
        db_session.commit()

        kwargs = live_stripe.PaymentIntent.create.call_args.kwargs
        assert kwargs['amount'] == 5500
        assert kwargs['off_session'] is True
        assert entry.reference.startswith('pm_card_visa-')
        assert kwargs['idempotency_key'] == 'lawnly-{}-charge-{}'.format(booking.id, entry.reference)
        assert entry.processor_id == 'pi_live_1'

    def test_accept_needs_payout_account(self, booking_factory, contractor_factory, actor_for,
                                         clock, live_stripe):
        """With a live processor, a contractor without a connected account cannot take paid work"""
        booking = booking_factory()
        unconnected = contractor_factory(stripe_account_id=None)
        with pytest.raises(LedgerOperationFailed, match='payout account'):
            booking_service.accept_booking(booking.id, actor_for(unconnected), now=clock.now)

        assert booking.status == 'pending'
        live_stripe.PaymentIntent.create.assert_not_called()

    def test_declined_card(self, booking_factory, live_stripe):
        live_stripe.PaymentIntent.create.side_effect = Exception('card_declined')
        booking = booking_factory()
        with pytest.raises(LedgerOperationFailed, match='card_declined'):
            ledger.charge(booking)
        assert booking.payment_status != 'paid'


class TestChargeAttempts:
    """Test that every accept attempt reaches Stripe under its own key"""

    def test_new_card_after_decline(self, booking_factory, contractor, customer, actor_for,
                                    clock, live_stripe):
        """A declined attempt is not replayed when the customer saves another card"""
        live_stripe.PaymentIntent.create.side_effect = [
            Exception('card_declined'), MagicMock(id='pi_live_2')]
        booking = booking_factory(payment_method_id='pm_declined')
        booking_id = booking.id

        with pytest.raises(LedgerOperationFailed, match='card_declined'):
            booking_service.accept_booking(booking_id, actor_for(contractor), now=clock.now)
        booking_service.save_payment_method(booking_id, actor_for(customer), 'pm_new_card',
                                            now=clock.now)
        booking = booking_service.accept_booking(booking_id, actor_for(contractor), now=clock.now)

        first, second = [c.kwargs for c in live_stripe.PaymentIntent.create.call_args_list]
        assert first['payment_method'] == 'pm_declined'
        assert second['payment_method'] == 'pm_new_card'
        assert first['idempotency_key'] != second['idempotency_key']
        assert booking.status == 'confirmed'
        assert booking.payment_intent_id == 'pi_live_2'
        assert ledger.succeeded_charge(booking_id).idempotency_key == second['idempotency_key']

    def test_accept_after_lost_commit_is_charged_again(self, booking_factory, contractor, actor_for,
                                                      clock, live_stripe):
        """A charge refunded after a lost race is not replayed by the next accept"""
        booking = booking_factory()
        booking_id = booking.id
        calls = []

        def create_intent(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                # another request commits while Stripe is answering
                db.session.execute(
                    db.text('UPDATE bookings SET version = version + 1 WHERE id = :id'),
                    {'id': booking_id},
                )
            return MagicMock(id='pi_live_{}'.format(len(calls)))

        live_stripe.PaymentIntent.create.side_effect = create_intent

        with pytest.raises(InvalidTransition, match='changed by another request'):
            booking_service.accept_booking(booking_id, actor_for(contractor), now=clock.now)
        assert live_stripe.Refund.create.call_args.kwargs['payment_intent'] == 'pi_live_1'
        assert ledger.succeeded_charge(booking_id) is None

        booking = booking_service.accept_booking(booking_id, actor_for(contractor), now=clock.now)
        assert booking.payment_intent_id == 'pi_live_2'
        assert booking.payment_status == 'paid'
        assert calls[0]['idempotency_key'] != calls[1]['idempotency_key']

    def test_booking_row_not_written_during_charge(self, booking_factory, contractor, actor_for,
                                                   clock, live_stripe):
        """The versioned UPDATE (and its row lock) is only sent after Stripe answers"""
        statements = []
        sent_before_charge = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        def create_intent(**kwargs):
            sent_before_charge.extend(statements)
            return MagicMock(id='pi_live_1')

        live_stripe.PaymentIntent.create.side_effect = create_intent
        booking = booking_factory()
        event.listen(db.engine, 'before_cursor_execute', record)
        try:
            booking_service.accept_booking(booking.id, actor_for(contractor), now=clock.now)
        finally:
            event.remove(db.engine, 'before_cursor_execute', record)

        assert sent_before_charge
        assert not [s for s in sent_before_charge if 'UPDATE bookings' in s]
        assert [s for s in statements if 'UPDATE bookings' in s]


class TestRelease:
    """Test payout release"""

    def test_release_is_idempotent(self, db_session, completed_booking, clock):
        """Releasing twice records one movement"""
        first = ledger.find_entry(completed_booking.id, ledger.OP_RELEASE)
        again = ledger.release(completed_booking, clock.now)
        db_session.commit()

        assert again.id == first.id
        assert LedgerEntry.query.filter_by(
            booking_id=completed_booking.id, operation='release').count() == 1
        assert first.amount == 46.75
        assert first.status == 'succeeded'
        assert first.processor_id.startswith('tr_dev_')

    def test_frozen_payout_cannot_release(self, reviewable_booking, clock):
        ledger.freeze(reviewable_booking)
        with pytest.raises(InvalidTransition):
            ledger.release(reviewable_booking, clock.now)

    def test_released_payout_cannot_freeze(self, completed_booking):
        with pytest.raises(InvalidTransition):
            ledger.freeze(completed_booking)

    def test_transfer_sent_once(self, db_session, reviewable_booking, customer, actor_for,
                                clock, live_stripe):
        """Settling a succeeded entry again never reaches Stripe twice"""
        booking_service.approve_job(reviewable_booking.id, actor_for(customer), now=clock.now)
        entry = ledger.find_entry(reviewable_booking.id, ledger.OP_RELEASE)
        ledger.settle([entry])

        live_stripe.Transfer.create.assert_called_once()
        kwargs = live_stripe.Transfer.create.call_args.kwargs
        assert kwargs['amount'] == 4675
        assert kwargs['destination'] == reviewable_booking.contractor.stripe_account_id
        assert kwargs['idempotency_key'] == 'lawnly-{}-release-0'.format(reviewable_booking.id)

    def test_failed_transfer_is_retried(self, db_session, reviewable_booking, customer, actor_for,
                                        clock, live_stripe):
        """A processor failure leaves the booking completed and the entry failed for the sweep"""
        live_stripe.Transfer.create.side_effect = [Exception('stripe down'), MagicMock(id='tr_retry')]

        booking = booking_service.approve_job(reviewable_booking.id, actor_for(customer), now=clock.now)
        entry = ledger.find_entry(booking.id, ledger.OP_RELEASE)
        assert booking.status == 'completed'
        assert booking.payout_status == 'released'
        assert entry.status == 'failed'
        assert entry.attempts == 1
        assert 'stripe down' in entry.last_error

        assert deadlines.retry_failed_movements(clock.now) == 1
        entry = ledger.find_entry(booking.id, ledger.OP_RELEASE)
        assert entry.status == 'succeeded'
        assert entry.processor_id == 'tr_retry'


class TestRefund:
    """Test refund bounds"""

    def test_refund_above_total(self, booking_factory):
        booking = booking_factory(status='confirmed', payment_status='paid')
        with pytest.raises(RefundAmountOutOfRange):
            ledger.refund(booking, 55.01)

    def test_negative_refund(self, booking_factory):
        booking = booking_factory()
        with pytest.raises(RefundAmountOutOfRange):
            ledger.refund(booking, -1)

    def test_non_numeric_refund(self, booking_factory):
        booking = booking_factory()
        with pytest.raises(RefundAmountOutOfRange):
            ledger.refund(booking, 'lots')

    def test_zero_refund_records_nothing(self, booking_factory):
        booking = booking_factory()
        assert ledger.refund(booking, 0) is None
        assert LedgerEntry.query.filter_by(booking_id=booking.id).count() == 0

    def test_cumulative_refunds_capped_at_total(self, db_session, booking_factory):
        booking = booking_factory()
        ledger.refund(booking, 30, reference='first')
        db_session.commit()

        assert booking.refunded_amount == 30.0
        with pytest.raises(RefundAmountOutOfRange, match='not yet refunded'):
            ledger.refund(booking, 30, reference='second')

    def test_platform_refund_operation(self, db_session, booking_factory):
        booking = booking_factory()
        entry = ledger.refund(booking, 10, reference='d1', from_platform=True)
        db_session.commit()
        assert entry.operation == 'platform_refund'
        assert entry.idempotency_key == 'lawnly-{}-platform_refund-d1'.format(booking.id)
