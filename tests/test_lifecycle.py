"""
Transition table and booking invariant tests
"""
import pytest
from types import SimpleNamespace

import lifecycle
from errors import InvalidTransition, Unauthorized


def _booking(status, contractor_id=None, payout_status='pending'):
    return SimpleNamespace(status=status, contractor_id=contractor_id, payout_status=payout_status)


class TestTransitionTable:
    """Test who may move a booking where"""

    def test_every_source_and_target_is_a_known_status(self):
        for transition in lifecycle.TRANSITIONS.values():
            assert transition.sources <= set(lifecycle.ALL_STATUSES)
            assert transition.targets <= set(lifecycle.ALL_STATUSES)

    def test_terminal_statuses_have_no_outgoing_events(self):
        """cancelled and completed_with_issues are absorbing"""
        for status in lifecycle.TERMINAL_STATUSES:
            assert lifecycle.allowed_events(status) == []

    def test_completed_only_allows_post_payment_dispute(self):
        assert lifecycle.allowed_events(lifecycle.COMPLETED) == ['post_payment_dispute']

    def test_reviewable_events(self):
        events = lifecycle.allowed_events(lifecycle.COMPLETED_PENDING_VERIFICATION)
        assert events == ['approve', 'auto_release', 'dispute']

    def test_check_transition_returns_transition(self):
        transition = lifecycle.check_transition(
            _booking(lifecycle.PENDING), 'accept', lifecycle.CONTRACTOR)
        assert transition.targets == {lifecycle.CONFIRMED}

    def test_wrong_source_status(self):
        """Approving a confirmed booking is not allowed"""
        with pytest.raises(InvalidTransition) as exc:
            lifecycle.check_transition(_booking(lifecycle.CONFIRMED), 'approve', lifecycle.CUSTOMER)
        assert exc.value.details['status'] == lifecycle.CONFIRMED

    def test_wrong_actor(self):
        """Only the scheduler may auto-release"""
        with pytest.raises(Unauthorized):
            lifecycle.check_transition(
                _booking(lifecycle.COMPLETED_PENDING_VERIFICATION), 'auto_release', lifecycle.CUSTOMER)

    def test_contractor_cannot_resolve_disputes(self):
        with pytest.raises(Unauthorized):
            lifecycle.check_transition(_booking(lifecycle.DISPUTED), 'resolve_dispute', lifecycle.CONTRACTOR)

    def test_target_outside_event(self):
        with pytest.raises(InvalidTransition):
            lifecycle.check_transition(_booking(lifecycle.PENDING), 'accept', lifecycle.CONTRACTOR,
                                       target=lifecycle.COMPLETED)

    def test_unknown_event(self):
        with pytest.raises(InvalidTransition):
            lifecycle.check_transition(_booking(lifecycle.PENDING), 'teleport', lifecycle.ADMIN)


class TestInvariants:
    """Test assert_invariants"""

    def test_assigned_status_requires_contractor(self):
        with pytest.raises(InvalidTransition):
            lifecycle.assert_invariants(_booking(lifecycle.CONFIRMED))

    def test_pending_cannot_have_contractor(self):
        with pytest.raises(InvalidTransition):
            lifecycle.assert_invariants(_booking(lifecycle.PENDING, contractor_id='c1'))

    def test_cancelled_may_keep_contractor(self):
        """A full-refund dispute leaves the contractor on the cancelled booking"""
        lifecycle.assert_invariants(_booking(lifecycle.CANCELLED, contractor_id='c1', payout_status='frozen'))

    def test_released_payout_only_after_completion(self):
        with pytest.raises(InvalidTransition):
            lifecycle.assert_invariants(_booking(lifecycle.DISPUTED, contractor_id='c1',
                                                 payout_status='released'))

    def test_released_completed_booking_is_valid(self):
        lifecycle.assert_invariants(_booking(lifecycle.COMPLETED, contractor_id='c1',
                                             payout_status='released'))
