"""
Pytest configuration and fixtures for Lawnly backend tests
"""
import pytest
from datetime import date, timedelta

from app_config import TestingConfig
from server import create_app
from models import (
    db, User, Contractor, Address, Booking, JobPhoto, utcnow,
)
from auth_routes import generate_token, load_actor


def future_weekday(days_ahead=7):
    """A Monday-to-Friday date at least *days_ahead* days from now."""
    day = date.today() + timedelta(days=days_ahead)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def next_saturday(days_ahead=7):
    day = date.today() + timedelta(days=days_ahead)
    while day.weekday() != 5:
        day += timedelta(days=1)
    return day


@pytest.fixture
def booking_date():
    return future_weekday()


@pytest.fixture
def saturday():
    return next_saturday()


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing"""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Database session; every table is emptied after each test"""
    yield db.session
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()


class Clock:
    """Explicit 'now' handed to service calls so tests can jump ahead."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return Clock()


# ---------------------------------------------------------------------------
# Users and actors
# ---------------------------------------------------------------------------

@pytest.fixture
def user_factory(db_session):
    """Factory for creating users"""
    counter = {'n': 0}

    def _create_user(role='customer', **kwargs):
        counter['n'] += 1
        defaults = {
            'email': '{}{}@example.com'.format(role, counter['n']),
            'name': 'Test {} {}'.format(role.title(), counter['n']),
            'role': role,
        }
        defaults.update(kwargs)
        user = User(**defaults)
        user.set_password('TestPass123!')
        db_session.add(user)
        db_session.commit()
        return user

    return _create_user


@pytest.fixture
def customer(user_factory):
    return user_factory('customer', name='Casey Customer')


@pytest.fixture
def other_customer(user_factory):
    return user_factory('customer', name='Olive Other')


@pytest.fixture
def admin_user(user_factory):
    return user_factory('admin', name='Ada Admin')


@pytest.fixture
def contractor_factory(db_session, user_factory):
    """Factory for creating contractor profiles (with their user)"""
    def _create_contractor(**kwargs):
        user = user_factory('contractor')
        defaults = {
            'user_id': user.id,
            'business_name': 'Green Blades {}'.format(user.id[:4]),
            'is_active': True,
            'approval_status': 'approved',
            'service_areas': ['2000', '2010'],
            'tier': 'standard',
            'stripe_account_id': 'acct_test_{}'.format(user.id[:6]),
        }
        defaults.update(kwargs)
        contractor = Contractor(**defaults)
        db_session.add(contractor)
        db_session.commit()
        return contractor

    return _create_contractor


@pytest.fixture
def contractor(contractor_factory):
    return contractor_factory()


@pytest.fixture
def actor_for(app):
    def _actor(user_or_contractor):
        if isinstance(user_or_contractor, Contractor):
            return load_actor(user_or_contractor.user_id)
        return load_actor(user_or_contractor.id)
    return _actor


@pytest.fixture
def headers_for(app):
    """Generate auth headers with a JWT for a user or contractor"""
    def _headers(user_or_contractor):
        if isinstance(user_or_contractor, Contractor):
            user_id = user_or_contractor.user_id
        else:
            user_id = user_or_contractor.id
        token = generate_token(user_id)
        return {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
        }
    return _headers


# ---------------------------------------------------------------------------
# Addresses and bookings
# ---------------------------------------------------------------------------

@pytest.fixture
def address_factory(db_session, customer):
    def _create_address(**kwargs):
        defaults = {
            'user_id': customer.id,
            'street_address': '12 Wattle St',
            'city': 'Sydney',
            'state': 'NSW',
            'postal_code': '2000',
            'square_meters': 200.0,
            'slope': 'flat',
            'tier_count': 1,
            'verification_status': 'verified',
        }
        defaults.update(kwargs)
        address = Address(**defaults)
        db_session.add(address)
        db_session.commit()
        return address

    return _create_address


@pytest.fixture
def verified_address(address_factory):
    return address_factory()


@pytest.fixture
def unverified_address(address_factory):
    return address_factory(verification_status='pending', square_meters=150.0)


@pytest.fixture
def booking_factory(db_session, customer, verified_address):
    """Factory for bookings in any lifecycle state, written straight to the DB"""
    def _create_booking(**kwargs):
        defaults = {
            'user_id': customer.id,
            'address_id': verified_address.id,
            'scheduled_date': future_weekday(),
            'time_slot': 'morning',
            'grass_length': 'short',
            'original_price': 55.0,
            'total_price': 55.0,
            'payment_status': 'pending',
            'payout_status': 'pending',
            'payment_method_id': 'pm_card_visa',
            'status': 'pending',
        }
        defaults.update(kwargs)
        booking = Booking(**defaults)
        db_session.add(booking)
        db_session.commit()
        return booking

    return _create_booking


@pytest.fixture
def confirmed_booking(booking_factory, contractor, clock):
    return booking_factory(
        status='confirmed',
        contractor_id=contractor.id,
        contractor_accepted_at=clock.now,
        payment_status='paid',
        payment_intent_id='pi_dev_seed',
    )


@pytest.fixture
def add_photos(db_session):
    def _add(booking, before=4, after=4):
        for _ in range(before):
            db_session.add(JobPhoto(booking_id=booking.id, contractor_id=booking.contractor_id,
                                    photo_type='before', storage_path='jobs/{}/b.jpg'.format(booking.id)))
        for _ in range(after):
            db_session.add(JobPhoto(booking_id=booking.id, contractor_id=booking.contractor_id,
                                    photo_type='after', storage_path='jobs/{}/a.jpg'.format(booking.id)))
        db_session.commit()
    return _add


@pytest.fixture
def reviewable_booking(confirmed_booking, add_photos, actor_for, contractor, clock):
    """A booking the contractor has just completed (48h review window open)."""
    import booking_service

    add_photos(confirmed_booking)
    return booking_service.complete_job(confirmed_booking.id, actor_for(contractor), now=clock.now)


@pytest.fixture
def completed_booking(reviewable_booking, actor_for, customer, clock):
    """A booking the customer approved; payout released."""
    import booking_service

    return booking_service.approve_job(reviewable_booking.id, actor_for(customer), now=clock.now)
