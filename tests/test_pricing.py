"""
Pricing engine and quote endpoint tests for Lawnly
"""
import pytest
import json

import pricing
from models import PricingConfig


class TestQuote:
    """Test the pure quote calculation"""

    def test_weekday_flat_lawn(self, verified_address, booking_date):
        """200 sqm, flat, one tier, short grass on a weekday"""
        quote = pricing.quote(verified_address, booking_date, 'short', False,
                              settings=dict(pricing.DEFAULT_SETTINGS))

        assert quote['base_price'] == 30.0
        assert quote['area_price'] == 20.0
        assert quote['subtotal'] == 50.0
        assert quote['day_surcharge'] == 1.0
        assert quote['total'] == 50.0
        assert quote['gst'] == 5.0
        assert quote['total_with_gst'] == 55.0
        assert quote['is_preliminary'] is False

    def test_saturday_surcharge(self, verified_address, saturday):
        """Saturday applies the saturday multiplier after the subtotal"""
        quote = pricing.quote(verified_address, saturday, 'short', False,
                              settings=dict(pricing.DEFAULT_SETTINGS))

        assert quote['day_surcharge'] == 1.1
        assert quote['subtotal'] == 50.0
        assert quote['total'] == 55.0
        assert quote['total_with_gst'] == 60.5

    def test_all_multipliers_and_clippings(self, address_factory, booking_date):
        """Slope, tiers, grass length multiply; clippings are added after"""
        address = address_factory(slope='steep', tier_count=2)
        quote = pricing.quote(address, booking_date.isoformat(), 'medium', True,
                              settings=dict(pricing.DEFAULT_SETTINGS))

        assert quote['slope_multiplier'] == 1.25
        assert quote['tier_multiplier'] == 1.1
        assert quote['grass_length_multiplier'] == 1.15
        assert quote['clippings_cost'] == 15.0
        assert quote['total'] == 94.06
        assert quote['total_with_gst'] == 103.47

    def test_unverified_address_is_preliminary(self, unverified_address, booking_date):
        """Quotes against a pending address are flagged preliminary"""
        quote = pricing.quote(unverified_address, booking_date, settings=dict(pricing.DEFAULT_SETTINGS))
        assert quote['is_preliminary'] is True

    def test_rejected_address_cannot_be_quoted(self, address_factory, booking_date):
        address = address_factory(verification_status='rejected')
        with pytest.raises(pricing.QuoteUnavailable):
            pricing.quote(address, booking_date, settings=dict(pricing.DEFAULT_SETTINGS))

    def test_missing_lawn_area(self, address_factory, booking_date):
        address = address_factory(verification_status='pending', square_meters=None)
        with pytest.raises(pricing.QuoteUnavailable, match='lawn area'):
            pricing.quote(address, booking_date, settings=dict(pricing.DEFAULT_SETTINGS))

    def test_persisted_settings_override_defaults(self, db_session, verified_address, booking_date):
        """PricingConfig rows win over module defaults"""
        db_session.add(PricingConfig(key='fixed_base_price', value=40))
        db_session.commit()

        quote = pricing.quote(verified_address, booking_date)
        assert quote['base_price'] == 40.0
        assert quote['total'] == 60.0


class TestQuoteEndpoint:
    """Test POST /api/pricing/quote"""

    def test_quote_for_own_address(self, client, headers_for, customer, unverified_address, booking_date):
        response = client.post('/api/pricing/quote',
            headers=headers_for(customer),
            json={
                'address_id': unverified_address.id,
                'scheduled_date': booking_date.isoformat(),
                'grass_length': 'short',
            }
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['is_preliminary'] is True
        assert data['quote']['total'] == 45.0

    def test_quote_for_someone_elses_address(self, client, headers_for, other_customer,
                                             verified_address, booking_date):
        response = client.post('/api/pricing/quote',
            headers=headers_for(other_customer),
            json={'address_id': verified_address.id, 'scheduled_date': booking_date.isoformat()}
        )

        assert response.status_code == 404
        assert json.loads(response.data)['code'] == 'NotFound'

    def test_quote_requires_fields(self, client, headers_for, customer):
        response = client.post('/api/pricing/quote', headers=headers_for(customer), json={})
        assert response.status_code == 400
        assert json.loads(response.data)['code'] == 'ValidationError'
