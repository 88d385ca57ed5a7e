"""
Tests for store pricing rules, postcode normalization and transit dates.
"""
from datetime import date, datetime

from parcelgate.models.carrier import CarrierCode
from parcelgate.modules.shipping.postcode import format_zip_plus4, normalize_postcode
from parcelgate.modules.shipping.pricing import CarrierRate, apply_pricing
from parcelgate.modules.shipping.transit import (
    TransitEstimate,
    add_business_days,
    ensure_all_methods_have_cutoff_data,
    next_mailing_date,
    next_pickup_date,
)

from tests.conftest import make_config


class TestApplyPricing:
    """Test the order of store pricing rules."""

    def test_handling_fee_added_cost_kept(self):
        config = make_config(CarrierCode.UPS, handling_fee=2.5)
        rates = apply_pricing([CarrierRate("03", "Ground", 10.0)], config, subtotal=20.0)

        assert rates[0].price == 12.5
        assert rates[0].cost == 10.0
        assert rates[0].carrier_code == "ups"

    def test_free_shipping_zeroes_price(self):
        """Free shipping threshold wins over the handling fee."""
        config = make_config(CarrierCode.UPS, handling_fee=2.5, free_shipping_threshold=50.0)
        rates = apply_pricing([CarrierRate("03", "Ground", 10.0)], config, subtotal=50.0)

        assert rates[0].price == 0.0
        assert rates[0].cost == 0.0

    def test_below_threshold_pays(self):
        config = make_config(CarrierCode.UPS, free_shipping_threshold=50.0)
        rates = apply_pricing([CarrierRate("03", "Ground", 10.0)], config, subtotal=49.99)
        assert rates[0].price == 10.0

    def test_disallowed_methods_dropped(self):
        config = make_config(CarrierCode.UPS, allowed_methods=("03",))
        rates = apply_pricing(
            [CarrierRate("03", "Ground", 10.0), CarrierRate("01", "Next Day Air", 40.0)],
            config,
            subtotal=0,
        )
        assert [rate.method_code for rate in rates] == ["03"]

    def test_non_positive_prices_dropped(self):
        config = make_config(CarrierCode.FEDEX, handling_fee=1.0)
        rates = apply_pricing(
            [CarrierRate("FEDEX_GROUND", "Ground", 0.0), CarrierRate("FEDEX_2_DAY", "2Day", -3.0)],
            config,
            subtotal=0,
        )
        assert rates == []

    def test_prices_rounded(self):
        config = make_config(CarrierCode.USPS, handling_fee=0.333)
        rates = apply_pricing([CarrierRate("PRIORITY_MAIL", "Priority Mail", 9.111)], config, subtotal=0)
        assert rates[0].price == 9.44


class TestPostcodes:
    """Test postcode normalization."""

    def test_us_zip_plus_four(self):
        assert normalize_postcode("10001-1234", "US") == "10001"
        assert normalize_postcode("100011234", "us") == "10001"

    def test_canadian(self):
        assert normalize_postcode("k1a 0b1", "CA") == "K1A0B1"

    def test_other_countries_unchanged(self):
        assert normalize_postcode("SW1A 1AA", "GB") == "SW1A 1AA"

    def test_label_zip_format(self):
        assert format_zip_plus4("100011234") == "10001-1234"
        assert format_zip_plus4("10001-1234") == "10001-1234"
        assert format_zip_plus4("10001") == "10001"


class TestTransitDates:
    """Test business-day and pickup arithmetic."""

    def test_business_days_skip_weekend(self):
        # Friday + 1 business day is Monday
        assert add_business_days(date(2024, 3, 1), 1) == date(2024, 3, 4)
        assert add_business_days(date(2024, 3, 4), 3) == date(2024, 3, 7)

    def test_pickup_after_cutoff_moves_to_next_day(self):
        config = make_config(CarrierCode.UPS, cutoff_time="14:00")
        assert next_pickup_date(config, datetime(2024, 3, 5, 13, 59)) == date(2024, 3, 5)
        assert next_pickup_date(config, datetime(2024, 3, 5, 14, 0)) == date(2024, 3, 6)

    def test_pickup_skips_non_pickup_days(self):
        config = make_config(CarrierCode.UPS, cutoff_time="14:00", pickup_days=(1, 2, 3, 4, 5))
        # Friday after cutoff -> Monday
        assert next_pickup_date(config, datetime(2024, 3, 8, 16, 0)) == date(2024, 3, 11)

    def test_weekend_mailing_moves_to_monday(self):
        assert next_mailing_date(datetime(2024, 3, 9, 10, 0)) == date(2024, 3, 11)
        assert next_mailing_date(datetime(2024, 3, 10, 10, 0)) == date(2024, 3, 11)
        assert next_mailing_date(datetime(2024, 3, 11, 10, 0)) == date(2024, 3, 11)

    def test_missing_methods_filled(self):
        known = TransitEstimate(carrier_code="usps", method_code="PRIORITY_MAIL", business_days=2)
        completed = ensure_all_methods_have_cutoff_data(
            "usps",
            ["PRIORITY_MAIL", "MEDIA_MAIL"],
            {"PRIORITY_MAIL": known},
        )

        assert completed["PRIORITY_MAIL"] is known
        assert completed["MEDIA_MAIL"].business_days is None
        assert completed["MEDIA_MAIL"].has_data is False
