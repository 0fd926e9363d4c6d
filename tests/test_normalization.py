"""
Unit tests for billing-cycle normalization and service-name similarity.
"""

from decimal import Decimal

import pytest

from subsentry.models.domain import BillingCycle
from subsentry.services.normalization import (
    levenshtein_distance,
    normalize_service_name,
    normalize_to_monthly,
    similarity_score,
)


class TestNormalizeToMonthly:
    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("9.99"), Decimal("119.88")])
    def test_each_cycle(self, price):
        assert normalize_to_monthly(price, BillingCycle.ANNUAL) == price / 12
        assert normalize_to_monthly(price, BillingCycle.QUARTERLY) == price / 3
        assert normalize_to_monthly(price, BillingCycle.WEEKLY) == price * Decimal("4.33")
        assert normalize_to_monthly(price, BillingCycle.MONTHLY) == price
        assert normalize_to_monthly(price, BillingCycle.UNKNOWN) == price

    def test_annual_exact(self):
        assert normalize_to_monthly(Decimal("120"), BillingCycle.ANNUAL) == Decimal("10")


class TestServiceName:
    def test_lowercases_and_strips(self):
        assert normalize_service_name("  Netflix ") == "netflix"

    def test_drops_punctuation_and_spaces(self):
        assert normalize_service_name("Disney+ Hotstar") == "disneyhotstar"
        assert normalize_service_name("Spotify AB.") == "spotifyab"

    def test_strips_diacritics(self):
        assert normalize_service_name("Café Gamma") == "cafegamma"

    def test_empty(self):
        assert normalize_service_name("") == ""
        assert normalize_service_name(None) == ""


class TestSimilarity:
    def test_identical_ignoring_case_and_padding(self):
        assert similarity_score("Netflix", "netflix ") == 1.0

    def test_symmetric(self):
        assert similarity_score("Spotify", "Spotfy") == similarity_score("Spotfy", "Spotify")

    def test_single_edit(self):
        # one deletion out of 7 characters
        assert similarity_score("Spotify", "Spotfy") == pytest.approx(1 - 1 / 7)

    def test_unrelated_names_score_low(self):
        assert similarity_score("Netflix", "Hulu") < 0.5

    def test_empty_inputs(self):
        assert similarity_score("", "") == 1.0
        assert similarity_score("Netflix", "") == 0.0

    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("abc", "abc") == 0
