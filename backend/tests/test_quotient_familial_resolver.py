"""
Tests for income bracket resolution and its cache
"""
from decimal import Decimal

import pytest

from membership_fees.models import (IncomeBracket, IncomeBracketAgeValue,
                                    IncomeBracketConfig)
from membership_fees.services.quotient_familial_resolver import (
    IncomeBracketCache, QuotientFamilialResolver)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def resolver(db):
    return QuotientFamilialResolver(db)


class TestResolve:

    def test_fixed_value_replaces_amount(self, resolver, income_scale):
        amount, bracket = resolver.resolve(650, Decimal("100.00"))

        assert amount == Decimal("70.00")
        assert bracket.label == "QF 0-800"
        assert bracket.calc_kind == "fixed"

    def test_percentage_of_amount(self, resolver, income_scale):
        amount, bracket = resolver.resolve(900, Decimal("100.00"))

        assert amount == Decimal("85.00")
        assert bracket.calc_kind == "percentage"

    def test_bounds_are_inclusive(self, resolver, income_scale):
        assert resolver.resolve(800, Decimal("100"))[0] == Decimal("70.00")
        assert resolver.resolve(801, Decimal("100"))[0] == Decimal("85.00")

    def test_no_matching_bracket_keeps_amount(self, resolver, income_scale):
        amount, bracket = resolver.resolve(5000, Decimal("100.00"))
        assert amount == Decimal("100.00")
        assert bracket is None

    def test_missing_quotient_keeps_amount(self, resolver, income_scale):
        assert resolver.resolve(None, Decimal("100.00")) == (Decimal("100.00"), None)

    def test_no_configuration(self, resolver):
        assert resolver.resolve(300, Decimal("42.5")) == (Decimal("42.50"), None)

    def test_age_specific_value(self, db, resolver, income_scale, age_brackets):
        low = income_scale.brackets[0]
        db.add(IncomeBracketAgeValue(bracket_id=low.id, age_bracket_id=age_brackets["ENFANT"].id,
                                     calc_kind="percentage", value=Decimal("30")))
        db.commit()

        child_amount, child_bracket = resolver.resolve(650, Decimal("100.00"), age_brackets["ENFANT"].id)
        adult_amount, adult_bracket = resolver.resolve(650, Decimal("100.00"), age_brackets["ADULTE"].id)

        assert child_amount == Decimal("30.00")
        assert child_bracket.age_specific
        assert adult_amount == Decimal("70.00")
        assert not adult_bracket.age_specific

    def test_structure_config_preferred(self, db, resolver, income_scale):
        local = IncomeBracketConfig(code="QF_LOCAL", label="Local", structure_id=7)
        local.brackets = [IncomeBracket(label="All", min_value=0, max_value=None, calc_kind="fixed",
                                        value=Decimal("10.00"), position=1)]
        db.add(local)
        db.commit()

        assert resolver.resolve(650, Decimal("100"), structure_id=7)[0] == Decimal("10.00")
        assert resolver.resolve(650, Decimal("100"), structure_id=8)[0] == Decimal("70.00")

    def test_inactive_bracket_skipped(self, db, resolver, income_scale):
        income_scale.brackets[0].active = False
        db.commit()
        assert resolver.resolve(650, Decimal("100.00"))[1] is None


class TestCache:

    def test_cached_until_invalidated(self, db, income_scale):
        cache = IncomeBracketCache(ttl_seconds=300)
        resolver = QuotientFamilialResolver(db, cache=cache)
        assert resolver.resolve(650, Decimal("100"))[0] == Decimal("70.00")

        income_scale.brackets[0].value = Decimal("60.00")
        db.commit()
        assert resolver.resolve(650, Decimal("100"))[0] == Decimal("70.00")

        cache.invalidate()
        assert resolver.resolve(650, Decimal("100"))[0] == Decimal("60.00")

    def test_entries_expire(self, db, income_scale):
        clock = FakeClock()
        cache = IncomeBracketCache(ttl_seconds=10, clock=clock)
        resolver = QuotientFamilialResolver(db, cache=cache)
        resolver.resolve(650, Decimal("100"))

        income_scale.brackets[0].value = Decimal("55.00")
        db.commit()
        clock.now = 11
        assert resolver.resolve(650, Decimal("100"))[0] == Decimal("55.00")

    def test_invalidate_one_structure(self, db, income_scale):
        cache = IncomeBracketCache(ttl_seconds=300)
        cache.put(None, None)
        cache.put(7, None)

        cache.invalidate(7)

        assert cache.get(None) == (True, None)
        assert cache.get(7) == (False, None)

    def test_without_cache_reads_every_time(self, db, resolver, income_scale):
        resolver.resolve(650, Decimal("100"))
        income_scale.brackets[0].value = Decimal("50.00")
        db.commit()
        assert resolver.resolve(650, Decimal("100"))[0] == Decimal("50.00")

    def test_zero_ttl_keeps_entries(self):
        clock = FakeClock()
        cache = IncomeBracketCache(ttl_seconds=0, clock=clock)
        cache.put(None, None)

        clock.now = 10_000
        assert cache.get(None) == (True, None)
