"""
Tests for income quotient resolution and member profile building
"""
from datetime import date

import pytest

from membership_fees.models import (Commune, CommuneGroup, CommuneGroupMember,
                                    IncomeQuotientHistory)
from membership_fees.services.income_quotient_service import \
    IncomeQuotientService
from membership_fees.services.member_profile_service import \
    MemberProfileService

from helpers import REFERENCE_DATE


class TestIncomeQuotientService:

    @pytest.fixture
    def service(self, db):
        return IncomeQuotientService(db)

    def test_history_value_at_date(self, db, service, make_member):
        member = make_member(income_quotient=999)
        db.add_all([
            IncomeQuotientHistory(member_id=member.id, value=500, valid_from=date(2025, 1, 1),
                                  valid_to=date(2025, 12, 31)),
            IncomeQuotientHistory(member_id=member.id, value=620, valid_from=date(2026, 1, 1)),
        ])
        db.commit()

        assert service.get_value_at(member, date(2025, 6, 1)).value == 500
        info = service.get_value_at(member, REFERENCE_DATE)
        assert info.value == 620
        assert info.source == "history"

    def test_falls_back_to_member_value(self, db, service, make_member):
        member = make_member(income_quotient=710)
        db.add(IncomeQuotientHistory(member_id=member.id, value=500, valid_from=date(2027, 1, 1)))
        db.commit()

        info = service.get_value_at(member, REFERENCE_DATE)
        assert (info.value, info.source) == (710, "member")

    def test_inherits_from_parent(self, service, make_member):
        parent = make_member(last_name="Parent", income_quotient=430)
        child = make_member(last_name="Child", parent_id=parent.id)

        info = service.get_value_at(child, REFERENCE_DATE)
        assert info.value == 430
        assert info.source == "parent"
        assert info.inherited_from_member_id == parent.id

    def test_unknown(self, service, make_member):
        assert service.get_value_at(make_member(), REFERENCE_DATE).value is None

    def test_record_closes_open_row(self, db, service, make_member):
        member = make_member()
        service.record(member, 500, date(2025, 1, 1))
        service.record(member, 650, date(2026, 1, 1), source="caf")
        db.commit()

        rows = db.query(IncomeQuotientHistory).order_by(IncomeQuotientHistory.valid_from).all()
        assert rows[0].valid_to == date(2025, 12, 31)
        assert rows[1].valid_to is None
        assert member.income_quotient == 650


class TestMemberProfileService:

    @pytest.fixture
    def service(self, db):
        return MemberProfileService(db)

    def test_build_profile(self, db, service, schedule, make_member, make_payment):
        commune = Commune(name="Villeneuve")
        group = CommuneGroup(code="AGGLO", name="Agglomeration")
        db.add_all([commune, group])
        db.commit()
        db.add(CommuneGroupMember(group_id=group.id, commune_id=commune.id))
        db.commit()

        member = make_member(birth_date=date(2012, 1, 1), household_id="H1", commune_id=commune.id,
                             income_quotient=650, social_status="student")
        sibling = make_member(household_id="H1")
        other = make_member(household_id="H2")
        make_payment(member, schedule, date(2020, 1, 1), date(2020, 12, 31))
        make_payment(member, schedule, date(2026, 1, 1), date(2026, 12, 31))
        make_payment(sibling, schedule, date(2026, 3, 1), date(2027, 2, 28))
        make_payment(sibling, schedule, date(2025, 3, 1), date(2026, 2, 28))
        make_payment(other, schedule, date(2026, 1, 1), date(2026, 12, 31))

        profile = service.build(member, REFERENCE_DATE)

        assert profile.commune_group_ids == frozenset({group.id})
        assert profile.first_payment_date == date(2020, 1, 1)
        # the expired sibling payment and the other household are not counted
        assert profile.active_household_payments == 2
        assert profile.income_quotient == 650
        assert profile.social_status == "student"

    def test_cancelled_payments_not_counted(self, service, schedule, make_member, make_payment):
        member = make_member(household_id="H9")
        make_payment(member, schedule, date(2026, 1, 1), date(2026, 12, 31), status="cancelled")

        assert service.build(member, REFERENCE_DATE).active_household_payments == 0

    def test_future_payment_is_not_first_payment(self, service, schedule, make_member, make_payment):
        member = make_member()
        make_payment(member, schedule, date(2027, 9, 1), date(2028, 8, 31))

        assert service.build(member, REFERENCE_DATE).first_payment_date is None

        make_payment(member, schedule, date(2024, 9, 1), date(2025, 8, 31))
        assert service.build(member, REFERENCE_DATE).first_payment_date == date(2024, 9, 1)

    def test_member_without_commune_or_history(self, service, make_member):
        profile = service.build(make_member(), REFERENCE_DATE)

        assert profile.commune_group_ids == frozenset()
        assert profile.first_payment_date is None
        assert profile.active_household_payments == 0
