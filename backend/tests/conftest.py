"""
Pytest configuration and fixtures
"""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import membership_fees.models  # noqa: F401
from membership_fees.components.contracts import (EvaluationContext,
                                                   MemberProfile)
from membership_fees.core.database import Base, build_engine
from membership_fees.models import (AgeBracket, DecisionTree, FeeSchedule,
                                    FeeScheduleBracketAmount, IncomeBracket,
                                    IncomeBracketConfig, LegacyReductionRule,
                                    Member, MembershipPayment)

from helpers import REFERENCE_DATE


@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite engine with a fresh schema for each test"""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Session:
    """Create a database session for testing"""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ctx():
    """Evaluation context with a 100.00 reference base"""
    return EvaluationContext(reference_base_amount=Decimal("100.00"), payment_date=REFERENCE_DATE)


@pytest.fixture
def profile():
    """A 14 year old member with a six year membership history"""
    return MemberProfile(
        member_id=1,
        birth_date=date(2012, 1, 1),
        household_id="H1",
        commune_id=10,
        commune_group_ids=frozenset({3}),
        income_quotient=650,
        social_status="student",
        first_payment_date=date(2020, 1, 1),
        active_household_payments=2,
    )


@pytest.fixture
def age_brackets(db):
    """Child, adult, senior and the standard fallback bracket"""
    brackets = {
        "ENFANT": AgeBracket(code="ENFANT", label="Child", min_age=0, max_age=17, priority=10),
        "ADULTE": AgeBracket(code="ADULTE", label="Adult", min_age=18, max_age=64, priority=20),
        "SENIOR": AgeBracket(code="SENIOR", label="Senior", min_age=65, max_age=None, priority=30),
        "STANDARD": AgeBracket(code="STANDARD", label="Standard", min_age=None, max_age=None, priority=100),
    }
    db.add_all(brackets.values())
    db.commit()
    return brackets


@pytest.fixture
def schedule(db, age_brackets):
    """Yearly schedule at 100.00"""
    schedule = FeeSchedule(label="Annual membership", base_amount=Decimal("100.00"), duration_months=12)
    db.add(schedule)
    db.commit()
    return schedule


@pytest.fixture
def make_member(db):
    def _make(**kwargs):
        kwargs.setdefault("last_name", "Martin")
        member = Member(**kwargs)
        db.add(member)
        db.commit()
        return member
    return _make


@pytest.fixture
def make_payment(db):
    """Insert a historical payment row directly"""
    def _make(member, schedule, period_start, period_end, status="active", amount="50.00"):
        payment = MembershipPayment(
            member_id=member.id,
            schedule_id=schedule.id,
            period_start=period_start,
            period_end=period_end,
            payment_date=period_start,
            status=status,
            catalog_amount=Decimal(amount),
            base_amount=Decimal(amount),
            intermediate_amount=Decimal(amount),
            total_reductions=Decimal("0.00"),
            final_amount=Decimal(amount),
        )
        db.add(payment)
        db.commit()
        return payment
    return _make


@pytest.fixture
def income_scale(db):
    """Default scale: 0-800 pays a fixed 70.00, 801-1200 pays 85%, above is unchanged"""
    config = IncomeBracketConfig(code="QF_2026", label="QF 2026", active=True, is_default=True)
    config.brackets = [
        IncomeBracket(label="QF 0-800", min_value=0, max_value=800, calc_kind="fixed",
                      value=Decimal("70.00"), position=1),
        IncomeBracket(label="QF 801-1200", min_value=801, max_value=1200, calc_kind="percentage",
                      value=Decimal("85"), position=2),
    ]
    db.add(config)
    db.commit()
    return config


@pytest.fixture
def make_rule(db):
    def _make(**kwargs):
        kwargs.setdefault("label", kwargs.get("code", "rule"))
        rule = LegacyReductionRule(**kwargs)
        db.add(rule)
        db.commit()
        return rule
    return _make


@pytest.fixture
def make_tree(db):
    def _make(schedule, nodes, **kwargs):
        tree = DecisionTree(schedule_id=schedule.id, nodes=nodes, **kwargs)
        db.add(tree)
        db.commit()
        return tree
    return _make


@pytest.fixture
def bracket_amount(db):
    def _make(schedule, age_bracket, amount):
        row = FeeScheduleBracketAmount(schedule_id=schedule.id, age_bracket_id=age_bracket.id,
                                       base_amount=Decimal(amount))
        db.add(row)
        db.commit()
        return row
    return _make
