"""
End-to-end tests for the fee calculator: simulation and committed payments
"""
from datetime import date
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from membership_fees.components.contracts import (ManualReduction,
                                                   PaymentFields)
from membership_fees.core.errors import (DuplicatePaymentError,
                                         NotApplicableError,
                                         StaleTreeVersionError,
                                         ValidationError)
from membership_fees.models import (AccountingOperation, AgeBracket,
                                    DecisionTree, FeeSchedule, Member,
                                    MembershipPayment, ReductionLineItem)
from membership_fees.services.cotisation_fee_calculator import \
    CotisationFeeCalculator
from membership_fees.services.tree_lifecycle_manager import \
    TreeLifecycleManager

from helpers import (REFERENCE_DATE, branch, fixed, node, percent,
                     record_row_locks)

TREE_NODES = [
    node("age", "AGE", branch("minor", {"operator": "<", "value": 18}, percent(15), label="Under 18")),
    node("loyalty", "FIDELITE", branch("loyal", {"min_years": 5}, fixed(5), label="Five years")),
]


def _locks_total():
    return REGISTRY.get_sample_value("decision_tree_locks_total") or 0.0


@pytest.fixture
def calculator(db):
    return CotisationFeeCalculator(db)


@pytest.fixture
def pricing(db, schedule, income_scale, make_rule, make_tree):
    """100.00 schedule, fixed 70.00 income bracket, -10% legacy rule, age and loyalty tree"""
    make_rule(code="GLOBAL_10", label="Association discount", calc_kind="percentage",
              value=Decimal("10"), application_order=1)
    tree = make_tree(schedule, TREE_NODES)
    return tree


@pytest.fixture
def member(schedule, make_member, make_payment):
    """14 years old, QF 650, first paid in 2020"""
    member = make_member(birth_date=date(2012, 1, 1), income_quotient=650, household_id="H1")
    make_payment(member, schedule, date(2020, 1, 1), date(2020, 12, 31))
    return member


class TestSimulate:

    def test_end_to_end_amounts(self, calculator, pricing, schedule, member):
        result = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)

        assert result.catalog_amount == Decimal("100.00")
        assert result.base_amount == Decimal("70.00")
        assert result.income_bracket.label == "QF 0-800"
        assert result.intermediate_amount == Decimal("63.00")
        assert [line.computed_amount for line in result.tree_reductions] == [Decimal("9.45"), Decimal("5.00")]
        assert result.tree_reduction_total == Decimal("14.45")
        assert result.final_amount == Decimal("48.55")
        assert result.total_reductions == Decimal("21.45")
        assert result.decision_tree.id == pricing.id
        assert [step.branch_id for step in result.matched_path] == ["minor", "loyal"]

    def test_simulate_never_writes(self, db, calculator, pricing, schedule, member):
        payments_before = db.query(MembershipPayment).count()
        calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)

        assert db.query(MembershipPayment).count() == payments_before
        assert not db.get(DecisionTree, pricing.id).locked

    def test_simulate_is_repeatable(self, calculator, pricing, schedule, member):
        first = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)
        second = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)
        assert first.model_dump() == second.model_dump()

    def test_without_tree(self, calculator, schedule, income_scale, member):
        result = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)

        assert result.decision_tree is None
        assert result.final_amount == result.intermediate_amount == Decimal("70.00")

    def test_tree_reductions_are_clamped_at_zero(self, calculator, schedule, member, make_tree):
        make_tree(schedule, [node("all", "AGE", branch("any", {"type": "any"}, fixed(500)))])
        result = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)

        assert result.final_amount == Decimal("0.00")
        assert Decimal("0") <= result.final_amount <= result.intermediate_amount

    def test_malformed_branch_does_not_abort(self, calculator, schedule, member, make_tree):
        make_tree(schedule, [
            node("age", "AGE",
                 branch("broken", {"operator": "between", "min": 3}, percent(50)),
                 branch("minor", {"operator": "<", "value": 18}, fixed(10))),
        ])
        result = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)

        assert result.final_amount == Decimal("90.00")
        assert result.trace[0].branches_tested[0].error

    def test_malformed_nested_structure_does_not_abort(self, calculator, schedule, member, make_tree):
        make_tree(schedule, [
            node("age", "AGE", branch(
                "minor", {"operator": "<", "value": 18}, fixed(10),
                children=[{"id": "income", "kind": "REVENU", "branches": []}]
            )),
            node("status", "STATUT_SOCIAL", {"code": "NO_ID", "condition": {"type": "default"}, "reduction": fixed(50)}),
        ])
        result = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE)

        assert result.final_amount == Decimal("90.00")
        assert result.trace[0].children[0].error
        assert result.trace[1].branches_tested[0].rationale == "Malformed branch skipped"

    def test_age_bracket_amount(self, calculator, schedule, age_brackets, bracket_amount, make_member):
        bracket_amount(schedule, age_brackets["SENIOR"], "60.00")
        senior = make_member(birth_date=date(1950, 5, 5))

        result = calculator.simulate(senior.id, schedule.id, payment_date=REFERENCE_DATE)

        assert result.age_bracket.code == "SENIOR"
        assert result.amount_source == "age_bracket"
        assert result.final_amount == Decimal("60.00")

    def test_unknown_age_uses_standard_bracket(self, calculator, schedule, make_member):
        result = calculator.simulate(make_member().id, schedule.id, payment_date=REFERENCE_DATE)
        assert result.age is None
        assert result.age_bracket.code == "STANDARD"

    def test_not_applicable(self, db, calculator, make_member):
        db.add(AgeBracket(code="ADULTE", label="Adult", min_age=18, max_age=None))
        schedule = FeeSchedule(label="Adults only", base_amount=Decimal("30"))
        db.add(schedule)
        db.commit()
        child = make_member(birth_date=date(2020, 1, 1))

        with pytest.raises(NotApplicableError):
            calculator.simulate(child.id, schedule.id, payment_date=REFERENCE_DATE)

    def test_unknown_member_or_schedule(self, calculator, schedule, member):
        with pytest.raises(ValidationError):
            calculator.simulate(999, schedule.id)
        with pytest.raises(ValidationError):
            calculator.simulate(member.id, 999)

    def test_details(self, calculator, schedule, member):
        result = calculator.simulate(member.id, schedule.id, payment_date=REFERENCE_DATE, include_details=True)
        assert result.details["profile"]["first_payment_date"] == "2020-01-01"

    def test_list_available_schedules(self, db, calculator, schedule, member):
        workshop = FeeSchedule(label="Workshop", base_amount=Decimal("20"))
        db.add_all([workshop, FeeSchedule(label="Inactive", base_amount=Decimal("10"), active=False)])
        db.commit()

        results = calculator.list_available_schedules(member.id, payment_date=REFERENCE_DATE)
        assert [(r.schedule_id, r.final_amount) for r in results] == [
            (schedule.id, Decimal("100.00")),
            (workshop.id, Decimal("20.00")),
        ]


class TestCommit:

    def test_commit_persists_snapshot(self, db, calculator, pricing, schedule, member):
        payment = calculator.commit(member.id, schedule.id, PaymentFields(
            payment_date=REFERENCE_DATE, period_start=REFERENCE_DATE, payment_method="card",
        ))

        assert payment.final_amount == Decimal("48.55")
        assert payment.intermediate_amount == Decimal("63.00")
        assert payment.base_amount == Decimal("70.00")
        assert payment.catalog_amount == Decimal("100.00")
        assert payment.age_snapshot == 14
        assert payment.age_bracket_code_snapshot == "ENFANT"
        assert payment.income_quotient_snapshot == 650
        assert payment.income_bracket_label_snapshot == "QF 0-800"
        assert payment.schedule_label_snapshot == "Annual membership"
        assert payment.decision_tree_id == pricing.id
        assert payment.decision_tree_version == 1
        assert payment.period_end == date(2027, 8, 31)
        assert [step["branch_id"] for step in payment.tree_path_json] == ["minor", "loyal"]

        items = payment.reductions
        assert [item.source_kind for item in items] == ["LEGACY_MANUAL", "TREE_AGE", "TREE_FIDELITE"]
        assert [item.computed_amount for item in items] == [Decimal("7.00"), Decimal("9.45"), Decimal("5.00")]
        assert items[1].calculation_base == Decimal("63.00")
        assert items[1].decision_tree_id == pricing.id

    def test_commit_locks_tree_and_extends_membership(self, db, calculator, pricing, schedule, member):
        calculator.commit(member.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))

        assert db.get(DecisionTree, pricing.id).locked
        assert db.get(Member, member.id).membership_end_date == date(2027, 8, 31)

    def test_snapshot_survives_configuration_changes(self, db, calculator, pricing, schedule, member, income_scale):
        payment = calculator.commit(member.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))

        schedule.base_amount = Decimal("500.00")
        schedule.label = "Renamed"
        income_scale.brackets[0].value = Decimal("1.00")
        db.commit()

        stored = db.get(MembershipPayment, payment.id)
        assert stored.final_amount == Decimal("48.55")
        assert stored.schedule_label_snapshot == "Annual membership"
        summary = calculator.get_reduction_summary(payment.id)
        assert summary["final_amount"] == "48.55"
        assert len(summary["reductions"]["tree"]) == 2
        assert len(summary["reductions"]["legacy"]) == 1

    def test_repeated_commit_is_rejected(self, db, calculator, pricing, schedule, member):
        fields = PaymentFields(period_start=REFERENCE_DATE)
        calculator.commit(member.id, schedule.id, fields)

        with pytest.raises(DuplicatePaymentError):
            calculator.commit(member.id, schedule.id, fields)
        assert db.query(MembershipPayment).filter(MembershipPayment.period_start == REFERENCE_DATE).count() == 1

    def test_two_commits_on_unlocked_tree_lock_once(self, db, calculator, pricing, schedule, member, make_member):
        other = make_member(birth_date=date(1990, 1, 1), income_quotient=650)
        before = _locks_total()

        first = calculator.commit(member.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))
        second = calculator.commit(other.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))

        assert _locks_total() - before == 1
        assert first.decision_tree_version == second.decision_tree_version == 1
        assert first.final_amount == Decimal("48.55")
        assert second.final_amount == Decimal("63.00")

    def test_stale_tree_version_is_rejected(self, db, calculator, pricing, schedule, member, make_member):
        other = make_member(birth_date=date(1990, 1, 1))
        calculator.commit(other.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))
        TreeLifecycleManager(db).duplicate(pricing.id)

        with pytest.raises(StaleTreeVersionError) as exc_info:
            calculator.commit(member.id, schedule.id, PaymentFields(
                period_start=REFERENCE_DATE, expected_tree_version=1
            ))
        assert exc_info.value.metadata["current_version"] == 2
        assert db.query(MembershipPayment).filter(MembershipPayment.member_id == member.id).count() == 1

    def test_commit_after_duplicate_uses_new_version(self, db, calculator, pricing, schedule, member, make_member):
        other = make_member(birth_date=date(1990, 1, 1))
        calculator.commit(other.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))
        copy = TreeLifecycleManager(db).duplicate(pricing.id)

        payment = calculator.commit(member.id, schedule.id, PaymentFields(
            period_start=REFERENCE_DATE, expected_tree_version=2
        ))

        assert payment.decision_tree_id == copy.id
        assert payment.decision_tree_version == 2
        historical = db.query(MembershipPayment).filter(MembershipPayment.member_id == other.id).one()
        assert historical.decision_tree_id == pricing.id

    def test_failed_commit_writes_nothing(self, db, calculator, pricing, schedule, make_member):
        db.add(AgeBracket(code="ONLY_ADULTS", label="Adults", min_age=18, priority=1, structure_id=5))
        db.commit()
        member = make_member(birth_date=date(2020, 1, 1))
        scoped = FeeSchedule(label="Scoped", base_amount=Decimal("10"), structure_id=5)
        db.add(scoped)
        db.commit()
        db.query(AgeBracket).filter(AgeBracket.structure_id.is_(None)).update({"active": False})
        db.commit()

        with pytest.raises(NotApplicableError):
            calculator.commit(member.id, scoped.id, PaymentFields(period_start=REFERENCE_DATE))

        assert db.query(MembershipPayment).filter(MembershipPayment.member_id == member.id).count() == 0
        assert db.query(ReductionLineItem).count() == 0
        assert db.get(Member, member.id).membership_end_date is None

    def test_schedule_row_locked_before_current_tree(self, calculator, pricing, schedule, member, monkeypatch):
        locks = record_row_locks(calculator.trees, monkeypatch)

        calculator.commit(member.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))

        assert locks == [("schedule", schedule.id), ("current_tree", schedule.id), ("tree", pricing.id)]

    def test_line_items_carry_accounting_operations(self, db, calculator, schedule, member, make_rule, make_tree):
        fees = AccountingOperation(code="RED_ASSO", label="Association discounts", account_number="709100")
        youth = AccountingOperation(code="RED_JEUNES", label="Youth discounts", account_number="709200")
        db.add_all([fees, youth])
        db.commit()
        make_rule(code="GLOBAL_10", calc_kind="percentage", value=Decimal("10"), operation_id=fees.id)
        make_tree(schedule, [node("age", "AGE", branch(
            "minor", {"operator": "<", "value": 18},
            {"calc_kind": "fixed", "value": 5, "operation_id": youth.id}
        ))])

        payment = calculator.commit(member.id, schedule.id, PaymentFields(
            period_start=REFERENCE_DATE,
            manual_reductions=[ManualReduction(label="Volunteer", value=Decimal("2"), operation_id=fees.id)],
        ))

        assert [(item.source_kind, item.operation_id) for item in payment.reductions] == [
            ("LEGACY_MANUAL", fees.id), ("TREE_AGE", youth.id), ("MANUAL", fees.id),
        ]
        summary = calculator.get_reduction_summary(payment.id)
        assert summary["reductions"]["tree"][0]["operation_id"] == youth.id

    def test_unknown_member(self, calculator, schedule):
        with pytest.raises(ValidationError):
            calculator.commit(12345, schedule.id)

    def test_manual_reductions(self, calculator, pricing, schedule, member):
        payment = calculator.commit(member.id, schedule.id, PaymentFields(
            period_start=REFERENCE_DATE,
            manual_reductions=[
                ManualReduction(label="Volunteer", calc_kind="percentage", value=Decimal("10")),
                ManualReduction(label="Goodwill", value=Decimal("100")),
            ],
        ))

        manual = [item for item in payment.reductions if item.source_kind == "MANUAL"]
        # 10% of 48.55, then the rest clamped to what is left
        assert [item.computed_amount for item in manual] == [Decimal("4.86"), Decimal("43.69")]
        assert payment.final_amount == Decimal("0.00")

    def test_invalid_period(self, calculator, schedule, member):
        with pytest.raises(ValidationError):
            calculator.commit(member.id, schedule.id, PaymentFields(
                period_start=date(2026, 9, 1), period_end=date(2026, 8, 1)
            ))

    def test_loyalty_counts_from_first_payment(self, calculator, pricing, schedule, make_member):
        newcomer = make_member(birth_date=date(2012, 1, 1), income_quotient=650)
        first = calculator.commit(newcomer.id, schedule.id, PaymentFields(period_start=REFERENCE_DATE))
        # 15% of 63.00 only: no loyalty yet
        assert first.final_amount == Decimal("53.55")

        later = calculator.simulate(newcomer.id, schedule.id, payment_date=date(2031, 9, 2))
        assert "loyal" in [step.branch_id for step in later.matched_path]

    def test_unknown_payment_summary(self, calculator):
        with pytest.raises(ValidationError):
            calculator.get_reduction_summary(77)
