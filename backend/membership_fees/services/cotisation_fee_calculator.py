"""
Cotisation Fee Calculator: orchestrates the full membership fee pipeline

age -> age bracket -> catalog amount -> income bracket -> legacy rules ->
decision tree -> final amount
"""
import time
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from membership_fees.components.contracts import (EvaluationContext,
                                                   FeeSimulation,
                                                   ManualReduction,
                                                   PaymentFields,
                                                   ReductionLine, TreeRef)
from membership_fees.components.decision_tree_evaluator import \
    DecisionTreeEvaluator
from membership_fees.components.legacy_reduction_engine import (
    LegacyReductionEngine, rules_from_models)
from membership_fees.core.config import Settings, get_settings
from membership_fees.core.errors import (ConflictError, DuplicatePaymentError,
                                         FeeEngineError, NotApplicableError,
                                         StaleTreeVersionError,
                                         ValidationError)
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.metrics import (fee_calculation_duration_seconds,
                                          fee_commits_total,
                                          fee_simulations_total)
from membership_fees.core.utils import (ZERO, add_months, calculate_age,
                                        percentage_of, to_money)
from membership_fees.models.decision_tree import DecisionTree
from membership_fees.models.fee_schedule import FeeSchedule
from membership_fees.models.legacy_rule import LegacyReductionRule
from membership_fees.models.member import Member
from membership_fees.models.payment import (MembershipPayment,
                                            ReductionLineItem)
from membership_fees.services.income_quotient_service import \
    IncomeQuotientService
from membership_fees.services.member_profile_service import \
    MemberProfileService
from membership_fees.services.quotient_familial_resolver import (
    IncomeBracketCache, QuotientFamilialResolver)
from membership_fees.services.tariff_resolver import TariffResolver
from membership_fees.services.tree_lifecycle_manager import \
    TreeLifecycleManager

logger = LoggingConfig.get_logger(__name__)


class CotisationFeeCalculator:
    """
    Fee calculator with:
    - simulate(): read-only pricing, safe to retry
    - commit(): the same pricing persisted as an immutable payment snapshot,
      in one transaction that also locks the decision tree used
    """

    def __init__(
        self,
        db: Session,
        income_cache: Optional[IncomeBracketCache] = None,
        settings: Optional[Settings] = None,
        evaluator: Optional[DecisionTreeEvaluator] = None,
        legacy_engine: Optional[LegacyReductionEngine] = None,
    ):
        """
        Initialize the calculator

        Args:
            db: Database session
            income_cache: Shared income bracket cache (no caching when None)
            settings: Settings (defaults to get_settings())
            evaluator: Decision tree evaluator
            legacy_engine: Legacy reduction engine
        """
        self.db = db
        self.settings = settings or get_settings()
        self.evaluator = evaluator or DecisionTreeEvaluator(self.settings.decision_tree_max_depth)
        self.legacy_engine = legacy_engine or LegacyReductionEngine()
        self.income_quotients = IncomeQuotientService(db)
        self.profiles = MemberProfileService(db, self.income_quotients)
        self.tariffs = TariffResolver(db, self.settings.standard_age_bracket_code)
        self.income_brackets = QuotientFamilialResolver(db, cache=income_cache)
        self.trees = TreeLifecycleManager(db, self.evaluator)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def simulate(
        self,
        member_id: int,
        schedule_id: int,
        payment_date: Optional[date] = None,
        structure_id: Optional[int] = None,
        include_details: bool = False
    ) -> FeeSimulation:
        """
        Price a schedule for a member without writing anything

        Args:
            member_id: Member id
            schedule_id: Fee schedule id
            payment_date: Reference date (defaults to today)
            structure_id: Structure scope for brackets and rules
            include_details: Attach the member profile used

        Returns:
            FeeSimulation

        Raises:
            ValidationError: unknown member or schedule, malformed tree
            NotApplicableError: the schedule cannot be priced for this member
        """
        started = time.perf_counter()
        try:
            with LoggingConfig.context(operation="simulate", member_id=member_id, schedule_id=schedule_id):
                member = self._get_member(member_id)
                schedule = self._get_schedule(schedule_id)
                tree = self.trees.get_current_for_schedule(schedule_id)
                result = self._calculate(
                    member, schedule, payment_date or date.today(), structure_id, tree, include_details
                )
        except NotApplicableError:
            fee_simulations_total.labels(outcome="not_applicable").inc()
            raise
        except FeeEngineError:
            fee_simulations_total.labels(outcome="invalid").inc()
            raise
        finally:
            fee_calculation_duration_seconds.labels(operation="simulate").observe(time.perf_counter() - started)

        fee_simulations_total.labels(outcome="success").inc()
        return result

    def list_available_schedules(
        self,
        member_id: int,
        structure_id: Optional[int] = None,
        payment_date: Optional[date] = None
    ) -> List[FeeSimulation]:
        """
        Simulate every active schedule of a structure for a member

        Schedules that cannot be priced for this member are left out.
        """
        member = self._get_member(member_id)
        payment_date = payment_date or date.today()

        query = self.db.query(FeeSchedule).filter(FeeSchedule.active.is_(True))
        if structure_id is not None:
            query = query.filter(or_(FeeSchedule.structure_id == structure_id, FeeSchedule.structure_id.is_(None)))

        results = []
        for schedule in query.order_by(FeeSchedule.label, FeeSchedule.id).all():
            tree = self.trees.get_current_for_schedule(schedule.id)
            try:
                results.append(self._calculate(member, schedule, payment_date, structure_id, tree))
            except NotApplicableError as e:
                logger.debug(
                    "Schedule not applicable for member",
                    extra={"member_id": member.id, "schedule_id": schedule.id, "reason": e.message}
                )
        return results

    def _calculate(
        self,
        member: Member,
        schedule: FeeSchedule,
        reference_date: date,
        structure_id: Optional[int],
        tree: Optional[DecisionTree],
        include_details: bool = False
    ) -> FeeSimulation:
        if structure_id is None:
            structure_id = schedule.structure_id

        age = calculate_age(member.birth_date, reference_date)
        tariff = self.tariffs.resolve(schedule, age, structure_id)

        income_quotient = self.income_quotients.get_value_at(member, reference_date)
        base_amount, income_bracket = self.income_brackets.resolve(
            income_quotient.value, tariff.catalog_amount, tariff.age_bracket.id, structure_id
        )

        profile = self.profiles.build(member, reference_date, income_quotient)

        legacy = self.legacy_engine.apply(
            base_amount,
            rules_from_models(self._legacy_rules(structure_id)),
            profile,
            EvaluationContext(reference_base_amount=base_amount, payment_date=reference_date),
        )
        intermediate = legacy.final_amount

        tree_ref = None
        tree_lines: List[ReductionLine] = []
        tree_total = ZERO
        matched_path, trace = [], []
        if tree is not None and tree.nodes:
            evaluation = self.evaluator.evaluate(
                tree.nodes,
                profile,
                EvaluationContext(reference_base_amount=intermediate, payment_date=reference_date),
            )
            tree_ref = TreeRef(
                id=tree.id,
                version=tree.version,
                locked=bool(tree.locked),
                display_mode=tree.display_mode,
            )
            tree_lines = evaluation.line_items
            tree_total = evaluation.total_reduction
            matched_path, trace = evaluation.matched_path, evaluation.trace

        final_amount = max(ZERO, to_money(intermediate - tree_total))

        logger.debug(
            "Fee calculated",
            extra={
                "member_id": member.id,
                "schedule_id": schedule.id,
                "catalog_amount": str(tariff.catalog_amount),
                "base_amount": str(base_amount),
                "intermediate_amount": str(intermediate),
                "final_amount": str(final_amount),
            }
        )

        return FeeSimulation(
            member_id=member.id,
            schedule_id=schedule.id,
            schedule_label=schedule.label,
            structure_id=structure_id,
            payment_date=reference_date,
            age=age,
            age_bracket=tariff.age_bracket,
            amount_source=tariff.source,
            income_quotient=income_quotient.value,
            income_quotient_source=income_quotient.source,
            income_bracket=income_bracket,
            commune_id=member.commune_id,
            catalog_amount=tariff.catalog_amount,
            base_amount=base_amount,
            intermediate_amount=intermediate,
            legacy_reductions=legacy.line_items,
            tree_reductions=tree_lines,
            tree_reduction_total=tree_total,
            total_reductions=to_money(legacy.total_reduction + tree_total),
            final_amount=final_amount,
            decision_tree=tree_ref,
            matched_path=matched_path,
            trace=trace,
            legacy_trace=legacy.trace,
            details={"profile": profile.model_dump(mode="json")} if include_details else None,
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(
        self,
        member_id: int,
        schedule_id: int,
        payment_fields: Optional[PaymentFields] = None
    ) -> MembershipPayment:
        """
        Price and persist a payment in a single transaction

        Row locks are taken on the member and on the schedule's current tree,
        so concurrent commits serialize on the lock transition. Any error rolls
        back everything: no payment row, no line items, no tree lock.

        Args:
            member_id: Member id
            schedule_id: Fee schedule id
            payment_fields: Period, payment details, optional expected tree
                version and manual reductions

        Returns:
            The persisted MembershipPayment

        Raises:
            ValidationError: unknown member or schedule, bad period
            NotApplicableError: the schedule cannot be priced for this member
            StaleTreeVersionError: expected_tree_version is no longer current
            DuplicatePaymentError: same member, schedule and period already billed
        """
        fields = payment_fields or PaymentFields()
        started = time.perf_counter()
        try:
            with LoggingConfig.context(operation="commit", member_id=member_id, schedule_id=schedule_id):
                payment = self._commit(member_id, schedule_id, fields)
        except ConflictError:
            self.db.rollback()
            fee_commits_total.labels(status="conflict").inc()
            raise
        except FeeEngineError:
            self.db.rollback()
            fee_commits_total.labels(status="failed").inc()
            raise
        except IntegrityError as e:
            self.db.rollback()
            fee_commits_total.labels(status="conflict").inc()
            logger.warning(
                "Payment commit hit a constraint violation",
                extra={"member_id": member_id, "schedule_id": schedule_id, "error": str(e.orig)}
            )
            raise DuplicatePaymentError(
                "A concurrent commit already billed this member for this period",
                {"member_id": member_id, "schedule_id": schedule_id}
            ) from e
        except Exception:
            self.db.rollback()
            fee_commits_total.labels(status="failed").inc()
            logger.error(
                "Payment commit failed",
                exc_info=True,
                extra={"member_id": member_id, "schedule_id": schedule_id}
            )
            raise
        finally:
            fee_calculation_duration_seconds.labels(operation="commit").observe(time.perf_counter() - started)

        fee_commits_total.labels(status="success").inc()
        return payment

    def _commit(self, member_id: int, schedule_id: int, fields: PaymentFields) -> MembershipPayment:
        member = self._get_member(member_id, for_update=True)
        # schedule row before its current tree, same order as duplicate() and delete()
        schedule = self._get_schedule(schedule_id, for_update=True)
        tree = self.trees.get_current_for_schedule(schedule_id, for_update=True)

        if fields.expected_tree_version is not None:
            current_version = tree.version if tree is not None else None
            if current_version != fields.expected_tree_version:
                raise StaleTreeVersionError(
                    f"Decision tree version {fields.expected_tree_version} is no longer current",
                    {
                        "schedule_id": schedule_id,
                        "expected_version": fields.expected_tree_version,
                        "current_version": current_version,
                    }
                )

        payment_date = fields.payment_date or date.today()
        period_start = fields.period_start or payment_date
        months = schedule.duration_months or self.settings.default_membership_months
        period_end = fields.period_end or (add_months(period_start, months) - timedelta(days=1))
        if period_end < period_start:
            raise ValidationError(
                "Payment period ends before it starts",
                {"period_start": period_start.isoformat(), "period_end": period_end.isoformat()}
            )

        existing = self.db.query(MembershipPayment.id).filter(
            MembershipPayment.member_id == member.id,
            MembershipPayment.schedule_id == schedule.id,
            MembershipPayment.period_start == period_start
        ).first()
        if existing is not None:
            raise DuplicatePaymentError(
                f"Member {member.id} already has a payment for schedule {schedule.id} "
                f"starting {period_start.isoformat()}",
                {"member_id": member.id, "schedule_id": schedule.id, "payment_id": existing[0]}
            )

        simulation = self._calculate(member, schedule, period_start, fields.structure_id, tree)
        manual_lines, final_amount = self._apply_manual_reductions(simulation.final_amount, fields.manual_reductions)
        total_reductions = to_money(simulation.total_reductions + sum(
            (line.computed_amount for line in manual_lines), ZERO
        ))

        payment = MembershipPayment(
            member_id=member.id,
            schedule_id=schedule.id,
            structure_id=simulation.structure_id,
            period_start=period_start,
            period_end=period_end,
            payment_date=payment_date,
            payment_method=fields.payment_method,
            payment_reference=fields.payment_reference,
            notes=fields.notes,
            status="active",
            catalog_amount=simulation.catalog_amount,
            base_amount=simulation.base_amount,
            intermediate_amount=simulation.intermediate_amount,
            total_reductions=total_reductions,
            final_amount=final_amount,
            schedule_label_snapshot=simulation.schedule_label,
            age_snapshot=simulation.age,
            age_bracket_id_snapshot=simulation.age_bracket.id if simulation.age_bracket else None,
            age_bracket_code_snapshot=simulation.age_bracket.code if simulation.age_bracket else None,
            income_quotient_snapshot=simulation.income_quotient,
            income_bracket_id_snapshot=simulation.income_bracket.bracket_id if simulation.income_bracket else None,
            income_bracket_label_snapshot=simulation.income_bracket.label if simulation.income_bracket else None,
            commune_id_snapshot=simulation.commune_id,
            decision_tree_id=simulation.decision_tree.id if simulation.decision_tree else None,
            decision_tree_version=simulation.decision_tree.version if simulation.decision_tree else None,
            tree_path_json=[step.model_dump(mode="json") for step in simulation.matched_path],
            tree_trace_json=[node.model_dump(mode="json") for node in simulation.trace],
            calculation_detail_json=self._calculation_detail(simulation),
            created_by=fields.created_by,
        )
        self.db.add(payment)
        self.db.flush()

        lines = [*simulation.legacy_reductions, *simulation.tree_reductions, *manual_lines]
        for order, line in enumerate(lines, start=1):
            self.db.add(ReductionLineItem(
                payment_id=payment.id,
                source_kind=line.source_kind,
                rule_id=line.rule_id,
                decision_tree_id=simulation.decision_tree.id if line.source_kind.startswith("TREE_") else None,
                branch_code=line.branch_code,
                label=line.label,
                calc_kind=line.calc_kind,
                value=line.value,
                computed_amount=line.computed_amount,
                calculation_base=line.calculation_base,
                application_order=order,
                operation_id=line.operation_id,
                context_json={"node_id": line.node_id, "branch_id": line.branch_id} if line.node_id else None,
            ))

        if member.membership_end_date is None or period_end > member.membership_end_date:
            member.membership_end_date = period_end

        if simulation.decision_tree is not None:
            self.trees.lock(simulation.decision_tree.id, autocommit=False)

        self.db.commit()
        self.db.refresh(payment)

        logger.info(
            "Membership payment committed",
            extra={
                "payment_id": payment.id,
                "member_id": member.id,
                "schedule_id": schedule.id,
                "final_amount": str(payment.final_amount),
                "decision_tree_id": payment.decision_tree_id,
                "decision_tree_version": payment.decision_tree_version,
            }
        )
        return payment

    @staticmethod
    def _apply_manual_reductions(computed_final, reductions: List[ManualReduction]):
        lines, running = [], computed_final
        for reduction in reductions:
            if reduction.calc_kind == "percentage":
                amount = percentage_of(computed_final, reduction.value)
            else:
                amount = to_money(reduction.value)
            amount = min(amount, running)
            lines.append(ReductionLine(
                source_kind="MANUAL",
                label=reduction.label,
                calc_kind=reduction.calc_kind,
                value=reduction.value,
                computed_amount=amount,
                calculation_base=computed_final,
                operation_id=reduction.operation_id,
            ))
            running = to_money(running - amount)
        return lines, running

    @staticmethod
    def _calculation_detail(simulation: FeeSimulation) -> Dict[str, Any]:
        return simulation.model_dump(
            mode="json",
            include={
                "age", "age_bracket", "amount_source", "income_quotient", "income_quotient_source",
                "income_bracket", "catalog_amount", "base_amount", "intermediate_amount",
                "tree_reduction_total", "total_reductions", "final_amount", "decision_tree",
                "legacy_trace",
            }
        )

    # ------------------------------------------------------------------
    # Read back
    # ------------------------------------------------------------------

    def get_reduction_summary(self, payment_id: int) -> Dict[str, Any]:
        """
        Reductions of a stored payment, grouped by origin, from its snapshot only

        Raises:
            ValidationError: unknown payment
        """
        payment = self.db.query(MembershipPayment).filter(MembershipPayment.id == payment_id).first()
        if payment is None:
            raise ValidationError(f"Payment {payment_id} not found", {"payment_id": payment_id})

        groups: Dict[str, List[Dict[str, Any]]] = {"legacy": [], "tree": [], "manual": []}
        for item in payment.reductions:
            if item.source_kind.startswith("TREE_"):
                groups["tree"].append(item.to_dict())
            elif item.source_kind == "MANUAL":
                groups["manual"].append(item.to_dict())
            else:
                groups["legacy"].append(item.to_dict())

        return {
            "payment_id": payment.id,
            "schedule_label": payment.schedule_label_snapshot,
            "catalog_amount": str(payment.catalog_amount),
            "base_amount": str(payment.base_amount),
            "intermediate_amount": str(payment.intermediate_amount),
            "total_reductions": str(payment.total_reductions),
            "final_amount": str(payment.final_amount),
            "decision_tree_id": payment.decision_tree_id,
            "decision_tree_version": payment.decision_tree_version,
            "matched_path": payment.tree_path_json or [],
            "reductions": groups,
        }

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_member(self, member_id: int, for_update: bool = False) -> Member:
        query = self.db.query(Member).filter(Member.id == member_id)
        if for_update:
            query = query.with_for_update()
        member = query.first()
        if member is None:
            raise ValidationError(f"Member {member_id} not found", {"member_id": member_id})
        return member

    def _get_schedule(self, schedule_id: int, for_update: bool = False) -> FeeSchedule:
        if for_update:
            schedule = self.trees.lock_schedule(schedule_id)
        else:
            schedule = self.db.query(FeeSchedule).filter(FeeSchedule.id == schedule_id).first()
        if schedule is None:
            raise ValidationError(f"Fee schedule {schedule_id} not found", {"schedule_id": schedule_id})
        if not schedule.active:
            raise ValidationError(f"Fee schedule {schedule_id} is inactive", {"schedule_id": schedule_id})
        return schedule

    def _legacy_rules(self, structure_id: Optional[int]) -> List[LegacyReductionRule]:
        query = self.db.query(LegacyReductionRule).filter(LegacyReductionRule.active.is_(True))
        if structure_id is not None:
            query = query.filter(or_(
                LegacyReductionRule.structure_id == structure_id,
                LegacyReductionRule.structure_id.is_(None)
            ))
        else:
            query = query.filter(LegacyReductionRule.structure_id.is_(None))
        return query.order_by(LegacyReductionRule.application_order, LegacyReductionRule.id).all()
