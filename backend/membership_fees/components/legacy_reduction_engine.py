"""
Legacy Reduction Engine component.

Role: apply the flat, ordered reduction rules that predate decision trees.

Unlike the tree, rules compound: each one is computed on the running amount
left by the rules before it, and the running amount never goes below zero.
"""

from __future__ import annotations

from typing import Any, List, Sequence

from membership_fees.components.conditions import parse_condition
from membership_fees.components.contracts import (EvaluationContext,
                                                   LegacyEvaluation,
                                                   LegacyRuleSpec,
                                                   LegacyRuleTrace,
                                                   MemberProfile,
                                                   ReductionLine)
from membership_fees.core.errors import MatcherError
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.utils import ZERO, percentage_of, to_money

logger = LoggingConfig.get_logger(__name__)


class LegacyReductionEngine:
    """Compounding reductions applied in application order before the decision tree"""

    def apply(
        self,
        base_amount: Any,
        rules: Sequence[LegacyRuleSpec],
        profile: MemberProfile,
        ctx: EvaluationContext,
    ) -> LegacyEvaluation:
        starting = to_money(base_amount)
        running = starting
        line_items: List[ReductionLine] = []
        trace: List[LegacyRuleTrace] = []

        for rule in sorted(rules, key=lambda r: r.application_order):
            applies, rationale = self._applies(rule, profile, ctx)
            trace.append(LegacyRuleTrace(rule_id=rule.id, code=rule.code, applied=applies, rationale=rationale))
            if not applies:
                continue

            if rule.calc_kind == "percentage":
                amount = percentage_of(running, rule.value)
            else:
                amount = to_money(rule.value)
            amount = min(amount, running)

            line_items.append(ReductionLine(
                source_kind=f"LEGACY_{rule.source_kind.upper()}",
                label=rule.label or rule.code,
                calc_kind=rule.calc_kind,
                value=rule.value,
                computed_amount=amount,
                calculation_base=running,
                rule_id=rule.id,
                operation_id=rule.operation_id,
            ))
            running = to_money(running - amount)

        return LegacyEvaluation(
            starting_amount=starting,
            final_amount=running,
            total_reduction=to_money(starting - running),
            line_items=line_items,
            trace=trace,
        )

    @staticmethod
    def _applies(rule: LegacyRuleSpec, profile: MemberProfile, ctx: EvaluationContext):
        if rule.condition_kind is None:
            return True, "Unconditional rule"
        try:
            result = parse_condition(rule.condition_kind, rule.condition).match(profile, ctx)
        except MatcherError as e:
            logger.warning(
                "Skipping legacy rule with malformed condition",
                extra={"rule_id": rule.id, "rule_code": rule.code, "error": e.message}
            )
            return False, f"Malformed condition: {e.message}"
        return result.matched, result.rationale


def rules_from_models(rows: Sequence[Any]) -> List[LegacyRuleSpec]:
    """Snapshot LegacyReductionRule rows into immutable rule specs"""
    return [
        LegacyRuleSpec(
            id=row.id,
            code=row.code,
            label=row.label,
            source_kind=row.source_kind or "manual",
            condition_kind=row.condition_kind or None,
            condition=row.condition_json,
            calc_kind=row.calc_kind,
            value=row.value if row.value is not None else ZERO,
            application_order=row.application_order if row.application_order is not None else 100,
            operation_id=row.operation_id,
        )
        for row in rows
    ]
