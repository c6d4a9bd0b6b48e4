"""
Condition matchers component.

Role: decide whether a member profile satisfies one branch condition of a
decision node, and say why.

Each condition kind is a small immutable model with a single
match(profile, ctx) operation. Descriptors stored as JSON are turned into
these models by parse_condition(); anything it cannot interpret raises
MatcherError so the caller can disable that single branch.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from membership_fees.components.contracts import (ConditionKind,
                                                   EvaluationContext,
                                                   MatchResult, MemberProfile)
from membership_fees.core.errors import MatcherError
from membership_fees.core.utils import calculate_age, whole_years_since

DEFAULT_CONDITION_TYPES = frozenset({"default", "any", "autre"})


def _fmt(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value)


def _within(value: float, low: Optional[float], high: Optional[float]) -> bool:
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def _describe_range(low: Optional[float], high: Optional[float]) -> str:
    if low is not None and high is not None:
        return f"[{_fmt(low)}, {_fmt(high)}]"
    if low is not None:
        return f">= {_fmt(low)}"
    return f"<= {_fmt(high)}"


class _Condition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:  # pragma: no cover
        raise NotImplementedError


class DefaultCondition(_Condition):
    """Catch-all branch ("default", "any" or "autre"): always matches"""
    kind: Literal["default"] = "default"

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:
        return MatchResult(matched=True, rationale="Default branch")


class CommuneCondition(_Condition):
    """Commune of residence: a commune group, an explicit list, or one commune"""
    kind: Literal["COMMUNE"] = "COMMUNE"
    group_id: Optional[int] = None
    commune_ids: Optional[List[int]] = None
    commune_id: Optional[int] = None

    @model_validator(mode="after")
    def check_exactly_one_target(self):
        given = [v for v in (self.group_id, self.commune_ids, self.commune_id) if v is not None]
        if len(given) != 1:
            raise ValueError("COMMUNE condition needs exactly one of group_id, commune_ids, commune_id")
        return self

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:
        if profile.commune_id is None:
            return MatchResult(matched=False, rationale="No commune of residence")

        if self.group_id is not None:
            matched = self.group_id in profile.commune_group_ids
            verb = "belongs" if matched else "does not belong"
            return MatchResult(
                matched=matched,
                rationale=f"Commune {profile.commune_id} {verb} to group {self.group_id}"
            )

        if self.commune_ids is not None:
            matched = profile.commune_id in self.commune_ids
            verb = "is" if matched else "is not"
            return MatchResult(
                matched=matched,
                rationale=f"Commune {profile.commune_id} {verb} in {sorted(self.commune_ids)}"
            )

        matched = profile.commune_id == self.commune_id
        return MatchResult(
            matched=matched,
            rationale=f"Commune {profile.commune_id} {'==' if matched else '!='} {self.commune_id}"
        )


class IncomeQuotientCondition(_Condition):
    """Income quotient within inclusive bounds"""
    kind: Literal["QF"] = "QF"
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min is None and self.max is None:
            raise ValueError("QF condition needs min and/or max")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("QF condition has min > max")
        return self

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:
        qf = profile.income_quotient
        if qf is None:
            return MatchResult(matched=False, rationale="No income quotient on file")
        matched = _within(qf, self.min, self.max)
        return MatchResult(
            matched=matched,
            rationale=f"QF {_fmt(qf)} {'in' if matched else 'not in'} {_describe_range(self.min, self.max)}"
        )


AgeOperator = Literal["<", "<=", ">", ">=", "=", "between"]


class AgeCondition(_Condition):
    """
    Age at the payment date, birthday-exact.

    Either an operator with a value ("<", "<=", ">", ">=", "="), "between"
    with min and max, or bare min/max bounds.
    """
    kind: Literal["AGE"] = "AGE"
    operator: Optional[AgeOperator] = None
    value: Optional[int] = None
    min: Optional[int] = None
    max: Optional[int] = None

    @model_validator(mode="after")
    def check_shape(self):
        if self.operator is None or self.operator == "between":
            if self.min is None and self.max is None:
                raise ValueError("AGE range condition needs min and/or max")
            if self.operator == "between" and (self.min is None or self.max is None):
                raise ValueError("AGE 'between' needs both min and max")
        elif self.value is None:
            raise ValueError(f"AGE operator '{self.operator}' needs a value")
        return self

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:
        age = calculate_age(profile.birth_date, ctx.payment_date)
        if age is None:
            return MatchResult(matched=False, rationale="No birth date on file")

        if self.operator is None or self.operator == "between":
            matched = _within(age, self.min, self.max)
            expected = _describe_range(self.min, self.max)
        else:
            matched = {
                "<": age < self.value,
                "<=": age <= self.value,
                ">": age > self.value,
                ">=": age >= self.value,
                "=": age == self.value,
            }[self.operator]
            expected = f"{self.operator} {self.value}"
        return MatchResult(
            matched=matched,
            rationale=f"Age {age} {'satisfies' if matched else 'fails'} {expected}"
        )


class SeniorityCondition(_Condition):
    """Whole years since the first ever payment (floor of days / 365.25)"""
    kind: Literal["FIDELITE"] = "FIDELITE"
    min_years: Optional[int] = Field(default=None, ge=0)
    max_years: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min_years is None and self.max_years is None:
            raise ValueError("FIDELITE condition needs min_years and/or max_years")
        return self

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:
        years = whole_years_since(profile.first_payment_date, ctx.payment_date)
        if years is None:
            return MatchResult(matched=False, rationale="No previous payment")
        matched = _within(years, self.min_years, self.max_years)
        return MatchResult(
            matched=matched,
            rationale=f"{years} year(s) of membership {'in' if matched else 'not in'} "
                      f"{_describe_range(self.min_years, self.max_years)}"
        )


class HouseholdCondition(_Condition):
    """Number of currently active payments in the member's household"""
    kind: Literal["MULTI_INSCRIPTIONS"] = "MULTI_INSCRIPTIONS"
    min: Optional[int] = Field(default=None, ge=0)
    max: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min is None and self.max is None:
            raise ValueError("MULTI_INSCRIPTIONS condition needs min and/or max")
        return self

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:
        if not profile.household_id:
            return MatchResult(matched=False, rationale="No household")
        count = profile.active_household_payments
        matched = _within(count, self.min, self.max)
        return MatchResult(
            matched=matched,
            rationale=f"{count} active membership(s) in household "
                      f"{'in' if matched else 'not in'} {_describe_range(self.min, self.max)}"
        )


class SocialStatusCondition(_Condition):
    """Social status equal to one value or among a list"""
    kind: Literal["STATUT_SOCIAL"] = "STATUT_SOCIAL"
    status: Optional[str] = None
    statuses: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_target(self):
        if not self.status and not self.statuses:
            raise ValueError("STATUT_SOCIAL condition needs status or statuses")
        return self

    def match(self, profile: MemberProfile, ctx: EvaluationContext) -> MatchResult:
        if not profile.social_status:
            return MatchResult(matched=False, rationale="No social status on file")
        accepted = set(self.statuses or []) | ({self.status} if self.status else set())
        matched = profile.social_status in accepted
        return MatchResult(
            matched=matched,
            rationale=f"Status '{profile.social_status}' {'in' if matched else 'not in'} {sorted(accepted)}"
        )


Condition = Union[
    DefaultCondition,
    CommuneCondition,
    IncomeQuotientCondition,
    AgeCondition,
    SeniorityCondition,
    HouseholdCondition,
    SocialStatusCondition,
]

CONDITION_TYPES = {
    ConditionKind.COMMUNE: CommuneCondition,
    ConditionKind.QF: IncomeQuotientCondition,
    ConditionKind.AGE: AgeCondition,
    ConditionKind.FIDELITE: SeniorityCondition,
    ConditionKind.MULTI_INSCRIPTIONS: HouseholdCondition,
    ConditionKind.STATUT_SOCIAL: SocialStatusCondition,
}


def is_default_descriptor(raw: Any) -> bool:
    return isinstance(raw, dict) and str(raw.get("type", "")).lower() in DEFAULT_CONDITION_TYPES


def parse_condition(kind: Union[ConditionKind, str], raw: Any) -> Condition:
    """
    Turn a stored condition descriptor into a matcher.

    Raises:
        MatcherError: unknown kind, missing descriptor, or invalid fields
    """
    try:
        kind = ConditionKind(kind)
    except ValueError as e:
        raise MatcherError(f"Unknown condition kind: {kind!r}", {"condition_kind": str(kind)}) from e

    if raw is None:
        raise MatcherError("No condition defined", {"condition_kind": kind.value})
    if not isinstance(raw, dict):
        raise MatcherError(
            f"Condition must be an object, got {type(raw).__name__}",
            {"condition_kind": kind.value}
        )
    if is_default_descriptor(raw):
        return DefaultCondition()

    descriptor = {k: v for k, v in raw.items() if k != "type"}
    try:
        return CONDITION_TYPES[kind].model_validate(descriptor)
    except PydanticValidationError as e:
        raise MatcherError(
            f"Invalid {kind.value} condition: {e.errors(include_url=False)[0]['msg']}",
            {"condition_kind": kind.value, "condition": raw}
        ) from e


def match_condition(
    kind: Union[ConditionKind, str],
    raw: Any,
    profile: MemberProfile,
    ctx: EvaluationContext,
) -> MatchResult:
    """Parse and evaluate a condition descriptor in one step"""
    return parse_condition(kind, raw).match(profile, ctx)
