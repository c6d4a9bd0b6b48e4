"""
Contract models exchanged between the fee engine components.

Everything here is an immutable value: the pure components (matchers, tree
evaluator, legacy engine) only read these, never the database.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConditionKind(str, Enum):
    """The six condition kinds a decision node can test"""
    COMMUNE = "COMMUNE"
    QF = "QF"
    AGE = "AGE"
    FIDELITE = "FIDELITE"
    MULTI_INSCRIPTIONS = "MULTI_INSCRIPTIONS"
    STATUT_SOCIAL = "STATUT_SOCIAL"


CalcKindLiteral = Literal["fixed", "percentage"]


class MemberProfile(BaseModel):
    """Everything the matchers may look at for one member, resolved up front"""
    model_config = ConfigDict(frozen=True)

    member_id: Optional[int] = None
    birth_date: Optional[date] = None
    household_id: Optional[str] = None
    commune_id: Optional[int] = None
    commune_group_ids: FrozenSet[int] = Field(default_factory=frozenset)
    income_quotient: Optional[float] = None
    social_status: Optional[str] = None
    first_payment_date: Optional[date] = None
    active_household_payments: int = 0


class EvaluationContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference_base_amount: Decimal
    payment_date: date


class MatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    matched: bool
    rationale: str


class ReductionSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    calc_kind: CalcKindLiteral
    value: Decimal = Field(..., ge=0)
    operation_id: Optional[int] = None  # accounting operation the reduction is booked to


class BranchSpec(BaseModel):
    """
    One option of a decision node.

    condition, reduction and children stay raw here: they are interpreted
    branch by branch so that one bad descriptor only disables its own branch.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    code: Optional[str] = None
    label: Optional[str] = None
    condition: Any = None
    reduction: Any = None
    children: List[Any] = Field(default_factory=list)


class NodeSpec(BaseModel):
    """A decision node header; branches are parsed one at a time during evaluation"""
    model_config = ConfigDict(frozen=True)

    id: str
    kind: ConditionKind
    order: int = 0
    branches: List[Any] = Field(default_factory=list)


class ReductionLine(BaseModel):
    """A reduction produced by the legacy rules, the tree or a manual entry"""
    model_config = ConfigDict(frozen=True)

    source_kind: str
    label: Optional[str] = None
    calc_kind: CalcKindLiteral
    value: Decimal
    computed_amount: Decimal
    calculation_base: Decimal
    rule_id: Optional[int] = None
    node_id: Optional[str] = None
    branch_id: Optional[str] = None
    branch_code: Optional[str] = None
    operation_id: Optional[int] = None


class PathStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    kind: ConditionKind
    branch_id: str
    branch_code: Optional[str] = None
    branch_label: Optional[str] = None


class BranchTrace(BaseModel):
    branch_id: str
    code: Optional[str] = None
    label: Optional[str] = None
    condition: Any = None
    matched: bool
    rationale: str
    error: Optional[str] = None


class NodeTrace(BaseModel):
    node_id: str
    kind: Optional[ConditionKind] = None
    depth: int = 0
    branches_tested: List[BranchTrace] = Field(default_factory=list)
    selected_branch_id: Optional[str] = None
    selected_branch_code: Optional[str] = None
    reduction: Optional[ReductionLine] = None
    children: List[NodeTrace] = Field(default_factory=list)
    error: Optional[str] = None


class TreeEvaluation(BaseModel):
    line_items: List[ReductionLine] = Field(default_factory=list)
    matched_path: List[PathStep] = Field(default_factory=list)
    total_reduction: Decimal = Decimal("0.00")
    trace: List[NodeTrace] = Field(default_factory=list)


class TreeBounds(BaseModel):
    """Lowest and highest final amounts a tree can produce for a base amount"""
    min: Decimal
    max: Decimal
    max_reduction: Decimal


class LegacyRuleSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    code: str
    label: Optional[str] = None
    source_kind: str = "manual"
    condition_kind: Optional[str] = None  # a ConditionKind value; None means always applies
    condition: Any = None
    calc_kind: CalcKindLiteral
    value: Decimal = Field(..., ge=0)
    application_order: int = 100
    operation_id: Optional[int] = None


class LegacyRuleTrace(BaseModel):
    rule_id: Optional[int] = None
    code: str
    applied: bool
    rationale: str


class LegacyEvaluation(BaseModel):
    starting_amount: Decimal
    final_amount: Decimal
    total_reduction: Decimal
    line_items: List[ReductionLine] = Field(default_factory=list)
    trace: List[LegacyRuleTrace] = Field(default_factory=list)


class IncomeBracketResolution(BaseModel):
    """The income bracket that priced a member and the amount it produced"""
    config_id: int
    bracket_id: int
    label: str
    calc_kind: CalcKindLiteral
    value: Decimal
    amount: Decimal
    age_specific: bool = False


class AgeBracketRef(BaseModel):
    id: int
    code: str
    label: str


class TreeRef(BaseModel):
    id: int
    version: int
    locked: bool
    display_mode: str


class FeeSimulation(BaseModel):
    """Result of a full fee calculation for one member and one schedule"""
    member_id: int
    schedule_id: int
    schedule_label: str
    structure_id: Optional[int] = None
    payment_date: date

    age: Optional[int] = None
    age_bracket: Optional[AgeBracketRef] = None
    amount_source: str = "schedule"  # schedule or age_bracket
    income_quotient: Optional[int] = None
    income_quotient_source: Optional[str] = None
    income_bracket: Optional[IncomeBracketResolution] = None
    commune_id: Optional[int] = None

    catalog_amount: Decimal
    base_amount: Decimal
    intermediate_amount: Decimal
    legacy_reductions: List[ReductionLine] = Field(default_factory=list)
    tree_reductions: List[ReductionLine] = Field(default_factory=list)
    tree_reduction_total: Decimal = Decimal("0.00")
    total_reductions: Decimal
    final_amount: Decimal

    decision_tree: Optional[TreeRef] = None
    matched_path: List[PathStep] = Field(default_factory=list)
    trace: List[NodeTrace] = Field(default_factory=list)
    legacy_trace: List[LegacyRuleTrace] = Field(default_factory=list)
    details: Optional[Dict[str, Any]] = None

    @property
    def reductions(self) -> List[ReductionLine]:
        """Legacy then tree reductions, in application order"""
        return [*self.legacy_reductions, *self.tree_reductions]


class ManualReduction(BaseModel):
    label: str
    calc_kind: CalcKindLiteral = "fixed"
    value: Decimal = Field(..., ge=0)
    operation_id: Optional[int] = None


class PaymentFields(BaseModel):
    """Caller-supplied fields of a payment to commit"""
    payment_date: Optional[date] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    payment_method: str = "cash"
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    structure_id: Optional[int] = None
    expected_tree_version: Optional[int] = None
    manual_reductions: List[ManualReduction] = Field(default_factory=list)
    created_by: Optional[str] = None


NodeTrace.model_rebuild()
