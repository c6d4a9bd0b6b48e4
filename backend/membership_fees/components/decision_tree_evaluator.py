"""
Decision Tree Evaluator component.

Role: walk an administrator-defined discount tree for one member and return
the reductions it grants, the path taken and a full trace.

Semantics:
- nodes are visited by ascending order; inside a node branches are tested in
  declared order and the first match wins
- every reduction is computed against the same reference base amount, so the
  result does not depend on node order (additive, not compounding)
- a branch whose condition, reduction or own shape cannot be interpreted is
  recorded in the trace as a non-match; evaluation goes on with the next
  branch. A node that cannot be interpreted is skipped the same way
- the recursion depth is bounded
"""

from __future__ import annotations

from decimal import Decimal
from typing import (Any, Callable, Iterable, Iterator, List, Optional,
                    Sequence, Tuple, Union)

from pydantic import ValidationError as PydanticValidationError

from membership_fees.components.conditions import parse_condition
from membership_fees.components.contracts import (BranchSpec, BranchTrace,
                                                   EvaluationContext,
                                                   MemberProfile, NodeSpec,
                                                   NodeTrace, PathStep,
                                                   ReductionLine,
                                                   ReductionSpec, TreeBounds,
                                                   TreeEvaluation)
from membership_fees.core.errors import MatcherError, ValidationError
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.metrics import matcher_errors_total
from membership_fees.core.utils import ZERO, percentage_of, to_money

logger = LoggingConfig.get_logger(__name__)

NodesInput = Union[Sequence[NodeSpec], Sequence[dict], None]


def parse_reduction(raw: Any) -> Optional[ReductionSpec]:
    """
    Interpret a branch reduction descriptor.

    None means the branch grants nothing (pure routing branch).

    Raises:
        MatcherError: descriptor present but invalid
    """
    if raw is None:
        return None
    try:
        return ReductionSpec.model_validate(raw)
    except PydanticValidationError as e:
        raise MatcherError(
            f"Invalid reduction: {e.errors(include_url=False)[0]['msg']}",
            {"reduction": raw}
        ) from e


def parse_node(raw: Any) -> NodeSpec:
    """
    Interpret one node header (id, kind, order); its branches stay raw.

    Raises:
        MatcherError: the node does not fit the schema
    """
    try:
        return NodeSpec.model_validate(raw)
    except PydanticValidationError as e:
        raise MatcherError(f"Invalid node: {e.errors(include_url=False)[0]['msg']}") from e


def parse_branch(raw: Any) -> BranchSpec:
    """
    Interpret one branch header; condition, reduction and children stay raw.

    Raises:
        MatcherError: the branch does not fit the schema
    """
    try:
        return BranchSpec.model_validate(raw)
    except PydanticValidationError as e:
        raise MatcherError(f"Invalid branch: {e.errors(include_url=False)[0]['msg']}") from e


def reduction_amount(reduction: ReductionSpec, reference_base: Decimal) -> Decimal:
    """Amount of one reduction against the reference base amount"""
    if reduction.calc_kind == "percentage":
        return percentage_of(reference_base, reduction.value)
    return to_money(reduction.value)


def _raw_id(raw: Any, position: int) -> str:
    raw_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
    return raw_id if isinstance(raw_id, str) and raw_id else f"#{position}"


def _raw_field(raw: Any, name: str) -> Any:
    return raw.get(name) if isinstance(raw, dict) else getattr(raw, name, None)


def _parsed(parser: Callable[[Any], Any], items: Iterable[Any]) -> Iterator[Any]:
    for raw in items:
        try:
            yield parser(raw)
        except MatcherError:
            continue


class DecisionTreeEvaluator:
    """Pure evaluator over a list of decision nodes"""

    def __init__(self, max_depth: Optional[int] = None):
        if max_depth is None:
            from membership_fees.core.config import get_settings
            max_depth = get_settings().decision_tree_max_depth
        self.max_depth = max_depth

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def parse_nodes(self, nodes: NodesInput) -> List[Any]:
        """
        Check the top-level shape of a tree and its nesting depth.

        Nodes and branches stay raw: evaluation interprets them one at a time.
        See validate_nodes() for the strict check used when a tree is saved.

        Raises:
            ValidationError: nodes is not a list, or the tree is deeper than max_depth
        """
        if not nodes:
            return []
        if not isinstance(nodes, (list, tuple)):
            raise ValidationError("Decision tree nodes must be a list", {"nodes_type": type(nodes).__name__})

        nodes = list(nodes)
        depth = self._depth(nodes)
        if depth > self.max_depth:
            raise ValidationError(
                f"Decision tree depth {depth} exceeds maximum {self.max_depth}",
                {"depth": depth, "max_depth": self.max_depth}
            )
        return nodes

    def validate_nodes(self, nodes: NodesInput) -> List[Any]:
        """
        Strict validation: every node, branch, condition and reduction.

        Raises:
            ValidationError: first problem found, with the offending node and branch
        """
        raw_nodes = self.parse_nodes(nodes)
        self._validate_level(raw_nodes)
        return raw_nodes

    def _validate_level(self, raw_nodes: Sequence[Any]) -> None:
        for position, raw in enumerate(raw_nodes):
            try:
                node = parse_node(raw)
            except MatcherError as e:
                raise ValidationError(
                    f"Malformed decision node at position {position}: {e.message}",
                    {"position": position, "node_id": _raw_id(raw, position)}
                ) from e

            for index, raw_branch in enumerate(node.branches):
                branch_id = _raw_id(raw_branch, index)
                try:
                    branch = parse_branch(raw_branch)
                    parse_condition(node.kind, branch.condition)
                    parse_reduction(branch.reduction)
                except MatcherError as e:
                    raise ValidationError(
                        f"Node '{node.id}', branch '{branch_id}': {e.message}",
                        {"node_id": node.id, "branch_id": branch_id, **e.metadata}
                    ) from e
                self._validate_level(branch.children)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        nodes: NodesInput,
        profile: MemberProfile,
        ctx: EvaluationContext,
    ) -> TreeEvaluation:
        """
        Evaluate a tree for one member.

        Args:
            nodes: root nodes (raw JSON dicts or NodeSpec)
            profile: resolved member attributes
            ctx: reference base amount and payment date

        Returns:
            TreeEvaluation with line items, matched path, total and trace

        Raises:
            ValidationError: nodes is not a list, or the tree is too deep
        """
        raw_nodes = self.parse_nodes(nodes)
        reference_base = to_money(ctx.reference_base_amount)

        line_items: List[ReductionLine] = []
        path: List[PathStep] = []
        trace = self._evaluate_level(raw_nodes, profile, ctx, reference_base, 0, line_items, path)

        total = to_money(sum((line.computed_amount for line in line_items), ZERO))
        logger.debug(
            "Decision tree evaluated",
            extra={
                "member_id": profile.member_id,
                "reference_base": str(reference_base),
                "matched_branches": len(path),
                "total_reduction": str(total),
            }
        )
        return TreeEvaluation(line_items=line_items, matched_path=path, total_reduction=total, trace=trace)

    def _evaluate_level(
        self,
        raw_nodes: Sequence[Any],
        profile: MemberProfile,
        ctx: EvaluationContext,
        reference_base: Decimal,
        depth: int,
        line_items: List[ReductionLine],
        path: List[PathStep],
    ) -> List[NodeTrace]:
        nodes, skipped = [], []
        for position, raw in enumerate(raw_nodes):
            try:
                nodes.append(parse_node(raw))
            except MatcherError as e:
                matcher_errors_total.labels(condition_kind="unknown").inc()
                logger.warning(
                    "Skipping malformed decision node",
                    extra={"node_id": _raw_id(raw, position), "depth": depth, "error": e.message}
                )
                skipped.append(NodeTrace(node_id=_raw_id(raw, position), depth=depth, error=e.message))

        traces = [
            self._evaluate_node(node, profile, ctx, reference_base, depth, line_items, path)
            for node in self._ordered(nodes)
        ]
        return traces + skipped

    def _evaluate_node(
        self,
        node: NodeSpec,
        profile: MemberProfile,
        ctx: EvaluationContext,
        reference_base: Decimal,
        depth: int,
        line_items: List[ReductionLine],
        path: List[PathStep],
    ) -> NodeTrace:
        node_trace = NodeTrace(node_id=node.id, kind=node.kind, depth=depth)

        for index, raw_branch in enumerate(node.branches):
            branch_trace, branch, reduction = self._test_branch(node, raw_branch, index, profile, ctx)
            node_trace.branches_tested.append(branch_trace)
            if not branch_trace.matched:
                continue

            node_trace.selected_branch_id = branch.id
            node_trace.selected_branch_code = branch.code
            path.append(PathStep(
                node_id=node.id,
                kind=node.kind,
                branch_id=branch.id,
                branch_code=branch.code,
                branch_label=branch.label,
            ))

            if reduction is not None:
                line = ReductionLine(
                    source_kind=f"TREE_{node.kind.value}",
                    label=branch.label or branch.code,
                    calc_kind=reduction.calc_kind,
                    value=reduction.value,
                    computed_amount=reduction_amount(reduction, reference_base),
                    calculation_base=reference_base,
                    node_id=node.id,
                    branch_id=branch.id,
                    branch_code=branch.code,
                    operation_id=reduction.operation_id,
                )
                line_items.append(line)
                node_trace.reduction = line

            node_trace.children = self._evaluate_level(
                branch.children, profile, ctx, reference_base, depth + 1, line_items, path
            )
            break

        return node_trace

    def _test_branch(
        self,
        node: NodeSpec,
        raw_branch: Any,
        index: int,
        profile: MemberProfile,
        ctx: EvaluationContext,
    ) -> Tuple[BranchTrace, Optional[BranchSpec], Optional[ReductionSpec]]:
        try:
            branch = parse_branch(raw_branch)
        except MatcherError as e:
            return self._skipped_branch(
                node, _raw_id(raw_branch, index), _raw_field(raw_branch, "condition"), e
            ), None, None

        try:
            condition = parse_condition(node.kind, branch.condition)
            result = condition.match(profile, ctx)
            reduction = parse_reduction(branch.reduction) if result.matched else None
        except MatcherError as e:
            return self._skipped_branch(
                node, branch.id, branch.condition, e, code=branch.code, label=branch.label
            ), None, None

        return BranchTrace(
            branch_id=branch.id,
            code=branch.code,
            label=branch.label,
            condition=branch.condition,
            matched=result.matched,
            rationale=result.rationale,
        ), branch, reduction

    @staticmethod
    def _skipped_branch(
        node: NodeSpec,
        branch_id: str,
        condition: Any,
        error: MatcherError,
        code: Optional[str] = None,
        label: Optional[str] = None,
    ) -> BranchTrace:
        matcher_errors_total.labels(condition_kind=node.kind.value).inc()
        logger.warning(
            "Skipping malformed decision branch",
            extra={
                "node_id": node.id,
                "branch_id": branch_id,
                "condition_kind": node.kind.value,
                "error": error.message,
            }
        )
        return BranchTrace(
            branch_id=branch_id,
            code=code,
            label=label,
            condition=condition,
            matched=False,
            rationale="Malformed branch skipped",
            error=error.message,
        )

    # ------------------------------------------------------------------
    # Bounds
    # ------------------------------------------------------------------

    def compute_bounds(self, nodes: NodesInput, base_amount: Any) -> TreeBounds:
        """
        Lowest and highest final amounts the tree can produce for a base.

        The largest total reduction is found by taking, at every node, the
        branch whose own reduction plus best subtree is largest. The highest
        final amount assumes no branch matches. Malformed nodes and branches
        are ignored.
        """
        base = to_money(base_amount)
        best = self._best_reduction(self.parse_nodes(nodes), base)
        return TreeBounds(
            min=max(ZERO, to_money(base - best)),
            max=base,
            max_reduction=best,
        )

    def _best_reduction(self, raw_nodes: Iterable[Any], base: Decimal) -> Decimal:
        total = ZERO
        for node in _parsed(parse_node, raw_nodes):
            best_branch = ZERO
            for branch in _parsed(parse_branch, node.branches):
                try:
                    reduction = parse_reduction(branch.reduction)
                except MatcherError:
                    continue
                own = reduction_amount(reduction, base) if reduction is not None else ZERO
                best_branch = max(best_branch, own + self._best_reduction(branch.children, base))
            total += best_branch
        return to_money(total)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ordered(nodes: Sequence[NodeSpec]) -> List[NodeSpec]:
        # sorted() is stable: equal orders keep their declared position
        return sorted(nodes, key=lambda n: n.order)

    def _depth(self, raw_nodes: Sequence[Any], level: int = 1) -> int:
        if not raw_nodes:
            return level - 1
        if level > self.max_depth:
            return level
        deepest = level
        for node in _parsed(parse_node, raw_nodes):
            for branch in _parsed(parse_branch, node.branches):
                deepest = max(deepest, self._depth(branch.children, level + 1))
        return deepest
