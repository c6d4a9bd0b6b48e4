"""
Tree Lifecycle Manager - lifecycle of decision trees
Create, edit while unlocked, lock on first billing, duplicate to keep editing
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from membership_fees.components.contracts import TreeBounds
from membership_fees.components.decision_tree_evaluator import \
    DecisionTreeEvaluator
from membership_fees.core.errors import (ConflictError, LockedResourceError,
                                         ValidationError)
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.metrics import (decision_tree_locks_total,
                                          decision_tree_versions_total)
from membership_fees.models.decision_tree import DecisionTree
from membership_fees.models.fee_schedule import FeeSchedule
from membership_fees.models.payment import MembershipPayment

logger = LoggingConfig.get_logger(__name__)

DISPLAY_MODES = ("minimum", "maximum", "range")


class TreeLifecycleManager:
    """
    Manager of decision tree lifecycle

    Unlocked: editable, version bumped on every node change
    Locked: immutable, bound to the payments billed with it; editing goes
    through duplicate(), which makes a new current version and retires the
    locked one

    Methods with autocommit=False only flush, so they can join a larger
    transaction (the payment commit locks its tree that way).

    Writes that change which tree is current take the schedule row lock
    first, like the payment commit, so a commit never reads the current
    tree half way through a duplicate or a delete. A failed write rolls
    back and releases its row locks.
    """

    def __init__(self, db: Session, evaluator: Optional[DecisionTreeEvaluator] = None):
        """
        Initialize Tree Lifecycle Manager

        Args:
            db: Database session
            evaluator: Evaluator used to validate node structures
        """
        self.db = db
        self.evaluator = evaluator or DecisionTreeEvaluator()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, tree_id: int, for_update: bool = False) -> DecisionTree:
        """
        Get a tree by id

        Raises:
            ValidationError: unknown tree
        """
        query = self.db.query(DecisionTree).filter(DecisionTree.id == tree_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        tree = query.first()
        if tree is None:
            raise ValidationError(f"Decision tree {tree_id} not found", {"tree_id": tree_id})
        return tree

    def get_current_for_schedule(self, schedule_id: int, for_update: bool = False) -> Optional[DecisionTree]:
        """Current tree of a schedule, or None"""
        query = self.db.query(DecisionTree).filter(
            DecisionTree.schedule_id == schedule_id,
            DecisionTree.is_current.is_(True)
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.order_by(DecisionTree.version.desc()).first()

    def lock_schedule(self, schedule_id: int) -> Optional[FeeSchedule]:
        """SELECT ... FOR UPDATE on the schedule row that serializes changes to its current tree"""
        return self.db.query(FeeSchedule).filter(
            FeeSchedule.id == schedule_id
        ).with_for_update().populate_existing().first()

    def list_versions(self, schedule_id: int) -> List[DecisionTree]:
        """All versions of a schedule's tree, newest first"""
        return self.db.query(DecisionTree).filter(
            DecisionTree.schedule_id == schedule_id
        ).order_by(DecisionTree.version.desc()).all()

    def status(self, tree_id: int) -> Dict[str, Any]:
        """Lock state and usage of a tree"""
        tree = self.get(tree_id)
        payments = self.db.query(func.count(MembershipPayment.id)).filter(
            MembershipPayment.decision_tree_id == tree.id
        ).scalar() or 0
        return {
            "id": tree.id,
            "schedule_id": tree.schedule_id,
            "version": tree.version,
            "locked": bool(tree.locked),
            "locked_at": tree.locked_at.isoformat() if tree.locked_at else None,
            "is_current": bool(tree.is_current),
            "payments_count": payments,
            "can_edit": not tree.locked,
            "can_delete": not tree.locked and payments == 0,
        }

    def bounds(self, tree_id: int, base_amount: Optional[Any] = None) -> TreeBounds:
        """Min and max final amounts of a tree (base defaults to the schedule amount)"""
        tree = self.get(tree_id)
        if base_amount is None:
            schedule = self.db.query(FeeSchedule).filter(FeeSchedule.id == tree.schedule_id).first()
            base_amount = schedule.base_amount if schedule is not None else 0
        return self.evaluator.compute_bounds(tree.nodes, base_amount)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        schedule_id: int,
        nodes: Optional[List[Dict[str, Any]]] = None,
        display_mode: str = "minimum",
        structure_id: Optional[int] = None
    ) -> DecisionTree:
        """
        Create the tree of a schedule

        Raises:
            ValidationError: unknown schedule, bad nodes or display mode
            ConflictError: the schedule already has a current tree
        """
        with self._rollback_on_error():
            schedule = self.lock_schedule(schedule_id)
            if schedule is None:
                raise ValidationError(f"Fee schedule {schedule_id} not found", {"schedule_id": schedule_id})
            self._check_display_mode(display_mode)
            self.evaluator.validate_nodes(nodes)

            existing = self.get_current_for_schedule(schedule_id)
            if existing is not None:
                raise ConflictError(
                    f"Fee schedule {schedule_id} already has a decision tree",
                    {"schedule_id": schedule_id, "tree_id": existing.id}
                )

            tree = DecisionTree(
                schedule_id=schedule_id,
                version=self._next_version(schedule_id),
                nodes=nodes or [],
                display_mode=display_mode,
                locked=False,
                is_current=True,
                structure_id=structure_id if structure_id is not None else schedule.structure_id,
            )
            self.db.add(tree)
            self.db.commit()
        self.db.refresh(tree)

        decision_tree_versions_total.labels(reason="create").inc()
        logger.info(
            "Decision tree created",
            extra={"tree_id": tree.id, "schedule_id": schedule_id, "version": tree.version}
        )
        return tree

    def update(
        self,
        tree_id: int,
        nodes: Optional[List[Dict[str, Any]]] = None,
        display_mode: Optional[str] = None
    ) -> DecisionTree:
        """
        Edit an unlocked tree; the version is bumped when nodes change

        Raises:
            LockedResourceError: the tree is locked (nothing is changed)
            ValidationError: bad nodes or display mode
        """
        with self._rollback_on_error():
            tree = self.get(tree_id, for_update=True)
            if tree.locked:
                raise LockedResourceError(
                    f"Decision tree {tree_id} is locked; duplicate it to make changes",
                    {"tree_id": tree_id, "version": tree.version}
                )

            if display_mode is not None:
                self._check_display_mode(display_mode)
            if nodes is not None:
                self.evaluator.validate_nodes(nodes)

            if nodes is not None and nodes != (tree.nodes or []):
                tree.nodes = nodes
                tree.version = self._next_version(tree.schedule_id)
                decision_tree_versions_total.labels(reason="update").inc()
            if display_mode is not None:
                tree.display_mode = display_mode
            tree.updated_at = datetime.now(timezone.utc)

            self.db.commit()
        self.db.refresh(tree)
        logger.info("Decision tree updated", extra={"tree_id": tree.id, "version": tree.version})
        return tree

    def lock(self, tree_id: int, autocommit: bool = True) -> DecisionTree:
        """
        Lock a tree; idempotent, locked_at keeps the first lock time

        Args:
            tree_id: Tree to lock
            autocommit: Commit immediately, or only flush inside the caller's transaction
        """
        tree = self.get(tree_id, for_update=True)
        if not tree.locked:
            tree.locked = True
            tree.locked_at = datetime.now(timezone.utc)
            self.db.flush()
            decision_tree_locks_total.inc()
            logger.info("Decision tree locked", extra={"tree_id": tree.id, "version": tree.version})

        if autocommit:
            self.db.commit()
            self.db.refresh(tree)
        return tree

    def duplicate(self, tree_id: int) -> DecisionTree:
        """
        Make an editable copy of a tree

        Locked tree: a new unlocked row with the next version becomes current,
        the locked one is retired and stays bound to its payments.
        Unlocked tree: nothing to protect, its version is bumped in place.
        """
        with self._rollback_on_error():
            schedule_id = self.get(tree_id).schedule_id
            self.lock_schedule(schedule_id)
            source = self.get(tree_id, for_update=True)
            if not source.is_current:
                raise ConflictError(
                    f"Decision tree {tree_id} has been superseded; duplicate the current version",
                    {"tree_id": tree_id, "version": source.version}
                )

            if not source.locked:
                source.version = self._next_version(schedule_id)
                source.updated_at = datetime.now(timezone.utc)
                self.db.commit()
                self.db.refresh(source)
                decision_tree_versions_total.labels(reason="duplicate").inc()
                logger.info(
                    "Unlocked decision tree re-versioned",
                    extra={"tree_id": source.id, "version": source.version}
                )
                return source

            now = datetime.now(timezone.utc)
            source.is_current = False
            source.superseded_at = now
            copy = DecisionTree(
                schedule_id=schedule_id,
                version=self._next_version(schedule_id),
                nodes=list(source.nodes or []),
                display_mode=source.display_mode,
                locked=False,
                is_current=True,
                duplicated_from_id=source.id,
                structure_id=source.structure_id,
            )
            self.db.add(copy)
            self.db.commit()
        self.db.refresh(copy)

        decision_tree_versions_total.labels(reason="duplicate").inc()
        logger.info(
            "Locked decision tree duplicated",
            extra={"source_tree_id": source.id, "tree_id": copy.id, "version": copy.version}
        )
        return copy

    def delete(self, tree_id: int) -> None:
        """
        Delete an unlocked tree that no payment references

        Raises:
            LockedResourceError: the tree is locked
            ConflictError: payments reference it
        """
        with self._rollback_on_error():
            self.lock_schedule(self.get(tree_id).schedule_id)
            tree = self.get(tree_id, for_update=True)
            if tree.locked:
                raise LockedResourceError(f"Decision tree {tree_id} is locked", {"tree_id": tree_id})
            used = self.db.query(func.count(MembershipPayment.id)).filter(
                MembershipPayment.decision_tree_id == tree.id
            ).scalar() or 0
            if used:
                raise ConflictError(
                    f"Decision tree {tree_id} is referenced by {used} payment(s)",
                    {"tree_id": tree_id, "payments": used}
                )
            self.db.delete(tree)
            self.db.commit()
        logger.info("Decision tree deleted", extra={"tree_id": tree_id})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _rollback_on_error(self) -> Iterator[None]:
        try:
            yield
        except Exception:
            self.db.rollback()
            raise

    def _next_version(self, schedule_id: int) -> int:
        last = self.db.query(func.max(DecisionTree.version)).filter(
            DecisionTree.schedule_id == schedule_id
        ).scalar()
        return (last or 0) + 1

    @staticmethod
    def _check_display_mode(display_mode: str) -> None:
        if display_mode not in DISPLAY_MODES:
            raise ValidationError(
                f"Invalid display mode: {display_mode}",
                {"display_mode": display_mode, "allowed": list(DISPLAY_MODES)}
            )
