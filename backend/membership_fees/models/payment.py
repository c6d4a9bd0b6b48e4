"""
Membership payment snapshot and reduction ledger models
"""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (JSON, Column, Date, DateTime, ForeignKey, Index,
                        Integer, Numeric, String, Text, UniqueConstraint)
from sqlalchemy.orm import relationship

from membership_fees.core.database import Base


class MembershipPayment(Base):
    """
    Immutable snapshot of a billed membership fee

    Every amount, identifier and label used by the calculation is copied at
    commit time; later configuration edits never change a stored payment.
    """
    __tablename__ = "membership_payments"

    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    schedule_id = Column(Integer, ForeignKey("fee_schedules.id"), nullable=False)
    structure_id = Column(Integer, nullable=True)

    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    payment_date = Column(Date, nullable=False)
    payment_method = Column(String(30), nullable=False, default="cash")
    payment_reference = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="active")

    # Amounts
    catalog_amount = Column(Numeric(10, 2), nullable=False)  # schedule amount for the age bracket
    base_amount = Column(Numeric(10, 2), nullable=False)  # after income bracket
    intermediate_amount = Column(Numeric(10, 2), nullable=False)  # after legacy rules
    total_reductions = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)

    # Snapshots
    schedule_label_snapshot = Column(String(150), nullable=True)
    age_snapshot = Column(Integer, nullable=True)
    age_bracket_id_snapshot = Column(Integer, nullable=True)
    age_bracket_code_snapshot = Column(String(50), nullable=True)
    income_quotient_snapshot = Column(Integer, nullable=True)
    income_bracket_id_snapshot = Column(Integer, nullable=True)
    income_bracket_label_snapshot = Column(String(100), nullable=True)
    commune_id_snapshot = Column(Integer, nullable=True)

    # Decision tree used
    decision_tree_id = Column(Integer, ForeignKey("decision_trees.id"), nullable=True)
    decision_tree_version = Column(Integer, nullable=True)
    tree_path_json = Column(JSON, nullable=True)
    tree_trace_json = Column(JSON, nullable=True)
    calculation_detail_json = Column(JSON, nullable=True)

    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    reductions = relationship(
        "ReductionLineItem",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="ReductionLineItem.application_order"
    )

    __table_args__ = (
        UniqueConstraint('member_id', 'schedule_id', 'period_start', name='uq_payment_member_schedule_period'),
        Index('idx_payment_tree', 'decision_tree_id'),
    )

    def __repr__(self):
        return f"<MembershipPayment(id={self.id}, member_id={self.member_id}, final_amount={self.final_amount})>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert payment to dictionary"""
        return {
            "id": self.id,
            "member_id": self.member_id,
            "schedule_id": self.schedule_id,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "payment_method": self.payment_method,
            "catalog_amount": str(self.catalog_amount),
            "base_amount": str(self.base_amount),
            "intermediate_amount": str(self.intermediate_amount),
            "total_reductions": str(self.total_reductions),
            "final_amount": str(self.final_amount),
            "age_snapshot": self.age_snapshot,
            "age_bracket_code_snapshot": self.age_bracket_code_snapshot,
            "income_quotient_snapshot": self.income_quotient_snapshot,
            "income_bracket_label_snapshot": self.income_bracket_label_snapshot,
            "decision_tree_id": self.decision_tree_id,
            "decision_tree_version": self.decision_tree_version,
            "reductions": [r.to_dict() for r in self.reductions],
        }


class ReductionLineItem(Base):
    """One reduction that contributed to a payment"""
    __tablename__ = "reduction_line_items"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("membership_payments.id", ondelete="CASCADE"), nullable=False, index=True)
    source_kind = Column(String(50), nullable=False)  # LEGACY_<source>, TREE_<condition kind>, MANUAL
    rule_id = Column(Integer, nullable=True)
    decision_tree_id = Column(Integer, nullable=True)
    branch_code = Column(String(50), nullable=True)
    label = Column(String(150), nullable=True)
    calc_kind = Column(String(20), nullable=False)
    value = Column(Numeric(10, 2), nullable=False)
    computed_amount = Column(Numeric(10, 2), nullable=False)
    calculation_base = Column(Numeric(10, 2), nullable=True)
    application_order = Column(Integer, nullable=False, default=0)
    operation_id = Column(Integer, ForeignKey("accounting_operations.id"), nullable=True, index=True)
    context_json = Column(JSON, nullable=True)

    payment = relationship("MembershipPayment", back_populates="reductions")

    def to_dict(self) -> Dict[str, Any]:
        """Convert line item to dictionary"""
        return {
            "source_kind": self.source_kind,
            "rule_id": self.rule_id,
            "branch_code": self.branch_code,
            "label": self.label,
            "calc_kind": self.calc_kind,
            "value": str(self.value),
            "computed_amount": str(self.computed_amount),
            "calculation_base": str(self.calculation_base) if self.calculation_base is not None else None,
            "application_order": self.application_order,
            "operation_id": self.operation_id,
        }
