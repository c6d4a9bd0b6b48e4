"""
Legacy reduction rule model
"""
from sqlalchemy import (JSON, Boolean, Column, ForeignKey, Integer, Numeric,
                        String, Text)

from membership_fees.core.database import Base
from membership_fees.models.income_bracket import CalcKind


class LegacyReductionRule(Base):
    """
    Sequential reduction rule applied before the decision tree

    Rules run by ascending application_order and compound: each amount is
    computed on the running total left by the previous rules. The predicate
    is an optional condition_kind plus a condition descriptor, interpreted
    by the same matchers as the decision tree. No condition_kind means the
    rule always applies.
    """
    __tablename__ = "legacy_reduction_rules"

    id = Column(Integer, primary_key=True)
    code = Column(String(50), nullable=False)
    label = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    source_kind = Column(String(30), nullable=False, default="manual")  # commune, income, age, loyalty, ...
    condition_kind = Column(String(30), nullable=True)
    condition_json = Column(JSON, nullable=True)
    calc_kind = Column(String(20), nullable=False, default=CalcKind.FIXED.value)
    value = Column(Numeric(10, 2), nullable=False)
    application_order = Column(Integer, nullable=False, default=100)
    active = Column(Boolean, nullable=False, default=True)
    operation_id = Column(Integer, ForeignKey("accounting_operations.id"), nullable=True)
    structure_id = Column(Integer, nullable=True, index=True)

    def __repr__(self):
        return f"<LegacyReductionRule(id={self.id}, code={self.code}, order={self.application_order})>"
