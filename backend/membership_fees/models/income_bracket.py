"""
Income quotient bracket configuration models
"""
from enum import Enum
from typing import Optional

from sqlalchemy import (Boolean, Column, ForeignKey, Integer, Numeric, String,
                        Text, UniqueConstraint)
from sqlalchemy.orm import relationship

from membership_fees.core.database import Base


class CalcKind(str, Enum):
    """How a value turns into an amount"""
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class IncomeBracketConfig(Base):
    """A named scale of income brackets (e.g. yearly family allowance scale)"""
    __tablename__ = "income_bracket_configs"

    id = Column(Integer, primary_key=True)
    code = Column(String(50), nullable=False, unique=True)
    label = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    structure_id = Column(Integer, nullable=True, index=True)

    brackets = relationship(
        "IncomeBracket",
        back_populates="config",
        cascade="all, delete-orphan",
        order_by="IncomeBracket.position"
    )

    def __repr__(self):
        return f"<IncomeBracketConfig(id={self.id}, code={self.code})>"


class IncomeBracket(Base):
    """
    One income range of a configuration

    Bounds are inclusive; max_value NULL means no upper bound. The amount is
    either a fixed replacement of the base amount or a percentage of it.
    """
    __tablename__ = "income_brackets"

    id = Column(Integer, primary_key=True)
    config_id = Column(Integer, ForeignKey("income_bracket_configs.id", ondelete="CASCADE"), nullable=False)
    label = Column(String(100), nullable=False)
    min_value = Column(Integer, nullable=False, default=0)
    max_value = Column(Integer, nullable=True)
    calc_kind = Column(String(20), nullable=False, default=CalcKind.FIXED.value)
    value = Column(Numeric(10, 2), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)

    config = relationship("IncomeBracketConfig", back_populates="brackets")
    age_values = relationship("IncomeBracketAgeValue", back_populates="bracket", cascade="all, delete-orphan")

    def contains(self, income_quotient: Optional[float]) -> bool:
        """Whether the income quotient falls in this bracket"""
        if income_quotient is None:
            return False
        if income_quotient < self.min_value:
            return False
        if self.max_value is not None and income_quotient > self.max_value:
            return False
        return True

    def __repr__(self):
        return f"<IncomeBracket(id={self.id}, label={self.label}, min={self.min_value}, max={self.max_value})>"


class IncomeBracketAgeValue(Base):
    """Per-age-bracket override of an income bracket's value"""
    __tablename__ = "income_bracket_age_values"

    id = Column(Integer, primary_key=True)
    bracket_id = Column(Integer, ForeignKey("income_brackets.id", ondelete="CASCADE"), nullable=False)
    age_bracket_id = Column(Integer, ForeignKey("age_brackets.id", ondelete="CASCADE"), nullable=False)
    calc_kind = Column(String(20), nullable=False, default=CalcKind.FIXED.value)
    value = Column(Numeric(10, 2), nullable=False)

    bracket = relationship("IncomeBracket", back_populates="age_values")

    __table_args__ = (
        UniqueConstraint('bracket_id', 'age_bracket_id', name='uq_income_bracket_age'),
    )
