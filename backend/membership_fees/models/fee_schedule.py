"""
Fee schedule and age bracket models
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer,
                        Numeric, String, Text, UniqueConstraint)
from sqlalchemy.orm import relationship

from membership_fees.core.database import Base


class AgeBracket(Base):
    """
    Age category used to pick the catalog amount (child, adult, senior, ...)

    Bounds are inclusive; NULL means unbounded. Brackets are tested by
    ascending priority and the first one containing the age wins.
    """
    __tablename__ = "age_brackets"

    id = Column(Integer, primary_key=True)
    code = Column(String(50), nullable=False)
    label = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    min_age = Column(Integer, nullable=True)
    max_age = Column(Integer, nullable=True)
    priority = Column(Integer, nullable=False, default=100)
    active = Column(Boolean, nullable=False, default=True)
    structure_id = Column(Integer, nullable=True, index=True)  # NULL = global

    __table_args__ = (
        UniqueConstraint('code', 'structure_id', name='uq_age_bracket_code_structure'),
    )

    def contains(self, age: Optional[int]) -> bool:
        """Whether the age falls in this bracket"""
        if age is None:
            return False
        if self.min_age is not None and age < self.min_age:
            return False
        if self.max_age is not None and age > self.max_age:
            return False
        return True

    def __repr__(self):
        return f"<AgeBracket(id={self.id}, code={self.code}, min_age={self.min_age}, max_age={self.max_age})>"


class FeeSchedule(Base):
    """Catalog price structure for a membership period"""
    __tablename__ = "fee_schedules"

    id = Column(Integer, primary_key=True)
    label = Column(String(150), nullable=False)
    base_amount = Column(Numeric(10, 2), nullable=False)
    duration_months = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    structure_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    bracket_amounts = relationship(
        "FeeScheduleBracketAmount",
        back_populates="schedule",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<FeeSchedule(id={self.id}, label={self.label}, base_amount={self.base_amount})>"


class FeeScheduleBracketAmount(Base):
    """Catalog amount of a schedule for one age bracket"""
    __tablename__ = "fee_schedule_bracket_amounts"

    id = Column(Integer, primary_key=True)
    schedule_id = Column(Integer, ForeignKey("fee_schedules.id", ondelete="CASCADE"), nullable=False)
    age_bracket_id = Column(Integer, ForeignKey("age_brackets.id", ondelete="CASCADE"), nullable=False)
    base_amount = Column(Numeric(10, 2), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    schedule = relationship("FeeSchedule", back_populates="bracket_amounts")
    age_bracket = relationship("AgeBracket")

    __table_args__ = (
        UniqueConstraint('schedule_id', 'age_bracket_id', name='uq_schedule_age_bracket'),
    )
