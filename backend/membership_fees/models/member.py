"""
Member model with communes and income quotient history
"""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (Column, Date, DateTime, ForeignKey, Index, Integer,
                        String, UniqueConstraint)
from sqlalchemy.orm import relationship

from membership_fees.core.database import Base


class Commune(Base):
    """Commune of residence"""
    __tablename__ = "communes"

    id = Column(Integer, primary_key=True)
    name = Column(String(150), nullable=False)
    postal_code = Column(String(10), nullable=True)

    def __repr__(self):
        return f"<Commune(id={self.id}, name={self.name})>"


class CommuneGroup(Base):
    """Named group of communes (inter-municipal community)"""
    __tablename__ = "commune_groups"

    id = Column(Integer, primary_key=True)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(150), nullable=False)

    members = relationship("CommuneGroupMember", back_populates="group", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<CommuneGroup(id={self.id}, code={self.code})>"


class CommuneGroupMember(Base):
    """Membership of a commune in a group"""
    __tablename__ = "commune_group_members"

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("commune_groups.id", ondelete="CASCADE"), nullable=False)
    commune_id = Column(Integer, ForeignKey("communes.id", ondelete="CASCADE"), nullable=False)

    group = relationship("CommuneGroup", back_populates="members")

    __table_args__ = (
        UniqueConstraint('group_id', 'commune_id', name='uq_commune_group_member'),
    )


class Member(Base):
    """Registered user of the lending association"""
    __tablename__ = "members"

    id = Column(Integer, primary_key=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=False)
    birth_date = Column(Date, nullable=True)

    # Pricing attributes
    household_id = Column(String(64), nullable=True, index=True)
    commune_id = Column(Integer, ForeignKey("communes.id"), nullable=True)
    income_quotient = Column(Integer, nullable=True)  # cached latest value
    social_status = Column(String(50), nullable=True)
    parent_id = Column(Integer, ForeignKey("members.id"), nullable=True)

    membership_end_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    commune = relationship("Commune")
    parent = relationship("Member", remote_side=[id], backref="children")

    def __repr__(self):
        return f"<Member(id={self.id}, last_name={self.last_name})>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert member to dictionary"""
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "birth_date": self.birth_date.isoformat() if self.birth_date else None,
            "household_id": self.household_id,
            "commune_id": self.commune_id,
            "income_quotient": self.income_quotient,
            "social_status": self.social_status,
            "membership_end_date": self.membership_end_date.isoformat() if self.membership_end_date else None,
        }


class IncomeQuotientHistory(Base):
    """
    Dated income quotient values of a member

    A row with valid_to NULL is the current value.
    """
    __tablename__ = "income_quotient_history"

    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    value = Column(Integer, nullable=False)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    source = Column(String(50), nullable=False, default="manual")  # manual, caf, import
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('idx_income_quotient_member_dates', 'member_id', 'valid_from'),
    )

    def __repr__(self):
        return f"<IncomeQuotientHistory(member_id={self.member_id}, value={self.value}, valid_from={self.valid_from})>"
