"""
Decision tree model for cumulative fee reductions
"""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Index,
                        Integer, String)
from sqlalchemy.orm import relationship

from membership_fees.core.database import Base


class DecisionTree(Base):
    """
    Admin-configured discount tree attached to a fee schedule

    Stores:
    - nodes: ordered list of decision nodes (JSON), each with ordered branches
      and nested child nodes
    - version: bumped whenever the nodes change or the tree is duplicated
    - locked / locked_at: frozen once a payment has been billed with it

    Only one tree per schedule is current; superseded versions stay locked and
    bound to the payments that used them.
    """
    __tablename__ = "decision_trees"

    id = Column(Integer, primary_key=True)
    schedule_id = Column(Integer, ForeignKey("fee_schedules.id"), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    nodes = Column(JSON, nullable=False, default=list)
    display_mode = Column(String(20), nullable=False, default="minimum")  # minimum, maximum, range

    locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime, nullable=True)
    is_current = Column(Boolean, nullable=False, default=True)
    superseded_at = Column(DateTime, nullable=True)
    duplicated_from_id = Column(Integer, ForeignKey("decision_trees.id"), nullable=True)

    structure_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    schedule = relationship("FeeSchedule")

    __table_args__ = (
        Index('idx_decision_tree_schedule_version', 'schedule_id', 'version', unique=True),
        Index('idx_decision_tree_schedule_current', 'schedule_id', 'is_current'),
    )

    def __repr__(self):
        return f"<DecisionTree(id={self.id}, schedule_id={self.schedule_id}, version={self.version}, locked={self.locked})>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert tree to dictionary"""
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "version": self.version,
            "nodes": self.nodes or [],
            "display_mode": self.display_mode,
            "locked": bool(self.locked),
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "is_current": bool(self.is_current),
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
            "duplicated_from_id": self.duplicated_from_id,
            "structure_id": self.structure_id,
        }
