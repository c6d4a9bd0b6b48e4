"""
Accounting operation model
"""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (Boolean, Column, DateTime, Integer, String, Text,
                        UniqueConstraint)

from membership_fees.core.database import Base


class AccountingOperation(Base):
    """
    Ledger account that reductions are booked to in accounting exports

    Reductions point to an operation through their operation_id; the export
    sums them per (source kind, operation). NULL structure_id means the
    operation is shared by every structure.
    """
    __tablename__ = "accounting_operations"

    id = Column(Integer, primary_key=True)
    code = Column(String(50), nullable=False)
    label = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    account_number = Column(String(20), nullable=True)
    journal_code = Column(String(10), nullable=False, default="VT")
    analytic_section_id = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    structure_id = Column(Integer, nullable=True, index=True)  # NULL = global
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('code', 'structure_id', name='uq_accounting_operation_code_structure'),
    )

    def __repr__(self):
        return f"<AccountingOperation(id={self.id}, code={self.code}, account={self.account_number})>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert operation to dictionary"""
        return {
            "id": self.id,
            "code": self.code,
            "label": self.label,
            "description": self.description,
            "account_number": self.account_number,
            "journal_code": self.journal_code,
            "analytic_section_id": self.analytic_section_id,
            "active": bool(self.active),
            "structure_id": self.structure_id,
        }
