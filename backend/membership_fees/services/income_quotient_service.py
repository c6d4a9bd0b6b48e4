"""
Income Quotient Service for resolving a member's income quotient at a date
"""
from datetime import date
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import desc, or_
from sqlalchemy.orm import Session

from membership_fees.core.logging_config import LoggingConfig
from membership_fees.models.member import IncomeQuotientHistory, Member

logger = LoggingConfig.get_logger(__name__)


class IncomeQuotientInfo(BaseModel):
    value: Optional[int] = None
    source: Optional[str] = None  # history, member, parent
    inherited_from_member_id: Optional[int] = None


class IncomeQuotientService:
    """
    Service resolving income quotients:
    - dated history first
    - then the value cached on the member
    - then, for dependants, the parent's value at the same date
    """

    def __init__(self, db: Session):
        self.db = db

    def get_value_at(self, member: Member, at: date) -> IncomeQuotientInfo:
        """
        Income quotient of a member at a date

        Args:
            member: Member to resolve
            at: Reference date

        Returns:
            IncomeQuotientInfo (value None when nothing is known)
        """
        info = self._own_value_at(member, at)
        if info.value is not None:
            return info

        if member.parent_id is not None:
            parent = self.db.query(Member).filter(Member.id == member.parent_id).first()
            if parent is not None:
                inherited = self._own_value_at(parent, at)
                if inherited.value is not None:
                    logger.debug(
                        "Income quotient inherited from parent",
                        extra={"member_id": member.id, "parent_id": parent.id}
                    )
                    return IncomeQuotientInfo(
                        value=inherited.value,
                        source="parent",
                        inherited_from_member_id=parent.id,
                    )

        return IncomeQuotientInfo()

    def _own_value_at(self, member: Member, at: date) -> IncomeQuotientInfo:
        row = self.db.query(IncomeQuotientHistory).filter(
            IncomeQuotientHistory.member_id == member.id,
            IncomeQuotientHistory.valid_from <= at,
            or_(IncomeQuotientHistory.valid_to.is_(None), IncomeQuotientHistory.valid_to >= at)
        ).order_by(desc(IncomeQuotientHistory.valid_from), desc(IncomeQuotientHistory.id)).first()
        if row is not None:
            return IncomeQuotientInfo(value=row.value, source="history")
        if member.income_quotient is not None:
            return IncomeQuotientInfo(value=member.income_quotient, source="member")
        return IncomeQuotientInfo()

    def record(
        self,
        member: Member,
        value: int,
        valid_from: date,
        source: str = "manual"
    ) -> IncomeQuotientHistory:
        """
        Record a new income quotient valid from a date

        Closes the open history row, if any, on the day before and refreshes
        the value cached on the member. The caller commits.
        """
        open_row = self.db.query(IncomeQuotientHistory).filter(
            IncomeQuotientHistory.member_id == member.id,
            IncomeQuotientHistory.valid_to.is_(None)
        ).order_by(desc(IncomeQuotientHistory.valid_from)).first()
        if open_row is not None and open_row.valid_from < valid_from:
            open_row.valid_to = date.fromordinal(valid_from.toordinal() - 1)

        row = IncomeQuotientHistory(member_id=member.id, value=value, valid_from=valid_from, source=source)
        self.db.add(row)
        member.income_quotient = value
        self.db.flush()

        logger.info(
            "Income quotient recorded",
            extra={"member_id": member.id, "valid_from": valid_from.isoformat(), "source": source}
        )
        return row
