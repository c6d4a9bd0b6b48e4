"""
Tariff Resolver: age bracket and catalog amount of a schedule for a member
"""
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.orm import Session

from membership_fees.components.contracts import AgeBracketRef
from membership_fees.core.config import get_settings
from membership_fees.core.errors import NotApplicableError
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.utils import to_money
from membership_fees.models.fee_schedule import (AgeBracket, FeeSchedule,
                                                 FeeScheduleBracketAmount)

logger = LoggingConfig.get_logger(__name__)


class TariffResolution(BaseModel):
    schedule_id: int
    schedule_label: str
    age_bracket: AgeBracketRef
    catalog_amount: Decimal
    source: str  # age_bracket or schedule


class TariffResolver:
    """
    Resolves:
    - the age bracket of a member (first by priority containing the age,
      the standard bracket when the age is unknown)
    - the catalog amount of a schedule for that bracket, falling back to the
      schedule's own base amount
    """

    def __init__(self, db: Session, standard_bracket_code: Optional[str] = None):
        self.db = db
        self.standard_bracket_code = standard_bracket_code or get_settings().standard_age_bracket_code

    def active_age_brackets(self, structure_id: Optional[int] = None) -> List[AgeBracket]:
        query = self.db.query(AgeBracket).filter(AgeBracket.active.is_(True))
        if structure_id is not None:
            query = query.filter(or_(AgeBracket.structure_id == structure_id, AgeBracket.structure_id.is_(None)))
        else:
            query = query.filter(AgeBracket.structure_id.is_(None))
        return query.order_by(AgeBracket.priority, AgeBracket.id).all()

    def resolve_age_bracket(self, age: Optional[int], structure_id: Optional[int] = None) -> AgeBracket:
        """
        Age bracket for an age

        Raises:
            NotApplicableError: no active bracket covers the age
        """
        brackets = self.active_age_brackets(structure_id)

        if age is None:
            for bracket in brackets:
                if bracket.code == self.standard_bracket_code:
                    return bracket
            raise NotApplicableError(
                "Unknown age and no standard age bracket configured",
                {"standard_code": self.standard_bracket_code, "structure_id": structure_id}
            )

        for bracket in brackets:
            if bracket.contains(age):
                return bracket

        raise NotApplicableError(
            f"No age bracket covers age {age}",
            {"age": age, "structure_id": structure_id}
        )

    def resolve(self, schedule: FeeSchedule, age: Optional[int], structure_id: Optional[int] = None) -> TariffResolution:
        """
        Catalog amount of a schedule for a member of the given age

        Raises:
            NotApplicableError: no age bracket, or no amount at all
        """
        bracket = self.resolve_age_bracket(age, structure_id)

        row = self.db.query(FeeScheduleBracketAmount).filter(
            FeeScheduleBracketAmount.schedule_id == schedule.id,
            FeeScheduleBracketAmount.age_bracket_id == bracket.id,
            FeeScheduleBracketAmount.active.is_(True)
        ).first()

        if row is not None:
            amount, source = row.base_amount, "age_bracket"
        elif schedule.base_amount is not None:
            amount, source = schedule.base_amount, "schedule"
        else:
            raise NotApplicableError(
                f"Schedule {schedule.id} has no amount for age bracket {bracket.code}",
                {"schedule_id": schedule.id, "age_bracket": bracket.code}
            )

        logger.debug(
            "Tariff resolved",
            extra={
                "schedule_id": schedule.id,
                "age": age,
                "age_bracket": bracket.code,
                "source": source,
            }
        )
        return TariffResolution(
            schedule_id=schedule.id,
            schedule_label=schedule.label,
            age_bracket=AgeBracketRef(id=bracket.id, code=bracket.code, label=bracket.label),
            catalog_amount=to_money(amount),
            source=source,
        )
