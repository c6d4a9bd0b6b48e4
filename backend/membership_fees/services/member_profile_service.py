"""
Member Profile Service: gathers everything the matchers need about a member
"""
from datetime import date
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from membership_fees.components.contracts import MemberProfile
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.models.member import CommuneGroupMember, Member
from membership_fees.models.payment import MembershipPayment
from membership_fees.services.income_quotient_service import (
    IncomeQuotientInfo, IncomeQuotientService)

logger = LoggingConfig.get_logger(__name__)


class MemberProfileService:
    """Builds immutable MemberProfile snapshots from the database"""

    def __init__(self, db: Session, income_quotients: Optional[IncomeQuotientService] = None):
        self.db = db
        self.income_quotients = income_quotients or IncomeQuotientService(db)

    def build(
        self,
        member: Member,
        reference_date: date,
        income_quotient: Optional[IncomeQuotientInfo] = None
    ) -> MemberProfile:
        """
        Build the profile of a member as seen at a reference date

        Args:
            member: Member
            reference_date: Payment reference date
            income_quotient: Already resolved income quotient, if any

        Returns:
            MemberProfile
        """
        if income_quotient is None:
            income_quotient = self.income_quotients.get_value_at(member, reference_date)

        return MemberProfile(
            member_id=member.id,
            birth_date=member.birth_date,
            household_id=member.household_id,
            commune_id=member.commune_id,
            commune_group_ids=frozenset(self.commune_group_ids(member.commune_id)),
            income_quotient=income_quotient.value,
            social_status=member.social_status,
            first_payment_date=self.first_payment_date(member.id, reference_date),
            active_household_payments=self.active_household_payments(member.household_id, reference_date),
        )

    def commune_group_ids(self, commune_id: Optional[int]):
        if commune_id is None:
            return []
        rows = self.db.query(CommuneGroupMember.group_id).filter(
            CommuneGroupMember.commune_id == commune_id
        ).all()
        return [row[0] for row in rows]

    def first_payment_date(self, member_id: int, reference_date: date) -> Optional[date]:
        """Start of the earliest payment period that began on or before the reference date"""
        return self.db.query(func.min(MembershipPayment.period_start)).filter(
            MembershipPayment.member_id == member_id,
            MembershipPayment.period_start <= reference_date
        ).scalar()

    def active_household_payments(self, household_id: Optional[str], reference_date: date) -> int:
        """Active payments of the household whose period ends on or after the reference date"""
        if not household_id:
            return 0
        count = self.db.query(func.count(MembershipPayment.id)).join(
            Member, Member.id == MembershipPayment.member_id
        ).filter(
            Member.household_id == household_id,
            MembershipPayment.status == "active",
            MembershipPayment.period_end >= reference_date
        ).scalar()
        return count or 0
