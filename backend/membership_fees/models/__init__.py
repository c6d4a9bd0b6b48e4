"""
SQLAlchemy models
"""
from membership_fees.core.database import Base
# Import all models here so Alembic can detect them
from membership_fees.models.accounting_operation import \
    AccountingOperation  # noqa: F401
from membership_fees.models.decision_tree import DecisionTree  # noqa: F401
from membership_fees.models.fee_schedule import (AgeBracket,  # noqa: F401
                                                 FeeSchedule,
                                                 FeeScheduleBracketAmount)
from membership_fees.models.income_bracket import (CalcKind,  # noqa: F401
                                                   IncomeBracket,
                                                   IncomeBracketAgeValue,
                                                   IncomeBracketConfig)
from membership_fees.models.legacy_rule import \
    LegacyReductionRule  # noqa: F401
from membership_fees.models.member import (Commune, CommuneGroup,  # noqa: F401
                                           CommuneGroupMember,
                                           IncomeQuotientHistory, Member)
from membership_fees.models.payment import (MembershipPayment,  # noqa: F401
                                            ReductionLineItem)

__all__ = [
    "Base",
    # Members
    "Member",
    "Commune",
    "CommuneGroup",
    "CommuneGroupMember",
    "IncomeQuotientHistory",
    # Schedules
    "FeeSchedule",
    "FeeScheduleBracketAmount",
    "AgeBracket",
    # Income brackets
    "IncomeBracketConfig",
    "IncomeBracket",
    "IncomeBracketAgeValue",
    "CalcKind",
    # Reductions
    "LegacyReductionRule",
    "DecisionTree",
    "AccountingOperation",
    # Payments
    "MembershipPayment",
    "ReductionLineItem",
]
