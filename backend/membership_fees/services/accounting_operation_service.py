"""
Accounting Operation Service - operations reductions are booked to, and the
per-operation export of billed reductions
"""
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from membership_fees.core.errors import ConflictError, ValidationError
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.utils import ZERO, as_date, to_money
from membership_fees.models.accounting_operation import AccountingOperation
from membership_fees.models.payment import (MembershipPayment,
                                            ReductionLineItem)

logger = LoggingConfig.get_logger(__name__)


class AccountingOperationService:
    """
    Service for accounting operations:
    - listing the operations visible to a structure
    - creating operations
    - exporting billed reductions grouped by source kind and operation
    """

    def __init__(self, db: Session):
        self.db = db

    def list_operations(self, structure_id: Optional[int] = None, active_only: bool = True) -> List[AccountingOperation]:
        """Operations of a structure plus the global ones, by label"""
        query = self.db.query(AccountingOperation)
        if active_only:
            query = query.filter(AccountingOperation.active.is_(True))
        if structure_id is not None:
            query = query.filter(or_(
                AccountingOperation.structure_id.is_(None),
                AccountingOperation.structure_id == structure_id
            ))
        return query.order_by(AccountingOperation.label, AccountingOperation.id).all()

    def create_operation(
        self,
        code: str,
        label: str,
        account_number: Optional[str] = None,
        journal_code: str = "VT",
        description: Optional[str] = None,
        analytic_section_id: Optional[int] = None,
        structure_id: Optional[int] = None
    ) -> AccountingOperation:
        """
        Create an active accounting operation

        Raises:
            ValidationError: empty code or label
            ConflictError: the code is already used in the same structure
        """
        code = (code or "").strip()
        label = (label or "").strip()
        if not code or not label:
            raise ValidationError(
                "Accounting operation needs a code and a label",
                {"code": code, "label": label}
            )

        existing = self.db.query(AccountingOperation).filter(
            AccountingOperation.code == code,
            AccountingOperation.structure_id.is_(None) if structure_id is None
            else AccountingOperation.structure_id == structure_id
        ).first()
        if existing is not None:
            raise ConflictError(
                f"Accounting operation {code} already exists",
                {"code": code, "structure_id": structure_id, "operation_id": existing.id}
            )

        operation = AccountingOperation(
            code=code,
            label=label,
            description=description,
            account_number=account_number,
            journal_code=journal_code or "VT",
            analytic_section_id=analytic_section_id,
            structure_id=structure_id,
            active=True,
        )
        self.db.add(operation)
        self.db.commit()
        self.db.refresh(operation)

        logger.info(
            "Accounting operation created",
            extra={"operation_id": operation.id, "code": code, "structure_id": structure_id}
        )
        return operation

    def export_reductions_by_operation(
        self,
        start: Any,
        end: Any,
        structure_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Sum billed reductions per (source kind, operation) over a payment-date range

        Args:
            start: First payment date, inclusive (date or ISO string)
            end: Last payment date, inclusive (date or ISO string)
            structure_id: Only payments of this structure

        Returns:
            One row per group with total and count; reductions without an
            operation are grouped under operation_id None

        Raises:
            ValidationError: missing or inverted date range
        """
        try:
            start_date: Optional[date] = as_date(start)
            end_date: Optional[date] = as_date(end)
        except ValueError as e:
            raise ValidationError(str(e), {"start": str(start), "end": str(end)}) from e
        if start_date is None or end_date is None or end_date < start_date:
            raise ValidationError(
                "Export needs a start date on or before the end date",
                {"start": str(start), "end": str(end)}
            )

        query = self.db.query(
            ReductionLineItem.source_kind,
            ReductionLineItem.operation_id,
            AccountingOperation.code,
            AccountingOperation.label,
            AccountingOperation.account_number,
            func.sum(ReductionLineItem.computed_amount),
            func.count(ReductionLineItem.id),
        ).join(
            MembershipPayment, MembershipPayment.id == ReductionLineItem.payment_id
        ).outerjoin(
            AccountingOperation, AccountingOperation.id == ReductionLineItem.operation_id
        ).filter(
            MembershipPayment.payment_date.between(start_date, end_date)
        )
        if structure_id is not None:
            query = query.filter(MembershipPayment.structure_id == structure_id)

        rows = query.group_by(
            ReductionLineItem.source_kind,
            ReductionLineItem.operation_id,
            AccountingOperation.code,
            AccountingOperation.label,
            AccountingOperation.account_number,
        ).order_by(ReductionLineItem.source_kind, ReductionLineItem.operation_id).all()

        export = [
            {
                "source_kind": source_kind,
                "operation_id": operation_id,
                "operation_code": code,
                "operation_label": label,
                "account_number": account_number,
                "total": to_money(total if total is not None else ZERO),
                "count": count,
            }
            for source_kind, operation_id, code, label, account_number, total, count in rows
        ]

        logger.info(
            "Reductions exported by accounting operation",
            extra={
                "start": start_date.isoformat(),
                "end": end_date.isoformat(),
                "structure_id": structure_id,
                "groups": len(export),
            }
        )
        return export
