"""
Repair workflow: a repair document closes the unit's active ledger row and
opens a RepairTask; completing the task brings the unit back as REFURBISH.
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy.orm import Session

from ..models import RepairTask, RepairTaskStatus, Document, DocumentType
from .ledger import (
    LedgerService, NotFoundError, InvalidOperationError,
    in_week_column, week_stamp,
)

logger = logging.getLogger(__name__)


class RepairService:

    @staticmethod
    def open_task(
        db: Session,
        document: Document,
        barcode: str,
        details: dict,
        transaction_id: Optional[int] = None
    ) -> RepairTask:
        vendor = document.creator.vendor if document.creator else None
        task = RepairTask(
            document_id=document.id,
            transaction_id=transaction_id,
            barcode=barcode,
            asset_name=details.get("asset_name") or "-",
            size=details.get("size"),
            grade=details.get("grade") or "A",
            repair_warehouse=vendor or "Unknown",
            reporter_name=document.full_name,
            reporter_company=document.company,
            reporter_phone=document.phone,
            reporter_vendor=vendor,
            status=RepairTaskStatus.PENDING.value,
        )
        db.add(task)
        db.flush()
        return task

    @staticmethod
    def list_tasks(
        db: Session,
        status: Optional[str] = None,
        warehouse: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[RepairTask]:
        query = db.query(RepairTask)
        if status:
            query = query.filter(RepairTask.status == status)
        if warehouse:
            query = query.filter(RepairTask.repair_warehouse == warehouse)
        if search:
            query = query.filter(
                RepairTask.barcode.ilike(f"%{search}%") | RepairTask.asset_name.ilike(f"%{search}%")
            )
        return query.order_by(RepairTask.created_at.desc(), RepairTask.id.desc()).all()

    @staticmethod
    def complete(db: Session, task_id: int, repair_end_date: datetime, user) -> RepairTask:
        """
        Finish a repair and return the unit to stock.

        Raises:
            NotFoundError: Unknown task
            InvalidOperationError: Task is not pending
            LedgerConflictError: The unit is somehow already in stock
        """
        task = db.query(RepairTask).filter(RepairTask.id == task_id).with_for_update().first()
        if not task:
            raise NotFoundError("Repair task not found")

        if task.status != RepairTaskStatus.PENDING.value:
            raise InvalidOperationError("Repair task is not pending")

        details = LedgerService.asset_details(db, task.barcode, task.asset_name, task.size, task.grade)
        # the task keeps the name and size recorded when the repair was reported
        details.pop("asset_name")
        details["size"] = task.size

        LedgerService.open_in_leg(
            db, task.barcode, task.asset_name,
            document_id=task.document_id,
            warehouse_in=user.vendor or task.repair_warehouse,
            in_stock_date=repair_end_date,
            from_vendor=task.repair_warehouse,
            mcs_code_in="-",
            from_shop=task.repair_warehouse,
            remark_in="repair completed",
            asset_status="REFURBISH",
            transaction_category="-",
            **details,
            **week_stamp(in_week_column(DocumentType.REPAIR), repair_end_date)
        )

        task.status = RepairTaskStatus.COMPLETED.value
        task.repair_end_date = repair_end_date
        task.completed_at = datetime.utcnow()
        task.completed_by = user.id
        db.flush()

        logger.info("Repair task %s completed for %s", task.id, task.barcode)
        return task
