"""
Transfer receive workflow: the destination warehouse accepts or rejects
each unit picked on a transfer document.
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy.orm import Session

from ..models import (
    TransferReceiveTask, TransferTaskStatus, Document, DocumentType,
)
from .ledger import (
    LedgerService, NotFoundError, InvalidOperationError, AccessDeniedError,
    in_week_column, week_stamp,
)
from .picking import OTHER_OPERATION

logger = logging.getLogger(__name__)

DEFAULT_TRANSFER_REMARK = "transfer between warehouses"


def transfer_remark_in(document: Document) -> str:
    if document.operation:
        if document.operation == OTHER_OPERATION and document.other_detail:
            return document.other_detail
        return document.operation
    return DEFAULT_TRANSFER_REMARK


class TransferService:

    @staticmethod
    def pending_documents(db: Session, warehouse: str) -> List[dict]:
        """Transfer documents with units waiting at `warehouse`, newest first."""
        tasks = db.query(TransferReceiveTask).filter(
            TransferReceiveTask.to_warehouse == warehouse,
            TransferReceiveTask.status == TransferTaskStatus.PENDING.value
        ).order_by(TransferReceiveTask.created_at.desc(), TransferReceiveTask.id).all()

        groups = {}
        for task in tasks:
            group = groups.get(task.document_id)
            if group is None:
                document = db.query(Document).filter(Document.id == task.document_id).first()
                group = groups[task.document_id] = {
                    "document_id": task.document_id,
                    "doc_code": document.doc_code if document else None,
                    "from_warehouse": task.from_warehouse,
                    "to_warehouse": task.to_warehouse,
                    "created_at": task.created_at,
                    "pending_items": 0,
                }
            group["pending_items"] += 1
        return list(groups.values())

    @staticmethod
    def document_tasks(db: Session, document_id: int, warehouse: Optional[str] = None) -> List[TransferReceiveTask]:
        query = db.query(TransferReceiveTask).filter(TransferReceiveTask.document_id == document_id)
        if warehouse:
            query = query.filter(TransferReceiveTask.to_warehouse == warehouse)
        tasks = query.order_by(TransferReceiveTask.id).all()
        if not tasks:
            raise NotFoundError("No transfer tasks found for this document")
        return tasks

    @staticmethod
    def complete(db: Session, document_id: int, decisions: List[dict], user) -> dict:
        """
        Apply receive/reject decisions for a transfer document.

        Each decision is a dict with `id`, `status` and optionally
        `reject_reason` and `asset_image_url`. Received units get an IN row
        at the destination; rejected units have their OUT leg reverted.

        Raises:
            InvalidOperationError: A decision is still pending or invalid
            NotFoundError: Unknown document or task
            AccessDeniedError: Task belongs to another warehouse
        """
        if not user.vendor:
            raise InvalidOperationError("User vendor not found")

        valid = {TransferTaskStatus.RECEIVED.value, TransferTaskStatus.REJECTED.value}
        undecided = [d for d in decisions if d.get("status") not in valid]
        if undecided:
            raise InvalidOperationError(
                f"Every item must be received or rejected ({len(undecided)} remaining)"
            )

        document = db.query(Document).filter(Document.id == document_id).first()
        if not document:
            raise NotFoundError("Document not found")
        if document.document_type != DocumentType.TRANSFER:
            raise InvalidOperationError("Document is not a transfer")

        now = datetime.utcnow()
        received = rejected = created = reverted = 0
        not_reverted = []

        for decision in decisions:
            task = db.query(TransferReceiveTask).filter(
                TransferReceiveTask.id == decision["id"],
                TransferReceiveTask.document_id == document_id
            ).with_for_update().first()

            if not task:
                raise NotFoundError(f"Transfer task {decision['id']} not found")
            if task.to_warehouse != user.vendor and user.role != "ADMIN":
                raise AccessDeniedError("Task does not belong to your warehouse")
            if task.status != TransferTaskStatus.PENDING.value:
                raise InvalidOperationError(f"Transfer task {task.id} is already {task.status}")

            task.status = decision["status"]
            task.asset_image_url = decision.get("asset_image_url") or task.asset_image_url
            task.updated_at = now

            if task.status == TransferTaskStatus.RECEIVED.value:
                received += 1
                task.received_at = now
                task.received_by = user.id

                details = LedgerService.asset_details(db, task.barcode, task.asset_name, task.size, task.grade)
                asset_name = details.pop("asset_name")
                LedgerService.open_in_leg(
                    db, task.barcode, asset_name,
                    document_id=document.id,
                    warehouse_in=task.to_warehouse,
                    in_stock_date=now,
                    from_vendor=task.from_warehouse,
                    mcs_code_in="-",
                    from_shop=task.from_warehouse,
                    remark_in=transfer_remark_in(document),
                    asset_status="-",
                    transaction_category="-",
                    **details,
                    **week_stamp(in_week_column(DocumentType.TRANSFER), now)
                )
                created += 1
            else:
                rejected += 1
                task.reject_reason = decision.get("reject_reason")
                row = LedgerService.revert_out_leg(db, document.id, task.barcode, task.reject_reason)
                if row is None:
                    not_reverted.append(task.barcode)
                else:
                    reverted += 1

        db.flush()
        logger.info(
            "Transfer %s at %s: %d received, %d rejected",
            document.doc_code, user.vendor, received, rejected
        )

        return {
            "received_count": received,
            "rejected_count": rejected,
            "transactions_created": created,
            "transactions_reverted": reverted,
            "not_reverted_barcodes": not_reverted,
        }
