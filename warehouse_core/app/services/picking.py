"""
Pick Task Service
=================
Fulfilment of approved documents by the warehouses named on each line:
- Task generation on approval (one task per physical unit)
- Barcode assignment with availability checks
- Cancellation, which shrinks the originating document line
- Group completion, which writes the ledger OUT legs
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy.orm import Session

from ..models import (
    PickAssetTask, PickTaskStatus, Document, DocumentAsset, DocumentSecuritySet,
    Shop, Asset, TransferReceiveTask, TransferTaskStatus,
    DocumentType, BORROW_DOCUMENT_TYPES, NO_MCS,
    is_controlbox, is_security_type_c,
)
from .ledger import (
    LedgerService, NotFoundError, InvalidOperationError, AccessDeniedError,
    LedgerConflictError, out_week_column, week_stamp,
)

logger = logging.getLogger(__name__)

OPEN_TASK_STATUSES = (PickTaskStatus.PENDING.value, PickTaskStatus.PICKING.value)
OTHER_OPERATION = "other"


def shop_type_for(db: Session, mcs_code: Optional[str]) -> str:
    """Shop type of a destination, or NO MCS when the shop is unknown."""
    if not mcs_code or not mcs_code.strip():
        return NO_MCS
    shop = db.query(Shop).filter(Shop.mcs_code == mcs_code.strip()).first()
    return (shop.shop_type if shop else None) or NO_MCS


def remark_out_for(document: Document) -> str:
    if document.document_type == DocumentType.TRANSFER and document.operation:
        if document.operation == OTHER_OPERATION and document.other_detail:
            return document.other_detail
        return document.operation
    if document.document_type in BORROW_DOCUMENT_TYPES and document.borrow_type:
        return document.borrow_type
    return "-"


def security_remark_out_for(document: Document) -> str:
    """Security Type C bulk rows only carry the borrow type."""
    if document.document_type in BORROW_DOCUMENT_TYPES and document.borrow_type:
        return document.borrow_type
    return "-"


def _is_custom_display_size(asset_name: str, size: Optional[str]) -> bool:
    compact = (asset_name or "").lower().replace(" ", "")
    return ("lightbox" in compact or "accwall" in compact) and bool(size) and "*" in size


class PickingService:

    # =========================================================================
    # TASK GENERATION
    # =========================================================================

    @staticmethod
    def create_tasks(db: Session, document: Document) -> List[PickAssetTask]:
        """
        Expand an approved document into pick tasks.

        Asset lines and CONTROLBOX lines give one task per unit. A Security
        Type C line gives a single task carrying the full quantity. Transfer
        asset tasks are picked by the creator's own warehouse; security sets
        always come from the warehouse named on the line.
        """
        is_transfer = document.document_type == DocumentType.TRANSFER
        creator_vendor = document.creator.vendor if document.creator else None
        tasks = []

        for shop in document.shops:
            shared = dict(
                document_id=document.id,
                shop_code=shop.shop_code,
                shop_name=shop.shop_name,
                start_install_date=shop.start_install_date,
                end_install_date=shop.end_install_date,
                q7b7=shop.q7b7,
                shop_focus=shop.shop_focus,
                requester_name=document.full_name,
                requester_company=document.company,
                requester_phone=document.phone,
                status=PickTaskStatus.PENDING.value,
            )

            for line in shop.assets:
                if line.qty <= 0:
                    continue
                warehouse = (creator_vendor if is_transfer else line.withdraw_for) or "Unknown"
                for unit in range(line.qty):
                    tasks.append(PickAssetTask(
                        document_asset_id=line.id,
                        asset_name=line.name,
                        size=line.size,
                        grade=line.grade,
                        qty=1,
                        is_security_set=False,
                        warehouse=warehouse,
                        # a requested barcode identifies one unit only
                        barcode=line.barcode if is_transfer and unit == 0 else None,
                        **shared
                    ))

            for line in shop.security_sets:
                if line.qty <= 0:
                    continue
                warehouse = line.withdraw_for or "Unknown"
                if is_security_type_c(line.name):
                    tasks.append(PickAssetTask(
                        document_security_set_id=line.id,
                        asset_name=line.name,
                        qty=line.qty,
                        is_security_set=True,
                        warehouse=warehouse,
                        **shared
                    ))
                    continue
                for _ in range(line.qty):
                    tasks.append(PickAssetTask(
                        document_security_set_id=line.id,
                        asset_name=line.name,
                        qty=1,
                        is_security_set=True,
                        warehouse=warehouse,
                        **shared
                    ))

        db.add_all(tasks)
        db.flush()
        logger.info("Created %d pick task(s) for document %s", len(tasks), document.doc_code)
        return tasks

    # =========================================================================
    # QUERIES
    # =========================================================================

    @staticmethod
    def get_task(db: Session, task_id: int, lock: bool = False) -> PickAssetTask:
        query = db.query(PickAssetTask).filter(PickAssetTask.id == task_id)
        if lock:
            query = query.with_for_update()
        task = query.first()
        if not task:
            raise NotFoundError("Pick task not found")
        return task

    @staticmethod
    def my_tasks(db: Session, warehouse: str, status: Optional[str] = None) -> List[dict]:
        """
        Tasks of one warehouse grouped per (document, shop). A group is
        completed when every task is completed or cancelled, picking when
        some are.
        """
        tasks = db.query(PickAssetTask).filter(
            PickAssetTask.warehouse == warehouse
        ).order_by(PickAssetTask.created_at.desc(), PickAssetTask.id).all()

        groups = {}
        for task in tasks:
            key = (task.document_id, task.shop_code or "")
            group = groups.get(key)
            if group is None:
                group = groups[key] = {
                    "id": f"{task.document_id}-{task.shop_code or ''}",
                    "document_id": task.document_id,
                    "doc_code": task.document.doc_code,
                    "document_type": task.document.document_type.value,
                    "requester_name": task.requester_name,
                    "warehouse": task.warehouse,
                    "shop_code": task.shop_code or "",
                    "shop_name": task.shop_name or "N/A",
                    "created_at": task.created_at,
                    "total_items": 0,
                    "handled_items": 0,
                }
            group["total_items"] += 1
            if task.status in (PickTaskStatus.COMPLETED.value, PickTaskStatus.CANCELLED.value):
                group["handled_items"] += 1

        result = []
        for group in groups.values():
            if group["handled_items"] == group["total_items"]:
                group["status"] = PickTaskStatus.COMPLETED.value
            elif group["handled_items"] > 0:
                group["status"] = PickTaskStatus.PICKING.value
            else:
                group["status"] = PickTaskStatus.PENDING.value
            if status and group["status"] != status:
                continue
            result.append(group)

        result.sort(key=lambda g: g["created_at"], reverse=True)
        return result

    @staticmethod
    def document_tasks(db: Session, document_id: int, warehouse: str, shop_code: Optional[str] = None) -> List[PickAssetTask]:
        query = db.query(PickAssetTask).filter(
            PickAssetTask.document_id == document_id,
            PickAssetTask.warehouse == warehouse
        )
        if shop_code:
            query = query.filter(PickAssetTask.shop_code == shop_code)
        return query.order_by(PickAssetTask.id).all()

    # =========================================================================
    # TASK UPDATES
    # =========================================================================

    @staticmethod
    def assign_barcode(
        db: Session,
        task_id: int,
        barcode: Optional[str],
        user,
        asset_image_url: Optional[str] = None,
        barcode_image_url: Optional[str] = None
    ) -> PickAssetTask:
        """
        Record the unit a picker scanned for a task.

        Cancelled tasks are returned unchanged.

        Raises:
            AccessDeniedError: Task belongs to another warehouse
            InvalidOperationError: Task already completed
            LedgerConflictError: Barcode not in stock or held by another task
        """
        task = PickingService.get_task(db, task_id, lock=True)

        if task.warehouse != user.vendor:
            raise AccessDeniedError("Task does not belong to your warehouse")

        if task.status == PickTaskStatus.COMPLETED.value:
            raise InvalidOperationError("Cannot update completed task")

        if task.status == PickTaskStatus.CANCELLED.value:
            return task

        barcode = (barcode or "").strip() or None
        if barcode and barcode != task.barcode:
            if is_security_type_c(task.asset_name):
                raise InvalidOperationError("Security Type C sets are not barcoded")
            if barcode in LedgerService.held_barcodes(db, exclude_task_id=task.id):
                raise LedgerConflictError(f"Barcode {barcode} is already assigned to another task")
            if not LedgerService.is_available(db, barcode, task.asset_name):
                raise LedgerConflictError(f"Barcode {barcode} is not in stock")
            task.barcode = barcode

        if asset_image_url:
            task.asset_image_url = asset_image_url
        if barcode_image_url:
            task.barcode_image_url = barcode_image_url
        task.status = PickTaskStatus.PICKING.value
        task.updated_at = datetime.utcnow()
        db.flush()
        return task

    @staticmethod
    def cancel_task(db: Session, task_id: int, user) -> PickAssetTask:
        """
        Cancel a task and take its unit off the originating document line.
        Lines that reach zero are removed.
        """
        task = PickingService.get_task(db, task_id, lock=True)

        if task.warehouse != user.vendor and user.role != "ADMIN":
            raise AccessDeniedError("Task does not belong to your warehouse")

        if task.status == PickTaskStatus.COMPLETED.value:
            raise InvalidOperationError("Cannot cancel a completed task")

        if task.status == PickTaskStatus.CANCELLED.value:
            return task

        task.status = PickTaskStatus.CANCELLED.value
        task.barcode = None
        task.asset_image_url = None
        task.barcode_image_url = None
        task.updated_at = datetime.utcnow()

        line = None
        if task.document_asset_id:
            line = db.query(DocumentAsset).filter(DocumentAsset.id == task.document_asset_id).with_for_update().first()
        elif task.document_security_set_id:
            line = db.query(DocumentSecuritySet).filter(
                DocumentSecuritySet.id == task.document_security_set_id
            ).with_for_update().first()

        if line is not None:
            remaining = line.qty - task.qty
            task.document_asset_id = None
            task.document_security_set_id = None
            if remaining <= 0:
                db.delete(line)
            else:
                line.qty = remaining

        db.flush()
        logger.info("Pick task %s cancelled on document %s", task.id, task.document_id)
        return task

    # =========================================================================
    # COMPLETION
    # =========================================================================

    @staticmethod
    def complete(db: Session, document_id: int, user, shop_code: Optional[str] = None) -> dict:
        """
        Finish picking for one warehouse (optionally one shop) of a document
        and write every unit's OUT leg.

        Raises:
            NotFoundError: No tasks for this warehouse
            InvalidOperationError: Missing barcodes, or group already completed
        """
        if not user.vendor:
            raise InvalidOperationError("User vendor not found")

        query = db.query(PickAssetTask).filter(
            PickAssetTask.document_id == document_id,
            PickAssetTask.warehouse == user.vendor
        )
        if shop_code:
            query = query.filter(PickAssetTask.shop_code == shop_code)
        tasks = query.order_by(PickAssetTask.id).with_for_update().all()

        if not tasks:
            raise NotFoundError("No tasks found for your warehouse")

        cancelled = [t for t in tasks if t.status == PickTaskStatus.CANCELLED.value]
        active = [t for t in tasks if t.status in OPEN_TASK_STATUSES]

        if not active:
            raise InvalidOperationError("These tasks have already been completed")

        missing = [t for t in active if not t.barcode and not is_security_type_c(t.asset_name)]
        if missing:
            raise InvalidOperationError(
                f"Barcode missing on {len(missing)} task(s): "
                + ", ".join(f"#{t.id} {t.asset_name}" for t in missing)
            )

        document = db.query(Document).filter(Document.id == document_id).first()
        creator_vendor = document.creator.vendor if document.creator else None
        remark_out = remark_out_for(document)
        now = datetime.utcnow()
        out_week = week_stamp(out_week_column(document.document_type), now, document.other_activity)

        transactions_updated = 0
        security_type_c_processed = 0
        transfer_tasks_created = 0
        not_found = []

        for task in active:
            task.status = PickTaskStatus.COMPLETED.value
            task.completed_at = now
            task.completed_by = user.id

            if is_security_type_c(task.asset_name):
                LedgerService.record_security_bulk_out(
                    db, task.asset_name, task.qty,
                    document_id=document.id,
                    doc_code=document.doc_code,
                    out_date=now,
                    to_vendor=creator_vendor,
                    status=document.transaction_status,
                    mcs_code_out=task.shop_code,
                    to_shop=task.shop_name,
                    remark_out=security_remark_out_for(document),
                    **out_week
                )
                security_type_c_processed += 1
                continue

            if is_controlbox(task.asset_name):
                row = LedgerService.find_active_security(db, task.barcode)
                if row is None:
                    logger.warning("No active security row for barcode %s", task.barcode)
                    not_found.append(task.barcode)
                    continue
                LedgerService.close_security_out_leg(
                    db, row,
                    document_id=document.id,
                    doc_code=document.doc_code,
                    out_date=now,
                    to_vendor=creator_vendor,
                    status=document.transaction_status,
                    mcs_code_out=task.shop_code,
                    to_shop=task.shop_name,
                    remark_out=remark_out,
                    **out_week
                )
                transactions_updated += 1
                continue

            row = LedgerService.find_active(db, task.barcode)
            if row is None:
                logger.warning("No active ledger row for barcode %s", task.barcode)
                not_found.append(task.barcode)
                continue

            out_fields = dict(
                document_id=document.id,
                out_date=now,
                to_vendor=creator_vendor,
                status=document.transaction_status,
                shop_type=shop_type_for(db, task.shop_code),
                mcs_code_out=task.shop_code,
                to_shop=task.shop_name,
                remark_out=remark_out,
                asset_status="-",
                **out_week
            )
            if task.grade:
                out_fields["grade"] = task.grade
            LedgerService.close_out_leg(db, row, **out_fields)
            transactions_updated += 1

            if _is_custom_display_size(task.asset_name, task.size):
                db.query(Asset).filter(Asset.barcode == task.barcode).update(
                    {Asset.size: task.size}, synchronize_session=False
                )

            if document.document_type == DocumentType.TRANSFER:
                db.add(TransferReceiveTask(
                    document_id=document.id,
                    pick_asset_task_id=task.id,
                    barcode=task.barcode,
                    asset_name=task.asset_name,
                    size=task.size,
                    grade=task.grade,
                    from_warehouse=task.warehouse,
                    to_warehouse=task.shop_name or "",
                    status=TransferTaskStatus.PENDING.value,
                ))
                transfer_tasks_created += 1

        db.flush()

        logger.info(
            "Document %s picked by %s: %d completed, %d ledger rows closed, %d not found",
            document.doc_code, user.vendor, len(active), transactions_updated, len(not_found)
        )

        return {
            "tasks_completed": len(active),
            "tasks_cancelled": len(cancelled),
            "transactions_updated": transactions_updated,
            "security_type_c_processed": security_type_c_processed,
            "transfer_tasks_created": transfer_tasks_created,
            "not_found_barcodes": not_found,
        }
