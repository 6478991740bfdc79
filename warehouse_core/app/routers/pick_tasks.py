"""
Pick Task API Router
====================
Warehouse-side fulfilment of approved documents.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..security import get_db, require_permission, Permission, SecurityAuditLog
from ..schemas import PickTaskOut, AssignBarcodeRequest, CompletePickRequest
from ..services.ledger import LedgerError
from ..services.picking import PickingService
from .common import http_error, conflict_error, client_ip

router = APIRouter(prefix="/api/pick-tasks", tags=["Pick Tasks"])


def _require_vendor(user):
    if not user.vendor:
        raise HTTPException(status_code=400, detail="User vendor not found")
    return user.vendor


@router.get("/my-tasks")
async def my_tasks(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.PICK_EXECUTE))
):
    """Task groups (document, shop) for the current user's warehouse."""
    warehouse = _require_vendor(current_user)
    return PickingService.my_tasks(db, warehouse, status=status)


@router.get("/document/{document_id}", response_model=List[PickTaskOut])
async def document_tasks(
    document_id: int,
    shop_code: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.PICK_EXECUTE))
):
    warehouse = _require_vendor(current_user)
    tasks = PickingService.document_tasks(db, document_id, warehouse, shop_code=shop_code)
    if not tasks:
        raise HTTPException(status_code=404, detail="No tasks found for your warehouse")
    return tasks


@router.get("/{task_id}", response_model=PickTaskOut)
async def get_task(
    task_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.PICK_EXECUTE))
):
    try:
        task = PickingService.get_task(db, task_id)
    except LedgerError as e:
        raise http_error(e)
    if task.warehouse != current_user.vendor and current_user.role != "ADMIN":
        raise HTTPException(status_code=403, detail="Task does not belong to your warehouse")
    return task


@router.put("/{task_id}/barcode", response_model=PickTaskOut)
async def assign_barcode(
    task_id: int,
    data: AssignBarcodeRequest,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.PICK_EXECUTE))
):
    try:
        task = PickingService.assign_barcode(
            db, task_id, data.barcode, current_user,
            asset_image_url=data.asset_image_url,
            barcode_image_url=data.barcode_image_url
        )
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)

    db.refresh(task)
    return task


@router.post("/{task_id}/cancel", response_model=PickTaskOut)
async def cancel_task(
    task_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.PICK_EXECUTE))
):
    try:
        task = PickingService.cancel_task(db, task_id, current_user)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "cancel", "pick_task", task_id,
        {"document_id": task.document_id}, ip_address=client_ip(request)
    )
    db.refresh(task)
    return task


@router.post("/complete")
async def complete_picking(
    data: CompletePickRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.PICK_EXECUTE))
):
    """
    Complete every open task of the current warehouse on a document
    (optionally one shop) and write the ledger OUT legs.
    """
    try:
        result = PickingService.complete(db, data.document_id, current_user, shop_code=data.shop_code)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "complete_pick", "document", data.document_id, result,
        ip_address=client_ip(request)
    )

    message = f"Completed {result['tasks_completed']} task(s)"
    if result["not_found_barcodes"]:
        message += f"; no active ledger row for {', '.join(result['not_found_barcodes'])}"
    return {"success": True, "message": message, **result}
