from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..security import get_db, require_permission, Permission, SecurityAuditLog
from ..schemas import RepairTaskOut, RepairCompleteRequest
from ..services.ledger import LedgerError
from ..services.repairs import RepairService
from .common import http_error, conflict_error, client_ip

router = APIRouter(prefix="/api/repairs", tags=["Repairs"])


@router.get("/", response_model=List[RepairTaskOut])
async def list_repair_tasks(
    status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.REPAIR_COMPLETE))
):
    """Admins see every repair warehouse; others only their own."""
    warehouse = None if current_user.role == "ADMIN" else current_user.vendor
    return RepairService.list_tasks(db, status=status, warehouse=warehouse, search=search)


@router.post("/complete", response_model=RepairTaskOut)
async def complete_repair(
    data: RepairCompleteRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.REPAIR_COMPLETE))
):
    try:
        task = RepairService.complete(db, data.task_id, data.repair_end_date, current_user)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "complete_repair", "repair_task", task.id,
        {"barcode": task.barcode, "repair_end_date": data.repair_end_date},
        ip_address=client_ip(request)
    )
    db.refresh(task)
    return task
