"""
Transfer Receive API Router
===========================
The destination warehouse receives or rejects units picked on a transfer.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..security import get_db, require_permission, Permission, SecurityAuditLog
from ..schemas import TransferTaskOut, TransferCompleteRequest
from ..services.ledger import LedgerError
from ..services.transfers import TransferService
from .common import http_error, conflict_error, client_ip

router = APIRouter(prefix="/api/transfers", tags=["Transfers"])


@router.get("/")
async def pending_transfers(
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.TRANSFER_RECEIVE))
):
    if not current_user.vendor:
        raise HTTPException(status_code=400, detail="User vendor not found")
    return TransferService.pending_documents(db, current_user.vendor)


@router.get("/{document_id}", response_model=List[TransferTaskOut])
async def transfer_tasks(
    document_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.TRANSFER_RECEIVE))
):
    warehouse = None if current_user.role == "ADMIN" else current_user.vendor
    try:
        return TransferService.document_tasks(db, document_id, warehouse)
    except LedgerError as e:
        raise http_error(e)


@router.post("/complete")
async def complete_transfer(
    data: TransferCompleteRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.TRANSFER_RECEIVE))
):
    """
    Every item must be marked received or rejected. Received units get an
    IN row at this warehouse; rejected units go back to the source.
    """
    try:
        result = TransferService.complete(
            db, data.document_id, [d.model_dump() for d in data.tasks], current_user
        )
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "receive_transfer", "document", data.document_id, result,
        ip_address=client_ip(request)
    )
    return {"success": True, **result}
