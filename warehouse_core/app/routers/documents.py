"""
Document API Router
===================
Request documents and their approval workflow:
- Create / edit while draft or submitted
- Submit for approval
- Approve (pick-task generation or direct ledger writes) / reject
- Delete with every ledger row and task the document produced
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..security import (
    get_db, require_permission, has_permission, Permission, SecurityAuditLog,
)
from ..models import DocumentStatus, DocumentType
from ..schemas import (
    DocumentCreate, DocumentUpdate, DocumentOut, DocumentSummary,
    ApproveRequest, RejectRequest,
)
from ..services.ledger import LedgerError
from ..services.documents import DocumentService, generate_doc_code
from .common import http_error, conflict_error, client_ip

router = APIRouter(prefix="/api/documents", tags=["Documents"])


@router.get("/")
async def list_documents(
    status: Optional[DocumentStatus] = None,
    document_type: Optional[DocumentType] = None,
    search: Optional[str] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_VIEW))
):
    """
    List documents, newest first. Users without `document:view_all`
    only see their own.
    """
    created_by = None if has_permission(current_user, Permission.DOCUMENT_VIEW_ALL) else current_user.id
    documents, total = DocumentService.list(
        db, created_by=created_by, status=status, document_type=document_type,
        search=search, skip=offset, limit=limit
    )
    return {
        "total": total,
        "items": [DocumentSummary.model_validate(d) for d in documents],
    }


@router.post("/generate-code")
async def reserve_doc_code(
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_CREATE))
):
    """Reserve the next document code for the current user."""
    doc_code = generate_doc_code(db, current_user)
    db.commit()
    return {"doc_code": doc_code}


@router.post("/", response_model=DocumentOut, status_code=201)
async def create_document(
    data: DocumentCreate,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_CREATE))
):
    try:
        document = DocumentService.create(db, current_user, data)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)

    db.refresh(document)
    return document


@router.get("/{document_id}", response_model=DocumentOut)
async def get_document(
    document_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_VIEW))
):
    try:
        document = DocumentService.get(db, document_id)
    except LedgerError as e:
        raise http_error(e)

    if document.created_by != current_user.id and not has_permission(current_user, Permission.DOCUMENT_VIEW_ALL):
        raise HTTPException(status_code=403, detail="You can only view your own documents")
    return document


@router.put("/{document_id}", response_model=DocumentOut)
async def update_document(
    document_id: int,
    data: DocumentUpdate,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_CREATE))
):
    try:
        document = DocumentService.update(
            db, document_id, current_user, data,
            is_admin=has_permission(current_user, Permission.DOCUMENT_APPROVE)
        )
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)

    db.refresh(document)
    return document


@router.post("/{document_id}/submit", response_model=DocumentOut)
async def submit_document(
    document_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_CREATE))
):
    try:
        document = DocumentService.submit(db, document_id, current_user)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)

    db.refresh(document)
    return document


@router.post("/{document_id}/approve")
async def approve_document(
    document_id: int,
    request: Request,
    data: Optional[ApproveRequest] = None,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_APPROVE))
):
    """
    Approve a submitted document.

    Pick documents get one pick task per unit; return, shop-to-shop and
    repair documents are written to the ledger straight away.
    """
    data = data or ApproveRequest()
    try:
        result = DocumentService.approve(
            db, document_id, current_user,
            other_activity=data.other_activity.value if data.other_activity else None,
            transaction_status=data.transaction_status
        )
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "approve", "document", document_id, result,
        ip_address=client_ip(request)
    )
    return {"success": True, "message": f"Document {result['doc_code']} approved", **result}


@router.post("/{document_id}/reject", response_model=DocumentOut)
async def reject_document(
    document_id: int,
    data: RejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_APPROVE))
):
    try:
        document = DocumentService.reject(db, document_id, current_user, data.reason)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "reject", "document", document_id, {"reason": data.reason},
        ip_address=client_ip(request)
    )
    db.refresh(document)
    return document


@router.delete("/{document_id}")
async def delete_document(
    document_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.DOCUMENT_DELETE))
):
    try:
        doc_code = DocumentService.delete(db, document_id)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "delete", "document", document_id, {"doc_code": doc_code},
        ip_address=client_ip(request)
    )
    return {"success": True, "message": f"Document {doc_code} deleted"}
