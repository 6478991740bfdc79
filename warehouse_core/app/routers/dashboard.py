from datetime import datetime, timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..security import get_db, require_permission, has_permission, Permission
from ..models import Document, DocumentStatus, DocumentType, AssetTransaction, Shop, ShopStatus
from ..schemas import DocumentSummary

router = APIRouter(prefix="/api/dashboard", tags=["Dashboard"])


def percent_change(current: int, previous: int) -> int:
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100)


@router.get("/")
async def dashboard(
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.REPORT_VIEW))
):
    """Document counts with week-over-week change, stock and shop totals."""
    documents = db.query(Document).filter(Document.document_type != DocumentType.IMPORT)
    if not has_permission(current_user, Permission.DOCUMENT_VIEW_ALL):
        documents = documents.filter(Document.created_by == current_user.id)

    week_ago = datetime.utcnow() - timedelta(days=7)
    older = documents.filter(Document.created_at < week_ago)

    def count(query, status=None):
        if status is not None:
            query = query.filter(Document.status == status)
        return query.count()

    total = count(documents)
    approved = count(documents, DocumentStatus.APPROVED)
    pending = count(documents, DocumentStatus.SUBMITTED)
    rejected = count(documents, DocumentStatus.REJECTED)

    recent = documents.order_by(Document.created_at.desc(), Document.id.desc()).limit(5).all()

    return {
        "success": True,
        "stats": {
            "total_documents": total,
            "approved_documents": approved,
            "pending_documents": pending,
            "rejected_documents": rejected,
            "total_assets": db.query(AssetTransaction).filter(AssetTransaction.balance == 1).count(),
            "total_shops": db.query(Shop).filter(Shop.status == ShopStatus.OPEN.value).count(),
            "changes": {
                "documents": percent_change(total, count(older)),
                "approved": percent_change(approved, count(older, DocumentStatus.APPROVED)),
                "pending": percent_change(pending, count(older, DocumentStatus.SUBMITTED)),
            },
        },
        "recent_documents": [DocumentSummary.model_validate(d) for d in recent],
        "user": {"role": current_user.role, "vendor": current_user.vendor},
    }
