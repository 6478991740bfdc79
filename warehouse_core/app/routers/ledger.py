"""
Ledger Admin API Router
=======================
Read and correct the asset custody ledger:
- Paged listing with filters
- Security-set ledger listing with Type C unit totals
- Bulk correction of editable fields
- Reconciliation report
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import or_, and_, func
from sqlalchemy.orm import Session

from ..security import get_db, require_permission, Permission, SecurityAuditLog
from ..models import AssetTransaction, SecuritySetTransaction
from ..schemas import LedgerRowOut, SecurityLedgerRowOut, LedgerBulkUpdate
from ..services.ledger import LedgerService, LedgerError, EDITABLE_FIELDS
from .common import http_error, client_ip

router = APIRouter(prefix="/api/ledger", tags=["Ledger"])


def _blank(column):
    return or_(column.is_(None), column == "")


@router.get("/")
async def list_ledger(
    barcode: Optional[str] = None,
    asset_name: Optional[str] = None,
    mcs_code: Optional[str] = None,
    shop_name: Optional[str] = None,
    no_mcs: bool = False,
    active_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.LEDGER_VIEW))
):
    """
    Ledger rows, newest first.

    `mcs_code` and `shop_name` match either leg; `no_mcs` keeps rows where
    either MCS code is blank.
    """
    query = db.query(AssetTransaction)

    if barcode:
        query = query.filter(AssetTransaction.barcode.ilike(f"%{barcode}%"))
    if asset_name:
        query = query.filter(AssetTransaction.asset_name.ilike(f"%{asset_name}%"))

    either_leg = []
    if mcs_code:
        either_leg += [
            AssetTransaction.mcs_code_in.ilike(f"%{mcs_code}%"),
            AssetTransaction.mcs_code_out.ilike(f"%{mcs_code}%"),
        ]
    if shop_name:
        either_leg += [
            AssetTransaction.from_shop.ilike(f"%{shop_name}%"),
            AssetTransaction.to_shop.ilike(f"%{shop_name}%"),
        ]
    if either_leg:
        query = query.filter(or_(*either_leg))

    if no_mcs:
        query = query.filter(or_(
            _blank(AssetTransaction.mcs_code_in),
            _blank(AssetTransaction.mcs_code_out),
        ))
    if active_only:
        query = query.filter(AssetTransaction.balance == 1)

    total = query.count()
    rows = query.order_by(
        AssetTransaction.created_at.desc(), AssetTransaction.id.desc()
    ).offset((page - 1) * limit).limit(limit).all()

    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
        "items": [LedgerRowOut.model_validate(r) for r in rows],
    }


@router.get("/security-sets")
async def list_security_ledger(
    asset_name: Optional[str] = None,
    barcode: Optional[str] = None,
    active_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.LEDGER_VIEW))
):
    query = db.query(SecuritySetTransaction)
    if asset_name:
        query = query.filter(SecuritySetTransaction.asset_name.ilike(f"%{asset_name}%"))
    if barcode:
        query = query.filter(SecuritySetTransaction.barcode.ilike(f"%{barcode}%"))
    if active_only:
        query = query.filter(SecuritySetTransaction.balance == 1)

    total = query.count()
    rows = query.order_by(
        SecuritySetTransaction.created_at.desc(), SecuritySetTransaction.id.desc()
    ).offset((page - 1) * limit).limit(limit).all()

    # Type C stock is counted, not barcoded: IN rows stay active, bulk OUT rows are closed
    units_in = db.query(func.coalesce(func.sum(SecuritySetTransaction.unit_in), 0)).filter(
        and_(SecuritySetTransaction.balance == 1, SecuritySetTransaction.barcode.is_(None))
    ).scalar()
    units_out = db.query(func.coalesce(func.sum(SecuritySetTransaction.unit_out), 0)).filter(
        and_(SecuritySetTransaction.balance == 0, SecuritySetTransaction.barcode.is_(None))
    ).scalar()

    return {
        "total": total,
        "page": page,
        "limit": limit,
        "items": [SecurityLedgerRowOut.model_validate(r) for r in rows],
        "unbarcoded_units_in": units_in,
        "unbarcoded_units_out": units_out,
        "unbarcoded_units_net": units_in - units_out,
    }


@router.get("/editable-fields")
async def editable_fields(current_user = Depends(require_permission(Permission.LEDGER_EDIT))):
    return list(EDITABLE_FIELDS)


@router.put("/")
async def bulk_update_ledger(
    data: LedgerBulkUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.LEDGER_EDIT))
):
    """Correct editable fields on many rows at once; all or nothing."""
    try:
        count = LedgerService.bulk_update(db, data.updates)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "bulk_update", "asset_transaction", 0,
        {"updates": data.updates}, ip_address=client_ip(request)
    )
    return {"success": True, "updated_count": count}


@router.get("/reconcile")
async def reconcile_ledger(
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.LEDGER_VIEW))
):
    return LedgerService.reconcile(db)
