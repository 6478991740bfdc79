"""
Asset API Router
================
Asset master lookups, pickable barcodes and per-barcode ledger history.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..security import get_db, require_permission, Permission
from ..models import Asset
from ..schemas import AssetIn, AssetOut, LedgerRowOut
from ..services.ledger import LedgerService
from .common import conflict_error

router = APIRouter(prefix="/api/assets", tags=["Assets"])


@router.get("/", response_model=List[AssetOut])
async def list_assets(
    search: Optional[str] = None,
    warehouse: Optional[str] = None,
    limit: int = Query(100, le=1000),
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.ASSET_VIEW))
):
    query = db.query(Asset)
    if search:
        query = query.filter(or_(
            Asset.barcode.ilike(f"%{search}%"),
            Asset.asset_name.ilike(f"%{search}%"),
        ))
    if warehouse:
        query = query.filter(Asset.warehouse == warehouse)
    return query.order_by(Asset.barcode).offset(offset).limit(limit).all()


@router.get("/names", response_model=List[str])
async def list_asset_names(
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.ASSET_VIEW))
):
    rows = db.query(Asset.asset_name).distinct().order_by(Asset.asset_name).all()
    return [name for (name,) in rows]


@router.get("/sizes", response_model=List[str])
async def list_asset_sizes(
    asset_name: str,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.ASSET_VIEW))
):
    rows = db.query(Asset.size).filter(
        Asset.asset_name == asset_name, Asset.size.isnot(None)
    ).distinct().order_by(Asset.size).all()
    return [size for (size,) in rows if size]


@router.get("/available-barcodes")
async def available_barcodes(
    asset_name: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(50, le=500),
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.PICK_EXECUTE))
):
    """Barcodes a picker may assign: in stock and not held by another open task."""
    return LedgerService.available_barcodes(db, asset_name=asset_name, search=search, limit=limit)


@router.get("/barcode/{barcode}", response_model=AssetOut)
async def get_asset_by_barcode(
    barcode: str,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.ASSET_VIEW))
):
    asset = db.query(Asset).filter(Asset.barcode == barcode.strip()).first()
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


@router.get("/barcode/{barcode}/history", response_model=List[LedgerRowOut])
async def asset_history(
    barcode: str,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.ASSET_VIEW))
):
    return LedgerService.history(db, barcode.strip())


@router.post("/", response_model=AssetOut, status_code=201)
async def create_asset(
    data: AssetIn,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.ASSET_IMPORT))
):
    """Register a single barcode in the asset master (no ledger row)."""
    if db.query(Asset.id).filter(Asset.barcode == data.barcode).first():
        raise HTTPException(status_code=409, detail=f"Barcode {data.barcode} already exists")

    asset = Asset(**data.model_dump())
    db.add(asset)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)
    db.refresh(asset)
    return asset
