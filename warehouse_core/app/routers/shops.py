"""
Shop API Router
===============
Destination shops keyed by MCS code.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..security import get_db, get_current_user, require_permission, Permission, SecurityAuditLog
from ..models import Shop, ShopStatus
from ..schemas import ShopIn, ShopUpdate, ShopOut
from .common import conflict_error

router = APIRouter(prefix="/api/shops", tags=["Shops"])


def _get_shop(db: Session, shop_id: int) -> Shop:
    shop = db.query(Shop).filter(Shop.id == shop_id).first()
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    return shop


@router.get("/", response_model=List[ShopOut])
async def list_shops(
    search: Optional[str] = None,
    status: Optional[ShopStatus] = None,
    limit: int = Query(100, le=1000),
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.SHOP_VIEW))
):
    query = db.query(Shop)
    if search:
        query = query.filter(or_(
            Shop.mcs_code.ilike(f"%{search}%"),
            Shop.shop_name.ilike(f"%{search}%"),
        ))
    if status:
        query = query.filter(Shop.status == status.value)
    return query.order_by(Shop.mcs_code).offset(offset).limit(limit).all()


@router.get("/by-code/{mcs_code}", response_model=ShopOut)
async def get_shop_by_code(
    mcs_code: str,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user)
):
    shop = db.query(Shop).filter(Shop.mcs_code == mcs_code.strip()).first()
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    return shop


@router.post("/", response_model=ShopOut, status_code=201)
async def create_shop(
    data: ShopIn,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.SHOP_MANAGE))
):
    if db.query(Shop.id).filter(Shop.mcs_code == data.mcs_code).first():
        raise HTTPException(status_code=409, detail=f"MCS code {data.mcs_code} already exists")

    shop = Shop(
        mcs_code=data.mcs_code,
        shop_name=data.shop_name,
        shop_type=data.shop_type,
        region=data.region,
        status=data.status.value,
    )
    db.add(shop)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise conflict_error(e)
    db.refresh(shop)
    return shop


@router.put("/{shop_id}", response_model=ShopOut)
async def update_shop(
    shop_id: int,
    data: ShopUpdate,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.SHOP_MANAGE))
):
    shop = _get_shop(db, shop_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("status") is not None:
        changes["status"] = changes["status"].value
    for field, value in changes.items():
        if value is not None:
            setattr(shop, field, value)
    db.commit()
    db.refresh(shop)
    return shop


@router.post("/{shop_id}/toggle-status", response_model=ShopOut)
async def toggle_shop_status(
    shop_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.SHOP_MANAGE))
):
    """OPEN <-> CLOSED"""
    shop = _get_shop(db, shop_id)
    shop.status = ShopStatus.CLOSED.value if shop.status == ShopStatus.OPEN.value else ShopStatus.OPEN.value
    db.commit()
    db.refresh(shop)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "toggle_status", "shop", shop.id, {"status": shop.status}
    )
    return shop


@router.delete("/{shop_id}")
async def delete_shop(
    shop_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.SHOP_MANAGE))
):
    shop = _get_shop(db, shop_id)
    mcs_code = shop.mcs_code
    db.delete(shop)
    db.commit()
    return {"success": True, "message": f"Shop {mcs_code} deleted"}
