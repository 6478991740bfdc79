from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import models, schemas
from .security import (
    get_db, get_current_user, require_permission, Permission,
    verify_password, get_password_hash, PasswordPolicy, SecurityAuditLog,
)

router = APIRouter(prefix="/users", tags=["users"])


def _check_password(password: str):
    ok, errors = PasswordPolicy.validate(password)
    if not ok:
        raise HTTPException(status_code=400, detail="; ".join(errors))


def _derive_initials(first_name: Optional[str], last_name: Optional[str], username: str) -> str:
    parts = [p for p in (first_name, last_name) if p]
    if parts:
        return "".join(p[0] for p in parts).upper()
    return username[:2].upper()


@router.get("/me", response_model=schemas.UserOut)
def me_user(current_user: models.User = Depends(get_current_user)):
    return current_user


@router.post("/change-password")
def change_password(
    pw: schemas.ChangePasswordIn,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user)
):
    if not verify_password(pw.old_password, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Old password is incorrect")
    _check_password(pw.new_password)
    current_user.password_hash = get_password_hash(pw.new_password)
    db.add(current_user)
    db.commit()
    SecurityAuditLog.log_sensitive_action(db, current_user.id, "change_password", "user", current_user.id, {})
    return {"status": "ok", "message": "Password updated"}


@router.get("/vendors", response_model=List[str])
def list_vendors(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user)
):
    """Warehouses known to the system (distinct user vendors)."""
    rows = db.query(models.User.vendor).filter(
        models.User.vendor.isnot(None), models.User.vendor != ""
    ).distinct().order_by(models.User.vendor).all()
    return [v for (v,) in rows]


@router.get("/", response_model=List[schemas.UserOut])
def list_users(
    search: Optional[str] = None,
    limit: int = Query(100, le=500),
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_permission(Permission.USER_VIEW))
):
    query = db.query(models.User)
    if search:
        query = query.filter(or_(
            models.User.username.ilike(f"%{search}%"),
            models.User.email.ilike(f"%{search}%"),
            models.User.vendor.ilike(f"%{search}%"),
        ))
    return query.order_by(models.User.id).offset(offset).limit(limit).all()


@router.post("/", response_model=schemas.UserOut, status_code=201)
def create_user(
    user_in: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_permission(Permission.USER_MANAGE))
):
    existing = db.query(models.User).filter(
        (models.User.username == user_in.username) | (models.User.email == user_in.email)
    ).first()
    if existing:
        raise HTTPException(status_code=409, detail="User with that username or email already exists")
    _check_password(user_in.password)

    user = models.User(
        username=user_in.username,
        email=user_in.email,
        password_hash=get_password_hash(user_in.password),
        first_name=user_in.first_name,
        last_name=user_in.last_name,
        initials=(user_in.initials or _derive_initials(user_in.first_name, user_in.last_name, user_in.username)).upper(),
        vendor=user_in.vendor,
        company=user_in.company,
        phone=user_in.phone,
        role=user_in.role.value,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "create", "user", user.id, {"username": user.username, "role": user.role}
    )
    return user


@router.get("/{user_id}", response_model=schemas.UserOut)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_permission(Permission.USER_VIEW))
):
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.put("/{user_id}", response_model=schemas.UserOut)
def update_user(
    user_id: int,
    data: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_permission(Permission.USER_MANAGE))
):
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    changes = data.model_dump(exclude_unset=True)

    if "email" in changes and changes["email"] != user.email:
        taken = db.query(models.User.id).filter(
            models.User.email == changes["email"], models.User.id != user.id
        ).first()
        if taken:
            raise HTTPException(status_code=409, detail="Email already in use")

    password = changes.pop("password", None)
    if password:
        _check_password(password)
        user.password_hash = get_password_hash(password)

    if "role" in changes and changes["role"] is not None:
        changes["role"] = changes["role"].value
    if changes.get("initials"):
        changes["initials"] = changes["initials"].upper()

    for field, value in changes.items():
        setattr(user, field, value)

    db.commit()
    db.refresh(user)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "update", "user", user.id,
        dict(changes, password_changed=bool(password))
    )
    return user


@router.delete("/{user_id}")
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_permission(Permission.USER_MANAGE))
):
    """Deactivate a user; documents keep their creator."""
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")

    user.is_active = False
    db.commit()

    SecurityAuditLog.log_sensitive_action(db, current_user.id, "deactivate", "user", user.id, {})
    return {"success": True, "message": f"User {user.username} deactivated"}
