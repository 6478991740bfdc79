from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session

from . import models, schemas
from .security import (
    get_db, verify_password, create_access_token, create_refresh_token, decode_token,
    RateLimiter, SecurityAuditLog,
)
from .routers.common import client_ip

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=schemas.Token)
async def login(request: Request, db: Session = Depends(get_db)):
    """Accept either form-encoded (OAuth2) login or JSON {username,password}."""
    ctype = (request.headers.get("content-type") or "").lower()
    username = None
    password = None

    if "application/json" in ctype:
        try:
            body = await request.json()
            username = body.get("username")
            password = body.get("password")
        except ValueError:
            pass
    else:
        form = await request.form()
        username = form.get("username")
        password = form.get("password")

    if not username or not password:
        raise HTTPException(status_code=400, detail="Missing username or password")

    ip = client_ip(request)
    limit_key = f"login:{username}:{ip}"
    allowed, _ = RateLimiter.check_rate_limit(limit_key)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Try again later."
        )

    user = db.query(models.User).filter(models.User.username == username).first()
    if not user or not verify_password(password, user.password_hash):
        RateLimiter.record_attempt(limit_key)
        SecurityAuditLog.log_login_attempt(
            db, username, False, ip_address=ip,
            user_agent=request.headers.get("user-agent"), failure_reason="bad credentials"
        )
        raise HTTPException(status_code=400, detail="Incorrect username or password")

    if not user.is_active:
        SecurityAuditLog.log_login_attempt(db, username, False, ip_address=ip, failure_reason="inactive")
        raise HTTPException(status_code=403, detail="User account is disabled")

    RateLimiter.reset(limit_key)
    SecurityAuditLog.log_login_attempt(
        db, username, True, ip_address=ip, user_agent=request.headers.get("user-agent")
    )

    return {
        "access_token": create_access_token({"sub": user.username, "role": user.role}),
        "refresh_token": create_refresh_token(user.username),
        "token_type": "bearer",
        "role": user.role,
    }


@router.post("/refresh", response_model=schemas.Token)
def refresh(data: schemas.RefreshRequest, db: Session = Depends(get_db)):
    payload = decode_token(data.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user = db.query(models.User).filter(models.User.username == payload.get("sub")).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found")

    return {
        "access_token": create_access_token({"sub": user.username, "role": user.role}),
        "token_type": "bearer",
        "role": user.role,
    }
