"""
Security Module
===============
- Secret key management
- Password policy and bcrypt hashing
- JWT access/refresh tokens
- Role-based access control with fine-grained permissions
- Audit logging
- Login rate limiting
"""

import os
import re
import json
import secrets
import hashlib
import logging
import warnings
from datetime import datetime, timedelta
from typing import Optional, List, Set

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
import bcrypt
from sqlalchemy.orm import Session

from .db import SessionLocal

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

def get_secret_key() -> str:
    """
    Get secret key from environment with validation.
    A generated key is only tolerated outside production.
    """
    secret = os.getenv("WAREHOUSE_SECRET_KEY")

    if not secret:
        env = os.getenv("ENVIRONMENT", "development")
        if env == "production":
            raise RuntimeError(
                "WAREHOUSE_SECRET_KEY environment variable must be set in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
        warnings.warn(
            "Using a development secret key. Set WAREHOUSE_SECRET_KEY for production.",
            RuntimeWarning
        )
        # Deterministic in development so tokens survive hot-reload
        secret = hashlib.sha256(b"warehouse-dev-insecure-key").hexdigest()

    if len(secret) < 32:
        raise RuntimeError("WAREHOUSE_SECRET_KEY must be at least 32 characters")

    return secret


SECRET_KEY = get_secret_key()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("TOKEN_EXPIRE_MINUTES", "480"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))


# =============================================================================
# PASSWORD SECURITY
# =============================================================================

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class PasswordPolicy:
    """Password strength validation"""

    @staticmethod
    def validate(password: str) -> tuple[bool, List[str]]:
        """
        Validate password against security policy.

        Returns:
            (is_valid, list_of_errors)
        """
        errors = []

        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        if len(password) > MAX_PASSWORD_LENGTH:
            errors.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")

        if not re.search(r'[a-zA-Z]', password):
            errors.append("Password must contain at least one letter")

        if not re.search(r'\d', password):
            errors.append("Password must contain at least one digit")

        common_passwords = {'password', 'password123', '12345678', 'qwerty123', 'warehouse1'}
        if password.lower() in common_passwords:
            errors.append("Password is too common")

        return len(errors) == 0, errors


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt"""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=12)).decode('utf-8')


# =============================================================================
# TOKEN MANAGEMENT
# =============================================================================

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    to_encode = data.copy()

    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
        "type": "access"
    })

    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_refresh_token(username: str) -> str:
    now = datetime.utcnow()
    to_encode = {
        "sub": username,
        "exp": now + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
        "iat": now,
        "jti": secrets.token_urlsafe(16),
        "type": "refresh"
    }

    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"}
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )


# =============================================================================
# ROLE-BASED ACCESS CONTROL (RBAC)
# =============================================================================

class Permission:
    """Fine-grained permissions for warehouse operations"""

    DOCUMENT_VIEW = "document:view"
    DOCUMENT_VIEW_ALL = "document:view_all"
    DOCUMENT_CREATE = "document:create"
    DOCUMENT_APPROVE = "document:approve"
    DOCUMENT_DELETE = "document:delete"

    PICK_EXECUTE = "pick:execute"
    TRANSFER_RECEIVE = "transfer:receive"
    REPAIR_COMPLETE = "repair:complete"

    LEDGER_VIEW = "ledger:view"
    LEDGER_EDIT = "ledger:edit"
    LEDGER_EXPORT = "ledger:export"

    ASSET_VIEW = "asset:view"
    ASSET_IMPORT = "asset:import"

    SHOP_VIEW = "shop:view"
    SHOP_MANAGE = "shop:manage"

    USER_VIEW = "user:view"
    USER_MANAGE = "user:manage"

    REPORT_VIEW = "report:view"


ROLE_PERMISSIONS: dict[str, Set[str]] = {
    "ADMIN": {
        Permission.DOCUMENT_VIEW, Permission.DOCUMENT_VIEW_ALL, Permission.DOCUMENT_CREATE,
        Permission.DOCUMENT_APPROVE, Permission.DOCUMENT_DELETE,
        Permission.PICK_EXECUTE, Permission.TRANSFER_RECEIVE, Permission.REPAIR_COMPLETE,
        Permission.LEDGER_VIEW, Permission.LEDGER_EDIT, Permission.LEDGER_EXPORT,
        Permission.ASSET_VIEW, Permission.ASSET_IMPORT,
        Permission.SHOP_VIEW, Permission.SHOP_MANAGE,
        Permission.USER_VIEW, Permission.USER_MANAGE,
        Permission.REPORT_VIEW,
    },

    "USER": {
        Permission.DOCUMENT_VIEW, Permission.DOCUMENT_CREATE,
        Permission.PICK_EXECUTE, Permission.TRANSFER_RECEIVE, Permission.REPAIR_COMPLETE,
        Permission.ASSET_VIEW,
        Permission.SHOP_VIEW,
        Permission.REPORT_VIEW,
    },
}


def get_role_permissions(role: str) -> Set[str]:
    return ROLE_PERMISSIONS.get(role, set())


def has_permission(user, permission: str) -> bool:
    return permission in get_role_permissions(user.role)


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================

def get_db():
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
):
    """
    Get current authenticated user from JWT token.
    """
    from .models import User

    payload = decode_token(token)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"}
        )

    username = payload.get("sub")
    if username is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = db.query(User).filter(User.username == username).first()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled"
        )

    return user


def require_permission(*required_permissions: str):
    """
    Dependency that requires user to have specific permissions.
    """
    async def permission_checker(current_user = Depends(get_current_user)):
        missing = set(required_permissions) - get_role_permissions(current_user.role)
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}"
            )

        return current_user

    return permission_checker


# =============================================================================
# AUDIT LOGGING
# =============================================================================

class SecurityAuditLog:
    """Security event logging for compliance and forensics"""

    @staticmethod
    def log_login_attempt(
        db: Session,
        username: str,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None
    ):
        from .models import AuditLog

        if not success:
            logger.warning("Failed login for %s from %s: %s", username, ip_address, failure_reason)

        db.add(AuditLog(
            entity_type="auth",
            entity_id=0,
            action="login_attempt",
            new_values=json.dumps({
                "username": username,
                "success": success,
                "failure_reason": failure_reason,
            }),
            ip_address=ip_address,
            user_agent=user_agent
        ))
        db.commit()

    @staticmethod
    def log_sensitive_action(
        db: Session,
        user_id: int,
        action: str,
        entity_type: str,
        entity_id: int,
        details: dict,
        ip_address: Optional[str] = None
    ):
        """Log a sensitive operation for audit trail"""
        from .models import AuditLog

        logger.info("%s %s #%s by user %s", action, entity_type, entity_id, user_id)

        db.add(AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            new_values=json.dumps(details, default=str),
            user_id=user_id,
            ip_address=ip_address
        ))
        db.commit()


# =============================================================================
# RATE LIMITING
# =============================================================================

class RateLimiter:
    """
    Simple in-memory rate limiter.
    Counters are per process; run one worker or put a shared store in front.
    """

    _attempts: dict[str, List[datetime]] = {}

    @classmethod
    def check_rate_limit(
        cls,
        key: str,
        max_attempts: int = 5,
        window_seconds: int = 300
    ) -> tuple[bool, int]:
        """
        Returns:
            (is_allowed, remaining_attempts)
        """
        window_start = datetime.utcnow() - timedelta(seconds=window_seconds)

        cls._attempts[key] = [t for t in cls._attempts.get(key, []) if t > window_start]

        attempts = len(cls._attempts[key])
        if attempts >= max_attempts:
            return False, 0

        return True, max_attempts - attempts

    @classmethod
    def record_attempt(cls, key: str):
        cls._attempts.setdefault(key, []).append(datetime.utcnow())

    @classmethod
    def reset(cls, key: Optional[str] = None):
        if key is None:
            cls._attempts.clear()
        else:
            cls._attempts.pop(key, None)


def sanitize_input(value: str) -> str:
    """Strip null bytes and surrounding whitespace from free text."""
    if not isinstance(value, str):
        return value
    return value.replace('\x00', '').strip()
