from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, EmailStr, Field, validator

from .models import DocumentType, DocumentStatus, OtherActivity, UserRole, ShopStatus
from .security import sanitize_input


# ---------------------------------------------------------------------------
# Auth / users
# ---------------------------------------------------------------------------

class Token(BaseModel):
    access_token: str
    token_type: str
    role: Optional[str] = None
    refresh_token: Optional[str] = None


class RefreshRequest(BaseModel):
    refresh_token: str


class UserBase(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    initials: Optional[str] = Field(None, max_length=10)
    vendor: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole = UserRole.USER

    @validator('username', 'first_name', 'last_name', 'vendor', 'company', 'phone')
    def clean_text(cls, v):
        return sanitize_input(v) if v is not None else v


class UserCreate(UserBase):
    password: str


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    initials: Optional[str] = Field(None, max_length=10)
    vendor: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None


class UserOut(BaseModel):
    id: int
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    initials: Optional[str] = None
    vendor: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    role: str
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChangePasswordIn(BaseModel):
    old_password: str
    new_password: str


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

class ShopIn(BaseModel):
    mcs_code: str = Field(..., min_length=1, max_length=50)
    shop_name: str = Field(..., min_length=1)
    shop_type: Optional[str] = None
    region: Optional[str] = None
    status: ShopStatus = ShopStatus.OPEN

    @validator('mcs_code', 'shop_name')
    def strip_text(cls, v):
        return sanitize_input(v)


class ShopUpdate(BaseModel):
    shop_name: Optional[str] = None
    shop_type: Optional[str] = None
    region: Optional[str] = None
    status: Optional[ShopStatus] = None


class ShopOut(BaseModel):
    id: int
    mcs_code: str
    shop_name: str
    shop_type: Optional[str] = None
    region: Optional[str] = None
    status: str

    class Config:
        from_attributes = True


class AssetIn(BaseModel):
    barcode: str = Field(..., min_length=1, max_length=100)
    asset_name: str = Field(..., min_length=1)
    size: Optional[str] = None
    warehouse: Optional[str] = None
    start_warranty: Optional[str] = None
    end_warranty: Optional[str] = None
    cheil_po: Optional[str] = None

    @validator('barcode', 'asset_name')
    def strip_text(cls, v):
        return sanitize_input(v)


class AssetOut(AssetIn):
    id: int

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentAssetIn(BaseModel):
    name: str = Field(..., min_length=1)
    size: Optional[str] = None
    kv: Optional[str] = None
    qty: int = Field(0, ge=0)
    withdraw_for: Optional[str] = None
    barcode: Optional[str] = None
    grade: Optional[str] = None


class DocumentSecuritySetIn(BaseModel):
    name: str = Field(..., min_length=1)
    qty: int = Field(0, ge=0)
    withdraw_for: Optional[str] = None
    barcode: Optional[str] = None


class DocumentShopIn(BaseModel):
    shop_code: Optional[str] = None
    shop_name: Optional[str] = None
    start_install_date: Optional[datetime] = None
    end_install_date: Optional[datetime] = None
    q7b7: Optional[str] = None
    shop_focus: Optional[str] = None
    assets: List[DocumentAssetIn] = []
    security_sets: List[DocumentSecuritySetIn] = []


class DocumentCreate(BaseModel):
    document_type: DocumentType
    doc_code: Optional[str] = None
    full_name: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    note: Optional[str] = None
    status: DocumentStatus = DocumentStatus.DRAFT
    operation: Optional[str] = None
    other_detail: Optional[str] = None
    return_condition: Optional[str] = None
    borrow_type: Optional[str] = None
    shops: List[DocumentShopIn] = []

    @validator('document_type')
    def not_system_type(cls, v):
        if v == DocumentType.IMPORT:
            raise ValueError("Import documents are created by the system")
        return v

    @validator('status')
    def editable_status(cls, v):
        if v not in (DocumentStatus.DRAFT, DocumentStatus.SUBMITTED):
            raise ValueError("Status must be draft or submitted")
        return v


class DocumentUpdate(DocumentCreate):
    transaction_status: Optional[str] = None  # admin only


class ApproveRequest(BaseModel):
    other_activity: Optional[OtherActivity] = None
    transaction_status: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class DocumentAssetOut(BaseModel):
    id: int
    name: str
    size: Optional[str] = None
    kv: Optional[str] = None
    qty: int
    withdraw_for: Optional[str] = None
    barcode: Optional[str] = None
    grade: Optional[str] = None

    class Config:
        from_attributes = True


class DocumentSecuritySetOut(BaseModel):
    id: int
    name: str
    qty: int
    withdraw_for: Optional[str] = None
    barcode: Optional[str] = None

    class Config:
        from_attributes = True


class DocumentShopOut(BaseModel):
    id: int
    shop_code: Optional[str] = None
    shop_name: Optional[str] = None
    start_install_date: Optional[datetime] = None
    end_install_date: Optional[datetime] = None
    q7b7: Optional[str] = None
    shop_focus: Optional[str] = None
    assets: List[DocumentAssetOut] = []
    security_sets: List[DocumentSecuritySetOut] = []

    class Config:
        from_attributes = True


class DocumentSummary(BaseModel):
    id: int
    doc_code: str
    document_type: DocumentType
    status: DocumentStatus
    created_by: int
    full_name: Optional[str] = None
    company: Optional[str] = None
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DocumentOut(DocumentSummary):
    phone: Optional[str] = None
    note: Optional[str] = None
    operation: Optional[str] = None
    other_detail: Optional[str] = None
    return_condition: Optional[str] = None
    borrow_type: Optional[str] = None
    transaction_status: Optional[str] = None
    other_activity: Optional[str] = None
    reject_reason: Optional[str] = None
    approved_by: Optional[int] = None
    updated_at: Optional[datetime] = None
    shops: List[DocumentShopOut] = []


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------

class PickTaskOut(BaseModel):
    id: int
    document_id: int
    asset_name: str
    size: Optional[str] = None
    grade: Optional[str] = None
    qty: int
    is_security_set: bool
    warehouse: str
    barcode: Optional[str] = None
    status: str
    asset_image_url: Optional[str] = None
    barcode_image_url: Optional[str] = None
    shop_code: Optional[str] = None
    shop_name: Optional[str] = None
    start_install_date: Optional[datetime] = None
    end_install_date: Optional[datetime] = None
    q7b7: Optional[str] = None
    shop_focus: Optional[str] = None
    requester_name: Optional[str] = None
    requester_company: Optional[str] = None
    requester_phone: Optional[str] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AssignBarcodeRequest(BaseModel):
    barcode: Optional[str] = None
    asset_image_url: Optional[str] = None
    barcode_image_url: Optional[str] = None


class CompletePickRequest(BaseModel):
    document_id: int
    shop_code: Optional[str] = None


class TransferTaskOut(BaseModel):
    id: int
    document_id: int
    barcode: str
    asset_name: str
    size: Optional[str] = None
    grade: Optional[str] = None
    from_warehouse: str
    to_warehouse: str
    status: str
    reject_reason: Optional[str] = None
    asset_image_url: Optional[str] = None
    received_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransferDecision(BaseModel):
    id: int
    status: str
    reject_reason: Optional[str] = None
    asset_image_url: Optional[str] = None


class TransferCompleteRequest(BaseModel):
    document_id: int
    tasks: List[TransferDecision] = Field(..., min_items=1)


class RepairTaskOut(BaseModel):
    id: int
    document_id: int
    barcode: str
    asset_name: str
    size: Optional[str] = None
    grade: Optional[str] = None
    repair_warehouse: str
    reporter_name: Optional[str] = None
    reporter_company: Optional[str] = None
    reporter_phone: Optional[str] = None
    status: str
    repair_end_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RepairCompleteRequest(BaseModel):
    task_id: int
    repair_end_date: datetime


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class LedgerRowOut(BaseModel):
    id: int
    document_id: Optional[int] = None
    barcode: Optional[str] = None
    asset_name: str
    size: Optional[str] = None
    grade: Optional[str] = None
    start_warranty: Optional[str] = None
    end_warranty: Optional[str] = None
    cheil_po: Optional[str] = None
    warehouse_in: Optional[str] = None
    in_stock_date: Optional[datetime] = None
    unit_in: Optional[int] = None
    from_vendor: Optional[str] = None
    mcs_code_in: Optional[str] = None
    from_shop: Optional[str] = None
    remark_in: Optional[str] = None
    out_date: Optional[datetime] = None
    unit_out: Optional[int] = None
    to_vendor: Optional[str] = None
    status: Optional[str] = None
    shop_type: Optional[str] = None
    mcs_code_out: Optional[str] = None
    to_shop: Optional[str] = None
    remark_out: Optional[str] = None
    asset_status: Optional[str] = None
    balance: int
    wk_out: Optional[str] = None
    wk_in: Optional[str] = None
    wk_out_for_repair: Optional[str] = None
    wk_in_for_repair: Optional[str] = None
    wk_new_in_stock: Optional[str] = None
    wk_refurbished_in_stock: Optional[str] = None
    wk_borrow: Optional[str] = None
    wk_return: Optional[str] = None
    wk_repair: Optional[str] = None
    wk_out_to_rental: Optional[str] = None
    wk_in_to_rental: Optional[str] = None
    wk_discarded: Optional[str] = None
    wk_adjust_error: Optional[str] = None

    class Config:
        from_attributes = True


class SecurityLedgerRowOut(BaseModel):
    id: int
    document_id: Optional[int] = None
    doc_code: Optional[str] = None
    barcode: Optional[str] = None
    asset_name: str
    warehouse_in: Optional[str] = None
    in_stock_date: Optional[datetime] = None
    unit_in: Optional[int] = None
    from_vendor: Optional[str] = None
    mcs_code_in: Optional[str] = None
    from_shop: Optional[str] = None
    remark_in: Optional[str] = None
    out_date: Optional[datetime] = None
    unit_out: Optional[int] = None
    to_vendor: Optional[str] = None
    status: Optional[str] = None
    mcs_code_out: Optional[str] = None
    to_shop: Optional[str] = None
    remark_out: Optional[str] = None
    balance: int

    class Config:
        from_attributes = True


class LedgerBulkUpdate(BaseModel):
    """Each item is {"id": <row id>, <field>: <value>, ...}; "-" clears a field."""
    updates: List[Dict[str, Any]] = Field(..., min_items=1)
