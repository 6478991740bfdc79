"""
Warehouse Asset Tracking - Data Models
======================================
Reference data (users, shops, asset master), the request documents that
drive every movement, the work items created from them (pick, transfer
receive, repair) and the two custody ledgers.

Ledger rows carry an IN leg and, once the unit leaves, an OUT leg.
`balance` is 1 while the unit sits in a warehouse and 0 after it is issued.
At most one row per barcode may have balance = 1.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Boolean,
    Enum as SQLEnum, Index, CheckConstraint, text
)
from sqlalchemy.orm import relationship, validates
from .db import Base


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class DocumentType(str, Enum):
    """Every request a warehouse user can raise"""
    WITHDRAW = "withdraw"
    ROUTING_2_SHOPS = "routing2shops"
    ROUTING_3_SHOPS = "routing3shops"
    ROUTING_4_SHOPS = "routing4shops"
    WITHDRAW_OTHER = "withdrawother"
    OTHER = "other"
    TRANSFER = "transfer"
    BORROW = "borrow"
    BORROW_SECURITY = "borrowsecurity"
    RETURN = "return"
    RETURN_ASSET = "returnasset"
    SHOP_TO_SHOP = "shoptoshop"
    REPAIR = "repair"
    IMPORT = "import"  # system document owning spreadsheet imports


class DocumentStatus(str, Enum):
    """Document workflow status"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class PickTaskStatus(str, Enum):
    PENDING = "pending"
    PICKING = "picking"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransferTaskStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    REJECTED = "rejected"


class RepairTaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ShopStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class OtherActivity(str, Enum):
    """Admin override that redirects the week stamp to a dedicated column"""
    OUT_TO_RENTAL_WAREHOUSE = "outToRentalWarehouse"
    IN_TO_RENTAL_WAREHOUSE = "inToRentalWarehouse"
    DISCARDED = "discarded"
    ADJUST_ERROR = "adjustError"


# Documents fulfilled by pickers after approval
PICK_DOCUMENT_TYPES = {
    DocumentType.WITHDRAW, DocumentType.ROUTING_2_SHOPS, DocumentType.ROUTING_3_SHOPS,
    DocumentType.ROUTING_4_SHOPS, DocumentType.WITHDRAW_OTHER, DocumentType.OTHER,
    DocumentType.TRANSFER, DocumentType.BORROW_SECURITY, DocumentType.BORROW,
}

BORROW_DOCUMENT_TYPES = {DocumentType.BORROW, DocumentType.BORROW_SECURITY}

RETURN_DOCUMENT_TYPES = {DocumentType.RETURN, DocumentType.RETURN_ASSET}

# Values an admin may stamp into the ledger `status` column
TRANSACTION_STATUS_OPTIONS = [
    "Discarded", "Repairing", "Send to Rental warehouse", "Send to repair",
    "Event", "Lettermark", "QSS", "SAS", "SES", "SPS", "GDS", "Subdealer",
    "Temp shop", "VIP", "Office", "Asset Production", "Modify", "Shop to Shop",
]

CONTROLBOX_NAME = "CONTROLBOX 6 PORT (M-60000R) with power cable"
SECURITY_TYPE_C_NAMES = ("Security Type C Ver.7.1", "Security Type C Ver.7.0")
SECURITY_SET_NAMES = (CONTROLBOX_NAME,) + SECURITY_TYPE_C_NAMES

NO_MCS = "NO MCS"


def is_controlbox(name: str) -> bool:
    return "CONTROLBOX" in (name or "")


def is_security_type_c(name: str) -> bool:
    return "Security Type C" in (name or "")


# =============================================================================
# USER & REFERENCE DATA
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    initials = Column(String(10), nullable=True)  # prefix of generated doc codes
    vendor = Column(String(100), nullable=True, index=True)  # the warehouse this user operates
    company = Column(String(200), nullable=True)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.USER.value)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    documents = relationship("Document", back_populates="creator", foreign_keys="Document.created_by")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class Shop(Base):
    """Destination shop, keyed by MCS code"""
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, index=True)
    mcs_code = Column(String(50), unique=True, nullable=False, index=True)
    shop_name = Column(String(200), nullable=False)
    shop_type = Column(String(100), nullable=True)
    region = Column(String(100), nullable=True)
    status = Column(String(10), nullable=False, default=ShopStatus.OPEN.value)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Asset(Base):
    """Asset master - one row per physical barcode"""
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, index=True)
    barcode = Column(String(100), unique=True, nullable=False, index=True)
    asset_name = Column(String(255), nullable=False)
    size = Column(String(100), nullable=True)
    warehouse = Column(String(100), nullable=True)
    start_warranty = Column(String(20), nullable=True)  # DD-MM-YYYY
    end_warranty = Column(String(20), nullable=True)
    cheil_po = Column(String(100), nullable=True)  # purchase order reference
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# DOCUMENTS
# =============================================================================

class Document(Base):
    """
    A request for asset movement. Shops hold the requested lines.
    Approval either spawns pick tasks or writes the ledger directly.
    """
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    doc_code = Column(String(50), unique=True, nullable=False, index=True)
    document_type = Column(SQLEnum(DocumentType), nullable=False)
    status = Column(SQLEnum(DocumentStatus), nullable=False, default=DocumentStatus.DRAFT)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Requester
    full_name = Column(String(200), nullable=True)
    company = Column(String(200), nullable=True)
    phone = Column(String(50), nullable=True)
    note = Column(Text, nullable=True)

    # Type-specific details
    operation = Column(String(200), nullable=True)  # transfer reason
    other_detail = Column(String(255), nullable=True)
    return_condition = Column(String(50), nullable=True)  # "from_borrow" for borrowed units
    borrow_type = Column(String(100), nullable=True)

    # Set by admin
    transaction_status = Column(String(100), nullable=True)
    other_activity = Column(String(50), nullable=True)
    reject_reason = Column(Text, nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    creator = relationship("User", back_populates="documents", foreign_keys=[created_by])
    shops = relationship(
        "DocumentShop", back_populates="document",
        cascade="all, delete-orphan", order_by="DocumentShop.id"
    )
    pick_tasks = relationship("PickAssetTask", back_populates="document", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_document_status_type', 'status', 'document_type'),
        Index('ix_document_creator', 'created_by', 'created_at'),
    )


class DocumentShop(Base):
    __tablename__ = "document_shops"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False, index=True)
    shop_code = Column(String(50), nullable=True)  # MCS code
    shop_name = Column(String(200), nullable=True)
    start_install_date = Column(DateTime, nullable=True)
    end_install_date = Column(DateTime, nullable=True)
    q7b7 = Column(String(50), nullable=True)
    shop_focus = Column(String(100), nullable=True)

    document = relationship("Document", back_populates="shops")
    assets = relationship(
        "DocumentAsset", back_populates="shop",
        cascade="all, delete-orphan", order_by="DocumentAsset.id"
    )
    security_sets = relationship(
        "DocumentSecuritySet", back_populates="shop",
        cascade="all, delete-orphan", order_by="DocumentSecuritySet.id"
    )


class DocumentAsset(Base):
    __tablename__ = "document_assets"

    id = Column(Integer, primary_key=True, index=True)
    document_shop_id = Column(Integer, ForeignKey("document_shops.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    size = Column(String(100), nullable=True)
    kv = Column(String(50), nullable=True)
    qty = Column(Integer, nullable=False, default=0)
    withdraw_for = Column(String(100), nullable=True)  # warehouse expected to fulfil
    barcode = Column(String(100), nullable=True)
    grade = Column(String(10), nullable=True)

    shop = relationship("DocumentShop", back_populates="assets")

    @validates('qty')
    def validate_qty(self, key, value):
        if value is not None and value < 0:
            raise ValueError("Quantity cannot be negative")
        return value


class DocumentSecuritySet(Base):
    __tablename__ = "document_security_sets"

    id = Column(Integer, primary_key=True, index=True)
    document_shop_id = Column(Integer, ForeignKey("document_shops.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    qty = Column(Integer, nullable=False, default=0)
    withdraw_for = Column(String(100), nullable=True)
    barcode = Column(String(100), nullable=True)  # CONTROLBOX only

    shop = relationship("DocumentShop", back_populates="security_sets")


# =============================================================================
# WORK ITEMS
# =============================================================================

class PickAssetTask(Base):
    """
    One physical unit a warehouse must pick for an approved document.
    Security Type C lines are the exception: one task carries the full qty.
    """
    __tablename__ = "pick_asset_tasks"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False)
    document_asset_id = Column(Integer, ForeignKey("document_assets.id", ondelete="SET NULL"), nullable=True)
    document_security_set_id = Column(Integer, ForeignKey("document_security_sets.id", ondelete="SET NULL"), nullable=True)

    asset_name = Column(String(255), nullable=False)
    size = Column(String(100), nullable=True)
    grade = Column(String(10), nullable=True)
    qty = Column(Integer, nullable=False, default=1)
    is_security_set = Column(Boolean, default=False)

    warehouse = Column(String(100), nullable=False)  # picking warehouse (user vendor)
    barcode = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=PickTaskStatus.PENDING.value)
    asset_image_url = Column(String(500), nullable=True)
    barcode_image_url = Column(String(500), nullable=True)

    # Copied from the document shop and requester
    shop_code = Column(String(50), nullable=True)
    shop_name = Column(String(200), nullable=True)
    start_install_date = Column(DateTime, nullable=True)
    end_install_date = Column(DateTime, nullable=True)
    q7b7 = Column(String(50), nullable=True)
    shop_focus = Column(String(100), nullable=True)
    requester_name = Column(String(200), nullable=True)
    requester_company = Column(String(200), nullable=True)
    requester_phone = Column(String(50), nullable=True)

    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    document = relationship("Document", back_populates="pick_tasks")

    __table_args__ = (
        Index('ix_pick_task_doc_wh_status', 'document_id', 'warehouse', 'status'),
        Index('ix_pick_task_barcode', 'barcode'),
    )


class TransferReceiveTask(Base):
    """Destination warehouse confirmation for a unit picked on a transfer"""
    __tablename__ = "transfer_receive_tasks"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False, index=True)
    pick_asset_task_id = Column(Integer, ForeignKey("pick_asset_tasks.id", ondelete="SET NULL"), nullable=True)
    barcode = Column(String(100), nullable=False)
    asset_name = Column(String(255), nullable=False)
    size = Column(String(100), nullable=True)
    grade = Column(String(10), nullable=True)
    from_warehouse = Column(String(100), nullable=False)
    to_warehouse = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=TransferTaskStatus.PENDING.value)
    reject_reason = Column(Text, nullable=True)
    asset_image_url = Column(String(500), nullable=True)
    received_at = Column(DateTime, nullable=True)
    received_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class RepairTask(Base):
    __tablename__ = "repair_tasks"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("asset_transactions.id", ondelete="SET NULL"), nullable=True)
    barcode = Column(String(100), nullable=False)
    asset_name = Column(String(255), nullable=False)
    size = Column(String(100), nullable=True)
    grade = Column(String(10), nullable=True)
    repair_warehouse = Column(String(100), nullable=False, index=True)
    reporter_name = Column(String(200), nullable=True)
    reporter_company = Column(String(200), nullable=True)
    reporter_phone = Column(String(50), nullable=True)
    reporter_vendor = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=RepairTaskStatus.PENDING.value)
    repair_end_date = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# LEDGERS
# =============================================================================

class LedgerLegsMixin:
    """IN leg, OUT leg and week stamps shared by both ledgers"""

    barcode = Column(String(100), nullable=True, index=True)
    asset_name = Column(String(255), nullable=False)

    # IN leg
    warehouse_in = Column(String(100), nullable=True)
    in_stock_date = Column(DateTime, nullable=True)
    unit_in = Column(Integer, nullable=True)
    from_vendor = Column(String(100), nullable=True)
    mcs_code_in = Column(String(50), nullable=True)
    from_shop = Column(String(200), nullable=True)
    remark_in = Column(String(255), nullable=True)

    # OUT leg
    out_date = Column(DateTime, nullable=True)
    unit_out = Column(Integer, nullable=True)
    to_vendor = Column(String(100), nullable=True)
    status = Column(String(100), nullable=True)
    shop_type = Column(String(100), nullable=True)
    mcs_code_out = Column(String(50), nullable=True)
    to_shop = Column(String(200), nullable=True)
    remark_out = Column(String(255), nullable=True)

    balance = Column(Integer, nullable=False, default=1)

    # Week stamps, "YYYY WK NN"
    wk_out = Column(String(20), nullable=True)
    wk_in = Column(String(20), nullable=True)
    wk_out_for_repair = Column(String(20), nullable=True)
    wk_in_for_repair = Column(String(20), nullable=True)
    wk_new_in_stock = Column(String(20), nullable=True)
    wk_refurbished_in_stock = Column(String(20), nullable=True)
    wk_borrow = Column(String(20), nullable=True)
    wk_return = Column(String(20), nullable=True)
    wk_repair = Column(String(20), nullable=True)
    wk_out_to_rental = Column(String(20), nullable=True)
    wk_in_to_rental = Column(String(20), nullable=True)
    wk_discarded = Column(String(20), nullable=True)
    wk_adjust_error = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AssetTransaction(LedgerLegsMixin, Base):
    """Custody ledger for barcoded assets"""
    __tablename__ = "asset_transactions"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=True, index=True)

    size = Column(String(100), nullable=True)
    grade = Column(String(10), nullable=True)
    start_warranty = Column(String(20), nullable=True)
    end_warranty = Column(String(20), nullable=True)
    cheil_po = Column(String(100), nullable=True)
    asset_status = Column(String(20), nullable=True)  # NEW, USED, REFURBISH, "-"
    transaction_category = Column(String(50), nullable=True)

    __table_args__ = (
        CheckConstraint('balance IN (0, 1)', name='ck_asset_tx_balance'),
        Index(
            'uq_asset_tx_active_barcode', 'barcode', unique=True,
            sqlite_where=text('balance = 1'), postgresql_where=text('balance = 1')
        ),
        Index('ix_asset_tx_barcode_balance', 'barcode', 'balance'),
    )


class SecuritySetTransaction(LedgerLegsMixin, Base):
    """
    Custody ledger for security sets. CONTROLBOX rows are barcoded;
    Security Type C rows have no barcode and carry a quantity instead.
    """
    __tablename__ = "security_set_transactions"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=True, index=True)
    doc_code = Column(String(50), nullable=True)

    __table_args__ = (
        CheckConstraint('balance IN (0, 1)', name='ck_security_tx_balance'),
        Index(
            'uq_security_tx_active_barcode', 'barcode', unique=True,
            sqlite_where=text('balance = 1'), postgresql_where=text('balance = 1')
        ),
    )


# =============================================================================
# SYSTEM TABLES
# =============================================================================

class AuditLog(Base):
    """General audit log for security-relevant actions"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)

    # JSON stored as text for SQLite compatibility
    old_values = Column(Text, nullable=True)
    new_values = Column(Text, nullable=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    ip_address = Column(String(50), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_audit_entity', 'entity_type', 'entity_id'),
        Index('ix_audit_user_date', 'user_id', 'created_at'),
    )


class NumberSequence(Base):
    """Counters for generated document codes, one row per prefix and day"""
    __tablename__ = "number_sequences"

    id = Column(Integer, primary_key=True, index=True)
    sequence_name = Column(String(50), unique=True, nullable=False)
    prefix = Column(String(20), default="")
    current_number = Column(Integer, default=0)
    padding = Column(Integer, default=2)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
