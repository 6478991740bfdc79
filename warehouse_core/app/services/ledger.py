"""
Asset Custody Ledger Service
============================
Every write to the asset and security-set ledgers goes through here:
- Locate the active (balance = 1) row for a barcode under a row lock
- Open an IN leg, refusing when the unit is already in a warehouse
- Close an OUT leg on the active row
- Revert an OUT leg when a transfer is rejected
- Week-column stamping per document type
- Reconciliation report

Callers flush only; the router owns commit/rollback.
"""

import logging
from datetime import datetime, date
from typing import Optional, List

from sqlalchemy import func, select, or_
from sqlalchemy.orm import Session

from ..models import (
    Asset, AssetTransaction, SecuritySetTransaction, PickAssetTask,
    DocumentType, OtherActivity, PickTaskStatus,
    BORROW_DOCUMENT_TYPES, RETURN_DOCUMENT_TYPES,
    is_controlbox,
)

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger and workflow operations"""
    pass


class NotFoundError(LedgerError):
    """Raised when a referenced record does not exist"""
    pass


class InvalidOperationError(LedgerError):
    """Raised when operation is not allowed in current state"""
    pass


class LedgerConflictError(LedgerError):
    """Raised when a write would leave two active rows for one barcode"""
    pass


class AccessDeniedError(LedgerError):
    """Raised when the user's warehouse does not own the record"""
    pass


# =============================================================================
# WEEK STAMPS
# =============================================================================

OTHER_ACTIVITY_COLUMNS = {
    OtherActivity.OUT_TO_RENTAL_WAREHOUSE.value: "wk_out_to_rental",
    OtherActivity.IN_TO_RENTAL_WAREHOUSE.value: "wk_in_to_rental",
    OtherActivity.DISCARDED.value: "wk_discarded",
    OtherActivity.ADJUST_ERROR.value: "wk_adjust_error",
}

RETURN_FROM_BORROW = "from_borrow"

# Fields an admin may correct by hand; balance and dates are never edited
EDITABLE_FIELDS = (
    "asset_name", "size", "grade", "to_vendor", "from_vendor", "to_shop", "from_shop",
    "mcs_code_out", "mcs_code_in", "remark_in", "remark_out", "status", "shop_type",
    "cheil_po", "start_warranty", "end_warranty",
    "wk_out", "wk_in", "wk_out_for_repair", "wk_in_for_repair",
)


def week_label(value: Optional[date] = None) -> str:
    """ISO week label, e.g. '2025 WK 03'."""
    value = value or datetime.utcnow()
    if isinstance(value, datetime):
        value = value.date()
    year, week, _ = value.isocalendar()
    return f"{year} WK {week:02d}"


def out_week_column(document_type) -> str:
    document_type = DocumentType(document_type)
    if document_type == DocumentType.TRANSFER:
        return "wk_out_for_repair"
    if document_type in BORROW_DOCUMENT_TYPES:
        return "wk_borrow"
    if document_type == DocumentType.REPAIR:
        return "wk_repair"
    return "wk_out"


def in_week_column(document_type, return_condition: Optional[str] = None) -> str:
    document_type = DocumentType(document_type)
    if document_type in RETURN_DOCUMENT_TYPES:
        return "wk_return" if return_condition == RETURN_FROM_BORROW else "wk_in"
    if document_type == DocumentType.TRANSFER:
        return "wk_in_for_repair"
    if document_type == DocumentType.REPAIR:
        return "wk_refurbished_in_stock"
    if document_type == DocumentType.IMPORT:
        return "wk_new_in_stock"
    return "wk_in"


def week_stamp(column: str, when: Optional[date] = None, other_activity: Optional[str] = None) -> dict:
    """
    Build the week-column update for a ledger write.

    An admin-chosen other activity replaces the normal column entirely.
    """
    if other_activity:
        try:
            column = OTHER_ACTIVITY_COLUMNS[other_activity]
        except KeyError:
            raise InvalidOperationError(f"Unknown other activity: {other_activity}")
    return {column: week_label(when)}


def _check_fields(fields: dict, allowed: set):
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown ledger fields: {', '.join(sorted(unknown))}")


# =============================================================================
# ASSET LEDGER
# =============================================================================

_ASSET_ROW_FIELDS = {
    c for c in AssetTransaction.__table__.columns.keys()
    if c not in ("id", "barcode", "asset_name", "balance", "created_at", "updated_at")
}

_SECURITY_ROW_FIELDS = {
    c for c in SecuritySetTransaction.__table__.columns.keys()
    if c not in ("id", "barcode", "asset_name", "balance", "created_at", "updated_at")
}


class LedgerService:
    """Reads and writes of the asset custody ledger"""

    @staticmethod
    def find_active(db: Session, barcode: str, lock: bool = True) -> Optional[AssetTransaction]:
        """The row with balance = 1 for a barcode, locked FOR UPDATE."""
        query = db.query(AssetTransaction).filter(
            AssetTransaction.barcode == barcode,
            AssetTransaction.balance == 1
        ).order_by(AssetTransaction.id.desc())
        if lock:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def asset_details(
        db: Session,
        barcode: str,
        fallback_name: Optional[str] = None,
        fallback_size: Optional[str] = None,
        grade: Optional[str] = None
    ) -> dict:
        """Asset master fields copied onto a new ledger row."""
        asset = db.query(Asset).filter(Asset.barcode == barcode).first()
        return {
            "asset_name": (asset.asset_name if asset else None) or fallback_name or "-",
            "size": (asset.size if asset else None) or fallback_size,
            "grade": grade or "A",
            "start_warranty": asset.start_warranty if asset else None,
            "end_warranty": asset.end_warranty if asset else None,
            "cheil_po": asset.cheil_po if asset else None,
        }

    @staticmethod
    def open_in_leg(db: Session, barcode: str, asset_name: str, **fields) -> AssetTransaction:
        """
        Append a row for a unit entering a warehouse.

        Raises:
            LedgerConflictError: The barcode already has an active row
        """
        _check_fields(fields, _ASSET_ROW_FIELDS)

        existing = LedgerService.find_active(db, barcode)
        if existing:
            raise LedgerConflictError(
                f"Barcode {barcode} is already in stock at {existing.warehouse_in or 'unknown warehouse'}"
            )

        fields.setdefault("unit_in", 1)
        fields.setdefault("in_stock_date", datetime.utcnow())

        row = AssetTransaction(barcode=barcode, asset_name=asset_name, balance=1, **fields)
        db.add(row)
        db.flush()

        logger.debug("IN %s at %s (row %s)", barcode, row.warehouse_in, row.id)
        return row

    @staticmethod
    def close_out_leg(db: Session, row: AssetTransaction, **fields) -> AssetTransaction:
        """
        Fill the OUT leg of the active row and drop it to balance 0.

        Raises:
            LedgerConflictError: The row is no longer active
        """
        _check_fields(fields, _ASSET_ROW_FIELDS)

        if row.balance != 1:
            raise LedgerConflictError(f"Barcode {row.barcode} has already been issued")

        fields.setdefault("unit_out", 1)
        fields.setdefault("out_date", datetime.utcnow())

        for key, value in fields.items():
            setattr(row, key, value)
        row.balance = 0
        row.updated_at = datetime.utcnow()
        db.flush()

        logger.debug("OUT %s to %s (row %s)", row.barcode, row.to_shop, row.id)
        return row

    @staticmethod
    def record_closed_movement(db: Session, barcode: str, asset_name: str, **fields) -> AssetTransaction:
        """Append a row with both legs filled, for units moving between shops."""
        _check_fields(fields, _ASSET_ROW_FIELDS)

        fields.setdefault("unit_in", 1)
        fields.setdefault("unit_out", 1)

        row = AssetTransaction(barcode=barcode, asset_name=asset_name, balance=0, **fields)
        db.add(row)
        db.flush()
        return row

    @staticmethod
    def revert_out_leg(
        db: Session,
        document_id: int,
        barcode: str,
        reason: Optional[str] = None
    ) -> Optional[AssetTransaction]:
        """
        Undo the OUT leg written for `document_id`, putting the unit back in
        its source warehouse. Returns None when the document never issued it.

        Raises:
            LedgerConflictError: The barcode is already active elsewhere
        """
        row = db.query(AssetTransaction).filter(
            AssetTransaction.document_id == document_id,
            AssetTransaction.barcode == barcode,
            AssetTransaction.balance == 0
        ).order_by(AssetTransaction.id.desc()).with_for_update().first()

        if not row:
            return None

        if LedgerService.find_active(db, barcode):
            raise LedgerConflictError(f"Barcode {barcode} is already in stock; cannot revert issue")

        for key in ("out_date", "unit_out", "to_vendor", "mcs_code_out", "to_shop", "wk_out_for_repair"):
            setattr(row, key, None)
        row.remark_out = f"Rejected: {reason or '-'}"
        row.balance = 1
        row.updated_at = datetime.utcnow()
        db.flush()

        logger.info("Reverted issue of %s on document %s", barcode, document_id)
        return row

    # =========================================================================
    # SECURITY SETS
    # =========================================================================

    @staticmethod
    def find_active_security(db: Session, barcode: str, lock: bool = True) -> Optional[SecuritySetTransaction]:
        query = db.query(SecuritySetTransaction).filter(
            SecuritySetTransaction.barcode == barcode,
            SecuritySetTransaction.balance == 1
        ).order_by(SecuritySetTransaction.id.desc())
        if lock:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def open_security_in_leg(
        db: Session,
        asset_name: str,
        barcode: Optional[str] = None,
        **fields
    ) -> SecuritySetTransaction:
        """Unbarcoded rows (Security Type C, unscanned CONTROLBOX) skip the conflict check."""
        _check_fields(fields, _SECURITY_ROW_FIELDS)

        if barcode and LedgerService.find_active_security(db, barcode):
            raise LedgerConflictError(f"Security set {barcode} is already in stock")

        fields.setdefault("unit_in", 1)
        fields.setdefault("in_stock_date", datetime.utcnow())

        row = SecuritySetTransaction(asset_name=asset_name, barcode=barcode, balance=1, **fields)
        db.add(row)
        db.flush()
        return row

    @staticmethod
    def close_security_out_leg(db: Session, row: SecuritySetTransaction, **fields) -> SecuritySetTransaction:
        _check_fields(fields, _SECURITY_ROW_FIELDS)

        if row.balance != 1:
            raise LedgerConflictError(f"Security set {row.barcode} has already been issued")

        fields.setdefault("unit_out", 1)
        fields.setdefault("out_date", datetime.utcnow())

        for key, value in fields.items():
            setattr(row, key, value)
        row.balance = 0
        row.updated_at = datetime.utcnow()
        db.flush()
        return row

    @staticmethod
    def record_security_bulk_out(db: Session, asset_name: str, qty: int, **fields) -> SecuritySetTransaction:
        """Security Type C leaves as one counted row with no barcode."""
        _check_fields(fields, _SECURITY_ROW_FIELDS)

        if qty <= 0:
            raise InvalidOperationError("Quantity must be positive")

        fields.setdefault("out_date", datetime.utcnow())

        row = SecuritySetTransaction(asset_name=asset_name, barcode=None, unit_out=qty, balance=0, **fields)
        db.add(row)
        db.flush()
        return row

    # =========================================================================
    # QUERIES
    # =========================================================================

    @staticmethod
    def held_barcodes(db: Session, exclude_task_id: Optional[int] = None) -> set:
        """Barcodes already assigned to open pick tasks."""
        query = db.query(PickAssetTask.barcode).filter(
            PickAssetTask.barcode.isnot(None),
            PickAssetTask.status.in_([PickTaskStatus.PENDING.value, PickTaskStatus.PICKING.value])
        )
        if exclude_task_id is not None:
            query = query.filter(PickAssetTask.id != exclude_task_id)
        return {b for (b,) in query.all()}

    @staticmethod
    def available_barcodes(
        db: Session,
        asset_name: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50
    ) -> List[dict]:
        """
        Barcodes that can be picked: in stock, or known to the asset master
        with no ledger history yet. CONTROLBOX units come from the security
        ledger.
        """
        held = LedgerService.held_barcodes(db)

        if asset_name and is_controlbox(asset_name):
            query = db.query(SecuritySetTransaction.barcode, SecuritySetTransaction.asset_name).filter(
                SecuritySetTransaction.balance == 1,
                SecuritySetTransaction.barcode.isnot(None),
                SecuritySetTransaction.asset_name.contains("CONTROLBOX")
            )
            if search:
                query = query.filter(SecuritySetTransaction.barcode.ilike(f"%{search}%"))
            rows = query.distinct().order_by(SecuritySetTransaction.barcode).all()
            return [
                {"barcode": barcode, "asset_name": name, "size": None}
                for barcode, name in rows if barcode not in held
            ][:limit]

        active = select(AssetTransaction.barcode).where(AssetTransaction.balance == 1)
        tracked = select(AssetTransaction.barcode).where(AssetTransaction.barcode.isnot(None))

        query = db.query(Asset).filter(
            or_(Asset.barcode.in_(active), Asset.barcode.notin_(tracked))
        )
        if asset_name:
            query = query.filter(Asset.asset_name == asset_name)
        if search:
            query = query.filter(Asset.barcode.ilike(f"%{search}%"))

        assets = query.order_by(Asset.barcode).all()
        return [
            {"barcode": a.barcode, "asset_name": a.asset_name, "size": a.size}
            for a in assets if a.barcode not in held
        ][:limit]

    @staticmethod
    def is_available(db: Session, barcode: str, asset_name: Optional[str] = None) -> bool:
        if asset_name and is_controlbox(asset_name):
            return LedgerService.find_active_security(db, barcode, lock=False) is not None

        if LedgerService.find_active(db, barcode, lock=False):
            return True

        has_history = db.query(AssetTransaction.id).filter(AssetTransaction.barcode == barcode).first()
        in_master = db.query(Asset.id).filter(Asset.barcode == barcode).first()
        return has_history is None and in_master is not None

    @staticmethod
    def bulk_update(db: Session, updates: List[dict]) -> int:
        """
        Apply manual corrections. Each item is {"id": row_id, field: value};
        fields outside EDITABLE_FIELDS are ignored and "-" clears a field.

        Raises:
            InvalidOperationError: An item has no id
            NotFoundError: Unknown row id
        """
        count = 0
        for item in updates:
            row_id = item.get("id")
            if row_id is None:
                raise InvalidOperationError("Every update needs an id")

            row = db.query(AssetTransaction).filter(AssetTransaction.id == row_id).with_for_update().first()
            if not row:
                raise NotFoundError(f"Ledger row {row_id} not found")

            for key, value in item.items():
                if key not in EDITABLE_FIELDS:
                    continue
                value = None if value == "-" else value
                if key == "asset_name" and not value:
                    raise InvalidOperationError("Asset name cannot be cleared")
                setattr(row, key, value)
            row.updated_at = datetime.utcnow()
            count += 1

        db.flush()
        return count

    @staticmethod
    def history(db: Session, barcode: str) -> List[AssetTransaction]:
        return db.query(AssetTransaction).filter(
            AssetTransaction.barcode == barcode
        ).order_by(AssetTransaction.id).all()

    @staticmethod
    def reconcile(db: Session) -> dict:
        """
        Consistency report over both ledgers.

        - barcodes with more than one active row
        - asset master barcodes with no ledger row
        - open pick tasks holding a barcode that is no longer in stock
        - active units per warehouse
        """
        duplicate_assets = db.query(
            AssetTransaction.barcode, func.count(AssetTransaction.id)
        ).filter(
            AssetTransaction.balance == 1
        ).group_by(AssetTransaction.barcode).having(func.count(AssetTransaction.id) > 1).all()

        duplicate_security = db.query(
            SecuritySetTransaction.barcode, func.count(SecuritySetTransaction.id)
        ).filter(
            SecuritySetTransaction.balance == 1,
            SecuritySetTransaction.barcode.isnot(None)
        ).group_by(SecuritySetTransaction.barcode).having(func.count(SecuritySetTransaction.id) > 1).all()

        tracked = select(AssetTransaction.barcode).where(AssetTransaction.barcode.isnot(None))
        untracked = db.query(Asset.barcode).filter(Asset.barcode.notin_(tracked)).order_by(Asset.barcode).all()

        stale_tasks = []
        open_tasks = db.query(PickAssetTask).filter(
            PickAssetTask.barcode.isnot(None),
            PickAssetTask.status.in_([PickTaskStatus.PENDING.value, PickTaskStatus.PICKING.value])
        ).all()
        for task in open_tasks:
            if is_controlbox(task.asset_name):
                active = LedgerService.find_active_security(db, task.barcode, lock=False)
            else:
                active = LedgerService.find_active(db, task.barcode, lock=False)
            if active is None:
                stale_tasks.append({"task_id": task.id, "barcode": task.barcode, "document_id": task.document_id})

        per_warehouse = db.query(
            AssetTransaction.warehouse_in, func.count(AssetTransaction.id)
        ).filter(
            AssetTransaction.balance == 1
        ).group_by(AssetTransaction.warehouse_in).all()

        report = {
            "duplicate_active_assets": [{"barcode": b, "active_rows": n} for b, n in duplicate_assets],
            "duplicate_active_security_sets": [{"barcode": b, "active_rows": n} for b, n in duplicate_security],
            "untracked_assets": [b for (b,) in untracked],
            "stale_pick_tasks": stale_tasks,
            "active_by_warehouse": {wh or "-": n for wh, n in per_warehouse},
        }
        report["consistent"] = not (duplicate_assets or duplicate_security or stale_tasks)

        if not report["consistent"]:
            logger.warning(
                "Ledger reconciliation found %d duplicate asset(s), %d duplicate security set(s), %d stale task(s)",
                len(duplicate_assets), len(duplicate_security), len(stale_tasks)
            )
        return report
