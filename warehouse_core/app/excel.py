from fastapi import APIRouter, UploadFile, File, HTTPException, Depends, Request
from fastapi.responses import StreamingResponse
from typing import List, Any, Optional, Dict
from datetime import datetime, date, timedelta
import logging
import pandas as pd
from io import BytesIO
from sqlalchemy.orm import Session

from .security import get_db, require_permission, Permission, SecurityAuditLog
from .models import (
    Asset, AssetTransaction, SecuritySetTransaction, Shop, User, DocumentType,
    SECURITY_SET_NAMES,
)
from .services.ledger import LedgerService, LedgerError, in_week_column, week_stamp
from .services.documents import DocumentService
from .routers.common import http_error, client_ip

router = APIRouter(prefix="/excel", tags=["excel"])

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

ASSET_REQUIRED_COLUMNS = ["BARCODE", "ASSET NAME"]
ASSET_COLUMNS = ["BARCODE", "ASSET NAME", "SIZE", "WAREHOUSE", "START WARRANTY", "END WARRANTY", "CHEIL PO"]
SHOP_COLUMNS = ["MCS CODE", "SHOP NAME", "REGION", "SHOP TYPE", "STATUS"]

NEW_ASSET_REMARK = "New Asset add to WH"
NEW_SECURITY_SET_REMARK = "New Security Set add to WH"

EXCEL_EPOCH = datetime(1899, 12, 30)

# (header, attribute) in export order
LEDGER_EXPORT_COLUMNS = [
    ("Barcode", "barcode"), ("Asset Name", "asset_name"), ("Warehouse", "warehouse_in"),
    ("Asset Status", "asset_status"), ("In stock Date", "in_stock_date"),
    ("Start Warranty", "start_warranty"), ("End Warranty", "end_warranty"), ("Cheil PO", "cheil_po"),
    ("Unit In", "unit_in"), ("From Vendor", "from_vendor"), ("MCS Code (In)", "mcs_code_in"),
    ("From Shop", "from_shop"), ("Out Date", "out_date"), ("Unit Out", "unit_out"),
    ("To Vendor", "to_vendor"), ("Status", "status"), ("Shop Type", "shop_type"),
    ("MCS Code (Out)", "mcs_code_out"), ("To Shop", "to_shop"), ("Balance", "balance"),
    ("Size", "size"), ("Grade", "grade"), ("Remark IN", "remark_in"), ("Remark OUT", "remark_out"),
    ("WK OUT", "wk_out"), ("WK IN", "wk_in"), ("WK OUT for Repair", "wk_out_for_repair"),
    ("WK IN for Repair", "wk_in_for_repair"), ("New In Stock", "wk_new_in_stock"),
    ("Refurbished Instock", "wk_refurbished_in_stock"), ("Borrow", "wk_borrow"),
    ("Return", "wk_return"), ("Repair", "wk_repair"), ("Out to Rental WH", "wk_out_to_rental"),
    ("In to Rental WH", "wk_in_to_rental"), ("Discarded", "wk_discarded"),
    ("Adjust Error", "wk_adjust_error"),
]


def _to_native(value: Any):
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if hasattr(value, "item"):
        try:
            return value.item()
        except (ValueError, TypeError):
            return value
    return value


def _cell_text(value: Any) -> str:
    """Cell value as trimmed text; numeric barcodes lose the trailing .0."""
    value = _to_native(value)
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _read_file_to_dataframe(content: bytes, filename: str) -> pd.DataFrame:
    """
    Read the first sheet of an Excel (.xlsx) file, or a CSV file, into a
    DataFrame with every column name trimmed.
    """
    filename_lower = filename.lower()

    if filename_lower.endswith(".xlsx"):
        try:
            df = pd.read_excel(BytesIO(content), sheet_name=0, engine="openpyxl")
        except Exception as exc:
            raise HTTPException(status_code=400, detail=f"Failed to read Excel file: {exc}")

    elif filename_lower.endswith(".csv"):
        df = None
        for encoding in ['utf-8', 'latin-1', 'cp1252']:
            try:
                df = pd.read_csv(BytesIO(content), encoding=encoding)
                break
            except UnicodeDecodeError:
                continue
            except Exception as exc:
                raise HTTPException(status_code=400, detail=f"Failed to read CSV file: {exc}")
        if df is None:
            raise HTTPException(status_code=400, detail="Failed to decode CSV file")

    else:
        raise HTTPException(status_code=400, detail="Only .xlsx and .csv files are supported")

    df.columns = [str(c).strip() for c in df.columns]
    return df


async def _read_upload(file: UploadFile) -> pd.DataFrame:
    filename = (file.filename or "").lower()
    if not (filename.endswith(".xlsx") or filename.endswith(".csv")):
        raise HTTPException(status_code=400, detail="Only .xlsx and .csv files are supported")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    df = _read_file_to_dataframe(content, filename)
    if df.empty:
        raise HTTPException(status_code=400, detail="File contains no data")
    return df


def parse_excel_date(value: Any) -> Optional[str]:
    """
    Excel serial number, date cell or date text -> 'DD-MM-YYYY'.
    Returns None for blanks, unparseable values and years outside 2000-2100.
    """
    value = _to_native(value)
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        try:
            parsed = EXCEL_EPOCH + timedelta(days=float(value))
        except OverflowError:
            return None
    elif isinstance(value, str):
        stamp = pd.to_datetime(value.strip(), errors="coerce")
        if pd.isna(stamp):
            return None
        parsed = stamp.to_pydatetime()
    else:
        return None

    if parsed.year < 2000 or parsed.year > 2100:
        return None
    return parsed.strftime("%d-%m-%Y")


def _is_security_set_name(asset_name: str) -> bool:
    name = asset_name.lower().strip()
    return any(name == s.lower() for s in SECURITY_SET_NAMES)


# =============================================================================
# ASSET MASTER IMPORT
# =============================================================================

def import_assets(db: Session, df: pd.DataFrame, user: User) -> Dict[str, Any]:
    """
    Upsert the asset master from a sheet and open a NEW ledger row for every
    barcode that is not already in stock.

    Raises:
        LedgerError: Wrong template, missing columns or duplicate barcodes
    """
    columns = [str(c).strip() for c in df.columns]

    if "MCS CODE" in columns and "BARCODE" not in columns:
        raise LedgerError("This file is a shop template, not an asset template")

    missing = [c for c in ASSET_REQUIRED_COLUMNS if c not in columns]
    if missing:
        raise LedgerError(f"Missing column(s): {', '.join(missing)}. Expected: {', '.join(ASSET_COLUMNS)}")

    records = [
        {col: _to_native(value) for col, value in zip(columns, row)}
        for row in df.itertuples(index=False, name=None)
    ]

    seen = set()
    duplicates = []
    for record in records:
        barcode = _cell_text(record.get("BARCODE"))
        if not barcode:
            continue
        if barcode in seen and barcode not in duplicates:
            duplicates.append(barcode)
        seen.add(barcode)
    if duplicates:
        raise LedgerError(f"Duplicate barcodes in file: {', '.join(duplicates[:20])}")

    valid_vendors = {
        v.lower().strip() for (v,) in db.query(User.vendor).filter(User.vendor.isnot(None)).all() if v
    }
    active_barcodes = {
        b for (b,) in db.query(AssetTransaction.barcode).filter(AssetTransaction.balance == 1).all()
    }
    security_barcodes = {
        b for (b,) in db.query(SecuritySetTransaction.barcode).filter(
            SecuritySetTransaction.barcode.isnot(None)
        ).all()
    }

    import_document = DocumentService.import_document(db, user)
    now = datetime.utcnow()
    new_stock_week = week_stamp(in_week_column(DocumentType.IMPORT), now)

    result = {
        "asset_count": 0,
        "transaction_count": 0,
        "security_transaction_count": 0,
        "skipped": 0,
        "skipped_transaction": 0,
        "skipped_security_transaction": 0,
        "invalid_warehouse": [],
    }

    for record in records:
        barcode = _cell_text(record.get("BARCODE"))
        if not barcode:
            continue

        asset_name = _cell_text(record.get("ASSET NAME"))
        size = _cell_text(record.get("SIZE")) or None
        cheil_po = _cell_text(record.get("CHEIL PO")) or None
        start_raw = record.get("START WARRANTY")
        end_raw = record.get("END WARRANTY")
        start_warranty = parse_excel_date(start_raw)
        end_warranty = parse_excel_date(end_raw)

        if (_cell_text(start_raw) and not start_warranty) or (_cell_text(end_raw) and not end_warranty):
            result["skipped"] += 1
            continue

        warehouse = _cell_text(record.get("WAREHOUSE")) or None
        if warehouse and warehouse.lower() not in valid_vendors:
            if warehouse not in result["invalid_warehouse"]:
                result["invalid_warehouse"].append(warehouse)
            warehouse = None

        if _is_security_set_name(asset_name):
            if barcode in security_barcodes:
                result["skipped_security_transaction"] += 1
                continue
            LedgerService.open_security_in_leg(
                db, asset_name, barcode,
                doc_code=import_document.doc_code,
                document_id=import_document.id,
                warehouse_in=warehouse,
                in_stock_date=now,
                from_vendor=warehouse,
                mcs_code_in="-",
                from_shop=warehouse,
                remark_in=NEW_SECURITY_SET_REMARK,
            )
            security_barcodes.add(barcode)
            result["security_transaction_count"] += 1
            continue

        asset = db.query(Asset).filter(Asset.barcode == barcode).first()
        if asset is None:
            asset = Asset(barcode=barcode)
            db.add(asset)
        asset.asset_name = asset_name
        asset.size = size
        asset.warehouse = warehouse
        asset.start_warranty = start_warranty
        asset.end_warranty = end_warranty
        asset.cheil_po = cheil_po
        result["asset_count"] += 1

        if barcode in active_barcodes:
            result["skipped_transaction"] += 1
            continue

        LedgerService.open_in_leg(
            db, barcode, asset_name,
            document_id=import_document.id,
            size=size,
            grade="A",
            start_warranty=start_warranty,
            end_warranty=end_warranty,
            cheil_po=cheil_po,
            warehouse_in=warehouse,
            in_stock_date=now,
            from_vendor=warehouse,
            from_shop=warehouse,
            mcs_code_in="-",
            remark_in=NEW_ASSET_REMARK,
            asset_status="NEW",
            **new_stock_week
        )
        active_barcodes.add(barcode)
        result["transaction_count"] += 1

    db.flush()
    logger.info(
        "Asset import: %d assets, %d ledger rows, %d security rows, %d skipped",
        result["asset_count"], result["transaction_count"],
        result["security_transaction_count"], result["skipped"]
    )
    return result


# =============================================================================
# SHOPS
# =============================================================================

def import_shops(db: Session, df: pd.DataFrame) -> Dict[str, int]:
    """Create or update shops by MCS code."""
    columns = [str(c).strip() for c in df.columns]

    if "BARCODE" in columns:
        raise LedgerError("This file is an asset template, not a shop template")
    if "MCS CODE" not in columns:
        raise LedgerError(f"Missing column: MCS CODE. Expected: {', '.join(SHOP_COLUMNS)}")

    created = updated = skipped = 0
    for row in df.itertuples(index=False, name=None):
        record = dict(zip(columns, row))
        mcs_code = _cell_text(record.get("MCS CODE"))
        if not mcs_code:
            skipped += 1
            continue

        shop = db.query(Shop).filter(Shop.mcs_code == mcs_code).first()
        if shop is None:
            shop = Shop(mcs_code=mcs_code)
            db.add(shop)
            created += 1
        else:
            updated += 1

        shop.shop_name = _cell_text(record.get("SHOP NAME")) or shop.shop_name or mcs_code
        shop.region = _cell_text(record.get("REGION")) or None
        shop.shop_type = _cell_text(record.get("SHOP TYPE")) or None
        shop_status = _cell_text(record.get("STATUS")).upper()
        shop.status = shop_status if shop_status in ("OPEN", "CLOSED") else (shop.status or "OPEN")
        db.flush()

    return {"created": created, "updated": updated, "skipped": skipped}


def _workbook_bytes(rows: List[Dict[str, Any]], columns: List[str], sheet_name: str) -> bytes:
    buffer = BytesIO()
    df = pd.DataFrame(rows, columns=columns)
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=sheet_name, index=False)
    return buffer.getvalue()


def _export_value(value: Any):
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%d/%m/%Y")
    return value


def ledger_workbook(rows: List[AssetTransaction]) -> bytes:
    data = [
        {header: _export_value(getattr(row, attr)) for header, attr in LEDGER_EXPORT_COLUMNS}
        for row in rows
    ]
    return _workbook_bytes(data, [h for h, _ in LEDGER_EXPORT_COLUMNS], "Asset Database")


def shops_workbook(shops: List[Shop]) -> bytes:
    data = [
        {
            "MCS CODE": s.mcs_code,
            "SHOP NAME": s.shop_name,
            "REGION": s.region or "",
            "SHOP TYPE": s.shop_type or "",
            "STATUS": s.status,
            "CREATED AT": _export_value(s.created_at),
            "UPDATED AT": _export_value(s.updated_at),
        }
        for s in shops
    ]
    return _workbook_bytes(data, SHOP_COLUMNS + ["CREATED AT", "UPDATED AT"], "Shops")


def _xlsx_response(content: bytes, prefix: str) -> StreamingResponse:
    filename = f"{prefix}_{datetime.now().strftime('%Y-%m-%d')}.xlsx"
    return StreamingResponse(
        BytesIO(content),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/assets/import")
async def import_assets_excel(
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.ASSET_IMPORT)),
):
    """
    Import the asset master.

    Columns: BARCODE, ASSET NAME (required), SIZE, WAREHOUSE, START WARRANTY,
    END WARRANTY, CHEIL PO.
    """
    df = await _read_upload(file)
    try:
        result = import_assets(db, df, current_user)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "import", "asset", 0,
        {"filename": file.filename, **result}, ip_address=client_ip(request)
    )
    return {"success": True, **result}


@router.post("/shops/import")
async def import_shops_excel(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.SHOP_MANAGE)),
):
    df = await _read_upload(file)
    try:
        result = import_shops(db, df)
        db.commit()
    except LedgerError as e:
        db.rollback()
        raise http_error(e)
    return {"success": True, **result}


@router.get("/shops/export")
async def export_shops_excel(
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.SHOP_VIEW)),
):
    shops = db.query(Shop).order_by(Shop.mcs_code).all()
    if not shops:
        raise HTTPException(status_code=404, detail="No shops to export")
    return _xlsx_response(shops_workbook(shops), "shops")


@router.get("/ledger/export")
async def export_ledger_excel(
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.LEDGER_EXPORT)),
):
    rows = db.query(AssetTransaction).order_by(AssetTransaction.created_at, AssetTransaction.id).all()
    return _xlsx_response(ledger_workbook(rows), "asset_database")
