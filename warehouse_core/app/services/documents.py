"""
Document Workflow Service
=========================
draft -> submitted -> approved | rejected

Approval is the only transition with side effects:
- pick documents are expanded into pick tasks
- return / shop-to-shop / repair documents are written to the ledger
"""

import logging
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import (
    Document, DocumentShop, DocumentAsset, DocumentSecuritySet, DocumentStatus,
    DocumentType, PickAssetTask, AssetTransaction, SecuritySetTransaction,
    TransferReceiveTask, RepairTask, NumberSequence, User,
    RepairTaskStatus, TransferTaskStatus,
    PICK_DOCUMENT_TYPES, RETURN_DOCUMENT_TYPES, TRANSACTION_STATUS_OPTIONS,
    is_controlbox, is_security_type_c,
)
from .ledger import (
    LedgerService, NotFoundError, InvalidOperationError, AccessDeniedError,
    LedgerConflictError, OTHER_ACTIVITY_COLUMNS, in_week_column, week_stamp, week_label,
)
from .picking import PickingService, shop_type_for
from .repairs import RepairService

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (DocumentStatus.DRAFT, DocumentStatus.SUBMITTED)
IMPORT_DOC_CODE = "IMPORT"


# =============================================================================
# DOCUMENT CODES
# =============================================================================

def user_initials(user: User) -> str:
    if user.initials:
        return user.initials.upper()
    parts = [p for p in (user.first_name, user.last_name) if p]
    if parts:
        return "".join(p[0] for p in parts).upper()
    return "XX"


def generate_doc_code(db: Session, user: User, today: Optional[datetime] = None) -> str:
    """
    Next document code for a user and day: <INITIALS><YYMMDD><NN>.

    The counter row is locked so concurrent requests never share a code.
    """
    today = today or datetime.now()
    prefix = f"{user_initials(user)}{today.strftime('%y%m%d')}"
    sequence_name = f"doc:{prefix}"

    seq = db.query(NumberSequence).filter(
        NumberSequence.sequence_name == sequence_name
    ).with_for_update().first()

    if not seq:
        # seed from existing codes so manual codes are not reissued
        last = db.query(Document.doc_code).filter(
            Document.doc_code.like(f"{prefix}%")
        ).order_by(Document.doc_code.desc()).first()
        start = 0
        if last and last[0][len(prefix):].isdigit():
            start = int(last[0][len(prefix):])
        seq = NumberSequence(sequence_name=sequence_name, prefix=prefix, current_number=start, padding=2)
        db.add(seq)

    seq.current_number += 1
    db.flush()

    return f"{prefix}{str(seq.current_number).zfill(seq.padding)}"


# =============================================================================
# DOCUMENT SERVICE
# =============================================================================

class DocumentService:

    @staticmethod
    def get(db: Session, document_id: int, lock: bool = False) -> Document:
        query = db.query(Document).filter(Document.id == document_id)
        if lock:
            query = query.with_for_update()
        document = query.first()
        if not document:
            raise NotFoundError("Document not found")
        return document

    @staticmethod
    def list(
        db: Session,
        created_by: Optional[int] = None,
        status: Optional[DocumentStatus] = None,
        document_type: Optional[DocumentType] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[Document], int]:
        query = db.query(Document).filter(Document.document_type != DocumentType.IMPORT)
        if created_by is not None:
            query = query.filter(Document.created_by == created_by)
        if status:
            query = query.filter(Document.status == status)
        if document_type:
            query = query.filter(Document.document_type == document_type)
        if search:
            query = query.filter(or_(
                Document.doc_code.ilike(f"%{search}%"),
                Document.full_name.ilike(f"%{search}%"),
                Document.company.ilike(f"%{search}%"),
            ))
        total = query.count()
        documents = query.order_by(Document.created_at.desc(), Document.id.desc()).offset(skip).limit(limit).all()
        return documents, total

    @staticmethod
    def _build_shops(shops_in) -> List[DocumentShop]:
        shops = []
        for shop_in in shops_in:
            shop = DocumentShop(
                shop_code=shop_in.shop_code or None,
                shop_name=shop_in.shop_name or None,
                start_install_date=shop_in.start_install_date,
                end_install_date=shop_in.end_install_date,
                q7b7=shop_in.q7b7 or None,
                shop_focus=shop_in.shop_focus or None,
            )
            shop.assets = [
                DocumentAsset(
                    name=a.name, size=a.size or None, kv=a.kv or None, qty=a.qty,
                    withdraw_for=a.withdraw_for or None, barcode=a.barcode or None,
                    grade=a.grade or None,
                )
                for a in shop_in.assets
            ]
            shop.security_sets = [
                DocumentSecuritySet(
                    name=s.name, qty=s.qty, withdraw_for=s.withdraw_for or None,
                    barcode=s.barcode or None,
                )
                for s in shop_in.security_sets
            ]
            shops.append(shop)
        return shops

    @staticmethod
    def _check_submittable(document: Document):
        has_lines = any(
            line.qty > 0
            for shop in document.shops
            for line in list(shop.assets) + list(shop.security_sets)
        )
        if not has_lines:
            raise InvalidOperationError("Document must have at least one line with quantity")

    @staticmethod
    def create(db: Session, user: User, data) -> Document:
        doc_code = (data.doc_code or "").strip() or generate_doc_code(db, user)
        if db.query(Document.id).filter(Document.doc_code == doc_code).first():
            raise InvalidOperationError(f"Document code {doc_code} already exists")

        document = Document(
            doc_code=doc_code,
            document_type=data.document_type,
            status=data.status,
            created_by=user.id,
            full_name=data.full_name,
            company=data.company,
            phone=data.phone or None,
            note=data.note or None,
            operation=data.operation or None,
            other_detail=data.other_detail or None,
            return_condition=data.return_condition or None,
            borrow_type=data.borrow_type or None,
        )
        document.shops = DocumentService._build_shops(data.shops)

        if document.status == DocumentStatus.SUBMITTED:
            DocumentService._check_submittable(document)

        db.add(document)
        db.flush()
        logger.info("Document %s (%s) created by %s", document.doc_code, document.document_type.value, user.username)
        return document

    @staticmethod
    def update(db: Session, document_id: int, user: User, data, is_admin: bool = False) -> Document:
        """Replace header and lines of a document that is not yet decided."""
        document = DocumentService.get(db, document_id, lock=True)

        if document.created_by != user.id and not is_admin:
            raise AccessDeniedError("You can only edit your own documents")
        if document.status not in EDITABLE_STATUSES:
            raise InvalidOperationError(f"Document is already {document.status.value}")

        if data.doc_code and data.doc_code != document.doc_code:
            if db.query(Document.id).filter(Document.doc_code == data.doc_code).first():
                raise InvalidOperationError(f"Document code {data.doc_code} already exists")
            document.doc_code = data.doc_code

        document.document_type = data.document_type
        document.status = data.status
        document.full_name = data.full_name
        document.company = data.company
        document.phone = data.phone or None
        document.note = data.note or None
        document.operation = data.operation or None
        document.other_detail = data.other_detail or None
        document.return_condition = data.return_condition or None
        document.borrow_type = data.borrow_type or None

        if data.transaction_status is not None:
            if not is_admin:
                raise AccessDeniedError("Only admins can set the transaction status")
            DocumentService._set_transaction_status(document, data.transaction_status)

        document.shops = DocumentService._build_shops(data.shops)
        document.updated_at = datetime.utcnow()

        if document.status == DocumentStatus.SUBMITTED:
            DocumentService._check_submittable(document)

        db.flush()
        return document

    @staticmethod
    def submit(db: Session, document_id: int, user: User) -> Document:
        document = DocumentService.get(db, document_id, lock=True)
        if document.created_by != user.id:
            raise AccessDeniedError("You can only submit your own documents")
        if document.status != DocumentStatus.DRAFT:
            raise InvalidOperationError(f"Document is already {document.status.value}")
        DocumentService._check_submittable(document)
        document.status = DocumentStatus.SUBMITTED
        document.updated_at = datetime.utcnow()
        db.flush()
        return document

    @staticmethod
    def reject(db: Session, document_id: int, admin: User, reason: str) -> Document:
        document = DocumentService.get(db, document_id, lock=True)
        if document.status != DocumentStatus.SUBMITTED:
            raise InvalidOperationError("Only submitted documents can be rejected")
        document.status = DocumentStatus.REJECTED
        document.reject_reason = reason
        document.approved_by = admin.id
        document.updated_at = datetime.utcnow()
        db.flush()
        return document

    @staticmethod
    def _set_transaction_status(document: Document, value: Optional[str]):
        if value and value not in TRANSACTION_STATUS_OPTIONS:
            raise InvalidOperationError(f"Unknown transaction status: {value}")
        document.transaction_status = value or None

    @staticmethod
    def approve(
        db: Session,
        document_id: int,
        admin: User,
        other_activity: Optional[str] = None,
        transaction_status: Optional[str] = None
    ) -> dict:
        """
        Approve a submitted document and apply its side effects.

        Raises:
            InvalidOperationError: Document is not submitted, or bad options
        """
        document = DocumentService.get(db, document_id, lock=True)

        if document.status != DocumentStatus.SUBMITTED:
            raise InvalidOperationError("Only submitted documents can be approved")

        if other_activity and other_activity not in OTHER_ACTIVITY_COLUMNS:
            raise InvalidOperationError(f"Unknown other activity: {other_activity}")
        if transaction_status is not None:
            DocumentService._set_transaction_status(document, transaction_status)

        document.status = DocumentStatus.APPROVED
        document.other_activity = other_activity or None
        document.approved_by = admin.id
        document.approved_at = datetime.utcnow()
        document.updated_at = document.approved_at

        result = {
            "doc_code": document.doc_code,
            "tasks_created": 0,
            "transactions_created": 0,
            "transactions_updated": 0,
            "security_transactions_created": 0,
            "repair_tasks_created": 0,
            "not_found_barcodes": [],
            "conflict_barcodes": [],
        }

        if document.document_type in PICK_DOCUMENT_TYPES:
            tasks = PickingService.create_tasks(db, document)
            result["tasks_created"] = len(tasks)
        else:
            result.update(DocumentService._apply_direct(db, document))

        db.flush()
        logger.info("Document %s approved by %s", document.doc_code, admin.username)
        return result

    @staticmethod
    def _apply_direct(db: Session, document: Document) -> dict:
        """Ledger writes for documents that need no picking."""
        created = updated = security_created = repair_tasks = 0
        not_found = []
        conflicts = []

        if not document.shops:
            return {}

        vendor = document.creator.vendor if document.creator else None
        source = document.shops[0]
        dest = document.shops[1] if len(document.shops) > 1 else None
        now = datetime.utcnow()
        moved_at = source.start_install_date or now

        for line in source.assets:
            if not line.barcode:
                continue

            details = LedgerService.asset_details(db, line.barcode, line.name, line.size, line.grade)
            asset_name = details.pop("asset_name")

            if document.document_type == DocumentType.SHOP_TO_SHOP:
                LedgerService.record_closed_movement(
                    db, line.barcode, asset_name,
                    document_id=document.id,
                    warehouse_in=vendor,
                    in_stock_date=moved_at,
                    from_vendor=vendor,
                    mcs_code_in=source.shop_code,
                    from_shop=source.shop_name,
                    remark_in="Shop to Shop",
                    out_date=moved_at,
                    to_vendor=vendor,
                    status=document.transaction_status,
                    shop_type=shop_type_for(db, dest.shop_code if dest else None),
                    mcs_code_out=dest.shop_code if dest else None,
                    to_shop=dest.shop_name if dest else None,
                    remark_out="Shop to Shop",
                    asset_status="-",
                    transaction_category="-",
                    wk_in=week_label(moved_at),
                    wk_out=week_label(moved_at),
                    **details
                )
                created += 1

            elif document.document_type in RETURN_DOCUMENT_TYPES:
                try:
                    LedgerService.open_in_leg(
                        db, line.barcode, asset_name,
                        document_id=document.id,
                        warehouse_in=vendor,
                        in_stock_date=moved_at,
                        from_vendor=vendor,
                        mcs_code_in=source.shop_code,
                        from_shop=source.shop_name,
                        remark_in="-",
                        asset_status="USED",
                        transaction_category="-",
                        **details,
                        **week_stamp(
                            in_week_column(document.document_type, document.return_condition),
                            now, document.other_activity
                        )
                    )
                    created += 1
                except LedgerConflictError as e:
                    logger.warning("Return of %s on %s skipped: %s", line.barcode, document.doc_code, e)
                    conflicts.append(line.barcode)

            elif document.document_type == DocumentType.REPAIR:
                active = LedgerService.find_active(db, line.barcode)
                if active:
                    LedgerService.close_out_leg(
                        db, active,
                        document_id=document.id,
                        out_date=moved_at,
                        to_vendor=vendor,
                        status="SEND TO REPAIR",
                        mcs_code_out="-",
                        to_shop=vendor,
                        remark_out="send to repair",
                        **week_stamp("wk_repair", moved_at)
                    )
                    updated += 1
                else:
                    not_found.append(line.barcode)
                details["asset_name"] = asset_name
                RepairService.open_task(db, document, line.barcode, details, active.id if active else None)
                repair_tasks += 1

        if document.document_type in RETURN_DOCUMENT_TYPES:
            for shop in document.shops:
                for line in shop.security_sets:
                    if line.qty <= 0:
                        continue
                    fields = dict(
                        doc_code=document.doc_code,
                        document_id=document.id,
                        warehouse_in=line.withdraw_for,
                        in_stock_date=moved_at,
                        from_vendor=vendor,
                        mcs_code_in=shop.shop_code,
                        from_shop=shop.shop_name,
                        remark_in="-",
                    )
                    if is_controlbox(line.name):
                        if line.barcode:
                            try:
                                LedgerService.open_security_in_leg(db, line.name, line.barcode, **fields)
                                security_created += 1
                            except LedgerConflictError:
                                conflicts.append(line.barcode)
                        else:
                            for _ in range(line.qty):
                                LedgerService.open_security_in_leg(db, line.name, None, **fields)
                                security_created += 1
                    elif is_security_type_c(line.name):
                        LedgerService.open_security_in_leg(db, line.name, None, unit_in=line.qty, **fields)
                        security_created += 1

        return {
            "transactions_created": created,
            "transactions_updated": updated,
            "security_transactions_created": security_created,
            "repair_tasks_created": repair_tasks,
            "not_found_barcodes": not_found,
            "conflict_barcodes": conflicts,
        }

    @staticmethod
    def delete(db: Session, document_id: int) -> str:
        """
        Remove a document with its tasks and the ledger rows that reference it.

        Raises:
            InvalidOperationError: The system import document, or units still
                waiting on a repair or a transfer receipt
        """
        document = DocumentService.get(db, document_id, lock=True)
        doc_code = document.doc_code

        if document.document_type == DocumentType.IMPORT:
            raise InvalidOperationError("The import document owns every imported stock row and cannot be deleted")

        open_repairs = db.query(RepairTask.id).filter(
            RepairTask.document_id == document_id,
            RepairTask.status == RepairTaskStatus.PENDING.value
        ).count()
        open_receipts = db.query(TransferReceiveTask.id).filter(
            TransferReceiveTask.document_id == document_id,
            TransferReceiveTask.status == TransferTaskStatus.PENDING.value
        ).count()
        if open_repairs or open_receipts:
            raise InvalidOperationError(
                f"Document {doc_code} has {open_repairs} open repair task(s) and {open_receipts} unreceived "
                "transfer unit(s); complete or reject them first"
            )

        db.query(RepairTask).filter(RepairTask.document_id == document_id).delete(synchronize_session=False)
        db.query(TransferReceiveTask).filter(
            TransferReceiveTask.document_id == document_id
        ).delete(synchronize_session=False)
        db.query(AssetTransaction).filter(
            AssetTransaction.document_id == document_id
        ).delete(synchronize_session=False)
        db.query(SecuritySetTransaction).filter(
            SecuritySetTransaction.document_id == document_id
        ).delete(synchronize_session=False)
        db.query(PickAssetTask).filter(PickAssetTask.document_id == document_id).delete(synchronize_session=False)

        db.delete(document)
        db.flush()
        logger.info("Document %s deleted", doc_code)
        return doc_code

    @staticmethod
    def import_document(db: Session, user: User) -> Document:
        """The system document that owns rows created by spreadsheet imports."""
        document = db.query(Document).filter(Document.doc_code == IMPORT_DOC_CODE).first()
        if document:
            return document
        document = Document(
            doc_code=IMPORT_DOC_CODE,
            document_type=DocumentType.IMPORT,
            status=DocumentStatus.APPROVED,
            created_by=user.id,
            full_name="System Import",
            note="Asset master import",
            approved_by=user.id,
            approved_at=datetime.utcnow(),
        )
        db.add(document)
        db.flush()
        return document
