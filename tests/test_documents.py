"""
Document workflow tests.

Verifies:
- Document codes: initials + date + counter, seeded from existing codes
- create / update / submit / reject rules and who may do them
- Approval of pick documents produces one task per unit
- Approval of return, shop-to-shop and repair documents writes the ledger
- Deleting a document removes everything that references it, except the
  import document and documents with units still out on repair or transfer
"""

import pytest
from datetime import datetime

from warehouse_core.app.models import (
    AssetTransaction, SecuritySetTransaction, PickAssetTask, RepairTask, Shop,
    Document, DocumentStatus, DocumentType, TransferReceiveTask, User,
    CONTROLBOX_NAME, NO_MCS,
)
from warehouse_core.app.schemas import DocumentUpdate
from warehouse_core.app.services.documents import (
    DocumentService, generate_doc_code, user_initials, IMPORT_DOC_CODE,
)
from warehouse_core.app.services.ledger import (
    LedgerService, InvalidOperationError, AccessDeniedError, NotFoundError, week_label,
)
from warehouse_core.app.services.picking import PickingService
from warehouse_core.app.services.repairs import RepairService

from conftest import (
    seed_stock, make_document, approve, shop, asset_line, security_line,
)

MARCH_12 = datetime(2025, 3, 12, 9, 30)


# =============================================================================
# Document codes
# =============================================================================


class TestDocCodes:

    def test_initials_from_user(self, admin, requester):
        assert user_initials(admin) == "AD"
        assert user_initials(requester) == "RQ"
        assert user_initials(User(username="nobody")) == "XX"

    def test_counter_per_day(self, db, admin):
        first = generate_doc_code(db, admin, MARCH_12)
        second = generate_doc_code(db, admin, MARCH_12)
        other_day = generate_doc_code(db, admin, datetime(2025, 3, 13))

        assert first == "AD25031201"
        assert second == "AD25031202"
        assert other_day == "AD25031301"

    def test_counter_skips_existing_codes(self, db, admin):
        make_document(db, admin, DocumentType.WITHDRAW, [], status="draft", doc_code="AD25031207")

        assert generate_doc_code(db, admin, MARCH_12) == "AD25031208"

    def test_created_document_gets_code(self, db, requester):
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        assert document.doc_code.startswith("RQ" + datetime.now().strftime("%y%m%d"))


# =============================================================================
# Editing
# =============================================================================


class TestCreate:

    def test_draft_may_be_empty(self, db, requester):
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        assert document.status == DocumentStatus.DRAFT
        assert document.created_by == requester.id

    def test_submitted_needs_quantity(self, db, requester):
        with pytest.raises(InvalidOperationError):
            make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line(qty=0)])])

    def test_duplicate_code_refused(self, db, requester):
        make_document(db, requester, DocumentType.WITHDRAW, [], status="draft", doc_code="RQ-1")

        with pytest.raises(InvalidOperationError):
            make_document(db, requester, DocumentType.WITHDRAW, [], status="draft", doc_code="RQ-1")

    def test_lines_are_stored(self, db, requester):
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(assets=[asset_line(qty=2, withdraw_for="WH-A")],
                 security_sets=[security_line("Security Type C Ver.7.1", qty=3, withdraw_for="WH-B")]),
        ])

        assert len(document.shops) == 1
        assert document.shops[0].assets[0].qty == 2
        assert document.shops[0].security_sets[0].withdraw_for == "WH-B"


def _update(document_type=DocumentType.WITHDRAW, status="draft", shops=(), **fields):
    return DocumentUpdate(
        document_type=document_type, status=status, full_name="Rita Quinn",
        company="ACME", shops=list(shops), **fields
    )


class TestUpdate:

    def test_owner_replaces_lines(self, db, requester):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line()])])

        DocumentService.update(db, document.id, requester, _update(
            status="submitted", shops=[shop(code="MCS002", assets=[asset_line(qty=4)])]
        ))
        db.commit()

        assert len(document.shops) == 1
        assert document.shops[0].shop_code == "MCS002"
        assert document.shops[0].assets[0].qty == 4

    def test_other_user_refused(self, db, requester, picker_a):
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        with pytest.raises(AccessDeniedError):
            DocumentService.update(db, document.id, picker_a, _update())

    def test_admin_may_edit_and_set_transaction_status(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        DocumentService.update(db, document.id, admin, _update(transaction_status="Event"), is_admin=True)

        assert document.transaction_status == "Event"

    def test_transaction_status_is_admin_only(self, db, requester):
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        with pytest.raises(AccessDeniedError):
            DocumentService.update(db, document.id, requester, _update(transaction_status="Event"))

    def test_unknown_transaction_status(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        with pytest.raises(InvalidOperationError):
            DocumentService.update(db, document.id, admin, _update(transaction_status="Party"), is_admin=True)

    def test_decided_document_is_frozen(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line(withdraw_for="WH-A")])])
        approve(db, document, admin)

        with pytest.raises(InvalidOperationError):
            DocumentService.update(db, document.id, admin, _update(), is_admin=True)

    def test_doc_code_change_checks_duplicates(self, db, requester):
        make_document(db, requester, DocumentType.WITHDRAW, [], status="draft", doc_code="TAKEN")
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        with pytest.raises(InvalidOperationError):
            DocumentService.update(db, document.id, requester, _update(doc_code="TAKEN"))


class TestSubmitReject:

    def test_submit_draft(self, db, requester):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line()])], status="draft")

        DocumentService.submit(db, document.id, requester)

        assert document.status == DocumentStatus.SUBMITTED

    def test_submit_only_own(self, db, requester, picker_a):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line()])], status="draft")

        with pytest.raises(AccessDeniedError):
            DocumentService.submit(db, document.id, picker_a)

    def test_submit_twice(self, db, requester):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line()])])

        with pytest.raises(InvalidOperationError):
            DocumentService.submit(db, document.id, requester)

    def test_reject_keeps_reason(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line()])])

        DocumentService.reject(db, document.id, admin, "wrong shop")

        assert document.status == DocumentStatus.REJECTED
        assert document.reject_reason == "wrong shop"
        assert db.query(PickAssetTask).count() == 0

    def test_reject_draft_refused(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [], status="draft")

        with pytest.raises(InvalidOperationError):
            DocumentService.reject(db, document.id, admin, "no")

    def test_unknown_document(self, db, admin):
        with pytest.raises(NotFoundError):
            DocumentService.reject(db, 404, admin, "no")


class TestList:

    def test_filters_and_excludes_imports(self, db, requester, picker_a, admin):
        make_document(db, requester, DocumentType.WITHDRAW, [], status="draft", doc_code="RQ-1")
        make_document(db, requester, DocumentType.RETURN, [], status="draft", doc_code="RQ-2")
        make_document(db, picker_a, DocumentType.WITHDRAW, [], status="draft", doc_code="PA-1")
        DocumentService.import_document(db, admin)
        db.commit()

        _, total = DocumentService.list(db)
        mine, mine_total = DocumentService.list(db, created_by=requester.id)
        returns, _ = DocumentService.list(db, document_type=DocumentType.RETURN)
        found, _ = DocumentService.list(db, search="PA-")

        assert total == 3
        assert mine_total == 2
        assert {d.doc_code for d in mine} == {"RQ-1", "RQ-2"}
        assert [d.doc_code for d in returns] == ["RQ-2"]
        assert [d.doc_code for d in found] == ["PA-1"]

    def test_import_document_is_reused(self, db, admin):
        first = DocumentService.import_document(db, admin)
        second = DocumentService.import_document(db, admin)

        assert first.id == second.id
        assert first.doc_code == IMPORT_DOC_CODE
        assert first.status == DocumentStatus.APPROVED


# =============================================================================
# Approval of pick documents
# =============================================================================


class TestApprovePick:

    def test_one_task_per_unit(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(assets=[asset_line(qty=2, withdraw_for="WH-A"), asset_line("Light Box", qty=1, withdraw_for="WH-B")],
                 security_sets=[
                     security_line("Security Type C Ver.7.1", qty=5, withdraw_for="WH-A"),
                     security_line(CONTROLBOX_NAME, qty=2, withdraw_for="WH-A"),
                 ]),
        ])

        result = approve(db, document, admin)

        assert result["tasks_created"] == 6
        assert document.status == DocumentStatus.APPROVED
        assert document.approved_by == admin.id
        type_c = db.query(PickAssetTask).filter(PickAssetTask.asset_name == "Security Type C Ver.7.1").one()
        assert type_c.qty == 5
        assert db.query(PickAssetTask).filter(PickAssetTask.warehouse == "WH-B").count() == 1

    def test_transfer_tasks_go_to_creator_warehouse(self, db, picker_a, admin):
        document = make_document(db, picker_a, DocumentType.TRANSFER, [
            shop(code="-", name="WH-B", assets=[asset_line(qty=2, barcode="BC-1", withdraw_for="WH-B")]),
        ], operation="rebalance")

        approve(db, document, admin)

        tasks = db.query(PickAssetTask).order_by(PickAssetTask.id).all()
        assert [t.warehouse for t in tasks] == ["WH-A", "WH-A"]
        assert [t.barcode for t in tasks] == ["BC-1", None]

    def test_transfer_security_sets_use_line_warehouse(self, db, picker_a, admin):
        document = make_document(db, picker_a, DocumentType.TRANSFER, [
            shop(code="-", name="WH-B",
                 security_sets=[security_line("Security Type C Ver.7.1", qty=2, withdraw_for="WH-C")]),
        ])

        approve(db, document, admin)

        assert db.query(PickAssetTask).one().warehouse == "WH-C"

    def test_approve_twice_refused(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line(withdraw_for="WH-A")])])
        approve(db, document, admin)

        with pytest.raises(InvalidOperationError):
            DocumentService.approve(db, document.id, admin)

    def test_unknown_other_activity(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line(withdraw_for="WH-A")])])

        with pytest.raises(InvalidOperationError):
            DocumentService.approve(db, document.id, admin, other_activity="sold")

    def test_options_are_stored(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line(withdraw_for="WH-A")])])

        approve(db, document, admin, other_activity="discarded", transaction_status="Discarded")

        assert document.other_activity == "discarded"
        assert document.transaction_status == "Discarded"


# =============================================================================
# Approval of direct documents
# =============================================================================


class TestApproveReturn:

    def test_return_opens_in_leg(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.RETURN, [
            shop(assets=[asset_line(barcode="BC-1", withdraw_for="WH-R")]),
        ])

        result = approve(db, document, admin)

        row = LedgerService.find_active(db, "BC-1")
        assert result["transactions_created"] == 1
        assert row.document_id == document.id
        assert row.warehouse_in == "WH-R"
        assert row.mcs_code_in == "MCS001"
        assert row.from_shop == "Shop One"
        assert row.asset_status == "USED"
        assert row.wk_in == week_label()
        assert row.wk_return is None

    def test_return_from_borrow_uses_return_week(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.RETURN_ASSET, [
            shop(assets=[asset_line(barcode="BC-1")]),
        ], return_condition="from_borrow")

        approve(db, document, admin)

        row = LedgerService.find_active(db, "BC-1")
        assert row.wk_return == week_label()
        assert row.wk_in is None

    def test_other_activity_redirects_week(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.RETURN, [shop(assets=[asset_line(barcode="BC-1")])])

        approve(db, document, admin, other_activity="inToRentalWarehouse")

        row = LedgerService.find_active(db, "BC-1")
        assert row.wk_in_to_rental == week_label()
        assert row.wk_in is None

    def test_barcode_already_in_stock_is_reported(self, db, requester, admin):
        seed_stock(db, "BC-1", "WH-A")
        document = make_document(db, requester, DocumentType.RETURN, [
            shop(assets=[asset_line(barcode="BC-1"), asset_line(barcode="BC-2")]),
        ])

        result = approve(db, document, admin)

        assert result["transactions_created"] == 1
        assert result["conflict_barcodes"] == ["BC-1"]
        assert LedgerService.find_active(db, "BC-1").warehouse_in == "WH-A"

    def test_lines_without_barcode_are_skipped(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.RETURN, [shop(assets=[asset_line(qty=3)])])

        result = approve(db, document, admin)

        assert result["transactions_created"] == 0
        assert db.query(AssetTransaction).count() == 0

    def test_security_sets_return(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.RETURN, [
            shop(security_sets=[
                security_line(CONTROLBOX_NAME, qty=1, barcode="CB-1", withdraw_for="WH-A"),
                security_line(CONTROLBOX_NAME, qty=2, withdraw_for="WH-A"),
                security_line("Security Type C Ver.7.0", qty=4, withdraw_for="WH-B"),
            ]),
        ])

        result = approve(db, document, admin)

        assert result["security_transactions_created"] == 4
        assert LedgerService.find_active_security(db, "CB-1").warehouse_in == "WH-A"
        type_c = db.query(SecuritySetTransaction).filter(
            SecuritySetTransaction.asset_name == "Security Type C Ver.7.0"
        ).one()
        assert type_c.unit_in == 4
        assert type_c.doc_code == document.doc_code
        assert type_c.warehouse_in == "WH-B"


class TestApproveShopToShop:

    def test_closed_movement_between_shops(self, db, requester, admin):
        db.add(Shop(mcs_code="MCS002", shop_name="Shop Two", shop_type="Brand Shop"))
        db.commit()
        document = make_document(db, requester, DocumentType.SHOP_TO_SHOP, [
            shop(assets=[asset_line(barcode="BC-1")]),
            shop(code="MCS002", name="Shop Two"),
        ])

        result = approve(db, document, admin)

        row = db.query(AssetTransaction).one()
        assert result["transactions_created"] == 1
        assert row.balance == 0
        assert row.mcs_code_in == "MCS001"
        assert row.mcs_code_out == "MCS002"
        assert row.to_shop == "Shop Two"
        assert row.shop_type == "Brand Shop"
        assert row.remark_in == row.remark_out == "Shop to Shop"
        assert row.wk_in == row.wk_out

    def test_unknown_destination_shop_type(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.SHOP_TO_SHOP, [
            shop(assets=[asset_line(barcode="BC-1")]),
            shop(code="MCS404", name="Pop-up"),
        ])

        approve(db, document, admin)

        assert db.query(AssetTransaction).one().shop_type == NO_MCS

    def test_does_not_touch_stock(self, db, requester, admin):
        seed_stock(db, "BC-1", "WH-A")
        document = make_document(db, requester, DocumentType.SHOP_TO_SHOP, [
            shop(assets=[asset_line(barcode="BC-1")]),
            shop(code="MCS002", name="Shop Two"),
        ])

        approve(db, document, admin)

        assert LedgerService.find_active(db, "BC-1").warehouse_in == "WH-A"


class TestApproveRepair:

    def test_repair_closes_row_and_opens_task(self, db, requester, admin):
        row = seed_stock(db, "BC-1", "WH-R", size="55 inch")
        document = make_document(db, requester, DocumentType.REPAIR, [
            shop(assets=[asset_line(barcode="BC-1"), asset_line(barcode="BC-MISSING")]),
        ])

        result = approve(db, document, admin)

        assert result["transactions_updated"] == 1
        assert result["repair_tasks_created"] == 2
        assert result["transactions_created"] == 0
        assert result["not_found_barcodes"] == ["BC-MISSING"]
        assert row.balance == 0
        assert row.status == "SEND TO REPAIR"
        assert row.to_shop == "WH-R"
        assert row.wk_repair == week_label()
        assert row.document_id == document.id

        task = db.query(RepairTask).filter(RepairTask.barcode == "BC-1").one()
        assert task.transaction_id == row.id
        assert task.size == "55 inch"
        assert task.repair_warehouse == "WH-R"
        assert task.reporter_name == "Rita Quinn"


# =============================================================================
# Delete
# =============================================================================


class TestDelete:

    def test_removes_tasks_and_ledger_rows(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.RETURN, [
            shop(assets=[asset_line(barcode="BC-1")],
                 security_sets=[security_line("Security Type C Ver.7.1", qty=2)]),
        ])
        approve(db, document, admin)
        document_id, doc_code = document.id, document.doc_code

        assert DocumentService.delete(db, document_id) == doc_code
        db.commit()

        assert db.query(Document).filter(Document.id == document_id).first() is None
        assert db.query(AssetTransaction).count() == 0
        assert db.query(SecuritySetTransaction).count() == 0

    def test_removes_pick_tasks(self, db, requester, admin):
        document = make_document(db, requester, DocumentType.WITHDRAW, [shop(assets=[asset_line(qty=3, withdraw_for="WH-A")])])
        approve(db, document, admin)

        DocumentService.delete(db, document.id)
        db.commit()

        assert db.query(PickAssetTask).count() == 0

    def test_repair_takes_over_the_returned_row(self, db, requester, admin):
        returned = make_document(db, requester, DocumentType.RETURN, [shop(assets=[asset_line(barcode="BC-1")])])
        approve(db, returned, admin)
        repair = make_document(db, requester, DocumentType.REPAIR, [shop(assets=[asset_line(barcode="BC-1")])])
        approve(db, repair, admin)

        DocumentService.delete(db, returned.id)
        db.commit()

        row = db.query(AssetTransaction).one()
        task = db.query(RepairTask).one()
        assert row.document_id == repair.id
        assert row.status == "SEND TO REPAIR"
        assert task.transaction_id == row.id

    def test_import_document_is_kept(self, db, admin):
        imported = DocumentService.import_document(db, admin)
        seed_stock(db, "BC-1", "WH-A").document_id = imported.id
        db.commit()

        with pytest.raises(InvalidOperationError):
            DocumentService.delete(db, imported.id)

        assert LedgerService.find_active(db, "BC-1").document_id == imported.id

    def test_repair_with_open_task_is_kept(self, db, requester, admin):
        seed_stock(db, "BC-1", "WH-R")
        repair = make_document(db, requester, DocumentType.REPAIR, [shop(assets=[asset_line(barcode="BC-1")])])
        approve(db, repair, admin)

        with pytest.raises(InvalidOperationError):
            DocumentService.delete(db, repair.id)

        row = db.query(AssetTransaction).one()
        assert row.document_id == repair.id
        assert row.balance == 0
        assert db.query(RepairTask).one().status == "pending"

    def test_repair_can_go_once_finished(self, db, requester, admin):
        seed_stock(db, "BC-1", "WH-R")
        repair = make_document(db, requester, DocumentType.REPAIR, [shop(assets=[asset_line(barcode="BC-1")])])
        approve(db, repair, admin)
        RepairService.complete(db, db.query(RepairTask).one().id, MARCH_12, requester)
        db.commit()

        DocumentService.delete(db, repair.id)
        db.commit()

        assert db.query(RepairTask).count() == 0
        assert db.query(AssetTransaction).filter(AssetTransaction.document_id == repair.id).count() == 0

    def test_transfer_awaiting_receipt_is_kept(self, db, picker_a, admin):
        seed_stock(db, "BC-1", "WH-A")
        transfer = make_document(db, picker_a, DocumentType.TRANSFER, [
            shop(code="-", name="WH-B", assets=[asset_line(barcode="BC-1")]),
        ], operation="rebalance")
        approve(db, transfer, admin)
        PickingService.complete(db, transfer.id, picker_a)
        db.commit()

        with pytest.raises(InvalidOperationError):
            DocumentService.delete(db, transfer.id)

        assert db.query(TransferReceiveTask).one().status == "pending"
