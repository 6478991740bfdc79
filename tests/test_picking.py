"""
Pick task tests.

Verifies:
- Barcode assignment: warehouse ownership, availability, double booking
- Cancellation shrinks the originating document line
- Completion writes one OUT leg per unit and refuses to run twice
- Security Type C and CONTROLBOX handling
- Transfer completion creates receive tasks at the destination
- Task groups per (document, shop) for a warehouse
"""

import pytest

from warehouse_core.app.models import (
    Asset, AssetTransaction, SecuritySetTransaction, PickAssetTask, PickTaskStatus,
    DocumentAsset, DocumentSecuritySet, DocumentType, TransferReceiveTask, Shop,
    CONTROLBOX_NAME, NO_MCS,
)
from warehouse_core.app.services.picking import (
    PickingService, remark_out_for, security_remark_out_for, shop_type_for,
)
from warehouse_core.app.services.ledger import (
    LedgerService, InvalidOperationError, AccessDeniedError, LedgerConflictError,
    NotFoundError, week_label,
)

from conftest import (
    seed_stock, make_document, approve, shop, asset_line, security_line,
)


def _tasks(db, document, warehouse=None):
    query = db.query(PickAssetTask).filter(PickAssetTask.document_id == document.id)
    if warehouse:
        query = query.filter(PickAssetTask.warehouse == warehouse)
    return query.order_by(PickAssetTask.id).all()


@pytest.fixture
def withdraw(db, requester, admin):
    """Approved withdraw: two tables from WH-A, one from WH-B."""
    document = make_document(db, requester, DocumentType.WITHDRAW, [
        shop(assets=[asset_line(qty=2, withdraw_for="WH-A"), asset_line(qty=1, withdraw_for="WH-B")]),
    ])
    approve(db, document, admin)
    return document


# =============================================================================
# Barcode assignment
# =============================================================================


class TestAssignBarcode:

    def test_assign_in_stock_barcode(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        task = _tasks(db, withdraw, "WH-A")[0]

        PickingService.assign_barcode(db, task.id, " BC-1 ", picker_a, asset_image_url="/img/a.jpg")

        assert task.barcode == "BC-1"
        assert task.status == PickTaskStatus.PICKING.value
        assert task.asset_image_url == "/img/a.jpg"

    def test_untracked_master_barcode_allowed(self, db, withdraw, picker_a):
        db.add(Asset(barcode="BC-NEW", asset_name="Display Table"))
        db.commit()
        task = _tasks(db, withdraw, "WH-A")[0]

        PickingService.assign_barcode(db, task.id, "BC-NEW", picker_a)

        assert task.barcode == "BC-NEW"

    def test_other_warehouse_refused(self, db, withdraw, picker_b):
        task = _tasks(db, withdraw, "WH-A")[0]

        with pytest.raises(AccessDeniedError):
            PickingService.assign_barcode(db, task.id, "BC-1", picker_b)

    def test_barcode_not_in_stock(self, db, withdraw, picker_a):
        row = seed_stock(db, "BC-1", "WH-A")
        LedgerService.close_out_leg(db, row)
        db.commit()
        task = _tasks(db, withdraw, "WH-A")[0]

        with pytest.raises(LedgerConflictError):
            PickingService.assign_barcode(db, task.id, "BC-1", picker_a)

    def test_barcode_held_by_another_task(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        first, second = _tasks(db, withdraw, "WH-A")
        PickingService.assign_barcode(db, first.id, "BC-1", picker_a)

        with pytest.raises(LedgerConflictError):
            PickingService.assign_barcode(db, second.id, "BC-1", picker_a)

    def test_reassigning_same_barcode_is_a_no_op(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        task = _tasks(db, withdraw, "WH-A")[0]
        PickingService.assign_barcode(db, task.id, "BC-1", picker_a)

        PickingService.assign_barcode(db, task.id, "BC-1", picker_a, barcode_image_url="/img/b.jpg")

        assert task.barcode_image_url == "/img/b.jpg"

    def test_cancelled_task_unchanged(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        task = _tasks(db, withdraw, "WH-A")[0]
        PickingService.cancel_task(db, task.id, picker_a)

        PickingService.assign_barcode(db, task.id, "BC-1", picker_a)

        assert task.barcode is None
        assert task.status == PickTaskStatus.CANCELLED.value

    def test_security_type_c_is_not_barcoded(self, db, requester, admin, picker_a):
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(security_sets=[security_line("Security Type C Ver.7.1", qty=3, withdraw_for="WH-A")]),
        ])
        approve(db, document, admin)
        task = _tasks(db, document)[0]

        with pytest.raises(InvalidOperationError):
            PickingService.assign_barcode(db, task.id, "TC-1", picker_a)


# =============================================================================
# Cancellation
# =============================================================================


class TestCancel:

    def test_cancel_decrements_line(self, db, withdraw, picker_a):
        task = _tasks(db, withdraw, "WH-A")[0]
        line_id = task.document_asset_id

        PickingService.cancel_task(db, task.id, picker_a)

        assert task.status == PickTaskStatus.CANCELLED.value
        assert task.document_asset_id is None
        assert db.query(DocumentAsset).filter(DocumentAsset.id == line_id).one().qty == 1

    def test_last_unit_removes_line(self, db, withdraw, picker_b):
        task = _tasks(db, withdraw, "WH-B")[0]
        line_id = task.document_asset_id

        PickingService.cancel_task(db, task.id, picker_b)
        db.commit()

        assert db.query(DocumentAsset).filter(DocumentAsset.id == line_id).first() is None

    def test_cancel_type_c_removes_whole_quantity(self, db, requester, admin, picker_a):
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(security_sets=[security_line("Security Type C Ver.7.0", qty=4, withdraw_for="WH-A")]),
        ])
        approve(db, document, admin)
        task = _tasks(db, document)[0]

        PickingService.cancel_task(db, task.id, picker_a)
        db.commit()

        assert db.query(DocumentSecuritySet).count() == 0

    def test_cancel_twice_is_harmless(self, db, withdraw, picker_a):
        task = _tasks(db, withdraw, "WH-A")[0]
        line_id = task.document_asset_id
        PickingService.cancel_task(db, task.id, picker_a)

        PickingService.cancel_task(db, task.id, picker_a)

        assert db.query(DocumentAsset).filter(DocumentAsset.id == line_id).one().qty == 1

    def test_admin_may_cancel_any_warehouse(self, db, withdraw, admin):
        task = _tasks(db, withdraw, "WH-B")[0]

        PickingService.cancel_task(db, task.id, admin)

        assert task.status == PickTaskStatus.CANCELLED.value

    def test_other_warehouse_refused(self, db, withdraw, picker_b):
        task = _tasks(db, withdraw, "WH-A")[0]

        with pytest.raises(AccessDeniedError):
            PickingService.cancel_task(db, task.id, picker_b)


# =============================================================================
# Completion
# =============================================================================


class TestComplete:

    def _pick_all(self, db, document, picker, barcodes):
        for task, barcode in zip(_tasks(db, document, picker.vendor), barcodes):
            PickingService.assign_barcode(db, task.id, barcode, picker)
        db.commit()

    def test_writes_out_legs(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        seed_stock(db, "BC-2", "WH-A")
        self._pick_all(db, withdraw, picker_a, ["BC-1", "BC-2"])

        result = PickingService.complete(db, withdraw.id, picker_a)
        db.commit()

        assert result["tasks_completed"] == 2
        assert result["transactions_updated"] == 2
        assert result["not_found_barcodes"] == []
        for barcode in ("BC-1", "BC-2"):
            row = db.query(AssetTransaction).filter(AssetTransaction.barcode == barcode).one()
            assert row.balance == 0
            assert row.document_id == withdraw.id
            assert row.to_vendor == "WH-R"
            assert row.mcs_code_out == "MCS001"
            assert row.to_shop == "Shop One"
            assert row.shop_type == NO_MCS
            assert row.remark_out == "-"
            assert row.wk_out == week_label()
        assert all(t.status == PickTaskStatus.COMPLETED.value for t in _tasks(db, withdraw, "WH-A"))
        # WH-B has not picked yet
        assert _tasks(db, withdraw, "WH-B")[0].status == PickTaskStatus.PENDING.value

    def test_missing_barcode_refused(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        self._pick_all(db, withdraw, picker_a, ["BC-1"])

        with pytest.raises(InvalidOperationError):
            PickingService.complete(db, withdraw.id, picker_a)

    def test_cancelled_tasks_are_skipped(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        first, second = _tasks(db, withdraw, "WH-A")
        PickingService.assign_barcode(db, first.id, "BC-1", picker_a)
        PickingService.cancel_task(db, second.id, picker_a)
        db.commit()

        result = PickingService.complete(db, withdraw.id, picker_a)

        assert result["tasks_completed"] == 1
        assert result["tasks_cancelled"] == 1

    def test_complete_twice_refused(self, db, withdraw, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        seed_stock(db, "BC-2", "WH-A")
        self._pick_all(db, withdraw, picker_a, ["BC-1", "BC-2"])
        PickingService.complete(db, withdraw.id, picker_a)
        db.commit()

        with pytest.raises(InvalidOperationError):
            PickingService.complete(db, withdraw.id, picker_a)

    def test_stale_barcode_reported(self, db, withdraw, picker_a):
        first = seed_stock(db, "BC-1", "WH-A")
        seed_stock(db, "BC-2", "WH-A")
        self._pick_all(db, withdraw, picker_a, ["BC-1", "BC-2"])
        LedgerService.close_out_leg(db, first)
        db.commit()

        result = PickingService.complete(db, withdraw.id, picker_a)

        assert result["tasks_completed"] == 2
        assert result["transactions_updated"] == 1
        assert result["not_found_barcodes"] == ["BC-1"]

    def test_no_tasks_for_warehouse(self, db, withdraw, picker_a):
        with pytest.raises(NotFoundError):
            PickingService.complete(db, withdraw.id + 1, picker_a)

    def test_user_without_vendor(self, db, withdraw, admin):
        admin.vendor = None
        db.commit()

        with pytest.raises(InvalidOperationError):
            PickingService.complete(db, withdraw.id, admin)

    def test_other_activity_and_grade(self, db, requester, admin, picker_a):
        seed_stock(db, "BC-1", "WH-A")
        db.add(Shop(mcs_code="MCS001", shop_name="Shop One", shop_type="Experience Store"))
        db.commit()
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(assets=[asset_line(withdraw_for="WH-A", grade="B")]),
        ])
        approve(db, document, admin, other_activity="outToRentalWarehouse")
        self._pick_all(db, document, picker_a, ["BC-1"])

        PickingService.complete(db, document.id, picker_a)

        row = db.query(AssetTransaction).filter(AssetTransaction.barcode == "BC-1").one()
        assert row.wk_out_to_rental == week_label()
        assert row.wk_out is None
        assert row.grade == "B"
        assert row.shop_type == "Experience Store"

    def test_custom_display_size_updates_master(self, db, requester, admin, picker_a):
        seed_stock(db, "LB-1", "WH-A", asset_name="Light Box", size="100*50")
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(assets=[asset_line("Light Box", size="120*80", withdraw_for="WH-A")]),
        ])
        approve(db, document, admin)
        self._pick_all(db, document, picker_a, ["LB-1"])

        PickingService.complete(db, document.id, picker_a)
        db.commit()

        assert db.query(Asset).filter(Asset.barcode == "LB-1").one().size == "120*80"


class TestSecuritySetPicking:

    def test_type_c_bulk_row(self, db, requester, admin, picker_a):
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(security_sets=[security_line("Security Type C Ver.7.1", qty=6, withdraw_for="WH-A")]),
        ])
        approve(db, document, admin)

        result = PickingService.complete(db, document.id, picker_a)

        row = db.query(SecuritySetTransaction).one()
        assert result["security_type_c_processed"] == 1
        assert row.unit_out == 6
        assert row.barcode is None
        assert row.doc_code == document.doc_code

    def test_type_c_remark_ignores_transfer_operation(self, db, picker_a, admin):
        document = make_document(db, picker_a, DocumentType.TRANSFER, [
            shop(code="-", name="WH-B",
                 security_sets=[security_line("Security Type C Ver.7.1", qty=2, withdraw_for="WH-A")]),
        ], operation="rebalance")
        approve(db, document, admin)

        PickingService.complete(db, document.id, picker_a)

        assert db.query(SecuritySetTransaction).one().remark_out == "-"

    def test_controlbox_closes_security_row(self, db, requester, admin, picker_a):
        LedgerService.open_security_in_leg(db, CONTROLBOX_NAME, "CB-1", warehouse_in="WH-A")
        db.commit()
        document = make_document(db, requester, DocumentType.WITHDRAW, [
            shop(security_sets=[security_line(CONTROLBOX_NAME, qty=1, withdraw_for="WH-A")]),
        ])
        approve(db, document, admin)
        self._assign(db, document, picker_a, "CB-1")

        result = PickingService.complete(db, document.id, picker_a)

        row = db.query(SecuritySetTransaction).one()
        assert result["transactions_updated"] == 1
        assert row.balance == 0
        assert row.to_shop == "Shop One"
        assert LedgerService.find_active_security(db, "CB-1") is None

    def _assign(self, db, document, picker, barcode):
        task = _tasks(db, document)[0]
        PickingService.assign_barcode(db, task.id, barcode, picker)
        db.commit()


class TestTransferPicking:

    def test_transfer_creates_receive_tasks(self, db, picker_a, admin):
        seed_stock(db, "BC-1", "WH-A")
        document = make_document(db, picker_a, DocumentType.TRANSFER, [
            shop(code="-", name="WH-B", assets=[asset_line(barcode="BC-1")]),
        ], operation="other", other_detail="stock balancing")
        approve(db, document, admin)

        result = PickingService.complete(db, document.id, picker_a)

        row = db.query(AssetTransaction).filter(AssetTransaction.barcode == "BC-1").one()
        receive = db.query(TransferReceiveTask).one()
        assert result["transfer_tasks_created"] == 1
        assert row.wk_out_for_repair == week_label()
        assert row.remark_out == "stock balancing"
        assert receive.from_warehouse == "WH-A"
        assert receive.to_warehouse == "WH-B"
        assert receive.barcode == "BC-1"


# =============================================================================
# Queries and helpers
# =============================================================================


class TestMyTasks:

    def test_groups_by_document_and_shop(self, db, requester, admin, picker_a):
        document = make_document(db, requester, DocumentType.ROUTING_2_SHOPS, [
            shop(assets=[asset_line(qty=2, withdraw_for="WH-A")]),
            shop(code="MCS002", name="Shop Two", assets=[asset_line(withdraw_for="WH-A")]),
        ])
        approve(db, document, admin)
        first = _tasks(db, document)[0]
        PickingService.cancel_task(db, first.id, picker_a)
        db.commit()

        groups = {g["shop_code"]: g for g in PickingService.my_tasks(db, "WH-A")}

        assert groups["MCS001"]["total_items"] == 2
        assert groups["MCS001"]["status"] == PickTaskStatus.PICKING.value
        assert groups["MCS002"]["status"] == PickTaskStatus.PENDING.value
        assert groups["MCS002"]["doc_code"] == document.doc_code

    def test_status_filter(self, db, withdraw, picker_b):
        PickingService.cancel_task(db, _tasks(db, withdraw, "WH-B")[0].id, picker_b)
        db.commit()

        assert len(PickingService.my_tasks(db, "WH-B", status="completed")) == 1
        assert PickingService.my_tasks(db, "WH-B", status="pending") == []


class TestHelpers:

    def test_remark_out(self, db, picker_a):
        document = make_document(db, picker_a, DocumentType.TRANSFER, [], status="draft", operation="repair")
        borrow = make_document(db, picker_a, DocumentType.BORROW, [], status="draft", borrow_type="Event")
        plain = make_document(db, picker_a, DocumentType.WITHDRAW, [], status="draft")

        assert remark_out_for(document) == "repair"
        assert remark_out_for(borrow) == "Event"
        assert remark_out_for(plain) == "-"

    def test_security_remark_out(self, db, picker_a):
        transfer = make_document(db, picker_a, DocumentType.TRANSFER, [], status="draft", operation="repair")
        borrow = make_document(db, picker_a, DocumentType.BORROW_SECURITY, [], status="draft", borrow_type="Event")

        assert security_remark_out_for(transfer) == "-"
        assert security_remark_out_for(borrow) == "Event"

    def test_shop_type_for(self, db):
        db.add(Shop(mcs_code="MCS001", shop_name="Shop One", shop_type="Mall"))
        db.add(Shop(mcs_code="MCS002", shop_name="Shop Two"))
        db.commit()

        assert shop_type_for(db, " MCS001 ") == "Mall"
        assert shop_type_for(db, "MCS002") == NO_MCS
        assert shop_type_for(db, "") == NO_MCS
        assert shop_type_for(db, None) == NO_MCS
