from datetime import datetime

import pytest

from fleet_maintenance.models import (
    NoticeLevel,
    PartRequisitionItem,
    PartSource,
    RepairOrder,
    SaleGrade,
    StockItem,
    StockReturn,
    TransactionType,
)
from fleet_maintenance.stock import StockLedger


def make_order(parts, order_no="RO-2024-00003"):
    now = datetime(2024, 3, 1)
    return RepairOrder(
        id="R3", repair_order_no=order_no, license_plate="70-1234",
        created_at=now, updated_at=now, parts=parts,
    )


class TestReturnUsedStock:

    # TDD Anchor: two returns against the same used-item stock add up
    def test_returns_accumulate_on_one_item(self, seeded_store, ledger):
        outcome = ledger.return_used_stock([
            StockReturn("STK-FUNG", 2, "RO-2024-00007"),
            StockReturn("STK-FUNG", 3, "RO-2024-00007"),
        ])

        assert ledger.find_item("STK-FUNG").quantity == 5
        assert outcome.notice.level == NoticeLevel.SUCCESS
        assert outcome.notice.message == "Updated used-item stock for 2 entries"

        transactions = seeded_store.stock_transactions.value
        assert len(transactions) == 2
        for txn in transactions:
            assert txn.type == TransactionType.RECEIVED
            assert txn.price_per_unit == 0
            assert txn.related_repair_order == "RO-2024-00007"
            assert txn.actor == "tester"
        assert sorted(t.quantity for t in transactions) == [2, 3]

    def test_single_return_adds_to_existing_quantity(self, store, ledger):
        store.stock.set([StockItem(id="S1", code="USED-1", name="Used bearings", quantity=2, is_fungible_used_item=True)])

        ledger.return_used_stock([StockReturn("S1", 3, "RO-2024-00007")])

        assert ledger.find_item("S1").quantity == 5
        [txn] = store.stock_transactions.value
        assert txn.type == TransactionType.RECEIVED
        assert txn.related_repair_order == "RO-2024-00007"
        assert txn.price_per_unit == 0

    def test_unknown_items_are_skipped(self, seeded_store, ledger, caplog):
        outcome = ledger.return_used_stock([
            StockReturn("STK-GONE", 4, "RO-2024-00007"),
            StockReturn("STK-FUNG", 1, "RO-2024-00007"),
        ])

        assert outcome.skipped == ["STK-GONE"]
        assert ledger.find_item("STK-FUNG").quantity == 1
        assert len(seeded_store.stock_transactions.value) == 1
        assert "Stock item STK-GONE not found" in caplog.text

    def test_nothing_applied_is_a_warning(self, seeded_store, ledger):
        outcome = ledger.return_used_stock([StockReturn("STK-GONE", 4, "RO-2024-00007")])

        assert outcome.notice.level == NoticeLevel.WARNING
        assert seeded_store.stock_transactions.value == []

    def test_transactions_are_prepended(self, seeded_store, ledger):
        ledger.return_used_stock([StockReturn("STK-FUNG", 1, "RO-2024-00001")])
        ledger.return_used_stock([StockReturn("STK-FUNG", 1, "RO-2024-00002")])

        assert [t.related_repair_order for t in seeded_store.stock_transactions.value] == [
            "RO-2024-00002", "RO-2024-00001",
        ]


class TestWithdrawForRepair:

    def test_withdraws_internal_parts_only(self, seeded_store, ledger):
        order = make_order([
            PartRequisitionItem(part_id="STK-BRAKE", name="Brake pad", quantity=2, unit_price=850.0),
            PartRequisitionItem(part_id="EXT-1", name="Windscreen", quantity=1, source=PartSource.EXTERNAL_VENDOR),
        ])

        outcome = ledger.withdraw_for_repair(order, actor="Somchai")

        assert ledger.find_item("STK-BRAKE").quantity == 18
        [txn] = outcome.transactions
        assert txn.type == TransactionType.WITHDRAWN
        assert txn.quantity == -2
        assert txn.price_per_unit == 850.0
        assert txn.actor == "Somchai"
        assert txn.related_repair_order == "RO-2024-00003"

    def test_same_order_is_not_withdrawn_twice(self, seeded_store, ledger):
        order = make_order([PartRequisitionItem(part_id="STK-BRAKE", name="Brake pad", quantity=2)])

        ledger.withdraw_for_repair(order)
        outcome = ledger.withdraw_for_repair(order)

        assert outcome.transactions == []
        assert ledger.find_item("STK-BRAKE").quantity == 18

    def test_missing_stock_item_is_skipped(self, seeded_store, ledger):
        order = make_order([PartRequisitionItem(part_id="STK-GONE", name="Old part", quantity=1)])
        outcome = ledger.withdraw_for_repair(order)
        assert outcome.skipped == ["STK-GONE"]
        assert outcome.notice.message == "No stock to withdraw"


class TestStockItems:

    def test_add_item_rejects_duplicate_code(self, seeded_store, ledger):
        with pytest.raises(ValueError, match="BRK-001"):
            ledger.add_item(StockItem(id="X", code="BRK-001", name="Another pad"))

    def test_low_stock_excludes_fungible_items(self, seeded_store, ledger):
        ledger.adjust_quantities({"STK-BRAKE": -16})
        assert [i.id for i in ledger.low_stock_items()] == ["STK-BRAKE"]

    def test_adjust_ignores_unknown_ids(self, seeded_store, ledger):
        changed = ledger.adjust_quantities({"STK-BRAKE": 1, "NOPE": 5})
        assert [i.id for i in changed] == ["STK-BRAKE"]


class TestFungibleSale:

    @pytest.fixture
    def stocked(self, seeded_store, ledger):
        ledger.adjust_quantities({"STK-FUNG": 100})
        return ledger

    def test_sale_records_cash_bill(self, stocked, seeded_store):
        outcome = stocked.sell_fungible_stock(
            "STK-FUNG",
            [SaleGrade("good", 30, 10.0), SaleGrade("mixed", 10, 6.0)],
            buyer="Scrap Co",
        )

        assert outcome.notice.level == NoticeLevel.SUCCESS
        assert outcome.document_number == "CB-2024-0001"
        assert stocked.find_item("STK-FUNG").quantity == 60
        [txn] = seeded_store.stock_transactions.value
        assert txn.type == TransactionType.SCRAP_SALE
        assert txn.quantity == -40
        assert txn.price_per_unit == pytest.approx(9.0)
        assert txn.actor == "Scrap Co"
        assert txn.notes.startswith("Sold to Scrap Co.")

    def test_cash_bill_numbers_continue(self, stocked):
        stocked.sell_fungible_stock("STK-FUNG", [SaleGrade("good", 1, 1.0)], buyer="A")
        outcome = stocked.sell_fungible_stock("STK-FUNG", [SaleGrade("good", 1, 1.0)], buyer="B")
        assert outcome.document_number == "CB-2024-0002"

    def test_cannot_oversell(self, stocked):
        outcome = stocked.sell_fungible_stock("STK-FUNG", [SaleGrade("good", 101, 1.0)], buyer="A")
        assert outcome.notice.level == NoticeLevel.ERROR
        assert stocked.find_item("STK-FUNG").quantity == 100

    def test_only_fungible_items_can_be_sold(self, stocked):
        outcome = stocked.sell_fungible_stock("STK-BRAKE", [SaleGrade("good", 1, 1.0)], buyer="A")
        assert outcome.notice.level == NoticeLevel.ERROR

    def test_buyer_required(self, stocked):
        outcome = stocked.sell_fungible_stock("STK-FUNG", [SaleGrade("good", 1, 1.0)], buyer="  ")
        assert outcome.notice.message == "Buyer is required"
