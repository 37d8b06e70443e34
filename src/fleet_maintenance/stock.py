# Module: src/fleet_maintenance/stock.py
# Description: Stock items and the append-only stock transaction ledger.

import logging
import re
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .models import (
    Notice,
    NoticeLevel,
    PartSource,
    RepairOrder,
    SaleGrade,
    StockItem,
    StockOutcome,
    StockReturn,
    StockStatus,
    StockTransaction,
    TransactionType,
)
from .sync import FleetStore

logger = logging.getLogger(__name__)

CASH_BILL_PREFIX = "CB"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def stock_status(item: StockItem) -> StockStatus:
    if item.quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if item.quantity <= item.min_stock:
        return StockStatus.LOW
    if item.max_stock is not None and item.quantity > item.max_stock:
        return StockStatus.OVERSTOCK
    return StockStatus.NORMAL


class StockLedger:
    """
    Reads and mutates the stock collection and appends to the transaction log.

    Transactions are never edited or removed here; corrections are new entries.
    """

    def __init__(self, store: FleetStore, actor: str = "system", now: Callable[[], datetime] = datetime.now):
        self.store = store
        self.actor = actor
        self.now = now

    # --- Lookups ---

    def find_item(self, item_id: str) -> Optional[StockItem]:
        return next((s for s in self.store.stock.value if s.id == item_id), None)

    def find_by_code(self, code: str, revolving: Optional[bool] = None) -> Optional[StockItem]:
        for item in self.store.stock.value:
            if item.code == code and (revolving is None or item.is_revolving_part == revolving):
                return item
        return None

    def find_by_name(self, name: str, revolving: Optional[bool] = None) -> Optional[StockItem]:
        for item in self.store.stock.value:
            if item.name == name and (revolving is None or item.is_revolving_part == revolving):
                return item
        return None

    def low_stock_items(self) -> List[StockItem]:
        """Items at or below their reorder threshold; bulk used-item stock is not reordered."""
        return [
            s for s in self.store.stock.value
            if not s.is_fungible_used_item and s.quantity <= s.min_stock
        ]

    # --- Mutations ---

    def add_item(self, item: StockItem) -> StockItem:
        """Add a stock item. Raises ValueError if the code is already used."""
        if self.find_by_code(item.code) is not None:
            raise ValueError(f"Stock code '{item.code}' already exists")
        self.store.stock.set(lambda items: items + [item])
        logger.info(f"Added stock item {item.code} '{item.name}' ({item.quantity} {item.unit})")
        return item

    def adjust_quantities(self, deltas: Dict[str, float]) -> List[StockItem]:
        """Apply quantity deltas keyed by stock item id. Unknown ids are ignored."""
        changed: List[StockItem] = []

        def apply(items: List[StockItem]) -> List[StockItem]:
            result = []
            for item in items:
                if item.id in deltas:
                    item = item.model_copy(update={"quantity": item.quantity + deltas[item.id]})
                    changed.append(item)
                result.append(item)
            return result

        self.store.stock.set(apply)
        return changed

    def transaction(
        self,
        item: StockItem,
        type: TransactionType,
        quantity: float,
        notes: Optional[str] = None,
        related_repair_order: Optional[str] = None,
        price_per_unit: float = 0.0,
        actor: Optional[str] = None,
        document_number: Optional[str] = None,
    ) -> StockTransaction:
        """Build (but do not record) a ledger entry for item."""
        return StockTransaction(
            id=new_id("TXN"),
            stock_item_id=item.id,
            stock_item_name=item.name,
            type=type,
            quantity=quantity,
            transaction_date=self.now(),
            actor=actor or self.actor,
            notes=notes,
            related_repair_order=related_repair_order,
            price_per_unit=price_per_unit,
            document_number=document_number,
        )

    def record(self, transactions: List[StockTransaction]) -> None:
        """Prepend transactions to the ledger, newest first."""
        if not transactions:
            return
        self.store.stock_transactions.set(lambda existing: list(transactions) + existing)

    # --- Operations ---

    def return_used_stock(self, updates: List[StockReturn]) -> StockOutcome:
        """
        Put used parts returned from repairs back on their stock items.

        All quantity changes are applied in one write, then all transactions are
        prepended in one write. Returned used parts carry no unit cost.
        """
        deltas: Dict[str, float] = {}
        transactions: List[StockTransaction] = []
        skipped: List[str] = []

        for update in updates:
            item = self.find_item(update.stock_item_id)
            if item is None:
                logger.warning(f"Stock item {update.stock_item_id} not found for return from {update.repair_order_no}. Skipping.")
                skipped.append(update.stock_item_id)
                continue
            deltas[item.id] = deltas.get(item.id, 0.0) + update.quantity
            transactions.append(self.transaction(
                item,
                TransactionType.RECEIVED,
                update.quantity,
                notes=f"Used part returned from repair order {update.repair_order_no}",
                related_repair_order=update.repair_order_no,
                price_per_unit=0.0,
            ))

        if deltas:
            self.adjust_quantities(deltas)
        self.record(transactions)

        applied = len(transactions)
        logger.info(f"Returned used stock: {applied} applied, {len(skipped)} skipped")
        if applied == 0:
            return StockOutcome(Notice(NoticeLevel.WARNING, "No matching stock items to update"), skipped=skipped)
        return StockOutcome(
            Notice(NoticeLevel.SUCCESS, f"Updated used-item stock for {applied} entries"),
            transactions=transactions,
            skipped=skipped,
        )

    def withdraw_for_repair(self, order: RepairOrder, actor: Optional[str] = None) -> StockOutcome:
        """
        Deduct the internal-stock parts of a repair order from stock.

        A part already withdrawn for this order (a withdrawn transaction for the
        same item and order exists) is not withdrawn again.
        """
        already_withdrawn = {
            t.stock_item_id for t in self.store.stock_transactions.value
            if t.related_repair_order == order.repair_order_no and t.type == TransactionType.WITHDRAWN
        }
        deltas: Dict[str, float] = {}
        transactions: List[StockTransaction] = []
        skipped: List[str] = []

        for part in order.parts:
            if part.source != PartSource.INTERNAL_STOCK or part.part_id in already_withdrawn:
                continue
            item = self.find_item(part.part_id)
            if item is None:
                logger.warning(f"Part {part.part_id} '{part.name}' of {order.repair_order_no} is not in stock. Skipping withdrawal.")
                skipped.append(part.part_id)
                continue
            deltas[item.id] = deltas.get(item.id, 0.0) - part.quantity
            transactions.append(self.transaction(
                item,
                TransactionType.WITHDRAWN,
                -part.quantity,
                notes=f"Used for repair order {order.repair_order_no}",
                related_repair_order=order.repair_order_no,
                price_per_unit=part.unit_price,
                actor=actor,
            ))

        if deltas:
            self.adjust_quantities(deltas)
        self.record(transactions)

        if not transactions:
            return StockOutcome(Notice(NoticeLevel.INFO, "No stock to withdraw"), skipped=skipped)
        logger.info(f"Withdrew {len(deltas)} stock item(s) for {order.repair_order_no}")
        return StockOutcome(
            Notice(NoticeLevel.INFO, f"Deducted stock for {len(deltas)} item(s)"),
            transactions=transactions,
            skipped=skipped,
        )

    def next_cash_bill_number(self, year: int) -> str:
        """Next cash bill number of the year, continuing from the highest one issued."""
        pattern = re.compile(rf"^{CASH_BILL_PREFIX}-{year}-(\d+)$")
        last_number = 0
        for t in self.store.stock_transactions.value:
            match = pattern.match(t.document_number or "")
            if match:
                last_number = max(last_number, int(match.group(1)))
        return f"{CASH_BILL_PREFIX}-{year}-{last_number + 1:04d}"

    def sell_fungible_stock(self, item_id: str, grades: List[SaleGrade], buyer: str, notes: str = "") -> StockOutcome:
        """Sell bulk used-item stock by condition grade and issue a cash bill."""
        item = self.find_item(item_id)
        if item is None:
            return StockOutcome(Notice(NoticeLevel.ERROR, f"Stock item {item_id} not found"))
        if not item.is_fungible_used_item:
            return StockOutcome(Notice(NoticeLevel.ERROR, f"'{item.name}' is not a used-item stock"))
        if not buyer.strip():
            return StockOutcome(Notice(NoticeLevel.ERROR, "Buyer is required"))

        total_quantity = sum(g.quantity for g in grades)
        if total_quantity <= 0 or any(g.quantity < 0 or g.price < 0 for g in grades):
            return StockOutcome(Notice(NoticeLevel.ERROR, "Sale quantities and prices must be positive"))
        if total_quantity > item.quantity:
            return StockOutcome(Notice(
                NoticeLevel.ERROR,
                f"Cannot sell {total_quantity:g} {item.unit} of '{item.name}', only {item.quantity:g} on hand",
            ))

        total_value = sum(g.quantity * g.price for g in grades)
        average_price = total_value / total_quantity
        document_number = self.next_cash_bill_number(self.now().year)
        grade_details = "; ".join(f"{g.condition}: {g.quantity:g} {item.unit} x {g.price:,.2f}" for g in grades)
        detailed_notes = f"Sold to {buyer}. Details: {grade_details}. {notes}".strip()

        self.adjust_quantities({item.id: -total_quantity})
        txn = self.transaction(
            item,
            TransactionType.SCRAP_SALE,
            -total_quantity,
            notes=detailed_notes,
            price_per_unit=average_price,
            actor=buyer,
            document_number=document_number,
        )
        self.record([txn])
        logger.info(f"Sold {total_quantity:g} {item.unit} of '{item.name}' to {buyer} on {document_number}")
        return StockOutcome(
            Notice(NoticeLevel.SUCCESS, f"Recorded sale of {total_quantity:g} {item.unit} of {item.name}"),
            transactions=[txn],
            document_number=document_number,
        )
