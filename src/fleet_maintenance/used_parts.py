# Module: src/fleet_maintenance/used_parts.py
# Description: Disposition of salvaged (used) parts removed during repairs.
#
# A salvage batch moves awaiting -> partial -> complete as dispositions are
# recorded against it; the status is always recomputed from the sum of the
# disposition quantities. Moving parts to consolidated or revolving stock
# credits a stock item, and reversing such a disposition debits it again.

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from .models import (
    BatchStatus,
    Decision,
    DecisionType,
    Disposition,
    DispositionOutcome,
    DispositionType,
    Notice,
    NoticeLevel,
    PartCondition,
    StockItem,
    TransactionType,
    UsedPart,
    UsedPartDraft,
)
from .stock import StockLedger, new_id
from .sync import FleetStore

logger = logging.getLogger(__name__)

# Quantities are floats (weights are allowed); ignore rounding noise when comparing
EPSILON = 1e-9

REVOLVING_CODE_SUFFIX = "-R"

STOCK_CREDITING_TYPES = (
    DispositionType.MOVED_TO_REVOLVING_STOCK,
    DispositionType.MOVED_TO_CONSOLIDATED_STOCK,
)


def disposed_quantity(dispositions: Iterable[Disposition]) -> float:
    return sum(d.quantity for d in dispositions)


def remaining_quantity(batch: UsedPart) -> float:
    return batch.initial_quantity - disposed_quantity(batch.dispositions)


def batch_status(initial_quantity: float, dispositions: Iterable[Disposition]) -> BatchStatus:
    total = disposed_quantity(dispositions)
    if total >= initial_quantity - EPSILON:
        return BatchStatus.COMPLETE
    if total > 0:
        return BatchStatus.PARTIAL
    return BatchStatus.AWAITING


def revolving_code(original_code: str) -> str:
    return f"{original_code}{REVOLVING_CODE_SUFFIX}"


def revolving_code_for_name(name: str) -> str:
    """Code for a revolving item created from a part that has no stock item of its own."""
    compact = "".join(name.split())[:10].upper()
    return revolving_code(compact)


class UsedPartDispositionEngine:
    """Records, processes and reverses dispositions of salvage batches."""

    def __init__(
        self,
        store: FleetStore,
        ledger: Optional[StockLedger] = None,
        revolving_category: str = "Miscellaneous",
        now: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.now = now
        self.ledger = ledger or StockLedger(store, now=now)
        self.revolving_category = revolving_category

    # --- Batches ---

    def find_batch(self, batch_id: str) -> Optional[UsedPart]:
        return next((p for p in self.store.used_parts.value if p.id == batch_id), None)

    def list_batches(self, status: Optional[BatchStatus] = None) -> List[UsedPart]:
        return [p for p in self.store.used_parts.value if status is None or p.status == status]

    def add_batches(self, drafts: List[UsedPartDraft]) -> List[UsedPart]:
        """Register salvaged parts removed during a repair, newest first."""
        now = self.now()
        batches = [
            UsedPart(
                **{**draft.model_dump(), "date_removed": draft.date_removed or now},
                id=new_id("UP"),
                status=BatchStatus.AWAITING,
                dispositions=[],
            )
            for draft in drafts
        ]
        if batches:
            self.store.used_parts.set(lambda parts: batches + parts)
            logger.info(f"Registered {len(batches)} used part batch(es)")
        return batches

    def update_notes(self, batch_id: str, notes: Optional[str]) -> Notice:
        batch = self.find_batch(batch_id)
        if batch is None:
            return Notice(NoticeLevel.ERROR, "Used part batch not found")
        self._save(batch.model_copy(update={"notes": notes}))
        return Notice(NoticeLevel.SUCCESS, f"Updated {batch.name}")

    def delete_batch(self, batch_id: str) -> Notice:
        batch = self.find_batch(batch_id)
        if batch is None:
            return Notice(NoticeLevel.ERROR, "Used part batch not found")
        self.store.used_parts.set(lambda parts: [p for p in parts if p.id != batch_id])
        logger.info(f"Deleted used part batch {batch_id} '{batch.name}'")
        return Notice(NoticeLevel.SUCCESS, f"Deleted {batch.name}")

    def _save(self, batch: UsedPart) -> UsedPart:
        self.store.used_parts.set(lambda parts: [batch if p.id == batch.id else p for p in parts])
        return batch

    def _with_dispositions(self, batch: UsedPart, dispositions: List[Disposition]) -> UsedPart:
        return batch.model_copy(update={
            "dispositions": dispositions,
            "status": batch_status(batch.initial_quantity, dispositions),
        })

    # --- Processing ---

    def process(self, batch_id: str, decision: Decision) -> DispositionOutcome:
        """
        Dispose of some or all of a batch's remaining quantity.

        Args:
            batch_id: Id of the salvage batch.
            decision: What to do; `decision.quantity` defaults to everything remaining.

        Returns:
            DispositionOutcome with the updated batch and the new disposition. Lookup
            failures and an already complete batch return an error or warning notice
            and change nothing.

        Raises:
            ValueError: If the decision is missing fields its type requires.
        """
        batch = self.find_batch(batch_id)
        if batch is None:
            logger.warning(f"Process requested for unknown used part batch {batch_id}")
            return DispositionOutcome(Notice(NoticeLevel.ERROR, "Used part batch to process was not found"))

        remaining = remaining_quantity(batch)
        if remaining <= EPSILON:
            logger.info(f"Batch {batch_id} '{batch.name}' is already fully processed")
            return DispositionOutcome(
                Notice(NoticeLevel.WARNING, f"'{batch.name}' has already been fully processed"),
                batch=batch,
            )

        self._validate_decision(decision)

        quantity = remaining if decision.quantity is None else decision.quantity
        if quantity <= 0 or quantity > remaining + EPSILON:
            return DispositionOutcome(
                Notice(NoticeLevel.ERROR, f"Quantity must be between 0 and {remaining:g} {batch.unit}"),
                batch=batch,
            )
        # Within rounding noise of what is left: take exactly the remainder
        quantity = min(quantity, remaining)

        if decision.type == DecisionType.TO_FUNGIBLE:
            return self._to_fungible(batch, decision, quantity)
        if decision.type == DecisionType.TO_REVOLVING_STOCK:
            return self._to_revolving_stock(batch, decision, quantity)
        if decision.type == DecisionType.SELL:
            return self._sell(batch, decision, quantity)
        return self._dispose(batch, decision, quantity)

    @staticmethod
    def _validate_decision(decision: Decision) -> None:
        if decision.quantity is not None and decision.quantity <= 0:
            raise ValueError("Decision quantity must be positive")
        if decision.type == DecisionType.TO_FUNGIBLE:
            if not decision.fungible_stock_id:
                raise ValueError("to_fungible requires fungible_stock_id")
            if decision.stock_quantity is not None and decision.stock_quantity <= 0:
                raise ValueError("stock_quantity must be positive")
        elif decision.type == DecisionType.SELL:
            if not decision.sold_to or not decision.sold_to.strip():
                raise ValueError("sell requires the buyer (sold_to)")
            if decision.sale_price_per_unit is None or decision.sale_price_per_unit < 0:
                raise ValueError("sell requires a non-negative sale_price_per_unit")

    def _new_disposition(self, type: DispositionType, quantity: float, decision: Decision, **fields) -> Disposition:
        data = {
            "id": new_id("DISP"),
            "disposition_type": type,
            "quantity": quantity,
            "condition": decision.condition or PartCondition.GOOD,
            "date": self.now(),
            "notes": decision.notes,
        }
        data.update(fields)
        return Disposition(**data)

    def _append(self, batch: UsedPart, disposition: Disposition) -> UsedPart:
        updated = self._with_dispositions(batch, batch.dispositions + [disposition])
        self._save(updated)
        logger.info(
            f"Batch {batch.id} '{batch.name}': {disposition.disposition_type.value} {disposition.quantity:g} {batch.unit}, "
            f"status {updated.status.value}"
        )
        return updated

    def _to_fungible(self, batch: UsedPart, decision: Decision, quantity: float) -> DispositionOutcome:
        item = self.ledger.find_item(decision.fungible_stock_id)
        if item is None or not item.is_fungible_used_item:
            logger.warning(f"Used-item stock {decision.fungible_stock_id} not found for batch {batch.id}")
            return DispositionOutcome(Notice(NoticeLevel.ERROR, "Target used-item stock was not found"), batch=batch)

        stock_quantity = decision.stock_quantity if decision.stock_quantity is not None else quantity
        [item] = self.ledger.adjust_quantities({item.id: stock_quantity})
        self.ledger.record([self.ledger.transaction(
            item,
            TransactionType.STOCK_MOVE,
            stock_quantity,
            notes=f"Moved from used part: {batch.name} ({quantity:g} {batch.unit})",
            related_repair_order=batch.from_repair_order_no or None,
        )])

        notes = f"Moved to used-item stock: {item.name} ({stock_quantity:g} {item.unit})"
        if decision.notes:
            notes = f"{notes} - {decision.notes}"
        disposition = self._new_disposition(
            DispositionType.MOVED_TO_CONSOLIDATED_STOCK, quantity, decision,
            notes=notes,
            target_stock_item_id=item.id,
            stock_quantity=stock_quantity,
        )
        updated = self._append(batch, disposition)
        return DispositionOutcome(
            Notice(NoticeLevel.SUCCESS, f"Moved '{batch.name}' to used-item stock {item.name}"),
            batch=updated, disposition=disposition, stock_item=item,
        )

    def _resolve_revolving_item(self, batch: UsedPart, quantity: float) -> Tuple[StockItem, bool, Optional[StockItem]]:
        """
        Find the revolving twin of a batch's part and add quantity to it, creating it if needed.

        Returns:
            (revolving item after the change, whether it was created, the original stock item if known)
        """
        original = None
        if batch.original_part_id:
            original = self.ledger.find_item(batch.original_part_id)
            if original is not None and original.is_fungible_used_item:
                original = None

        if original is not None:
            code = revolving_code(original.code)
            existing = self.ledger.find_by_code(code, revolving=True)
            template = original.model_copy(update={
                "id": new_id("STK"),
                "code": code,
                "quantity": quantity,
                "is_revolving_part": True,
                "is_fungible_used_item": False,
            })
        else:
            existing = self.ledger.find_by_name(batch.name, revolving=True)
            template = StockItem(
                id=new_id("STK"),
                code=revolving_code_for_name(batch.name),
                name=batch.name,
                category=self.revolving_category,
                quantity=quantity,
                unit=batch.unit,
                min_stock=0,
                max_stock=None,
                price=0,
                storage_location="",
                supplier="",
                is_revolving_part=True,
                is_fungible_used_item=False,
            )

        if existing is not None:
            [item] = self.ledger.adjust_quantities({existing.id: quantity})
            return item, False, original

        self.store.stock.set(lambda items: items + [template])
        logger.info(f"Created revolving stock item {template.code} '{template.name}'")
        return template, True, original

    def _to_revolving_stock(self, batch: UsedPart, decision: Decision, quantity: float) -> DispositionOutcome:
        item, created, original = self._resolve_revolving_item(batch, quantity)
        self.ledger.record([self.ledger.transaction(
            item,
            TransactionType.RETURNED_USABLE,
            quantity,
            notes=f"Returned from used part: {batch.name}{'' if original is not None else ' (new item)'}",
            related_repair_order=batch.from_repair_order_no or None,
            price_per_unit=original.price if original is not None else 0.0,
        )])

        notes = f"Moved to revolving stock ({'new item' if created else 'added'})"
        if decision.notes:
            notes = f"{notes} - {decision.notes}"
        disposition = self._new_disposition(
            DispositionType.MOVED_TO_REVOLVING_STOCK, quantity, decision,
            storage_location=item.storage_location,
            notes=notes,
            target_stock_item_id=item.id,
            stock_quantity=quantity,
        )
        updated = self._append(batch, disposition)
        return DispositionOutcome(
            Notice(NoticeLevel.SUCCESS, f"Moved '{batch.name}' to revolving stock"),
            batch=updated, disposition=disposition, stock_item=item,
        )

    def _dispose(self, batch: UsedPart, decision: Decision, quantity: float) -> DispositionOutcome:
        disposition = self._new_disposition(DispositionType.DISPOSED, quantity, decision, condition=PartCondition.DAMAGED)
        updated = self._append(batch, disposition)
        return DispositionOutcome(
            Notice(NoticeLevel.INFO, f"Disposed of '{batch.name}' and recorded it in the history"),
            batch=updated, disposition=disposition,
        )

    def _sell(self, batch: UsedPart, decision: Decision, quantity: float) -> DispositionOutcome:
        disposition = self._new_disposition(
            DispositionType.SOLD, quantity, decision,
            sold_to=decision.sold_to.strip(),
            sale_price_per_unit=decision.sale_price_per_unit,
        )
        updated = self._append(batch, disposition)
        return DispositionOutcome(
            Notice(NoticeLevel.SUCCESS, f"Sold {quantity:g} {batch.unit} of '{batch.name}' to {disposition.sold_to}"),
            batch=updated, disposition=disposition,
        )

    # --- Reversal ---

    def reverse(self, batch_id: str, disposition_id: str) -> DispositionOutcome:
        """
        Remove a disposition from a batch and undo its stock credit.

        Dispositions that credited a stock item debit it again by the credited
        amount. If that item no longer exists the disposition is still removed and
        the stock is left as is. Sales and disposals have nothing to undo.
        """
        batch = self.find_batch(batch_id)
        if batch is None:
            return DispositionOutcome(Notice(NoticeLevel.ERROR, "Used part batch not found"))
        disposition = next((d for d in batch.dispositions if d.id == disposition_id), None)
        if disposition is None:
            return DispositionOutcome(Notice(NoticeLevel.ERROR, "Disposition not found"), batch=batch)

        stock_reverted = False
        item = None
        if disposition.disposition_type in STOCK_CREDITING_TYPES:
            item = self.ledger.find_item(disposition.target_stock_item_id) if disposition.target_stock_item_id else None
            if item is not None:
                amount = disposition.stock_quantity if disposition.stock_quantity is not None else disposition.quantity
                [item] = self.ledger.adjust_quantities({item.id: -amount})
                self.ledger.record([self.ledger.transaction(
                    item,
                    TransactionType.ADJUSTMENT,
                    -amount,
                    notes=f"Reversed move from used part: {batch.name}",
                    price_per_unit=0.0,
                )])
                stock_reverted = True
            else:
                logger.warning(
                    f"Stock item {disposition.target_stock_item_id} for disposition {disposition_id} of batch {batch_id} "
                    f"not found. Removing the disposition without restoring stock."
                )

        remaining = [d for d in batch.dispositions if d.id != disposition_id]
        updated = self._save(self._with_dispositions(batch, remaining))
        logger.info(f"Reversed {disposition.disposition_type.value} {disposition_id} of batch {batch_id}, status {updated.status.value}")

        message = f"Reversed '{disposition.disposition_type.value}' of '{batch.name}'"
        if stock_reverted:
            message += " and restored stock"
        return DispositionOutcome(
            Notice(NoticeLevel.SUCCESS, message),
            batch=updated, disposition=disposition, stock_item=item, stock_reverted=stock_reverted,
        )
