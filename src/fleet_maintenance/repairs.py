# Module: src/fleet_maintenance/repairs.py
# Description: Repair order numbering and status lifecycle.

import logging
import re
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from .models import (
    Notice,
    NoticeLevel,
    RepairOrder,
    RepairOrderDraft,
    RepairStatus,
)
from .stock import StockLedger, new_id
from .sync import FleetStore

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "RO"

ALLOWED_TRANSITIONS: Dict[RepairStatus, FrozenSet[RepairStatus]] = {
    RepairStatus.AWAITING_REPAIR: frozenset({RepairStatus.IN_PROGRESS, RepairStatus.CANCELLED}),
    RepairStatus.IN_PROGRESS: frozenset({RepairStatus.AWAITING_PARTS, RepairStatus.COMPLETED, RepairStatus.CANCELLED}),
    RepairStatus.AWAITING_PARTS: frozenset({RepairStatus.IN_PROGRESS, RepairStatus.CANCELLED}),
    RepairStatus.COMPLETED: frozenset(),
    RepairStatus.CANCELLED: frozenset(),
}

PENDING_STATUSES = (RepairStatus.AWAITING_REPAIR, RepairStatus.IN_PROGRESS, RepairStatus.AWAITING_PARTS)

IMMUTABLE_FIELDS = frozenset({"id", "repair_order_no", "created_at", "status"})


class RepairOrderNotFoundError(Exception):
    pass


class InvalidTransitionError(Exception):
    """Raised when a status change is not in the allowed transition list."""

    def __init__(self, order_no: str, current: RepairStatus, requested: RepairStatus):
        self.order_no = order_no
        self.current = current
        self.requested = requested
        super().__init__(f"{order_no}: cannot change status from {current.value} to {requested.value}")


class ImmutableFieldError(Exception):
    pass


def format_order_number(year: int, sequence: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{year}-{sequence:05d}"


def next_order_number(orders: Iterable[RepairOrder], year: int) -> str:
    """
    Next repair order number for the given calendar year.

    The sequence is one past the number of orders created that year, or past the
    highest sequence among them if that is larger (an earlier order was deleted),
    so a new number never collides with an existing one.
    """
    pattern = re.compile(rf"^{ORDER_NUMBER_PREFIX}-{year}-(\d+)$")
    orders_this_year = [o for o in orders if o.created_at.year == year]
    sequences = []
    for order in orders_this_year:
        match = pattern.match(order.repair_order_no)
        if match:
            sequences.append(int(match.group(1)))
    highest = max([len(orders_this_year), *sequences])
    return format_order_number(year, highest + 1)


def can_transition(current: RepairStatus, requested: RepairStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


class RepairOrderService:
    """Creates repair orders and moves them through their status lifecycle."""

    def __init__(self, store: FleetStore, ledger: Optional[StockLedger] = None,
                 now: Callable[[], datetime] = datetime.now):
        self.store = store
        self.now = now
        self.ledger = ledger or StockLedger(store, now=now)

    def get(self, order_id: str) -> RepairOrder:
        for order in self.store.repairs.value:
            if order.id == order_id or order.repair_order_no == order_id:
                return order
        raise RepairOrderNotFoundError(f"Repair order '{order_id}' not found")

    def list_orders(self, status: Optional[RepairStatus] = None) -> List[RepairOrder]:
        """Orders newest first, optionally filtered by status."""
        orders = [o for o in self.store.repairs.value if status is None or o.status == status]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def pending_count(self) -> int:
        return sum(1 for o in self.store.repairs.value if o.status in PENDING_STATUSES)

    def create(self, draft: RepairOrderDraft) -> RepairOrder:
        """Create a repair order awaiting repair, numbered within the current year."""
        now = self.now()
        order_no = next_order_number(self.store.repairs.value, now.year)
        order = RepairOrder(
            **draft.model_dump(),
            id=new_id("R"),
            repair_order_no=order_no,
            status=RepairStatus.AWAITING_REPAIR,
            created_at=now,
            updated_at=now,
            approval_date=None,
            repair_start_date=None,
            repair_end_date=None,
        )
        self.store.repairs.set(lambda orders: [order] + orders)
        logger.info(f"Created repair order {order_no} for {order.license_plate}")
        return order

    def _replace(self, updated: RepairOrder) -> RepairOrder:
        self.store.repairs.set(lambda orders: [updated if o.id == updated.id else o for o in orders])
        return updated

    def update(self, order_id: str, **changes) -> RepairOrder:
        """Edit order details. Number, id, creation time and status cannot be changed here."""
        blocked = IMMUTABLE_FIELDS.intersection(changes)
        if blocked:
            raise ImmutableFieldError(f"Fields cannot be edited: {', '.join(sorted(blocked))}")
        order = self.get(order_id)
        data = order.model_dump()
        data.update(changes)
        data["updated_at"] = self.now()
        updated = RepairOrder(**data)
        logger.info(f"Updated {order.repair_order_no}: {', '.join(sorted(changes))}")
        return self._replace(updated)

    def assign_technicians(self, order_id: str, technician_id: Optional[str],
                           assistant_ids: Optional[List[str]] = None) -> RepairOrder:
        """Assign the lead technician and assistants. Unknown technician ids raise ValueError."""
        known = {t.id for t in self.store.technicians.value}
        assistant_ids = [a for a in (assistant_ids or []) if a != technician_id]
        unknown = [t for t in [technician_id, *assistant_ids] if t and t not in known]
        if unknown:
            raise ValueError(f"Unknown technician(s): {', '.join(unknown)}")
        return self.update(order_id, assigned_technician_id=technician_id, assistant_technician_ids=assistant_ids)

    def technician_names(self, order: RepairOrder) -> str:
        ids = [order.assigned_technician_id, *order.assistant_technician_ids]
        names = [t.name for t in self.store.technicians.value if t.id in ids]
        return ", ".join(names) or order.reported_by or "unspecified"

    def transition(self, order_id: str, new_status: RepairStatus, at: Optional[datetime] = None) -> RepairOrder:
        """
        Move an order to a new status.

        Entering in_progress stamps the approval and start dates the first time;
        entering completed stamps the end date and withdraws the order's
        internal-stock parts. Transitions outside ALLOWED_TRANSITIONS raise
        InvalidTransitionError and leave the order untouched.
        """
        order = self.get(order_id)
        if not can_transition(order.status, new_status):
            logger.warning(f"Rejected status change of {order.repair_order_no}: {order.status.value} -> {new_status.value}")
            raise InvalidTransitionError(order.repair_order_no, order.status, new_status)

        now = self.now()
        timestamp = at or now
        changes = {"status": new_status, "updated_at": now}
        if new_status == RepairStatus.IN_PROGRESS:
            if order.approval_date is None:
                changes["approval_date"] = timestamp
            if order.repair_start_date is None:
                changes["repair_start_date"] = timestamp
        elif new_status == RepairStatus.COMPLETED:
            changes["repair_end_date"] = timestamp

        updated = order.model_copy(update=changes)
        self._replace(updated)
        logger.info(f"{order.repair_order_no}: {order.status.value} -> {new_status.value}")

        if new_status == RepairStatus.COMPLETED:
            self.ledger.withdraw_for_repair(updated, actor=self.technician_names(updated))
        return updated

    def delete(self, order_id: str) -> Notice:
        try:
            order = self.get(order_id)
        except RepairOrderNotFoundError:
            return Notice(NoticeLevel.ERROR, f"Repair order '{order_id}' not found")
        self.store.repairs.set(lambda orders: [o for o in orders if o.id != order.id])
        logger.info(f"Deleted repair order {order.repair_order_no}")
        return Notice(NoticeLevel.SUCCESS, f"Deleted repair order {order.repair_order_no}")
