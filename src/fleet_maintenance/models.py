# Module: src/fleet_maintenance/models.py
# Description: Defines data structures used throughout the application.

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class RepairStatus(str, Enum):
    """Lifecycle states of a repair order."""
    AWAITING_REPAIR = "awaiting_repair"
    IN_PROGRESS = "in_progress"
    AWAITING_PARTS = "awaiting_parts"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class Priority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"

class DispatchType(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"

class PartSource(str, Enum):
    """Where a part consumed by a repair came from."""
    INTERNAL_STOCK = "internal_stock"
    EXTERNAL_VENDOR = "external_vendor"

class TechnicianRole(str, Enum):
    TECHNICIAN = "technician"
    ASSISTANT = "assistant"

class TechnicianStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    ON_LEAVE = "on_leave"

class StockStatus(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    OUT_OF_STOCK = "out_of_stock"
    OVERSTOCK = "overstock"

class TransactionType(str, Enum):
    """Kinds of stock ledger entries."""
    RECEIVED = "received"
    WITHDRAWN = "withdrawn"
    ADJUSTMENT = "adjustment"
    RETURNED_TO_VENDOR = "returned_to_vendor"
    RETURNED_USABLE = "returned_usable"
    STOCK_MOVE = "stock_move"
    SCRAP_SALE = "scrap_sale"

class BatchStatus(str, Enum):
    """Aggregate status of a salvage batch, derived from its dispositions."""
    AWAITING = "awaiting"
    PARTIAL = "partial"
    COMPLETE = "complete"

class DispositionType(str, Enum):
    MOVED_TO_REVOLVING_STOCK = "moved_to_revolving_stock"
    MOVED_TO_CONSOLIDATED_STOCK = "moved_to_consolidated_stock"
    SOLD = "sold"
    DISPOSED = "disposed"

class PartCondition(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    DAMAGED = "damaged"

class DecisionType(str, Enum):
    """What to do with the remaining quantity of a salvage batch."""
    TO_FUNGIBLE = "to_fungible"
    TO_REVOLVING_STOCK = "to_revolving_stock"
    DISPOSE = "dispose"
    SELL = "sell"

class NoticeLevel(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# --- Persisted entities ---

class PartRequisitionItem(BaseModel):
    """A part consumed by a repair order."""
    part_id: str
    name: str
    code: Optional[str] = None
    quantity: float = Field(..., gt=0)
    unit: str = "pcs"
    unit_price: float = Field(0.0, ge=0)
    source: PartSource = PartSource.INTERNAL_STOCK
    supplier_name: Optional[str] = None


class RepairOrderDraft(BaseModel):
    """Caller-supplied fields of a new repair order."""
    license_plate: str = Field(..., min_length=1)
    vehicle_type: str = ""
    reported_by: str = ""
    problem_description: str = ""
    repair_category: str = ""
    priority: Priority = Priority.NORMAL
    dispatch_type: DispatchType = DispatchType.INTERNAL
    assigned_technician_id: Optional[str] = None
    assistant_technician_ids: List[str] = Field(default_factory=list)
    external_technician_name: Optional[str] = None
    parts: List[PartRequisitionItem] = Field(default_factory=list)
    repair_cost: float = Field(0.0, ge=0)
    parts_vat: float = Field(0.0, ge=0)
    labor_vat: float = Field(0.0, ge=0)
    current_mileage: Optional[float] = None
    notes: Optional[str] = None

    @field_validator('license_plate')
    @classmethod
    def strip_plate(cls, v):
        """Plates are compared without surrounding whitespace"""
        v = v.strip()
        if not v:
            raise ValueError("License plate is required")
        return v


class RepairOrder(RepairOrderDraft):
    id: str
    repair_order_no: str
    status: RepairStatus = RepairStatus.AWAITING_REPAIR
    created_at: datetime
    updated_at: datetime
    approval_date: Optional[datetime] = None
    repair_start_date: Optional[datetime] = None
    repair_end_date: Optional[datetime] = None

    @property
    def parts_cost(self) -> float:
        return sum(p.quantity * p.unit_price for p in self.parts)

    @property
    def grand_total(self) -> float:
        return self.parts_cost + self.parts_vat + self.repair_cost + self.labor_vat


class Technician(BaseModel):
    id: str
    name: str
    role: TechnicianRole = TechnicianRole.TECHNICIAN
    skills: List[str] = Field(default_factory=list)
    status: TechnicianStatus = TechnicianStatus.AVAILABLE


class StockItem(BaseModel):
    id: str
    code: str
    name: str
    category: str = ""
    quantity: float = 0.0
    unit: str = "pcs"
    min_stock: float = 0.0 # Reorder threshold
    max_stock: Optional[float] = None
    price: float = 0.0
    storage_location: str = ""
    supplier: str = ""
    is_revolving_part: bool = False
    is_fungible_used_item: bool = False


class StockTransaction(BaseModel):
    """Append-only stock ledger entry. `quantity` is the signed delta."""
    id: str
    stock_item_id: str
    stock_item_name: str
    type: TransactionType
    quantity: float
    transaction_date: datetime
    actor: str
    notes: Optional[str] = None
    related_repair_order: Optional[str] = None
    price_per_unit: float = 0.0
    document_number: Optional[str] = None


class Disposition(BaseModel):
    """A recorded decision about some quantity of a salvage batch."""
    id: str
    disposition_type: DispositionType
    quantity: float = Field(..., gt=0)
    condition: PartCondition = PartCondition.GOOD
    date: datetime
    sold_to: Optional[str] = None
    sale_price_per_unit: Optional[float] = None
    storage_location: Optional[str] = None
    notes: Optional[str] = None
    target_stock_item_id: Optional[str] = None # Stock item credited by this disposition
    stock_quantity: Optional[float] = None # Amount credited to target_stock_item_id


class UsedPartDraft(BaseModel):
    """A salvaged part removed during a repair, before it gets an id."""
    original_part_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    unit: str = "pcs"
    from_repair_id: Optional[str] = None
    from_repair_order_no: str = ""
    from_license_plate: str = ""
    date_removed: Optional[datetime] = None
    initial_quantity: float = Field(..., gt=0)
    notes: Optional[str] = None


class UsedPart(UsedPartDraft):
    id: str
    status: BatchStatus = BatchStatus.AWAITING
    dispositions: List[Disposition] = Field(default_factory=list)


# --- Operation inputs and results ---

@dataclass
class Notice:
    """User-facing outcome message of an operation."""
    level: NoticeLevel
    message: str

    @property
    def ok(self) -> bool:
        return self.level in (NoticeLevel.SUCCESS, NoticeLevel.INFO)


@dataclass
class Decision:
    """Disposition request for a salvage batch."""
    type: DecisionType
    quantity: Optional[float] = None # Defaults to everything still remaining
    fungible_stock_id: Optional[str] = None
    stock_quantity: Optional[float] = None # Amount credited to the fungible item, defaults to quantity
    sold_to: Optional[str] = None
    sale_price_per_unit: Optional[float] = None
    condition: Optional[PartCondition] = None
    notes: Optional[str] = None


@dataclass
class DispositionOutcome:
    """Result of processing or reversing a disposition."""
    notice: Notice
    batch: Optional[UsedPart] = None
    disposition: Optional[Disposition] = None
    stock_item: Optional[StockItem] = None
    stock_reverted: bool = False


@dataclass
class StockReturn:
    """One used-stock return line: put `quantity` back on `stock_item_id`."""
    stock_item_id: str
    quantity: float
    repair_order_no: str


@dataclass
class SaleGrade:
    condition: str
    quantity: float
    price: float


@dataclass
class StockOutcome:
    notice: Notice
    transactions: List[StockTransaction] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    document_number: Optional[str] = None
