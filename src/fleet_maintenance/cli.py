import time
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from .config import AppConfig, ConfigError
from .models import (
    BatchStatus,
    Decision,
    DecisionType,
    Notice,
    NoticeLevel,
    PartCondition,
    PartRequisitionItem,
    Priority,
    RepairOrderDraft,
    RepairStatus,
    StockItem,
    StockReturn,
    TechnicianRole,
    TechnicianStatus,
    UsedPartDraft,
)
from .poller import StorePoller
from .repairs import (
    ImmutableFieldError,
    InvalidTransitionError,
    RepairOrderNotFoundError,
    RepairOrderService,
)
from .stock import StockLedger, new_id, stock_status
from .store import StoreError
from .sync import FleetStore, open_store
from .technicians import TechnicianService
from .used_parts import UsedPartDispositionEngine, remaining_quantity

app = typer.Typer(help="Fleet maintenance: repair orders, used parts and stock")
repairs_app = typer.Typer(help="Create and move repair orders through their lifecycle.")
stock_app = typer.Typer(help="Stock items and the stock ledger.")
used_parts_app = typer.Typer(help="Salvaged parts awaiting a decision.")
technicians_app = typer.Typer(help="Workshop technicians.")
sync_app = typer.Typer(help="Shared store synchronization.")
app.add_typer(repairs_app, name="repairs")
app.add_typer(stock_app, name="stock")
app.add_typer(used_parts_app, name="used-parts")
app.add_typer(technicians_app, name="technicians")
app.add_typer(sync_app, name="sync")

console = Console()

NOTICE_STYLES = {
    NoticeLevel.SUCCESS: "bold green",
    NoticeLevel.INFO: "bold blue",
    NoticeLevel.WARNING: "bold yellow",
    NoticeLevel.ERROR: "bold red",
}


@contextmanager
def cli_errors():
    """Print known errors in red and exit with code 1."""
    try:
        yield
    except ConfigError as e:
        console.print(f"[bold red]Configuration Error:[/bold red] {e}")
        raise typer.Exit(code=1)
    except StoreError as e:
        console.print(f"[bold red]Store Error:[/bold red] {e}")
        raise typer.Exit(code=1)
    except InvalidTransitionError as e:
        console.print(f"[bold red]Status change rejected:[/bold red] {e}")
        raise typer.Exit(code=1)
    except (RepairOrderNotFoundError, ImmutableFieldError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)


def _open_store() -> Tuple[AppConfig, FleetStore]:
    config = AppConfig.load()
    return config, open_store(config)


def print_notice(notice: Notice) -> None:
    """Print an operation outcome. Error notices exit with code 1."""
    style = NOTICE_STYLES[notice.level]
    console.print(f"[{style}]{notice.level.value.capitalize()}:[/{style}] {notice.message}")
    if notice.level == NoticeLevel.ERROR:
        raise typer.Exit(code=1)


def parse_quantity_pairs(values: List[str]) -> List[Tuple[str, float]]:
    """Parses 'IDENTIFIER:QUANTITY' strings into (identifier, quantity) pairs."""
    pairs: List[Tuple[str, float]] = []
    for value in values:
        if ":" not in value:
            console.print(f"[bold red]Error:[/bold red] Invalid format '{value}'. Expected format: IDENTIFIER:QUANTITY")
            raise typer.Exit(code=1)
        identifier, quantity_str = value.rsplit(":", 1)
        try:
            quantity = float(quantity_str)
        except ValueError:
            console.print(f"[bold red]Error:[/bold red] Invalid quantity for '{identifier}'. '{quantity_str}' is not a valid number.")
            raise typer.Exit(code=1)
        if quantity <= 0:
            console.print(f"[bold red]Error:[/bold red] Quantity for '{identifier}' must be positive.")
            raise typer.Exit(code=1)
        pairs.append((identifier.strip(), quantity))
    return pairs


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _resolve_stock_item(ledger: StockLedger, identifier: str) -> StockItem:
    item = ledger.find_item(identifier) or ledger.find_by_code(identifier)
    if item is None:
        raise ValueError(f"Stock item '{identifier}' not found")
    return item


# --- repairs ---

@repairs_app.command("create")
def repairs_create(
    plate: Annotated[str, typer.Option("--plate", help="License plate of the vehicle.")],
    problem: Annotated[str, typer.Option("--problem", help="Problem description.")] = "",
    vehicle_type: Annotated[str, typer.Option("--vehicle-type")] = "",
    reported_by: Annotated[str, typer.Option("--reported-by")] = "",
    category: Annotated[str, typer.Option("--category", help="Repair category.")] = "",
    priority: Annotated[Priority, typer.Option("--priority")] = Priority.NORMAL,
    part: Annotated[Optional[List[str]], typer.Option("--part", help="Stock part used, as STOCK_ID_OR_CODE:QUANTITY. Repeatable.")] = None,
    repair_cost: Annotated[float, typer.Option("--repair-cost", help="Labour cost.")] = 0.0,
):
    """Open a new repair order."""
    with cli_errors():
        pairs = parse_quantity_pairs(part or [])
        config, store = _open_store()
        ledger = StockLedger(store, actor=config.actor)
        parts = []
        for identifier, quantity in pairs:
            item = _resolve_stock_item(ledger, identifier)
            parts.append(PartRequisitionItem(
                part_id=item.id, name=item.name, code=item.code, quantity=quantity,
                unit=item.unit, unit_price=item.price,
            ))
        draft = RepairOrderDraft(
            license_plate=plate,
            vehicle_type=vehicle_type,
            reported_by=reported_by,
            problem_description=problem,
            repair_category=category,
            priority=priority,
            parts=parts,
            repair_cost=repair_cost,
        )
        order = RepairOrderService(store, ledger).create(draft)
        store.close()
    console.print(f"[bold green]Created[/bold green] {order.repair_order_no} for {order.license_plate} (id {order.id})")


@repairs_app.command("list")
def repairs_list(
    status: Annotated[Optional[RepairStatus], typer.Option("--status", help="Only orders with this status.")] = None,
):
    """List repair orders, newest first."""
    with cli_errors():
        _, store = _open_store()
        service = RepairOrderService(store)
        orders = service.list_orders(status)
        pending = service.pending_count()
        store.close()

    if not orders:
        console.print("[yellow]No repair orders found.[/yellow]")
        return
    table = Table(title="Repair Orders", show_header=True, header_style="bold magenta")
    table.add_column("Order No")
    table.add_column("Plate")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Problem", style="dim", width=30)
    table.add_column("Created")
    table.add_column("Grand Total", justify="right")
    for order in orders:
        table.add_row(
            order.repair_order_no,
            order.license_plate,
            order.status.value,
            order.priority.value,
            order.problem_description,
            _format_date(order.created_at),
            f"{order.grand_total:,.2f}",
        )
    console.print(table)
    console.print(f"{pending} order(s) pending")


@repairs_app.command("status")
def repairs_status(
    order: Annotated[str, typer.Argument(help="Repair order id or number.")],
    new_status: Annotated[RepairStatus, typer.Argument(help="Status to move the order to.")],
):
    """Move a repair order to a new status."""
    with cli_errors():
        config, store = _open_store()
        updated = RepairOrderService(store, StockLedger(store, actor=config.actor)).transition(order, new_status)
        store.close()
    console.print(f"[bold green]{updated.repair_order_no}[/bold green] is now {updated.status.value}")


@repairs_app.command("assign")
def repairs_assign(
    order: Annotated[str, typer.Argument(help="Repair order id or number.")],
    technician: Annotated[Optional[str], typer.Option("--technician", help="Lead technician id.")] = None,
    assistant: Annotated[Optional[List[str]], typer.Option("--assistant", help="Assistant technician id. Repeatable.")] = None,
):
    """Assign technicians to a repair order."""
    with cli_errors():
        _, store = _open_store()
        service = RepairOrderService(store)
        updated = service.assign_technicians(order, technician, assistant or [])
        names = service.technician_names(updated)
        store.close()
    console.print(f"[bold green]{updated.repair_order_no}[/bold green] assigned to {names}")


@repairs_app.command("delete")
def repairs_delete(order: Annotated[str, typer.Argument(help="Repair order id or number.")]):
    """Delete a repair order."""
    with cli_errors():
        _, store = _open_store()
        notice = RepairOrderService(store).delete(order)
        store.close()
    print_notice(notice)


# --- stock ---

@stock_app.command("list")
def stock_list(
    low: Annotated[bool, typer.Option("--low", help="Only items at or below their reorder threshold.")] = False,
):
    """List stock items."""
    with cli_errors():
        _, store = _open_store()
        ledger = StockLedger(store)
        items = ledger.low_stock_items() if low else store.stock.value
        store.close()

    if not items:
        console.print("[yellow]No stock items found.[/yellow]")
        return
    table = Table(title="Stock", show_header=True, header_style="bold cyan")
    table.add_column("Code")
    table.add_column("Name", style="dim", width=30)
    table.add_column("Category")
    table.add_column("Quantity", justify="right")
    table.add_column("Unit")
    table.add_column("Price", justify="right")
    table.add_column("Status")
    table.add_column("Kind")
    for item in items:
        kind = "used-item" if item.is_fungible_used_item else "revolving" if item.is_revolving_part else ""
        table.add_row(
            item.code,
            item.name,
            item.category,
            f"{item.quantity:g}",
            item.unit,
            f"{item.price:,.2f}",
            stock_status(item).value,
            kind,
        )
    console.print(table)


@stock_app.command("add")
def stock_add(
    code: Annotated[str, typer.Option("--code")],
    name: Annotated[str, typer.Option("--name")],
    quantity: Annotated[float, typer.Option("--quantity")] = 0.0,
    unit: Annotated[str, typer.Option("--unit")] = "pcs",
    category: Annotated[str, typer.Option("--category")] = "",
    min_stock: Annotated[float, typer.Option("--min-stock")] = 0.0,
    price: Annotated[float, typer.Option("--price")] = 0.0,
    location: Annotated[str, typer.Option("--location", help="Storage location.")] = "",
    fungible: Annotated[bool, typer.Option("--fungible", help="Bulk used-item stock (e.g. scrap metal).")] = False,
):
    """Add a stock item."""
    with cli_errors():
        config, store = _open_store()
        item = StockLedger(store, actor=config.actor).add_item(StockItem(
            id=new_id("STK"),
            code=code,
            name=name,
            category=category,
            quantity=quantity,
            unit=unit,
            min_stock=min_stock,
            price=price,
            storage_location=location,
            is_fungible_used_item=fungible,
        ))
        store.close()
    console.print(f"[bold green]Added[/bold green] {item.code} '{item.name}' (id {item.id})")


@stock_app.command("return")
def stock_return(
    repair_order_no: Annotated[str, typer.Argument(help="Repair order the used parts came from.")],
    items: Annotated[List[str], typer.Argument(help="Returned stock as STOCK_ID_OR_CODE:QUANTITY.")],
):
    """Put used parts returned from a repair back on stock."""
    with cli_errors():
        pairs = parse_quantity_pairs(items)
        config, store = _open_store()
        ledger = StockLedger(store, actor=config.actor)
        updates = []
        for identifier, quantity in pairs:
            item = ledger.find_item(identifier) or ledger.find_by_code(identifier)
            updates.append(StockReturn(item.id if item else identifier, quantity, repair_order_no))
        outcome = ledger.return_used_stock(updates)
        store.close()
    for skipped in outcome.skipped:
        console.print(f"[yellow]Skipped unknown stock item {skipped}[/yellow]")
    print_notice(outcome.notice)


# --- used parts ---

@used_parts_app.command("list")
def used_parts_list(
    status: Annotated[Optional[BatchStatus], typer.Option("--status")] = None,
):
    """List salvage batches."""
    with cli_errors():
        _, store = _open_store()
        batches = UsedPartDispositionEngine(store).list_batches(status)
        store.close()

    if not batches:
        console.print("[yellow]No used parts found.[/yellow]")
        return
    table = Table(title="Used Parts", show_header=True, header_style="bold magenta")
    table.add_column("Id")
    table.add_column("Name", style="dim", width=30)
    table.add_column("From Order")
    table.add_column("Initial", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Status")
    table.add_column("Dispositions")
    for batch in batches:
        table.add_row(
            batch.id,
            batch.name,
            batch.from_repair_order_no,
            f"{batch.initial_quantity:g} {batch.unit}",
            f"{remaining_quantity(batch):g}",
            batch.status.value,
            ", ".join(f"{d.id} {d.disposition_type.value} {d.quantity:g}" for d in batch.dispositions),
        )
    console.print(table)


@used_parts_app.command("add")
def used_parts_add(
    name: Annotated[str, typer.Option("--name")],
    quantity: Annotated[float, typer.Option("--quantity")],
    unit: Annotated[str, typer.Option("--unit")] = "pcs",
    order: Annotated[Optional[str], typer.Option("--order", help="Repair order id or number the part was removed in.")] = None,
    original_part: Annotated[Optional[str], typer.Option("--original-part", help="Stock id or code of the part.")] = None,
    notes: Annotated[Optional[str], typer.Option("--notes")] = None,
):
    """Register a salvaged part removed during a repair."""
    with cli_errors():
        config, store = _open_store()
        ledger = StockLedger(store, actor=config.actor)
        draft = {"name": name, "initial_quantity": quantity, "unit": unit, "notes": notes}
        if order:
            repair = RepairOrderService(store, ledger).get(order)
            draft.update(
                from_repair_id=repair.id,
                from_repair_order_no=repair.repair_order_no,
                from_license_plate=repair.license_plate,
            )
        if original_part:
            draft["original_part_id"] = _resolve_stock_item(ledger, original_part).id
        [batch] = UsedPartDispositionEngine(store, ledger).add_batches([UsedPartDraft(**draft)])
        store.close()
    console.print(f"[bold green]Registered[/bold green] {batch.name} ({batch.initial_quantity:g} {batch.unit}) as {batch.id}")


@used_parts_app.command("process")
def used_parts_process(
    batch_id: Annotated[str, typer.Argument(help="Used part batch id.")],
    decision: Annotated[DecisionType, typer.Argument(help="What to do with the batch.")],
    quantity: Annotated[Optional[float], typer.Option("--quantity", help="Defaults to everything remaining.")] = None,
    fungible_id: Annotated[Optional[str], typer.Option("--fungible-id", help="Used-item stock id or code (to_fungible).")] = None,
    stock_quantity: Annotated[Optional[float], typer.Option("--stock-quantity", help="Amount credited to the used-item stock (to_fungible).")] = None,
    sold_to: Annotated[Optional[str], typer.Option("--sold-to", help="Buyer (sell).")] = None,
    price: Annotated[Optional[float], typer.Option("--price", help="Sale price per unit (sell).")] = None,
    condition: Annotated[Optional[PartCondition], typer.Option("--condition")] = None,
    notes: Annotated[Optional[str], typer.Option("--notes")] = None,
):
    """Decide what happens to a salvage batch."""
    with cli_errors():
        config, store = _open_store()
        ledger = StockLedger(store, actor=config.actor)
        if fungible_id:
            fungible = ledger.find_item(fungible_id) or ledger.find_by_code(fungible_id)
            fungible_id = fungible.id if fungible else fungible_id
        engine = UsedPartDispositionEngine(store, ledger, revolving_category=config.revolving_category)
        outcome = engine.process(batch_id, Decision(
            type=decision,
            quantity=quantity,
            fungible_stock_id=fungible_id,
            stock_quantity=stock_quantity,
            sold_to=sold_to,
            sale_price_per_unit=price,
            condition=condition,
            notes=notes,
        ))
        store.close()
    print_notice(outcome.notice)
    if outcome.batch is not None:
        console.print(f"{outcome.batch.name}: {outcome.batch.status.value}, {remaining_quantity(outcome.batch):g} {outcome.batch.unit} remaining")


@used_parts_app.command("reverse")
def used_parts_reverse(
    batch_id: Annotated[str, typer.Argument(help="Used part batch id.")],
    disposition_id: Annotated[str, typer.Argument(help="Disposition id to reverse.")],
):
    """Undo a disposition and restore any stock it added."""
    with cli_errors():
        config, store = _open_store()
        engine = UsedPartDispositionEngine(store, StockLedger(store, actor=config.actor))
        outcome = engine.reverse(batch_id, disposition_id)
        store.close()
    print_notice(outcome.notice)


# --- technicians ---

@technicians_app.command("add")
def technicians_add(
    name: Annotated[str, typer.Option("--name")],
    role: Annotated[TechnicianRole, typer.Option("--role")] = TechnicianRole.TECHNICIAN,
    skill: Annotated[Optional[List[str]], typer.Option("--skill", help="Skill, e.g. brakes. Repeatable.")] = None,
):
    """Add a technician that repair orders can be assigned to."""
    with cli_errors():
        _, store = _open_store()
        technician = TechnicianService(store).add(name, role, skill or [])
        store.close()
    console.print(f"[bold green]Added[/bold green] {technician.role.value} {technician.name} (id {technician.id})")


@technicians_app.command("list")
def technicians_list(
    status: Annotated[Optional[TechnicianStatus], typer.Option("--status")] = None,
):
    """List technicians."""
    with cli_errors():
        _, store = _open_store()
        technicians = TechnicianService(store).list_technicians(status)
        store.close()

    if not technicians:
        console.print("[yellow]No technicians found.[/yellow]")
        return
    table = Table(title="Technicians", show_header=True, header_style="bold cyan")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("Skills", style="dim")
    for technician in technicians:
        table.add_row(
            technician.id,
            technician.name,
            technician.role.value,
            technician.status.value,
            ", ".join(technician.skills),
        )
    console.print(table)


@technicians_app.command("status")
def technicians_status(
    technician_id: Annotated[str, typer.Argument(help="Technician id.")],
    status: Annotated[TechnicianStatus, typer.Argument(help="New availability.")],
):
    """Set a technician's availability."""
    with cli_errors():
        _, store = _open_store()
        notice = TechnicianService(store).set_status(technician_id, status)
        store.close()
    print_notice(notice)


# --- sync ---

@sync_app.command("watch")
def sync_watch(
    interval: Annotated[Optional[float], typer.Option("--interval", help="Seconds between polls. Defaults to FLEET_POLL_INTERVAL.")] = None,
):
    """Watch the shared store and report changes made by other clients."""
    with cli_errors():
        config, store = _open_store()
        for collection in (store.repairs, store.technicians, store.stock, store.stock_transactions, store.used_parts):
            collection.subscribe(
                lambda items, key=collection.key: console.print(f"[cyan]{key}[/cyan] changed: {len(items)} record(s)")
            )
        poller = StorePoller(store.backend, interval or config.poll_interval)

        if not poller.start():
            store.close()
            console.print("[bold red]Error:[/bold red] Could not start the store poller")
            raise typer.Exit(code=1)
        console.print(f"[bold blue]Watching {config.store_backend} store every {poller.interval_seconds}s. Press Ctrl+C to stop.[/bold blue]")
        try:
            while poller.is_running():
                time.sleep(1)
        except KeyboardInterrupt:
            console.print("Stopping...")
        finally:
            poller.stop()
            store.close()
