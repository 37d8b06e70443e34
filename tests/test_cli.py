import os
from datetime import datetime
from unittest import mock

import pytest
from rich.console import Console
from typer.testing import CliRunner

from fleet_maintenance import cli
from fleet_maintenance.cli import app
from fleet_maintenance.models import BatchStatus, TechnicianStatus, TransactionType
from fleet_maintenance.store import JsonFileBackend
from fleet_maintenance.stock import StockLedger
from fleet_maintenance.sync import FleetStore

runner = CliRunner()

YEAR = datetime.now().year


@pytest.fixture(autouse=True)
def wide_console():
    """Tables wider than the default 80 columns would wrap ids in the output."""
    with mock.patch.object(cli, "console", Console(width=200)):
        yield


def read_store(path) -> FleetStore:
    return FleetStore(JsonFileBackend(path), writer_id="test-reader")


def invoke(*args):
    return runner.invoke(app, list(args))


@pytest.fixture
def stocked(json_store_env):
    result = invoke("stock", "add", "--code", "BRK-001", "--name", "Brake pad", "--quantity", "20",
                    "--unit", "set", "--price", "850", "--min-stock", "5")
    assert result.exit_code == 0, result.stdout
    result = invoke("stock", "add", "--code", "SCRAP-FE", "--name", "Scrap iron", "--unit", "kg", "--fungible")
    assert result.exit_code == 0, result.stdout
    return json_store_env


def test_config_error_exits(no_dotenv):
    with mock.patch.dict(os.environ, {"FLEET_STORE_BACKEND": "bogus"}, clear=True):
        result = invoke("repairs", "list")
    assert result.exit_code == 1
    assert "Configuration Error:" in result.stdout


def test_stock_add_and_list(stocked):
    result = invoke("stock", "list")

    assert result.exit_code == 0
    assert "BRK-001" in result.stdout
    assert "Scrap iron" in result.stdout
    assert "used-item" in result.stdout


def test_stock_add_duplicate_code(stocked):
    result = invoke("stock", "add", "--code", "BRK-001", "--name", "Other")
    assert result.exit_code == 1
    assert "already exists" in result.stdout


def test_empty_repairs_list(json_store_env):
    result = invoke("repairs", "list")
    assert result.exit_code == 0
    assert "No repair orders found." in result.stdout


def test_repair_lifecycle(stocked):
    result = invoke("repairs", "create", "--plate", "70-1234", "--problem", "Brakes squeal", "--part", "BRK-001:2")
    assert result.exit_code == 0, result.stdout
    order_no = f"RO-{YEAR}-00001"
    assert f"Created {order_no} for 70-1234" in result.stdout

    assert invoke("repairs", "status", order_no, "in_progress").exit_code == 0
    result = invoke("repairs", "status", order_no, "completed")
    assert result.exit_code == 0, result.stdout
    assert "is now completed" in result.stdout

    store = read_store(stocked)
    [order] = store.repairs.value
    assert order.repair_end_date is not None
    brake = next(i for i in store.stock.value if i.code == "BRK-001")
    assert brake.quantity == 18
    assert store.stock_transactions.value[0].type == TransactionType.WITHDRAWN

    result = invoke("repairs", "list", "--status", "completed")
    assert order_no in result.stdout


def test_invalid_transition_exits(stocked):
    invoke("repairs", "create", "--plate", "70-1234")
    result = invoke("repairs", "status", f"RO-{YEAR}-00001", "completed")
    assert result.exit_code == 1
    assert "Status change rejected:" in result.stdout


def test_unknown_part_exits(stocked):
    result = invoke("repairs", "create", "--plate", "70-1234", "--part", "NOPE:1")
    assert result.exit_code == 1
    assert "Stock item 'NOPE' not found" in result.stdout


@pytest.mark.parametrize("value, message", [
    ("BRK-001", "Expected format: IDENTIFIER:QUANTITY"),
    ("BRK-001:many", "'many' is not a valid number"),
    ("BRK-001:0", "must be positive"),
])
def test_invalid_part_format(stocked, value, message):
    result = invoke("repairs", "create", "--plate", "70-1234", "--part", value)
    assert result.exit_code == 1
    assert message in result.stdout


def test_assign_and_delete(stocked):
    invoke("repairs", "create", "--plate", "70-1234")
    result = invoke("repairs", "assign", f"RO-{YEAR}-00001", "--technician", "T1")
    assert result.exit_code == 1
    assert "Unknown technician(s): T1" in result.stdout

    result = invoke("repairs", "delete", f"RO-{YEAR}-00001")
    assert result.exit_code == 0
    assert read_store(stocked).repairs.value == []

    result = invoke("repairs", "delete", f"RO-{YEAR}-00001")
    assert result.exit_code == 1


def test_stock_return(stocked):
    result = invoke("stock", "return", "RO-2024-00007", "SCRAP-FE:2", "SCRAP-FE:3", "MISSING:1")

    assert result.exit_code == 0, result.stdout
    assert "Skipped unknown stock item MISSING" in result.stdout
    assert "Updated used-item stock for 2 entries" in result.stdout
    scrap = next(i for i in read_store(stocked).stock.value if i.code == "SCRAP-FE")
    assert scrap.quantity == 5


def test_used_part_process_and_reverse(stocked):
    result = invoke("used-parts", "add", "--name", "Brake disc", "--quantity", "4", "--original-part", "BRK-001")
    assert result.exit_code == 0, result.stdout
    [batch] = read_store(stocked).used_parts.value

    result = invoke("used-parts", "process", batch.id, "to_fungible", "--fungible-id", "SCRAP-FE",
                    "--quantity", "3", "--stock-quantity", "9.5")
    assert result.exit_code == 0, result.stdout
    assert "partial, 1 pcs remaining" in result.stdout

    store = read_store(stocked)
    [batch] = store.used_parts.value
    assert batch.status == BatchStatus.PARTIAL
    scrap = next(i for i in store.stock.value if i.code == "SCRAP-FE")
    assert scrap.quantity == 9.5

    result = invoke("used-parts", "reverse", batch.id, batch.dispositions[0].id)
    assert result.exit_code == 0, result.stdout
    assert "restored stock" in result.stdout

    store = read_store(stocked)
    assert store.used_parts.value[0].status == BatchStatus.AWAITING
    assert next(i for i in store.stock.value if i.code == "SCRAP-FE").quantity == 0

    result = invoke("used-parts", "list")
    assert "Brake disc" in result.stdout


def test_used_part_process_malformed_decision(stocked):
    invoke("used-parts", "add", "--name", "Brake disc", "--quantity", "4")
    [batch] = read_store(stocked).used_parts.value

    result = invoke("used-parts", "process", batch.id, "sell", "--price", "10")

    assert result.exit_code == 1
    assert "sold_to" in result.stdout


def test_used_part_process_unknown_batch(stocked):
    result = invoke("used-parts", "process", "UP-NOPE", "dispose")
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_repairs_create_uses_configured_actor(stocked):
    with mock.patch("fleet_maintenance.cli.StockLedger", wraps=StockLedger) as ledger_cls:
        result = invoke("repairs", "create", "--plate", "70-1234", "--part", "BRK-001:1")

    assert result.exit_code == 0, result.stdout
    assert ledger_cls.call_args.kwargs["actor"] == "cli-user"


def test_technicians_add_list_and_status(json_store_env):
    result = invoke("technicians", "list")
    assert result.exit_code == 0
    assert "No technicians found." in result.stdout

    result = invoke("technicians", "add", "--name", "Somchai", "--skill", "brakes", "--skill", "engine")
    assert result.exit_code == 0, result.stdout
    assert "Added technician Somchai" in result.stdout
    [technician] = read_store(json_store_env).technicians.value
    assert technician.skills == ["brakes", "engine"]

    result = invoke("technicians", "list")
    assert technician.id in result.stdout
    assert "brakes, engine" in result.stdout

    result = invoke("technicians", "status", technician.id, "on_leave")
    assert result.exit_code == 0, result.stdout
    assert read_store(json_store_env).technicians.value[0].status == TechnicianStatus.ON_LEAVE

    result = invoke("technicians", "list", "--status", "available")
    assert "No technicians found." in result.stdout


def test_technicians_add_blank_name_exits(json_store_env):
    result = invoke("technicians", "add", "--name", "  ")
    assert result.exit_code == 1
    assert "Technician name is required" in result.stdout


def test_technicians_status_unknown_id_exits(json_store_env):
    result = invoke("technicians", "status", "T-NOPE", "busy")
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_assign_added_technician(stocked):
    invoke("repairs", "create", "--plate", "70-1234")
    invoke("technicians", "add", "--name", "Anan", "--role", "assistant")
    [technician] = read_store(stocked).technicians.value

    result = invoke("repairs", "assign", f"RO-{YEAR}-00001", "--technician", technician.id)

    assert result.exit_code == 0, result.stdout
    [order] = read_store(stocked).repairs.value
    assert order.assigned_technician_id == technician.id
    assert "assigned to Anan" in result.stdout


def test_sync_watch_runs_poller_until_interrupted(json_store_env):
    with mock.patch("fleet_maintenance.cli.StorePoller") as poller_cls, \
            mock.patch("fleet_maintenance.cli.time.sleep", side_effect=KeyboardInterrupt):
        poller = poller_cls.return_value
        poller.start.return_value = True
        poller.is_running.return_value = True
        result = invoke("sync", "watch", "--interval", "2")

    assert result.exit_code == 0, result.stdout
    assert "Stopping..." in result.stdout
    assert poller_cls.call_args.args[1] == 2
    poller.stop.assert_called_once()


def test_sync_watch_exits_when_poller_fails_to_start(json_store_env):
    with mock.patch("fleet_maintenance.cli.StorePoller") as poller_cls:
        poller_cls.return_value.start.return_value = False
        result = invoke("sync", "watch")

    assert result.exit_code == 1
