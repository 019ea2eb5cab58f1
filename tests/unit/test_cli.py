import re

import pytest
from typer.testing import CliRunner

from opsflow.cli import app

RECORDS = """
products:
  - id: 1
    name: Widget
    status: active
    cost_price: 230
    preferred_vendor_id: 7
inventory:
  - id: 10
    product_id: 1
    quantity: 4
    reorder_level: 10
    reorder_quantity: 10
"""


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("OPSFLOW_DATABASE_URL", "sqlite://" + str(tmp_path / "opsflow.db"))
    monkeypatch.delenv("OPSFLOW_TRANSPORT", raising=False)
    monkeypatch.delenv("OPSFLOW_DECISION_MODEL", raising=False)
    return CliRunner()


@pytest.fixture
def records_file(tmp_path):
    path = tmp_path / "records.yaml"
    path.write_text(RECORDS)
    return str(path)


def test_seed_is_idempotent(runner):
    first = runner.invoke(app, ["seed"])
    assert first.exit_code == 0, first.output
    assert "Inventory Reorder Check" in first.output

    second = runner.invoke(app, ["seed"])
    assert second.exit_code == 0, second.output
    assert "Workflows: (already present)" in second.output

    listed = runner.invoke(app, ["workflow", "list"])
    assert listed.exit_code == 0, listed.output
    assert "inventory_reorder\tthreshold\tactive" in listed.output


def test_show_missing_run_exits_1(runner):
    result = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Run not found" in result.output


def test_unknown_workflow_is_reported(runner):
    result = runner.invoke(app, ["workflow", "start", "no_such_workflow"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_start_approve_and_show(runner, records_file):
    assert runner.invoke(app, ["seed"]).exit_code == 0

    started = runner.invoke(app, ["--records", records_file, "workflow", "start", "inventory_reorder", "--by", "alice"])
    assert started.exit_code == 0, started.output
    assert "awaiting_approval" in started.output
    assert "Waiting on 1 approval(s)" in started.output
    run_id = re.search(r"Run (\w+):", started.output).group(1)

    listed = runner.invoke(app, ["approval", "list", "--role", "ops"])
    assert listed.exit_code == 0, listed.output
    ticket_id = listed.output.split("\t")[0].strip()
    assert "2300.00" in listed.output

    approved = runner.invoke(app, ["--records", records_file, "approval", "approve", ticket_id, "--by", "bob"])
    assert approved.exit_code == 0, approved.output
    assert f"Ticket {ticket_id}: approved" in approved.output

    shown = runner.invoke(app, ["workflow", "show", run_id])
    assert shown.exit_code == 0, shown.output
    assert ": completed" in shown.output
    assert "Create Approved Reorder POs" in shown.output


def test_pipeline_plan_and_status(runner):
    assert runner.invoke(app, ["seed"]).exit_code == 0

    plan = runner.invoke(app, ["pipeline", "plan", "order_to_cash"])
    assert plan.exit_code == 0, plan.output
    assert "1. order_fulfillment\tready\twave 1\tafter -" in plan.output
    assert "3. shipment_tracking\tready\twave 2\tafter order_fulfillment" in plan.output

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 0, status.output
    assert '"running": false' in status.output

    deadletters = runner.invoke(app, ["deadletter", "list"])
    assert "No dead letters" in deadletters.output


def test_invalid_input_json(runner):
    result = runner.invoke(app, ["workflow", "start", "inventory_reorder", "--input", "{not json"])
    assert result.exit_code == 1
    assert "not valid JSON" in result.output
