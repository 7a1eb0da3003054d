import json

from plansync.extensions import db
from plansync.models import UserPlan

from conftest import checkout_event, invoice_event


def _write(tmp_path, event):
    path = tmp_path / f"{event['id']}.json"
    path.write_text(json.dumps(event))
    return str(path)


def test_replay_applies_event(app, tmp_path):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["billing", "replay", _write(tmp_path, checkout_event("evt_1"))])
    assert result.exit_code == 0, result.output
    assert '"status": 200' in result.output

    with app.app_context():
        row = db.session.get(UserPlan, "u1")
        assert row.is_pro

    # Replaying the same event is deduplicated by the processed-events table
    result = runner.invoke(args=["billing", "replay", _write(tmp_path, checkout_event("evt_1"))])
    assert result.exit_code == 0
    assert '"duplicate": true' in result.output


def test_replay_rejects_bad_envelope(app, tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"type": "invoice.paid"}))
    result = app.test_cli_runner().invoke(args=["billing", "replay", str(path)])
    assert result.exit_code != 0
    assert "Invalid event envelope" in result.output


def test_show_plan_and_ledger(app, tmp_path):
    runner = app.test_cli_runner()
    runner.invoke(args=["billing", "replay", _write(tmp_path, checkout_event("evt_1"))])
    runner.invoke(args=["billing", "replay", _write(tmp_path, invoice_event("evt_2", paid=False))])

    result = runner.invoke(args=["billing", "show-plan", "u1"])
    assert result.exit_code == 0
    shown = json.loads(result.output)
    assert shown["plan"] == "pro"
    assert shown["subscription_status"] == "past_due"

    result = runner.invoke(args=["billing", "ledger", "u1"])
    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert len(lines) == 2
    assert "invoice.payment_failed failed" in lines[0]
    assert "Payment failed - marked as past due" in lines[0]


def test_show_plan_unknown_user(app):
    result = app.test_cli_runner().invoke(args=["billing", "show-plan", "nobody"])
    assert result.exit_code != 0
    assert "No plan row" in result.output
