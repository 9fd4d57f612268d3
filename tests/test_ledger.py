from datetime import date

import pytest

from fulfillment.services import excel_manager as excel_module
from fulfillment.services.excel_manager import ExcelManager, LedgerReadError
from fulfillment.services.invoice import build_invoice
from fulfillment.services.pricing import canonicalize
from fulfillment.tasks import export_invoice_to_ledger


def finalized_bill(order_id, vendor_id=1, discount=None, finalized_at="2026-03-14T19:30:00+00:00"):
    items = [
        canonicalize({"name": "Paneer Tikka", "price": 220, "quantity": 2, "gstRate": 5, "gstMode": "exclude"}),
        canonicalize({"name": "Butter Naan", "price": 45, "quantity": 4}, line_index=1),
    ]
    payload = build_invoice(items, discount, order_id=order_id, payment_method="cash").to_dict()
    payload.update({
        "vendor_id": vendor_id,
        "channel": "dining",
        "status": "completed",
        "customer_name": "Asha",
        "finalized_at": finalized_at,
    })
    return payload


@pytest.fixture
def ledger(tmp_path):
    return ExcelManager(data_directory=str(tmp_path / "data"), filename="ledger.xlsx")


def test_append_creates_the_workbook(ledger):
    result = ledger.append_invoice(finalized_bill(1, discount={"type": "fixed", "value": 42}))

    assert result["success"] is True
    assert ledger.ledger_file.exists()
    rows = ledger.read_ledger()
    assert len(rows) == 1
    row = rows[0]
    assert row["order_id"] == 1
    assert row["item_count"] == 6
    assert row["pre_discount_total"] == 642.0
    assert row["discount_type"] == "fixed"
    assert row["grand_total"] == 600.0


def test_rows_accumulate_and_filter_by_vendor(ledger):
    ledger.append_invoice(finalized_bill(1))
    ledger.append_invoice(finalized_bill(2, vendor_id=2))
    ledger.append_invoice(finalized_bill(3, finalized_at="2026-03-15T09:00:00+00:00"))

    assert [row["order_id"] for row in ledger.read_ledger()] == [1, 2, 3]
    assert [row["order_id"] for row in ledger.read_ledger(vendor_id=1)] == [1, 3]
    assert ledger.daily_totals(vendor_id=1) == {date(2026, 3, 14): 642.0, date(2026, 3, 15): 642.0}


def test_missing_ledger_reads_empty(ledger):
    assert ledger.read_ledger() == []
    assert ledger.daily_totals() == {}


def test_unreadable_ledger_is_never_overwritten(ledger):
    ledger.data_dir.mkdir(parents=True)
    ledger.ledger_file.write_bytes(b"not a workbook")

    with pytest.raises(LedgerReadError):
        ledger.append_invoice(finalized_bill(1))

    assert ledger.ledger_file.read_bytes() == b"not a workbook"


def test_clear_removes_the_workbook(ledger):
    ledger.append_invoice(finalized_bill(1))

    assert ledger.clear() is True
    assert not ledger.ledger_file.exists()


def test_export_task_runs_eagerly(tmp_path, monkeypatch):
    monkeypatch.setattr(excel_module.settings, "data_directory", str(tmp_path))

    result = export_invoice_to_ledger.apply(args=[finalized_bill(7)]).get()

    assert result["success"] is True
    assert result["order_id"] == 7
    assert "processing_time_seconds" in result
    assert ExcelManager().read_ledger()[0]["order_id"] == 7
