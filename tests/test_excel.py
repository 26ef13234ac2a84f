import pandas as pd
import pytest

from app import tasks
from app.services import excel_manager
from app.services.excel_manager import ExcelManager


@pytest.fixture(autouse=True)
def workbook(tmp_path, monkeypatch):
    path = tmp_path / "shifts.xlsx"
    monkeypatch.setattr(excel_manager, "DATA_DIR", tmp_path)
    monkeypatch.setattr(excel_manager, "SHIFTS_FILE", path)
    monkeypatch.setattr(excel_manager, "SHIFTS_LOCK", tmp_path / "shifts.xlsx.lock")
    return path


def _shift(shift_id=1, cash_in=1000.0, cash_out=1400.0):
    return {
        "id": shift_id,
        "cashier_id": "7",
        "cashier_username": "nimal",
        "shift_date": "2026-01-01T08:00:00",
        "cash_in_time": "2026-01-01T08:00:00",
        "cash_in_amount": cash_in,
        "cash_out_time": "2026-01-01T17:00:00",
        "cash_out_amount": cash_out,
        "difference": round(cash_out - cash_in, 2),
    }


def test_export_writes_one_row_per_shift(workbook):
    result = ExcelManager.export_shift(_shift(1))

    assert result["success"] is True
    assert result["shift_id"] == 1
    df = pd.read_excel(workbook, engine="openpyxl")
    assert list(df.columns) == ExcelManager.SHIFT_COLUMNS
    assert df.loc[0, "difference"] == 400


def test_reexporting_a_shift_replaces_its_row():
    ExcelManager.export_shift(_shift(1, cash_out=1100.0))
    ExcelManager.export_shift(_shift(2))
    ExcelManager.export_shift(_shift(1, cash_out=1200.0))

    rows = ExcelManager.get_all_shifts()

    assert sorted(r["shift_id"] for r in rows) == [1, 2]
    assert {r["shift_id"]: r["difference"] for r in rows}[1] == 200


def test_clear_all(workbook):
    ExcelManager.export_shift(_shift(1))

    assert ExcelManager.clear_all() is True
    assert not workbook.exists()
    assert ExcelManager.get_all_shifts() == []


def test_export_task_reports_timing():
    result = tasks.export_shift_to_excel.apply(args=[_shift(5)]).get()

    assert result["success"] is True
    assert "processing_time_seconds" in result
    assert ExcelManager.get_all_shifts()[0]["shift_id"] == 5


def test_queue_shift_export_runs_inline_in_eager_mode():
    assert tasks.queue_shift_export(_shift(6)) is not None
    assert [r["shift_id"] for r in ExcelManager.get_all_shifts()] == [6]


def test_queue_shift_export_never_raises(monkeypatch):
    def broker_down(*args, **kwargs):
        raise ConnectionError("redis unreachable")

    monkeypatch.setattr(tasks.export_shift_to_excel, "delay", broker_down)

    assert tasks.queue_shift_export(_shift(7)) is None
