"""
Excel File Manager with Concurrency Control

Process-safe workbook of closed cashier shifts. Several Celery workers
may append at once, so every read-modify-write happens under a file lock.

Rows are keyed by shift id: exporting the same shift twice (a retried
task) replaces its row instead of duplicating it.

Author: Khalil Bannouri
Version: 4.0.0
"""

from datetime import datetime
from typing import Any
from pathlib import Path

import pandas as pd
from filelock import FileLock, Timeout

from app.core.config import get_settings
import logging

settings = get_settings()
logger = logging.getLogger(__name__)

DATA_DIR = Path(settings.data_directory)
SHIFTS_FILE = DATA_DIR / settings.shift_report_filename
SHIFTS_LOCK = DATA_DIR / f"{settings.shift_report_filename}.lock"


class ExcelManager:
    """Locked Excel access for the shift report."""

    LOCK_TIMEOUT = settings.excel_lock_timeout

    SHIFT_COLUMNS = [
        "shift_id",
        "cashier_id",
        "cashier_username",
        "shift_date",
        "cash_in_time",
        "cash_in_amount",
        "cash_out_time",
        "cash_out_amount",
        "difference",
        "exported_at",
    ]

    @classmethod
    def _ensure_data_dir(cls) -> None:
        """Create data directory if needed."""
        if not DATA_DIR.exists():
            DATA_DIR.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {DATA_DIR}")

    @classmethod
    def _load_or_create_df(cls, file_path: Path, columns: list) -> pd.DataFrame:
        """Load existing file or create new DataFrame."""
        if file_path.exists():
            try:
                return pd.read_excel(file_path, engine="openpyxl")
            except Exception as e:
                logger.warning(f"Error reading {file_path}: {e}")
                return pd.DataFrame(columns=columns)
        return pd.DataFrame(columns=columns)

    @classmethod
    def export_shift(cls, shift_data: dict[str, Any]) -> dict[str, Any]:
        """Write one closed shift to the workbook under the file lock."""
        cls._ensure_data_dir()

        shift_id = shift_data.get("id", 0)
        result = {
            "success": False,
            "message": "",
            "shift_id": shift_id,
            "exported_at": None,
        }

        try:
            lock = FileLock(str(SHIFTS_LOCK), timeout=cls.LOCK_TIMEOUT)

            with lock:
                logger.debug(f"Lock acquired for Shift #{shift_id}")

                df = cls._load_or_create_df(SHIFTS_FILE, cls.SHIFT_COLUMNS)
                if not df.empty:
                    df = df[df["shift_id"] != shift_id]

                export_time = datetime.now().isoformat()
                new_row = {
                    "shift_id": shift_id,
                    "cashier_id": shift_data.get("cashier_id"),
                    "cashier_username": shift_data.get("cashier_username"),
                    "shift_date": shift_data.get("shift_date"),
                    "cash_in_time": shift_data.get("cash_in_time"),
                    "cash_in_amount": shift_data.get("cash_in_amount"),
                    "cash_out_time": shift_data.get("cash_out_time"),
                    "cash_out_amount": shift_data.get("cash_out_amount"),
                    "difference": shift_data.get("difference"),
                    "exported_at": export_time,
                }

                new_df = pd.DataFrame([new_row], columns=cls.SHIFT_COLUMNS)
                df = new_df if df.empty else pd.concat([df, new_df], ignore_index=True)
                df.to_excel(str(SHIFTS_FILE), index=False, engine="openpyxl")

                logger.info(f"Shift #{shift_id} exported to Excel")

                result["success"] = True
                result["message"] = f"Shift #{shift_id} exported"
                result["exported_at"] = export_time

            logger.debug(f"Lock released for Shift #{shift_id}")

        except Timeout:
            result["message"] = f"Lock timeout ({cls.LOCK_TIMEOUT}s)"
            logger.error(f"Lock timeout for Shift #{shift_id}")

        except Exception as e:
            result["message"] = str(e)
            logger.exception(f"Error exporting Shift #{shift_id}")

        return result

    @classmethod
    def get_all_shifts(cls) -> list[dict[str, Any]]:
        """Get all exported shifts."""
        cls._ensure_data_dir()

        if not SHIFTS_FILE.exists():
            return []

        try:
            df = pd.read_excel(SHIFTS_FILE, engine="openpyxl")
            return df.to_dict("records")
        except Exception as e:
            logger.error(f"Error reading shifts: {e}")
            return []

    @classmethod
    def clear_all(cls) -> bool:
        """Delete the workbook and its lock file."""
        try:
            for f in [SHIFTS_FILE, SHIFTS_LOCK]:
                if f.exists():
                    f.unlink()
            logger.info("Shift workbook cleared")
            return True
        except OSError as e:
            logger.error(f"Error clearing files: {e}")
            return False
