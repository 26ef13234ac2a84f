"""
Celery Tasks
Background tasks for reporting closed cashier shifts.
"""

import logging
import time
from datetime import datetime
from typing import Any, Optional

from app.celery_worker import celery_app
from app.services.excel_manager import ExcelManager

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def export_shift_to_excel(self, shift_data: dict) -> dict:
    """
    Append a closed shift to the shift workbook.

    Args:
        shift_data: Shift snapshot as JSON-compatible dict

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    shift_id = shift_data.get('id', 'unknown')

    logger.info(f"📋 Task {task_id}: Exporting shift #{shift_id}")
    start_time = time.time()

    result = ExcelManager.export_shift(shift_data)

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed

    if result['success']:
        logger.info(f"✅ Task {task_id}: Shift #{shift_id} exported in {elapsed}s")
    else:
        logger.warning(f"⚠️ Task {task_id}: Shift #{shift_id} failed - {result['message']}")

    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }


@celery_app.task
def clear_excel_file() -> dict:
    """
    Clear the shift workbook (for testing/reset purposes).
    """
    success = ExcelManager.clear_all()
    return {
        'success': success,
        'message': 'Excel file cleared' if success else 'Failed to clear Excel file',
        'timestamp': datetime.now().isoformat()
    }


def queue_shift_export(shift_data: dict[str, Any]) -> Optional[str]:
    """
    Queue the export without letting a broker failure reach the caller.

    Returns:
        The task id, or None when the task could not be queued
    """
    try:
        task = export_shift_to_excel.delay(shift_data)
        return task.id
    except Exception as e:
        logger.error(f"Could not queue export for shift #{shift_data.get('id')}: {e}")
        return None
