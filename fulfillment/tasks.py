"""
Celery Tasks
Background work that must never hold up an order mutation.
"""

import asyncio
import time
from datetime import datetime
from typing import Optional

from celery.utils.log import get_task_logger

from fulfillment.celery_worker import celery_app
from fulfillment.services.excel_manager import ExcelManager

logger = get_task_logger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def export_invoice_to_ledger(self, invoice: dict) -> dict:
    """
    Append a finalized bill to the Excel sales ledger.

    Args:
        invoice: Serialized invoice with order and vendor context

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    order_id = invoice.get('order_id', 'unknown')

    logger.info(f"📋 Task {task_id}: Exporting bill for order #{order_id}")
    start_time = time.time()

    try:
        result = ExcelManager().append_invoice(invoice)

        elapsed = round(time.time() - start_time, 3)
        result['task_id'] = task_id
        result['processing_time_seconds'] = elapsed

        if result['success']:
            logger.info(f"✅ Task {task_id}: Order #{order_id} exported in {elapsed}s")
        else:
            logger.warning(f"⚠️ Task {task_id}: Order #{order_id} not exported - {result['message']}")

        return result

    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        logger.error(f"❌ Task {task_id}: Order #{order_id} error after {elapsed}s - {e}")

        # Celery will auto-retry based on configuration
        raise


async def _purge(vendor_id: Optional[int]) -> dict:
    from fulfillment.database import async_session_maker
    from fulfillment.services.orders import OrderService

    async with async_session_maker() as db:
        return await OrderService(db).purge_orders(vendor_id)


@celery_app.task
def purge_orders(vendor_id: Optional[int] = None) -> dict:
    """Administrative bulk purge of kitchen tickets and orders."""
    counts = asyncio.run(_purge(vendor_id))
    return {
        'success': True,
        'purged': counts,
        'timestamp': datetime.now().isoformat()
    }


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
