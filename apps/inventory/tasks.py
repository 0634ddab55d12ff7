import logging

from celery import shared_task
from django.conf import settings

from .services import StockLedger

logger = logging.getLogger(__name__)


@shared_task
def report_low_stock():
    """
    Runs nightly.
    Logs every product at or below its reorder level.
    """
    ledger = StockLedger()
    records = ledger.low_stock_records()
    limit = settings.LOW_STOCK_REPORT_LIMIT

    for record in records[:limit]:
        logger.warning(
            f"Low stock: {record.product.name} qty={record.quantity_in_stock} "
            f"reorder_level={record.reorder_level} location={record.warehouse_location or '-'}",
            extra={"product_id": record.product_id},
        )

    if len(records) > limit:
        logger.warning(f"... and {len(records) - limit} more low-stock products")

    summary = ledger.summary()
    return (
        f"Low stock: {summary.low_stock}, out of stock: {summary.out_of_stock}, "
        f"stock value: {summary.total_value}"
    )
