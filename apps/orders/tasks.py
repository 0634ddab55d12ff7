import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings

from .services import OrderSaga

logger = logging.getLogger(__name__)


@shared_task
def replay_stalled_sagas():
    """
    Runs every 5 minutes.
    Rolls back orders whose creation never committed (crash mid-saga or
    mid-rollback). Compensation is idempotent, so overlapping runs are harmless.
    """
    timeout = timedelta(minutes=settings.SAGA_STALL_TIMEOUT_MINUTES)
    replayed, failing = OrderSaga().replay_stalled(timeout)

    if failing:
        logger.error(f"{failing} stalled orders could not be rolled back")
    return f"Replayed {replayed} stalled orders, {failing} still failing"
