"""Background reconciliation tasks for the checkout service."""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.checkout_service.models import IntentStatus, PaymentIntentRecord
from services.checkout_service.services.payments import PaymentOrchestrator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

MAX_FULFILLMENT_ATTEMPTS = 10
STALE_INTENT_AGE = timedelta(minutes=15)
STALE_STATUSES = (IntentStatus.REQUIRES_PAYMENT_METHOD, IntentStatus.PROCESSING)


async def retry_failed_fulfillment(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    orchestrator: Optional[PaymentOrchestrator] = None,
) -> int:
    """Re-run the succeeded transaction for intents flagged with a fulfillment error."""
    orchestrator = orchestrator or PaymentOrchestrator()
    processed = 0

    async with session_factory() as db:
        result = await db.execute(
            select(PaymentIntentRecord.id)
            .where(
                PaymentIntentRecord.status == IntentStatus.SUCCEEDED,
                PaymentIntentRecord.fulfillment_error.is_not(None),
                PaymentIntentRecord.fulfillment_attempts < MAX_FULFILLMENT_ATTEMPTS,
            )
            .order_by(PaymentIntentRecord.updated_at.asc())
            .limit(100)
        )
        record_ids = list(result.scalars().all())
        await db.commit()

        for record_id in record_ids:
            record = await db.get(PaymentIntentRecord, record_id)
            if record is None or record.fulfillment_error is None:
                continue
            external_id = record.external_id
            try:
                if await orchestrator.retry_fulfillment(db, record):
                    processed += 1
            except Exception as exc:
                logger.warning(
                    "Fulfillment retry failed for intent %s: %s",
                    external_id,
                    exc,
                )

    if processed:
        logger.info("Recovered fulfillment for %d payment intents", processed)
    return processed


async def reconcile_stale_intents(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    orchestrator: Optional[PaymentOrchestrator] = None,
) -> int:
    """Ask the gateway about intents that have been pending for too long."""
    orchestrator = orchestrator or PaymentOrchestrator()
    cutoff = utc_now() - STALE_INTENT_AGE
    processed = 0

    async with session_factory() as db:
        result = await db.execute(
            select(PaymentIntentRecord.id)
            .where(
                PaymentIntentRecord.status.in_(STALE_STATUSES),
                PaymentIntentRecord.created_at <= cutoff,
            )
            .order_by(PaymentIntentRecord.created_at.asc())
            .limit(200)
        )
        record_ids = list(result.scalars().all())
        await db.commit()

        for record_id in record_ids:
            record = await db.get(PaymentIntentRecord, record_id)
            if record is None:
                continue
            external_id = record.external_id
            try:
                status = await orchestrator.reconcile_intent(db, record)
            except Exception as exc:
                logger.warning("Stale intent check failed for %s: %s", external_id, exc)
                continue
            if status not in STALE_STATUSES:
                processed += 1

    if processed:
        logger.info("Reconciled %d stale payment intents", processed)
    return processed
