"""Background reconciliation of fulfillments whose transfer outcome is unknown.

A fulfillment stays ``pending`` when the transfer request got no response.
Once it has been stale long enough, the provider is asked for a transfer in
the fulfillment's transfer group: a live transfer moves it to ``processing``,
a reversed one or none at all fails it. ``processing`` fulfillments are only
checked for reversals; completion arrives by webhook. A reservation whose
request never got as far as the transfer call is failed once stale, which
frees the item for a new request.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import FundingError
from app.core.metrics import reconciliation_runs_counter, reconciled_fulfillments_counter
from app.db.session import session_scope
from app.models.fulfillment import Fulfillment, STATUS_PENDING, STATUS_PROCESSING
from app.services.payout_service import PayoutConnector, get_payout_connector
from app.services.reservation_service import mark_processing, fail_fulfillment, abandon_reservation

logger = logging.getLogger(__name__)
payout_logger = logging.getLogger("payout")

NO_TRANSFER_CODE = "reconciliation_no_transfer"
REVERSED_CODE = "transfer_reversed"
ABANDONED_CODE = "reservation_abandoned"


def _abandon(fulfillment: Fulfillment, db: Session) -> str:
    abandon_reservation(
        fulfillment.id, ABANDONED_CODE,
        "The request stopped before a transfer was started. Please request it again.", db
    )
    return "failed"


def _settle_pending(fulfillment: Fulfillment, connector: PayoutConnector, db: Session) -> str:
    transfer = connector.find_transfer(fulfillment.transfer_group)
    if transfer is None:
        fail_fulfillment(
            fulfillment.id, NO_TRANSFER_CODE,
            "No transfer was created for this fulfillment. Please request it again.", db
        )
        return "failed"
    if transfer.reversed:
        fail_fulfillment(fulfillment.id, REVERSED_CODE, "Transfer was reversed", db)
        return "failed"
    mark_processing(fulfillment.id, transfer.transfer_id, db)
    return "processing"


def _check_processing(fulfillment: Fulfillment, connector: PayoutConnector, db: Session) -> Optional[str]:
    transfer = connector.find_transfer(fulfillment.transfer_group)
    if transfer is not None and transfer.reversed:
        fail_fulfillment(fulfillment.id, REVERSED_CODE, "Transfer was reversed", db)
        return "failed"
    return None


def reconcile_stale_fulfillments(
    db: Session,
    connector: Optional[PayoutConnector] = None,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """One reconciliation pass; returns counts per outcome"""
    connector = connector or get_payout_connector()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.RECONCILE_STALE_AFTER_SECONDS)

    results = {"processing": 0, "failed": 0, "unchanged": 0, "errors": 0}

    # A reservation never stamped with a transfer attempt cannot have a transfer
    abandoned = db.query(Fulfillment).filter(
        Fulfillment.status == STATUS_PENDING,
        Fulfillment.transfer_attempted_at.is_(None),
        Fulfillment.requested_at < cutoff
    ).all()
    stale_pending = db.query(Fulfillment).filter(
        Fulfillment.status == STATUS_PENDING,
        Fulfillment.transfer_attempted_at.isnot(None),
        Fulfillment.transfer_attempted_at < cutoff
    ).all()
    stale_processing = db.query(Fulfillment).filter(
        Fulfillment.status == STATUS_PROCESSING,
        Fulfillment.processing_started_at < cutoff
    ).all()

    for fulfillment in abandoned + stale_pending + stale_processing:
        try:
            if fulfillment.status == STATUS_PENDING and fulfillment.transfer_attempted_at is None:
                outcome = _abandon(fulfillment, db)
            elif fulfillment.status == STATUS_PENDING:
                outcome = _settle_pending(fulfillment, connector, db)
            else:
                outcome = _check_processing(fulfillment, connector, db)
        except FundingError as e:
            # Settled concurrently (webhook or retry); nothing to do
            logger.info(f"Fulfillment {fulfillment.id} skipped by reconciliation: {e.code}")
            db.rollback()
            results["unchanged"] += 1
            continue
        except Exception as e:
            logger.error(f"Error reconciling fulfillment {fulfillment.id}: {e}", exc_info=True)
            db.rollback()
            results["errors"] += 1
            continue

        if outcome is None:
            results["unchanged"] += 1
        else:
            results[outcome] += 1
            reconciled_fulfillments_counter.labels(outcome=outcome).inc()
            payout_logger.info(f"Reconciled fulfillment {fulfillment.id} -> {outcome}")

    return results


def _run_once() -> Dict[str, int]:
    with session_scope() as db:
        return reconcile_stale_fulfillments(db)


async def reconciliation_task():
    """Background loop running a reconciliation pass every RECONCILE_INTERVAL_SECONDS"""
    while True:
        try:
            await asyncio.sleep(settings.RECONCILE_INTERVAL_SECONDS)
            results = await asyncio.to_thread(_run_once)
            reconciliation_runs_counter.labels(status="success").inc()
            if results["processing"] or results["failed"] or results["errors"]:
                logger.info(f"Reconciliation pass: {results}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reconciliation_runs_counter.labels(status="error").inc()
            logger.error(f"Error in reconciliation task: {e}", exc_info=True)
