from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from sqlalchemy import func, select, text
import time
import psutil
import logging
from datetime import datetime, timedelta, timezone

from fusion_ledger.config import settings
from fusion_ledger.db import get_db
from fusion_ledger.models import User, CreditTransaction, StripeEventLog
from fusion_ledger.services.reconciliation import BalanceReconciler
from fusion_ledger.services.stripe_events import MAX_PROCESSING_ATTEMPTS

router = APIRouter()
logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


_drift_cache = {"value": None, "expires_at": 0.0}


def cached_drift_count(db: Session) -> int:
    """Drift is a full ledger scan, so scrapes share one count per TTL window."""
    now = time.monotonic()
    if _drift_cache["value"] is None or now >= _drift_cache["expires_at"]:
        _drift_cache["value"] = len(BalanceReconciler(db).find_drift())
        _drift_cache["expires_at"] = now + settings.metrics_drift_ttl_seconds
    return _drift_cache["value"]


@router.get("/health")
async def basic_health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "timestamp": _now().isoformat()}


@router.get("/readyz")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check for container orchestration.
    Returns 200 if the database answers.
    """
    checks = {}
    all_healthy = True

    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = int((time.time() - start_time) * 1000)
        checks["database"] = {"status": "healthy", "latency_ms": latency_ms}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        all_healthy = False

    response_data = {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now().isoformat()
    }

    if not all_healthy:
        raise HTTPException(status_code=503, detail=response_data)

    return response_data


@router.get("/livez")
async def liveness_check():
    """
    Liveness check.
    Should only fail if the application is in an unrecoverable state.
    """
    memory = psutil.virtual_memory()
    if memory.percent > 95:  # Critical memory usage
        logger.critical(f"Liveness check failed: memory usage {memory.percent}%")
        raise HTTPException(status_code=503, detail=f"Application not alive: critical memory usage {memory.percent}%")

    return {
        "status": "alive",
        "memory_percent": memory.percent,
        "timestamp": _now().isoformat()
    }


@router.get("/metrics")
def prometheus_metrics(db: Session = Depends(get_db)):
    """
    Prometheus-style ledger metrics.
    Returns metrics in a format that Prometheus can scrape.
    """
    since = _now() - timedelta(hours=24)
    try:
        total_users = db.execute(select(func.count(User.id))).scalar_one()
        credits_outstanding = db.execute(select(func.coalesce(func.sum(User.credits_balance), 0))).scalar_one()

        by_type = dict(
            db.execute(
                select(CreditTransaction.transaction_type, func.count(CreditTransaction.id))
                .where(CreditTransaction.created_at >= since)
                .group_by(CreditTransaction.transaction_type)
            ).all()
        )

        drifted_balances = cached_drift_count(db)

        stripe_events_processed_24h = db.execute(
            select(func.count(StripeEventLog.id)).where(
                StripeEventLog.created_at >= since,
                StripeEventLog.processed.is_(True),
            )
        ).scalar_one()
        stripe_events_dead_letter = db.execute(
            select(func.count(StripeEventLog.id)).where(StripeEventLog.dead_letter.is_(True))
        ).scalar_one()
        stripe_events_pending = db.execute(
            select(func.count(StripeEventLog.id)).where(
                StripeEventLog.processed.is_(False),
                StripeEventLog.processing_attempts < MAX_PROCESSING_ATTEMPTS,
            )
        ).scalar_one()
    except Exception as e:
        logger.error(f"Failed to generate metrics: {e}")
        raise HTTPException(status_code=500, detail="Metrics generation failed")

    transaction_lines = "\n".join(
        f'fusion_ledger_transactions_24h{{type="{tx_type.value}"}} {count}'
        for tx_type, count in sorted(by_type.items(), key=lambda item: item[0].value)
    )

    memory = psutil.virtual_memory()

    # Format as Prometheus metrics
    metrics = f"""# HELP fusion_ledger_users_total Total number of users with a ledger account
# TYPE fusion_ledger_users_total gauge
fusion_ledger_users_total {total_users}

# HELP fusion_ledger_credits_outstanding Sum of all stored credit balances
# TYPE fusion_ledger_credits_outstanding gauge
fusion_ledger_credits_outstanding {credits_outstanding}

# HELP fusion_ledger_transactions_24h Ledger rows written in the last 24 hours by type
# TYPE fusion_ledger_transactions_24h gauge
{transaction_lines}

# HELP fusion_ledger_drifted_balances Users whose stored balance differs from the ledger sum
# TYPE fusion_ledger_drifted_balances gauge
fusion_ledger_drifted_balances {drifted_balances}

# HELP fusion_ledger_stripe_events_processed Stripe events processed successfully in last 24h
# TYPE fusion_ledger_stripe_events_processed gauge
fusion_ledger_stripe_events_processed {stripe_events_processed_24h}

# HELP fusion_ledger_stripe_events_dead_letter Stripe events that exhausted their retries
# TYPE fusion_ledger_stripe_events_dead_letter gauge
fusion_ledger_stripe_events_dead_letter {stripe_events_dead_letter}

# HELP fusion_ledger_stripe_events_pending Stripe events pending retry
# TYPE fusion_ledger_stripe_events_pending gauge
fusion_ledger_stripe_events_pending {stripe_events_pending}

# HELP fusion_ledger_memory_usage_percent Memory usage percentage
# TYPE fusion_ledger_memory_usage_percent gauge
fusion_ledger_memory_usage_percent {memory.percent}
"""

    return Response(content=metrics, media_type="text/plain")
