"""Reconciliation — pull provider state and correct local drift.

Responsible for:
- Reconciling one record against the provider (on-demand sync and cron)
- The batched subscription sync job
- The normalization job (long-expired -> free)

Every per-user outcome is independent: a transient provider failure, a
missing link or a write conflict is reported in the run summary and never
aborts the batch. The next scheduled run is the retry.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from studydeck_billing.extensions import db
from studydeck_billing.models.subscription import SubscriptionRecord
from studydeck_billing.services.audit_service import record_audit
from studydeck_billing.services.job_guard import (
    claim_job_run,
    finish_job_run,
    skipped_summary,
)
from studydeck_billing.services.provider_gateway import (
    ProviderUnavailable,
    get_provider_gateway,
)
from studydeck_billing.services.subscription_state import (
    EXPIRED,
    FREE,
    derive_state,
    state_differs,
    utcnow,
)
from studydeck_billing.services.subscription_store import apply_transition

logger = logging.getLogger(__name__)

SYNC_JOB = "subscription_sync"
NORMALIZE_JOB = "normalize_subscriptions"


def _outcome(record, outcome, ok=False, **extra):
    result = {"userId": record.user_id, "ok": ok, "outcome": outcome}
    result.update(extra)
    return result


def _stamp_attempt(record, now):
    """Record the attempt in its own commit, whatever the outcome.

    Bypasses the version counter and leaves updated_at alone, which the
    normalization cutoff reads.
    """
    try:
        db.session.execute(
            update(SubscriptionRecord)
            .where(SubscriptionRecord.id == record.id)
            .values(
                last_sync_attempt_at=now,
                updated_at=SubscriptionRecord.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"Could not stamp sync attempt for user {record.user_id}", exc_info=True)


def reconcile_record(record, gateway=None, now=None):
    """Make one record match the provider's view.

    The attempt is stamped and committed first; the patch, when there is
    one, is committed separately.

    Returns a per-user result dict; never raises for provider or storage
    failures.
    """
    gateway = gateway or get_provider_gateway()
    now = now or utcnow()
    _stamp_attempt(record, now)
    subscription_id = record.external_subscription_id

    if not subscription_id:
        return _outcome(record, "missing_subscription_id")

    try:
        view = gateway.retrieve_subscription(subscription_id)
    except ProviderUnavailable as e:
        return _outcome(record, "transient_failure", error=str(e))

    if view is None:
        logger.warning(f"Subscription {subscription_id} not found at provider (user {record.user_id})")
        return _outcome(record, "not_found")

    patch = derive_state(view, record)
    if patch is None:
        return _outcome(record, "no_mapping", providerStatus=view.status)

    # Lazy customer-id backfill
    if not record.external_customer_id and not patch.get("external_customer_id"):
        try:
            customer_id = gateway.resolve_customer_id(subscription_id)
        except ProviderUnavailable:
            customer_id = None
        if customer_id:
            patch["external_customer_id"] = customer_id

    provider_customer = patch.get("external_customer_id")
    if record.external_customer_id and provider_customer and provider_customer != record.external_customer_id:
        logger.warning(
            f"Provider customer {provider_customer} differs from linked customer "
            f"{record.external_customer_id} for user {record.user_id} — keeping link"
        )
        patch.pop("external_customer_id")

    changed = state_differs(record, patch)
    patch["last_synced_at"] = now
    user_id = record.user_id
    try:
        apply_transition(record, patch)
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(f"Concurrent update while reconciling user {user_id}")
        return {"userId": user_id, "ok": False, "outcome": "conflict"}
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"Storage error reconciling user {user_id}", exc_info=True)
        return {"userId": user_id, "ok": False, "outcome": "storage_error"}

    if changed:
        record_audit(
            "subscription.reconciled",
            user_id=user_id,
            resource_id=subscription_id,
            metadata={"status": patch["status"], "plan": patch.get("plan")},
        )

    return _outcome(
        record,
        "synced",
        ok=True,
        status=record.status,
        plan=record.plan,
        changed=changed,
        source="provider",
    )


def _sync_candidates(limit):
    """Non-free records or anything still holding an external id.

    Least recently attempted first, so a capped batch rotates through
    everyone, including records whose last attempt failed.
    """
    return (
        SubscriptionRecord.query
        .filter(
            or_(
                SubscriptionRecord.status != FREE,
                SubscriptionRecord.external_subscription_id.isnot(None),
                SubscriptionRecord.external_customer_id.isnot(None),
            )
        )
        .order_by(
            SubscriptionRecord.last_sync_attempt_at.is_(None).desc(),
            SubscriptionRecord.last_sync_attempt_at.asc(),
            SubscriptionRecord.last_synced_at.is_(None).desc(),
            SubscriptionRecord.last_synced_at.asc(),
        )
        .limit(limit)
        .all()
    )


def run_subscription_sync(gateway=None, limit=None, now=None):
    """The scheduled reconciliation pass. Returns a JSON-able summary."""
    config = current_app.config
    if not claim_job_run(SYNC_JOB, config.get("SYNC_MIN_INTERVAL_SECONDS", 0), now=now):
        return skipped_summary()

    gateway = gateway or get_provider_gateway()
    limit = limit or config.get("RECONCILE_BATCH_LIMIT", 250)
    candidate_ids = [r.id for r in _sync_candidates(limit)]

    results = []
    for record_id in candidate_ids:
        record = db.session.get(SubscriptionRecord, record_id)
        if record is None:
            continue
        results.append(reconcile_record(record, gateway=gateway, now=now))

    summary = {
        "success": True,
        "processed": len(results),
        "synced": sum(1 for r in results if r["ok"]),
        "changed": sum(1 for r in results if r.get("changed")),
        "failed": sum(1 for r in results if not r["ok"]),
        "results": results,
    }
    finish_job_run(SYNC_JOB, {k: v for k, v in summary.items() if k != "results"})
    logger.info(
        f"Subscription sync: {summary['processed']} processed, "
        f"{summary['synced']} synced, {summary['changed']} changed, {summary['failed']} failed"
    )
    return summary


def normalize_expired_subscriptions(now=None):
    """Demote records expired longer than EXPIRED_TO_FREE_DAYS to `free`.

    Clears plan, subscription id and period end. The customer id is kept so
    a returning user reuses the same provider customer.
    """
    config = current_app.config
    now = now or utcnow()
    if not claim_job_run(NORMALIZE_JOB, config.get("NORMALIZE_MIN_INTERVAL_SECONDS", 0), now=now):
        return skipped_summary()

    cutoff = now - timedelta(days=config.get("EXPIRED_TO_FREE_DAYS", 7))
    record_ids = [
        r.id
        for r in SubscriptionRecord.query.filter(
            SubscriptionRecord.status == EXPIRED,
            or_(
                and_(
                    SubscriptionRecord.period_ends_at.isnot(None),
                    SubscriptionRecord.period_ends_at < cutoff,
                ),
                and_(
                    SubscriptionRecord.period_ends_at.is_(None),
                    SubscriptionRecord.updated_at < cutoff,
                ),
            ),
        ).all()
    ]

    normalized = []
    failed = []
    for record_id in record_ids:
        record = db.session.get(SubscriptionRecord, record_id)
        if record is None or record.status != EXPIRED:
            continue
        user_id = record.user_id
        try:
            apply_transition(
                record,
                {
                    "status": FREE,
                    "plan": None,
                    "external_subscription_id": None,
                    "period_ends_at": None,
                },
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.error(f"Failed to normalize user {user_id}", exc_info=True)
            failed.append(user_id)
            continue
        normalized.append(user_id)
        record_audit("subscription.normalized", user_id=user_id)

    summary = {
        "success": True,
        "normalized": len(normalized),
        "failed": len(failed),
        "userIds": normalized,
    }
    finish_job_run(NORMALIZE_JOB, {"normalized": len(normalized), "failed": len(failed)})
    logger.info(f"Normalization: {len(normalized)} expired records moved to free")
    return summary
